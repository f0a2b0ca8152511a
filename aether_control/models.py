from enum import Enum
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON

MAX_HISTORY_LENGTH = 50

class WidgetType(str, Enum):
    TEMP_HUMIDITY = "temp-humidity"
    LIGHT_SENSOR = "light-sensor"
    SWITCH = "switch"

class Device(SQLModel, table=True):
    id: str = Field(primary_key=True, index=True)
    name: str
    key: str
    group: str = Field(default="default", index=True)
    widget_type: str = Field(default=WidgetType.TEMP_HUMIDITY.value)
    is_online: bool = Field(default=False)
    is_on: bool = Field(default=False)
    # latest sample: temperature, humidity, pressure, light_level, isOn, timestamp
    telemetry: dict = Field(default_factory=dict, sa_column=Column(JSON))
    # [{"time": "HH:MM:SS", "value": number}], oldest first
    telemetry_history: list = Field(default_factory=list, sa_column=Column(JSON))
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
