from datetime import datetime
from typing import Any, Union
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr

from .models import Device, WidgetType

# JSON numbers only: no numeric strings, no booleans
Number = Union[StrictInt, StrictFloat]

class TelemetryIn(BaseModel):
    """Ingest body. Optional fields may be omitted but not sent as null."""
    # wire names only; NaN and Infinity are not JSON numbers
    model_config = ConfigDict(allow_inf_nan=False)

    device_id: StrictStr = Field(alias="deviceId")
    api_key: StrictStr = Field(alias="apiKey")
    temperature: Number = Field(default=None)
    humidity: Number = Field(default=None)
    pressure: Number = Field(default=None)
    light_level: Number = Field(default=None)
    is_on: StrictBool = Field(default=None, alias="isOn")

class HistoryEntry(BaseModel):
    time: str
    value: float | int

class DeviceOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    group: str
    widget_type: str = Field(alias="widgetType")
    is_online: bool = Field(alias="isOnline")
    is_on: bool = Field(alias="isOn")
    telemetry: dict[str, Any]
    telemetry_history: list[HistoryEntry] = Field(alias="telemetryHistory")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @classmethod
    def from_device(cls, d: Device) -> "DeviceOut":
        return cls(
            id=d.id, name=d.name, group=d.group, widget_type=d.widget_type,
            is_online=d.is_online, is_on=d.is_on, telemetry=dict(d.telemetry or {}),
            telemetry_history=list(d.telemetry_history or []), created_at=d.created_at,
        )

class DeviceRegistered(DeviceOut):
    # the shared key is only ever returned here, once
    key: str

    @classmethod
    def from_device(cls, d: Device) -> "DeviceRegistered":
        return cls(key=d.key, **DeviceOut.from_device(d).model_dump())

class DeviceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=2)
    group: str = Field(default="default", min_length=2)
    widget_type: WidgetType = Field(default=WidgetType.TEMP_HUMIDITY, alias="widgetType")

class DeviceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2)
    group: str | None = Field(default=None, min_length=2)

class PowerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_on: bool | None = Field(default=None, alias="isOn")

class AnalysisResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis_result: str = Field(alias="analysisResult")

class MessageOut(BaseModel):
    message: str

def device_snapshot(d: Device) -> dict[str, Any]:
    """Public JSON form of a device, as pushed on the change feed."""
    return DeviceOut.from_device(d).model_dump(mode="json", by_alias=True)
