"""
Telemetry ingest: validate a sample, authenticate it against the device's
shared key, then merge it into the device row and its bounded history in one
registry write.
"""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import InvalidInput, NotFound, Unauthorized
from .models import MAX_HISTORY_LENGTH, Device
from .registry import DeviceRegistry
from .schemas import TelemetryIn

log = logging.getLogger("ingest")

SCALAR_FIELDS = ("temperature", "humidity", "pressure", "light_level")
# first present wins; pressure never feeds the chart
HISTORY_PRIORITY = ("temperature", "humidity", "light_level")


def parse_sample(body: Any) -> TelemetryIn:
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except ValueError:
            raise InvalidInput(errors=[{"type": "json_invalid", "loc": [], "msg": "Body is not valid JSON"}])
    if not isinstance(body, dict):
        raise InvalidInput(errors=[{"type": "object_type", "loc": [], "msg": "Body must be a JSON object"}])
    try:
        return TelemetryIn.model_validate(body)
    except ValidationError as e:
        raise InvalidInput(errors=json.loads(e.json(include_url=False, include_input=False)))


def history_value(sample: TelemetryIn) -> Optional[float]:
    for field in HISTORY_PRIORITY:
        v = getattr(sample, field)
        if v is not None:
            return v
    if sample.is_on is not None:
        return 1 if sample.is_on else 0
    return None


def append_history(history: List[dict], entry: dict, limit: int = MAX_HISTORY_LENGTH) -> List[dict]:
    """Append one entry, evicting the oldest so the result never exceeds ``limit``."""
    history = list(history or [])
    if len(history) >= limit:
        history = history[len(history) - limit + 1:]
    history.append(entry)
    return history


def build_mutation(sample: TelemetryIn, now: Optional[datetime] = None):
    """Return the registry mutation that applies ``sample`` to a device row."""
    now = now or datetime.now()
    now_ms = int(now.timestamp() * 1000)
    value = history_value(sample)
    entry = {"time": now.strftime("%H:%M:%S"), "value": value} if value is not None else None

    def mutation(current: Device) -> Dict[str, Any]:
        telemetry = dict(current.telemetry or {})
        prev_ts = telemetry.get("timestamp")
        # two samples in the same millisecond still get distinct, increasing stamps
        if isinstance(prev_ts, (int, float)) and prev_ts >= now_ms:
            telemetry["timestamp"] = int(prev_ts) + 1
        else:
            telemetry["timestamp"] = now_ms
        for field in SCALAR_FIELDS:
            v = getattr(sample, field)
            if v is not None:
                telemetry[field] = v

        values: Dict[str, Any] = {"is_online": True, "telemetry": telemetry}
        if sample.is_on is not None:
            telemetry["isOn"] = sample.is_on
            values["is_on"] = sample.is_on
        if entry is not None:
            values["telemetry_history"] = append_history(current.telemetry_history, entry)
        return values

    return mutation


def ingest_sample(registry: DeviceRegistry, body: Any, now: Optional[datetime] = None) -> Device:
    """Validate, authenticate and store one telemetry sample.

    Raises InvalidInput, NotFound, Unauthorized or StorageError.
    """
    sample = parse_sample(body)

    device = registry.get(sample.device_id)
    if device is None:
        log.info("[INGEST] unknown device %s", sample.device_id)
        raise NotFound()
    if device.key != sample.api_key:
        log.info("[INGEST] key mismatch for %s", sample.device_id)
        raise Unauthorized()

    updated = registry.atomic_update(sample.device_id, build_mutation(sample, now))
    log.debug("[INGEST] %s accepted, history=%d", sample.device_id, len(updated.telemetry_history or []))
    return updated
