"""
Device registry: one row per device, keyed by device id.

Writes that must not lose concurrent updates (telemetry ingest, power toggle)
go through ``atomic_update``: read the row, compute the new column values,
then ``UPDATE ... WHERE version = <read version>``. A zero rowcount means
another writer got there first and the attempt is retried against the fresh
row. Every successful mutation is handed to ``publish`` exactly once.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from .db import get_session
from .errors import NotFound, StorageError
from .models import Device
from .schemas import device_snapshot

log = logging.getLogger("registry")

Mutation = Callable[[Device], Dict[str, Any]]
Publisher = Callable[[dict], None]

# columns a mutation may write; id, key and version are owned by the registry
WRITABLE = {"name", "group", "is_online", "is_on", "telemetry", "telemetry_history"}


class DeviceRegistry:
    def __init__(self, engine, publish: Optional[Publisher] = None, max_attempts: int = 8) -> None:
        self.engine = engine
        self.publish = publish
        self.max_attempts = max_attempts

    def _emit(self, kind: str, device_id: str, device: Optional[Device]) -> None:
        if self.publish is None:
            return
        event = {
            "kind": kind,
            "device_id": device_id,
            "device": device_snapshot(device) if device is not None else None,
        }
        try:
            self.publish(event)
        except Exception:
            # the write is already committed; a broken subscriber must not fail it
            log.exception("[REGISTRY] publish failed for %s", device_id)

    # ---------------- reads ----------------
    def get(self, device_id: str) -> Optional[Device]:
        try:
            with get_session(self.engine) as s:
                return s.get(Device, device_id)
        except SQLAlchemyError as e:
            raise StorageError() from e

    def list(self, group: Optional[str] = None) -> List[Device]:
        try:
            with get_session(self.engine) as s:
                st = select(Device)
                if group:
                    st = st.where(Device.group == group)
                return list(s.exec(st.order_by(Device.created_at.desc())).all())
        except SQLAlchemyError as e:
            raise StorageError() from e

    def groups(self) -> List[str]:
        try:
            with get_session(self.engine) as s:
                rows = s.exec(select(Device.group).distinct()).all()
        except SQLAlchemyError as e:
            raise StorageError() from e
        return sorted(g for g in rows if g)

    # ---------------- writes ----------------
    def create(self, device: Device) -> Device:
        try:
            with get_session(self.engine) as s:
                s.add(device)
                s.commit()
                s.refresh(device)
        except IntegrityError as e:
            raise StorageError(f"Device {device.id} already exists") from e
        except SQLAlchemyError as e:
            raise StorageError() from e
        log.info("[REGISTRY] created %s (%s)", device.id, device.widget_type)
        self._emit("device.created", device.id, device)
        return device

    def delete(self, device_id: str) -> bool:
        try:
            with get_session(self.engine) as s:
                d = s.get(Device, device_id)
                if not d:
                    return False
                s.delete(d)
                s.commit()
        except SQLAlchemyError as e:
            raise StorageError() from e
        log.info("[REGISTRY] deleted %s", device_id)
        self._emit("device.deleted", device_id, None)
        return True

    def atomic_update(self, device_id: str, mutation: Mutation) -> Device:
        """Apply ``mutation(current)`` to one device as a single conditional write.

        Raises NotFound if the device does not exist (or vanished between
        attempts) and StorageError when the database fails or every attempt
        lost the race.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                with get_session(self.engine) as s:
                    current = s.get(Device, device_id)
                    if current is None:
                        raise NotFound()
                    values = mutation(current)
                    unknown = set(values) - WRITABLE
                    if unknown:
                        raise ValueError(f"not writable: {sorted(unknown)}")

                    st = (
                        update(Device)
                        .where(Device.id == device_id, Device.version == current.version)
                        .values(**values, version=current.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    res = s.execute(st)
                    if res.rowcount != 1:
                        s.rollback()
                        log.debug("[REGISTRY] version conflict on %s (attempt %d)", device_id, attempt)
                        continue
                    s.commit()
                    s.refresh(current)
            except SQLAlchemyError as e:
                log.error("[REGISTRY] update of %s failed: %s", device_id, e.__class__.__name__)
                raise StorageError() from e

            self._emit("device.updated", device_id, current)
            return current

        log.warning("[REGISTRY] gave up on %s after %d conflicting attempts", device_id, self.max_attempts)
        raise StorageError()

    def update_fields(self, device_id: str, name: Optional[str] = None, group: Optional[str] = None) -> Device:
        def mutation(current: Device) -> Dict[str, Any]:
            values: Dict[str, Any] = {}
            if name is not None:
                values["name"] = name
            if group is not None:
                values["group"] = group
            return values

        return self.atomic_update(device_id, mutation)

    def set_power(self, device_id: str, is_on: Optional[bool] = None) -> Device:
        """Set the commanded power state; toggles when ``is_on`` is None."""
        def mutation(current: Device) -> Dict[str, Any]:
            return {"is_on": (not current.is_on) if is_on is None else is_on}

        return self.atomic_update(device_id, mutation)
