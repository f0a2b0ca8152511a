import asyncio
import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from queue import Queue, Empty
from typing import List

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, Response
from fastapi.responses import JSONResponse
import paho.mqtt.client as mqtt

from .db import engine, init_db
from .models import Device
from .schemas import (
    AnalysisResponse, DeviceCreate, DeviceOut, DeviceRegistered, DeviceUpdate, MessageOut, PowerRequest,
)
from .errors import TelemetryError, InvalidInput, NotFound, StorageError
from .ingest import ingest_sample
from .mqtt_handler import start_mqtt, publish_power_command
from .registry import DeviceRegistry
from .ws_manager import ConnectionManager
from .ai import ANALYSIS_ERROR_MESSAGE, AnalysisError, analyze_device
from .utils import INGEST_PATH, add_cors
from .settings import settings

logging.basicConfig(level=settings.log_level)
log = logging.getLogger("aether")

app = FastAPI(title="Aether Control API", version="0.1.0")
add_cors(app)

manager = ConnectionManager()
# filled from route threads and the MQTT network thread, drained on the event loop
message_queue: Queue[dict] = Queue()
registry = DeviceRegistry(engine, publish=message_queue.put, max_attempts=settings.ingest_max_attempts)
mqtt_client: mqtt.Client | None = None
_forwarder: asyncio.Task | None = None

_ID_ALPHABET = string.ascii_lowercase + string.digits

def get_registry() -> DeviceRegistry:
    return registry

@app.exception_handler(TelemetryError)
async def telemetry_error_handler(request: Request, exc: TelemetryError):
    return JSONResponse(exc.to_body(), status_code=exc.status_code)

@app.on_event("startup")
async def on_startup():
    global mqtt_client, _forwarder
    init_db()
    if settings.mqtt_host:
        try:
            mqtt_client = start_mqtt(registry)
        except Exception as e:
            log.error("[MQTT] failed to start: %s", e)
            mqtt_client = None
    _forwarder = asyncio.create_task(queue_forwarder())

@app.on_event("shutdown")
async def on_shutdown():
    global mqtt_client
    if _forwarder is not None:
        _forwarder.cancel()
    if mqtt_client is not None:
        mqtt_client.loop_stop()
        mqtt_client.disconnect()
        mqtt_client = None

async def queue_forwarder():
    while True:
        try:
            event = message_queue.get_nowait()
        except Empty:
            await asyncio.sleep(0.1)
            continue
        await manager.broadcast_event(event)

@app.get("/health")
def health():
    return {"status": "ok"}

# ---------------- ingest ----------------
@app.post(INGEST_PATH, response_model=MessageOut)
async def post_telemetry(request: Request, reg: DeviceRegistry = Depends(get_registry)):
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput(errors=[{"type": "json_invalid", "loc": [], "msg": "Body is not valid JSON"}])
    # registry calls block on the database
    try:
        await asyncio.to_thread(ingest_sample, reg, body)
    except TelemetryError:
        raise
    except Exception as e:
        log.exception("Error processing telemetry data")
        raise StorageError() from e
    return {"message": "Telemetry data received successfully."}

# ---------------- devices ----------------
@app.get("/api/devices", response_model=List[DeviceOut])
def list_devices(group: str | None = None, reg: DeviceRegistry = Depends(get_registry)):
    return [DeviceOut.from_device(d) for d in reg.list(group)]

@app.get("/api/groups", response_model=List[str])
def list_groups(reg: DeviceRegistry = Depends(get_registry)):
    return reg.groups()

@app.post("/api/devices", response_model=DeviceRegistered, status_code=201)
def register_device(body: DeviceCreate, reg: DeviceRegistry = Depends(get_registry)):
    now = datetime.now(timezone.utc)
    d = Device(
        id="dev-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(7)),
        key=f"ak-{uuid.uuid4()}",
        name=body.name,
        group=body.group,
        widget_type=body.widget_type.value,
        is_online=False,
        is_on=False,
        telemetry={
            "temperature": 0, "humidity": 0, "pressure": 0, "light_level": 0,
            "timestamp": int(time.time() * 1000),
        },
        telemetry_history=[],
        created_at=now,
    )
    return DeviceRegistered.from_device(reg.create(d))

@app.get("/api/devices/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, reg: DeviceRegistry = Depends(get_registry)):
    d = reg.get(device_id)
    if not d:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceOut.from_device(d)

@app.put("/api/devices/{device_id}", response_model=DeviceOut)
def update_device(device_id: str, body: DeviceUpdate, reg: DeviceRegistry = Depends(get_registry)):
    try:
        d = reg.update_fields(device_id, name=body.name, group=body.group)
    except NotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceOut.from_device(d)

@app.post("/api/devices/{device_id}/power", response_model=DeviceOut)
def toggle_power(device_id: str, body: PowerRequest | None = None, reg: DeviceRegistry = Depends(get_registry)):
    try:
        d = reg.set_power(device_id, body.is_on if body else None)
    except NotFound:
        raise HTTPException(status_code=404, detail="Device not found")

    if mqtt_client is not None:
        try:
            publish_power_command(mqtt_client, d.id, d.is_on)
        except Exception as e:
            raise HTTPException(status_code=502, detail=f"MQTT publish failed: {e}")
    return DeviceOut.from_device(d)

@app.delete("/api/devices/{device_id}", status_code=204)
def delete_device(device_id: str, reg: DeviceRegistry = Depends(get_registry)):
    if not reg.delete(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    return Response(status_code=204)

@app.post("/api/devices/{device_id}/analysis", response_model=AnalysisResponse)
def analyze(device_id: str, reg: DeviceRegistry = Depends(get_registry)):
    d = reg.get(device_id)
    if not d:
        raise HTTPException(status_code=404, detail="Device not found")
    try:
        text = analyze_device(d)
    except AnalysisError:
        log.exception("Error analyzing telemetry for %s", device_id)
        text = ANALYSIS_ERROR_MESSAGE
    return AnalysisResponse(analysis_result=text)

# ---------------- live feed ----------------
@app.websocket("/ws/devices")
async def devices_ws(websocket: WebSocket, device_id: str | None = None):
    await manager.connect(websocket, device_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
