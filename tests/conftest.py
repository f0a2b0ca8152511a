"""
Test configuration and fixtures.

Points the app at a throwaway SQLite file before it is imported and rebuilds
the tables for every test.
"""
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="aether-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/test.db"
os.environ.pop("MQTT_HOST", None)
os.environ.pop("OPENAI_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from aether_control import ai
from aether_control.db import engine
from aether_control.main import app, message_queue, registry
from aether_control.models import Device
from aether_control.settings import settings


@pytest.fixture(scope="function", autouse=True)
def clean_db():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def no_openai_key(monkeypatch):
    monkeypatch.setattr(settings, "openai_api_key", None)
    ai.clear_cache()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def events():
    """Drain change events published so far and return a collector."""
    while not message_queue.empty():
        message_queue.get_nowait()

    def collect():
        out = []
        while not message_queue.empty():
            out.append(message_queue.get_nowait())
        return out

    return collect


def make_device(device_id="dev-1", key="ak-1", widget_type="temp-humidity", group="home", history=None):
    return registry.create(Device(
        id=device_id,
        name=f"Sensor {device_id}",
        key=key,
        group=group,
        widget_type=widget_type,
        telemetry={"temperature": 0, "humidity": 0, "pressure": 0, "light_level": 0, "timestamp": 0},
        telemetry_history=list(history or []),
    ))


@pytest.fixture
def device():
    return make_device()


@pytest.fixture
def new_device():
    return make_device
