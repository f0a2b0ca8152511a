"""
Integration tests for POST /api/telemetry.
"""
import pytest

from aether_control.main import registry

URL = "/api/telemetry"


def post(client, **body):
    return client.post(URL, json=body)


def test_example_scenario_accepts_sample(client, device):
    r = post(client, deviceId="dev-1", apiKey="ak-1", temperature=21.5, humidity=44)
    assert r.status_code == 200
    assert r.json() == {"message": "Telemetry data received successfully."}

    d = registry.get("dev-1")
    assert d.is_online is True
    assert d.telemetry["temperature"] == 21.5
    assert d.telemetry["humidity"] == 44
    assert len(d.telemetry_history) == 1
    assert d.telemetry_history[0]["value"] == 21.5


def test_wrong_key_is_unauthorized_and_leaves_state(client, device):
    before = registry.get("dev-1")
    r = post(client, deviceId="dev-1", apiKey="wrong", temperature=30)
    assert r.status_code == 401
    assert r.json() == {"message": "Invalid API Key"}
    assert "ak-1" not in r.text

    after = registry.get("dev-1")
    assert after.telemetry == before.telemetry
    assert after.telemetry_history == []
    assert after.is_online is False
    assert after.version == before.version


def test_unknown_device_is_not_found(client, device):
    r = post(client, deviceId="dev-nope", apiKey="ak-1", temperature=30)
    assert r.status_code == 404
    assert r.json() == {"message": "Device not found"}
    assert registry.get("dev-nope") is None
    assert registry.get("dev-1").version == device.version


@pytest.mark.parametrize("body", [
    {"apiKey": "ak-1", "temperature": 1},
    {"deviceId": "dev-1", "temperature": 1},
    {"deviceId": 1, "apiKey": "ak-1"},
    {"deviceId": "dev-1", "apiKey": "ak-1", "temperature": "21.5"},
    {"deviceId": "dev-1", "apiKey": "ak-1", "humidity": True},
    {"deviceId": "dev-1", "apiKey": "ak-1", "isOn": "true"},
    {"deviceId": "dev-1", "apiKey": "ak-1", "isOn": 1},
    {"deviceId": "dev-1", "apiKey": "ak-1", "light_level": None},
    {"device_id": "dev-1", "api_key": "ak-1", "temperature": 5},
])
def test_invalid_bodies_are_rejected_whole(client, device, body):
    r = client.post(URL, json=body)
    assert r.status_code == 400
    data = r.json()
    assert data["message"] == "Invalid request body"
    assert data["errors"]
    assert registry.get("dev-1").version == device.version


def test_non_json_body_is_invalid(client, device):
    r = client.post(URL, content=b"temperature=3", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid request body"


@pytest.mark.parametrize("number", [b"NaN", b"Infinity", b"-Infinity", b"1e999"])
def test_non_finite_numbers_are_invalid(client, device, number):
    body = b'{"deviceId": "dev-1", "apiKey": "ak-1", "temperature": ' + number + b"}"
    r = client.post(URL, content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["errors"][0]["loc"][0] == "temperature"
    d = registry.get("dev-1")
    assert d.telemetry_history == []
    assert d.version == device.version


def test_json_array_body_is_invalid(client, device):
    r = client.post(URL, json=[{"deviceId": "dev-1"}])
    assert r.status_code == 400


def test_timestamp_strictly_increases(client, device):
    stamps = []
    for i in range(5):
        assert post(client, deviceId="dev-1", apiKey="ak-1", temperature=20 + i).status_code == 200
        stamps.append(registry.get("dev-1").telemetry["timestamp"])
    assert all(b > a for a, b in zip(stamps, stamps[1:]))


def test_history_is_bounded_and_evicts_oldest(client, device):
    for i in range(1, 52):
        assert post(client, deviceId="dev-1", apiKey="ak-1", temperature=i).status_code == 200
        assert len(registry.get("dev-1").telemetry_history) == min(i, 50)

    history = registry.get("dev-1").telemetry_history
    assert len(history) == 50
    assert history[0]["value"] == 2
    assert history[-1]["value"] == 51


def test_temperature_wins_over_humidity(client, device):
    post(client, deviceId="dev-1", apiKey="ak-1", humidity=60, temperature=19)
    assert registry.get("dev-1").telemetry_history[-1]["value"] == 19


def test_light_level_feeds_history(client, new_device):
    new_device("dev-l", "ak-l", widget_type="light-sensor")
    post(client, deviceId="dev-l", apiKey="ak-l", light_level=300, pressure=1000)
    d = registry.get("dev-l")
    assert d.telemetry["light_level"] == 300
    assert d.telemetry_history[-1]["value"] == 300


def test_pressure_only_updates_telemetry_without_history(client, device):
    r = post(client, deviceId="dev-1", apiKey="ak-1", pressure=1013.2)
    assert r.status_code == 200
    d = registry.get("dev-1")
    assert d.telemetry["pressure"] == 1013.2
    assert d.is_online is True
    assert d.telemetry_history == []


def test_is_on_sets_both_fields_and_records_one_or_zero(client, new_device):
    new_device("dev-s", "ak-s", widget_type="switch")
    post(client, deviceId="dev-s", apiKey="ak-s", isOn=True)
    d = registry.get("dev-s")
    assert d.is_on is True
    assert d.telemetry["isOn"] is True
    assert d.telemetry_history[-1]["value"] == 1

    post(client, deviceId="dev-s", apiKey="ak-s", isOn=False)
    d = registry.get("dev-s")
    assert d.is_on is False
    assert d.telemetry_history[-1]["value"] == 0


def test_empty_sample_only_marks_online(client, device):
    assert post(client, deviceId="dev-1", apiKey="ak-1").status_code == 200
    d = registry.get("dev-1")
    assert d.is_online is True
    assert d.telemetry_history == []
    assert d.telemetry["timestamp"] > 0


def test_storage_failure_maps_to_500(client, device, monkeypatch):
    from sqlalchemy.exc import OperationalError

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE device", {}, Exception("database is locked"))

    monkeypatch.setattr("aether_control.registry.update", broken)
    r = post(client, deviceId="dev-1", apiKey="ak-1", temperature=1)
    assert r.status_code == 500
    assert r.json() == {"message": "Error processing request"}
    assert registry.get("dev-1").telemetry_history == []


def test_unexpected_failure_is_a_structured_500(client, device, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("aether_control.main.ingest_sample", boom)
    r = post(client, deviceId="dev-1", apiKey="ak-1", temperature=1)
    assert r.status_code == 500
    assert r.json() == {"message": "Error processing request"}


def test_responses_carry_cors_headers(client, device):
    for r in (
        post(client, deviceId="dev-1", apiKey="ak-1", temperature=1),
        post(client, deviceId="dev-1", apiKey="nope"),
        client.post(URL, json={}),
    ):
        assert r.headers["access-control-allow-origin"] == "*"
        assert r.headers["access-control-allow-methods"] == "POST, OPTIONS"
        assert r.headers["access-control-allow-headers"] == "Content-Type, Authorization"


def test_preflight_returns_204(client):
    r = client.options(URL, headers={
        "Origin": "http://device.local",
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "Content-Type",
    })
    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "*"
    assert r.headers["access-control-allow-methods"] == "POST, OPTIONS"

    assert client.options(URL).status_code == 204
