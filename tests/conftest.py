"""Shared fixtures: a throwaway SQLite store, a fake bus and a wired app."""

import threading
import time
from typing import Any, Dict, List, Optional

import pytest
from sqlmodel import create_engine

from smarthome.models import Device, utcnow
from smarthome.relays import RelaySlot
from smarthome.storage import DeviceStore


class FakeBus:
    """Stands in for BusClient; records every control message it is asked to send."""

    def __init__(self, delay: float = 0.0, error: Optional[Exception] = None):
        self.delay = delay
        self.error = error
        self.sent: List[tuple] = []
        self._lock = threading.Lock()

    def publish_and_wait(self, topic: str, payload: Dict[str, Any], timeout: float) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        with self._lock:
            self.sent.append((topic, dict(payload)))

    def health(self) -> Dict[str, Any]:
        return {"connected": True, "ready": True}

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'smarthome.db'}", connect_args={"check_same_thread": False})
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> DeviceStore:
    s = DeviceStore(engine)
    s.init_schema()
    return s


@pytest.fixture
def fake_bus() -> FakeBus:
    return FakeBus()


def make_device(
    store: DeviceStore,
    device_id: str = "esp-1",
    owner_id: str = "user-1",
    states=(False, False, False, False),
    last_seen=None,
) -> Device:
    relays = [RelaySlot(name=f"Relay {i + 1}", pin=20 + i, state=s).model_dump() for i, s in enumerate(states)]
    return store.create_device(Device(
        device_id=device_id,
        name=f"{device_id} board",
        type="esp32",
        location="living room",
        relays=relays,
        owner_id=owner_id,
        last_seen=last_seen or utcnow(),
    ))


@pytest.fixture
def valid_telemetry() -> Dict[str, Any]:
    return {
        "device_id": "esp-1",
        "temperature": 22.5,
        "humidity": 41.0,
        "motion": 0,
        "light_level": 512,
        "gas_level": 120,
        "water_level": 33,
        "relay1": True,
        "relay2": False,
        "relay3": False,
        "relay4": False,
    }
