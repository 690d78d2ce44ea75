"""Relay control and liveness for a single device.

A control request is turned into one ``home/control`` message carrying all
four relay states: the ones the caller asked for, and the currently stored
state for the rest. The message is published first and the stored relay
configuration is written afterwards. If the process dies between the two,
the stored state lags until the device's next telemetry reports what it is
actually doing; ``DeviceTracker`` logs when that lag outlasts a cycle.

Dispatches for the same device are serialized so that the read of stored
state and the write of the new state form one unit.
"""
import logging
import threading
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Iterator, Mapping, Optional

from .errors import BusUnavailable, DeviceNotFound, StorageUnavailable
from .models import Device, utcnow
from .mqtt_handler import BusClient
from .relays import RelayBank, resolve_effective_state
from .schemas import ControlCommand, DeviceStatusOut
from .storage import DeviceStore

log = logging.getLogger(__name__)


def is_online(last_seen: Optional[datetime], now: datetime, window_seconds: float) -> bool:
    """A device is online while less than ``window_seconds`` passed since ``last_seen``.

    Exactly ``window_seconds`` counts as offline.
    """
    if last_seen is None:
        return False
    return (now - last_seen) < timedelta(seconds=window_seconds)


class DeviceLocks:
    def __init__(self):
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, pk: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(pk)
            if lock is None:
                lock = self._locks[pk] = threading.Lock()
            return lock

    def discard(self, pk: int) -> None:
        with self._guard:
            self._locks.pop(pk, None)


class CommandDispatcher:
    def __init__(
        self,
        store: DeviceStore,
        bus: Optional[BusClient],
        control_topic: str = "home/control",
        publish_timeout: float = 5.0,
        storage_timeout: float = 5.0,
        liveness_window: float = 30.0,
    ):
        self.store = store
        self.bus = bus
        self.control_topic = control_topic
        self.publish_timeout = publish_timeout
        self.storage_timeout = storage_timeout
        self.liveness_window = liveness_window
        self._locks = DeviceLocks()
        self._writer = ThreadPoolExecutor(max_workers=4, thread_name_prefix="relay-write")

    def _load(self, pk: int, owner_id: str) -> Device:
        device = self.store.find_device_by_id_and_owner(pk, owner_id)
        if device is None:
            raise DeviceNotFound(f"device pk={pk}")
        return device

    def _acquire(self, pk: int) -> threading.Lock:
        lock = self._locks.get(pk)
        # a write stuck past its own timeout still holds the lock
        if not lock.acquire(timeout=self.publish_timeout + self.storage_timeout):
            raise StorageUnavailable(f"device pk={pk} busy with a previous relay write")
        return lock

    @contextmanager
    def locked(self, pk: int) -> Iterator[None]:
        """Hold the device's relay lock, for other writers of the stored relay list."""
        lock = self._acquire(pk)
        try:
            yield
        finally:
            lock.release()

    def forget(self, pk: int) -> None:
        self._locks.discard(pk)

    def dispatch_control(self, pk: int, owner_id: str, intent: Mapping[str, bool]) -> ControlCommand:
        if self.bus is None:
            raise BusUnavailable("bus client not initialized")

        # unknown or foreign pks never get a lock entry
        self._load(pk, owner_id)
        lock = self._acquire(pk)
        release_here = True
        try:
            device = self._load(pk, owner_id)
            effective = resolve_effective_state(device.relays, intent)
            command = ControlCommand(device_id=device.device_id, **effective)

            self.bus.publish_and_wait(self.control_topic, command.model_dump(), self.publish_timeout)
            log.info("[CONTROL] sent %s", command.model_dump())

            new_relays = RelayBank.coerce(device.relays).with_states(effective).to_json()
            future = self._writer.submit(self.store.save_device_relays, pk, new_relays)
            future.add_done_callback(lambda _f: lock.release())
            release_here = False
            try:
                future.result(timeout=self.storage_timeout)
            except FutureTimeout as e:
                log.error("[CONTROL] relay write for %s exceeded %.1fs", device.device_id, self.storage_timeout)
                raise StorageUnavailable("relay state write timed out") from e
            return command
        finally:
            if release_here:
                lock.release()

    def get_status(self, pk: int, owner_id: str, now: Optional[datetime] = None) -> DeviceStatusOut:
        device = self._load(pk, owner_id)
        online = is_online(device.last_seen, now or utcnow(), self.liveness_window)
        return DeviceStatusOut(
            deviceId=device.device_id,
            status="online" if online else "offline",
            lastSeen=device.last_seen,
            relays=list(RelayBank.coerce(device.relays)),
        )

    def shutdown(self) -> None:
        self._writer.shutdown(wait=True)
