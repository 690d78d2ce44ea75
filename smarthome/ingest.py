"""Inbound bus message handling.

``IngestionRouter.submit`` is called from the paho network thread. It only
picks a route and hands the message to a worker pool, so a slow database
or slow WebSocket client never holds up the MQTT keep-alive.

On a worker, the route's handler runs first (persist telemetry / record an
alert), then the raw body is pushed to live subscribers as ``sensorData``.
Either step may fail without affecting the other.
"""
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .errors import TelemetryValidationError
from .models import TelemetryRecord, utcnow
from .relays import resolve_effective_state
from .schemas import TelemetryIn
from .storage import DeviceStore
from .ws_manager import LiveFanout

log = logging.getLogger(__name__)

# reported relays must disagree with stored ones this many telemetry cycles in a row
DIVERGENCE_CYCLES = 2
# devices remembered by the receipt clock before the least recently stamped is forgotten
CLOCK_MAX_DEVICES = 10_000


class ReceiptClock:
    """Per-device receipt timestamps that never go backwards."""

    def __init__(self, max_devices: int = CLOCK_MAX_DEVICES):
        self.max_devices = max_devices
        self._last: OrderedDict[str, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._last)

    def stamp(self, device_id: str, received_at: datetime) -> datetime:
        with self._lock:
            prev = self._last.get(device_id)
            ts = received_at if prev is None or received_at > prev else prev
            self._last[device_id] = ts
            self._last.move_to_end(device_id)
            while len(self._last) > self.max_devices:
                self._last.popitem(last=False)
            return ts


class TelemetryPersister:
    def __init__(self, store: DeviceStore, clock: Optional[ReceiptClock] = None):
        self.store = store
        self.clock = clock or ReceiptClock()

    @staticmethod
    def validate(body: Any) -> TelemetryIn:
        if not isinstance(body, dict):
            raise TelemetryValidationError(f"telemetry body must be an object, got {type(body).__name__}")
        try:
            return TelemetryIn.model_validate(body)
        except ValidationError as e:
            fields = ",".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise TelemetryValidationError(f"invalid telemetry fields: {fields}") from e

    def persist(self, telemetry: TelemetryIn, received_at: datetime) -> TelemetryRecord:
        data = telemetry.model_dump()
        if data["timestamp"] is None:
            data["timestamp"] = self.clock.stamp(telemetry.device_id, received_at)
        return self.store.insert_telemetry_record(TelemetryRecord(**data))


class DeviceTracker:
    """Keeps ``lastSeen`` current and watches for relay state drift."""

    def __init__(self, store: DeviceStore):
        self.store = store
        self._streaks: dict[str, int] = {}
        self._lock = threading.Lock()
        self.divergences = 0

    def observe(self, telemetry: TelemetryIn, seen_at: datetime) -> None:
        device = self.store.mark_seen(telemetry.device_id, seen_at)
        if device is None:
            return
        stored = resolve_effective_state(device.relays, {})
        reported = telemetry.reported_relays()
        with self._lock:
            if stored == reported:
                self._streaks.pop(telemetry.device_id, None)
                return
            streak = self._streaks.get(telemetry.device_id, 0) + 1
            self._streaks[telemetry.device_id] = streak
            if streak == DIVERGENCE_CYCLES:
                self.divergences += 1
        if streak >= DIVERGENCE_CYCLES:
            log.warning(
                "[INGEST] relay state divergence device=%s stored=%s reported=%s cycles=%d",
                telemetry.device_id, stored, reported, streak,
            )


class IngestionRouter:
    def __init__(
        self,
        persister: TelemetryPersister,
        tracker: DeviceTracker,
        fanout: LiveFanout,
        telemetry_topic: str,
        alert_topic: str,
        max_workers: int = 4,
        max_backlog: int = 1000,
    ):
        self.persister = persister
        self.tracker = tracker
        self.fanout = fanout
        self.routes: dict[str, Callable[[Any, datetime], None]] = {
            telemetry_topic: self.handle_telemetry,
            alert_topic: self.handle_alert,
        }
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self.max_backlog = max_backlog
        self._pending = 0
        self._stats_lock = threading.Lock()
        self.stats = {
            "received": 0, "routed": 0, "ignored": 0, "dropped": 0,
            "handler_errors": 0, "rejected": 0, "fanout_errors": 0,
        }

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    @property
    def topics(self) -> list[str]:
        return list(self.routes)

    @property
    def backlog(self) -> int:
        """Messages accepted by ``submit`` that a worker has not finished yet."""
        with self._stats_lock:
            return self._pending

    def _reserve(self) -> bool:
        with self._stats_lock:
            if self._pending >= self.max_backlog:
                self.stats["dropped"] += 1
                return False
            self._pending += 1
            return True

    def _release(self) -> None:
        with self._stats_lock:
            self._pending -= 1

    def submit(self, topic: str, body: Any) -> Optional[Future]:
        self._count("received")
        handler = self.routes.get(topic)
        if handler is None:
            self._count("ignored")
            log.debug("[INGEST] ignoring topic %s", topic)
            return None
        received_at = utcnow()
        if not self._reserve():
            log.warning("[INGEST] backlog full (%d), dropped message on %s", self.max_backlog, topic)
            return None
        try:
            return self._pool.submit(self._process, topic, handler, body, received_at)
        except RuntimeError:
            self._release()
            self._count("dropped")
            log.warning("[INGEST] worker pool stopped, dropped message on %s", topic)
            return None

    def _process(self, topic: str, handler: Callable[[Any, datetime], None], body: Any, received_at: datetime) -> None:
        try:
            self._route(topic, handler, body, received_at)
        finally:
            self._release()

    def _route(self, topic: str, handler: Callable[[Any, datetime], None], body: Any, received_at: datetime) -> None:
        self._count("routed")
        try:
            handler(body, received_at)
        except TelemetryValidationError as e:
            self._count("rejected")
            log.warning("[INGEST] rejected message on %s: %s", topic, e)
        except Exception:
            self._count("handler_errors")
            log.exception("[INGEST] handler failed for %s", topic)
        try:
            self.fanout.emit("sensorData", body)
        except Exception:
            self._count("fanout_errors")
            log.exception("[INGEST] live fan-out failed for %s", topic)

    def handle_telemetry(self, body: Any, received_at: datetime) -> None:
        telemetry = self.persister.validate(body)
        record = self.persister.persist(telemetry, received_at)
        log.debug("[INGEST] stored telemetry id=%s device=%s", record.id, record.device_id)
        self.tracker.observe(telemetry, received_at)

    def handle_alert(self, body: Any, received_at: datetime) -> None:
        log.warning("[INGEST] alert received: %s", body)
        self.fanout.emit("alert", body)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
