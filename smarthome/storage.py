"""SQLModel-backed storage used by the ingestion path and the API.

Every database failure is re-raised as ``StorageUnavailable`` so callers
only deal with the service's own error types.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .db import get_session, init_db
from .errors import StorageUnavailable
from .models import Device, TelemetryRecord

log = logging.getLogger(__name__)


class DeviceStore:
    def __init__(self, bind=None):
        self._bind = bind

    def init_schema(self) -> None:
        init_db(self._bind)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with get_session(self._bind) as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageUnavailable(str(e)) from e

    # ---------------- devices ----------------
    def find_device_by_id_and_owner(self, pk: int, owner_id: str) -> Optional[Device]:
        with self._session() as s:
            return s.exec(select(Device).where(Device.id == pk, Device.owner_id == owner_id)).first()

    def find_device_by_device_id(self, device_id: str) -> Optional[Device]:
        with self._session() as s:
            return s.exec(select(Device).where(Device.device_id == device_id)).first()

    def list_devices(self, owner_id: str) -> list[Device]:
        with self._session() as s:
            return list(s.exec(select(Device).where(Device.owner_id == owner_id).order_by(Device.created_at.desc())).all())

    def create_device(self, device: Device) -> Device:
        with self._session() as s:
            s.add(device)
            s.commit()
            s.refresh(device)
            return device

    def update_device(self, pk: int, owner_id: str, changes: dict[str, Any]) -> Optional[Device]:
        with self._session() as s:
            d = s.exec(select(Device).where(Device.id == pk, Device.owner_id == owner_id)).first()
            if not d:
                return None
            for key, value in changes.items():
                setattr(d, key, value)
            s.add(d)
            s.commit()
            s.refresh(d)
            return d

    def delete_device(self, pk: int, owner_id: str) -> bool:
        with self._session() as s:
            d = s.exec(select(Device).where(Device.id == pk, Device.owner_id == owner_id)).first()
            if not d:
                return False
            s.delete(d)
            s.commit()
            return True

    def save_device_relays(self, pk: int, relays: list[dict]) -> None:
        """Overwrite the stored relay configuration of one device."""
        with self._session() as s:
            d = s.get(Device, pk)
            if not d:
                # deleted between load and write; nothing left to update
                log.warning("[STORE] device pk=%s vanished before relay write", pk)
                return
            d.relays = list(relays)
            s.add(d)
            s.commit()

    def mark_seen(self, device_id: str, seen_at: datetime) -> Optional[Device]:
        with self._session() as s:
            d = s.exec(select(Device).where(Device.device_id == device_id)).first()
            if not d:
                return None
            if d.last_seen is None or seen_at > d.last_seen:
                d.last_seen = seen_at
            d.status = "online"
            s.add(d)
            s.commit()
            s.refresh(d)
            return d

    # ---------------- telemetry ----------------
    def insert_telemetry_record(self, record: TelemetryRecord) -> TelemetryRecord:
        with self._session() as s:
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def latest_readings(self, device_ids: list[str]) -> list[TelemetryRecord]:
        out: list[TelemetryRecord] = []
        with self._session() as s:
            for device_id in device_ids:
                row = s.exec(
                    select(TelemetryRecord)
                    .where(TelemetryRecord.device_id == device_id)
                    .order_by(TelemetryRecord.timestamp.desc())
                    .limit(1)
                ).first()
                if row:
                    out.append(row)
        return out
