from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Column, JSON

DEVICE_TYPES = ("esp32", "sensor", "relay")
SENSOR_TYPES = ("dht22", "pir", "ldr", "mq2", "water_level")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(ts: datetime) -> datetime:
    # naive values are taken to be UTC already
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out, also on backends (SQLite) that drop the offset."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None

class Device(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True, unique=True)
    name: str
    type: str
    location: str
    status: str = Field(default="offline")  # cache hint only, see dispatcher.get_status
    last_seen: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    sensors: list = Field(default_factory=list, sa_column=Column(JSON))
    relays: list = Field(default_factory=list, sa_column=Column(JSON))
    owner_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))

class TelemetryRecord(SQLModel, table=True):
    __tablename__ = "sensor_data"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)  # free-form, no foreign key
    temperature: float
    humidity: float
    motion: float
    light_level: float
    gas_level: float
    water_level: float
    relay1: bool = False
    relay2: bool = False
    relay3: bool = False
    relay4: bool = False
    timestamp: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False, index=True))
