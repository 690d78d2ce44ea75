from datetime import datetime, timezone
from typing import Any, Literal, Optional

from dateutil import parser as dtparser
from pydantic import BaseModel, ConfigDict, StrictBool, field_validator

from .models import as_utc
from .relays import RelaySlot

DeviceType = Literal["esp32", "sensor", "relay"]
SensorType = Literal["dht22", "pir", "ldr", "mq2", "water_level"]


class TelemetryIn(BaseModel):
    """Body of a ``home/sensors`` message. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore")

    device_id: str
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
    timestamp: Optional[datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, v: Any):
        if v is None or v == "":
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            # firmware sends epoch seconds or milliseconds
            seconds = v / 1000 if v > 1e11 else v
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError) as e:
                raise ValueError(f"epoch timestamp out of range: {v}") from e
        if isinstance(v, str):
            return dtparser.isoparse(v)
        return v

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]):
        return as_utc(v) if v is not None else None

    def reported_relays(self) -> dict[str, bool]:
        return {"relay1": self.relay1, "relay2": self.relay2, "relay3": self.relay3, "relay4": self.relay4}


class SensorConfig(BaseModel):
    type: SensorType
    pin: Optional[int] = None
    enabled: bool = True


class DeviceConfiguration(BaseModel):
    sensors: list[SensorConfig] = []
    relays: list[RelaySlot] = []


class DeviceCreate(BaseModel):
    deviceId: str
    name: str
    type: DeviceType
    location: str
    configuration: DeviceConfiguration = DeviceConfiguration()


class DeviceUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[DeviceType] = None
    location: Optional[str] = None
    configuration: Optional[DeviceConfiguration] = None


class DeviceOut(BaseModel):
    id: int
    deviceId: str
    name: str
    type: str
    location: str
    status: str
    lastSeen: datetime
    configuration: DeviceConfiguration
    owner: str
    createdAt: datetime


class ControlRequest(BaseModel):
    relay1: Optional[StrictBool] = None
    relay2: Optional[StrictBool] = None
    relay3: Optional[StrictBool] = None
    relay4: Optional[StrictBool] = None

    def intent(self) -> dict[str, bool]:
        """Only the relays the caller actually asked to change."""
        return self.model_dump(exclude_none=True)


class ControlCommand(BaseModel):
    device_id: str
    relay1: bool
    relay2: bool
    relay3: bool
    relay4: bool


class ControlResponse(BaseModel):
    message: str
    controlCommand: ControlCommand


class DeviceStatusOut(BaseModel):
    deviceId: str
    status: Literal["online", "offline"]
    lastSeen: datetime
    relays: list[RelaySlot]


class LatestReadingOut(BaseModel):
    device_id: str
    temperature: float
    humidity: float
    motion: float
    light_level: float
    gas_level: float
    water_level: float
    relay1: bool
    relay2: bool
    relay3: bool
    relay4: bool
    timestamp: datetime
