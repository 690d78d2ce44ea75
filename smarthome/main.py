import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends, Request

from .auth import CurrentUser, get_current_user
from .dispatcher import CommandDispatcher
from .errors import register_exception_handlers
from .ingest import DeviceTracker, IngestionRouter, TelemetryPersister
from .models import Device
from .mqtt_handler import BusClient
from .relays import RelayBank
from .schemas import (
    ControlRequest, ControlResponse, DeviceConfiguration, DeviceCreate, DeviceOut,
    DeviceStatusOut, DeviceUpdate, LatestReadingOut,
)
from .settings import settings
from .storage import DeviceStore
from .utils import add_cors
from .ws_manager import ConnectionManager, LiveFanout

log = logging.getLogger(__name__)


@dataclass
class Services:
    store: DeviceStore
    manager: ConnectionManager
    fanout: LiveFanout
    router: IngestionRouter
    bus: Any
    dispatcher: CommandDispatcher


def build_services(store: Optional[DeviceStore] = None, bus: Any = None) -> Services:
    store = store or DeviceStore()
    manager = ConnectionManager()
    fanout = LiveFanout(manager)
    router = IngestionRouter(
        TelemetryPersister(store),
        DeviceTracker(store),
        fanout,
        telemetry_topic=settings.mqtt_topic_sensors,
        alert_topic=settings.mqtt_topic_alert,
        max_workers=settings.ingest_workers,
        max_backlog=settings.ingest_max_backlog,
    )
    if bus is None:
        bus = BusClient(
            settings.mqtt_host,
            settings.mqtt_port,
            subscriptions=router.topics,
            sink=router.submit,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            client_id=settings.mqtt_client_id,
        )
    dispatcher = CommandDispatcher(
        store,
        bus,
        control_topic=settings.mqtt_topic_control,
        publish_timeout=settings.publish_timeout_seconds,
        storage_timeout=settings.storage_timeout_seconds,
        liveness_window=settings.liveness_window_seconds,
    )
    return Services(store, manager, fanout, router, bus, dispatcher)


def get_services(request: Request) -> Services:
    return request.app.state.services


def _device_out(d: Device) -> DeviceOut:
    return DeviceOut(
        id=d.id,
        deviceId=d.device_id,
        name=d.name,
        type=d.type,
        location=d.location,
        status=d.status,
        lastSeen=d.last_seen,
        configuration=DeviceConfiguration(sensors=d.sensors or [], relays=list(RelayBank.coerce(d.relays))),
        owner=d.owner_id,
        createdAt=d.created_at,
    )


def _relays_json(config: DeviceConfiguration) -> list[dict]:
    try:
        return RelayBank.load(config.relays).to_json()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def create_app(services: Optional[Services] = None, start_bus: bool = True) -> FastAPI:
    app = FastAPI(title="Smart Home API", version="0.1.0")
    add_cors(app)
    register_exception_handlers(app)
    app.state.services = services or build_services()

    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(level=settings.log_level)
        svc: Services = app.state.services
        svc.store.init_schema()
        if start_bus:
            try:
                svc.bus.start()
            except Exception as e:
                log.error("[MQTT] failed to start: %s", e)
        app.state.forwarder = asyncio.create_task(svc.fanout.run_forwarder())

    @app.on_event("shutdown")
    async def on_shutdown():
        svc: Services = app.state.services
        forwarder = getattr(app.state, "forwarder", None)
        if forwarder:
            forwarder.cancel()
        if start_bus:
            svc.bus.stop()
        svc.router.shutdown(wait=False)
        svc.dispatcher.shutdown()

    # ---------------- devices ----------------
    @app.get("/api/devices")
    def list_devices(user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        return {"devices": [_device_out(d) for d in svc.store.list_devices(user.user_id)]}

    @app.get("/api/devices/{device_pk}")
    def get_device(device_pk: int, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        d = svc.store.find_device_by_id_and_owner(device_pk, user.user_id)
        if not d:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"device": _device_out(d)}

    @app.post("/api/devices", status_code=201)
    def add_device(body: DeviceCreate, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        if svc.store.find_device_by_device_id(body.deviceId):
            raise HTTPException(status_code=400, detail="Device already exists")
        d = svc.store.create_device(Device(
            device_id=body.deviceId,
            name=body.name,
            type=body.type,
            location=body.location,
            sensors=[s.model_dump() for s in body.configuration.sensors],
            relays=_relays_json(body.configuration),
            owner_id=user.user_id,
        ))
        return {"message": "Device added successfully", "device": _device_out(d)}

    @app.put("/api/devices/{device_pk}")
    def update_device(device_pk: int, body: DeviceUpdate, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        changes: dict[str, Any] = body.model_dump(exclude_unset=True, exclude={"configuration"})
        if body.configuration is not None:
            changes["sensors"] = [s.model_dump() for s in body.configuration.sensors]
            changes["relays"] = _relays_json(body.configuration)
            if not svc.store.find_device_by_id_and_owner(device_pk, user.user_id):
                raise HTTPException(status_code=404, detail="Device not found")
            # relays are also rewritten by control dispatch
            with svc.dispatcher.locked(device_pk):
                d = svc.store.update_device(device_pk, user.user_id, changes)
        else:
            d = svc.store.update_device(device_pk, user.user_id, changes)
        if not d:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"message": "Device updated successfully", "device": _device_out(d)}

    @app.delete("/api/devices/{device_pk}")
    def delete_device(device_pk: int, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        if not svc.store.delete_device(device_pk, user.user_id):
            raise HTTPException(status_code=404, detail="Device not found")
        svc.dispatcher.forget(device_pk)
        return {"message": "Device deleted successfully"}

    # ---------------- control / status ----------------
    @app.post("/api/devices/{device_pk}/control", response_model=ControlResponse)
    def control_device(device_pk: int, body: ControlRequest, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        command = svc.dispatcher.dispatch_control(device_pk, user.user_id, body.intent())
        return ControlResponse(message="Control command sent successfully", controlCommand=command)

    @app.get("/api/devices/{device_pk}/status", response_model=DeviceStatusOut)
    def device_status(device_pk: int, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        return svc.dispatcher.get_status(device_pk, user.user_id)

    # ---------------- sensors ----------------
    @app.get("/api/sensors/latest")
    def latest_sensor_data(user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
        device_ids = [d.device_id for d in svc.store.list_devices(user.user_id)]
        rows = svc.store.latest_readings(device_ids)
        return {"sensorData": [LatestReadingOut.model_validate(r, from_attributes=True) for r in rows]}

    @app.get("/api/health")
    def health(svc: Services = Depends(get_services)):
        return {
            "mqtt": svc.bus.health(),
            "ingest": dict(svc.router.stats, backlog=svc.router.backlog),
            "relay_divergence": svc.router.tracker.divergences,
            "live_sessions": len(svc.manager.active_connections),
        }

    @app.websocket("/ws")
    async def live_ws(websocket: WebSocket):
        manager = app.state.services.manager
        await manager.connect(websocket)
        try:
            while True:
                # clients don't send anything; this just notices the close
                await websocket.receive_text()
        except WebSocketDisconnect:
            await manager.disconnect(websocket)

    return app


app = create_app()
