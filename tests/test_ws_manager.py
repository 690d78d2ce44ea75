"""Tests for live fan-out to WebSocket sessions."""

import json
from unittest.mock import AsyncMock

import pytest

from smarthome.ws_manager import ConnectionManager, LiveFanout


def _socket(fail: bool = False):
    ws = AsyncMock()
    if fail:
        ws.send_text.side_effect = RuntimeError("closed")
    return ws


@pytest.mark.asyncio
async def test_broadcast_reaches_every_session():
    manager = ConnectionManager()
    a, b = _socket(), _socket()
    await manager.connect(a)
    await manager.connect(b)

    fanout = LiveFanout(manager)
    fanout.emit("sensorData", {"device_id": "esp-1"})
    assert await fanout.flush() == 1

    frame = json.loads(a.send_text.call_args.args[0])
    assert frame == {"event": "sensorData", "data": {"device_id": "esp-1"}}
    b.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_session_dropped_others_still_served():
    manager = ConnectionManager()
    dead, alive = _socket(fail=True), _socket()
    await manager.connect(dead)
    await manager.connect(alive)

    await manager.broadcast_text("hello")

    alive.send_text.assert_awaited_once_with("hello")
    assert dead not in manager.active_connections
    assert alive in manager.active_connections


@pytest.mark.asyncio
async def test_late_session_gets_no_replay():
    manager = ConnectionManager()
    fanout = LiveFanout(manager)
    early = _socket()
    await manager.connect(early)

    fanout.emit("alert", {"type": "gas"})
    await fanout.flush()

    late = _socket()
    await manager.connect(late)
    assert await fanout.flush() == 0
    late.send_text.assert_not_awaited()
    early.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent():
    manager = ConnectionManager()
    ws = _socket()
    await manager.connect(ws)
    await manager.disconnect(ws)
    await manager.disconnect(ws)
    assert manager.active_connections == set()
