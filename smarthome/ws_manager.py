import asyncio
import json
import logging
from queue import Queue, Empty
from typing import Any, Set

from fastapi import WebSocket

log = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        log.info("[WS] client connected (%d active)", len(self.active_connections))

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
                log.info("[WS] client disconnected (%d active)", len(self.active_connections))

    async def broadcast_text(self, message: str):
        tasks = []
        async with self._lock:
            for ws in list(self.active_connections):
                tasks.append(self._safe_send(ws, message))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception:
            await self.disconnect(ws)


class LiveFanout:
    """Thread-safe entry point for pushing events to live subscribers.

    Ingestion workers call ``emit`` from their own threads; the frames are
    queued and ``run_forwarder`` (a task on the event loop) broadcasts them
    to whichever sessions are connected at send time. Nothing is replayed
    to sessions that connect later.
    """

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._queue: Queue[str] = Queue()

    def emit(self, event: str, data: Any) -> None:
        self._queue.put(json.dumps({"event": event, "data": data}, default=str))

    def pending(self) -> int:
        return self._queue.qsize()

    async def flush(self) -> int:
        sent = 0
        while True:
            try:
                frame = self._queue.get_nowait()
            except Empty:
                return sent
            await self.manager.broadcast_text(frame)
            sent += 1

    async def run_forwarder(self, idle_sleep: float = 0.05):
        while True:
            try:
                if not await self.flush():
                    await asyncio.sleep(idle_sleep)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[WS] forwarder error")
                await asyncio.sleep(idle_sleep)
