from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .config import Settings
from .device_monitor import DeviceMonitor, create_monitor
from .errors import NotFoundError, ValidationError
from .event_log import DEVICE_HISTORY_WINDOW, events_to_csv
from .models import DeviceEvent, KnownDevice, NicknameUpdate, PrefUpdate, Prefs, Snapshot
from .providers import EnumerationProvider
from .state import MonitorState

WS_WAIT_SECONDS = 0.5


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[EnumerationProvider] = None,
    monitor: Optional[DeviceMonitor] = None,
) -> FastAPI:
    """
    Build the API around one monitor. The monitor is started and stopped
    with the app; pass a prebuilt one to control its wiring (tests do).
    """
    monitor = monitor or create_monitor(settings, provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        monitor.start()
        try:
            yield
        finally:
            await run_in_threadpool(monitor.stop)

    app = FastAPI(title="Device history backend", lifespan=lifespan)
    app.state.monitor = monitor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _state(request: Request) -> MonitorState:
        return request.app.state.monitor.state

    @app.get("/health")
    def health(request: Request) -> dict:
        current = request.app.state.monitor
        return {"status": "ok", "poller": current.status.value, "running": current.running}

    @app.get("/snapshot", response_model=Snapshot)
    def get_snapshot(request: Request) -> Snapshot:
        return _state(request).snapshot()

    @app.get("/events", response_model=List[DeviceEvent])
    def list_events(request: Request) -> List[DeviceEvent]:
        return list(_state(request).snapshot().events)

    @app.get("/events.csv", response_class=PlainTextResponse)
    def export_events(request: Request) -> PlainTextResponse:
        body = events_to_csv(_state(request).snapshot().events)
        return PlainTextResponse(
            body,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="device-history.csv"'},
        )

    @app.delete("/events")
    def clear_events(request: Request) -> dict:
        return {"cleared": _state(request).clear_events()}

    @app.get("/devices/{device_id:path}/events", response_model=List[DeviceEvent])
    def device_events(device_id: str, request: Request, limit: int = DEVICE_HISTORY_WINDOW) -> List[DeviceEvent]:
        return _state(request).device_events(device_id, limit)

    @app.put("/devices/{device_id:path}/nickname", response_model=KnownDevice)
    def set_nickname(device_id: str, payload: NicknameUpdate, request: Request) -> KnownDevice:
        try:
            return _state(request).set_nickname(device_id, payload.nickname)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Device not found")

    @app.delete("/devices/{device_id:path}")
    def forget_device(device_id: str, request: Request) -> dict:
        try:
            _state(request).forget_device(device_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"forgotten": True}

    @app.get("/prefs", response_model=Prefs)
    def get_prefs(request: Request) -> Prefs:
        return _state(request).prefs()

    @app.put("/prefs/theme", response_model=Prefs)
    def set_theme(payload: PrefUpdate, request: Request) -> Prefs:
        try:
            return _state(request).set_theme(payload.value)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.put("/prefs/tab", response_model=Prefs)
    def set_tab(payload: PrefUpdate, request: Request) -> Prefs:
        try:
            return _state(request).set_tab(payload.value)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.websocket("/ws/snapshots")
    async def snapshot_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        channel = websocket.app.state.monitor.state.channel
        subscription = channel.subscribe()
        # sends alone never notice a client that left while nothing changed
        gone = asyncio.ensure_future(_wait_for_disconnect(websocket))
        try:
            await websocket.send_json(channel.latest().model_dump(mode="json"))
            while not gone.done() and not channel.closed:
                snapshot = await run_in_threadpool(subscription.get, WS_WAIT_SECONDS)
                if snapshot is None or gone.done():
                    continue
                await websocket.send_json(snapshot.model_dump(mode="json"))
        except WebSocketDisconnect:
            return
        finally:
            gone.cancel()

    return app


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
