from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from layerhop.api.models import (
    ActionFailedEvent,
    HopHistoryResponse,
    HostRecordResponse,
    InviteEvent,
    LayerMapEntry,
    PeerLayerReport,
    PeerMessageEvent,
    ProximityReport,
    SessionStateResponse,
    SignalAccepted,
    ToastPreference,
    WhisperReport,
    ZoneEvent,
)
from layerhop.common.config import settings
from layerhop.common.types import LayerEstimate
from layerhop.engine.continent import ContinentClassifier
from layerhop.engine.machine import HopSessionStateMachine
from layerhop.engine.memory import HostMemory
from layerhop.engine.scheduler import LoopScheduler
from layerhop.engine.signals import LayerSignalCollector
from layerhop.engine.state import SessionSnapshot
from layerhop.gateway.base import GroupMembershipGateway, NotificationPresenter
from layerhop.persist.sqlite import SqlitePersistence

app = FastAPI(title="layerhop")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)

CLIENT_QUEUE_SIZE = 64
RECENT_ACTIONS = 50
TOAST_PREFERENCE = "toast_duration"

persistence: SqlitePersistence | None = None
machine: HopSessionStateMachine | None = None
collector: LayerSignalCollector | None = None
memory: HostMemory | None = None
toast_duration: int = settings.toast_duration

# Game client connections; each gets every outbound action and snapshot
client_queues: set[asyncio.Queue[Dict[str, object]]] = set()
recent_actions: Deque[Dict[str, object]] = deque(maxlen=RECENT_ACTIONS)


def _publish(message: Dict[str, object]) -> None:
    for queue in list(client_queues):
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            # Slow client: drop its oldest frame.
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                pass


class ClientGateway(GroupMembershipGateway):
    """Forwards group actions to the connected game client."""

    def _send(self, action: str, host: str | None = None, text: str | None = None) -> None:
        message: Dict[str, object] = {"type": "action", "action": action}
        if host is not None:
            message["host"] = host
        if text is not None:
            message["text"] = text
        recent_actions.append(message)
        _publish(message)

    def request_hop(self) -> None:
        self._send("request_hop")

    def accept_invite(self, host_identity: str) -> None:
        self._send("accept_invite", host_identity)

    def decline_invite(self, host_identity: str) -> None:
        self._send("decline_invite", host_identity)

    def leave_group(self) -> None:
        self._send("leave_group")

    def send_whisper(self, host_identity: str, text: str) -> None:
        self._send("send_whisper", host_identity, text)


class ClientPresenter(NotificationPresenter):
    def on_session_state_changed(self, snapshot: SessionSnapshot) -> None:
        message: Dict[str, object] = {"type": "state", "toast_duration": toast_duration}
        message.update(snapshot.to_dict())
        _publish(message)


def _get_machine() -> HopSessionStateMachine:
    assert machine is not None
    return machine


def _get_collector() -> LayerSignalCollector:
    assert collector is not None
    return collector


def _get_memory() -> HostMemory:
    assert memory is not None
    return memory


def _get_persistence() -> SqlitePersistence:
    assert persistence is not None
    return persistence


def _check_api_key(provided: str | None) -> None:
    if settings.api_key and provided != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _state_response(snapshot: SessionSnapshot) -> SessionStateResponse:
    return SessionStateResponse(**snapshot.to_dict())


def _signal_response(estimate: LayerEstimate | None) -> SignalAccepted:
    if estimate is None:
        return SignalAccepted(accepted=False)
    return SignalAccepted(accepted=True, layer=estimate.layer_number)


@app.on_event("startup")
async def _startup() -> None:
    global persistence, machine, collector, memory, toast_duration
    persistence = SqlitePersistence(settings.db_path)
    scheduler = LoopScheduler(asyncio.get_running_loop())
    collector = LayerSignalCollector(
        ContinentClassifier(), scheduler.now, stale_seconds=settings.signal_stale_seconds
    )
    memory = HostMemory(scheduler.now, persistence)
    loaded = memory.load()
    logger.info("Loaded %s host records", loaded)
    toast_duration = int(persistence.get_preference(TOAST_PREFERENCE, settings.toast_duration))
    machine = HopSessionStateMachine(
        ClientGateway(),
        ClientPresenter(),
        collector,
        memory,
        scheduler,
        settings.hop_policy(),
        history=persistence,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    if persistence is not None:
        persistence.close()


@app.get("/hop", response_model=SessionStateResponse)
async def hop_state(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    return _state_response(_get_machine().snapshot())


@app.get("/hop/last", response_model=SessionStateResponse)
async def hop_last(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    outcome = _get_machine().last_outcome
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No finished hop")
    return _state_response(outcome)


@app.post("/hop/request", response_model=SessionStateResponse)
async def hop_request(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.request_hop()
    return _state_response(hop.snapshot())


@app.post("/hop/cancel", response_model=SessionStateResponse)
async def hop_cancel(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.cancel()
    return _state_response(hop.snapshot())


@app.post("/events/invite", response_model=SessionStateResponse)
async def event_invite(
    req: InviteEvent, x_api_key: str | None = Header(default=None)
) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_invite_received(req.host, req.payload())
    return _state_response(hop.snapshot())


@app.post("/events/message", response_model=SessionStateResponse)
async def event_message(
    req: PeerMessageEvent, x_api_key: str | None = Header(default=None)
) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_peer_message(req.host, req.text)
    return _state_response(hop.snapshot())


@app.post("/events/disbanded", response_model=SessionStateResponse)
async def event_disbanded(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_group_disbanded()
    return _state_response(hop.snapshot())


@app.post("/events/left", response_model=SessionStateResponse)
async def event_left(x_api_key: str | None = Header(default=None)) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_left_group()
    return _state_response(hop.snapshot())


@app.post("/events/action-failed", response_model=SessionStateResponse)
async def event_action_failed(
    req: ActionFailedEvent, x_api_key: str | None = Header(default=None)
) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_action_failed(req.action, req.host)
    return _state_response(hop.snapshot())


@app.post("/events/zone", response_model=SessionStateResponse)
async def event_zone(
    req: ZoneEvent, x_api_key: str | None = Header(default=None)
) -> SessionStateResponse:
    _check_api_key(x_api_key)
    hop = _get_machine()
    hop.on_zone_changed(req.zone_id, req.in_instance)
    return _state_response(hop.snapshot())


@app.get("/signals")
async def signals(x_api_key: str | None = Header(default=None)) -> Dict[str, object]:
    _check_api_key(x_api_key)
    return _get_collector().snapshot()


@app.post("/signals/peer", response_model=SignalAccepted)
async def signal_peer(
    req: PeerLayerReport, x_api_key: str | None = Header(default=None)
) -> SignalAccepted:
    _check_api_key(x_api_key)
    return _signal_response(_get_collector().report_peer_layer(req.layer))


@app.post("/signals/whisper", response_model=SignalAccepted)
async def signal_whisper(
    req: WhisperReport, x_api_key: str | None = Header(default=None)
) -> SignalAccepted:
    _check_api_key(x_api_key)
    return _signal_response(_get_collector().report_self_whisper(req.text))


@app.post("/signals/proximity", response_model=SignalAccepted)
async def signal_proximity(
    req: ProximityReport, x_api_key: str | None = Header(default=None)
) -> SignalAccepted:
    _check_api_key(x_api_key)
    return _signal_response(_get_collector().observe_guid(req.guid))


@app.post("/signals/layer-map")
async def signal_layer_map(
    entries: List[LayerMapEntry], x_api_key: str | None = Header(default=None)
) -> Dict[str, int]:
    _check_api_key(x_api_key)
    decoder = _get_collector().decoder
    for entry in entries:
        decoder.learn_layer(entry.instance_id, entry.zone_uid, entry.layer)
    return {"known_layers": decoder.layer_count()}


@app.get("/hosts", response_model=List[HostRecordResponse])
async def hosts(x_api_key: str | None = Header(default=None)) -> List[HostRecordResponse]:
    _check_api_key(x_api_key)
    return [
        HostRecordResponse(
            host_identity=record.host_identity,
            last_outcome=record.last_outcome.value,
            recorded_at=record.recorded_at,
            expires_at=record.expires_at,
        )
        for record in _get_memory().snapshot()
    ]


@app.get("/history", response_model=HopHistoryResponse)
async def history(
    limit: int = 50, x_api_key: str | None = Header(default=None)
) -> HopHistoryResponse:
    _check_api_key(x_api_key)
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid limit")
    store = _get_persistence()
    store.flush()
    return HopHistoryResponse(entries=store.hop_history(limit))


@app.get("/actions")
async def actions(x_api_key: str | None = Header(default=None)) -> Dict[str, object]:
    _check_api_key(x_api_key)
    return {"actions": list(recent_actions)}


@app.get("/preferences/toast", response_model=ToastPreference)
async def get_toast(x_api_key: str | None = Header(default=None)) -> ToastPreference:
    _check_api_key(x_api_key)
    return ToastPreference(duration=toast_duration)


@app.put("/preferences/toast", response_model=ToastPreference)
async def put_toast(
    req: ToastPreference, x_api_key: str | None = Header(default=None)
) -> ToastPreference:
    global toast_duration
    _check_api_key(x_api_key)
    _get_persistence().set_preference(TOAST_PREFERENCE, req.duration)
    toast_duration = req.duration
    return req


def _dispatch_client_event(data: Dict[str, object]) -> None:
    """Route one inbound websocket frame; raises ValueError on bad input."""
    hop = _get_machine()
    kind = data.get("type")
    if kind == "request":
        hop.request_hop()
    elif kind == "cancel":
        hop.cancel()
    elif kind == "invite":
        event = InviteEvent(**_fields(data, "host", "continent", "zone", "message"))
        hop.on_invite_received(event.host, event.payload())
    elif kind == "message":
        event = PeerMessageEvent(**_fields(data, "host", "text"))
        hop.on_peer_message(event.host, event.text)
    elif kind == "disbanded":
        hop.on_group_disbanded()
    elif kind == "left":
        hop.on_left_group()
    elif kind == "action_failed":
        event = ActionFailedEvent(**_fields(data, "action", "host"))
        hop.on_action_failed(event.action, event.host)
    elif kind == "zone":
        event = ZoneEvent(**_fields(data, "zone_id", "in_instance"))
        hop.on_zone_changed(event.zone_id, event.in_instance)
    elif kind == "peer_layer":
        _get_collector().report_peer_layer(PeerLayerReport(**_fields(data, "layer")).layer)
    elif kind == "self_whisper":
        _get_collector().report_self_whisper(WhisperReport(**_fields(data, "text")).text)
    elif kind == "proximity":
        _get_collector().observe_guid(ProximityReport(**_fields(data, "guid")).guid)
    else:
        raise ValueError(f"Unknown event type {kind!r}")


def _fields(data: Dict[str, object], *names: str) -> Dict[str, object]:
    return {name: data[name] for name in names if name in data}


async def _ws_keepalive(ws: WebSocket, interval: float = 30.0) -> None:
    while True:
        try:
            await asyncio.sleep(interval)
            await ws.send_json({"type": "ping"})
        except Exception:
            break


async def _pump_client(ws: WebSocket, queue: asyncio.Queue[Dict[str, object]]) -> None:
    while True:
        try:
            message = await queue.get()
        except asyncio.CancelledError:
            break
        try:
            await ws.send_json(message)
        except Exception:
            logger.exception("Client websocket send failed")
            break


@app.websocket("/client/ws")
async def client_ws(ws: WebSocket, key: str | None = None) -> None:
    _check_api_key(key)
    await ws.accept()
    queue: asyncio.Queue[Dict[str, object]] = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
    client_queues.add(queue)
    pump = asyncio.create_task(_pump_client(ws, queue))
    keepalive = asyncio.create_task(_ws_keepalive(ws))
    try:
        while True:
            try:
                data = await ws.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError:
                await ws.send_json({"type": "error", "detail": "Invalid JSON"})
                continue
            except Exception:
                logger.exception("Client websocket receive failed")
                break
            if not isinstance(data, dict):
                await ws.send_json({"type": "error", "detail": "Expected an object"})
                continue
            try:
                _dispatch_client_event(data)
            except (ValidationError, ValueError) as exc:
                await ws.send_json({"type": "error", "detail": str(exc)})
    finally:
        pump.cancel()
        keepalive.cancel()
        client_queues.discard(queue)
