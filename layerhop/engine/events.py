from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from layerhop.common.types import LayerEstimate


class TimerKind(str, Enum):
    SETTLE = "settle"
    HOP_TIMEOUT = "hop_timeout"
    REMINDER = "reminder"
    RETRY = "retry"
    SEARCH_TIMEOUT = "search_timeout"


class GatewayAction(str, Enum):
    REQUEST = "request_hop"
    ACCEPT = "accept_invite"
    DECLINE = "decline_invite"
    LEAVE = "leave_group"
    WHISPER = "send_whisper"


@dataclass(frozen=True)
class RequestHop:
    pass


@dataclass(frozen=True)
class CancelHop:
    pass


@dataclass(frozen=True)
class InviteReceived:
    host_identity: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PeerMessageReceived:
    host_identity: str
    text: str


@dataclass(frozen=True)
class GroupDisbanded:
    pass


@dataclass(frozen=True)
class GroupLeft:
    pass


@dataclass(frozen=True)
class ActionFailed:
    action: GatewayAction
    host_identity: str | None = None


@dataclass(frozen=True)
class EstimateObserved:
    estimate: LayerEstimate


@dataclass(frozen=True)
class ZoneChanged:
    zone_id: int | None
    in_instance: bool = False


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind
    generation: int


Event = Union[
    RequestHop,
    CancelHop,
    InviteReceived,
    PeerMessageReceived,
    GroupDisbanded,
    GroupLeft,
    ActionFailed,
    EstimateObserved,
    ZoneChanged,
    TimerFired,
]
