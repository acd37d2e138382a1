from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Continent(str, Enum):
    AZEROTH = "azeroth"
    OUTLAND = "outland"
    UNKNOWN = "unknown"


class SignalSource(str, Enum):
    PROXIMITY = "proximity"
    PEER_REPORT = "peer_report"
    SELF_WHISPER = "self_whisper"


class HostOutcome(str, Enum):
    CROSS_CONTINENT = "cross_continent"
    RECENTLY_HOPPED = "recently_hopped"
    DECLINED = "declined"
    UNKNOWN = "unknown"


class HopState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    JOINED = "joined"
    VERIFYING = "verifying"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    TIMED_OUT = "timed_out"
    LAYER_UNCHANGED = "layer_unchanged"
    GROUP_DISBANDED = "group_disbanded"
    CROSS_CONTINENT = "cross_continent"
    SAME_LAYER = "same_layer"
    NO_RESPONSE = "no_response"
    JOIN_FAILED = "join_failed"


@dataclass(frozen=True)
class LayerEstimate:
    layer_number: int | None
    continent: Continent
    observed_at: float
    source: SignalSource | None = None

    @property
    def known(self) -> bool:
        return self.layer_number is not None

    @classmethod
    def unknown(cls, continent: Continent, observed_at: float) -> LayerEstimate:
        """Synthetic baseline used when no signal exists at join time."""
        return cls(layer_number=None, continent=continent, observed_at=observed_at)


@dataclass(frozen=True)
class HostRecord:
    host_identity: str
    last_outcome: HostOutcome
    recorded_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class PeerMessage:
    layer: int | None = None
    continent: Continent | None = None
    is_hop_message: bool = False
