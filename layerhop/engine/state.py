from __future__ import annotations

from dataclasses import dataclass, field

from layerhop.common.types import Continent, FailureReason, HopState, LayerEstimate
from layerhop.engine.scheduler import TimerHandle

IN_GROUP_STATES = frozenset({HopState.JOINED, HopState.VERIFYING})


@dataclass
class HopSession:
    generation: int
    continent: Continent
    started_at: float
    state: HopState = HopState.SEARCHING
    host_identity: str | None = None
    target_layer: int | None = None
    baseline: LayerEstimate | None = None
    joined_at: float | None = None
    retries_used: int = 0
    last_reminder_at: float | None = None
    saw_signal: bool = False
    unchanged_seen: bool = False
    group_gone: bool = False
    timers: list[TimerHandle] = field(default_factory=list)

    @property
    def from_layer(self) -> int | None:
        return self.baseline.layer_number if self.baseline else None

    def clear_host(self) -> None:
        self.host_identity = None
        self.target_layer = None
        self.baseline = None
        self.joined_at = None
        self.last_reminder_at = None
        self.saw_signal = False
        self.unchanged_seen = False
        self.group_gone = False


@dataclass(frozen=True)
class SessionSnapshot:
    state: HopState
    host_identity: str | None = None
    target_layer: int | None = None
    elapsed_seconds: float = 0.0
    retries_used: int = 0
    reason: FailureReason | None = None
    message: str | None = None
    from_layer: int | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "host_identity": self.host_identity,
            "target_layer": self.target_layer,
            "elapsed_seconds": self.elapsed_seconds,
            "retries_used": self.retries_used,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "from_layer": self.from_layer,
        }


IDLE_SNAPSHOT = SessionSnapshot(state=HopState.IDLE)
