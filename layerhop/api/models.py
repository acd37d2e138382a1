from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from layerhop.engine.events import GatewayAction


class InviteEvent(BaseModel):
    host: str = Field(min_length=1)
    continent: Optional[str] = None
    zone: Optional[int] = None
    message: Optional[str] = None

    def payload(self) -> dict:
        return {
            key: value
            for key, value in (
                ("continent", self.continent),
                ("zone", self.zone),
                ("message", self.message),
            )
            if value is not None
        }


class PeerMessageEvent(BaseModel):
    host: str = Field(min_length=1)
    text: str


class ActionFailedEvent(BaseModel):
    action: GatewayAction
    host: Optional[str] = None


class ZoneEvent(BaseModel):
    zone_id: Optional[int] = None
    in_instance: bool = False


class PeerLayerReport(BaseModel):
    layer: Optional[int] = None


class WhisperReport(BaseModel):
    text: str


class ProximityReport(BaseModel):
    guid: str


class LayerMapEntry(BaseModel):
    instance_id: int
    zone_uid: int
    layer: int = Field(gt=0)


class SignalAccepted(BaseModel):
    accepted: bool
    layer: Optional[int] = None


class SessionStateResponse(BaseModel):
    state: str
    host_identity: Optional[str] = None
    target_layer: Optional[int] = None
    elapsed_seconds: float = 0.0
    retries_used: int = 0
    reason: Optional[str] = None
    message: Optional[str] = None
    from_layer: Optional[int] = None


class HostRecordResponse(BaseModel):
    host_identity: str
    last_outcome: str
    recorded_at: float
    expires_at: float


class HopHistoryEntry(BaseModel):
    outcome: str
    reason: Optional[str] = None
    host_identity: Optional[str] = None
    from_layer: Optional[int] = None
    to_layer: Optional[int] = None
    retries_used: int = 0
    elapsed_seconds: float = 0.0
    finished_at: float


class HopHistoryResponse(BaseModel):
    entries: List[HopHistoryEntry]


class ToastPreference(BaseModel):
    duration: int = Field(ge=1, le=60)
