from __future__ import annotations

from abc import ABC, abstractmethod

from layerhop.engine.state import SessionSnapshot


class GroupMembershipGateway(ABC):
    """The only component allowed to touch group membership.

    Every call is fire-and-forget; outcomes come back as inbound events.
    """

    @abstractmethod
    def request_hop(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def accept_invite(self, host_identity: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def decline_invite(self, host_identity: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def leave_group(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def send_whisper(self, host_identity: str, text: str) -> None:
        raise NotImplementedError


class NotificationPresenter(ABC):
    @abstractmethod
    def on_session_state_changed(self, snapshot: SessionSnapshot) -> None:
        raise NotImplementedError
