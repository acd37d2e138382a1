from __future__ import annotations

import logging

from layerhop.common import constants as c
from layerhop.engine.scheduler import Scheduler, TimerHandle
from layerhop.gateway.base import GroupMembershipGateway

logger = logging.getLogger(__name__)


class GroupLeaver:
    """Keeps asking the gateway to leave until it reports that we are out.

    Fast cadence during the grace period, slow cadence afterwards. Runs
    independently of any hop session.
    """

    def __init__(
        self,
        gateway: GroupMembershipGateway,
        scheduler: Scheduler,
        retry_seconds: float = c.LEAVE_RETRY_SECONDS,
        grace_seconds: float = c.LEAVE_GRACE_SECONDS,
        slow_seconds: float = c.LEAVE_SLOW_SECONDS,
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.retry_seconds = retry_seconds
        self.grace_seconds = grace_seconds
        self.slow_seconds = slow_seconds
        self.pending = False
        self.attempts = 0
        self._started_at = 0.0
        self._token = 0
        self._handle: TimerHandle | None = None

    def leave(self) -> None:
        now = self.scheduler.now()
        if self.pending:
            # Already leaving: reopen the grace period and pull a slow retry forward.
            self._started_at = now
            if self._handle is not None and self._handle.due - now > self.retry_seconds:
                self._handle.cancel()
                token = self._token
                self._handle = self.scheduler.call_later(
                    self.retry_seconds, lambda: self._attempt(token)
                )
            return
        self.pending = True
        self.attempts = 0
        self._started_at = self.scheduler.now()
        self._token += 1
        self._attempt(self._token)

    def confirm_left(self) -> None:
        if self.pending:
            logger.info("Left group after %s attempt(s)", self.attempts)
        self.pending = False
        self._token += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def failed(self) -> None:
        logger.warning("Leave attempt %s rejected by the gateway", self.attempts)

    def _attempt(self, token: int) -> None:
        if not self.pending or token != self._token:
            return
        self.attempts += 1
        try:
            self.gateway.leave_group()
        except Exception:
            logger.exception("Leave group call failed")
        in_grace = self.scheduler.now() - self._started_at < self.grace_seconds
        delay = self.retry_seconds if in_grace else self.slow_seconds
        self._handle = self.scheduler.call_later(delay, lambda: self._attempt(token))
