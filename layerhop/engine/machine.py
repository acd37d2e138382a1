from __future__ import annotations

import logging
from collections import deque

from layerhop.common.config import HopPolicy
from layerhop.common.constants import CONTINENT_LABELS, DECLINE_WHISPER
from layerhop.common.types import (
    Continent,
    FailureReason,
    HopState,
    HostOutcome,
    LayerEstimate,
    PeerMessage,
)
from layerhop.engine.continent import ContinentClassifier
from layerhop.engine.events import (
    ActionFailed,
    CancelHop,
    EstimateObserved,
    Event,
    GatewayAction,
    GroupDisbanded,
    GroupLeft,
    InviteReceived,
    PeerMessageReceived,
    RequestHop,
    TimerFired,
    TimerKind,
    ZoneChanged,
)
from layerhop.engine.leave import GroupLeaver
from layerhop.engine.memory import HostMemory, qualify_host
from layerhop.engine.parser import parse_peer_message
from layerhop.engine.scheduler import Scheduler
from layerhop.engine.signals import LayerSignalCollector
from layerhop.engine.state import (
    IDLE_SNAPSHOT,
    IN_GROUP_STATES,
    HopSession,
    SessionSnapshot,
)
from layerhop.gateway.base import GroupMembershipGateway, NotificationPresenter
from layerhop.persist.base import Persistence

logger = logging.getLogger(__name__)


class HopSessionStateMachine:
    """Owns at most one hop attempt and drives it to a terminal outcome.

    All input arrives through ``handle``. Calls made while a transition is
    running (a gateway action that synchronously reports an invite, a timer
    fired from inside a callback) are queued and run afterwards in arrival
    order. Scheduled callbacks carry the generation they were armed with and
    are ignored once the session has moved on.
    """

    def __init__(
        self,
        gateway: GroupMembershipGateway,
        presenter: NotificationPresenter,
        collector: LayerSignalCollector,
        memory: HostMemory,
        scheduler: Scheduler,
        policy: HopPolicy | None = None,
        history: Persistence | None = None,
    ) -> None:
        self.gateway = gateway
        self.presenter = presenter
        self.collector = collector
        self.memory = memory
        self.scheduler = scheduler
        self.policy = policy or HopPolicy()
        self.history = history
        self.classifier: ContinentClassifier = collector.classifier
        self.leaver = GroupLeaver(
            gateway,
            scheduler,
            retry_seconds=self.policy.leave_retry_seconds,
            grace_seconds=self.policy.leave_grace_seconds,
            slow_seconds=self.policy.leave_slow_seconds,
        )
        self.session: HopSession | None = None
        self.in_instance = False
        self.last_known_layer: int | None = None
        self.last_outcome: SessionSnapshot | None = None
        self._generation = 0
        self._pending: deque[Event] = deque()
        self._dispatching = False
        self._last_request_at: float | None = None
        self._last_broadcast_at: float | None = None
        self._whispers: dict[str, tuple[float, PeerMessage]] = {}
        self._decline_whispered: dict[str, float] = {}
        self._block: tuple[Continent, float] | None = None
        self._handlers = {
            RequestHop: self._on_request,
            CancelHop: self._on_cancel,
            InviteReceived: self._on_invite,
            PeerMessageReceived: self._on_peer_message,
            GroupDisbanded: self._on_disbanded,
            GroupLeft: self._on_left,
            ActionFailed: self._on_action_failed,
            EstimateObserved: self._on_estimate,
            ZoneChanged: self._on_zone,
            TimerFired: self._on_timer,
        }
        collector.subscribe(lambda estimate: self.handle(EstimateObserved(estimate)))

    # Public surface

    @property
    def state(self) -> HopState:
        return self.session.state if self.session else HopState.IDLE

    @property
    def continent(self) -> Continent:
        return self.collector.continent

    def handle(self, event: Event) -> None:
        self._pending.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                current = self._pending.popleft()
                handler = self._handlers.get(type(current))
                if handler is None:
                    logger.warning("Ignoring unknown event %r", current)
                    continue
                try:
                    handler(current)
                except Exception:
                    logger.exception("Failed to handle %s", type(current).__name__)
        finally:
            self._dispatching = False

    def request_hop(self) -> None:
        self.handle(RequestHop())

    def cancel(self) -> None:
        self.handle(CancelHop())

    def on_invite_received(self, host_identity: str, payload: dict | None = None) -> None:
        self.handle(InviteReceived(host_identity, dict(payload or {})))

    def on_peer_message(self, host_identity: str, text: str) -> None:
        self.handle(PeerMessageReceived(host_identity, text))

    def on_group_disbanded(self) -> None:
        self.handle(GroupDisbanded())

    def on_left_group(self) -> None:
        self.handle(GroupLeft())

    def on_action_failed(self, action: GatewayAction, host_identity: str | None = None) -> None:
        self.handle(ActionFailed(GatewayAction(action), host_identity))

    def on_zone_changed(self, zone_id: int | None, in_instance: bool = False) -> None:
        self.handle(ZoneChanged(zone_id, in_instance))

    def snapshot(self) -> SessionSnapshot:
        if self.session is None:
            return IDLE_SNAPSHOT
        return self._snapshot_of(self.session)

    def host_key(self, host_identity: str) -> str:
        continent = self.session.continent if self.session else self.continent
        return qualify_host(host_identity, continent, self.policy.home_realm)

    # Event handlers

    def _on_request(self, _event: RequestHop) -> None:
        now = self.scheduler.now()
        if self.in_instance:
            logger.info("Hop request blocked inside an instance")
            self._emit(
                SessionSnapshot(
                    state=self.state,
                    message="Can't request a layer hop while inside a dungeon or raid",
                )
            )
            return
        if self.session is not None:
            logger.info("Hop request rejected: session already %s", self.session.state.value)
            return
        cooldown = self.policy.request_cooldown_seconds
        if self._last_request_at is not None and now - self._last_request_at < cooldown:
            logger.info("Hop request rejected: cooldown")
            return
        self._last_request_at = now
        session = self._open_session()
        self._broadcast(session)
        self._emit(self._snapshot_of(session, message="Searching for a layer..."))

    def _on_invite(self, event: InviteReceived) -> None:
        host = event.host_identity
        now = self.scheduler.now()
        if self.in_instance:
            logger.debug("Ignoring invite from %s inside an instance", host)
            return
        key = self.host_key(host)
        if self.memory.should_auto_decline(key):
            record = self.memory.lookup(key)
            logger.info("Auto-declining %s (%s)", host, record.last_outcome.value)
            self._call(GatewayAction.DECLINE, host)
            return
        session = self.session
        if session is not None and session.state in IN_GROUP_STATES:
            if session.host_identity == host:
                return
            logger.info("Declining %s: already hopping with %s", host, session.host_identity)
            self._call(GatewayAction.DECLINE, host)
            self.memory.remember(key, HostOutcome.DECLINED, self.policy.declined_ttl)
            return

        message = self._invite_message(host, event.payload, now)
        hint = self._continent_hint(event.payload, message)
        if hint is None and self._block_applies(message, now):
            blocked, _ = self._block
            hint = self.classifier.other(blocked)
            self._block = (blocked, now + self.policy.cross_continent_ttl)
        if session is None:
            session = self._open_session()
        if not self.classifier.compatible(session.continent, hint):
            logger.info("Declining %s: host is in %s", host, hint.value)
            self._call(GatewayAction.DECLINE, host)
            self._reject_cross_continent(session, host, hint)
            return
        self._join(session, host, message)

    def _on_peer_message(self, event: PeerMessageReceived) -> None:
        now = self.scheduler.now()
        host = event.host_identity
        message = parse_peer_message(event.text)
        if message.layer is not None or message.continent is not None or message.is_hop_message:
            self._remember_whisper(host, message, now)
        session = self.session
        if session is None or session.state not in IN_GROUP_STATES:
            return
        if session.host_identity != host:
            return
        if message.continent is not None and not self.classifier.compatible(
            session.continent, message.continent
        ):
            logger.info("Host %s reports %s; leaving", host, message.continent.value)
            self._leave(session)
            self._reject_cross_continent(session, host, message.continent)
            return
        if message.layer is None:
            return
        if session.baseline is not None and message.layer == session.baseline.layer_number:
            logger.info("Host %s is on our layer %s; leaving", host, message.layer)
            self._leave(session)
            self._retry_or_fail(session, FailureReason.SAME_LAYER)
            return
        session.target_layer = message.layer
        self._emit(self._snapshot_of(session))
        if session.state == HopState.VERIFYING:
            self._evaluate(session)

    def _on_estimate(self, event: EstimateObserved) -> None:
        estimate = event.estimate
        session = self.session
        if session is None:
            self._note_idle_layer(estimate)
            return
        if (
            session.state in IN_GROUP_STATES
            and session.joined_at is not None
            and estimate.observed_at > session.joined_at
        ):
            session.saw_signal = True
            baseline = session.baseline
            if baseline is not None and baseline.known:
                if estimate.layer_number == baseline.layer_number:
                    session.unchanged_seen = True
        if estimate.known:
            self.last_known_layer = estimate.layer_number
        if session.state == HopState.VERIFYING:
            self._evaluate(session)

    def _on_disbanded(self, _event: GroupDisbanded) -> None:
        self.leaver.confirm_left()
        session = self.session
        if session is None or session.state not in IN_GROUP_STATES:
            return
        session.group_gone = True
        if not session.saw_signal:
            self._finish(
                session,
                HopState.FAILED,
                FailureReason.GROUP_DISBANDED,
                "Host left the group before the layer changed",
            )

    def _on_left(self, _event: GroupLeft) -> None:
        self.leaver.confirm_left()
        if self.session is not None and self.session.state in IN_GROUP_STATES:
            self.session.group_gone = True

    def _on_action_failed(self, event: ActionFailed) -> None:
        if event.action == GatewayAction.LEAVE:
            self.leaver.failed()
            return
        if event.action == GatewayAction.ACCEPT:
            session = self.session
            if (
                session is not None
                and session.state in IN_GROUP_STATES
                and session.host_identity == event.host_identity
            ):
                self._finish(
                    session,
                    HopState.FAILED,
                    FailureReason.JOIN_FAILED,
                    "Could not join the host's group",
                )
            return
        logger.warning("Gateway %s failed for %s", event.action.value, event.host_identity)

    def _on_zone(self, event: ZoneChanged) -> None:
        previous = self.continent
        self.collector.set_zone(event.zone_id)
        self.in_instance = event.in_instance
        current = self.continent
        if self._block is not None and self._block[0] != current:
            logger.info("Continent changed; dropping cross-continent block")
            self._block = None
        if self.session is not None and previous != current:
            logger.info(
                "Zone moved to %s mid-hop; session stays on %s",
                current.value,
                self.session.continent.value,
            )

    def _on_cancel(self, _event: CancelHop) -> None:
        session = self.session
        if session is None:
            return
        if session.state in IN_GROUP_STATES:
            self._leave(session)
        self._finish(session, HopState.CANCELLED, None, "Hop cancelled")

    def _on_timer(self, event: TimerFired) -> None:
        session = self.session
        if session is None or event.generation != session.generation:
            logger.debug("Dropping stale %s timer", event.kind.value)
            return
        if event.kind == TimerKind.SETTLE:
            if session.state == HopState.JOINED:
                self._enter_verifying(session)
        elif event.kind == TimerKind.HOP_TIMEOUT:
            if session.state in IN_GROUP_STATES:
                self._leave(session)
                if session.unchanged_seen:
                    self._finish(
                        session,
                        HopState.FAILED,
                        FailureReason.LAYER_UNCHANGED,
                        "Layer unchanged - the hop did not take",
                    )
                else:
                    self._finish(
                        session,
                        HopState.FAILED,
                        FailureReason.TIMED_OUT,
                        "Hop timed out - target an NPC to check your layer",
                    )
        elif event.kind == TimerKind.REMINDER:
            if session.state in IN_GROUP_STATES and not session.saw_signal:
                session.last_reminder_at = self.scheduler.now()
                if session.target_layer is not None:
                    hint = f"Stay near NPCs to confirm layer {session.target_layer}"
                else:
                    hint = "Stay near NPCs to confirm your layer"
                self._emit(self._snapshot_of(session, message=hint))
        elif event.kind == TimerKind.RETRY:
            if session.state == HopState.SEARCHING:
                self._broadcast(session)
                self._emit(self._snapshot_of(session, message="Searching for a layer..."))
        elif event.kind == TimerKind.SEARCH_TIMEOUT:
            if session.state == HopState.SEARCHING:
                self._finish(
                    session, HopState.FAILED, FailureReason.NO_RESPONSE, "No invite received"
                )

    # Transitions

    def _open_session(self) -> HopSession:
        self._generation += 1
        session = HopSession(
            generation=self._generation,
            continent=self.continent,
            started_at=self.scheduler.now(),
        )
        self.session = session
        logger.info("Hop session %s opened", session.generation)
        return session

    def _broadcast(self, session: HopSession) -> None:
        now = self.scheduler.now()
        self._last_broadcast_at = now
        self._call(GatewayAction.REQUEST)
        self._schedule(session, TimerKind.SEARCH_TIMEOUT, self.policy.search_timeout_seconds)

    def _join(self, session: HopSession, host: str, message: PeerMessage) -> None:
        now = self.scheduler.now()
        if not self._call(GatewayAction.ACCEPT, host):
            self._finish(
                session, HopState.FAILED, FailureReason.JOIN_FAILED, "Could not join the host's group"
            )
            return
        # Being in the new host's group means the previous group is gone.
        self.leaver.confirm_left()
        self._rearm(session)
        session.clear_host()
        session.host_identity = host
        session.baseline = self.collector.observe(now) or LayerEstimate.unknown(
            session.continent, now
        )
        session.joined_at = now
        session.target_layer = message.layer
        session.state = HopState.JOINED
        self.memory.remember(
            self.host_key(host), HostOutcome.UNKNOWN, self.policy.hop_timeout_seconds
        )
        self._schedule(session, TimerKind.HOP_TIMEOUT, self.policy.hop_timeout_seconds)
        self._schedule(session, TimerKind.REMINDER, self.policy.reminder_delay_seconds)
        logger.info(
            "Joined %s (baseline layer %s, target %s)",
            host,
            session.baseline.layer_number,
            session.target_layer,
        )
        self._emit(self._snapshot_of(session))
        if session.target_layer is not None and session.target_layer == session.from_layer:
            self._leave(session)
            self._retry_or_fail(session, FailureReason.SAME_LAYER)
            return
        if self.policy.settle_seconds <= 0:
            self._enter_verifying(session)
        else:
            self._schedule(session, TimerKind.SETTLE, self.policy.settle_seconds)

    def _enter_verifying(self, session: HopSession) -> None:
        session.state = HopState.VERIFYING
        self._emit(self._snapshot_of(session))
        self._evaluate(session)

    def _evaluate(self, session: HopSession) -> None:
        now = self.scheduler.now()
        estimate = self.collector.observe(now)
        if estimate is None or not estimate.known or session.joined_at is None:
            return
        if estimate.observed_at <= session.joined_at:
            return
        if not self.classifier.compatible(estimate.continent, session.continent):
            return
        layer = estimate.layer_number
        if session.target_layer is not None and layer == session.target_layer:
            self._confirm(session, layer)
            return
        baseline = session.from_layer
        # An unknown baseline without a target layer stays inconclusive.
        if baseline is not None and layer != baseline:
            self._confirm(session, layer)

    def _confirm(self, session: HopSession, layer: int) -> None:
        host = session.host_identity
        self._leave(session)
        if host:
            self.memory.remember(
                self.host_key(host), HostOutcome.RECENTLY_HOPPED, self.policy.recent_hop_ttl
            )
            if self.policy.thanks_whisper_enabled and self.policy.thanks_whisper:
                self._call(GatewayAction.WHISPER, host, self.policy.thanks_whisper)
        if session.from_layer is not None:
            message = f"Layer {session.from_layer} -> {layer}"
        else:
            message = f"Hopped to layer {layer}!"
        self.last_known_layer = layer
        self._finish(session, HopState.CONFIRMED, None, message, to_layer=layer)

    def _reject_cross_continent(
        self, session: HopSession, host: str, host_continent: Continent | None
    ) -> None:
        now = self.scheduler.now()
        self.memory.remember(
            self.host_key(host), HostOutcome.CROSS_CONTINENT, self.policy.cross_continent_ttl
        )
        if session.continent != Continent.UNKNOWN:
            self._block = (session.continent, now + self.policy.cross_continent_ttl)
        self._explain_decline(host, session.continent, now)
        self._retry_or_fail(session, FailureReason.CROSS_CONTINENT, host_continent)

    def _retry_or_fail(
        self,
        session: HopSession,
        reason: FailureReason,
        host_continent: Continent | None = None,
    ) -> None:
        budget = self.policy.max_retries
        cross = reason == FailureReason.CROSS_CONTINENT
        if session.retries_used >= budget:
            if cross:
                message = f"No same-continent hosts found after {budget} attempts"
            else:
                message = f"Hop failed after {budget} attempts"
            self._finish(session, HopState.FAILED, reason, message)
            return
        session.retries_used += 1
        self._rearm(session)
        session.clear_host()
        session.state = HopState.SEARCHING
        self._schedule(session, TimerKind.RETRY, self.policy.retry_delay_seconds)
        attempt = f"({session.retries_used}/{budget})"
        if cross and host_continent is not None:
            message = f"Host is in {CONTINENT_LABELS[host_continent]} - retrying {attempt}"
        elif cross:
            message = f"Host is on another continent - retrying {attempt}"
        else:
            message = f"Same layer - retrying {attempt}"
        logger.info("Retrying hop %s after %s", attempt, reason.value)
        self._emit(self._snapshot_of(session, reason=reason, message=message))

    def _finish(
        self,
        session: HopSession,
        state: HopState,
        reason: FailureReason | None,
        message: str,
        to_layer: int | None = None,
    ) -> None:
        now = self.scheduler.now()
        snapshot = self._snapshot_of(session, state=state, reason=reason, message=message)
        for handle in session.timers:
            handle.cancel()
        session.timers.clear()
        session.state = state
        self._generation += 1
        self.session = None
        self.last_outcome = snapshot
        logger.info(
            "Hop %s (%s) with %s after %.1fs",
            state.value,
            reason.value if reason else "-",
            session.host_identity,
            snapshot.elapsed_seconds,
        )
        if self.history is not None:
            try:
                self.history.record_hop_outcome(
                    {
                        "outcome": state.value,
                        "reason": reason.value if reason else None,
                        "host_identity": session.host_identity,
                        "from_layer": session.from_layer,
                        "to_layer": to_layer,
                        "retries_used": session.retries_used,
                        "elapsed_seconds": snapshot.elapsed_seconds,
                        "finished_at": now,
                    }
                )
            except Exception:
                logger.exception("Failed to record hop outcome")
        self._emit(snapshot)
        self._emit(IDLE_SNAPSHOT)

    # Helpers

    def _schedule(self, session: HopSession, kind: TimerKind, delay: float) -> None:
        generation = session.generation
        handle = self.scheduler.call_later(
            delay, lambda: self.handle(TimerFired(kind, generation))
        )
        session.timers.append(handle)

    def _rearm(self, session: HopSession) -> None:
        for handle in session.timers:
            handle.cancel()
        session.timers.clear()
        self._generation += 1
        session.generation = self._generation

    def _leave(self, session: HopSession) -> None:
        if session.group_gone:
            return
        self.leaver.leave()

    def _call(self, action: GatewayAction, *args) -> bool:
        try:
            getattr(self.gateway, action.value)(*args)
            return True
        except Exception:
            logger.exception("Gateway %s failed", action.value)
            return False

    def _emit(self, snapshot: SessionSnapshot) -> None:
        try:
            self.presenter.on_session_state_changed(snapshot)
        except Exception:
            logger.exception("Presenter failed on %s", snapshot.state.value)

    def _snapshot_of(
        self,
        session: HopSession,
        state: HopState | None = None,
        reason: FailureReason | None = None,
        message: str | None = None,
    ) -> SessionSnapshot:
        anchor = session.joined_at if session.joined_at is not None else session.started_at
        return SessionSnapshot(
            state=state or session.state,
            host_identity=session.host_identity,
            target_layer=session.target_layer,
            elapsed_seconds=max(0.0, self.scheduler.now() - anchor),
            retries_used=session.retries_used,
            reason=reason,
            message=message,
            from_layer=session.from_layer,
        )

    def _note_idle_layer(self, estimate: LayerEstimate) -> None:
        if not estimate.known:
            return
        previous = self.last_known_layer
        self.last_known_layer = estimate.layer_number
        if previous is not None and previous != estimate.layer_number:
            self._emit(
                SessionSnapshot(
                    state=HopState.IDLE,
                    message=f"Layer {previous} -> {estimate.layer_number}",
                )
            )

    def _remember_whisper(self, host: str, message: PeerMessage, now: float) -> None:
        window = self.policy.whisper_memory_seconds
        self._whispers = {
            name: entry for name, entry in self._whispers.items() if now - entry[0] < window
        }
        self._whispers[host] = (now, message)

    def _recent_whisper(self, host: str, now: float) -> PeerMessage | None:
        entry = self._whispers.get(host)
        if entry is None or now - entry[0] >= self.policy.whisper_memory_seconds:
            return None
        return entry[1]

    def _invite_message(self, host: str, payload: dict, now: float) -> PeerMessage:
        inline = parse_peer_message(payload.get("message"))
        whisper = self._recent_whisper(host, now) or PeerMessage()
        return PeerMessage(
            layer=inline.layer if inline.layer is not None else whisper.layer,
            continent=inline.continent or whisper.continent,
            is_hop_message=inline.is_hop_message or whisper.is_hop_message,
        )

    def _continent_hint(self, payload: dict, message: PeerMessage) -> Continent | None:
        raw = payload.get("continent")
        if isinstance(raw, str):
            named = self.classifier.classify_name(raw)
            if named is not None:
                return named
        if payload.get("zone") is not None:
            zoned = self.classifier.classify_zone(payload.get("zone"))
            if zoned != Continent.UNKNOWN:
                return zoned
        return message.continent

    def _block_applies(self, message: PeerMessage, now: float) -> bool:
        if self._block is None:
            return False
        blocked, expiry = self._block
        if now >= expiry or blocked != self.continent:
            self._block = None
            return False
        searching = self.session is not None and self.session.state == HopState.SEARCHING
        recent_broadcast = (
            self._last_broadcast_at is not None
            and now - self._last_broadcast_at < self.policy.broadcast_window_seconds
        )
        return searching or recent_broadcast or message.is_hop_message

    def _explain_decline(self, host: str, own: Continent, now: float) -> None:
        cooldown = self.policy.decline_whisper_cooldown
        self._decline_whispered = {
            name: sent for name, sent in self._decline_whispered.items() if now - sent <= cooldown
        }
        if host in self._decline_whispered:
            return
        self._decline_whispered[host] = now
        if own == Continent.UNKNOWN:
            text = "Layers don't cross the Dark Portal! Thanks anyway."
        else:
            text = DECLINE_WHISPER.format(location=CONTINENT_LABELS[own])
        self._call(GatewayAction.WHISPER, host, text)
