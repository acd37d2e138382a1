from types import SimpleNamespace

from layerhop.common.config import HopPolicy
from layerhop.common.constants import THANKS_WHISPER
from layerhop.common.types import Continent, FailureReason, HopState, HostOutcome, SignalSource
from layerhop.engine.continent import ContinentClassifier
from layerhop.engine.events import TimerFired, TimerKind
from layerhop.engine.machine import HopSessionStateMachine
from layerhop.engine.memory import HostMemory, qualify_host
from layerhop.engine.scheduler import ManualScheduler
from layerhop.engine.signals import LayerSignalCollector
from layerhop.gateway.base import GroupMembershipGateway, NotificationPresenter
from layerhop.persist.base import Persistence


class RecordingGateway(GroupMembershipGateway):
    def __init__(self):
        self.calls = []

    def request_hop(self):
        self.calls.append(("request_hop",))

    def accept_invite(self, host_identity):
        self.calls.append(("accept_invite", host_identity))

    def decline_invite(self, host_identity):
        self.calls.append(("decline_invite", host_identity))

    def leave_group(self):
        self.calls.append(("leave_group",))

    def send_whisper(self, host_identity, text):
        self.calls.append(("send_whisper", host_identity, text))

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class RecordingPresenter(NotificationPresenter):
    def __init__(self):
        self.snapshots = []

    def on_session_state_changed(self, snapshot):
        self.snapshots.append(snapshot)

    @property
    def states(self):
        return [s.state for s in self.snapshots]


class HistoryPersist(Persistence):
    def __init__(self):
        self.entries = []

    def save_host_record(self, record):
        pass

    def load_host_records(self):
        return []

    def get_preference(self, key, default=None):
        return default

    def set_preference(self, key, value):
        pass

    def record_hop_outcome(self, entry):
        self.entries.append(entry)

    def hop_history(self, limit=50):
        return list(reversed(self.entries))[:limit]


def _rig(zone_id=1429, history=None, **policy):
    scheduler = ManualScheduler()
    collector = LayerSignalCollector(ContinentClassifier(), scheduler.now, zone_id=zone_id)
    memory = HostMemory(scheduler.now)
    gateway = RecordingGateway()
    presenter = RecordingPresenter()
    machine = HopSessionStateMachine(
        gateway, presenter, collector, memory, scheduler, HopPolicy(**policy), history=history
    )
    return SimpleNamespace(
        machine=machine,
        gateway=gateway,
        presenter=presenter,
        collector=collector,
        memory=memory,
        scheduler=scheduler,
    )


def test_successful_hop_with_target_layer():
    rig = _rig()
    rig.collector.report_peer_layer(9)
    rig.machine.request_hop()
    assert rig.machine.state == HopState.SEARCHING
    assert rig.gateway.count("request_hop") == 1

    rig.machine.on_peer_message("Hosty", "[AutoLayer] Inviting you to layer 3...")
    rig.scheduler.advance(1)
    rig.machine.on_invite_received("Hosty")
    assert rig.machine.state == HopState.JOINED
    assert ("accept_invite", "Hosty") in rig.gateway.calls
    assert rig.machine.session.target_layer == 3
    assert rig.machine.session.from_layer == 9

    rig.scheduler.advance(1)
    assert rig.machine.state == HopState.VERIFYING
    rig.scheduler.advance(8)
    rig.collector.report_peer_layer(3)

    assert rig.machine.state == HopState.IDLE
    outcome = rig.machine.last_outcome
    assert outcome.state == HopState.CONFIRMED
    assert outcome.message == "Layer 9 -> 3"
    assert outcome.elapsed_seconds == 9.0
    record = rig.memory.lookup(qualify_host("Hosty", Continent.AZEROTH))
    assert record.last_outcome == HostOutcome.RECENTLY_HOPPED
    assert record.expires_at == 70.0
    assert rig.gateway.count("leave_group") == 1
    assert ("send_whisper", "Hosty", THANKS_WHISPER) in rig.gateway.calls
    assert rig.presenter.states[-2:] == [HopState.CONFIRMED, HopState.IDLE]


def test_confirm_on_layer_differing_from_baseline_without_target():
    rig = _rig(settle_seconds=0)
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    assert rig.machine.state == HopState.VERIFYING
    rig.scheduler.advance(4)
    rig.collector.push(SignalSource.PROXIMITY, 5)
    assert rig.machine.last_outcome.state == HopState.CONFIRMED
    assert rig.machine.last_outcome.message == "Layer 9 -> 5"


def test_thanks_whisper_can_be_disabled():
    rig = _rig(settle_seconds=0, thanks_whisper_enabled=False)
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(2)
    rig.collector.report_peer_layer(4)
    assert rig.machine.last_outcome.state == HopState.CONFIRMED
    assert rig.gateway.count("send_whisper") == 0


def test_unknown_baseline_with_target_confirms_on_target():
    rig = _rig(settle_seconds=0)
    rig.machine.on_invite_received("Hosty", {"message": "[AutoLayer] Inviting you to layer 3"})
    assert rig.machine.session.from_layer is None
    rig.scheduler.advance(3)
    rig.collector.report_peer_layer(6)
    assert rig.machine.state == HopState.VERIFYING
    rig.scheduler.advance(1)
    rig.collector.report_peer_layer(3)
    assert rig.machine.last_outcome.state == HopState.CONFIRMED
    assert rig.machine.last_outcome.message == "Hopped to layer 3!"


def test_disband_before_any_signal_fails():
    rig = _rig()
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty", {"message": "[AutoLayer] Inviting you to layer 3"})
    rig.scheduler.advance(40)
    assert rig.machine.state == HopState.VERIFYING
    rig.machine.on_group_disbanded()

    outcome = rig.machine.last_outcome
    assert outcome.state == HopState.FAILED
    assert outcome.reason == FailureReason.GROUP_DISBANDED
    assert outcome.elapsed_seconds == 40.0
    assert rig.machine.state == HopState.IDLE
    assert rig.gateway.count("leave_group") == 0


def test_disband_after_signal_keeps_verifying():
    rig = _rig(settle_seconds=0)
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(5)
    rig.collector.report_peer_layer(9)
    rig.machine.on_group_disbanded()
    assert rig.machine.state == HopState.VERIFYING

    rig.scheduler.advance(5)
    rig.collector.report_peer_layer(4)
    assert rig.machine.last_outcome.state == HopState.CONFIRMED
    assert rig.gateway.count("leave_group") == 0


def test_timeout_fires_at_exactly_hop_timeout():
    rig = _rig()
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(119)
    assert rig.machine.state == HopState.VERIFYING
    rig.scheduler.advance(1)

    outcome = rig.machine.last_outcome
    assert outcome.state == HopState.FAILED
    assert outcome.reason == FailureReason.TIMED_OUT
    assert outcome.elapsed_seconds == 120.0
    assert rig.machine.state == HopState.IDLE
    assert rig.gateway.count("leave_group") == 1


def test_timeout_after_same_layer_estimates_reports_unchanged():
    rig = _rig()
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(30)
    rig.collector.report_peer_layer(9)
    assert rig.machine.state == HopState.VERIFYING
    rig.scheduler.advance(90)
    assert rig.machine.last_outcome.reason == FailureReason.LAYER_UNCHANGED


def test_pre_join_estimates_never_confirm():
    rig = _rig(settle_seconds=0)
    rig.collector.report_peer_layer(9)
    rig.scheduler.advance(1)
    rig.machine.on_invite_received("Hosty")
    rig.collector.push(SignalSource.PEER_REPORT, 5, observed_at=0.5)
    assert rig.machine.state == HopState.VERIFYING
    assert rig.machine.last_outcome is None


def test_no_second_confirmation():
    rig = _rig(settle_seconds=0)
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(2)
    rig.collector.report_peer_layer(4)
    rig.scheduler.advance(1)
    rig.collector.report_peer_layer(5)
    rig.scheduler.advance(200)
    assert rig.presenter.states.count(HopState.CONFIRMED) == 1
    assert rig.presenter.states.count(HopState.FAILED) == 0


def test_reminder_once_without_signal():
    rig = _rig()
    rig.machine.on_invite_received("Hosty", {"message": "[AutoLayer] Inviting you to layer 3"})
    rig.scheduler.advance(5)
    reminders = [s for s in rig.presenter.snapshots if s.message and "NPCs" in s.message]
    assert len(reminders) == 1
    assert "layer 3" in reminders[0].message
    assert rig.machine.session.last_reminder_at == 5.0
    rig.scheduler.advance(60)
    reminders = [s for s in rig.presenter.snapshots if s.message and "NPCs" in s.message]
    assert len(reminders) == 1


def test_no_reminder_once_signal_arrived():
    rig = _rig()
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(2)
    rig.collector.report_peer_layer(7)
    rig.scheduler.advance(5)
    assert not [s for s in rig.presenter.snapshots if s.message and "NPCs" in s.message]


def test_cancel_leaves_without_penalty():
    rig = _rig()
    rig.machine.request_hop()
    rig.machine.on_invite_received("Hosty")
    rig.machine.cancel()

    assert rig.machine.last_outcome.state == HopState.CANCELLED
    assert rig.machine.last_outcome.retries_used == 0
    assert rig.machine.state == HopState.IDLE
    assert rig.gateway.count("leave_group") == 1
    assert not rig.memory.should_auto_decline(qualify_host("Hosty", Continent.AZEROTH))


def test_cancel_while_searching_does_not_leave():
    rig = _rig()
    rig.machine.request_hop()
    rig.machine.cancel()
    assert rig.machine.last_outcome.state == HopState.CANCELLED
    assert rig.gateway.count("leave_group") == 0
    rig.machine.cancel()
    assert rig.presenter.states.count(HopState.CANCELLED) == 1


def test_search_times_out_without_invites():
    rig = _rig()
    rig.machine.request_hop()
    rig.scheduler.advance(19)
    assert rig.machine.state == HopState.SEARCHING
    rig.scheduler.advance(1)
    assert rig.machine.last_outcome.reason == FailureReason.NO_RESPONSE


def test_request_rejected_while_active_and_during_cooldown():
    rig = _rig()
    rig.machine.request_hop()
    rig.machine.request_hop()
    assert rig.gateway.count("request_hop") == 1
    rig.machine.cancel()
    rig.machine.request_hop()
    assert rig.machine.state == HopState.IDLE
    rig.scheduler.advance(3)
    rig.machine.request_hop()
    assert rig.machine.state == HopState.SEARCHING
    assert rig.gateway.count("request_hop") == 2


def test_instance_guard():
    rig = _rig()
    rig.machine.on_zone_changed(1429, in_instance=True)
    rig.machine.request_hop()
    rig.machine.on_invite_received("Hosty")
    assert rig.machine.state == HopState.IDLE
    assert rig.gateway.calls == []
    assert "dungeon" in rig.presenter.snapshots[-1].message

    rig.machine.on_zone_changed(1429, in_instance=False)
    rig.machine.request_hop()
    assert rig.machine.state == HopState.SEARCHING


def test_stale_timer_is_ignored():
    rig = _rig()
    rig.machine.on_invite_received("Hosty")
    old_generation = rig.machine.session.generation
    rig.machine.cancel()
    rig.scheduler.advance(3)
    rig.machine.on_invite_received("Other")
    rig.machine.handle(TimerFired(TimerKind.HOP_TIMEOUT, old_generation))
    rig.machine.handle(TimerFired(TimerKind.SETTLE, old_generation))
    assert rig.machine.state == HopState.JOINED
    assert rig.machine.session.host_identity == "Other"


def test_reentrant_events_run_after_current_transition():
    rig = _rig()

    class EagerGateway(RecordingGateway):
        def request_hop(self):
            super().request_hop()
            rig.machine.on_invite_received("Hosty")

    rig.machine.gateway = EagerGateway()
    rig.machine.request_hop()
    assert rig.presenter.states[:2] == [HopState.SEARCHING, HopState.JOINED]
    assert rig.machine.state == HopState.JOINED


def test_gateway_and_presenter_errors_do_not_escape():
    rig = _rig()

    class BrokenGateway(RecordingGateway):
        def accept_invite(self, host_identity):
            raise RuntimeError("party full")

    class BrokenPresenter(NotificationPresenter):
        def on_session_state_changed(self, snapshot):
            raise RuntimeError("ui gone")

    rig.machine.gateway = BrokenGateway()
    rig.machine.presenter = BrokenPresenter()
    rig.machine.on_invite_received("Hosty")
    assert rig.machine.state == HopState.IDLE
    assert rig.machine.last_outcome.reason == FailureReason.JOIN_FAILED


def test_reported_accept_failure_fails_session():
    rig = _rig()
    rig.machine.on_invite_received("Hosty")
    rig.machine.on_action_failed("accept_invite", "Hosty")
    assert rig.machine.last_outcome.reason == FailureReason.JOIN_FAILED


def test_idle_layer_change_toast():
    rig = _rig()
    rig.collector.report_peer_layer(3)
    assert rig.presenter.snapshots == []
    rig.scheduler.advance(1)
    rig.collector.report_peer_layer(3)
    rig.collector.report_peer_layer(5)
    assert [s.message for s in rig.presenter.snapshots] == ["Layer 3 -> 5"]
    assert rig.presenter.snapshots[0].state == HopState.IDLE


def test_outcomes_are_recorded_to_history():
    history = HistoryPersist()
    rig = _rig(settle_seconds=0, history=history)
    rig.collector.report_peer_layer(9)
    rig.machine.on_invite_received("Hosty")
    rig.scheduler.advance(2)
    rig.collector.report_peer_layer(4)
    assert history.entries[-1]["outcome"] == "confirmed"
    assert history.entries[-1]["from_layer"] == 9
    assert history.entries[-1]["to_layer"] == 4
    assert history.entries[-1]["host_identity"] == "Hosty"


def test_joining_new_host_stops_leftover_leave_retries():
    rig = _rig()
    rig.machine.on_invite_received("HostA")
    rig.scheduler.advance_to(120)
    assert rig.machine.last_outcome.reason == FailureReason.TIMED_OUT
    assert rig.machine.leaver.pending

    rig.scheduler.advance_to(125)
    rig.machine.request_hop()
    rig.machine.on_invite_received("HostB")
    assert rig.machine.session.host_identity == "HostB"
    leaves = rig.gateway.count("leave_group")

    rig.scheduler.advance(3)
    assert rig.gateway.count("leave_group") == leaves
    assert not rig.machine.leaver.pending
