from layerhop.engine.leave import GroupLeaver
from layerhop.engine.scheduler import ManualScheduler
from layerhop.gateway.base import GroupMembershipGateway


class LeaveCounter(GroupMembershipGateway):
    def __init__(self, fail=False):
        self.leaves = []
        self.fail = fail
        self.scheduler = None

    def request_hop(self):
        pass

    def accept_invite(self, host_identity):
        pass

    def decline_invite(self, host_identity):
        pass

    def leave_group(self):
        self.leaves.append(self.scheduler.now())
        if self.fail:
            raise RuntimeError("not in a group")

    def send_whisper(self, host_identity, text):
        pass


def _leaver(fail=False):
    scheduler = ManualScheduler()
    gateway = LeaveCounter(fail=fail)
    gateway.scheduler = scheduler
    return GroupLeaver(gateway, scheduler), gateway, scheduler


def test_fast_then_slow_cadence():
    leaver, gateway, scheduler = _leaver()
    leaver.leave()
    scheduler.advance_to(10)
    assert gateway.leaves == [0, 2, 4, 6, 8, 10]
    scheduler.advance_to(39)
    assert len(gateway.leaves) == 6
    scheduler.advance_to(40)
    assert gateway.leaves[-1] == 40
    assert leaver.pending


def test_confirm_left_stops_retries():
    leaver, gateway, scheduler = _leaver()
    leaver.leave()
    scheduler.advance(3)
    leaver.confirm_left()
    scheduler.advance(100)
    assert gateway.leaves == [0, 2]
    assert not leaver.pending


def test_leave_is_idempotent_while_pending():
    leaver, gateway, _ = _leaver()
    leaver.leave()
    leaver.leave()
    assert gateway.leaves == [0]
    assert leaver.attempts == 1


def test_gateway_errors_keep_retrying():
    leaver, gateway, scheduler = _leaver(fail=True)
    leaver.leave()
    scheduler.advance(4)
    assert gateway.leaves == [0, 2, 4]
    leaver.failed()
    assert leaver.pending


def test_leave_again_on_slow_cadence_restarts_fast_retries():
    leaver, gateway, scheduler = _leaver()
    leaver.leave()
    scheduler.advance_to(15)
    assert gateway.leaves[-1] == 10
    leaver.leave()
    scheduler.advance_to(19)
    assert gateway.leaves[-2:] == [17, 19]
    scheduler.advance_to(40)
    assert 40 not in gateway.leaves
