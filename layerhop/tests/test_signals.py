from layerhop.common.types import Continent, SignalSource
from layerhop.engine.continent import ContinentClassifier
from layerhop.engine.scheduler import ManualScheduler
from layerhop.engine.signals import LayerSignalCollector, ProximityDecoder


def _collector(zone_id=1429):
    scheduler = ManualScheduler()
    collector = LayerSignalCollector(ContinentClassifier(), scheduler.now, zone_id=zone_id)
    return collector, scheduler


def test_estimate_goes_stale_after_window():
    collector, scheduler = _collector()
    collector.report_peer_layer(4)
    assert collector.observe().layer_number == 4
    scheduler.advance(10)
    assert collector.observe().layer_number == 4
    scheduler.advance(1)
    assert collector.observe() is None


def test_most_recent_estimate_wins():
    collector, scheduler = _collector()
    collector.report_peer_layer(4)
    scheduler.advance(2)
    collector.push(SignalSource.PROXIMITY, 6)
    current = collector.observe()
    assert current.layer_number == 6
    assert current.source == SignalSource.PROXIMITY


def test_same_instant_tie_prefers_self_whisper():
    collector, _ = _collector()
    collector.push(SignalSource.PROXIMITY, 6, observed_at=0.0)
    collector.push(SignalSource.SELF_WHISPER, 7, observed_at=0.0)
    collector.push(SignalSource.PEER_REPORT, 8, observed_at=0.0)
    assert collector.observe().layer_number == 7


def test_invalid_layers_are_dropped():
    collector, _ = _collector()
    seen = []
    collector.subscribe(seen.append)
    assert collector.report_peer_layer(0) is None
    assert collector.report_peer_layer(None) is None
    assert collector.report_self_whisper("no number here") is None
    assert collector.observe() is None
    assert seen == []


def test_estimates_are_stamped_with_current_continent():
    collector, _ = _collector(zone_id=530)
    estimate = collector.report_self_whisper("you are on layer 5")
    assert estimate.layer_number == 5
    assert estimate.continent == Continent.OUTLAND
    assert collector.latest(SignalSource.SELF_WHISPER) == estimate


def test_listeners_receive_estimates():
    collector, _ = _collector()
    seen = []
    collector.subscribe(seen.append)
    collector.report_peer_layer(3)
    assert [e.layer_number for e in seen] == [3]


def test_proximity_guid_decoding():
    decoder = ProximityDecoder()
    decoder.learn_layer(0, 4321, 2)
    assert decoder.decode("Creature-0-5250-0-4321-299-000012345") == (0, 2)
    assert decoder.decode("Creature-0-5250-0-9999-299-000012345") == (0, None)
    assert decoder.decode("Player-5250-0ABCDEF") is None
    assert decoder.decode("Creature-0-5250-x-4321-299-1") is None
    assert decoder.decode(None) is None
    assert decoder.layer_count() == 1


def test_observe_guid_ignores_other_continent_creatures():
    collector, _ = _collector(zone_id=1429)
    collector.decoder.learn_layer(0, 4321, 2)
    collector.decoder.learn_layer(530, 77, 3)
    estimate = collector.observe_guid("Creature-0-5250-0-4321-299-000012345")
    assert estimate.layer_number == 2
    assert estimate.source == SignalSource.PROXIMITY
    assert collector.observe_guid("Creature-0-5250-530-77-18-000000001") is None
    assert collector.observe_guid("Creature-0-5250-0-1-299-000012345") is None


def test_snapshot_and_clear():
    collector, _ = _collector()
    collector.report_peer_layer(4)
    snap = collector.snapshot()
    assert snap["continent"] == "azeroth"
    assert snap["current"]["layer"] == 4
    assert snap["sources"]["peer_report"]["source"] == "peer_report"
    collector.clear()
    assert collector.observe() is None
