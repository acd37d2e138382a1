from __future__ import annotations

import logging
from collections.abc import Callable

from layerhop.common.constants import PROXIMITY_UNIT_TYPES, SIGNAL_STALE_SECONDS, SOURCE_PRIORITY
from layerhop.common.types import Continent, LayerEstimate, SignalSource
from layerhop.engine.continent import ContinentClassifier
from layerhop.engine.parser import parse_peer_message

logger = logging.getLogger(__name__)

EstimateListener = Callable[[LayerEstimate], None]


class ProximityDecoder:
    """Maps the zone uid embedded in nearby creature GUIDs to a layer number.

    GUID layout: ``Creature-0-<server>-<instance>-<zone_uid>-<npc>-<spawn>``.
    The zone uid differs per layer, so once a uid is known to belong to a
    layer every creature seen on it identifies that layer.
    """

    def __init__(self) -> None:
        self._layers: dict[tuple[int, int], int] = {}

    def learn_layer(self, instance_id: int, zone_uid: int, layer: int) -> None:
        if layer <= 0:
            return
        self._layers[(int(instance_id), int(zone_uid))] = int(layer)

    def decode(self, guid: str | None) -> tuple[int, int | None] | None:
        """Return ``(instance_id, layer)`` for a layer-bearing GUID, else None."""
        if not guid or not isinstance(guid, str):
            return None
        parts = guid.split("-")
        if len(parts) < 7 or parts[0] not in PROXIMITY_UNIT_TYPES:
            return None
        try:
            instance_id = int(parts[3])
            zone_uid = int(parts[4])
        except ValueError:
            return None
        return instance_id, self._layers.get((instance_id, zone_uid))

    def layer_count(self) -> int:
        return len(set(self._layers.values()))


class LayerSignalCollector:
    """Keeps the latest estimate per source and hands out the freshest one."""

    def __init__(
        self,
        classifier: ContinentClassifier,
        clock: Callable[[], float],
        stale_seconds: float = SIGNAL_STALE_SECONDS,
        zone_id: int | None = None,
    ) -> None:
        self.classifier = classifier
        self.clock = clock
        self.stale_seconds = stale_seconds
        self.decoder = ProximityDecoder()
        self.zone_id = zone_id
        self._latest: dict[SignalSource, LayerEstimate] = {}
        self._listeners: list[EstimateListener] = []

    @property
    def continent(self) -> Continent:
        return self.classifier.classify_zone(self.zone_id)

    def set_zone(self, zone_id: int | None) -> None:
        self.zone_id = zone_id

    def subscribe(self, listener: EstimateListener) -> None:
        self._listeners.append(listener)

    def push(
        self, source: SignalSource, layer: int | None, observed_at: float | None = None
    ) -> LayerEstimate | None:
        if layer is None or layer <= 0:
            return None
        estimate = LayerEstimate(
            layer_number=int(layer),
            continent=self.continent,
            observed_at=self.clock() if observed_at is None else observed_at,
            source=source,
        )
        self._latest[source] = estimate
        logger.debug("Layer %s observed via %s", estimate.layer_number, source.value)
        for listener in list(self._listeners):
            listener(estimate)
        return estimate

    def report_peer_layer(self, layer: int | None) -> LayerEstimate | None:
        return self.push(SignalSource.PEER_REPORT, layer)

    def report_self_whisper(self, text: str) -> LayerEstimate | None:
        return self.push(SignalSource.SELF_WHISPER, parse_peer_message(text).layer)

    def observe_guid(self, guid: str) -> LayerEstimate | None:
        decoded = self.decoder.decode(guid)
        if decoded is None:
            return None
        instance_id, layer = decoded
        if not self.classifier.compatible(
            self.classifier.classify_zone(instance_id), self.continent
        ):
            return None
        return self.push(SignalSource.PROXIMITY, layer)

    def latest(self, source: SignalSource) -> LayerEstimate | None:
        return self._latest.get(source)

    def observe(self, now: float | None = None) -> LayerEstimate | None:
        """Freshest non-stale estimate; same-instant ties go to the stronger source."""
        now = self.clock() if now is None else now
        fresh = [
            est for est in self._latest.values() if now - est.observed_at <= self.stale_seconds
        ]
        if not fresh:
            return None
        return max(fresh, key=lambda e: (e.observed_at, SOURCE_PRIORITY.get(e.source, 0)))

    def clear(self) -> None:
        self._latest.clear()

    def snapshot(self) -> dict:
        now = self.clock()
        current = self.observe(now)
        return {
            "zone_id": self.zone_id,
            "continent": self.continent.value,
            "current": _estimate_dict(current),
            "sources": {
                source.value: _estimate_dict(est) for source, est in self._latest.items()
            },
            "known_layers": self.decoder.layer_count(),
        }


def _estimate_dict(est: LayerEstimate | None) -> dict | None:
    if est is None:
        return None
    return {
        "layer": est.layer_number,
        "continent": est.continent.value,
        "observed_at": est.observed_at,
        "source": est.source.value if est.source else None,
    }
