from __future__ import annotations

import logging
from collections.abc import Callable

from layerhop.common.types import Continent, HostOutcome, HostRecord
from layerhop.persist.base import Persistence

logger = logging.getLogger(__name__)

AUTO_DECLINE_OUTCOMES = frozenset({HostOutcome.CROSS_CONTINENT, HostOutcome.RECENTLY_HOPPED})


def qualify_host(name: str, continent: Continent, home_realm: str = "") -> str:
    """Key a host by continent and realm so same-named players never collide."""
    base, _, realm = name.strip().partition("-")
    realm = realm or home_realm
    return f"{continent.value}/{realm.strip().lower()}/{base.lower()}"


class HostMemory:
    """Time-bounded record of hosts the client has dealt with.

    Expired records are treated as absent on lookup; nothing sweeps them.
    """

    def __init__(self, clock: Callable[[], float], store: Persistence | None = None) -> None:
        self.clock = clock
        self.store = store
        self._records: dict[str, HostRecord] = {}

    def load(self) -> int:
        if self.store is None:
            return 0
        now = self.clock()
        loaded = 0
        for row in self.store.load_host_records():
            try:
                record = HostRecord(
                    host_identity=row["host_identity"],
                    last_outcome=HostOutcome(row["last_outcome"]),
                    recorded_at=float(row["recorded_at"]),
                    expires_at=float(row["expires_at"]),
                )
            except (KeyError, ValueError):
                logger.warning("Skipping malformed host record %r", row)
                continue
            if record.is_expired(now):
                continue
            self._records[record.host_identity] = record
            loaded += 1
        return loaded

    def remember(self, host_identity: str, outcome: HostOutcome, ttl: float) -> HostRecord:
        now = self.clock()
        record = HostRecord(
            host_identity=host_identity,
            last_outcome=outcome,
            recorded_at=now,
            expires_at=now + ttl,
        )
        self._records[host_identity] = record
        if self.store is not None:
            self.store.save_host_record(
                {
                    "host_identity": record.host_identity,
                    "last_outcome": record.last_outcome.value,
                    "recorded_at": record.recorded_at,
                    "expires_at": record.expires_at,
                }
            )
        return record

    def lookup(self, host_identity: str) -> HostRecord | None:
        record = self._records.get(host_identity)
        if record is None or record.is_expired(self.clock()):
            return None
        return record

    def should_auto_decline(self, host_identity: str) -> bool:
        record = self.lookup(host_identity)
        return record is not None and record.last_outcome in AUTO_DECLINE_OUTCOMES

    def snapshot(self) -> list[HostRecord]:
        now = self.clock()
        return sorted(
            (r for r in self._records.values() if not r.is_expired(now)),
            key=lambda r: r.recorded_at,
        )
