"""Periodic status reporting, independent of shutdown decisions."""

import structlog

from blackout_grace import logging as console
from blackout_grace.markers import MarkerKind, MarkerStore
from blackout_grace.sampler import PowerSample

log = structlog.get_logger()


class StatusReporter:
    """Logs the observed power state every ``interval`` seconds.

    The last report time is persisted so the cadence survives restarts.
    """

    def __init__(self, store: MarkerStore, interval: int, min_battery: int = 0) -> None:
        self.store = store
        self.interval = interval
        self.min_battery = min_battery

    def is_due(self, now: int) -> bool:
        last = self.store.get(MarkerKind.LAST_STATUS)
        return last is None or now - last >= self.interval

    def maybe_report(self, sample: PowerSample, now: int) -> bool:
        """Report if due. Returns True when a status line was written."""
        if not self.is_due(now):
            return False
        log.info("status_update", source=sample.source.value, percentage=sample.percentage)
        console.status_update(sample.source.value, sample.percentage, self.min_battery)
        self.store.set(MarkerKind.LAST_STATUS, now)
        return True
