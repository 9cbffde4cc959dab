"""Shutdown decision engine.

Turns one power sample plus the persisted episode markers into marker
mutations, an optional shutdown request and human-facing notices. Pure: it
never touches storage, the clock or the network, so every transition can be
driven from tests with explicit timestamps.

Implicit states (by marker presence):
    Idle              - no markers
    OnBatteryWaiting  - battery_onset set, shutdown not yet issued
    ShutdownTriggered - shutdown_issued (or any per-target issued marker) set
    AcRestoreDebounce - ac_restore_onset set while an episode is pending
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from blackout_grace.config import Config, Target
from blackout_grace.markers import EpisodeState, MarkerKind, MarkerMutation
from blackout_grace.sampler import PowerSample


class NoticeKind(Enum):
    """What a tick observed, for logging."""

    BATTERY_ENTERED = "battery_entered"
    BATTERY_COUNTDOWN = "battery_countdown"
    CRITICAL_BATTERY = "critical_battery"
    GRACE_EXPIRED = "grace_expired"
    AC_RESTORED = "ac_restored"
    AC_COUNTDOWN = "ac_countdown"
    EPISODE_CANCELLED = "episode_cancelled"


class ShutdownReason(Enum):
    CRITICAL_BATTERY = "critical_battery"
    GRACE_EXPIRED = "grace_expired"


@dataclass(frozen=True)
class Notice:
    """Something worth reporting about this tick.

    remaining is the seconds left on whichever timer the notice concerns;
    elapsed is the seconds already spent on it.
    """

    kind: NoticeKind
    percentage: int
    remaining: int | None = None
    elapsed: int | None = None


@dataclass(frozen=True)
class ShutdownRequest:
    """Ask the dispatcher to (re)notify targets. Carries the full target list;
    the dispatcher skips targets already issued in this episode."""

    reason: ShutdownReason
    targets: tuple[Target, ...]
    percentage: int


@dataclass
class Decision:
    """Output of a single tick."""

    mutations: list[MarkerMutation] = field(default_factory=list)
    dispatch: ShutdownRequest | None = None
    notices: list[Notice] = field(default_factory=list)

    @property
    def resets_episode(self) -> bool:
        return any(m.is_reset for m in self.mutations)


class DecisionEngine:
    """Per-tick state transitions for one battery episode."""

    def __init__(
        self,
        min_battery: int,
        grace_seconds: int,
        ac_stable_seconds: int,
        targets: tuple[Target, ...],
    ) -> None:
        self.min_battery = min_battery
        self.grace_seconds = grace_seconds
        self.ac_stable_seconds = ac_stable_seconds
        self.targets = tuple(targets)

    @classmethod
    def from_config(cls, config: Config) -> DecisionEngine:
        general = config.general
        return cls(
            min_battery=general.min_battery,
            grace_seconds=general.grace_seconds,
            ac_stable_seconds=general.ac_stable_time,
            targets=config.targets,
        )

    def decide(self, sample: PowerSample, state: EpisodeState, now: int) -> Decision:
        if sample.on_battery:
            return self._on_battery(sample, state, now)
        return self._on_ac(sample, state, now)

    def _request(self, reason: ShutdownReason, sample: PowerSample) -> ShutdownRequest:
        return ShutdownRequest(reason=reason, targets=self.targets, percentage=sample.percentage)

    def _on_battery(self, sample: PowerSample, state: EpisodeState, now: int) -> Decision:
        decision = Decision()
        pct = sample.percentage
        all_issued = not state.pending_targets(self.targets)

        # Any battery reading cancels an AC stability countdown outright.
        if state.ac_restore_onset is not None:
            decision.mutations.append(MarkerMutation.clear(MarkerKind.AC_RESTORE_ONSET))

        if pct < self.min_battery:
            # Critical bypass: no grace period, no battery onset bookkeeping.
            if not all_issued:
                decision.notices.append(Notice(NoticeKind.CRITICAL_BATTERY, pct))
                decision.dispatch = self._request(ShutdownReason.CRITICAL_BATTERY, sample)
            return decision

        if state.battery_onset is None:
            decision.mutations.append(MarkerMutation.set(MarkerKind.BATTERY_ONSET, now))
            decision.notices.append(
                Notice(NoticeKind.BATTERY_ENTERED, pct, remaining=self.grace_seconds, elapsed=0)
            )
            return decision

        elapsed = now - state.battery_onset
        left = self.grace_seconds - elapsed
        if elapsed >= self.grace_seconds and not all_issued:
            decision.notices.append(Notice(NoticeKind.GRACE_EXPIRED, pct, elapsed=elapsed))
            decision.dispatch = self._request(ShutdownReason.GRACE_EXPIRED, sample)
        elif left > 0:
            decision.notices.append(
                Notice(NoticeKind.BATTERY_COUNTDOWN, pct, remaining=left, elapsed=elapsed)
            )
        return decision

    def _on_ac(self, sample: PowerSample, state: EpisodeState, now: int) -> Decision:
        decision = Decision()
        pct = sample.percentage

        if not state.episode_pending:
            # Idle is always marker-clean.
            if state.ac_restore_onset is not None:
                decision.mutations.append(MarkerMutation.clear(MarkerKind.AC_RESTORE_ONSET))
            return decision

        if state.ac_restore_onset is None and self.ac_stable_seconds > 0:
            decision.mutations.append(MarkerMutation.set(MarkerKind.AC_RESTORE_ONSET, now))
            decision.notices.append(
                Notice(NoticeKind.AC_RESTORED, pct, remaining=self.ac_stable_seconds, elapsed=0)
            )
            return decision

        onset = state.ac_restore_onset if state.ac_restore_onset is not None else now
        stable = now - onset
        if stable >= self.ac_stable_seconds:
            decision.mutations.append(MarkerMutation.reset())
            decision.notices.append(Notice(NoticeKind.EPISODE_CANCELLED, pct, elapsed=stable))
        else:
            decision.notices.append(
                Notice(
                    NoticeKind.AC_COUNTDOWN,
                    pct,
                    remaining=self.ac_stable_seconds - stable,
                    elapsed=stable,
                )
            )
        return decision
