"""Durable episode markers.

Each marker is a single integer (epoch seconds) in its own file. A missing
file means the marker is absent. Corrupt content reads as absent so a bad
write can never wedge the daemon into a crash loop.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from blackout_grace.config import GeneralConfig, Target

log = structlog.get_logger()


class MarkerKind(Enum):
    """Marker kinds. The first three make up a battery episode."""

    BATTERY_ONSET = "battery_onset"
    SHUTDOWN_ISSUED = "shutdown_issued"
    AC_RESTORE_ONSET = "ac_restore_onset"
    LAST_STATUS = "last_status"


EPISODE_MARKERS = (
    MarkerKind.BATTERY_ONSET,
    MarkerKind.SHUTDOWN_ISSUED,
    MarkerKind.AC_RESTORE_ONSET,
)


@dataclass(frozen=True)
class EpisodeState:
    """Snapshot of the persisted markers, as seen by the decision engine."""

    battery_onset: int | None = None
    shutdown_issued: int | None = None
    ac_restore_onset: int | None = None
    issued_targets: frozenset[str] = frozenset()

    @property
    def episode_pending(self) -> bool:
        """True while a battery episode is pending or already triggered.

        Any per-target issued marker counts, so a lost or corrupt episode
        sentinel cannot make a half-dispatched episode look idle.
        """
        return (
            self.battery_onset is not None
            or self.shutdown_issued is not None
            or bool(self.issued_targets)
        )

    def pending_targets(self, targets: Iterable[Target]) -> list[Target]:
        """Targets that have not yet received the shutdown in this episode."""
        return [t for t in targets if t.name not in self.issued_targets]


@dataclass(frozen=True)
class MarkerMutation:
    """A single change to apply to the store.

    timestamp None means clear. kind None with timestamp None means full reset.
    """

    kind: MarkerKind | None
    timestamp: int | None = None

    @classmethod
    def set(cls, kind: MarkerKind, timestamp: int) -> MarkerMutation:
        return cls(kind, timestamp)

    @classmethod
    def clear(cls, kind: MarkerKind) -> MarkerMutation:
        return cls(kind, None)

    @classmethod
    def reset(cls) -> MarkerMutation:
        return cls(None, None)

    @property
    def is_reset(self) -> bool:
        return self.kind is None


def _read_int(path: Path) -> int | None:
    try:
        raw = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        log.warning("marker_unreadable", path=str(path), error=str(e))
        return None

    try:
        return int(raw)
    except ValueError:
        log.warning("marker_corrupt", path=str(path), content=raw[:32])
        return None


def _write_int(path: Path, value: int) -> None:
    """Replace the file atomically so readers never see a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(f"{value}\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class MarkerStore:
    """File-backed marker storage.

    Per-target issued markers live beside the shutdown flag as
    ``<shutdown_flag>.<user>@<host>``.
    """

    def __init__(self, paths: dict[MarkerKind, Path]) -> None:
        missing = set(MarkerKind) - set(paths)
        if missing:
            raise ValueError(f"Missing marker paths: {sorted(k.value for k in missing)}")
        self.paths = dict(paths)

    @classmethod
    def from_config(cls, general: GeneralConfig) -> MarkerStore:
        return cls(
            {
                MarkerKind.BATTERY_ONSET: Path(general.battery_file),
                MarkerKind.SHUTDOWN_ISSUED: Path(general.shutdown_flag),
                MarkerKind.AC_RESTORE_ONSET: Path(general.ac_restore_file),
                MarkerKind.LAST_STATUS: Path(general.status_file),
            }
        )

    def get(self, kind: MarkerKind) -> int | None:
        return _read_int(self.paths[kind])

    def set(self, kind: MarkerKind, timestamp: int) -> None:
        _write_int(self.paths[kind], int(timestamp))
        log.debug("marker_set", marker=kind.value, timestamp=timestamp)

    def clear(self, kind: MarkerKind) -> None:
        path = self.paths[kind]
        if path.exists():
            path.unlink(missing_ok=True)
            log.debug("marker_cleared", marker=kind.value)

    def target_path(self, target: Target) -> Path:
        flag = self.paths[MarkerKind.SHUTDOWN_ISSUED]
        return flag.with_name(f"{flag.name}.{target.name}")

    def get_target(self, target: Target) -> int | None:
        return _read_int(self.target_path(target))

    def set_target(self, target: Target, timestamp: int) -> None:
        _write_int(self.target_path(target), int(timestamp))
        log.debug("target_marker_set", target=target.name, timestamp=timestamp)

    def issued_targets(self, targets: Iterable[Target]) -> frozenset[str]:
        return frozenset(t.name for t in targets if self.get_target(t) is not None)

    def _target_marker_files(self) -> list[Path]:
        flag = self.paths[MarkerKind.SHUTDOWN_ISSUED]
        if not flag.parent.is_dir():
            return []
        return [p for p in flag.parent.glob(f"{flag.name}.*@*") if p.is_file()]

    def clear_all(self) -> None:
        """Full episode reset: all episode markers plus every per-target marker.

        The status marker is not part of an episode and is left alone.
        """
        for kind in EPISODE_MARKERS:
            self.clear(kind)
        # Glob rather than iterate configured targets so markers left by a
        # target removed from the config are reset too.
        for path in self._target_marker_files():
            path.unlink(missing_ok=True)
        log.debug("markers_reset")

    def load_state(self, targets: Iterable[Target]) -> EpisodeState:
        return EpisodeState(
            battery_onset=self.get(MarkerKind.BATTERY_ONSET),
            shutdown_issued=self.get(MarkerKind.SHUTDOWN_ISSUED),
            ac_restore_onset=self.get(MarkerKind.AC_RESTORE_ONSET),
            issued_targets=self.issued_targets(targets),
        )

    def apply(self, mutations: Iterable[MarkerMutation]) -> None:
        for mutation in mutations:
            if mutation.is_reset:
                self.clear_all()
            elif mutation.timestamp is None:
                self.clear(mutation.kind)  # type: ignore[arg-type]
            else:
                self.set(mutation.kind, mutation.timestamp)  # type: ignore[arg-type]
