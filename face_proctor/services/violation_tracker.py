from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Sequence

from face_proctor import config
from face_proctor.schemas import TickObservation, Violation, ViolationType


@dataclass
class Streak:
    """How long a condition has held without interruption."""

    ticks: int = 0
    held_ms: float = 0.0

    def extend(self, delta_ms: float) -> None:
        self.ticks += 1
        self.held_ms += delta_ms

    def clear(self) -> None:
        self.ticks = 0
        self.held_ms = 0.0


@dataclass(frozen=True)
class ViolationRule:
    violation_type: ViolationType
    priority: int
    persistence_ms: float
    message: str
    holds: Callable[[TickObservation], bool]


@dataclass
class ClassifierState:
    streaks: Dict[ViolationType, Streak] = field(default_factory=dict)
    last_warning_at: Optional[float] = None
    last_tick_at: Optional[float] = None


def default_rules(
    no_face_ms: float = config.NO_FACE_PERSISTENCE_MS,
    multi_face_ms: float = config.MULTI_FACE_PERSISTENCE_MS,
    dark_frame_ms: float = config.DARK_FRAME_PERSISTENCE_MS,
) -> Sequence[ViolationRule]:
    # A covered camera also yields zero faces, so it has to outrank no-face.
    return (
        ViolationRule(
            ViolationType.CAMERA_COVERED,
            priority=0,
            persistence_ms=dark_frame_ms,
            message="Camera appears to be covered",
            holds=lambda obs: obs.is_dark,
        ),
        ViolationRule(
            ViolationType.NO_FACE,
            priority=1,
            persistence_ms=no_face_ms,
            message="Face not detected",
            holds=lambda obs: obs.face_count == 0,
        ),
        ViolationRule(
            ViolationType.MULTIPLE_FACES,
            priority=2,
            persistence_ms=multi_face_ms,
            message="Multiple faces detected",
            holds=lambda obs: obs.face_count > 1,
        ),
    )


class ViolationClassifier:
    """
    Debounces per-tick observations into violations.

    Every rule keeps a streak that grows by the wall-clock time between ticks
    while its condition holds and drops to zero on the first tick where it
    does not. Once the global cooldown has passed, the highest-priority rule
    whose streak outlasted its persistence window fires and its streak starts
    over. At most one violation comes out of a tick.
    """

    def __init__(
        self,
        cooldown_ms: float = config.WARNING_COOLDOWN_MS,
        no_face_ms: float = config.NO_FACE_PERSISTENCE_MS,
        multi_face_ms: float = config.MULTI_FACE_PERSISTENCE_MS,
        dark_frame_ms: float = config.DARK_FRAME_PERSISTENCE_MS,
        nominal_tick_ms: float = config.NOMINAL_TICK_MS,
        max_tick_gap_ms: float = config.MAX_TICK_GAP_MS,
        rules: Optional[Iterable[ViolationRule]] = None,
    ):
        self.cooldown_ms = cooldown_ms
        self.nominal_tick_ms = nominal_tick_ms
        self.max_tick_gap_ms = max_tick_gap_ms
        if rules is None:
            rules = default_rules(no_face_ms, multi_face_ms, dark_frame_ms)
        self.rules = tuple(sorted(rules, key=lambda rule: rule.priority))
        self._state = ClassifierState()
        self.reset()

    def reset(self) -> None:
        self._state = ClassifierState(
            streaks={rule.violation_type: Streak() for rule in self.rules}
        )

    @property
    def last_warning_at(self) -> Optional[float]:
        return self._state.last_warning_at

    @property
    def consecutive_no_face(self) -> int:
        return self._ticks(ViolationType.NO_FACE)

    @property
    def consecutive_multi_face(self) -> int:
        return self._ticks(ViolationType.MULTIPLE_FACES)

    @property
    def consecutive_dark_frame(self) -> int:
        return self._ticks(ViolationType.CAMERA_COVERED)

    def streak(self, violation_type: ViolationType) -> Streak:
        return self._state.streaks[violation_type]

    def can_warn(self, now: float) -> bool:
        last = self._state.last_warning_at
        return last is None or (now - last) > self.cooldown_ms

    def update(self, observation: TickObservation, now: float) -> Optional[Violation]:
        delta = self._tick_delta(now)
        self._state.last_tick_at = now

        for rule in self.rules:
            streak = self._state.streaks[rule.violation_type]
            if rule.holds(observation):
                streak.extend(delta)
            else:
                streak.clear()

        if not self.can_warn(now):
            return None

        for rule in self.rules:
            streak = self._state.streaks[rule.violation_type]
            if streak.held_ms > rule.persistence_ms:
                streak.clear()
                self._state.last_warning_at = now
                return Violation.create(rule.violation_type, rule.message, now)
        return None

    def _tick_delta(self, now: float) -> float:
        last = self._state.last_tick_at
        if last is None:
            return self.nominal_tick_ms
        return min(max(0.0, now - last), self.max_tick_gap_ms)

    def _ticks(self, violation_type: ViolationType) -> int:
        streak = self._state.streaks.get(violation_type)
        return streak.ticks if streak else 0
