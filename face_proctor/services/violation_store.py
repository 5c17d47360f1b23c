from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from face_proctor.schemas import MonitorMode, MonitorStatus, Violation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProctorSnapshot:
    enabled: bool
    warning_count: int
    violations: Tuple[Violation, ...] = field(default_factory=tuple)
    status: MonitorStatus = MonitorStatus.IDLE
    mode: MonitorMode = MonitorMode.NONE
    last_warning_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "warningCount": self.warning_count,
            "violations": [v.to_dict() for v in self.violations],
            "status": self.status.value,
            "mode": self.mode.value,
            "lastWarningAt": self.last_warning_at,
        }


Listener = Callable[[ProctorSnapshot], None]


class ProctorStore:
    """
    Observable warning count and violation history for one candidate.

    The monitor writes into it, UIs and API handlers read from it. History
    survives stop() so a summary can be shown afterwards; only reset() clears it.
    """

    def __init__(self):
        self.enabled = False
        self.warning_count = 0
        self.status = MonitorStatus.IDLE
        self.mode = MonitorMode.NONE
        self.last_warning_at: Optional[float] = None
        self._violations: List[Violation] = []
        self._listeners: List[Listener] = []

    @property
    def violations(self) -> Tuple[Violation, ...]:
        return tuple(self._violations)

    def enable(self) -> None:
        self.enabled = True
        self._notify()

    def disable(self) -> None:
        self.enabled = False
        self._notify()

    def set_status(self, status: MonitorStatus, mode: Optional[MonitorMode] = None) -> None:
        self.status = status
        if mode is not None:
            self.mode = mode
        self._notify()

    def record(self, violation: Violation) -> None:
        self.warning_count += 1
        self.last_warning_at = violation.timestamp
        self._violations.append(violation)
        self._notify()

    def reset(self) -> None:
        self.enabled = False
        self.warning_count = 0
        self.last_warning_at = None
        self._violations = []
        self._notify()

    def snapshot(self) -> ProctorSnapshot:
        return ProctorSnapshot(
            enabled=self.enabled,
            warning_count=self.warning_count,
            violations=tuple(self._violations),
            status=self.status,
            mode=self.mode,
            last_warning_at=self.last_warning_at,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Proctor store listener failed: {e}")
