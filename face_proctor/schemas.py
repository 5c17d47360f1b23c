from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MonitorStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


class MonitorMode(str, Enum):
    NONE = "none"
    REDUCED = "reduced"
    FULL = "full"


class ViolationType(str, Enum):
    NO_FACE = "no-face"
    MULTIPLE_FACES = "multiple-faces"
    # Reserved for gaze / framing detectors, never emitted by the classifier
    LOOK_AWAY = "look-away"
    FACE_OFFSCREEN = "face-offscreen"
    CAMERA_COVERED = "camera-covered"


@dataclass(frozen=True)
class Violation:
    id: str
    type: ViolationType
    timestamp: float
    message: str

    @classmethod
    def create(cls, violation_type: ViolationType, message: str, now: float) -> "Violation":
        # Two violations in the same millisecond share an id; cooldown makes that unreachable in practice.
        return cls(id=str(int(now)), type=violation_type, timestamp=now, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "message": self.message,
        }

    def to_event(self, session_id: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        event = self.to_dict()
        event["sessionId"] = session_id
        event["userId"] = user_id
        return event


@dataclass(frozen=True)
class FaceDetection:
    confidence: float
    bbox: Optional[Tuple[int, int, int, int]] = None


@dataclass(frozen=True)
class TickObservation:
    face_count: int
    is_dark: bool
    brightness: float = 0.0
