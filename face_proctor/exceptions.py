class ProctorError(Exception):
    """Base exception for the proctoring core."""


class CameraUnavailableError(ProctorError):
    """Raised when the camera cannot be acquired or stops producing frames."""


class DetectorLoadError(ProctorError):
    """Raised when the face detection model cannot be loaded."""


class InferenceError(ProctorError):
    """Raised when face detection fails during a tick."""
