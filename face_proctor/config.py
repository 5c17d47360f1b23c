import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


# Face detection (MediaPipe BlazeFace short range)
FACE_MODEL_PATH = os.getenv("FACE_MODEL_PATH", "models/blaze_face_short_range.tflite")
FACE_CANDIDATE_CONFIDENCE = _env_float("FACE_CANDIDATE_CONFIDENCE", 0.5)
# A face only counts as present above this score
FACE_CONFIDENCE_THRESHOLD = _env_float("FACE_CONFIDENCE_THRESHOLD", 0.75)
PREFER_GPU = _env_bool("PREFER_GPU", True)

# Mean grayscale level (0-255) below which a frame counts as dark
DARK_BRIGHTNESS_THRESHOLD = _env_float("DARK_BRIGHTNESS_THRESHOLD", 25.0)

# Debounce / cooldown windows (milliseconds)
WARNING_COOLDOWN_MS = _env_float("WARNING_COOLDOWN_MS", 5000.0)
NO_FACE_PERSISTENCE_MS = _env_float("NO_FACE_PERSISTENCE_MS", 1500.0)
MULTI_FACE_PERSISTENCE_MS = _env_float("MULTI_FACE_PERSISTENCE_MS", 500.0)
DARK_FRAME_PERSISTENCE_MS = _env_float("DARK_FRAME_PERSISTENCE_MS", 1000.0)
# Longest gap a single tick may contribute to a streak. Persistence windows
# only hold in wall-clock time while ticks arrive at least this often; below
# 1000 / MAX_TICK_GAP_MS ticks per second every window stretches in proportion.
MAX_TICK_GAP_MS = _env_float("MAX_TICK_GAP_MS", 1000.0)

# Tick pacing
TARGET_FPS = max(1, _env_int("TARGET_FPS", 30))
NOMINAL_TICK_MS = 1000.0 / TARGET_FPS

# Local camera
CAMERA_INDEX = _env_int("CAMERA_INDEX", 0)

# Optional remote reporting channel, e.g. ws://localhost:8080/ws/reports
PROCTOR_REPORT_URL = os.getenv("PROCTOR_REPORT_URL") or None
