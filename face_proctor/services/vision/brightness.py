import cv2
import numpy as np

from face_proctor import config


def frame_brightness(img: np.ndarray) -> float:
    """
    Mean grayscale intensity of a frame on a 0-255 scale.

    Accepts BGR, BGRA or single-channel frames as produced by OpenCV.
    """
    if img.size == 0:
        return 0.0

    if img.ndim == 2:
        gray = img
    elif img.shape[2] == 4:
        gray = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return float(np.mean(gray))


def is_dark(brightness: float, threshold: float = config.DARK_BRIGHTNESS_THRESHOLD) -> bool:
    return brightness < threshold
