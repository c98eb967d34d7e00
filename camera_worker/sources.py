# sources.py
import logging

import cv2

from .errors import ConnectError, DecodeError, DecodeFatalError

logger = logging.getLogger(__name__)


class OpenCVFrameSource:
    """Reads and decodes a camera stream through cv2.VideoCapture."""

    def __init__(self, camera_url, max_consecutive_failures=50):
        self.camera_url = camera_url
        self.max_consecutive_failures = max_consecutive_failures
        self.cap = None
        self.resolution = None
        self.consecutive_failures = 0

    def open(self):
        self.close()
        cap = cv2.VideoCapture(self.camera_url)
        if not cap.isOpened():
            cap.release()
            raise ConnectError(f"Failed to open camera stream: {self.camera_url}")
        self.cap = cap
        self.consecutive_failures = 0
        self.resolution = f"{int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))}x{int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))}"
        logger.info(f"Opened {self.camera_url} ({self.resolution})")

    def read(self):
        if self.cap is None or not self.cap.isOpened():
            raise DecodeFatalError(f"Stream {self.camera_url} is not open")
        success, frame = self.cap.read()
        if not success or frame is None:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.max_consecutive_failures:
                raise DecodeFatalError(
                    f"{self.consecutive_failures} consecutive read failures from {self.camera_url}"
                )
            raise DecodeError(f"Failed to read frame from {self.camera_url}")
        self.consecutive_failures = 0
        return frame

    def close(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None
