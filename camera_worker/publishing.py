# publishing.py
import logging
import threading

import cv2
import numpy as np
import requests

from .errors import PublishError, ReportError

logger = logging.getLogger(__name__)


class MjpegFramePublisher:
    """
    Keeps the latest annotated frame of every camera as JPEG bytes so the
    /stream endpoint can serve it as multipart MJPEG.
    """

    def __init__(self, jpeg_quality=80):
        self.jpeg_quality = jpeg_quality
        self.frame_lock = threading.Lock()
        self.frames = {}
        self.blank_frame = self._encode(np.zeros((480, 640, 3), dtype=np.uint8))

    def _encode(self, frame):
        ok, buffer = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise PublishError("JPEG encoding failed")
        return buffer.tobytes()

    def publish(self, camera_id, frame):
        try:
            frame_bytes = self._encode(frame)
        except cv2.error as e:
            raise PublishError(f"Error encoding frame for camera {camera_id}: {e}") from e
        with self.frame_lock:
            self.frames[camera_id] = frame_bytes

    def get_frame(self, camera_id):
        """Latest frame for a camera, or a black frame if none was published yet."""
        with self.frame_lock:
            return self.frames.get(camera_id, self.blank_frame)

    def discard(self, camera_id):
        """Drop the frame kept for a camera so the live view falls back to the blank frame."""
        with self.frame_lock:
            self.frames.pop(camera_id, None)


class LoggingEventReporter:
    """Reporter used when no collector is configured."""

    def report(self, detection):
        logger.info(f"Face detected in {detection.camera_name} with "
                    f"{detection.confidence * 100:.1f}% confidence")


class HttpEventReporter:
    """Posts detection events to the backend collector's events API."""

    def __init__(self, collector_url, timeout=5.0, session=None):
        self.events_url = collector_url.rstrip('/') + '/api/events'
        self.timeout = timeout
        self.session = session or requests.Session()

    def report(self, detection):
        payload = {"type": "face_detected", **detection.model_dump()}
        try:
            response = self.session.post(self.events_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ReportError(f"Error reporting detection for camera {detection.camera_id}: {e}") from e
