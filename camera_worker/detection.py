# detection.py
import datetime
import logging
import math

import cv2
import numpy as np

from .errors import ModelError
from .models import BoundingBox

logger = logging.getLogger(__name__)

HAAR_CASCADE = "haarcascade_frontalface_default.xml"


class HaarFaceDetector:
    """
    Face detector backed by OpenCV's frontal face Haar cascade.
    The cascade reports a level weight per face rather than a probability,
    so it is squashed through a logistic curve into [0, 1].
    """

    def __init__(self, scale_factor=1.1, min_neighbors=5, min_size=(30, 30)):
        cascade_path = cv2.data.haarcascades + HAAR_CASCADE
        self.cascade = cv2.CascadeClassifier(cascade_path)
        if self.cascade.empty():
            raise FileNotFoundError(f"Haar cascade not found: {cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

    def detect(self, frame):
        try:
            gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            rects, _, weights = self.cascade.detectMultiScale3(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=self.min_size,
                outputRejectLevels=True,
            )
        except (cv2.error, AttributeError) as e:
            raise ModelError(f"Haar cascade failed: {e}") from e

        results = []
        for (x, y, w, h), weight in zip(rects, np.asarray(weights).ravel()):
            confidence = 1.0 / (1.0 + math.exp(-float(weight)))
            results.append((confidence, _clamped_box(x, y, w, h)))
        return results


def _clamped_box(x, y, width, height):
    return BoundingBox(
        x=max(0, int(x)),
        y=max(0, int(y)),
        width=max(0, int(width)),
        height=max(0, int(height)),
    )


def annotate_frame(frame, detections):
    """
    Draw face boxes and a timestamp on a copy of the frame.
    Returns the annotated copy; the input frame is left untouched.
    """
    annotated_frame = frame.copy()

    for detection in detections:
        box = detection.bounding_box
        confidence = detection.confidence
        x1, y1 = box.x, box.y
        x2, y2 = box.x + box.width, box.y + box.height

        # Choose color based on confidence
        box_color = (0, 255, 0) if confidence > 0.8 else (0, 165, 255)
        cv2.rectangle(annotated_frame, (x1, y1), (x2, y2), box_color, 2)
        text = f"face: {confidence:.2f}"
        text_size = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 2)[0]
        cv2.rectangle(annotated_frame, (x1, y1 - text_size[1] - 10),
                      (x1 + text_size[0] + 10, y1), box_color, -1)
        cv2.putText(annotated_frame, text, (x1 + 5, y1 - 5),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 2)

    # Add timestamp overlay
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cv2.putText(annotated_frame, timestamp,
                (annotated_frame.shape[1] - 200, annotated_frame.shape[0] - 10),
                cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)

    return annotated_frame
