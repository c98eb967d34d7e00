# yolo.py
import logging
from pathlib import Path

import cv2
import torch

from .detection import _clamped_box
from .errors import ModelError

logger = logging.getLogger(__name__)


class YoloFaceDetector:
    """Face detector running YOLOv5 custom face weights loaded through torch.hub."""

    def __init__(self, model_path, repo='ultralytics/yolov5', source='github'):
        model_path = Path(model_path)
        if not model_path.exists():
            raise FileNotFoundError(f"Model file not found: {model_path}")

        self.device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
        try:
            self.model = torch.hub.load(repo, 'custom', path=str(model_path), source=source)
            self.model.to(self.device)
            self.model.eval()
            logger.info(f"Face model loaded from {model_path} on {self.device}")
        except Exception:
            logger.exception("Error loading YOLOv5 face model.")
            raise

    def detect(self, frame):
        try:
            frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            with torch.no_grad():
                results = self.model(frame_rgb)
            predictions = results.pandas().xyxy[0]
        except Exception as e:
            raise ModelError(f"YOLOv5 inference failed: {e}") from e

        detections = []
        for _, prediction in predictions.iterrows():
            try:
                x1, y1, x2, y2 = map(int, [prediction['xmin'], prediction['ymin'], prediction['xmax'], prediction['ymax']])
            except (KeyError, TypeError, ValueError):
                continue  # Skip this prediction if conversion fails
            confidence = min(1.0, max(0.0, float(prediction.get('confidence', 0))))
            detections.append((confidence, _clamped_box(x1, y1, x2 - x1, y2 - y1)))
        return detections
