# config.py
import logging
import os
from dataclasses import dataclass

# Configuration (can be overridden with environment variables)
config = {
    "HOST": os.environ.get("HOST", "0.0.0.0"),
    "PORT": int(os.environ.get("PORT", 8081)),
    "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO"),
    "CONFIDENCE_THRESHOLD": float(os.environ.get("CONFIDENCE_THRESHOLD", 0.5)),
    "CONNECT_BASE_DELAY": float(os.environ.get("CONNECT_BASE_DELAY", 1.0)),
    "CONNECT_MAX_DELAY": float(os.environ.get("CONNECT_MAX_DELAY", 30.0)),
    "MAX_CONNECT_ATTEMPTS": int(os.environ.get("MAX_CONNECT_ATTEMPTS", 5)),
    "DECODE_RETRY_DELAY": float(os.environ.get("DECODE_RETRY_DELAY", 0.05)),
    "MAX_DECODE_FAILURES": int(os.environ.get("MAX_DECODE_FAILURES", 50)),
    "REPORT_QUEUE_SIZE": int(os.environ.get("REPORT_QUEUE_SIZE", 256)),
    "REPORT_RETRY_DELAY": float(os.environ.get("REPORT_RETRY_DELAY", 0.5)),
    "FAILURE_FLAG_THRESHOLD": int(os.environ.get("FAILURE_FLAG_THRESHOLD", 10)),
    "DRAIN_GRACE_PERIOD": float(os.environ.get("DRAIN_GRACE_PERIOD", 2.0)),
    "SHUTDOWN_TIMEOUT": float(os.environ.get("SHUTDOWN_TIMEOUT", 5.0)),
    "COLLECTOR_URL": os.environ.get("COLLECTOR_URL", ""),
    "REPORT_TIMEOUT": float(os.environ.get("REPORT_TIMEOUT", 5.0)),
    "FACE_MODEL_PATH": os.environ.get("FACE_MODEL_PATH", ""),
    "JPEG_QUALITY": int(os.environ.get("JPEG_QUALITY", 80)),
}

SERVICE_NAME = "rtc-camera-worker"

# Configure logging
logging.basicConfig(
    level=getattr(logging, config["LOG_LEVEL"].upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelinePolicy:
    """Tunables shared by every camera pipeline."""

    confidence_floor: float = 0.5
    connect_base_delay: float = 1.0
    connect_max_delay: float = 30.0
    max_connect_attempts: int = 5
    decode_retry_delay: float = 0.05
    report_queue_capacity: int = 256
    report_retry_delay: float = 0.5
    failure_flag_threshold: int = 10
    drain_grace_period: float = 2.0

    def __post_init__(self):
        if not 0.0 <= self.confidence_floor <= 1.0:
            raise ValueError(f"confidence_floor must be in [0, 1], got {self.confidence_floor}")
        if self.max_connect_attempts < 1:
            raise ValueError("max_connect_attempts must be at least 1")
        if self.report_queue_capacity < 1:
            raise ValueError("report_queue_capacity must be at least 1")
        if self.connect_base_delay < 0 or self.connect_max_delay < self.connect_base_delay:
            raise ValueError("connect delays must satisfy 0 <= base <= max")

    def backoff_delay(self, attempt: int) -> float:
        """Delay to wait after the given failed connect attempt (1-based)."""
        return min(self.connect_base_delay * 2 ** (attempt - 1), self.connect_max_delay)

    @classmethod
    def from_config(cls, cfg: dict) -> "PipelinePolicy":
        return cls(
            confidence_floor=cfg["CONFIDENCE_THRESHOLD"],
            connect_base_delay=cfg["CONNECT_BASE_DELAY"],
            connect_max_delay=cfg["CONNECT_MAX_DELAY"],
            max_connect_attempts=cfg["MAX_CONNECT_ATTEMPTS"],
            decode_retry_delay=cfg["DECODE_RETRY_DELAY"],
            report_queue_capacity=cfg["REPORT_QUEUE_SIZE"],
            report_retry_delay=cfg["REPORT_RETRY_DELAY"],
            failure_flag_threshold=cfg["FAILURE_FLAG_THRESHOLD"],
            drain_grace_period=cfg["DRAIN_GRACE_PERIOD"],
        )
