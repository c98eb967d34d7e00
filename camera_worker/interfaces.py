# interfaces.py
"""
Capability providers a pipeline talks to.

Each pipeline receives its collaborators at construction, so tests can
substitute deterministic stubs for the camera, the model and the downstream
services.
"""
from typing import Any, List, Protocol, Tuple

from .models import BoundingBox, FaceDetection


class FrameSource(Protocol):
    """Ingest and decode for one camera stream."""

    def open(self) -> None:
        """Connect to the stream. Raises ConnectError."""
        ...

    def read(self) -> Any:
        """Block until the next decoded frame. Raises DecodeError or DecodeFatalError."""
        ...

    def close(self) -> None:
        ...


class Detector(Protocol):
    def detect(self, frame: Any) -> List[Tuple[float, BoundingBox]]:
        """Return (confidence, box) pairs for the faces in a frame. Raises ModelError."""
        ...


class FramePublisher(Protocol):
    def publish(self, camera_id: str, frame: Any) -> None:
        """Hand an annotated frame to real-time distribution. Raises PublishError."""
        ...

    def discard(self, camera_id: str) -> None:
        """Forget the last frame kept for a camera that is no longer processed."""
        ...


class EventReporter(Protocol):
    def report(self, detection: FaceDetection) -> None:
        """Deliver a detection event to the collector. Raises ReportError."""
        ...
