# models.py
import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Camera(BaseModel):
    id: str = ""
    name: str = ""
    rtsp_url: str
    is_active: bool = False
    status: str = ""


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(ge=0)
    height: int = Field(ge=0)


class FaceDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    camera_id: str
    camera_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    bounding_box: BoundingBox
    timestamp: str

    @classmethod
    def for_camera(cls, camera: Camera, confidence: float, box: BoundingBox) -> "FaceDetection":
        """Stamp a raw detector result with the camera identity and the current UTC time."""
        return cls(
            camera_id=camera.id,
            camera_name=camera.name,
            confidence=confidence,
            bounding_box=box,
            timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
        )


class PipelineState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.STOPPED, PipelineState.ERRORED)
