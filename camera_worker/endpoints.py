# endpoints.py
import asyncio
import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import SERVICE_NAME
from .errors import AlreadyRunningError, NotFoundError
from .manager import PipelineManager
from .models import Camera

logger = logging.getLogger(__name__)
router = APIRouter()


def get_manager(request: Request) -> PipelineManager:
    return request.app.state.manager


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


@router.post("/cameras/{camera_id}/start")
async def start_camera(
    request: Request,
    camera_id: str = Path(..., description="ID of the camera to start"),
    manager: PipelineManager = Depends(get_manager),
):
    try:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise ValueError("Camera body must be a JSON object")
        payload["id"] = camera_id
        camera = Camera.model_validate(payload)
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        await run_in_threadpool(manager.start_stream, camera)
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception(f"Error starting stream for camera {camera_id}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "message": "Stream processing started",
        "camera": camera.model_dump(),
    }


@router.post("/cameras/{camera_id}/stop")
def stop_camera(
    camera_id: str = Path(..., description="ID of the camera to stop"),
    manager: PipelineManager = Depends(get_manager),
):
    try:
        manager.stop_stream(camera_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception(f"Error stopping stream for camera {camera_id}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "message": "Stream processing stopped",
        "camera_id": camera_id,
    }


@router.get("/status")
async def status(manager: PipelineManager = Depends(get_manager)):
    active_streams = [
        camera_id for camera_id, state in manager.list_streams() if not state.is_terminal
    ]
    return {
        "active_streams": active_streams,
        "total_count": len(active_streams),
    }


@router.get("/cameras/{camera_id}/status")
async def camera_status(
    camera_id: str = Path(..., description="ID of the camera to check status"),
    manager: PipelineManager = Depends(get_manager),
):
    try:
        return manager.get_status(camera_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/stream/{camera_id}")
async def stream_video(
    request: Request,
    camera_id: str = Path(..., description="ID of the camera to watch"),
    manager: PipelineManager = Depends(get_manager),
):
    publisher = request.app.state.frame_publisher
    if publisher is None or not hasattr(publisher, "get_frame"):
        raise HTTPException(status_code=404, detail="Live view is not enabled")
    try:
        manager.get(camera_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    def is_active():
        return any(cid == camera_id and not state.is_terminal
                   for cid, state in manager.list_streams())

    async def generate_frames():
        while is_active():
            frame_bytes = publisher.get_frame(camera_id)
            if frame_bytes:
                yield (b'--frame\r\n'
                       b'Content-Type: image/jpeg\r\n\r\n' + frame_bytes + b'\r\n')
            await asyncio.sleep(0.033)

    return StreamingResponse(
        generate_frames(),
        media_type="multipart/x-mixed-replace; boundary=frame",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
