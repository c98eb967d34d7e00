# app.py
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from .config import SERVICE_NAME, PipelinePolicy, config
from .detection import HaarFaceDetector
from .endpoints import router as api_router
from .manager import PipelineManager
from .publishing import HttpEventReporter, LoggingEventReporter, MjpegFramePublisher
from .sources import OpenCVFrameSource

logger = logging.getLogger(__name__)


def build_detector(cfg):
    if cfg["FACE_MODEL_PATH"]:
        # torch is only needed for the YOLOv5 face model
        from .yolo import YoloFaceDetector
        return YoloFaceDetector(cfg["FACE_MODEL_PATH"])
    return HaarFaceDetector()


def build_reporter(cfg):
    if cfg["COLLECTOR_URL"]:
        return HttpEventReporter(cfg["COLLECTOR_URL"], timeout=cfg["REPORT_TIMEOUT"])
    logger.warning("COLLECTOR_URL not set, detections will only be logged")
    return LoggingEventReporter()


def build_manager(cfg, frame_publisher):
    def source_factory(camera_url):
        return OpenCVFrameSource(camera_url, max_consecutive_failures=cfg["MAX_DECODE_FAILURES"])

    return PipelineManager(
        detector=build_detector(cfg),
        frame_publisher=frame_publisher,
        event_reporter=build_reporter(cfg),
        source_factory=source_factory,
        policy=PipelinePolicy.from_config(cfg),
        shutdown_timeout=cfg["SHUTDOWN_TIMEOUT"],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{SERVICE_NAME} ready")
    yield
    logger.info("Shutting down, stopping all streams")
    await run_in_threadpool(app.state.manager.stop_all)


def create_app(manager=None, frame_publisher=None):
    if manager is None:
        frame_publisher = frame_publisher or MjpegFramePublisher(jpeg_quality=config["JPEG_QUALITY"])
        manager = build_manager(config, frame_publisher)

    app = FastAPI(
        title="RTC Camera Worker",
        description="Per-camera face detection pipelines",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.frame_publisher = frame_publisher

    # Enable CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins – change if needed.
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router)
    return app


if __name__ == "__main__":
    logger.info(f"Worker service starting on port {config['PORT']}")
    uvicorn.run("camera_worker.app:create_app", factory=True,
                host=config["HOST"], port=config["PORT"])
