# manager.py
import logging
import threading
from contextlib import contextmanager
from typing import Callable

from .config import PipelinePolicy
from .errors import AlreadyRunningError, NotFoundError, ShutdownTimeoutError
from .interfaces import Detector, EventReporter, FramePublisher, FrameSource
from .pipeline import StreamPipeline

logger = logging.getLogger(__name__)


class PipelineManager:
    """
    Owns one StreamPipeline per camera id.

    A single lock guards the collection itself and is only held for
    dictionary operations. Start and stop of the same camera are serialized
    by a per-camera lock, so a slow shutdown of one camera never holds up
    requests for another.
    """

    def __init__(self, detector: Detector, frame_publisher: FramePublisher,
                 event_reporter: EventReporter, source_factory: Callable[[str], FrameSource],
                 policy: PipelinePolicy, shutdown_timeout: float = 5.0):
        self.detector = detector
        self.frame_publisher = frame_publisher
        self.event_reporter = event_reporter
        self.source_factory = source_factory
        self.policy = policy
        self.shutdown_timeout = shutdown_timeout
        self._lock = threading.Lock()
        self._pipelines = {}
        self._camera_locks = {}

    @contextmanager
    def _camera_lock(self, camera_id):
        """Hold the camera's lock. Entries live only while some caller holds or waits on them."""
        with self._lock:
            entry = self._camera_locks.get(camera_id)
            if entry is None:
                entry = self._camera_locks[camera_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._camera_locks[camera_id]

    def _lookup(self, camera_id):
        with self._lock:
            return self._pipelines.get(camera_id)

    def start_stream(self, camera):
        """
        Create and start a pipeline for the camera.

        Returns once the pipeline is Connecting, without waiting for the
        connection itself. Raises AlreadyRunningError if a pipeline for this
        camera id is still active. An Errored pipeline is torn down and replaced.
        """
        logger.info(f"Starting stream processing for camera: {camera.name} ({camera.id})")
        with self._camera_lock(camera.id):
            existing = self._lookup(camera.id)
            if existing is not None:
                if not existing.state.is_terminal:
                    raise AlreadyRunningError(camera.id)
                logger.info(f"Replacing {existing.state.value} pipeline for camera {camera.id}")
                self._shutdown(camera.id, existing)

            pipeline = StreamPipeline(
                camera,
                self.source_factory(camera.rtsp_url),
                self.detector,
                self.frame_publisher,
                self.event_reporter,
                self.policy,
            )
            pipeline.start()
            with self._lock:
                self._pipelines[camera.id] = pipeline
            return pipeline

    def stop_stream(self, camera_id):
        """
        Stop the camera's pipeline and wait for it to finish.

        Raises NotFoundError for an unknown camera, and ShutdownTimeoutError if
        the pipeline did not finish within the shutdown timeout. The entry is
        removed in both the success and the timeout case.
        """
        logger.info(f"Stopping stream processing for camera: {camera_id}")
        with self._camera_lock(camera_id):
            pipeline = self._lookup(camera_id)
            if pipeline is None:
                raise NotFoundError(camera_id)
            self._shutdown(camera_id, pipeline)

    def _shutdown(self, camera_id, pipeline):
        finished = pipeline.stop(self.shutdown_timeout)
        if not finished:
            pipeline.abandon()
        with self._lock:
            if self._pipelines.get(camera_id) is pipeline:
                del self._pipelines[camera_id]
        self.frame_publisher.discard(camera_id)
        if not finished:
            logger.error(f"Pipeline for camera {camera_id} did not stop within "
                         f"{self.shutdown_timeout}s, abandoning it")
            raise ShutdownTimeoutError(camera_id, self.shutdown_timeout)
        logger.info(f"Stopped stream processing for camera: {camera_id}")

    def list_streams(self):
        """Snapshot of (camera_id, state) for every registered pipeline."""
        with self._lock:
            pipelines = list(self._pipelines.items())
        return [(camera_id, pipeline.state) for camera_id, pipeline in pipelines]

    def get(self, camera_id):
        pipeline = self._lookup(camera_id)
        if pipeline is None:
            raise NotFoundError(camera_id)
        return pipeline

    def get_status(self, camera_id):
        return self.get(camera_id).get_status()

    def stop_all(self):
        with self._lock:
            camera_ids = list(self._pipelines)
        for camera_id in camera_ids:
            try:
                self.stop_stream(camera_id)
            except NotFoundError:
                pass
            except ShutdownTimeoutError as e:
                logger.error(str(e))
