# pipeline.py
import datetime
import logging
import threading
import time

from .config import PipelinePolicy
from .detection import annotate_frame
from .errors import ConnectError, DecodeError, DecodeFatalError, InvalidTransitionError
from .interfaces import Detector, EventReporter, FramePublisher, FrameSource
from .models import Camera, FaceDetection, PipelineState
from .queues import FrameSlot, ReportBuffer

logger = logging.getLogger(__name__)

TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.CONNECTING},
    PipelineState.CONNECTING: {PipelineState.RUNNING, PipelineState.STOPPING, PipelineState.ERRORED},
    PipelineState.RUNNING: {PipelineState.STOPPING, PipelineState.ERRORED},
    PipelineState.STOPPING: {PipelineState.STOPPED},
    PipelineState.STOPPED: set(),
    PipelineState.ERRORED: set(),
}

# Upper bound on how long a send worker sleeps before re-checking for drain
WORKER_POLL_INTERVAL = 0.1


class StreamPipeline:
    """
    Processing loop for one camera: connect, decode, detect, annotate, publish, report.

    The run loop executes on its own thread. Annotated frames and detection
    events are handed to two send workers through bounded buffers so a slow
    publisher or collector never stalls frame ingestion.
    """

    def __init__(self, camera: Camera, source: FrameSource, detector: Detector,
                 frame_publisher: FramePublisher, event_reporter: EventReporter,
                 policy: PipelinePolicy, annotate=annotate_frame):
        self.camera = camera.model_copy(deep=True)
        self.camera_id = self.camera.id
        self.name = self.camera.name or f"Camera {self.camera_id}"
        self.source = source
        self.detector = detector
        self.frame_publisher = frame_publisher
        self.event_reporter = event_reporter
        self.policy = policy
        self.annotate = annotate

        self.state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._draining = threading.Event()
        self._abandoned = threading.Event()
        self._frame_slot = FrameSlot()
        self._reports = ReportBuffer(policy.report_queue_capacity)
        self._run_thread = None
        self._publish_thread = None
        self._report_thread = None

        self.created_at = datetime.datetime.now().isoformat()
        self.started_at = None
        self.last_error = None
        self.last_detection_time = None
        self.current_fps = 0

        self.connect_attempts = 0
        self.connect_failures = 0
        self.frames_processed = 0
        self.detections_emitted = 0
        self.decode_errors = 0
        self.model_errors = 0
        self.frames_published = 0
        self.publish_failures = 0
        self.consecutive_publish_failures = 0
        self.publish_degraded = False
        self.reports_sent = 0
        self.report_failures = 0
        self.consecutive_report_failures = 0
        self.report_degraded = False
        self.reports_abandoned = 0

    @property
    def reports_dropped(self):
        return self._reports.dropped

    @property
    def report_backlog(self):
        return len(self._reports)

    @property
    def abandoned(self):
        return self._abandoned.is_set()

    def _transition(self, target):
        with self._state_lock:
            if target not in TRANSITIONS[self.state]:
                raise InvalidTransitionError(self.state, target)
            previous, self.state = self.state, target
        logger.info(f"Camera {self.camera_id}: {previous.value} -> {target.value}")

    def start(self):
        """Leave Idle and hand the pipeline to its own thread. Returns once Connecting."""
        self._transition(PipelineState.CONNECTING)
        self.started_at = time.time()
        self._run_thread = threading.Thread(
            target=self._run, name=f"pipeline-{self.camera_id}", daemon=True
        )
        self._run_thread.start()

    def stop(self, timeout):
        """
        Signal cancellation and wait up to timeout seconds for the run thread
        and both send workers. Safe to call more than once.

        Returns True only if every thread finished, so no call to the detector,
        publisher or reporter can still be in flight. A worker abandoned during
        drain that is still stuck in a send counts as not finished.
        """
        if not self._cancel.is_set():
            logger.info(f"Stopping stream for camera {self.camera_id}")
            self._cancel.set()
        if self._run_thread is None:
            return True
        deadline = time.monotonic() + timeout
        self._run_thread.join(timeout)
        # the run thread starts the workers, so read them only after it is done
        threads = [t for t in (self._run_thread, self._publish_thread, self._report_thread) if t is not None]
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        return not any(thread.is_alive() for thread in threads)

    def abandon(self):
        """Give up on a pipeline that did not stop in time; it makes no further calls out."""
        self._cancel.set()
        self._abandoned.set()
        self._draining.set()
        self._frame_slot.wake()
        self._reports.wake()

    def is_alive(self):
        threads = (self._run_thread, self._publish_thread, self._report_thread)
        return any(thread is not None and thread.is_alive() for thread in threads)

    def _run(self):
        error = None
        try:
            if self._connect():
                self._transition(PipelineState.RUNNING)
                self._start_workers()
                self._process_frames()
            elif not self._cancel.is_set():
                error = ConnectError(
                    f"Gave up on {self.camera.rtsp_url} after {self.connect_attempts} attempts: {self.last_error}"
                )
        except DecodeFatalError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error in pipeline for camera {self.camera_id}")
            error = e
        finally:
            self._close_source()

        if error is not None:
            self.last_error = str(error)
            logger.error(f"Stream for camera {self.camera_id} failed: {error}")
            self._transition(PipelineState.ERRORED)
            self._drain()
        else:
            self._transition(PipelineState.STOPPING)
            self._drain()
            self._transition(PipelineState.STOPPED)

    def _connect(self):
        """Open the source with exponential backoff. Returns False if cancelled or out of attempts."""
        attempt = 0
        while not self._cancel.is_set():
            attempt += 1
            self.connect_attempts += 1
            try:
                self.source.open()
            except ConnectError as e:
                self.connect_failures += 1
                self.last_error = str(e)
                if attempt >= self.policy.max_connect_attempts:
                    return False
                delay = self.policy.backoff_delay(attempt)
                logger.warning(f"Connect attempt {attempt}/{self.policy.max_connect_attempts} for camera "
                               f"{self.camera_id} failed, retrying in {delay:.1f}s: {e}")
                self._cancel.wait(delay)
                continue
            self.connect_failures = 0
            return True
        return False

    def _close_source(self):
        try:
            self.source.close()
        except Exception:
            logger.exception(f"Error closing source for camera {self.camera_id}")

    def _start_workers(self):
        self._publish_thread = threading.Thread(
            target=self._publish_loop, name=f"publish-{self.camera_id}", daemon=True
        )
        self._report_thread = threading.Thread(
            target=self._report_loop, name=f"report-{self.camera_id}", daemon=True
        )
        self._publish_thread.start()
        self._report_thread.start()

    def _process_frames(self):
        frame_count = 0
        window_start = time.time()

        while not self._cancel.is_set():
            try:
                frame = self.source.read()
            except DecodeError as e:
                self.decode_errors += 1
                logger.warning(f"Decode error on camera {self.camera_id} ({self.decode_errors} total): {e}")
                self._cancel.wait(self.policy.decode_retry_delay)
                continue

            if self._abandoned.is_set():
                break
            self._process_frame(frame)

            frame_count += 1
            elapsed = time.time() - window_start
            if elapsed >= 1.0:
                self.current_fps = frame_count / elapsed
                frame_count = 0
                window_start = time.time()

    def _process_frame(self, frame):
        try:
            results = self.detector.detect(frame)
            detections = [
                FaceDetection.for_camera(self.camera, confidence, box)
                for confidence, box in results
                if confidence >= self.policy.confidence_floor
            ]
        except Exception as e:
            self.model_errors += 1
            self.last_error = str(e)
            logger.warning(f"Detection failed on camera {self.camera_id}: {e}")
            return

        try:
            annotated_frame = self.annotate(frame, detections)
        except Exception as e:
            self.model_errors += 1
            logger.warning(f"Annotation failed on camera {self.camera_id}: {e}")
            annotated_frame = frame

        self._frame_slot.offer(annotated_frame)
        for detection in detections:
            self._reports.put(detection)

        self.frames_processed += 1
        if detections:
            self.detections_emitted += len(detections)
            self.last_detection_time = detections[-1].timestamp

    def _publish_loop(self):
        while not self._abandoned.is_set():
            if self._draining.is_set():
                self._frame_slot.clear()
                return
            frame = self._frame_slot.take(WORKER_POLL_INTERVAL)
            if frame is None or self._draining.is_set() or self._abandoned.is_set():
                continue
            self._send_frame(frame)

    def _send_frame(self, frame):
        try:
            self.frame_publisher.publish(self.camera_id, frame)
        except Exception as e:
            self.publish_failures += 1
            self.consecutive_publish_failures += 1
            if self.consecutive_publish_failures == self.policy.failure_flag_threshold:
                self.publish_degraded = True
                logger.error(f"Publishing for camera {self.camera_id} failed "
                             f"{self.consecutive_publish_failures} times in a row: {e}")
            else:
                logger.warning(f"Publish failed for camera {self.camera_id}: {e}")
            return
        if self.publish_degraded:
            logger.info(f"Publishing for camera {self.camera_id} recovered")
        self.publish_degraded = False
        self.consecutive_publish_failures = 0
        self.frames_published += 1

    def _report_loop(self):
        while not self._abandoned.is_set():
            detection = self._reports.peek(WORKER_POLL_INTERVAL)
            if detection is None:
                if self._draining.is_set():
                    return
                continue
            if self._abandoned.is_set():
                return
            if self._send_report(detection):
                self._reports.ack(detection)
                continue
            still_queued = self._reports.release(detection)
            if self._draining.is_set():
                # no retries while draining
                if still_queued:
                    self._reports.ack(detection)
                    self.reports_abandoned += 1
            else:
                self._draining.wait(self.policy.report_retry_delay)

    def _send_report(self, detection):
        try:
            self.event_reporter.report(detection)
        except Exception as e:
            self.report_failures += 1
            self.consecutive_report_failures += 1
            if self.consecutive_report_failures == self.policy.failure_flag_threshold:
                self.report_degraded = True
                logger.error(f"Reporting for camera {self.camera_id} failed "
                             f"{self.consecutive_report_failures} times in a row: {e}")
            else:
                logger.warning(f"Report failed for camera {self.camera_id}: {e}")
            return False
        if self.report_degraded:
            logger.info(f"Reporting for camera {self.camera_id} recovered")
        self.report_degraded = False
        self.consecutive_report_failures = 0
        self.reports_sent += 1
        return True

    def _drain(self):
        self._draining.set()
        self._frame_slot.wake()
        self._reports.wake()

        deadline = time.monotonic() + self.policy.drain_grace_period
        workers = [t for t in (self._publish_thread, self._report_thread) if t is not None]
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))

        stuck = [worker.name for worker in workers if worker.is_alive()]
        if stuck:
            self._abandoned.set()
            logger.error(f"Abandoning {', '.join(stuck)} for camera {self.camera_id} "
                         f"after {self.policy.drain_grace_period}s drain grace period")

        leftover = self._reports.clear()
        if leftover:
            self.reports_abandoned += leftover
            logger.warning(f"Discarded {leftover} undelivered detections for camera {self.camera_id}")

    def get_status(self):
        uptime = 0
        if self.started_at is not None and self.is_alive():
            uptime = int(time.time() - self.started_at)
        return {
            "camera_id": self.camera_id,
            "name": self.name,
            "url": self.camera.rtsp_url,
            "state": self.state.value,
            "fps": round(self.current_fps, 2),
            "uptime": uptime,
            "frames_processed": self.frames_processed,
            "detections_count": self.detections_emitted,
            "last_detection": self.last_detection_time,
            "connect_attempts": self.connect_attempts,
            "connect_failures": self.connect_failures,
            "decode_errors": self.decode_errors,
            "model_errors": self.model_errors,
            "frames_published": self.frames_published,
            "frames_replaced": self._frame_slot.replaced,
            "publish_failures": self.publish_failures,
            "publish_degraded": self.publish_degraded,
            "reports_sent": self.reports_sent,
            "report_failures": self.report_failures,
            "report_degraded": self.report_degraded,
            "report_backlog": self.report_backlog,
            "reports_dropped": self.reports_dropped,
            "reports_abandoned": self.reports_abandoned,
            "last_error": self.last_error,
            "created_at": self.created_at,
        }
