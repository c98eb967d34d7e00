"""
Tests for the pipeline manager: registration, concurrency and shutdown
"""

import threading
import time
import unittest

from camera_worker.errors import AlreadyRunningError, NotFoundError, ShutdownTimeoutError
from camera_worker.manager import PipelineManager
from camera_worker.models import PipelineState

from tests.stubs import (
    FACE_BOX,
    RecordingDetector,
    RecordingPublisher,
    RecordingReporter,
    ScriptedSource,
    fast_policy,
    make_camera,
    wait_until,
)


class SourceFactory:
    """Builds a scripted source per camera URL and remembers every one it made."""

    def __init__(self, **defaults):
        self.defaults = defaults
        self.overrides = {}
        self.created = []

    def __call__(self, camera_url):
        options = dict(self.defaults)
        options.update(self.overrides.get(camera_url, {}))
        source = ScriptedSource(**options)
        self.created.append((camera_url, source))
        return source


class ManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.detector = RecordingDetector(results=[(0.9, FACE_BOX)])
        self.publisher = RecordingPublisher()
        self.reporter = RecordingReporter()
        self.sources = SourceFactory(endless=True)
        self.manager = PipelineManager(
            detector=self.detector,
            frame_publisher=self.publisher,
            event_reporter=self.reporter,
            source_factory=self.sources,
            policy=fast_policy(max_connect_attempts=2),
            shutdown_timeout=2.0,
        )

    def tearDown(self):
        self.manager.stop_all()

    def states(self):
        return dict(self.manager.list_streams())


class TestStartStream(ManagerTestCase):
    def test_start_registers_camera(self):
        self.manager.start_stream(make_camera("cam-1"))

        states = self.states()
        self.assertEqual(list(states), ["cam-1"])
        self.assertIn(states["cam-1"], (PipelineState.CONNECTING, PipelineState.RUNNING))

    def test_second_start_is_rejected(self):
        camera = make_camera("cam-1")
        first = self.manager.start_stream(camera)

        with self.assertRaises(AlreadyRunningError):
            self.manager.start_stream(camera)

        self.assertEqual(len(self.manager.list_streams()), 1)
        self.assertIs(self.manager.get("cam-1"), first)

    def test_concurrent_starts_of_distinct_cameras(self):
        errors = []

        def start(index):
            try:
                self.manager.start_stream(make_camera(f"cam-{index}", url=f"rtsp://camera.local/{index}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=start, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(self.states()), sorted(f"cam-{i}" for i in range(8)))

    def test_concurrent_starts_of_same_camera(self):
        results = []

        def start():
            try:
                self.manager.start_stream(make_camera("cam-1"))
                results.append("started")
            except AlreadyRunningError:
                results.append("rejected")

        threads = [threading.Thread(target=start) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("started"), 1)
        self.assertEqual(results.count("rejected"), 5)
        self.assertEqual(len(self.manager.list_streams()), 1)

    def test_errored_pipeline_stays_listed_and_can_restart(self):
        self.sources.overrides["rtsp://broken"] = {"connect_failures": 100}
        camera = make_camera("cam-1", url="rtsp://broken")
        first = self.manager.start_stream(camera)
        self.assertTrue(wait_until(lambda: first.state == PipelineState.ERRORED))
        self.assertEqual(self.states(), {"cam-1": PipelineState.ERRORED})

        camera.rtsp_url = "rtsp://camera.local/fixed"
        second = self.manager.start_stream(camera)

        self.assertIsNot(second, first)
        self.assertFalse(first.is_alive())
        self.assertEqual(len(self.manager.list_streams()), 1)
        self.assertTrue(wait_until(lambda: second.state == PipelineState.RUNNING))


class TestStopStream(ManagerTestCase):
    def test_stop_unknown_camera(self):
        self.manager.start_stream(make_camera("cam-1"))
        before = self.states()

        with self.assertRaises(NotFoundError):
            self.manager.stop_stream("cam-404")

        self.assertEqual(list(self.states()), list(before))

    def test_stop_removes_entry(self):
        pipeline = self.manager.start_stream(make_camera("cam-1"))

        self.manager.stop_stream("cam-1")

        self.assertEqual(self.manager.list_streams(), [])
        self.assertEqual(pipeline.state, PipelineState.STOPPED)
        with self.assertRaises(NotFoundError):
            self.manager.stop_stream("cam-1")

    def test_no_detector_calls_after_stop(self):
        self.manager.start_stream(make_camera("cam-1"))
        self.assertTrue(wait_until(lambda: self.detector.calls > 3))

        self.manager.stop_stream("cam-1")
        calls = self.detector.calls
        reported = self.reporter.attempts
        published = self.publisher.calls
        time.sleep(0.1)

        self.assertEqual(self.detector.calls, calls)
        self.assertEqual(self.reporter.attempts, reported)
        self.assertEqual(self.publisher.calls, published)

    def test_restart_after_stop(self):
        self.manager.start_stream(make_camera("cam-1"))
        self.manager.stop_stream("cam-1")

        pipeline = self.manager.start_stream(make_camera("cam-1"))

        self.assertTrue(wait_until(lambda: pipeline.state == PipelineState.RUNNING))

    def test_stop_errored_pipeline(self):
        self.sources.overrides["rtsp://broken"] = {"connect_failures": 100}
        pipeline = self.manager.start_stream(make_camera("cam-1", url="rtsp://broken"))
        self.assertTrue(wait_until(lambda: pipeline.state == PipelineState.ERRORED))

        self.manager.stop_stream("cam-1")

        self.assertEqual(self.manager.list_streams(), [])
        self.assertEqual(pipeline.state, PipelineState.ERRORED)

    def test_shutdown_timeout_still_removes_entry(self):
        release = threading.Event()
        self.sources.overrides["rtsp://hung"] = {"block": release}
        self.manager.shutdown_timeout = 0.2
        pipeline = self.manager.start_stream(make_camera("cam-1", url="rtsp://hung"))
        source = self.sources.created[-1][1]
        self.assertTrue(wait_until(lambda: source.read_calls >= 1))

        try:
            with self.assertRaises(ShutdownTimeoutError):
                self.manager.stop_stream("cam-1")
            self.assertEqual(self.manager.list_streams(), [])
            self.assertTrue(pipeline.abandoned)
        finally:
            release.set()

        self.assertTrue(wait_until(lambda: not pipeline.is_alive()))
        self.assertEqual(self.detector.calls, 0)

    def test_report_stuck_past_drain_is_a_shutdown_timeout(self):
        release = threading.Event()
        self.reporter.block = release
        self.manager.policy = fast_policy(max_connect_attempts=2, drain_grace_period=0.2)
        self.manager.shutdown_timeout = 0.5
        pipeline = self.manager.start_stream(make_camera("cam-1"))
        self.assertTrue(wait_until(lambda: self.reporter.attempts == 1))

        try:
            with self.assertRaises(ShutdownTimeoutError):
                self.manager.stop_stream("cam-1")
            self.assertEqual(self.manager.list_streams(), [])
            self.assertTrue(pipeline.abandoned)
        finally:
            release.set()

        self.assertTrue(wait_until(lambda: not pipeline.is_alive()))
        time.sleep(0.05)
        self.assertEqual(self.reporter.attempts, 1)

    def test_successful_stop_leaves_no_send_in_flight(self):
        pipeline = self.manager.start_stream(make_camera("cam-1"))
        self.assertTrue(wait_until(lambda: self.reporter.count > 0))

        self.manager.stop_stream("cam-1")

        self.assertFalse(pipeline.is_alive())

    def test_stop_discards_live_view_frame(self):
        self.manager.start_stream(make_camera("cam-1"))
        self.manager.stop_stream("cam-1")

        self.assertEqual(self.publisher.discarded, ["cam-1"])

    def test_camera_locks_do_not_accumulate(self):
        for index in range(100):
            with self.assertRaises(NotFoundError):
                self.manager.stop_stream(f"ghost-{index}")
        self.manager.start_stream(make_camera("cam-1"))
        self.manager.stop_stream("cam-1")

        self.assertEqual(self.manager._camera_locks, {})

    def test_slow_stop_does_not_block_other_cameras(self):
        release = threading.Event()
        self.sources.overrides["rtsp://hung"] = {"block": release}
        self.manager.shutdown_timeout = 1.0
        self.manager.start_stream(make_camera("cam-hung", url="rtsp://hung"))
        source = self.sources.created[-1][1]
        self.assertTrue(wait_until(lambda: source.read_calls >= 1))

        stopper = threading.Thread(target=self._stop_quietly, args=("cam-hung",))
        stopper.start()
        try:
            time.sleep(0.05)
            started = time.monotonic()
            self.manager.start_stream(make_camera("cam-2", url="rtsp://camera.local/2"))
            self.manager.stop_stream("cam-2")
            self.assertLess(time.monotonic() - started, 0.8)
        finally:
            release.set()
            stopper.join()

    def _stop_quietly(self, camera_id):
        try:
            self.manager.stop_stream(camera_id)
        except ShutdownTimeoutError:
            pass

    def test_stop_all(self):
        for index in range(3):
            self.manager.start_stream(make_camera(f"cam-{index}"))

        self.manager.stop_all()

        self.assertEqual(self.manager.list_streams(), [])


class TestStatus(ManagerTestCase):
    def test_get_status(self):
        self.manager.start_stream(make_camera("cam-1"))
        self.assertTrue(wait_until(lambda: self.manager.get_status("cam-1")["frames_processed"] > 0))

        status = self.manager.get_status("cam-1")
        self.assertEqual(status["camera_id"], "cam-1")
        self.assertEqual(status["name"], "Front Entrance")
        self.assertEqual(status["state"], "running")
        self.assertEqual(status["reports_dropped"], 0)

    def test_get_status_unknown(self):
        with self.assertRaises(NotFoundError):
            self.manager.get_status("cam-404")


if __name__ == "__main__":
    unittest.main()
