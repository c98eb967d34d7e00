# errors.py


class WorkerError(Exception):
    """Base class for every error raised by the camera worker."""


# Manager level, returned to the control plane


class AlreadyRunningError(WorkerError):
    def __init__(self, camera_id):
        super().__init__(f"Stream for camera {camera_id} is already running")
        self.camera_id = camera_id


class NotFoundError(WorkerError):
    def __init__(self, camera_id):
        super().__init__(f"No stream registered for camera {camera_id}")
        self.camera_id = camera_id


class ShutdownTimeoutError(WorkerError):
    def __init__(self, camera_id, timeout):
        super().__init__(f"Stream for camera {camera_id} did not stop within {timeout}s")
        self.camera_id = camera_id
        self.timeout = timeout


# Pipeline fatal, absorbed into the pipeline state


class ConnectError(WorkerError):
    pass


class DecodeFatalError(WorkerError):
    pass


# Transient, logged and counted


class DecodeError(WorkerError):
    pass


class ModelError(WorkerError):
    pass


class PublishError(WorkerError):
    pass


class ReportError(WorkerError):
    pass


class InvalidTransitionError(WorkerError):
    def __init__(self, current, target):
        super().__init__(f"Invalid pipeline transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
