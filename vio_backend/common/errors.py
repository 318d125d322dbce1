"""
Error taxonomy for the estimation backend.

Every error here is a recoverable signal for the caller. None of them is
meant to abort the process.
"""


class BackendError(Exception):
    """Base class for all backend errors."""
    pass


class InsufficientData(BackendError):
    """Raised when no inertial samples cover a requested, non-degenerate range.

    The caller is expected to wait for more data and retry.
    """

    def __init__(self, start_ns: int, end_ns: int):
        self.start_ns = start_ns
        self.end_ns = end_ns
        super().__init__(
            f"No inertial samples available in [{start_ns}, {end_ns}] ns"
        )


class DuplicateObservation(BackendError):
    """Raised when a landmark already holds an observation for a frame."""

    def __init__(self, landmark_id: int, frame_id: int):
        self.landmark_id = landmark_id
        self.frame_id = frame_id
        super().__init__(
            f"Landmark {landmark_id} already has an observation in frame {frame_id}"
        )


class DegenerateLandmark(BackendError):
    """Raised when promoting a landmark to an explicit point is numerically unsafe."""

    def __init__(self, landmark_id: int, reason: str):
        self.landmark_id = landmark_id
        self.reason = reason
        super().__init__(f"Landmark {landmark_id} is degenerate: {reason}")


class OptimizationFailed(BackendError):
    """Raised when the optimization engine does not produce a usable estimate.

    The estimation step that hit it is rejected as a whole.
    """
    pass


class StaleSlotHandle(BackendError):
    """Raised when a factor slot handle no longer names a live factor."""
    pass


class InitializationFailed(BackendError):
    """Raised when online initialization cannot estimate a consistent initial state.

    The caller is expected to collect more keyframes and try again.
    """
    pass
