"""
Thread-safe store of raw inertial samples.

The acquisition thread appends; the estimation thread queries ranges. Queries
never consume samples, so the same range can be preintegrated again after a
rejected estimation step.
"""

import bisect
import logging
import threading
from typing import Iterable, List, Optional, Tuple

from vio_backend.common.data_structures import InertialSample

logger = logging.getLogger(__name__)


class InertialBuffer:
    """
    Append-only, timestamp-ordered buffer of inertial samples.

    Timestamps must be strictly increasing. Lookups use bisection over a
    parallel list of timestamps.
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._samples: List[InertialSample] = []
        self._timestamps: List[int] = []

    def append(self, sample: InertialSample) -> None:
        """
        Append one sample.

        Raises:
            ValueError: If the timestamp does not increase.
        """
        with self._condition:
            if self._timestamps and sample.timestamp <= self._timestamps[-1]:
                raise ValueError(
                    f"Inertial sample at {sample.timestamp} ns is not after "
                    f"the latest buffered sample at {self._timestamps[-1]} ns"
                )
            self._samples.append(sample)
            self._timestamps.append(sample.timestamp)
            self._condition.notify_all()

    def extend(self, samples: Iterable[InertialSample]) -> None:
        for sample in samples:
            self.append(sample)

    def query(self, start_ns: int, end_ns: int) -> Tuple[InertialSample, ...]:
        """
        Samples with ``start_ns <= timestamp <= end_ns``.

        Raises:
            ValueError: If ``end_ns < start_ns``.
        """
        if end_ns < start_ns:
            raise ValueError(f"Invalid range [{start_ns}, {end_ns}]")
        with self._condition:
            lo = bisect.bisect_left(self._timestamps, start_ns)
            hi = bisect.bisect_right(self._timestamps, end_ns)
            return tuple(self._samples[lo:hi])

    def wait_for(self, timestamp_ns: int, timeout: Optional[float] = None) -> bool:
        """
        Block until a sample at or after ``timestamp_ns`` is buffered.

        Returns:
            True if such a sample is available, False on timeout.
        """
        with self._condition:
            available = self._condition.wait_for(
                lambda: bool(self._timestamps) and self._timestamps[-1] >= timestamp_ns,
                timeout=timeout
            )
        if not available:
            logger.debug(f"Timed out waiting for inertial data up to {timestamp_ns} ns")
        return available

    @property
    def oldest_timestamp(self) -> Optional[int]:
        with self._condition:
            return self._timestamps[0] if self._timestamps else None

    @property
    def latest_timestamp(self) -> Optional[int]:
        with self._condition:
            return self._timestamps[-1] if self._timestamps else None

    def __len__(self) -> int:
        with self._condition:
            return len(self._samples)
