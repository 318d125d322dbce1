"""
IMU preintegration between keyframes.

ImuPreintegrator does the on-manifold numerics. PreintegrationManager owns the
current bias estimate and the in-progress accumulator shared between the
acquisition and estimation threads.
"""

import logging
import threading
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from vio_backend.common.config import ImuParams
from vio_backend.common.data_structures import (
    NS_TO_SEC, BiasEstimate, InertialSample, Pose, PreintegratedSummary
)
from vio_backend.common.errors import InsufficientData
from vio_backend.estimation.inertial_buffer import InertialBuffer
from vio_backend.utils.math_utils import project_to_so3, skew, so3_exp, so3_right_jacobian

logger = logging.getLogger(__name__)


Increment = Tuple[np.ndarray, np.ndarray, float]


def split_increments(
    summary: PreintegratedSummary,
    timestamp_ns: int
) -> Tuple[List[Increment], List[Increment]]:
    """
    Readings of ``summary`` before and after ``timestamp_ns``.

    Increments are laid end to end from ``summary.start_ns``. A reading that
    straddles ``timestamp_ns`` is split between both sides.
    """
    head, tail = [], []
    t = summary.start_ns
    for acceleration, angular_rate, dt in summary.increments:
        t_next = t + int(round(dt / NS_TO_SEC))
        if t_next <= timestamp_ns:
            head.append((acceleration, angular_rate, dt))
        elif t >= timestamp_ns:
            tail.append((acceleration, angular_rate, dt))
        else:
            head.append((acceleration, angular_rate, (timestamp_ns - t) * NS_TO_SEC))
            tail.append((acceleration, angular_rate, (t_next - timestamp_ns) * NS_TO_SEC))
        t = t_next
    return head, tail


class ImuPreintegrator:
    """
    Preintegrates IMU readings into a relative motion in the start body frame.

    Gravity is not applied here. Covariance is propagated in the order
    [rotation, velocity, position] and bias Jacobians in the order
    [accelerometer, gyroscope].
    """

    def __init__(self, params: ImuParams, bias: BiasEstimate, start_ns: int = 0):
        """
        Initialize preintegrator.

        Args:
            params: IMU noise parameters
            bias: Bias estimate used while integrating
            start_ns: Start of the integration interval
        """
        self.params = params
        self.bias = bias
        self.start_ns = start_ns
        self.reset()

    def reset(self):
        """Reset accumulated values to identity."""
        self.delta_R = np.eye(3)
        self.delta_v = np.zeros(3)
        self.delta_p = np.zeros(3)

        # Jacobians with respect to bias
        self.J_R_bg = np.zeros((3, 3))
        self.J_v_ba = np.zeros((3, 3))
        self.J_v_bg = np.zeros((3, 3))
        self.J_p_ba = np.zeros((3, 3))
        self.J_p_bg = np.zeros((3, 3))

        self.covariance = np.zeros((9, 9))
        self.end_ns = self.start_ns
        self.num_samples = 0
        self.increments = []

    @classmethod
    def resume(cls, params: ImuParams, summary: PreintegratedSummary) -> 'ImuPreintegrator':
        """Continue integrating on top of an existing summary."""
        integrator = cls(params, summary.bias_hat, summary.start_ns)
        integrator.delta_R = summary.delta_rotation.copy()
        integrator.delta_v = summary.delta_velocity.copy()
        integrator.delta_p = summary.delta_position.copy()
        J = summary.bias_jacobian
        integrator.J_R_bg = J[0:3, 3:6].copy()
        integrator.J_v_ba = J[3:6, 0:3].copy()
        integrator.J_v_bg = J[3:6, 3:6].copy()
        integrator.J_p_ba = J[6:9, 0:3].copy()
        integrator.J_p_bg = J[6:9, 3:6].copy()
        integrator.covariance = summary.covariance.copy()
        integrator.end_ns = summary.end_ns
        integrator.num_samples = summary.num_samples
        integrator.increments = list(summary.increments)
        return integrator

    def add_measurement(self, acceleration: np.ndarray, angular_rate: np.ndarray, dt: float):
        """
        Integrate one reading held constant over ``dt`` seconds.

        Args:
            acceleration: Raw accelerometer reading
            angular_rate: Raw gyroscope reading
            dt: Duration the reading is held
        """
        if dt <= 0:
            return

        self.increments.append((np.array(acceleration, dtype=float),
                                np.array(angular_rate, dtype=float), dt))

        # Remove bias
        accel = acceleration - self.bias.accelerometer
        gyro = angular_rate - self.bias.gyroscope

        omega_dt = gyro * dt
        dR_inc = so3_exp(omega_dt)
        Jr = so3_right_jacobian(omega_dt)
        dR = self.delta_R
        dR_a_skew = dR @ skew(accel)
        dt2 = dt * dt

        # Noise propagation (discrete-time A/B form)
        A = np.eye(9)
        A[0:3, 0:3] = dR_inc.T
        A[3:6, 0:3] = -dR_a_skew * dt
        A[6:9, 0:3] = -0.5 * dR_a_skew * dt2
        A[6:9, 3:6] = np.eye(3) * dt

        B_acc = np.zeros((9, 3))
        B_acc[3:6] = dR * dt
        B_acc[6:9] = 0.5 * dR * dt2

        B_gyro = np.zeros((9, 3))
        B_gyro[0:3] = Jr * dt

        acc_cov = np.eye(3) * self.params.accelerometer_noise_density ** 2 / dt
        gyro_cov = np.eye(3) * self.params.gyroscope_noise_density ** 2 / dt

        self.covariance = (
            A @ self.covariance @ A.T
            + B_acc @ acc_cov @ B_acc.T
            + B_gyro @ gyro_cov @ B_gyro.T
        )
        self.covariance[6:9, 6:9] += np.eye(3) * self.params.integration_sigma ** 2 * dt

        # Bias Jacobians use the values before this step
        self.J_p_ba = self.J_p_ba + self.J_v_ba * dt - 0.5 * dR * dt2
        self.J_p_bg = self.J_p_bg + self.J_v_bg * dt - 0.5 * dR_a_skew @ self.J_R_bg * dt2
        self.J_v_ba = self.J_v_ba - dR * dt
        self.J_v_bg = self.J_v_bg - dR_a_skew @ self.J_R_bg * dt
        self.J_R_bg = dR_inc.T @ self.J_R_bg - Jr * dt

        # Deltas
        self.delta_p = self.delta_p + self.delta_v * dt + 0.5 * dR @ accel * dt2
        self.delta_v = self.delta_v + dR @ accel * dt
        self.delta_R = project_to_so3(dR @ dR_inc)

        self.num_samples += 1

    def get_summary(self) -> PreintegratedSummary:
        """Freeze the accumulated values into a summary."""
        jacobian = np.zeros((9, 6))
        jacobian[0:3, 3:6] = self.J_R_bg
        jacobian[3:6, 0:3] = self.J_v_ba
        jacobian[3:6, 3:6] = self.J_v_bg
        jacobian[6:9, 0:3] = self.J_p_ba
        jacobian[6:9, 3:6] = self.J_p_bg

        return PreintegratedSummary(
            delta_rotation=self.delta_R.copy(),
            delta_velocity=self.delta_v.copy(),
            delta_position=self.delta_p.copy(),
            covariance=self.covariance.copy(),
            bias_jacobian=jacobian,
            bias_hat=self.bias,
            start_ns=self.start_ns,
            end_ns=self.end_ns,
            num_samples=self.num_samples,
            increments=tuple(self.increments),
        )


class PreintegrationManager:
    """
    Shared owner of the bias estimate and the in-progress accumulator.

    Both values are immutable and are only ever replaced, so readers get a
    consistent pair from ``snapshot`` without holding the lock while they
    compute. The lock is held only for field swaps.
    """

    def __init__(
        self,
        params: Optional[ImuParams] = None,
        initial_bias: Optional[BiasEstimate] = None,
        start_ns: int = 0
    ):
        self.params = params or ImuParams()
        self._lock = threading.Lock()
        self._bias = initial_bias or BiasEstimate.zero()
        self._accumulator = PreintegratedSummary.identity(self._bias, start_ns)
        self._gravity = np.array(self.params.n_gravity, dtype=float)

    # ------------------------------------------------------------------
    # Locked reads
    # ------------------------------------------------------------------

    def current_bias(self) -> BiasEstimate:
        with self._lock:
            return self._bias

    def current_accumulator(self) -> PreintegratedSummary:
        with self._lock:
            return self._accumulator

    def snapshot(self) -> Tuple[BiasEstimate, PreintegratedSummary]:
        """Consistent (bias, accumulator) pair."""
        with self._lock:
            return self._bias, self._accumulator

    @property
    def gravity(self) -> np.ndarray:
        with self._lock:
            return self._gravity.copy()

    def reset_gravity(self, gravity: Sequence[float]) -> None:
        """Replace the gravity vector, e.g. after online initialization."""
        gravity = np.array(gravity, dtype=float).flatten()
        if len(gravity) != 3:
            raise ValueError(f"Gravity must be 3D, got {len(gravity)}")
        with self._lock:
            self._gravity = gravity
        logger.info(f"Gravity reset to {gravity.tolist()}")

    # ------------------------------------------------------------------
    # Preintegration
    # ------------------------------------------------------------------

    def preintegrate(
        self,
        start_ns: int,
        end_ns: int,
        samples: Iterable[InertialSample]
    ) -> PreintegratedSummary:
        """
        Summarize the samples in ``[start_ns, end_ns]`` using the current bias.

        Each reading is held until the next sample. The first sample also
        covers the gap from ``start_ns`` and the last one is held until
        ``end_ns``, so exactly ``end_ns - start_ns`` is integrated. The
        accumulator is not touched.

        Raises:
            ValueError: If ``end_ns < start_ns``.
            InsufficientData: If no sample lies in a non-degenerate range.
        """
        if end_ns < start_ns:
            raise ValueError(f"Invalid preintegration range [{start_ns}, {end_ns}]")

        bias = self.current_bias()
        if end_ns == start_ns:
            return PreintegratedSummary.identity(bias, start_ns)

        window = [s for s in samples if start_ns <= s.timestamp <= end_ns]
        if not window:
            raise InsufficientData(start_ns, end_ns)
        window.sort(key=lambda s: s.timestamp)

        integrator = ImuPreintegrator(self.params, bias, start_ns)
        for i, sample in enumerate(window):
            hold_until = window[i + 1].timestamp if i + 1 < len(window) else end_ns
            hold_from = start_ns if i == 0 else sample.timestamp
            integrator.add_measurement(
                sample.acceleration,
                sample.angular_rate,
                (hold_until - hold_from) * NS_TO_SEC
            )
        integrator.end_ns = end_ns
        # Samples are counted even when their hold interval is empty
        integrator.num_samples = len(window)

        logger.debug(
            f"Preintegrated {len(window)} samples over [{start_ns}, {end_ns}] ns"
        )
        return integrator.get_summary()

    def preintegrate_from_buffer(
        self,
        buffer: InertialBuffer,
        start_ns: int,
        end_ns: int
    ) -> PreintegratedSummary:
        return self.preintegrate(start_ns, end_ns, buffer.query(start_ns, end_ns))

    def extend(self, samples: Iterable[InertialSample]) -> PreintegratedSummary:
        """
        Extend the in-progress accumulator with newly acquired samples.

        Each reading covers the interval since the accumulator's end. Samples
        at or before that end are skipped. The new accumulator is computed
        without the lock and swapped in only if no other thread replaced the
        accumulator meanwhile; otherwise it is recomputed.
        """
        samples = sorted(samples, key=lambda s: s.timestamp)
        while True:
            base = self.current_accumulator()
            integrator = ImuPreintegrator.resume(self.params, base)
            for sample in samples:
                if sample.timestamp <= integrator.end_ns:
                    continue
                dt = (sample.timestamp - integrator.end_ns) * NS_TO_SEC
                integrator.add_measurement(sample.acceleration, sample.angular_rate, dt)
                integrator.end_ns = sample.timestamp
            extended = integrator.get_summary()

            with self._lock:
                if self._accumulator is base:
                    self._accumulator = extended
                    return extended
            logger.debug("Accumulator replaced during extension, retrying")

    # ------------------------------------------------------------------
    # Updates from the estimation role
    # ------------------------------------------------------------------

    def update_bias(self, new_bias: BiasEstimate) -> None:
        """Replace the bias estimate. The accumulator keeps its own bias."""
        with self._lock:
            self._bias = new_bias
        logger.debug(f"Bias updated to {new_bias.as_vector().tolist()}")

    def reset_and_rebase(self, timestamp_ns: Optional[int] = None) -> PreintegratedSummary:
        """
        Start a new accumulator at ``timestamp_ns`` (default: the end of the
        replaced accumulator) seeded with the current bias.

        Readings the replaced accumulator holds after ``timestamp_ns`` were
        acquired while the previous keyframe was being estimated. They are
        re-integrated into the new accumulator with the new bias.
        """
        while True:
            bias, base = self.snapshot()
            start_ns = base.end_ns if timestamp_ns is None else timestamp_ns
            _, tail = split_increments(base, start_ns)
            if tail:
                # Nothing is known before the replaced accumulator began
                start_ns = max(start_ns, base.start_ns)
                rebased = self._replay(bias, start_ns, base.end_ns, tail)
            else:
                rebased = PreintegratedSummary.identity(bias, start_ns)

            with self._lock:
                if self._accumulator is base and self._bias is bias:
                    self._accumulator = rebased
                    break
            logger.debug("Accumulator or bias replaced during rebase, retrying")

        if tail:
            logger.debug(
                f"Rebased accumulator at {start_ns} ns carrying {len(tail)} readings "
                f"up to {base.end_ns} ns"
            )
        return rebased

    def accumulated_until(self, timestamp_ns: int) -> Tuple[BiasEstimate, PreintegratedSummary]:
        """
        Current bias and the accumulator cut at ``timestamp_ns``.

        Readings after ``timestamp_ns`` are left out of the returned summary
        and stay in the accumulator for the next keyframe.

        Raises:
            InsufficientData: The accumulator does not reach ``timestamp_ns`` yet.
        """
        bias, accumulator = self.snapshot()
        if accumulator.end_ns < timestamp_ns:
            raise InsufficientData(accumulator.end_ns, timestamp_ns)
        if accumulator.end_ns == timestamp_ns:
            return bias, accumulator

        head, _ = split_increments(accumulator, timestamp_ns)
        end_ns = max(timestamp_ns, accumulator.start_ns)
        return bias, self._replay(accumulator.bias_hat, accumulator.start_ns, end_ns, head)

    def _replay(
        self,
        bias: BiasEstimate,
        start_ns: int,
        end_ns: int,
        increments: Sequence[Increment]
    ) -> PreintegratedSummary:
        integrator = ImuPreintegrator(self.params, bias, start_ns)
        for acceleration, angular_rate, dt in increments:
            integrator.add_measurement(acceleration, angular_rate, dt)
        integrator.end_ns = end_ns
        return integrator.get_summary()

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(
        self,
        pose: Pose,
        velocity: np.ndarray,
        summary: PreintegratedSummary,
        bias: Optional[BiasEstimate] = None
    ) -> Tuple[Pose, np.ndarray]:
        """
        Predict the navigation state at the end of ``summary``.

        Args:
            pose: W_T_B at the start of the summary
            velocity: World-frame velocity at the start of the summary
            summary: Preintegrated motion
            bias: Bias to correct the summary to (default: its own bias)

        Returns:
            (pose, velocity) at the end of the summary
        """
        if bias is None:
            delta_R, delta_v, delta_p = (
                summary.delta_rotation, summary.delta_velocity, summary.delta_position
            )
        else:
            delta_R, delta_v, delta_p = summary.corrected(bias)

        gravity = self.gravity
        dt = summary.dt
        R_i = pose.rotation
        v_i = np.asarray(velocity, dtype=float)

        position = pose.position + v_i * dt + 0.5 * gravity * dt ** 2 + R_i @ delta_p
        velocity_j = v_i + gravity * dt + R_i @ delta_v
        rotation = project_to_so3(R_i @ delta_R)
        return Pose(rotation=rotation, position=position), velocity_j
