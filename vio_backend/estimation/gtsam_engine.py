"""
gtsam iSAM2 implementation of the optimization engine.

Factor locations are indices in iSAM2's nonlinear factor graph. Modified
smart factors are rebuilt: the old index is removed and the handle is moved
to the new index in the same update.

iSAM2 cannot undo an update, so the engine keeps the committed factors and
the last accepted estimate. A rejected update rebuilds iSAM2 from them.
"""

import logging
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np

try:
    import gtsam
except ImportError:
    raise ImportError(
        "GTSAM is required for the iSAM2 engine. "
        "Install it with: pip install gtsam"
    )

from vio_backend.common.config import BackendConfig, RobustNormType, StereoCameraParams
from vio_backend.common.data_structures import (
    BiasEstimate, LandmarkId, Pose, StereoObservation, VisionUpdate
)
from vio_backend.common.errors import DegenerateLandmark
from vio_backend.estimation.factors import (
    BetweenPoseFactor, BiasPrior, Factor, ImuFactor, Key, OrientedPlane, PlanePriorFactor,
    PointPlaneFactor, PosePrior, SmartStereoFactor, StereoProjectionFactor, VelocityPrior
)
from vio_backend.estimation.optimization_engine import (
    FactorSlot, OptimizationBatch, OptimizationEngine, SolveOutcome
)
from vio_backend.estimation.stereo_camera import StereoCamera

logger = logging.getLogger(__name__)


def gtsam_key(key: Key) -> int:
    kind, index = key
    return gtsam.symbol(kind, index)


def pose_to_gtsam(pose: Pose) -> gtsam.Pose3:
    return gtsam.Pose3(gtsam.Rot3(pose.rotation), gtsam.Point3(*pose.position))


def gtsam_to_pose(pose: gtsam.Pose3) -> Pose:
    return Pose(rotation=pose.rotation().matrix(), position=np.array(pose.translation()))


def bias_to_gtsam(bias: BiasEstimate) -> gtsam.imuBias.ConstantBias:
    return gtsam.imuBias.ConstantBias(bias.accelerometer, bias.gyroscope)


def gtsam_to_bias(bias: gtsam.imuBias.ConstantBias) -> BiasEstimate:
    return BiasEstimate(np.array(bias.accelerometer()), np.array(bias.gyroscope()))


def plane_to_gtsam(plane: OrientedPlane) -> gtsam.OrientedPlane3:
    n = plane.normal
    return gtsam.OrientedPlane3(n[0], n[1], n[2], plane.distance)


def gtsam_to_plane(plane: gtsam.OrientedPlane3) -> OrientedPlane:
    return OrientedPlane(np.array(plane.normal().point3()), plane.distance())


def stereo_calibration(cam: StereoCameraParams):
    """Monocular and stereo intrinsics plus the body to left camera extrinsics."""
    K = gtsam.Cal3_S2(cam.fx, cam.fy, 0.0, cam.cx, cam.cy)
    K_stereo = gtsam.Cal3_S2Stereo(cam.fx, cam.fy, 0.0, cam.cx, cam.cy, cam.baseline)
    w, x, y, z = cam.quaternion
    body_P_cam = gtsam.Pose3(gtsam.Rot3.Quaternion(w, x, y, z), gtsam.Point3(*cam.translation))
    return K, K_stereo, body_P_cam


def _factor_indices(indices: List[int]):
    # Bound as KeyVector in the Python wrapper
    vector_type = getattr(gtsam, "FactorIndices", gtsam.KeyVector)
    return vector_type(indices)


class GtsamIncrementalEngine(OptimizationEngine):
    """
    iSAM2 engine with smart stereo, projection, inertial and regularity factors.
    """

    def __init__(self, config: Optional[BackendConfig] = None):
        super().__init__()
        self.config = config or BackendConfig()

        opt = self.config.optimization
        self._isam2_params = gtsam.ISAM2Params()
        self._isam2_params.setRelinearizeThreshold(opt.relinearize_threshold)
        self._isam2_params.relinearizeSkip = opt.relinearize_skip
        # Smart factors change their linearization as measurements arrive
        self._isam2_params.cacheLinearizedFactors = False
        self.isam2 = gtsam.ISAM2(self._isam2_params)

        self._setup_calibration()
        self._setup_noise_models()
        self._setup_imu_params()

        # Variable kinds, used to read the estimate back
        self._keys: Dict[Key, str] = {}

        # Committed problem, replayed into a fresh iSAM2 after a rejected update
        self._factors: Dict[int, Any] = {}
        self._committed_estimate: Dict[Key, Any] = {}
        self._committed_keys: Dict[Key, str] = {}
        self._staged = None
        self._touched = False

        logger.info(f"Initialized {self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup_calibration(self) -> None:
        self.K, self.K_stereo, self.body_P_cam = stereo_calibration(self.config.camera)

    def _setup_noise_models(self) -> None:
        vision = self.config.vision
        regularity = self.config.regularity

        self.smart_noise = gtsam.noiseModel.Isotropic.Sigma(2, vision.smart_noise_sigma)
        self.stereo_noise = gtsam.noiseModel.Isotropic.Sigma(3, vision.stereo_noise_sigma)
        self.mono_noise = gtsam.noiseModel.Isotropic.Sigma(2, vision.mono_noise_sigma)

        self.smart_params = gtsam.SmartProjectionParams()
        self.smart_params.setRankTolerance(vision.rank_tolerance)
        self.smart_params.setLandmarkDistanceThreshold(vision.landmark_distance_threshold)
        self.smart_params.setDegeneracyMode(gtsam.DegeneracyMode.ZERO_ON_DEGENERACY)

        point_plane_noise = gtsam.noiseModel.Isotropic.Sigma(1, regularity.point_plane_sigma)
        if regularity.norm_type == RobustNormType.HUBER:
            self.point_plane_noise = gtsam.noiseModel.Robust.Create(
                gtsam.noiseModel.mEstimator.Huber.Create(regularity.norm_parameter),
                point_plane_noise
            )
        elif regularity.norm_type == RobustNormType.TUKEY:
            self.point_plane_noise = gtsam.noiseModel.Robust.Create(
                gtsam.noiseModel.mEstimator.Tukey.Create(regularity.norm_parameter),
                point_plane_noise
            )
        else:
            self.point_plane_noise = point_plane_noise

        self.plane_prior_noise = gtsam.noiseModel.Diagonal.Sigmas(np.array([
            regularity.plane_normal_sigma,
            regularity.plane_normal_sigma,
            regularity.plane_distance_sigma
        ]))

    def _setup_imu_params(self) -> None:
        imu = self.config.imu
        self.imu_params = gtsam.PreintegrationCombinedParams(np.array(imu.n_gravity, dtype=float))
        self.imu_params.setAccelerometerCovariance(imu.accelerometer_noise_density ** 2 * np.eye(3))
        self.imu_params.setGyroscopeCovariance(imu.gyroscope_noise_density ** 2 * np.eye(3))
        self.imu_params.setIntegrationCovariance(imu.integration_sigma ** 2 * np.eye(3))
        self.imu_params.setBiasAccCovariance(imu.accelerometer_random_walk ** 2 * np.eye(3))
        self.imu_params.setBiasOmegaCovariance(imu.gyroscope_random_walk ** 2 * np.eye(3))

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _build_factor(self, factor: Factor):
        """Convert a descriptor into a gtsam factor."""
        if isinstance(factor, SmartStereoFactor):
            smart = gtsam.SmartProjectionPoseFactorCal3_S2(
                self.smart_noise, self.K, self.body_P_cam, self.smart_params
            )
            for frame_id in sorted(factor.measurements):
                obs = factor.measurements[frame_id]
                smart.add(gtsam.Point2(obs.u_left, obs.v), gtsam.symbol("x", frame_id))
            return smart

        if isinstance(factor, StereoProjectionFactor):
            obs = factor.observation
            x_key, l_key = (gtsam_key(k) for k in factor.keys())
            if obs.has_valid_stereo:
                return gtsam.GenericStereoFactor3D(
                    gtsam.StereoPoint2(obs.u_left, obs.u_right, obs.v),
                    self.stereo_noise, x_key, l_key, self.K_stereo, self.body_P_cam
                )
            return gtsam.GenericProjectionFactorCal3_S2(
                gtsam.Point2(obs.u_left, obs.v),
                self.mono_noise, x_key, l_key, self.K, self.body_P_cam
            )

        if isinstance(factor, PointPlaneFactor):
            return self._point_plane_factor(factor)

        if isinstance(factor, PlanePriorFactor):
            return self._plane_prior_factor(factor)

        if isinstance(factor, ImuFactor):
            summary = factor.summary
            pim = gtsam.PreintegratedCombinedMeasurements(
                self.imu_params, bias_to_gtsam(summary.bias_hat)
            )
            for acceleration, angular_rate, dt in summary.increments:
                pim.integrateMeasurement(acceleration, angular_rate, dt)
            keys = [gtsam_key(k) for k in factor.keys()]
            return gtsam.CombinedImuFactor(*keys, pim)

        if isinstance(factor, PosePrior):
            return gtsam.PriorFactorPose3(
                gtsam_key(factor.keys()[0]), pose_to_gtsam(factor.pose),
                gtsam.noiseModel.Diagonal.Sigmas(np.asarray(factor.sigmas, dtype=float))
            )

        if isinstance(factor, VelocityPrior):
            return gtsam.PriorFactorVector(
                gtsam_key(factor.keys()[0]), np.asarray(factor.velocity, dtype=float),
                gtsam.noiseModel.Isotropic.Sigma(3, factor.sigma)
            )

        if isinstance(factor, BiasPrior):
            return gtsam.PriorFactorConstantBias(
                gtsam_key(factor.keys()[0]), bias_to_gtsam(factor.bias),
                gtsam.noiseModel.Diagonal.Sigmas(np.asarray(factor.sigmas, dtype=float))
            )

        if isinstance(factor, BetweenPoseFactor):
            from_key, to_key = (gtsam_key(k) for k in factor.keys())
            return gtsam.BetweenFactorPose3(
                from_key, to_key, pose_to_gtsam(factor.relative_pose),
                gtsam.noiseModel.Diagonal.Sigmas(np.asarray(factor.sigmas, dtype=float))
            )

        raise TypeError(f"Unsupported factor type: {type(factor).__name__}")

    def _point_plane_factor(self, factor: PointPlaneFactor) -> gtsam.CustomFactor:
        """Error ``n . p - d`` between a point and an oriented plane."""
        point_key, plane_key = (gtsam_key(k) for k in factor.keys())

        def error_fn(this, values, jacobians=None):
            point = np.array(values.atPoint3(point_key))
            plane = values.atOrientedPlane3(plane_key)
            normal = np.array(plane.normal().point3())
            error = np.array([normal @ point - plane.distance()])

            if jacobians is not None:
                basis = np.array(plane.normal().basis())
                jacobians[0] = normal.reshape(1, 3)
                jacobians[1] = np.hstack([point @ basis, [-1.0]]).reshape(1, 3)
            return error

        return gtsam.CustomFactor(self.point_plane_noise, [point_key, plane_key], error_fn)

    def _plane_prior_factor(self, factor: PlanePriorFactor) -> gtsam.CustomFactor:
        plane_key = gtsam_key(factor.keys()[0])
        prior = plane_to_gtsam(factor.plane)

        def error_fn(this, values, jacobians=None):
            plane = values.atOrientedPlane3(plane_key)
            error = np.array(prior.localCoordinates(plane))
            if jacobians is not None:
                jacobians[0] = np.eye(3)
            return error

        return gtsam.CustomFactor(self.plane_prior_noise, [plane_key], error_fn)

    def _insert_value(self, values: gtsam.Values, key: Key, value: Any) -> None:
        k = gtsam_key(key)
        if isinstance(value, Pose):
            values.insert(k, pose_to_gtsam(value))
            kind = "pose"
        elif isinstance(value, BiasEstimate):
            values.insert(k, bias_to_gtsam(value))
            kind = "bias"
        elif isinstance(value, OrientedPlane):
            values.insert(k, plane_to_gtsam(value))
            kind = "plane"
        elif key[0] == "l":
            values.insert(k, gtsam.Point3(*np.asarray(value, dtype=float)))
            kind = "point"
        else:
            values.insert(k, np.asarray(value, dtype=float))
            kind = "vector"
        self._keys[key] = kind

    def _read_values(self, estimate: gtsam.Values) -> Dict[Key, Any]:
        values = {}
        for key, kind in self._keys.items():
            k = gtsam_key(key)
            if not estimate.exists(k):
                continue
            if kind == "pose":
                values[key] = gtsam_to_pose(estimate.atPose3(k))
            elif kind == "bias":
                values[key] = gtsam_to_bias(estimate.atConstantBias(k))
            elif kind == "plane":
                values[key] = gtsam_to_plane(estimate.atOrientedPlane3(k))
            elif kind == "point":
                values[key] = np.array(estimate.atPoint3(k))
            else:
                values[key] = np.array(estimate.atVector(k))
        return values

    # ------------------------------------------------------------------
    # Engine interface
    # ------------------------------------------------------------------

    def _solve(
        self,
        batch: OptimizationBatch,
        delete_locations: List[Hashable],
        modified_locations: Dict[FactorSlot, Hashable]
    ) -> SolveOutcome:
        self._staged = None
        self._touched = False

        values = gtsam.Values()
        for key, value in batch.new_values.items():
            self._insert_value(values, key, value)

        # Rebuilt factors follow the new ones
        modified = list(batch.modified_slots.items())
        built = [self._build_factor(factor) for factor in batch.new_factors]
        built += [self._build_factor(factor) for _, factor in modified]
        graph = gtsam.NonlinearFactorGraph()
        for factor in built:
            graph.add(factor)

        remove = [int(i) for i in delete_locations]
        remove += [int(modified_locations[slot]) for slot, _ in modified]

        self._touched = True
        result = self.isam2.update(graph, values, _factor_indices(remove))
        for _ in range(self.config.optimization.num_extra_updates):
            self.isam2.update()

        indices = [int(i) for i in result.getNewFactorsIndices()]
        num_new = len(batch.new_factors)
        relocations = {
            slot: indices[num_new + i] for i, (slot, _) in enumerate(modified)
        }

        estimate = self._read_values(self.isam2.calculateEstimate())
        self._staged = (dict(zip(indices, built)), remove, estimate)
        logger.debug(
            f"iSAM2 update: {graph.size()} factors added, {len(remove)} removed, "
            f"{len(estimate)} variables"
        )
        return SolveOutcome(
            values=estimate,
            new_locations=indices[:num_new],
            relocations=relocations,
            iterations=1 + self.config.optimization.num_extra_updates
        )

    def _commit(self) -> None:
        added, removed, estimate = self._staged
        for index in removed:
            self._factors.pop(index, None)
        self._factors.update(added)
        self._committed_estimate = estimate
        self._committed_keys = dict(self._keys)
        self._staged = None
        self._touched = False

    def _discard(self) -> None:
        """Rebuild iSAM2 from the committed factors if the update reached it."""
        self._keys = dict(self._committed_keys)
        self._staged = None
        if not self._touched:
            return
        self._touched = False

        self.isam2 = gtsam.ISAM2(self._isam2_params)
        old_indices = sorted(self._factors)
        if not old_indices:
            return

        graph = gtsam.NonlinearFactorGraph()
        involved = set()
        for index in old_indices:
            factor = self._factors[index]
            graph.add(factor)
            involved.update(int(k) for k in factor.keys())

        # Variables whose factors were all deleted stay out of the rebuilt problem
        values = gtsam.Values()
        for key, value in self._committed_estimate.items():
            if gtsam_key(key) in involved:
                self._insert_value(values, key, value)

        result = self.isam2.update(graph, values)
        mapping = dict(zip(old_indices, (int(i) for i in result.getNewFactorsIndices())))
        self._factors = {mapping[index]: self._factors[index] for index in old_indices}
        self.registry.remap(mapping)
        logger.warning(f"Rebuilt iSAM2 from {len(old_indices)} committed factors")

    def estimate(self) -> Dict[Key, Any]:
        return self._read_values(self.isam2.calculateEstimate())


class GtsamBundleAdjuster:
    """
    Batch Levenberg-Marquardt refinement of the first keyframe poses.

    The first pose is held by a tight prior. Relative poses become between
    factors, and every landmark seen in stereo from at least two keyframes
    becomes a triangulated point with stereo projection factors.
    """

    def __init__(self, config: Optional[BackendConfig] = None):
        self.config = config or BackendConfig()
        self.camera = StereoCamera(self.config.camera)
        self.K, self.K_stereo, self.body_P_cam = stereo_calibration(self.config.camera)

        vision = self.config.vision
        self.stereo_noise = gtsam.noiseModel.Isotropic.Sigma(3, vision.stereo_noise_sigma)
        self.between_noise = gtsam.noiseModel.Diagonal.Precisions(np.array(
            [vision.between_rotation_precision] * 3 + [vision.between_translation_precision] * 3
        ))
        self.anchor_noise = gtsam.noiseModel.Isotropic.Sigma(6, 1e-6)

    def refine(self, poses: Sequence[Pose], frames: Sequence[VisionUpdate]) -> List[Pose]:
        """
        Refine ``poses`` (one per frame, b0_T_bk guesses).

        Returns:
            Refined poses expressed relative to the refined first pose
        """
        if len(poses) != len(frames):
            raise ValueError(f"Got {len(poses)} poses for {len(frames)} frames")

        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()
        for k, pose in enumerate(poses):
            values.insert(gtsam.symbol("x", k), pose_to_gtsam(pose))
        graph.add(gtsam.PriorFactorPose3(
            gtsam.symbol("x", 0), pose_to_gtsam(poses[0]), self.anchor_noise
        ))
        for k in range(1, len(frames)):
            if frames[k].relative_pose is not None:
                graph.add(gtsam.BetweenFactorPose3(
                    gtsam.symbol("x", k - 1), gtsam.symbol("x", k),
                    pose_to_gtsam(frames[k].relative_pose), self.between_noise
                ))

        views: Dict[LandmarkId, List[Tuple[int, StereoObservation]]] = {}
        for k, frame in enumerate(frames):
            for landmark_id, observation in frame.observations.items():
                if observation.has_valid_stereo:
                    views.setdefault(landmark_id, []).append((k, observation))

        num_landmarks = 0
        for landmark_id in sorted(views):
            seen = views[landmark_id]
            if len(seen) < 2:
                continue
            try:
                point = self.camera.triangulate(
                    landmark_id,
                    [(poses[k], observation) for k, observation in seen],
                    rank_tolerance=self.config.vision.rank_tolerance,
                    max_distance=self.config.vision.landmark_distance_threshold
                )
            except DegenerateLandmark as exc:
                logger.debug(f"Bundle adjustment skips landmark: {exc}")
                continue
            l_key = gtsam.symbol("l", landmark_id)
            values.insert(l_key, gtsam.Point3(*point))
            for k, observation in seen:
                graph.add(gtsam.GenericStereoFactor3D(
                    gtsam.StereoPoint2(observation.u_left, observation.u_right, observation.v),
                    self.stereo_noise, gtsam.symbol("x", k), l_key, self.K_stereo, self.body_P_cam
                ))
            num_landmarks += 1

        initial_error = graph.error(values)
        optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, gtsam.LevenbergMarquardtParams())
        result = optimizer.optimize()
        logger.info(
            f"Bundle adjustment over {len(poses)} keyframes and {num_landmarks} landmarks: "
            f"error {initial_error:.4g} -> {graph.error(result):.4g}"
        )

        refined = [gtsam_to_pose(result.atPose3(gtsam.symbol("x", k))) for k in range(len(poses))]
        return [refined[0].between(pose) for pose in refined]
