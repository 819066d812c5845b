"""Sliding-window bundle adjustment for the stereo visual odometry.

The backend refines the active keyframe poses and landmark positions of a
map.  It runs in its own thread and optimises whenever the frontend signals
that the map has changed.  Projection errors are ``measurement - pixel``.
Poses are updated by left multiplication with ``exp(dx)``, where the twist
is ordered translation first.  A Huber kernel limits the pull of outliers,
and observations that stay above the chi-square threshold are marked as
outliers and detached from their landmark.
"""

from __future__ import annotations

import logging
import math
import threading
import warnings
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse import identity as sparse_identity
from scipy.sparse.linalg import spsolve

from slamkit.geometry import to_vec2
from slamkit.lie import SE3

logger = logging.getLogger(__name__)

CHI2_THRESHOLD = 5.991
OPTIMIZE_ITERATIONS = 10
MAX_THRESHOLD_ADJUSTMENTS = 5
MIN_INLIER_RATIO = 0.5

_POSE_DIM = 6
_POINT_DIM = 3
_DEPTH_EPS = 1e-18
_TAU = 1e-5
_MAX_TRIALS = 10
_GOOD_STEP_LOWER = 1.0 / 3.0
_GOOD_STEP_UPPER = 2.0 / 3.0


def _point3(p) -> np.ndarray:
    arr = np.asarray(p, dtype=float).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"expected a 3D point, got shape {np.shape(p)}")
    return arr


def _intrinsics(K) -> np.ndarray:
    mat = np.asarray(K, dtype=float)
    if mat.shape != (3, 3):
        raise ValueError(f"intrinsic matrix must be 3x3, got shape {mat.shape}")
    return mat


def _project(K: np.ndarray, p_cam: np.ndarray) -> np.ndarray:
    pix = K @ p_cam
    return pix[:2] / pix[2]


def _pose_block(K: np.ndarray, p_cam: np.ndarray) -> np.ndarray:
    fx, fy = K[0, 0], K[1, 1]
    X, Y, Z = p_cam
    zinv = 1.0 / (Z + _DEPTH_EPS)
    zinv2 = zinv * zinv
    return np.array(
        [
            [-fx * zinv, 0.0, fx * X * zinv2, fx * X * Y * zinv2,
             -fx - fx * X * X * zinv2, fx * Y * zinv],
            [0.0, -fy * zinv, fy * Y * zinv2, fy + fy * Y * Y * zinv2,
             -fy * X * Y * zinv2, -fy * X * zinv],
        ]
    )


def pose_only_error(pose: SE3, point, K, measurement) -> np.ndarray:
    """Reprojection error of a fixed world point seen from ``pose``."""
    return to_vec2(measurement) - _project(_intrinsics(K), pose * _point3(point))


def pose_only_jacobian(pose: SE3, point, K) -> np.ndarray:
    """2x6 Jacobian of :func:`pose_only_error` with respect to a left pose update."""
    return _pose_block(_intrinsics(K), pose * _point3(point))


def projection_error(pose: SE3, point, K, cam_ext: SE3, measurement) -> np.ndarray:
    """Reprojection error of a world point in a camera mounted at ``cam_ext``."""
    p_cam = cam_ext * (pose * _point3(point))
    return to_vec2(measurement) - _project(_intrinsics(K), p_cam)


def projection_jacobians(pose: SE3, point, K, cam_ext: SE3):
    """Jacobians of :func:`projection_error`: (2x6 for the pose, 2x3 for the point)."""
    K = _intrinsics(K)
    p_cam = cam_ext * (pose * _point3(point))
    j_pose = _pose_block(K, p_cam)
    j_point = j_pose[:, :3] @ cam_ext.rotation_matrix @ pose.rotation_matrix
    return j_pose, j_point


class OptimizationResult(NamedTuple):
    """Counts of outlier and inlier observations and the final threshold."""

    outliers: int
    inliers: int
    threshold: float


@dataclass
class _Observation:
    feature: object
    landmark: object
    pose_slot: int
    point_slot: int
    cam_ext: SE3
    measurement: np.ndarray


def _huber(e2: float, delta: float) -> float:
    d2 = delta * delta
    return e2 if e2 <= d2 else 2.0 * delta * math.sqrt(e2) - d2


def _huber_weight(e2: float, delta: float) -> float:
    return 1.0 if e2 <= delta * delta else delta / math.sqrt(e2)


def _residual(K, poses, points, obs: _Observation) -> np.ndarray:
    return projection_error(
        poses[obs.pose_slot], points[obs.point_slot], K, obs.cam_ext, obs.measurement
    )


def _robust_cost(K, poses, points, observations, delta) -> float:
    total = 0.0
    for obs in observations:
        e = _residual(K, poses, points, obs)
        total += _huber(float(e @ e), delta)
    return total


def _linear_system(K, poses, points, observations, delta, size):
    point_base = _POSE_DIM * len(poses)
    rows, cols, vals = [], [], []
    b = np.zeros(size)
    for obs in observations:
        pose, pt = poses[obs.pose_slot], points[obs.point_slot]
        e = projection_error(pose, pt, K, obs.cam_ext, obs.measurement)
        j_pose, j_point = projection_jacobians(pose, pt, K, obs.cam_ext)
        w = _huber_weight(float(e @ e), delta)
        blocks = (
            (_POSE_DIM * obs.pose_slot, j_pose),
            (point_base + _POINT_DIM * obs.point_slot, j_point),
        )
        for oa, ja in blocks:
            b[oa:oa + ja.shape[1]] += w * (ja.T @ e)
            for oc, jc in blocks:
                block = w * (ja.T @ jc)
                r, c = np.indices(block.shape)
                rows.append((oa + r).ravel())
                cols.append((oc + c).ravel())
                vals.append(block.ravel())
    H = coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(size, size),
    ).tocsr()
    return H, b


def _apply(dx, poses, points):
    point_base = _POSE_DIM * len(poses)
    new_poses = [
        SE3.exp(dx[_POSE_DIM * i:_POSE_DIM * (i + 1)]) * pose for i, pose in enumerate(poses)
    ]
    new_points = [
        pt + dx[point_base + _POINT_DIM * j:point_base + _POINT_DIM * (j + 1)]
        for j, pt in enumerate(points)
    ]
    return new_poses, new_points


def _bundle_adjust(K, poses, points, observations, delta, iterations):
    size = _POSE_DIM * len(poses) + _POINT_DIM * len(points)
    if not observations or size == 0 or iterations <= 0:
        return poses, points
    cost = _robust_cost(K, poses, points, observations, delta)
    eye = sparse_identity(size, format="csr")
    lam = None
    nu = 2.0
    for _ in range(iterations):
        H, b = _linear_system(K, poses, points, observations, delta, size)
        if lam is None:
            lam = _TAU * max(float(H.diagonal().max()), 1e-12)
        step_norm = None
        for _trial in range(_MAX_TRIALS):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                dx = np.asarray(spsolve((H + lam * eye).tocsc(), -b)).reshape(-1)
            if not np.all(np.isfinite(dx)):
                lam *= nu
                nu *= 2.0
                continue
            new_poses, new_points = _apply(dx, poses, points)
            new_cost = _robust_cost(K, new_poses, new_points, observations, delta)
            predicted = float(dx @ (lam * dx - b))
            if math.isfinite(new_cost) and new_cost < cost and predicted > 0.0:
                rho = (cost - new_cost) / predicted
                alpha = min(1.0 - (2.0 * rho - 1.0) ** 3, _GOOD_STEP_UPPER)
                lam *= max(_GOOD_STEP_LOWER, alpha)
                nu = 2.0
                poses, points, cost = new_poses, new_points, new_cost
                step_norm = float(np.linalg.norm(dx))
                break
            lam *= nu
            nu *= 2.0
        if step_norm is None or cost <= 0.0 or step_norm < 1e-12:
            break
    return poses, points


class Backend:
    """Optimises the active window of a map in a background thread."""

    def __init__(self):
        self.map = None
        self.camera_left = None
        self.camera_right = None
        self.completed = 0
        self._cond = threading.Condition()
        self._pending = False
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="slamkit-backend", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        """Whether the optimisation thread is still alive."""
        return self._thread.is_alive()

    def set_cameras(self, left, right) -> None:
        """Cameras of the stereo rig; the left one supplies the intrinsics."""
        self.camera_left = left
        self.camera_right = right

    def set_map(self, map_) -> None:
        self.map = map_

    def update_map(self) -> None:
        """Signal that the map changed and an optimisation should run."""
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def stop(self) -> None:
        """Stop the optimisation thread and wait for it to finish."""
        with self._cond:
            self._running = False
            self._cond.notify_all()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "Backend":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._pending or not self._running)
                if not self._running:
                    return
                self._pending = False
                map_ = self.map
            if map_ is None:
                continue
            try:
                self.optimize(map_.active_keyframes(), map_.active_map_points())
            except Exception:
                logger.exception("backend optimisation failed")
                continue
            with self._cond:
                self.completed += 1
                self._cond.notify_all()

    def optimize(self, keyframes, landmarks) -> OptimizationResult:
        """Bundle-adjust the given keyframes and landmarks in place.

        ``keyframes`` maps keyframe ids to frames and ``landmarks`` maps ids
        to map points.  Observations from frames outside ``keyframes`` are
        left out.
        """
        if self.camera_left is None or self.camera_right is None:
            raise RuntimeError("cameras must be set before optimising")
        K = self.camera_left.intrinsic_matrix()
        left_ext, right_ext = self.camera_left.pose, self.camera_right.pose

        frames = list(keyframes.values())
        pose_slot = {frame.keyframe_id: slot for slot, frame in enumerate(frames)}
        poses = [frame.pose for frame in frames]

        point_slot: dict[int, int] = {}
        point_owners = []
        points = []
        observations: list[_Observation] = []
        for landmark_id, landmark in landmarks.items():
            if landmark.is_outlier:
                continue
            for feat in landmark.observations():
                frame = feat.frame
                if feat.is_outlier or frame is None:
                    continue
                slot = pose_slot.get(frame.keyframe_id)
                if slot is None:
                    continue
                if landmark_id not in point_slot:
                    point_slot[landmark_id] = len(points)
                    point_owners.append(landmark)
                    points.append(landmark.pos)
                observations.append(
                    _Observation(
                        feat,
                        landmark,
                        slot,
                        point_slot[landmark_id],
                        left_ext if feat.is_on_left_image else right_ext,
                        to_vec2(feat.position),
                    )
                )

        chi2_th = CHI2_THRESHOLD
        poses, points = _bundle_adjust(
            K, poses, points, observations, chi2_th, OPTIMIZE_ITERATIONS
        )

        chi2s = []
        for obs in observations:
            e = _residual(K, poses, points, obs)
            chi2s.append(float(e @ e))

        cnt_outlier = cnt_inlier = 0
        for _ in range(MAX_THRESHOLD_ADJUSTMENTS):
            cnt_outlier = sum(1 for c in chi2s if c > chi2_th)
            cnt_inlier = len(chi2s) - cnt_outlier
            total = cnt_inlier + cnt_outlier
            if total and cnt_inlier / total > MIN_INLIER_RATIO:
                break
            chi2_th *= 2.0

        for obs, chi2 in zip(observations, chi2s):
            if chi2 > chi2_th:
                obs.feature.is_outlier = True
                obs.landmark.remove_observation(obs.feature)
            else:
                obs.feature.is_outlier = False

        logger.info("Outlier/Inlier in optimization: %d/%d", cnt_outlier, cnt_inlier)

        for frame, pose in zip(frames, poses):
            frame.pose = pose
        for landmark, point in zip(point_owners, points):
            landmark.pos = point
        return OptimizationResult(cnt_outlier, cnt_inlier, chi2_th)

    def __repr__(self) -> str:
        return f"Backend(running={self.running}, completed={self.completed})"