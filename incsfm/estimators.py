"""Geometric estimators consumed by the mapper and triangulator.

Robust model fitting goes through OpenCV (essential matrix, PnP, DLT); non-linear
refinement that touches the intrinsics goes through pyceres. Degenerate input is
an expected outcome: estimators return None instead of raising.
"""

import itertools
import logging
from dataclasses import dataclass

import cv2 as cv
import numpy as np
import pyceres

from incsfm.cost_functions import reproj_error_cost, set_constant_subset
from incsfm.geometry import (
    Rigid3d,
    calculate_triangulation_angles,
    project_points,
    projection_center,
    triangulate_multi_view_point,
    triangulate_point,
    triangulate_points,
)
from incsfm.scene import Camera
from incsfm.utils import NDArrayBool, NDArrayFloat, NDArrayInt

logger = logging.getLogger(__name__)

PNP_MIN_NUM_POINTS = 6
FOCAL_LENGTH_FACTORS = np.geomspace(0.5, 2.0, 11)


@dataclass
class TwoViewGeometry:
    cam2_from_cam1: Rigid3d
    inlier_matches: NDArrayInt
    """(M, 2) point2D indices of the inlier matches"""
    tri_angle: float
    """Median triangulation angle of the inliers in radians"""


@dataclass
class AbsolutePose:
    cam_from_world: Rigid3d
    inlier_mask: NDArrayBool
    params: NDArrayFloat
    """Camera params the pose was estimated with (focal length may differ from the input camera)"""

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))


def estimate_two_view_geometry(
    camera1: Camera,
    points1: NDArrayFloat,
    camera2: Camera,
    points2: NDArrayFloat,
    matches: NDArrayInt,
    max_error: float,
    confidence: float = 0.999,
) -> TwoViewGeometry | None:
    """Calibrated relative pose from keypoint matches (essential matrix + cheirality)."""
    matches = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
    if len(matches) < 5:
        return None

    # Work on the normalized image plane so both cameras may differ
    x1 = camera1.cam_from_img(points1[matches[:, 0]])
    x2 = camera2.cam_from_img(points2[matches[:, 1]])
    threshold = 0.5 * (camera1.cam_from_img_threshold(max_error) + camera2.cam_from_img_threshold(max_error))

    try:
        E, mask = cv.findEssentialMat(x1, x2, np.eye(3), method=cv.RANSAC, prob=confidence, threshold=threshold)
        if E is None or E.shape[0] < 3:
            return None
        # Several solutions may be stacked
        _, R, t, mask = cv.recoverPose(E[:3], x1, x2, np.eye(3), mask=mask)
    except cv.error as e:
        logger.debug("Two-view estimation failed: %s", e)
        return None

    inliers = mask.ravel() > 0
    if not inliers.any():
        return None

    cam2_from_cam1 = Rigid3d.from_matrix(R, t.ravel())
    points3D = triangulate_points(np.eye(3, 4), cam2_from_cam1.matrix(), x1[inliers], x2[inliers])
    finite = np.isfinite(points3D).all(axis=1)
    if not finite.any():
        return None
    angles = calculate_triangulation_angles(np.zeros(3), projection_center(cam2_from_cam1), points3D[finite])
    return TwoViewGeometry(cam2_from_cam1, matches[inliers], float(np.median(angles)))


def _reprojection_inliers(
    camera: Camera, params: NDArrayFloat, cam_from_world: Rigid3d, points2D, points3D, max_error: float
) -> NDArrayBool:
    xy, depth = project_points(camera.model, params, cam_from_world, points3D)
    with np.errstate(invalid="ignore"):
        squared_error = np.sum((xy - points2D) ** 2, axis=1)
    return (depth > np.finfo(float).eps) & (squared_error <= max_error**2)


def _pnp_ransac(
    camera: Camera,
    params: NDArrayFloat,
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    max_error: float,
    confidence: float,
    max_num_trials: int,
) -> AbsolutePose | None:
    candidate = Camera(camera.camera_id, camera.model, camera.width, camera.height, params)
    K = candidate.calibration_matrix()
    # Undistort to the pinhole image of the same focal length, so OpenCV's pixel threshold applies
    undistorted = candidate.cam_from_img(points2D) @ K[:2, :2].T + K[:2, 2]
    try:
        ok, rvec, tvec, _ = cv.solvePnPRansac(
            np.ascontiguousarray(points3D, dtype=np.float64),
            np.ascontiguousarray(undistorted, dtype=np.float64),
            K,
            None,
            iterationsCount=max_num_trials,
            reprojectionError=max_error,
            confidence=confidence,
            flags=cv.SOLVEPNP_EPNP,
        )
    except cv.error as e:
        logger.debug("PnP failed: %s", e)
        return None
    if not ok:
        return None
    cam_from_world = Rigid3d.from_rotvec(rvec, tvec)
    inlier_mask = _reprojection_inliers(candidate, params, cam_from_world, points2D, points3D, max_error)
    return AbsolutePose(cam_from_world, inlier_mask, params.copy())


def estimate_absolute_pose(
    camera: Camera,
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    max_error: float,
    estimate_focal_length: bool = False,
    confidence: float = 0.99999,
    max_num_trials: int = 10000,
) -> AbsolutePose | None:
    """Camera pose from 2D-3D correspondences (EPnP inside RANSAC).

    With `estimate_focal_length`, the focal length is searched over a geometric grid
    around the current value and the hypothesis with the most inliers wins.
    """
    points2D = np.asarray(points2D, dtype=np.float64).reshape(-1, 2)
    points3D = np.asarray(points3D, dtype=np.float64).reshape(-1, 3)
    if len(points2D) < PNP_MIN_NUM_POINTS:
        return None

    factors = FOCAL_LENGTH_FACTORS if estimate_focal_length else [1.0]
    best = None
    for factor in factors:
        params = camera.params.copy()
        params[camera.focal_length_idxs] *= factor
        estimate = _pnp_ransac(camera, params, points2D, points3D, max_error, confidence, max_num_trials)
        if estimate is not None and (best is None or estimate.num_inliers > best.num_inliers):
            best = estimate
    return best


def _constant_param_idxs(camera: Camera, refine_focal_length: bool, refine_extra_params: bool) -> list[int]:
    idxs = list(camera.principal_point_idxs)
    if not refine_focal_length:
        idxs += camera.focal_length_idxs
    if not refine_extra_params:
        idxs += camera.extra_params_idxs
    return idxs


def _solve(problem: pyceres.Problem, max_num_iterations: int) -> pyceres.SolverSummary:
    options = pyceres.SolverOptions()
    options.linear_solver_type = pyceres.LinearSolverType.DENSE_QR
    options.max_num_iterations = max_num_iterations
    options.num_threads = 1
    options.minimizer_progress_to_stdout = False
    summary = pyceres.SolverSummary()
    pyceres.solve(options, problem, summary)
    return summary


def refine_absolute_pose(
    camera: Camera,
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    inlier_mask: NDArrayBool,
    cam_from_world: Rigid3d,
    params: NDArrayFloat | None = None,
    refine_focal_length: bool = False,
    refine_extra_params: bool = False,
    loss_function_scale: float = 1.0,
    max_num_iterations: int = 100,
) -> tuple[Rigid3d, NDArrayFloat] | None:
    """Refine the pose (and optionally focal length / distortion) on the inliers.

    Returns the refined pose and camera params, or None if the solver fails.
    """
    params = camera.params.copy() if params is None else np.asarray(params, dtype=np.float64).copy()
    points2D = np.asarray(points2D, dtype=np.float64)[inlier_mask]
    points3D = np.asarray(points3D, dtype=np.float64)[inlier_mask]
    if len(points2D) < PNP_MIN_NUM_POINTS:
        return None

    if not (refine_focal_length or refine_extra_params):
        candidate = Camera(camera.camera_id, camera.model, camera.width, camera.height, params)
        K = candidate.calibration_matrix()
        undistorted = candidate.cam_from_img(points2D) @ K[:2, :2].T + K[:2, 2]
        try:
            rvec, tvec = cv.solvePnPRefineLM(
                points3D, undistorted, K, None, cam_from_world.rvec.reshape(3, 1), cam_from_world.translation.reshape(3, 1)
            )
        except cv.error as e:
            logger.debug("Pose refinement failed: %s", e)
            return None
        return Rigid3d.from_rotvec(rvec, tvec), params

    quat = cam_from_world.rotation.copy()
    t = cam_from_world.translation.copy()
    points = [p.copy() for p in points3D]
    problem = pyceres.Problem()
    loss = pyceres.CauchyLoss(loss_function_scale)
    for xy, point3D in zip(points2D, points):
        problem.add_residual_block(reproj_error_cost(camera.model, xy), loss, [quat, t, point3D, params])
        problem.set_parameter_block_constant(point3D)
    problem.set_manifold(quat, pyceres.EigenQuaternionManifold())
    set_constant_subset(problem, params, _constant_param_idxs(camera, refine_focal_length, refine_extra_params))

    summary = _solve(problem, max_num_iterations)
    if summary.termination_type == pyceres.TerminationType.FAILURE:
        return None
    return Rigid3d(quat, t), params


def estimate_generalized_absolute_pose(
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    camera_idxs: NDArrayInt,
    cams_from_rig: list[Rigid3d],
    cameras: list[Camera],
    max_error: float,
    confidence: float = 0.99999,
    max_num_trials: int = 10000,
) -> tuple[Rigid3d, NDArrayBool] | None:
    """Rig pose from correspondences observed by several rigidly mounted cameras.

    Each camera with enough correspondences proposes a rig pose by PnP; the hypothesis
    with the most inliers across all cameras of the rig wins.
    """
    points2D = np.asarray(points2D, dtype=np.float64).reshape(-1, 2)
    points3D = np.asarray(points3D, dtype=np.float64).reshape(-1, 3)
    camera_idxs = np.asarray(camera_idxs, dtype=np.int64)

    best: tuple[Rigid3d, NDArrayBool] | None = None
    for camera_idx, (camera, cam_from_rig) in enumerate(zip(cameras, cams_from_rig)):
        selected = camera_idxs == camera_idx
        if selected.sum() < PNP_MIN_NUM_POINTS:
            continue
        estimate = estimate_absolute_pose(
            camera, points2D[selected], points3D[selected], max_error, False, confidence, max_num_trials
        )
        if estimate is None:
            continue
        rig_from_world = cam_from_rig.inverse() * estimate.cam_from_world
        inlier_mask = generalized_inliers(points2D, points3D, camera_idxs, cams_from_rig, cameras, rig_from_world, max_error)
        if best is None or inlier_mask.sum() > best[1].sum():
            best = (rig_from_world, inlier_mask)
    return best


def generalized_inliers(
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    camera_idxs: NDArrayInt,
    cams_from_rig: list[Rigid3d],
    cameras: list[Camera],
    rig_from_world: Rigid3d,
    max_error: float,
) -> NDArrayBool:
    inlier_mask = np.zeros(len(points2D), dtype=bool)
    for camera_idx, (camera, cam_from_rig) in enumerate(zip(cameras, cams_from_rig)):
        selected = camera_idxs == camera_idx
        if selected.any():
            inlier_mask[selected] = _reprojection_inliers(
                camera, camera.params, cam_from_rig * rig_from_world, points2D[selected], points3D[selected], max_error
            )
    return inlier_mask


def refine_generalized_absolute_pose(
    points2D: NDArrayFloat,
    points3D: NDArrayFloat,
    inlier_mask: NDArrayBool,
    camera_idxs: NDArrayInt,
    cams_from_rig: list[Rigid3d],
    cameras: list[Camera],
    rig_from_world: Rigid3d,
    refine_focal_length: bool = False,
    refine_extra_params: bool = False,
    loss_function_scale: float = 1.0,
    max_num_iterations: int = 100,
) -> tuple[Rigid3d, list[NDArrayFloat]] | None:
    """Joint refinement of the rig pose over all inliers. Returns the pose and per-camera params."""
    quat = rig_from_world.rotation.copy()
    t = rig_from_world.translation.copy()
    params = [camera.params.copy() for camera in cameras]
    used = set()
    problem = pyceres.Problem()
    loss = pyceres.CauchyLoss(loss_function_scale)
    for xy, xyz, camera_idx in zip(points2D[inlier_mask], points3D[inlier_mask], camera_idxs[inlier_mask]):
        point3D = np.array(xyz, dtype=np.float64)
        cost = reproj_error_cost(cameras[camera_idx].model, xy, cams_from_rig[camera_idx])
        problem.add_residual_block(cost, loss, [quat, t, point3D, params[camera_idx]])
        problem.set_parameter_block_constant(point3D)
        used.add(int(camera_idx))
    if len(used) == 0 or problem.num_residual_blocks() < PNP_MIN_NUM_POINTS:
        return None
    problem.set_manifold(quat, pyceres.EigenQuaternionManifold())
    for camera_idx in used:
        constant_idxs = _constant_param_idxs(cameras[camera_idx], refine_focal_length, refine_extra_params)
        set_constant_subset(problem, params[camera_idx], constant_idxs)

    summary = _solve(problem, max_num_iterations)
    if summary.termination_type == pyceres.TerminationType.FAILURE:
        return None
    return Rigid3d(quat, t), params


def _angular_errors(
    xyz: NDArrayFloat, Rs: NDArrayFloat, ts: NDArrayFloat, rays: NDArrayFloat
) -> tuple[NDArrayFloat, NDArrayFloat]:
    points_cam = np.einsum("vij,j->vi", Rs, xyz) + ts
    depth = points_cam[:, 2]
    denominator = np.linalg.norm(points_cam, axis=1) * np.linalg.norm(rays, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        cos = np.sum(points_cam * rays, axis=1) / denominator
    return np.arccos(np.clip(np.nan_to_num(cos, nan=-1.0), -1.0, 1.0)), depth


def estimate_triangulation(
    points_normalized: NDArrayFloat,
    cams_from_world: list[Rigid3d],
    min_tri_angle: float,
    max_angle_error: float,
    max_num_samples: int = 200,
    seed: int = 0,
) -> tuple[NDArrayFloat, NDArrayBool] | None:
    """Robust multi-view triangulation.

    Two-view hypotheses are scored by angular error over all views; the best one is
    refit with multi-view DLT on its inliers. Angles in radians. Returns the point and
    the inlier mask, or None if no hypothesis has a well-conditioned intersection.
    """
    points_normalized = np.asarray(points_normalized, dtype=np.float64).reshape(-1, 2)
    num_views = len(points_normalized)
    if num_views < 2:
        return None

    Rs = np.array([c.R for c in cams_from_world])
    ts = np.array([c.translation for c in cams_from_world])
    Ps = [np.hstack((R, t[:, None])) for R, t in zip(Rs, ts)]
    centers = -np.einsum("vji,vj->vi", Rs, ts)
    rays = np.hstack((points_normalized, np.ones((num_views, 1))))

    pairs = list(itertools.combinations(range(num_views), 2))
    if len(pairs) > max_num_samples:
        rng = np.random.default_rng(seed)
        pairs = [pairs[i] for i in rng.choice(len(pairs), size=max_num_samples, replace=False)]

    def score(xyz):
        errors, depth = _angular_errors(xyz, Rs, ts, rays)
        inliers = (errors <= max_angle_error) & (depth > np.finfo(float).eps)
        return inliers, float(np.sum(np.minimum(errors, max_angle_error)))

    best = None
    for i, j in pairs:
        xyz = triangulate_point(Ps[i], Ps[j], points_normalized[i], points_normalized[j])
        if xyz is None:
            continue
        if calculate_triangulation_angles(centers[i], centers[j], xyz)[0] < min_tri_angle:
            continue
        inliers, cost = score(xyz)
        if not (inliers[i] and inliers[j]):
            continue
        if best is None or (inliers.sum(), -cost) > (best[1].sum(), -best[2]):
            best = (xyz, inliers, cost)

    if best is None:
        return None
    xyz, inliers, cost = best

    refit = triangulate_multi_view_point([Ps[k] for k in np.flatnonzero(inliers)], points_normalized[inliers])
    if refit is not None:
        refit_inliers, refit_cost = score(refit)
        if (refit_inliers.sum(), -refit_cost) >= (inliers.sum(), -cost):
            xyz, inliers = refit, refit_inliers
    return xyz, inliers
