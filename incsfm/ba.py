"""Bundle adjustment: which parameters to refine, and a pyceres solver that refines them."""

import logging
import os
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import pyceres

from incsfm.config import BundleAdjustmentOptions
from incsfm.cost_functions import position_prior_cost, reproj_error_cost, set_constant_subset
from incsfm.database import PosePrior
from incsfm.geometry import Rigid3d
from incsfm.reconstruction import Reconstruction
from incsfm.scene import camera_sensor

logger = logging.getLogger(__name__)

# Dense Schur complement is faster for few frames, sparse scales better
DENSE_SCHUR_MAX_NUM_FRAMES = 50


class BundleAdjustmentConfig:
    """Images, points and constraints of one adjustment problem."""

    def __init__(self):
        self.image_ids: set[int] = set()
        self.variable_point3D_ids: set[int] = set()
        self.constant_point3D_ids: set[int] = set()
        self.constant_cam_intrinsics: set[int] = set()
        self.constant_rig_from_world_poses: set[int] = set()
        # frame_id -> translation indices held constant
        self.constant_cam_positions: dict[int, list[int]] = {}

    def num_images(self) -> int:
        return len(self.image_ids)

    def add_image(self, image_id: int):
        self.image_ids.add(image_id)

    def add_variable_point(self, point3D_id: int):
        if point3D_id in self.constant_point3D_ids:
            raise ValueError(f"Point {point3D_id} is already constant")
        self.variable_point3D_ids.add(point3D_id)

    def add_constant_point(self, point3D_id: int):
        if point3D_id in self.variable_point3D_ids:
            raise ValueError(f"Point {point3D_id} is already variable")
        self.constant_point3D_ids.add(point3D_id)

    def has_point(self, point3D_id: int) -> bool:
        return point3D_id in self.variable_point3D_ids or point3D_id in self.constant_point3D_ids

    def set_constant_cam_intrinsics(self, camera_id: int):
        self.constant_cam_intrinsics.add(camera_id)

    def set_constant_rig_from_world_pose(self, frame_id: int):
        self.constant_rig_from_world_poses.add(frame_id)

    def set_constant_cam_positions(self, frame_id: int, idxs: list[int]):
        self.constant_cam_positions[frame_id] = sorted(set(idxs))


@dataclass
class PosePriorConfig:
    """Prior camera positions added as extra residuals."""

    pose_priors: dict[int, PosePrior] = field(default_factory=dict)
    """image_id -> prior, in the coordinate frame of the reconstruction"""

    use_robust_loss_on_prior_position: bool = False
    prior_position_loss_scale: float = 7.815


@dataclass
class BundleAdjustmentSummary:
    success: bool
    num_residuals: int
    initial_cost: float
    final_cost: float
    termination: str


class BundleAdjuster(Protocol):
    """Black-box solver: refine the parameters selected by `config` in place."""

    def solve(
        self,
        reconstruction: Reconstruction,
        config: BundleAdjustmentConfig,
        options: BundleAdjustmentOptions,
        priors: PosePriorConfig | None = None,
    ) -> BundleAdjustmentSummary: ...


def _create_loss(options: BundleAdjustmentOptions):
    if options.loss_function_type == "trivial":
        return None
    if options.loss_function_type == "soft_l1":
        return pyceres.SoftLOneLoss(options.loss_function_scale)
    if options.loss_function_type == "cauchy":
        return pyceres.CauchyLoss(options.loss_function_scale)
    if options.loss_function_type == "huber":
        return pyceres.HuberLoss(options.loss_function_scale)
    raise ValueError(f"Unknown loss function: {options.loss_function_type}")


def _num_threads(num_threads: int) -> int:
    if num_threads <= 0:
        return os.cpu_count() or 1
    return num_threads


class CeresBundleAdjuster:
    """Bundle adjustment over frame poses, camera intrinsics and 3D points with pyceres."""

    def solve(
        self,
        reconstruction: Reconstruction,
        config: BundleAdjustmentConfig,
        options: BundleAdjustmentOptions,
        priors: PosePriorConfig | None = None,
    ) -> BundleAdjustmentSummary:
        options.check()
        problem = pyceres.Problem()
        loss = _create_loss(options)

        # Parameter blocks are copies, written back only if the solver succeeds
        poses: dict[int, tuple[np.ndarray, np.ndarray]] = {}
        params: dict[int, np.ndarray] = {}
        points: dict[int, np.ndarray] = {}
        variable_frame_ids: set[int] = set()
        added: set[tuple[int, int]] = set()
        num_residuals = 0

        def add_observation(image_id: int, point2D_idx: int, point3D_id: int):
            nonlocal num_residuals
            if (image_id, point2D_idx) in added:
                return
            added.add((image_id, point2D_idx))
            image = reconstruction.images[image_id]
            frame = reconstruction.frames[image.frame_id]
            camera = reconstruction.cameras[image.camera_id]
            if frame.frame_id not in poses:
                poses[frame.frame_id] = (frame.rig_from_world.rotation.copy(), frame.rig_from_world.translation.copy())
            if camera.camera_id not in params:
                params[camera.camera_id] = camera.params.copy()
            if point3D_id not in points:
                points[point3D_id] = reconstruction.points3D[point3D_id].xyz.copy()

            rig = reconstruction.rigs[frame.rig_id]
            sensor_id = camera_sensor(image.camera_id)
            cam_from_rig = None if rig.is_ref_sensor(sensor_id) else rig.sensor_from_rig(sensor_id)
            cost = reproj_error_cost(camera.model, image.points2D[point2D_idx].xy, cam_from_rig)
            quat, t = poses[frame.frame_id]
            problem.add_residual_block(cost, loss, [quat, t, points[point3D_id], params[camera.camera_id]])
            num_residuals += 2

        for image_id in sorted(config.image_ids):
            image = reconstruction.images[image_id]
            variable_frame_ids.add(image.frame_id)
            for point2D_idx, point2D in enumerate(image.points2D):
                if point2D.point3D_id is not None:
                    add_observation(image_id, point2D_idx, point2D.point3D_id)

        # Observations of the selected points from images outside the problem, with fixed poses
        for point3D_id in sorted(config.variable_point3D_ids | config.constant_point3D_ids):
            if point3D_id not in reconstruction.points3D:
                continue
            for element in reconstruction.points3D[point3D_id].track:
                if reconstruction.is_image_registered(element.image_id):
                    add_observation(element.image_id, element.point2D_idx, point3D_id)

        if num_residuals == 0:
            return BundleAdjustmentSummary(False, 0, 0.0, 0.0, "NO_RESIDUALS")

        for frame_id, (quat, t) in poses.items():
            if (
                not options.refine_rig_from_world
                or frame_id not in variable_frame_ids
                or frame_id in config.constant_rig_from_world_poses
            ):
                problem.set_parameter_block_constant(quat)
                problem.set_parameter_block_constant(t)
                continue
            problem.set_manifold(quat, pyceres.EigenQuaternionManifold())
            constant_position_idxs = config.constant_cam_positions.get(frame_id)
            if constant_position_idxs:
                set_constant_subset(problem, t, constant_position_idxs)

        for camera_id, camera_params in params.items():
            camera = reconstruction.cameras[camera_id]
            if camera_id in config.constant_cam_intrinsics:
                problem.set_parameter_block_constant(camera_params)
                continue
            constant_idxs = []
            if not options.refine_focal_length:
                constant_idxs += camera.focal_length_idxs
            if not options.refine_principal_point:
                constant_idxs += camera.principal_point_idxs
            if not options.refine_extra_params:
                constant_idxs += camera.extra_params_idxs
            set_constant_subset(problem, camera_params, constant_idxs)

        for point3D_id in config.constant_point3D_ids:
            if point3D_id in points:
                problem.set_parameter_block_constant(points[point3D_id])

        if priors is not None:
            num_residuals += self._add_prior_residuals(reconstruction, config, priors, problem, poses, variable_frame_ids)

        solver_options = pyceres.SolverOptions()
        if len(poses) <= DENSE_SCHUR_MAX_NUM_FRAMES:
            solver_options.linear_solver_type = pyceres.LinearSolverType.DENSE_SCHUR
        else:
            solver_options.linear_solver_type = pyceres.LinearSolverType.SPARSE_SCHUR
        solver_options.minimizer_progress_to_stdout = False
        solver_options.max_num_iterations = options.max_num_iterations
        solver_options.max_linear_solver_iterations = options.max_linear_solver_iterations
        solver_options.function_tolerance = options.function_tolerance
        solver_options.gradient_tolerance = options.gradient_tolerance
        solver_options.parameter_tolerance = options.parameter_tolerance
        solver_options.num_threads = _num_threads(options.num_threads)

        summary = pyceres.SolverSummary()
        pyceres.solve(solver_options, problem, summary)
        if options.print_summary:
            logger.info(summary.FullReport())
        else:
            logger.debug(summary.BriefReport())

        success = summary.termination_type != pyceres.TerminationType.FAILURE
        if success:
            for frame_id, (quat, t) in poses.items():
                reconstruction.frames[frame_id].rig_from_world = Rigid3d(quat, t)
            for camera_id, camera_params in params.items():
                reconstruction.cameras[camera_id].params = camera_params
            for point3D_id, xyz in points.items():
                reconstruction.points3D[point3D_id].xyz = xyz

        return BundleAdjustmentSummary(
            success=success,
            num_residuals=num_residuals,
            initial_cost=float(summary.initial_cost),
            final_cost=float(summary.final_cost),
            termination=str(summary.termination_type),
        )

    @staticmethod
    def _add_prior_residuals(reconstruction, config, priors, problem, poses, variable_frame_ids) -> int:
        loss = (
            pyceres.CauchyLoss(priors.prior_position_loss_scale) if priors.use_robust_loss_on_prior_position else None
        )
        num_residuals = 0
        for image_id in sorted(config.image_ids):
            prior = priors.pose_priors.get(image_id)
            image = reconstruction.images[image_id]
            if prior is None or not prior.is_valid or image.frame_id not in poses:
                continue
            if image.frame_id not in variable_frame_ids or image.frame_id in config.constant_rig_from_world_poses:
                continue
            # The pose block is the camera pose only for the reference sensor of the rig
            frame = reconstruction.frames[image.frame_id]
            if not reconstruction.rigs[frame.rig_id].is_ref_sensor(camera_sensor(image.camera_id)):
                continue
            covariance = prior.position_covariance if prior.is_covariance_valid else np.eye(3)
            quat, t = poses[image.frame_id]
            problem.add_residual_block(position_prior_cost(prior.position, covariance), loss, [quat, t])
            num_residuals += 3
        return num_residuals
