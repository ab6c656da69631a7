"""Configuration for incremental Structure from Motion.

All option records are immutable. Derive variants with `dataclasses.replace`.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal


class ImageSelectionMethod(Enum):
    """Ranking used to pick the next image to register."""

    MAX_VISIBLE_POINTS_NUM = "max_visible_points_num"
    MAX_VISIBLE_POINTS_RATIO = "max_visible_points_ratio"
    MIN_UNCERTAINTY = "min_uncertainty"


def _check(condition: bool, message: str):
    if not condition:
        raise ValueError(message)


@dataclass(frozen=True)
class MapperOptions:
    """Options of the incremental mapper.

    Angles are in degrees, errors in pixels.
    """

    # Initialization
    init_min_num_inliers: int = 100
    """Minimum number of inliers for initial image pair"""

    init_max_error: float = 4.0
    """Maximum error in pixels for two-view geometry estimation for initial image pair"""

    init_max_forward_motion: float = 0.95
    """Maximum forward motion (z-component of the unit baseline) for initial image pair"""

    init_min_tri_angle: float = 16.0
    """Minimum median triangulation angle for initial image pair"""

    init_max_reg_trials: int = 2
    """Maximum number of trials to use an image for initialization"""

    # Absolute pose
    abs_pose_max_error: float = 12.0
    """Maximum reprojection error in absolute pose estimation"""

    abs_pose_min_num_inliers: int = 30
    """Minimum number of inliers in absolute pose estimation"""

    abs_pose_min_inlier_ratio: float = 0.25
    """Minimum inlier ratio in absolute pose estimation"""

    abs_pose_refine_focal_length: bool = True
    """Whether to estimate the focal length in absolute pose estimation"""

    abs_pose_refine_extra_params: bool = True
    """Whether to estimate the extra (distortion) parameters in absolute pose estimation"""

    # Local bundle adjustment
    local_ba_num_images: int = 6
    """Number of images to optimize in local bundle adjustment"""

    local_ba_min_tri_angle: float = 6.0
    """Minimum triangulation angle for images to be chosen in local bundle adjustment"""

    # Thresholds for bogus camera parameters. Images with bogus camera
    # parameters are filtered and ignored in triangulation.
    min_focal_length_ratio: float = 0.1
    """Opening angle of ~130deg"""

    max_focal_length_ratio: float = 10.0
    """Opening angle of ~5deg"""

    max_extra_param: float = 1.0

    # Filtering
    filter_max_reproj_error: float = 4.0
    """Maximum reprojection error in pixels for observations"""

    filter_min_tri_angle: float = 1.5
    """Minimum triangulation angle in degrees for stable 3D points"""

    max_reg_trials: int = 3
    """Maximum number of trials to register an image"""

    fix_existing_frames: bool = False
    """If reconstruction is provided as input, fix the existing frame poses"""

    # Pose priors
    use_prior_position: bool = False
    """Whether to use prior camera positions in global bundle adjustment"""

    use_robust_loss_on_prior_position: bool = False
    """Whether to use a robust loss on prior positions"""

    prior_position_loss_scale: float = 7.815
    """Threshold on the residual for the robust loss (chi2 for 3DOF at 95% = 7.815)"""

    num_threads: int = -1
    """Number of solver threads, -1 for all cores"""

    image_selection_method: ImageSelectionMethod = ImageSelectionMethod.MIN_UNCERTAINTY
    """Method to find and select next best image to register"""

    def check(self) -> None:
        _check(self.init_min_num_inliers > 0, "init_min_num_inliers must be > 0")
        _check(self.init_max_error > 0, "init_max_error must be > 0")
        _check(0 <= self.init_max_forward_motion <= 1, "init_max_forward_motion must be in [0, 1]")
        _check(self.init_min_tri_angle >= 0, "init_min_tri_angle must be >= 0")
        _check(self.init_max_reg_trials >= 1, "init_max_reg_trials must be >= 1")
        _check(self.abs_pose_max_error > 0, "abs_pose_max_error must be > 0")
        _check(self.abs_pose_min_num_inliers > 0, "abs_pose_min_num_inliers must be > 0")
        _check(0 <= self.abs_pose_min_inlier_ratio <= 1, "abs_pose_min_inlier_ratio must be in [0, 1]")
        _check(self.local_ba_num_images > 1, "local_ba_num_images must be > 1")
        _check(self.local_ba_min_tri_angle >= 0, "local_ba_min_tri_angle must be >= 0")
        _check(self.min_focal_length_ratio > 0, "min_focal_length_ratio must be > 0")
        _check(
            self.max_focal_length_ratio > self.min_focal_length_ratio,
            "max_focal_length_ratio must be > min_focal_length_ratio",
        )
        _check(self.max_extra_param >= 0, "max_extra_param must be >= 0")
        _check(self.filter_max_reproj_error >= 0, "filter_max_reproj_error must be >= 0")
        _check(self.filter_min_tri_angle >= 0, "filter_min_tri_angle must be >= 0")
        _check(self.max_reg_trials >= 1, "max_reg_trials must be >= 1")
        _check(self.prior_position_loss_scale > 0, "prior_position_loss_scale must be > 0")


@dataclass(frozen=True)
class TriangulatorOptions:
    """Options of the incremental triangulator. Angles in degrees, errors in pixels."""

    max_transitivity: int = 1
    """Maximum transitivity to search for correspondences"""

    create_max_angle_error: float = 2.0
    """Maximum angular error to create new triangulations"""

    continue_max_angle_error: float = 2.0
    """Maximum angular error to continue existing triangulations"""

    merge_max_reproj_error: float = 4.0
    """Maximum reprojection error to merge new triangulations"""

    complete_max_reproj_error: float = 4.0
    """Maximum reprojection error to complete an existing triangulation"""

    complete_max_transitivity: int = 5
    """Maximum transitivity for track completion"""

    re_max_angle_error: float = 5.0
    """Maximum angular error to re-triangulate under-reconstructed image pairs"""

    re_min_ratio: float = 0.2
    """Minimum ratio of common triangulations between an image pair over the
    number of correspondences between that pair to consider it under-reconstructed"""

    re_max_trials: int = 1
    """Maximum number of trials to re-triangulate an image pair"""

    min_angle: float = 1.5
    """Minimum pairwise triangulation angle for a stable triangulation"""

    ignore_two_view_tracks: bool = True
    """Whether to ignore two-view feature tracks in triangulation"""

    min_focal_length_ratio: float = 0.1
    max_focal_length_ratio: float = 10.0
    max_extra_param: float = 1.0

    def check(self) -> None:
        _check(self.max_transitivity >= 0, "max_transitivity must be >= 0")
        _check(self.create_max_angle_error > 0, "create_max_angle_error must be > 0")
        _check(self.continue_max_angle_error > 0, "continue_max_angle_error must be > 0")
        _check(self.merge_max_reproj_error > 0, "merge_max_reproj_error must be > 0")
        _check(self.complete_max_reproj_error > 0, "complete_max_reproj_error must be > 0")
        _check(self.complete_max_transitivity >= 0, "complete_max_transitivity must be >= 0")
        _check(self.re_max_angle_error > 0, "re_max_angle_error must be > 0")
        _check(0 <= self.re_min_ratio <= 1, "re_min_ratio must be in [0, 1]")
        _check(self.re_max_trials >= 0, "re_max_trials must be >= 0")
        _check(self.min_angle > 0, "min_angle must be > 0")


LossFunctionType = Literal["trivial", "soft_l1", "cauchy", "huber"]


@dataclass(frozen=True)
class BundleAdjustmentOptions:
    """Options of the bundle adjustment solver."""

    loss_function_type: LossFunctionType = "trivial"
    """Loss function applied to each reprojection residual"""

    loss_function_scale: float = 1.0
    """Scaling factor determining the residual at which robustification takes place"""

    refine_focal_length: bool = True
    refine_principal_point: bool = False
    refine_extra_params: bool = True

    refine_rig_from_world: bool = True
    """Whether to refine the frame poses"""

    max_num_iterations: int = 100
    max_linear_solver_iterations: int = 200
    function_tolerance: float = 0.0
    gradient_tolerance: float = 1e-4
    parameter_tolerance: float = 0.0

    num_threads: int = -1
    """Number of solver threads, -1 for all cores"""

    print_summary: bool = False
    """Log the full solver report instead of the brief one"""

    def check(self) -> None:
        _check(self.loss_function_scale >= 0, "loss_function_scale must be >= 0")
        _check(self.max_num_iterations >= 0, "max_num_iterations must be >= 0")


@dataclass(frozen=True)
class PipelineOptions:
    """Options of the reconstruction driver loop in `incsfm.sfm`."""

    init_num_trials: int = 200
    """Number of initial pairs to try before giving up"""

    min_model_size: int = 10
    """Minimum number of registered images for a reconstruction to be kept"""

    ba_local_max_num_iterations: int = 25
    ba_local_max_refinements: int = 2
    ba_local_max_refinement_change: float = 0.001

    ba_global_max_num_iterations: int = 50
    ba_global_max_refinements: int = 5
    ba_global_max_refinement_change: float = 0.0005

    # Global bundle adjustment is triggered when the model grows by these
    # ratios / absolute amounts since the last global adjustment.
    ba_global_frames_ratio: float = 1.1
    ba_global_points_ratio: float = 1.1
    ba_global_frames_freq: int = 500
    ba_global_points_freq: int = 250_000

    mapper: MapperOptions = field(default_factory=MapperOptions)
    triangulation: TriangulatorOptions = field(default_factory=TriangulatorOptions)
    bundle_adjustment: BundleAdjustmentOptions = field(default_factory=BundleAdjustmentOptions)

    def check(self) -> None:
        _check(self.init_num_trials > 0, "init_num_trials must be > 0")
        _check(self.min_model_size > 0, "min_model_size must be > 0")
        _check(self.ba_global_frames_ratio > 1, "ba_global_frames_ratio must be > 1")
        _check(self.ba_global_points_ratio > 1, "ba_global_points_ratio must be > 1")
        self.mapper.check()
        self.triangulation.check()
        self.bundle_adjustment.check()

    def local_bundle_adjustment(self) -> BundleAdjustmentOptions:
        """Solver options for local refinement: few iterations and a robust loss."""
        return replace(
            self.bundle_adjustment,
            loss_function_type="soft_l1",
            max_num_iterations=self.ba_local_max_num_iterations,
        )

    def global_bundle_adjustment(self) -> BundleAdjustmentOptions:
        return replace(self.bundle_adjustment, max_num_iterations=self.ba_global_max_num_iterations)
