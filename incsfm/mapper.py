"""Incremental mapper: the state machine that grows one reconstruction image by image.

Typical use (see `incsfm.sfm.reconstruct` for the full loop):

    mapper = IncrementalMapper(database_cache)
    mapper.begin_reconstruction(reconstruction)
    image_id1, image_id2 = mapper.find_initial_image_pair(options)
    mapper.register_initial_image_pair(options, image_id1, image_id2)
    for image_id in mapper.find_next_images(options):
        if mapper.register_next_image(options, image_id):
            mapper.triangulate_image(tri_options, image_id)
            mapper.iterative_local_refinement(...)
            break
    mapper.end_reconstruction(discard=False)
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace

import numpy as np

from incsfm.ba import BundleAdjuster, BundleAdjustmentConfig, CeresBundleAdjuster, PosePriorConfig
from incsfm.config import BundleAdjustmentOptions, ImageSelectionMethod, MapperOptions, TriangulatorOptions
from incsfm.database import DatabaseCache
from incsfm.estimators import (
    TwoViewGeometry,
    estimate_absolute_pose,
    estimate_generalized_absolute_pose,
    estimate_two_view_geometry,
    refine_absolute_pose,
    refine_generalized_absolute_pose,
)
from incsfm.geometry import (
    Rigid3d,
    calculate_triangulation_angles,
    estimate_sim3d,
    projection_center,
    triangulate_points,
)
from incsfm.observation_manager import ObservationManager
from incsfm.reconstruction import Reconstruction
from incsfm.scene import Track, TrackElement
from incsfm.triangulator import IncrementalTriangulator
from incsfm.utils import ImagePair, image_pair_to_pair_id

logger = logging.getLogger(__name__)

# Frames are not filtered before the calibration had a chance to settle
FILTER_FRAMES_MIN_NUM_REG_FRAMES = 20
# Long tracks are stable, local BA only refines short or new ones
LOCAL_BA_MAX_TRACK_LENGTH = 15
LOCAL_BA_TRI_ANGLE_PERCENTILE = 75
# Relaxation schedule of (triangulation angle divisor, shared observation fraction) in find_local_bundle
LOCAL_BA_SELECTION_THRESHOLDS = [(1.0, 0.6), (1.5, 0.6), (2.0, 0.5), (2.5, 0.4), (3.0, 0.3), (4.0, 0.2), (5.0, 0.1), (6.0, 0.1)]
# Transitivity of the 2D-3D correspondence search when registering an image
REGISTRATION_CORR_TRANSITIVITY = 1
PRIOR_ALIGNMENT_MIN_NUM_IMAGES = 3


@dataclass
class RegistrationStatistics:
    """Registration bookkeeping that outlives a single reconstruction.

    Pass the same instance to several mappers (or keep one mapper) to share trial
    counts and total / shared registration counts across reconstructions. Counts
    that only describe the attached model live on the mapper.
    """

    init_num_reg_trials: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    """image_id -> number of times the image was used to seed a reconstruction"""

    init_image_pairs: set[ImagePair] = field(default_factory=set)
    """Image pairs already tried for initialization"""

    num_registrations: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    """image_id -> number of reconstructions the image is registered in"""

    num_total_reg_images: int = 0
    num_shared_reg_images: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def register_frame_event(self, reconstruction: Reconstruction, frame_id: int):
        frame = reconstruction.frame(frame_id)
        with self.lock:
            for image_id in frame.image_ids:
                self.num_registrations[image_id] += 1
                if self.num_registrations[image_id] == 1:
                    self.num_total_reg_images += 1
                else:
                    self.num_shared_reg_images += 1

    def deregister_frame_event(self, reconstruction: Reconstruction, frame_id: int):
        frame = reconstruction.frame(frame_id)
        with self.lock:
            for image_id in frame.image_ids:
                if self.num_registrations.get(image_id, 0) <= 0:
                    raise RuntimeError(f"Image {image_id} is not registered")
            for image_id in frame.image_ids:
                self.num_registrations[image_id] -= 1
                if self.num_registrations[image_id] == 0:
                    self.num_total_reg_images -= 1
                else:
                    self.num_shared_reg_images -= 1

    def reset_initialization(self):
        with self.lock:
            self.init_num_reg_trials.clear()
            self.init_image_pairs.clear()


@dataclass
class LocalBundleAdjustmentReport:
    num_merged_observations: int = 0
    num_completed_observations: int = 0
    num_filtered_observations: int = 0
    num_adjusted_observations: int = 0


class IncrementalMapper:
    """Registers images into one reconstruction at a time.

    Idle until `begin_reconstruction`, then uninitialized until an initial pair is
    registered (or the attached model already has registered frames), back to idle
    after `end_reconstruction`.
    """

    def __init__(
        self,
        database_cache: DatabaseCache,
        bundle_adjuster: BundleAdjuster | None = None,
        stats: RegistrationStatistics | None = None,
    ):
        self.database_cache = database_cache
        self.bundle_adjuster = bundle_adjuster or CeresBundleAdjuster()
        self.stats = stats or RegistrationStatistics()
        self.reconstruction: Reconstruction | None = None
        self.obs_manager: ObservationManager | None = None
        self.triangulator: IncrementalTriangulator | None = None
        self.existing_frame_ids: set[int] = set()
        self.filtered_frame_ids: set[int] = set()
        # Registered counts of the attached model, used to decide which intrinsics are stable
        self.num_reg_frames_per_rig: dict[int, int] = defaultdict(int)
        self.num_reg_images_per_camera: dict[int, int] = defaultdict(int)
        # image_id -> registration attempts in the current reconstruction
        self.num_reg_trials: dict[int, int] = defaultdict(int)
        self._prev_init_image_pair: ImagePair | None = None
        self._prev_init_two_view_geometry: TwoViewGeometry | None = None

    def __repr__(self):
        return f"IncrementalMapper(reconstruction={self.reconstruction})"

    def _require_reconstruction(self) -> Reconstruction:
        if self.reconstruction is None:
            raise RuntimeError("No reconstruction attached, call begin_reconstruction first")
        return self.reconstruction

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_reconstruction(self, reconstruction: Reconstruction):
        if self.reconstruction is not None:
            raise RuntimeError("A reconstruction is already attached, call end_reconstruction first")
        reconstruction.load(self.database_cache)
        self.reconstruction = reconstruction
        self.obs_manager = ObservationManager(reconstruction, self.database_cache.correspondence_graph)
        self.triangulator = IncrementalTriangulator(
            self.database_cache.correspondence_graph, reconstruction, self.obs_manager
        )
        self.num_reg_frames_per_rig = defaultdict(int)
        self.num_reg_images_per_camera = defaultdict(int)
        for frame_id in reconstruction.reg_frame_ids():
            self.stats.register_frame_event(reconstruction, frame_id)
            self._count_frame(frame_id, 1)
        self.existing_frame_ids = set(reconstruction.reg_frame_ids())
        self.filtered_frame_ids = set()
        self.num_reg_trials = defaultdict(int)
        self._prev_init_image_pair = None
        self._prev_init_two_view_geometry = None
        logger.debug("Began reconstruction with %d existing frames", len(self.existing_frame_ids))

    def end_reconstruction(self, discard: bool):
        """Detach the reconstruction.

        With `discard`, registration counts are rolled back and the model is left as
        is for the caller to drop. Otherwise it is torn down to its registered part.
        """
        reconstruction = self._require_reconstruction()
        if discard:
            for frame_id in reconstruction.reg_frame_ids():
                self.stats.deregister_frame_event(reconstruction, frame_id)
                self._count_frame(frame_id, -1)
        else:
            reconstruction.tear_down()
        self.reconstruction = None
        self.obs_manager = None
        self.triangulator = None
        self.existing_frame_ids = set()
        self.num_reg_frames_per_rig = defaultdict(int)
        self.num_reg_images_per_camera = defaultdict(int)

    def reset_initialization_stats(self):
        self.stats.reset_initialization()
        self._prev_init_image_pair = None
        self._prev_init_two_view_geometry = None

    def num_total_reg_images(self) -> int:
        return self.stats.num_total_reg_images

    def num_shared_reg_images(self) -> int:
        return self.stats.num_shared_reg_images

    def _register_frame(self, frame_id: int):
        self.reconstruction.register_frame(frame_id)
        self.stats.register_frame_event(self.reconstruction, frame_id)
        self._count_frame(frame_id, 1)

    def _count_frame(self, frame_id: int, delta: int):
        frame = self.reconstruction.frame(frame_id)
        self.num_reg_frames_per_rig[frame.rig_id] += delta
        for image_id in frame.image_ids:
            self.num_reg_images_per_camera[self.reconstruction.images[image_id].camera_id] += delta

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _is_registered_elsewhere(self, image_id: int) -> bool:
        return self.stats.num_registrations.get(image_id, 0) > 0

    def _sort_init_candidates(self, candidates: dict[int, int]) -> list[int]:
        """Prefer images with a prior focal length, then more correspondences, then lower id."""

        def key(image_id):
            camera = self.reconstruction.cameras[self.reconstruction.images[image_id].camera_id]
            return (not camera.has_prior_focal_length, -candidates[image_id], image_id)

        return sorted(candidates, key=key)

    def _find_first_initial_images(self, options: MapperOptions) -> list[int]:
        candidates = {}
        corr_images = self._corr_images()
        for image_id in self.reconstruction.images:
            if image_id not in corr_images or self.obs_manager.num_correspondences(image_id) == 0:
                continue
            if self.stats.init_num_reg_trials.get(image_id, 0) >= options.init_max_reg_trials:
                continue
            if self._is_registered_elsewhere(image_id):
                continue
            candidates[image_id] = self.obs_manager.num_correspondences(image_id)
        return self._sort_init_candidates(candidates)

    def _find_second_initial_images(self, options: MapperOptions, image_id1: int) -> list[int]:
        correspondence_graph = self.database_cache.correspondence_graph
        num_correspondences: dict[int, int] = defaultdict(int)
        for point2D_idx in range(self.reconstruction.images[image_id1].num_points2D):
            for corr in correspondence_graph.find_correspondences(image_id1, point2D_idx):
                if not self._is_registered_elsewhere(corr.image_id):
                    num_correspondences[corr.image_id] += 1
        candidates = {
            image_id: num
            for image_id, num in num_correspondences.items()
            if num >= options.init_min_num_inliers
            and self.reconstruction.images[image_id].frame_id != self.reconstruction.images[image_id1].frame_id
        }
        return self._sort_init_candidates(candidates)

    def _corr_images(self) -> set[int]:
        return set(self.database_cache.correspondence_graph.image_ids())

    def find_initial_image_pair(
        self, options: MapperOptions, image_id1: int | None = None, image_id2: int | None = None
    ) -> ImagePair | None:
        """Search a pair with enough inliers, baseline and triangulation angle to seed the model.

        Every pair is tried at most once over the lifetime of the registration statistics.
        Optionally one or both images can be fixed.
        """
        options.check()
        self._require_reconstruction()
        if image_id1 is not None and image_id2 is not None:
            if self.estimate_initial_two_view_geometry(options, image_id1, image_id2) is None:
                return None
            return image_id1, image_id2

        if image_id1 is not None or image_id2 is not None:
            seed = image_id1 if image_id1 is not None else image_id2
            if seed not in self.reconstruction.images:
                return None
            image_ids1 = [seed]
        else:
            image_ids1 = self._find_first_initial_images(options)

        for candidate1 in image_ids1:
            for candidate2 in self._find_second_initial_images(options, candidate1):
                pair_id = image_pair_to_pair_id(candidate1, candidate2)
                if pair_id in self.stats.init_image_pairs:
                    continue
                self.stats.init_image_pairs.add(pair_id)
                if self.estimate_initial_two_view_geometry(options, candidate1, candidate2) is not None:
                    logger.info("Initial image pair: (%d, %d)", candidate1, candidate2)
                    return candidate1, candidate2
        logger.warning("No good initial image pair found")
        return None

    def estimate_initial_two_view_geometry(
        self, options: MapperOptions, image_id1: int, image_id2: int
    ) -> TwoViewGeometry | None:
        """Relative pose of the pair if it passes the initialization thresholds."""
        reconstruction = self._require_reconstruction()
        image1 = reconstruction.image(image_id1)
        image2 = reconstruction.image(image_id2)
        matches = self.database_cache.correspondence_graph.find_correspondences_between_images(image_id1, image_id2)
        if len(matches) < options.init_min_num_inliers:
            return None
        geometry = estimate_two_view_geometry(
            reconstruction.cameras[image1.camera_id],
            image1.keypoints(),
            reconstruction.cameras[image2.camera_id],
            image2.keypoints(),
            matches,
            options.init_max_error,
        )
        if geometry is None:
            return None
        num_inliers = len(geometry.inlier_matches)
        forward_motion = abs(geometry.cam2_from_cam1.translation[2])
        logger.debug(
            "Pair (%d, %d): %d inliers, forward motion %.3f, triangulation angle %.2f deg",
            image_id1,
            image_id2,
            num_inliers,
            forward_motion,
            np.rad2deg(geometry.tri_angle),
        )
        if (
            num_inliers >= options.init_min_num_inliers
            and forward_motion < options.init_max_forward_motion
            and geometry.tri_angle > np.deg2rad(options.init_min_tri_angle)
        ):
            self._prev_init_image_pair = (image_id1, image_id2)
            self._prev_init_two_view_geometry = geometry
            return geometry
        return None

    def register_initial_image_pair(
        self, options: MapperOptions, image_id1: int, image_id2: int, cam2_from_cam1: Rigid3d | None = None
    ) -> bool:
        """Seed the empty model: image 1 at the origin, image 2 at `cam2_from_cam1`, then triangulate.

        Without an explicit relative pose, the geometry of the last accepted initial pair
        is used, or estimated anew for a different pair.
        """
        reconstruction = self._require_reconstruction()
        if reconstruction.num_reg_frames() != 0:
            raise RuntimeError("Initial image pair can only be registered into an empty model")
        options.check()
        image1 = reconstruction.image(image_id1)
        image2 = reconstruction.image(image_id2)
        if image1.frame_id == image2.frame_id:
            raise ValueError(f"Images {image_id1} and {image_id2} belong to the same frame")

        pair_id = image_pair_to_pair_id(image_id1, image_id2)
        self.stats.init_num_reg_trials[image_id1] += 1
        self.stats.init_num_reg_trials[image_id2] += 1
        self.num_reg_trials[image_id1] += 1
        self.num_reg_trials[image_id2] += 1
        self.stats.init_image_pairs.add(pair_id)

        if cam2_from_cam1 is None:
            geometry = self._prev_init_two_view_geometry if self._prev_init_image_pair == (image_id1, image_id2) else None
            if geometry is None:
                geometry = self.estimate_initial_two_view_geometry(options, image_id1, image_id2)
            if geometry is None:
                return False
            cam2_from_cam1 = geometry.cam2_from_cam1

        reconstruction.set_cam_from_world(image_id1, Rigid3d())
        reconstruction.set_cam_from_world(image_id2, cam2_from_cam1)
        self._register_frame(image1.frame_id)
        self._register_frame(image2.frame_id)

        camera1 = reconstruction.cameras[image1.camera_id]
        camera2 = reconstruction.cameras[image2.camera_id]
        cam1_from_world = reconstruction.cam_from_world(image_id1)
        cam2_from_world = reconstruction.cam_from_world(image_id2)
        P1, P2 = cam1_from_world.matrix(), cam2_from_world.matrix()
        center1, center2 = projection_center(cam1_from_world), projection_center(cam2_from_world)
        min_tri_angle = np.deg2rad(options.init_min_tri_angle)

        matches = self.database_cache.correspondence_graph.find_correspondences_between_images(image_id1, image_id2)
        xy1 = camera1.cam_from_img(image1.keypoints()[matches[:, 0]])
        xy2 = camera2.cam_from_img(image2.keypoints()[matches[:, 1]])
        points3D = triangulate_points(P1, P2, xy1, xy2)
        with np.errstate(invalid="ignore"):
            valid = (
                np.isfinite(points3D).all(axis=1)
                & (calculate_triangulation_angles(center1, center2, points3D) >= min_tri_angle)
                & (cam1_from_world.transform(points3D)[:, 2] >= np.finfo(float).eps)
                & (cam2_from_world.transform(points3D)[:, 2] >= np.finfo(float).eps)
            )
        for (point2D_idx1, point2D_idx2), xyz in zip(matches[valid], points3D[valid]):
            track = Track([TrackElement(image_id1, int(point2D_idx1)), TrackElement(image_id2, int(point2D_idx2))])
            self.obs_manager.add_point3D(xyz, track)
        num_points = int(valid.sum())
        logger.info("Registered initial pair (%d, %d) with %d points", image_id1, image_id2, num_points)
        return True

    # ------------------------------------------------------------------
    # Next image registration
    # ------------------------------------------------------------------

    def _rank_image(self, options: MapperOptions, image_id: int) -> float:
        if options.image_selection_method == ImageSelectionMethod.MAX_VISIBLE_POINTS_NUM:
            return float(self.obs_manager.num_visible_points3D(image_id))
        if options.image_selection_method == ImageSelectionMethod.MAX_VISIBLE_POINTS_RATIO:
            return self.obs_manager.num_visible_points3D(image_id) / max(self.obs_manager.num_observations(image_id), 1)
        # Well spread visible points constrain the pose best
        return float(self.obs_manager.point3D_visibility_score(image_id))

    def find_next_images(self, options: MapperOptions) -> list[int]:
        """Unregistered images ranked for registration, best first.

        Images that never failed come before images that did; within each group a
        higher score wins and ties go to the lower image id. Images that exhausted
        `max_reg_trials` or belong to a filtered frame are left out.
        """
        reconstruction = self._require_reconstruction()
        options.check()
        corr_images = self._corr_images()
        fresh, retried = [], []
        for image_id, image in reconstruction.images.items():
            if reconstruction.is_image_registered(image_id) or image_id not in corr_images:
                continue
            if image.frame_id in self.filtered_frame_ids:
                continue
            if self.obs_manager.num_visible_points3D(image_id) < options.abs_pose_min_num_inliers:
                continue
            num_reg_trials = self.num_reg_trials.get(image_id, 0)
            if num_reg_trials >= options.max_reg_trials:
                continue
            ranked = (-self._rank_image(options, image_id), image_id)
            (fresh if num_reg_trials == 0 else retried).append(ranked)
        return [image_id for _, image_id in sorted(fresh)] + [image_id for _, image_id in sorted(retried)]

    def _find_2D3D_correspondences(self, options: MapperOptions, image_id: int) -> tuple[list[tuple[int, int]], list, list]:
        """(point2D_idx, point3D_id) pairs reachable through matches, with their coordinates."""
        reconstruction = self.reconstruction
        image = reconstruction.images[image_id]
        correspondence_graph = self.database_cache.correspondence_graph
        tri_corrs, points2D, points3D = [], [], []
        for point2D_idx, point2D in enumerate(image.points2D):
            corr_point3D_ids = set()
            for corr in correspondence_graph.find_transitive_correspondences(
                image_id, point2D_idx, REGISTRATION_CORR_TRANSITIVITY
            ):
                if not reconstruction.is_image_registered(corr.image_id):
                    continue
                corr_image = reconstruction.images[corr.image_id]
                point3D_id = corr_image.points2D[corr.point2D_idx].point3D_id
                if point3D_id is None or point3D_id in corr_point3D_ids:
                    continue
                corr_camera = reconstruction.cameras[corr_image.camera_id]
                if corr_camera.has_bogus_params(
                    options.min_focal_length_ratio, options.max_focal_length_ratio, options.max_extra_param
                ):
                    continue
                corr_point3D_ids.add(point3D_id)
                tri_corrs.append((point2D_idx, point3D_id))
                points2D.append(point2D.xy)
                points3D.append(reconstruction.points3D[point3D_id].xyz)
        return tri_corrs, points2D, points3D

    def register_next_image(self, options: MapperOptions, image_id: int) -> bool:
        """Estimate the pose of the image's frame from 2D-3D correspondences and register it.

        Returns False if the pose is not supported by enough inliers; the trial is counted
        either way.
        """
        reconstruction = self._require_reconstruction()
        if reconstruction.num_reg_frames() < 2:
            raise RuntimeError("At least two frames must be registered before registering the next image")
        options.check()
        image = reconstruction.image(image_id)
        frame = reconstruction.frames[image.frame_id]
        if reconstruction.is_frame_registered(frame.frame_id):
            raise RuntimeError(f"Frame {frame.frame_id} of image {image_id} is already registered")

        self.num_reg_trials[image_id] += 1
        if self.obs_manager.num_visible_points3D(image_id) < options.abs_pose_min_num_inliers:
            return False

        if len(frame.image_ids) > 1:
            registered = self._register_next_rig_frame(options, frame.frame_id)
        else:
            registered = self._register_next_single_image(options, image_id)
        if registered:
            logger.info(
                "Registered image %d (frame %d), %d frames registered",
                image_id,
                frame.frame_id,
                reconstruction.num_reg_frames(),
            )
        return registered

    def _register_next_single_image(self, options: MapperOptions, image_id: int) -> bool:
        reconstruction = self.reconstruction
        image = reconstruction.images[image_id]
        camera = reconstruction.cameras[image.camera_id]
        tri_corrs, points2D, points3D = self._find_2D3D_correspondences(options, image_id)
        if len(tri_corrs) < options.abs_pose_min_num_inliers:
            return False

        bogus = camera.has_bogus_params(
            options.min_focal_length_ratio, options.max_focal_length_ratio, options.max_extra_param
        )
        if self.num_reg_images_per_camera.get(camera.camera_id, 0) > 0 and not bogus:
            # Intrinsics already refined through another image of this camera
            estimate_focal_length = refine_focal_length = refine_extra_params = False
        else:
            # Start over from the database calibration, it may have been corrupted by a filtered image
            camera.params = self.database_cache.cameras[camera.camera_id].params.copy()
            estimate_focal_length = not camera.has_prior_focal_length
            refine_focal_length = refine_extra_params = True
        if not options.abs_pose_refine_focal_length:
            estimate_focal_length = refine_focal_length = False
        if not options.abs_pose_refine_extra_params:
            refine_extra_params = False

        points2D, points3D = np.array(points2D), np.array(points3D)
        pose = estimate_absolute_pose(camera, points2D, points3D, options.abs_pose_max_error, estimate_focal_length)
        if pose is None:
            return False
        if pose.num_inliers < options.abs_pose_min_num_inliers:
            logger.debug("Image %d: %d inliers are too few", image_id, pose.num_inliers)
            return False
        if pose.num_inliers / len(points2D) < options.abs_pose_min_inlier_ratio:
            logger.debug("Image %d: inlier ratio %.2f is too low", image_id, pose.num_inliers / len(points2D))
            return False

        refined = refine_absolute_pose(
            camera,
            points2D,
            points3D,
            pose.inlier_mask,
            pose.cam_from_world,
            pose.params,
            refine_focal_length=refine_focal_length,
            refine_extra_params=refine_extra_params,
        )
        if refined is None:
            return False
        cam_from_world, camera.params = refined

        reconstruction.set_cam_from_world(image_id, cam_from_world)
        self._register_frame(image.frame_id)
        self._continue_tracks(image_id, tri_corrs, pose.inlier_mask)
        return True

    def _register_next_rig_frame(self, options: MapperOptions, frame_id: int) -> bool:
        """Register all images of a multi-camera frame with a generalized absolute pose."""
        reconstruction = self.reconstruction
        frame = reconstruction.frames[frame_id]
        cameras, cams_from_rig = [], []
        corrs_per_image, points2D, points3D, camera_idxs = [], [], [], []
        for image_id in frame.image_ids:
            image = reconstruction.images[image_id]
            cam_from_rig = reconstruction.cam_from_rig(image_id)
            tri_corrs, image_points2D, image_points3D = self._find_2D3D_correspondences(options, image_id)
            camera_idx = len(cameras)
            cameras.append(reconstruction.cameras[image.camera_id])
            cams_from_rig.append(cam_from_rig)
            corrs_per_image.append((image_id, tri_corrs))
            points2D += image_points2D
            points3D += image_points3D
            camera_idxs += [camera_idx] * len(tri_corrs)
        if len(points2D) < options.abs_pose_min_num_inliers:
            return False

        points2D, points3D, camera_idxs = np.array(points2D), np.array(points3D), np.array(camera_idxs)
        estimate = estimate_generalized_absolute_pose(
            points2D, points3D, camera_idxs, cams_from_rig, cameras, options.abs_pose_max_error
        )
        if estimate is None:
            return False
        rig_from_world, inlier_mask = estimate
        num_inliers = int(inlier_mask.sum())
        if num_inliers < options.abs_pose_min_num_inliers or num_inliers / len(points2D) < options.abs_pose_min_inlier_ratio:
            return False
        refined = refine_generalized_absolute_pose(
            points2D, points3D, inlier_mask, camera_idxs, cams_from_rig, cameras, rig_from_world
        )
        if refined is None:
            return False
        frame.rig_from_world, _ = refined
        self._register_frame(frame_id)

        offset = 0
        for image_id, tri_corrs in corrs_per_image:
            self._continue_tracks(image_id, tri_corrs, inlier_mask[offset : offset + len(tri_corrs)])
            offset += len(tri_corrs)
        return True

    def _continue_tracks(self, image_id: int, tri_corrs: list[tuple[int, int]], inlier_mask):
        image = self.reconstruction.images[image_id]
        for (point2D_idx, point3D_id), inlier in zip(tri_corrs, inlier_mask):
            if inlier and not image.points2D[point2D_idx].has_point3D:
                self.obs_manager.add_observation(point3D_id, TrackElement(image_id, point2D_idx))

    # ------------------------------------------------------------------
    # Triangulation
    # ------------------------------------------------------------------

    def triangulate_image(self, tri_options: TriangulatorOptions, image_id: int) -> int:
        self._require_reconstruction()
        num_tris = self.triangulator.triangulate_image(tri_options, image_id)
        logger.debug("Triangulated %d observations of image %d", num_tris, image_id)
        return num_tris

    def retriangulate(self, tri_options: TriangulatorOptions) -> int:
        self._require_reconstruction()
        return self.triangulator.retriangulate(tri_options)

    def complete_tracks(self, tri_options: TriangulatorOptions) -> int:
        self._require_reconstruction()
        return self.triangulator.complete_all_tracks(tri_options)

    def merge_tracks(self, tri_options: TriangulatorOptions) -> int:
        self._require_reconstruction()
        return self.triangulator.merge_all_tracks(tri_options)

    def complete_and_merge_tracks(self, tri_options: TriangulatorOptions) -> int:
        num_completed = self.complete_tracks(tri_options)
        num_merged = self.merge_tracks(tri_options)
        logger.debug("Completed %d, merged %d observations", num_completed, num_merged)
        return num_completed + num_merged

    # ------------------------------------------------------------------
    # Bundle adjustment
    # ------------------------------------------------------------------

    def find_local_bundle(self, options: MapperOptions, image_id: int) -> list[int]:
        """Registered images most connected to `image_id` with enough triangulation angle to it.

        At most `local_ba_num_images - 1` images; the angle and overlap requirements are
        relaxed step by step and, failing that, the most overlapping images fill up the rest.
        """
        reconstruction = self._require_reconstruction()
        if not reconstruction.is_image_registered(image_id):
            raise ValueError(f"Image {image_id} must be registered")
        image = reconstruction.images[image_id]

        shared_observations: dict[int, int] = defaultdict(int)
        point3D_ids = set()
        for point2D in image.points2D:
            if not point2D.has_point3D:
                continue
            point3D_ids.add(point2D.point3D_id)
            for element in reconstruction.points3D[point2D.point3D_id].track:
                if element.image_id != image_id:
                    shared_observations[element.image_id] += 1
        overlapping = sorted(shared_observations.items(), key=lambda item: (-item[1], item[0]))

        num_eff_images = min(options.local_ba_num_images - 1, len(overlapping))
        if len(overlapping) == num_eff_images:
            return [overlapping_id for overlapping_id, _ in overlapping]

        min_tri_angle = np.deg2rad(options.local_ba_min_tri_angle)
        center = reconstruction.projection_center(image_id)
        tri_angles: dict[int, float] = {}
        local_bundle: list[int] = []
        for angle_divisor, overlap_fraction in LOCAL_BA_SELECTION_THRESHOLDS:
            for overlapping_id, num_shared in overlapping:
                if num_shared < overlap_fraction * image.num_points3D:
                    break
                if overlapping_id in local_bundle:
                    continue
                if overlapping_id not in tri_angles:
                    shared_points3D = [
                        reconstruction.points3D[p.point3D_id].xyz
                        for p in reconstruction.images[overlapping_id].points2D
                        if p.has_point3D and p.point3D_id in point3D_ids
                    ]
                    angles = calculate_triangulation_angles(
                        center, reconstruction.projection_center(overlapping_id), np.array(shared_points3D)
                    )
                    tri_angles[overlapping_id] = float(np.percentile(angles, LOCAL_BA_TRI_ANGLE_PERCENTILE))
                if tri_angles[overlapping_id] >= min_tri_angle / angle_divisor:
                    local_bundle.append(overlapping_id)
                    if len(local_bundle) >= num_eff_images:
                        break
            if len(local_bundle) >= num_eff_images:
                break

        for overlapping_id, _ in overlapping:
            if len(local_bundle) >= num_eff_images:
                break
            if overlapping_id not in local_bundle:
                local_bundle.append(overlapping_id)
        return local_bundle

    def adjust_local_bundle(
        self,
        options: MapperOptions,
        ba_options: BundleAdjustmentOptions,
        tri_options: TriangulatorOptions,
        image_id: int,
        point3D_ids,
    ) -> LocalBundleAdjustmentReport:
        """Refine the image's neighborhood, then merge, complete and filter around it."""
        reconstruction = self._require_reconstruction()
        options.check()
        report = LocalBundleAdjustmentReport()
        point3D_ids = set(point3D_ids)
        local_bundle = self.find_local_bundle(options, image_id)

        if local_bundle:
            config = BundleAdjustmentConfig()
            config.add_image(image_id)
            for local_image_id in local_bundle:
                config.add_image(local_image_id)

            def frame_of(other_image_id):
                return reconstruction.images[other_image_id].frame_id

            if options.fix_existing_frames:
                for local_image_id in local_bundle:
                    if frame_of(local_image_id) in self.existing_frame_ids:
                        config.set_constant_rig_from_world_pose(frame_of(local_image_id))

            # Intrinsics of cameras with registered images outside the window stay fixed
            num_images_per_camera: dict[int, int] = defaultdict(int)
            for config_image_id in config.image_ids:
                num_images_per_camera[reconstruction.images[config_image_id].camera_id] += 1
            for camera_id, num_images in num_images_per_camera.items():
                if num_images < self.num_reg_images_per_camera.get(camera_id, 0):
                    config.set_constant_cam_intrinsics(camera_id)

            # Fix the gauge: one pose and one coordinate of another
            if len(local_bundle) == 1:
                config.set_constant_rig_from_world_pose(frame_of(local_bundle[0]))
                config.set_constant_cam_positions(frame_of(image_id), [0])
            else:
                config.set_constant_rig_from_world_pose(frame_of(local_bundle[-1]))
                if not options.fix_existing_frames or frame_of(local_bundle[-2]) not in self.existing_frame_ids:
                    config.set_constant_cam_positions(frame_of(local_bundle[-2]), [0])

            variable_point3D_ids = set()
            for point3D_id in sorted(point3D_ids):
                if not reconstruction.exists_point3D(point3D_id):
                    continue
                point3D = reconstruction.points3D[point3D_id]
                if not point3D.has_error or len(point3D.track) <= LOCAL_BA_MAX_TRACK_LENGTH:
                    config.add_variable_point(point3D_id)
                    variable_point3D_ids.add(point3D_id)

            summary = self.bundle_adjuster.solve(reconstruction, config, ba_options)
            report.num_adjusted_observations = summary.num_residuals // 2
            report.num_merged_observations = self.triangulator.merge_tracks(tri_options, sorted(variable_point3D_ids))
            report.num_completed_observations = self.triangulator.complete_tracks(
                tri_options, sorted(variable_point3D_ids)
            )
            report.num_completed_observations += self.triangulator.complete_image(tri_options, image_id)

        filter_image_ids = {image_id, *local_bundle}
        report.num_filtered_observations = self.obs_manager.filter_points3D_in_images(
            options.filter_max_reproj_error, options.filter_min_tri_angle, sorted(filter_image_ids)
        )
        report.num_filtered_observations += self.obs_manager.filter_points3D(
            options.filter_max_reproj_error, options.filter_min_tri_angle, sorted(point3D_ids)
        )
        return report

    def _align_to_pose_priors(self) -> bool:
        """Move the model into the frame of the position priors. False if too few priors."""
        reconstruction = self.reconstruction
        centers, positions = [], []
        for image_id in reconstruction.reg_image_ids():
            if self.database_cache.exists_pose_prior(image_id):
                centers.append(reconstruction.projection_center(image_id))
                positions.append(self.database_cache.pose_priors[image_id].position)
        if len(centers) < PRIOR_ALIGNMENT_MIN_NUM_IMAGES:
            return False
        tform = estimate_sim3d(np.array(centers), np.array(positions))
        if tform is None:
            return False
        reconstruction.transform(tform)
        return True

    def adjust_global_bundle(self, options: MapperOptions, ba_options: BundleAdjustmentOptions) -> bool:
        """Refine all registered frames and points. Returns False if the solver failed."""
        reconstruction = self._require_reconstruction()
        reg_frame_ids = reconstruction.reg_frame_ids()
        if len(reg_frame_ids) < 2:
            raise RuntimeError("At least two frames must be registered for global bundle adjustment")

        self.obs_manager.filter_observations_with_negative_depth()

        config = BundleAdjustmentConfig()
        for image_id in reconstruction.reg_image_ids():
            config.add_image(image_id)
        if options.fix_existing_frames:
            for frame_id in reg_frame_ids:
                if frame_id in self.existing_frame_ids:
                    config.set_constant_rig_from_world_pose(frame_id)

        priors = None
        if options.use_prior_position and self._align_to_pose_priors():
            # Priors fix the gauge
            priors = PosePriorConfig(
                pose_priors=dict(self.database_cache.pose_priors),
                use_robust_loss_on_prior_position=options.use_robust_loss_on_prior_position,
                prior_position_loss_scale=options.prior_position_loss_scale,
            )
        else:
            config.set_constant_rig_from_world_pose(reg_frame_ids[0])
            if not options.fix_existing_frames or reg_frame_ids[1] not in self.existing_frame_ids:
                config.set_constant_cam_positions(reg_frame_ids[1], [0])

        summary = self.bundle_adjuster.solve(reconstruction, config, ba_options, priors)
        logger.info(
            "Global bundle adjustment: %d residuals, cost %.4g -> %.4g (%s)",
            summary.num_residuals,
            summary.initial_cost,
            summary.final_cost,
            summary.termination,
        )
        return summary.success

    def iterative_local_refinement(
        self,
        max_num_refinements: int,
        max_refinement_change: float,
        options: MapperOptions,
        ba_options: BundleAdjustmentOptions,
        tri_options: TriangulatorOptions,
        image_id: int,
    ):
        for _ in range(max_num_refinements):
            report = self.adjust_local_bundle(options, ba_options, tri_options, image_id, self.get_modified_points3D())
            logger.debug("Local bundle adjustment of image %d: %s", image_id, report)
            changed = 0.0
            if report.num_adjusted_observations > 0:
                changed = (
                    report.num_merged_observations
                    + report.num_completed_observations
                    + report.num_filtered_observations
                ) / report.num_adjusted_observations
            if changed < max_refinement_change:
                break
            # Robust loss only in the first round
            ba_options = replace(ba_options, loss_function_type="trivial")
        self.clear_modified_points3D()

    def iterative_global_refinement(
        self,
        max_num_refinements: int,
        max_refinement_change: float,
        options: MapperOptions,
        ba_options: BundleAdjustmentOptions,
        tri_options: TriangulatorOptions,
        normalize_reconstruction: bool = True,
    ):
        reconstruction = self._require_reconstruction()
        self.complete_and_merge_tracks(tri_options)
        logger.debug("Retriangulated %d observations", self.retriangulate(tri_options))
        for _ in range(max_num_refinements):
            num_observations = reconstruction.compute_num_observations()
            self.adjust_global_bundle(options, ba_options)
            if normalize_reconstruction and not options.use_prior_position:
                reconstruction.normalize()
            num_changed_observations = self.complete_and_merge_tracks(tri_options)
            num_changed_observations += self.filter_points(options)
            changed = num_changed_observations / num_observations if num_observations else 0.0
            logger.debug("Global refinement changed %.4f of the observations", changed)
            if changed < max_refinement_change:
                break
        self.filter_frames(options)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def filter_frames(self, options: MapperOptions) -> int:
        """Deregister frames with bogus intrinsics or without 3D points. Returns how many."""
        reconstruction = self._require_reconstruction()
        if reconstruction.num_reg_frames() < FILTER_FRAMES_MIN_NUM_REG_FRAMES:
            return 0
        frame_ids = self.obs_manager.filter_frames(
            options.min_focal_length_ratio, options.max_focal_length_ratio, options.max_extra_param
        )
        for frame_id in frame_ids:
            self.stats.deregister_frame_event(reconstruction, frame_id)
            self._count_frame(frame_id, -1)
            self.filtered_frame_ids.add(frame_id)
        if frame_ids:
            logger.info("Filtered frames %s", frame_ids)
        return len(frame_ids)

    def filter_points(self, options: MapperOptions) -> int:
        self._require_reconstruction()
        num_filtered = self.obs_manager.filter_all_points3D(options.filter_max_reproj_error, options.filter_min_tri_angle)
        logger.debug("Filtered %d observations", num_filtered)
        return num_filtered

    # ------------------------------------------------------------------
    # Modified points
    # ------------------------------------------------------------------

    def get_modified_points3D(self) -> set[int]:
        self._require_reconstruction()
        return self.obs_manager.get_modified_points3D()

    def clear_modified_points3D(self):
        self._require_reconstruction()
        self.obs_manager.clear_modified_points3D()
