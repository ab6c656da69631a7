"""Incremental triangulation: create, continue, complete, merge and re-triangulate tracks.

The correspondence graph decides which keypoints may belong to the same 3D point;
geometric checks (angular / reprojection error, triangulation angle) decide
whether they actually do.
"""

import logging
from dataclasses import dataclass, replace

import numpy as np

from incsfm.config import TriangulatorOptions
from incsfm.database import CorrespondenceGraph
from incsfm.estimators import estimate_triangulation
from incsfm.geometry import Rigid3d, calculate_angular_error, calculate_squared_reprojection_error
from incsfm.observation_manager import ObservationManager
from incsfm.reconstruction import Reconstruction
from incsfm.scene import Camera, Point2D, Track, TrackElement
from incsfm.utils import ImagePair

logger = logging.getLogger(__name__)

# Below this many created observations left over, do not try another point from them
MIN_RECURSIVE_TRACK_LENGTH = 3


@dataclass
class CorrData:
    image_id: int
    point2D_idx: int
    point2D: Point2D
    camera: Camera
    cam_from_world: Rigid3d


class IncrementalTriangulator:
    def __init__(
        self,
        correspondence_graph: CorrespondenceGraph,
        reconstruction: Reconstruction,
        obs_manager: ObservationManager | None = None,
    ):
        self.correspondence_graph = correspondence_graph
        self.reconstruction = reconstruction
        self.obs_manager = obs_manager or ObservationManager(reconstruction, correspondence_graph)
        self._camera_has_bogus_params: dict[int, bool] = {}
        self._merge_trials: dict[int, set[int]] = {}
        self._re_num_trials: dict[ImagePair, int] = {}

    def __repr__(self):
        return f"IncrementalTriangulator({self.reconstruction})"

    # ------------------------------------------------------------------
    # Public operations, each returns the number of added observations
    # ------------------------------------------------------------------

    def triangulate_image(self, options: TriangulatorOptions, image_id: int) -> int:
        """Continue existing tracks and create new points for the keypoints of a registered image."""
        options.check()
        if not self.reconstruction.is_image_registered(image_id):
            raise ValueError(f"Image {image_id} must be registered to be triangulated")
        image = self.reconstruction.image(image_id)
        camera = self.reconstruction.cameras[image.camera_id]
        if self._has_camera_bogus_params(options, camera):
            return 0

        cam_from_world = self.reconstruction.cam_from_world(image_id)
        num_tris = 0
        for point2D_idx, point2D in enumerate(image.points2D):
            corrs_data, num_triangulated = self._find(options, image_id, point2D_idx, options.max_transitivity)
            if not corrs_data:
                continue
            ref_corr_data = CorrData(image_id, point2D_idx, point2D, camera, cam_from_world)
            if num_triangulated > 0:
                num_tris += self._continue(options, ref_corr_data, corrs_data)
            num_tris += self._create(options, corrs_data + [ref_corr_data])
        return num_tris

    def complete_image(self, options: TriangulatorOptions, image_id: int) -> int:
        """Complete the image's tracks and triangulate keypoints that only match untriangulated ones."""
        options.check()
        image = self.reconstruction.image(image_id)
        camera = self.reconstruction.cameras[image.camera_id]
        if self._has_camera_bogus_params(options, camera):
            return 0
        cam_from_world = self.reconstruction.cam_from_world(image_id)
        # Pixel threshold expressed as an angle at the image's focal length
        max_angle_error = np.arctan(options.complete_max_reproj_error / camera.mean_focal_length())

        num_tris = 0
        for point2D_idx, point2D in enumerate(image.points2D):
            if point2D.has_point3D:
                num_tris += self._complete(options, point2D.point3D_id)
                continue
            if options.ignore_two_view_tracks and self.correspondence_graph.is_two_view_observation(
                image_id, point2D_idx
            ):
                continue
            corrs_data, num_triangulated = self._find(options, image_id, point2D_idx, options.max_transitivity)
            if num_triangulated or not corrs_data:
                continue
            corrs_data.append(CorrData(image_id, point2D_idx, point2D, camera, cam_from_world))
            num_tris += self._triangulate(corrs_data, np.deg2rad(options.min_angle), max_angle_error)
        return num_tris

    def complete_tracks(self, options: TriangulatorOptions, point3D_ids) -> int:
        num_completed = 0
        for point3D_id in point3D_ids:
            if self.reconstruction.exists_point3D(point3D_id):
                num_completed += self._complete(options, point3D_id)
        return num_completed

    def complete_all_tracks(self, options: TriangulatorOptions) -> int:
        return self.complete_tracks(options, sorted(self.reconstruction.points3D))

    def merge_tracks(self, options: TriangulatorOptions, point3D_ids) -> int:
        num_merged = 0
        for point3D_id in point3D_ids:
            if self.reconstruction.exists_point3D(point3D_id):
                num_merged += self._merge(options, point3D_id)
        return num_merged

    def merge_all_tracks(self, options: TriangulatorOptions) -> int:
        return self.merge_tracks(options, sorted(self.reconstruction.points3D))

    def retriangulate(self, options: TriangulatorOptions) -> int:
        """Re-triangulate under-reconstructed image pairs with a relaxed continuation threshold.

        Each pair is attempted at most `re_max_trials` times over the lifetime of the triangulator.
        """
        options.check()
        self.clear_caches()
        re_options = replace(options, continue_max_angle_error=options.re_max_angle_error)

        num_tris = 0
        for pair_id, pair_stats in sorted(self.obs_manager.image_pair_stats().items()):
            if pair_stats.num_total_corrs == 0:
                continue
            if pair_stats.num_tri_corrs / pair_stats.num_total_corrs >= options.re_min_ratio:
                continue
            image_id1, image_id2 = pair_id
            if not (
                self.reconstruction.is_image_registered(image_id1) and self.reconstruction.is_image_registered(image_id2)
            ):
                continue
            num_re_trials = self._re_num_trials.get(pair_id, 0)
            if num_re_trials >= options.re_max_trials:
                continue
            self._re_num_trials[pair_id] = num_re_trials + 1

            image1 = self.reconstruction.images[image_id1]
            image2 = self.reconstruction.images[image_id2]
            camera1 = self.reconstruction.cameras[image1.camera_id]
            camera2 = self.reconstruction.cameras[image2.camera_id]
            if self._has_camera_bogus_params(options, camera1) or self._has_camera_bogus_params(options, camera2):
                continue
            cam1_from_world = self.reconstruction.cam_from_world(image_id1)
            cam2_from_world = self.reconstruction.cam_from_world(image_id2)

            for point2D_idx1, point2D_idx2 in self.correspondence_graph.find_correspondences_between_images(
                image_id1, image_id2
            ):
                point2D1 = image1.points2D[point2D_idx1]
                point2D2 = image2.points2D[point2D_idx2]
                # Correspondences of two different points are likely bogus, merging would destroy both
                if point2D1.has_point3D and point2D2.has_point3D:
                    continue
                corr_data1 = CorrData(image_id1, int(point2D_idx1), point2D1, camera1, cam1_from_world)
                corr_data2 = CorrData(image_id2, int(point2D_idx2), point2D2, camera2, cam2_from_world)
                if point2D1.has_point3D:
                    num_tris += self._continue(re_options, corr_data2, [corr_data1])
                elif point2D2.has_point3D:
                    num_tris += self._continue(re_options, corr_data1, [corr_data2])
                else:
                    # Creating with the relaxed threshold would cause drift
                    num_tris += self._create(options, [corr_data1, corr_data2])
        return num_tris

    def clear_caches(self):
        self._camera_has_bogus_params.clear()
        self._merge_trials.clear()

    def get_modified_points3D(self) -> set[int]:
        return self.obs_manager.get_modified_points3D()

    def clear_modified_points3D(self):
        self.obs_manager.clear_modified_points3D()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _has_camera_bogus_params(self, options: TriangulatorOptions, camera: Camera) -> bool:
        if camera.camera_id not in self._camera_has_bogus_params:
            self._camera_has_bogus_params[camera.camera_id] = camera.has_bogus_params(
                options.min_focal_length_ratio, options.max_focal_length_ratio, options.max_extra_param
            )
        return self._camera_has_bogus_params[camera.camera_id]

    def _find(
        self, options: TriangulatorOptions, image_id: int, point2D_idx: int, transitivity: int
    ) -> tuple[list[CorrData], int]:
        """Correspondences in posed images with sane cameras, and how many of them are triangulated."""
        corrs_data = []
        num_triangulated = 0
        for corr in self.correspondence_graph.find_transitive_correspondences(image_id, point2D_idx, transitivity):
            if not self.reconstruction.is_image_registered(corr.image_id):
                continue
            corr_image = self.reconstruction.images[corr.image_id]
            corr_camera = self.reconstruction.cameras[corr_image.camera_id]
            if self._has_camera_bogus_params(options, corr_camera):
                continue
            corr_point2D = corr_image.points2D[corr.point2D_idx]
            corrs_data.append(
                CorrData(
                    corr.image_id,
                    corr.point2D_idx,
                    corr_point2D,
                    corr_camera,
                    self.reconstruction.cam_from_world(corr.image_id),
                )
            )
            num_triangulated += corr_point2D.has_point3D
        return corrs_data, num_triangulated

    def _create(self, options: TriangulatorOptions, corrs_data: list[CorrData]) -> int:
        create_corrs_data = [c for c in corrs_data if not c.point2D.has_point3D]
        if len(create_corrs_data) < 2:
            return 0
        if options.ignore_two_view_tracks and len(create_corrs_data) == 2:
            first = create_corrs_data[0]
            if self.correspondence_graph.is_two_view_observation(first.image_id, first.point2D_idx):
                return 0

        track_length = self._triangulate(
            create_corrs_data, np.deg2rad(options.min_angle), np.deg2rad(options.create_max_angle_error)
        )
        if track_length == 0:
            return 0
        if len(create_corrs_data) - track_length >= MIN_RECURSIVE_TRACK_LENGTH:
            return track_length + self._create(options, create_corrs_data)
        return track_length

    def _triangulate(self, corrs_data: list[CorrData], min_tri_angle: float, max_angle_error: float) -> int:
        """Robustly triangulate the observations and add a point from the inliers. Returns its track length."""
        points_normalized = np.array([c.camera.cam_from_img(c.point2D.xy) for c in corrs_data])
        result = estimate_triangulation(points_normalized, [c.cam_from_world for c in corrs_data], min_tri_angle, max_angle_error)
        if result is None:
            return 0
        xyz, inlier_mask = result
        track = Track(TrackElement(c.image_id, c.point2D_idx) for c, inlier in zip(corrs_data, inlier_mask) if inlier)
        if len(track.image_ids()) < 2:
            return 0
        self.obs_manager.add_point3D(xyz, track)
        return len(track)

    def _continue(self, options: TriangulatorOptions, ref_corr_data: CorrData, corrs_data: list[CorrData]) -> int:
        """Attach the reference observation to the best fitting triangulated correspondence."""
        if ref_corr_data.point2D.has_point3D:
            return 0
        ref_normalized = ref_corr_data.camera.cam_from_img(ref_corr_data.point2D.xy)
        best_angle_error = np.inf
        best_point3D_id = None
        for corr_data in corrs_data:
            if not corr_data.point2D.has_point3D:
                continue
            point3D = self.reconstruction.points3D[corr_data.point2D.point3D_id]
            angle_error = calculate_angular_error(ref_normalized, point3D.xyz, ref_corr_data.cam_from_world)
            if angle_error < best_angle_error:
                best_angle_error = angle_error
                best_point3D_id = corr_data.point2D.point3D_id

        if best_point3D_id is not None and best_angle_error <= np.deg2rad(options.continue_max_angle_error):
            self.obs_manager.add_observation(
                best_point3D_id, TrackElement(ref_corr_data.image_id, ref_corr_data.point2D_idx)
            )
            return 1
        return 0

    def _complete(self, options: TriangulatorOptions, point3D_id: int) -> int:
        """Breadth-first search along correspondences for untriangulated keypoints that fit the point."""
        max_squared_reproj_error = options.complete_max_reproj_error**2
        point3D = self.reconstruction.points3D[point3D_id]
        num_completed = 0
        queue = list(point3D.track.elements)
        for transitivity in range(options.complete_max_transitivity):
            if not queue:
                break
            prev_queue, queue = queue, []
            for queue_element in prev_queue:
                for corr in self.correspondence_graph.find_correspondences(*queue_element):
                    if not self.reconstruction.is_image_registered(corr.image_id):
                        continue
                    image = self.reconstruction.images[corr.image_id]
                    point2D = image.points2D[corr.point2D_idx]
                    if point2D.has_point3D:
                        continue
                    camera = self.reconstruction.cameras[image.camera_id]
                    if self._has_camera_bogus_params(options, camera):
                        continue
                    squared_error = calculate_squared_reprojection_error(
                        point2D.xy, point3D.xyz, self.reconstruction.cam_from_world(corr.image_id), camera.model, camera.params
                    )
                    if squared_error > max_squared_reproj_error:
                        continue
                    self.obs_manager.add_observation(point3D_id, corr)
                    if transitivity < options.complete_max_transitivity - 1:
                        queue.append(corr)
                    num_completed += 1
        return num_completed

    def _merge(self, options: TriangulatorOptions, point3D_id: int) -> int:
        """Merge the point with a corresponding point if all observations of both fit the merged position."""
        if not self.reconstruction.exists_point3D(point3D_id):
            return 0
        max_squared_reproj_error = options.merge_max_reproj_error**2
        point3D = self.reconstruction.points3D[point3D_id]

        for track_element in list(point3D.track.elements):
            for corr in self.correspondence_graph.find_correspondences(*track_element):
                if not self.reconstruction.is_image_registered(corr.image_id):
                    continue
                corr_point3D_id = self.reconstruction.images[corr.image_id].points2D[corr.point2D_idx].point3D_id
                if (
                    corr_point3D_id is None
                    or corr_point3D_id == point3D_id
                    or corr_point3D_id in self._merge_trials.get(point3D_id, set())
                ):
                    continue
                self._merge_trials.setdefault(point3D_id, set()).add(corr_point3D_id)
                self._merge_trials.setdefault(corr_point3D_id, set()).add(point3D_id)

                corr_point3D = self.reconstruction.points3D[corr_point3D_id]
                length1, length2 = len(point3D.track), len(corr_point3D.track)
                merged_xyz = (length1 * point3D.xyz + length2 * corr_point3D.xyz) / (length1 + length2)
                if not self._fits_all(merged_xyz, point3D.track, max_squared_reproj_error) or not self._fits_all(
                    merged_xyz, corr_point3D.track, max_squared_reproj_error
                ):
                    continue

                merged_point3D_id = self.obs_manager.merge_points3D(point3D_id, corr_point3D_id)
                num_merged_recursive = self._merge(options, merged_point3D_id)
                return num_merged_recursive if num_merged_recursive > 0 else length1 + length2
        return 0

    def _fits_all(self, xyz, track: Track, max_squared_reproj_error: float) -> bool:
        for element in track:
            image = self.reconstruction.images[element.image_id]
            camera = self.reconstruction.cameras[image.camera_id]
            squared_error = calculate_squared_reprojection_error(
                image.points2D[element.point2D_idx].xy,
                xyz,
                self.reconstruction.cam_from_world(element.image_id),
                camera.model,
                camera.params,
            )
            if squared_error > max_squared_reproj_error:
                return False
        return True
