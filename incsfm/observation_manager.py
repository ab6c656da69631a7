"""Point / observation surgery that keeps per-image visibility statistics in sync.

The triangulator and the mapper mutate the reconstruction only through
`ObservationManager`, so that the counters used to rank images (visible 3D
points, visibility pyramid) and image pairs (triangulated correspondences)
always reflect the current scene graph.
"""

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass

import numpy as np

from incsfm.database import CorrespondenceGraph
from incsfm.geometry import (
    calculate_squared_reprojection_error,
    calculate_triangulation_angles,
    has_point_positive_depth,
)
from incsfm.reconstruction import Reconstruction
from incsfm.scene import Track, TrackElement
from incsfm.utils import ImagePair, NDArrayFloat, NDArrayInt, image_pair_to_pair_id

logger = logging.getLogger(__name__)

VISIBILITY_PYRAMID_NUM_LEVELS = 6


class VisibilityPyramid:
    """Multi-resolution occupancy grid of an image.

    A cell contributes to the score once it holds at least one point; finer levels
    weigh more, so well-distributed points score higher than clustered ones.
    """

    def __init__(self, num_levels: int, width: int, height: int):
        self.width = width
        self.height = height
        self.score = 0
        self.max_score = 0
        self._pyramid: list[NDArrayInt] = []
        for level in range(num_levels):
            dim = 1 << (level + 1)
            self._pyramid.append(np.zeros((dim, dim), dtype=np.int64))
            self.max_score += dim * dim * dim * dim

    def _cell(self, dim: int, x: float, y: float) -> tuple[int, int]:
        cx = min(max(int(dim * x / self.width), 0), dim - 1)
        cy = min(max(int(dim * y / self.height), 0), dim - 1)
        return cy, cx

    def set_point(self, x: float, y: float):
        for grid in self._pyramid:
            dim = grid.shape[0]
            cell = self._cell(dim, x, y)
            grid[cell] += 1
            if grid[cell] == 1:
                self.score += dim * dim

    def reset_point(self, x: float, y: float):
        for grid in self._pyramid:
            dim = grid.shape[0]
            cell = self._cell(dim, x, y)
            if grid[cell] <= 0:
                raise ValueError(f"Resetting point ({x}, {y}) that was never set")
            grid[cell] -= 1
            if grid[cell] == 0:
                self.score -= dim * dim


@dataclass
class ImageStats:
    num_observations: int
    num_correspondences: int
    # point2D_idx -> number of correspondences of that keypoint that observe a 3D point
    num_corrs_have_point3D: NDArrayInt
    visibility_pyramid: VisibilityPyramid
    num_visible_points3D: int = 0


@dataclass
class ImagePairStats:
    num_tri_corrs: int = 0
    """Correspondences whose keypoints observe the same 3D point"""
    num_total_corrs: int = 0


class ObservationManager:
    def __init__(self, reconstruction: Reconstruction, correspondence_graph: CorrespondenceGraph | None = None):
        self.reconstruction = reconstruction
        self.correspondence_graph = correspondence_graph
        self._image_stats: dict[int, ImageStats] = {}
        self._image_pair_stats: dict[ImagePair, ImagePairStats] = defaultdict(ImagePairStats)
        self._modified_point3D_ids: set[int] = set()

        if correspondence_graph is None:
            return

        for image_id, image in reconstruction.images.items():
            if not correspondence_graph.exists_image(image_id):
                continue
            camera = reconstruction.cameras[image.camera_id]
            num_corrs_have_point3D = np.zeros(image.num_points2D, dtype=np.int64)
            self._image_stats[image_id] = ImageStats(
                num_observations=correspondence_graph.num_observations_for_image(image_id),
                num_correspondences=correspondence_graph.num_correspondences_for_image(image_id),
                num_corrs_have_point3D=num_corrs_have_point3D,
                visibility_pyramid=VisibilityPyramid(VISIBILITY_PYRAMID_NUM_LEVELS, camera.width, camera.height),
            )

        for pair_id, num_corrs in correspondence_graph.num_correspondences_between_all_images().items():
            self._image_pair_stats[pair_id].num_total_corrs = num_corrs

        for image_id in reconstruction.reg_image_ids():
            for point2D_idx, point2D in enumerate(reconstruction.images[image_id].points2D):
                if point2D.has_point3D:
                    self._set_observation_as_triangulated(image_id, point2D_idx, is_continued_point3D=False)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def num_observations(self, image_id: int) -> int:
        return self._image_stats[image_id].num_observations

    def num_correspondences(self, image_id: int) -> int:
        return self._image_stats[image_id].num_correspondences

    def num_visible_points3D(self, image_id: int) -> int:
        """Number of keypoints of the image that match a keypoint observing a 3D point."""
        return self._image_stats[image_id].num_visible_points3D

    def point3D_visibility_score(self, image_id: int) -> int:
        return self._image_stats[image_id].visibility_pyramid.score

    def image_pair_stats(self) -> dict[ImagePair, ImagePairStats]:
        return self._image_pair_stats

    def num_tri_corrs(self, image_id1: int, image_id2: int) -> int:
        stats = self._image_pair_stats.get(image_pair_to_pair_id(image_id1, image_id2))
        return 0 if stats is None else stats.num_tri_corrs

    def point3D_triangulation_angle(self, point3D_id: int) -> float:
        """Largest pairwise triangulation angle (radians) over the track."""
        point3D = self.reconstruction.point3D(point3D_id)
        centers = self._projection_centers(point3D.track.image_ids())
        return self._max_triangulation_angle(point3D.xyz, list(centers.values()))

    def point3D_track_length(self, point3D_id: int) -> int:
        return len(self.reconstruction.point3D(point3D_id).track)

    def point3D_error(self, point3D_id: int) -> float:
        """Cached mean reprojection error, computed on first use."""
        point3D = self.reconstruction.point3D(point3D_id)
        if not point3D.has_error:
            point3D.error = self.reconstruction.compute_point3D_error(point3D_id)
        return point3D.error

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_point3D(self, xyz: NDArrayFloat, track: Track, color: NDArrayFloat | None = None) -> int:
        point3D_id = self.reconstruction.add_point3D(xyz, track, color)
        for element in track:
            self._set_observation_as_triangulated(element.image_id, element.point2D_idx, is_continued_point3D=False)
        self._modified_point3D_ids.add(point3D_id)
        return point3D_id

    def add_observation(self, point3D_id: int, element: TrackElement):
        self.reconstruction.add_observation(point3D_id, element)
        self._set_observation_as_triangulated(element.image_id, element.point2D_idx, is_continued_point3D=True)
        self._modified_point3D_ids.add(point3D_id)

    def delete_point3D(self, point3D_id: int):
        point3D = self.reconstruction.point3D(point3D_id)
        for element in point3D.track:
            self._reset_tri_observations(element.image_id, element.point2D_idx, is_deleted_point3D=True)
        self.reconstruction.delete_point3D(point3D_id)
        self._modified_point3D_ids.discard(point3D_id)

    def delete_observation(self, image_id: int, point2D_idx: int):
        """Unlink one observation; the whole point goes if fewer than two images would remain."""
        point3D_id = self.reconstruction.image(image_id).point2D(point2D_idx).point3D_id
        if point3D_id is None:
            raise ValueError(f"Point2D {point2D_idx} of image {image_id} has no 3D point")
        track = self.reconstruction.points3D[point3D_id].track
        remaining = {e.image_id for e in track if e != (image_id, point2D_idx)}
        if len(remaining) < 2:
            self.delete_point3D(point3D_id)
            return
        self._reset_tri_observations(image_id, point2D_idx, is_deleted_point3D=False)
        self.reconstruction.delete_observation(image_id, point2D_idx)
        self._modified_point3D_ids.add(point3D_id)

    def merge_points3D(self, point3D_id1: int, point3D_id2: int) -> int:
        """Replace two points by one with the union of their tracks. Returns the new id.

        Position and color are averaged weighted by track length, so the result does
        not depend on the argument order.
        """
        if point3D_id1 == point3D_id2:
            raise ValueError(f"Cannot merge point {point3D_id1} with itself")
        point3D1 = self.reconstruction.point3D(point3D_id1)
        point3D2 = self.reconstruction.point3D(point3D_id2)
        weight1, weight2 = len(point3D1.track), len(point3D2.track)
        merged_xyz = (weight1 * point3D1.xyz + weight2 * point3D2.xyz) / (weight1 + weight2)
        merged_color = (weight1 * point3D1.color.astype(np.float64) + weight2 * point3D2.color) / (weight1 + weight2)
        merged_track = Track(point3D1.track.elements + point3D2.track.elements)

        self.delete_point3D(point3D_id1)
        self.delete_point3D(point3D_id2)
        return self.add_point3D(merged_xyz, merged_track, np.round(merged_color))

    def deregister_frame(self, frame_id: int):
        """Remove all observations of the frame's images, then deregister it."""
        frame = self.reconstruction.frame(frame_id)
        for image_id in frame.image_ids:
            image = self.reconstruction.images[image_id]
            for point2D_idx, point2D in enumerate(image.points2D):
                if point2D.has_point3D:
                    self.delete_observation(image_id, point2D_idx)
        self.reconstruction.deregister_frame(frame_id)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def filter_points3D(self, max_reproj_error: float, min_tri_angle: float, point3D_ids) -> int:
        """Filter the given points. Angles in degrees. Returns the number of removed observations."""
        point3D_ids = list(point3D_ids)
        num_filtered = self._filter_points3D_with_large_reprojection_error(max_reproj_error, point3D_ids)
        num_filtered += self._filter_points3D_with_small_triangulation_angle(min_tri_angle, point3D_ids)
        return num_filtered

    def filter_points3D_in_images(self, max_reproj_error: float, min_tri_angle: float, image_ids) -> int:
        point3D_ids = set()
        for image_id in image_ids:
            for point2D in self.reconstruction.image(image_id).points2D:
                if point2D.has_point3D:
                    point3D_ids.add(point2D.point3D_id)
        return self.filter_points3D(max_reproj_error, min_tri_angle, sorted(point3D_ids))

    def filter_all_points3D(self, max_reproj_error: float, min_tri_angle: float) -> int:
        return self.filter_points3D(max_reproj_error, min_tri_angle, sorted(self.reconstruction.points3D))

    def filter_observations_with_negative_depth(self) -> int:
        num_filtered = 0
        for image_id in self.reconstruction.reg_image_ids():
            image = self.reconstruction.images[image_id]
            cam_from_world = self.reconstruction.cam_from_world(image_id).matrix()
            for point2D_idx, point2D in enumerate(image.points2D):
                if not point2D.has_point3D or not self.reconstruction.exists_point3D(point2D.point3D_id):
                    continue
                xyz = self.reconstruction.points3D[point2D.point3D_id].xyz
                if not has_point_positive_depth(cam_from_world, xyz):
                    self.delete_observation(image_id, point2D_idx)
                    num_filtered += 1
        return num_filtered

    def filter_frames(self, min_focal_length_ratio: float, max_focal_length_ratio: float, max_extra_param: float):
        """Deregister frames with an image without 3D points or with bogus intrinsics. Returns their ids."""
        filtered_frame_ids = []
        for frame_id in self.reconstruction.reg_frame_ids():
            for image_id in self.reconstruction.frames[frame_id].image_ids:
                image = self.reconstruction.images[image_id]
                camera = self.reconstruction.cameras[image.camera_id]
                if image.num_points3D == 0 or camera.has_bogus_params(
                    min_focal_length_ratio, max_focal_length_ratio, max_extra_param
                ):
                    filtered_frame_ids.append(frame_id)
                    break
        for frame_id in filtered_frame_ids:
            self.deregister_frame(frame_id)
        return filtered_frame_ids

    def _filter_points3D_with_large_reprojection_error(self, max_reproj_error: float, point3D_ids) -> int:
        num_filtered = 0
        for point3D_id in point3D_ids:
            if not self.reconstruction.exists_point3D(point3D_id):
                continue
            point3D = self.reconstruction.points3D[point3D_id]
            track_length = len(point3D.track)
            if len(point3D.track.image_ids()) < 2:
                num_filtered += track_length
                self.delete_point3D(point3D_id)
                continue

            errors = self._reprojection_errors(point3D_id)
            bad = errors > max_reproj_error
            if bad.sum() >= track_length - 1:
                num_filtered += track_length
                self.delete_point3D(point3D_id)
                continue

            bad_elements = [e for e, is_bad in zip(point3D.track.elements, bad) if is_bad]
            for element in bad_elements:
                if not self.reconstruction.exists_point3D(point3D_id):
                    break
                current_length = len(point3D.track)
                self.delete_observation(*element)
                num_filtered += 1 if self.reconstruction.exists_point3D(point3D_id) else current_length
            if self.reconstruction.exists_point3D(point3D_id):
                point3D.error = float(np.mean(errors[~bad]))
        return num_filtered

    def _filter_points3D_with_small_triangulation_angle(self, min_tri_angle: float, point3D_ids) -> int:
        num_filtered = 0
        min_tri_angle_rad = np.deg2rad(min_tri_angle)
        centers: dict[int, NDArrayFloat] = {}
        for point3D_id in point3D_ids:
            if not self.reconstruction.exists_point3D(point3D_id):
                continue
            point3D = self.reconstruction.points3D[point3D_id]
            image_ids = point3D.track.image_ids()
            for image_id in image_ids - centers.keys():
                centers[image_id] = self.reconstruction.projection_center(image_id)
            angle = self._max_triangulation_angle(point3D.xyz, [centers[i] for i in image_ids])
            if angle < min_tri_angle_rad:
                num_filtered += len(point3D.track)
                self.delete_point3D(point3D_id)
        return num_filtered

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reprojection_errors(self, point3D_id: int) -> NDArrayFloat:
        point3D = self.reconstruction.points3D[point3D_id]
        errors = []
        for element in point3D.track:
            image = self.reconstruction.images[element.image_id]
            camera = self.reconstruction.cameras[image.camera_id]
            squared_error = calculate_squared_reprojection_error(
                image.points2D[element.point2D_idx].xy,
                point3D.xyz,
                self.reconstruction.cam_from_world(element.image_id),
                camera.model,
                camera.params,
            )
            errors.append(np.sqrt(squared_error))
        return np.array(errors)

    def _projection_centers(self, image_ids) -> dict[int, NDArrayFloat]:
        return {image_id: self.reconstruction.projection_center(image_id) for image_id in image_ids}

    @staticmethod
    def _max_triangulation_angle(xyz: NDArrayFloat, centers: list[NDArrayFloat]) -> float:
        max_angle = 0.0
        for center1, center2 in itertools.combinations(centers, 2):
            max_angle = max(max_angle, float(calculate_triangulation_angles(center1, center2, xyz)[0]))
        return max_angle

    def _set_observation_as_triangulated(self, image_id: int, point2D_idx: int, is_continued_point3D: bool):
        if self.correspondence_graph is None or image_id not in self._image_stats:
            return
        if not self.reconstruction.is_image_registered(image_id):
            raise ValueError(f"Image {image_id} must be registered to observe 3D points")
        point3D_id = self.reconstruction.images[image_id].points2D[point2D_idx].point3D_id
        for corr in self.correspondence_graph.find_correspondences(image_id, point2D_idx):
            corr_stats = self._image_stats.get(corr.image_id)
            if corr_stats is None:
                continue
            corr_stats.num_corrs_have_point3D[corr.point2D_idx] += 1
            if corr_stats.num_corrs_have_point3D[corr.point2D_idx] == 1:
                corr_stats.num_visible_points3D += 1
                corr_point2D = self.reconstruction.images[corr.image_id].points2D[corr.point2D_idx]
                corr_stats.visibility_pyramid.set_point(*corr_point2D.xy)
            corr_point3D_id = self.reconstruction.images[corr.image_id].points2D[corr.point2D_idx].point3D_id
            # Count each triangulated correspondence once, not forward and backward
            if point3D_id == corr_point3D_id and (is_continued_point3D or image_id < corr.image_id):
                self._image_pair_stats[image_pair_to_pair_id(image_id, corr.image_id)].num_tri_corrs += 1

    def _reset_tri_observations(self, image_id: int, point2D_idx: int, is_deleted_point3D: bool):
        if self.correspondence_graph is None or image_id not in self._image_stats:
            return
        point3D_id = self.reconstruction.images[image_id].points2D[point2D_idx].point3D_id
        for corr in self.correspondence_graph.find_correspondences(image_id, point2D_idx):
            corr_stats = self._image_stats.get(corr.image_id)
            if corr_stats is None:
                continue
            corr_stats.num_corrs_have_point3D[corr.point2D_idx] -= 1
            if corr_stats.num_corrs_have_point3D[corr.point2D_idx] == 0:
                corr_stats.num_visible_points3D -= 1
                corr_point2D = self.reconstruction.images[corr.image_id].points2D[corr.point2D_idx]
                corr_stats.visibility_pyramid.reset_point(*corr_point2D.xy)
            corr_point3D_id = self.reconstruction.images[corr.image_id].points2D[corr.point2D_idx].point3D_id
            if point3D_id == corr_point3D_id and (not is_deleted_point3D or image_id < corr.image_id):
                self._image_pair_stats[image_pair_to_pair_id(image_id, corr.image_id)].num_tri_corrs -= 1

    # ------------------------------------------------------------------
    # Modified points
    # ------------------------------------------------------------------

    def get_modified_points3D(self) -> set[int]:
        return set(self._modified_point3D_ids)

    def clear_modified_points3D(self):
        self._modified_point3D_ids.clear()

    def __repr__(self):
        return f"ObservationManager({self.reconstruction}, num_modified_points3D={len(self._modified_point3D_ids)})"
