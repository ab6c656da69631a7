"""Scene graph of one reconstruction.

Cameras, rigs, frames, images and 3D points live in id-keyed dicts; all cross
references are ids. Every mutation goes through a method that keeps both sides
of an image <-> point link consistent.
"""

import copy
import logging
from typing import TYPE_CHECKING, Iterable

import numpy as np

from incsfm.geometry import Rigid3d, Sim3d, calculate_squared_reprojection_error, projection_center
from incsfm.scene import Camera, Frame, Image, Point3D, Rig, Track, TrackElement, camera_sensor
from incsfm.utils import NDArrayFloat

if TYPE_CHECKING:
    from incsfm.database import DatabaseCache

logger = logging.getLogger(__name__)


class Reconstruction:
    def __init__(self):
        self.cameras: dict[int, Camera] = {}
        self.rigs: dict[int, Rig] = {}
        self.frames: dict[int, Frame] = {}
        self.images: dict[int, Image] = {}
        self.points3D: dict[int, Point3D] = {}
        self._reg_frame_ids: set[int] = set()
        self._max_point3D_id = 0

    def __repr__(self):
        return (
            f"Reconstruction(num_rigs={len(self.rigs)}, num_cameras={len(self.cameras)}, "
            f"num_frames={len(self.frames)}, num_reg_frames={self.num_reg_frames()}, "
            f"num_images={len(self.images)}, num_points3D={len(self.points3D)})"
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def camera(self, camera_id: int) -> Camera:
        try:
            return self.cameras[camera_id]
        except KeyError:
            raise ValueError(f"Unknown camera_id {camera_id}") from None

    def rig(self, rig_id: int) -> Rig:
        try:
            return self.rigs[rig_id]
        except KeyError:
            raise ValueError(f"Unknown rig_id {rig_id}") from None

    def frame(self, frame_id: int) -> Frame:
        try:
            return self.frames[frame_id]
        except KeyError:
            raise ValueError(f"Unknown frame_id {frame_id}") from None

    def image(self, image_id: int) -> Image:
        try:
            return self.images[image_id]
        except KeyError:
            raise ValueError(f"Unknown image_id {image_id}") from None

    def point3D(self, point3D_id: int) -> Point3D:
        try:
            return self.points3D[point3D_id]
        except KeyError:
            raise ValueError(f"Unknown point3D_id {point3D_id}") from None

    def exists_point3D(self, point3D_id: int) -> bool:
        return point3D_id in self.points3D

    def point3D_ids(self) -> set[int]:
        return set(self.points3D)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def load(self, database_cache: "DatabaseCache"):
        """Add all cameras, rigs, frames and images of the database that are not in the model yet."""
        for camera_id, camera in database_cache.cameras.items():
            if camera_id not in self.cameras:
                self.add_camera(camera.copy())
        for rig_id, rig in database_cache.rigs.items():
            if rig_id not in self.rigs:
                self.add_rig(copy.deepcopy(rig))
        for frame_id, frame in database_cache.frames.items():
            if frame_id not in self.frames:
                self.add_frame(Frame(frame.frame_id, frame.rig_id, []))
        for image_id, image in database_cache.images.items():
            if image_id not in self.images:
                self.add_image(image.copy())

    def add_camera(self, camera: Camera):
        if camera.camera_id in self.cameras:
            raise ValueError(f"Camera {camera.camera_id} already exists")
        self.cameras[camera.camera_id] = camera

    def add_rig(self, rig: Rig):
        if rig.rig_id in self.rigs:
            raise ValueError(f"Rig {rig.rig_id} already exists")
        for sensor_id in rig.sensor_ids():
            if sensor_id.id not in self.cameras:
                raise ValueError(f"Rig {rig.rig_id} references unknown camera {sensor_id.id}")
        for sensor_id, sensor_from_rig in rig.non_ref_sensors().items():
            if sensor_from_rig is None:
                raise ValueError(f"Sensor {sensor_id} of rig {rig.rig_id} must be calibrated before reconstruction")
        self.rigs[rig.rig_id] = rig

    def add_frame(self, frame: Frame):
        if frame.frame_id in self.frames:
            raise ValueError(f"Frame {frame.frame_id} already exists")
        if frame.rig_id not in self.rigs:
            raise ValueError(f"Frame {frame.frame_id} references unknown rig {frame.rig_id}")
        self.frames[frame.frame_id] = frame

    def add_image(self, image: Image):
        if image.image_id in self.images:
            raise ValueError(f"Image {image.image_id} already exists")
        if image.camera_id not in self.cameras:
            raise ValueError(f"Image {image.image_id} references unknown camera {image.camera_id}")
        frame = self.frame(image.frame_id)
        if not self.rig(frame.rig_id).has_sensor(camera_sensor(image.camera_id)):
            raise ValueError(f"Camera {image.camera_id} of image {image.image_id} is not a sensor of rig {frame.rig_id}")
        if image.image_id not in frame.image_ids:
            frame.image_ids.append(image.image_id)
        self.images[image.image_id] = image

    # ------------------------------------------------------------------
    # Points and observations
    # ------------------------------------------------------------------

    def _check_free_observation(self, element: TrackElement):
        point2D = self.image(element.image_id).point2D(element.point2D_idx)
        if point2D.has_point3D:
            raise ValueError(
                f"Point2D {element.point2D_idx} of image {element.image_id} already observes point {point2D.point3D_id}"
            )

    def add_point3D(self, xyz: NDArrayFloat, track: Track, color: NDArrayFloat | None = None) -> int:
        """Add a point with its track and link every observation. Returns the new id."""
        if len(track.image_ids()) < 2:
            raise ValueError(f"Track must observe at least two distinct images, got {track}")
        if len(set(track.elements)) != len(track):
            raise ValueError(f"Track contains duplicate elements: {track}")
        for element in track:
            self._check_free_observation(element)

        self._max_point3D_id += 1
        point3D_id = self._max_point3D_id
        for element in track:
            self.images[element.image_id].set_point3D_for_point2D(element.point2D_idx, point3D_id)
        point3D = Point3D(xyz, track.copy())
        if color is not None:
            point3D.color = np.asarray(color, dtype=np.uint8).reshape(3)
        self.points3D[point3D_id] = point3D
        return point3D_id

    def add_observation(self, point3D_id: int, element: TrackElement):
        point3D = self.point3D(point3D_id)
        element = TrackElement(*element)
        self._check_free_observation(element)
        self.images[element.image_id].set_point3D_for_point2D(element.point2D_idx, point3D_id)
        point3D.track.add_element(*element)

    def delete_point3D(self, point3D_id: int):
        point3D = self.point3D(point3D_id)
        for element in point3D.track:
            self.images[element.image_id].reset_point3D_for_point2D(element.point2D_idx)
        del self.points3D[point3D_id]

    def delete_observation(self, image_id: int, point2D_idx: int):
        """Unlink one observation. The remaining track must still span two images."""
        image = self.image(image_id)
        point3D_id = image.point2D(point2D_idx).point3D_id
        if point3D_id is None:
            raise ValueError(f"Point2D {point2D_idx} of image {image_id} has no 3D point")
        track = self.points3D[point3D_id].track
        remaining = {e.image_id for e in track if e != (image_id, point2D_idx)}
        if len(remaining) < 2:
            raise ValueError(f"Deleting observation would leave point {point3D_id} with fewer than two images")
        track.delete_element(image_id, point2D_idx)
        image.reset_point3D_for_point2D(point2D_idx)

    # ------------------------------------------------------------------
    # Registration and poses
    # ------------------------------------------------------------------

    def register_frame(self, frame_id: int):
        frame = self.frame(frame_id)
        if not frame.has_pose:
            raise ValueError(f"Frame {frame_id} cannot be registered without a pose")
        self._reg_frame_ids.add(frame_id)

    def deregister_frame(self, frame_id: int):
        frame = self.frame(frame_id)
        self._reg_frame_ids.discard(frame_id)
        frame.rig_from_world = None

    def is_frame_registered(self, frame_id: int) -> bool:
        return frame_id in self._reg_frame_ids

    def is_image_registered(self, image_id: int) -> bool:
        return self.image(image_id).frame_id in self._reg_frame_ids

    def num_reg_frames(self) -> int:
        return len(self._reg_frame_ids)

    def num_reg_images(self) -> int:
        return sum(len(self.frames[frame_id].image_ids) for frame_id in self._reg_frame_ids)

    def reg_frame_ids(self) -> list[int]:
        return sorted(self._reg_frame_ids)

    def reg_image_ids(self) -> list[int]:
        return sorted(image_id for frame_id in self._reg_frame_ids for image_id in self.frames[frame_id].image_ids)

    def cam_from_rig(self, image_id: int) -> Rigid3d:
        image = self.image(image_id)
        rig = self.rigs[self.frames[image.frame_id].rig_id]
        return rig.sensor_from_rig(camera_sensor(image.camera_id))

    def cam_from_world(self, image_id: int) -> Rigid3d:
        frame = self.frames[self.image(image_id).frame_id]
        if frame.rig_from_world is None:
            raise ValueError(f"Image {image_id} has no pose")
        return self.cam_from_rig(image_id) * frame.rig_from_world

    def set_cam_from_world(self, image_id: int, cam_from_world: Rigid3d):
        """Set the pose of the image's frame such that the image ends up at `cam_from_world`."""
        frame = self.frames[self.image(image_id).frame_id]
        frame.rig_from_world = self.cam_from_rig(image_id).inverse() * cam_from_world

    def projection_center(self, image_id: int) -> NDArrayFloat:
        return projection_center(self.cam_from_world(image_id))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def compute_num_observations(self) -> int:
        return sum(len(p.track) for p in self.points3D.values())

    def compute_mean_track_length(self) -> float:
        if not self.points3D:
            return 0.0
        return self.compute_num_observations() / len(self.points3D)

    def compute_mean_observations_per_reg_image(self) -> float:
        num_reg_images = self.num_reg_images()
        if num_reg_images == 0:
            return 0.0
        return self.compute_num_observations() / num_reg_images

    def compute_mean_reprojection_error(self) -> float:
        errors = [p.error for p in self.points3D.values() if p.has_error]
        return float(np.mean(errors)) if errors else 0.0

    def compute_point3D_error(self, point3D_id: int) -> float:
        """Mean reprojection error in pixels over the track."""
        point3D = self.point3D(point3D_id)
        errors = []
        for element in point3D.track:
            image = self.images[element.image_id]
            camera = self.cameras[image.camera_id]
            squared_error = calculate_squared_reprojection_error(
                image.points2D[element.point2D_idx].xy,
                point3D.xyz,
                self.cam_from_world(element.image_id),
                camera.model,
                camera.params,
            )
            errors.append(np.sqrt(squared_error))
        return float(np.mean(errors))

    def update_point3D_errors(self, point3D_ids: Iterable[int] | None = None):
        for point3D_id in self.points3D if point3D_ids is None else point3D_ids:
            if point3D_id in self.points3D:
                self.points3D[point3D_id].error = self.compute_point3D_error(point3D_id)

    # ------------------------------------------------------------------
    # Whole-model operations
    # ------------------------------------------------------------------

    def compute_bounds_and_centroid(
        self, p0: float = 0.1, p1: float = 0.9, use_images: bool = True
    ) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat] | None:
        """Robust bounding box (percentiles p0/p1 per axis) and the centroid of the coordinates inside it."""
        if use_images:
            coords = np.array([self.projection_center(image_id) for image_id in self.reg_image_ids()])
        else:
            coords = np.array([p.xyz for p in self.points3D.values()])
        if len(coords) < 2:
            return None
        low = np.percentile(coords, 100 * p0, axis=0)
        high = np.percentile(coords, 100 * p1, axis=0)
        inside = np.all((coords >= low) & (coords <= high), axis=1)
        centroid = coords[inside].mean(axis=0) if inside.any() else coords.mean(axis=0)
        return low, high, centroid

    def normalize(self, fixed_scale: bool = False, extent: float = 10.0, p0: float = 0.1, p1: float = 0.9):
        """Translate and scale the model such that the camera centers span `extent`."""
        bounds = self.compute_bounds_and_centroid(p0, p1, use_images=True)
        if bounds is None:
            return None
        low, high, centroid = bounds
        scale = 1.0
        if not fixed_scale:
            old_extent = np.linalg.norm(high - low)
            if old_extent >= np.finfo(float).eps:
                scale = extent / old_extent
        tform = Sim3d(scale=scale, translation=-scale * centroid)
        self.transform(tform)
        return tform

    def transform(self, tform: Sim3d):
        for point3D in self.points3D.values():
            point3D.xyz = tform.transform(point3D.xyz)
        for frame in self.frames.values():
            if frame.rig_from_world is not None:
                frame.rig_from_world = tform.transform_pose(frame.rig_from_world)
        for rig in self.rigs.values():
            for sensor_id, sensor_from_rig in rig.non_ref_sensors().items():
                if sensor_from_rig is not None:
                    rig.set_sensor_from_rig(
                        sensor_id, Rigid3d(sensor_from_rig.rotation, tform.scale * sensor_from_rig.translation)
                    )

    def tear_down(self):
        """Drop unregistered frames with their images, then cameras and rigs nothing refers to."""
        for frame_id in [f for f in self.frames if f not in self._reg_frame_ids]:
            for image_id in self.frames[frame_id].image_ids:
                image = self.images.pop(image_id, None)
                if image is not None and image.num_points3D > 0:
                    raise RuntimeError(f"Unregistered image {image_id} still observes 3D points")
            del self.frames[frame_id]
        used_camera_ids = {image.camera_id for image in self.images.values()}
        used_rig_ids = {frame.rig_id for frame in self.frames.values()}
        self.cameras = {k: v for k, v in self.cameras.items() if k in used_camera_ids}
        self.rigs = {k: v for k, v in self.rigs.items() if k in used_rig_ids}

    def check(self):
        """Validate the two-sided image <-> point links. Raises ValueError on the first violation."""
        for point3D_id, point3D in self.points3D.items():
            if len(point3D.track.image_ids()) < 2:
                raise ValueError(f"Point {point3D_id} observed by fewer than two images")
            for element in point3D.track:
                if element.image_id not in self.images:
                    raise ValueError(f"Point {point3D_id} references missing image {element.image_id}")
                if self.images[element.image_id].point2D(element.point2D_idx).point3D_id != point3D_id:
                    raise ValueError(f"Point {point3D_id} not linked back from {element}")
        for image_id, image in self.images.items():
            num_points3D = 0
            for point2D_idx, point2D in enumerate(image.points2D):
                if point2D.point3D_id is None:
                    continue
                num_points3D += 1
                point3D = self.points3D.get(point2D.point3D_id)
                if point3D is None or (image_id, point2D_idx) not in point3D.track.elements:
                    raise ValueError(f"Image {image_id} point2D {point2D_idx} links to a point not tracking it")
            if num_points3D != image.num_points3D:
                raise ValueError(f"Image {image_id} has stale num_points3D")
            if num_points3D and not self.is_image_registered(image_id):
                raise ValueError(f"Unregistered image {image_id} observes 3D points")
        for frame in self.frames.values():
            if frame.rig_id not in self.rigs:
                raise ValueError(f"Frame {frame.frame_id} references missing rig {frame.rig_id}")

    def copy(self) -> "Reconstruction":
        return copy.deepcopy(self)
