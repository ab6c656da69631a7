"""Building blocks of the scene graph: cameras, rigs, frames, images and 3D points.

Objects reference each other by integer id only; `Reconstruction` owns them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, NamedTuple

import numpy as np

from incsfm.geometry import Rigid3d, cam_from_img, camera_model, colmap_camera, img_from_cam
from incsfm.utils import NDArrayFloat


@dataclass
class Camera:
    camera_id: int
    model: str
    width: int
    height: int
    params: NDArrayFloat
    # Whether the focal length comes from EXIF or calibration rather than a guess
    has_prior_focal_length: bool = False

    def __post_init__(self):
        self.params = np.asarray(self.params, dtype=np.float64).copy()
        num_params = camera_model(self.model).num_params
        if self.params.shape != (num_params,):
            raise ValueError(f"Camera model {self.model} expects {num_params} params, got {self.params.shape}")

    @classmethod
    def create(
        cls, camera_id: int, model: str, focal_length: float, width: int, height: int, has_prior_focal_length=False
    ) -> "Camera":
        """Camera with the given focal length, centered principal point and no distortion."""
        camera_def = camera_model(model)
        params = np.zeros(camera_def.num_params)
        params[list(camera_def.focal_length_idxs)] = focal_length
        params[list(camera_def.principal_point_idxs)] = (width / 2, height / 2)
        return cls(camera_id, model, width, height, params, has_prior_focal_length)

    @property
    def focal_length_idxs(self) -> list[int]:
        return list(camera_model(self.model).focal_length_idxs)

    @property
    def principal_point_idxs(self) -> list[int]:
        return list(camera_model(self.model).principal_point_idxs)

    @property
    def extra_params_idxs(self) -> list[int]:
        return list(camera_model(self.model).extra_params_idxs)

    def mean_focal_length(self) -> float:
        return float(np.mean(self.params[self.focal_length_idxs]))

    def calibration_matrix(self) -> NDArrayFloat:
        fx, fy = self.params[self.focal_length_idxs[0]], self.params[self.focal_length_idxs[-1]]
        cx, cy = self.params[self.principal_point_idxs]
        return np.array([[fx, 0, cx], [0, fy, cy], [0, 0, 1]])

    def to_pycolmap(self):
        return colmap_camera(self.model, self.params, self.width, self.height, self.camera_id)

    def img_from_cam(self, uv: NDArrayFloat) -> NDArrayFloat:
        return img_from_cam(self.model, self.params, uv)

    def cam_from_img(self, xy: NDArrayFloat) -> NDArrayFloat:
        return cam_from_img(self.model, self.params, xy)

    def cam_from_img_threshold(self, threshold: float) -> float:
        """Pixel threshold converted to the normalized image plane."""
        return float(self.to_pycolmap().cam_from_img_threshold(threshold))

    def has_bogus_params(self, min_focal_length_ratio: float, max_focal_length_ratio: float, max_extra_param: float):
        max_size = max(self.width, self.height)
        for idx in self.focal_length_idxs:
            focal_length_ratio = self.params[idx] / max_size
            if focal_length_ratio < min_focal_length_ratio or focal_length_ratio > max_focal_length_ratio:
                return True
        cx, cy = self.params[self.principal_point_idxs]
        if cx < 0 or cx > self.width or cy < 0 or cy > self.height:
            return True
        return bool(np.any(np.abs(self.params[self.extra_params_idxs]) > max_extra_param))

    def copy(self) -> "Camera":
        return Camera(self.camera_id, self.model, self.width, self.height, self.params, self.has_prior_focal_length)


class SensorType(Enum):
    CAMERA = "camera"
    IMU = "imu"


@dataclass(frozen=True, order=True)
class SensorId:
    type: SensorType
    id: int

    def __repr__(self):
        return f"SensorId(type={self.type.name}, id={self.id})"


def camera_sensor(camera_id: int) -> SensorId:
    return SensorId(SensorType.CAMERA, camera_id)


class Rig:
    """Rigidly mounted sensors. The reference sensor defines the rig frame."""

    def __init__(self, rig_id: int):
        self.rig_id = rig_id
        self._ref_sensor_id: SensorId | None = None
        # sensor_id -> sensor_from_rig, None while the calibration is unknown
        self._sensors: dict[SensorId, Rigid3d | None] = {}

    def add_ref_sensor(self, sensor_id: SensorId):
        if self._ref_sensor_id is not None:
            raise ValueError(f"Rig {self.rig_id} already has reference sensor {self._ref_sensor_id}")
        self._ref_sensor_id = sensor_id

    def add_sensor(self, sensor_id: SensorId, sensor_from_rig: Rigid3d | None = None):
        if self._ref_sensor_id is None:
            raise ValueError(f"Rig {self.rig_id} needs a reference sensor before adding other sensors")
        if self.has_sensor(sensor_id):
            raise ValueError(f"Sensor {sensor_id} already added to rig {self.rig_id}")
        self._sensors[sensor_id] = sensor_from_rig

    @property
    def ref_sensor_id(self) -> SensorId:
        if self._ref_sensor_id is None:
            raise ValueError(f"Rig {self.rig_id} has no reference sensor")
        return self._ref_sensor_id

    def has_sensor(self, sensor_id: SensorId) -> bool:
        return sensor_id == self._ref_sensor_id or sensor_id in self._sensors

    def is_ref_sensor(self, sensor_id: SensorId) -> bool:
        return sensor_id == self._ref_sensor_id

    def num_sensors(self) -> int:
        return len(self._sensors) + (self._ref_sensor_id is not None)

    def sensor_ids(self) -> list[SensorId]:
        ids = [] if self._ref_sensor_id is None else [self._ref_sensor_id]
        return ids + list(self._sensors)

    def non_ref_sensors(self) -> dict[SensorId, Rigid3d | None]:
        return dict(self._sensors)

    def sensor_from_rig(self, sensor_id: SensorId) -> Rigid3d:
        if self.is_ref_sensor(sensor_id):
            return Rigid3d()
        if sensor_id not in self._sensors:
            raise ValueError(f"Sensor {sensor_id} not in rig {self.rig_id}")
        sensor_from_rig = self._sensors[sensor_id]
        if sensor_from_rig is None:
            raise ValueError(f"Sensor {sensor_id} of rig {self.rig_id} has no calibration")
        return sensor_from_rig

    def set_sensor_from_rig(self, sensor_id: SensorId, sensor_from_rig: Rigid3d):
        if sensor_id not in self._sensors:
            raise ValueError(f"Sensor {sensor_id} is not a non-reference sensor of rig {self.rig_id}")
        self._sensors[sensor_id] = sensor_from_rig

    def __repr__(self):
        return (
            f"Rig(rig_id={self.rig_id}, ref_sensor_id={self._ref_sensor_id}, "
            f"sensors=[{', '.join(repr(s) for s in self._sensors)}])"
        )


@dataclass
class Frame:
    """Instance of a rig at one point in time."""

    frame_id: int
    rig_id: int
    image_ids: list[int] = field(default_factory=list)
    rig_from_world: Rigid3d | None = None

    @property
    def has_pose(self) -> bool:
        return self.rig_from_world is not None


@dataclass
class Point2D:
    xy: NDArrayFloat
    point3D_id: int | None = None

    @property
    def has_point3D(self) -> bool:
        return self.point3D_id is not None


@dataclass
class Image:
    image_id: int
    name: str
    camera_id: int
    frame_id: int
    points2D: list[Point2D] = field(default_factory=list)
    num_points3D: int = 0

    @classmethod
    def from_keypoints(cls, image_id: int, name: str, camera_id: int, frame_id: int, keypoints: NDArrayFloat):
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
        return cls(image_id, name, camera_id, frame_id, [Point2D(xy) for xy in keypoints])

    @property
    def num_points2D(self) -> int:
        return len(self.points2D)

    def keypoints(self) -> NDArrayFloat:
        return np.array([p.xy for p in self.points2D]).reshape(-1, 2)

    def point2D(self, point2D_idx: int) -> Point2D:
        if not 0 <= point2D_idx < len(self.points2D):
            raise ValueError(f"Image {self.image_id} has no point2D {point2D_idx}")
        return self.points2D[point2D_idx]

    def set_point3D_for_point2D(self, point2D_idx: int, point3D_id: int):
        point2D = self.point2D(point2D_idx)
        if not point2D.has_point3D:
            self.num_points3D += 1
        point2D.point3D_id = point3D_id

    def reset_point3D_for_point2D(self, point2D_idx: int):
        point2D = self.point2D(point2D_idx)
        if point2D.has_point3D:
            point2D.point3D_id = None
            self.num_points3D -= 1

    def has_point3D(self, point3D_id: int) -> bool:
        return any(p.point3D_id == point3D_id for p in self.points2D)

    def copy(self) -> "Image":
        points2D = [Point2D(p.xy.copy(), p.point3D_id) for p in self.points2D]
        return Image(self.image_id, self.name, self.camera_id, self.frame_id, points2D, self.num_points3D)


class TrackElement(NamedTuple):
    image_id: int
    point2D_idx: int


class Track:
    """Observations (image, keypoint) of one 3D point."""

    def __init__(self, elements: Iterable[TrackElement] = ()):
        self.elements: list[TrackElement] = [TrackElement(*e) for e in elements]

    def __len__(self):
        return len(self.elements)

    def __iter__(self) -> Iterator[TrackElement]:
        return iter(self.elements)

    def __repr__(self):
        return f"Track({self.elements})"

    @property
    def length(self) -> int:
        return len(self.elements)

    def add_element(self, image_id: int, point2D_idx: int):
        self.elements.append(TrackElement(image_id, point2D_idx))

    def add_elements(self, elements: Iterable[TrackElement]):
        self.elements.extend(TrackElement(*e) for e in elements)

    def delete_element(self, image_id: int, point2D_idx: int):
        self.elements.remove(TrackElement(image_id, point2D_idx))

    def image_ids(self) -> set[int]:
        return {e.image_id for e in self.elements}

    def copy(self) -> "Track":
        return Track(self.elements)


@dataclass
class Point3D:
    xyz: NDArrayFloat
    track: Track = field(default_factory=Track)
    color: NDArrayFloat = field(default_factory=lambda: np.zeros(3, dtype=np.uint8))
    # Mean reprojection error in pixels, -1 if not computed yet
    error: float = -1.0

    def __post_init__(self):
        self.xyz = np.asarray(self.xyz, dtype=np.float64).reshape(3).copy()
        self.color = np.asarray(self.color, dtype=np.uint8).reshape(3)

    @property
    def has_error(self) -> bool:
        return self.error != -1.0
