"""Rigid / similarity transforms, camera models and triangulation math.

Conventions: quaternions are stored as [x, y, z, w] (scipy / Eigen memory order),
poses map world to camera (`cam_from_world`), image points are in pixels and
"normalized" points are on the z=1 plane of the camera. Camera projection,
pose composition and similarity estimation are delegated to pycolmap.
"""

from dataclasses import dataclass, field
from typing import Literal, NamedTuple

import cv2 as cv
import numpy as np
import pycolmap
from scipy.spatial.transform import Rotation

from incsfm.utils import NDArrayFloat

EPS = 1e-12


def _identity_quat() -> NDArrayFloat:
    return np.array([0.0, 0.0, 0.0, 1.0])


@dataclass
class Rigid3d:
    """Rigid transform `x' = R x + t`."""

    rotation: NDArrayFloat = field(default_factory=_identity_quat)  # [x, y, z, w]
    translation: NDArrayFloat = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(4).copy()
        self.rotation /= np.linalg.norm(self.rotation)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3).copy()

    @classmethod
    def from_matrix(cls, R: NDArrayFloat, t: NDArrayFloat) -> "Rigid3d":
        return cls(Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_quat(), t)

    @classmethod
    def from_rotvec(cls, rvec: NDArrayFloat, t: NDArrayFloat) -> "Rigid3d":
        return cls(Rotation.from_rotvec(np.asarray(rvec, dtype=np.float64).ravel()).as_quat(), t)

    @classmethod
    def from_pycolmap(cls, rigid: pycolmap.Rigid3d) -> "Rigid3d":
        return cls(rigid.rotation.quat, rigid.translation)

    def to_pycolmap(self) -> pycolmap.Rigid3d:
        return pycolmap.Rigid3d(rotation=pycolmap.Rotation3d(self.R), translation=self.translation.copy())

    @property
    def R(self) -> NDArrayFloat:
        return Rotation.from_quat(self.rotation).as_matrix()

    @property
    def rvec(self) -> NDArrayFloat:
        return Rotation.from_quat(self.rotation).as_rotvec()

    def matrix(self) -> NDArrayFloat:
        """3x4 matrix [R | t]."""
        return np.hstack((self.R, self.translation[:, None]))

    def inverse(self) -> "Rigid3d":
        return Rigid3d.from_pycolmap(self.to_pycolmap().inverse())

    def __mul__(self, other: "Rigid3d") -> "Rigid3d":
        """Composition: `(a * b)(x) == a(b(x))`."""
        return Rigid3d.from_pycolmap(self.to_pycolmap() * other.to_pycolmap())

    def transform(self, points: NDArrayFloat) -> NDArrayFloat:
        points = np.asarray(points, dtype=np.float64)
        return points @ self.R.T + self.translation

    def copy(self) -> "Rigid3d":
        return Rigid3d(self.rotation, self.translation)


def projection_center(cam_from_world: Rigid3d) -> NDArrayFloat:
    """Camera center in world coordinates: -Rᵀ t."""
    return -cam_from_world.R.T @ cam_from_world.translation


def viewing_direction(cam_from_world: Rigid3d) -> NDArrayFloat:
    return cam_from_world.R[2, :]


@dataclass
class Sim3d:
    """Similarity transform `x' = s R x + t`."""

    scale: float = 1.0
    rotation: NDArrayFloat = field(default_factory=_identity_quat)
    translation: NDArrayFloat = field(default_factory=lambda: np.zeros(3))

    @property
    def R(self) -> NDArrayFloat:
        return Rotation.from_quat(self.rotation).as_matrix()

    def transform(self, points: NDArrayFloat) -> NDArrayFloat:
        return self.scale * (np.asarray(points, dtype=np.float64) @ self.R.T) + self.translation

    def transform_pose(self, cam_from_world: Rigid3d) -> Rigid3d:
        """Pose in the transformed world frame, scale absorbed into the translation."""
        R = cam_from_world.R @ self.R.T
        t = self.scale * cam_from_world.translation - R @ self.translation
        return Rigid3d.from_matrix(R, t)


def estimate_sim3d(src: NDArrayFloat, tgt: NDArrayFloat) -> Sim3d | None:
    """Least-squares similarity `tgt ~ s R src + t`."""
    src = np.asarray(src, dtype=np.float64)
    tgt = np.asarray(tgt, dtype=np.float64)
    if len(src) < 3 or src.shape != tgt.shape:
        return None
    # Coincident or collinear sources leave the rotation undefined
    if np.linalg.matrix_rank(src - src.mean(axis=0), tol=1e-9) < 2:
        return None
    tgt_from_src = pycolmap.estimate_sim3d(list(src), list(tgt))
    if tgt_from_src is None:
        return None
    tform = Sim3d(float(tgt_from_src.scale), tgt_from_src.rotation.quat, np.asarray(tgt_from_src.translation))
    if not (np.isfinite(tform.scale) and np.isfinite(tform.translation).all()):
        return None
    return tform


# ============================================================================
# Camera models
# ============================================================================

CameraModelName = Literal["SIMPLE_PINHOLE", "PINHOLE", "SIMPLE_RADIAL", "RADIAL", "OPENCV"]


class CameraModel(NamedTuple):
    num_params: int
    focal_length_idxs: tuple[int, ...]
    principal_point_idxs: tuple[int, ...]
    extra_params_idxs: tuple[int, ...]


# Parameter layout of the supported pycolmap camera models
CAMERA_MODELS: dict[str, CameraModel] = {
    "SIMPLE_PINHOLE": CameraModel(3, (0,), (1, 2), ()),  # f, cx, cy
    "PINHOLE": CameraModel(4, (0, 1), (2, 3), ()),  # fx, fy, cx, cy
    "SIMPLE_RADIAL": CameraModel(4, (0,), (1, 2), (3,)),  # f, cx, cy, k
    "RADIAL": CameraModel(5, (0,), (1, 2), (3, 4)),  # f, cx, cy, k1, k2
    "OPENCV": CameraModel(8, (0, 1), (2, 3), (4, 5, 6, 7)),  # fx, fy, cx, cy, k1, k2, p1, p2
}


def camera_model(model: str) -> CameraModel:
    try:
        return CAMERA_MODELS[model]
    except KeyError:
        raise ValueError(f"Unknown camera model: {model}") from None


def camera_model_id(model: str) -> pycolmap.CameraModelId:
    camera_model(model)
    return getattr(pycolmap.CameraModelId, model)


def colmap_camera(model: str, params: NDArrayFloat, width: int = 0, height: int = 0, camera_id: int = 1):
    return pycolmap.Camera(
        model=model,
        width=width,
        height=height,
        params=np.asarray(params, dtype=np.float64),
        camera_id=camera_id,
    )


def img_from_cam(model: str, params: NDArrayFloat, uv: NDArrayFloat) -> NDArrayFloat:
    """Project normalized points (..., 2) to pixels."""
    uv = np.asarray(uv, dtype=np.float64)
    if uv.size == 0:
        return uv.copy()
    cam_points = np.hstack((uv.reshape(-1, 2), np.ones((uv.size // 2, 1))))
    xy = colmap_camera(model, params).img_from_cam(cam_points)
    return np.asarray(xy, dtype=np.float64).reshape(uv.shape)


def cam_from_img(model: str, params: NDArrayFloat, xy: NDArrayFloat) -> NDArrayFloat:
    """Unproject pixels (..., 2) to normalized points."""
    xy = np.asarray(xy, dtype=np.float64)
    if xy.size == 0:
        return xy.copy()
    uv = colmap_camera(model, params).cam_from_img(np.ascontiguousarray(xy.reshape(-1, 2)))
    return np.asarray(uv, dtype=np.float64).reshape(xy.shape)


def project_points(
    model: str, params: NDArrayFloat, cam_from_world: Rigid3d, points3D: NDArrayFloat
) -> tuple[NDArrayFloat, NDArrayFloat]:
    """Project world points to pixels. Returns (pixels (N, 2), depths (N,)).

    Points behind the camera project to nan.
    """
    points_cam = cam_from_world.transform(np.atleast_2d(points3D))
    depth = points_cam[:, 2]
    xy = np.full((len(points_cam), 2), np.nan)
    in_front = depth >= np.finfo(float).eps
    if in_front.any():
        xy[in_front] = colmap_camera(model, params).img_from_cam(np.ascontiguousarray(points_cam[in_front]))
    return xy, depth


# ============================================================================
# Triangulation
# ============================================================================


def triangulate_points(
    cam1_from_world: NDArrayFloat, cam2_from_world: NDArrayFloat, points1: NDArrayFloat, points2: NDArrayFloat
) -> NDArrayFloat:
    """Two-view DLT triangulation of normalized points (N, 2). Rows with w=0 become nan."""
    points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2)
    points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2)
    points_4d = cv.triangulatePoints(
        np.asarray(cam1_from_world, dtype=np.float64),
        np.asarray(cam2_from_world, dtype=np.float64),
        points1.T,
        points2.T,
    )
    w = points_4d[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        points_3d = (points_4d[:3] / w).T
    points_3d[np.abs(w) < EPS] = np.nan
    return points_3d


def triangulate_point(
    cam1_from_world: NDArrayFloat, cam2_from_world: NDArrayFloat, point1: NDArrayFloat, point2: NDArrayFloat
) -> NDArrayFloat | None:
    xyz = triangulate_points(cam1_from_world, cam2_from_world, point1, point2)[0]
    if not np.isfinite(xyz).all():
        return None
    return xyz


def triangulate_multi_view_point(cams_from_world: list[NDArrayFloat], points: NDArrayFloat) -> NDArrayFloat | None:
    """Multi-view DLT triangulation of normalized points (N, 2)."""
    A = []
    for P, (x, y) in zip(cams_from_world, np.asarray(points, dtype=np.float64)):
        A.append(x * P[2] - P[0])
        A.append(y * P[2] - P[1])
    _, _, Vt = np.linalg.svd(np.asarray(A))
    X = Vt[-1]
    if abs(X[3]) < EPS:
        return None
    return X[:3] / X[3]


def has_point_positive_depth(cam_from_world: NDArrayFloat, point3D: NDArrayFloat) -> bool:
    """`cam_from_world` as 3x4 matrix."""
    return float(cam_from_world[2, :3] @ point3D + cam_from_world[2, 3]) >= np.finfo(float).eps


def calculate_triangulation_angles(
    proj_center1: NDArrayFloat, proj_center2: NDArrayFloat, points3D: NDArrayFloat
) -> NDArrayFloat:
    """Angle in radians at each point between the rays to both projection centers."""
    points3D = np.atleast_2d(np.asarray(points3D, dtype=np.float64))
    baseline_length_squared = float(np.sum((proj_center1 - proj_center2) ** 2))
    ray_length_squared1 = np.sum((points3D - proj_center1) ** 2, axis=1)
    ray_length_squared2 = np.sum((points3D - proj_center2) ** 2, axis=1)
    denominator = 2.0 * np.sqrt(ray_length_squared1 * ray_length_squared2)
    nominator = ray_length_squared1 + ray_length_squared2 - baseline_length_squared
    with np.errstate(divide="ignore", invalid="ignore"):
        angle = np.abs(np.arccos(np.clip(nominator / denominator, -1.0, 1.0)))
    angle[denominator == 0] = 0.0
    # Triangulation is unstable for acute angles (far away points) and
    # obtuse angles (close points), so always compute the minimum angle
    # between the two intersecting rays.
    return np.minimum(angle, np.pi - angle)


def calculate_triangulation_angle(
    proj_center1: NDArrayFloat, proj_center2: NDArrayFloat, point3D: NDArrayFloat
) -> float:
    return float(calculate_triangulation_angles(proj_center1, proj_center2, point3D)[0])


def calculate_squared_reprojection_error(
    point2D: NDArrayFloat, point3D: NDArrayFloat, cam_from_world: Rigid3d, model: str, params: NDArrayFloat
) -> float:
    """Squared pixel error; infinite if the point is behind the camera."""
    xy, depth = project_points(model, params, cam_from_world, point3D)
    if depth[0] < np.finfo(float).eps:
        return np.inf
    return float(np.sum((xy[0] - point2D) ** 2))


def calculate_angular_error(point2D_normalized: NDArrayFloat, point3D: NDArrayFloat, cam_from_world: Rigid3d) -> float:
    """Angle in radians between the observed ray and the ray to the 3D point."""
    ray1 = np.append(np.asarray(point2D_normalized, dtype=np.float64), 1.0)
    ray2 = cam_from_world.transform(point3D)
    denominator = np.linalg.norm(ray1) * np.linalg.norm(ray2)
    if denominator < EPS:
        return np.pi
    return float(np.arccos(np.clip(ray1 @ ray2 / denominator, -1.0, 1.0)))
