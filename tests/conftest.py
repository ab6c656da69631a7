from typing import NamedTuple

import numpy as np
import pytest

from incsfm.ba import BundleAdjustmentSummary
from incsfm.database import DatabaseCache, PosePrior
from incsfm.geometry import Rigid3d, project_points, projection_center
from incsfm.reconstruction import Reconstruction
from incsfm.scene import Camera, Frame, Rig, Track, TrackElement, camera_sensor

FOCAL_LENGTH = 500.0
WIDTH, HEIGHT = 640, 480
SCENE_CENTER = np.array([0.0, 0.0, 6.0])
RIG_BASELINE = 0.5


def look_at_center(angle_deg: float, radius: float = 6.0) -> Rigid3d:
    """Camera on a horizontal circle around the scene center, looking at it."""
    theta = np.deg2rad(angle_deg)
    center = SCENE_CENTER + radius * np.array([np.sin(theta), 0.0, -np.cos(theta)])
    R = np.array(
        [
            [np.cos(theta), 0.0, np.sin(theta)],
            [0.0, 1.0, 0.0],
            [-np.sin(theta), 0.0, np.cos(theta)],
        ]
    )
    return Rigid3d.from_matrix(R, -R @ center)


class SyntheticScene(NamedTuple):
    database_cache: DatabaseCache
    cams_from_world: dict[int, Rigid3d]
    points3D: np.ndarray
    """Ground truth, keypoint k of every image observes points3D[k]"""


def _make_scene(
    num_images: int = 5,
    num_points: int = 200,
    angle_step: float = 25.0,
    noise: float = 0.0,
    num_outliers: int = 0,
    with_priors: bool = False,
    seed: int = 0,
) -> SyntheticScene:
    """Cameras on an arc looking at a cube of points, all pairs matched.

    `num_outliers` matches of every pair are replaced by matches to the wrong keypoint.
    """
    rng = np.random.default_rng(seed)
    points3D = SCENE_CENTER + rng.uniform(-1.0, 1.0, size=(num_points, 3))
    camera = Camera.create(1, "SIMPLE_RADIAL", FOCAL_LENGTH, WIDTH, HEIGHT, has_prior_focal_length=True)
    database_cache = DatabaseCache()
    database_cache.add_camera(camera)

    cams_from_world = {}
    angles = angle_step * (np.arange(num_images) - (num_images - 1) / 2)
    for image_id, angle in enumerate(angles, start=1):
        cam_from_world = look_at_center(angle)
        cams_from_world[image_id] = cam_from_world
        keypoints, _ = project_points(camera.model, camera.params, cam_from_world, points3D)
        keypoints = keypoints + rng.normal(scale=noise, size=keypoints.shape) if noise > 0 else keypoints
        prior = PosePrior(projection_center(cam_from_world)) if with_priors else None
        database_cache.add_image(image_id, f"image{image_id:03d}.png", camera.camera_id, keypoints, pose_prior=prior)

    for image_id1 in range(1, num_images + 1):
        for image_id2 in range(image_id1 + 1, num_images + 1):
            matches = np.column_stack([np.arange(num_points), np.arange(num_points)])
            if num_outliers > 0:
                idxs = rng.choice(num_points, size=num_outliers, replace=False)
                matches[idxs, 1] = np.roll(idxs, 1)
            database_cache.add_matches(image_id1, image_id2, matches)
    return SyntheticScene(database_cache, cams_from_world, points3D)


def _make_rig_scene(
    num_frames: int = 4, num_points: int = 200, angle_step: float = 25.0, calibrated: bool = True, seed: int = 0
) -> SyntheticScene:
    """Two-camera rig on an arc: frame f holds image 2f-1 of camera 1 (reference) and 2f of camera 2.

    All images of different frames are matched. With `calibrated=False` the second
    camera is added to the rig without its pose.
    """
    rng = np.random.default_rng(seed)
    points3D = SCENE_CENTER + rng.uniform(-1.0, 1.0, size=(num_points, 3))
    cam2_from_rig = Rigid3d(translation=np.array([-RIG_BASELINE, 0.0, 0.0]))
    rig = Rig(1)
    rig.add_ref_sensor(camera_sensor(1))
    rig.add_sensor(camera_sensor(2), cam2_from_rig if calibrated else None)
    database_cache = DatabaseCache()
    for camera_id in (1, 2):
        database_cache.add_camera(
            Camera.create(camera_id, "SIMPLE_RADIAL", FOCAL_LENGTH, WIDTH, HEIGHT, has_prior_focal_length=True), rig
        )

    cams_from_world = {}
    angles = angle_step * (np.arange(num_frames) - (num_frames - 1) / 2)
    for frame_id, angle in enumerate(angles, start=1):
        rig_from_world = look_at_center(angle)
        database_cache.add_frame(Frame(frame_id, rig.rig_id))
        for camera_id, cam_from_rig in ((1, Rigid3d()), (2, cam2_from_rig)):
            image_id = 2 * frame_id - 2 + camera_id
            camera = database_cache.cameras[camera_id]
            cams_from_world[image_id] = cam_from_rig * rig_from_world
            keypoints, _ = project_points(camera.model, camera.params, cams_from_world[image_id], points3D)
            database_cache.add_image(image_id, f"image{image_id:03d}.png", camera_id, keypoints, frame_id=frame_id)

    matches = np.column_stack([np.arange(num_points), np.arange(num_points)])
    for image_id1 in cams_from_world:
        for image_id2 in cams_from_world:
            if image_id1 < image_id2 and (image_id1 + 1) // 2 != (image_id2 + 1) // 2:
                database_cache.add_matches(image_id1, image_id2, matches)
    return SyntheticScene(database_cache, cams_from_world, points3D)


@pytest.fixture
def make_scene():
    return _make_scene


@pytest.fixture
def make_rig_scene():
    return _make_rig_scene


@pytest.fixture
def scene() -> SyntheticScene:
    return _make_scene()


@pytest.fixture
def registered_reconstruction():
    """Factory: reconstruction of a scene with the given images registered at their true poses."""

    def factory(scene: SyntheticScene, image_ids) -> Reconstruction:
        reconstruction = Reconstruction()
        reconstruction.load(scene.database_cache)
        for image_id in image_ids:
            reconstruction.set_cam_from_world(image_id, scene.cams_from_world[image_id])
            reconstruction.register_frame(reconstruction.images[image_id].frame_id)
        return reconstruction

    return factory


@pytest.fixture
def add_true_point():
    """Factory: add the ground truth point `k` observed by keypoint `k` of the given images."""

    def factory(scene: SyntheticScene, add_point3D, point_idx: int, image_ids, offset=(0.0, 0.0, 0.0)) -> int:
        track = Track(TrackElement(image_id, point_idx) for image_id in image_ids)
        return add_point3D(scene.points3D[point_idx] + np.asarray(offset), track)

    return factory


class FakeBundleAdjuster:
    """Leaves the model untouched and records what it was asked to adjust."""

    def __init__(self):
        self.configs = []
        self.priors = []

    def solve(self, reconstruction, config, options, priors=None):
        self.configs.append(config)
        self.priors.append(priors)
        num_residuals = 2 * sum(reconstruction.images[image_id].num_points3D for image_id in config.image_ids)
        return BundleAdjustmentSummary(True, num_residuals, 0.0, 0.0, "CONVERGENCE")


@pytest.fixture
def fake_adjuster() -> FakeBundleAdjuster:
    return FakeBundleAdjuster()
