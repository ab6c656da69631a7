import numpy as np
import pytest

from incsfm.estimators import (
    estimate_absolute_pose,
    estimate_generalized_absolute_pose,
    estimate_triangulation,
    estimate_two_view_geometry,
    refine_absolute_pose,
)
from incsfm.geometry import Rigid3d, project_points
from incsfm.scene import Camera


@pytest.fixture
def camera():
    return Camera.create(1, "SIMPLE_RADIAL", 500.0, 640, 480)


def pose_error(estimate: Rigid3d, truth: Rigid3d) -> tuple[float, float]:
    """Rotation angle (rad) and translation distance between two poses."""
    relative = estimate.R @ truth.R.T
    angle = np.arccos(np.clip((np.trace(relative) - 1) / 2, -1.0, 1.0))
    return float(angle), float(np.linalg.norm(estimate.translation - truth.translation))


def test_two_view_geometry(scene):
    cache = scene.database_cache
    matches = cache.correspondence_graph.find_correspondences_between_images(1, 2)
    camera = cache.cameras[1]
    geometry = estimate_two_view_geometry(
        camera, cache.images[1].keypoints(), camera, cache.images[2].keypoints(), matches, 4.0
    )
    assert geometry is not None
    assert len(geometry.inlier_matches) == len(matches)
    truth = scene.cams_from_world[2] * scene.cams_from_world[1].inverse()
    angle, _ = pose_error(geometry.cam2_from_cam1, truth)
    assert angle < 1e-3
    direction = truth.translation / np.linalg.norm(truth.translation)
    np.testing.assert_allclose(geometry.cam2_from_cam1.translation, direction, atol=1e-3)
    assert np.rad2deg(geometry.tri_angle) == pytest.approx(25.0, abs=5.0)


def test_two_view_geometry_with_outliers(make_scene):
    scene = make_scene(num_images=2, num_points=150, num_outliers=30)
    cache = scene.database_cache
    matches = cache.correspondence_graph.find_correspondences_between_images(1, 2)
    camera = cache.cameras[1]
    geometry = estimate_two_view_geometry(
        camera, cache.images[1].keypoints(), camera, cache.images[2].keypoints(), matches, 4.0
    )
    assert geometry is not None
    assert 120 <= len(geometry.inlier_matches) < 130


def test_two_view_geometry_needs_matches(camera):
    points = np.zeros((4, 2))
    assert estimate_two_view_geometry(camera, points, camera, points, [[0, 0], [1, 1]], 4.0) is None


def test_absolute_pose_with_outliers(scene, camera):
    cam_from_world = scene.cams_from_world[3]
    points2D, _ = project_points(camera.model, camera.params, cam_from_world, scene.points3D)
    points2D[:40] += np.random.default_rng(0).uniform(30.0, 60.0, size=(40, 2))

    pose = estimate_absolute_pose(camera, points2D, scene.points3D, 8.0)
    assert pose is not None
    assert pose.num_inliers == 160
    assert not pose.inlier_mask[:40].any()
    angle, distance = pose_error(pose.cam_from_world, cam_from_world)
    assert angle < 1e-4
    assert distance < 1e-3

    refined = refine_absolute_pose(camera, points2D, scene.points3D, pose.inlier_mask, pose.cam_from_world)
    assert refined is not None
    refined_pose, params = refined
    np.testing.assert_allclose(params, camera.params)
    _, distance = pose_error(refined_pose, cam_from_world)
    assert distance < 1e-5


def test_absolute_pose_estimates_focal_length(scene, camera):
    cam_from_world = scene.cams_from_world[3]
    points2D, _ = project_points(camera.model, camera.params, cam_from_world, scene.points3D)
    wrong = camera.copy()
    wrong.params[0] = 350.0

    pose = estimate_absolute_pose(wrong, points2D, scene.points3D, 8.0, estimate_focal_length=True)
    assert pose is not None
    refined = refine_absolute_pose(
        wrong, points2D, scene.points3D, pose.inlier_mask, pose.cam_from_world, pose.params, refine_focal_length=True
    )
    assert refined is not None
    refined_pose, params = refined
    assert params[0] == pytest.approx(500.0, rel=1e-2)
    _, distance = pose_error(refined_pose, cam_from_world)
    assert distance < 0.1


def test_absolute_pose_needs_points(camera):
    assert estimate_absolute_pose(camera, np.zeros((3, 2)), np.zeros((3, 3)), 4.0) is None


def test_generalized_absolute_pose(scene, camera):
    rig_from_world = scene.cams_from_world[3]
    cams_from_rig = [Rigid3d(), Rigid3d(translation=np.array([-0.5, 0.0, 0.0]))]
    points2D, camera_idxs = [], []
    for camera_idx, cam_from_rig in enumerate(cams_from_rig):
        xy, _ = project_points(camera.model, camera.params, cam_from_rig * rig_from_world, scene.points3D)
        points2D.append(xy)
        camera_idxs += [camera_idx] * len(xy)
    points3D = np.vstack([scene.points3D, scene.points3D])

    estimate = estimate_generalized_absolute_pose(
        np.vstack(points2D), points3D, np.array(camera_idxs), cams_from_rig, [camera, camera], 4.0
    )
    assert estimate is not None
    estimated, inlier_mask = estimate
    assert inlier_mask.all()
    angle, distance = pose_error(estimated, rig_from_world)
    assert angle < 1e-4
    assert distance < 1e-3


def normalized_observations(scene, point_idx):
    points = np.array([c.transform(scene.points3D[point_idx][None])[0] for c in scene.cams_from_world.values()])
    return points[:, :2] / points[:, 2:], list(scene.cams_from_world.values())


def test_triangulation_rejects_outlier_view(make_scene):
    scene = make_scene(num_images=4, angle_step=20.0)
    points_normalized, cams_from_world = normalized_observations(scene, 0)
    points_normalized[3] += 0.1

    result = estimate_triangulation(points_normalized, cams_from_world, np.deg2rad(1.5), np.deg2rad(2.0))
    assert result is not None
    estimated, inlier_mask = result
    np.testing.assert_array_equal(inlier_mask, [True, True, True, False])
    np.testing.assert_allclose(estimated, scene.points3D[0], atol=1e-9)


def test_triangulation_requires_angle(make_scene):
    scene = make_scene(num_images=2, angle_step=0.1)
    points_normalized, cams_from_world = normalized_observations(scene, 0)
    assert estimate_triangulation(points_normalized, cams_from_world, np.deg2rad(1.5), np.deg2rad(2.0)) is None
    assert estimate_triangulation(points_normalized[:1], cams_from_world[:1], 0.0, np.deg2rad(2.0)) is None
