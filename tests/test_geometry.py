import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from incsfm.geometry import (
    Rigid3d,
    Sim3d,
    calculate_angular_error,
    calculate_squared_reprojection_error,
    calculate_triangulation_angle,
    estimate_sim3d,
    project_points,
    projection_center,
    triangulate_multi_view_point,
    triangulate_points,
)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def test_rigid_pycolmap_roundtrip(rng):
    pose = Rigid3d(Rotation.random(random_state=1).as_quat(), rng.normal(size=3))
    colmap_pose = pose.to_pycolmap()
    np.testing.assert_allclose(colmap_pose.matrix(), pose.matrix(), atol=1e-12)
    np.testing.assert_allclose(Rigid3d.from_pycolmap(colmap_pose).matrix(), pose.matrix(), atol=1e-12)


def test_rigid_composition_and_inverse(rng):
    a = Rigid3d(Rotation.random(random_state=2).as_quat(), rng.normal(size=3))
    b = Rigid3d(Rotation.random(random_state=3).as_quat(), rng.normal(size=3))
    points = rng.normal(size=(4, 3))
    np.testing.assert_allclose((a * b).transform(points), a.transform(b.transform(points)), atol=1e-12)
    np.testing.assert_allclose(a.inverse().transform(a.transform(points)), points, atol=1e-12)


def test_projection_center_maps_to_origin(rng):
    pose = Rigid3d(Rotation.random(random_state=4).as_quat(), rng.normal(size=3))
    np.testing.assert_allclose(pose.transform(projection_center(pose)), 0.0, atol=1e-12)


def test_estimate_sim3d_recovers_transform(rng):
    src = rng.normal(size=(10, 3))
    tform = Sim3d(2.5, Rotation.random(random_state=5).as_quat(), np.array([1.0, -2.0, 0.5]))
    estimated = estimate_sim3d(src, tform.transform(src))
    assert estimated is not None
    assert estimated.scale == pytest.approx(2.5)
    np.testing.assert_allclose(estimated.transform(src), tform.transform(src), atol=1e-9)


def test_estimate_sim3d_degenerate():
    assert estimate_sim3d(np.zeros((5, 3)), np.ones((5, 3))) is None
    assert estimate_sim3d(np.eye(2, 3), np.eye(2, 3)) is None


def test_sim3d_transform_pose_keeps_projections(rng):
    pose = Rigid3d(Rotation.random(random_state=6).as_quat(), [0.0, 0.0, 5.0])
    tform = Sim3d(0.5, Rotation.random(random_state=7).as_quat(), np.array([3.0, 1.0, -1.0]))
    points = rng.uniform(-1, 1, size=(6, 3))
    params = np.array([500.0, 320.0, 240.0])
    before, _ = project_points("SIMPLE_PINHOLE", params, pose, points)
    after, _ = project_points("SIMPLE_PINHOLE", params, tform.transform_pose(pose), tform.transform(points))
    np.testing.assert_allclose(after, before, atol=1e-9)


def test_triangulation(rng):
    points3D = rng.uniform(-1, 1, size=(20, 3)) + [0.0, 0.0, 6.0]
    pose1 = Rigid3d()
    pose2 = Rigid3d.from_rotvec([0.0, -0.2, 0.0], [-1.0, 0.0, 0.0])
    pose3 = Rigid3d.from_rotvec([0.0, 0.2, 0.0], [1.0, 0.0, 0.0])
    xy = [pose.transform(points3D) for pose in (pose1, pose2, pose3)]
    xy = [p[:, :2] / p[:, 2:] for p in xy]

    np.testing.assert_allclose(triangulate_points(pose1.matrix(), pose2.matrix(), xy[0], xy[1]), points3D, atol=1e-8)
    Ps = [pose1.matrix(), pose2.matrix(), pose3.matrix()]
    xyz = triangulate_multi_view_point(Ps, np.array([p[0] for p in xy]))
    np.testing.assert_allclose(xyz, points3D[0], atol=1e-8)


def test_triangulation_angle():
    angle = calculate_triangulation_angle(np.array([-1.0, 0, 0]), np.array([1.0, 0, 0]), np.array([0.0, 0, 1.0]))
    assert angle == pytest.approx(np.pi / 2)
    # Obtuse angles are folded
    angle = calculate_triangulation_angle(np.array([-1.0, 0, 0]), np.array([1.0, 0, 0]), np.array([0.0, 0, 0.1]))
    assert angle < np.pi / 2


def test_reprojection_and_angular_errors():
    pose = Rigid3d()
    params = np.array([500.0, 320.0, 240.0])
    xyz = np.array([0.2, -0.1, 2.0])
    assert calculate_squared_reprojection_error(np.array([370.0, 215.0]), xyz, pose, "SIMPLE_PINHOLE", params) == (
        pytest.approx(0.0)
    )
    assert calculate_squared_reprojection_error(
        np.array([373.0, 219.0]), xyz, pose, "SIMPLE_PINHOLE", params
    ) == pytest.approx(25.0)
    assert np.isinf(calculate_squared_reprojection_error(np.zeros(2), -xyz, pose, "SIMPLE_PINHOLE", params))
    assert calculate_angular_error(np.array([0.1, -0.05]), xyz, pose) == pytest.approx(0.0, abs=1e-9)


def test_points_behind_camera_project_to_nan():
    points = np.array([[0.0, 0.0, 2.0], [0.0, 0.0, -2.0]])
    xy, depth = project_points("SIMPLE_PINHOLE", np.array([500.0, 320.0, 240.0]), Rigid3d(), points)
    np.testing.assert_allclose(xy[0], [320.0, 240.0])
    assert np.isnan(xy[1]).all()
    np.testing.assert_allclose(depth, [2.0, -2.0])
