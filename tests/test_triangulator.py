from dataclasses import replace

import numpy as np
import pytest

from incsfm.config import TriangulatorOptions
from incsfm.triangulator import IncrementalTriangulator


@pytest.fixture
def options():
    return TriangulatorOptions()


@pytest.fixture
def setup(scene, registered_reconstruction):
    reconstruction = registered_reconstruction(scene, [1, 2, 3, 4])
    triangulator = IncrementalTriangulator(scene.database_cache.correspondence_graph, reconstruction)
    return reconstruction, triangulator


def test_triangulate_image_creates_points(scene, setup, options):
    reconstruction, triangulator = setup
    assert triangulator.triangulate_image(options, 1) == 200 * 4
    assert len(reconstruction.points3D) == 200
    for point3D in reconstruction.points3D.values():
        assert point3D.track.image_ids() == {1, 2, 3, 4}
        point_idx = point3D.track.elements[0].point2D_idx
        np.testing.assert_allclose(point3D.xyz, scene.points3D[point_idx], atol=1e-6)
    reconstruction.check()
    # Nothing left to do for the same image
    assert triangulator.triangulate_image(options, 1) == 0


def test_triangulate_image_continues_tracks(scene, setup, options):
    reconstruction, triangulator = setup
    triangulator.triangulate_image(options, 1)
    reconstruction.set_cam_from_world(5, scene.cams_from_world[5])
    reconstruction.register_frame(reconstruction.images[5].frame_id)
    assert triangulator.triangulate_image(options, 5) == 200
    assert len(reconstruction.points3D) == 200
    assert all(len(p.track) == 5 for p in reconstruction.points3D.values())


def test_triangulate_image_leaves_out_bad_observation(setup, options):
    reconstruction, triangulator = setup
    reconstruction.images[4].points2D[0].xy = reconstruction.images[4].points2D[0].xy + [50.0, 0.0]
    triangulator.triangulate_image(options, 1)
    point3D_id = reconstruction.images[1].points2D[0].point3D_id
    assert reconstruction.points3D[point3D_id].track.image_ids() == {1, 2, 3}
    assert not reconstruction.images[4].points2D[0].has_point3D


def test_triangulate_unregistered_image(setup, options):
    _, triangulator = setup
    with pytest.raises(ValueError):
        triangulator.triangulate_image(options, 5)


def test_bogus_camera_is_skipped(setup, options):
    reconstruction, triangulator = setup
    reconstruction.cameras[1].params[0] = 1.0
    assert triangulator.triangulate_image(options, 1) == 0
    assert not reconstruction.points3D


def test_two_view_tracks(make_scene, registered_reconstruction, options):
    scene = make_scene(num_images=2)
    reconstruction = registered_reconstruction(scene, [1, 2])
    triangulator = IncrementalTriangulator(scene.database_cache.correspondence_graph, reconstruction)
    assert triangulator.triangulate_image(options, 1) == 0
    options = replace(options, ignore_two_view_tracks=False)
    assert triangulator.triangulate_image(options, 1) == 200 * 2


def test_complete_tracks(scene, setup, options, add_true_point):
    reconstruction, triangulator = setup
    point3D_ids = [add_true_point(scene, triangulator.obs_manager.add_point3D, k, [1, 2]) for k in range(10)]
    assert triangulator.complete_tracks(options, point3D_ids) == 10 * 2
    for point3D_id in point3D_ids:
        assert reconstruction.points3D[point3D_id].track.image_ids() == {1, 2, 3, 4}
    assert triangulator.complete_all_tracks(options) == 0


def test_complete_image(scene, setup, options, add_true_point):
    reconstruction, triangulator = setup
    for k in range(10):
        add_true_point(scene, triangulator.obs_manager.add_point3D, k, [1, 2])
    # Keypoints matching a triangulated keypoint are left to track completion
    assert triangulator.complete_image(options, 3) == (200 - 10) * 4
    assert len(reconstruction.points3D) == 200


def test_merge_tracks(scene, setup, options, add_true_point):
    reconstruction, triangulator = setup
    obs_manager = triangulator.obs_manager
    point3D_id1 = add_true_point(scene, obs_manager.add_point3D, 0, [1, 2], offset=(0.001, 0.0, 0.0))
    add_true_point(scene, obs_manager.add_point3D, 0, [3, 4], offset=(-0.001, 0.0, 0.0))
    assert triangulator.merge_tracks(options, [point3D_id1]) == 4
    assert len(reconstruction.points3D) == 1
    merged = next(iter(reconstruction.points3D.values()))
    assert merged.track.image_ids() == {1, 2, 3, 4}
    np.testing.assert_allclose(merged.xyz, scene.points3D[0], atol=1e-9)


def test_merge_rejects_inconsistent_points(scene, setup, options, add_true_point):
    reconstruction, triangulator = setup
    obs_manager = triangulator.obs_manager
    add_true_point(scene, obs_manager.add_point3D, 0, [1, 2])
    add_true_point(scene, obs_manager.add_point3D, 0, [3, 4], offset=(0.5, 0.0, 0.0))
    assert triangulator.merge_all_tracks(options) == 0
    assert len(reconstruction.points3D) == 2


def test_retriangulate_is_idempotent(setup, options):
    reconstruction, triangulator = setup
    assert triangulator.retriangulate(options) == 200 * 4
    assert all(len(p.track) == 4 for p in reconstruction.points3D.values())
    assert triangulator.retriangulate(options) == 0
    reconstruction.check()


def test_modified_points(setup, options):
    reconstruction, triangulator = setup
    triangulator.triangulate_image(options, 1)
    assert triangulator.get_modified_points3D() == set(reconstruction.points3D)
    triangulator.clear_modified_points3D()
    assert triangulator.get_modified_points3D() == set()
