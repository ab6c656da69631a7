from dataclasses import replace

import numpy as np
import pytest

from incsfm.config import BundleAdjustmentOptions, ImageSelectionMethod, MapperOptions, TriangulatorOptions
from incsfm.geometry import estimate_sim3d, projection_center
from incsfm.mapper import IncrementalMapper, RegistrationStatistics
from incsfm.reconstruction import Reconstruction


@pytest.fixture
def options():
    return MapperOptions()


@pytest.fixture
def mapper(scene, fake_adjuster):
    mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
    mapper.begin_reconstruction(Reconstruction())
    return mapper


def grow(mapper, options, tri_options=TriangulatorOptions()):
    """Register images until none is left or none succeeds."""
    while True:
        for image_id in mapper.find_next_images(options):
            if mapper.register_next_image(options, image_id):
                mapper.triangulate_image(tri_options, image_id)
                break
        else:
            return


def seed(mapper, options):
    image_pair = mapper.find_initial_image_pair(options)
    assert image_pair is not None
    assert mapper.register_initial_image_pair(options, *image_pair)
    return image_pair


def true_cam2_from_cam1(scene, image_id1, image_id2):
    return scene.cams_from_world[image_id2] * scene.cams_from_world[image_id1].inverse()


class TestInitialization:
    def test_accepts_pair_with_enough_inliers(self, make_scene, fake_adjuster, options):
        scene = make_scene(num_images=2, num_points=150, angle_step=30.0, num_outliers=30)
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        assert mapper.find_initial_image_pair(options) == (1, 2)
        assert mapper.register_initial_image_pair(options, 1, 2)
        reconstruction = mapper.reconstruction
        assert reconstruction.reg_image_ids() == [1, 2]
        assert len(reconstruction.points3D) >= 110
        np.testing.assert_allclose(reconstruction.cam_from_world(1).matrix(), np.eye(3, 4), atol=1e-12)
        assert np.linalg.norm(reconstruction.cam_from_world(2).translation) == pytest.approx(1.0)
        reconstruction.check()

    def test_rejects_pair_with_too_few_inliers(self, make_scene, fake_adjuster, options):
        scene = make_scene(num_images=2, num_points=150, angle_step=30.0, num_outliers=70)
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        assert mapper.find_initial_image_pair(options) is None
        assert (1, 2) in mapper.stats.init_image_pairs

    def test_rejects_small_triangulation_angle(self, make_scene, fake_adjuster, options):
        scene = make_scene(num_images=2, angle_step=5.0)
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        assert mapper.find_initial_image_pair(options) is None

    def test_each_pair_is_tried_once(self, scene, fake_adjuster, options):
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        pairs = set()
        while (pair := mapper.find_initial_image_pair(options)) is not None:
            assert pair not in pairs
            pairs.add(pair)
        assert pairs
        assert len(mapper.stats.init_image_pairs) == 10
        mapper.reset_initialization_stats()
        assert mapper.find_initial_image_pair(options) is not None

    def test_fixed_pair(self, mapper, options):
        assert mapper.find_initial_image_pair(options, 2, 4) == (2, 4)
        assert mapper.register_initial_image_pair(options, 2, 4)
        assert mapper.reconstruction.reg_image_ids() == [2, 4]

    def test_init_trials_are_counted(self, mapper, scene, options):
        assert mapper.register_initial_image_pair(options, 1, 3, true_cam2_from_cam1(scene, 1, 3))
        assert mapper.stats.init_num_reg_trials[1] == 1
        assert mapper.stats.init_num_reg_trials[3] == 1
        assert mapper.num_reg_trials[1] == 1


class TestNextImage:
    def test_grows_to_all_images(self, mapper, scene, options):
        seed(mapper, options)
        grow(mapper, options)
        reconstruction = mapper.reconstruction
        assert reconstruction.reg_image_ids() == [1, 2, 3, 4, 5]
        reconstruction.check()
        reconstruction.update_point3D_errors()
        assert reconstruction.compute_mean_reprojection_error() < 0.5

        image_ids = reconstruction.reg_image_ids()
        centers = np.array([reconstruction.projection_center(i) for i in image_ids])
        true_centers = np.array([projection_center(scene.cams_from_world[i]) for i in image_ids])
        tform = estimate_sim3d(centers, true_centers)
        np.testing.assert_allclose(tform.transform(centers), true_centers, atol=1e-3)

    def test_ties_go_to_lower_id(self, mapper, options):
        seed(mapper, options)
        options = replace(options, image_selection_method=ImageSelectionMethod.MAX_VISIBLE_POINTS_NUM)
        assert mapper.find_next_images(options) == [3, 4, 5]

    def test_uncertainty_ties_go_to_lower_id(self, make_scene, fake_adjuster, options):
        scene = make_scene(num_images=3)
        cache = scene.database_cache
        # Image 4 is a copy of image 3, so both get the same visibility score
        cache.add_image(4, "image004.png", 1, cache.images[3].keypoints())
        matches = np.column_stack([np.arange(200), np.arange(200)])
        for image_id in (1, 2, 3):
            cache.add_matches(image_id, 4, matches)
        mapper = IncrementalMapper(cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        assert mapper.register_initial_image_pair(options, 1, 2, true_cam2_from_cam1(scene, 1, 2))
        options = replace(options, image_selection_method=ImageSelectionMethod.MIN_UNCERTAINTY)
        assert mapper.find_next_images(options) == [3, 4]

    def test_ratio_selection(self, mapper, options):
        seed(mapper, options)
        options = replace(options, image_selection_method=ImageSelectionMethod.MAX_VISIBLE_POINTS_RATIO)
        assert sorted(mapper.find_next_images(options)) == [3, 4, 5]

    def test_failed_images_go_last_and_run_out_of_trials(self, mapper, options):
        seed(mapper, options)
        failing = replace(options, abs_pose_min_num_inliers=1000)
        next_image_ids = mapper.find_next_images(options)
        first = next_image_ids[0]
        assert not mapper.register_next_image(failing, first)
        assert mapper.find_next_images(options)[-1] == first

        for _ in range(options.max_reg_trials - 1):
            assert not mapper.register_next_image(failing, first)
        assert first not in mapper.find_next_images(options)
        assert len(mapper.find_next_images(options)) == 2

    def test_register_next_image_state_errors(self, mapper, scene, options):
        with pytest.raises(RuntimeError):
            mapper.register_next_image(options, 3)
        seed(mapper, options)
        with pytest.raises(RuntimeError):
            mapper.register_next_image(options, 1)
        with pytest.raises(RuntimeError):
            mapper.register_initial_image_pair(options, 3, 4, true_cam2_from_cam1(scene, 3, 4))


class TestLifecycle:
    def test_requires_attached_reconstruction(self, scene, fake_adjuster, options):
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        with pytest.raises(RuntimeError):
            mapper.find_initial_image_pair(options)
        with pytest.raises(RuntimeError):
            mapper.end_reconstruction(discard=False)
        mapper.begin_reconstruction(Reconstruction())
        with pytest.raises(RuntimeError):
            mapper.begin_reconstruction(Reconstruction())

    def test_end_tears_down(self, mapper, options):
        seed(mapper, options)
        reconstruction = mapper.reconstruction
        mapper.end_reconstruction(discard=False)
        assert mapper.reconstruction is None
        assert sorted(reconstruction.images) == reconstruction.reg_image_ids()

    def test_discard_restores_counts(self, scene, fake_adjuster, options):
        stats = RegistrationStatistics()
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster, stats)
        mapper.begin_reconstruction(Reconstruction())
        seed(mapper, options)
        grow(mapper, options)
        mapper.end_reconstruction(discard=False)
        assert (mapper.num_total_reg_images(), mapper.num_shared_reg_images()) == (5, 0)

        mapper.begin_reconstruction(Reconstruction())
        # Every image is taken by the first model
        assert mapper.find_initial_image_pair(options) is None
        assert mapper.register_initial_image_pair(options, 1, 2, true_cam2_from_cam1(scene, 1, 2))
        assert (mapper.num_total_reg_images(), mapper.num_shared_reg_images()) == (5, 2)
        mapper.end_reconstruction(discard=True)
        assert (mapper.num_total_reg_images(), mapper.num_shared_reg_images()) == (5, 0)

    def test_shared_statistics_keep_per_model_counts(self, scene, fake_adjuster, options):
        stats = RegistrationStatistics()
        first = IncrementalMapper(scene.database_cache, fake_adjuster, stats)
        second = IncrementalMapper(scene.database_cache, fake_adjuster, stats)
        first.begin_reconstruction(Reconstruction())
        assert first.register_initial_image_pair(options, 1, 2, true_cam2_from_cam1(scene, 1, 2))
        second.begin_reconstruction(Reconstruction())
        assert first.num_reg_images_per_camera == {1: 2}
        assert second.num_reg_images_per_camera == {}
        assert second.register_initial_image_pair(options, 3, 4, true_cam2_from_cam1(scene, 3, 4))
        assert stats.num_total_reg_images == 4

        first.end_reconstruction(discard=True)
        assert stats.num_total_reg_images == 2
        assert second.num_reg_frames_per_rig == {1: 2}
        second.end_reconstruction(discard=True)
        assert (stats.num_total_reg_images, stats.num_shared_reg_images) == (0, 0)

    def test_stats_underflow(self, scene):
        reconstruction = Reconstruction()
        reconstruction.load(scene.database_cache)
        with pytest.raises(RuntimeError):
            RegistrationStatistics().deregister_frame_event(reconstruction, 1)

    def test_existing_model(self, scene, fake_adjuster, registered_reconstruction, options):
        reconstruction = registered_reconstruction(scene, [1, 2])
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(reconstruction)
        assert mapper.existing_frame_ids == {1, 2}
        assert mapper.num_total_reg_images() == 2
        mapper.triangulate_image(TriangulatorOptions(ignore_two_view_tracks=False), 1)
        grow(mapper, options)
        assert mapper.reconstruction.reg_image_ids() == [1, 2, 3, 4, 5]


class TestBundleAdjustment:
    def test_local_bundle(self, mapper, fake_adjuster, options):
        seed(mapper, options)
        grow(mapper, options)
        options = replace(options, local_ba_num_images=3)
        local_bundle = mapper.find_local_bundle(options, 5)
        assert len(local_bundle) == 2
        assert 5 not in local_bundle

        report = mapper.adjust_local_bundle(
            options, BundleAdjustmentOptions(), TriangulatorOptions(), 5, mapper.get_modified_points3D()
        )
        config = fake_adjuster.configs[-1]
        assert config.image_ids == {5, *local_bundle}
        assert len(config.constant_rig_from_world_poses) == 1
        assert len(config.constant_cam_positions) == 1
        assert report.num_adjusted_observations > 0
        mapper.reconstruction.check()

    def test_local_bundle_of_unregistered_image(self, mapper, options):
        seed(mapper, options)
        with pytest.raises(ValueError):
            mapper.find_local_bundle(options, 5)

    def test_iterative_local_refinement_clears_modified_points(self, mapper, options):
        seed(mapper, options)
        assert mapper.get_modified_points3D()
        mapper.iterative_local_refinement(
            2, 0.001, options, BundleAdjustmentOptions(loss_function_type="soft_l1"), TriangulatorOptions(), 2
        )
        assert mapper.get_modified_points3D() == set()

    def test_global_bundle_fixes_gauge(self, mapper, fake_adjuster, options):
        with pytest.raises(RuntimeError):
            mapper.adjust_global_bundle(options, BundleAdjustmentOptions())
        seed(mapper, options)
        grow(mapper, options)
        assert mapper.adjust_global_bundle(options, BundleAdjustmentOptions())
        config = fake_adjuster.configs[-1]
        assert config.image_ids == {1, 2, 3, 4, 5}
        assert config.constant_rig_from_world_poses == {1}
        assert fake_adjuster.priors[-1] is None

    def test_global_bundle_with_priors(self, make_scene, fake_adjuster, options):
        scene = make_scene(with_priors=True)
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        seed(mapper, options)
        grow(mapper, options)
        options = replace(options, use_prior_position=True)
        assert mapper.adjust_global_bundle(options, BundleAdjustmentOptions())
        priors = fake_adjuster.priors[-1]
        assert priors is not None
        assert fake_adjuster.configs[-1].constant_rig_from_world_poses == set()
        # The model was moved into the frame of the priors
        for image_id in mapper.reconstruction.reg_image_ids():
            np.testing.assert_allclose(
                mapper.reconstruction.projection_center(image_id), priors.pose_priors[image_id].position, atol=1e-3
            )

    def test_iterative_global_refinement(self, mapper, options):
        seed(mapper, options)
        grow(mapper, options)
        mapper.iterative_global_refinement(5, 0.0005, options, BundleAdjustmentOptions(), TriangulatorOptions())
        reconstruction = mapper.reconstruction
        assert reconstruction.num_reg_frames() == 5
        reconstruction.check()


class TestFiltering:
    def test_filter_points(self, mapper, options):
        seed(mapper, options)
        grow(mapper, options)
        reconstruction = mapper.reconstruction
        point3D_id = min(reconstruction.points3D)
        reconstruction.points3D[point3D_id].xyz = reconstruction.points3D[point3D_id].xyz + 1.0
        assert mapper.filter_points(options) > 0
        assert not reconstruction.exists_point3D(point3D_id)
        for point3D_id in reconstruction.points3D:
            assert reconstruction.compute_point3D_error(point3D_id) <= options.filter_max_reproj_error

    def test_filter_frames_waits_for_enough_frames(self, mapper, options):
        seed(mapper, options)
        mapper.reconstruction.cameras[1].params[0] = 1.0
        assert mapper.filter_frames(options) == 0
        assert mapper.reconstruction.num_reg_frames() == 2


class TestRig:
    @pytest.fixture
    def rig_mapper(self, make_rig_scene, fake_adjuster, options):
        scene = make_rig_scene()
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        mapper.begin_reconstruction(Reconstruction())
        assert mapper.register_initial_image_pair(options, 1, 3, true_cam2_from_cam1(scene, 1, 3))
        return scene, mapper

    def expected_pose(self, scene, image_id):
        """Ground truth pose in the frame of the model, which is anchored at image 1."""
        return scene.cams_from_world[image_id] * scene.cams_from_world[1].inverse()

    def test_initial_pair_registers_whole_frames(self, rig_mapper):
        scene, mapper = rig_mapper
        reconstruction = mapper.reconstruction
        assert reconstruction.reg_image_ids() == [1, 2, 3, 4]
        assert mapper.num_reg_frames_per_rig == {1: 2}
        assert mapper.num_reg_images_per_camera == {1: 2, 2: 2}
        np.testing.assert_allclose(
            reconstruction.cam_from_world(2).matrix(), self.expected_pose(scene, 2).matrix(), atol=1e-9
        )

    def test_next_frame_registers_all_its_images(self, rig_mapper, options):
        scene, mapper = rig_mapper
        reconstruction = mapper.reconstruction
        assert mapper.register_next_image(options, 5)
        assert reconstruction.is_image_registered(6)
        for image_id in (5, 6):
            np.testing.assert_allclose(
                reconstruction.cam_from_world(image_id).matrix(),
                self.expected_pose(scene, image_id).matrix(),
                atol=1e-4,
            )
            # Tracks of the initial pair continue into both images of the frame
            assert reconstruction.images[image_id].num_points3D == len(reconstruction.points3D)
        assert mapper.num_reg_images_per_camera == {1: 3, 2: 3}
        reconstruction.check()

    def test_global_bundle_covers_every_sensor(self, rig_mapper, fake_adjuster, options):
        _, mapper = rig_mapper
        assert mapper.register_next_image(options, 5)
        assert mapper.triangulate_image(TriangulatorOptions(), 2) > 0
        assert mapper.adjust_global_bundle(options, BundleAdjustmentOptions())
        assert fake_adjuster.configs[-1].image_ids == {1, 2, 3, 4, 5, 6}
        mapper.reconstruction.check()

    def test_uncalibrated_sensor_is_rejected(self, make_rig_scene, fake_adjuster):
        scene = make_rig_scene(calibrated=False)
        mapper = IncrementalMapper(scene.database_cache, fake_adjuster)
        with pytest.raises(ValueError):
            mapper.begin_reconstruction(Reconstruction())
        assert mapper.reconstruction is None
