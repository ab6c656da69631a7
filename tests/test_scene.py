import numpy as np
import pytest

from incsfm.geometry import Rigid3d
from incsfm.scene import Camera, Image, Point3D, Rig, SensorId, SensorType, Track, TrackElement, camera_sensor


def test_camera_create_centers_principal_point():
    camera = Camera.create(1, "PINHOLE", 500.0, 640, 480)
    np.testing.assert_allclose(camera.params, [500.0, 500.0, 320.0, 240.0])
    assert camera.mean_focal_length() == 500.0
    np.testing.assert_allclose(camera.calibration_matrix(), [[500, 0, 320], [0, 500, 240], [0, 0, 1]])


def test_camera_rejects_wrong_number_of_params():
    with pytest.raises(ValueError):
        Camera(1, "SIMPLE_PINHOLE", 640, 480, [500.0, 320.0])


def test_camera_pixel_to_normalized_roundtrip_with_distortion():
    camera = Camera(1, "SIMPLE_RADIAL", 640, 480, [500.0, 320.0, 240.0, 0.1])
    uv = np.array([[0.1, -0.2], [0.3, 0.25]])
    np.testing.assert_allclose(camera.cam_from_img(camera.img_from_cam(uv)), uv, atol=1e-9)


def test_camera_bogus_params():
    camera = Camera.create(1, "SIMPLE_RADIAL", 500.0, 640, 480)
    assert not camera.has_bogus_params(0.1, 10.0, 1.0)
    camera.params[0] = 10.0
    assert camera.has_bogus_params(0.1, 10.0, 1.0)
    camera = Camera.create(1, "SIMPLE_RADIAL", 500.0, 640, 480)
    camera.params[3] = 1.5
    assert camera.has_bogus_params(0.1, 10.0, 1.0)
    camera = Camera.create(1, "SIMPLE_RADIAL", 500.0, 640, 480)
    camera.params[1] = -1.0
    assert camera.has_bogus_params(0.1, 10.0, 1.0)


class TestRig:
    def test_sensor_needs_reference_first(self):
        rig = Rig(1)
        with pytest.raises(ValueError):
            rig.add_sensor(camera_sensor(2))

    def test_duplicate_sensor(self):
        rig = Rig(1)
        rig.add_ref_sensor(camera_sensor(1))
        rig.add_sensor(camera_sensor(2))
        with pytest.raises(ValueError):
            rig.add_sensor(camera_sensor(2))
        with pytest.raises(ValueError):
            rig.add_sensor(camera_sensor(1))
        with pytest.raises(ValueError):
            rig.add_ref_sensor(camera_sensor(3))

    def test_sensor_from_rig(self):
        rig = Rig(1)
        rig.add_ref_sensor(camera_sensor(1))
        rig.add_sensor(camera_sensor(2))
        assert rig.num_sensors() == 2
        assert rig.sensor_ids() == [camera_sensor(1), camera_sensor(2)]
        np.testing.assert_allclose(rig.sensor_from_rig(camera_sensor(1)).translation, 0.0)
        with pytest.raises(ValueError, match="no calibration"):
            rig.sensor_from_rig(camera_sensor(2))

        rig.set_sensor_from_rig(camera_sensor(2), Rigid3d(translation=[1.0, 0.0, 0.0]))
        np.testing.assert_allclose(rig.sensor_from_rig(camera_sensor(2)).translation, [1.0, 0.0, 0.0])
        with pytest.raises(ValueError):
            rig.set_sensor_from_rig(camera_sensor(1), Rigid3d())

    def test_sensor_ids_are_ordered(self):
        assert SensorId(SensorType.CAMERA, 1) < SensorId(SensorType.CAMERA, 2)
        assert camera_sensor(3) == SensorId(SensorType.CAMERA, 3)


def test_image_counts_points3D():
    image = Image.from_keypoints(1, "a.png", 1, 1, np.zeros((3, 2)))
    image.set_point3D_for_point2D(0, 7)
    image.set_point3D_for_point2D(0, 8)
    image.set_point3D_for_point2D(2, 9)
    assert image.num_points3D == 2
    assert image.has_point3D(8) and not image.has_point3D(7)
    image.reset_point3D_for_point2D(0)
    image.reset_point3D_for_point2D(0)
    assert image.num_points3D == 1
    with pytest.raises(ValueError):
        image.point2D(3)


def test_track():
    track = Track([(1, 0), (2, 5)])
    track.add_element(3, 1)
    assert len(track) == 3
    assert track.image_ids() == {1, 2, 3}
    track.delete_element(2, 5)
    assert list(track) == [TrackElement(1, 0), TrackElement(3, 1)]
    copied = track.copy()
    copied.add_element(4, 0)
    assert len(track) == 2


def test_point3D_has_no_error_initially():
    point3D = Point3D([1, 2, 3])
    assert not point3D.has_error
    assert point3D.xyz.dtype == np.float64
