"""Read-only inputs of the mapper: cameras, images with keypoints, correspondences and pose priors."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from incsfm.geometry import camera_model
from incsfm.scene import Camera, Frame, Image, Rig, TrackElement, camera_sensor
from incsfm.utils import ImagePair, NDArrayFloat, NDArrayInt, image_pair_to_pair_id

logger = logging.getLogger(__name__)


class CorrespondenceGraph:
    """Keypoint-level match graph between images."""

    def __init__(self):
        self._num_points2D: dict[int, int] = {}
        self._num_correspondences: dict[int, int] = {}
        # image_id -> point2D_idx -> matching (image_id, point2D_idx)
        self._corrs: dict[int, dict[int, list[TrackElement]]] = {}
        # pair -> (M, 2) matches, columns ordered as in the pair key
        self._image_pairs: dict[ImagePair, NDArrayInt] = {}

    def add_image(self, image_id: int, num_points2D: int):
        if image_id in self._corrs:
            raise ValueError(f"Image {image_id} already in correspondence graph")
        self._num_points2D[image_id] = num_points2D
        self._num_correspondences[image_id] = 0
        self._corrs[image_id] = defaultdict(list)

    def add_correspondences(self, image_id1: int, image_id2: int, matches: NDArrayInt):
        """Add (point2D_idx1, point2D_idx2) matches between two images."""
        for image_id in (image_id1, image_id2):
            if image_id not in self._corrs:
                raise ValueError(f"Unknown image {image_id} in correspondence graph")
        pair_id = image_pair_to_pair_id(image_id1, image_id2)
        if pair_id in self._image_pairs:
            raise ValueError(f"Correspondences between images {pair_id} already added")

        matches = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
        valid = (
            (matches[:, 0] >= 0)
            & (matches[:, 0] < self._num_points2D[image_id1])
            & (matches[:, 1] >= 0)
            & (matches[:, 1] < self._num_points2D[image_id2])
        )
        if not valid.all():
            logger.warning(
                "Dropping %d out-of-range matches between images %d, %d", np.sum(~valid), image_id1, image_id2
            )
            matches = matches[valid]
        # A keypoint matching several keypoints in the same other image is ambiguous
        _, first_idx = np.unique(matches[:, 0], return_index=True)
        matches = matches[np.sort(first_idx)]
        _, first_idx = np.unique(matches[:, 1], return_index=True)
        matches = matches[np.sort(first_idx)]

        for idx1, idx2 in matches:
            self._corrs[image_id1][int(idx1)].append(TrackElement(image_id2, int(idx2)))
            self._corrs[image_id2][int(idx2)].append(TrackElement(image_id1, int(idx1)))
        self._num_correspondences[image_id1] += len(matches)
        self._num_correspondences[image_id2] += len(matches)
        self._image_pairs[pair_id] = matches if image_id1 < image_id2 else matches[:, ::-1].copy()

    def exists_image(self, image_id: int) -> bool:
        return image_id in self._corrs

    def image_ids(self) -> list[int]:
        return sorted(self._corrs)

    def num_images(self) -> int:
        return len(self._corrs)

    def num_image_pairs(self) -> int:
        return len(self._image_pairs)

    def num_observations_for_image(self, image_id: int) -> int:
        """Number of keypoints with at least one correspondence."""
        return sum(1 for corrs in self._corrs[image_id].values() if corrs)

    def num_correspondences_for_image(self, image_id: int) -> int:
        return self._num_correspondences.get(image_id, 0)

    def num_correspondences_between_images(self, image_id1: int, image_id2: int) -> int:
        matches = self._image_pairs.get(image_pair_to_pair_id(image_id1, image_id2))
        return 0 if matches is None else len(matches)

    def num_correspondences_between_all_images(self) -> dict[ImagePair, int]:
        return {pair_id: len(matches) for pair_id, matches in self._image_pairs.items()}

    def find_correspondences(self, image_id: int, point2D_idx: int) -> list[TrackElement]:
        corrs = self._corrs[image_id]
        return list(corrs[point2D_idx]) if point2D_idx in corrs else []

    def has_correspondences(self, image_id: int, point2D_idx: int) -> bool:
        corrs = self._corrs[image_id]
        return point2D_idx in corrs and len(corrs[point2D_idx]) > 0

    def is_two_view_observation(self, image_id: int, point2D_idx: int) -> bool:
        """True if the keypoint only matches one keypoint, which in turn only matches it back."""
        corrs = self.find_correspondences(image_id, point2D_idx)
        if len(corrs) != 1:
            return False
        return len(self.find_correspondences(*corrs[0])) == 1

    def find_transitive_correspondences(
        self, image_id: int, point2D_idx: int, transitivity: int
    ) -> list[TrackElement]:
        """Correspondences reachable in at most `transitivity` hops, excluding the query itself."""
        if transitivity == 1:
            return self.find_correspondences(image_id, point2D_idx)

        start = TrackElement(image_id, point2D_idx)
        visited = {start}
        found: list[TrackElement] = []
        frontier = [start]
        for _ in range(transitivity):
            next_frontier = []
            for element in frontier:
                for corr in self.find_correspondences(*element):
                    if corr not in visited:
                        visited.add(corr)
                        found.append(corr)
                        next_frontier.append(corr)
            if not next_frontier:
                break
            frontier = next_frontier
        return found

    def find_correspondences_between_images(self, image_id1: int, image_id2: int) -> NDArrayInt:
        """(M, 2) matches with column 0 indexing image_id1 and column 1 indexing image_id2."""
        matches = self._image_pairs.get(image_pair_to_pair_id(image_id1, image_id2))
        if matches is None:
            return np.zeros((0, 2), dtype=np.int64)
        return matches if image_id1 < image_id2 else matches[:, ::-1].copy()


@dataclass
class PosePrior:
    position: NDArrayFloat
    position_covariance: NDArrayFloat = field(default_factory=lambda: np.eye(3))

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)
        self.position_covariance = np.asarray(self.position_covariance, dtype=np.float64).reshape(3, 3)

    @property
    def is_valid(self) -> bool:
        return bool(np.isfinite(self.position).all())

    @property
    def is_covariance_valid(self) -> bool:
        return bool(np.isfinite(self.position_covariance).all())


class DatabaseCache:
    """In-memory snapshot of the feature database. Shared read-only by mappers."""

    def __init__(self):
        self.cameras: dict[int, Camera] = {}
        self.rigs: dict[int, Rig] = {}
        self.frames: dict[int, Frame] = {}
        self.images: dict[int, Image] = {}
        self.pose_priors: dict[int, PosePrior] = {}
        self.correspondence_graph = CorrespondenceGraph()

    def __repr__(self):
        return (
            f"DatabaseCache(num_cameras={len(self.cameras)}, num_rigs={len(self.rigs)}, "
            f"num_frames={len(self.frames)}, num_images={len(self.images)}, "
            f"num_image_pairs={self.correspondence_graph.num_image_pairs()})"
        )

    def add_camera(self, camera: Camera, rig: Rig | None = None):
        """Add a camera. Without an explicit rig, a single-sensor rig with the camera's id is created.

        Cameras of one multi-sensor rig pass the same rig, which is added once.
        """
        if camera.camera_id in self.cameras:
            raise ValueError(f"Camera {camera.camera_id} already exists")
        if rig is None:
            if camera.camera_id not in self.rigs:
                rig = Rig(camera.camera_id)
                rig.add_ref_sensor(camera_sensor(camera.camera_id))
                self.add_rig(rig)
        elif rig.rig_id not in self.rigs:
            self.add_rig(rig)
        elif not self.rigs[rig.rig_id].has_sensor(camera_sensor(camera.camera_id)):
            raise ValueError(f"Camera {camera.camera_id} is not a sensor of rig {rig.rig_id}")
        self.cameras[camera.camera_id] = camera

    def add_rig(self, rig: Rig):
        if rig.rig_id in self.rigs:
            raise ValueError(f"Rig {rig.rig_id} already exists")
        self.rigs[rig.rig_id] = rig

    def add_frame(self, frame: Frame):
        if frame.frame_id in self.frames:
            raise ValueError(f"Frame {frame.frame_id} already exists")
        if frame.rig_id not in self.rigs:
            raise ValueError(f"Frame {frame.frame_id} references unknown rig {frame.rig_id}")
        self.frames[frame.frame_id] = frame

    def add_image(
        self,
        image_id: int,
        name: str,
        camera_id: int,
        keypoints: NDArrayFloat,
        frame_id: int | None = None,
        pose_prior: PosePrior | None = None,
    ) -> Image:
        """Add an image. Without a frame id, a frame with the image's id on the camera's rig is created."""
        if image_id in self.images:
            raise ValueError(f"Image {image_id} already exists")
        if camera_id not in self.cameras:
            raise ValueError(f"Image {image_id} references unknown camera {camera_id}")
        if frame_id is None:
            frame_id = image_id
            self.add_frame(Frame(frame_id, self._rig_id_for_camera(camera_id)))
        frame = self.frames.get(frame_id)
        if frame is None:
            raise ValueError(f"Image {image_id} references unknown frame {frame_id}")
        if not self.rigs[frame.rig_id].has_sensor(camera_sensor(camera_id)):
            raise ValueError(f"Camera {camera_id} is not a sensor of rig {frame.rig_id}")

        image = Image.from_keypoints(image_id, name, camera_id, frame_id, keypoints)
        frame.image_ids.append(image_id)
        self.images[image_id] = image
        self.correspondence_graph.add_image(image_id, image.num_points2D)
        if pose_prior is not None:
            self.pose_priors[image_id] = pose_prior
        return image

    def _rig_id_for_camera(self, camera_id: int) -> int:
        sensor_id = camera_sensor(camera_id)
        for rig_id, rig in self.rigs.items():
            if rig.is_ref_sensor(sensor_id) and rig.num_sensors() == 1:
                return rig_id
        raise ValueError(f"No single-camera rig for camera {camera_id}")

    def add_matches(self, image_id1: int, image_id2: int, matches: NDArrayInt):
        self.correspondence_graph.add_correspondences(image_id1, image_id2, matches)

    def exists_pose_prior(self, image_id: int) -> bool:
        return image_id in self.pose_priors and self.pose_priors[image_id].is_valid

    def find_image_with_name(self, name: str) -> Image | None:
        for image in self.images.values():
            if image.name == name:
                return image
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_npz(self, filename: Path):
        """Save cameras, keypoints, matches and pose priors. Rigs are assumed to be single-camera."""
        max_num_params = max((len(c.params) for c in self.cameras.values()), default=0)
        camera_ids = sorted(self.cameras)
        camera_params = np.full((len(camera_ids), max_num_params), np.nan)
        for i, camera_id in enumerate(camera_ids):
            params = self.cameras[camera_id].params
            camera_params[i, : len(params)] = params
        image_ids = sorted(self.images)
        data = {
            "camera_ids": np.array(camera_ids, dtype=np.int64),
            "camera_models": np.array([self.cameras[c].model for c in camera_ids]),
            "camera_sizes": np.array([(self.cameras[c].width, self.cameras[c].height) for c in camera_ids]),
            "camera_params": camera_params,
            "camera_prior_focal_length": np.array([self.cameras[c].has_prior_focal_length for c in camera_ids]),
            "image_ids": np.array(image_ids, dtype=np.int64),
            "image_names": np.array([self.images[i].name for i in image_ids]),
            "image_camera_ids": np.array([self.images[i].camera_id for i in image_ids], dtype=np.int64),
        }
        for image_id in image_ids:
            data[f"keypoints_{image_id}"] = self.images[image_id].keypoints()
        graph = self.correspondence_graph
        for image_id1, image_id2 in graph.num_correspondences_between_all_images():
            data[f"matches_{image_id1}_{image_id2}"] = graph.find_correspondences_between_images(image_id1, image_id2)
        prior_ids = sorted(self.pose_priors)
        if prior_ids:
            data["prior_image_ids"] = np.array(prior_ids, dtype=np.int64)
            data["prior_positions"] = np.array([self.pose_priors[i].position for i in prior_ids])
            data["prior_covariances"] = np.array([self.pose_priors[i].position_covariance for i in prior_ids])
        filename.parent.mkdir(exist_ok=True, parents=True)
        np.savez(filename, **data)

    @classmethod
    def load_npz(cls, filename: Path) -> "DatabaseCache":
        cache = cls()
        with np.load(filename) as data:
            prior_focal = data["camera_prior_focal_length"] if "camera_prior_focal_length" in data.files else None
            for i, camera_id in enumerate(data["camera_ids"]):
                model = str(data["camera_models"][i])
                width, height = data["camera_sizes"][i]
                params = data["camera_params"][i, : camera_model(model).num_params]
                has_prior = bool(prior_focal[i]) if prior_focal is not None else False
                cache.add_camera(Camera(int(camera_id), model, int(width), int(height), params, has_prior))

            priors = {}
            if "prior_image_ids" in data.files:
                for image_id, position, covariance in zip(
                    data["prior_image_ids"], data["prior_positions"], data["prior_covariances"]
                ):
                    priors[int(image_id)] = PosePrior(position, covariance)

            for image_id, name, camera_id in zip(data["image_ids"], data["image_names"], data["image_camera_ids"]):
                cache.add_image(
                    int(image_id),
                    str(name),
                    int(camera_id),
                    data[f"keypoints_{image_id}"],
                    pose_prior=priors.get(int(image_id)),
                )

            for key in data.files:
                if key.startswith("matches_"):
                    _, image_id1, image_id2 = key.split("_")
                    cache.add_matches(int(image_id1), int(image_id2), data[key])

        logger.info("Loaded %s from %s", cache, filename)
        return cache
