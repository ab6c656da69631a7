import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray

if TYPE_CHECKING:
    from incsfm.reconstruction import Reconstruction

logger = logging.getLogger(__name__)

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]
NDArrayBool = NDArray[np.bool_]
ImagePair = tuple[int, int]  # (image_id1, image_id2) with image_id1 < image_id2


def image_pair_to_pair_id(image_id1: int, image_id2: int) -> ImagePair:
    """Order-independent key of an image pair."""
    if image_id1 == image_id2:
        raise ValueError(f"Image pair must consist of two distinct images, got {image_id1} twice")
    return (image_id1, image_id2) if image_id1 < image_id2 else (image_id2, image_id1)


def _camera_frustum_points(R: NDArrayFloat, t: NDArrayFloat, scale: float = 0.1) -> list[NDArrayFloat]:
    """
    Returns 5 world-space points for a tiny camera frustum
    """
    # World --> Camera:   Xc = R Xw + t
    # Camera --> World:   Xw = Rᵀ (Xc − t)
    C = -R.T @ t.ravel()

    right = R.T @ np.array([1, 0, 0])
    up = R.T @ np.array([0, 1, 0])
    forward = R.T @ np.array([0, 0, 1])

    # Image plane center
    P = C + scale * forward

    s = scale * 0.5
    corners = [
        P + s * (right + up),
        P + s * (right - up),
        P + s * (-right - up),
        P + s * (-right + up),
    ]
    return [C] + corners


def save_ply(
    reconstruction: "Reconstruction",
    filename: Path = Path("point_cloud.ply"),
    frustum_scale: float = 0.1,
    outlier_quantile: float | None = 0.95,
):
    """Write 3D points (colored) and registered camera frustums (red) as ASCII PLY.

    Points farther from the median than the `outlier_quantile` of all distances are left out,
    so that a few points near infinity do not squash the visualization. Returns the number
    of written points and camera vertices.
    """
    point3D_ids = sorted(reconstruction.points3D)
    df = pd.DataFrame(
        [(*reconstruction.points3D[pid].xyz, *reconstruction.points3D[pid].color) for pid in point3D_ids],
        columns=["x", "y", "z", "red", "green", "blue"],
    )

    # --- OUTLIER REMOVAL ---
    if outlier_quantile is not None and len(df) > 0:
        xyz = df[["x", "y", "z"]]
        distance = np.sqrt(((xyz - xyz.median()) ** 2).sum(axis=1))
        df = df[distance <= distance.quantile(outlier_quantile)]
    logger.debug("Writing %d of %d points to %s", len(df), len(point3D_ids), filename)

    vertices = list(df.itertuples(index=False, name=None))
    camera_vertex_offset = len(vertices)

    edges = []
    for image_id in reconstruction.reg_image_ids():
        cam_from_world = reconstruction.cam_from_world(image_id)
        base_idx = len(vertices)
        for p in _camera_frustum_points(cam_from_world.R, cam_from_world.translation, frustum_scale):
            vertices.append((p[0], p[1], p[2], 255, 0, 0))
        # center → corners, then the square around the image plane
        edges += [(base_idx, base_idx + i) for i in range(1, 5)]
        edges += [
            (base_idx + 1, base_idx + 2),
            (base_idx + 2, base_idx + 3),
            (base_idx + 3, base_idx + 4),
            (base_idx + 4, base_idx + 1),
        ]

    filename.parent.mkdir(exist_ok=True, parents=True)
    with open(filename, "w") as f:
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"element vertex {len(vertices)}\n")
        f.write("property float x\n")
        f.write("property float y\n")
        f.write("property float z\n")
        f.write("property uchar red\n")
        f.write("property uchar green\n")
        f.write("property uchar blue\n")
        f.write(f"element edge {len(edges)}\n")
        f.write("property int vertex1\n")
        f.write("property int vertex2\n")
        f.write("property uchar red\n")
        f.write("property uchar green\n")
        f.write("property uchar blue\n")
        f.write("end_header\n")
        for x, y, z, r, g, b in vertices:
            f.write(f"{x} {y} {z} {int(r)} {int(g)} {int(b)}\n")
        for e in edges:
            f.write(f"{e[0]} {e[1]} 255 0 0\n")

    return camera_vertex_offset, len(vertices) - camera_vertex_offset
