"""pycolmap cost functions for bundle adjustment and pose refinement.

Parameter blocks follow pycolmap: rotation as [x, y, z, w] quaternion (4),
translation (3), point (3), camera params (k).
"""

from typing import Sequence

import numpy as np
import pyceres
from pycolmap import cost_functions

from incsfm.geometry import Rigid3d, camera_model_id
from incsfm.utils import NDArrayFloat


def reproj_error_cost(model: str, point2D: NDArrayFloat, cam_from_rig: Rigid3d | None = None):
    """Pixel residual of one observation (analytic Jacobians).

    Blocks: [rotation, translation, point3D, camera params]. The pose block is
    cam_from_world, or rig_from_world if a fixed `cam_from_rig` is given.
    """
    point2D = np.asarray(point2D, dtype=np.float64).reshape(2)
    if cam_from_rig is None:
        return cost_functions.ReprojErrorCost(camera_model_id(model), point2D)
    return cost_functions.RigReprojErrorCost(camera_model_id(model), point2D, cam_from_rig.to_pycolmap())


def position_prior_cost(position: NDArrayFloat, covariance: NDArrayFloat):
    """Covariance-weighted offset of the camera center from its prior position.

    Blocks: [rotation, translation] of cam_from_world.
    """
    return cost_functions.AbsolutePosePositionPriorCost(
        np.asarray(covariance, dtype=np.float64).reshape(3, 3), np.asarray(position, dtype=np.float64).reshape(3)
    )


def set_constant_subset(problem: pyceres.Problem, block: NDArrayFloat, constant_idxs: Sequence[int]) -> None:
    """Hold the given entries of a parameter block constant; the whole block if none is left free."""
    constant_idxs = sorted(set(constant_idxs))
    if len(constant_idxs) == len(block):
        problem.set_parameter_block_constant(block)
    elif constant_idxs:
        problem.set_manifold(block, pyceres.SubsetManifold(len(block), constant_idxs))
