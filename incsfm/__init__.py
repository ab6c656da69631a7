"""Incremental Structure from Motion."""

from incsfm.config import (
    BundleAdjustmentOptions,
    ImageSelectionMethod,
    MapperOptions,
    PipelineOptions,
    TriangulatorOptions,
)
from incsfm.database import CorrespondenceGraph, DatabaseCache, PosePrior
from incsfm.mapper import IncrementalMapper, LocalBundleAdjustmentReport, RegistrationStatistics
from incsfm.reconstruction import Reconstruction
from incsfm.sfm import reconstruct
from incsfm.triangulator import IncrementalTriangulator

__all__ = [
    "BundleAdjustmentOptions",
    "CorrespondenceGraph",
    "DatabaseCache",
    "ImageSelectionMethod",
    "IncrementalMapper",
    "IncrementalTriangulator",
    "LocalBundleAdjustmentReport",
    "MapperOptions",
    "PipelineOptions",
    "PosePrior",
    "Reconstruction",
    "RegistrationStatistics",
    "TriangulatorOptions",
    "reconstruct",
]
