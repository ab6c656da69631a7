import logging
from dataclasses import replace
from pathlib import Path

import typer

from incsfm.ba import BundleAdjuster
from incsfm.config import ImageSelectionMethod, PipelineOptions
from incsfm.database import DatabaseCache
from incsfm.mapper import IncrementalMapper, RegistrationStatistics
from incsfm.reconstruction import Reconstruction
from incsfm.utils import save_ply

logger = logging.getLogger(__name__)

app = typer.Typer()

# Give up on a seed that cannot grow past the minimum model size after this many failed registrations
MIN_NUM_INITIAL_REG_TRIALS = 30


def _run_global_refinement(mapper: IncrementalMapper, options: PipelineOptions):
    mapper.iterative_global_refinement(
        options.ba_global_max_refinements,
        options.ba_global_max_refinement_change,
        options.mapper,
        options.global_bundle_adjustment(),
        options.triangulation,
    )


def _should_run_global_refinement(
    reconstruction: Reconstruction, options: PipelineOptions, prev_num_reg_frames: int, prev_num_points: int
) -> bool:
    num_reg_frames = reconstruction.num_reg_frames()
    num_points = len(reconstruction.points3D)
    return (
        num_reg_frames >= options.ba_global_frames_ratio * prev_num_reg_frames
        or num_reg_frames >= options.ba_global_frames_freq + prev_num_reg_frames
        or num_points >= options.ba_global_points_ratio * prev_num_points
        or num_points >= options.ba_global_points_freq + prev_num_points
    )


def _seed(mapper: IncrementalMapper, options: PipelineOptions, image_pair: tuple[int, int]) -> bool:
    """Register the initial pair and refine it. False if nothing survives the refinement."""
    reconstruction = mapper.reconstruction
    if not mapper.register_initial_image_pair(options.mapper, *image_pair):
        return False
    mapper.adjust_global_bundle(options.mapper, options.global_bundle_adjustment())
    reconstruction.normalize()
    mapper.filter_points(options.mapper)
    mapper.filter_frames(options.mapper)
    if reconstruction.num_reg_frames() == 0 or len(reconstruction.points3D) == 0:
        logger.warning("Initial pair %s left no points after refinement", image_pair)
        return False
    return True


def _grow(mapper: IncrementalMapper, options: PipelineOptions):
    """Register next images until none succeeds, twice in a row with a global refinement in between."""
    reconstruction = mapper.reconstruction
    prev_num_reg_frames = reconstruction.num_reg_frames()
    prev_num_points = len(reconstruction.points3D)

    reg_next_success = True
    prev_reg_next_success = True
    while reg_next_success or prev_reg_next_success:
        prev_reg_next_success = reg_next_success
        reg_next_success = False

        next_image_ids = mapper.find_next_images(options.mapper)
        if not next_image_ids:
            break
        for reg_trial, image_id in enumerate(next_image_ids):
            reg_next_success = mapper.register_next_image(options.mapper, image_id)
            if reg_next_success:
                break
            if reg_trial >= MIN_NUM_INITIAL_REG_TRIALS and reconstruction.num_reg_frames() < options.min_model_size:
                break

        if reg_next_success:
            frame = reconstruction.frames[reconstruction.images[image_id].frame_id]
            for frame_image_id in frame.image_ids:
                mapper.triangulate_image(options.triangulation, frame_image_id)
            mapper.iterative_local_refinement(
                options.ba_local_max_refinements,
                options.ba_local_max_refinement_change,
                options.mapper,
                options.local_bundle_adjustment(),
                options.triangulation,
                image_id,
            )
            if _should_run_global_refinement(reconstruction, options, prev_num_reg_frames, prev_num_points):
                _run_global_refinement(mapper, options)
                prev_num_reg_frames = reconstruction.num_reg_frames()
                prev_num_points = len(reconstruction.points3D)
        elif prev_reg_next_success:
            # A global refinement may make the remaining images registrable
            _run_global_refinement(mapper, options)

    if (
        reconstruction.num_reg_frames() >= 2
        and reconstruction.num_reg_frames() != prev_num_reg_frames
        and len(reconstruction.points3D) != prev_num_points
    ):
        _run_global_refinement(mapper, options)


def reconstruct(
    database_cache: DatabaseCache,
    options: PipelineOptions | None = None,
    bundle_adjuster: BundleAdjuster | None = None,
    stats: RegistrationStatistics | None = None,
) -> Reconstruction | None:
    """Incremental reconstruction of the images in `database_cache`.

    Seeds are tried until one grows into a model with at least `min_model_size` frames
    (capped at 80% of the images). Returns None if no seed does.
    """
    options = options or PipelineOptions()
    options.check()
    mapper = IncrementalMapper(database_cache, bundle_adjuster, stats)
    min_model_size = min(int(0.8 * len(database_cache.images)), options.min_model_size)

    for _ in range(options.init_num_trials):
        reconstruction = Reconstruction()
        mapper.begin_reconstruction(reconstruction)
        image_pair = mapper.find_initial_image_pair(options.mapper)
        if image_pair is None:
            mapper.end_reconstruction(discard=True)
            return None
        if not _seed(mapper, options, image_pair):
            mapper.end_reconstruction(discard=True)
            continue

        _grow(mapper, options)
        if reconstruction.num_reg_frames() < max(min_model_size, 2):
            logger.info("Discarding model with %d frames", reconstruction.num_reg_frames())
            mapper.end_reconstruction(discard=True)
            continue

        mapper.end_reconstruction(discard=False)
        logger.info(
            "Reconstructed %d images, %d points, mean reprojection error %.3f px",
            reconstruction.num_reg_images(),
            len(reconstruction.points3D),
            reconstruction.compute_mean_reprojection_error(),
        )
        return reconstruction
    return None


@app.command()
def main(
    database: Path = typer.Argument(..., help="Database cache (.npz) with cameras, keypoints and matches", exists=True),
    output: Path = typer.Option(
        Path("point_cloud.ply"),
        "--output",
        "-o",
        help="PLY file for the reconstructed points and cameras",
    ),
    image_selection: ImageSelectionMethod = typer.Option(
        ImageSelectionMethod.MIN_UNCERTAINTY,
        "--image-selection",
        "-s",
        help="Ranking of the next image to register",
    ),
    min_model_size: int = typer.Option(
        10,
        "--min-model-size",
        "-m",
        help="Minimum number of registered frames for a model to be kept",
        min=2,
    ),
    num_threads: int = typer.Option(
        -1,
        "--num-threads",
        "-j",
        help="Number of bundle adjustment solver threads, -1 for all cores",
    ),
    use_prior_position: bool = typer.Option(
        False,
        "--prior-position/--no-prior-position",
        help="Constrain global bundle adjustment with the prior camera positions of the database",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug messages"),
):
    """Run incremental Structure from Motion on a database cache."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s"
    )

    default_options = PipelineOptions()
    options = PipelineOptions(
        min_model_size=min_model_size,
        mapper=replace(
            default_options.mapper,
            image_selection_method=image_selection,
            num_threads=num_threads,
            use_prior_position=use_prior_position,
        ),
        bundle_adjustment=replace(default_options.bundle_adjustment, num_threads=num_threads),
    )

    typer.echo("Configuration:")
    typer.echo(f"  Database: {database}")
    typer.echo(f"  Image selection: {image_selection.value}")
    typer.echo(f"  Min model size: {min_model_size}")
    typer.echo(f"  Prior positions: {use_prior_position}")
    typer.echo()

    typer.echo(f"Loading database cache from {database}...")
    database_cache = DatabaseCache.load_npz(database)
    typer.echo(f"  {database_cache}")

    typer.echo("Reconstructing...")
    reconstruction = reconstruct(database_cache, options)
    if reconstruction is None:
        typer.echo("Error: no model could be reconstructed", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Registered {reconstruction.num_reg_images()} / {len(database_cache.images)} images")
    typer.echo(f"Point cloud size: {len(reconstruction.points3D)}")
    typer.echo(f"Mean reprojection error: {reconstruction.compute_mean_reprojection_error():.3f} px")
    typer.echo(f"Saving reconstruction to {output}...")
    save_ply(reconstruction, filename=output)
    typer.echo("Done!")


if __name__ == "__main__":
    app()
