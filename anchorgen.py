import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import rich.traceback
import typer
from rich.logging import RichHandler

from anchor import candidates as candidate_utils
from anchor import file_utils
from anchor.collision import summarize
from anchor.config import GPU_ENABLED, AnchorConfig, CollisionConfig
from anchor.frame import LabelFrameLoop
from anchor.raster import IdentityRaster
from anchor.render import render_overlay


class AnchorFile(Enum):
    MARKERS = "markers"
    PLACEMENTS = "placements"
    RASTER_OVERLAY = "raster_overlay"
    VECTOR_OVERLAY = "vector_overlay"


ANCHOR_FILE_BASENAMES: Dict[AnchorFile, str] = {
    AnchorFile.MARKERS: "markers.json",
    AnchorFile.PLACEMENTS: "placements.json",
    AnchorFile.RASTER_OVERLAY: "anchor-overlay.png",
    AnchorFile.VECTOR_OVERLAY: "anchor-overlay.svg",
}

PRESETS = {
    "fast": {"partition_grid": 2, "partition_samples": 4, "grid_scan_steps": 4},
    "balanced": {"partition_grid": 2, "partition_samples": 8, "grid_scan_steps": 8},
    "thorough": {"partition_grid": 4, "partition_samples": 8, "grid_scan_steps": 16},
}


def validate_output_dir(
    output_dir: Path, overwrite: bool = False, expect: Optional[List[AnchorFile]] = None,
) -> Dict[AnchorFile, Path]:
    if not overwrite and expect:
        clobbered = [str(output_dir / ANCHOR_FILE_BASENAMES[key]) for key in expect
                     if (output_dir / ANCHOR_FILE_BASENAMES[key]).exists()]
        if clobbered:
            typer.secho("Error: Files already exist:", fg=typer.colors.RED)
            for path_str in clobbered:
                typer.secho(f"  {path_str}", fg=typer.colors.RED)
            typer.secho("Use --yes (-y) to overwrite.", fg=typer.colors.YELLOW)
            raise typer.Exit(code=1)
    return {key: output_dir / name for key, name in ANCHOR_FILE_BASENAMES.items()}


def anchor_cli(
    raster_path: Path = typer.Argument(
        ...,
        help="Identity raster PNG (red channel = feature id, green channel = layer id).",
        metavar="RASTER_FILE",
        exists=True, file_okay=True, dir_okay=False, readable=True, resolve_path=True,
    ),
    output_dir: Path = typer.Argument(
        ...,
        help="Directory for output files. Will be created if it doesn't exist.",
        metavar="OUTPUT_DIRECTORY",
        file_okay=False, dir_okay=True, writable=True, resolve_path=True,
    ),
    labels: Optional[Path] = typer.Option(
        None, "--labels", help="JSON list of feature records ({id, text|properties, source_layer}).",
        exists=True, file_okay=True, dir_okay=False, readable=True, resolve_path=True,
    ),
    preset: Optional[str] = typer.Option(None, help="Fallback search effort: fast, balanced, thorough."),
    max_features: int = typer.Option(256, "--max-features", min=2, help="Feature slots per frame (ids 1..N-1). Default: 256."),
    min_pixels: int = typer.Option(5, "--min-pixels", min=1, help="Smallest feature that gets a marker. Default: 5."),
    quadrant: str = typer.Option("center", "--quadrant", help="Preferred anchor bucket, e.g. center, top-left, bottom."),
    partition_grid: Optional[int] = typer.Option(None, "--partition-grid", min=1, help="Partitions per axis for the fallback search."),
    grid_scan_steps: Optional[int] = typer.Option(None, "--grid-scan-steps", min=1, help="Samples per axis for the final grid scan."),
    scale: int = typer.Option(2, "--scale", min=1, help="Overlay upscaling factor. Default: 2."),
    font_path: Optional[str] = typer.Option(None, "--font-path", help="TrueType font for overlay labels."),
    skip_svg: bool = typer.Option(False, "--skip-svg", help="Skip vector SVG overlay."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Overwrite existing files."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """
    Computes label anchors for every feature in an identity raster and declutters their labels.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )
    command_line_str = " ".join(sys.argv)

    try:
        os.makedirs(output_dir, exist_ok=True)
        typer.echo(f"Using output directory: {output_dir}")
    except OSError as e:
        typer.secho(f"Error creating output directory {output_dir}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    expected_outputs = [AnchorFile.MARKERS, AnchorFile.PLACEMENTS, AnchorFile.RASTER_OVERLAY]
    if not skip_svg:
        expected_outputs.append(AnchorFile.VECTOR_OVERLAY)
    output_paths = validate_output_dir(output_dir, overwrite=yes, expect=expected_outputs)

    search = dict(PRESETS["balanced"])
    if preset:
        if preset not in PRESETS:
            typer.secho(f"Error: Unknown preset '{preset}'. Choose from: {', '.join(PRESETS)}.", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Applying preset: '{preset}'")
        search.update(PRESETS[preset])
    if partition_grid is not None:
        search["partition_grid"] = partition_grid
    if grid_scan_steps is not None:
        search["grid_scan_steps"] = grid_scan_steps

    try:
        anchor_config = AnchorConfig(
            max_features=max_features, min_pixels=min_pixels, preferred_quadrant=quadrant, **search,
        )
    except ValueError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    collision_config = CollisionConfig()

    try:
        raster = IdentityRaster.from_image(raster_path)
    except ValueError as e:
        typer.secho(f"Error reading identity raster: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    counts = raster.feature_counts()
    typer.echo(f"Loaded {raster.width}x{raster.height} identity raster with {len(counts)} feature id(s).")
    typer.echo("Backend: " + ("CuPy/CUDA" if GPU_ENABLED else "NumPy/CPU"))

    if labels:
        try:
            label_candidates = candidate_utils.load_candidates(labels)
        except ValueError as e:
            typer.secho(f"Error reading labels: {e}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
    else:
        label_candidates = candidate_utils.default_candidates(counts)
    typer.echo(f"Collected {len(label_candidates)} label candidate(s).")

    # Labels resolve against the previous frame's readback, so run a warm-up frame first
    with LabelFrameLoop(anchor_config, collision_config) as loop:
        loop.step(raster, label_candidates)
        loop.settle()
        result = loop.step(raster, label_candidates)

    if result.markers.dropped:
        typer.secho(
            f"Warning: {len(result.markers.dropped)} feature id(s) >= {max_features} were dropped.",
            fg=typer.colors.YELLOW,
        )
    typer.echo(f"Anchor status: {result.markers.status_counts()}")
    typer.echo(f"Placements: {summarize(result.decisions)}")

    metadata = {
        "preset": preset or "balanced",
        "max_features": max_features,
        "min_pixels": min_pixels,
        "quadrant": anchor_config.preferred_quadrant.name.lower(),
    }
    try:
        file_utils.save_json(file_utils.marker_records(result.markers, raster), output_paths[AnchorFile.MARKERS])
        file_utils.save_json(file_utils.decision_records(result.decisions), output_paths[AnchorFile.PLACEMENTS])
        typer.echo(f"Markers saved to: {output_paths[AnchorFile.MARKERS]}")
        typer.echo(f"Placements saved to: {output_paths[AnchorFile.PLACEMENTS]}")

        overlay = render_overlay(raster, result.markers, result.decisions, collision_config,
                                 scale=scale, font_path=font_path)
        file_utils.save_overlay_png(overlay, output_paths[AnchorFile.RASTER_OVERLAY],
                                    command_line_invocation=command_line_str, additional_metadata=metadata)
        typer.echo(f"Raster overlay saved to: {output_paths[AnchorFile.RASTER_OVERLAY]}")

        if not skip_svg:
            file_utils.save_overlay_svg(output_paths[AnchorFile.VECTOR_OVERLAY], raster, result.markers,
                                        result.decisions, collision_config, scale=scale,
                                        command_line_invocation=command_line_str, additional_metadata=metadata)
            typer.echo(f"SVG overlay saved to: {output_paths[AnchorFile.VECTOR_OVERLAY]}")
    except OSError as e:
        typer.secho(f"Error writing outputs: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.secho("\nProcessing complete!", fg=typer.colors.GREEN)
    typer.echo(f"Outputs in: {output_dir.resolve()}")


def main():
    rich.traceback.install(show_locals=False, suppress=[typer])
    typer.run(anchor_cli)


if __name__ == "__main__":
    main()
