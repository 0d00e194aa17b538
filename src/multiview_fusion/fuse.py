"""
Fuse co-registered multiview volumes from the command line.

`mvfuse fuse` blends already aligned views (TIFF files or zarr stores) into
one volume; `mvfuse estimate` prints the memory a fusion plan would need
without loading any data.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from multiview_fusion.dataio.volumes import read_volume, write_volume
from multiview_fusion.errors import FusionError, InvalidConfigurationError
from multiview_fusion.imageprocessing.multiviewfusion import MultiViewFusion
from multiview_fusion.imageprocessing.resources import (
    DatasetProperties,
    choose_cache_strategy,
    estimate_memory,
)
from multiview_fusion.plan import (
    DEFAULT_BLENDING_RANGE,
    DEFAULT_FALLBACK_THRESHOLD,
    BoundingBox,
    FusionPlan,
)

app = typer.Typer()
app.pretty_exceptions_enable = False


def _parse_origin(text: str) -> Tuple[float, ...]:
    try:
        return tuple(float(v) for v in text.split(","))
    except ValueError:
        raise InvalidConfigurationError(f"Cannot parse origin {text!r}, expected 'z,y,x'.") from None


def _load_plan(
    plan_path: Optional[Path],
    bbox: Optional[BoundingBox],
    **overrides,
) -> FusionPlan:
    if plan_path is not None:
        with open(plan_path, "r") as f:
            try:
                plan_dict = json.load(f)
            except json.JSONDecodeError as e:
                raise InvalidConfigurationError(f"Plan file {plan_path} is not valid JSON: {e}") from e
        return FusionPlan.from_dict(plan_dict)
    if bbox is None:
        raise InvalidConfigurationError("A bounding box or a plan file is required.")
    return FusionPlan(bounding_box=bbox, **overrides)


@app.command()
def fuse(
    inputs: List[Path] = typer.Argument(..., help="Aligned views, TIFF files or zarr stores."),
    output: Path = typer.Option(..., "--output", "-o", help="Output .tif file or zarr3 store."),
    mask: Optional[List[Path]] = typer.Option(None, help="Coverage mask per view, in input order."),
    origin: Optional[List[str]] = typer.Option(None, help="World origin 'z,y,x' per view."),
    bbox: Optional[str] = typer.Option(None, help="'zmin,ymin,xmin,zmax,ymax,xmax'; defaults to the union of all views."),
    base_index: int = typer.Option(0, help="View used as low-resolution fallback."),
    no_base: bool = typer.Option(False, help="Fuse all views alike, without a fallback view."),
    blending_range: float = DEFAULT_BLENDING_RANGE,
    fallback_threshold: float = DEFAULT_FALLBACK_THRESHOLD,
    downsampling: float = 1.0,
    pixel_type: str = "float32",
    cache_strategy: str = "virtual",
    preserve_anisotropy: bool = False,
    anisotropy_factor: float = 1.0,
    content_based: bool = False,
    max_workers: Optional[int] = None,
    plan: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="JSON fusion plan; replaces the plan options."
    ),
    debug: bool = False,
):
    """Fuse aligned views into one volume.

    Usage: `mvfuse fuse view0.tif view1.tif view2.tif -o fused.zarr --mask m0.tif --mask m1.tif --mask m2.tif`

    Parameters
    ----------
    inputs: List[Path]
        Views already resampled into the common world frame.
    output: Path
        Output file (.tif) or zarr v3 store.
    """
    if debug:
        logging.basicConfig(level=logging.DEBUG)

    masks = list(mask or [])
    origins = list(origin or [])
    try:
        if masks and len(masks) != len(inputs):
            raise InvalidConfigurationError(f"Got {len(masks)} masks for {len(inputs)} views.")
        if origins and len(origins) != len(inputs):
            raise InvalidConfigurationError(f"Got {len(origins)} origins for {len(inputs)} views.")

        volumes = [
            read_volume(path, origin=_parse_origin(origins[idx]) if origins else None)
            for idx, path in enumerate(inputs)
        ]
        mask_data = [read_volume(path).data for path in masks] if masks else None

        box = BoundingBox.parse(bbox) if bbox else BoundingBox.union(v.bounding_box for v in volumes)
        fusion_plan = _load_plan(
            plan,
            box,
            downsampling=downsampling,
            pixel_type=pixel_type,
            cache_strategy=cache_strategy,
            preserve_anisotropy=preserve_anisotropy,
            anisotropy_factor=anisotropy_factor,
            content_based=content_based,
            blending_range=blending_range,
            fallback_threshold=fallback_threshold,
        )

        memory = estimate_memory(fusion_plan, DatasetProperties.from_volumes(volumes))
        typer.echo(memory.summary())

        fuser = MultiViewFusion(fusion_plan, max_workers=max_workers, debug=debug)
        fused = fuser.fuse(
            volumes,
            masks=mask_data,
            base_index=None if no_base else base_index,
        )
    except FusionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    write_volume(output, fused)
    typer.echo(f"Fused volume written to {output}")


@app.command()
def estimate(
    bbox: str = typer.Option(..., help="'zmin,ymin,xmin,zmax,ymax,xmax'"),
    max_input_pixels: int = typer.Option(..., help="Largest number of input pixels per output group."),
    input_bytes: int = 2,
    num_views: int = 1,
    pixel_type: str = "float32",
    cache_strategy: str = "virtual",
    downsampling: float = 1.0,
    preserve_anisotropy: bool = False,
    anisotropy_factor: float = 1.0,
    virtual_loader: bool = False,
    multi_resolution: bool = False,
    content_based: bool = False,
    non_rigid: bool = False,
    available_memory_mb: Optional[float] = None,
    budget_mb: Optional[float] = typer.Option(None, help="Also suggest the cache strategy that fits this budget."),
):
    """Print the memory a fusion run would need, without loading data."""
    try:
        fusion_plan = FusionPlan(
            bounding_box=BoundingBox.parse(bbox),
            downsampling=downsampling,
            pixel_type=pixel_type,
            cache_strategy=cache_strategy,
            content_based=content_based,
            preserve_anisotropy=preserve_anisotropy,
            anisotropy_factor=anisotropy_factor,
        )
        dataset = DatasetProperties(
            max_input_pixels=max_input_pixels,
            input_bytes_per_pixel=input_bytes,
            num_views=num_views,
            virtual_loader=virtual_loader,
            multi_resolution=multi_resolution,
            non_rigid=non_rigid,
        )
        available = None if available_memory_mb is None else int(available_memory_mb * 1024 * 1024)
        result = estimate_memory(fusion_plan, dataset, available_memory_bytes=available)
        typer.echo(result.summary())
        if budget_mb is not None:
            strategy = choose_cache_strategy(fusion_plan, dataset, budget_mb, available)
            typer.echo(f"Suggested cache strategy: {strategy.value}")
    except FusionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


# entry point for CLI
def main():
    app()

if __name__ == "__main__":
    main()
