# src/eocube/cli.py

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from eocube.collection import build_collection, cloud_cover_below, images_from_stac, load_item_collection
from eocube.config import ExecutionConfig
from eocube.cube import CubeView, ExecutionReport, ImageMask, chunk_counts, estimate_chunk_memory, plan
from eocube.cube.graph import image_collection_cube
from eocube.exceptions import EOCubeError

def setup_logging(level: int = logging.INFO) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def _view_from_args(args, collection=None) -> CubeView:
    """
    Builds the target view from command-line arguments, filling a missing
    extent from the image collection.
    """
    extent = {}
    if collection is not None:
        extent.update(collection.extent(args.crs))
    if args.bounds:
        left, bottom, right, top = args.bounds
        extent.update(left=left, bottom=bottom, right=right, top=top)
    if args.t0:
        extent["t0"] = args.t0
    if args.t1:
        extent["t1"] = args.t1

    return CubeView.create(
        crs=args.crs,
        extent=extent,
        dt=args.dt,
        dx=args.dx,
        dy=args.dy,
        resampling=args.resampling,
        aggregation=args.aggregation
    )

def show_plan(args) -> None:
    """
    Prints the aligned view and the chunk partition it produces.

    Args:
        args (argparse.Namespace): Parsed arguments of the 'plan' command.
    """
    view = _view_from_args(args)
    chunks = plan(view, args.chunk)

    print(view)
    for adjustment in view.adjustments:
        print(f"  adjusted {adjustment}")
    print(f"Chunk grid {chunk_counts(view, args.chunk)} -> {len(chunks)} chunk(s)")

    estimate = estimate_chunk_memory(args.n_bands, args.chunk, args.workers or ExecutionConfig().workers)
    print(f"Memory per evaluation: {estimate.reason} ({'safe' if estimate.is_safe else 'UNSAFE'})")

    if args.list:
        for chunk in chunks:
            left, bottom, right, top = chunk.bounds(view)
            start, end = chunk.time_window(view)
            print(f"  {chunk.id}: x=[{left}, {right}) y=[{bottom}, {top}) "
                  f"t=[{start.isoformat()}, {end.isoformat()})")

def build_cube(args) -> None:
    """
    Builds a cube from a saved STAC ItemCollection and writes it as GeoTIFFs.

    Args:
        args (argparse.Namespace): Parsed arguments of the 'build' command.
    """
    items = load_item_collection(args.items)
    assets = args.bands + ([args.mask_band] if args.mask_band else [])
    images = images_from_stac(items, assets=assets)

    predicate = cloud_cover_below(args.cloud_cover) if args.cloud_cover is not None else None
    collection = build_collection(images, band_filter=assets, quality_predicate=predicate)
    view = _view_from_args(args, collection)

    mask = None
    if args.mask_band:
        if not args.mask_values:
            logging.error("--mask-band requires --mask-values.")
            sys.exit(1)
        mask = ImageMask(args.mask_band, values=args.mask_values)

    cube = image_collection_cube(collection, view, chunk_shape=args.chunk, mask=mask, bands=args.bands)
    if args.reduce:
        cube = cube.reduce_time(args.reduce)

    overrides = {"fail_fast": args.fail_fast, "progress": args.progress}
    if args.workers:
        overrides["workers"] = args.workers
    config = ExecutionConfig.from_env(**overrides)

    report = ExecutionReport()
    paths = cube.write_tif(
        args.output,
        prefix=args.prefix,
        compression=args.compression,
        config=config,
        report=report
    )

    logging.info(f"Wrote {len(paths)} file(s) to {args.output}: {report}")
    for warning in report.warnings:
        logging.warning(warning)

def _add_view_arguments(parser: argparse.ArgumentParser, require_extent: bool) -> None:
    parser.add_argument("--crs", required=True, help="Target CRS, e.g. EPSG:32633.")
    parser.add_argument(
        "--bounds", type=float, nargs=4, metavar=("LEFT", "BOTTOM", "RIGHT", "TOP"),
        required=require_extent,
        help="Spatial extent in target CRS units."
    )
    parser.add_argument("--t0", required=require_extent, help="Start of the temporal extent (ISO date).")
    parser.add_argument("--t1", required=require_extent, help="End of the temporal extent (ISO date).")
    parser.add_argument("--dt", default="P1M", help="Time step as ISO-8601 duration. Defaults to P1M.")
    parser.add_argument("--dx", type=float, required=True, help="Cell width in target CRS units.")
    parser.add_argument("--dy", type=float, default=None, help="Cell height. Defaults to dx.")
    parser.add_argument("--resampling", default="nearest", help="Spatial resampling method.")
    parser.add_argument("--aggregation", default="median", help="Temporal aggregation method.")
    parser.add_argument(
        "--chunk", type=int, nargs=3, metavar=("NT", "NY", "NX"), default=[16, 256, 256],
        help="Chunk shape. Defaults to 16 256 256."
    )
    parser.add_argument("--workers", type=int, default=0, help="Worker threads. Defaults to the CPU count.")

def main(argv: Optional[List[str]] = None) -> None:
    """
    Parses command-line arguments and routes execution to the appropriate subroutines.

    Args:
        argv (List[str], optional): Arguments to parse instead of sys.argv.
    """
    parser = argparse.ArgumentParser(
        prog="eocube",
        description="On-demand Earth observation data cubes"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser(
        "plan",
        help="Aligns a cube view and prints its chunk partition."
    )
    _add_view_arguments(plan_parser, require_extent=True)
    plan_parser.add_argument("--n-bands", type=int, default=1, help="Band count used for the memory estimate.")
    plan_parser.add_argument("--list", action="store_true", help="List every chunk with its bounds.")

    build_parser = subparsers.add_parser(
        "build",
        help="Builds a cube from a saved STAC ItemCollection and writes one GeoTIFF per time slice."
    )
    build_parser.add_argument("items", type=Path, help="Path to an ItemCollection GeoJSON file.")
    build_parser.add_argument("--output", type=Path, required=True, help="Output directory.")
    build_parser.add_argument("--bands", nargs="+", required=True, help="Asset keys to read.")
    _add_view_arguments(build_parser, require_extent=False)
    build_parser.add_argument("--mask-band", default=None, help="Asset key of the mask band, e.g. SCL.")
    build_parser.add_argument("--mask-values", type=float, nargs="+", default=None, help="Mask values to exclude.")
    build_parser.add_argument("--cloud-cover", type=float, default=None, help="Maximum eo:cloud_cover.")
    build_parser.add_argument("--reduce", nargs="+", default=None, help="Time reducers, e.g. 'median(B04)'.")
    build_parser.add_argument("--prefix", default="cube_", help="Output file name prefix.")
    build_parser.add_argument("--compression", default="DEFLATE", help="GeoTIFF compression.")
    build_parser.add_argument("--fail-fast", action="store_true", help="Abort on the first failed chunk.")
    build_parser.add_argument("--progress", action="store_true", help="Show a progress bar.")

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.command == "plan":
            show_plan(args)
        elif args.command == "build":
            build_cube(args)
    except EOCubeError as e:
        logging.error(f"{type(e).__name__}: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
