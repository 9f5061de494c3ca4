#!/usr/bin/env python3
"""
Command-line interface for digislide.

Usage:
    digislide info slide.svs
    digislide detect slide.svs --core-diameter 0.6 --overlay
    digislide detect 1234 --backend tepis --url https://host/tepis --user me
    digislide core slide.svs --cores out/slide_cores.json --id 3 --level 1 -o core3.png

Subcommands:
    info        Show pyramid metadata
    detect      Detect TMA cores and write the core registry
    core        Export the image of one detected core
"""

from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path
from typing import List, Optional

from digislide.detection.tma import DetectionParameters
from digislide.errors import SlideError
from digislide.reporting.overlay import save_overlay
from digislide.slide import DigitalSlide
from digislide.utils.config import get_default_path, load_config
from digislide.utils.logging import get_logger, log_parameters, setup_logging

logger = get_logger(__name__)

BACKENDS = ("openslide", "czi", "tepis")


def _guess_backend(slide: str) -> str:
    if slide.lower().endswith(".czi"):
        return "czi"
    if Path(slide).exists():
        return "openslide"
    return "tepis"


def open_slide(args, config: dict):
    """
    Open the slide named on the command line with the selected backend.

    Returns:
        (DigitalSlide, closeable) where closeable is released by the caller
    """
    backend = args.backend or _guess_backend(args.slide)
    logger.info("Opening %s with the %s backend", args.slide, backend)

    if backend == "czi":
        scene = config["czi"]["scene"] if args.scene is None else args.scene
        slide = DigitalSlide.from_czi(args.slide, scene=scene,
                                      min_level_size=config["czi"]["min_level_size"],
                                      n_workers=args.workers)
        return slide, slide.source

    if backend == "openslide":
        from digislide.io import openslide_source
        if not openslide_source.is_initialized():
            openslide_source.initialize(args.openslide_path or None)
        slide = DigitalSlide.from_openslide(args.slide, n_workers=args.workers)
        return slide, slide.source

    from digislide.io.tepis_source import TepisClient
    url = args.url or get_default_path("tepis_url")
    if not url:
        raise SystemExit("A server URL is required for the tepis backend (--url or TEPIS_URL)")
    client = TepisClient(url, timeout=config["tepis"]["timeout_s"],
                         verify=config["tepis"]["verify_ssl"])
    user = args.user or os.getenv("TEPIS_USER")
    if user:
        password = os.getenv("TEPIS_PASSWORD") or getpass.getpass(f"Password for {user}: ")
        client.authenticate(user, password)
    slide = DigitalSlide.from_tepis(client, args.slide, n_workers=args.workers)
    return slide, client


def _add_slide_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("slide", help="Slide file path, or image id for the tepis backend")
    parser.add_argument("--backend", choices=BACKENDS,
                        help="Pixel backend (default: from the slide argument)")
    parser.add_argument("--scene", type=int,
                        help="CZI scene index (default: czi.scene from the config)")
    parser.add_argument("--openslide-path", default=get_default_path("openslide_library_path"),
                        help="Directory holding the OpenSlide library")
    parser.add_argument("--url", help="TEPIS server URL (default: $TEPIS_URL)")
    parser.add_argument("--user", help="TEPIS user name (default: $TEPIS_USER)")
    parser.add_argument("--workers", type=int, default=1,
                        help="Threads for the radial symmetry transform")
    parser.add_argument("--config-dir", type=Path,
                        help="Directory containing digislide.json")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="digislide",
        description="Multi-resolution slide access and TMA core detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose (DEBUG) logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress most output")
    parser.add_argument("--log-file", type=Path, help="Write logs to file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # === INFO command ===
    info_parser = subparsers.add_parser("info", help="Show pyramid metadata")
    _add_slide_arguments(info_parser)

    # === DETECT command ===
    detect_parser = subparsers.add_parser("detect", help="Detect TMA cores")
    _add_slide_arguments(detect_parser)
    detect_parser.add_argument("--core-diameter", type=float, help="Core diameter in mm")
    detect_parser.add_argument("--radius-tolerance", type=float,
                               help="Radius tolerance in percent")
    detect_parser.add_argument("--strictness", type=float,
                               help="Detection strictness percentile (0-100)")
    detect_parser.add_argument("--target-core-diameter-pixels", type=float,
                               help="Minimum core diameter in pixels on the detection level")
    detect_parser.add_argument("--output-dir", "-o", type=Path,
                               default=Path(get_default_path("output_dir")),
                               help="Output directory")
    detect_parser.add_argument("--overlay", action="store_true",
                               help="Also write a PNG with the detected cores drawn")

    # === CORE command ===
    core_parser = subparsers.add_parser("core", help="Export the image of one core")
    _add_slide_arguments(core_parser)
    core_parser.add_argument("--cores", type=Path, required=True, help="Core registry JSON")
    core_parser.add_argument("--id", type=int, required=True, dest="core_id", help="Core id")
    core_parser.add_argument("--level", type=int, default=0, help="Pyramid level")
    core_parser.add_argument("--output", "-o", type=Path, required=True, help="Output image")

    return parser


def cmd_info(args, config: dict) -> int:
    slide, handle = open_slide(args, config)
    try:
        meta = slide.metadata
        print(f"Slide: {slide.name}")
        print(f"Levels: {meta.level_count}")
        print(f"{'level':>5}  {'width':>8}  {'height':>8}  {'spacing (um/px)':>18}  "
              f"{'downsampling':>12}  {'tile':>11}")
        for level in range(meta.level_count):
            w, h = meta.pixel_size[level]
            sx, sy = meta.physical_spacing[level]
            tile = meta.tile_size[level] if meta.is_tiled(level) else None
            tile_str = f"{tile[0]}x{tile[1]}" if tile else "-"
            print(f"{level:>5}  {w:>8}  {h:>8}  {sx * 1e3:>8.4f} x {sy * 1e3:<7.4f}  "
                  f"{meta.downsampling[level][0]:>12.2f}  {tile_str:>11}")
        if meta.bounding_box is not None:
            bb = meta.bounding_box
            print(f"Bounding box: x={bb.x} y={bb.y} width={bb.width} height={bb.height}")
    finally:
        handle.close()
    return 0


def cmd_detect(args, config: dict) -> int:
    params = DetectionParameters.from_dict(config["detection"])
    overrides = {
        name: getattr(args, name)
        for name in ("core_diameter", "radius_tolerance", "strictness",
                     "target_core_diameter_pixels")
        if getattr(args, name) is not None
    }
    if overrides:
        params = params.replace(**overrides)

    slide, handle = open_slide(args, config)
    try:
        cores = slide.detect_cores(params)
        output_dir = Path(args.output_dir)
        registry_path = slide.save_cores(output_dir / f"{slide.name}_cores.json")
        print(f"Detected {len(cores)} cores -> {registry_path}")
        if args.overlay:
            overlay_path = save_overlay(output_dir / f"{slide.name}_cores.png",
                                        slide.core_overlay())
            print(f"Overlay -> {overlay_path}")
    finally:
        handle.close()
    return 0


def cmd_core(args, config: dict) -> int:
    slide, handle = open_slide(args, config)
    try:
        slide.load_cores(args.cores)
        image = slide.get_core_region(args.core_id, args.level)
        path = save_overlay(args.output, image)
        print(f"Core {args.core_id} at level {args.level} -> {path}")
    finally:
        handle.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO")
    setup_logging(level=level, log_file=args.log_file)

    handlers = {"info": cmd_info, "detect": cmd_detect, "core": cmd_core}
    if args.command not in handlers:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config_dir)
        if args.verbose:
            log_parameters(logger, vars(args), "Arguments")
        return handlers[args.command](args, config)
    except (SlideError, FileNotFoundError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
