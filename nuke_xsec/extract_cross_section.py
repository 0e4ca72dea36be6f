#!/usr/bin/env python3
"""
Extract differential cross sections per material from event-loop output.

Subtracts backgrounds, unfolds, corrects for efficiency and normalizes by
flux, nucleons and POT. Writes one "<material>_<observable>_crossSection"
store per combination.

Exit codes:
  0 success (individual failed combinations are logged), 1 bad command line
  or configuration, 2 data file unreadable, 3 MC file unreadable,
  5 output file exists or cannot be written

Usage:
  python -m nuke_xsec.extract_cross_section <iterations> <data store> <mc store> [n_playlists]
"""

from __future__ import annotations

import argparse
import logging

import pandas as pd

from .modules.config import AnalysisConfig
from .modules.cross_section import CrossSectionExtractor, output_name
from .modules.exceptions import ConfigurationError, DataLoadError, OutputError
from .modules.histogram_store import HistogramStore, store_path
from .utils.logging_config import setup_logging, suppress_warnings

EXIT_SUCCESS = 0
EXIT_BAD_CMD_LINE = 1
EXIT_BAD_DATA_FILE = 2
EXIT_BAD_MC_FILE = 3
EXIT_BAD_OUTPUT = 5

logger = logging.getLogger("NukeXSec.ExtractCrossSection")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Extract cross sections from event-loop stores")
    parser.add_argument("n_iterations", type=int, help="Bayesian unfolding iterations")
    parser.add_argument("data_file", help="Data histogram store (runEventLoopData)")
    parser.add_argument("mc_file", help="MC histogram store (runEventLoopMC)")
    parser.add_argument(
        "n_playlists",
        type=int,
        nargs="?",
        default=1,
        help="Number of playlists merged into the stores (default: 1)",
    )
    parser.add_argument("--config-dir", default=None, help="Configuration directory (default: packaged)")
    parser.add_argument(
        "--output-dir", default=None, help="Directory for the cross-section stores (default: config [output] directory)"
    )
    parser.add_argument("--observables", default=None, help="Comma-separated observables (default: config)")
    parser.add_argument("--materials", default=None, help="Comma-separated materials (default: config)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def parse_args(argv: list[str] | None) -> argparse.Namespace | int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as e:
        return EXIT_SUCCESS if e.code in (0, None) else EXIT_BAD_CMD_LINE
    if args.n_iterations < 1 or args.n_playlists < 1:
        logger.error("Iterations and number of playlists must be positive")
        return EXIT_BAD_CMD_LINE
    return args


SUMMARY_COLUMNS = ["material", "observable", "status", "integral", "uncertainty", "reason"]


def summarize(results: list) -> pd.DataFrame:
    """
    One row per (material, observable) with its status.

    Extracted results also carry the cross section integrated over the
    in-range bins and its total uncertainty; failures leave both empty.
    """
    rows = []
    for result in results:
        integral, uncertainty = result.integrated_cross_section() if result.ok else (None, None)
        rows.append(
            {
                "material": result.material,
                "observable": result.observable,
                "status": "ok" if result.ok else "failed",
                "integral": integral,
                "uncertainty": uncertainty,
                "reason": "" if result.ok else result.reason,
            }
        )
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    args = parse_args(argv)
    if isinstance(args, int):
        return args

    setup_logging(args.verbose)
    suppress_warnings()

    try:
        config = AnalysisConfig(args.config_dir)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_BAD_CMD_LINE

    observables = args.observables.split(",") if args.observables else config.extraction_observables
    materials = config.materials
    if args.materials:
        unknown = [name for name in args.materials.split(",") if name not in materials]
        if unknown:
            logger.error(f"Unknown materials {unknown} (known: {sorted(materials)})")
            return EXIT_BAD_CMD_LINE
        materials = {name: materials[name] for name in args.materials.split(",")}

    try:
        data_store = HistogramStore.open(args.data_file, mode="read")
    except DataLoadError as e:
        logger.error(f"Failed to open data file {args.data_file}: {e}")
        return EXIT_BAD_DATA_FILE
    try:
        mc_store = HistogramStore.open(args.mc_file, mode="read")
    except DataLoadError as e:
        logger.error(f"Failed to open MC file {args.mc_file}: {e}")
        return EXIT_BAD_MC_FILE

    output_dir = config.output_directory(args.output_dir)
    for observable in observables:
        for material in materials:
            path = store_path(output_dir / output_name(material, observable))
            if path.exists():
                logger.error(f"Could not create {path}: it already exists")
                return EXIT_BAD_OUTPUT

    print("\n" + "=" * 80)
    print("CROSS-SECTION EXTRACTION")
    print("=" * 80)
    try:
        extractor = CrossSectionExtractor(
            mc_store,
            data_store,
            args.n_iterations,
            n_playlists=args.n_playlists,
            covariance_iterations=config.covariance_iterations,
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_BAD_CMD_LINE

    try:
        results = extractor.extract_all(materials, observables)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_BAD_CMD_LINE

    try:
        for result in results:
            if result.ok:
                path = result.write(output_dir)
                print(f"✓ {result.material} {result.observable}: {path}")
    except OutputError as e:
        logger.error(str(e))
        return EXIT_BAD_OUTPUT

    print("\n" + summarize(results).to_string(index=False))
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())
