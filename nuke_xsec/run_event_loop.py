#!/usr/bin/env python3
"""
Fill event-selection histograms for every universe from MC and data playlists.

Runs the MC reco, truth and data passes and writes two histogram stores:
  runEventLoopMC   - MC histograms, MC POT, flux integrals, nucleon counts
  runEventLoopData - data histograms, data POT

Exit codes:
  0 success, 1 bad command line or configuration, 2 bad input file,
  3 bad file read, 4 bad output file

Usage:
  python -m nuke_xsec.run_event_loop <data playlist> <mc playlist> [--config-dir DIR]
"""

from __future__ import annotations

import argparse
import logging

from .modules.config import AnalysisConfig
from .modules.data_handler import DataManager
from .modules.event_loop import EventLoop, build_samples
from .modules.exceptions import (
    ConfigurationError,
    DataLoadError,
    EventLoopError,
    OutputError,
)
from .modules.flux import FluxTable
from .modules.histogram_store import HistogramStore
from .modules.universes import UniverseSet
from .utils.logging_config import setup_logging, suppress_warnings

EXIT_SUCCESS = 0
EXIT_BAD_CMD_LINE = 1
EXIT_BAD_INPUT_FILE = 2
EXIT_BAD_FILE_READ = 3
EXIT_BAD_OUTPUT_FILE = 4

MC_OUT_FILE_NAME = "runEventLoopMC"
DATA_OUT_FILE_NAME = "runEventLoopData"

logger = logging.getLogger("NukeXSec.RunEventLoop")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fill universe histograms from MC and data playlists"
    )
    parser.add_argument("data_playlist", help="Text file listing data ROOT files")
    parser.add_argument("mc_playlist", help="Text file listing MC ROOT files")
    parser.add_argument("--config-dir", default=None, help="Configuration directory (default: packaged)")
    parser.add_argument(
        "--output-dir", default=None, help="Directory for the output stores (default: config [output] directory)"
    )
    parser.add_argument("--first-entry", type=int, default=0, help="First entry to process")
    parser.add_argument(
        "--last-entry", type=int, default=None, help="One past the last entry to process (default: all)"
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def parse_args(argv: list[str] | None) -> argparse.Namespace | int:
    """Parsed arguments, or an exit code if parsing stopped."""
    try:
        return build_parser().parse_args(argv)
    except SystemExit as e:
        return EXIT_SUCCESS if e.code in (0, None) else EXIT_BAD_CMD_LINE


def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    args = parse_args(argv)
    if isinstance(args, int):
        return args

    setup_logging(args.verbose)
    suppress_warnings()

    print("\n" + "=" * 80)
    print("EVENT LOOP: CONFIGURATION")
    print("=" * 80)
    try:
        config = AnalysisConfig(args.config_dir)
        universes = UniverseSet.from_config(config.universe_config())
        samples = build_samples(config, universes)
        loop = EventLoop(universes, samples)
        flux_path = config.flux_table_path()
        flux = FluxTable.from_csv(flux_path, config.universe_config().flux_band) if flux_path else None
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_BAD_CMD_LINE
    except DataLoadError as e:
        logger.error(f"Cannot read flux table: {e}")
        return EXIT_BAD_INPUT_FILE
    print(f"✓ {universes.n_universes} universes in bands {universes.band_sizes}")
    print(f"✓ Samples: {', '.join(sample.name for sample in samples)}")

    manager = DataManager(args.mc_playlist, args.data_playlist)
    try:
        manager.check_inputs()
    except DataLoadError as e:
        logger.error(f"Failed to find required trees in MC playlist {args.mc_playlist} "
                     f"and/or data playlist {args.data_playlist}: {e}")
        return EXIT_BAD_INPUT_FILE

    print("\n" + "=" * 80)
    print("EVENT LOOP: LOADING PLAYLISTS")
    print("=" * 80)
    try:
        mc_source = manager.load_mc_reco()
        truth_source = manager.load_mc_truth()
        data_source = manager.load_data()
    except ConfigurationError as e:
        logger.error(f"Missing input metadata: {e}")
        return EXIT_BAD_INPUT_FILE
    except DataLoadError as e:
        logger.error(f"Failed to read input: {e}")
        return EXIT_BAD_FILE_READ

    entries = None
    if args.first_entry or args.last_entry is not None:
        last = args.last_entry if args.last_entry is not None else max(len(mc_source), len(truth_source), len(data_source))
        entries = range(args.first_entry, last)

    print("\n" + "=" * 80)
    print("EVENT LOOP: MC RECO, TRUTH AND DATA PASSES")
    print("=" * 80)
    try:
        loop.run(mc_source, truth_source, data_source, entries=entries)
    except EventLoopError as e:
        logger.error(str(e))
        return EXIT_BAD_FILE_READ

    print("\n" + "=" * 80)
    print("EVENT LOOP: WRITING OUTPUT")
    print("=" * 80)
    output_dir = config.output_directory(args.output_dir)
    try:
        mc_store = HistogramStore.open(output_dir / MC_OUT_FILE_NAME, mode="recreate", description="MC")
        loop.write_mc(
            mc_store,
            mc_source.pot_used,
            flux,
            e_min=float(config.flux_settings.get("e_min", 0.0)),
            e_max=float(config.flux_settings.get("e_max", 100.0)),
        )
        mc_path = mc_store.save()

        data_store = HistogramStore.open(output_dir / DATA_OUT_FILE_NAME, mode="recreate", description="Data")
        loop.write_data(data_store, data_source.pot_used)
        data_path = data_store.save()
    except OutputError as e:
        logger.error(f"Failed to write histograms: {e}")
        return EXIT_BAD_OUTPUT_FILE

    print(f"✓ MC histograms: {mc_path}")
    print(f"✓ Data histograms: {data_path}")
    print("Success")
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())
