#!/usr/bin/env python3
"""
Complete pipeline: event loop followed by cross-section extraction.

Phases:
  1. Configuration validation
  2. Event loop (MC reco, truth and data passes) -> histogram stores
  3. Cross-section extraction per (material, observable)

Usage:
  python -m nuke_xsec.run_pipeline <data playlist> <mc playlist> [--iterations 5]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from . import extract_cross_section, run_event_loop
from .modules.config import AnalysisConfig
from .modules.cross_section import output_name
from .modules.exceptions import AnalysisError, ConfigurationError
from .modules.histogram_store import store_path
from .utils.logging_config import skip_systematics


class PipelineManager:
    """
    Runs the event loop and the extraction with one configuration and
    output directory.
    """

    def __init__(self, config_dir: str | None = None, output_dir: str | None = None) -> None:
        """
        Initialize pipeline manager.

        Args:
            config_dir: Path to configuration directory (default: packaged)
            output_dir: Directory for histogram stores and cross sections
                        (default: the configured [output] directory)
        """
        print("\n" + "=" * 80)
        print("PHASE 1: CONFIGURATION VALIDATION")
        print("=" * 80)
        self.config_dir = config_dir
        self.config: AnalysisConfig = AnalysisConfig(config_dir)
        self.output_dir: Path = self.config.output_directory(output_dir)
        self._validate_config()
        self.output_dir.mkdir(exist_ok=True, parents=True)

        print("✓ Configuration loaded and validated")
        print(f"✓ Output directory: {self.output_dir}")
        if skip_systematics():
            print("⚠️  NUKE_XSEC_SKIP_SYST is set: only cv and a reduced flux band are filled")

    def _validate_config(self) -> None:
        """Validate that everything the extraction needs is configured"""
        if not self.config.materials:
            raise ConfigurationError(
                f"No materials defined in {self.config.config_dir / 'targets.toml'}"
            )
        observables = self.config.observables
        for name in self.config.extraction_observables:
            if name not in observables:
                raise ConfigurationError(f"Extraction observable '{name}' is not defined in variables.toml")
            if "x" in observables[name]:
                raise ConfigurationError(f"Extraction observable '{name}' must be 1D")
        if self.config.flux_table_path() is None:
            print("⚠️  Warning: no flux table configured; extraction will fail for every combination")

    def _common_args(self) -> list[str]:
        args = ["--output-dir", str(self.output_dir)]
        if self.config_dir is not None:
            args += ["--config-dir", str(self.config_dir)]
        return args

    def phase2_event_loop(self, data_playlist: str, mc_playlist: str) -> tuple[Path, Path]:
        """
        Run the event loop.

        Returns:
            (data store path, MC store path)
        """
        print("\n" + "=" * 80)
        print("PHASE 2: EVENT LOOP")
        print("=" * 80)
        code = run_event_loop.main([data_playlist, mc_playlist, *self._common_args()])
        if code != run_event_loop.EXIT_SUCCESS:
            raise AnalysisError(f"Event loop failed with exit code {code}")
        return (
            store_path(self.output_dir / run_event_loop.DATA_OUT_FILE_NAME),
            store_path(self.output_dir / run_event_loop.MC_OUT_FILE_NAME),
        )

    def phase3_extraction(self, data_store: Path, mc_store: Path, n_iterations: int, n_playlists: int = 1) -> list[Path]:
        """
        Extract every configured cross section.

        Returns:
            Paths of the cross-section stores that were written
        """
        print("\n" + "=" * 80)
        print("PHASE 3: CROSS-SECTION EXTRACTION")
        print("=" * 80)
        code = extract_cross_section.main(
            [str(n_iterations), str(data_store), str(mc_store), str(n_playlists), *self._common_args()]
        )
        if code != extract_cross_section.EXIT_SUCCESS:
            raise AnalysisError(f"Cross-section extraction failed with exit code {code}")

        written = []
        for observable in self.config.extraction_observables:
            for material in self.config.materials:
                path = store_path(self.output_dir / output_name(material, observable))
                if path.exists():
                    written.append(path)
        return written

    def run_full_pipeline(self, data_playlist: str, mc_playlist: str, n_iterations: int | None = None) -> list[Path]:
        """Execute phases 2 and 3."""
        n_iterations = n_iterations or self.config.n_iterations
        data_store, mc_store = self.phase2_event_loop(data_playlist, mc_playlist)
        written = self.phase3_extraction(data_store, mc_store, n_iterations)

        print("\n" + "=" * 80)
        print("ANALYSIS COMPLETE!")
        print("=" * 80)
        for path in written:
            print(f"  - {path}")
        print("=" * 80 + "\n")
        return written


def main(argv: list[str] | None = None) -> int:
    """Main entry point with argument parsing"""
    parser = argparse.ArgumentParser(description="Nuclear-target cross-section pipeline")
    parser.add_argument("data_playlist", help="Text file listing data ROOT files")
    parser.add_argument("mc_playlist", help="Text file listing MC ROOT files")
    parser.add_argument("--config-dir", default=None, help="Configuration directory (default: packaged)")
    parser.add_argument("--output-dir", default=None, help="Output directory (default: config [output] directory)")
    parser.add_argument("--iterations", type=int, default=None, help="Unfolding iterations (default: config)")
    args = parser.parse_args(argv)

    try:
        pipeline = PipelineManager(config_dir=args.config_dir, output_dir=args.output_dir)
        pipeline.run_full_pipeline(args.data_playlist, args.mc_playlist, args.iterations)
    except AnalysisError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
