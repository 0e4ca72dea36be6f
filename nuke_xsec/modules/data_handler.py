"""
Loading of ROOT playlists into event sources.

A playlist is a text file with one ROOT file path per line (blank lines and
lines starting with '#' are ignored). Every file holds:
- one reconstructed-event tree (any name other than Truth/Meta)
- "Meta" with a POT_Used branch (protons on target per job)
- "Truth" (MC only) with every simulated event, for efficiency denominators
"""

from __future__ import annotations

import logging
from pathlib import Path

import awkward as ak
import numpy as np
import uproot
from tqdm import tqdm

from ..utils.logging_config import get_tqdm_kwargs
from .event_source import ArrayEventSource
from .exceptions import ConfigurationError, DataLoadError

logger = logging.getLogger("NukeXSec.DataManager")

TRUTH_TREE = "Truth"
META_TREE = "Meta"
POT_BRANCH = "POT_Used"
RESERVED_TREES = (TRUTH_TREE, META_TREE)


def read_playlist(playlist: str | Path) -> list[Path]:
    """
    Paths listed in a playlist file.

    Raises:
        DataLoadError: If the playlist is missing or empty
    """
    playlist = Path(playlist)
    try:
        lines = playlist.read_text().splitlines()
    except FileNotFoundError:
        raise DataLoadError(f"Playlist not found: {playlist}")
    except OSError as e:
        raise DataLoadError(f"Error reading playlist {playlist}: {e}")

    files = [Path(line.strip()) for line in lines if line.strip() and not line.strip().startswith("#")]
    if not files:
        raise DataLoadError(f"Playlist {playlist} lists no files")
    return files


def _tree_names(file_path: Path) -> list[str]:
    try:
        with uproot.open(file_path) as file:
            return [name for name, cls in file.classnames(cycle=False).items() if cls == "TTree"]
    except (OSError, ValueError) as e:
        raise DataLoadError(f"Error opening ROOT file {file_path}: {e}")


def infer_reco_tree_name(file_path: Path) -> str:
    """
    Name of the single tree that is neither Truth nor Meta.

    Raises:
        DataLoadError: If the file cannot be opened or the tree is ambiguous
    """
    candidates = [name for name in _tree_names(file_path) if name not in RESERVED_TREES]
    if len(candidates) != 1:
        raise DataLoadError(
            f"Expected exactly one reconstructed-event tree in {file_path}, found {candidates}"
        )
    return candidates[0]


class DataManager:
    """Load MC and data playlists as event sources"""

    def __init__(self, mc_playlist: str | Path, data_playlist: str | Path) -> None:
        self.mc_playlist = Path(mc_playlist)
        self.data_playlist = Path(data_playlist)
        self.mc_files: list[Path] = []
        self.data_files: list[Path] = []
        self.reco_tree: str | None = None

    def check_inputs(self) -> str:
        """
        Validate the first file of each playlist and infer the reco tree name.

        Only the first file is opened, since opening every file remotely is
        expensive.

        Returns:
            Reco tree name

        Raises:
            DataLoadError: If a playlist is unusable or a required tree is missing
        """
        self.mc_files = read_playlist(self.mc_playlist)
        self.data_files = read_playlist(self.data_playlist)

        first_mc = self.mc_files[0]
        reco_tree = infer_reco_tree_name(first_mc)
        if TRUTH_TREE not in _tree_names(first_mc):
            raise DataLoadError(f"MC file {first_mc} has no '{TRUTH_TREE}' tree")

        first_data = self.data_files[0]
        if reco_tree not in _tree_names(first_data):
            raise DataLoadError(f"Data file {first_data} has no '{reco_tree}' tree")

        self.reco_tree = reco_tree
        logger.info(f"Reco tree: {reco_tree} ({len(self.mc_files)} MC, {len(self.data_files)} data files)")
        return reco_tree

    def _load_tree(self, files: list[Path], tree_name: str, desc: str) -> ak.Array:
        chunks = []
        for file_path in tqdm(files, **get_tqdm_kwargs(desc=desc, unit="file")):
            try:
                with uproot.open(file_path) as file:
                    if tree_name not in file:
                        raise DataLoadError(f"Tree '{tree_name}' not found in {file_path}")
                    chunks.append(file[tree_name].arrays(library="ak"))
            except (OSError, ValueError) as e:
                raise DataLoadError(f"Error reading ROOT file {file_path}: {e}")
        if len(chunks) == 1:
            return chunks[0]
        return ak.concatenate(chunks)

    def _pot(self, files: list[Path]) -> float:
        total = 0.0
        for file_path in files:
            try:
                with uproot.open(file_path) as file:
                    if META_TREE not in file or POT_BRANCH not in file[META_TREE].keys():
                        raise ConfigurationError(
                            f"No {META_TREE}/{POT_BRANCH} in {file_path}: exposure is required"
                        )
                    total += float(np.sum(file[META_TREE][POT_BRANCH].array(library="np")))
            except OSError as e:
                raise DataLoadError(f"Error reading ROOT file {file_path}: {e}")
        return total

    def _ensure_checked(self) -> str:
        if self.reco_tree is None:
            return self.check_inputs()
        return self.reco_tree

    def load_mc_reco(self) -> ArrayEventSource:
        """Reconstructed MC events, with the MC exposure."""
        tree = self._ensure_checked()
        events = self._load_tree(self.mc_files, tree, "MC reco files")
        source = ArrayEventSource(events, is_mc=True, pot_used=self._pot(self.mc_files), name=f"MC {tree}")
        logger.info(f"Loaded {len(source)} MC reco events ({source.pot_used:.3g} POT)")
        return source

    def load_mc_truth(self) -> ArrayEventSource:
        """Every simulated event from the Truth trees."""
        self._ensure_checked()
        events = self._load_tree(self.mc_files, TRUTH_TREE, "MC truth files")
        source = ArrayEventSource(events, is_mc=True, pot_used=self._pot(self.mc_files), name="MC Truth")
        logger.info(f"Loaded {len(source)} MC truth events")
        return source

    def load_data(self) -> ArrayEventSource:
        """Recorded events, with the data exposure."""
        tree = self._ensure_checked()
        events = self._load_tree(self.data_files, tree, "Data files")
        source = ArrayEventSource(events, is_mc=False, pot_used=self._pot(self.data_files), name=f"Data {tree}")
        logger.info(f"Loaded {len(source)} data events ({source.pot_used:.3g} POT)")
        return source
