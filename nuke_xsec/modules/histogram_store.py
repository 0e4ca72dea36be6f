"""
Persistent store for histograms and scalar parameters.

A store is one pickle file holding serialized HistogramAccumulators and
named float parameters, plus a JSON sidecar with metadata (creation time,
format version, keys) for inspection without unpickling. Writes are atomic:
payload goes to a temporary file that is then moved into place.
"""

from __future__ import annotations

import json
import logging
import pickle
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .exceptions import DataLoadError, MissingIngredient, OutputError
from .histograms import HistogramAccumulator

logger = logging.getLogger("NukeXSec.Store")

STORE_SUFFIX = ".pkl"


@dataclass
class StoreMetadata:
    """
    Sidecar metadata of a store file.

    Attributes:
        created_at: ISO timestamp of the last save
        version: Store format version
        histograms: Names of stored histograms
        parameters: Stored parameters and their values
        description: Free text
    """

    created_at: str
    version: str
    histograms: list[str] = field(default_factory=list)
    parameters: dict[str, float] = field(default_factory=dict)
    description: str = ""


def store_path(path: str | Path) -> Path:
    """Path of the store file, with the store suffix appended if missing."""
    path = Path(path)
    if path.suffix != STORE_SUFFIX:
        path = path.with_name(path.name + STORE_SUFFIX)
    return path


class HistogramStore:
    """
    Named histograms and write-once parameters backed by one file.

    Usage:
        >>> store = HistogramStore.open("runEventLoopMC", mode="create")
        >>> store.write_histogram(hist.name, hist)
        >>> store.write_parameter("pot_used", 1.2e20)
        >>> store.save()
    """

    STORE_VERSION: str = "1.0.0"
    MODES = ("read", "create", "recreate", "update")

    def __init__(self, path: str | Path, mode: str = "read", description: str = "") -> None:
        """
        Args:
            path: Store file path (suffix ".pkl" added if missing)
            mode: "read" (must exist), "create" (must not exist),
                  "recreate" (overwrite) or "update" (load if present)
            description: Free text saved in the metadata
        """
        if mode not in self.MODES:
            raise ValueError(f"Unknown store mode '{mode}' (expected one of {self.MODES})")

        self.path: Path = store_path(path)
        self.metadata_path: Path = self.path.with_suffix(".json")
        self.mode: str = mode
        self.description: str = description
        self._histograms: dict[str, dict[str, Any]] = {}
        self._parameters: dict[str, float] = {}

        if mode == "create" and self.path.exists():
            raise OutputError(f"Refusing to overwrite existing output file: {self.path}")
        if mode == "read" and not self.path.exists():
            raise DataLoadError(f"Histogram store not found: {self.path}")
        if mode in ("read", "update") and self.path.exists():
            self._load()

    @classmethod
    def open(cls, path: str | Path, mode: str = "read", description: str = "") -> HistogramStore:
        return cls(path, mode, description)

    def _load(self) -> None:
        try:
            with open(self.path, "rb") as f:
                payload = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            raise DataLoadError(f"Error reading histogram store {self.path}: {e}")

        if not isinstance(payload, dict) or "histograms" not in payload:
            raise DataLoadError(f"{self.path} is not a histogram store")
        self._histograms = payload["histograms"]
        self._parameters = payload.get("parameters", {})
        logger.debug(
            f"Loaded {self.path.name}: {len(self._histograms)} histograms, "
            f"{len(self._parameters)} parameters"
        )

    # ------------------------------------------------------------------
    # Histograms
    # ------------------------------------------------------------------

    def _check_writable(self) -> None:
        if self.mode == "read":
            raise OutputError(f"Histogram store {self.path} was opened read-only")

    def write_histogram(self, name: str, hist: HistogramAccumulator) -> None:
        """Store (or replace) a histogram under name."""
        self._check_writable()
        payload = hist.to_dict()
        payload["name"] = name
        self._histograms[name] = payload

    def read_histogram(self, name: str) -> HistogramAccumulator:
        """
        Raises:
            MissingIngredient: If no histogram of that name is stored
        """
        if name not in self._histograms:
            raise MissingIngredient(name, str(self.path))
        return HistogramAccumulator.from_dict(self._histograms[name])

    def has_histogram(self, name: str) -> bool:
        return name in self._histograms

    def histogram_names(self) -> list[str]:
        return sorted(self._histograms)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def write_parameter(self, name: str, value: float) -> None:
        """
        Store a scalar once.

        Raises:
            OutputError: If the parameter was already written
        """
        self._check_writable()
        if name in self._parameters:
            raise OutputError(f"Parameter '{name}' already written to {self.path}")
        self._parameters[name] = float(value)

    def read_parameter(self, name: str) -> float:
        if name not in self._parameters:
            raise MissingIngredient(name, str(self.path))
        return self._parameters[name]

    def has_parameter(self, name: str) -> bool:
        return name in self._parameters

    @property
    def parameters(self) -> dict[str, float]:
        return dict(self._parameters)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> Path:
        """
        Write the store atomically (temp file, then rename) plus its metadata.

        Returns:
            Path of the store file

        Raises:
            OutputError: If the destination cannot be written
        """
        self._check_writable()
        payload = {
            "version": self.STORE_VERSION,
            "histograms": self._histograms,
            "parameters": self._parameters,
        }

        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)
            shutil.move(str(temp_path), str(self.path))
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise OutputError(f"Failed to write histogram store {self.path}: {e}")

        metadata = StoreMetadata(
            created_at=datetime.now().isoformat(),
            version=self.STORE_VERSION,
            histograms=self.histogram_names(),
            parameters=dict(self._parameters),
            description=self.description,
        )
        temp_metadata_path = self.metadata_path.with_suffix(".json.tmp")
        try:
            with open(temp_metadata_path, "w") as f:
                json.dump(asdict(metadata), f, indent=2)
            shutil.move(str(temp_metadata_path), str(self.metadata_path))
        except OSError as e:
            if temp_metadata_path.exists():
                temp_metadata_path.unlink()
            logger.warning(f"Failed to save metadata for {self.path.name}: {e}")

        size_mb = self.path.stat().st_size / 1024 / 1024
        logger.info(f"Wrote {self.path} ({len(self._histograms)} histograms, {size_mb:.1f} MB)")
        # later saves of a created store overwrite it
        if self.mode == "create":
            self.mode = "update"
        return self.path

    def __contains__(self, name: object) -> bool:
        return name in self._histograms or name in self._parameters

    def __repr__(self) -> str:
        return (
            f"HistogramStore({str(self.path)!r}, mode={self.mode!r}, "
            f"histograms={len(self._histograms)}, parameters={len(self._parameters)})"
        )
