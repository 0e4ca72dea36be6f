"""
Unit tests for HistogramStore.

Tests verify open modes, write-once parameters, missing ingredients and
atomic saves with a metadata sidecar.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nuke_xsec.modules.exceptions import DataLoadError, MissingIngredient, OutputError
from nuke_xsec.modules.histogram_store import HistogramStore, store_path
from nuke_xsec.modules.histograms import CV_BAND, HistogramAccumulator
from nuke_xsec.modules.universes import Universe

from ..utils import assert_file_exists, assert_histograms_close


@pytest.fixture
def hist() -> HistogramAccumulator:
    hist = HistogramAccumulator("tracker_Emu_migration", [0.0, 1.0, 2.0], [0.0, 1.0, 2.0], band_sizes={CV_BAND: 1, "Flux": 2})
    hist.fill(Universe(CV_BAND, CV_BAND), 0.5, 1.5, weight=2.0)
    hist.fill(Universe("Flux_1", "Flux", 1), 1.5, 0.5, weight=3.0)
    return hist


@pytest.mark.unit
class TestStorePath:
    def test_suffix_added(self) -> None:
        assert store_path("runEventLoopMC") == Path("runEventLoopMC.pkl")
        assert store_path("out/runEventLoopMC.pkl") == Path("out/runEventLoopMC.pkl")

    def test_dotted_names_keep_their_stem(self) -> None:
        assert store_path("Iron_Emu.v2") == Path("Iron_Emu.v2.pkl")


@pytest.mark.unit
class TestHistogramStore:
    """Test writing, saving and reading back."""

    def test_save_and_read(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        store = HistogramStore.open(tmp_test_dir / "runEventLoopMC", mode="create", description="MC")
        store.write_histogram(hist.name, hist)
        store.write_parameter("pot_used", 1.5e20)
        path = store.save()

        loaded = HistogramStore.open(path, mode="read")

        assert_file_exists(path)
        assert loaded.histogram_names() == ["tracker_Emu_migration"]
        assert loaded.read_parameter("pot_used") == 1.5e20
        assert_histograms_close(loaded.read_histogram(hist.name), hist, rtol=0.0)
        assert "pot_used" in loaded
        assert hist.name in loaded

    def test_metadata_sidecar(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        store = HistogramStore.open(tmp_test_dir / "runEventLoopData", mode="create", description="Data")
        store.write_histogram("tracker_Emu_data", hist)
        store.write_parameter("pot_used", 1.0e20)
        store.save()

        with open(tmp_test_dir / "runEventLoopData.json") as f:
            metadata = json.load(f)

        assert metadata["histograms"] == ["tracker_Emu_data"]
        assert metadata["parameters"] == {"pot_used": 1.0e20}
        assert metadata["description"] == "Data"
        assert not (tmp_test_dir / "runEventLoopData.tmp").exists()

    def test_histogram_renamed_to_key(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        store = HistogramStore.open(tmp_test_dir / "store", mode="create")
        store.write_histogram("crossSection", hist)

        assert store.read_histogram("crossSection").name == "crossSection"

    def test_read_returns_copy(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        store = HistogramStore.open(tmp_test_dir / "store", mode="create")
        store.write_histogram(hist.name, hist)

        first = store.read_histogram(hist.name)
        first.scale(10.0)

        assert store.read_histogram(hist.name).cv[1, 2] == 2.0

    def test_create_refuses_existing(self, tmp_test_dir: Path) -> None:
        HistogramStore.open(tmp_test_dir / "store", mode="create").save()
        with pytest.raises(OutputError):
            HistogramStore.open(tmp_test_dir / "store", mode="create")

    def test_recreate_overwrites(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        first = HistogramStore.open(tmp_test_dir / "store", mode="create")
        first.write_histogram(hist.name, hist)
        first.save()

        HistogramStore.open(tmp_test_dir / "store", mode="recreate").save()

        assert HistogramStore.open(tmp_test_dir / "store").histogram_names() == []

    def test_update_keeps_content(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        first = HistogramStore.open(tmp_test_dir / "store", mode="create")
        first.write_parameter("pot_used", 1.0)
        first.save()

        updated = HistogramStore.open(tmp_test_dir / "store", mode="update")
        updated.write_histogram(hist.name, hist)
        updated.save()

        loaded = HistogramStore.open(tmp_test_dir / "store")
        assert loaded.parameters == {"pot_used": 1.0}
        assert loaded.histogram_names() == [hist.name]

    def test_read_missing_file(self, tmp_test_dir: Path) -> None:
        with pytest.raises(DataLoadError):
            HistogramStore.open(tmp_test_dir / "absent", mode="read")

    def test_read_corrupt_file(self, tmp_test_dir: Path) -> None:
        (tmp_test_dir / "corrupt.pkl").write_bytes(b"not a pickle")
        with pytest.raises(DataLoadError):
            HistogramStore.open(tmp_test_dir / "corrupt.pkl", mode="read")

    def test_read_only_store_rejects_writes(self, tmp_test_dir: Path, hist: HistogramAccumulator) -> None:
        HistogramStore.open(tmp_test_dir / "store", mode="create").save()
        store = HistogramStore.open(tmp_test_dir / "store", mode="read")
        with pytest.raises(OutputError):
            store.write_histogram(hist.name, hist)

    def test_parameters_are_write_once(self, tmp_test_dir: Path) -> None:
        store = HistogramStore.open(tmp_test_dir / "store", mode="create")
        store.write_parameter("tracker_Emu_fiducial_nucleons", 1.0e30)
        with pytest.raises(OutputError):
            store.write_parameter("tracker_Emu_fiducial_nucleons", 2.0e30)

    def test_missing_ingredients(self, tmp_test_dir: Path) -> None:
        store = HistogramStore.open(tmp_test_dir / "store", mode="create")

        with pytest.raises(MissingIngredient) as exc_info:
            store.read_histogram("Iron_Emu_data")
        assert exc_info.value.name == "Iron_Emu_data"
        with pytest.raises(MissingIngredient):
            store.read_parameter("pot_used")

    def test_unknown_mode(self, tmp_test_dir: Path) -> None:
        with pytest.raises(ValueError):
            HistogramStore(tmp_test_dir / "store", mode="append")
