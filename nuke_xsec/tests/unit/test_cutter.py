"""
Unit tests for cuts and the Cutter.

Tests verify predicate semantics, fixed evaluation order, sideband
exclusivity and the central-value-only pass bookkeeping.
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from nuke_xsec.modules.cutter import (
    ApothemCut,
    Cutter,
    EqualsCut,
    InSetCut,
    MaxAngleCut,
    MaxCut,
    MinCut,
    RangeCut,
    build_cut,
)
from nuke_xsec.modules.event_source import ArrayEventSource, RecoView, TruthView
from nuke_xsec.modules.exceptions import ConfigurationError, SelectionError
from nuke_xsec.modules.histograms import CV_BAND
from nuke_xsec.modules.universes import Universe

from ..utils import make_event

CV = Universe(CV_BAND, CV_BAND)
SHIFTED = Universe("Scale_plus1sigma", "Scale", 1, {"value": 1.5})


def reco(**fields) -> RecoView:
    return RecoView(make_event(**fields), CV)


@pytest.mark.unit
class TestCuts:
    """Test individual predicates."""

    def test_range_is_half_open(self) -> None:
        cut = RangeCut("z", "vtx_z", 10.0, 20.0)

        assert cut(reco(vtx_z=10.0))
        assert cut(reco(vtx_z=19.9))
        assert not cut(reco(vtx_z=20.0))

    def test_empty_range_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            RangeCut("z", "vtx_z", 5.0, 5.0)

    def test_min_is_strict(self) -> None:
        cut = MinCut("threshold", "value", 5.0)

        assert not cut(reco(value=5.0))
        assert cut(reco(value=5.1))

    def test_max(self) -> None:
        cut = MaxCut("deadtime", "dead_time", 1)

        assert cut(reco(dead_time=0))
        assert not cut(reco(dead_time=1))

    def test_equals_returns_bool(self) -> None:
        cut = EqualsCut("target", "ann_target_code", 1026)
        view = RecoView(ArrayEventSource({"ann_target_code": np.array([1026])}, is_mc=False).reposition(0), CV)

        assert cut(view) is True

    def test_in_set_with_numpy_scalar(self) -> None:
        cut = InSetCut("lead", "ann_target_code", [1082, 2082])
        view = RecoView(ArrayEventSource({"ann_target_code": np.array([2082])}, is_mc=False).reposition(0), CV)

        assert cut(view)

    def test_apothem_hexagon(self) -> None:
        cut = ApothemCut("apothem", "vtx_x", "vtx_y", 850.0)

        assert cut(reco(vtx_x=0.0, vtx_y=0.0))
        assert cut(reco(vtx_x=-840.0, vtx_y=100.0))
        assert not cut(reco(vtx_x=900.0, vtx_y=0.0))
        # flat sides at |x| = apothem, corners on the y axis
        assert cut(reco(vtx_x=0.0, vtx_y=900.0))
        assert not cut(reco(vtx_x=0.0, vtx_y=1000.0))
        assert not cut(reco(vtx_x=800.0, vtx_y=600.0))

    def test_max_angle_in_degrees(self) -> None:
        cut = MaxAngleCut("angle", "muon_theta", 17.0)

        assert cut(reco(muon_theta=math.radians(16.9)))
        assert not cut(reco(muon_theta=math.radians(17.1)))

    def test_truth_cut_through_truth_view(self) -> None:
        cut = EqualsCut("IsCC", "mc_current", 1)

        assert cut(TruthView(make_event(mc_current=1), CV))


@pytest.mark.unit
class TestBuildCut:
    """Test building cuts from configuration tables."""

    def test_known_types(self) -> None:
        assert isinstance(build_cut({"type": "range", "field": "vtx_z", "low": 0, "high": 1}), RangeCut)
        assert isinstance(build_cut({"type": "min", "field": "muon_e", "min": 2000}), MinCut)
        assert isinstance(build_cut({"type": "apothem", "apothem": 850.0}), ApothemCut)
        assert isinstance(build_cut({"type": "max_angle", "field": "muon_theta", "max_degrees": 17}), MaxAngleCut)

    def test_name_defaults_to_type(self) -> None:
        assert build_cut({"type": "max", "field": "dead_time", "max": 1}).name == "max"

    def test_unknown_type(self) -> None:
        with pytest.raises(ConfigurationError):
            build_cut({"type": "ann"})

    def test_missing_key(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            build_cut({"type": "equals", "name": "IsCC", "field": "mc_current"})

        assert "IsCC" in str(exc_info.value)


@pytest.mark.unit
class TestCutter:
    """Test ordered selection and bookkeeping."""

    def test_threshold_scenario(self) -> None:
        """Values [1, 5, 10] with threshold 5 select only 10; 1 of 3 passes."""
        cutter = Cutter([MinCut("value > threshold", "value", 5.0)], name="scenario")
        source = ArrayEventSource({"value": np.array([1.0, 5.0, 10.0])}, is_mc=False)

        selected = [
            source.reposition(i).get("value")
            for i in range(len(source))
            if cutter.is_data_selected(RecoView(source.reposition(i), CV)).all()
        ]
        summary = cutter.summary()

        assert selected == [10.0]
        assert summary.loc[0, "passed"] == 1
        assert cutter.n_reco_seen == 3
        assert summary.loc[0, "fraction"] == pytest.approx(1.0 / 3.0)

    def test_preselection_short_circuits(self) -> None:
        cutter = Cutter([MinCut("a", "value", 5.0), MaxCut("b", "value", 100.0)])

        result = cutter.is_mc_selected(reco(value=1.0), 1.0)

        assert result.preselection == [False, False]
        assert not result
        assert cutter.summary()["passed"].tolist() == [0, 0]

    def test_cumulative_weighted_counts(self) -> None:
        cutter = Cutter([MinCut("a", "value", 0.0), MaxCut("b", "value", 5.0)])

        cutter.is_mc_selected(reco(value=1.0), 2.0)
        cutter.is_mc_selected(reco(value=7.0), 3.0)
        summary = cutter.summary()

        assert summary["passed"].tolist() == [2, 1]
        assert summary["passed_weighted"].tolist() == pytest.approx([5.0, 2.0])

    def test_only_cv_universe_counts(self) -> None:
        cutter = Cutter([MinCut("a", "value", 5.0)])
        event = make_event(value=4.0)

        shifted = cutter.is_mc_selected(RecoView(event, SHIFTED), 1.0)
        nominal = cutter.is_mc_selected(RecoView(event, CV), 1.0)

        assert shifted.all()
        assert not nominal.all()
        assert cutter.n_reco_seen == 1
        assert cutter.summary().loc[0, "passed"] == 0

    def test_sidebands(self) -> None:
        cutter = Cutter(
            [MinCut("a", "value", 0.0)],
            sidebands=[RangeCut("low", "side", 0.0, 1.0), RangeCut("high", "side", 1.0, 2.0)],
        )

        result = cutter.is_mc_selected(reco(value=1.0, side=1.5), 1.0)

        assert result.sidebands == [False, True]
        assert result.sideband == 1

    def test_overlapping_sidebands_raise(self) -> None:
        cutter = Cutter(
            [],
            sidebands=[RangeCut("low", "side", 0.0, 2.0), RangeCut("high", "side", 1.0, 3.0)],
        )
        with pytest.raises(SelectionError):
            cutter.is_mc_selected(reco(side=1.5), 1.0)

    def test_signal_and_phase_space(self) -> None:
        cutter = Cutter(
            [],
            signal_definition=[EqualsCut("IsNumu", "mc_incoming", 14), EqualsCut("IsCC", "mc_current", 1)],
            phase_space=[MinCut("TrueEmu", "mc_muon_e", 2000.0)],
        )

        assert cutter.is_signal(TruthView(make_event(mc_incoming=14, mc_current=1, mc_muon_e=3000.0), CV), 1.0)
        assert not cutter.is_signal(TruthView(make_event(mc_incoming=14, mc_current=2, mc_muon_e=3000.0), CV), 1.0)
        assert not cutter.is_efficiency_denominator(
            TruthView(make_event(mc_incoming=14, mc_current=1, mc_muon_e=1000.0), CV), 1.0
        )
        assert cutter.n_truth_seen == 3
        assert cutter.summary().set_index("cut").loc["IsCC", "passed"] == 2

    def test_reset_stats(self) -> None:
        cutter = Cutter([MinCut("a", "value", 0.0)])
        cutter.is_mc_selected(reco(value=1.0), 1.0)

        cutter.reset_stats()

        assert cutter.n_reco_seen == 0
        assert cutter.summary().loc[0, "passed"] == 0

    def test_from_config(self) -> None:
        cutter = Cutter.from_config(
            "tracker",
            {
                "preselection": [{"type": "range", "field": "vtx_z", "low": 5980.0, "high": 8422.0}],
                "signal_definition": [{"type": "equals", "field": "mc_current", "value": 1}],
            },
        )

        assert len(cutter.preselection) == 1
        assert len(cutter.sidebands) == 0
        assert len(cutter.signal_definition) == 1
        assert cutter.summary()["kind"].tolist() == ["preselection", "signal_definition"]
