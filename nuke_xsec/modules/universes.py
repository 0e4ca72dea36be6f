"""
Systematic universes, weight model and the universe set.

A universe is one internally consistent alternate evaluation of every
derived quantity and event weight. Universes are grouped in bands (e.g. 100
flux universes). The "cv" band holds the single central-value universe.

Everything here is built once from an immutable UniverseConfig and is
read-only during the event loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

from .event_source import Event, is_truth_field
from .exceptions import ConfigurationError
from .histograms import CV_BAND

logger = logging.getLogger("NukeXSec.Universes")


@dataclass(frozen=True)
class BandSpec:
    """
    Definition of one systematic band.

    Attributes:
        name: Band name (e.g. "Flux", "MuonEnergyScale")
        kind: "weight" (per-universe weights from a vector field) or
              "shift" (lateral +-sigma shift of reco fields)
        n_universes: Number of universes in the band
        weight_field: Vector truth field with one weight per universe
        cv_weight_field: Scalar truth field used by universes outside this band
        shift_fields: Reco fields scaled by a shift band
        sigma: Fractional one-sigma shift
    """

    name: str
    kind: str
    n_universes: int = 2
    weight_field: str | None = None
    cv_weight_field: str | None = None
    shift_fields: tuple[str, ...] = ()
    sigma: float = 0.0

    def validate(self) -> None:
        if self.name == CV_BAND:
            raise ConfigurationError(f"Band name '{CV_BAND}' is reserved for the central value")
        if self.kind == "weight":
            if not self.weight_field:
                raise ConfigurationError(f"Weight band '{self.name}' needs a weight_field")
            if self.n_universes < 1:
                raise ConfigurationError(f"Weight band '{self.name}' needs at least one universe")
        elif self.kind == "shift":
            if not self.shift_fields:
                raise ConfigurationError(f"Shift band '{self.name}' needs shift_fields")
            for name in self.shift_fields:
                if is_truth_field(name):
                    raise ConfigurationError(
                        f"Shift band '{self.name}' cannot shift truth field '{name}'"
                    )
            if self.n_universes != 2:
                raise ConfigurationError(
                    f"Shift band '{self.name}' must have exactly 2 universes (-1 and +1 sigma)"
                )
        else:
            raise ConfigurationError(f"Unknown band kind '{self.kind}' for band '{self.name}'")


@dataclass(frozen=True)
class UniverseConfig:
    """
    Immutable description of the universe set and weight model.

    Attributes:
        bands: Systematic band definitions
        cv_weight_fields: Scalar weight fields multiplied into every MC weight
        skip_systematics: Keep only cv and a reduced flux band
        flux_band: Name of the flux band (kept when skipping systematics)
        n_flux_universes_when_skipping: Flux universes kept when skipping
    """

    bands: tuple[BandSpec, ...] = ()
    cv_weight_fields: tuple[str, ...] = ()
    skip_systematics: bool = False
    flux_band: str = "Flux"
    n_flux_universes_when_skipping: int = 2

    @classmethod
    def from_dict(cls, payload: dict[str, Any], skip_systematics: bool | None = None) -> UniverseConfig:
        """
        Build from the parsed universes.toml content.

        Args:
            payload: Parsed TOML dictionary
            skip_systematics: Override of the ``skip_systematics`` key
        """
        bands = tuple(
            BandSpec(
                name=band["name"],
                kind=band["kind"],
                n_universes=int(band.get("n_universes", 2)),
                weight_field=band.get("weight_field"),
                cv_weight_field=band.get("cv_weight_field"),
                shift_fields=tuple(band.get("shift_fields", ())),
                sigma=float(band.get("sigma", 0.0)),
            )
            for band in payload.get("bands", [])
        )
        skip = payload.get("skip_systematics", False) if skip_systematics is None else skip_systematics
        return cls(
            bands=bands,
            cv_weight_fields=tuple(payload.get("cv_weight_fields", ())),
            skip_systematics=bool(skip),
            flux_band=payload.get("flux_band", "Flux"),
            n_flux_universes_when_skipping=int(payload.get("n_flux_universes_when_skipping", 2)),
        )


class Universe:
    """One alternate evaluation context."""

    __slots__ = ("_name", "_band", "_index", "_shifts")

    def __init__(
        self, name: str, band: str, index: int = 0, shifts: dict[str, float] | None = None
    ) -> None:
        self._name = name
        self._band = band
        self._index = index
        self._shifts = dict(shifts) if shifts else {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def band(self) -> str:
        return self._band

    @property
    def index(self) -> int:
        return self._index

    @property
    def is_cv(self) -> bool:
        return self._band == CV_BAND

    def shift_for(self, field_name: str) -> float:
        """Multiplicative factor applied to a reco field in this universe."""
        return self._shifts.get(field_name, 1.0)

    def __repr__(self) -> str:
        return f"Universe({self._name!r}, band={self._band!r}, index={self._index})"


class Reweighter:
    """Interface: one multiplicative factor of the event weight."""

    name: str = "reweighter"

    def weight(self, universe: Universe, event: Event) -> float:
        raise NotImplementedError


class FieldReweighter(Reweighter):
    """Scalar weight read from a truth field, identical in every universe."""

    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        self.name = field_name

    def weight(self, universe: Universe, event: Event) -> float:
        return float(event.get(self.field_name))


class BandWeightReweighter(Reweighter):
    """
    Per-universe weight for one band.

    Universes of the band read entry ``universe.index`` of a vector field;
    every other universe reads the scalar cv field (or 1 if none is given).
    """

    def __init__(self, band: str, field_name: str, cv_field_name: str | None = None) -> None:
        self.band = band
        self.field_name = field_name
        self.cv_field_name = cv_field_name
        self.name = f"{band}:{field_name}"

    def weight(self, universe: Universe, event: Event) -> float:
        if universe.band == self.band:
            weights = event.get(self.field_name)
            if universe.index >= len(weights):
                raise ConfigurationError(
                    f"Universe {universe.index} of band '{self.band}' has no entry in "
                    f"'{self.field_name}' ({len(weights)} weights)"
                )
            return float(weights[universe.index])
        if self.cv_field_name is None:
            return 1.0
        return float(event.get(self.cv_field_name))


class Model:
    """Ordered list of reweighters; the event weight is their product."""

    def __init__(self, reweighters: list[Reweighter] | None = None) -> None:
        self.reweighters: list[Reweighter] = list(reweighters or [])

    def weight(self, universe: Universe, event: Event) -> float:
        if not event.is_mc:
            return 1.0
        total = 1.0
        for reweighter in self.reweighters:
            total *= reweighter.weight(universe, event)
        return total

    def __len__(self) -> int:
        return len(self.reweighters)


class UniverseSet:
    """
    Bands of universes plus the weight model.

    Attributes:
        bands: {band_name: tuple of universes}
        model: Weight model shared by all universes
    """

    def __init__(self, bands: dict[str, tuple[Universe, ...]], model: Model | None = None) -> None:
        if CV_BAND not in bands:
            raise ConfigurationError(f"Universe set has no '{CV_BAND}' band")
        if len(bands[CV_BAND]) != 1:
            raise ConfigurationError(
                f"'{CV_BAND}' band must hold exactly one universe, got {len(bands[CV_BAND])}"
            )
        for band, universes in bands.items():
            if not universes:
                raise ConfigurationError(f"Band '{band}' has no universes")
            for index, universe in enumerate(universes):
                if universe.band != band or universe.index != index:
                    raise ConfigurationError(
                        f"Universe {universe} is stored as entry {index} of band '{band}'"
                    )

        self.bands: dict[str, tuple[Universe, ...]] = dict(bands)
        self.model: Model = model or Model()

    @classmethod
    def from_config(cls, config: UniverseConfig) -> UniverseSet:
        """Build universes and the weight model from configuration."""
        bands: dict[str, tuple[Universe, ...]] = {CV_BAND: (Universe(CV_BAND, CV_BAND),)}
        reweighters: list[Reweighter] = [FieldReweighter(name) for name in config.cv_weight_fields]

        for spec in config.bands:
            spec.validate()
            if spec.name in bands:
                raise ConfigurationError(f"Band '{spec.name}' defined twice")

            if spec.kind == "weight":
                # cv weight of a weight band applies even when its universes are skipped
                reweighters.append(
                    BandWeightReweighter(spec.name, spec.weight_field, spec.cv_weight_field)
                )

            n_universes = spec.n_universes
            if config.skip_systematics:
                if spec.name != config.flux_band:
                    continue
                n_universes = min(n_universes, config.n_flux_universes_when_skipping)

            if spec.kind == "weight":
                bands[spec.name] = tuple(
                    Universe(f"{spec.name}_{i}", spec.name, i) for i in range(n_universes)
                )
            else:
                bands[spec.name] = tuple(
                    Universe(
                        f"{spec.name}_{label}",
                        spec.name,
                        i,
                        {name: 1.0 + direction * spec.sigma for name in spec.shift_fields},
                    )
                    for i, (label, direction) in enumerate((("minus1sigma", -1.0), ("plus1sigma", 1.0)))
                )

        universe_set = cls(bands, Model(reweighters))
        logger.info(
            f"Built {universe_set.n_universes} universes in {len(bands)} bands "
            f"(skip_systematics={config.skip_systematics})"
        )
        return universe_set

    @classmethod
    def cv_only(cls, model: Model | None = None) -> UniverseSet:
        """Set with only the central value, as used for data."""
        return cls({CV_BAND: (Universe(CV_BAND, CV_BAND),)}, model)

    def resolve(self, band: str) -> tuple[Universe, ...]:
        """Universes of one band, in index order."""
        if band not in self.bands:
            raise ConfigurationError(f"Unknown universe band '{band}' (known: {sorted(self.bands)})")
        return self.bands[band]

    @property
    def cv(self) -> Universe:
        return self.bands[CV_BAND][0]

    @property
    def band_sizes(self) -> dict[str, int]:
        return {band: len(universes) for band, universes in self.bands.items()}

    @property
    def n_universes(self) -> int:
        return sum(len(universes) for universes in self.bands.values())

    def weight(self, universe: Universe, event: Event) -> float:
        return self.model.weight(universe, event)

    def __iter__(self) -> Iterator[Universe]:
        for universes in self.bands.values():
            yield from universes

    def __repr__(self) -> str:
        return f"UniverseSet({self.band_sizes})"
