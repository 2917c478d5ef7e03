from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import pandas as pd

from regularization.config import RegularizationConfig
from regularization.data_models import CanonicalValue

logger = logging.getLogger(__name__)

HIERARCHY_COLUMNS = [
    "make_id", "make_name", "model_id", "model_name",
    "model_year_id", "model_year",
    "fuel_type_id", "fuel_type_code", "fuel_type_description",
    "vehicle_type_id", "vehicle_type_code", "vehicle_type_description",
    "record_count",
]


@dataclass(frozen=True)
class CanonicalOption:
    value: CanonicalValue
    record_count: int


@dataclass(frozen=True)
class CanonicalModel:
    id: int
    name: str
    make_id: int
    vehicle_type_options: tuple[CanonicalOption, ...]
    model_years: Mapping[int, tuple[CanonicalOption, ...]]
    model_year_ids: Mapping[int, int] = field(default_factory=dict)
    untyped_fuel_counts: Mapping[int, int] = field(default_factory=dict)

    def fuel_options(self, model_year: int) -> tuple[CanonicalOption, ...]:
        return self.model_years.get(model_year, ())


@dataclass(frozen=True)
class CanonicalMake:
    id: int
    name: str
    models: Mapping[int, CanonicalModel]


@dataclass(frozen=True)
class CanonicalHierarchy:
    """Make → Model → options tree built from trusted-year records only.

    A missing make or model means no canonical reference is available.
    """

    makes: Mapping[int, CanonicalMake]

    def model(self, make_id: int, model_id: int) -> CanonicalModel | None:
        make = self.makes.get(make_id)
        if make is None:
            return None
        return make.models.get(model_id)

    @property
    def model_count(self) -> int:
        return sum(len(m.models) for m in self.makes.values())


EMPTY_HIERARCHY = CanonicalHierarchy(makes=MappingProxyType({}))


def is_placeholder(value: CanonicalValue, config: RegularizationConfig) -> bool:
    if value.kind == "fuel_type" and value.code == config.fuel_type_placeholder_code:
        return True
    if value.kind == "vehicle_type" and value.code == config.vehicle_type_placeholder_code:
        return True
    desc = value.description.lower()
    return any(marker in desc for marker in config.placeholder_markers)


def valid_options(options: tuple[CanonicalOption, ...], config: RegularizationConfig) -> list[CanonicalOption]:
    return [opt for opt in options if not is_placeholder(opt.value, config)]


def _with_placeholder(options: list[CanonicalOption], placeholder: CanonicalValue | None) -> tuple[CanonicalOption, ...]:
    if placeholder is not None and not any(opt.value.id == placeholder.id for opt in options):
        options = [*options, CanonicalOption(value=placeholder, record_count=0)]
    return tuple(options)


def build_canonical_hierarchy(
    frame: pd.DataFrame,
    *,
    fuel_type_placeholder: CanonicalValue | None,
    vehicle_type_placeholder: CanonicalValue | None = None,
) -> CanonicalHierarchy:
    """Group trusted combinations into the canonical tree.

    ``frame`` holds one row per (make, model, model year, fuel type, vehicle
    type) group with a ``record_count`` column, as returned by
    ``RecordStore.fetch_trusted_combinations``. Every Model x ModelYear gets the
    fuel type placeholder with a zero count when trusted data lacks it.
    """
    if frame.empty:
        return EMPTY_HIERARCHY

    frame = frame.dropna(subset=["make_id", "model_id"])
    dated = frame.dropna(subset=["model_year_id"])

    fuel_groups = (
        dated.dropna(subset=["fuel_type_id"])
        .groupby(
            ["make_id", "model_id", "model_year", "fuel_type_id", "fuel_type_code", "fuel_type_description"],
            as_index=False,
        )["record_count"]
        .sum()
    )
    untyped = (
        dated[dated["fuel_type_id"].isna()]
        .groupby(["make_id", "model_id", "model_year"], as_index=False)["record_count"]
        .sum()
    )
    years = dated[["make_id", "model_id", "model_year", "model_year_id"]].drop_duplicates()
    vt_groups = (
        frame.dropna(subset=["vehicle_type_id"])
        .groupby(
            ["make_id", "model_id", "vehicle_type_id", "vehicle_type_code", "vehicle_type_description"],
            as_index=False,
        )["record_count"]
        .sum()
    )
    names = frame[["make_id", "make_name", "model_id", "model_name"]].drop_duplicates(subset=["make_id", "model_id"])

    fuels: dict[tuple[int, int], dict[int, list[CanonicalOption]]] = defaultdict(lambda: defaultdict(list))
    for row in fuel_groups.itertuples(index=False):
        value = CanonicalValue(
            id=int(row.fuel_type_id),
            kind="fuel_type",
            code=str(row.fuel_type_code),
            description=str(row.fuel_type_description),
        )
        key = (int(row.make_id), int(row.model_id))
        fuels[key][int(row.model_year)].append(CanonicalOption(value=value, record_count=int(row.record_count)))

    year_ids: dict[tuple[int, int], dict[int, int]] = defaultdict(dict)
    for row in years.itertuples(index=False):
        year_ids[(int(row.make_id), int(row.model_id))][int(row.model_year)] = int(row.model_year_id)

    untyped_counts: dict[tuple[int, int], dict[int, int]] = defaultdict(dict)
    for row in untyped.itertuples(index=False):
        untyped_counts[(int(row.make_id), int(row.model_id))][int(row.model_year)] = int(row.record_count)

    vehicle_types: dict[tuple[int, int], list[CanonicalOption]] = defaultdict(list)
    for row in vt_groups.itertuples(index=False):
        value = CanonicalValue(
            id=int(row.vehicle_type_id),
            kind="vehicle_type",
            code=str(row.vehicle_type_code),
            description=str(row.vehicle_type_description),
        )
        vehicle_types[(int(row.make_id), int(row.model_id))].append(
            CanonicalOption(value=value, record_count=int(row.record_count))
        )

    makes: dict[int, tuple[str, dict[int, CanonicalModel]]] = {}
    for row in names.itertuples(index=False):
        make_id, model_id = int(row.make_id), int(row.model_id)
        key = (make_id, model_id)
        model_years = {
            year: _with_placeholder(
                sorted(fuels[key].get(year, []), key=lambda o: o.value.description),
                fuel_type_placeholder,
            )
            for year in sorted(year_ids.get(key, {}))
        }
        vt_options = _with_placeholder(
            sorted(vehicle_types.get(key, []), key=lambda o: o.value.code),
            vehicle_type_placeholder,
        )
        model = CanonicalModel(
            id=model_id,
            name=str(row.model_name),
            make_id=make_id,
            vehicle_type_options=vt_options,
            model_years=MappingProxyType(model_years),
            model_year_ids=MappingProxyType(dict(year_ids.get(key, {}))),
            untyped_fuel_counts=MappingProxyType(dict(untyped_counts.get(key, {}))),
        )
        makes.setdefault(make_id, (str(row.make_name), {}))[1][model_id] = model

    hierarchy = CanonicalHierarchy(
        makes=MappingProxyType({
            make_id: CanonicalMake(id=make_id, name=name, models=MappingProxyType(models))
            for make_id, (name, models) in makes.items()
        })
    )
    logger.info("Built canonical hierarchy: %d makes, %d models", len(hierarchy.makes), hierarchy.model_count)
    return hierarchy
