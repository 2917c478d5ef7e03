from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from regularization.config import RegularizationConfig
from regularization.data_models import (
    WILDCARD,
    CanonicalValue,
    PairKey,
    RegularizationMapping,
    Triplet,
    UncuratedPair,
)
from regularization.hierarchy import CanonicalHierarchy, CanonicalModel, valid_options

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoMappingResult:
    proposals: tuple[RegularizationMapping, ...]
    mapped_pairs: tuple[PairKey, ...]
    skipped_existing: int = 0
    skipped_no_reference: int = 0
    skipped_make_conflict: int = 0

    @property
    def triplet_count(self) -> int:
        return sum(1 for m in self.proposals if not m.is_wildcard)


def choose_vehicle_type(model: CanonicalModel, config: RegularizationConfig) -> CanonicalValue | None:
    candidates = valid_options(model.vehicle_type_options, config)
    if len(candidates) == 1:
        return candidates[0].value
    if len(candidates) > 1 and config.use_cardinal_types:
        by_code = {opt.value.code: opt.value for opt in candidates}
        for code in config.cardinal_vehicle_type_codes:
            if code in by_code:
                return by_code[code]
    return None


def choose_fuel_type(model: CanonicalModel, model_year: int, config: RegularizationConfig) -> CanonicalValue | None:
    """Pick the fuel type for one model year, or None when a human has to decide."""
    options = model.fuel_options(model_year)
    candidates = valid_options(options, config)
    if len(candidates) == 1:
        return candidates[0].value
    if (
        not candidates
        and config.null_trusted_fuel_policy == "unspecified"
        and model.untyped_fuel_counts.get(model_year, 0) > 0
    ):
        for opt in options:
            if opt.value.code == config.fuel_type_placeholder_code:
                return opt.value
    return None


def propose_pair(
    pair: UncuratedPair,
    model: CanonicalModel,
    config: RegularizationConfig,
    created_at: datetime,
) -> list[RegularizationMapping]:
    year_start, year_end = config.untrusted_year_range
    vehicle_type = choose_vehicle_type(model, config)
    rows = [
        RegularizationMapping(
            uncurated_make_id=pair.make_id,
            uncurated_model_id=pair.model_id,
            kind=WILDCARD,
            canonical_make_id=model.make_id,
            canonical_model_id=model.id,
            vehicle_type_id=vehicle_type.id if vehicle_type else None,
            record_count=pair.record_count,
            year_range_start=year_start,
            year_range_end=year_end,
            created_at=created_at,
        )
    ]
    for model_year in sorted(model.model_years):
        fuel_type = choose_fuel_type(model, model_year, config)
        if fuel_type is None:
            continue
        rows.append(
            RegularizationMapping(
                uncurated_make_id=pair.make_id,
                uncurated_model_id=pair.model_id,
                kind=Triplet(model_year_id=model.model_year_ids[model_year], model_year=model_year),
                canonical_make_id=model.make_id,
                canonical_model_id=model.id,
                fuel_type_id=fuel_type.id,
                record_count=int(pair.records_by_model_year.get(model_year, 0)),
                year_range_start=year_start,
                year_range_end=year_end,
                created_at=created_at,
            )
        )
    return rows


def propose_mappings(
    hierarchy: CanonicalHierarchy,
    pairs: Iterable[UncuratedPair],
    *,
    existing_pairs: set[PairKey],
    make_resolutions: Mapping[int, int],
    config: RegularizationConfig,
    created_at: datetime | None = None,
) -> AutoMappingResult:
    """Propose mappings for pairs whose raw make/model exactly match a canonical model.

    Pairs listed in ``existing_pairs`` are skipped entirely, whatever they hold.
    ``make_resolutions`` maps an uncurated make id to the canonical make id it
    already resolves to; pairs that would contradict it are skipped.
    """
    created_at = created_at or datetime.now(timezone.utc)
    proposals: list[RegularizationMapping] = []
    mapped: list[PairKey] = []
    skipped_existing = skipped_no_reference = skipped_conflict = 0

    for pair in pairs:
        if pair.key in existing_pairs:
            skipped_existing += 1
            continue
        model = hierarchy.model(pair.make_id, pair.model_id)
        if model is None:
            skipped_no_reference += 1
            continue
        resolved_make = make_resolutions.get(pair.make_id)
        if resolved_make is not None and resolved_make != model.make_id:
            logger.debug("Skipping %s: make already resolves to %d", pair.display_name, resolved_make)
            skipped_conflict += 1
            continue
        proposals.extend(propose_pair(pair, model, config, created_at))
        mapped.append(pair.key)

    return AutoMappingResult(
        proposals=tuple(proposals),
        mapped_pairs=tuple(mapped),
        skipped_existing=skipped_existing,
        skipped_no_reference=skipped_no_reference,
        skipped_make_conflict=skipped_conflict,
    )
