from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from regularization.data_models import (
    CompletionStatus,
    PairKey,
    RegularizationMapping,
    Triplet,
    UncuratedPair,
)


def resolved_model_years(mappings: Iterable[RegularizationMapping]) -> set[int]:
    """Model years with a triplet holding an explicit fuel type (placeholder included)."""
    return {
        m.kind.model_year
        for m in mappings
        if isinstance(m.kind, Triplet) and m.fuel_type_id is not None
    }


def compute_status(mappings: Iterable[RegularizationMapping], model_years: Iterable[int]) -> CompletionStatus:
    rows = list(mappings)
    if not rows:
        return CompletionStatus.UNASSIGNED
    wildcard = next((m for m in rows if m.is_wildcard), None)
    if wildcard is None or wildcard.vehicle_type_id is None:
        return CompletionStatus.PARTIAL
    if set(model_years) <= resolved_model_years(rows):
        return CompletionStatus.COMPLETE
    return CompletionStatus.PARTIAL


def group_by_pair(mappings: Iterable[RegularizationMapping]) -> dict[PairKey, list[RegularizationMapping]]:
    grouped: dict[PairKey, list[RegularizationMapping]] = defaultdict(list)
    for m in mappings:
        grouped[m.pair_key].append(m)
    return dict(grouped)


@dataclass(frozen=True)
class StatusSnapshot:
    statuses: Mapping[PairKey, CompletionStatus] = field(default_factory=lambda: MappingProxyType({}))
    all_unassigned: bool = False

    def status(self, key: PairKey) -> CompletionStatus:
        if self.all_unassigned:
            return CompletionStatus.UNASSIGNED
        return self.statuses.get(key, CompletionStatus.UNASSIGNED)

    def counts(self, pairs: Iterable[UncuratedPair]) -> dict[str, int]:
        out = {s.value: 0 for s in CompletionStatus}
        for pair in pairs:
            out[self.status(pair.key).value] += 1
        return out


ALL_UNASSIGNED = StatusSnapshot(all_unassigned=True)


def compute_statuses(
    pairs: Iterable[UncuratedPair],
    mappings: Iterable[RegularizationMapping],
) -> StatusSnapshot:
    grouped = group_by_pair(mappings)
    if not grouped:
        return ALL_UNASSIGNED
    statuses = {
        pair.key: compute_status(grouped.get(pair.key, ()), pair.raw_model_years_present)
        for pair in pairs
    }
    return StatusSnapshot(statuses=MappingProxyType(statuses))
