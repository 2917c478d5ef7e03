from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Mapping, Union

from regularization.errors import ValidationError

DimensionKind = Literal["make", "model", "model_year", "fuel_type", "vehicle_type"]

PairKey = tuple[int, int]


@dataclass(frozen=True)
class CanonicalValue:
    id: int
    kind: DimensionKind
    code: str
    description: str


@dataclass(frozen=True)
class Wildcard:
    """Model-level scope: the row applies to every model year of the pair."""

    def __str__(self) -> str:
        return "*"


WILDCARD = Wildcard()


@dataclass(frozen=True)
class Triplet:
    """Year-level scope: the row applies to one model year of the pair."""

    model_year_id: int
    model_year: int

    def __str__(self) -> str:
        return str(self.model_year)


MappingKind = Union[Wildcard, Triplet]


@dataclass(frozen=True)
class RegularizationMapping:
    uncurated_make_id: int
    uncurated_model_id: int
    kind: MappingKind
    canonical_make_id: int
    canonical_model_id: int
    fuel_type_id: int | None = None
    vehicle_type_id: int | None = None
    record_count: int = 0
    year_range_start: int | None = None
    year_range_end: int | None = None
    created_at: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.kind, Wildcard):
            if self.fuel_type_id is not None:
                raise ValidationError("Wildcard rows carry a vehicle type, never a fuel type")
        elif isinstance(self.kind, Triplet):
            if self.vehicle_type_id is not None:
                raise ValidationError("Triplet rows carry a fuel type, never a vehicle type")
        else:
            raise ValidationError(f"Unknown mapping kind: {self.kind!r}")

    @property
    def pair_key(self) -> PairKey:
        return (self.uncurated_make_id, self.uncurated_model_id)

    @property
    def row_key(self) -> tuple[int, int, MappingKind]:
        return (self.uncurated_make_id, self.uncurated_model_id, self.kind)

    @property
    def is_wildcard(self) -> bool:
        return isinstance(self.kind, Wildcard)


@dataclass(frozen=True)
class UncuratedPair:
    make_id: int
    model_id: int
    make_name: str
    model_name: str
    raw_model_years_present: tuple[int, ...]
    record_count: int
    earliest_year: int | None = None
    latest_year: int | None = None
    records_by_model_year: Mapping[int, int] = field(default_factory=dict, compare=False, hash=False)
    percentage_of_total: float = 0.0
    has_trusted_match: bool = False

    @property
    def key(self) -> PairKey:
        return (self.make_id, self.model_id)

    @property
    def display_name(self) -> str:
        return f"{self.make_name} / {self.model_name}"


class CompletionStatus(str, Enum):
    UNASSIGNED = "unassigned"
    PARTIAL = "partial"
    COMPLETE = "complete"


@dataclass(frozen=True)
class PairAssignment:
    """A human edit for one raw pair: one wildcard plus one entry per model year.

    ``fuel_types_by_year`` maps a model year to a fuel type id, or to ``None``
    when the year is explicitly left unassigned.
    """

    uncurated_make_id: int
    uncurated_model_id: int
    canonical_make_id: int
    canonical_model_id: int
    vehicle_type_id: int | None = None
    fuel_types_by_year: Mapping[int, int | None] = field(default_factory=dict, hash=False)

    @property
    def pair_key(self) -> PairKey:
        return (self.uncurated_make_id, self.uncurated_model_id)


@dataclass(frozen=True)
class FieldCoverage:
    assigned_count: int
    unassigned_count: int
    total_records: int

    @property
    def coverage_pct(self) -> float:
        if self.total_records == 0:
            return 0.0
        return round(self.assigned_count / self.total_records * 100.0, 2)


@dataclass(frozen=True)
class RegularizationStatistics:
    mapping_count: int
    total_untrusted_records: int
    make_model: FieldCoverage
    fuel_type: FieldCoverage
    vehicle_type: FieldCoverage
