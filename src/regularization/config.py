from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from regularization.errors import ValidationError

NullTrustedFuelPolicy = Literal["no_reference", "unspecified"]


def parse_year_set(text: str) -> frozenset[int]:
    """Parse ``"2011-2022"`` or ``"2011-2015,2018"`` into a set of years."""
    years: set[int] = set()
    for chunk in text.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "-" in chunk:
            start_s, end_s = chunk.split("-", 1)
            start, end = int(start_s), int(end_s)
            if end < start:
                raise ValidationError(f"Invalid year range: {chunk}")
            years.update(range(start, end + 1))
        else:
            years.add(int(chunk))
    return frozenset(years)


@dataclass(frozen=True)
class RegularizationConfig:
    trusted_years: frozenset[int] = field(default_factory=lambda: frozenset(range(2011, 2023)))
    untrusted_years: frozenset[int] = field(default_factory=lambda: frozenset({2023, 2024}))
    use_cardinal_types: bool = True
    cardinal_vehicle_type_codes: tuple[str, ...] = ("AU", "CA", "MC")
    fuel_type_placeholder_code: str = "U"
    vehicle_type_placeholder_code: str = "UK"
    placeholder_markers: tuple[str, ...] = ("not specified", "not assigned", "non spécifié")
    strict_fuel_type_validation: bool = False
    fuel_type_data_start_year: int = 2017
    regularize_pre_fuel_era: bool = True
    null_trusted_fuel_policy: NullTrustedFuelPolicy = "no_reference"

    def __post_init__(self) -> None:
        if not self.trusted_years:
            raise ValidationError("No trusted years configured")
        if not self.untrusted_years:
            raise ValidationError("No untrusted years configured")
        overlap = self.trusted_years & self.untrusted_years
        if overlap:
            raise ValidationError(f"Years cannot be both trusted and untrusted: {sorted(overlap)}")
        if self.null_trusted_fuel_policy not in ("no_reference", "unspecified"):
            raise ValidationError(f"Unknown null fuel policy: {self.null_trusted_fuel_policy}")

    @property
    def untrusted_year_range(self) -> tuple[int, int]:
        return min(self.untrusted_years), max(self.untrusted_years)
