import pytest

from regularization.config import RegularizationConfig, parse_year_set
from regularization.data_models import (
    WILDCARD,
    FieldCoverage,
    RegularizationMapping,
    Triplet,
    UncuratedPair,
)
from regularization.errors import ValidationError


def _mapping(kind, **kwargs):
    return RegularizationMapping(
        uncurated_make_id=1,
        uncurated_model_id=2,
        kind=kind,
        canonical_make_id=1,
        canonical_model_id=2,
        **kwargs,
    )


def test_wildcard_carries_vehicle_type_only():
    row = _mapping(WILDCARD, vehicle_type_id=7)
    assert row.is_wildcard
    assert row.pair_key == (1, 2)
    with pytest.raises(ValidationError):
        _mapping(WILDCARD, fuel_type_id=3)


def test_triplet_carries_fuel_type_only():
    row = _mapping(Triplet(model_year_id=5, model_year=2015), fuel_type_id=3)
    assert not row.is_wildcard
    assert row.row_key == (1, 2, Triplet(5, 2015))
    with pytest.raises(ValidationError):
        _mapping(Triplet(model_year_id=5, model_year=2015), vehicle_type_id=7)


def test_unknown_kind_rejected():
    with pytest.raises(ValidationError):
        _mapping(None)


def test_scope_labels():
    assert str(WILDCARD) == "*"
    assert str(Triplet(model_year_id=9, model_year=2020)) == "2020"


def test_pair_display_name():
    pair = UncuratedPair(
        make_id=1, model_id=2, make_name="ACME", model_name="X1",
        raw_model_years_present=(2015,), record_count=4,
    )
    assert pair.key == (1, 2)
    assert pair.display_name == "ACME / X1"


def test_field_coverage_percentage():
    assert FieldCoverage(assigned_count=1, unassigned_count=3, total_records=4).coverage_pct == 25.0
    assert FieldCoverage(assigned_count=0, unassigned_count=0, total_records=0).coverage_pct == 0.0


# ── Configuration ───────────────────────────────────────────────────


def test_parse_year_set_ranges_and_singles():
    assert parse_year_set("2011-2013,2018") == frozenset({2011, 2012, 2013, 2018})
    assert parse_year_set(" 2023 , 2024 ") == frozenset({2023, 2024})
    assert parse_year_set("") == frozenset()


def test_parse_year_set_rejects_reversed_range():
    with pytest.raises(ValidationError):
        parse_year_set("2020-2011")


def test_config_rejects_overlapping_years():
    with pytest.raises(ValidationError):
        RegularizationConfig(trusted_years=frozenset({2020, 2021}), untrusted_years=frozenset({2021}))


def test_config_rejects_empty_year_sets():
    with pytest.raises(ValidationError):
        RegularizationConfig(untrusted_years=frozenset())


def test_config_rejects_unknown_null_fuel_policy():
    with pytest.raises(ValidationError):
        RegularizationConfig(null_trusted_fuel_policy="guess")


def test_config_untrusted_range():
    cfg = RegularizationConfig(untrusted_years=frozenset({2024, 2023}))
    assert cfg.untrusted_year_range == (2023, 2024)
