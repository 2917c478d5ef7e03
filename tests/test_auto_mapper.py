from datetime import datetime, timezone
from types import MappingProxyType

from regularization.auto_mapper import choose_fuel_type, choose_vehicle_type, propose_mappings
from regularization.config import RegularizationConfig
from regularization.data_models import CanonicalValue, Triplet, UncuratedPair
from regularization.hierarchy import CanonicalHierarchy, CanonicalMake, CanonicalModel, CanonicalOption

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

GAS = CanonicalValue(id=11, kind="fuel_type", code="G", description="Gasoline")
ELECTRIC = CanonicalValue(id=12, kind="fuel_type", code="E", description="Electric")
FUEL_UNKNOWN = CanonicalValue(id=10, kind="fuel_type", code="U", description="Unknown")
CAR = CanonicalValue(id=21, kind="vehicle_type", code="AU", description="Automobile")
TRUCK = CanonicalValue(id=22, kind="vehicle_type", code="CA", description="Truck")
BUS = CanonicalValue(id=23, kind="vehicle_type", code="AB", description="Bus")
TYPE_UNKNOWN = CanonicalValue(id=20, kind="vehicle_type", code="UK", description="Unknown")


def _opts(*values):
    return tuple(CanonicalOption(value=v, record_count=0 if v.code in ("U", "UK") else 5) for v in values)


def _model(vehicle_types, years, untyped=None, make_id=1, model_id=100):
    return CanonicalModel(
        id=model_id,
        name="X1",
        make_id=make_id,
        vehicle_type_options=_opts(*vehicle_types, TYPE_UNKNOWN),
        model_years={year: _opts(*fuels, FUEL_UNKNOWN) for year, fuels in years.items()},
        model_year_ids={year: year - 2000 for year in years},
        untyped_fuel_counts=untyped or {},
    )


def _hierarchy(*models):
    makes = {}
    for m in models:
        makes.setdefault(m.make_id, {})[m.id] = m
    return CanonicalHierarchy(
        makes={mid: CanonicalMake(id=mid, name=f"MAKE{mid}", models=ms) for mid, ms in makes.items()}
    )


def _pair(make_id=1, model_id=100, years=(2015, 2016, 2018, 2020)):
    return UncuratedPair(
        make_id=make_id,
        model_id=model_id,
        make_name="ACME",
        model_name="X1",
        raw_model_years_present=years,
        record_count=6,
        records_by_model_year=MappingProxyType({y: 1 for y in years}),
        has_trusted_match=True,
    )


# ── Vehicle type ────────────────────────────────────────────────────


def test_single_valid_vehicle_type_is_assigned():
    assert choose_vehicle_type(_model([CAR], {}), RegularizationConfig()) == CAR


def test_cardinal_priority_breaks_ties():
    cfg = RegularizationConfig(cardinal_vehicle_type_codes=("CA", "AU"))
    assert choose_vehicle_type(_model([CAR, TRUCK], {}), cfg) == TRUCK


def test_no_cardinal_match_leaves_vehicle_type_unassigned():
    cfg = RegularizationConfig(cardinal_vehicle_type_codes=("MC",))
    assert choose_vehicle_type(_model([CAR, BUS], {}), cfg) is None


def test_cardinal_types_can_be_disabled():
    cfg = RegularizationConfig(use_cardinal_types=False)
    assert choose_vehicle_type(_model([CAR, TRUCK], {}), cfg) is None


def test_placeholder_only_vehicle_type_is_unassigned():
    assert choose_vehicle_type(_model([], {}), RegularizationConfig()) is None


# ── Fuel type ───────────────────────────────────────────────────────


def test_fuel_type_assigned_only_when_unambiguous():
    model = _model([CAR], {2015: [GAS], 2018: [GAS, ELECTRIC]})
    cfg = RegularizationConfig()
    assert choose_fuel_type(model, 2015, cfg) == GAS
    assert choose_fuel_type(model, 2018, cfg) is None
    assert choose_fuel_type(model, 2030, cfg) is None


def test_untyped_trusted_year_left_for_review_by_default():
    model = _model([CAR], {2008: []}, untyped={2008: 4})
    assert choose_fuel_type(model, 2008, RegularizationConfig()) is None


def test_untyped_trusted_year_resolves_to_placeholder_when_configured():
    model = _model([CAR], {2008: [], 2009: []}, untyped={2008: 4})
    cfg = RegularizationConfig(null_trusted_fuel_policy="unspecified")
    assert choose_fuel_type(model, 2008, cfg) == FUEL_UNKNOWN
    assert choose_fuel_type(model, 2009, cfg) is None


# ── Proposals ───────────────────────────────────────────────────────


def test_scenario_proposals_cover_unambiguous_years_only():
    hierarchy = _hierarchy(_model([CAR], {2015: [GAS], 2018: [ELECTRIC]}))
    result = propose_mappings(
        hierarchy, [_pair()], existing_pairs=set(), make_resolutions={},
        config=RegularizationConfig(), created_at=NOW,
    )
    assert result.mapped_pairs == ((1, 100),)
    wildcard = [m for m in result.proposals if m.is_wildcard]
    assert len(wildcard) == 1 and wildcard[0].vehicle_type_id == CAR.id
    triplets = {m.kind.model_year: m.fuel_type_id for m in result.proposals if not m.is_wildcard}
    assert triplets == {2015: GAS.id, 2018: ELECTRIC.id}
    assert result.triplet_count == 2
    first = next(m for m in result.proposals if not m.is_wildcard)
    assert first.kind == Triplet(model_year_id=15, model_year=2015)
    assert first.year_range_start == 2023 and first.year_range_end == 2024


def test_wildcard_written_even_without_vehicle_type():
    hierarchy = _hierarchy(_model([CAR, BUS], {2015: [GAS]}))
    cfg = RegularizationConfig(use_cardinal_types=False)
    result = propose_mappings(hierarchy, [_pair()], existing_pairs=set(), make_resolutions={}, config=cfg, created_at=NOW)
    wildcard = [m for m in result.proposals if m.is_wildcard]
    assert wildcard and wildcard[0].vehicle_type_id is None


def test_pairs_with_existing_rows_are_skipped_entirely():
    hierarchy = _hierarchy(_model([CAR], {2015: [GAS]}))
    result = propose_mappings(
        hierarchy, [_pair()], existing_pairs={(1, 100)}, make_resolutions={},
        config=RegularizationConfig(), created_at=NOW,
    )
    assert result.proposals == ()
    assert result.skipped_existing == 1


def test_pairs_without_reference_are_skipped():
    hierarchy = _hierarchy(_model([CAR], {2015: [GAS]}))
    result = propose_mappings(
        hierarchy, [_pair(model_id=999)], existing_pairs=set(), make_resolutions={},
        config=RegularizationConfig(), created_at=NOW,
    )
    assert result.proposals == ()
    assert result.skipped_no_reference == 1


def test_make_conflict_is_skipped():
    hierarchy = _hierarchy(_model([CAR], {2015: [GAS]}))
    result = propose_mappings(
        hierarchy, [_pair()], existing_pairs=set(), make_resolutions={1: 7},
        config=RegularizationConfig(), created_at=NOW,
    )
    assert result.proposals == ()
    assert result.skipped_make_conflict == 1


def test_proposals_are_deterministic():
    hierarchy = _hierarchy(_model([CAR], {2015: [GAS], 2018: [ELECTRIC]}))
    kwargs = dict(existing_pairs=set(), make_resolutions={}, config=RegularizationConfig(), created_at=NOW)
    first = propose_mappings(hierarchy, [_pair()], **kwargs)
    second = propose_mappings(hierarchy, [_pair()], **kwargs)
    assert first == second
