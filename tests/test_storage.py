import pandas as pd
import pytest

from regularization.config import RegularizationConfig
from regularization.data_models import WILDCARD, PairAssignment, RegularizationMapping, Triplet
from regularization.errors import ComputationError, NotFoundError, ValidationError
from regularization.hierarchy import HIERARCHY_COLUMNS
from regservice.mapping_store import MappingStore
from regservice.storage import RecordStore


def _assignment(ids, make="ACMEE", model="X-1", fuels=None, vehicle_type="AU", target=("ACME", "X1")):
    return PairAssignment(
        uncurated_make_id=ids[f"make.{make}"],
        uncurated_model_id=ids[f"model.{make}/{model}"],
        canonical_make_id=ids[f"make.{target[0]}"],
        canonical_model_id=ids[f"model.{target[0]}/{target[1]}"],
        vehicle_type_id=ids[f"vt.{vehicle_type}"] if vehicle_type else None,
        fuel_types_by_year=fuels or {},
    )


# ── Record store ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_schema_creates_placeholders(make_engine):
    engine, _ = await make_engine(seed=False)
    fuel = await engine.records.placeholder("fuel_type")
    vtype = await engine.records.placeholder("vehicle_type")
    assert fuel is not None and fuel.code == "U"
    assert vtype is not None and vtype.code == "UK"
    assert await engine.records.ping() is True
    await engine.records.close()


@pytest.mark.asyncio
async def test_ensure_helpers_are_idempotent(make_engine):
    engine, ids = await make_engine()
    assert await engine.records.ensure_make("ACME") == ids["make.ACME"]
    assert await engine.records.ensure_model("X1", ids["make.ZETA"]) == ids["model.ZETA/X1"]
    assert ids["model.ZETA/X1"] != ids["model.ACME/X1"]
    assert await engine.records.ensure_fuel_type("U", "ignored") == ids["fuel.U"]
    await engine.records.close()


@pytest.mark.asyncio
async def test_trusted_combinations_frame(make_engine):
    engine, ids = await make_engine()
    frame = await engine.records.fetch_trusted_combinations()
    assert isinstance(frame, pd.DataFrame)
    assert list(frame.columns) == HIERARCHY_COLUMNS
    acme_x1 = frame[(frame["make_id"] == ids["make.ACME"]) & (frame["model_id"] == ids["model.ACME/X1"])]
    assert int(acme_x1["record_count"].sum()) == 5
    assert set(acme_x1["model_year"]) == {2015, 2018}
    assert await engine.records.count_untrusted_records() == 14
    await engine.records.close()


@pytest.mark.asyncio
async def test_canonical_value_lookup(make_engine):
    engine, ids = await make_engine()
    gas = await engine.records.get_canonical_value("fuel_type", ids["fuel.G"])
    assert gas.description == "Gasoline"
    year = await engine.records.get_canonical_value("model_year", ids["my.2015"])
    assert year.code == "2015"
    with pytest.raises(NotFoundError):
        await engine.records.get_canonical_value("make", 9999)
    await engine.records.close()


@pytest.mark.asyncio
async def test_unreachable_store_raises_computation_error(tmp_path):
    records = RecordStore(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/db.sqlite", RegularizationConfig())
    await records.connect()
    assert await records.ping() is False
    with pytest.raises(ComputationError):
        await records.fetch_trusted_combinations()
    await records.close()


# ── Mapping store ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_save_pair_assignment_writes_wildcard_and_triplets(make_engine):
    engine, ids = await make_engine()
    saved = await engine.mappings.save_pair_assignment(
        _assignment(ids, fuels={2015: ids["fuel.G"], 2018: ids["fuel.E"]})
    )
    assert len(saved) == 3
    wildcard = next(m for m in saved if m.is_wildcard)
    assert wildcard.vehicle_type_id == ids["vt.AU"]
    assert wildcard.record_count == 3
    assert wildcard.year_range_start == 2023 and wildcard.year_range_end == 2024
    triplets = {m.kind.model_year: m for m in saved if not m.is_wildcard}
    assert triplets[2015].fuel_type_id == ids["fuel.G"]
    assert triplets[2015].record_count == 2
    assert triplets[2018].kind == Triplet(model_year_id=ids["my.2018"], model_year=2018)
    assert all(m.canonical_model_id == ids["model.ACME/X1"] for m in saved)
    await engine.records.close()


@pytest.mark.asyncio
async def test_save_is_last_write_wins_and_none_clears_year(make_engine):
    engine, ids = await make_engine()
    store = engine.mappings
    await store.save_pair_assignment(_assignment(ids, fuels={2015: ids["fuel.G"], 2018: ids["fuel.E"]}))
    saved = await store.save_pair_assignment(
        _assignment(ids, fuels={2015: ids["fuel.D"], 2018: None}, vehicle_type="CA")
    )
    assert len(saved) == 2
    assert next(m for m in saved if m.is_wildcard).vehicle_type_id == ids["vt.CA"]
    assert next(m for m in saved if not m.is_wildcard).fuel_type_id == ids["fuel.D"]
    assert len(await store.fetch_all_mappings()) == 2
    await engine.records.close()


@pytest.mark.asyncio
async def test_save_is_atomic_on_missing_reference(make_engine):
    engine, ids = await make_engine()
    with pytest.raises(NotFoundError):
        await engine.mappings.save_pair_assignment(
            _assignment(ids, fuels={2015: ids["fuel.G"], 2018: 9999})
        )
    with pytest.raises(NotFoundError):
        await engine.mappings.save_pair_assignment(_assignment(ids, fuels={1999: ids["fuel.G"]}))
    assert await engine.mappings.has_any_mappings() is False
    await engine.records.close()


@pytest.mark.asyncio
async def test_save_rejects_unknown_pairs(make_engine):
    engine, ids = await make_engine()
    bad = PairAssignment(
        uncurated_make_id=ids["make.ACMEE"],
        uncurated_model_id=ids["model.ACME/X1"],
        canonical_make_id=ids["make.ACME"],
        canonical_model_id=ids["model.ACME/X1"],
    )
    with pytest.raises(NotFoundError):
        await engine.mappings.save_pair_assignment(bad)
    await engine.records.close()


@pytest.mark.asyncio
async def test_make_consistency_is_enforced(make_engine):
    engine, ids = await make_engine()
    z9_typo = await engine.records.ensure_model("Z-9", ids["make.ACMEE"])
    await engine.mappings.save_pair_assignment(_assignment(ids))
    conflicting = PairAssignment(
        uncurated_make_id=ids["make.ACMEE"],
        uncurated_model_id=z9_typo,
        canonical_make_id=ids["make.ZETA"],
        canonical_model_id=ids["model.ZETA/Z9"],
    )
    with pytest.raises(ValidationError):
        await engine.mappings.save_pair_assignment(conflicting)
    assert await engine.mappings.make_resolutions() == {ids["make.ACMEE"]: ids["make.ACME"]}
    await engine.records.close()


@pytest.mark.asyncio
async def test_strict_mode_limits_fuel_types_to_canonical_options(make_engine):
    engine, ids = await make_engine(config=RegularizationConfig(strict_fuel_type_validation=True))
    with pytest.raises(ValidationError):
        await engine.mappings.save_pair_assignment(_assignment(ids, fuels={2015: ids["fuel.E"]}))
    saved = await engine.mappings.save_pair_assignment(
        _assignment(ids, fuels={2015: ids["fuel.G"], 2016: ids["fuel.U"]})
    )
    assert len(saved) == 3
    await engine.records.close()


@pytest.mark.asyncio
async def test_create_mapping_rejects_duplicates(make_engine):
    engine, ids = await make_engine()
    row = RegularizationMapping(
        uncurated_make_id=ids["make.ZETA"],
        uncurated_model_id=ids["model.ZETA/Z9"],
        kind=WILDCARD,
        canonical_make_id=ids["make.ZETA"],
        canonical_model_id=ids["model.ZETA/X1"],
        vehicle_type_id=ids["vt.CA"],
    )
    created = await engine.mappings.create_mapping(row)
    assert created.id is not None
    with pytest.raises(ValidationError):
        await engine.mappings.create_mapping(row)
    await engine.records.close()


@pytest.mark.asyncio
async def test_insert_proposals_never_touches_edited_pairs(make_engine):
    engine, ids = await make_engine()
    await engine.mappings.save_pair_assignment(_assignment(ids, fuels={2015: ids["fuel.D"]}))
    before = await engine.mappings.fetch_all_mappings()
    proposal = RegularizationMapping(
        uncurated_make_id=ids["make.ACMEE"],
        uncurated_model_id=ids["model.ACMEE/X-1"],
        kind=Triplet(model_year_id=ids["my.2015"], model_year=2015),
        canonical_make_id=ids["make.ACME"],
        canonical_model_id=ids["model.ACME/X1"],
        fuel_type_id=ids["fuel.G"],
    )
    other = RegularizationMapping(
        uncurated_make_id=ids["make.ZETA"],
        uncurated_model_id=ids["model.ZETA/X1"],
        kind=WILDCARD,
        canonical_make_id=ids["make.ZETA"],
        canonical_model_id=ids["model.ZETA/X1"],
        vehicle_type_id=ids["vt.CA"],
    )
    written = await engine.mappings.insert_proposals([proposal, other])
    assert written == ((ids["make.ZETA"], ids["model.ZETA/X1"]),)
    after = await engine.mappings.fetch_all_mappings()
    assert [m for m in after if m.pair_key == proposal.pair_key] == before
    assert await engine.mappings.insert_proposals([]) == ()
    await engine.records.close()


@pytest.mark.asyncio
async def test_delete_operations(make_engine):
    engine, ids = await make_engine()
    saved = await engine.mappings.save_pair_assignment(_assignment(ids, fuels={2015: ids["fuel.G"]}))
    triplet = next(m for m in saved if not m.is_wildcard)
    removed = await engine.mappings.delete_mapping(triplet.id)
    assert removed.kind.model_year == 2015
    with pytest.raises(NotFoundError):
        await engine.mappings.delete_mapping(triplet.id)
    assert await engine.mappings.delete_pair_mappings(ids["make.ACMEE"], ids["model.ACMEE/X-1"]) == 1
    assert await engine.mappings.pairs_with_mappings() == set()
    await engine.records.close()


@pytest.mark.asyncio
async def test_statistics_and_display_info(make_engine):
    engine, ids = await make_engine()
    await engine.mappings.save_pair_assignment(_assignment(ids, fuels={2015: ids["fuel.G"]}))
    stats = await engine.mappings.statistics()
    assert stats.mapping_count == 2
    assert stats.total_untrusted_records == 14
    assert stats.make_model.assigned_count == 3
    assert stats.fuel_type.assigned_count == 2
    assert stats.vehicle_type.assigned_count == 3
    assert stats.vehicle_type.unassigned_count == 11

    info = await engine.mappings.display_info()
    key = (ids["make.ACMEE"], ids["model.ACMEE/X-1"])
    assert info[key] == {"canonical_make": "ACME", "canonical_model": "X1", "record_count": 3}
    makes = await engine.mappings.make_display_info()
    assert makes[ids["make.ACMEE"]] == {"canonical_make": "ACME", "record_count": 3}
    await engine.records.close()
