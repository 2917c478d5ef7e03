import pytest

from regularization.config import RegularizationConfig
from regservice.engine import RegularizationEngine

TRUSTED_YEAR = 2018
UNTRUSTED_YEAR = 2023

FUEL_TYPES = [("U", "Unknown"), ("G", "Gasoline"), ("E", "Electric"), ("D", "Diesel")]
VEHICLE_TYPES = [("UK", "Unknown"), ("AU", "Automobile"), ("CA", "Truck"), ("MC", "Motorcycle")]
MODELS = [("ACME", "X1"), ("ACME", "X2"), ("ZETA", "X1"), ("ZETA", "Z9"), ("ACMEE", "X-1")]
MODEL_YEARS = [2008, 2015, 2016, 2018, 2020]

# (data year, make, model, model year, fuel code, vehicle type code, row count)
SEED_ROWS = [
    (TRUSTED_YEAR, "ACME", "X1", 2015, "G", "AU", 3),
    (TRUSTED_YEAR, "ACME", "X1", 2018, "E", "AU", 2),
    (TRUSTED_YEAR, "ACME", "X2", 2015, "G", "AU", 1),
    (TRUSTED_YEAR, "ACME", "X2", 2015, "D", "CA", 1),
    (TRUSTED_YEAR, "ZETA", "X1", 2015, "G", "CA", 2),
    (TRUSTED_YEAR, "ACME", None, 2015, "G", "AU", 1),
    (UNTRUSTED_YEAR, "ACME", "X1", 2015, None, None, 2),
    (UNTRUSTED_YEAR, "ACME", "X1", 2016, None, None, 1),
    (UNTRUSTED_YEAR, "ACME", "X1", 2018, None, None, 2),
    (2024, "ACME", "X1", 2020, None, None, 1),
    (UNTRUSTED_YEAR, "ZETA", "X1", 2015, None, None, 3),
    (UNTRUSTED_YEAR, "ZETA", "Z9", 2015, None, None, 1),
    (UNTRUSTED_YEAR, "ACMEE", "X-1", 2015, None, None, 2),
    (2024, "ACMEE", "X-1", 2018, None, None, 1),
    (UNTRUSTED_YEAR, "ACME", None, 2015, None, None, 1),
]


async def seed_records(records) -> dict[str, int]:
    ids: dict[str, int] = {}
    for code, description in FUEL_TYPES:
        ids[f"fuel.{code}"] = await records.ensure_fuel_type(code, description)
    for code, description in VEHICLE_TYPES:
        ids[f"vt.{code}"] = await records.ensure_vehicle_type(code, description)
    for make, model in MODELS:
        if f"make.{make}" not in ids:
            ids[f"make.{make}"] = await records.ensure_make(make)
        ids[f"model.{make}/{model}"] = await records.ensure_model(model, ids[f"make.{make}"])
    for year in MODEL_YEARS:
        ids[f"my.{year}"] = await records.ensure_model_year(year)

    rows = []
    for year, make, model, model_year, fuel, vtype, count in SEED_ROWS:
        row = {
            "year": year,
            "make_id": ids[f"make.{make}"],
            "model_id": ids[f"model.{make}/{model}"] if model else None,
            "model_year_id": ids[f"my.{model_year}"],
            "fuel_type_id": ids[f"fuel.{fuel}"] if fuel else None,
            "vehicle_type_id": ids[f"vt.{vtype}"] if vtype else None,
        }
        rows.extend([row] * count)
    await records.insert_vehicle_rows(rows)
    return ids


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'regularization.db'}"


@pytest.fixture
def make_engine(db_url):
    async def _factory(config=None, seed=True):
        engine = RegularizationEngine.from_dsn(db_url, config or RegularizationConfig())
        await engine.records.connect()
        ids = await seed_records(engine.records) if seed else {}
        return engine, ids

    return _factory
