from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import pandas as pd
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from regularization.config import RegularizationConfig
from regularization.data_models import CanonicalValue, DimensionKind
from regularization.errors import ComputationError, NotFoundError, RegularizationError, ValidationError
from regularization.hierarchy import HIERARCHY_COLUMNS

logger = logging.getLogger(__name__)

# Model-year id stored on wildcard rows. Enumeration ids start at 1.
WILDCARD_MODEL_YEAR_ID = 0

metadata = MetaData()

make_enum_table = Table(
    "make_enum",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(128), nullable=False, unique=True),
)

model_enum_table = Table(
    "model_enum",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(128), nullable=False),
    Column("make_id", Integer, ForeignKey("make_enum.id"), nullable=False, index=True),
    UniqueConstraint("name", "make_id", name="uq_model_enum_name_make"),
)

model_year_enum_table = Table(
    "model_year_enum",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year", Integer, nullable=False, unique=True),
)

fuel_type_enum_table = Table(
    "fuel_type_enum",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(16), nullable=False, unique=True),
    Column("description", String(128), nullable=False),
)

vehicle_type_enum_table = Table(
    "vehicle_type_enum",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(16), nullable=False, unique=True),
    Column("description", String(128), nullable=False),
)

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("year", Integer, nullable=False, index=True),
    Column("make_id", Integer, ForeignKey("make_enum.id"), nullable=True, index=True),
    Column("model_id", Integer, ForeignKey("model_enum.id"), nullable=True, index=True),
    Column("model_year_id", Integer, ForeignKey("model_year_enum.id"), nullable=True, index=True),
    Column("fuel_type_id", Integer, ForeignKey("fuel_type_enum.id"), nullable=True, index=True),
    Column("vehicle_type_id", Integer, ForeignKey("vehicle_type_enum.id"), nullable=True, index=True),
    Index("ix_vehicles_make_model_model_year", "make_id", "model_id", "model_year_id"),
)

# model_year_id carries no foreign key: wildcard rows hold WILDCARD_MODEL_YEAR_ID.
mappings_table = Table(
    "make_model_regularization",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("uncurated_make_id", Integer, ForeignKey("make_enum.id"), nullable=False),
    Column("uncurated_model_id", Integer, ForeignKey("model_enum.id"), nullable=False),
    Column("model_year_id", Integer, nullable=False, default=WILDCARD_MODEL_YEAR_ID),
    Column("canonical_make_id", Integer, ForeignKey("make_enum.id"), nullable=False),
    Column("canonical_model_id", Integer, ForeignKey("model_enum.id"), nullable=False),
    Column("fuel_type_id", Integer, ForeignKey("fuel_type_enum.id"), nullable=True),
    Column("vehicle_type_id", Integer, ForeignKey("vehicle_type_enum.id"), nullable=True),
    Column("record_count", Integer, nullable=False, default=0),
    Column("year_range_start", Integer, nullable=True),
    Column("year_range_end", Integer, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(
        "uncurated_make_id", "uncurated_model_id", "model_year_id",
        name="uq_regularization_pair_model_year",
    ),
    Index("ix_regularization_canonical", "canonical_make_id", "canonical_model_id"),
)

_ENUM_TABLES: dict[str, Table] = {
    "make": make_enum_table,
    "model": model_enum_table,
    "model_year": model_year_enum_table,
    "fuel_type": fuel_type_enum_table,
    "vehicle_type": vehicle_type_enum_table,
}


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Translate driver failures into the engine's error taxonomy."""
    try:
        yield
    except RegularizationError:
        raise
    except IntegrityError as exc:
        raise ValidationError(f"{action}: constraint violated ({exc.orig})") from exc
    except (SQLAlchemyError, OSError) as exc:
        raise ComputationError(f"{action} failed: {exc}") from exc


def _canonical_value(kind: DimensionKind, row: dict[str, Any]) -> CanonicalValue:
    if kind in ("make", "model"):
        code = description = row["name"]
    elif kind == "model_year":
        code = description = str(row["year"])
    else:
        code, description = row["code"], row["description"]
    return CanonicalValue(id=int(row["id"]), kind=kind, code=str(code), description=str(description))


class RecordStore:
    """Raw vehicle records and their enumeration tables.

    Owns the async engine shared by the mapping store, the pair index and the
    query helpers.
    """

    def __init__(self, dsn: str, config: RegularizationConfig) -> None:
        self.dsn = dsn
        self.config = config
        self.engine: AsyncEngine | None = None
        self._schema_ready = False

    async def connect(self) -> None:
        self.engine = create_async_engine(self.dsn, future=True)
        try:
            await self.init_schema()
        except ComputationError:
            logger.exception("Schema initialisation failed for %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or not self._schema_ready:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except (SQLAlchemyError, OSError):
            return False

    def require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise ComputationError("Record store is not connected")
        return self.engine

    async def init_schema(self) -> None:
        engine = self.require_engine()
        with store_errors("Schema initialisation"):
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
                await self._ensure_coded(conn, fuel_type_enum_table, self.config.fuel_type_placeholder_code, "Unknown")
                await self._ensure_coded(
                    conn, vehicle_type_enum_table, self.config.vehicle_type_placeholder_code, "Unknown"
                )
        self._schema_ready = True

    # ── Enumeration helpers ─────────────────────────────────────────

    @staticmethod
    async def _ensure_row(conn: AsyncConnection, table: Table, match: dict[str, Any], values: dict[str, Any]) -> int:
        clauses = [table.c[k] == v for k, v in match.items()]
        existing = (await conn.execute(select(table.c.id).where(*clauses))).scalar_one_or_none()
        if existing is not None:
            return int(existing)
        result = await conn.execute(insert(table).values(**match, **values))
        return int(result.inserted_primary_key[0])

    async def _ensure_coded(self, conn: AsyncConnection, table: Table, code: str, description: str) -> int:
        return await self._ensure_row(conn, table, {"code": code}, {"description": description})

    async def ensure_make(self, name: str) -> int:
        with store_errors("Ensure make"):
            async with self.require_engine().begin() as conn:
                return await self._ensure_row(conn, make_enum_table, {"name": name}, {})

    async def ensure_model(self, name: str, make_id: int) -> int:
        with store_errors("Ensure model"):
            async with self.require_engine().begin() as conn:
                return await self._ensure_row(conn, model_enum_table, {"name": name, "make_id": make_id}, {})

    async def ensure_model_year(self, year: int) -> int:
        with store_errors("Ensure model year"):
            async with self.require_engine().begin() as conn:
                return await self._ensure_row(conn, model_year_enum_table, {"year": year}, {})

    async def ensure_fuel_type(self, code: str, description: str) -> int:
        with store_errors("Ensure fuel type"):
            async with self.require_engine().begin() as conn:
                return await self._ensure_coded(conn, fuel_type_enum_table, code, description)

    async def ensure_vehicle_type(self, code: str, description: str) -> int:
        with store_errors("Ensure vehicle type"):
            async with self.require_engine().begin() as conn:
                return await self._ensure_coded(conn, vehicle_type_enum_table, code, description)

    async def insert_vehicle_rows(self, rows: Iterable[dict[str, Any]]) -> int:
        payload = [
            {
                "year": r["year"],
                "make_id": r.get("make_id"),
                "model_id": r.get("model_id"),
                "model_year_id": r.get("model_year_id"),
                "fuel_type_id": r.get("fuel_type_id"),
                "vehicle_type_id": r.get("vehicle_type_id"),
            }
            for r in rows
        ]
        if not payload:
            return 0
        with store_errors("Insert vehicle rows"):
            async with self.require_engine().begin() as conn:
                await conn.execute(insert(vehicles_table), payload)
        return len(payload)

    # ── Canonical values ────────────────────────────────────────────

    async def fetch_canonical_values(self, kind: DimensionKind, ids: Iterable[int] | None = None) -> list[CanonicalValue]:
        table = _ENUM_TABLES[kind]
        stmt = select(table).order_by(table.c.id)
        if ids is not None:
            stmt = stmt.where(table.c.id.in_(list(ids)))
        with store_errors(f"Fetch {kind} values"):
            async with self.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return [_canonical_value(kind, dict(r._mapping)) for r in rows]

    async def get_canonical_value(self, kind: DimensionKind, value_id: int) -> CanonicalValue:
        values = await self.fetch_canonical_values(kind, [value_id])
        if not values:
            raise NotFoundError(f"Unknown {kind} id {value_id}")
        return values[0]

    async def placeholder(self, kind: DimensionKind) -> CanonicalValue | None:
        if kind == "fuel_type":
            table, code = fuel_type_enum_table, self.config.fuel_type_placeholder_code
        elif kind == "vehicle_type":
            table, code = vehicle_type_enum_table, self.config.vehicle_type_placeholder_code
        else:
            return None
        with store_errors(f"Fetch {kind} placeholder"):
            async with self.require_engine().connect() as conn:
                row = (await conn.execute(select(table).where(table.c.code == code))).first()
        return None if row is None else _canonical_value(kind, dict(row._mapping))

    # ── Aggregates ──────────────────────────────────────────────────

    async def fetch_trusted_combinations(self, years: Iterable[int] | None = None) -> pd.DataFrame:
        """One row per trusted (make, model, model year, fuel type, vehicle type) group."""
        years = sorted(years if years is not None else self.config.trusted_years)
        v = vehicles_table
        stmt = (
            select(
                make_enum_table.c.id.label("make_id"),
                make_enum_table.c.name.label("make_name"),
                model_enum_table.c.id.label("model_id"),
                model_enum_table.c.name.label("model_name"),
                model_year_enum_table.c.id.label("model_year_id"),
                model_year_enum_table.c.year.label("model_year"),
                fuel_type_enum_table.c.id.label("fuel_type_id"),
                fuel_type_enum_table.c.code.label("fuel_type_code"),
                fuel_type_enum_table.c.description.label("fuel_type_description"),
                vehicle_type_enum_table.c.id.label("vehicle_type_id"),
                vehicle_type_enum_table.c.code.label("vehicle_type_code"),
                vehicle_type_enum_table.c.description.label("vehicle_type_description"),
                func.count(v.c.id).label("record_count"),
            )
            .select_from(
                v.join(make_enum_table, v.c.make_id == make_enum_table.c.id)
                .join(model_enum_table, v.c.model_id == model_enum_table.c.id)
                .outerjoin(model_year_enum_table, v.c.model_year_id == model_year_enum_table.c.id)
                .outerjoin(fuel_type_enum_table, v.c.fuel_type_id == fuel_type_enum_table.c.id)
                .outerjoin(vehicle_type_enum_table, v.c.vehicle_type_id == vehicle_type_enum_table.c.id)
            )
            .where(v.c.year.in_(years))
            .group_by(
                make_enum_table.c.id, make_enum_table.c.name,
                model_enum_table.c.id, model_enum_table.c.name,
                model_year_enum_table.c.id, model_year_enum_table.c.year,
                fuel_type_enum_table.c.id, fuel_type_enum_table.c.code, fuel_type_enum_table.c.description,
                vehicle_type_enum_table.c.id, vehicle_type_enum_table.c.code, vehicle_type_enum_table.c.description,
            )
        )
        with store_errors("Fetch trusted combinations"):
            async with self.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return pd.DataFrame([tuple(r) for r in rows], columns=HIERARCHY_COLUMNS)

    async def count_untrusted_records(self) -> int:
        stmt = select(func.count(vehicles_table.c.id)).where(
            vehicles_table.c.year.in_(sorted(self.config.untrusted_years))
        )
        with store_errors("Count untrusted records"):
            async with self.require_engine().connect() as conn:
                return int((await conn.execute(stmt)).scalar_one())
