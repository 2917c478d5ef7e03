from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import and_, case, delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection

from regularization.config import RegularizationConfig
from regularization.data_models import (
    WILDCARD,
    FieldCoverage,
    PairAssignment,
    PairKey,
    RegularizationMapping,
    RegularizationStatistics,
    Triplet,
)
from regularization.errors import ComputationError, NotFoundError, ValidationError
from regservice.storage import (
    WILDCARD_MODEL_YEAR_ID,
    RecordStore,
    fuel_type_enum_table,
    make_enum_table,
    mappings_table,
    model_enum_table,
    model_year_enum_table,
    store_errors,
    vehicle_type_enum_table,
    vehicles_table,
)

logger = logging.getLogger(__name__)

_ROW_KEY = ["uncurated_make_id", "uncurated_model_id", "model_year_id"]
_UPDATABLE = [
    "canonical_make_id",
    "canonical_model_id",
    "fuel_type_id",
    "vehicle_type_id",
    "record_count",
    "year_range_start",
    "year_range_end",
    "created_at",
]
_DIALECT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def mapping_values(mapping: RegularizationMapping) -> dict[str, Any]:
    kind = mapping.kind
    return {
        "uncurated_make_id": mapping.uncurated_make_id,
        "uncurated_model_id": mapping.uncurated_model_id,
        "model_year_id": kind.model_year_id if isinstance(kind, Triplet) else WILDCARD_MODEL_YEAR_ID,
        "canonical_make_id": mapping.canonical_make_id,
        "canonical_model_id": mapping.canonical_model_id,
        "fuel_type_id": mapping.fuel_type_id,
        "vehicle_type_id": mapping.vehicle_type_id,
        "record_count": mapping.record_count,
        "year_range_start": mapping.year_range_start,
        "year_range_end": mapping.year_range_end,
        "created_at": mapping.created_at or datetime.now(timezone.utc),
    }


def row_to_mapping(row: dict[str, Any]) -> RegularizationMapping:
    if row["model_year_id"] == WILDCARD_MODEL_YEAR_ID:
        kind = WILDCARD
    else:
        kind = Triplet(model_year_id=int(row["model_year_id"]), model_year=int(row["model_year"]))
    return RegularizationMapping(
        id=row["id"],
        uncurated_make_id=row["uncurated_make_id"],
        uncurated_model_id=row["uncurated_model_id"],
        kind=kind,
        canonical_make_id=row["canonical_make_id"],
        canonical_model_id=row["canonical_model_id"],
        fuel_type_id=row["fuel_type_id"],
        vehicle_type_id=row["vehicle_type_id"],
        record_count=row["record_count"],
        year_range_start=row["year_range_start"],
        year_range_end=row["year_range_end"],
        created_at=row["created_at"],
    )


def _mapping_select():
    r = mappings_table
    return (
        select(r, model_year_enum_table.c.year.label("model_year"))
        .select_from(r.outerjoin(model_year_enum_table, r.c.model_year_id == model_year_enum_table.c.id))
        .order_by(r.c.uncurated_make_id, r.c.uncurated_model_id, r.c.model_year_id)
    )


class MappingStore:
    """Persistence for regularization mapping rows.

    At most one row per (uncurated make, uncurated model, model year), the
    wildcard row using ``WILDCARD_MODEL_YEAR_ID``. Writes of one pair happen in
    a single transaction; concurrent edits of the same row are last-write-wins.
    """

    def __init__(self, records: RecordStore, config: RegularizationConfig) -> None:
        self.records = records
        self.config = config

    def _dialect_insert(self, engine) -> Any:
        try:
            return _DIALECT_INSERTS[engine.dialect.name]
        except KeyError:
            raise ComputationError(f"Unsupported database dialect: {engine.dialect.name}") from None

    # ── Reads ───────────────────────────────────────────────────────

    async def fetch_all_mappings(self) -> list[RegularizationMapping]:
        with store_errors("Fetch mappings"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(_mapping_select())).fetchall()
        return [row_to_mapping(dict(r._mapping)) for r in rows]

    async def fetch_pair_mappings(self, make_id: int, model_id: int) -> list[RegularizationMapping]:
        with store_errors("Fetch pair mappings"):
            async with self.records.require_engine().connect() as conn:
                return await self._pair_mappings(conn, make_id, model_id)

    @staticmethod
    async def _pair_mappings(conn: AsyncConnection, make_id: int, model_id: int) -> list[RegularizationMapping]:
        stmt = _mapping_select().where(
            mappings_table.c.uncurated_make_id == make_id,
            mappings_table.c.uncurated_model_id == model_id,
        )
        rows = (await conn.execute(stmt)).fetchall()
        return [row_to_mapping(dict(r._mapping)) for r in rows]

    async def pairs_with_mappings(self) -> set[PairKey]:
        r = mappings_table
        stmt = select(r.c.uncurated_make_id, r.c.uncurated_model_id).distinct()
        with store_errors("Fetch mapped pairs"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return {(int(a), int(b)) for a, b in rows}

    async def has_any_mappings(self) -> bool:
        stmt = select(mappings_table.c.id).limit(1)
        with store_errors("Check mappings"):
            async with self.records.require_engine().connect() as conn:
                return (await conn.execute(stmt)).first() is not None

    async def make_resolutions(self) -> dict[int, int]:
        """Uncurated make id -> the canonical make id its pairs resolve to."""
        r = mappings_table
        stmt = select(r.c.uncurated_make_id, r.c.canonical_make_id).distinct()
        with store_errors("Fetch make resolutions"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return {int(a): int(b) for a, b in rows}

    # ── Validation ──────────────────────────────────────────────────

    @staticmethod
    async def _require_pair(conn: AsyncConnection, make_id: int, model_id: int, label: str) -> None:
        stmt = select(model_enum_table.c.id).where(
            model_enum_table.c.id == model_id,
            model_enum_table.c.make_id == make_id,
        )
        if (await conn.execute(stmt)).first() is None:
            raise NotFoundError(f"{label} model {model_id} of make {make_id} not found")

    @staticmethod
    async def _require_ids(conn: AsyncConnection, table, ids: set[int], label: str) -> None:
        if not ids:
            return
        found = set((await conn.execute(select(table.c.id).where(table.c.id.in_(sorted(ids))))).scalars())
        missing = ids - found
        if missing:
            raise NotFoundError(f"Unknown {label} ids: {sorted(missing)}")

    @staticmethod
    async def _check_make_consistency(
        conn: AsyncConnection,
        uncurated_make_id: int,
        canonical_make_id: int,
        exclude_model_id: int | None = None,
    ) -> None:
        r = mappings_table
        stmt = (
            select(make_enum_table.c.name)
            .select_from(r.join(make_enum_table, r.c.canonical_make_id == make_enum_table.c.id))
            .where(r.c.uncurated_make_id == uncurated_make_id, r.c.canonical_make_id != canonical_make_id)
        )
        if exclude_model_id is not None:
            stmt = stmt.where(r.c.uncurated_model_id != exclude_model_id)
        existing = (await conn.execute(stmt.limit(1))).scalar_one_or_none()
        if existing is not None:
            raise ValidationError(
                f"Uncurated make {uncurated_make_id} already maps to '{existing}'; "
                "all models of one make must map to the same canonical make"
            )

    async def _allowed_fuel_types(self, conn: AsyncConnection, make_id: int, model_id: int, model_year_id: int) -> set[int]:
        v = vehicles_table
        stmt = (
            select(v.c.fuel_type_id)
            .where(
                v.c.make_id == make_id,
                v.c.model_id == model_id,
                v.c.model_year_id == model_year_id,
                v.c.year.in_(sorted(self.config.trusted_years)),
                v.c.fuel_type_id.is_not(None),
            )
            .distinct()
        )
        allowed = set((await conn.execute(stmt)).scalars())
        placeholder = (
            await conn.execute(
                select(fuel_type_enum_table.c.id).where(
                    fuel_type_enum_table.c.code == self.config.fuel_type_placeholder_code
                )
            )
        ).scalar_one_or_none()
        if placeholder is not None:
            allowed.add(placeholder)
        return allowed

    async def _untrusted_counts(self, conn: AsyncConnection, make_id: int, model_id: int) -> tuple[int, dict[int, int]]:
        v = vehicles_table
        stmt = (
            select(model_year_enum_table.c.year, func.count(v.c.id))
            .select_from(v.outerjoin(model_year_enum_table, v.c.model_year_id == model_year_enum_table.c.id))
            .where(
                v.c.make_id == make_id,
                v.c.model_id == model_id,
                v.c.year.in_(sorted(self.config.untrusted_years)),
            )
            .group_by(model_year_enum_table.c.year)
        )
        by_year: dict[int, int] = {}
        total = 0
        for year, count in (await conn.execute(stmt)).fetchall():
            total += int(count)
            if year is not None:
                by_year[int(year)] = int(count)
        return total, by_year

    # ── Writes ──────────────────────────────────────────────────────

    async def create_mapping(self, mapping: RegularizationMapping) -> RegularizationMapping:
        """Insert a single row; an existing row for the same key is a ValidationError."""
        values = mapping_values(mapping)
        with store_errors("Create mapping"):
            async with self.records.require_engine().begin() as conn:
                await self._require_pair(conn, mapping.uncurated_make_id, mapping.uncurated_model_id, "Uncurated")
                await self._require_pair(conn, mapping.canonical_make_id, mapping.canonical_model_id, "Canonical")
                await self._check_make_consistency(conn, mapping.uncurated_make_id, mapping.canonical_make_id)
                result = await conn.execute(insert(mappings_table).values(**values))
                new_id = int(result.inserted_primary_key[0])
        logger.info(
            "Created mapping %d for pair (%d, %d) scope %s",
            new_id, mapping.uncurated_make_id, mapping.uncurated_model_id, mapping.kind,
        )
        return replace(mapping, id=new_id, created_at=values["created_at"])

    async def save_pair_assignment(self, assignment: PairAssignment) -> list[RegularizationMapping]:
        """Write the wildcard row and the triplet rows of one pair atomically.

        A model year mapped to ``None`` in ``fuel_types_by_year`` loses its
        triplet. Years not mentioned keep whatever they hold.
        """
        engine = self.records.require_engine()
        dialect_insert = self._dialect_insert(engine)
        make_id, model_id = assignment.pair_key
        year_start, year_end = self.config.untrusted_year_range
        now = datetime.now(timezone.utc)
        with store_errors("Save pair assignment"):
            async with engine.begin() as conn:
                await self._require_pair(conn, make_id, model_id, "Uncurated")
                await self._require_pair(conn, assignment.canonical_make_id, assignment.canonical_model_id, "Canonical")
                if assignment.vehicle_type_id is not None:
                    await self._require_ids(conn, vehicle_type_enum_table, {assignment.vehicle_type_id}, "vehicle type")
                fuel_ids = {f for f in assignment.fuel_types_by_year.values() if f is not None}
                await self._require_ids(conn, fuel_type_enum_table, fuel_ids, "fuel type")
                await self._check_make_consistency(conn, make_id, assignment.canonical_make_id, exclude_model_id=model_id)

                years = sorted(assignment.fuel_types_by_year)
                year_ids: dict[int, int] = {}
                if years:
                    rows = await conn.execute(
                        select(model_year_enum_table.c.year, model_year_enum_table.c.id).where(
                            model_year_enum_table.c.year.in_(years)
                        )
                    )
                    year_ids = {int(y): int(i) for y, i in rows.fetchall()}
                    missing = [y for y in years if y not in year_ids]
                    if missing:
                        raise NotFoundError(f"Unknown model years: {missing}")

                if self.config.strict_fuel_type_validation:
                    for year in years:
                        fuel_id = assignment.fuel_types_by_year[year]
                        if fuel_id is None:
                            continue
                        allowed = await self._allowed_fuel_types(
                            conn, assignment.canonical_make_id, assignment.canonical_model_id, year_ids[year]
                        )
                        if fuel_id not in allowed:
                            raise ValidationError(
                                f"Fuel type {fuel_id} is not a canonical option for model year {year}"
                            )

                total, by_year = await self._untrusted_counts(conn, make_id, model_id)
                common = {
                    "uncurated_make_id": make_id,
                    "uncurated_model_id": model_id,
                    "canonical_make_id": assignment.canonical_make_id,
                    "canonical_model_id": assignment.canonical_model_id,
                    "year_range_start": year_start,
                    "year_range_end": year_end,
                    "created_at": now,
                }
                upserts = [
                    {
                        **common,
                        "model_year_id": WILDCARD_MODEL_YEAR_ID,
                        "fuel_type_id": None,
                        "vehicle_type_id": assignment.vehicle_type_id,
                        "record_count": total,
                    }
                ]
                cleared: list[int] = []
                for year in years:
                    fuel_id = assignment.fuel_types_by_year[year]
                    if fuel_id is None:
                        cleared.append(year_ids[year])
                        continue
                    upserts.append(
                        {
                            **common,
                            "model_year_id": year_ids[year],
                            "fuel_type_id": fuel_id,
                            "vehicle_type_id": None,
                            "record_count": by_year.get(year, 0),
                        }
                    )

                stmt = dialect_insert(mappings_table)
                stmt = stmt.on_conflict_do_update(
                    index_elements=_ROW_KEY,
                    set_={col: stmt.excluded[col] for col in _UPDATABLE},
                )
                await conn.execute(stmt, upserts)
                if cleared:
                    await conn.execute(
                        delete(mappings_table).where(
                            mappings_table.c.uncurated_make_id == make_id,
                            mappings_table.c.uncurated_model_id == model_id,
                            mappings_table.c.model_year_id.in_(cleared),
                        )
                    )
                await conn.execute(
                    update(mappings_table)
                    .where(
                        mappings_table.c.uncurated_make_id == make_id,
                        mappings_table.c.uncurated_model_id == model_id,
                    )
                    .values(
                        canonical_make_id=assignment.canonical_make_id,
                        canonical_model_id=assignment.canonical_model_id,
                    )
                )
                saved = await self._pair_mappings(conn, make_id, model_id)
        logger.info(
            "Saved assignment for pair (%d, %d): %d rows, %d years cleared",
            make_id, model_id, len(saved), len(cleared),
        )
        return saved

    async def insert_proposals(self, proposals: Iterable[RegularizationMapping]) -> tuple[PairKey, ...]:
        """Publish auto-mapping proposals in one transaction.

        Pairs that gained any row since the proposals were computed are left
        untouched, and existing rows are never updated. Returns the pairs
        actually written.
        """
        by_pair: dict[PairKey, list[RegularizationMapping]] = defaultdict(list)
        for m in proposals:
            by_pair[m.pair_key].append(m)
        if not by_pair:
            return ()

        engine = self.records.require_engine()
        dialect_insert = self._dialect_insert(engine)
        r = mappings_table
        make_ids = sorted({k[0] for k in by_pair})
        with store_errors("Insert auto-mapping proposals"):
            async with engine.begin() as conn:
                rows = await conn.execute(
                    select(r.c.uncurated_make_id, r.c.uncurated_model_id)
                    .where(r.c.uncurated_make_id.in_(make_ids))
                    .distinct()
                )
                taken = {(int(a), int(b)) for a, b in rows.fetchall()}
                written = tuple(sorted(k for k in by_pair if k not in taken))
                payload = [mapping_values(m) for k in written for m in by_pair[k]]
                if payload:
                    stmt = dialect_insert(r).on_conflict_do_nothing(index_elements=_ROW_KEY)
                    await conn.execute(stmt, payload)
        if len(written) < len(by_pair):
            logger.info("Skipped %d proposals for pairs edited meanwhile", len(by_pair) - len(written))
        logger.info("Inserted %d proposal rows for %d pairs", sum(len(by_pair[k]) for k in written), len(written))
        return written

    async def delete_mapping(self, mapping_id: int) -> RegularizationMapping:
        with store_errors("Delete mapping"):
            async with self.records.require_engine().begin() as conn:
                row = (await conn.execute(_mapping_select().where(mappings_table.c.id == mapping_id))).first()
                if row is None:
                    raise NotFoundError(f"Mapping {mapping_id} not found")
                await conn.execute(delete(mappings_table).where(mappings_table.c.id == mapping_id))
        logger.info("Deleted mapping %d", mapping_id)
        return row_to_mapping(dict(row._mapping))

    async def delete_pair_mappings(self, make_id: int, model_id: int) -> int:
        stmt = delete(mappings_table).where(
            mappings_table.c.uncurated_make_id == make_id,
            mappings_table.c.uncurated_model_id == model_id,
        )
        with store_errors("Delete pair mappings"):
            async with self.records.require_engine().begin() as conn:
                result = await conn.execute(stmt)
        logger.info("Deleted %d mappings of pair (%d, %d)", result.rowcount, make_id, model_id)
        return int(result.rowcount)

    # ── Reporting ───────────────────────────────────────────────────

    async def statistics(self) -> RegularizationStatistics:
        v, r = vehicles_table, mappings_table
        same_pair = and_(r.c.uncurated_make_id == v.c.make_id, r.c.uncurated_model_id == v.c.model_id)
        pair_mapped = select(r.c.id).where(same_pair).correlate(v).exists()
        fuel_mapped = (
            select(r.c.id)
            .where(same_pair, r.c.model_year_id == v.c.model_year_id, r.c.fuel_type_id.is_not(None))
            .correlate(v)
            .exists()
        )
        type_mapped = (
            select(r.c.id)
            .where(same_pair, r.c.model_year_id == WILDCARD_MODEL_YEAR_ID, r.c.vehicle_type_id.is_not(None))
            .correlate(v)
            .exists()
        )
        coverage = select(
            func.count(v.c.id),
            func.coalesce(func.sum(case((pair_mapped, 1), else_=0)), 0),
            func.coalesce(func.sum(case((fuel_mapped, 1), else_=0)), 0),
            func.coalesce(func.sum(case((type_mapped, 1), else_=0)), 0),
        ).where(v.c.year.in_(sorted(self.config.untrusted_years)))
        with store_errors("Compute statistics"):
            async with self.records.require_engine().connect() as conn:
                mapping_count = int((await conn.execute(select(func.count(r.c.id)))).scalar_one())
                total, make_model, fuel, vtype = (await conn.execute(coverage)).one()
        total = int(total)

        def _coverage(assigned: Any) -> FieldCoverage:
            assigned = int(assigned)
            return FieldCoverage(assigned_count=assigned, unassigned_count=total - assigned, total_records=total)

        return RegularizationStatistics(
            mapping_count=mapping_count,
            total_untrusted_records=total,
            make_model=_coverage(make_model),
            fuel_type=_coverage(fuel),
            vehicle_type=_coverage(vtype),
        )

    async def display_info(self) -> dict[PairKey, dict[str, Any]]:
        """Canonical names and record counts per raw pair, for filter pickers."""
        r = mappings_table
        canonical_make = make_enum_table.alias("canonical_make")
        canonical_model = model_enum_table.alias("canonical_model")
        stmt = (
            select(
                r.c.uncurated_make_id,
                r.c.uncurated_model_id,
                canonical_make.c.name.label("canonical_make"),
                canonical_model.c.name.label("canonical_model"),
                r.c.record_count,
            )
            .select_from(
                r.join(canonical_make, r.c.canonical_make_id == canonical_make.c.id)
                .join(canonical_model, r.c.canonical_model_id == canonical_model.c.id)
            )
            .where(r.c.model_year_id == WILDCARD_MODEL_YEAR_ID)
        )
        with store_errors("Fetch display info"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return {
            (int(row.uncurated_make_id), int(row.uncurated_model_id)): {
                "canonical_make": row.canonical_make,
                "canonical_model": row.canonical_model,
                "record_count": int(row.record_count),
            }
            for row in rows
        }

    async def make_display_info(self) -> dict[int, dict[str, Any]]:
        r = mappings_table
        stmt = (
            select(
                r.c.uncurated_make_id,
                make_enum_table.c.name.label("canonical_make"),
                func.sum(r.c.record_count).label("record_count"),
            )
            .select_from(r.join(make_enum_table, r.c.canonical_make_id == make_enum_table.c.id))
            .where(r.c.model_year_id == WILDCARD_MODEL_YEAR_ID)
            .group_by(r.c.uncurated_make_id, make_enum_table.c.name)
        )
        with store_errors("Fetch make display info"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        return {
            int(row.uncurated_make_id): {"canonical_make": row.canonical_make, "record_count": int(row.record_count)}
            for row in rows
        }
