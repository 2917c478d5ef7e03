from __future__ import annotations

import logging
import time
from collections import defaultdict
from types import MappingProxyType

from sqlalchemy import case, func, select

from regularization.config import RegularizationConfig
from regularization.data_models import UncuratedPair
from regservice.storage import (
    RecordStore,
    make_enum_table,
    model_enum_table,
    model_year_enum_table,
    store_errors,
    vehicles_table,
)

logger = logging.getLogger(__name__)


class UncuratedPairIndex:
    """Discovers raw (make, model) pairs of the untrusted years.

    Trusted-year exclusion is an anti-join through a correlated NOT EXISTS.
    A ``NOT IN`` against the trusted pair set would drop every row as soon as
    that set holds a NULL.
    """

    def __init__(self, records: RecordStore, config: RegularizationConfig) -> None:
        self.records = records
        self.config = config

    def _trusted_exists(self, grouped):
        t = vehicles_table.alias("trusted")
        return (
            select(t.c.id)
            .where(
                t.c.make_id == grouped.c.make_id,
                t.c.model_id == grouped.c.model_id,
                t.c.year.in_(sorted(self.config.trusted_years)),
            )
            .correlate(grouped)
            .exists()
        )

    async def find_uncurated_pairs(self, include_exact_matches: bool = False) -> list[UncuratedPair]:
        t0 = time.monotonic()
        v = vehicles_table
        untrusted = v.c.year.in_(sorted(self.config.untrusted_years))
        grouped = (
            select(
                v.c.make_id,
                v.c.model_id,
                func.count(v.c.id).label("record_count"),
                func.min(v.c.year).label("earliest_year"),
                func.max(v.c.year).label("latest_year"),
            )
            .where(untrusted, v.c.make_id.is_not(None), v.c.model_id.is_not(None))
            .group_by(v.c.make_id, v.c.model_id)
            .subquery("untrusted_pairs")
        )
        trusted_exists = self._trusted_exists(grouped)
        pairs_stmt = (
            select(
                grouped,
                make_enum_table.c.name.label("make_name"),
                model_enum_table.c.name.label("model_name"),
                case((trusted_exists, True), else_=False).label("has_trusted_match"),
            )
            .select_from(
                grouped.join(make_enum_table, grouped.c.make_id == make_enum_table.c.id)
                .join(model_enum_table, grouped.c.model_id == model_enum_table.c.id)
            )
            .order_by(grouped.c.record_count.desc(), make_enum_table.c.name, model_enum_table.c.name)
        )
        if not include_exact_matches:
            pairs_stmt = pairs_stmt.where(~trusted_exists)

        years_stmt = (
            select(v.c.make_id, v.c.model_id, model_year_enum_table.c.year, func.count(v.c.id))
            .select_from(v.join(model_year_enum_table, v.c.model_year_id == model_year_enum_table.c.id))
            .where(untrusted, v.c.make_id.is_not(None), v.c.model_id.is_not(None))
            .group_by(v.c.make_id, v.c.model_id, model_year_enum_table.c.year)
        )
        total_stmt = select(func.count(v.c.id)).where(untrusted)

        with store_errors("Find uncurated pairs"):
            async with self.records.require_engine().connect() as conn:
                pair_rows = (await conn.execute(pairs_stmt)).fetchall()
                year_rows = (await conn.execute(years_stmt)).fetchall()
                total = int((await conn.execute(total_stmt)).scalar_one())

        by_year: dict[tuple[int, int], dict[int, int]] = defaultdict(dict)
        for make_id, model_id, year, count in year_rows:
            by_year[(int(make_id), int(model_id))][int(year)] = int(count)

        pairs = []
        for row in pair_rows:
            key = (int(row.make_id), int(row.model_id))
            years = by_year.get(key, {})
            pairs.append(
                UncuratedPair(
                    make_id=key[0],
                    model_id=key[1],
                    make_name=row.make_name,
                    model_name=row.model_name,
                    raw_model_years_present=tuple(sorted(years)),
                    record_count=int(row.record_count),
                    earliest_year=row.earliest_year,
                    latest_year=row.latest_year,
                    records_by_model_year=MappingProxyType(dict(years)),
                    percentage_of_total=round(row.record_count / total * 100.0, 4) if total else 0.0,
                    has_trusted_match=bool(row.has_trusted_match),
                )
            )
        logger.info(
            "Found %d uncurated pairs in %.3fs",
            len(pairs),
            time.monotonic() - t0,
            extra={"extra_data": {"include_exact_matches": include_exact_matches, "untrusted_records": total}},
        )
        return pairs

    async def get_model_years_for_pair(self, make_id: int, model_id: int) -> list[int]:
        """Model years observed for the pair in untrusted-year records."""
        v = vehicles_table
        stmt = (
            select(model_year_enum_table.c.year)
            .select_from(v.join(model_year_enum_table, v.c.model_year_id == model_year_enum_table.c.id))
            .where(
                v.c.make_id == make_id,
                v.c.model_id == model_id,
                v.c.year.in_(sorted(self.config.untrusted_years)),
            )
            .distinct()
            .order_by(model_year_enum_table.c.year)
        )
        with store_errors("Fetch pair model years"):
            async with self.records.require_engine().connect() as conn:
                return [int(y) for y in (await conn.execute(stmt)).scalars()]
