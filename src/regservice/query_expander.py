from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Iterable

from sqlalchemy import ColumnElement, and_, func, or_, select, true

from regularization.config import RegularizationConfig
from regularization.data_models import CanonicalValue
from regularization.errors import ValidationError
from regservice.storage import (
    WILDCARD_MODEL_YEAR_ID,
    RecordStore,
    mappings_table,
    model_year_enum_table,
    store_errors,
    vehicles_table,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterSelection:
    """Selected ids per dimension.

    ``coupling`` resolves Make through the mapping of the record's own raw
    (make, model) pair. Without it a raw make counts as its canonical make for
    every record, mapped pair or not, so Make and Model resolve independently.
    """

    make_ids: frozenset[int] = frozenset()
    model_ids: frozenset[int] = frozenset()
    model_year_ids: frozenset[int] = frozenset()
    fuel_type_ids: frozenset[int] = frozenset()
    vehicle_type_ids: frozenset[int] = frozenset()
    regularization_enabled: bool = True
    limit_to_trusted_years: bool = False
    coupling: bool = True

    @classmethod
    def from_values(
        cls,
        values: Iterable[CanonicalValue],
        *,
        regularization_enabled: bool = True,
        limit_to_trusted_years: bool = False,
        coupling: bool = True,
    ) -> FilterSelection:
        ids: dict[str, set[int]] = defaultdict(set)
        for value in values:
            ids[value.kind].add(value.id)
        unknown = set(ids) - {"make", "model", "model_year", "fuel_type", "vehicle_type"}
        if unknown:
            raise ValidationError(f"Unsupported filter dimensions: {sorted(unknown)}")
        return cls(
            make_ids=frozenset(ids["make"]),
            model_ids=frozenset(ids["model"]),
            model_year_ids=frozenset(ids["model_year"]),
            fuel_type_ids=frozenset(ids["fuel_type"]),
            vehicle_type_ids=frozenset(ids["vehicle_type"]),
            regularization_enabled=regularization_enabled,
            limit_to_trusted_years=limit_to_trusted_years,
            coupling=coupling,
        )

    @property
    def correlates(self) -> bool:
        return self.regularization_enabled and not self.limit_to_trusted_years


class QueryExpander:
    """Builds the row predicate of an analytical filter over ``vehicles``.

    A row matches a dimension when its own column holds a selected value, or,
    with regularization on, when it belongs to an untrusted year and a mapping
    row resolves its raw make/model to a selected value. With Make and Model
    both selected the row must satisfy each of them; when both go through the
    mapping path one mapping row has to carry both canonical ids.
    """

    def __init__(self, records: RecordStore, config: RegularizationConfig) -> None:
        self.records = records
        self.config = config

    def _same_pair(self):
        v, r = vehicles_table, mappings_table
        return and_(r.c.uncurated_make_id == v.c.make_id, r.c.uncurated_model_id == v.c.model_id)

    def _untrusted(self):
        return vehicles_table.c.year.in_(sorted(self.config.untrusted_years))

    def _mapped(self, *criteria, make_level: bool = False) -> ColumnElement[bool]:
        v, r = vehicles_table, mappings_table
        link = r.c.uncurated_make_id == v.c.make_id if make_level else self._same_pair()
        return and_(self._untrusted(), select(r.c.id).where(link, *criteria).correlate(v).exists())

    async def expand_selection(self, selection: FilterSelection) -> FilterSelection:
        """Add the canonical ids that selected raw make/model ids resolve to.

        The canonical ids in turn reach every other raw variant mapped to them.
        """
        if not selection.correlates or not (selection.make_ids or selection.model_ids):
            return selection
        r = mappings_table
        stmt = (
            select(r.c.uncurated_make_id, r.c.uncurated_model_id, r.c.canonical_make_id, r.c.canonical_model_id)
            .where(
                or_(
                    r.c.uncurated_make_id.in_(sorted(selection.make_ids)),
                    r.c.uncurated_model_id.in_(sorted(selection.model_ids)),
                )
            )
            .distinct()
        )
        with store_errors("Expand filter selection"):
            async with self.records.require_engine().connect() as conn:
                rows = (await conn.execute(stmt)).fetchall()
        make_ids, model_ids = set(selection.make_ids), set(selection.model_ids)
        for row in rows:
            if row.uncurated_make_id in selection.make_ids:
                make_ids.add(int(row.canonical_make_id))
            if row.uncurated_model_id in selection.model_ids:
                model_ids.add(int(row.canonical_model_id))
        if make_ids == selection.make_ids and model_ids == selection.model_ids:
            return selection
        logger.debug(
            "Expanded raw ids to canonical ids",
            extra={"extra_data": {"makes": sorted(make_ids), "models": sorted(model_ids)}},
        )
        return replace(selection, make_ids=frozenset(make_ids), model_ids=frozenset(model_ids))

    def _make_model_clause(self, selection: FilterSelection) -> ColumnElement[bool]:
        v, r = vehicles_table, mappings_table
        make_ids, model_ids = sorted(selection.make_ids), sorted(selection.model_ids)
        direct_make, direct_model = v.c.make_id.in_(make_ids), v.c.model_id.in_(model_ids)
        if not selection.correlates:
            return and_(*(c for ids, c in ((make_ids, direct_make), (model_ids, direct_model)) if ids))

        canonical_make = r.c.canonical_make_id.in_(make_ids)
        canonical_model = r.c.canonical_model_id.in_(model_ids)
        make_level = not selection.coupling
        if not model_ids:
            return or_(direct_make, self._mapped(canonical_make, make_level=make_level))
        if not make_ids:
            return or_(direct_model, self._mapped(canonical_model))
        if make_level:
            return and_(
                or_(direct_make, self._mapped(canonical_make, make_level=True)),
                or_(direct_model, self._mapped(canonical_model)),
            )
        return or_(
            and_(direct_make, direct_model),
            and_(direct_make, self._mapped(canonical_model)),
            and_(self._mapped(canonical_make), direct_model),
            self._mapped(canonical_make, canonical_model),
        )

    def _vehicle_type_clause(self, selection: FilterSelection) -> ColumnElement[bool]:
        v, r = vehicles_table, mappings_table
        ids = sorted(selection.vehicle_type_ids)
        direct = v.c.vehicle_type_id.in_(ids)
        if not selection.correlates:
            return direct
        mapped = (
            select(r.c.id)
            .where(
                self._same_pair(),
                r.c.model_year_id == WILDCARD_MODEL_YEAR_ID,
                r.c.vehicle_type_id.in_(ids),
            )
            .correlate(v)
            .exists()
        )
        return or_(direct, and_(v.c.vehicle_type_id.is_(None), self._untrusted(), mapped))

    def _fuel_type_clause(self, selection: FilterSelection) -> ColumnElement[bool]:
        v, r = vehicles_table, mappings_table
        ids = sorted(selection.fuel_type_ids)
        direct = v.c.fuel_type_id.in_(ids)
        if not selection.correlates:
            return direct
        mapped = (
            select(r.c.id)
            .where(
                self._same_pair(),
                r.c.model_year_id == v.c.model_year_id,
                r.c.fuel_type_id.in_(ids),
            )
            .correlate(v)
            .exists()
        )
        path = [v.c.fuel_type_id.is_(None), self._untrusted(), mapped]
        if not self.config.regularize_pre_fuel_era:
            fuel_era = select(model_year_enum_table.c.id).where(
                model_year_enum_table.c.year >= self.config.fuel_type_data_start_year
            )
            path.append(v.c.model_year_id.in_(fuel_era))
        return or_(direct, and_(*path))

    def build_predicate(self, selection: FilterSelection) -> ColumnElement[bool]:
        """Predicate for an already expanded selection, see ``expand_selection``."""
        v = vehicles_table
        clauses: list[ColumnElement[bool]] = []
        if selection.limit_to_trusted_years:
            clauses.append(v.c.year.in_(sorted(self.config.trusted_years)))
        if selection.make_ids or selection.model_ids:
            clauses.append(self._make_model_clause(selection))
        if selection.model_year_ids:
            clauses.append(v.c.model_year_id.in_(sorted(selection.model_year_ids)))
        if selection.vehicle_type_ids:
            clauses.append(self._vehicle_type_clause(selection))
        if selection.fuel_type_ids:
            clauses.append(self._fuel_type_clause(selection))
        if not clauses:
            return true()
        return and_(*clauses)

    async def select_matching(self, selection: FilterSelection, limit: int | None = None) -> list[int]:
        """Ids of the matching vehicle rows, in id order."""
        selection = await self.expand_selection(selection)
        stmt = select(vehicles_table.c.id).where(self.build_predicate(selection)).order_by(vehicles_table.c.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with store_errors("Select matching records"):
            async with self.records.require_engine().connect() as conn:
                return [int(i) for i in (await conn.execute(stmt)).scalars()]

    async def count_matching(self, selection: FilterSelection) -> int:
        selection = await self.expand_selection(selection)
        stmt = select(func.count(vehicles_table.c.id)).where(self.build_predicate(selection))
        with store_errors("Count matching records"):
            async with self.records.require_engine().connect() as conn:
                count = int((await conn.execute(stmt)).scalar_one())
        logger.debug("Filter matched %d records", count, extra={"extra_data": {"correlated": selection.correlates}})
        return count
