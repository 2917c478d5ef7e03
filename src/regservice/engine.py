from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from regularization.auto_mapper import AutoMappingResult, propose_mappings
from regularization.completion import ALL_UNASSIGNED, StatusSnapshot, compute_status, compute_statuses
from regularization.config import RegularizationConfig
from regularization.data_models import (
    CompletionStatus,
    PairAssignment,
    PairKey,
    RegularizationMapping,
    UncuratedPair,
)
from regularization.errors import NotFoundError, RegularizationError
from regularization.hierarchy import CanonicalHierarchy, CanonicalModel, build_canonical_hierarchy
from regularization.snapshots import SnapshotCache
from regservice.logging_config import new_operation_id
from regservice.mapping_store import MappingStore
from regservice.messaging import KafkaBus
from regservice.pair_index import UncuratedPairIndex
from regservice.query_expander import FilterSelection, QueryExpander
from regservice.storage import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairListing:
    entries: tuple[tuple[UncuratedPair, CompletionStatus], ...]
    counts: Mapping[str, int]
    status_generation: int
    statuses_pending: bool = False


@dataclass(frozen=True)
class PairDetail:
    pair: UncuratedPair | None
    model_years: tuple[int, ...]
    mappings: tuple[RegularizationMapping, ...]
    status: CompletionStatus
    canonical_model: CanonicalModel | None = None


@dataclass
class _Phases:
    durations: dict[str, float] = field(default_factory=dict)

    def mark(self, name: str, started: float) -> None:
        self.durations[name] = round(time.monotonic() - started, 3)


class RegularizationEngine:
    """Entry point for the presentation layer and the background sweeps.

    Pair discovery, the canonical hierarchy and completion statuses are
    immutable snapshots. Reads never rebuild expensive snapshots except the
    pair list, which is needed to show anything at all; full sweeps rebuild
    and publish them off the request path.
    """

    def __init__(
        self,
        records: RecordStore,
        mappings: MappingStore,
        index: UncuratedPairIndex,
        config: RegularizationConfig,
        bus: KafkaBus | None = None,
    ) -> None:
        self.records = records
        self.mappings = mappings
        self.index = index
        self.config = config
        self.bus = bus
        self.expander = QueryExpander(records, config)
        self.pairs = SnapshotCache[list[UncuratedPair]]("uncurated_pairs", self._discover_pairs)
        self.hierarchy = SnapshotCache[CanonicalHierarchy]("canonical_hierarchy", self._build_hierarchy)
        self.statuses = SnapshotCache[StatusSnapshot]("completion_statuses", self._build_statuses)
        self._sweep_lock = asyncio.Lock()
        self._follow_up = False

    @classmethod
    def from_dsn(cls, dsn: str, config: RegularizationConfig, bus: KafkaBus | None = None) -> RegularizationEngine:
        records = RecordStore(dsn, config)
        return cls(
            records=records,
            mappings=MappingStore(records, config),
            index=UncuratedPairIndex(records, config),
            config=config,
            bus=bus,
        )

    # ── Snapshot builders ───────────────────────────────────────────

    async def _discover_pairs(self) -> list[UncuratedPair]:
        return await self.index.find_uncurated_pairs(include_exact_matches=True)

    async def _build_hierarchy(self) -> CanonicalHierarchy:
        frame = await self.records.fetch_trusted_combinations()
        return build_canonical_hierarchy(
            frame,
            fuel_type_placeholder=await self.records.placeholder("fuel_type"),
            vehicle_type_placeholder=await self.records.placeholder("vehicle_type"),
        )

    async def _build_statuses(self) -> StatusSnapshot:
        if not await self.mappings.has_any_mappings():
            return ALL_UNASSIGNED
        pairs = await self.pairs.get()
        return compute_statuses(pairs, await self.mappings.fetch_all_mappings())

    async def _publish(self, event: str, payload: dict[str, Any], key: str | None = None) -> None:
        if self.bus is not None:
            await self.bus.publish_event(event, payload, key=key)

    # ── Reads ───────────────────────────────────────────────────────

    async def list_pairs(
        self,
        status: CompletionStatus | None = None,
        include_exact_matches: bool = False,
    ) -> PairListing:
        pairs = await self.pairs.get()
        if not include_exact_matches:
            pairs = [p for p in pairs if not p.has_trusted_match]
        snapshot = self.statuses.peek()
        pending = False
        if snapshot is None or self.statuses.is_stale:
            if not await self.mappings.has_any_mappings():
                snapshot = ALL_UNASSIGNED
            elif snapshot is None:
                snapshot, pending = ALL_UNASSIGNED, True
        entries = tuple((p, snapshot.status(p.key)) for p in pairs)
        if status is not None:
            entries = tuple(e for e in entries if e[1] == status)
        return PairListing(
            entries=entries,
            counts=snapshot.counts(pairs),
            status_generation=self.statuses.generation,
            statuses_pending=pending,
        )

    async def pair_detail(self, make_id: int, model_id: int) -> PairDetail:
        pairs = self.pairs.peek() or []
        pair = next((p for p in pairs if p.key == (make_id, model_id)), None)
        model_years = await self.index.get_model_years_for_pair(make_id, model_id)
        mappings = await self.mappings.fetch_pair_mappings(make_id, model_id)
        if pair is None and not model_years and not mappings:
            raise NotFoundError(f"Pair ({make_id}, {model_id}) has no untrusted records")
        hierarchy = self.hierarchy.peek()
        canonical = None
        if hierarchy is not None:
            target = next(iter(mappings), None)
            if target is not None:
                canonical = hierarchy.model(target.canonical_make_id, target.canonical_model_id)
            else:
                canonical = hierarchy.model(make_id, model_id)
        return PairDetail(
            pair=pair,
            model_years=tuple(model_years),
            mappings=tuple(mappings),
            status=compute_status(mappings, model_years),
            canonical_model=canonical,
        )

    async def canonical_model(self, make_id: int, model_id: int) -> CanonicalModel:
        hierarchy = await self.hierarchy.get()
        model = hierarchy.model(make_id, model_id)
        if model is None:
            raise NotFoundError(f"No canonical reference for make {make_id} model {model_id}")
        return model

    async def count_matching(self, selection: FilterSelection) -> int:
        return await self.expander.count_matching(selection)

    # ── Writes ──────────────────────────────────────────────────────

    async def _refresh_pair_status(self, key: PairKey) -> None:
        if self.statuses.peek() is None or self.statuses.is_stale:
            return
        status = compute_status(
            await self.mappings.fetch_pair_mappings(*key),
            await self.index.get_model_years_for_pair(*key),
        )
        # Merge into whatever is current now; no await until publish.
        current = self.statuses.peek()
        if current is None or self.statuses.is_stale:
            return
        statuses = {} if current.all_unassigned else dict(current.statuses)
        statuses[key] = status
        self.statuses.publish(StatusSnapshot(statuses=MappingProxyType(statuses)))

    async def save_assignment(self, assignment: PairAssignment) -> list[RegularizationMapping]:
        saved = await self.mappings.save_pair_assignment(assignment)
        await self._refresh_pair_status(assignment.pair_key)
        await self._publish(
            "mapping_saved",
            {
                "make_id": assignment.uncurated_make_id,
                "model_id": assignment.uncurated_model_id,
                "rows": len(saved),
            },
            key=f"{assignment.uncurated_make_id}:{assignment.uncurated_model_id}",
        )
        return saved

    async def delete_pair(self, make_id: int, model_id: int) -> int:
        deleted = await self.mappings.delete_pair_mappings(make_id, model_id)
        await self._refresh_pair_status((make_id, model_id))
        await self._publish("mappings_deleted", {"make_id": make_id, "model_id": model_id, "rows": deleted})
        return deleted

    async def delete_mapping(self, mapping_id: int) -> RegularizationMapping:
        removed = await self.mappings.delete_mapping(mapping_id)
        await self._refresh_pair_status(removed.pair_key)
        await self._publish(
            "mappings_deleted",
            {"make_id": removed.uncurated_make_id, "model_id": removed.uncurated_model_id, "rows": 1},
        )
        return removed

    async def run_auto_mapping(self) -> dict[str, Any]:
        """Propose and publish mappings for exact matches; rebuilds statuses afterwards."""
        t0 = time.monotonic()
        hierarchy = await self.hierarchy.get()
        pairs = [p for p in await self.pairs.get() if p.has_trusted_match]
        result: AutoMappingResult = propose_mappings(
            hierarchy,
            pairs,
            existing_pairs=await self.mappings.pairs_with_mappings(),
            make_resolutions=await self.mappings.make_resolutions(),
            config=self.config,
        )
        written = await self.mappings.insert_proposals(result.proposals)
        await self.statuses.rebuild()
        written_keys = set(written)
        summary = {
            "candidates": len(pairs),
            "mapped_pairs": len(written),
            "triplets": sum(1 for m in result.proposals if m.pair_key in written_keys and not m.is_wildcard),
            "skipped_existing": result.skipped_existing,
            "skipped_no_reference": result.skipped_no_reference,
            "skipped_make_conflict": result.skipped_make_conflict,
            "duration_s": round(time.monotonic() - t0, 3),
        }
        logger.info("Auto-mapping finished: %d pairs mapped", len(written), extra={"extra_data": summary})
        await self._publish("auto_mapping_completed", summary)
        return summary

    async def run_full_sweep(self) -> dict[str, Any]:
        """Rebuild every snapshot and auto-map. Returns a status dict, never raises.

        A data change arriving while a sweep runs queues one more pass, so the
        snapshots published at the end reflect the changed data.
        """
        if self._sweep_lock.locked():
            logger.info("Sweep already running; skipped")
            return {"status": "skipped", "reason": "sweep already running", "follow_up_queued": self._follow_up}
        async with self._sweep_lock:
            while True:
                self._follow_up = False
                result = await self._sweep_once()
                if result["status"] != "ok" or not self._follow_up:
                    return result
                logger.info("Raw data changed during the sweep; sweeping again")

    async def _sweep_once(self) -> dict[str, Any]:
        new_operation_id()
        phases = _Phases()
        logger.info("Sweep started")
        try:
            started = time.monotonic()
            pairs = await self.pairs.rebuild()
            phases.mark("pairs", started)

            started = time.monotonic()
            hierarchy = await self.hierarchy.rebuild()
            phases.mark("hierarchy", started)

            started = time.monotonic()
            auto = await self.run_auto_mapping()
            phases.mark("auto_mapping", started)
        except RegularizationError as exc:
            logger.error(
                "Sweep abandoned: %s", exc, exc_info=True,
                extra={"extra_data": {"durations": phases.durations}},
            )
            return {"status": "failed", "error": str(exc), "durations": phases.durations}

        snapshot = self.statuses.peek() or ALL_UNASSIGNED
        result = {
            "status": "ok",
            "pairs": len(pairs),
            "canonical_models": hierarchy.model_count,
            "auto_mapping": auto,
            "status_counts": snapshot.counts(pairs),
            "generations": {
                "pairs": self.pairs.generation,
                "hierarchy": self.hierarchy.generation,
                "statuses": self.statuses.generation,
            },
            "durations": phases.durations,
        }
        logger.info("Sweep finished", extra={"extra_data": result})
        await self._publish("sweep_completed", {k: v for k, v in result.items() if k != "auto_mapping"})
        return result

    def handle_data_change(self, event: Mapping[str, Any] | None = None) -> dict[str, int]:
        """Mark every snapshot stale after the raw dataset changed."""
        for cache in (self.pairs, self.hierarchy, self.statuses):
            cache.invalidate()
        if self._sweep_lock.locked():
            self._follow_up = True
        logger.info("Raw data changed; snapshots invalidated", extra={"extra_data": dict(event or {})})
        return {
            "pairs": self.pairs.generation,
            "hierarchy": self.hierarchy.generation,
            "statuses": self.statuses.generation,
        }
