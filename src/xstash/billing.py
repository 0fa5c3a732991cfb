"""Append-only ledger of billable X API reads and the cost estimate over it.

X bills each resource (post or user) at most once per UTC day, however many
times it is read. The ledger keeps every read for auditing and the estimate
collapses them: one unit per (billed day, resource type, resource id),
priced at the lowest unit price recorded for that group. That makes the
estimate a lower bound when prices change during a day.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Literal

from sqlalchemy import func, insert, select

from .clock import now_iso, utc_billed_day
from .schema import ApiRequestTable
from .store import Store

logger = logging.getLogger(__name__)

ResourceType = Literal["post", "user"]


@dataclass(frozen=True)
class UnitPrices:
    post_read_usd: float
    user_read_usd: float


class BillingLedger:
    def __init__(self, store: Store):
        self.store = store

    def record_reads(
        self,
        run_id: int,
        endpoint: str,
        post_ids: Iterable[str],
        user_ids: Iterable[str],
        prices: UnitPrices,
        requested_at: str | None = None,
    ) -> int:
        """Append one row per distinct post and user id read by one call.

        Duplicates within a call collapse; repeated calls each add rows.
        Returns the number of rows written.
        """
        requested_at = requested_at or now_iso()
        billed_day = utc_billed_day(requested_at)
        rows = [
            {
                "sync_run_id": run_id,
                "requested_at": requested_at,
                "billed_day_utc": billed_day,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "endpoint": endpoint,
                "unit_price_usd": price,
            }
            for resource_type, ids, price in (
                ("post", post_ids, prices.post_read_usd),
                ("user", user_ids, prices.user_read_usd),
            )
            for resource_id in dict.fromkeys(ids)
        ]
        if not rows:
            return 0
        with self.store.transaction() as session:
            session.execute(insert(ApiRequestTable), rows)
        logger.debug("Recorded %d billable reads for %s", len(rows), endpoint)
        return len(rows)

    def _billable_reads(self, run_id: int | None):
        t = ApiRequestTable
        stmt = select(
            t.billed_day_utc,
            t.resource_type,
            t.resource_id,
            func.min(t.unit_price_usd).label("unit_price_usd"),
        ).group_by(t.billed_day_utc, t.resource_type, t.resource_id)
        if run_id is not None:
            stmt = stmt.where(t.sync_run_id == run_id)
        return stmt.subquery("billable_reads")

    def estimate_cost(self, run_id: int | None = None) -> float:
        """Deduplicated cost in USD for one run, or the whole ledger when run_id is None."""
        reads = self._billable_reads(run_id)
        with self.store.transaction() as session:
            return float(
                session.execute(
                    select(func.coalesce(func.sum(reads.c.unit_price_usd), 0.0))
                ).scalar_one()
            )

    def cost_by_resource_type(self, run_id: int | None = None) -> dict[str, float]:
        reads = self._billable_reads(run_id)
        totals = {"post": 0.0, "user": 0.0}
        with self.store.transaction() as session:
            rows = session.execute(
                select(reads.c.resource_type, func.sum(reads.c.unit_price_usd)).group_by(
                    reads.c.resource_type
                )
            )
            for resource_type, total in rows:
                totals[resource_type] = float(total or 0.0)
        return totals

    def raw_read_counts(self, run_id: int | None = None) -> dict[str, int]:
        """Un-deduplicated read counts by resource type."""
        t = ApiRequestTable
        stmt = select(t.resource_type, func.count()).group_by(t.resource_type)
        if run_id is not None:
            stmt = stmt.where(t.sync_run_id == run_id)
        counts = {"post": 0, "user": 0}
        with self.store.transaction() as session:
            for resource_type, count in session.execute(stmt):
                counts[resource_type] = int(count)
        return counts
