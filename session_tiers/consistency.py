"""
Consistency checker: read-only audit of tier exclusivity.

- Dual existence: every heartbeat id is looked up in the cold store in batches.
- Orphans: the most recently active heartbeat ids are sampled and their message
  log and metadata checked.

Findings are logged and counted; nothing is deleted or migrated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from session_tiers.cold_store import ColdStore
from session_tiers.config import Settings
from session_tiers.errors import DualExistenceViolation, OrphanViolation
from session_tiers.hot_store import HotStore
from session_tiers.metrics import DUAL_EXISTENCE_VIOLATIONS, ORPHAN_VIOLATIONS, MetricsRegistry, get_registry

logger = structlog.get_logger(__name__)

MISSING_MESSAGES = "message log"
MISSING_METADATA = "metadata"


@dataclass
class ConsistencyReport:
    scanned: int = 0
    dual_existence: list[DualExistenceViolation] = field(default_factory=list)
    orphans: list[OrphanViolation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.dual_existence or self.orphans or self.errors)


class ConsistencyChecker:
    """Runs both audits; a failure in one is logged and does not stop the other."""

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        settings: Settings,
        metrics: MetricsRegistry | None = None,
    ):
        self._hot = hot
        self._cold = cold
        self._settings = settings
        self._metrics = metrics or get_registry()
        self._metrics.register_counter(DUAL_EXISTENCE_VIOLATIONS)
        self._metrics.register_counter(ORPHAN_VIOLATIONS)

    async def run(self) -> ConsistencyReport:
        report = ConsistencyReport()
        logger.info("consistency_check_started")
        try:
            await self.check_dual_existence(report)
        except Exception as e:
            report.errors.append("dual_existence")
            logger.error("consistency_check_failed", check="dual_existence", error=str(e), exc_info=True)
        try:
            await self.check_orphans(report)
        except Exception as e:
            report.errors.append("orphans")
            logger.error("consistency_check_failed", check="orphans", error=str(e), exc_info=True)
        logger.info(
            "consistency_check_finished",
            scanned=report.scanned,
            dual_existence=len(report.dual_existence),
            orphans=len(report.orphans),
        )
        return report

    async def check_dual_existence(self, report: ConsistencyReport) -> None:
        """Every heartbeat id must be absent from the cold store."""
        async for batch in self._hot.iter_heartbeat_batches(self._settings.consistency_batch_size):
            report.scanned += len(batch)
            if await self._cold.count_by_ids(batch) == 0:
                continue
            for conversation_id in await self._cold.select_by_ids(batch):
                violation = DualExistenceViolation(conversation_id)
                report.dual_existence.append(violation)
                self._metrics.inc(DUAL_EXISTENCE_VIOLATIONS)
                logger.error("dual_existence_violation", conversation_id=conversation_id, detail=str(violation))

    async def check_orphans(self, report: ConsistencyReport) -> None:
        """Sampled heartbeat ids must have both a message log and metadata."""
        sample = await self._hot.heartbeat_most_recent(self._settings.orphan_sample_size)
        for conversation_id in sample:
            if not await self._hot.has_messages(conversation_id):
                self._report_orphan(report, OrphanViolation(conversation_id, MISSING_MESSAGES))
            if not await self._hot.has_metadata(conversation_id):
                self._report_orphan(report, OrphanViolation(conversation_id, MISSING_METADATA))

    def _report_orphan(self, report: ConsistencyReport, violation: OrphanViolation) -> None:
        report.orphans.append(violation)
        self._metrics.inc(ORPHAN_VIOLATIONS)
        logger.warning(
            "orphan_violation",
            conversation_id=violation.conversation_id,
            missing=violation.missing,
        )
