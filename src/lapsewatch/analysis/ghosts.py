"""
Ghost account detection.

A ghost account has every tracked entitlement expired and no deprovisioning
request created after its latest expiry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Sequence

import structlog

from lapsewatch.domain.models import (
    ClassifiedEntitlement,
    GhostAccountCandidate,
    LifecycleState,
    ProvisioningRecord,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class GhostVerdict:
    account_id: str
    reason: str
    candidate: GhostAccountCandidate | None = None
    deprovision_record: str | None = None

    @property
    def is_ghost(self) -> bool:
        return self.candidate is not None


class GhostAccountDetector:
    def evaluate(
        self,
        account_id: str,
        account_name: str,
        classified: Sequence[ClassifiedEntitlement],
        later_records: Sequence[ProvisioningRecord],
        checked_at: datetime,
    ) -> GhostVerdict:
        if any(item.state is not LifecycleState.expired for item in classified):
            return GhostVerdict(account_id, "has_live_entitlement")

        # Superseded entries always end before their primary, so counting
        # primaries alone gives one entry per product.
        expired = [
            item
            for item in classified
            if item.state is LifecycleState.expired and not item.is_extended
        ]
        if not expired:
            return GhostVerdict(account_id, "no_expired_products")

        latest_expiry = max(item.rolled_up.effective_end_date for item in expired)
        expiry_start = datetime.combine(latest_expiry, time.min)
        for record in later_records:
            if (
                record.is_deprovision
                and record.created_at is not None
                and record.created_at > expiry_start
            ):
                return GhostVerdict(
                    account_id, "deprovision_acknowledged", deprovision_record=record.name
                )

        candidate = GhostAccountCandidate(
            account_id=account_id,
            account_name=account_name,
            total_expired_products=len(expired),
            latest_expiry_date=latest_expiry,
            last_checked=checked_at,
        )
        return GhostVerdict(account_id, "ghost", candidate=candidate)

    def detect(
        self,
        account_id: str,
        account_name: str,
        classified: Sequence[ClassifiedEntitlement],
        later_records: Sequence[ProvisioningRecord],
        checked_at: datetime,
    ) -> GhostAccountCandidate | None:
        verdict = self.evaluate(account_id, account_name, classified, later_records, checked_at)
        logger.debug(
            "ghost_verdict",
            account_id=account_id,
            reason=verdict.reason,
            deprovision_record=verdict.deprovision_record,
        )
        return verdict.candidate
