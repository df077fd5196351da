"""
Entitlement roll-up.

Computes, per product key of one account, the effective end date across all
of the account's provisioning records. Rolling up happens twice: first inside
each record (a single request may grant the same product more than once with
different windows), then across records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Sequence

from lapsewatch.core.errors import ConfigurationError
from lapsewatch.domain.models import EntitlementLine, ProvisioningRecord, RolledUpEntitlement

EXTRA_MATCH_ATTRIBUTES = ("category", "modifier", "region")


@dataclass(frozen=True)
class ExtensionMatchPolicy:
    """Which attributes, beyond product code, must match for one grant to extend another.

    The default matches on product code alone.
    """

    attributes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        unknown = [attr for attr in self.attributes if attr not in EXTRA_MATCH_ATTRIBUTES]
        if unknown:
            raise ConfigurationError(
                "unsupported extension match attribute",
                {"attributes": unknown, "allowed": list(EXTRA_MATCH_ATTRIBUTES)},
            )

    @classmethod
    def from_names(cls, names: Iterable[str]) -> ExtensionMatchPolicy:
        # Keep a canonical order so keys are stable regardless of config order.
        wanted = {name.strip().lower() for name in names if name.strip()}
        ordered = tuple(attr for attr in EXTRA_MATCH_ATTRIBUTES if attr in wanted)
        unknown = wanted.difference(EXTRA_MATCH_ATTRIBUTES)
        if unknown:
            raise ConfigurationError(
                "unsupported extension match attribute",
                {"attributes": sorted(unknown), "allowed": list(EXTRA_MATCH_ATTRIBUTES)},
            )
        return cls(attributes=ordered)

    def key_for(self, record: ProvisioningRecord, line: EntitlementLine) -> tuple[str, ...]:
        key = [line.product_code]
        for attr in self.attributes:
            if attr == "category":
                key.append(line.category.value)
            elif attr == "modifier":
                key.append(line.modifier or "")
            elif attr == "region":
                key.append(record.region or "")
        return tuple(key)


def _horizon(line: EntitlementLine) -> date:
    # Perpetual grants outlast any dated grant.
    return date.max if line.end_date is None else line.end_date


@dataclass(frozen=True)
class _RecordMaximum:
    record: ProvisioningRecord
    line: EntitlementLine

    @property
    def end_date(self) -> date | None:
        return self.line.end_date

    @property
    def horizon(self) -> date:
        return _horizon(self.line)

    def precedence(self) -> tuple[date, datetime, str]:
        # Later end date wins; on a tie the newer record wins, then the larger id
        # so the choice never depends on input order.
        return (self.horizon, self.record.created_at or datetime.min, self.record.id)


def _per_record_maxima(
    records: Sequence[ProvisioningRecord], policy: ExtensionMatchPolicy
) -> dict[tuple[str, ...], list[_RecordMaximum]]:
    by_key: dict[tuple[str, ...], list[_RecordMaximum]] = {}
    for record in records:
        record_max: dict[tuple[str, ...], EntitlementLine] = {}
        for line in record.lines:
            key = policy.key_for(record, line)
            current = record_max.get(key)
            if current is None or _horizon(line) > _horizon(current):
                record_max[key] = line
        for key, line in record_max.items():
            by_key.setdefault(key, []).append(_RecordMaximum(record=record, line=line))
    return by_key


def roll_up(
    account_records: Sequence[ProvisioningRecord],
    policy: ExtensionMatchPolicy | None = None,
) -> list[RolledUpEntitlement]:
    """Roll up all entitlement lines of one account.

    Returns one primary entry per product key plus one superseded entry
    (``is_extended=True``) for every other record whose own maximum for that
    key is strictly earlier than the winner's. Records whose maximum ties the
    winner produce no entry of their own.
    """
    policy = policy or ExtensionMatchPolicy()
    results: list[RolledUpEntitlement] = []

    for key, maxima in sorted(_per_record_maxima(account_records, policy).items()):
        winner = max(maxima, key=_RecordMaximum.precedence)
        results.append(
            RolledUpEntitlement(
                account_id=winner.record.account_id,
                account_name=winner.record.account_name,
                product_code=winner.line.product_code,
                category=winner.line.category,
                product_name=winner.line.product_name,
                effective_end_date=winner.end_date,
                contributing_record_id=winner.record.id,
                contributing_record_name=winner.record.name,
                match_key=key,
            )
        )

        superseded = [m for m in maxima if m.horizon < winner.horizon]
        for occurrence in sorted(superseded, key=lambda m: (m.horizon, m.record.id)):
            results.append(
                RolledUpEntitlement(
                    account_id=occurrence.record.account_id,
                    account_name=occurrence.record.account_name,
                    product_code=occurrence.line.product_code,
                    category=occurrence.line.category,
                    product_name=occurrence.line.product_name,
                    effective_end_date=occurrence.end_date,
                    contributing_record_id=occurrence.record.id,
                    contributing_record_name=occurrence.record.name,
                    match_key=key,
                    is_extended=True,
                    extended_by_record_id=winner.record.id,
                    extended_by_record_name=winner.record.name,
                    extended_end_date=winner.end_date,
                )
            )

    return results
