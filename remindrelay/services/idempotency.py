from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from remindrelay.domain.models import DeliveryLedgerEntry
from remindrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerKey:
    # One confirmed notification per recipient, notification type and billing cycle.
    owner_id: str
    recipient_id: str
    notification_type: str
    cycle_key: str

    @classmethod
    def for_item(cls, owner_id: str, item: Mapping[str, str]) -> LedgerKey:
        return cls(
            owner_id=owner_id,
            recipient_id=str(item["recipient_id"]),
            notification_type=str(item["notification_type"]),
            cycle_key=str(item["cycle_key"]),
        )


async def ledger_exists(*, session: AsyncSession, key: LedgerKey) -> bool:
    row = (
        await session.execute(
            select(DeliveryLedgerEntry.id).where(
                DeliveryLedgerEntry.owner_id == key.owner_id,
                DeliveryLedgerEntry.recipient_id == key.recipient_id,
                DeliveryLedgerEntry.notification_type == key.notification_type,
                DeliveryLedgerEntry.cycle_key == key.cycle_key,
            )
        )
    ).scalar_one_or_none()
    return row is not None


async def record_delivery(*, session: AsyncSession, key: LedgerKey, sent_via: str) -> bool:
    """Insert the ledger row for a confirmed delivery.

    Returns False when the key was already recorded; the unique constraint
    violation is absorbed so concurrent or repeated deliveries stay quiet.
    """
    session.add(
        DeliveryLedgerEntry(
            id=uuid4().hex,
            owner_id=key.owner_id,
            recipient_id=key.recipient_id,
            notification_type=key.notification_type,
            cycle_key=key.cycle_key,
            sent_via=sent_via,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        increment_counter("ledger_duplicate_total")
        logger.info(
            "ledger_already_recorded owner_id=%s recipient_id=%s type=%s cycle=%s",
            key.owner_id,
            key.recipient_id,
            key.notification_type,
            key.cycle_key,
        )
        return False
    increment_counter("ledger_recorded_total")
    return True
