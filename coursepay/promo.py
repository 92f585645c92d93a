"""
Promo codes: validation, discount computation and the usage ledger.

Validation is side-effect free. Usage rows are appended only when an order
carrying the promo becomes paid. Caps are checked against the ledger with a
plain COUNT, so two redemptions racing at the cap can both pass; an exact
cap would need a conditional increment on a per-code counter.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts, normalize_email, round_money, to_decimal
from .model.db import PromoCode, PromoUsage, PROMO_FIXED, PROMO_PERCENT

logger = logging.getLogger(__name__)

# reasons, in the order the checks run
R_NOT_FOUND = "not_found"
R_NOT_STARTED = "not_started"
R_EXPIRED = "expired"
R_MIN_AMOUNT = "min_amount"
R_GLOBAL_LIMIT = "global_limit"
R_EMAIL_LIMIT = "email_limit"
R_INVALID_VALUE = "invalid_value"


@dataclass(frozen=True)
class PromoCheck:
    final_amount: Decimal
    ok: bool
    reason: str = ""
    promo: Optional[PromoCode] = None


def apply_discount(promo_type: str, value: Decimal,
                   base_amount: Decimal) -> Decimal:
    if promo_type == PROMO_PERCENT:
        final = base_amount * (Decimal(1) - value / Decimal(100))
    else:
        final = base_amount - value
    return round_money(max(Decimal(0), final))


def _parse_ts(value) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value)).timestamp()


def _optional_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


class PromoEngine:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find(self, code: str) -> Optional[PromoCode]:
        key = (code or "").strip().upper()
        if not key:
            return None
        return await self.db.get(PromoCode, key)

    async def _usage_counts(self, code: str, email: str) -> tuple[int, int]:
        total = (await self.db.execute(
            select(func.count()).select_from(PromoUsage)
            .where(PromoUsage.code == code)
        )).scalar_one()
        per_email = (await self.db.execute(
            select(func.count()).select_from(PromoUsage)
            .where(PromoUsage.code == code,
                   PromoUsage.email == normalize_email(email))
        )).scalar_one()
        return int(total), int(per_email)

    async def validate(self, code: str, email: str,
                       base_amount: Decimal) -> PromoCheck:
        base_amount = round_money(Decimal(base_amount))
        promo = await self.find(code)
        if promo is None:
            return PromoCheck(base_amount, False, R_NOT_FOUND)

        now = now_ts()
        if promo.starts_at is not None and promo.starts_at > now:
            return PromoCheck(base_amount, False, R_NOT_STARTED, promo)
        if promo.expires_at is not None and promo.expires_at < now:
            return PromoCheck(base_amount, False, R_EXPIRED, promo)

        min_amount = to_decimal(promo.min_amount)
        if min_amount is not None and base_amount < min_amount:
            return PromoCheck(base_amount, False, R_MIN_AMOUNT, promo)

        if promo.max_uses is not None or promo.max_uses_per_email is not None:
            total, per_email = await self._usage_counts(promo.code, email)
            if promo.max_uses is not None and total >= promo.max_uses:
                return PromoCheck(base_amount, False, R_GLOBAL_LIMIT, promo)
            if (promo.max_uses_per_email is not None
                    and per_email >= promo.max_uses_per_email):
                return PromoCheck(base_amount, False, R_EMAIL_LIMIT, promo)

        value = to_decimal(promo.value)
        if value is None or value <= 0:
            return PromoCheck(base_amount, False, R_INVALID_VALUE, promo)

        final = apply_discount(promo.type, value, base_amount)
        return PromoCheck(final, True, "", promo)

    async def record_usage(self, code: str, email: str,
                           invoice_id: Optional[int] = None) -> None:
        self.db.add(PromoUsage(
            code=code.strip().upper(),
            email=normalize_email(email),
            used_at=now_ts(),
            invoice_id=invoice_id,
        ))
        logger.info("promo %s used by %s (invoice %s)",
                    code.upper(), email, invoice_id)

    async def seed(self, promos: Iterable[dict]) -> int:
        """Upsert promo definitions, e.g. from PROMO_FILE. Caller commits."""
        n = 0
        for p in promos:
            key = str(p.get("code") or "").strip().upper()
            if not key:
                continue
            promo_type = (p.get("type") or PROMO_PERCENT).lower()
            if promo_type not in (PROMO_PERCENT, PROMO_FIXED):
                raise ValueError(f"promo {key}: unknown type {promo_type!r}")
            row = await self.db.get(PromoCode, key)
            if row is None:
                row = PromoCode(code=key)
                self.db.add(row)
            row.type = promo_type
            row.value = str(p.get("value", "0"))
            row.min_amount = (
                None if p.get("min_amount") in (None, "")
                else str(p["min_amount"])
            )
            row.starts_at = _parse_ts(p.get("starts_at"))
            row.expires_at = _parse_ts(p.get("expires_at", p.get("ends_at")))
            row.max_uses = _optional_int(p.get("max_uses"))
            row.max_uses_per_email = _optional_int(
                p.get("max_uses_per_email", p.get("max_uses_per_user"))
            )
            n += 1
        return n
