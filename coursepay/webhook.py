"""
Result-URL reconciliation.

The gateway calls the result URL (GET or POST) once a payment settles and
keeps retrying until the body is exactly ``OK<InvId>``. Processing order:

  1. required fields present and well-formed   -> else 400 bad_request
  2. signature over OutSum:InvId:Shp_*:Password#2 -> else 403 bad_signature
     (nothing is read from or written to the store before this point)
  3. email resolvable                           -> else 400 email_missing
  4. stored amount equals OutSum (+-0.001)      -> else 409 amount_mismatch
  5. order already paid                         -> OK, nothing else happens
  6. provision user/link/grant, flip pending->paid, record promo usage,
     all in one transaction
  7. best-effort notification mail, then OK

Duplicate deliveries are absorbed by step 5 and by the guarded status flip
in step 6: if another delivery flipped the order first, our transaction is
rolled back and we answer OK without sending a second mail.
"""
from __future__ import annotations
import logging
from decimal import Decimal
from typing import Mapping, Optional, Tuple
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .access import AccessProvisioner, Provisioned
from .config import Settings
from .errors import (
    AppError, AuthenticationError, ConflictError, InternalError,
    ValidationError,
)
from .helpers import format_outsum, now_ts, to_decimal
from .mailer import Mailer
from .model.db import Order, ORDER_PAID, ORDER_PENDING
from .orders import MAX_INVOICE_ID
from .promo import PromoEngine
from .robokassa import RobokassaSigner, extract_shp, shp_value

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.001")
EMAIL_FALLBACK_FIELDS = ("EMail", "Email", "email")
MAIL_SUBJECT = "Your course access"


def ok_body(invoice_id: int) -> str:
    return f"OK{invoice_id}"


def _first(params: Mapping[str, object], *names: str) -> Optional[str]:
    for name in names:
        v = params.get(name)
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


class WebhookReconciler:
    def __init__(self, db: AsyncSession, settings: Settings, mailer: Mailer,
                 signer: Optional[RobokassaSigner] = None) -> None:
        self.db = db
        self.settings = settings
        self.mailer = mailer
        self.signer = signer or RobokassaSigner.from_settings(settings)

    async def handle_result(
        self, params: Mapping[str, object]
    ) -> Tuple[str, int]:
        try:
            invoice_id = await self._reconcile(params)
        except AppError as e:
            await self.db.rollback()
            return e.code, e.status_code
        except Exception:
            logger.exception("result callback failed (InvId=%s)",
                             params.get("InvId"))
            await self.db.rollback()
            err = InternalError("internal_error")
            return err.code, err.status_code
        return ok_body(invoice_id), 200

    async def _reconcile(self, params: Mapping[str, object]) -> int:
        out_sum = _first(params, "OutSum")
        raw_inv = _first(params, "InvId")
        signature = _first(params, "SignatureValue")
        if not out_sum or not raw_inv or not signature:
            raise ValidationError("bad_request")
        if not (raw_inv.isascii() and raw_inv.isdigit()):
            raise ValidationError("bad_request")
        invoice_id = int(raw_inv)
        amount = to_decimal(out_sum)
        if amount is None or not amount.is_finite():
            raise ValidationError("bad_request")
        if not 1 <= invoice_id <= MAX_INVOICE_ID:
            raise ValidationError("bad_request")

        shp = extract_shp(params)
        if not self.signer.verify_result(out_sum, raw_inv, shp, signature):
            logger.warning("bad signature on result callback (InvId=%s)",
                           invoice_id)
            raise AuthenticationError("bad_signature")

        order = await self.db.get(Order, invoice_id)

        email = (
            shp_value(shp, "email")
            or _first(params, *EMAIL_FALLBACK_FIELDS)
            or (order.email if order is not None else None)
        )
        if not email:
            raise ValidationError("email_missing")
        email = email.strip()

        if order is not None:
            stored = to_decimal(order.amount)
            if stored is None or abs(stored - amount) > AMOUNT_TOLERANCE:
                logger.warning(
                    "amount mismatch on InvId=%s: stored %s, callback %s",
                    invoice_id, order.amount, out_sum,
                )
                raise ConflictError("amount_mismatch")
            if order.status == ORDER_PAID:
                logger.info("InvId=%s already paid, acknowledging replay",
                            invoice_id)
                return invoice_id
        else:
            order = await self._create_from_callback(
                invoice_id, email, amount, shp
            )
            if order is None:
                return invoice_id

        provisioned = await AccessProvisioner(
            self.db, self.settings
        ).provision(email)

        res = await self.db.execute(
            update(Order)
            .where(Order.invoice_id == invoice_id,
                   Order.status == ORDER_PENDING)
            .values(status=ORDER_PAID, paid_at=now_ts())
        )
        if res.rowcount != 1:
            # a concurrent delivery got there first
            await self.db.rollback()
            logger.info("InvId=%s was paid concurrently, acknowledging",
                        invoice_id)
            return invoice_id

        if order.promo_code:
            await PromoEngine(self.db).record_usage(
                order.promo_code, email, invoice_id
            )
        await self.db.commit()
        logger.info("InvId=%s paid by %s (user id=%s, new=%s)",
                    invoice_id, email, provisioned.user_id,
                    provisioned.created)

        await self._notify(provisioned)
        return invoice_id

    async def _create_from_callback(self, invoice_id: int, email: str,
                                    amount: Decimal,
                                    shp: Mapping[str, str]
                                    ) -> Optional[Order]:
        # signed by the gateway but unknown locally; keep a record of it
        promo = shp_value(shp, "promo")
        order = Order(
            invoice_id=invoice_id,
            email=email,
            amount=format_outsum(amount),
            product_code=shp_value(shp, "product"),
            promo_code=promo.strip().upper() if promo else None,
            status=ORDER_PENDING,
            created_at=now_ts(),
        )
        self.db.add(order)
        try:
            await self.db.flush()
        except IntegrityError:
            # a concurrent delivery inserted it; that one finishes the job
            await self.db.rollback()
            return None
        logger.warning("InvId=%s unknown locally, created from callback",
                       invoice_id)
        return order

    def magic_url(self, token: str, email: str) -> str:
        base = self.settings.site_base_url.rstrip("/")
        return f"{base}/magic?" + urlencode({"token": token, "email": email})

    def compose(self, p: Provisioned) -> str:
        hours = self.settings.magic_link_ttl // 3600
        lines = ["Payment received. Thank you for your purchase!", ""]
        lines.append("Your course access:")
        if p.password:
            lines += [f"Email: {p.email}", f"Password: {p.password}", ""]
        lines += [
            f"One-click sign-in link (valid for {hours} hours):",
            self.magic_url(p.token, p.email),
            "",
            "If the link does not work, sign in with your email and "
            "password on the login page.",
        ]
        return "\n".join(lines)

    async def _notify(self, p: Provisioned) -> None:
        try:
            await self.mailer.send(p.email, MAIL_SUBJECT, self.compose(p))
        except Exception:
            # the gateway only cares about OK<id>; never fail on mail
            logger.exception("could not send access mail to %s", p.email)
