from __future__ import annotations
import json
import logging
import secrets
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Product, Settings
from .errors import NotFoundError, ValidationError
from .helpers import format_outsum, is_valid_email, now_ts
from .model.db import Order, ORDER_PENDING
from .promo import PromoEngine
from .robokassa import RobokassaSigner

logger = logging.getLogger(__name__)

MAX_INVOICE_ID = 2**31 - 1


def random_invoice_id() -> int:
    return secrets.randbelow(MAX_INVOICE_ID) + 1


def build_receipt(product: Product, out_sum: str,
                  settings: Settings) -> Dict[str, Any]:
    receipt: Dict[str, Any] = {}
    if settings.default_sno:
        receipt["sno"] = settings.default_sno
    receipt["items"] = [{
        "name": product.name,
        "quantity": 1,
        "sum": out_sum,
        "tax": product.tax or settings.default_tax,
        "payment_method": product.payment_method,
        "payment_object": product.payment_object,
    }]
    return receipt


def encode_receipt(receipt: Dict[str, Any]) -> tuple[str, str]:
    """Returns (canonical JSON, percent-encoded JSON)."""
    receipt_json = json.dumps(receipt, ensure_ascii=False,
                              separators=(",", ":"))
    return receipt_json, quote(receipt_json, safe="")


class OrderService:
    def __init__(self, db: AsyncSession, settings: Settings,
                 signer: Optional[RobokassaSigner] = None,
                 new_invoice_id: Callable[[], int] = random_invoice_id
                 ) -> None:
        self.db = db
        self.settings = settings
        self.signer = signer or RobokassaSigner.from_settings(settings)
        self.new_invoice_id = new_invoice_id

    def product(self, product_code: Optional[str]) -> Product:
        if product_code is not None and not isinstance(product_code, str):
            raise ValidationError("invalid_product_code")
        code = product_code or self.settings.default_product
        product = self.settings.products.get(code)
        if product is None:
            raise NotFoundError("product_not_found")
        return product

    async def _unused_invoice_id(self) -> int:
        while True:
            inv_id = self.new_invoice_id()
            exists = (await self.db.execute(
                select(Order.invoice_id).where(Order.invoice_id == inv_id)
            )).first()
            if not exists:
                return inv_id

    async def get(self, invoice_id: int) -> Optional[Order]:
        return await self.db.get(Order, invoice_id)

    async def create_order(self, email: Optional[str],
                           product_code: Optional[str] = None,
                           promo_code: Optional[str] = None
                           ) -> Dict[str, Any]:
        if email is not None and not isinstance(email, str):
            raise ValidationError("invalid_email")
        if promo_code is not None and not isinstance(promo_code, str):
            raise ValidationError("invalid_promo_code")
        email = (email or "").strip()
        if not email:
            raise ValidationError("email_required")
        if not is_valid_email(email):
            raise ValidationError("invalid_email")

        product = self.product(product_code)
        base_amount: Decimal = product.price

        # server-side price only; the client never supplies an amount
        final_amount = base_amount
        promo = None
        promo_code = (promo_code or "").strip()
        if promo_code and self.settings.promo_enabled:
            check = await PromoEngine(self.db).validate(
                promo_code, email, base_amount
            )
            if not check.ok:
                raise ValidationError("promo_invalid", reason=check.reason)
            promo = check.promo
            final_amount = check.final_amount

        out_sum = format_outsum(final_amount)

        receipt_json = receipt_enc = None
        if self.settings.receipt_enabled:
            receipt_json, receipt_enc = encode_receipt(
                build_receipt(product, out_sum, self.settings)
            )

        inv_id = await self._unused_invoice_id()
        self.db.add(Order(
            invoice_id=inv_id,
            email=email,
            amount=out_sum,
            product_code=product.code,
            promo_code=promo.code if promo else None,
            promo_discount=(
                format_outsum(base_amount - final_amount) if promo else None
            ),
            status=ORDER_PENDING,
            receipt_json=receipt_json,
            created_at=now_ts(),
        ))
        await self.db.commit()

        shp = {"Shp_email": email, "Shp_product": product.code}
        if promo:
            shp["Shp_promo"] = promo.code

        signature = self.signer.sign_checkout(out_sum, inv_id, receipt_enc,
                                              shp)
        logger.info("order %s created for %s: %s (%s%s)", inv_id, email,
                    out_sum, product.code,
                    f", promo {promo.code}" if promo else "")

        params: Dict[str, Any] = {
            "MerchantLogin": self.settings.merchant_login,
            "OutSum": out_sum,
            "InvId": inv_id,
            "Description": product.name,
            "SignatureValue": signature,
            "Email": email,
        }
        if receipt_enc:
            params["Receipt"] = receipt_enc
        params.update(shp)
        params["Culture"] = self.settings.culture
        params["Encoding"] = "utf-8"
        if self.settings.success_url:
            params["SuccessURL"] = self.settings.success_url
        if self.settings.fail_url:
            params["FailURL"] = self.settings.fail_url
        if self.settings.is_test:
            params["IsTest"] = 1

        return {"endpoint": self.settings.endpoint, "params": params}
