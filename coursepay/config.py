from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional

from .errors import ConfigError
from .helpers import to_decimal
from .robokassa import SignatureAlgorithm

# ----------------------------
# Config & Constants
# ----------------------------
ROBOKASSA_ENDPOINT = "https://auth.robokassa.ru/Merchant/Index.aspx"
MAGIC_LINK_TTL_SECONDS = 24 * 60 * 60

DEFAULT_PRODUCTS = {
    "premium_course": {
        "name": "Clean: full course",
        "price": "5490",
        "tax": "none",
        "payment_method": "full_payment",
        "payment_object": "service",
    },
}


class PasswordPolicy(str, Enum):
    # only brand-new users get a temporary password
    NEW_USERS = "new_users"
    # any user that has no password yet gets one too
    BACKFILL = "backfill"


@dataclass(frozen=True)
class Product:
    code: str
    name: str
    price: Decimal
    tax: Optional[str] = None
    payment_method: str = "full_payment"
    payment_object: str = "service"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./coursepay.db"
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    merchant_login: str = "demo"
    password1: str = "password1"
    password2: str = "password2"
    test_password1: Optional[str] = None
    test_password2: Optional[str] = None
    is_test: bool = False
    signature_alg: SignatureAlgorithm = SignatureAlgorithm.MD5
    shp_after_password: bool = False
    endpoint: str = ROBOKASSA_ENDPOINT
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    culture: str = "ru"
    default_sno: Optional[str] = None
    default_tax: str = "none"

    receipt_enabled: bool = True
    promo_enabled: bool = True
    password_policy: PasswordPolicy = PasswordPolicy.NEW_USERS
    magic_link_ttl: int = MAGIC_LINK_TTL_SECONDS
    site_base_url: str = "http://localhost:8000"

    default_product: str = "premium_course"
    products: Mapping[str, Product] = field(
        default_factory=lambda: parse_products(DEFAULT_PRODUCTS)
    )
    promos: List[dict] = field(default_factory=list)

    mail_transport: str = "log"
    mail_from: str = "noreply@localhost"
    mail_relay_url: Optional[str] = None
    log_level: str = "INFO"

    @property
    def initiate_password(self) -> str:
        if self.is_test and self.test_password1:
            return self.test_password1
        return self.password1

    @property
    def result_password(self) -> str:
        if self.is_test and self.test_password2:
            return self.test_password2
        return self.password2


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_products(raw: Mapping[str, dict]) -> Dict[str, Product]:
    products = {}
    for code, p in raw.items():
        price = to_decimal(p.get("price"))
        if price is None or price < 0:
            raise ConfigError(f"product {code!r} has an invalid price")
        products[code] = Product(
            code=code,
            name=p.get("name") or code,
            price=price,
            tax=p.get("tax"),
            payment_method=p.get("payment_method") or "full_payment",
            payment_object=p.get("payment_object") or "service",
        )
    return products


def _load_json(path: str):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot load {path}: {e}") from e


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    alg_name = env.get("RK_SIGNATURE_ALG", "md5")
    try:
        alg = SignatureAlgorithm.from_name(alg_name)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    policy_name = env.get("PASSWORD_POLICY", PasswordPolicy.NEW_USERS.value)
    try:
        policy = PasswordPolicy(policy_name.strip().lower())
    except ValueError as e:
        raise ConfigError(f"unknown PASSWORD_POLICY {policy_name!r}") from e

    products_file = env.get("PRODUCTS_FILE")
    raw_products = (
        _load_json(products_file) if products_file else DEFAULT_PRODUCTS
    )
    promos = []
    promo_file = env.get("PROMO_FILE")
    if promo_file:
        promos = _load_json(promo_file)
        if not isinstance(promos, list):
            raise ConfigError(f"{promo_file} must contain a JSON list")

    return Settings(
        database_url=env.get("DATABASE_URL", "sqlite:///./coursepay.db"),
        session_secret=env.get("SESSION_SECRET", "dev-secret-change-me"),
        admin_username=env.get("ADMIN_USERNAME", "admin"),
        admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
        merchant_login=env.get("RK_MERCHANT_LOGIN", "demo"),
        password1=env.get("RK_PASSWORD1", "password1"),
        password2=env.get("RK_PASSWORD2", "password2"),
        test_password1=env.get("RK_TEST_PASSWORD1") or None,
        test_password2=env.get("RK_TEST_PASSWORD2") or None,
        is_test=_flag(env.get("RK_IS_TEST")),
        signature_alg=alg,
        shp_after_password=_flag(env.get("RK_SHP_AFTER_PASSWORD")),
        endpoint=env.get("RK_ENDPOINT", ROBOKASSA_ENDPOINT),
        success_url=env.get("RK_SUCCESS_URL") or None,
        fail_url=env.get("RK_FAIL_URL") or None,
        culture=env.get("RK_CULTURE", "ru"),
        default_sno=env.get("RK_DEFAULT_SNO") or None,
        default_tax=env.get("RK_DEFAULT_TAX", "none"),
        receipt_enabled=_flag(env.get("RECEIPT_ENABLED"), default=True),
        promo_enabled=_flag(env.get("PROMO_ENABLED"), default=True),
        password_policy=policy,
        magic_link_ttl=int(
            env.get("MAGIC_LINK_TTL_SECONDS", MAGIC_LINK_TTL_SECONDS)
        ),
        site_base_url=env.get("SITE_BASE_URL", "http://localhost:8000"),
        default_product=env.get("DEFAULT_PRODUCT", "premium_course"),
        products=parse_products(raw_products),
        promos=promos,
        mail_transport=env.get("MAIL_TRANSPORT", "log").lower(),
        mail_from=env.get("MAIL_FROM", "noreply@localhost"),
        mail_relay_url=env.get("MAIL_RELAY_URL") or None,
        log_level=env.get("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
