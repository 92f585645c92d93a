from decimal import Decimal

import pytest

from coursepay.model.db import PromoCode, PromoUsage
from coursepay.promo import PromoEngine, apply_discount


async def seed(db_factory, *promos):
    async with db_factory() as session:
        await PromoEngine(session).seed(promos)
        await session.commit()


async def validate(db_factory, code, email, base):
    async with db_factory() as session:
        return await PromoEngine(session).validate(code, email, Decimal(base))


async def use(db_factory, code, email):
    async with db_factory() as session:
        await PromoEngine(session).record_usage(code, email)
        await session.commit()


async def test_percent_promo(db_factory):
    await seed(db_factory, {"code": "SUMMER10", "type": "percent",
                            "value": 10})
    check = await validate(db_factory, "SUMMER10", "a@b.com", "1000.00")
    assert check.ok
    assert check.final_amount == Decimal("900.00")
    assert check.reason == ""


async def test_lookup_ignores_case(db_factory):
    await seed(db_factory, {"code": "Summer10", "type": "percent",
                            "value": 10})
    check = await validate(db_factory, " summer10 ", "a@b.com", "1000")
    assert check.ok
    assert check.promo.code == "SUMMER10"


def test_fixed_discount_never_goes_negative():
    assert apply_discount("fixed", Decimal("1500"),
                          Decimal("1000")) == Decimal("0.00")
    assert apply_discount("fixed", Decimal("490"),
                          Decimal("5490")) == Decimal("5000.00")


def test_rounding_is_half_up():
    # 10.05 * 0.5 = 5.025
    assert apply_discount("percent", Decimal("50"),
                          Decimal("10.05")) == Decimal("5.03")


async def test_unknown_code(db_factory):
    check = await validate(db_factory, "NOPE", "a@b.com", "1000")
    assert not check.ok
    assert check.reason == "not_found"
    assert check.final_amount == Decimal("1000.00")


async def test_checks_run_in_order(db_factory):
    # both expired and below minimum: expiry wins
    await seed(db_factory, {"code": "OLD", "type": "percent", "value": 10,
                            "expires_at": "2000-01-01T00:00:00",
                            "min_amount": "100000"})
    check = await validate(db_factory, "OLD", "a@b.com", "1000")
    assert check.reason == "expired"


async def test_not_started(db_factory):
    await seed(db_factory, {"code": "LATER", "type": "percent", "value": 10,
                            "starts_at": "2999-01-01T00:00:00"})
    check = await validate(db_factory, "LATER", "a@b.com", "1000")
    assert check.reason == "not_started"


async def test_below_min_amount(db_factory):
    await seed(db_factory, {"code": "BIG", "type": "fixed", "value": 100,
                            "min_amount": "2000"})
    check = await validate(db_factory, "BIG", "a@b.com", "1000")
    assert check.reason == "min_amount"


async def test_per_email_cap(db_factory):
    await seed(db_factory, {"code": "SUMMER10", "type": "percent",
                            "value": 10, "max_uses_per_email": 1})
    await use(db_factory, "summer10", "A@B.com")

    check = await validate(db_factory, "SUMMER10", "a@b.com", "1000")
    assert not check.ok
    assert check.reason == "email_limit"

    other = await validate(db_factory, "SUMMER10", "c@d.com", "1000")
    assert other.ok


async def test_global_cap_checked_before_email_cap(db_factory):
    await seed(db_factory, {"code": "ONCE", "type": "percent", "value": 10,
                            "max_uses": 1, "max_uses_per_email": 1})
    await use(db_factory, "ONCE", "a@b.com")
    check = await validate(db_factory, "ONCE", "a@b.com", "1000")
    assert check.reason == "global_limit"


async def test_zero_value_is_rejected(db_factory):
    await seed(db_factory, {"code": "ZERO", "type": "percent", "value": 0})
    check = await validate(db_factory, "ZERO", "a@b.com", "1000")
    assert check.reason == "invalid_value"


async def test_validate_has_no_side_effects(db_factory, count_rows):
    await seed(db_factory, {"code": "SUMMER10", "type": "percent",
                            "value": 10, "max_uses": 5})
    for _ in range(3):
        assert (await validate(db_factory, "SUMMER10", "a@b.com", "1000")).ok
    assert await count_rows(PromoUsage) == 0


async def test_seed_is_idempotent(db_factory, count_rows):
    await seed(db_factory, {"code": "X", "type": "percent", "value": 10})
    await seed(db_factory, {"code": "x", "type": "fixed", "value": 300})
    assert await count_rows(PromoCode) == 1
    check = await validate(db_factory, "X", "a@b.com", "1000")
    assert check.final_amount == Decimal("700.00")


async def test_seed_rejects_unknown_type(db_factory):
    with pytest.raises(ValueError):
        await seed(db_factory, {"code": "X", "type": "bogo", "value": 1})
