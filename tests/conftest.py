import pytest
from sqlalchemy import func, select

from coursepay.config import load_settings
from coursepay.infra.sql import make_async_engine
from coursepay.mailer import MemoryMailer
from coursepay.model.db import create_schema
from coursepay.robokassa import sign_result


@pytest.fixture
def settings(tmp_path):
    return load_settings({
        "DATABASE_URL": f"sqlite:///{tmp_path / 'test.db'}",
        "RK_MERCHANT_LOGIN": "shop",
        "RK_PASSWORD1": "pass-one",
        "RK_PASSWORD2": "pass-two",
        "SITE_BASE_URL": "http://course.example",
        "SESSION_SECRET": "test-secret",
    })


@pytest.fixture
async def db_factory(settings):
    engine, SessionAsync = make_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync
    await engine.dispose()


@pytest.fixture
async def db(db_factory):
    async with db_factory() as session:
        yield session


@pytest.fixture
def mailer():
    return MemoryMailer()


@pytest.fixture
def count_rows(db_factory):
    async def _count(model) -> int:
        async with db_factory() as session:
            return (await session.execute(
                select(func.count()).select_from(model)
            )).scalar_one()
    return _count


@pytest.fixture
def result_params(settings):
    """Build a result-URL callback the way the gateway would sign it."""
    def _build(inv_id, out_sum, shp=None, **extra):
        shp = dict(shp or {})
        params = {
            "OutSum": out_sum,
            "InvId": str(inv_id),
            "SignatureValue": sign_result(
                out_sum, inv_id, shp, settings.password2,
                settings.signature_alg,
            ).upper(),
        }
        params.update(shp)
        params.update(extra)
        return params
    return _build
