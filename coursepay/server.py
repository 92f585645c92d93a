from __future__ import annotations
import logging
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse, PlainTextResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from .access import AccessProvisioner
from .config import Settings, configure_logging, load_settings
from .errors import (
    AuthenticationError, NotFoundError, ValidationError,
    install_error_handlers,
)
from .helpers import ct_equal, format_outsum, to_iso
from .infra.sql import make_async_engine
from .mailer import Mailer, new_mailer
from .model.db import Order, create_schema
from .orders import OrderService
from .promo import PromoEngine
from .session import SessionContext, session_context
from .webhook import WebhookReconciler

logger = logging.getLogger(__name__)


def _text(payload: dict, name: str, error: str, **extra) -> Optional[str]:
    """A JSON string field, or None when absent; anything else is a 400."""
    value = payload.get(name)
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(error, **extra)


def create_app(settings: Optional[Settings] = None,
               mailer: Optional[Mailer] = None) -> FastAPI:
    settings = settings or load_settings()
    engine, SessionAsync = make_async_engine(settings.database_url)

    app = FastAPI(
        title="coursepay",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie="cabinet_sess",
        same_site="lax",
        https_only=settings.site_base_url.startswith("https://"),
    )
    install_error_handlers(app)

    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.mailer = mailer

    async def get_db() -> AsyncIterator[AsyncSession]:
        async with SessionAsync() as session:
            yield session

    def get_mailer() -> Mailer:
        return app.state.mailer

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await create_schema(conn)
        if settings.promos:
            async with SessionAsync() as session:
                n = await PromoEngine(session).seed(settings.promos)
                await session.commit()
            logger.info("seeded %d promo codes", n)

    @app.on_event("startup")
    async def _mailer_start():
        if app.state.mailer is None:
            app.state.mailer = new_mailer(settings)

    @app.on_event("shutdown")
    async def _shutdown():
        m = app.state.mailer
        if m is not None:
            await m.aclose()
        await engine.dispose()

    @app.get("/health")
    async def health():
        return {"ok": True}

    # ----------------------------
    # API: create order -> signed checkout parameters
    # ----------------------------
    @app.post("/api/order/create")
    async def create_order(payload: dict, db: AsyncSession = Depends(get_db)):
        return await OrderService(db, settings).create_order(
            _text(payload, "email", "invalid_email"),
            _text(payload, "product_code", "invalid_product_code"),
            _text(payload, "promo_code", "invalid_promo_code"),
        )

    # ----------------------------
    # API: promo preview
    # ----------------------------
    @app.post("/api/promo/validate")
    async def validate_promo(payload: dict,
                             db: AsyncSession = Depends(get_db)):
        if not settings.promo_enabled:
            raise NotFoundError("promo_disabled", success=False)
        code = (_text(payload, "code", "invalid_code", success=False)
                or "").strip()
        if not code:
            raise ValidationError("code_required", success=False)
        email = (_text(payload, "email", "invalid_email", success=False)
                 or "").strip() or "guest@example.com"
        try:
            product = OrderService(db, settings).product(_text(
                payload, "product_code", "invalid_product_code",
                success=False,
            ))
        except NotFoundError as e:
            raise NotFoundError(e.code, success=False)

        check = await PromoEngine(db).validate(code, email, product.price)
        if not check.ok:
            raise ValidationError(check.reason, success=False)
        promo = check.promo
        return {
            "success": True,
            "code": promo.code,
            "type": promo.type,
            "value": promo.value,
            "amount": format_outsum(check.final_amount),
            "base_amount": format_outsum(product.price),
        }

    # ----------------------------
    # Result URL (gateway -> us), GET or POST
    # ----------------------------
    @app.api_route("/robokassa/result", methods=["GET", "POST"],
                   response_class=PlainTextResponse)
    async def robokassa_result(
        request: Request,
        db: AsyncSession = Depends(get_db),
        mailer: Mailer = Depends(get_mailer),
    ):
        params = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update(
                {k: v for k, v in form.items() if isinstance(v, str)}
            )
        body, status = await WebhookReconciler(
            db, settings, mailer
        ).handle_result(params)
        return PlainTextResponse(body, status_code=status)

    # ----------------------------
    # Auth: magic link, password, session
    # ----------------------------
    @app.post("/api/auth/magic-consume")
    async def magic_consume(
        payload: dict,
        db: AsyncSession = Depends(get_db),
        ctx: SessionContext = Depends(session_context),
    ):
        user_id, email = await AccessProvisioner(
            db, settings
        ).consume_magic_link(_text(payload, "token", "invalid_token"))
        ctx.sign_in(user_id, email)
        return {"ok": True, "email": email}

    @app.post("/api/auth/login")
    async def login(
        payload: dict,
        db: AsyncSession = Depends(get_db),
        ctx: SessionContext = Depends(session_context),
    ):
        user = await AccessProvisioner(db, settings).authenticate(
            (_text(payload, "email", "invalid_email") or "").strip(),
            _text(payload, "password", "invalid_password") or "",
        )
        ctx.sign_in(user.id, user.email)
        return {"ok": True, "email": user.email}

    @app.post("/api/auth/set-password")
    async def set_password(
        payload: dict,
        db: AsyncSession = Depends(get_db),
        ctx: SessionContext = Depends(session_context),
    ):
        user_id = ctx.require_user()
        await AccessProvisioner(db, settings).set_password(
            user_id, _text(payload, "password", "invalid_password") or ""
        )
        return {"ok": True}

    @app.post("/api/auth/logout")
    async def logout(ctx: SessionContext = Depends(session_context)):
        ctx.clear()
        return {"ok": True}

    @app.get("/api/user-info")
    async def user_info(
        db: AsyncSession = Depends(get_db),
        ctx: SessionContext = Depends(session_context),
    ):
        user_id = ctx.require_user()
        has_access = await AccessProvisioner(db, settings).has_access(user_id)
        return {"email": ctx.email, "has_access": has_access}

    # ----------------------------
    # Admin: read-only order feed
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login(
        payload: dict,
        ctx: SessionContext = Depends(session_context),
    ):
        username = (_text(payload, "username", "invalid_credentials")
                    or "").strip()
        password = _text(payload, "password", "invalid_credentials") or ""
        ok_user = ct_equal(username, settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if not (ok_user and ok_pass):
            raise AuthenticationError("invalid_credentials")
        ctx.sign_in_admin(username)
        return {"ok": True}

    @app.post("/admin/logout")
    async def admin_logout(ctx: SessionContext = Depends(session_context)):
        ctx.clear()
        return {"ok": True}

    @app.get("/api/admin/orders")
    async def api_admin_orders(
        limit: int = 200,
        db: AsyncSession = Depends(get_db),
        ctx: SessionContext = Depends(session_context),
    ):
        ctx.require_admin()
        limit = max(1, min(limit, 500))
        rows = (await db.execute(
            select(Order).order_by(Order.created_at.desc()).limit(limit)
        )).scalars().all()
        items = [{
            "invoice_id": o.invoice_id,
            "email": o.email,
            "amount": o.amount,
            "status": o.status,
            "product_code": o.product_code or "",
            "promo_code": o.promo_code or "",
            "promo_discount": o.promo_discount or "",
            "created_at_iso": to_iso(o.created_at),
            "paid_at_iso": to_iso(o.paid_at) or "-",
        } for o in rows]
        return {"items": items, "limit": limit}

    return app


def _default_app() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


# uvicorn coursepay.server:app
app = _default_app()
