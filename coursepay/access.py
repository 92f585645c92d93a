from __future__ import annotations
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

import bcrypt
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from .config import PasswordPolicy, Settings
from .errors import (
    AuthenticationError, GoneError, NotFoundError, ValidationError
)
from .helpers import now_ts, normalize_email
from .model.db import AccessGrant, MagicLink, User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class Provisioned:
    user_id: int
    email: str
    token: str
    expires_at: float
    password: Optional[str] = None  # plaintext temp password, mail only
    created: bool = False


def _hashpw(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"),
                         bcrypt.gensalt()).decode("utf-8")


def _checkpw(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"),
                              password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash in the store
        return False


# bcrypt is CPU bound; keep it off the event loop
async def hash_password(password: str) -> str:
    return await run_in_threadpool(_hashpw, password)


async def check_password(password: str,
                         password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    return await run_in_threadpool(_checkpw, password, password_hash)


def new_temp_password() -> str:
    return secrets.token_hex(4)


def new_magic_token() -> str:
    # 256 bits
    return secrets.token_hex(32)


class AccessProvisioner:
    """
    Creates users, issues magic links and grants course access.

    All writes go through the caller's session; the caller owns the
    transaction so provisioning commits together with the order flip.
    """

    def __init__(self, db: AsyncSession, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    async def find_user(self, email: str) -> Optional[User]:
        return (await self.db.execute(
            select(User).where(User.email == normalize_email(email))
        )).scalars().first()

    async def ensure_user(
        self, email: str
    ) -> Tuple[User, Optional[str], bool]:
        """Returns (user, temp_password or None, created)."""
        user = await self.find_user(email)
        if user is None:
            password = new_temp_password()
            user = User(
                email=normalize_email(email),
                password_hash=await hash_password(password),
                created_at=now_ts(),
            )
            self.db.add(user)
            await self.db.flush()
            logger.info("created user %s (id=%s)", user.email, user.id)
            return user, password, True

        if (self.settings.password_policy is PasswordPolicy.BACKFILL
                and not user.password_hash):
            password = new_temp_password()
            user.password_hash = await hash_password(password)
            logger.info("backfilled password for user id=%s", user.id)
            return user, password, False

        return user, None, False

    async def issue_magic_link(self, user_id: int) -> MagicLink:
        now = now_ts()
        link = MagicLink(
            user_id=user_id,
            token=new_magic_token(),
            created_at=now,
            expires_at=now + self.settings.magic_link_ttl,
        )
        self.db.add(link)
        return link

    async def grant_access(self, user_id: int) -> AccessGrant:
        grant = await self.db.get(AccessGrant, user_id)
        if grant is None:
            grant = AccessGrant(user_id=user_id)
            self.db.add(grant)
        grant.granted_at = now_ts()
        # perpetual; a re-grant never shortens what the user already has
        grant.ends_at = None
        return grant

    async def provision(self, email: str) -> Provisioned:
        user, password, created = await self.ensure_user(email)
        link = await self.issue_magic_link(user.id)
        await self.grant_access(user.id)
        await self.db.flush()
        return Provisioned(
            user_id=user.id,
            email=user.email,
            token=link.token,
            expires_at=link.expires_at,
            password=password,
            created=created,
        )

    async def has_access(self, user_id: int) -> bool:
        grant = await self.db.get(AccessGrant, user_id)
        if grant is None:
            return False
        return grant.ends_at is None or grant.ends_at > now_ts()

    # ----------------------------
    # login paths
    # ----------------------------
    async def consume_magic_link(
        self, token: Optional[str]
    ) -> Tuple[int, str]:
        if not token:
            raise ValidationError("token_required")

        row = (await self.db.execute(
            select(MagicLink, User.email)
            .join(User, User.id == MagicLink.user_id)
            .where(MagicLink.token == token,
                   MagicLink.consumed_at.is_(None))
        )).first()
        if row is None:
            raise NotFoundError("token_invalid")
        link, email = row
        now = now_ts()
        if link.expires_at < now:
            raise GoneError("token_expired")

        # guarded: only one caller can move consumed_at away from NULL
        res = await self.db.execute(
            text("""
                UPDATE magic_links SET consumed_at = :now
                WHERE id = :id AND consumed_at IS NULL
            """),
            {"now": now, "id": link.id},
        )
        if res.rowcount != 1:
            raise NotFoundError("token_invalid")
        await self.db.commit()
        return link.user_id, email

    async def authenticate(self, email: str, password: str) -> User:
        if not email or not password:
            raise ValidationError("email_password_required")
        user = await self.find_user(email)
        ok = user is not None and await check_password(
            password, user.password_hash
        )
        if not ok:
            raise AuthenticationError("invalid_credentials")
        return user

    async def set_password(self, user_id: int, password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError("password_too_short")
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("user_not_found")
        user.password_hash = await hash_password(password)
        await self.db.commit()
