import asyncio
import hashlib
import inspect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

import bcrypt
from cachetools import TTLCache
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import Settings
from app.models import RevokedSession, Session, User, get_utc_now

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
CONFIRM_TOKEN_TTL = timedelta(days=1)


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


class AuthError(Exception):
    """Authentication failure shown to the user as-is."""


class InvalidCredentials(AuthError):
    def __init__(self):
        super().__init__("Invalid login credentials")


class AccountNotConfirmed(AuthError):
    def __init__(self):
        super().__init__("Email not confirmed")


class EmailAlreadyRegistered(AuthError):
    def __init__(self):
        super().__init__("User already registered")


class InvalidConfirmationToken(AuthError):
    def __init__(self):
        super().__init__("Confirmation link is invalid or has expired")


@dataclass(frozen=True)
class SignUpResult:
    user_id: str
    # set when the account can be used immediately
    session: Session | None = None
    # set when the account waits for email confirmation
    confirmation_token: str | None = None


AuthCallback = Callable[[AuthEvent, Session], Any]


def _pw_prehash(pw: str) -> bytes:
    """Pre-hash to avoid bcrypt's 72-byte input limit."""
    return hashlib.sha256(pw.encode("utf-8")).digest()


def hash_password(pw: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_pw_prehash(pw), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(pw: str, pw_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_prehash(pw), pw_hash.encode("utf-8"))
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SessionProvider:
    """
    Email/password identity service.

    Sessions are signed JWTs. Signing out records the token id in the
    shared database until the token would have expired anyway, so every
    worker rejects it. Listeners registered with ``on_change`` hear every
    sign-in and sign-out.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        secret: str,
        algorithm: str = "HS256",
        ttl_seconds: int = 7 * 24 * 3600,
        require_confirmation: bool = False,
        bcrypt_rounds: int = 12,
    ):
        self._session_factory = session_factory
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = timedelta(seconds=ttl_seconds)
        self._require_confirmation = require_confirmation
        self._bcrypt_rounds = bcrypt_rounds
        # local memo of revoked ids; the revoked_sessions table is authoritative
        self._revoked: TTLCache = TTLCache(maxsize=100_000, ttl=ttl_seconds)
        self._listeners: list[AuthCallback] = []

    @classmethod
    def from_settings(cls, session_factory, settings: Settings) -> "SessionProvider":
        return cls(
            session_factory,
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl_seconds=settings.session_ttl_seconds,
            require_confirmation=settings.require_email_confirmation,
            bcrypt_rounds=settings.bcrypt_rounds,
        )

    # auth state listeners

    def on_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _emit(self, event: AuthEvent, session: Session) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Auth listener failed event=%s user=%s", event.value, session.user_id)

    # tokens

    def _issue(self, user: User) -> Session:
        now = get_utc_now()
        expires_at = now + self._ttl
        claims = {
            "sub": user.id,
            "email": user.email,
            "typ": "session",
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        return Session(
            user_id=user.id,
            email=user.email,
            token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    def _decode(self, token: str, typ: str) -> dict | None:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError:
            return None
        if claims.get("typ") != typ or not claims.get("sub"):
            return None
        return claims

    def _confirmation_token(self, user: User) -> str:
        exp = get_utc_now() + CONFIRM_TOKEN_TTL
        claims = {"sub": user.id, "typ": "confirm", "exp": int(exp.timestamp())}
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    # users

    async def _get_user(self, db: AsyncSession, user_id: str) -> User | None:
        return await db.get(User, user_id)

    async def _get_user_by_email(self, db: AsyncSession, email: str) -> User | None:
        result = await db.exec(select(User).where(User.email == email))
        return result.first()

    # public API

    async def sign_up(self, email: str, password: str) -> SignUpResult:
        email = normalize_email(email)
        if "@" not in email:
            raise AuthError("Unable to validate email address: invalid format")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")

        pw_hash = await asyncio.to_thread(hash_password, password, self._bcrypt_rounds)
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=pw_hash,
            confirmed=not self._require_confirmation,
        )
        async with self._session_factory() as db:
            if await self._get_user_by_email(db, email) is not None:
                raise EmailAlreadyRegistered()
            db.add(user)
            try:
                await db.commit()
            except IntegrityError as e:
                raise EmailAlreadyRegistered() from e
            await db.refresh(user)

        logger.info("Registered user=%s confirmed=%s", user.id, user.confirmed)
        if not user.confirmed:
            token = self._confirmation_token(user)
            # No mail transport is configured; the link goes to the log.
            logger.info("Confirmation link for %s: /auth/confirm?token=%s", email, token)
            return SignUpResult(user_id=user.id, confirmation_token=token)

        session = self._issue(user)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return SignUpResult(user_id=user.id, session=session)

    async def confirm(self, token: str) -> str:
        claims = self._decode(token, "confirm")
        if claims is None:
            raise InvalidConfirmationToken()
        async with self._session_factory() as db:
            user = await self._get_user(db, claims["sub"])
            if user is None:
                raise InvalidConfirmationToken()
            if not user.confirmed:
                user.confirmed = True
                db.add(user)
                await db.commit()
                logger.info("Confirmed user=%s", user.id)
            return user.email

    async def sign_in(self, email: str, password: str) -> Session:
        email = normalize_email(email)
        async with self._session_factory() as db:
            user = await self._get_user_by_email(db, email)
        if user is None:
            raise InvalidCredentials()
        ok = await asyncio.to_thread(verify_password, password, user.password_hash)
        if not ok:
            logger.info("Rejected sign-in user=%s", user.id)
            raise InvalidCredentials()
        if not user.confirmed:
            raise AccountNotConfirmed()

        session = self._issue(user)
        logger.info("Signed in user=%s", user.id)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def _revoke(self, claims: dict) -> None:
        jti = claims["jti"]
        self._revoked[jti] = True
        row = RevokedSession(
            jti=jti,
            user_id=claims["sub"],
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
        async with self._session_factory() as db:
            if await db.get(RevokedSession, jti) is None:
                db.add(row)
            # rows past their token's expiry no longer block anything
            stale = await db.exec(select(RevokedSession).where(RevokedSession.expires_at < get_utc_now()))
            for old in stale.all():
                await db.delete(old)
            try:
                await db.commit()
            except IntegrityError:
                # revoked concurrently by another worker
                await db.rollback()

    async def sign_out(self, token: str | None) -> None:
        if not token:
            return
        session = await self.get_current_session(token)
        claims = self._decode(token, "session")
        if claims is not None and claims.get("jti"):
            await self._revoke(claims)
        if session is not None:
            logger.info("Signed out user=%s", session.user_id)
            await self._emit(AuthEvent.SIGNED_OUT, session)

    async def get_current_session(self, token: str | None) -> Session | None:
        """Session for ``token``, or None when it is invalid, expired or
        signed out on any worker sharing the database."""
        if not token:
            return None
        claims = self._decode(token, "session")
        if claims is None or claims.get("jti") in self._revoked:
            return None
        try:
            async with self._session_factory() as db:
                if claims.get("jti") and await db.get(RevokedSession, claims["jti"]) is not None:
                    self._revoked[claims["jti"]] = True
                    return None
                user = await self._get_user(db, claims["sub"])
        except SQLAlchemyError:
            logger.exception("Session lookup failed")
            return None
        if user is None or not user.confirmed:
            return None
        return Session(
            user_id=user.id,
            email=user.email,
            token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
