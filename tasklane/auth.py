"""Bearer-token authentication.

Tokens are HS256 JWTs whose ``sub`` claim is the user id; every todo,
category and activity query is scoped by that id.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import select
from sqlalchemy.exc import IntegrityError
from passlib.context import CryptContext
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError
from .models import User
from .db import async_session
from . import config
import logging

logger = logging.getLogger(__name__)

# Placeholder used when SECRET_KEY is missing; main.lifespan refuses to
# serve with it.
INSECURE_SECRET_FALLBACK = "CHANGE_ME_IN_ENV_FOR_TESTS"
SECRET_KEY = os.getenv("SECRET_KEY", INSECURE_SECRET_FALLBACK)
TOKEN_ALGORITHM = "HS256"

# pbkdf2_sha256 is pure Python; bcrypt hashes still verify when present.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
bearer_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class TokenClaims(BaseModel):
    sub: str
    exp: int


class UsernameTakenError(ValueError):
    pass


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _load_user(**criteria) -> Optional[User]:
    stmt = select(User)
    for column, value in criteria.items():
        stmt = stmt.where(getattr(User, column) == value)
    async with async_session() as sess:
        res = await sess.exec(stmt)
        return res.first()


async def create_user(username: str, password: str) -> User:
    username = (username or '').strip()
    if not username or not password:
        raise ValueError('username and password required')
    user = User(username=username, password_hash=pwd_context.hash(password))
    async with async_session() as sess:
        sess.add(user)
        try:
            await sess.commit()
        except IntegrityError:
            await sess.rollback()
            raise UsernameTakenError('username already taken')
        await sess.refresh(user)
    logger.info('registered user id=%s username=%s', user.id, user.username)
    return user


async def authenticate_user(username: str, password: str) -> Optional[User]:
    user = await _load_user(username=username)
    if user is None or not pwd_context.verify(password, user.password_hash):
        return None
    return user


def issue_token(user: User, lifetime: Optional[timedelta] = None) -> str:
    """Sign a bearer token for ``user`` (default lifetime from config)."""
    lifetime = lifetime or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    expires = datetime.now(timezone.utc) + lifetime
    claims = {"sub": str(user.id), "exp": int(expires.timestamp())}
    return jwt.encode(claims, SECRET_KEY, algorithm=TOKEN_ALGORITHM)


async def get_current_user(token: Optional[str] = Depends(bearer_scheme)) -> Optional[User]:
    """Resolve the bearer token to a user.

    No token yields None so routes can decide; a bad or stale token is a 401.
    """
    if not token:
        return None
    try:
        claims = TokenClaims(**jwt.decode(token, SECRET_KEY, algorithms=[TOKEN_ALGORITHM]))
        user_id = int(claims.sub)
    except (JWTError, ValidationError, ValueError):
        raise _unauthorized("Could not validate credentials")
    user = await _load_user(id=user_id)
    if user is None:
        raise _unauthorized("Could not validate credentials")
    return user


async def require_login(user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise _unauthorized("authentication required")
    return user
