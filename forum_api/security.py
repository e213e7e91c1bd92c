from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from forum_api.config import settings
from forum_api.exceptions import Unauthorized


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_access_token(user_id: int) -> str:
    """Issue a signed bearer token whose subject is *user_id*."""
    expires = datetime.now(timezone.utc) + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    claims = {"sub": str(user_id), "exp": expires}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> int:
    """
    Return the user id carried by *token*.

    Raises ``Unauthorized`` for a bad signature, an expired token or a
    subject that is not a user id.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise Unauthorized("Invalid or expired token") from exc

    subject = payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise Unauthorized("Invalid or expired token") from None
