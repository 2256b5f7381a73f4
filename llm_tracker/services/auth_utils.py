# llm_tracker/services/auth_utils.py

from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from llm_tracker.config import JWT_SECRET_KEY, JWT_ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from llm_tracker.models.user_models import User

# bcrypt backends vary between platforms; pbkdf2_sha256 is pure python
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class InvalidTokenError(Exception):
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """
    The user for these credentials, or None. Inactive users are returned so
    the caller can tell them apart from a wrong password.
    """
    user = db.query(User).filter(User.email == normalize_email(email)).one_or_none()
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode(
        {"sub": user_id, "exp": expire},
        JWT_SECRET_KEY,
        algorithm=JWT_ALGORITHM,
    )


def user_id_from_token(token: str) -> str:
    """
    Verify signature and expiry and return the `sub` claim.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise InvalidTokenError("Could not validate credentials") from e

    subject = payload.get("sub")
    if not subject:
        raise InvalidTokenError("Invalid token payload")
    return subject
