"""
Authentication

Bearer tokens are checked against the external identity provider first and
against locally issued tokens second. Routes that need a user depend on
get_current_user; routes open to guests depend on get_requester.
"""

import os
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from bson import ObjectId
from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db
from errors import ForbiddenError, UnauthorizedError, ValidationError
from schemas import GUEST_USER_ID, LoginInput, RegisterInput, User
from users import ExternalIdentity, get_or_create_user

# Local token config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days

# External identity provider config
IDENTITY_PUBLIC_KEY = os.getenv("IDENTITY_PUBLIC_KEY")
IDENTITY_AUDIENCE = os.getenv("IDENTITY_AUDIENCE")
IDENTITY_ISSUER = os.getenv("IDENTITY_ISSUER")

# When set, order status updates and product sync need X-Admin-Key
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


class IdentityProvider:
    """Verifies ID tokens signed by the external identity provider."""

    def __init__(
        self,
        public_key: Optional[str] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        algorithms: Sequence[str] = ("RS256",),
    ):
        self.public_key = public_key
        self.audience = audience
        self.issuer = issuer
        self.algorithms = list(algorithms)

    def verify(self, token: str) -> ExternalIdentity:
        if not self.public_key:
            raise JWTError("Identity provider not configured")
        claims = jwt.decode(
            token,
            self.public_key,
            algorithms=self.algorithms,
            audience=self.audience,
            issuer=self.issuer,
            options={"verify_aud": self.audience is not None},
        )
        uid = claims.get("user_id") or claims.get("sub")
        if not uid:
            raise JWTError("Token has no subject")
        return ExternalIdentity(
            uid=uid,
            email=claims.get("email"),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )


identity_provider = IdentityProvider(
    public_key=IDENTITY_PUBLIC_KEY.replace("\\n", "\n") if IDENTITY_PUBLIC_KEY else None,
    audience=IDENTITY_AUDIENCE,
    issuer=IDENTITY_ISSUER,
)


def get_identity_provider() -> IdentityProvider:
    return identity_provider


@dataclass(frozen=True)
class Requester:
    """Who is calling: an authenticated user document, or a guest."""
    user: Optional[Dict[str, Any]] = None

    @property
    def is_guest(self) -> bool:
        return self.user is None

    @property
    def user_id(self) -> str:
        return GUEST_USER_ID if self.user is None else str(self.user["_id"])


def resolve_user(db: Database, token: str, provider: IdentityProvider) -> Optional[Dict[str, Any]]:
    try:
        identity = provider.verify(token)
    except JWTError:
        pass
    else:
        return get_or_create_user(db, identity)

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    return db["user"].find_one({"_id": ObjectId(user_id)})


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


# Dependencies

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Dict[str, Any]:
    token = _bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Access token required")
    user = resolve_user(db, token, provider)
    if not user:
        raise UnauthorizedError("Invalid token")
    return user


def get_requester(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Requester:
    token = _bearer_token(authorization)
    if not token:
        return Requester()
    return Requester(user=resolve_user(db, token, provider))


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if ADMIN_API_KEY and not secrets.compare_digest(x_admin_key or "", ADMIN_API_KEY):
        raise ForbiddenError("Admin capability required")


# Local accounts

def register_user(db: Database, payload: RegisterInput) -> Dict[str, Any]:
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("Email already registered")
    user = User(
        uid=f"local-{uuid.uuid4().hex}",
        email=email,
        display_name=payload.name,
        password_hash=hash_password(payload.password),
    )
    try:
        user_id = create_document(db, "user", user.model_dump(mode="json", exclude_none=True))
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    return db["user"].find_one({"_id": ObjectId(user_id)})


def authenticate(db: Database, payload: LoginInput) -> Dict[str, Any]:
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not user.get("password_hash") or not verify_password(payload.password, user["password_hash"]):
        raise ValidationError("Invalid email or password")
    return user
