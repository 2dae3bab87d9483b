"""User directory and bearer-token authentication."""

from datetime import datetime, timedelta, timezone

import jwt

from .document_store import DocumentStore
from .errors import AuthenticationError, NotFoundError, PermissionDeniedError
from .models import Role, User


class UserDirectory:
    """Read access to the users collection."""

    def __init__(self, store: DocumentStore):
        self._users = store.collection("users")

    def get_user(self, user_id: str) -> User:
        """
        Get a user by ID.

        Raises:
            NotFoundError: If the user doesn't exist.
        """
        doc = self._users.find_one({"_id": user_id})
        if doc is None:
            raise NotFoundError("User", user_id)
        return User.from_dict(doc)

    def add_user(self, user: User) -> User:
        self._users.insert_one(user.to_dict())
        return user


class TokenAuthority:
    """Issues and verifies HS256 bearer tokens whose subject is a user ID."""

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 7 * 24 * 3600):
        self._secret = secret
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def issue(self, user_id: str, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def user_id_from(self, token: str) -> str:
        """
        Decode a token and return its subject.

        Raises:
            AuthenticationError: If the token is invalid or expired.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError("Invalid token") from e
        subject = payload.get("sub")
        if not subject:
            raise AuthenticationError("Token has no subject")
        return subject


def authenticate(directory: UserDirectory, authority: TokenAuthority, authorization: str | None) -> User:
    """
    Resolve the user behind an ``Authorization: Bearer`` header.

    Raises:
        AuthenticationError: On a missing or bad token, or an unknown user.
        PermissionDeniedError: If the account is deactivated.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    user_id = authority.user_id_from(authorization[len("Bearer "):].strip())
    try:
        user = directory.get_user(user_id)
    except NotFoundError as e:
        raise AuthenticationError("Unknown user") from e
    if not user.is_active:
        raise PermissionDeniedError("Account is deactivated")
    return user


def require_role(user: User, *roles: Role) -> None:
    if user.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise PermissionDeniedError(f"Requires role: {allowed}")
