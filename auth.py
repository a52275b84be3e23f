from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized

bearer_scheme = HTTPBearer(auto_error=False)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="access-token")


def issue_access_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def verify_access_token(token: str) -> int:
    """Return the user id carried by a valid, unexpired token."""
    max_age = get_settings().token_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature as exc:
        # SignatureExpired is a BadSignature too.
        raise Unauthorized("Invalid or expired token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise Unauthorized("Malformed token payload")
    return user_id


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token")
    return verify_access_token(credentials.credentials)
