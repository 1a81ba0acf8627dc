import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="session-token")


def issue_session_token(user_id: int, max_age_hours: Optional[int] = None) -> str:
    settings = get_settings()
    hours = max_age_hours or settings.token_max_age_hours
    timestamp = int(time.time())
    expiry = timestamp + (hours * 3600)

    token_data = {"u": user_id, "ts": timestamp, "exp": expiry}

    return _serializer().dumps(token_data)


def read_session_token(token: str) -> Optional[int]:
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.token_max_age_hours * 3600
        )
    except BadSignature:
        return None

    if not isinstance(data, dict) or not isinstance(data.get("u"), int):
        return None

    if int(time.time()) > data.get("exp", 0):
        return None

    return data["u"]


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
