from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings

SESSION_SALT = "session-token"
RESET_SALT = "password-reset"
RESET_MAX_AGE_HOURS = 1


def _serializer(salt: str, secret: Optional[str] = None) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret or get_settings().secret_key, salt=salt)


def issue_session_token(
    user_id: str, session_version: int, secret: Optional[str] = None
) -> str:
    return _serializer(SESSION_SALT, secret).dumps({"u": user_id, "v": session_version})


def read_session_token(
    token: str, max_age_hours: Optional[int] = None, secret: Optional[str] = None
) -> Optional[tuple[str, int]]:
    """``(user_id, session_version)`` for a valid token, ``None`` otherwise."""
    if not token:
        return None
    if max_age_hours is None:
        max_age_hours = get_settings().session_max_age_hours
    try:
        data = _serializer(SESSION_SALT, secret).loads(
            token, max_age=max_age_hours * 3600
        )
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict) or "u" not in data:
        return None
    return data["u"], int(data.get("v", 0))


def issue_reset_token(
    user_id: str, session_version: int, secret: Optional[str] = None
) -> str:
    return _serializer(RESET_SALT, secret).dumps({"u": user_id, "v": session_version})


def read_reset_token(
    token: str, secret: Optional[str] = None
) -> Optional[tuple[str, int]]:
    try:
        data = _serializer(RESET_SALT, secret).loads(
            token, max_age=RESET_MAX_AGE_HOURS * 3600
        )
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict) or "u" not in data:
        return None
    return data["u"], int(data.get("v", 0))
