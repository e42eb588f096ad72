from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings


@dataclass(frozen=True)
class SessionInfo:
    user_id: int


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.session_secret, salt="movements-session")


def issue_session_token(settings: Settings, user_id: int) -> str:
    serializer = _serializer(settings)
    return serializer.dumps({"u": user_id})


def read_session_token(settings: Settings, token: str) -> Optional[SessionInfo]:
    serializer = _serializer(settings)
    try:
        data = serializer.loads(token, max_age=settings.session_max_age_hours * 3600)
    except BadSignature:
        return None

    if not isinstance(data, dict):
        return None
    user_id = data.get("u")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None

    return SessionInfo(user_id=user_id)
