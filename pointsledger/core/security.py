import hashlib
import uuid
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from pointsledger.core.config import get_settings


def get_admin_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="pointsledger-admin",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_admin_token(admin_id: str, role: str = "admin") -> str:
    serializer = get_admin_serializer()
    return serializer.dumps({"admin_id": admin_id, "role": role})


def load_admin_token(token: str) -> dict[str, Any] | None:
    serializer = get_admin_serializer()
    try:
        return serializer.loads(token, max_age=get_settings().admin_token_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def new_id() -> str:
    return uuid.uuid4().hex
