import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consensus_backend.config import DEFAULT_AI_PROVIDER, DEFAULT_CHAT_MODEL, SESSION_SECRET

logger = logging.getLogger(__name__)

PROVIDER_ENDPOINTS = {
    "openai": "https://api.openai.com/v1",
    "siliconflow": "https://api.siliconflow.cn/v1",
}
FALLBACK_ENDPOINT = "https://dashscope.aliyuncs.com/api/v1"

EMBEDDING_MODELS = {
    "openai": "text-embedding-3-small",
    "siliconflow": "BAAI/bge-large-zh-v1.5",
    "qwen": "text-embedding-v2",
}
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


@dataclass(frozen=True)
class AiCredentials:
    provider: str
    api_key: str
    endpoint: Optional[str] = None
    model: str = DEFAULT_CHAT_MODEL

    @property
    def base_url(self) -> str:
        return resolve_endpoint(self.provider, self.endpoint)

    @property
    def embedding_model(self) -> str:
        return EMBEDDING_MODELS.get(self.provider, DEFAULT_EMBEDDING_MODEL)


def resolve_endpoint(provider: Optional[str], endpoint: Optional[str] = None) -> str:
    """Custom endpoint if given, else the provider default; always ends in /v1."""
    url = (endpoint or "").strip() or PROVIDER_ENDPOINTS.get(provider or "", FALLBACK_ENDPOINT)
    url = url.rstrip("/")
    if not url.endswith("/v1"):
        url = f"{url}/v1"
    return url


def decode_secret(encrypted: str, salt: str = SESSION_SECRET) -> str:
    """Decode a stored ``base64("<salt>:<api key>")`` secret."""
    try:
        decoded = base64.b64decode(encrypted, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return encrypted.strip()

    if decoded.startswith(f"{salt}:"):
        return decoded[len(salt) + 1:].strip()

    colon = decoded.find(":")
    if 0 < colon < len(decoded) - 1:
        logger.warning("Stored API key was encoded with a different SESSION_SECRET; using embedded key")
        return decoded[colon + 1:].strip()
    return decoded.strip()


def encode_secret(api_key: str, salt: str = SESSION_SECRET) -> str:
    return base64.b64encode(f"{salt}:{api_key.strip()}".encode("utf-8")).decode("ascii")


def get_env_ai_defaults() -> Dict[str, Any]:
    return {
        "provider": os.getenv("AI_PROVIDER", DEFAULT_AI_PROVIDER),
        "api_key": os.getenv("AI_API_KEY", ""),
        "endpoint": os.getenv("AI_API_ENDPOINT") or None,
        "model": os.getenv("AI_CHAT_MODEL", DEFAULT_CHAT_MODEL),
    }


def merge_ai_config(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    config = get_env_ai_defaults()
    if not overrides:
        return config
    for key, value in overrides.items():
        if value in (None, ""):
            continue
        config[key] = value.strip() if isinstance(value, str) else value
    return config


def credentials_from_config(config: Dict[str, Any]) -> Optional[AiCredentials]:
    api_key = str(config.get("api_key") or "").strip()
    if not api_key:
        return None
    return AiCredentials(
        provider=str(config.get("provider") or DEFAULT_AI_PROVIDER),
        api_key=api_key,
        endpoint=config.get("endpoint") or None,
        model=str(config.get("model") or DEFAULT_CHAT_MODEL),
    )


async def load_ai_credentials(session: Optional[AsyncSession] = None) -> Optional[AiCredentials]:
    """
    Env defaults merged with the most recently updated system AI config row.

    Returns None when no API key is configured anywhere.
    """
    if session is None:
        return credentials_from_config(get_env_ai_defaults())

    from consensus_backend.models import SystemAiConfig

    result = await session.execute(
        select(SystemAiConfig).order_by(SystemAiConfig.updated_at.desc()).limit(1)
    )
    row = result.scalars().first()
    overrides = None
    if row is not None:
        overrides = {
            "provider": row.provider,
            "api_key": decode_secret(row.enc_api_key) if row.enc_api_key else None,
            "endpoint": row.api_endpoint,
            "model": row.model,
        }
    return credentials_from_config(merge_ai_config(overrides))
