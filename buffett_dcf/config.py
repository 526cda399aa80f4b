import os
from typing import List, NamedTuple, Optional

DEFAULT_GEMINI_API_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-flash-preview-09-2025:generateContent"
)
DEFAULT_NARRATIVE_ENDPOINT = "http://127.0.0.1:8000/api/generate"
DEFAULT_ALLOWED_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173"


class ProxySettings(NamedTuple):
    api_key: Optional[str]
    upstream_url: str
    timeout: float


class NarrativeSettings(NamedTuple):
    endpoint: str
    timeout: float


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def load_proxy_settings() -> ProxySettings:
    """Read the proxy configuration; called on every proxied request."""
    api_key = os.environ.get("GEMINI_API_KEY", "").strip() or None
    return ProxySettings(
        api_key=api_key,
        upstream_url=os.environ.get("GEMINI_API_URL", DEFAULT_GEMINI_API_URL),
        timeout=_env_float("PROXY_TIMEOUT", 60.0),
    )


def load_narrative_settings() -> NarrativeSettings:
    return NarrativeSettings(
        endpoint=os.environ.get("NARRATIVE_ENDPOINT", DEFAULT_NARRATIVE_ENDPOINT),
        timeout=_env_float("NARRATIVE_TIMEOUT", 30.0),
    )


def allowed_origins() -> List[str]:
    return parse_origins(os.environ.get("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS))
