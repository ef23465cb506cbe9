"""Generation service configuration — provider keys, endpoints, polling, storage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent
STORAGE_DIR = ROOT_DIR / os.getenv("STORAGE_DIR", "storage")
DB_PATH = ROOT_DIR / os.getenv("DB_PATH", "cinema_pipeline.db")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000/files")

# ---------------------------------------------------------------------------
# Provider API Keys (environment fallback, lowest precedence)
# ---------------------------------------------------------------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
OPENART_API_KEY = os.getenv("OPENART_API_KEY", "")
LEONARDO_API_KEY = os.getenv("LEONARDO_API_KEY", "")
RUNWAY_API_KEY = os.getenv("RUNWAY_API_KEY", "")
# Kling keys are "access_key:secret_key"
KLING_API_KEY = os.getenv("KLING_API_KEY", "")

# ---------------------------------------------------------------------------
# Model names (centralized so they're easy to update)
# ---------------------------------------------------------------------------
OPENAI_TEXT_MODEL = os.getenv("OPENAI_TEXT_MODEL", "gpt-4o")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
ANTHROPIC_TEXT_MODEL = os.getenv("ANTHROPIC_TEXT_MODEL", "claude-3-5-sonnet-20241022")
GOOGLE_TEXT_MODEL = os.getenv("GOOGLE_TEXT_MODEL", "gemini-2.5-flash")
OPENAI_IMAGE_MODEL = os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3")
RUNWAY_VIDEO_MODEL = os.getenv("RUNWAY_VIDEO_MODEL", "gen4_turbo")
KLING_VIDEO_MODEL = os.getenv("KLING_VIDEO_MODEL", "kling-v1")

# ---------------------------------------------------------------------------
# Provider endpoints
# ---------------------------------------------------------------------------
OPENART_API_BASE = os.getenv("OPENART_API_BASE", "https://openart.ai/api/v1")
LEONARDO_API_BASE = os.getenv("LEONARDO_API_BASE", "https://cloud.leonardo.ai/api/rest/v1")
RUNWAY_API_BASE = os.getenv("RUNWAY_API_BASE", "https://api.dev.runwayml.com")
RUNWAY_API_VERSION = os.getenv("RUNWAY_API_VERSION", "2024-11-06")
KLING_API_BASE = os.getenv("KLING_API_BASE", "https://api-singapore.klingai.com")

# ---------------------------------------------------------------------------
# Job polling
# ---------------------------------------------------------------------------
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
MAX_POLL_ATTEMPTS = int(os.getenv("MAX_POLL_ATTEMPTS", "60"))

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_WIDTH = int(os.getenv("DEFAULT_WIDTH", "1280"))
DEFAULT_HEIGHT = int(os.getenv("DEFAULT_HEIGHT", "720"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "120"))
SHOT_LIST_MAX_TOKENS = int(os.getenv("SHOT_LIST_MAX_TOKENS", "4000"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


# ---------------------------------------------------------------------------
# Explicit configuration value
#
# Components receive a Config instead of reading the module constants.
# ---------------------------------------------------------------------------

_DEFAULT_MODELS = {
    "openai_text": OPENAI_TEXT_MODEL,
    "openai_vision": OPENAI_VISION_MODEL,
    "anthropic_text": ANTHROPIC_TEXT_MODEL,
    "google_text": GOOGLE_TEXT_MODEL,
    "openai_image": OPENAI_IMAGE_MODEL,
    "runway_video": RUNWAY_VIDEO_MODEL,
    "kling_video": KLING_VIDEO_MODEL,
}

_DEFAULT_ENDPOINTS = {
    "openart": OPENART_API_BASE,
    "leonardo": LEONARDO_API_BASE,
    "runway": RUNWAY_API_BASE,
    "kling": KLING_API_BASE,
}


@dataclass(frozen=True)
class Config:
    env_keys: dict[str, str] = field(default_factory=dict)
    poll_interval_seconds: float = 5.0
    max_poll_attempts: int = 60
    default_width: int = 1280
    default_height: int = 720
    http_timeout_seconds: float = 120.0
    shot_list_max_tokens: int = 4000
    storage_dir: Path = ROOT_DIR / "storage"
    public_base_url: str = "http://localhost:8000/files"
    db_path: Path = ROOT_DIR / "cinema_pipeline.db"
    models: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_MODELS))
    endpoints: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_ENDPOINTS))
    runway_api_version: str = "2024-11-06"

    def env_key(self, service: str) -> str:
        return str(self.env_keys.get(service) or "").strip()

    def model(self, name: str, default: str = "") -> str:
        return str(self.models.get(name) or default)

    def endpoint(self, name: str, default: str = "") -> str:
        return str(self.endpoints.get(name) or default).rstrip("/")


def load_config() -> Config:
    """Snapshot the environment-derived settings into a Config."""
    return Config(
        env_keys={
            "openai": OPENAI_API_KEY,
            "anthropic": ANTHROPIC_API_KEY,
            "google": GOOGLE_API_KEY,
            "openart": OPENART_API_KEY,
            "leonardo": LEONARDO_API_KEY,
            "runway": RUNWAY_API_KEY,
            "kling": KLING_API_KEY,
        },
        poll_interval_seconds=POLL_INTERVAL_SECONDS,
        max_poll_attempts=MAX_POLL_ATTEMPTS,
        default_width=DEFAULT_WIDTH,
        default_height=DEFAULT_HEIGHT,
        http_timeout_seconds=HTTP_TIMEOUT_SECONDS,
        shot_list_max_tokens=SHOT_LIST_MAX_TOKENS,
        storage_dir=STORAGE_DIR,
        public_base_url=PUBLIC_BASE_URL,
        db_path=DB_PATH,
        runway_api_version=RUNWAY_API_VERSION,
    )
