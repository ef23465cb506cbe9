"""Credential resolution.

Order of precedence (first non-empty value wins, whitespace trimmed):
  1. explicit key on the request, unless it is a sentinel
  2. system-wide key in system_ai_config["<service>_api_key"]
  3. the caller's stored key for the service
  4. the environment key from Config

A system-wide lookup that raises is logged and treated as absent so a
per-caller key can still serve the request.
"""

from __future__ import annotations

import logging
from typing import Protocol

from config import Config
from pipeline.errors import CredentialMissing
from schemas.generation import ResolvedCredential

logger = logging.getLogger(__name__)

# Explicit values that mean "look it up for me".
SENTINELS = {"", "configured", "use_env_vars"}

_SERVICE_ALIASES = {
    "dalle": "openai",
    "dall-e": "openai",
    "gpt-image": "openai",
    "openai-image": "openai",
    "openai-text": "openai",
    "openai-vision": "openai",
    "gpt": "openai",
    "claude": "anthropic",
    "gemini": "google",
    "google-text": "google",
}

_ENV_VAR_NAMES = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "openart": "OPENART_API_KEY",
    "leonardo": "LEONARDO_API_KEY",
    "runway": "RUNWAY_API_KEY",
    "kling": "KLING_API_KEY",
}


class SystemConfigStore(Protocol):
    def get(self, setting_key: str) -> str | None:
        """Return the raw setting value or None."""


class UserKeyStore(Protocol):
    def get(self, caller_id: str, service: str) -> str | None:
        """Return the caller's stored key for a service or None."""


def canonical_service(service: str) -> str:
    key = str(service or "").strip().lower()
    return _SERVICE_ALIASES.get(key, key)


def _clean(value: str | None) -> str:
    return str(value or "").strip()


def missing_key_message(service: str) -> str:
    env_name = _ENV_VAR_NAMES.get(service, f"{service.upper()}_API_KEY")
    return (
        f"API key not configured for {service}. "
        f"Please configure it in Settings → AI Settings or set {env_name}."
    )


class CredentialResolver:
    def __init__(
        self,
        config: Config,
        system_store: SystemConfigStore | None = None,
        user_store: UserKeyStore | None = None,
    ):
        self._config = config
        self._system_store = system_store
        self._user_store = user_store

    def resolve(
        self,
        service: str,
        caller_id: str | None,
        explicit_key: str | None = None,
    ) -> ResolvedCredential:
        service = canonical_service(service)

        explicit = _clean(explicit_key)
        if explicit.lower() not in SENTINELS:
            return ResolvedCredential(value=explicit, origin="explicit", service=service)

        system_value = self._lookup_system(service)
        if system_value:
            logger.info("Using system-wide %s key", service)
            return ResolvedCredential(value=system_value, origin="system_wide", service=service)

        if caller_id and self._user_store is not None:
            user_value = _clean(self._user_store.get(caller_id, service))
            if user_value:
                return ResolvedCredential(value=user_value, origin="user_stored", service=service)

        env_value = self._config.env_key(service)
        if env_value:
            return ResolvedCredential(value=env_value, origin="environment", service=service)

        raise CredentialMissing(missing_key_message(service), provider=service)

    def _lookup_system(self, service: str) -> str:
        if self._system_store is None:
            return ""
        try:
            return _clean(self._system_store.get(f"{service}_api_key"))
        except Exception as exc:
            logger.warning("System-wide key lookup for %s failed: %s", service, exc)
            return ""
