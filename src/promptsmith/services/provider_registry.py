"""Provider registry: resolves a (provider, model) selection into a call target.

Providers come from a JSON settings file shaped like the settings export of the
web client (``{"providers": [{id, name, type, apiKey, baseUrl, models}]}``)
and/or from well-known environment variables. The registry never writes
credentials back anywhere.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Dict, Iterable, List, Mapping, Optional

from ..domain.provider_models import ModelConfig, ProviderConfig, ProviderSelection, ResolvedTarget
from ..errors import ConfigurationError


logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Lookup table of configured providers."""

    ENV_PROVIDERS: Dict[str, Dict[str, str]] = {
        "openai": {
            "name": "OpenAI",
            "type": "openai",
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com",
        },
        "anthropic": {
            "name": "Anthropic",
            "type": "anthropic",
            "api_key_env": "ANTHROPIC_API_KEY",
            "base_url_env": "ANTHROPIC_BASE_URL",
            "model_env": "ANTHROPIC_MODEL",
            "default_model": "claude-3-5-sonnet-latest",
            "default_base_url": "https://api.anthropic.com",
        },
        "google": {
            "name": "Google Gemini",
            "type": "google",
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.5-flash",
            "default_base_url": "https://generativelanguage.googleapis.com",
        },
    }

    def __init__(
        self,
        providers: Optional[Iterable[ProviderConfig]] = None,
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
    ) -> None:
        self._providers: Dict[str, ProviderConfig] = {}
        for provider in providers or []:
            self._providers[provider.id] = provider
        self._default_provider = default_provider
        self._default_model = default_model

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def providers_from_env(cls, env: Optional[Mapping[str, str]] = None) -> List[ProviderConfig]:
        env = env if env is not None else os.environ
        found: List[ProviderConfig] = []
        for provider_id, cfg in cls.ENV_PROVIDERS.items():
            api_key = (env.get(cfg["api_key_env"]) or "").strip()
            if not api_key:
                continue
            model_id = (env.get(cfg["model_env"]) or "").strip() or cfg["default_model"]
            found.append(
                ProviderConfig(
                    id=provider_id,
                    name=cfg["name"],
                    type=cfg["type"],
                    api_key=api_key,
                    base_url=(env.get(cfg["base_url_env"]) or "").strip() or cfg["default_base_url"],
                    models=[ModelConfig(id=model_id, name=model_id)],
                )
            )
        return found

    @staticmethod
    def providers_from_file(path: str) -> List[ProviderConfig]:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        raw = data.get("providers") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise ConfigurationError(f"Provider settings file has no provider list: {path}")
        return [ProviderConfig.model_validate(item) for item in raw]

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        settings_path: Optional[str] = None,
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
    ) -> "ProviderRegistry":
        """Build from the settings file (if any) plus env-provided providers.

        Entries from the settings file win over env entries with the same id.
        """
        env = env if env is not None else os.environ
        providers: Dict[str, ProviderConfig] = {p.id: p for p in cls.providers_from_env(env)}
        path = settings_path or (env.get("PROMPTSMITH_SETTINGS_PATH") or "").strip() or None
        if path:
            if os.path.exists(path):
                for provider in cls.providers_from_file(path):
                    providers[provider.id] = provider
            else:
                logger.warning("provider_settings_missing", extra={"path": path})
        registry = cls(
            providers.values(),
            default_provider=default_provider or (env.get("PROMPTSMITH_PROVIDER") or "").strip() or None,
            default_model=default_model or (env.get("PROMPTSMITH_MODEL") or "").strip() or None,
        )
        logger.info("provider_registry_loaded", extra={"providers": sorted(providers)})
        return registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register(self, provider: ProviderConfig) -> None:
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        return self._providers.get(provider_id)

    def providers(self) -> List[ProviderConfig]:
        return list(self._providers.values())

    def enabled_providers(self) -> List[ProviderConfig]:
        """Providers that have an API key and at least one model."""
        return [p for p in self._providers.values() if p.api_key.strip() and p.models]

    def default_selection(self) -> Optional[ProviderSelection]:
        if self._default_provider:
            provider = self._providers.get(self._default_provider)
            if provider and provider.models:
                model_id = self._default_model if (self._default_model and provider.find_model(self._default_model)) else provider.models[0].id
                return ProviderSelection(provider.id, model_id)
        for provider in self.enabled_providers():
            return ProviderSelection(provider.id, provider.models[0].id)
        return None

    def resolve(self, selection: Optional[ProviderSelection]) -> ResolvedTarget:
        """Resolve ``selection`` (or the default one) into a callable target.

        Raises
        ------
        ConfigurationError
            With a message naming the missing piece: no provider selected,
            unknown provider, provider without API key, or unknown model.
        """
        selection = selection or self.default_selection()
        if selection is None or not selection.provider_id:
            raise ConfigurationError("No AI provider selected; configure a provider first")
        provider = self._providers.get(selection.provider_id)
        if provider is None:
            raise ConfigurationError(f"Unknown AI provider: {selection.provider_id}")
        if not provider.api_key.strip():
            raise ConfigurationError(f"AI provider {provider.name} has no API key configured")
        if not selection.model_id:
            raise ConfigurationError(f"No model selected for provider {provider.name}")
        model = provider.find_model(selection.model_id)
        if model is None:
            raise ConfigurationError(f"Model {selection.model_id} is not configured for provider {provider.name}")
        return ResolvedTarget(provider=provider, model=model)
