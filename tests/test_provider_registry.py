import json

import pytest

from promptsmith.domain.provider_models import ModelConfig, ProviderConfig, ProviderSelection
from promptsmith.errors import ConfigurationError
from promptsmith.services.provider_registry import ProviderRegistry


def _registry():
    return ProviderRegistry(
        [
            ProviderConfig(id="main", name="Main", api_key="k", models=[ModelConfig(id="m1", name="M1")]),
            ProviderConfig(id="nokey", name="No Key", models=[ModelConfig(id="m2", name="M2")]),
            ProviderConfig(
                id="gw",
                name="Gateway",
                type="custom",
                api_key="k",
                models=[ModelConfig(id="claude", name="Claude", api_type="anthropic"), ModelConfig(id="gpt", name="GPT")],
            ),
        ]
    )


def test_resolve_reports_the_missing_piece():
    registry = ProviderRegistry([])
    with pytest.raises(ConfigurationError, match="No AI provider selected"):
        registry.resolve(None)

    registry = _registry()
    with pytest.raises(ConfigurationError, match="Unknown AI provider"):
        registry.resolve(ProviderSelection("ghost", "m1"))
    with pytest.raises(ConfigurationError, match="no API key"):
        registry.resolve(ProviderSelection("nokey", "m2"))
    with pytest.raises(ConfigurationError, match="No model selected"):
        registry.resolve(ProviderSelection("main", ""))
    with pytest.raises(ConfigurationError, match="not configured"):
        registry.resolve(ProviderSelection("main", "m9"))


def test_api_type_comes_from_model_then_provider():
    registry = _registry()
    assert registry.resolve(ProviderSelection("gw", "claude")).api_type == "anthropic"
    assert registry.resolve(ProviderSelection("gw", "gpt")).api_type == "openai"
    assert registry.resolve(ProviderSelection("main", "m1")).api_type == "openai"


def test_default_selection_uses_first_enabled_provider():
    registry = _registry()
    assert registry.default_selection() == ProviderSelection("main", "m1")
    assert [p.id for p in registry.enabled_providers()] == ["main", "gw"]
    assert registry.resolve(None).model.id == "m1"


def test_providers_from_env():
    providers = ProviderRegistry.providers_from_env(
        {"ANTHROPIC_API_KEY": "sk-ant", "ANTHROPIC_MODEL": "claude-x", "OPENAI_API_KEY": "  "}
    )
    assert [p.id for p in providers] == ["anthropic"]
    assert providers[0].models[0].id == "claude-x"
    assert providers[0].base_url == "https://api.anthropic.com"


def test_settings_file_wins_over_env(tmp_path):
    path = tmp_path / "providers.json"
    path.write_text(
        json.dumps(
            {
                "providers": [
                    {
                        "id": "openai",
                        "name": "OpenAI (file)",
                        "type": "openai",
                        "apiKey": "sk-file",
                        "baseUrl": "https://proxy.example.com/v1",
                        "models": [{"id": "gpt-4o", "name": "GPT-4o"}],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    registry = ProviderRegistry.from_env(
        {"OPENAI_API_KEY": "sk-env", "PROMPTSMITH_PROVIDER": "openai"},
        settings_path=str(path),
    )
    target = registry.resolve(None)
    assert target.provider.api_key == "sk-file"
    assert target.model.id == "gpt-4o"


def test_settings_file_without_list_is_rejected(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"providers": "nope"}), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        ProviderRegistry.providers_from_file(str(path))


def test_missing_settings_file_is_tolerated(tmp_path):
    registry = ProviderRegistry.from_env({}, settings_path=str(tmp_path / "absent.json"))
    assert registry.providers() == []
