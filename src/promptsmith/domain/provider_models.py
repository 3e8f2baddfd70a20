from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


ApiType = Literal["openai", "anthropic", "google"]
ProviderType = Literal["openai", "anthropic", "google", "custom"]


class ModelConfig(BaseModel):
    id: str
    name: str
    api_type: Optional[ApiType] = Field(default=None, alias="apiType")

    model_config = {"populate_by_name": True}


class ProviderConfig(BaseModel):
    id: str
    name: str
    type: ProviderType = "openai"
    api_key: str = Field(default="", alias="apiKey")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    models: List[ModelConfig] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    def find_model(self, model_id: str) -> Optional[ModelConfig]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


@dataclass(frozen=True)
class ProviderSelection:
    """The (provider, model) pair the user picked; resolved at call time."""

    provider_id: str
    model_id: str


@dataclass(frozen=True)
class ResolvedTarget:
    """A selection resolved against the registry into something invocable."""

    provider: ProviderConfig
    model: ModelConfig

    @property
    def api_type(self) -> str:
        if self.model.api_type:
            return self.model.api_type
        # "custom" providers speak the OpenAI wire format.
        return "openai" if self.provider.type == "custom" else self.provider.type

    def describe(self) -> str:
        return f"{self.provider.name}/{self.model.id}"
