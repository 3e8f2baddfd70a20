from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_FORCE_GENERATE_PHRASES: Tuple[str, ...] = (
    "强制生成需求报告",
    "重新生成需求报告",
    "Force generate the requirement report",
    "Regenerate the requirement report",
)

# Must match the sentence the guidance system prompt tells the model to emit.
DEFAULT_DECISION_PHRASES: Tuple[str, ...] = (
    "基于我们的对话，我现在为您生成需求报告：",
    "Based on our conversation, I will now generate the requirement report:",
)

# Pause before the pipeline auto-starts after a chat turn, so the status turn renders first.
DEFAULT_AUTO_START_DELAY = 0.8

_TRUTHY = ("1", "true", "yes", "on")


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    return raw in _TRUTHY


def _phrases(env: Mapping[str, str], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    return tuple(p for p in (part.strip() for part in raw.split("|")) if p)


def _float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime knobs for a promptsmith session."""

    stream_mode: bool = True
    auto_mode: bool = True
    auto_start_delay: float = DEFAULT_AUTO_START_DELAY
    language: str = "zh"
    prompt_type: str = "system"
    force_generate_phrases: Tuple[str, ...] = DEFAULT_FORCE_GENERATE_PHRASES
    decision_phrases: Tuple[str, ...] = DEFAULT_DECISION_PHRASES
    default_provider: Optional[str] = None
    default_model: Optional[str] = None
    settings_path: Optional[str] = None
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = None
    temperature: float = 1.0
    max_tokens: int = 8192
    snapshot_path: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        env = env if env is not None else os.environ
        language = (env.get("PROMPTSMITH_LANGUAGE") or "zh").strip().lower()
        if language not in ("zh", "en"):
            language = "zh"
        prompt_type = (env.get("PROMPTSMITH_PROMPT_TYPE") or "system").strip().lower()
        if prompt_type not in ("system", "user"):
            prompt_type = "system"
        max_tokens = _float(env, "PROMPTSMITH_MAX_TOKENS", 8192.0) or 8192.0
        return cls(
            stream_mode=_flag(env, "PROMPTSMITH_STREAM_MODE", True),
            auto_mode=_flag(env, "PROMPTSMITH_AUTO_MODE", True),
            auto_start_delay=max(0.0, _float(env, "PROMPTSMITH_AUTO_START_DELAY", DEFAULT_AUTO_START_DELAY) or 0.0),
            language=language,
            prompt_type=prompt_type,
            force_generate_phrases=_phrases(env, "PROMPTSMITH_FORCE_GENERATE_PHRASES", DEFAULT_FORCE_GENERATE_PHRASES),
            decision_phrases=_phrases(env, "PROMPTSMITH_DECISION_PHRASES", DEFAULT_DECISION_PHRASES),
            default_provider=(env.get("PROMPTSMITH_PROVIDER") or "").strip() or None,
            default_model=(env.get("PROMPTSMITH_MODEL") or "").strip() or None,
            settings_path=(env.get("PROMPTSMITH_SETTINGS_PATH") or "").strip() or None,
            connect_timeout=_float(env, "PROMPTSMITH_LLM_CONNECT_TIMEOUT", 10.0) or 10.0,
            # No read timeout by default: a stuck provider blocks until the user interrupts.
            read_timeout=_float(env, "PROMPTSMITH_LLM_READ_TIMEOUT", None),
            temperature=_float(env, "PROMPTSMITH_TEMPERATURE", 1.0) or 0.0,
            max_tokens=int(max_tokens),
            snapshot_path=(env.get("PROMPTSMITH_SNAPSHOT_PATH") or "").strip() or None,
        )
