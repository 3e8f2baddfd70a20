"""Heuristics that decide when a chat turn should start the generation pipeline.

Both checks are plain substring tests with no normalisation. The decision
phrases must stay in sync with the wording the guidance prompt asks the model
to emit (see ``prompt_templates.guidance_messages``); changing one without the
other silently disables auto-start.
"""

from __future__ import annotations

from typing import Iterable

from ..config import DEFAULT_DECISION_PHRASES, DEFAULT_FORCE_GENERATE_PHRASES


def check_force_generate(user_text: str, phrases: Iterable[str] = DEFAULT_FORCE_GENERATE_PHRASES) -> bool:
    if not user_text:
        return False
    return any(phrase and phrase in user_text for phrase in phrases)


def check_ai_decision(assistant_text: str, phrases: Iterable[str] = DEFAULT_DECISION_PHRASES) -> bool:
    if not assistant_text:
        return False
    return any(phrase and phrase in assistant_text for phrase in phrases)
