"""Generated artifacts of a session and the final-prompt representations.

The final prompt starts as plain text and is upgraded lazily:

* ``PlainPrompt`` -> ``BilingualPrompt`` on the first translation,
* ``PlainPrompt``/``BilingualPrompt`` -> ``FormatLanguageMatrix`` on the first
  format conversion.

Conversions never downgrade a representation. All variants are immutable; the
helpers below return new values.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Union

from ..core.state_machine import PipelineStage


PromptFormat = Literal["markdown", "xml"]
Language = Literal["zh", "en"]

FORMATS = ("markdown", "xml")
LANGUAGES = ("zh", "en")


@dataclass(frozen=True)
class PlainPrompt:
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "plain", "text": self.text}


@dataclass(frozen=True)
class BilingualPrompt:
    zh: str = ""
    en: str = ""

    def get(self, language: str) -> str:
        return self.en if language == "en" else self.zh

    def with_language(self, language: str, text: str) -> "BilingualPrompt":
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        return replace(self, **{language: text})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "bilingual", "zh": self.zh, "en": self.en}


@dataclass(frozen=True)
class FormatLanguageMatrix:
    markdown: BilingualPrompt = field(default_factory=BilingualPrompt)
    xml: BilingualPrompt = field(default_factory=BilingualPrompt)

    def row(self, fmt: str) -> BilingualPrompt:
        return self.xml if fmt == "xml" else self.markdown

    def cell(self, fmt: str, language: str) -> str:
        return self.row(fmt).get(language)

    def with_cell(self, fmt: str, language: str, text: str) -> "FormatLanguageMatrix":
        if fmt not in FORMATS:
            raise ValueError(f"Unsupported format: {fmt}")
        return replace(self, **{fmt: self.row(fmt).with_language(language, text)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "matrix",
            "markdown": {"zh": self.markdown.zh, "en": self.markdown.en},
            "xml": {"zh": self.xml.zh, "en": self.xml.en},
        }


FinalPrompt = Union[PlainPrompt, BilingualPrompt, FormatLanguageMatrix]


def promote_to_bilingual(prompt: FinalPrompt, language: str) -> Union[BilingualPrompt, FormatLanguageMatrix]:
    """Place plain text under ``language``; richer representations pass through."""
    if isinstance(prompt, PlainPrompt):
        return BilingualPrompt().with_language(language, prompt.text)
    return prompt


def promote_to_matrix(prompt: FinalPrompt, fmt: str, language: str) -> FormatLanguageMatrix:
    """Place the current content under ``fmt`` (and ``language`` if it was plain)."""
    if isinstance(prompt, FormatLanguageMatrix):
        return prompt
    bilingual = promote_to_bilingual(prompt, language)
    if fmt == "xml":
        return FormatLanguageMatrix(xml=bilingual)
    return FormatLanguageMatrix(markdown=bilingual)


def read_cell(prompt: Optional[FinalPrompt], fmt: str, language: str) -> str:
    if prompt is None:
        return ""
    if isinstance(prompt, PlainPrompt):
        return prompt.text
    if isinstance(prompt, BilingualPrompt):
        return prompt.get(language)
    return prompt.cell(fmt, language)


def cached_cell(prompt: Optional[FinalPrompt], fmt: str, language: str) -> str:
    """Text already stored for (fmt, language) without any conversion, or ''."""
    if isinstance(prompt, BilingualPrompt) and fmt == "markdown":
        return prompt.get(language)
    if isinstance(prompt, FormatLanguageMatrix):
        return prompt.cell(fmt, language)
    return ""


def write_cell(prompt: Optional[FinalPrompt], fmt: str, language: str, text: str) -> FinalPrompt:
    if prompt is None or isinstance(prompt, PlainPrompt):
        return PlainPrompt(text)
    if isinstance(prompt, BilingualPrompt):
        return prompt.with_language(language, text)
    return prompt.with_cell(fmt, language, text)


def apply_translation(
    prompt: FinalPrompt,
    fmt: str,
    source_language: str,
    target_language: str,
    translated: str,
) -> Union[BilingualPrompt, FormatLanguageMatrix]:
    if isinstance(prompt, FormatLanguageMatrix):
        return prompt.with_cell(fmt, target_language, translated)
    bilingual = promote_to_bilingual(prompt, source_language)
    if isinstance(bilingual, FormatLanguageMatrix):
        return bilingual.with_cell(fmt, target_language, translated)
    return bilingual.with_language(target_language, translated)


def apply_format_conversion(
    prompt: FinalPrompt,
    source_format: str,
    target_format: str,
    language: str,
    converted: str,
) -> FormatLanguageMatrix:
    matrix = promote_to_matrix(prompt, source_format, language)
    return matrix.with_cell(target_format, language, converted)


def primary_text(prompt: Optional[FinalPrompt], language: str) -> str:
    """Text used when saving to the prompt library."""
    if prompt is None:
        return ""
    if isinstance(prompt, PlainPrompt):
        return prompt.text
    if isinstance(prompt, BilingualPrompt):
        return prompt.get(language)
    return prompt.markdown.zh or prompt.markdown.en or prompt.xml.zh or prompt.xml.en


def prompt_from_dict(data: Optional[Dict[str, Any]]) -> Optional[FinalPrompt]:
    if not data:
        return None
    kind = data.get("kind")
    if kind == "plain":
        return PlainPrompt(str(data.get("text") or ""))
    if kind == "bilingual":
        return BilingualPrompt(zh=str(data.get("zh") or ""), en=str(data.get("en") or ""))
    if kind == "matrix":
        md = data.get("markdown") or {}
        xml = data.get("xml") or {}
        return FormatLanguageMatrix(
            markdown=BilingualPrompt(zh=str(md.get("zh") or ""), en=str(md.get("en") or "")),
            xml=BilingualPrompt(zh=str(xml.get("zh") or ""), en=str(xml.get("en") or "")),
        )
    raise ValueError(f"Unknown final prompt kind: {kind!r}")


def _has_text(prompt: Optional[FinalPrompt]) -> bool:
    if prompt is None:
        return False
    if isinstance(prompt, PlainPrompt):
        return bool(prompt.text.strip())
    if isinstance(prompt, BilingualPrompt):
        return bool(prompt.zh.strip() or prompt.en.strip())
    return any(prompt.cell(f, lang).strip() for f in FORMATS for lang in LANGUAGES)


@dataclass
class PipelineArtifacts:
    """Outputs of the five stages; ``None`` until the stage first produces output."""

    requirement_report: Optional[str] = None
    thinking_points: Optional[List[str]] = None
    initial_prompt: Optional[str] = None
    advice: Optional[List[str]] = None
    final_prompt: Optional[FinalPrompt] = None

    def has(self, stage: PipelineStage) -> bool:
        if stage is PipelineStage.REPORT:
            return bool(self.requirement_report and self.requirement_report.strip())
        if stage is PipelineStage.THINKING:
            return bool(self.thinking_points)
        if stage is PipelineStage.INITIAL:
            return bool(self.initial_prompt and self.initial_prompt.strip())
        if stage is PipelineStage.ADVICE:
            return bool(self.advice)
        if stage is PipelineStage.FINAL:
            return _has_text(self.final_prompt)
        return False

    def copy(self) -> "PipelineArtifacts":
        return PipelineArtifacts(
            requirement_report=self.requirement_report,
            thinking_points=list(self.thinking_points) if self.thinking_points is not None else None,
            initial_prompt=self.initial_prompt,
            advice=list(self.advice) if self.advice is not None else None,
            final_prompt=self.final_prompt,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requirement_report": self.requirement_report,
            "thinking_points": list(self.thinking_points) if self.thinking_points is not None else None,
            "initial_prompt": self.initial_prompt,
            "advice": list(self.advice) if self.advice is not None else None,
            "final_prompt": self.final_prompt.to_dict() if self.final_prompt is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineArtifacts":
        points = data.get("thinking_points")
        advice = data.get("advice")
        return cls(
            requirement_report=data.get("requirement_report"),
            thinking_points=[str(p) for p in points] if isinstance(points, list) else None,
            initial_prompt=data.get("initial_prompt"),
            advice=[str(a) for a in advice] if isinstance(advice, list) else None,
            final_prompt=prompt_from_dict(data.get("final_prompt")),
        )
