import pytest

from promptsmith.core.state_machine import PipelineStage
from promptsmith.domain.artifacts import (
    BilingualPrompt,
    FormatLanguageMatrix,
    PipelineArtifacts,
    PlainPrompt,
    apply_format_conversion,
    apply_translation,
    cached_cell,
    primary_text,
    prompt_from_dict,
    read_cell,
    write_cell,
)


def test_plain_to_matrix_on_first_conversion():
    result = apply_format_conversion(PlainPrompt("some text"), "markdown", "xml", "zh", "<p>some text</p>")
    assert result.to_dict() == {
        "kind": "matrix",
        "markdown": {"zh": "some text", "en": ""},
        "xml": {"zh": "<p>some text</p>", "en": ""},
    }


def test_plain_to_bilingual_on_first_translation():
    result = apply_translation(PlainPrompt("你是一名导师"), "markdown", "zh", "en", "You are a tutor")
    assert isinstance(result, BilingualPrompt)
    assert result.zh == "你是一名导师"
    assert result.en == "You are a tutor"


def test_conversions_never_downgrade():
    matrix = FormatLanguageMatrix(markdown=BilingualPrompt(zh="md-zh"))
    translated = apply_translation(matrix, "markdown", "zh", "en", "md-en")
    assert isinstance(translated, FormatLanguageMatrix)
    assert translated.cell("markdown", "en") == "md-en"
    assert translated.cell("markdown", "zh") == "md-zh"

    bilingual = BilingualPrompt(zh="zh", en="en")
    converted = apply_format_conversion(bilingual, "markdown", "xml", "en", "<en/>")
    assert isinstance(converted, FormatLanguageMatrix)
    assert converted.markdown == bilingual
    assert converted.cell("xml", "en") == "<en/>"


def test_cached_cell_only_reports_stored_text():
    assert cached_cell(PlainPrompt("x"), "markdown", "zh") == ""
    assert cached_cell(BilingualPrompt(zh="a", en="b"), "markdown", "en") == "b"
    assert cached_cell(BilingualPrompt(zh="a", en="b"), "xml", "en") == ""
    assert cached_cell(FormatLanguageMatrix(xml=BilingualPrompt(en="x")), "xml", "en") == "x"


def test_read_and_write_cells():
    assert read_cell(None, "markdown", "zh") == ""
    assert read_cell(PlainPrompt("t"), "xml", "en") == "t"
    assert write_cell(PlainPrompt("old"), "markdown", "zh", "new") == PlainPrompt("new")
    matrix = write_cell(FormatLanguageMatrix(), "xml", "zh", "<x/>")
    assert matrix.cell("xml", "zh") == "<x/>"
    with pytest.raises(ValueError):
        FormatLanguageMatrix().with_cell("json", "zh", "{}")


def test_primary_text_prefers_markdown_chinese():
    matrix = FormatLanguageMatrix(markdown=BilingualPrompt(en="md-en"), xml=BilingualPrompt(zh="xml-zh"))
    assert primary_text(matrix, "zh") == "md-en"
    assert primary_text(BilingualPrompt(zh="z", en="e"), "en") == "e"
    assert primary_text(None, "zh") == ""


def test_artifacts_presence_and_serialisation():
    artifacts = PipelineArtifacts(requirement_report="report", thinking_points=[], final_prompt=PlainPrompt("  "))
    assert artifacts.has(PipelineStage.REPORT)
    assert not artifacts.has(PipelineStage.THINKING)
    assert not artifacts.has(PipelineStage.FINAL)

    artifacts.final_prompt = FormatLanguageMatrix(xml=BilingualPrompt(en="<x/>"))
    restored = PipelineArtifacts.from_dict(artifacts.to_dict())
    assert restored.final_prompt == artifacts.final_prompt
    assert restored.requirement_report == "report"
    assert prompt_from_dict(None) is None
    with pytest.raises(ValueError):
        prompt_from_dict({"kind": "html"})


def test_copy_is_independent():
    artifacts = PipelineArtifacts(thinking_points=["a"])
    clone = artifacts.copy()
    clone.thinking_points.append("b")
    assert artifacts.thinking_points == ["a"]
