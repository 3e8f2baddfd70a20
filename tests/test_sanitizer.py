from promptsmith.services.sanitizer import clean_ai_response


def test_strips_markdown_fence_and_preamble():
    raw = "以下是为您生成的提示词：\n```markdown\n# Role\nYou are a tutor.\n```"
    assert clean_ai_response(raw) == "# Role\nYou are a tutor."


def test_strips_xml_fence_and_english_chatter():
    raw = "Here is the converted prompt:\n```xml\n<role>tutor</role>\n```\nLet me know if you need changes."
    assert clean_ai_response(raw) == "<role>tutor</role>"


def test_removes_closing_pleasantry_in_chinese():
    raw = "# 角色\n你是一名翻译。\n希望这对您有帮助！"
    assert clean_ai_response(raw) == "# 角色\n你是一名翻译。"


def test_is_idempotent():
    samples = [
        "```\nplain body\n```",
        "Sure, here it is:\n```markdown\n- a\n- b\n```\nHope this helps!",
        "这是转换后的结果：\n内容",
        "no formatting at all",
        "",
    ]
    for raw in samples:
        once = clean_ai_response(raw)
        assert clean_ai_response(once) == once


def test_keeps_inner_fences():
    raw = "Use this snippet:\n\n```python\nprint('hi')\n```\n\nThen continue."
    assert clean_ai_response(raw) == raw


def test_partial_stream_prefix_is_safe():
    assert clean_ai_response("```markdown\n") == ""
    assert clean_ai_response("```markdown\n# Ti") == "# Ti"
    assert clean_ai_response(None) == ""  # type: ignore[arg-type]
