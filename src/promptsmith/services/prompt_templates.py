"""Message builders for every model call made by the pipeline.

Each builder returns the full ordered history for one call. Instructions are
kept as line lists and joined, so individual rules are easy to tweak.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence

from ..domain.conversation_models import ChatMessagePayload, ConversationTurn
from .conversation import ConversationState


_LANGUAGE_NAMES = {"zh": "中文", "en": "English"}
_FORMAT_NAMES = {"markdown": "Markdown", "xml": "XML"}


def _prompt_kind(prompt_type: str, language: str) -> str:
    if language == "en":
        return "user prompt" if prompt_type == "user" else "system prompt"
    return "用户提示词" if prompt_type == "user" else "系统提示词"


def _system(lines: Iterable[str]) -> ChatMessagePayload:
    return ChatMessagePayload(role="system", content="\n".join(lines))


def _user(content: str) -> ChatMessagePayload:
    return ChatMessagePayload(role="user", content=content)


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def guidance_messages(
    turns: Iterable[ConversationTurn],
    decision_phrase: str,
    language: str = "zh",
    prompt_type: str = "system",
) -> List[ChatMessagePayload]:
    """Chat-turn call: interview the user until the requirement is clear.

    The model is told to emit ``decision_phrase`` verbatim once it has enough
    information; ``triggers.check_ai_decision`` looks for exactly that text.
    """
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"You are a prompt engineering consultant helping the user design a {kind}.",
            "Ask focused questions, one or two at a time, about the goal, audience, constraints, tone and output format.",
            "Summarise what you have learned so far whenever it helps the user.",
            "When you have enough information to write a complete requirement report, "
            f"reply with this exact sentence on its own line: {decision_phrase}",
            "Never write the decision sentence before the requirement is clear.",
        ]
    else:
        lines = [
            f"你是一名提示词工程顾问，正在帮助用户设计{kind}。",
            "每次只提出一到两个关键问题，逐步澄清目标、使用场景、目标用户、约束条件、语气和输出格式。",
            "必要时简要总结已经确认的信息。",
            f"当信息足以撰写完整的需求报告时，请单独一行原样输出这句话：{decision_phrase}",
            "在需求尚未明确之前，不要输出上述句子。",
        ]
    return [_system(lines)] + ConversationState.history_payload(turns)


def report_messages(
    turns: Iterable[ConversationTurn],
    language: str = "zh",
    prompt_type: str = "system",
) -> List[ChatMessagePayload]:
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"You turn a requirements conversation into a structured requirement report for a {kind}.",
            "Cover: objective, target users, usage scenarios, functional requirements, constraints, tone and style, output format.",
            "Only use information present in the conversation; mark unknown items as 'to be confirmed'.",
            "Output the report in Markdown without any preamble or closing remarks.",
        ]
        instruction = "Write the requirement report for the conversation above."
    else:
        lines = [
            f"你负责把需求沟通对话整理成结构化的需求报告，用于后续生成{kind}。",
            "报告需包含：目标、目标用户、使用场景、功能需求、约束条件、语气风格、输出格式。",
            "只使用对话中出现的信息，未知项标注为“待确认”。",
            "直接输出 Markdown 格式的报告，不要添加开场白或结束语。",
        ]
        instruction = "请根据以上对话生成需求报告。"
    return [_system(lines)] + ConversationState.history_payload(turns) + [_user(instruction)]


def thinking_messages(report: str, language: str = "zh", prompt_type: str = "system") -> List[ChatMessagePayload]:
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"Extract the key directives a {kind} must contain from the requirement report.",
            "Output one short directive per line, each starting with '- '.",
            "No headings, numbering, explanations or blank lines.",
        ]
        body = f"Requirement report:\n\n{report}"
    else:
        lines = [
            f"请从需求报告中提炼{kind}必须包含的关键指令。",
            "每行一条简短指令，以“- ”开头。",
            "不要输出标题、编号、解释或空行。",
        ]
        body = f"需求报告：\n\n{report}"
    return [_system(lines), _user(body)]


def initial_messages(
    report: str,
    thinking_points: Sequence[str],
    language: str = "zh",
    prompt_type: str = "system",
) -> List[ChatMessagePayload]:
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"Write a complete, ready-to-use {kind} that satisfies the requirement report and every key directive.",
            "Use Markdown sections for role, context, tasks, constraints and output format.",
            "Output only the prompt itself, without code fences or commentary.",
        ]
        body = f"Requirement report:\n\n{report}\n\nKey directives:\n{_bullets(thinking_points)}"
    else:
        lines = [
            f"请根据需求报告和全部关键指令，撰写一份完整、可直接使用的{kind}。",
            "使用 Markdown 小节组织角色、背景、任务、约束和输出格式。",
            "只输出提示词本身，不要代码块标记或任何说明。",
        ]
        body = f"需求报告：\n\n{report}\n\n关键指令：\n{_bullets(thinking_points)}"
    return [_system(lines), _user(body)]


def advice_messages(initial_prompt: str, language: str = "zh", prompt_type: str = "system") -> List[ChatMessagePayload]:
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"Review the {kind} below and list concrete optimisation suggestions.",
            "Focus on clarity, completeness, ambiguity, structure and robustness against misuse.",
            "Output one suggestion per line, each starting with '- '. No headings or blank lines.",
        ]
        body = f"Prompt to review:\n\n{initial_prompt}"
    else:
        lines = [
            f"请审阅下面的{kind}，给出具体可执行的优化建议。",
            "关注清晰度、完整性、歧义、结构以及对异常输入的稳健性。",
            "每行一条建议，以“- ”开头，不要标题或空行。",
        ]
        body = f"待审阅的提示词：\n\n{initial_prompt}"
    return [_system(lines), _user(body)]


def final_messages(
    initial_prompt: str,
    advice: Sequence[str],
    language: str = "zh",
    prompt_type: str = "system",
) -> List[ChatMessagePayload]:
    kind = _prompt_kind(prompt_type, language)
    if language == "en":
        lines = [
            f"Apply every optimisation suggestion to the {kind} and output the improved version.",
            "Keep everything that already works; do not drop requirements.",
            "Output only the final prompt, without code fences or commentary.",
        ]
        body = f"Original prompt:\n\n{initial_prompt}\n\nSuggestions:\n{_bullets(advice)}"
    else:
        lines = [
            f"请将全部优化建议应用到{kind}中，输出优化后的完整版本。",
            "保留原有有效内容，不要遗漏任何需求。",
            "只输出最终提示词，不要代码块标记或任何说明。",
        ]
        body = f"原始提示词：\n\n{initial_prompt}\n\n优化建议：\n{_bullets(advice)}"
    return [_system(lines), _user(body)]


def format_conversion_messages(text: str, source_format: str, target_format: str, language: str = "zh") -> List[ChatMessagePayload]:
    source = _FORMAT_NAMES.get(source_format, source_format)
    target = _FORMAT_NAMES.get(target_format, target_format)
    lines = [
        f"你是提示词格式转换专家。请把下面的 {source} 格式提示词完整转换为 {target} 格式。",
        "保持原有语义、结构层次和全部细节，不要增删内容。",
        f"转换后的内容保持{_LANGUAGE_NAMES.get(language, language)}。",
        "只输出转换后的提示词，不要代码块标记或任何说明。",
    ]
    return [_system(lines), _user(text)]


def translation_messages(text: str, source_language: str, target_language: str) -> List[ChatMessagePayload]:
    source = _LANGUAGE_NAMES.get(source_language, source_language)
    target = _LANGUAGE_NAMES.get(target_language, target_language)
    lines = [
        f"你是专业的提示词翻译专家。请把下面的{source}提示词翻译成{target}。",
        "保持原有格式（Markdown 或 XML 标签）和结构不变，只翻译自然语言内容。",
        "专业术语保持准确，语气与原文一致。",
        "只输出翻译结果，不要代码块标记或任何说明。",
    ]
    return [_system(lines), _user(text)]
