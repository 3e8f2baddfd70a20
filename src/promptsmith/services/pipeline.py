"""Stage orchestrator for the prompt generation pipeline.

One ``PipelineOrchestrator`` owns a session: the conversation, the five
artifacts, the active stage cursor and the busy flags. Everything the UI does
goes through its methods; the UI only reads state back.

Stages run ``report -> thinking -> initial -> advice -> final``. A stage can be
started on its own (manual step / regenerate) or as part of a sequential run
that chains to ``final``. Regenerating never touches other stages' artifacts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..config import PipelineConfig
from ..core.state_machine import STAGE_ORDER, PipelineStage, next_stage, step_number
from ..domain.artifacts import (
    PipelineArtifacts,
    PlainPrompt,
    apply_format_conversion,
    apply_translation,
    cached_cell,
    primary_text,
    read_cell,
    write_cell,
)
from ..domain.conversation_models import Attachment, ChatMessagePayload, ConversationTurn
from ..domain.provider_models import ProviderSelection, ResolvedTarget
from ..errors import (
    AbortError,
    ConfigurationError,
    ParseError,
    ProviderCallError,
    StageConflictError,
    ValidationError,
)
from ..infrastructure.events import EventPublisher, publish_event
from ..infrastructure.prompt_library import PromptLibrary, SaveRequest, SaveResult, get_prompt_library
from ..infrastructure.snapshot_store import SnapshotStore
from ..observability.metrics import observe_stage
from . import prompt_templates
from .chat_client import CancellationHandle, StreamingChatClient
from .conversation import PROGRESS_SENTINEL_ID, ConversationState
from .notifications import NotificationCenter, Notifier
from .provider_registry import ProviderRegistry
from .sanitizer import clean_ai_response
from .triggers import check_ai_decision, check_force_generate


logger = logging.getLogger(__name__)

PLACEHOLDER = "正在生成..."

LIST_STAGES = (PipelineStage.THINKING, PipelineStage.ADVICE)

_BULLET = re.compile(r"^[*-]\s*")

_FORMAT_LABELS = {"markdown": "Markdown", "xml": "XML"}

_STAGE_LABELS: Dict[str, Dict[PipelineStage, str]] = {
    "zh": {
        PipelineStage.REPORT: "需求报告",
        PipelineStage.THINKING: "关键指令",
        PipelineStage.INITIAL: "初始提示词",
        PipelineStage.ADVICE: "优化建议",
        PipelineStage.FINAL: "最终提示词",
    },
    "en": {
        PipelineStage.REPORT: "requirement report",
        PipelineStage.THINKING: "key directives",
        PipelineStage.INITIAL: "initial prompt",
        PipelineStage.ADVICE: "optimization advice",
        PipelineStage.FINAL: "final prompt",
    },
}

_MESSAGES: Dict[str, Dict[str, str]] = {
    "zh": {
        "empty_input": "请输入消息内容",
        "attachments_only": "请输入文字描述后再发送附件",
        "force_ack": "好的，我将立即为您生成需求报告。",
        "chat_failed": "发送消息失败：{error}",
        "no_history": "没有可用于重新生成的对话上下文",
        "need_conversation": "请先与AI对话，描述您的需求",
        "need_report": "请先生成需求报告",
        "need_thinking": "请先生成需求报告和关键指令",
        "need_initial": "请先生成初始提示词",
        "need_advice": "请先生成初始提示词和优化建议",
        "need_final": "请先生成最终提示词",
        "progress_report": "正在生成需求报告...",
        "progress_step": "步骤 {step}/4：正在生成{label}...",
        "progress_done": "所有步骤已完成，请在预览面板查看结果。",
        "stage_failed": "生成{label}失败：{error}",
        "regenerated": "{label}已重新生成",
        "workflow_done": "提示词生成完成",
        "empty_response": "模型返回了空内容",
        "converted": "已转换为 {format} 格式",
        "convert_failed": "格式转换失败：{error}",
        "translated": "翻译完成",
        "translate_failed": "翻译失败：{error}",
        "need_title": "请输入提示词标题",
        "nothing_to_save": "没有可保存的提示词内容",
        "saved": "提示词已保存",
        "save_failed": "保存失败：{error}",
    },
    "en": {
        "empty_input": "Please enter a message",
        "attachments_only": "Add a text description before sending attachments",
        "force_ack": "OK, I will generate the requirement report right away.",
        "chat_failed": "Failed to send message: {error}",
        "no_history": "There is no conversation context to regenerate from",
        "need_conversation": "Describe your requirement in the chat first",
        "need_report": "Generate the requirement report first",
        "need_thinking": "Generate the requirement report and key directives first",
        "need_initial": "Generate the initial prompt first",
        "need_advice": "Generate the initial prompt and optimization advice first",
        "need_final": "Generate the final prompt first",
        "progress_report": "Generating the requirement report...",
        "progress_step": "Step {step}/4: generating the {label}...",
        "progress_done": "All steps completed; see the preview panel for the results.",
        "stage_failed": "Failed to generate the {label}: {error}",
        "regenerated": "The {label} has been regenerated",
        "workflow_done": "Prompt generation completed",
        "empty_response": "The model returned an empty response",
        "converted": "Converted to {format}",
        "convert_failed": "Format conversion failed: {error}",
        "translated": "Translation completed",
        "translate_failed": "Translation failed: {error}",
        "need_title": "Please enter a title for the prompt",
        "nothing_to_save": "There is no prompt to save",
        "saved": "Prompt saved",
        "save_failed": "Save failed: {error}",
    },
}


def split_list_lines(raw: str) -> List[str]:
    """One item per line, leading ``*``/``-`` markers stripped, blanks dropped."""
    items: List[str] = []
    for line in raw.split("\n"):
        item = _BULLET.sub("", line.strip()).strip()
        if item:
            items.append(item)
    return items


def _parse_json_list(text: str) -> List[str]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON list: {exc}") from exc
    if not isinstance(data, list):
        raise ParseError("JSON value is not a list")
    return [str(item).strip() for item in data if str(item).strip()]


def parse_list_items(raw: str) -> List[str]:
    """Parse a completed list response; never fails on malformed input.

    A JSON array is accepted; anything else (including broken JSON) falls back
    to line splitting, and a non-empty text that yields no lines becomes a
    single item.
    """
    text = raw.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            items = _parse_json_list(text)
            if items:
                return items
        except ParseError as exc:
            logger.debug("list_parse_fallback", extra={"err": str(exc)})
    items = split_list_lines(text)
    return items or [text]


class UIHooks:
    """Side effects the orchestrator triggers in the UI; no-ops by default."""

    def on_stage_activated(self, stage: PipelineStage) -> None:
        pass

    def scroll_to_bottom(self) -> None:
        pass


class _StageStream:
    """Chunk handler shared by all five stages."""

    def __init__(self, owner: "PipelineOrchestrator", stage: PipelineStage, token: int) -> None:
        self._owner = owner
        self.stage = stage
        self._token = token
        self.list_mode = stage in LIST_STAGES
        self.activated = False
        self._raw: List[str] = []

    def activate(self) -> None:
        if self.activated:
            return
        self.activated = True
        self._owner._ui.on_stage_activated(self.stage)

    def on_chunk(self, piece: str) -> None:
        # Interrupted runs must not write anything.
        if self._owner._is_stale(self._token):
            return
        self._raw.append(piece)
        if not self.activated:
            if not piece.strip():
                return
            self._owner._write_artifact(self.stage, [PLACEHOLDER] if self.list_mode else PLACEHOLDER)
            self.activate()
        text = "".join(self._raw)
        if self.list_mode:
            items = split_list_lines(text)
            if not items:
                return
            self._owner._write_artifact(self.stage, items)
        else:
            self._owner._write_artifact(self.stage, text)
        self._owner._ui.scroll_to_bottom()


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        client: StreamingChatClient,
        registry: ProviderRegistry,
        config: Optional[PipelineConfig] = None,
        conversation: Optional[ConversationState] = None,
        notifier: Optional[Notifier] = None,
        ui: Optional[UIHooks] = None,
        library: Optional[PromptLibrary] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        publisher: Optional[EventPublisher] = None,
        selection: Optional[ProviderSelection] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.config = config or client.config
        self._client = client
        self._registry = registry
        self._conversation = conversation or ConversationState()
        self._notifier: Notifier = notifier or NotificationCenter()
        self._ui = ui or UIHooks()
        self._library = library
        self._snapshots = snapshot_store
        self._publish_fn: EventPublisher = publisher or publish_event
        self._selection = selection

        self._artifacts = PipelineArtifacts()
        self._stage = PipelineStage.NONE
        self._is_typing = False
        self._is_generating = False
        self._run_token = 0
        self._cancel = CancellationHandle()
        self._auto_task: Optional["asyncio.Task[Any]"] = None
        self._view_format = "markdown"
        self._view_language = self.config.language
        self._saved_prompt_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------
    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def is_typing(self) -> bool:
        return self._is_typing

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @property
    def busy(self) -> bool:
        return self._is_typing or self._is_generating or self._stage is not PipelineStage.NONE

    @property
    def artifacts(self) -> PipelineArtifacts:
        return self._artifacts.copy()

    @property
    def conversation(self) -> ConversationState:
        return self._conversation

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    @property
    def selection(self) -> Optional[ProviderSelection]:
        return self._selection

    @property
    def final_view(self) -> Dict[str, str]:
        return {"format": self._view_format, "language": self._view_language}

    @property
    def saved_prompt_id(self) -> Optional[str]:
        return self._saved_prompt_id

    def select_model(self, provider_id: str, model_id: str) -> None:
        self._selection = ProviderSelection(provider_id, model_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _t(self, key: str, **kwargs: Any) -> str:
        table = _MESSAGES.get(self.config.language, _MESSAGES["zh"])
        return table[key].format(**kwargs)

    def _label(self, stage: PipelineStage) -> str:
        return _STAGE_LABELS.get(self.config.language, _STAGE_LABELS["zh"])[stage]

    def _now(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def resolve_target(self) -> ResolvedTarget:
        """Resolve the session selection; raises ``ConfigurationError``."""
        return self._registry.resolve(self._selection)

    def _ensure_idle(self) -> None:
        if self.busy:
            raise StageConflictError(f"Another operation is still active (stage={self._stage.value})")

    def _start_run(self, *, typing: bool = False, generating: bool = False) -> int:
        self._run_token += 1
        self._is_typing = typing
        self._is_generating = generating
        return self._run_token

    def _is_stale(self, token: int) -> bool:
        return token != self._run_token

    def _check_token(self, token: int) -> None:
        if self._is_stale(token):
            raise AbortError()

    def _end_run(self, token: int) -> None:
        # A run cancelled by interrupt() must not reset a newer run.
        if self._is_stale(token):
            return
        self._stage = PipelineStage.NONE
        self._is_typing = False
        self._is_generating = False

    def _publish(self, event: str, stage: PipelineStage, **extra: Any) -> None:
        payload: Dict[str, Any] = {"session_id": self.session_id, "stage": stage.value, "at": self._now()}
        payload.update(extra)
        self._publish_fn(event, payload)

    async def _publish_off_loop(self, event: str, stage: PipelineStage, **extra: Any) -> None:
        # Redis publishing is synchronous; keep it off the event loop while streams run.
        await asyncio.to_thread(self._publish, event, stage, **extra)

    def _decision_phrase(self) -> str:
        phrases = self.config.decision_phrases
        want_ascii = self.config.language == "en"
        for phrase in phrases:
            if phrase.isascii() == want_ascii:
                return phrase
        return phrases[0] if phrases else ""

    def _write_artifact(self, stage: PipelineStage, value: Any) -> None:
        if stage is PipelineStage.REPORT:
            self._artifacts.requirement_report = value
        elif stage is PipelineStage.THINKING:
            self._artifacts.thinking_points = list(value)
        elif stage is PipelineStage.INITIAL:
            self._artifacts.initial_prompt = value
        elif stage is PipelineStage.ADVICE:
            self._artifacts.advice = list(value)
        elif stage is PipelineStage.FINAL:
            self._artifacts.final_prompt = PlainPrompt(value)
            self._view_format = "markdown"
            self._view_language = self.config.language

    def check_preconditions(self, stage: PipelineStage) -> None:
        """Raise ``ValidationError`` when the inputs of ``stage`` are missing."""
        a = self._artifacts
        if stage is PipelineStage.REPORT:
            if not self._conversation.valid_turns():
                raise ValidationError(self._t("need_conversation"))
        elif stage is PipelineStage.THINKING:
            if not a.has(PipelineStage.REPORT):
                raise ValidationError(self._t("need_report"))
        elif stage is PipelineStage.INITIAL:
            if not (a.has(PipelineStage.REPORT) and a.has(PipelineStage.THINKING)):
                raise ValidationError(self._t("need_thinking"))
        elif stage is PipelineStage.ADVICE:
            if not a.has(PipelineStage.INITIAL):
                raise ValidationError(self._t("need_initial"))
        elif stage is PipelineStage.FINAL:
            if not (a.has(PipelineStage.INITIAL) and a.has(PipelineStage.ADVICE)):
                raise ValidationError(self._t("need_advice"))
        else:
            raise ValueError(f"Not a generative stage: {stage}")

    def _stage_messages(self, stage: PipelineStage) -> List[ChatMessagePayload]:
        a = self._artifacts
        lang = self.config.language
        kind = self.config.prompt_type
        if stage is PipelineStage.REPORT:
            return prompt_templates.report_messages(self._conversation.valid_turns(), lang, kind)
        if stage is PipelineStage.THINKING:
            return prompt_templates.thinking_messages(a.requirement_report or "", lang, kind)
        if stage is PipelineStage.INITIAL:
            return prompt_templates.initial_messages(a.requirement_report or "", a.thinking_points or [], lang, kind)
        if stage is PipelineStage.ADVICE:
            return prompt_templates.advice_messages(a.initial_prompt or "", lang, kind)
        return prompt_templates.final_messages(a.initial_prompt or "", a.advice or [], lang, kind)

    def _progress_text(self, stage: PipelineStage) -> str:
        if stage is PipelineStage.REPORT:
            return self._t("progress_report")
        return self._t("progress_step", step=step_number(stage), label=self._label(stage))

    def _finalize(self, stage: PipelineStage, raw: str) -> Any:
        cleaned = clean_ai_response(raw)
        if stage in LIST_STAGES:
            items = parse_list_items(cleaned)
            if not items:
                raise ProviderCallError(self._t("empty_response"))
            return items
        if not cleaned:
            raise ProviderCallError(self._t("empty_response"))
        return cleaned

    async def _persist_snapshot(self) -> None:
        if self._snapshots is not None:
            await asyncio.to_thread(self._snapshots.write, self.session_id, self.snapshot())

    # ------------------------------------------------------------------
    # Chat turns
    # ------------------------------------------------------------------
    async def send_message(self, text: str, attachments: Optional[Iterable[Attachment]] = None) -> Optional[str]:
        """Append a user turn and answer it; returns the user turn id.

        Force-generate keywords skip the model reply and schedule the pipeline;
        otherwise the guidance reply streams into a new assistant turn and the
        pipeline is scheduled when the reply carries the decision phrase.
        """
        attachments = list(attachments or [])
        content = (text or "").strip()
        if not content:
            self._notifier.notify("warning", self._t("attachments_only" if attachments else "empty_input"))
            return None
        try:
            target = self.resolve_target()
        except ConfigurationError as exc:
            self._notifier.notify("warning", str(exc))
            return None
        self._ensure_idle()

        self._conversation.clear_transient()
        user_turn_id = self._conversation.append("user", content, attachments)
        logger.info("chat_message_sent", extra={"session_id": self.session_id, "attachments": len(attachments)})
        if check_force_generate(content, self.config.force_generate_phrases):
            self._conversation.append("assistant", self._t("force_ack"))
            self._schedule_auto_start()
            return user_turn_id
        await self._chat_turn(target)
        return user_turn_id

    async def regenerate_message(self, turn_id: str) -> bool:
        """Re-ask the model for an assistant turn from the valid turns before it."""
        turn = self._conversation.get(turn_id)
        if turn is None or turn.role != "assistant" or turn.is_deleted or turn.is_transient:
            return False
        history = self._conversation.valid_turns_before(turn_id)
        if not history:
            self._notifier.notify("warning", self._t("no_history"))
            return False
        try:
            target = self.resolve_target()
        except ConfigurationError as exc:
            self._notifier.notify("warning", str(exc))
            return False
        self._ensure_idle()
        self._conversation.clear_transient()
        return await self._chat_turn(target, history=history, turn_id=turn_id) is not None

    async def resend_user_message(self, turn_id: str) -> bool:
        """Drop everything after a user turn and answer it again."""
        turn = self._conversation.get(turn_id)
        if turn is None or turn.role != "user" or turn.is_deleted:
            return False
        try:
            target = self.resolve_target()
        except ConfigurationError as exc:
            self._notifier.notify("warning", str(exc))
            return False
        self._ensure_idle()
        for later in self._conversation.turns_after(turn_id):
            if not later.is_transient:
                self._conversation.soft_delete(later.id)
        self._conversation.clear_transient()
        if check_force_generate(turn.content, self.config.force_generate_phrases):
            self._conversation.append("assistant", self._t("force_ack"))
            self._schedule_auto_start()
            return True
        return await self._chat_turn(target) is not None

    async def _chat_turn(
        self,
        target: ResolvedTarget,
        history: Optional[Sequence[ConversationTurn]] = None,
        turn_id: Optional[str] = None,
    ) -> Optional[str]:
        token = self._start_run(typing=True)
        reply_id = turn_id
        raw: List[str] = []

        def on_chunk(piece: str) -> None:
            nonlocal reply_id
            if self._is_stale(token):
                return
            raw.append(piece)
            text = clean_ai_response("".join(raw))
            if reply_id is None:
                if not text:
                    return
                reply_id = self._conversation.append("assistant", text)
            else:
                self._conversation.update(reply_id, text)
            self._ui.scroll_to_bottom()

        try:
            turns = list(history) if history is not None else self._conversation.valid_turns()
            messages = prompt_templates.guidance_messages(
                turns, self._decision_phrase(), self.config.language, self.config.prompt_type
            )
            streaming = self.config.stream_mode
            reply = await self._client.call(
                messages,
                target,
                streaming=streaming,
                on_chunk=on_chunk if streaming else None,
                cancel=self._cancel,
            )
            self._check_token(token)
            cleaned = clean_ai_response(reply)
            if not cleaned:
                raise ProviderCallError(self._t("empty_response"))
            if reply_id is None:
                reply_id = self._conversation.append("assistant", cleaned)
            else:
                self._conversation.update(reply_id, cleaned)
            self._ui.scroll_to_bottom()
            if check_ai_decision(reply, self.config.decision_phrases):
                logger.info("ai_decision_detected", extra={"session_id": self.session_id})
                self._schedule_auto_start()
            return reply_id
        except AbortError:
            logger.info("chat_turn_aborted", extra={"session_id": self.session_id})
            return None
        except Exception as exc:
            logger.warning("chat_turn_failed", extra={"session_id": self.session_id, "err": str(exc)})
            self._notifier.notify("error", self._t("chat_failed", error=str(exc)))
            return None
        finally:
            self._end_run(token)

    # ------------------------------------------------------------------
    # Auto start
    # ------------------------------------------------------------------
    def _schedule_auto_start(self) -> None:
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
        self._auto_task = asyncio.ensure_future(self._auto_start())

    async def _auto_start(self) -> None:
        # Lets the status turn render before the preview switches stages.
        await asyncio.sleep(self.config.auto_start_delay)
        try:
            await self.generate_from_conversation()
        except StageConflictError as exc:
            logger.warning("auto_start_skipped", extra={"session_id": self.session_id, "err": str(exc)})

    async def wait_for_auto_start(self) -> None:
        task = self._auto_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def generate_from_conversation(self) -> bool:
        """Report stage from the conversation; chains to ``final`` in auto mode."""
        return await self._run_pipeline(PipelineStage.REPORT, sequential=self.config.auto_mode, progress=True)

    async def run_full_workflow(self) -> bool:
        """Sequential run from ``thinking`` using the existing report."""
        return await self._run_pipeline(PipelineStage.THINKING, sequential=True, progress=True)

    async def run_stage(self, stage: PipelineStage, regenerate: bool = False) -> bool:
        """Run exactly one stage; downstream artifacts are left as they are."""
        return await self._run_pipeline(stage, sequential=False, progress=False, regenerate=regenerate)

    async def _run_pipeline(
        self,
        start: PipelineStage,
        *,
        sequential: bool,
        progress: bool,
        regenerate: bool = False,
    ) -> bool:
        try:
            self.check_preconditions(start)
            target = self.resolve_target()
        except (ValidationError, ConfigurationError) as exc:
            self._notifier.notify("warning", str(exc))
            return False
        self._ensure_idle()

        token = self._start_run(typing=progress, generating=True)
        if progress:
            self._conversation.clear_transient()
        stage = start
        completed = 0
        started = time.perf_counter()
        try:
            while stage in STAGE_ORDER:
                self._stage = stage
                if progress:
                    self._conversation.upsert_transient(self._progress_text(stage), PROGRESS_SENTINEL_ID)
                started = time.perf_counter()
                logger.info("stage_started", extra={"session_id": self.session_id, "stage": stage.value})
                await self._publish_off_loop("stage_started", stage, regenerate=regenerate)
                self._check_token(token)
                await self._execute_stage(stage, target, token)
                observe_stage(stage.value, "completed", time.perf_counter() - started)
                logger.info("stage_completed", extra={"session_id": self.session_id, "stage": stage.value})
                await self._publish_off_loop("stage_completed", stage)
                await self._persist_snapshot()
                completed += 1
                if not sequential:
                    break
                self._check_token(token)
                stage = next_stage(stage)
            if progress:
                self._conversation.upsert_transient(self._t("progress_done"), PROGRESS_SENTINEL_ID)
            if regenerate:
                self._notifier.notify("success", self._t("regenerated", label=self._label(start)))
            elif completed > 1:
                self._notifier.notify("success", self._t("workflow_done"))
            return True
        except (AbortError, asyncio.CancelledError) as exc:
            observe_stage(stage.value, "aborted", time.perf_counter() - started)
            logger.info("stage_aborted", extra={"session_id": self.session_id, "stage": stage.value})
            await self._publish_off_loop("stage_aborted", stage)
            if isinstance(exc, asyncio.CancelledError):
                raise
            return False
        except Exception as exc:
            observe_stage(stage.value, "failed", time.perf_counter() - started)
            logger.warning("stage_failed", extra={"session_id": self.session_id, "stage": stage.value, "err": str(exc)})
            await self._publish_off_loop("stage_failed", stage, error=str(exc))
            self._notifier.notify("error", self._t("stage_failed", label=self._label(stage), error=str(exc)))
            return False
        finally:
            self._end_run(token)

    async def _execute_stage(self, stage: PipelineStage, target: ResolvedTarget, token: int) -> None:
        stream = _StageStream(self, stage, token)
        streaming = self.config.stream_mode
        raw = await self._client.call(
            self._stage_messages(stage),
            target,
            streaming=streaming,
            on_chunk=stream.on_chunk if streaming else None,
            cancel=self._cancel,
        )
        # interrupt() may land after the provider already returned.
        self._check_token(token)
        value = self._finalize(stage, raw)
        stream.activate()
        self._write_artifact(stage, value)
        self._ui.scroll_to_bottom()

    def interrupt(self) -> bool:
        """Abort whatever is in flight and hard-reset the busy state."""
        aborted = self._cancel.abort()
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
            aborted = True
        logger.info("pipeline_interrupted", extra={"session_id": self.session_id, "stage": self._stage.value})
        self._run_token += 1
        self._stage = PipelineStage.NONE
        self._is_typing = False
        self._is_generating = False
        return aborted

    # ------------------------------------------------------------------
    # Final prompt views
    # ------------------------------------------------------------------
    def current_final_text(self) -> str:
        return read_cell(self._artifacts.final_prompt, self._view_format, self._view_language)

    def edit_final_prompt(self, text: str) -> None:
        self._ensure_idle()
        self._artifacts.final_prompt = write_cell(
            self._artifacts.final_prompt, self._view_format, self._view_language, text
        )

    async def convert_final_format(self) -> bool:
        """Toggle markdown <-> xml for the final prompt in the current language."""
        if not self._artifacts.has(PipelineStage.FINAL):
            self._notifier.notify("warning", self._t("need_final"))
            return False
        source_format = self._view_format
        target_format = "xml" if source_format == "markdown" else "markdown"
        language = self._view_language
        if cached_cell(self._artifacts.final_prompt, target_format, language).strip():
            self._view_format = target_format
            return True
        source_text = read_cell(self._artifacts.final_prompt, source_format, language)
        messages = prompt_templates.format_conversion_messages(source_text, source_format, target_format, language)

        def store(prompt: Any, converted: str) -> Any:
            return apply_format_conversion(prompt, source_format, target_format, language, converted)

        ok = await self._convert(messages, store, "convert_failed")
        if ok:
            self._view_format = target_format
            self._notifier.notify("success", self._t("converted", format=_FORMAT_LABELS[target_format]))
        return ok

    async def translate_final(self) -> bool:
        """Toggle zh <-> en for the final prompt in the current format."""
        if not self._artifacts.has(PipelineStage.FINAL):
            self._notifier.notify("warning", self._t("need_final"))
            return False
        fmt = self._view_format
        source_language = self._view_language
        target_language = "en" if source_language == "zh" else "zh"
        if cached_cell(self._artifacts.final_prompt, fmt, target_language).strip():
            self._view_language = target_language
            return True
        source_text = read_cell(self._artifacts.final_prompt, fmt, source_language)
        messages = prompt_templates.translation_messages(source_text, source_language, target_language)

        def store(prompt: Any, translated: str) -> Any:
            return apply_translation(prompt, fmt, source_language, target_language, translated)

        ok = await self._convert(messages, store, "translate_failed")
        if ok:
            self._view_language = target_language
            self._notifier.notify("success", self._t("translated"))
        return ok

    async def _convert(
        self,
        messages: List[ChatMessagePayload],
        store: Callable[[Any, str], Any],
        failure_key: str,
    ) -> bool:
        try:
            target = self.resolve_target()
        except ConfigurationError as exc:
            self._notifier.notify("warning", str(exc))
            return False
        self._ensure_idle()
        token = self._start_run(generating=True)
        try:
            result = await self._client.call(messages, target, streaming=False, cancel=self._cancel)
            self._check_token(token)
            cleaned = clean_ai_response(result)
            if not cleaned:
                raise ProviderCallError(self._t("empty_response"))
            self._artifacts.final_prompt = store(self._artifacts.final_prompt, cleaned)
            await self._persist_snapshot()
            return True
        except AbortError:
            logger.info("conversion_aborted", extra={"session_id": self.session_id})
            return False
        except Exception as exc:
            logger.warning("conversion_failed", extra={"session_id": self.session_id, "err": str(exc)})
            self._notifier.notify("error", self._t(failure_key, error=str(exc)))
            return False
        finally:
            self._end_run(token)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save_to_library(
        self,
        title: str,
        description: str = "",
        tags: Optional[Iterable[str]] = None,
    ) -> Optional[SaveResult]:
        """Save (or, after a first save, update) the session's prompt in the library."""
        if not (title or "").strip():
            self._notifier.notify("warning", self._t("need_title"))
            return None
        final_text = primary_text(self._artifacts.final_prompt, self._view_language)
        if not final_text.strip():
            self._notifier.notify("warning", self._t("nothing_to_save"))
            return None
        a = self._artifacts
        request = SaveRequest(
            title=title.strip(),
            description=(description or "").strip(),
            requirement_report=a.requirement_report or "",
            thinking_points=list(a.thinking_points or []),
            initial_prompt=a.initial_prompt or "",
            advice=list(a.advice or []),
            final_prompt=final_text,
            language=self._view_language,
            format=self._view_format,
            prompt_type=self.config.prompt_type,
            tags=[t.strip() for t in (tags or []) if t and t.strip()],
            conversation=[
                {"role": t.role, "content": t.content}
                for t in self._conversation.valid_turns()
            ],
        )
        library = self._library or get_prompt_library()
        try:
            if self._saved_prompt_id:
                result = library.update(self._saved_prompt_id, request)
            else:
                result = library.save(request)
        except ProviderCallError as exc:
            logger.warning("prompt_save_failed", extra={"session_id": self.session_id, "err": str(exc)})
            self._notifier.notify("error", self._t("save_failed", error=str(exc)))
            return None
        self._saved_prompt_id = result.id
        self._publish_fn("prompt_saved", {"session_id": self.session_id, "prompt_id": result.id, "version": result.version})
        self._notifier.notify("success", self._t("saved"))
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "artifacts": self._artifacts.to_dict(),
            "turns": [t.model_dump() for t in self._conversation.valid_turns()],
            "final_view": self.final_view,
            "saved_prompt_id": self._saved_prompt_id,
        }

    def restore(self) -> bool:
        """Load the last snapshot of this session, if a store is configured."""
        if self._snapshots is None:
            return False
        data = self._snapshots.load(self.session_id)
        if not data:
            return False
        self._ensure_idle()
        self._artifacts = PipelineArtifacts.from_dict(data.get("artifacts") or {})
        self._conversation.restore(ConversationTurn.model_validate(t) for t in data.get("turns") or [])
        view = data.get("final_view") or {}
        self._view_format = view.get("format") or "markdown"
        self._view_language = view.get("language") or self.config.language
        self._saved_prompt_id = data.get("saved_prompt_id")
        logger.info("session_restored", extra={"session_id": self.session_id})
        return True

    def clear(self) -> None:
        """Reset conversation, artifacts and flags."""
        self.interrupt()
        self._conversation.clear()
        self._artifacts = PipelineArtifacts()
        self._view_format = "markdown"
        self._view_language = self.config.language
        self._saved_prompt_id = None
