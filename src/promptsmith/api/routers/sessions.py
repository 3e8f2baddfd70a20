from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status

from ...core.state_machine import STAGE_ORDER, PipelineStage
from ...domain.api_models import (
    Accepted,
    ArtifactsView,
    FinalPromptEdit,
    InterruptResponse,
    MessageCreate,
    MessageEdit,
    ModelSelect,
    ModelView,
    NotificationView,
    ProviderView,
    RestoreResponse,
    SavePromptBody,
    SavePromptResponse,
    SessionCreate,
    SessionCreated,
    SessionState,
)
from ...domain.provider_models import ProviderSelection
from ...errors import StageConflictError, ValidationError
from ..session_registry import SessionHandle, SessionRegistry, get_session_registry


logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def _handle(session_id: str, registry: SessionRegistry) -> SessionHandle:
    try:
        return registry.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")


def _state(handle: SessionHandle) -> SessionState:
    orch = handle.orchestrator
    artifacts = orch.artifacts
    selection = orch.selection
    return SessionState(
        session_id=orch.session_id,
        stage=orch.stage.value,
        is_typing=orch.is_typing,
        is_generating=orch.is_generating,
        provider=selection.provider_id if selection else None,
        model=selection.model_id if selection else None,
        final_view=orch.final_view,
        saved_prompt_id=orch.saved_prompt_id,
        artifacts=ArtifactsView(
            requirement_report=artifacts.requirement_report,
            thinking_points=artifacts.thinking_points,
            initial_prompt=artifacts.initial_prompt,
            advice=artifacts.advice,
            final_prompt=artifacts.final_prompt.to_dict() if artifacts.final_prompt is not None else None,
            final_text=orch.current_final_text(),
        ),
        turns=orch.conversation.turns(),
        notifications=[
            NotificationView(id=n.id, kind=n.kind, message=n.message, created_at=n.created_at)
            for n in handle.notifications.items()
        ],
    )


async def _run_guarded(
    handle: SessionHandle,
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
) -> None:
    """Run a 202 operation; a run that lost the race to another one is reported, not raised."""
    try:
        await func(*args)
    except StageConflictError as exc:
        logger.warning(
            "background_operation_conflict",
            extra={"session_id": handle.orchestrator.session_id, "operation": operation, "err": str(exc)},
        )
        handle.notifications.notify("warning", str(exc))


def _schedule(
    background: BackgroundTasks,
    handle: SessionHandle,
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
) -> Accepted:
    background.add_task(_run_guarded, handle, operation, func, *args)
    return _accepted(handle, operation)


def _accepted(handle: SessionHandle, operation: str) -> Accepted:
    return Accepted(session_id=handle.orchestrator.session_id, operation=operation)


def _require_idle(handle: SessionHandle) -> None:
    if handle.orchestrator.busy:
        raise HTTPException(status_code=409, detail="Another operation is still running; interrupt it first")


@router.get("/providers", response_model=List[ProviderView])
def list_providers(registry: SessionRegistry = Depends(get_session_registry)) -> List[ProviderView]:
    enabled = {p.id for p in registry.providers.enabled_providers()}
    return [
        ProviderView(
            id=p.id,
            name=p.name,
            type=p.type,
            enabled=p.id in enabled,
            models=[ModelView(id=m.id, name=m.name, api_type=m.api_type) for m in p.models],
        )
        for p in registry.providers.providers()
    ]


@router.post("/sessions", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
def create_session(req: SessionCreate, registry: SessionRegistry = Depends(get_session_registry)) -> SessionCreated:
    handle = registry.create(provider=req.provider, model=req.model)
    return SessionCreated(session_id=handle.orchestrator.session_id)


@router.get("/sessions/{session_id}", response_model=SessionState)
def get_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> SessionState:
    return _state(_handle(session_id, registry))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> Response:
    if not registry.remove(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/model", response_model=SessionState)
def select_model(session_id: str, req: ModelSelect, registry: SessionRegistry = Depends(get_session_registry)) -> SessionState:
    handle = _handle(session_id, registry)
    registry.providers.resolve(ProviderSelection(req.provider, req.model))
    handle.orchestrator.select_model(req.provider, req.model)
    return _state(handle)


# ----------------------------------------------------------------------
# Conversation
# ----------------------------------------------------------------------
@router.post("/sessions/{session_id}/messages", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def post_message(
    session_id: str,
    req: MessageCreate,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    if not req.content.strip():
        raise ValidationError("Message content is required")
    handle.orchestrator.resolve_target()
    _require_idle(handle)
    return _schedule(
        background, handle, "send_message", handle.orchestrator.send_message, req.content, req.attachments
    )


@router.post(
    "/sessions/{session_id}/messages/{turn_id}/regenerate",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def regenerate_message(
    session_id: str,
    turn_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    turn = handle.orchestrator.conversation.get(turn_id)
    if turn is None or turn.role != "assistant":
        raise HTTPException(status_code=404, detail="Assistant message not found")
    _require_idle(handle)
    return _schedule(background, handle, "regenerate_message", handle.orchestrator.regenerate_message, turn_id)


@router.post(
    "/sessions/{session_id}/messages/{turn_id}/resend",
    response_model=Accepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resend_message(
    session_id: str,
    turn_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    turn = handle.orchestrator.conversation.get(turn_id)
    if turn is None or turn.role != "user":
        raise HTTPException(status_code=404, detail="User message not found")
    _require_idle(handle)
    return _schedule(background, handle, "resend_user_message", handle.orchestrator.resend_user_message, turn_id)


@router.delete("/sessions/{session_id}/messages/{turn_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(session_id: str, turn_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> Response:
    handle = _handle(session_id, registry)
    handle.orchestrator.conversation.soft_delete(turn_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/messages/{turn_id}/edit", response_model=SessionState)
def begin_edit(session_id: str, turn_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> SessionState:
    handle = _handle(session_id, registry)
    handle.orchestrator.conversation.begin_edit(turn_id)
    return _state(handle)


@router.put("/sessions/{session_id}/messages/{turn_id}", response_model=SessionState)
def save_edit(
    session_id: str,
    turn_id: str,
    req: MessageEdit,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionState:
    handle = _handle(session_id, registry)
    handle.orchestrator.conversation.save_edit(turn_id, req.content)
    return _state(handle)


@router.post("/sessions/{session_id}/messages/{turn_id}/edit/cancel", response_model=SessionState)
def cancel_edit(session_id: str, turn_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> SessionState:
    handle = _handle(session_id, registry)
    handle.orchestrator.conversation.cancel_edit(turn_id)
    return _state(handle)


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------
@router.post("/sessions/{session_id}/pipeline", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def generate_from_conversation(
    session_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    handle.orchestrator.check_preconditions(PipelineStage.REPORT)
    handle.orchestrator.resolve_target()
    _require_idle(handle)
    return _schedule(background, handle, "generate_from_conversation", handle.orchestrator.generate_from_conversation)


@router.post("/sessions/{session_id}/workflow", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def run_full_workflow(
    session_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    handle.orchestrator.check_preconditions(PipelineStage.THINKING)
    handle.orchestrator.resolve_target()
    _require_idle(handle)
    return _schedule(background, handle, "run_full_workflow", handle.orchestrator.run_full_workflow)


@router.post("/sessions/{session_id}/stages/{stage}", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def run_stage(
    session_id: str,
    stage: PipelineStage,
    background: BackgroundTasks,
    regenerate: bool = Query(default=False),
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    if stage not in STAGE_ORDER:
        raise HTTPException(status_code=422, detail=f"Not a generative stage: {stage.value}")
    handle.orchestrator.check_preconditions(stage)
    handle.orchestrator.resolve_target()
    _require_idle(handle)
    return _schedule(background, handle, f"run_stage:{stage.value}", handle.orchestrator.run_stage, stage, regenerate)


@router.post("/sessions/{session_id}/interrupt", response_model=InterruptResponse)
async def interrupt(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> InterruptResponse:
    handle = _handle(session_id, registry)
    return InterruptResponse(aborted=handle.orchestrator.interrupt())


# ----------------------------------------------------------------------
# Final prompt
# ----------------------------------------------------------------------
@router.post("/sessions/{session_id}/final/format", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def convert_final_format(
    session_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    handle.orchestrator.check_preconditions(PipelineStage.FINAL)
    _require_idle(handle)
    return _schedule(background, handle, "convert_final_format", handle.orchestrator.convert_final_format)


@router.post("/sessions/{session_id}/final/language", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def translate_final(
    session_id: str,
    background: BackgroundTasks,
    registry: SessionRegistry = Depends(get_session_registry),
) -> Accepted:
    handle = _handle(session_id, registry)
    handle.orchestrator.check_preconditions(PipelineStage.FINAL)
    _require_idle(handle)
    return _schedule(background, handle, "translate_final", handle.orchestrator.translate_final)


@router.put("/sessions/{session_id}/final", response_model=SessionState)
async def edit_final_prompt(
    session_id: str,
    req: FinalPromptEdit,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionState:
    handle = _handle(session_id, registry)
    handle.orchestrator.edit_final_prompt(req.content)
    return _state(handle)


@router.post("/sessions/{session_id}/save", response_model=SavePromptResponse)
def save_prompt(
    session_id: str,
    req: SavePromptBody,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SavePromptResponse:
    handle = _handle(session_id, registry)
    result = handle.orchestrator.save_to_library(req.title, req.description, req.tags)
    if result is None:
        latest = handle.notifications.items()[-1:] or []
        detail = latest[0].message if latest else "Prompt could not be saved"
        raise HTTPException(status_code=422, detail=detail)
    return SavePromptResponse(id=result.id, version=result.version)


@router.post("/sessions/{session_id}/clear", status_code=status.HTTP_204_NO_CONTENT)
async def clear_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> Response:
    handle = _handle(session_id, registry)
    handle.orchestrator.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/restore", response_model=RestoreResponse)
async def restore_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)) -> RestoreResponse:
    handle = _handle(session_id, registry)
    _require_idle(handle)
    return RestoreResponse(restored=handle.orchestrator.restore())
