from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional
import uuid

from ..domain.conversation_models import Attachment, ChatMessagePayload, ConversationTurn


PROGRESS_SENTINEL_ID = "progress_message"


class ConversationState:
    """Ordered log of chat turns with soft-delete and edit semantics.

    Every operation that names an unknown turn id is a no-op. Turns handed out
    are copies; the only way to change the log is through this service.
    """

    def __init__(self) -> None:
        self._turns: List[ConversationTurn] = []
        self._index: Dict[str, int] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def _find(self, turn_id: str) -> Optional[ConversationTurn]:
        idx = self._index.get(turn_id)
        return self._turns[idx] if idx is not None else None

    def _store(self, turn: ConversationTurn) -> None:
        self._index[turn.id] = len(self._turns)
        self._turns.append(turn)

    def _reindex(self) -> None:
        self._index = {t.id: i for i, t in enumerate(self._turns)}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def append(self, role: str, content: str, attachments: Optional[Iterable[Attachment]] = None) -> str:
        with self._lock:
            now = self._now_iso()
            turn = ConversationTurn(
                id=uuid.uuid4().hex,
                role=role,
                content=content,
                created_at=now,
                updated_at=now,
                attachments=list(attachments or []),
            )
            self._store(turn)
            return turn.id

    def upsert_transient(self, content: str, sentinel_id: str = PROGRESS_SENTINEL_ID) -> None:
        with self._lock:
            now = self._now_iso()
            existing = self._find(sentinel_id)
            if existing is not None:
                existing.content = content
                existing.updated_at = now
                existing.is_transient = True
                return
            self._store(
                ConversationTurn(
                    id=sentinel_id,
                    role="assistant",
                    content=content,
                    created_at=now,
                    updated_at=now,
                    is_transient=True,
                )
            )

    def update(self, turn_id: str, content: str) -> None:
        with self._lock:
            turn = self._find(turn_id)
            if turn is None:
                return
            turn.content = content
            turn.updated_at = self._now_iso()

    def soft_delete(self, turn_id: str) -> None:
        with self._lock:
            turn = self._find(turn_id)
            if turn is None:
                return
            turn.is_deleted = True
            turn.updated_at = self._now_iso()

    def begin_edit(self, turn_id: str) -> None:
        with self._lock:
            turn = self._find(turn_id)
            if turn is None:
                return
            if not turn.is_being_edited:
                turn.original_content = turn.content
            turn.is_being_edited = True

    def save_edit(self, turn_id: str, new_content: str) -> None:
        with self._lock:
            turn = self._find(turn_id)
            if turn is None:
                return
            turn.content = (new_content or "").strip()
            turn.updated_at = self._now_iso()
            turn.is_being_edited = False
            turn.original_content = None

    def cancel_edit(self, turn_id: str) -> None:
        with self._lock:
            turn = self._find(turn_id)
            if turn is None or turn.original_content is None:
                return
            turn.content = turn.original_content
            turn.is_being_edited = False
            turn.original_content = None

    def clear_transient(self) -> None:
        with self._lock:
            self._turns = [t for t in self._turns if not t.is_transient]
            self._reindex()

    def clear(self) -> None:
        with self._lock:
            self._turns = []
            self._index = {}

    def restore(self, turns: Iterable[ConversationTurn]) -> None:
        with self._lock:
            self._turns = [t.model_copy(deep=True) for t in turns]
            self._reindex()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, turn_id: str) -> Optional[ConversationTurn]:
        with self._lock:
            turn = self._find(turn_id)
            return turn.model_copy(deep=True) if turn is not None else None

    def turns(self) -> List[ConversationTurn]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._turns]

    def valid_turns(self) -> List[ConversationTurn]:
        """Turns that may be sent to a model as history, in creation order."""
        with self._lock:
            return [t.model_copy(deep=True) for t in self._turns if not t.is_deleted and not t.is_transient]

    def turns_after(self, turn_id: str) -> List[ConversationTurn]:
        with self._lock:
            idx = self._index.get(turn_id)
            if idx is None:
                return []
            return [t.model_copy(deep=True) for t in self._turns[idx + 1:]]

    def valid_turns_before(self, turn_id: str) -> List[ConversationTurn]:
        with self._lock:
            idx = self._index.get(turn_id)
            if idx is None:
                return []
            return [
                t.model_copy(deep=True)
                for t in self._turns[:idx]
                if not t.is_deleted and not t.is_transient
            ]

    @staticmethod
    def history_payload(turns: Iterable[ConversationTurn]) -> List[ChatMessagePayload]:
        return [
            ChatMessagePayload(role=t.role, content=t.content, attachments=list(t.attachments))
            for t in turns
        ]
