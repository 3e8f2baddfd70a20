from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional
import logging

from ..config import PipelineConfig
from ..domain.provider_models import ProviderSelection
from ..infrastructure.prompt_library import PromptLibrary, get_prompt_library
from ..infrastructure.snapshot_store import SnapshotStore
from ..services.chat_client import StreamingChatClient
from ..services.notifications import NotificationCenter
from ..services.pipeline import PipelineOrchestrator
from ..services.provider_registry import ProviderRegistry


logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    orchestrator: PipelineOrchestrator
    notifications: NotificationCenter
    created_at: str


class SessionRegistry:
    """Process-local table of live sessions; one orchestrator per session."""

    def __init__(
        self,
        config: PipelineConfig,
        providers: ProviderRegistry,
        client: StreamingChatClient,
        library: Optional[PromptLibrary] = None,
        snapshot_store: Optional[SnapshotStore] = None,
    ) -> None:
        self.config = config
        self.providers = providers
        self.client = client
        self._library = library
        self._snapshots = snapshot_store
        self._sessions: Dict[str, SessionHandle] = {}
        self._lock = RLock()

    def create(self, provider: Optional[str] = None, model: Optional[str] = None) -> SessionHandle:
        notifications = NotificationCenter()
        selection = None
        if provider:
            if not model:
                configured = self.providers.get(provider)
                model = configured.models[0].id if configured and configured.models else ""
            selection = ProviderSelection(provider, model)
        orchestrator = PipelineOrchestrator(
            client=self.client,
            registry=self.providers,
            config=self.config,
            notifier=notifications,
            library=self._library or get_prompt_library(),
            snapshot_store=self._snapshots,
            selection=selection,
        )
        handle = SessionHandle(
            orchestrator=orchestrator,
            notifications=notifications,
            created_at=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        )
        with self._lock:
            self._sessions[orchestrator.session_id] = handle
        logger.info("session_created", extra={"session_id": orchestrator.session_id})
        return handle

    def get(self, session_id: str) -> SessionHandle:
        with self._lock:
            handle = self._sessions.get(session_id)
        if handle is None:
            raise KeyError(session_id)
        return handle

    def remove(self, session_id: str) -> bool:
        with self._lock:
            handle = self._sessions.pop(session_id, None)
        if handle is None:
            return False
        handle.orchestrator.interrupt()
        return True

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)


_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        config = PipelineConfig.from_env()
        providers = ProviderRegistry.from_env(
            settings_path=config.settings_path,
            default_provider=config.default_provider,
            default_model=config.default_model,
        )
        snapshots = SnapshotStore(config.snapshot_path) if config.snapshot_path else None
        _registry = SessionRegistry(config, providers, StreamingChatClient(config), snapshot_store=snapshots)
    return _registry


def set_session_registry(registry: Optional[SessionRegistry]) -> None:
    global _registry
    _registry = registry
