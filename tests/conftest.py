import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from promptsmith.config import PipelineConfig  # noqa: E402
from promptsmith.domain.provider_models import ModelConfig, ProviderConfig, ProviderSelection  # noqa: E402
from promptsmith.services.chat_client import StreamingChatClient  # noqa: E402
from promptsmith.services.notifications import NotificationCenter  # noqa: E402
from promptsmith.services.pipeline import PipelineOrchestrator, UIHooks  # noqa: E402
from promptsmith.services.provider_registry import ProviderRegistry  # noqa: E402


class ScriptedTransport:
    """Replays a fixed response instead of calling a provider.

    ``gate`` (an ``asyncio.Event``) pauses the stream after ``pause_after``
    chunks until it is set, which lets tests interrupt mid-stream.
    """

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        *,
        text: Optional[str] = None,
        error: Optional[Exception] = None,
        supports_streaming: bool = True,
        gate: Optional[asyncio.Event] = None,
        pause_after: int = 0,
    ) -> None:
        self.chunks = list(chunks or [])
        self.text = text if text is not None else "".join(self.chunks)
        self.error = error
        self.supports_streaming = supports_streaming
        self.gate = gate
        self.pause_after = pause_after
        self.reached_gate = asyncio.Event()
        self.calls: List[Any] = []

    async def stream(self, messages):
        self.calls.append(list(messages))
        for index, chunk in enumerate(self.chunks):
            if self.gate is not None and index == self.pause_after:
                self.reached_gate.set()
                await self.gate.wait()
            yield chunk
        if self.error is not None:
            raise self.error

    async def complete(self, messages):
        self.calls.append(list(messages))
        if self.gate is not None:
            self.reached_gate.set()
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.text


class RecordingUI(UIHooks):
    def __init__(self) -> None:
        self.events: List[Any] = []

    def on_stage_activated(self, stage) -> None:
        self.events.append(("activated", stage))

    def scroll_to_bottom(self) -> None:
        self.events.append(("scroll", None))

    def activations(self):
        return [stage for kind, stage in self.events if kind == "activated"]


class TransportQueue:
    """Transport factory handing out scripted transports in call order."""

    def __init__(self, transports: List[ScriptedTransport]) -> None:
        self.pending = list(transports)
        self.used: List[ScriptedTransport] = []

    def __call__(self, target, config):
        if not self.pending:
            raise AssertionError("unexpected provider call")
        transport = self.pending.pop(0)
        self.used.append(transport)
        return transport


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(auto_start_delay=0.0)


@pytest.fixture
def provider_registry() -> ProviderRegistry:
    provider = ProviderConfig(
        id="test",
        name="Test Provider",
        type="openai",
        api_key="sk-test",
        base_url="https://llm.example.com",
        models=[ModelConfig(id="test-model", name="Test Model")],
    )
    return ProviderRegistry([provider], default_provider="test", default_model="test-model")


@pytest.fixture
def events() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def make_orchestrator(config, provider_registry, events):
    """Build an orchestrator whose provider calls replay the given transports."""

    def _build(*transports: ScriptedTransport, cfg: Optional[PipelineConfig] = None, **kwargs):
        queue = TransportQueue(list(transports))
        client = StreamingChatClient(cfg or config, transport_factory=queue)
        kwargs.setdefault("notifier", NotificationCenter())
        kwargs.setdefault("ui", RecordingUI())
        kwargs.setdefault("selection", ProviderSelection("test", "test-model"))
        orch = PipelineOrchestrator(
            client=client,
            registry=provider_registry,
            config=cfg or config,
            publisher=lambda event, payload: events.append({"event": event, **payload}),
            **kwargs,
        )
        orch.transports = queue
        return orch

    return _build


@pytest.fixture
def scripted():
    return ScriptedTransport
