import pytest
import requests

from promptsmith.errors import ProviderCallError
from promptsmith.infrastructure import prompt_library
from promptsmith.infrastructure.prompt_library import HttpPromptLibrary, InMemoryPromptLibrary, SaveRequest


def _request(title="Tutor"):
    return SaveRequest(
        title=title,
        description="",
        requirement_report="report",
        thinking_points=["a"],
        initial_prompt="initial",
        advice=["b"],
        final_prompt="final",
        language="zh",
        format="markdown",
        prompt_type="system",
    )


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def _send(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response

    def post(self, url, **kwargs):
        return self._send("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._send("PUT", url, **kwargs)


def test_memory_library_versions():
    library = InMemoryPromptLibrary()
    saved = library.save(_request())
    updated = library.update(saved.id, _request("Tutor v2"))
    assert (saved.version, updated.version) == (1, 2)
    assert library.get(saved.id)["title"] == "Tutor v2"
    assert [v["title"] for v in library.versions(saved.id)] == ["Tutor", "Tutor v2"]
    assert library.get("missing") is None


def test_memory_update_of_unknown_id_saves_new_record():
    library = InMemoryPromptLibrary()
    result = library.update("ghost", _request())
    assert result.version == 1
    assert result.id != "ghost"


def test_http_library_posts_and_reads_wrapped_payload():
    library = HttpPromptLibrary("https://library.example.com/api/", token="t0k")
    session = FakeSession(FakeResponse(201, {"data": {"id": "p-1", "version": 1}}))
    library._session = session

    result = library.save(_request())

    assert result.id == "p-1"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://library.example.com/api/prompts")
    assert kwargs["headers"]["Authorization"] == "Bearer t0k"
    assert kwargs["json"]["final_prompt"] == "final"


def test_http_library_update_uses_put():
    library = HttpPromptLibrary("https://library.example.com")
    session = FakeSession(FakeResponse(200, {"id": "p-1", "version": 3}))
    library._session = session
    result = library.update("p-1", _request())
    assert result.version == 3
    assert session.calls[0][:2] == ("PUT", "https://library.example.com/prompts/p-1")
    assert "Authorization" not in session.calls[0][2]["headers"]


@pytest.mark.parametrize(
    "response,message",
    [
        (FakeResponse(500, text="boom"), "error 500"),
        (FakeResponse(200, None), "invalid JSON"),
        (FakeResponse(200, {"version": 1}), "no id"),
    ],
)
def test_http_library_errors(response, message):
    library = HttpPromptLibrary("https://library.example.com")
    library._session = FakeSession(response)
    with pytest.raises(ProviderCallError, match=message):
        library.save(_request())


def test_http_library_unreachable():
    library = HttpPromptLibrary("https://library.example.com")
    library._session = FakeSession(exc=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(ProviderCallError, match="unreachable"):
        library.save(_request())


def test_get_prompt_library_selection(monkeypatch):
    monkeypatch.setattr(prompt_library, "_http_library", None)
    monkeypatch.delenv("PROMPTSMITH_LIBRARY_IMPL", raising=False)
    assert isinstance(prompt_library.get_prompt_library(), InMemoryPromptLibrary)

    monkeypatch.setenv("PROMPTSMITH_LIBRARY_IMPL", "http")
    monkeypatch.delenv("PROMPTSMITH_LIBRARY_URL", raising=False)
    assert isinstance(prompt_library.get_prompt_library(), InMemoryPromptLibrary)

    monkeypatch.setenv("PROMPTSMITH_LIBRARY_URL", "https://library.example.com")
    library = prompt_library.get_prompt_library()
    assert isinstance(library, HttpPromptLibrary)
    assert prompt_library.get_prompt_library() is library


def test_retry_adapter_is_mounted():
    session = prompt_library._build_session()
    adapter = session.get_adapter("https://library.example.com")
    assert adapter.max_retries.total == 2
    assert 503 in adapter.max_retries.status_forcelist
