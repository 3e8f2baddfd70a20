"""Prompt library collaborator: stores finished prompts and returns ``{id, version}``.

Two implementations: an in-memory library (default, also used by tests) and
an HTTP client for a remote library service. ``get_prompt_library`` picks one
from ``PROMPTSMITH_LIBRARY_IMPL``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import logging
import os
import uuid

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import ProviderCallError


logger = logging.getLogger(__name__)


@dataclass
class SaveRequest:
    title: str
    description: str
    requirement_report: str
    thinking_points: List[str]
    initial_prompt: str
    advice: List[str]
    final_prompt: str
    language: str
    format: str
    prompt_type: str
    tags: List[str] = field(default_factory=list)
    conversation: List[Dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class SaveResult:
    id: str
    version: int


class PromptLibrary(Protocol):
    def save(self, request: SaveRequest) -> SaveResult: ...

    def update(self, prompt_id: str, request: SaveRequest) -> SaveResult: ...


@dataclass
class _Record:
    id: str
    versions: List[Dict[str, Any]]
    created_at: str
    updated_at: str


class InMemoryPromptLibrary:
    def __init__(self) -> None:
        self._records: Dict[str, _Record] = {}
        self._lock = RLock()

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    def save(self, request: SaveRequest) -> SaveResult:
        with self._lock:
            now = self._now_iso()
            record = _Record(id=uuid.uuid4().hex, versions=[request.to_payload()], created_at=now, updated_at=now)
            self._records[record.id] = record
            logger.info("prompt_saved", extra={"prompt_id": record.id, "version": 1})
            return SaveResult(id=record.id, version=1)

    def update(self, prompt_id: str, request: SaveRequest) -> SaveResult:
        with self._lock:
            record = self._records.get(prompt_id)
            if record is None:
                return self.save(request)
            record.versions.append(request.to_payload())
            record.updated_at = self._now_iso()
            version = len(record.versions)
            logger.info("prompt_updated", extra={"prompt_id": prompt_id, "version": version})
            return SaveResult(id=prompt_id, version=version)

    def get(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(prompt_id)
            if record is None:
                return None
            latest = dict(record.versions[-1])
            latest.update({"id": record.id, "version": len(record.versions), "updated_at": record.updated_at})
            return latest

    def versions(self, prompt_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(prompt_id)
            return [dict(v) for v in record.versions] if record else []


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "PUT", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class HttpPromptLibrary:
    """Remote library: ``POST {base}/prompts`` and ``PUT {base}/prompts/{id}``."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = (5, timeout)
        self._session = _build_session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _result(self, resp: requests.Response) -> SaveResult:
        if resp.status_code >= 400:
            raise ProviderCallError(f"Prompt library error {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderCallError(f"Prompt library returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderCallError("Prompt library returned an unexpected payload")
        body = data["data"] if isinstance(data.get("data"), dict) else data
        prompt_id = body.get("id")
        if not prompt_id:
            raise ProviderCallError("Prompt library response has no id")
        return SaveResult(id=str(prompt_id), version=int(body.get("version") or 1))

    def save(self, request: SaveRequest) -> SaveResult:
        try:
            resp = self._session.post(
                f"{self.base_url}/prompts",
                json=request.to_payload(),
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderCallError(f"Prompt library unreachable: {exc}") from exc
        return self._result(resp)

    def update(self, prompt_id: str, request: SaveRequest) -> SaveResult:
        try:
            resp = self._session.put(
                f"{self.base_url}/prompts/{prompt_id}",
                json=request.to_payload(),
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderCallError(f"Prompt library unreachable: {exc}") from exc
        return self._result(resp)


_memory_library = InMemoryPromptLibrary()
_http_library: Optional[HttpPromptLibrary] = None


def get_prompt_library() -> PromptLibrary:
    global _http_library
    impl = os.getenv("PROMPTSMITH_LIBRARY_IMPL", "memory").lower()
    if impl == "http":
        url = (os.getenv("PROMPTSMITH_LIBRARY_URL") or "").strip()
        if not url:
            logger.warning("prompt_library_url_missing_using_memory")
            return _memory_library
        if _http_library is None:
            _http_library = HttpPromptLibrary(url, token=os.getenv("PROMPTSMITH_LIBRARY_TOKEN"))
        return _http_library
    return _memory_library
