"""
Shared fixtures and fakes for the test suite.
"""

import asyncio
import json
import logging
from datetime import date, timedelta
from types import SimpleNamespace
from typing import Callable, List, Optional, Sequence

import pytest

from job_etl.config import Settings, reset_settings
from job_etl.models import (
    EnrichedRecord,
    InvocationRequest,
    ListingDetail,
    ListingReference,
    ModelResponse,
    ReferenceCapability,
    TaxonomyGroup,
)
from job_etl.utils.errors import EnrichmentError


def make_refs(count: int, organization: str = "Transport", start: date = date(2024, 3, 1)) -> List[ListingReference]:
    return [
        ListingReference(
            id=f"job-{i}",
            url=f"https://jobs.example.org/job-{i}",
            title=f"Role {i}",
            organization=organization,
            location="Sydney",
            posted_date=start + timedelta(days=i - 1),
        )
        for i in range(1, count + 1)
    ]


def make_detail(reference: ListingReference, **overrides) -> ListingDetail:
    fields = dict(
        id=reference.id,
        url=reference.url,
        title=reference.title,
        organization=reference.organization,
        location=reference.location,
        posted_date=reference.posted_date,
        description=f"Description of {reference.title}",
        responsibilities=["Deliver projects"],
        requirements=["Degree"],
    )
    fields.update(overrides)
    return ListingDetail(**fields)


class FakeSource:
    """In-memory acquisition source."""

    def __init__(
        self,
        references: List[ListingReference],
        failing_ids: Sequence[str] = (),
        on_fetch: Optional[Callable[[ListingReference], None]] = None,
    ) -> None:
        self.references = references
        self.failing_ids = set(failing_ids)
        self.on_fetch = on_fetch
        self.list_calls: List[Optional[int]] = []
        self.fetched: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def list_references(self, limit=None):
        self.list_calls.append(limit)
        for count, reference in enumerate(self.references):
            if limit is not None and count >= limit:
                break
            yield reference

    async def fetch_detail(self, reference: ListingReference) -> ListingDetail:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.fetched.append(reference.id)
            if self.on_fetch:
                self.on_fetch(reference)
            if reference.id in self.failing_ids:
                raise ConnectionError(f"HTTP 500 for {reference.url}")
            return make_detail(reference)
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


class FakeEnricher:
    """Enricher that wraps details as raw records, failing selected ids."""

    def __init__(self, failing_ids: Sequence[str] = (), error: Optional[Exception] = None) -> None:
        self.failing_ids = set(failing_ids)
        self.error = error
        self.enriched: List[str] = []

    async def enrich(self, detail: ListingDetail) -> EnrichedRecord:
        await asyncio.sleep(0)
        self.enriched.append(detail.id)
        if self.error is not None:
            raise self.error
        if detail.id in self.failing_ids:
            raise EnrichmentError("model refused", item_id=detail.id)
        return EnrichedRecord(detail=detail)


class FakeStore:
    """Batch sink and live migrator recording what it receives."""

    def __init__(self, fail_store_on: Sequence[int] = (), fail_migrate_on: Sequence[int] = ()) -> None:
        self.fail_store_on = set(fail_store_on)
        self.fail_migrate_on = set(fail_migrate_on)
        self.batches: List[List[str]] = []
        self.migrated: List[List[str]] = []
        self._store_calls = 0
        self._migrate_calls = 0
        self.closed = False

    async def store_batch(self, records) -> None:
        self._store_calls += 1
        if self._store_calls in self.fail_store_on:
            raise RuntimeError("database unavailable")
        self.batches.append([r.id for r in records])

    async def migrate_batch_to_live(self, records) -> None:
        self._migrate_calls += 1
        if self._migrate_calls in self.fail_migrate_on:
            raise RuntimeError("live table locked")
        self.migrated.append([r.id for r in records])

    async def close(self) -> None:
        self.closed = True


class FakeCaller:
    """Model caller returning canned responses in order."""

    def __init__(self, responses: Sequence) -> None:
        self.responses = list(responses)
        self.requests: List[InvocationRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def call(self, request: InvocationRequest) -> ModelResponse:
        self.requests.append(request)
        response = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            response = json.dumps(response)
        return ModelResponse(text=response, token_usage={"total_tokens": 42})


class FakeEmbedder:
    """Deterministic embedder: vector derived from text length."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [[float(len(text)), 1.0, 0.0] for text in texts]


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    """Isolate settings from the developer's environment and .env file."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handler changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def capabilities() -> List[ReferenceCapability]:
    return [
        ReferenceCapability(id="cap-1", name="Communicate Effectively", group_name="Relationships"),
        ReferenceCapability(id="cap-2", name="Deliver Results", group_name="Results"),
        ReferenceCapability(
            id="cap-3",
            name="Technology",
            group_name="Business Enablers",
            embedding=[0.5, 0.5, 0.5],
        ),
    ]


@pytest.fixture
def taxonomies() -> List[TaxonomyGroup]:
    return [
        TaxonomyGroup(id="tax-1", name="Information Technology"),
        TaxonomyGroup(id="tax-2", name="Policy"),
    ]


@pytest.fixture
def detail() -> ListingDetail:
    return make_detail(make_refs(1)[0])


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


class FakeOpenAIClient:
    """Stands in for AsyncOpenAI; like the real client it refuses requests once closed."""

    def __init__(self, content: str = '{"capabilities": [], "summary": "ok"}', **kwargs) -> None:
        self.content = content
        self.kwargs = kwargs
        self.closed = False
        self.requests = 0
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._complete))
        self.embeddings = SimpleNamespace(create=self._embed)

    def _check_open(self) -> None:
        self.requests += 1
        if self.closed:
            raise RuntimeError("Cannot send a request, as the client has been closed.")

    async def _complete(self, **params):
        self._check_open()
        return SimpleNamespace(
            id="chatcmpl-test",
            model=params["model"],
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )

    async def _embed(self, model, input):
        self._check_open()
        return SimpleNamespace(
            data=[SimpleNamespace(index=i, embedding=[float(len(text)), 1.0]) for i, text in enumerate(input)]
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def openai_clients(monkeypatch) -> List[FakeOpenAIClient]:
    """Replace AsyncOpenAI everywhere it is built; collects every client opened."""
    opened: List[FakeOpenAIClient] = []

    def factory(**kwargs):
        client = FakeOpenAIClient(**kwargs)
        opened.append(client)
        return client

    monkeypatch.setattr("job_etl.extraction.callers.AsyncOpenAI", factory)
    monkeypatch.setattr("job_etl.enrichment.embeddings.AsyncOpenAI", factory)
    return opened
