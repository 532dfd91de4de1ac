"""Shared fixtures: a fresh SQLite database per test and message factories."""

import itertools
import json
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from tenacity import wait_none

from knowledge_pipeline.db.database import create_engine, create_session_maker, init_db
from knowledge_pipeline.db.models import Message
from knowledge_pipeline.documents import AssemblyOptions, DocumentAssembler
from knowledge_pipeline.faqs.models import faq_text
from knowledge_pipeline.faqs.similarity import SimilarityMatch
from knowledge_pipeline.llm.base import BaseLLM
from knowledge_pipeline.main import create_app
from knowledge_pipeline.services import build_services

BASE_TIME = datetime(2024, 3, 4, 9, 0, 0)

_external_ids = itertools.count(1)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def add_messages(session_maker):
    """Insert messages given as (text, author, minutes after BASE_TIME) tuples.

    Returns the new message ids in insertion order.
    """

    async def _add(specs, channel: str = "C-support", parent: str | None = None) -> list[int]:
        async with session_maker() as session:
            messages = []
            for text, author, minutes in specs:
                message = Message(
                    external_id=f"{channel}:{next(_external_ids):06d}",
                    text=text,
                    author=author,
                    channel=channel,
                    timestamp=BASE_TIME + timedelta(minutes=minutes),
                    parent_external_id=parent,
                )
                session.add(message)
                messages.append(message)
            await session.commit()
            return [m.id for m in messages]

    return _add


class FakeLLM(BaseLLM):
    """Scripted generation provider.

    `responder(prompt)` returns a dict (sent back as JSON), a string, or an
    exception to raise.
    """

    provider_name = "fake"

    def __init__(self, responder: Callable[[str], Any]):
        self.responder = responder
        self.prompts: list[str] = []

    async def generate(self, prompt: str, **kwargs: Any) -> str:
        self.prompts.append(prompt)
        response = self.responder(prompt)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)

    async def check_health(self) -> bool:
        return True


@pytest.fixture
def make_llm():
    return FakeLLM


class FakeSimilarityIndex:
    """In-memory similarity index.

    Identical FAQ text scores 0.95, anything else 0.1, unless `scores` pins a
    score for a FAQ id.
    """

    def __init__(self):
        self.entries: dict[int, str] = {}
        self.scores: dict[int, float] = {}
        self.fail_lookups = False
        self.fail_indexing = False

    async def find_similar(self, text: str, top_k: int) -> list[SimilarityMatch]:
        if self.fail_lookups:
            raise ConnectionError("similarity index unreachable")
        matches = [
            SimilarityMatch(
                id=str(faq_id),
                score=self.scores.get(faq_id, 0.95 if indexed == text else 0.1),
                metadata={"faq_id": faq_id},
            )
            for faq_id, indexed in self.entries.items()
        ]
        return sorted(matches, key=lambda m: m.score, reverse=True)[:top_k]

    async def index_faq(self, faq) -> None:
        if self.fail_indexing:
            raise ConnectionError("similarity index unreachable")
        self.entries[faq.id] = faq_text(faq.question, faq.answer)

    async def remove_faq(self, faq_id: int) -> None:
        self.entries.pop(faq_id, None)

    async def check_health(self) -> bool:
        return not self.fail_lookups


@pytest.fixture
def similarity_index():
    return FakeSimilarityIndex()


# Ten messages in one channel: chatter around one clear question and one clear answer
SUPPORT_THREAD = [
    ("Morning everyone", "carol", 0),
    ("Coffee machine is broken again", "dave", 2),
    ("How do I reset my password?", "alice", 4),
    ("Sprint review moved to 3pm", "carol", 5),
    ("Go to settings and click reset", "bob", 7),
    ("Deploy went out at noon", "erin", 9),
    ("Lunch order closes at 11:30", "dave", 11),
    ("Build times are slow today", "erin", 13),
    ("Release notes are in the wiki", "carol", 15),
    ("Out of office tomorrow afternoon", "dave", 17),
]


@pytest.fixture
def support_document(session_maker, add_messages):
    """Assemble SUPPORT_THREAD (or the given specs) into a COMPLETE document.

    Returns (document_id, message_ids).
    """

    async def _make(specs=None, channel: str = "C-support") -> tuple[int, list[int]]:
        ids = await add_messages(specs or SUPPORT_THREAD, channel=channel)
        assembler = DocumentAssembler(session_maker, retry_wait=wait_none())
        document = await assembler.assemble(ids, AssemblyOptions(title="Password reset", category="accounts"))
        return document.id, ids

    return _make


@pytest_asyncio.fixture
async def services(session_maker, similarity_index):
    """The full service graph on the test database, without LLM discovery."""
    return await build_services(session_maker, similarity_index=similarity_index, discover=False)


@pytest_asyncio.fixture
async def client(services):
    """HTTP client against an app bound to the test services."""
    transport = ASGITransport(app=create_app(services, run_worker=False))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
