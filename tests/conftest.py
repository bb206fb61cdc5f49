import asyncio
import uuid

import mongomock
import pytest
from httpx import ASGITransport, AsyncClient

from quizroom.auth import create_access_token
from quizroom.catalog import now_iso
from quizroom.config import Config
from quizroom.models import QuizCreate
from quizroom.server import Services, app

OWNER = "owner-1"
ALICE = "user-alice"
BOB = "user-bob"
MALLORY = "user-mallory"

USERS = [
    {"id": OWNER, "firstname": "Olivia", "lastname": "Owner"},
    {"id": ALICE, "firstname": "Alice", "lastname": "Adams"},
    {"id": BOB, "firstname": "Bob", "lastname": "Brown"},
    {"id": MALLORY, "firstname": "Mallory", "lastname": "Moss"},
]

QUIZ_DATA = {
    "title": "Capitals and primes",
    "description": "Two quick questions",
    "timeLimit": 10,
    "questions": [
        {
            "id": "q-capital",
            "questionText": "Capital of France?",
            "questionType": "single",
            "options": ["Paris", "Berlin", "Rome"],
            "correctAnswer": "Paris",
        },
        {
            "id": "q-primes",
            "questionText": "Which are prime?",
            "questionType": "multiple",
            "options": ["2", "3", "4"],
            "correctAnswer": ["2", "3"],
        },
    ],
}


# ============================================================================
# IN-MEMORY MONGO
# Awaitable facade over mongomock covering the motor calls the store makes.
# Every call yields to the event loop once, like a network round-trip.
# ============================================================================


class MockCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class MockCollection:
    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return MockCursor(self._collection.find(*args, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return method(*args, **kwargs)

        return call


class MockDatabase:
    def __init__(self, database):
        self._database = database

    def __getattr__(self, name):
        return MockCollection(self._database[name])

    async def command(self, *args, **kwargs):
        await asyncio.sleep(0)
        return self._database.command(*args, **kwargs)


def mock_db() -> MockDatabase:
    return MockDatabase(mongomock.MongoClient()[f"quizroom_test_{uuid.uuid4().hex[:8]}"])


def auth_headers(user_id: str, config: Config = None) -> dict:
    config = config or Config()
    token = create_access_token(
        user_id, config.JWT_SECRET, config.JWT_ALGORITHM, config.JWT_EXPIRATION_HOURS
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def db():
    return mock_db()


@pytest.fixture
async def services(db, config):
    """Service graph over an in-memory Mongo and the in-process cache"""
    services = Services(db, None, config)
    await services.store.ensure_indexes()
    await db.users.insert_many([dict(u) for u in USERS])
    return services


@pytest.fixture
async def quiz(services):
    return await services.catalog.create_quiz(OWNER, QuizCreate(**QUIZ_DATA))


@pytest.fixture
def seed_session(services, quiz):
    """Insert a session document directly, bypassing the lifecycle."""

    async def _seed(competitors, active=False, code=None, owner_id=OWNER, quiz_id=None):
        ts = now_iso()
        doc = {
            "id": str(uuid.uuid4()),
            "userId": owner_id,
            "quizId": quiz_id or quiz["id"],
            "code": code or str(100000 + uuid.uuid4().int % 900000),
            "isActive": active,
            "competitors": competitors,
            "createdAt": ts,
            "updatedAt": ts,
            "closedAt": None if active else ts,
            "version": 0,
        }
        await services.store.insert_session(doc)
        return doc

    return _seed


def competitor(user_id, answers, finished=True):
    return {
        "userId": user_id,
        "startedAt": now_iso(),
        "finished": finished,
        "answers": [{"questionId": qid, "answer": value} for qid, value in answers.items()],
    }


@pytest.fixture
async def client(services, config):
    """Create test client"""
    app.state.services = services
    app.state.config = config
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
