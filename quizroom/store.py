"""MongoDB access for quizzes, sessions and users.

Documents carry their own string ``id`` and are always read with the
``_id`` field projected out. Every round-trip is bounded by the configured
timeout; nothing is retried here.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from quizroom.errors import Unavailable

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


class SessionLocks:
    """Per-session mutual exclusion for read-modify-write of one session document.

    A lock lives only while someone holds or waits for it; the last user out
    removes it from the registry.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def for_session(self, session_id: str):
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]


class DocumentStore:
    def __init__(self, db, timeout: float = 5.0, max_items: int = 1000):
        self.db = db
        self.timeout = timeout
        self.max_items = max_items

    async def _call(self, awaitable, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Store timeout: {what}")
            raise Unavailable(f"Storage did not answer in time ({what})")
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            logger.error(f"Store error during {what}: {e}")
            raise Unavailable(f"Storage failure ({what})")

    async def ensure_indexes(self):
        await self._call(self.db.quizzes.create_index("id", unique=True), "index quizzes.id")
        await self._call(self.db.quizzes.create_index("userId"), "index quizzes.userId")
        await self._call(self.db.sessions.create_index("id", unique=True), "index sessions.id")
        await self._call(self.db.sessions.create_index("code", unique=True), "index sessions.code")
        await self._call(
            self.db.sessions.create_index([("quizId", 1), ("userId", 1), ("isActive", 1)]),
            "index sessions.quizId",
        )
        await self._call(self.db.users.create_index("id", unique=True), "index users.id")

    async def ping(self):
        return await self._call(self.db.command("ping"), "ping")

    # ------------------------------------------------------------------ quizzes

    async def insert_quiz(self, doc: Dict):
        await self._call(self.db.quizzes.insert_one(dict(doc)), "insert quiz")

    async def find_quiz(self, quiz_id: str) -> Optional[Dict]:
        return await self._call(self.db.quizzes.find_one({"id": quiz_id}, NO_ID), "find quiz")

    async def find_quizzes_by_owner(self, owner_id: str) -> List[Dict]:
        cursor = self.db.quizzes.find({"userId": owner_id}, NO_ID).sort("createdAt", -1)
        return await self._call(cursor.to_list(self.max_items), "find quizzes")

    async def update_quiz(self, quiz_id: str, fields: Dict) -> bool:
        result = await self._call(
            self.db.quizzes.update_one({"id": quiz_id}, {"$set": fields}), "update quiz"
        )
        return result.matched_count > 0

    async def delete_quiz(self, quiz_id: str) -> bool:
        result = await self._call(self.db.quizzes.delete_one({"id": quiz_id}), "delete quiz")
        return result.deleted_count > 0

    # ----------------------------------------------------------------- sessions

    async def find_session(self, session_id: str) -> Optional[Dict]:
        return await self._call(
            self.db.sessions.find_one({"id": session_id}, NO_ID), "find session"
        )

    async def find_active_session(self, quiz_id: str, owner_id: str) -> Optional[Dict]:
        return await self._call(
            self.db.sessions.find_one(
                {"quizId": quiz_id, "userId": owner_id, "isActive": True}, NO_ID
            ),
            "find active session",
        )

    async def find_active_by_code(self, code: str) -> Optional[Dict]:
        return await self._call(
            self.db.sessions.find_one({"code": code, "isActive": True}, NO_ID),
            "find session by code",
        )

    async def code_exists(self, code: str) -> bool:
        existing = await self._call(
            self.db.sessions.find_one({"code": code}, {"_id": 1}), "check code"
        )
        return existing is not None

    async def insert_session(self, doc: Dict):
        await self._call(self.db.sessions.insert_one(dict(doc)), "insert session")

    async def deactivate_session(self, session_id: str, closed_at: str) -> bool:
        """Flip isActive to False. Returns False if it was already closed."""
        result = await self._call(
            self.db.sessions.update_one(
                {"id": session_id, "isActive": True},
                {
                    "$set": {"isActive": False, "closedAt": closed_at, "updatedAt": closed_at},
                    "$inc": {"version": 1},
                },
            ),
            "close session",
        )
        return result.modified_count > 0

    async def find_closed_sessions(self, quiz_id: str) -> List[Dict]:
        cursor = self.db.sessions.find(
            {"quizId": quiz_id, "isActive": False},
            {"_id": 0, "id": 1, "quizId": 1, "createdAt": 1, "closedAt": 1, "updatedAt": 1, "competitors": 1},
        ).sort("createdAt", -1)
        return await self._call(cursor.to_list(self.max_items), "find closed sessions")

    async def save_competitors(
        self, session_id: str, competitors: List[Dict], version: int, updated_at: str
    ) -> bool:
        """Write the competitor list back if nobody else wrote since `version` was read."""
        result = await self._call(
            self.db.sessions.update_one(
                {"id": session_id, "version": version},
                {
                    "$set": {"competitors": competitors, "updatedAt": updated_at},
                    "$inc": {"version": 1},
                },
            ),
            "save competitors",
        )
        return result.matched_count > 0

    async def delete_sessions_for_quiz(self, quiz_id: str) -> List[str]:
        cursor = self.db.sessions.find({"quizId": quiz_id}, {"_id": 0, "id": 1})
        sessions = await self._call(cursor.to_list(self.max_items), "find quiz sessions")
        await self._call(self.db.sessions.delete_many({"quizId": quiz_id}), "delete sessions")
        return [s["id"] for s in sessions]

    # -------------------------------------------------------------------- users

    async def find_users(self, user_ids: List[str]) -> Dict[str, Dict]:
        if not user_ids:
            return {}
        cursor = self.db.users.find(
            {"id": {"$in": list(user_ids)}},
            {"_id": 0, "id": 1, "firstname": 1, "lastname": 1},
        )
        users = await self._call(cursor.to_list(self.max_items), "find users")
        return {u["id"]: u for u in users}
