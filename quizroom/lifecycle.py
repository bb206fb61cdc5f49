"""Session lifecycle: start, close, join by code, listing and live monitoring.

A session is created active and can only ever move to closed.
"""

import asyncio
import logging
import random
import uuid
from typing import Dict, List

from pymongo.errors import DuplicateKeyError

from quizroom.catalog import now_iso
from quizroom.errors import Conflict, Forbidden, NotFound, Unavailable
from quizroom.models import QuizSession, SessionSummary

logger = logging.getLogger(__name__)

CODE_MIN = 100000
CODE_MAX = 999999


def generate_code(rng=random) -> str:
    return str(rng.randint(CODE_MIN, CODE_MAX))


class SessionLifecycle:
    def __init__(self, store, catalog, locks, config, rng: random.Random = None):
        self.store = store
        self.catalog = catalog
        self.locks = locks
        self.config = config
        self.rng = rng or random.Random()
        self._create_lock = asyncio.Lock()

    async def load_owned_session(self, quiz_id: str, session_id: str, owner_id: str) -> Dict:
        session = await self.store.find_session(session_id)
        if not session or session.get("quizId") != quiz_id:
            logger.error(f"Session {session_id} for quiz {quiz_id} not found")
            raise NotFound(f"Quiz session with id {session_id} not found", "Session")
        if session["userId"] != owner_id:
            logger.error(f"User {owner_id} does not own session {session_id}")
            raise Forbidden("You are not permitted to do this operation", "Session")
        return session

    async def start_session(self, quiz_id: str, owner_id: str) -> Dict:
        """Open a session for the quiz, or return the one already open."""
        await self.catalog.get_owned(owner_id, quiz_id)

        async with self._create_lock:
            existing = await self.store.find_active_session(quiz_id, owner_id)
            if existing:
                return existing

            for _ in range(self.config.MAX_CODE_ATTEMPTS):
                code = generate_code(self.rng)
                if await self.store.code_exists(code):
                    logger.warning(f"Code {code} is already in use")
                    continue

                ts = now_iso()
                session_doc = QuizSession(
                    id=str(uuid.uuid4()),
                    userId=owner_id,
                    quizId=quiz_id,
                    code=code,
                    createdAt=ts,
                    updatedAt=ts,
                ).model_dump()
                session_doc["version"] = 0
                try:
                    await self.store.insert_session(session_doc)
                except DuplicateKeyError:
                    # Another process claimed the code between check and insert
                    logger.warning(f"Code {code} taken concurrently, retrying")
                    continue

                logger.info(f"✓ Session started: {session_doc['id']} code={code} quiz={quiz_id}")
                return session_doc

        logger.error(f"Failed to generate unique code for quiz {quiz_id}")
        raise Unavailable("Failed to generate unique code", "Session")

    async def close_session(self, quiz_id: str, session_id: str, owner_id: str):
        await self.load_owned_session(quiz_id, session_id, owner_id)

        async with self.locks.for_session(session_id):
            closed = await self.store.deactivate_session(session_id, now_iso())
        if closed:
            logger.info(f"✓ Session closed: {session_id}")
        else:
            logger.info(f"Session {session_id} was already closed")

    async def join_by_code(self, user_id: str, code: str) -> str:
        session = await self.store.find_active_by_code(code)
        if not session:
            logger.error(f"Quiz with code {code} not found")
            raise NotFound(f"Quiz with code {code} not found", "Quiz")

        for competitor in session.get("competitors", []):
            if competitor["userId"] == user_id and competitor.get("finished"):
                logger.error(f"User {user_id} has already finished session {session['id']}")
                raise Conflict("You have already finished this quiz", "Quiz")
        return session["id"]

    async def list_sessions(self, quiz_id: str, owner_id: str) -> List[Dict]:
        """Summaries of every closed session of the quiz."""
        await self.catalog.get_owned(owner_id, quiz_id)
        sessions = await self.store.find_closed_sessions(quiz_id)
        return [
            SessionSummary(
                id=s["id"],
                quizId=s["quizId"],
                startedAt=s["createdAt"],
                endedAt=s.get("closedAt") or s.get("updatedAt"),
                amountOfParticipants=len(s.get("competitors", [])),
            ).model_dump()
            for s in sessions
        ]

    async def session_overview(self, quiz_id: str, session_id: str, owner_id: str) -> List[Dict]:
        """Live view of every competitor's progress, for the owner."""
        session = await self.load_owned_session(quiz_id, session_id, owner_id)
        quiz = await self.store.find_quiz(quiz_id)
        if not quiz:
            logger.error(f"No quiz with id {quiz_id}")
            raise NotFound("No quiz with this id", "Quiz")

        questions = {q["id"]: q for q in quiz.get("questions", [])}
        competitors = session.get("competitors", [])
        users = await self.store.find_users([c["userId"] for c in competitors])

        overview = []
        for competitor in competitors:
            user = users.get(competitor["userId"], {})
            answers = []
            for answer in competitor.get("answers", []):
                question = questions.get(answer["questionId"])
                if question is None:
                    continue
                answers.append(
                    {
                        "userId": competitor["userId"],
                        "questionId": question["id"],
                        "question": question["questionText"],
                        "status": "success",
                        "answer": answer["answer"],
                        "timestamp": session.get("updatedAt"),
                    }
                )
            overview.append(
                {
                    "userId": competitor["userId"],
                    "firstName": user.get("firstname", ""),
                    "lastName": user.get("lastname", ""),
                    "finished": competitor.get("finished", False),
                    "answers": answers,
                }
            )
        return overview
