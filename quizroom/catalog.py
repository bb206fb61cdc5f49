import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List

from quizroom.errors import Forbidden, NotFound
from quizroom.models import Quiz, QuizCreate

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def question_docs(data: QuizCreate) -> List[Dict]:
    questions = []
    for q in data.questions:
        doc = q.model_dump()
        doc["id"] = doc.get("id") or str(uuid.uuid4())
        questions.append(doc)
    return questions


class QuizCatalog:
    """Owner-scoped CRUD over quiz definitions with read-through caching."""

    def __init__(self, store, cache, config):
        self.store = store
        self.cache = cache
        self.config = config

    async def get_quiz_with_cache(self, quiz_id: str) -> Dict:
        cache_key = f"Quiz-{quiz_id}"
        cached = await self.cache.load(cache_key)
        if cached is not None:
            return cached

        quiz = await self.store.find_quiz(quiz_id)
        if not quiz:
            logger.error(f"Quiz with this ID does not exist: {quiz_id}")
            raise NotFound("Quiz with this ID does not exist", "Quiz")
        await self.cache.store(cache_key, quiz, self.config.QUIZ_CACHE_TTL_SEC)
        return quiz

    async def get_owned(self, owner_id: str, quiz_id: str) -> Dict:
        quiz = await self.get_quiz_with_cache(quiz_id)
        if quiz["userId"] != owner_id:
            logger.error(f"User {owner_id} is not the owner of quiz {quiz_id}")
            raise Forbidden("You are not permitted to do this operation", "Quiz")
        return quiz

    async def create_quiz(self, owner_id: str, data: QuizCreate) -> Dict:
        ts = now_iso()
        quiz_doc = Quiz(
            id=str(uuid.uuid4()),
            userId=owner_id,
            title=data.title,
            description=data.description,
            timeLimit=data.timeLimit,
            questions=question_docs(data),
            createdAt=ts,
            updatedAt=ts,
        ).model_dump()
        await self.store.insert_quiz(quiz_doc)
        logger.info(f"✓ Quiz created: {quiz_doc['id']} - {data.title}")
        return quiz_doc

    async def list_quizzes(self, owner_id: str) -> List[Dict]:
        return await self.store.find_quizzes_by_owner(owner_id)

    async def update_quiz(self, owner_id: str, quiz_id: str, data: QuizCreate) -> Dict:
        await self.get_owned(owner_id, quiz_id)
        fields = {
            "title": data.title,
            "description": data.description,
            "timeLimit": data.timeLimit,
            "questions": question_docs(data),
            "updatedAt": now_iso(),
        }
        if not await self.store.update_quiz(quiz_id, fields):
            raise NotFound("Quiz with this ID does not exist", "Quiz")
        await self.cache.delete(f"Quiz-{quiz_id}")
        logger.info(f"✓ Quiz updated: {quiz_id}")
        return await self.get_quiz_with_cache(quiz_id)

    async def delete_quiz(self, owner_id: str, quiz_id: str):
        """Delete a quiz together with every session held against it."""
        await self.get_owned(owner_id, quiz_id)
        if not await self.store.delete_quiz(quiz_id):
            raise NotFound("Quiz with this ID does not exist", "Quiz")
        session_ids = await self.store.delete_sessions_for_quiz(quiz_id)

        keys = [f"Quiz-{quiz_id}"]
        for sid in session_ids:
            keys.extend([f"Quiz-Results-{sid}", f"Quiz-Analytics-{sid}"])
        await self.cache.delete(*keys)
        logger.info(f"✓ Quiz deleted: {quiz_id} ({len(session_ids)} sessions)")
