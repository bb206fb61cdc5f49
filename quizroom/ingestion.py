"""Answer ingestion: competitors joining, answering and finishing.

Every mutation of a session's competitor list runs under that session's
lock and is written back with a version guard, so concurrent answers for the
same session are applied one after another and never overwrite each other.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple, Union

from quizroom.catalog import now_iso
from quizroom.errors import Conflict, NotFound, ValidationFailure
from quizroom.models import Answer, AnswerEvent, Competitor

logger = logging.getLogger(__name__)


def join_answer(value: Union[str, List[str]]) -> str:
    """Collapse a multi-select submission into its stored comma-joined form."""
    if value is None:
        raise ValidationFailure("Answer is missing")
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def upsert_answer(answers: List[Dict], question_id: str, value: str) -> List[Dict]:
    """Replace the answer for question_id in place, or append it."""
    entry = Answer(questionId=question_id, answer=value).model_dump()
    for idx, existing in enumerate(answers):
        if existing["questionId"] == question_id:
            answers[idx] = entry
            return answers
    answers.append(entry)
    return answers


def find_competitor(session: Dict, user_id: str) -> Optional[Dict]:
    for competitor in session.get("competitors", []):
        if competitor["userId"] == user_id:
            return competitor
    return None


def public_quiz(quiz: Dict) -> Dict:
    """Quiz projection handed to competitors: no correct answers."""
    return {
        "id": quiz["id"],
        "title": quiz["title"],
        "description": quiz.get("description", ""),
        "timeLimit": quiz.get("timeLimit"),
        "questions": [
            {k: v for k, v in q.items() if k != "correctAnswer"}
            for q in quiz.get("questions", [])
        ],
    }


class AnswerIngestion:
    def __init__(self, store, catalog, locks):
        self.store = store
        self.catalog = catalog
        self.locks = locks

    async def _mutate(self, session_id: str, mutate: Callable[[Dict], Tuple[bool, object]]):
        """Load, mutate and persist one session under its lock.

        `mutate` returns (changed, result); nothing is written when unchanged.
        """
        async with self.locks.for_session(session_id):
            session = await self.store.find_session(session_id)
            if not session:
                logger.error(f"Session {session_id} not found")
                raise NotFound("Session not found", "Session")

            changed, result = mutate(session)
            if changed:
                saved = await self.store.save_competitors(
                    session_id, session["competitors"], session.get("version", 0), now_iso()
                )
                if not saved:
                    logger.error(f"Session {session_id} was modified concurrently")
                    raise Conflict("Session was modified concurrently", "Session")
            return result

    async def record_answer(self, event: AnswerEvent) -> bool:
        """Upsert one answer into the competitor's list. Returns False if dropped."""

        def apply(session: Dict):
            if not session.get("isActive"):
                logger.warning(f"Answer for closed session {event.sessionId} dropped")
                return False, False
            competitor = find_competitor(session, event.userId)
            if competitor is None:
                logger.warning(
                    f"Answer from {event.userId} dropped: not a competitor of {event.sessionId}"
                )
                return False, False
            if competitor.get("finished"):
                logger.warning(f"Answer from {event.userId} dropped: already finished")
                return False, False
            upsert_answer(competitor.setdefault("answers", []), event.questionId, event.answer)
            return True, True

        accepted = await self._mutate(event.sessionId, apply)
        if accepted:
            logger.info(f"✓ Answer: {event.userId} Q{event.questionId} in {event.sessionId}")
        return accepted

    async def join_or_resume(self, session_id: str, user_id: str) -> Dict:
        """Create or fetch the caller's competitor record and the quiz to answer.

        The payload never contains correct answers or other competitors.
        """

        def apply(session: Dict):
            if not session.get("isActive"):
                logger.error(f"Quiz session {session_id} is not active")
                raise NotFound("Quiz session with this id does not exist", "Quiz")
            competitor = find_competitor(session, user_id)
            if competitor is not None:
                if competitor.get("finished"):
                    logger.error(f"User {user_id} has already finished session {session_id}")
                    raise Conflict("You have already finished this quiz", "Quiz")
                return False, (session, competitor)

            competitor = Competitor(userId=user_id, startedAt=now_iso()).model_dump()
            session.setdefault("competitors", []).append(competitor)
            return True, (session, competitor)

        session, competitor = await self._mutate(session_id, apply)
        quiz = await self.catalog.get_quiz_with_cache(session["quizId"])

        logger.info(f"✓ Competitor {user_id} in session {session_id}")
        return {
            "id": session["id"],
            "code": session["code"],
            "quizId": session["quizId"],
            "isActive": session["isActive"],
            "createdAt": session["createdAt"],
            "quiz": public_quiz(quiz),
            "competitor": competitor,
        }

    async def finish_session(self, session_id: str, user_id: str):
        def apply(session: Dict):
            competitor = find_competitor(session, user_id)
            if competitor is None:
                logger.error(f"User {user_id} is not a competitor of {session_id}")
                raise NotFound("Competitor not found in this session", "Session")
            if competitor.get("finished"):
                return False, None
            competitor["finished"] = True
            return True, None

        await self._mutate(session_id, apply)
        logger.info(f"✓ Competitor {user_id} finished session {session_id}")
