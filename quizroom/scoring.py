"""Per-competitor scoring for closed sessions.

Answers are matched case-insensitively against the canonical answer. A list
canonical answer is compared in its stored order against the comma-joined
submission, so ``["Paris", "Berlin"]`` matches ``"paris,berlin"`` but not
``"berlin,paris"``. A question without a canonical answer credits every
competitor who answered it.
"""

import logging
from typing import Dict, List, Optional, Union

from quizroom.errors import Forbidden, NotFound, SessionStillActive
from quizroom.models import CompetitorResult

logger = logging.getLogger(__name__)

CorrectAnswer = Optional[Union[str, List[str]]]


def normalize(text: Optional[str]) -> str:
    return (text or "").lower()


def canonical_text(correct: CorrectAnswer) -> Optional[str]:
    """Lower-cased canonical answer as it must appear in a submission, None if absent."""
    if correct is None:
        return None
    if isinstance(correct, list):
        return ",".join(correct).lower()
    return correct.lower()


def answer_matches(correct: CorrectAnswer, submitted: str) -> bool:
    expected = canonical_text(correct)
    if expected is None:
        return True
    return expected == normalize(submitted)


def question_points(question: Dict) -> int:
    # Legacy quizzes predate per-question weights
    return int(question.get("points") or 1)


def achievable_points(questions: List[Dict]) -> int:
    return sum(question_points(q) for q in questions)


def answers_by_question(competitor: Dict) -> Dict[str, str]:
    return {a["questionId"]: a["answer"] for a in competitor.get("answers", [])}


def earned_points(questions: List[Dict], competitor: Dict) -> int:
    submitted = answers_by_question(competitor)
    earned = 0
    for q in questions:
        if q["id"] not in submitted:
            continue
        if answer_matches(q.get("correctAnswer"), submitted[q["id"]]):
            earned += question_points(q)
    return earned


def percent_ceil(numerator: int, denominator: int) -> int:
    """ceil(numerator / denominator * 100) in integer arithmetic; 0 for an empty denominator."""
    if denominator <= 0:
        return 0
    return -(-numerator * 100 // denominator)


def normalized_score(questions: List[Dict], competitor: Dict) -> int:
    return percent_ceil(earned_points(questions, competitor), achievable_points(questions))


def display_name(user: Optional[Dict]) -> str:
    if not user:
        return "Unknown"
    return f"{user.get('firstname', '')} {user.get('lastname', '')}".strip() or "Unknown"


def competitor_result(questions: List[Dict], competitor: Dict, user: Optional[Dict]) -> Dict:
    submitted = answers_by_question(competitor)
    user_answers = [
        {"questionText": q["questionText"], "answer": submitted[q["id"]]}
        for q in questions
        if q["id"] in submitted
    ]
    return CompetitorResult(
        name=display_name(user),
        score=normalized_score(questions, competitor),
        userAnswers=user_answers,
    ).model_dump()


class ScoringEngine:
    def __init__(self, store, cache, config):
        self.store = store
        self.cache = cache
        self.config = config

    async def _load_closed(self, session: Dict) -> Dict:
        if session.get("isActive", True):
            logger.error(f"Session {session['id']} is still active, refusing to score")
            raise SessionStillActive("Session is still active")

        quiz = await self.store.find_quiz(session["quizId"])
        if not quiz:
            logger.error(f"Quiz {session['quizId']} for session {session['id']} not found")
            raise NotFound("Quiz with this id does not exist", "Quiz")
        return quiz

    async def session_results(self, quiz_id: str, session_id: str, owner_id: str) -> List[Dict]:
        """Scores for every competitor of a closed session, owner only."""
        session = await self.store.find_session(session_id)
        if not session or session.get("quizId") != quiz_id:
            logger.error(f"Session {session_id} for quiz {quiz_id} not found")
            raise NotFound(f"Quiz session with id {session_id} not found", "Session")
        if session["userId"] != owner_id:
            raise Forbidden("You are not permitted to do this operation", "Session")

        cache_key = f"Quiz-Results-{session_id}"
        cached = await self.cache.load(cache_key)
        if cached is not None:
            return cached

        quiz = await self._load_closed(session)
        questions = quiz.get("questions", [])
        competitors = session.get("competitors", [])
        users = await self.store.find_users([c["userId"] for c in competitors])

        results = [
            competitor_result(questions, c, users.get(c["userId"])) for c in competitors
        ]

        await self.cache.store(cache_key, results, self.config.RESULTS_CACHE_TTL_SEC)
        logger.info(f"✓ Scored session {session_id}: {len(results)} competitors")
        return results

    async def single_result(self, session_id: str, user_id: str, caller_id: str) -> int:
        """Normalized score of one competitor, readable by that competitor or the owner."""
        session = await self.store.find_session(session_id)
        if not session:
            logger.error(f"Session {session_id} not found")
            raise NotFound("Session with this id not found", "Session")
        if caller_id not in (user_id, session["userId"]):
            raise Forbidden("You are not permitted to do this operation", "Session")

        cache_key = f"Quiz-Result-{session_id}-{user_id}"
        cached = await self.cache.load(cache_key)
        if cached is not None:
            return cached

        competitor = next(
            (c for c in session.get("competitors", []) if c["userId"] == user_id), None
        )
        if competitor is None:
            logger.error(f"User {user_id} did not take part in session {session_id}")
            raise NotFound("Competitor not found in this session", "Session")

        quiz = await self._load_closed(session)
        score = normalized_score(quiz.get("questions", []), competitor)

        await self.cache.store(cache_key, score, self.config.COMPETITOR_RESULT_CACHE_TTL_SEC)
        return score
