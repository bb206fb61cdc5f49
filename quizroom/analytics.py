import logging
from typing import Dict, List

from quizroom.errors import Forbidden, NotFound, SessionStillActive
from quizroom.models import SessionAnalytics
from quizroom.scoring import (
    achievable_points,
    answers_by_question,
    earned_points,
    normalize,
    percent_ceil,
)

logger = logging.getLogger(__name__)


def correct_option_texts(correct) -> set:
    if correct is None:
        return set()
    if isinstance(correct, list):
        return {normalize(c) for c in correct}
    return {normalize(correct)}


def option_distribution(question: Dict, competitors: List[Dict]) -> Dict:
    """Selection-frequency histogram for one question.

    Counts how often each option was submitted, whether or not it was the
    right one. Percentages are of all competitors in the session.
    """
    correct = correct_option_texts(question.get("correctAnswer"))
    options = []
    for option in question.get("options", []):
        if option is None:
            continue
        text = normalize(option)
        options.append({"optionText": text, "hits": 0, "isCorrect": text in correct})

    for competitor in competitors:
        submitted = answers_by_question(competitor).get(question["id"])
        if submitted is None:
            continue
        text = normalize(submitted)
        # First match only: duplicate option texts must not double count
        for option in options:
            if option["optionText"] == text:
                option["hits"] += 1
                break

    total = len(competitors)
    return {
        "questionText": question["questionText"],
        "options": [
            {
                "optionText": o["optionText"],
                "percentage": (o["hits"] * 100 // total) if total else 0,
                "isCorrect": o["isCorrect"],
            }
            for o in options
        ],
    }


def cohort_scores(questions: List[Dict], competitors: List[Dict]) -> Dict[str, int]:
    if not competitors:
        return {"averageScore": 0, "highestScore": 0}
    total = achievable_points(questions)
    earned = [earned_points(questions, c) for c in competitors]
    # mean(e / total) == sum(e) / (n * total)
    return {
        "averageScore": percent_ceil(sum(earned), total * len(earned)),
        "highestScore": percent_ceil(max(earned), total),
    }


class AnalyticsEngine:
    def __init__(self, store, cache, config):
        self.store = store
        self.cache = cache
        self.config = config

    async def analyze(self, quiz_id: str, session_id: str, owner_id: str) -> Dict:
        quiz = await self.store.find_quiz(quiz_id)
        if not quiz:
            logger.error(f"Quiz with this id does not exist: {quiz_id}")
            raise NotFound("Quiz with this id does not exist", "Quiz")
        if quiz["userId"] != owner_id:
            raise Forbidden("You are not permitted to do this operation", "Quiz")

        session = await self.store.find_session(session_id)
        if not session or session.get("quizId") != quiz_id:
            logger.error(f"Session with this id does not exist: {session_id}")
            raise NotFound("Session with this id does not exist", "Session")
        if session["userId"] != owner_id:
            raise Forbidden("You are not permitted to do this operation", "Session")

        cache_key = f"Quiz-Analytics-{session_id}"
        cached = await self.cache.load(cache_key)
        if cached is not None:
            return cached

        if session.get("isActive", True):
            raise SessionStillActive("Session is still active")

        questions = quiz.get("questions", [])
        competitors = session.get("competitors", [])

        result = SessionAnalytics(
            quizTitle=quiz["title"],
            quizDescription=quiz.get("description", ""),
            **cohort_scores(questions, competitors),
            questions=[option_distribution(q, competitors) for q in questions],
        ).model_dump()

        await self.cache.store(cache_key, result, self.config.RESULTS_CACHE_TTL_SEC)
        logger.info(f"✓ Analytics computed for session {session_id}")
        return result
