import pytest

from conftest import ALICE, BOB, MALLORY, OWNER, competitor
from quizroom.analytics import cohort_scores, option_distribution
from quizroom.errors import Forbidden, NotFound, SessionStillActive

CAPITAL = {
    "id": "cap",
    "questionText": "Capital of France?",
    "options": ["Paris", "Berlin", "Rome"],
    "correctAnswer": "Paris",
}


def test_option_distribution_counts_every_selection():
    competitors = [
        competitor("a", {"cap": "paris"}),
        competitor("b", {"cap": "Paris"}),
        competitor("c", {"cap": "Berlin"}),
        competitor("d", {}),
    ]

    stats = option_distribution(CAPITAL, competitors)

    assert stats["questionText"] == "Capital of France?"
    assert stats["options"] == [
        {"optionText": "paris", "percentage": 50, "isCorrect": True},
        {"optionText": "berlin", "percentage": 25, "isCorrect": False},
        {"optionText": "rome", "percentage": 0, "isCorrect": False},
    ]


def test_option_percentages_never_exceed_one_hundred_in_total():
    question = {
        "id": "dup",
        "questionText": "Pick one",
        "options": ["A", "a", None, "B"],
        "correctAnswer": "A",
    }
    competitors = [competitor("x", {"dup": "A"}), competitor("y", {"dup": "b"})]

    options = option_distribution(question, competitors)["options"]

    assert [o["optionText"] for o in options] == ["a", "a", "b"]
    assert [o["percentage"] for o in options] == [50, 0, 50]
    assert sum(o["percentage"] for o in options) <= 100


def test_option_distribution_without_competitors():
    options = option_distribution(CAPITAL, [])["options"]
    assert all(o["percentage"] == 0 for o in options)


def test_cohort_scores():
    questions = [CAPITAL, {"id": "two", "questionText": "1+1", "options": [], "correctAnswer": "2"}]
    competitors = [
        competitor("a", {"cap": "Paris", "two": "2"}),
        competitor("b", {"cap": "Rome", "two": "2"}),
    ]
    assert cohort_scores(questions, competitors) == {"averageScore": 75, "highestScore": 100}
    assert cohort_scores(questions, []) == {"averageScore": 0, "highestScore": 0}


@pytest.mark.asyncio
async def test_analyze_closed_session(services, quiz, seed_session):
    session = await seed_session(
        [
            competitor(ALICE, {"q-capital": "Paris", "q-primes": "2,3"}),
            competitor(BOB, {"q-capital": "Rome"}),
        ]
    )

    analytics = await services.analytics.analyze(quiz["id"], session["id"], OWNER)

    assert analytics["quizTitle"] == "Capitals and primes"
    assert analytics["quizDescription"] == "Two quick questions"
    assert analytics["averageScore"] == 50
    assert analytics["highestScore"] == 100
    capital = analytics["questions"][0]
    assert capital["options"][0] == {"optionText": "paris", "percentage": 50, "isCorrect": True}
    assert capital["options"][2] == {"optionText": "rome", "percentage": 50, "isCorrect": False}
    primes = analytics["questions"][1]
    assert [o["isCorrect"] for o in primes["options"]] == [True, True, False]


@pytest.mark.asyncio
async def test_analyze_requires_closed_owned_session(services, quiz, seed_session):
    active = await seed_session([], active=True)
    closed = await seed_session([])

    with pytest.raises(SessionStillActive):
        await services.analytics.analyze(quiz["id"], active["id"], OWNER)
    with pytest.raises(Forbidden):
        await services.analytics.analyze(quiz["id"], closed["id"], MALLORY)
    with pytest.raises(NotFound):
        await services.analytics.analyze("missing-quiz", closed["id"], OWNER)
    with pytest.raises(NotFound):
        await services.analytics.analyze(quiz["id"], "missing-session", OWNER)


@pytest.mark.asyncio
async def test_analytics_are_memoized(services, quiz, seed_session):
    session = await seed_session([competitor(ALICE, {"q-capital": "Paris"})])
    first = await services.analytics.analyze(quiz["id"], session["id"], OWNER)

    assert await services.cache.load(f"Quiz-Analytics-{session['id']}") == first
