import pytest

from conftest import ALICE, BOB, MALLORY, OWNER, competitor
from quizroom.errors import Forbidden, NotFound, SessionStillActive
from quizroom.scoring import (
    answer_matches,
    canonical_text,
    competitor_result,
    display_name,
    normalized_score,
    percent_ceil,
)


def q(qid, correct, points=None):
    question = {"id": qid, "questionText": f"Question {qid}", "correctAnswer": correct}
    if points is not None:
        question["points"] = points
    return question


# ============================================================================
# PURE SCORING
# ============================================================================


def test_answer_matching_is_case_insensitive():
    assert answer_matches("Paris", "pARIS")
    assert not answer_matches("Paris", "Berlin")


def test_multi_select_compares_in_stored_order():
    assert canonical_text(["Paris", "Berlin"]) == "paris,berlin"
    assert answer_matches(["Paris", "Berlin"], "paris,berlin")
    assert not answer_matches(["Paris", "Berlin"], "berlin,paris")


def test_question_without_canonical_answer_credits_any_answer():
    questions = [q("a", None), q("b", "x")]
    assert normalized_score(questions, competitor(ALICE, {"a": "anything"})) == 50
    assert normalized_score(questions, competitor(ALICE, {})) == 0


def test_two_competitors_full_and_half_marks():
    questions = [q("q1", "Paris"), q("q2", ["2", "3"])]
    alice = competitor(ALICE, {"q1": "paris", "q2": "2,3"})
    bob = competitor(BOB, {"q1": "Paris", "q2": "3,2"})
    assert normalized_score(questions, alice) == 100
    assert normalized_score(questions, bob) == 50


def test_zero_answers_scores_zero():
    questions = [q("q1", "Paris"), q("q2", "Rome")]
    assert normalized_score(questions, competitor(ALICE, {})) == 0


def test_no_float_drift_on_seven_of_ten():
    questions = [q(str(i), "yes") for i in range(10)]
    answers = {str(i): "yes" for i in range(7)}
    assert normalized_score(questions, competitor(ALICE, answers)) == 70


def test_percent_rounds_up():
    assert percent_ceil(1, 3) == 34
    assert percent_ceil(2, 3) == 67
    assert percent_ceil(0, 5) == 0
    assert percent_ceil(3, 0) == 0


def test_points_weight_the_score():
    questions = [q("heavy", "a", points=3), q("light", "b")]
    assert normalized_score(questions, competitor(ALICE, {"light": "b"})) == 25
    assert normalized_score(questions, competitor(ALICE, {"heavy": "A"})) == 75


def test_answers_for_unknown_questions_are_ignored():
    questions = [q("q1", "Paris")]
    alice = competitor(ALICE, {"q1": "paris", "gone": "whatever"})
    assert normalized_score(questions, alice) == 100
    result = competitor_result(questions, alice, None)
    assert result["name"] == "Unknown"
    assert result["userAnswers"] == [{"questionText": "Question q1", "answer": "paris"}]


def test_display_name():
    assert display_name({"firstname": "Alice", "lastname": "Adams"}) == "Alice Adams"
    assert display_name({}) == "Unknown"
    assert display_name(None) == "Unknown"


# ============================================================================
# SCORING ENGINE
# ============================================================================


@pytest.mark.asyncio
async def test_session_results(services, quiz, seed_session):
    session = await seed_session(
        [
            competitor(ALICE, {"q-capital": "Paris", "q-primes": "2,3"}),
            competitor(BOB, {"q-capital": "paris", "q-primes": "3,2"}),
        ]
    )

    results = await services.scoring.session_results(quiz["id"], session["id"], OWNER)

    by_name = {r["name"]: r for r in results}
    assert by_name["Alice Adams"]["score"] == 100
    assert by_name["Bob Brown"]["score"] == 50
    assert by_name["Bob Brown"]["userAnswers"][1] == {
        "questionText": "Which are prime?",
        "answer": "3,2",
    }


@pytest.mark.asyncio
async def test_results_refused_while_session_active(services, quiz, seed_session):
    session = await seed_session([competitor(ALICE, {"q-capital": "Paris"})], active=True)

    with pytest.raises(SessionStillActive):
        await services.scoring.session_results(quiz["id"], session["id"], OWNER)


@pytest.mark.asyncio
async def test_results_are_owner_only(services, quiz, seed_session):
    session = await seed_session([])

    with pytest.raises(Forbidden):
        await services.scoring.session_results(quiz["id"], session["id"], MALLORY)
    with pytest.raises(NotFound):
        await services.scoring.session_results("other-quiz", session["id"], OWNER)


@pytest.mark.asyncio
async def test_results_are_memoized(services, quiz, seed_session):
    session = await seed_session([competitor(ALICE, {"q-capital": "Paris"})])
    first = await services.scoring.session_results(quiz["id"], session["id"], OWNER)

    await services.store.db.users.update_one({"id": ALICE}, {"$set": {"firstname": "Alicia"}})
    second = await services.scoring.session_results(quiz["id"], session["id"], OWNER)

    assert second == first
    assert await services.cache.exists(f"Quiz-Results-{session['id']}")


@pytest.mark.asyncio
async def test_single_result_for_competitor_and_owner(services, quiz, seed_session):
    session = await seed_session([competitor(ALICE, {"q-capital": "Paris"})])

    assert await services.scoring.single_result(session["id"], ALICE, ALICE) == 50
    assert await services.scoring.single_result(session["id"], ALICE, OWNER) == 50
    with pytest.raises(Forbidden):
        await services.scoring.single_result(session["id"], ALICE, BOB)
    with pytest.raises(NotFound):
        await services.scoring.single_result(session["id"], BOB, BOB)


@pytest.mark.asyncio
async def test_cached_zero_score_is_a_hit(services, quiz, seed_session):
    session = await seed_session([competitor(ALICE, {})])

    assert await services.scoring.single_result(session["id"], ALICE, ALICE) == 0
    await services.store.db.sessions.delete_one({"id": session["id"]})
    await services.store.insert_session({**session, "competitors": []})

    assert await services.scoring.single_result(session["id"], ALICE, ALICE) == 0
