# Deterministic rubric tests.
import pytest

from studyquiz.grader import (
    grade_mcq,
    grade_short,
    grade_submission,
    letter_grade,
    normalize_text,
    required_overlap,
    round_half_up,
)


def mcq(question_id, answer="Paris"):
    return {
        "id": question_id,
        "type": "mcq",
        "prompt": "What is the capital of France?",
        "options": ["Paris", "Lyon", "Nice", "Lille"],
        "answer": answer,
    }


# Two of four MCQs right is 50% and an F.
def test_half_correct_mcq_quiz_scores_fifty_f():
    questions = [mcq(f"q{idx}") for idx in range(1, 5)]
    responses = {"q1": "Paris", "q2": "Paris", "q3": "Lyon", "q4": "Nice"}

    result = grade_submission(questions, responses)

    assert result.percent == 50
    assert result.letter == "F"
    assert result.correct_count == 2
    assert result.total == 4
    assert [item["correct"] for item in result.breakdown] == [True, True, False, False]


def test_mcq_match_is_case_sensitive():
    assert grade_mcq("Paris", "Paris") is True
    assert grade_mcq("paris", "Paris") is False
    assert grade_mcq(" Paris", "Paris") is False


def test_short_answer_needs_half_the_key_terms():
    answer = "The mitochondria produces energy"

    hit = grade_short("Mitochondria make energy!", answer)
    assert hit.correct is True
    assert (hit.hits, hit.total) == (2, 3)

    miss = grade_short("It is the powerhouse", answer)
    assert miss.correct is False
    assert miss.missing == ["energy", "mitochondria", "produces"]


# Answers made only of stopwords compare normalized text instead.
def test_stopword_only_answer_uses_normalized_equality():
    assert grade_short("To be!", "to be").correct is True
    assert grade_short("or not", "to be").correct is False


def test_short_breakdown_item_reports_concepts():
    question = {"id": "s1", "type": "short", "prompt": "Name the gas.", "answer": "Carbon dioxide"}

    result = grade_submission([question], {"s1": "oxygen"})

    item = result.breakdown[0]
    assert item["correct"] is False
    assert item["concepts_hit"] == 0
    assert item["concepts_total"] == 2
    assert "carbon" in item["improvement"]
    assert item["correct_answer"] == "Carbon dioxide"


def test_missing_response_counts_as_wrong():
    result = grade_submission([mcq("q1")], {})

    assert result.percent == 0
    assert result.breakdown[0]["user_answer"] == ""
    assert result.summary.startswith("You're close")


@pytest.mark.parametrize(
    "count,expected",
    [(1, 1), (2, 1), (3, 2), (4, 2), (5, 3)],
)
def test_required_overlap(count, expected):
    assert required_overlap(count) == expected


def test_percent_rounds_half_up():
    assert round_half_up(12.5) == 13
    assert round_half_up(62.5) == 63
    assert round_half_up(33.3) == 33

    questions = [mcq(f"q{idx}") for idx in range(1, 9)]
    result = grade_submission(questions, {"q1": "Paris"})
    assert result.percent == 13


@pytest.mark.parametrize(
    "percent,letter",
    [(100, "A"), (90, "A"), (89, "B"), (80, "B"), (79, "C"), (70, "C"), (69, "D"), (60, "D"), (59, "F"), (0, "F")],
)
def test_letter_grade_cutoffs(percent, letter):
    assert letter_grade(percent) == letter


def test_normalize_text_strips_punctuation_and_whitespace():
    assert normalize_text("  Hello,   WORLD!\n(again)_ ") == "hello world again"
