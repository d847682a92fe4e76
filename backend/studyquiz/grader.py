"""
Deterministic rubric for quiz submissions.

MCQ answers must match the canonical option exactly. Short answers are
compared on content tokens: both sides are case-folded, stripped of
punctuation, tokenized and filtered against ``STOPWORDS``; the answer is
correct when enough of the canonical tokens appear in the submission.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Set

RUBRIC_VERSION = "v1.0"

# Share of canonical content tokens a short answer must contain.
SHORT_ANSWER_OVERLAP_RATIO = 0.5

LETTER_CUTOFFS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))

STOPWORDS = frozenset(
    """
    the a an and or but is are was were be been being have has had do does
    did will would could should may might can what which who when where why
    how of to in for on with as by from at this that these those
    """.split()
)

_PUNCTUATION = re.compile(r"[^\w\s]|_", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    text = _PUNCTUATION.sub(" ", text.casefold())
    return _WHITESPACE.sub(" ", text).strip()


def content_tokens(text: str, min_length: int = 1) -> Set[str]:
    return {
        token
        for token in normalize_text(text).split(" ")
        if token and len(token) >= min_length and token not in STOPWORDS
    }


def required_overlap(canonical_count: int) -> int:
    return max(1, math.ceil(canonical_count * SHORT_ANSWER_OVERLAP_RATIO))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def letter_grade(percent: int) -> str:
    for cutoff, letter in LETTER_CUTOFFS:
        if percent >= cutoff:
            return letter
    return "F"


def summary_for(percent: int) -> str:
    if percent >= 85:
        return "Great work: strong grasp overall. Skim the few missed concepts."
    if percent >= 70:
        return "Solid base. Focus revisions on the questions you missed."
    return "You're close. Review fundamentals and key terms, then retake a focused quiz."


@dataclass
class ShortAnswerVerdict:
    correct: bool
    hits: int
    total: int
    missing: List[str] = field(default_factory=list)


def grade_mcq(submitted: str, answer: str) -> bool:
    return submitted == answer


def grade_short(submitted: str, answer: str) -> ShortAnswerVerdict:
    canonical = content_tokens(answer)
    if not canonical:
        # Answers made only of stopwords fall back to normalized equality.
        expected = normalize_text(answer)
        correct = bool(expected) and normalize_text(submitted) == expected
        return ShortAnswerVerdict(correct=correct, hits=int(correct), total=1)

    submission = content_tokens(submitted)
    hits = canonical & submission
    return ShortAnswerVerdict(
        correct=len(hits) >= required_overlap(len(canonical)),
        hits=len(hits),
        total=len(canonical),
        missing=sorted(canonical - submission),
    )


@dataclass
class GradeResult:
    percent: int
    correct_count: int
    total: int
    letter: str
    summary: str
    breakdown: List[Dict[str, Any]]


def _mcq_item(question: Mapping[str, Any], submitted: str) -> Dict[str, Any]:
    answer = str(question.get("answer", ""))
    correct = grade_mcq(submitted, answer)
    return {
        "id": str(question["id"]),
        "type": "mcq",
        "prompt": question.get("prompt", ""),
        "user_answer": submitted,
        "correct": correct,
        "correct_answer": answer,
        "feedback": "Correct: matches the key."
        if correct
        else "Incorrect. Review why the correct option fits better.",
        "improvement": None
        if correct
        else "Re-read the prompt and eliminate distractors before choosing.",
    }


def _short_item(question: Mapping[str, Any], submitted: str) -> Dict[str, Any]:
    answer = str(question.get("answer", ""))
    verdict = grade_short(submitted, answer)
    if verdict.correct:
        improvement = None
    elif verdict.missing:
        improvement = "Mention the missing key terms: " + ", ".join(verdict.missing[:3]) + "."
    else:
        improvement = "State the key idea from the reference answer directly."
    return {
        "id": str(question["id"]),
        "type": "short",
        "prompt": question.get("prompt", ""),
        "user_answer": submitted,
        "correct": verdict.correct,
        "correct_answer": answer,
        "feedback": f"You covered {verdict.hits}/{verdict.total} key concepts.",
        "improvement": improvement,
        "concepts_hit": verdict.hits,
        "concepts_total": verdict.total,
    }


def grade_submission(
    questions: Iterable[Mapping[str, Any]], responses: Mapping[str, str]
) -> GradeResult:
    breakdown: List[Dict[str, Any]] = []
    for question in questions:
        submitted = str(responses.get(str(question.get("id")), "") or "")
        if question.get("type") == "mcq":
            breakdown.append(_mcq_item(question, submitted))
        else:
            breakdown.append(_short_item(question, submitted))

    total = len(breakdown)
    correct_count = sum(1 for item in breakdown if item["correct"])
    percent = round_half_up(100 * correct_count / total) if total else 0
    percent = max(0, min(100, percent))
    return GradeResult(
        percent=percent,
        correct_count=correct_count,
        total=total,
        letter=letter_grade(percent),
        summary=summary_for(percent),
        breakdown=breakdown,
    )


def question_type_breakdown(questions: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = {"mcq": 0, "short": 0, "long": 0}
    for question in questions:
        kind = question.get("type")
        if kind in counts:
            counts[kind] += 1
    return counts
