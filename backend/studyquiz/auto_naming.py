# Heuristic quiz title and subject derived from notes content.
import re
from collections import Counter
from datetime import date
from typing import Dict, Optional, Tuple

TITLE_MAX_CHARS = 100

NAMING_STOPWORDS = frozenset(
    """
    the a an and or but is are was were be been being have has had do does did
    will would could should may might can what which who when where why how of
    to in for on with as by from at this that these those it its they them
    """.split()
)

SUBJECT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "Biology": ("biology", "cell", "organism", "evolution", "dna", "gene", "protein", "enzyme", "photosynthesis", "ecology"),
    "Chemistry": ("chemistry", "atom", "molecule", "element", "compound", "reaction", "bond", "acid", "base", "electron"),
    "Physics": ("physics", "force", "energy", "motion", "gravity", "quantum", "velocity", "acceleration", "momentum"),
    "Mathematics": ("math", "equation", "theorem", "proof", "calculus", "algebra", "geometry", "integral", "derivative", "matrix"),
    "Computer Science": ("computer", "algorithm", "data structure", "programming", "software", "code", "function", "class", "variable", "array"),
    "History": ("history", "war", "revolution", "empire", "civilization", "ancient", "medieval", "century", "dynasty"),
    "Economics": ("economics", "market", "supply", "demand", "trade", "inflation", "gdp", "fiscal", "monetary"),
    "Psychology": ("psychology", "behavior", "cognitive", "brain", "memory", "perception", "emotion", "consciousness"),
    "English": ("literature", "novel", "poetry", "grammar", "writing", "essay", "author", "shakespeare", "rhetoric"),
    "Philosophy": ("philosophy", "ethics", "logic", "metaphysics", "epistemology", "kant", "plato", "aristotle"),
}


def _normalize(text: str) -> str:
    text = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def _short_date(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{today.strftime('%b')} {today.day}"


def detect_subject(notes_text: str, class_name: Optional[str] = None) -> str:
    normalized = _normalize(notes_text)
    subject = "General"
    best = 0
    for candidate, keywords in SUBJECT_KEYWORDS.items():
        matches = sum(1 for keyword in keywords if keyword in normalized)
        if matches > best:
            best = matches
            subject = candidate

    # A class name hint outranks keyword counts from the notes.
    if class_name:
        class_lower = class_name.lower()
        for candidate, keywords in SUBJECT_KEYWORDS.items():
            if any(keyword in class_lower for keyword in keywords):
                return candidate
    return subject


def top_concepts(notes_text: str, limit: int = 3):
    words = [
        word
        for word in _normalize(notes_text).split(" ")
        if len(word) > 3 and word not in NAMING_STOPWORDS
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def generate_quiz_metadata(
    notes_text: str,
    class_name: Optional[str] = None,
    question_count: Optional[int] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """Return ``{"title", "subject"}`` for a new quiz."""
    subject = detect_subject(notes_text, class_name)
    concepts = [concept.capitalize() for concept in top_concepts(notes_text)]

    if concepts and class_name:
        title = f"{class_name}: {concepts[0]}"
    elif concepts:
        title = f"{subject}: {' & '.join(concepts[:2])}"
    elif class_name:
        title = f"{class_name} Quiz ({_short_date(today)})"
    else:
        title = f"{subject} Quiz ({_short_date(today)})"

    if question_count:
        title += f" ({question_count}Q)"
    return {"title": title[:TITLE_MAX_CHARS], "subject": subject}
