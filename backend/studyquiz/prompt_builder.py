# Quiz generation prompt assembled from the normalized config and notes.
from studyquiz.schemas import QuizConfig

RESPONSE_SHAPE = """{
  "questions": [
    {
      "id": "q1",
      "type": "mcq" | "short",
      "prompt": "string",
      "options": ["string", "string", "string", "string"],
      "answer": "string"
    }
  ]
}"""

COVERAGE_INSTRUCTIONS = {
    "key_concepts": (
        "Coverage\n"
        "- Focus on the 3-5 most important concepts in the NOTES.\n"
        "- Prefer depth over breadth; omit low-value details."
    ),
    "broad_sample": (
        "Coverage\n"
        "- Distribute questions across all major sections of the NOTES.\n"
        "- Include material from the beginning, middle, and end."
    ),
}

DIFFICULTY_INSTRUCTIONS = {
    "low": (
        "Difficulty: low\n"
        "- Test recall and recognition with single-step questions.\n"
        "- MCQ distractors should be clearly distinct from the answer."
    ),
    "medium": (
        "Difficulty: medium\n"
        "- Test application and explanation with 1-2 reasoning steps.\n"
        "- MCQ distractors should be plausible."
    ),
    "high": (
        "Difficulty: high\n"
        "- Test synthesis and evaluation with multi-step reasoning.\n"
        "- MCQ distractors should require careful analysis to eliminate."
    ),
}


def type_instructions(config: QuizConfig) -> str:
    if config.question_type == "mcq":
        return "- Types: only MCQ questions (type \"mcq\")."
    if config.question_type == "typing":
        return "- Types: only short answer questions (type \"short\")."
    counts = config.question_counts
    return (
        f"- Types: exactly {counts.mcq} MCQ questions and "
        f"{counts.typing} short answer questions (type \"short\")."
    )


def build_quiz_generation_prompt(config: QuizConfig, notes_text: str) -> str:
    sections = [
        "You are a quiz generator. Create a quiz strictly from the provided NOTES.",
        "Return JSON only, with this shape (no prose, no markdown):",
        RESPONSE_SHAPE,
        "Constraints",
        f"- Generate exactly {config.question_count} questions.",
        type_instructions(config),
        "- MCQ: 3-5 options; the answer must exactly equal one option.",
        "- Short answer: a concise gold answer (a key phrase or 1-2 sentences).",
        "- Prompts at most 180 characters, written in the language of the NOTES.",
        "- Use no outside knowledge.",
        COVERAGE_INSTRUCTIONS[config.coverage],
        DIFFICULTY_INSTRUCTIONS[config.difficulty],
        f"NOTES:\n{notes_text}",
        "Now generate the quiz JSON.",
    ]
    return "\n\n".join(sections)
