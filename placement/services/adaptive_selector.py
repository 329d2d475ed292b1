"""Adaptive question selection.

The target level walks one CEFR step at a time from the most recent answers:
- 2 or 3 of the last 3 correct → one level up (capped at C2)
- 0 of the last 3 correct      → one level down (floored at A1)
- exactly 1 correct            → unchanged

Selection asks the question bank for an unanswered question at exactly the
target level, then falls back to any level before giving up.
"""

import logging
from typing import Optional, Sequence

from placement.db.repositories import QuestionRepository
from placement.models.assessment import (
    AnswerRecord,
    CEFR_LEVELS,
    CEFRLevel,
    PublicQuestion,
    QuestionType,
    Skill,
)

logger = logging.getLogger(__name__)

WINDOW_SIZE = 3

# Skill-agnostic questions of these types may be served in a section
SKILL_QUESTION_TYPES: dict[Skill, tuple[QuestionType, ...]] = {
    Skill.READING: (
        QuestionType.READING,
        QuestionType.MULTIPLE_CHOICE,
        QuestionType.FILL_BLANK,
        QuestionType.SHORT_ANSWER,
    ),
    Skill.LISTENING: (QuestionType.LISTENING, QuestionType.DICTATION),
    Skill.WRITING: (QuestionType.WRITING, QuestionType.SHORT_ANSWER, QuestionType.ESSAY),
    Skill.SPEAKING: (QuestionType.SPEAKING_PROMPT,),
}


def adjust_target_level(answers: Sequence[AnswerRecord], target_level: CEFRLevel) -> CEFRLevel:
    """Return the target level after looking at the last three answers."""
    target_level = CEFRLevel(target_level)
    if len(answers) < WINDOW_SIZE:
        return target_level

    recent_correct = sum(1 for a in answers[-WINDOW_SIZE:] if a.is_correct)
    idx = CEFR_LEVELS.index(target_level)

    if recent_correct >= 2 and idx < len(CEFR_LEVELS) - 1:
        return CEFR_LEVELS[idx + 1]
    if recent_correct == 0 and idx > 0:
        return CEFR_LEVELS[idx - 1]
    return target_level


async def select_next_question(
    questions: QuestionRepository,
    answers: Sequence[AnswerRecord],
    target_level: CEFRLevel,
    language: str,
    skill: Optional[Skill] = None,
) -> Optional[PublicQuestion]:
    """Pick the next unanswered question, or None when the bank is exhausted.

    The returned question never carries its answer key.
    """
    answered_ids = [a.question_id for a in answers]
    question_types = SKILL_QUESTION_TYPES.get(skill, ()) if skill else ()

    question = await questions.find(
        language,
        level=target_level,
        skill=skill,
        exclude_ids=answered_ids,
        question_types=question_types,
    )
    if question is None:
        logger.debug(
            "No %s question left at %s (skill=%s), falling back to any level",
            language, target_level, skill,
        )
        question = await questions.find(
            language,
            skill=skill,
            exclude_ids=answered_ids,
            question_types=question_types,
        )

    if question is None:
        return None
    return question.public()
