"""
scoring.py - Weighted scoring and CEFR level determination

Provides:
- normalize_answer(answer) - Normalize an answer for comparison
- is_correct_answer(given, expected) - Case-insensitive, trimmed equality
- weighted_points(answers) - Earned and possible level-weighted points
- weighted_percentage(answers) - Level-weighted percentage, 0-100
- determine_level(answers) - Highest level in an unbroken passing chain
- score_answers(answers) - Full ScoreResult for a test or objective section
"""

import math
import logging
from typing import Sequence

from placement.models.assessment import (
    AnswerRecord,
    CEFR_LEVELS,
    CEFRLevel,
    LEVEL_WEIGHTS,
)
from placement.models.results import LevelTally, ScoreResult

logger = logging.getLogger(__name__)

PASS_THRESHOLD = 0.60


def normalize_answer(answer: str) -> str:
    """Normalize an answer for comparison."""
    if not answer:
        return ""
    return answer.strip().lower()


def is_correct_answer(given: str, expected: str) -> bool:
    return normalize_answer(given) == normalize_answer(expected)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def level_breakdown(answers: Sequence[AnswerRecord]) -> dict[CEFRLevel, LevelTally]:
    tallies: dict[CEFRLevel, LevelTally] = {}
    for answer in answers:
        tally = tallies.setdefault(answer.cefr_level, LevelTally())
        tally.total += 1
        if answer.is_correct:
            tally.correct += 1
    return tallies


def weighted_points(answers: Sequence[AnswerRecord]) -> tuple[int, int]:
    """Return (earned, possible) where each answer counts its level weight."""
    earned = sum(LEVEL_WEIGHTS[a.cefr_level] for a in answers if a.is_correct)
    possible = sum(LEVEL_WEIGHTS[a.cefr_level] for a in answers)
    return earned, possible


def weighted_percentage(answers: Sequence[AnswerRecord]) -> int:
    """Sum of weights of correct answers over sum of weights of all answers."""
    earned, possible = weighted_points(answers)
    if possible == 0:
        return 0
    return round_half_up(earned / possible * 100)


def determine_level(answers: Sequence[AnswerRecord]) -> CEFRLevel:
    """Walk levels upward; each level with answers must reach 60% to keep climbing.

    Levels nobody was asked about are skipped. The first failing level stops
    the walk, so a lucky C1 answer after a failed B1 never counts.
    """
    tallies = level_breakdown(answers)
    determined = CEFR_LEVELS[0]
    for level in CEFR_LEVELS:
        tally = tallies.get(level)
        if tally is None or tally.total == 0:
            continue
        if tally.correct / tally.total >= PASS_THRESHOLD:
            determined = level
        else:
            break
    return determined


def score_answers(answers: Sequence[AnswerRecord]) -> ScoreResult:
    """Score a finished test or objective section.

    raw_score and max_score are in weighted points, so that
    percentage == round(raw_score / max_score * 100).
    """
    earned, possible = weighted_points(answers)
    result = ScoreResult(
        percentage=weighted_percentage(answers),
        cefr_level=determine_level(answers),
        raw_score=earned,
        max_score=possible,
        correct_answers=sum(1 for a in answers if a.is_correct),
        total_questions=len(answers),
        level_breakdown=level_breakdown(answers),
    )
    logger.debug(
        "Scored %d answers: %d%% -> %s",
        result.total_questions, result.percentage, result.cefr_level.value,
    )
    return result
