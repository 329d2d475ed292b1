"""Shared fixtures: in-memory databases, question seeding, fixed clock."""

import os

# Must be set before placement.config is imported
os.environ.setdefault("JWT_SECRET", "placement-test-secret-0123456789abcdef")

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import aiosqlite
import pytest

from placement.db.database import SCHEMA_PATH
from placement.db.repositories import SqlQuestionRepository
from placement.models.assessment import (
    AnswerRecord,
    CEFRLevel,
    Question,
    QuestionType,
    Skill,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@asynccontextmanager
async def _memory_db():
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_PATH.read_text())
    await db.commit()
    try:
        yield db
    finally:
        await db.close()


async def _add_question(
    db,
    question_id,
    level,
    *,
    language="en",
    skill=None,
    question_type=QuestionType.MULTIPLE_CHOICE,
    correct_answer="a",
    points=1,
    order_index=0,
    is_active=True,
):
    question = Question(
        id=question_id,
        language=language,
        cefr_level=CEFRLevel(level),
        skill=Skill(skill) if skill else None,
        question_type=question_type,
        question_text=f"Question {question_id}",
        correct_answer=correct_answer,
        points=points,
        order_index=order_index,
        is_active=is_active,
    )
    await SqlQuestionRepository(db).add(question)
    await db.commit()
    return question


async def _add_ladder(db, per_level=4, *, language="en", skill=None, question_type=QuestionType.MULTIPLE_CHOICE):
    """``per_level`` questions at every CEFR level, all answered correctly by "a"."""
    for level in CEFRLevel:
        for i in range(per_level):
            prefix = f"{skill.value.lower()}-" if skill else ""
            await _add_question(
                db,
                f"{prefix}{level.value.lower()}-{i}",
                level,
                language=language,
                skill=skill,
                question_type=question_type,
                order_index=i,
            )


def make_answers(*rows):
    """make_answers(("A1", True), ("B1", False)) -> AnswerRecords with unique ids."""
    return [
        AnswerRecord(
            question_id=f"q{i}",
            answer="x",
            is_correct=correct,
            cefr_level=CEFRLevel(level),
            points_earned=1 if correct else 0,
        )
        for i, (level, correct) in enumerate(rows)
    ]


@pytest.fixture
def memory_db():
    """Async context manager factory for a fresh in-memory database."""
    return _memory_db


@pytest.fixture
def add_question():
    return _add_question


@pytest.fixture
def add_ladder():
    return _add_ladder


@pytest.fixture
def t0():
    return T0
