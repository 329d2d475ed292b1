"""
repositories.py - Persistence interfaces and SQL implementations

One repository per aggregate:
- QuestionRepository   - read access to the question bank
- AssessmentRepository - assessments (answers/violations embedded as JSON)
- SectionRepository    - multi-skill sections (answers/score blobs as JSON)
- ResponseRepository   - writing/speaking responses
- EventRepository      - outbox of domain events
- StudentRepository    - profile proficiency level

Repositories never commit. The orchestrator commits once per operation so a
state change and the events it emits land in the same transaction.
"""

import abc
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from placement.models.assessment import (
    Assessment,
    CEFRLevel,
    Question,
    QuestionType,
    Section,
    SectionResponse,
    SectionStatus,
    Skill,
    SUBJECTIVE_SKILLS,
)

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, list):
        return json.dumps([
            v.model_dump(mode="json", by_alias=True) if isinstance(v, BaseModel) else v
            for v in value
        ])
    return json.dumps(value)


def _load_json(raw: Any, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


# ══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ══════════════════════════════════════════════════════════════════════════════

class QuestionRepository(abc.ABC):
    """Query interface over the (externally authored) question bank."""

    @abc.abstractmethod
    async def find(
        self,
        language: str,
        level: Optional[CEFRLevel] = None,
        skill: Optional[Skill] = None,
        exclude_ids: Sequence[str] = (),
        question_types: Sequence[QuestionType] = (),
    ) -> Optional[Question]:
        """Return the first active question by ascending order_index, or None.

        With ``skill`` set, a question matches when it is tagged with that
        skill, or when it is skill-agnostic and its type is in ``question_types``.
        """

    @abc.abstractmethod
    async def get(self, question_id: str) -> Optional[Question]:
        pass

    @abc.abstractmethod
    async def add(self, question: Question) -> Question:
        pass


class AssessmentRepository(abc.ABC):

    @abc.abstractmethod
    async def get(self, assessment_id: str) -> Optional[Assessment]:
        pass

    @abc.abstractmethod
    async def add(self, assessment: Assessment) -> Assessment:
        pass

    @abc.abstractmethod
    async def save(self, assessment: Assessment) -> Assessment:
        pass

    @abc.abstractmethod
    async def find_open(
        self, student_id: str, language: str, assessment_type: str, is_multi_skill: bool
    ) -> Optional[Assessment]:
        """Latest ASSIGNED or IN_PROGRESS assessment of the same kind."""

    @abc.abstractmethod
    async def list_for_student(self, student_id: str) -> List[Assessment]:
        pass


class SectionRepository(abc.ABC):

    @abc.abstractmethod
    async def get(self, section_id: str) -> Optional[Section]:
        pass

    @abc.abstractmethod
    async def add(self, section: Section) -> Section:
        pass

    @abc.abstractmethod
    async def save(self, section: Section) -> Section:
        pass

    @abc.abstractmethod
    async def list_for_assessment(self, assessment_id: str) -> List[Section]:
        """All sections of an assessment ordered by order_index."""

    @abc.abstractmethod
    async def list_pending_review(self) -> List[Section]:
        """Completed writing/speaking sections with an AI score but no teacher score."""


class ResponseRepository(abc.ABC):

    @abc.abstractmethod
    async def add(self, response: SectionResponse) -> SectionResponse:
        pass

    @abc.abstractmethod
    async def list_for_section(self, section_id: str) -> List[SectionResponse]:
        pass


class EventRepository(abc.ABC):

    @abc.abstractmethod
    async def add(self, event_id: str, event_type: str, aggregate_id: str,
                  payload: Dict[str, Any], created_at: datetime) -> None:
        pass

    @abc.abstractmethod
    async def fetch_pending(self, limit: int) -> List[Dict[str, Any]]:
        pass

    @abc.abstractmethod
    async def mark_processed(self, event_id: str, attempts: int, processed_at: datetime) -> None:
        pass

    @abc.abstractmethod
    async def mark_failed(self, event_id: str, attempts: int, error: str, processed_at: datetime) -> None:
        pass


class StudentRepository(abc.ABC):

    @abc.abstractmethod
    async def update_level(self, student_id: str, level: CEFRLevel, updated_at: datetime) -> None:
        pass

    @abc.abstractmethod
    async def get_level(self, student_id: str) -> Optional[CEFRLevel]:
        pass


# ══════════════════════════════════════════════════════════════════════════════
# QUESTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_question(row) -> Question:
    data = dict(row)
    data["options"] = _load_json(data.pop("options_json", None), [])
    data.pop("created_at", None)
    return Question.model_validate(data)


class SqlQuestionRepository(QuestionRepository):

    def __init__(self, db):
        self.db = db

    async def find(self, language, level=None, skill=None, exclude_ids=(), question_types=()):
        clauses = ["language = ?", "is_active = ?"]
        params: List[Any] = [language, True]

        if level is not None:
            clauses.append("cefr_level = ?")
            params.append(CEFRLevel(level).value)

        if skill is not None:
            if question_types:
                placeholders = ",".join("?" for _ in question_types)
                clauses.append(f"(skill = ? OR (skill IS NULL AND question_type IN ({placeholders})))")
                params.append(Skill(skill).value)
                params.extend(QuestionType(t).value for t in question_types)
            else:
                clauses.append("skill = ?")
                params.append(Skill(skill).value)

        if exclude_ids:
            placeholders = ",".join("?" for _ in exclude_ids)
            clauses.append(f"id NOT IN ({placeholders})")
            params.extend(exclude_ids)

        cursor = await self.db.execute(
            f"""SELECT * FROM assessment_questions
                WHERE {' AND '.join(clauses)}
                ORDER BY order_index ASC, cefr_level ASC, id ASC
                LIMIT 1""",
            params,
        )
        row = await cursor.fetchone()
        return _row_to_question(row) if row else None

    async def get(self, question_id):
        cursor = await self.db.execute(
            "SELECT * FROM assessment_questions WHERE id = ?", (question_id,)
        )
        row = await cursor.fetchone()
        return _row_to_question(row) if row else None

    async def add(self, question):
        await self.db.execute(
            """INSERT INTO assessment_questions
               (id, language, cefr_level, skill, question_type, question_text, options_json,
                passage, passage_title, audio_url, speaking_prompt, correct_answer,
                points, order_index, is_active)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                question.id,
                question.language,
                question.cefr_level.value,
                question.skill.value if question.skill else None,
                question.question_type.value,
                question.question_text,
                _dump_json(question.options),
                question.passage,
                question.passage_title,
                question.audio_url,
                question.speaking_prompt,
                question.correct_answer,
                question.points,
                question.order_index,
                question.is_active,
            ),
        )
        return question


# ══════════════════════════════════════════════════════════════════════════════
# ASSESSMENTS
# ══════════════════════════════════════════════════════════════════════════════

_ASSESSMENT_COLUMNS = (
    "student_id", "language", "assessment_type", "is_multi_skill", "status",
    "target_level", "questions_limit", "time_limit_min", "assigned_by",
    "current_section", "assigned_at", "started_at", "expires_at", "completed_at",
    "answers_json", "violations_json", "score", "cefr_level", "reading_level",
    "listening_level", "writing_level", "speaking_level",
)


def _row_to_assessment(row) -> Assessment:
    data = dict(row)
    data["answers"] = _load_json(data.pop("answers_json", None), [])
    data["violations"] = _load_json(data.pop("violations_json", None), [])
    data.pop("created_at", None)
    return Assessment.model_validate(data)


def _assessment_values(a: Assessment) -> tuple:
    return (
        a.student_id,
        a.language,
        a.assessment_type.value,
        a.is_multi_skill,
        a.status.value,
        a.target_level.value,
        a.questions_limit,
        a.time_limit_min,
        a.assigned_by,
        a.current_section,
        _iso(a.assigned_at),
        _iso(a.started_at),
        _iso(a.expires_at),
        _iso(a.completed_at),
        _dump_json(a.answers),
        _dump_json(a.violations),
        a.score,
        a.cefr_level.value if a.cefr_level else None,
        a.reading_level.value if a.reading_level else None,
        a.listening_level.value if a.listening_level else None,
        a.writing_level.value if a.writing_level else None,
        a.speaking_level.value if a.speaking_level else None,
    )


class SqlAssessmentRepository(AssessmentRepository):

    def __init__(self, db):
        self.db = db

    async def get(self, assessment_id):
        cursor = await self.db.execute("SELECT * FROM assessments WHERE id = ?", (assessment_id,))
        row = await cursor.fetchone()
        return _row_to_assessment(row) if row else None

    async def add(self, assessment):
        columns = ("id",) + _ASSESSMENT_COLUMNS
        await self.db.execute(
            f"""INSERT INTO assessments ({', '.join(columns)})
                VALUES ({', '.join('?' for _ in columns)})""",
            (assessment.id,) + _assessment_values(assessment),
        )
        return assessment

    async def save(self, assessment):
        assignments = ", ".join(f"{c} = ?" for c in _ASSESSMENT_COLUMNS)
        await self.db.execute(
            f"UPDATE assessments SET {assignments} WHERE id = ?",
            _assessment_values(assessment) + (assessment.id,),
        )
        return assessment

    async def find_open(self, student_id, language, assessment_type, is_multi_skill):
        cursor = await self.db.execute(
            """SELECT * FROM assessments
               WHERE student_id = ? AND language = ? AND assessment_type = ?
                 AND is_multi_skill = ? AND status IN ('ASSIGNED', 'IN_PROGRESS')
               ORDER BY assigned_at DESC
               LIMIT 1""",
            (student_id, language, assessment_type, is_multi_skill),
        )
        row = await cursor.fetchone()
        return _row_to_assessment(row) if row else None

    async def list_for_student(self, student_id):
        cursor = await self.db.execute(
            "SELECT * FROM assessments WHERE student_id = ? ORDER BY assigned_at DESC",
            (student_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_assessment(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# SECTIONS
# ══════════════════════════════════════════════════════════════════════════════

_SECTION_COLUMNS = (
    "assessment_id", "skill", "order_index", "status", "target_level",
    "questions_limit", "time_limit_min", "started_at", "expires_at", "completed_at",
    "answers_json", "raw_score", "max_score", "percentage_score", "cefr_level",
    "ai_score_json", "teacher_score_json", "final_score_json",
    "teacher_reviewed_by", "teacher_reviewed_at",
)


def _row_to_section(row) -> Section:
    data = dict(row)
    data["answers"] = _load_json(data.pop("answers_json", None), [])
    for field in ("ai_score", "teacher_score", "final_score"):
        data[field] = _load_json(data.pop(f"{field}_json", None))
    return Section.model_validate(data)


def _section_values(s: Section) -> tuple:
    return (
        s.assessment_id,
        s.skill.value,
        s.order_index,
        s.status.value,
        s.target_level.value,
        s.questions_limit,
        s.time_limit_min,
        _iso(s.started_at),
        _iso(s.expires_at),
        _iso(s.completed_at),
        _dump_json(s.answers),
        s.raw_score,
        s.max_score,
        s.percentage_score,
        s.cefr_level.value if s.cefr_level else None,
        _dump_json(s.ai_score),
        _dump_json(s.teacher_score),
        _dump_json(s.final_score),
        s.teacher_reviewed_by,
        _iso(s.teacher_reviewed_at),
    )


class SqlSectionRepository(SectionRepository):

    def __init__(self, db):
        self.db = db

    async def get(self, section_id):
        cursor = await self.db.execute("SELECT * FROM assessment_sections WHERE id = ?", (section_id,))
        row = await cursor.fetchone()
        return _row_to_section(row) if row else None

    async def add(self, section):
        columns = ("id",) + _SECTION_COLUMNS
        await self.db.execute(
            f"""INSERT INTO assessment_sections ({', '.join(columns)})
                VALUES ({', '.join('?' for _ in columns)})""",
            (section.id,) + _section_values(section),
        )
        return section

    async def save(self, section):
        assignments = ", ".join(f"{c} = ?" for c in _SECTION_COLUMNS)
        await self.db.execute(
            f"UPDATE assessment_sections SET {assignments} WHERE id = ?",
            _section_values(section) + (section.id,),
        )
        return section

    async def list_for_assessment(self, assessment_id):
        cursor = await self.db.execute(
            "SELECT * FROM assessment_sections WHERE assessment_id = ? ORDER BY order_index ASC",
            (assessment_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_section(r) for r in rows]

    async def list_pending_review(self):
        cursor = await self.db.execute(
            """SELECT * FROM assessment_sections
               WHERE skill IN (?, ?) AND status = ?
                 AND ai_score_json IS NOT NULL AND teacher_score_json IS NULL
               ORDER BY completed_at ASC""",
            tuple(s.value for s in SUBJECTIVE_SKILLS) + (SectionStatus.COMPLETED.value,),
        )
        rows = await cursor.fetchall()
        return [_row_to_section(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# WRITING / SPEAKING RESPONSES
# ══════════════════════════════════════════════════════════════════════════════

class SqlResponseRepository(ResponseRepository):

    def __init__(self, db):
        self.db = db

    async def add(self, response):
        await self.db.execute(
            """INSERT INTO section_responses
               (id, section_id, assessment_id, question_id, student_id,
                response_text, audio_url, duration_sec, word_count, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                response.id,
                response.section_id,
                response.assessment_id,
                response.question_id,
                response.student_id,
                response.response_text,
                response.audio_url,
                response.duration_sec,
                response.word_count,
                _iso(response.created_at),
            ),
        )
        return response

    async def list_for_section(self, section_id):
        cursor = await self.db.execute(
            "SELECT * FROM section_responses WHERE section_id = ? ORDER BY created_at ASC",
            (section_id,),
        )
        rows = await cursor.fetchall()
        return [SectionResponse.model_validate(dict(r)) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# OUTBOX
# ══════════════════════════════════════════════════════════════════════════════

class SqlEventRepository(EventRepository):

    def __init__(self, db):
        self.db = db

    async def add(self, event_id, event_type, aggregate_id, payload, created_at):
        await self.db.execute(
            """INSERT INTO domain_events (id, event_type, aggregate_id, payload_json, status, created_at)
               VALUES (?, ?, ?, ?, 'pending', ?)""",
            (event_id, event_type, aggregate_id, json.dumps(payload), _iso(created_at)),
        )

    async def fetch_pending(self, limit):
        cursor = await self.db.execute(
            """SELECT * FROM domain_events
               WHERE status = 'pending'
               ORDER BY created_at ASC, id ASC
               LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event["payload"] = _load_json(event.pop("payload_json", None), {})
            events.append(event)
        return events

    async def mark_processed(self, event_id, attempts, processed_at):
        await self.db.execute(
            """UPDATE domain_events
               SET status = 'completed', attempts = ?, last_error = NULL, processed_at = ?
               WHERE id = ?""",
            (attempts, _iso(processed_at), event_id),
        )

    async def mark_failed(self, event_id, attempts, error, processed_at):
        await self.db.execute(
            """UPDATE domain_events
               SET status = 'failed', attempts = ?, last_error = ?, processed_at = ?
               WHERE id = ?""",
            (attempts, error[:500], _iso(processed_at), event_id),
        )


# ══════════════════════════════════════════════════════════════════════════════
# STUDENT PROFILE
# ══════════════════════════════════════════════════════════════════════════════

class SqlStudentRepository(StudentRepository):

    def __init__(self, db):
        self.db = db

    async def update_level(self, student_id, level, updated_at):
        cursor = await self.db.execute("SELECT id FROM students WHERE id = ?", (student_id,))
        if await cursor.fetchone():
            await self.db.execute(
                "UPDATE students SET current_level = ?, level_updated_at = ? WHERE id = ?",
                (CEFRLevel(level).value, _iso(updated_at), student_id),
            )
        else:
            await self.db.execute(
                "INSERT INTO students (id, current_level, level_updated_at) VALUES (?, ?, ?)",
                (student_id, CEFRLevel(level).value, _iso(updated_at)),
            )

    async def get_level(self, student_id):
        cursor = await self.db.execute(
            "SELECT current_level FROM students WHERE id = ?", (student_id,)
        )
        row = await cursor.fetchone()
        if not row or not row["current_level"]:
            return None
        return CEFRLevel(row["current_level"])
