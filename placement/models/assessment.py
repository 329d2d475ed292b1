"""Typed records for placement assessments, sections and the question bank.

Answers, violations and score blobs are persisted as JSON text; these models
are the fixed schema they are validated against on the way in and out.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CEFRLevel(str, Enum):
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"


# Ordered lowest to highest
CEFR_LEVELS: list[CEFRLevel] = list(CEFRLevel)

LEVEL_WEIGHTS: dict[CEFRLevel, int] = {
    CEFRLevel.A1: 1, CEFRLevel.A2: 1,
    CEFRLevel.B1: 2, CEFRLevel.B2: 2,
    CEFRLevel.C1: 3, CEFRLevel.C2: 3,
}

LEVEL_NAMES: dict[CEFRLevel, str] = {
    CEFRLevel.A1: "Beginner",
    CEFRLevel.A2: "Elementary",
    CEFRLevel.B1: "Intermediate",
    CEFRLevel.B2: "Upper Intermediate",
    CEFRLevel.C1: "Advanced",
    CEFRLevel.C2: "Proficiency",
}


class AssessmentType(str, Enum):
    PLACEMENT = "PLACEMENT"
    PROGRESS = "PROGRESS"
    FINAL = "FINAL"


class AssessmentStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class SectionStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


SETTLED_SECTION_STATUSES = (SectionStatus.COMPLETED, SectionStatus.SKIPPED)


class Skill(str, Enum):
    READING = "READING"
    LISTENING = "LISTENING"
    WRITING = "WRITING"
    SPEAKING = "SPEAKING"


OBJECTIVE_SKILLS = (Skill.READING, Skill.LISTENING)
SUBJECTIVE_SKILLS = (Skill.WRITING, Skill.SPEAKING)


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    FILL_BLANK = "FILL_BLANK"
    SHORT_ANSWER = "SHORT_ANSWER"
    READING = "READING"
    LISTENING = "LISTENING"
    DICTATION = "DICTATION"
    WRITING = "WRITING"
    ESSAY = "ESSAY"
    SPEAKING_PROMPT = "SPEAKING_PROMPT"


class ViolationType(str, Enum):
    TAB_SWITCH = "TAB_SWITCH"
    WINDOW_BLUR = "WINDOW_BLUR"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    COPY_PASTE = "COPY_PASTE"
    OTHER = "OTHER"


class SectionDefaults(BaseModel):
    time_limit_min: int
    questions_limit: int
    order_index: int


SECTION_DEFAULTS: dict[Skill, SectionDefaults] = {
    Skill.READING: SectionDefaults(time_limit_min=20, questions_limit=10, order_index=0),
    Skill.LISTENING: SectionDefaults(time_limit_min=15, questions_limit=8, order_index=1),
    Skill.WRITING: SectionDefaults(time_limit_min=20, questions_limit=3, order_index=2),
    Skill.SPEAKING: SectionDefaults(time_limit_min=15, questions_limit=3, order_index=3),
}


# ── Embedded records ─────────────────────────────────────────────────

class AnswerRecord(BaseModel):
    question_id: str
    answer: str
    is_correct: bool
    cefr_level: CEFRLevel  # level of the question, not of the test-taker
    points_earned: int = 0
    response_id: Optional[str] = None


class ViolationEvent(BaseModel):
    type: ViolationType
    occurred_at: datetime
    details: dict[str, str] = {}


class ScoreBlob(BaseModel):
    """Opaque score from AI scoring or a teacher review.

    Only ``overall`` and ``cefr_level`` are interpreted; any sub-scores
    (grammar, fluency, ...) are carried through untouched.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    overall: float
    cefr_level: CEFRLevel = Field(alias="cefrLevel")
    feedback: Optional[str] = None


# ── Question bank ────────────────────────────────────────────────────

class QuestionOption(BaseModel):
    label: str
    value: str


class PublicQuestion(BaseModel):
    """A question as served to a test-taker: never carries the answer key."""

    id: str
    language: str
    cefr_level: CEFRLevel
    skill: Optional[Skill] = None
    question_type: QuestionType
    question_text: str
    options: list[QuestionOption] = []
    passage: Optional[str] = None
    passage_title: Optional[str] = None
    audio_url: Optional[str] = None
    speaking_prompt: Optional[str] = None
    points: int = 1
    order_index: int = 0


class Question(PublicQuestion):
    correct_answer: str = ""
    is_active: bool = True

    def public(self) -> PublicQuestion:
        return PublicQuestion(**self.model_dump(exclude={"correct_answer", "is_active"}))


# ── Aggregates ───────────────────────────────────────────────────────

class Assessment(BaseModel):
    id: str
    student_id: str
    language: str
    assessment_type: AssessmentType = AssessmentType.PLACEMENT
    is_multi_skill: bool = False
    status: AssessmentStatus = AssessmentStatus.ASSIGNED
    target_level: CEFRLevel = CEFRLevel.B1
    questions_limit: int
    time_limit_min: Optional[int] = None
    assigned_by: Optional[str] = None
    current_section: Optional[int] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    answers: list[AnswerRecord] = []
    violations: list[ViolationEvent] = []
    score: Optional[int] = None
    cefr_level: Optional[CEFRLevel] = None
    reading_level: Optional[CEFRLevel] = None
    listening_level: Optional[CEFRLevel] = None
    writing_level: Optional[CEFRLevel] = None
    speaking_level: Optional[CEFRLevel] = None


class Section(BaseModel):
    id: str
    assessment_id: str
    skill: Skill
    order_index: int
    status: SectionStatus = SectionStatus.PENDING
    target_level: CEFRLevel = CEFRLevel.B1
    questions_limit: int
    time_limit_min: Optional[int] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    answers: list[AnswerRecord] = []
    raw_score: Optional[int] = None
    max_score: Optional[int] = None
    percentage_score: Optional[int] = None
    cefr_level: Optional[CEFRLevel] = None
    ai_score: Optional[ScoreBlob] = None
    teacher_score: Optional[ScoreBlob] = None
    final_score: Optional[ScoreBlob] = None
    teacher_reviewed_by: Optional[str] = None
    teacher_reviewed_at: Optional[datetime] = None


class SectionResponse(BaseModel):
    id: str
    section_id: str
    assessment_id: str
    question_id: str
    student_id: str
    response_text: Optional[str] = None
    audio_url: Optional[str] = None
    duration_sec: Optional[int] = None
    word_count: Optional[int] = None
    created_at: datetime


class AssessmentConfig(BaseModel):
    """Options accepted by ``assign``; unset fields fall back to settings."""

    assessment_type: AssessmentType = AssessmentType.PLACEMENT
    is_multi_skill: bool = False
    target_level: Optional[CEFRLevel] = None
    questions_limit: Optional[int] = Field(default=None, gt=0)
    time_limit_min: Optional[int] = Field(default=None, gt=0)
    assigned_by: Optional[str] = None
