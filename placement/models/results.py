from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from placement.models.assessment import (
    AssessmentStatus,
    AssessmentType,
    CEFRLevel,
    PublicQuestion,
    ScoreBlob,
    SectionResponse,
    SectionStatus,
    Skill,
)


class LevelTally(BaseModel):
    correct: int = 0
    total: int = 0


class ScoreResult(BaseModel):
    percentage: int
    cefr_level: CEFRLevel
    raw_score: int
    max_score: int
    correct_answers: int
    total_questions: int
    level_breakdown: dict[CEFRLevel, LevelTally] = {}


class Progress(BaseModel):
    answered: int
    total: int
    current_level: CEFRLevel


class NextItemResult(BaseModel):
    is_complete: bool
    expired: bool = False
    total_answered: int = 0
    question: Optional[PublicQuestion] = None
    progress: Optional[Progress] = None
    remaining_seconds: Optional[int] = None


class SubmitResult(BaseModel):
    is_correct: bool
    correct_answer: str
    points_earned: int
    should_auto_complete: bool
    expired: bool = False


class ResponseResult(BaseModel):
    response: Optional[SectionResponse] = None
    should_auto_complete: bool
    expired: bool = False


class SectionResult(BaseModel):
    id: str
    skill: Skill
    status: SectionStatus
    cefr_level: Optional[CEFRLevel] = None
    cefr_name: str = ""
    percentage_score: Optional[int] = None
    raw_score: Optional[int] = None
    max_score: Optional[int] = None
    ai_score: Optional[ScoreBlob] = None
    teacher_score: Optional[ScoreBlob] = None
    final_score: Optional[ScoreBlob] = None
    teacher_reviewed: bool = False
    questions_answered: int = 0
    questions_total: int = 0


class AssessmentResults(BaseModel):
    id: str
    student_id: str
    language: str
    assessment_type: AssessmentType
    status: AssessmentStatus
    is_multi_skill: bool
    score: Optional[int] = None
    cefr_level: Optional[CEFRLevel] = None
    cefr_name: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reading_level: Optional[CEFRLevel] = None
    listening_level: Optional[CEFRLevel] = None
    writing_level: Optional[CEFRLevel] = None
    speaking_level: Optional[CEFRLevel] = None
    violations_count: int = 0
    sections: list[SectionResult] = []
