"""Assessment endpoints: assignment, the single-skill adaptive loop, results."""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from placement.db.database import get_db
from placement.models.assessment import (
    AssessmentConfig,
    AssessmentType,
    CEFRLevel,
    ViolationType,
)
from placement.routes.auth import acting_student, get_current_user, require_role
from placement.services.session_orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assessments", tags=["assessments"])


# ── Request models ───────────────────────────────────────────────────

class AssignRequest(BaseModel):
    language: str
    student_id: Optional[str] = None  # required when a teacher assigns
    assessment_type: AssessmentType = AssessmentType.PLACEMENT
    is_multi_skill: bool = False
    target_level: Optional[CEFRLevel] = None
    questions_limit: Optional[int] = Field(default=None, gt=0)
    time_limit_min: Optional[int] = Field(default=None, gt=0)


class AnswerRequest(BaseModel):
    question_id: str
    answer: str


class ViolationRequest(BaseModel):
    type: ViolationType
    details: Dict[str, str] = {}


# ── Endpoints ────────────────────────────────────────────────────────

@router.post("")
async def assign_assessment(body: AssignRequest, request: Request, db=Depends(get_db)):
    """Teachers assign to any student; students start a self-placement."""
    user = await get_current_user(request)
    if user["role"] == "teacher":
        if not body.student_id:
            raise HTTPException(status_code=422, detail="student_id is required")
        student_id = body.student_id
        assigned_by = user["id"]
    else:
        student_id = user["student_id"]
        assigned_by = None

    config = AssessmentConfig(
        assessment_type=body.assessment_type,
        is_multi_skill=body.is_multi_skill,
        target_level=body.target_level,
        questions_limit=body.questions_limit,
        time_limit_min=body.time_limit_min,
        assigned_by=assigned_by,
    )
    orchestrator = SessionOrchestrator(db)
    assessment = await orchestrator.assign(student_id, body.language, config)
    sections = await orchestrator.list_sections(assessment.id)
    return {"assessment": assessment, "sections": sections}


@router.get("/mine")
async def my_assessments(request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    assessments = await SessionOrchestrator(db).list_assessments(user["student_id"])
    return {"assessments": assessments, "count": len(assessments)}


@router.post("/{assessment_id}/start")
async def start_assessment(assessment_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    assessment = await SessionOrchestrator(db).start_assessment(assessment_id, student_id=user["student_id"])
    return {"assessment": assessment}


@router.get("/{assessment_id}/next")
async def next_question(assessment_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    return await SessionOrchestrator(db).next_question(assessment_id, student_id=user["student_id"])


@router.post("/{assessment_id}/answers")
async def submit_answer(assessment_id: str, body: AnswerRequest, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    return await SessionOrchestrator(db).submit_answer(
        assessment_id, body.question_id, body.answer, student_id=user["student_id"]
    )


@router.post("/{assessment_id}/complete")
async def complete_assessment(assessment_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    orchestrator = SessionOrchestrator(db)
    await orchestrator.complete_assessment(assessment_id, student_id=user["student_id"])
    return await orchestrator.get_results(assessment_id)


@router.post("/{assessment_id}/violations")
async def record_violation(assessment_id: str, body: ViolationRequest, request: Request, db=Depends(get_db)):
    """Advisory: always 200, ``recorded`` tells whether the event was kept."""
    user = await require_role("student")(request)
    recorded = await SessionOrchestrator(db).record_violation(
        assessment_id, body.type, body.details, student_id=user["student_id"]
    )
    return {"recorded": recorded}


@router.get("/{assessment_id}/results")
async def get_results(assessment_id: str, request: Request, db=Depends(get_db)):
    user = await get_current_user(request)
    return await SessionOrchestrator(db).get_results(assessment_id, student_id=acting_student(user))
