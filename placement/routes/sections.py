"""Multi-skill section endpoints and the teacher review queue."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from placement.db.database import get_db
from placement.models.assessment import ScoreBlob
from placement.routes.auth import acting_student, get_current_user, require_role
from placement.services.session_orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sections"])


class SectionAnswerRequest(BaseModel):
    question_id: str
    answer: str


class SectionResponseRequest(BaseModel):
    question_id: str
    response_text: Optional[str] = None
    audio_url: Optional[str] = None
    duration_sec: Optional[int] = Field(default=None, ge=0)


# ── Student endpoints ────────────────────────────────────────────────

@router.get("/api/assessments/{assessment_id}/sections")
async def list_sections(assessment_id: str, request: Request, db=Depends(get_db)):
    user = await get_current_user(request)
    sections = await SessionOrchestrator(db).list_sections(assessment_id, student_id=acting_student(user))
    return {"sections": sections}


@router.post("/api/assessments/{assessment_id}/sections/{section_id}/start")
async def start_section(assessment_id: str, section_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    section = await SessionOrchestrator(db).start_section(
        assessment_id, section_id, student_id=user["student_id"]
    )
    return {"section": section}


@router.get("/api/assessments/{assessment_id}/sections/{section_id}/next")
async def next_section_question(assessment_id: str, section_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    return await SessionOrchestrator(db).next_section_question(
        assessment_id, section_id, student_id=user["student_id"]
    )


@router.post("/api/assessments/{assessment_id}/sections/{section_id}/answers")
async def submit_section_answer(
    assessment_id: str, section_id: str, body: SectionAnswerRequest, request: Request, db=Depends(get_db)
):
    user = await require_role("student")(request)
    return await SessionOrchestrator(db).submit_section_answer(
        assessment_id, section_id, body.question_id, body.answer, student_id=user["student_id"]
    )


@router.post("/api/assessments/{assessment_id}/sections/{section_id}/responses")
async def submit_response(
    assessment_id: str, section_id: str, body: SectionResponseRequest, request: Request, db=Depends(get_db)
):
    user = await require_role("student")(request)
    return await SessionOrchestrator(db).submit_response(
        assessment_id,
        section_id,
        body.question_id,
        response_text=body.response_text,
        audio_url=body.audio_url,
        duration_sec=body.duration_sec,
        student_id=user["student_id"],
    )


@router.post("/api/assessments/{assessment_id}/sections/{section_id}/complete")
async def complete_section(assessment_id: str, section_id: str, request: Request, db=Depends(get_db)):
    user = await require_role("student")(request)
    section = await SessionOrchestrator(db).complete_section(
        assessment_id, section_id, student_id=user["student_id"]
    )
    return {"section": section}


# ── Teacher endpoints ────────────────────────────────────────────────

@router.post("/api/assessments/{assessment_id}/sections/{section_id}/skip")
async def skip_section(assessment_id: str, section_id: str, request: Request, db=Depends(get_db)):
    await require_role("teacher")(request)
    section = await SessionOrchestrator(db).skip_section(assessment_id, section_id)
    return {"section": section}


@router.get("/api/sections/review")
async def review_queue(request: Request, db=Depends(get_db)):
    """Writing/speaking sections scored by AI and still waiting for a teacher."""
    await require_role("teacher")(request)
    sections = await SessionOrchestrator(db).list_sections_for_review()
    return {"sections": sections, "count": len(sections)}


@router.post("/api/sections/{section_id}/teacher-score")
async def teacher_score(section_id: str, body: ScoreBlob, request: Request, db=Depends(get_db)):
    user = await require_role("teacher")(request)
    section = await SessionOrchestrator(db).submit_teacher_score(section_id, user["id"], body)
    return {"section": section}
