"""Combines settled sections into the overall multi-skill result.

Runs after every section settles (completed or skipped) and after every AI or
teacher score lands on a section. Nothing happens until every section is
COMPLETED or SKIPPED. Recomputing an already finished assessment overwrites
its score and levels but keeps the first ``completed_at``.
"""

import logging
from datetime import datetime
from typing import Optional

from placement.db.repositories import AssessmentRepository, EventRepository, SectionRepository
from placement.models.assessment import (
    Assessment,
    AssessmentStatus,
    CEFR_LEVELS,
    CEFRLevel,
    LEVEL_NAMES,
    Section,
    SectionStatus,
    SETTLED_SECTION_STATUSES,
    Skill,
)
from placement.models.results import AssessmentResults, SectionResult
from placement.services import outbox
from placement.services.scoring import round_half_up

logger = logging.getLogger(__name__)

_SKILL_LEVEL_FIELDS = {
    Skill.READING: "reading_level",
    Skill.LISTENING: "listening_level",
    Skill.WRITING: "writing_level",
    Skill.SPEAKING: "speaking_level",
}


def overall_level(sections: list[Section]) -> CEFRLevel:
    """Floor of the mean level index over completed sections that have a level."""
    indices = [
        CEFR_LEVELS.index(s.cefr_level)
        for s in sections
        if s.status == SectionStatus.COMPLETED and s.cefr_level is not None
    ]
    if not indices:
        return CEFR_LEVELS[0]
    return CEFR_LEVELS[sum(indices) // len(indices)]


def overall_percentage(sections: list[Section]) -> int:
    """Mean percentage over completed sections that have a level.

    A leveled section without a percentage adds nothing to the sum but still
    counts in the divisor.
    """
    leveled = [
        s for s in sections
        if s.status == SectionStatus.COMPLETED and s.cefr_level is not None
    ]
    if not leveled:
        return 0
    total = sum(s.percentage_score for s in leveled if s.percentage_score is not None)
    return round_half_up(total / len(leveled))


class ResultAggregator:

    def __init__(
        self,
        assessments: AssessmentRepository,
        sections: SectionRepository,
        events: EventRepository,
    ):
        self.assessments = assessments
        self.sections = sections
        self.events = events

    async def aggregate(self, assessment: Assessment, now: datetime) -> Optional[Assessment]:
        """Finalize ``assessment`` if all its sections are settled.

        Returns the updated assessment, or None while sections are still open.
        The caller holds the assessment lock and commits.
        """
        sections = await self.sections.list_for_assessment(assessment.id)
        if not sections or any(s.status not in SETTLED_SECTION_STATUSES for s in sections):
            return None

        level = overall_level(sections)
        score = overall_percentage(sections)
        recomputed = assessment.status == AssessmentStatus.COMPLETED

        assessment.status = AssessmentStatus.COMPLETED
        assessment.cefr_level = level
        assessment.score = score
        assessment.completed_at = assessment.completed_at or now
        for section in sections:
            setattr(assessment, _SKILL_LEVEL_FIELDS[section.skill], section.cefr_level)

        await self.assessments.save(assessment)
        await outbox.emit(
            self.events,
            outbox.RESULTS_READY,
            assessment.id,
            {
                "assessment_id": assessment.id,
                "student_id": assessment.student_id,
                "language": assessment.language,
                "cefr_level": level.value,
                "score": score,
                "recomputed": recomputed,
            },
            now,
        )
        logger.info(
            f"Assessment {assessment.id} {'recomputed' if recomputed else 'completed'}: "
            f"{level.value} ({score}%)"
        )
        return assessment


def section_result(section: Section) -> SectionResult:
    return SectionResult(
        id=section.id,
        skill=section.skill,
        status=section.status,
        cefr_level=section.cefr_level,
        cefr_name=LEVEL_NAMES[section.cefr_level] if section.cefr_level else "",
        percentage_score=section.percentage_score,
        raw_score=section.raw_score,
        max_score=section.max_score,
        ai_score=section.ai_score,
        teacher_score=section.teacher_score,
        final_score=section.final_score,
        teacher_reviewed=section.teacher_score is not None,
        questions_answered=len(section.answers),
        questions_total=section.questions_limit,
    )


def build_results(assessment: Assessment, sections: list[Section]) -> AssessmentResults:
    return AssessmentResults(
        id=assessment.id,
        student_id=assessment.student_id,
        language=assessment.language,
        assessment_type=assessment.assessment_type,
        status=assessment.status,
        is_multi_skill=assessment.is_multi_skill,
        score=assessment.score,
        cefr_level=assessment.cefr_level,
        cefr_name=LEVEL_NAMES[assessment.cefr_level] if assessment.cefr_level else "",
        started_at=assessment.started_at,
        completed_at=assessment.completed_at,
        reading_level=assessment.reading_level,
        listening_level=assessment.listening_level,
        writing_level=assessment.writing_level,
        speaking_level=assessment.speaking_level,
        violations_count=len(assessment.violations),
        sections=[section_result(s) for s in sections],
    )
