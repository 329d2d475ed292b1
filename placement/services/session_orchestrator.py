"""
session_orchestrator.py - Assessment and section state machines

Assessments: ASSIGNED -> IN_PROGRESS -> COMPLETED
Sections:    PENDING -> IN_PROGRESS -> COMPLETED | SKIPPED

Provides:
- assign(student_id, language, config) - Create an assessment (and its sections)
- start_assessment / next_question / submit_answer / complete_assessment
- record_violation(assessment_id, violation_type) - Advisory proctoring log
- start_section / next_section_question / submit_section_answer
- submit_response(...) - Writing/speaking responses
- complete_section / skip_section
- apply_ai_score / submit_teacher_score / list_sections_for_review
- get_results(assessment_id) - Summary with per-section results

Expiry is pull-based: a run past its deadline is completed the next time
someone asks it for a question or sends it an answer, and the caller gets an
ordinary result flagged ``expired``.

Every public operation is one transaction. Writes are serialized per id with
the process-wide keyed locks, always taking the section before its assessment.
"""

import logging
import math
import uuid
from contextlib import asynccontextmanager, AsyncExitStack
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from placement.config import settings
from placement.db.repositories import (
    SqlAssessmentRepository,
    SqlEventRepository,
    SqlQuestionRepository,
    SqlResponseRepository,
    SqlSectionRepository,
)
from placement.models.assessment import (
    AnswerRecord,
    Assessment,
    AssessmentConfig,
    AssessmentStatus,
    CEFRLevel,
    OBJECTIVE_SKILLS,
    SECTION_DEFAULTS,
    ScoreBlob,
    Section,
    SectionResponse,
    SectionStatus,
    Skill,
    SUBJECTIVE_SKILLS,
    ViolationEvent,
    ViolationType,
)
from placement.models.results import (
    AssessmentResults,
    NextItemResult,
    Progress,
    ResponseResult,
    SubmitResult,
)
from placement.services import outbox
from placement.services.adaptive_selector import (
    SKILL_QUESTION_TYPES,
    adjust_target_level,
    select_next_question,
)
from placement.services.errors import (
    AccessDeniedError,
    DuplicateAnswerError,
    InvalidStateError,
    NotFoundError,
    OutOfOrderError,
    ValidationError,
)
from placement.services.locks import KeyedLock, run_locks
from placement.services.result_aggregator import ResultAggregator, build_results
from placement.services.scoring import is_correct_answer, round_half_up, score_answers

logger = logging.getLogger(__name__)

Run = Union[Assessment, Section]


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _is_expired(run: Run, now: datetime) -> bool:
    return run.expires_at is not None and now > run.expires_at


def _remaining_seconds(run: Run, now: datetime) -> Optional[int]:
    if run.expires_at is None:
        return None
    return max(0, math.ceil((run.expires_at - now).total_seconds()))


def _deadline(started_at: datetime, time_limit_min: Optional[int]) -> Optional[datetime]:
    if not time_limit_min:
        return None
    return started_at + timedelta(minutes=time_limit_min)


def _word_count(text: str) -> int:
    return len(text.split())


class SessionOrchestrator:

    def __init__(
        self,
        db=None,
        *,
        questions=None,
        assessments=None,
        sections=None,
        responses=None,
        events=None,
        locks: Optional[KeyedLock] = None,
    ):
        self.db = db
        self.questions = questions or SqlQuestionRepository(db)
        self.assessments = assessments or SqlAssessmentRepository(db)
        self.sections = sections or SqlSectionRepository(db)
        self.responses = responses or SqlResponseRepository(db)
        self.events = events or SqlEventRepository(db)
        self.locks = locks or run_locks
        self.aggregator = ResultAggregator(self.assessments, self.sections, self.events)

    # ── Plumbing ──────────────────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self, *lock_keys: str):
        """Hold the given locks, commit on success and roll back on error."""
        async with AsyncExitStack() as stack:
            for key in lock_keys:
                await stack.enter_async_context(self.locks.hold(key))
            try:
                yield
            except Exception:
                if self.db is not None:
                    await self.db.rollback()
                raise
            if self.db is not None:
                await self.db.commit()

    async def _load_assessment(self, assessment_id: str, student_id: Optional[str] = None) -> Assessment:
        assessment = await self.assessments.get(assessment_id)
        if assessment is None:
            raise NotFoundError("Assessment not found")
        if student_id is not None and assessment.student_id != student_id:
            raise AccessDeniedError("Access denied")
        return assessment

    async def _load_section(
        self, assessment_id: str, section_id: str, student_id: Optional[str] = None
    ) -> Tuple[Assessment, Section]:
        section = await self.sections.get(section_id)
        if section is None or section.assessment_id != assessment_id:
            raise NotFoundError("Section not found")
        assessment = await self._load_assessment(assessment_id, student_id)
        return assessment, section

    @staticmethod
    def _require_single_skill(assessment: Assessment) -> None:
        if assessment.is_multi_skill:
            raise InvalidStateError("Multi-skill assessments are taken section by section")

    # ── Assignment ────────────────────────────────────────────────────

    async def assign(
        self,
        student_id: str,
        language: str,
        config: Optional[AssessmentConfig] = None,
        now: Optional[datetime] = None,
    ) -> Assessment:
        """Create an assessment, or return the student's open one of the same kind."""
        now = _now(now)
        config = config or AssessmentConfig()
        language = (language or "").strip()
        if not student_id:
            raise ValidationError("student_id is required")
        if not language:
            raise ValidationError("language is required")

        try:
            target_level = CEFRLevel(config.target_level or settings.default_target_level)
        except ValueError:
            raise ValidationError(f"Unknown CEFR level: {settings.default_target_level}")

        async with self._transaction():
            existing = await self.assessments.find_open(
                student_id, language, config.assessment_type.value, config.is_multi_skill
            )
            if existing:
                logger.info(f"Student {student_id} already has open assessment {existing.id}")
                return existing

            if config.is_multi_skill:
                # Only the per-section timers apply
                questions_limit = sum(d.questions_limit for d in SECTION_DEFAULTS.values())
                time_limit_min = None
            else:
                questions_limit = config.questions_limit or settings.default_questions_limit
                time_limit_min = config.time_limit_min or settings.default_time_limit_min

            assessment = Assessment(
                id=uuid.uuid4().hex,
                student_id=student_id,
                language=language,
                assessment_type=config.assessment_type,
                is_multi_skill=config.is_multi_skill,
                status=AssessmentStatus.ASSIGNED,
                target_level=target_level,
                questions_limit=questions_limit,
                time_limit_min=time_limit_min,
                assigned_by=config.assigned_by,
                current_section=0 if config.is_multi_skill else None,
                assigned_at=now,
            )
            await self.assessments.add(assessment)

            if config.is_multi_skill:
                for skill, defaults in SECTION_DEFAULTS.items():
                    await self.sections.add(Section(
                        id=uuid.uuid4().hex,
                        assessment_id=assessment.id,
                        skill=skill,
                        order_index=defaults.order_index,
                        target_level=target_level,
                        questions_limit=defaults.questions_limit,
                        time_limit_min=defaults.time_limit_min,
                    ))

            await outbox.emit(
                self.events,
                outbox.ASSESSMENT_ASSIGNED,
                assessment.id,
                {
                    "assessment_id": assessment.id,
                    "student_id": student_id,
                    "language": language,
                    "assessment_type": assessment.assessment_type.value,
                    "is_multi_skill": assessment.is_multi_skill,
                    "assigned_by": assessment.assigned_by,
                },
                now,
            )

        logger.info(
            f"Assigned {assessment.assessment_type.value} assessment {assessment.id} "
            f"({language}, multi_skill={assessment.is_multi_skill}) to student {student_id}"
        )
        return assessment

    async def list_assessments(self, student_id: str) -> List[Assessment]:
        return await self.assessments.list_for_student(student_id)

    async def get_assessment(self, assessment_id: str, student_id: Optional[str] = None) -> Assessment:
        return await self._load_assessment(assessment_id, student_id)

    async def list_sections(self, assessment_id: str, student_id: Optional[str] = None) -> List[Section]:
        await self._load_assessment(assessment_id, student_id)
        return await self.sections.list_for_assessment(assessment_id)

    # ── Single-skill runs ─────────────────────────────────────────────

    async def start_assessment(
        self, assessment_id: str, student_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Assessment:
        now = _now(now)
        async with self._transaction(f"assessment:{assessment_id}"):
            assessment = await self._load_assessment(assessment_id, student_id)
            if assessment.status == AssessmentStatus.IN_PROGRESS:
                return assessment
            if assessment.status != AssessmentStatus.ASSIGNED:
                raise InvalidStateError("Assessment already completed")

            assessment.status = AssessmentStatus.IN_PROGRESS
            assessment.started_at = now
            assessment.expires_at = _deadline(now, assessment.time_limit_min)
            await self.assessments.save(assessment)

        logger.info(f"Started assessment {assessment_id} (expires {assessment.expires_at})")
        return assessment

    async def next_question(
        self, assessment_id: str, student_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> NextItemResult:
        now = _now(now)
        async with self._transaction(f"assessment:{assessment_id}"):
            assessment = await self._load_assessment(assessment_id, student_id)
            self._require_single_skill(assessment)
            return await self._serve_next(
                assessment,
                assessment.language,
                skill=None,
                save=self.assessments.save,
                complete=lambda: self._complete_assessment_locked(assessment, now),
                now=now,
            )

    async def submit_answer(
        self,
        assessment_id: str,
        question_id: str,
        answer: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubmitResult:
        now = _now(now)
        async with self._transaction(f"assessment:{assessment_id}"):
            assessment = await self._load_assessment(assessment_id, student_id)
            self._require_single_skill(assessment)
            return await self._record_answer(
                assessment,
                assessment.language,
                question_id,
                answer,
                save=self.assessments.save,
                complete=lambda: self._complete_assessment_locked(assessment, now),
                now=now,
            )

    async def complete_assessment(
        self, assessment_id: str, student_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Assessment:
        now = _now(now)
        async with self._transaction(f"assessment:{assessment_id}"):
            assessment = await self._load_assessment(assessment_id, student_id)
            self._require_single_skill(assessment)
            return await self._complete_assessment_locked(assessment, now)

    async def _complete_assessment_locked(self, assessment: Assessment, now: datetime) -> Assessment:
        if assessment.status != AssessmentStatus.IN_PROGRESS:
            raise InvalidStateError("Assessment is not in progress")

        result = score_answers(assessment.answers)
        assessment.status = AssessmentStatus.COMPLETED
        assessment.score = result.percentage
        assessment.cefr_level = result.cefr_level
        assessment.completed_at = now
        await self.assessments.save(assessment)

        await outbox.emit(
            self.events,
            outbox.ASSESSMENT_COMPLETED,
            assessment.id,
            {
                "assessment_id": assessment.id,
                "student_id": assessment.student_id,
                "language": assessment.language,
                "cefr_level": result.cefr_level.value,
                "score": result.percentage,
            },
            now,
        )
        logger.info(
            f"Completed assessment {assessment.id}: {result.cefr_level.value} "
            f"({result.percentage}%, {result.correct_answers}/{result.total_questions} correct)"
        )
        return assessment

    async def record_violation(
        self,
        assessment_id: str,
        violation_type: ViolationType,
        details: Optional[dict] = None,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Append a proctoring event while the assessment is in progress.

        Never raises: anything else, storage failures included, is dropped
        and reported as False.
        """
        now = _now(now)
        try:
            async with self._transaction(f"assessment:{assessment_id}"):
                assessment = await self.assessments.get(assessment_id)
                if assessment is None or (student_id is not None and assessment.student_id != student_id):
                    logger.warning(f"Dropped {violation_type} for unknown or foreign assessment {assessment_id}")
                    return False
                if assessment.status != AssessmentStatus.IN_PROGRESS:
                    logger.debug(f"Dropped {violation_type} for {assessment_id} ({assessment.status.value})")
                    return False

                assessment.violations.append(ViolationEvent(
                    type=violation_type,
                    occurred_at=now,
                    details={str(k): str(v) for k, v in (details or {}).items()},
                ))
                await self.assessments.save(assessment)
        except Exception as e:
            logger.error(f"Could not record {violation_type} for {assessment_id}: {e}")
            return False
        return True

    # ── Shared adaptive loop ──────────────────────────────────────────

    async def _serve_next(self, run: Run, language: str, skill, save, complete, now) -> NextItemResult:
        if run.status == AssessmentStatus.COMPLETED.value:
            return NextItemResult(is_complete=True, total_answered=len(run.answers))
        if run.status != AssessmentStatus.IN_PROGRESS.value:
            raise InvalidStateError(f"Cannot serve questions while {run.status.value}")

        if _is_expired(run, now):
            logger.info(f"{type(run).__name__} {run.id} expired, completing")
            await complete()
            return NextItemResult(is_complete=True, expired=True, total_answered=len(run.answers))

        if len(run.answers) >= run.questions_limit:
            return NextItemResult(is_complete=True, total_answered=len(run.answers))

        # Writing and speaking responses are not graded, so they do not move the level
        if skill not in SUBJECTIVE_SKILLS:
            new_level = adjust_target_level(run.answers, run.target_level)
            if new_level != run.target_level:
                logger.debug(f"{run.id} target level {run.target_level.value} -> {new_level.value}")
                run.target_level = new_level
                await save(run)

        question = await select_next_question(
            self.questions, run.answers, run.target_level, language, skill=skill
        )
        if question is None:
            return NextItemResult(is_complete=True, total_answered=len(run.answers))

        return NextItemResult(
            is_complete=False,
            total_answered=len(run.answers),
            question=question,
            progress=Progress(
                answered=len(run.answers),
                total=run.questions_limit,
                current_level=run.target_level,
            ),
            remaining_seconds=_remaining_seconds(run, now),
        )

    def _check_answerable(self, run: Run, question_id: str) -> None:
        if any(a.question_id == question_id for a in run.answers):
            raise DuplicateAnswerError("Question already answered")

    async def _load_question(self, question_id: str, language: str, skill: Optional[Skill] = None):
        """Load a question the run could have served: same language, active,
        and for sections either tagged with the section's skill or a
        skill-agnostic question of a type that skill accepts.
        """
        question = await self.questions.get(question_id)
        if question is None:
            raise NotFoundError("Question not found")
        if question.language != language:
            raise ValidationError("Question belongs to a different language")
        if not question.is_active:
            raise ValidationError("Question is not active")
        if skill is not None:
            if question.skill is None:
                matches = question.question_type in SKILL_QUESTION_TYPES.get(skill, ())
            else:
                matches = question.skill == skill
            if not matches:
                raise ValidationError(f"Question does not belong to a {skill.value} section")
        return question

    async def _record_answer(
        self, run: Run, language, question_id, answer, save, complete, now, skill=None
    ) -> SubmitResult:
        if run.status != AssessmentStatus.IN_PROGRESS.value:
            raise InvalidStateError("Not in progress")

        if _is_expired(run, now):
            logger.info(f"{type(run).__name__} {run.id} expired on submit, completing")
            await complete()
            return SubmitResult(
                is_correct=False,
                correct_answer="",
                points_earned=0,
                should_auto_complete=True,
                expired=True,
            )

        self._check_answerable(run, question_id)
        question = await self._load_question(question_id, language, skill)

        correct = is_correct_answer(answer, question.correct_answer)
        record = AnswerRecord(
            question_id=question_id,
            answer=answer,
            is_correct=correct,
            cefr_level=question.cefr_level,
            points_earned=question.points if correct else 0,
        )
        run.answers.append(record)
        await save(run)

        return SubmitResult(
            is_correct=correct,
            correct_answer=question.correct_answer,
            points_earned=record.points_earned,
            should_auto_complete=len(run.answers) >= run.questions_limit,
        )

    # ── Sections ──────────────────────────────────────────────────────

    def _section_locks(self, assessment_id: str, section_id: str) -> Tuple[str, str]:
        return f"section:{section_id}", f"assessment:{assessment_id}"

    @staticmethod
    def _begin_parent(assessment: Assessment, now: datetime) -> None:
        """The first section touched (started or skipped) starts the assessment."""
        if assessment.status == AssessmentStatus.ASSIGNED:
            assessment.status = AssessmentStatus.IN_PROGRESS
            assessment.started_at = now
            assessment.expires_at = _deadline(now, assessment.time_limit_min)

    async def start_section(
        self,
        assessment_id: str,
        section_id: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Section:
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)

            if section.status == SectionStatus.IN_PROGRESS:
                return section
            if section.status != SectionStatus.PENDING:
                raise InvalidStateError(f"Section already {section.status.value.lower()}")
            if assessment.status == AssessmentStatus.COMPLETED:
                raise InvalidStateError("Assessment already completed")

            siblings = await self.sections.list_for_assessment(assessment_id)
            blocking = [
                s for s in siblings
                if s.order_index < section.order_index
                and s.status not in (SectionStatus.COMPLETED, SectionStatus.SKIPPED)
            ]
            if blocking:
                raise OutOfOrderError(
                    f"Finish {', '.join(s.skill.value for s in blocking)} before {section.skill.value}"
                )

            self._begin_parent(assessment, now)
            assessment.current_section = section.order_index
            await self.assessments.save(assessment)

            section.status = SectionStatus.IN_PROGRESS
            section.started_at = now
            section.expires_at = _deadline(now, section.time_limit_min)
            await self.sections.save(section)

        logger.info(f"Started {section.skill.value} section {section_id} of assessment {assessment_id}")
        return section

    async def next_section_question(
        self,
        assessment_id: str,
        section_id: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NextItemResult:
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)
            return await self._serve_next(
                section,
                assessment.language,
                skill=section.skill,
                save=self.sections.save,
                complete=lambda: self._complete_section_locked(assessment, section, now),
                now=now,
            )

    async def submit_section_answer(
        self,
        assessment_id: str,
        section_id: str,
        question_id: str,
        answer: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubmitResult:
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)
            if section.skill not in OBJECTIVE_SKILLS:
                raise ValidationError(f"{section.skill.value} sections take responses, not answers")
            return await self._record_answer(
                section,
                assessment.language,
                question_id,
                answer,
                save=self.sections.save,
                complete=lambda: self._complete_section_locked(assessment, section, now),
                now=now,
                skill=section.skill,
            )

    async def submit_response(
        self,
        assessment_id: str,
        section_id: str,
        question_id: str,
        response_text: Optional[str] = None,
        audio_url: Optional[str] = None,
        duration_sec: Optional[int] = None,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResponseResult:
        """Store a writing (text) or speaking (audio) response for later scoring."""
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)

            if section.skill == Skill.WRITING:
                if not (response_text or "").strip():
                    raise ValidationError("response_text is required for writing")
            elif section.skill == Skill.SPEAKING:
                if not audio_url:
                    raise ValidationError("audio_url is required for speaking")
            else:
                raise ValidationError(f"{section.skill.value} sections take answers, not responses")

            if section.status != SectionStatus.IN_PROGRESS:
                raise InvalidStateError("Section is not in progress")
            if _is_expired(section, now):
                logger.info(f"Section {section.id} expired on response, completing")
                await self._complete_section_locked(assessment, section, now)
                return ResponseResult(should_auto_complete=True, expired=True)

            self._check_answerable(section, question_id)
            await self._load_question(question_id, assessment.language, section.skill)

            response = SectionResponse(
                id=uuid.uuid4().hex,
                section_id=section.id,
                assessment_id=assessment.id,
                question_id=question_id,
                student_id=assessment.student_id,
                response_text=response_text if section.skill == Skill.WRITING else None,
                audio_url=audio_url if section.skill == Skill.SPEAKING else None,
                duration_sec=duration_sec,
                word_count=_word_count(response_text) if section.skill == Skill.WRITING else None,
                created_at=now,
            )
            await self.responses.add(response)

            if section.skill == Skill.WRITING:
                summary = f"[Writing response: {response.word_count} words]"
            else:
                summary = f"[Speaking response: {duration_sec or 0}s]"
            section.answers.append(AnswerRecord(
                question_id=question_id,
                answer=summary,
                is_correct=False,
                cefr_level=section.target_level,
                points_earned=0,
                response_id=response.id,
            ))
            await self.sections.save(section)

        return ResponseResult(
            response=response,
            should_auto_complete=len(section.answers) >= section.questions_limit,
        )

    async def complete_section(
        self,
        assessment_id: str,
        section_id: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Section:
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)
            return await self._complete_section_locked(assessment, section, now)

    async def _complete_section_locked(self, assessment: Assessment, section: Section, now: datetime) -> Section:
        if section.status != SectionStatus.IN_PROGRESS:
            raise InvalidStateError("Section is not in progress")

        if section.skill in OBJECTIVE_SKILLS:
            result = score_answers(section.answers)
            section.raw_score = result.raw_score
            section.max_score = result.max_score
            section.percentage_score = result.percentage
            section.cefr_level = result.cefr_level

        section.status = SectionStatus.COMPLETED
        section.completed_at = now
        await self.sections.save(section)

        if section.skill in SUBJECTIVE_SKILLS:
            await outbox.emit(
                self.events,
                outbox.SECTION_COMPLETED,
                section.id,
                {
                    "section_id": section.id,
                    "assessment_id": assessment.id,
                    "student_id": assessment.student_id,
                    "skill": section.skill.value,
                },
                now,
            )

        logger.info(
            f"Completed {section.skill.value} section {section.id}: "
            f"{section.cefr_level.value if section.cefr_level else 'awaiting scoring'}"
        )
        await self.aggregator.aggregate(assessment, now)
        return section

    async def skip_section(
        self,
        assessment_id: str,
        section_id: str,
        student_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Section:
        now = _now(now)
        async with self._transaction(*self._section_locks(assessment_id, section_id)):
            assessment, section = await self._load_section(assessment_id, section_id, student_id)
            if section.status not in (SectionStatus.PENDING, SectionStatus.IN_PROGRESS):
                raise InvalidStateError(f"Section already {section.status.value.lower()}")

            if assessment.status == AssessmentStatus.ASSIGNED:
                self._begin_parent(assessment, now)
                await self.assessments.save(assessment)

            section.status = SectionStatus.SKIPPED
            section.completed_at = now
            await self.sections.save(section)
            logger.info(f"Skipped {section.skill.value} section {section.id}")
            await self.aggregator.aggregate(assessment, now)
        return section

    # ── Writing/speaking scores ───────────────────────────────────────

    async def _load_scored_section(self, section_id: str) -> Section:
        section = await self.sections.get(section_id)
        if section is None:
            raise NotFoundError("Section not found")
        if section.skill not in SUBJECTIVE_SKILLS:
            raise ValidationError("Only writing and speaking sections take external scores")
        return section

    async def get_section_for_scoring(self, section_id: str) -> Tuple[Section, List[SectionResponse]]:
        section = await self._load_scored_section(section_id)
        return section, await self.responses.list_for_section(section_id)

    async def apply_ai_score(self, section_id: str, blob: ScoreBlob, now: Optional[datetime] = None) -> Section:
        """Record an AI score; a teacher score already present keeps precedence."""
        now = _now(now)
        section = await self._load_scored_section(section_id)
        async with self._transaction(*self._section_locks(section.assessment_id, section_id)):
            assessment, section = await self._load_section(section.assessment_id, section_id)
            if section.status != SectionStatus.COMPLETED:
                raise InvalidStateError("Section is not completed")

            section.ai_score = blob
            section.percentage_score = round_half_up(blob.overall)
            if section.teacher_score is None:
                section.final_score = blob
                section.cefr_level = blob.cefr_level
            await self.sections.save(section)
            logger.info(f"AI score for section {section_id}: {blob.cefr_level.value} ({blob.overall})")
            await self.aggregator.aggregate(assessment, now)
        return section

    async def submit_teacher_score(
        self,
        section_id: str,
        teacher_id: str,
        blob: ScoreBlob,
        now: Optional[datetime] = None,
    ) -> Section:
        """Teacher review overrides the final score and level of the section."""
        now = _now(now)
        section = await self._load_scored_section(section_id)
        async with self._transaction(*self._section_locks(section.assessment_id, section_id)):
            assessment, section = await self._load_section(section.assessment_id, section_id)
            if section.status != SectionStatus.COMPLETED:
                raise InvalidStateError("Section is not completed")

            section.teacher_score = blob
            section.final_score = blob
            section.cefr_level = blob.cefr_level or section.cefr_level
            section.teacher_reviewed_by = teacher_id
            section.teacher_reviewed_at = now
            await self.sections.save(section)
            logger.info(f"Teacher {teacher_id} scored section {section_id}: {section.cefr_level.value}")
            await self.aggregator.aggregate(assessment, now)
        return section

    async def list_sections_for_review(self) -> List[Section]:
        return await self.sections.list_pending_review()

    # ── Results ───────────────────────────────────────────────────────

    async def get_results(self, assessment_id: str, student_id: Optional[str] = None) -> AssessmentResults:
        assessment = await self._load_assessment(assessment_id, student_id)
        sections = await self.sections.list_for_assessment(assessment_id)
        return build_results(assessment, sections)
