"""
test_session_orchestrator.py - Single-skill assessment lifecycle

Tests:
- assign defaults, dedupe and validation
- start / idempotent start / terminal state
- adaptive loop: level walks with answers, limit reached, bank exhausted
- duplicate answers, ownership, state guards
- lazy expiry on next_question and submit_answer
- completion scoring and outbox events
- violation recording never raises
- concurrent submits are serialized
"""

import asyncio
import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from placement.db.repositories import AssessmentRepository
from placement.models.assessment import (
    AssessmentConfig,
    AssessmentStatus,
    CEFRLevel,
    ViolationType,
)
from placement.services.errors import (
    AccessDeniedError,
    DuplicateAnswerError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from placement.services.outbox import ASSESSMENT_ASSIGNED, ASSESSMENT_COMPLETED
from placement.services.session_orchestrator import SessionOrchestrator


async def event_types(db):
    cursor = await db.execute("SELECT event_type FROM domain_events")
    return [row["event_type"] for row in await cursor.fetchall()]


async def started(db, t0, **config):
    orchestrator = SessionOrchestrator(db)
    assessment = await orchestrator.assign("stu-1", "en", AssessmentConfig(**config), now=t0)
    await orchestrator.start_assessment(assessment.id, student_id="stu-1", now=t0)
    return orchestrator, assessment.id


class TestAssign:

    def test_defaults_and_assigned_event(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                assessment = await SessionOrchestrator(db).assign("stu-1", "en", now=t0)

                assert assessment.status == AssessmentStatus.ASSIGNED
                assert assessment.target_level == CEFRLevel.B1
                assert assessment.questions_limit == 20
                assert assessment.assigned_at == t0
                assert await event_types(db) == [ASSESSMENT_ASSIGNED]

        asyncio.run(scenario())

    def test_returns_existing_open_assessment(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                first = await orchestrator.assign("stu-1", "en", now=t0)
                second = await orchestrator.assign("stu-1", "en", now=t0)
                other_language = await orchestrator.assign("stu-1", "es", now=t0)

                assert second.id == first.id
                assert other_language.id != first.id
                assert len(await orchestrator.list_assessments("stu-1")) == 2

        asyncio.run(scenario())

    def test_rejects_blank_language(self, memory_db):
        async def scenario():
            async with memory_db() as db:
                with pytest.raises(ValidationError):
                    await SessionOrchestrator(db).assign("stu-1", "  ")

        asyncio.run(scenario())

    def test_custom_config(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                config = AssessmentConfig(target_level=CEFRLevel.A2, questions_limit=5, time_limit_min=30)
                assessment = await SessionOrchestrator(db).assign("stu-1", "en", config, now=t0)
                assert assessment.target_level == CEFRLevel.A2
                assert assessment.questions_limit == 5
                assert assessment.time_limit_min == 30

        asyncio.run(scenario())


class TestStart:

    def test_sets_timer_once(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator, assessment_id = await started(db, t0, time_limit_min=30)
                again = await orchestrator.start_assessment(assessment_id, now=t0 + timedelta(minutes=5))

                assert again.status == AssessmentStatus.IN_PROGRESS
                assert again.started_at == t0
                assert again.expires_at == t0 + timedelta(minutes=30)

        asyncio.run(scenario())

    def test_untimed_has_no_deadline(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator, assessment_id = await started(db, t0)
                assessment = await orchestrator.get_assessment(assessment_id)
                assert assessment.expires_at is None

        asyncio.run(scenario())

    def test_other_student_denied(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign("stu-1", "en", now=t0)
                with pytest.raises(AccessDeniedError):
                    await orchestrator.start_assessment(assessment.id, student_id="stu-2")
                with pytest.raises(NotFoundError):
                    await orchestrator.start_assessment("missing")

        asyncio.run(scenario())


class TestAdaptiveLoop:

    def test_level_steps_up_after_three_correct(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0)

                for _ in range(3):
                    item = await orchestrator.next_question(assessment_id, now=t0)
                    assert item.question.cefr_level == CEFRLevel.B1
                    await orchestrator.submit_answer(assessment_id, item.question.id, " A ", now=t0)

                item = await orchestrator.next_question(assessment_id, now=t0)
                assert item.is_complete is False
                assert item.question.cefr_level == CEFRLevel.B2
                assert item.progress.answered == 3
                assert item.progress.total == 20
                assert item.progress.current_level == CEFRLevel.B2
                assert item.remaining_seconds is None

                assessment = await orchestrator.get_assessment(assessment_id)
                assert assessment.target_level == CEFRLevel.B2

        asyncio.run(scenario())

    def test_level_steps_down_after_three_wrong(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0)

                for _ in range(3):
                    item = await orchestrator.next_question(assessment_id, now=t0)
                    result = await orchestrator.submit_answer(assessment_id, item.question.id, "zzz", now=t0)
                    assert result.is_correct is False
                    assert result.correct_answer == "a"
                    assert result.points_earned == 0

                item = await orchestrator.next_question(assessment_id, now=t0)
                assert item.question.cefr_level == CEFRLevel.A2

        asyncio.run(scenario())

    def test_limit_reached_is_complete_without_mutation(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0, questions_limit=2)

                results = []
                for _ in range(2):
                    item = await orchestrator.next_question(assessment_id, now=t0)
                    results.append(await orchestrator.submit_answer(assessment_id, item.question.id, "a", now=t0))
                assert [r.should_auto_complete for r in results] == [False, True]

                for _ in range(2):
                    item = await orchestrator.next_question(assessment_id, now=t0)
                    assert item.is_complete is True
                    assert item.expired is False
                    assert item.total_answered == 2

                assessment = await orchestrator.get_assessment(assessment_id)
                assert assessment.status == AssessmentStatus.IN_PROGRESS

        asyncio.run(scenario())

    def test_exhausted_bank_completes_the_loop(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                await add_question(db, "only", "B1")
                orchestrator, assessment_id = await started(db, t0)

                item = await orchestrator.next_question(assessment_id, now=t0)
                await orchestrator.submit_answer(assessment_id, item.question.id, "a", now=t0)
                item = await orchestrator.next_question(assessment_id, now=t0)
                assert item.is_complete is True
                assert item.question is None

        asyncio.run(scenario())

    def test_next_before_start_is_invalid(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign("stu-1", "en", now=t0)
                with pytest.raises(InvalidStateError):
                    await orchestrator.next_question(assessment.id, now=t0)

        asyncio.run(scenario())


class TestSubmitAnswer:

    def test_duplicate_answer_rejected(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0)
                await orchestrator.submit_answer(assessment_id, "b1-0", "a", now=t0)
                with pytest.raises(DuplicateAnswerError):
                    await orchestrator.submit_answer(assessment_id, "b1-0", "b", now=t0)

                assessment = await orchestrator.get_assessment(assessment_id)
                assert len(assessment.answers) == 1

        asyncio.run(scenario())

    def test_unknown_question(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator, assessment_id = await started(db, t0)
                with pytest.raises(NotFoundError):
                    await orchestrator.submit_answer(assessment_id, "nope", "a", now=t0)

        asyncio.run(scenario())

    def test_requires_in_progress(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign("stu-1", "en", now=t0)
                with pytest.raises(InvalidStateError):
                    await orchestrator.submit_answer(assessment.id, "b1-0", "a", now=t0)

        asyncio.run(scenario())

    def test_other_student_denied(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0)
                with pytest.raises(AccessDeniedError):
                    await orchestrator.submit_answer(assessment_id, "b1-0", "a", student_id="stu-2", now=t0)

        asyncio.run(scenario())

    def test_concurrent_submits_keep_both_answers(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                _, assessment_id = await started(db, t0)

                await asyncio.gather(
                    SessionOrchestrator(db).submit_answer(assessment_id, "b1-0", "a", now=t0),
                    SessionOrchestrator(db).submit_answer(assessment_id, "b1-1", "a", now=t0),
                    SessionOrchestrator(db).submit_answer(assessment_id, "b1-2", "a", now=t0),
                )
                assessment = await SessionOrchestrator(db).get_assessment(assessment_id)
                assert sorted(a.question_id for a in assessment.answers) == ["b1-0", "b1-1", "b1-2"]

        asyncio.run(scenario())


class TestExpiry:

    def test_next_after_deadline_completes(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0, time_limit_min=10)

                item = await orchestrator.next_question(assessment_id, now=t0 + timedelta(minutes=9))
                assert item.remaining_seconds == 60

                item = await orchestrator.next_question(assessment_id, now=t0 + timedelta(minutes=10, seconds=1))
                assert item.is_complete is True
                assert item.expired is True

                assessment = await orchestrator.get_assessment(assessment_id)
                assert assessment.status == AssessmentStatus.COMPLETED
                assert assessment.expires_at == t0 + timedelta(minutes=10)
                assert ASSESSMENT_COMPLETED in await event_types(db)

        asyncio.run(scenario())

    def test_deadline_itself_is_not_expired(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0, time_limit_min=10)
                item = await orchestrator.next_question(assessment_id, now=t0 + timedelta(minutes=10))
                assert item.is_complete is False
                assert item.remaining_seconds == 0

        asyncio.run(scenario())

    def test_submit_after_deadline_reports_expired(self, memory_db, add_ladder, t0):
        async def scenario():
            async with memory_db() as db:
                await add_ladder(db)
                orchestrator, assessment_id = await started(db, t0, time_limit_min=10)
                result = await orchestrator.submit_answer(
                    assessment_id, "b1-0", "a", now=t0 + timedelta(minutes=11)
                )
                assert result.expired is True
                assert result.should_auto_complete is True

                assessment = await orchestrator.get_assessment(assessment_id)
                assert assessment.status == AssessmentStatus.COMPLETED
                assert assessment.answers == []

                # A completed run answers politely and takes no more answers
                item = await orchestrator.next_question(assessment_id, now=t0 + timedelta(minutes=12))
                assert item.is_complete is True
                with pytest.raises(InvalidStateError):
                    await orchestrator.submit_answer(assessment_id, "b1-1", "a", now=t0 + timedelta(minutes=12))

        asyncio.run(scenario())


class TestComplete:

    def test_scores_answers(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                for i in range(3):
                    await add_question(db, f"a1-{i}", "A1", correct_answer="yes")
                    await add_question(db, f"b1-{i}", "B1", correct_answer="yes")
                orchestrator, assessment_id = await started(db, t0, questions_limit=6)

                for i in range(3):
                    await orchestrator.submit_answer(assessment_id, f"a1-{i}", "Yes", now=t0)
                    await orchestrator.submit_answer(assessment_id, f"b1-{i}", "no", now=t0)

                assessment = await orchestrator.complete_assessment(assessment_id, now=t0 + timedelta(minutes=3))
                assert assessment.status == AssessmentStatus.COMPLETED
                assert assessment.score == 33
                assert assessment.cefr_level == CEFRLevel.A1
                assert assessment.completed_at == t0 + timedelta(minutes=3)

                with pytest.raises(InvalidStateError):
                    await orchestrator.complete_assessment(assessment_id)

        asyncio.run(scenario())

    def test_multi_skill_cannot_use_single_run_operations(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign(
                    "stu-1", "en", AssessmentConfig(is_multi_skill=True), now=t0
                )
                await orchestrator.start_assessment(assessment.id, now=t0)
                with pytest.raises(InvalidStateError):
                    await orchestrator.next_question(assessment.id, now=t0)
                with pytest.raises(InvalidStateError):
                    await orchestrator.complete_assessment(assessment.id, now=t0)

        asyncio.run(scenario())


class TestViolations:

    def test_recorded_only_while_in_progress(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign("stu-1", "en", now=t0)

                assert await orchestrator.record_violation(assessment.id, ViolationType.TAB_SWITCH, now=t0) is False

                await orchestrator.start_assessment(assessment.id, now=t0)
                assert await orchestrator.record_violation(
                    assessment.id, ViolationType.COPY_PASTE, {"chars": 120}, now=t0
                ) is True

                await orchestrator.complete_assessment(assessment.id, now=t0)
                assert await orchestrator.record_violation(assessment.id, ViolationType.WINDOW_BLUR, now=t0) is False

                stored = await orchestrator.get_assessment(assessment.id)
                assert [v.type for v in stored.violations] == [ViolationType.COPY_PASTE]
                assert stored.violations[0].details == {"chars": "120"}

        asyncio.run(scenario())

    def test_never_raises(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assert await orchestrator.record_violation("missing", ViolationType.OTHER) is False

                assessment = await orchestrator.assign("stu-1", "en", now=t0)
                await orchestrator.start_assessment(assessment.id, now=t0)
                assert await orchestrator.record_violation(
                    assessment.id, ViolationType.OTHER, student_id="stu-2"
                ) is False

        asyncio.run(scenario())

    def test_storage_failure_is_reported_not_raised(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                failing = AsyncMock(spec=AssessmentRepository)
                failing.get.side_effect = sqlite3.OperationalError("database is locked")
                orchestrator = SessionOrchestrator(db, assessments=failing)

                assert await orchestrator.record_violation("a-1", ViolationType.TAB_SWITCH, now=t0) is False
                failing.save.assert_not_awaited()

        asyncio.run(scenario())
