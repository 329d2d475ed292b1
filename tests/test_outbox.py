"""
test_outbox.py - Delivery of domain events to external collaborators

Tests:
- assigned / completed / results_ready events reach their collaborators
- a failing collaborator is retried, then the event is marked failed
  without skipping the other collaborators of the same event
- section.completed drives AI scoring back into the section
- missing AI scorer leaves the section for teacher review
- the default profile writes the student's level
"""

import asyncio
from unittest.mock import AsyncMock

from placement.db.repositories import SqlStudentRepository
from placement.models.assessment import AssessmentConfig, CEFRLevel, ScoreBlob, Skill
from placement.services.collaborators import (
    AiScoringService,
    CertificateIssuer,
    Collaborators,
    NotificationService,
    StudentProfile,
    default_collaborators,
)
from placement.services.outbox import OutboxConsumer, RESULTS_READY
from placement.services.session_orchestrator import SessionOrchestrator


def mock_collaborators(ai_scorer=None):
    return Collaborators(
        profile=AsyncMock(spec=StudentProfile),
        notifications=AsyncMock(spec=NotificationService),
        certificates=AsyncMock(spec=CertificateIssuer),
        ai_scorer=ai_scorer,
    )


async def event_rows(db):
    cursor = await db.execute(
        "SELECT event_type, status, attempts, last_error FROM domain_events ORDER BY event_type"
    )
    return [dict(row) for row in await cursor.fetchall()]


async def finished_single_skill(db, add_question, t0):
    await add_question(db, "q1", "A2", correct_answer="yes")
    orchestrator = SessionOrchestrator(db)
    assessment = await orchestrator.assign("stu-1", "en", AssessmentConfig(questions_limit=1), now=t0)
    await orchestrator.start_assessment(assessment.id, now=t0)
    await orchestrator.submit_answer(assessment.id, "q1", "yes", now=t0)
    await orchestrator.complete_assessment(assessment.id, now=t0)
    return assessment.id


class TestDelivery:

    def test_single_skill_events(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                assessment_id = await finished_single_skill(db, add_question, t0)
                collaborators = mock_collaborators()

                processed = await OutboxConsumer(db, collaborators, retry_wait=0).process_pending()
                assert processed == 2

                collaborators.notifications.assessment_assigned.assert_awaited_once()
                student_id, details = collaborators.notifications.assessment_assigned.await_args.args
                assert student_id == "stu-1"
                assert details["assessment_id"] == assessment_id
                collaborators.profile.update_language_level.assert_awaited_once_with("stu-1", CEFRLevel.A2)

                rows = await event_rows(db)
                assert [r["status"] for r in rows] == ["completed", "completed"]
                assert await OutboxConsumer(db, collaborators, retry_wait=0).process_pending() == 0

        asyncio.run(scenario())

    def test_failing_collaborator_is_retried_then_failed(self, memory_db, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator = SessionOrchestrator(db)
                assessment = await orchestrator.assign(
                    "stu-1", "en", AssessmentConfig(is_multi_skill=True), now=t0
                )
                for section in await orchestrator.list_sections(assessment.id):
                    await orchestrator.skip_section(assessment.id, section.id, now=t0)

                collaborators = mock_collaborators()
                collaborators.certificates.generate_for_assessment.side_effect = RuntimeError("pdf service down")

                await OutboxConsumer(db, collaborators, max_attempts=3, retry_wait=0).process_pending()

                assert collaborators.certificates.generate_for_assessment.await_count == 3
                collaborators.notifications.results_ready.assert_awaited_once()
                collaborators.profile.update_language_level.assert_awaited_once_with("stu-1", CEFRLevel.A1)

                rows = {r["event_type"]: r for r in await event_rows(db)}
                failed = rows[RESULTS_READY]
                assert failed["status"] == "failed"
                assert failed["attempts"] == 3
                assert "pdf service down" in failed["last_error"]

        asyncio.run(scenario())

    def test_transient_failure_recovers(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                await finished_single_skill(db, add_question, t0)
                collaborators = mock_collaborators()
                collaborators.profile.update_language_level.side_effect = [ConnectionError("blip"), None]

                await OutboxConsumer(db, collaborators, retry_wait=0).process_pending()

                rows = await event_rows(db)
                assert all(r["status"] == "completed" for r in rows)
                assert collaborators.profile.update_language_level.await_count == 2

        asyncio.run(scenario())


class TestAiScoring:

    async def _completed_writing(self, db, add_question, t0):
        await add_question(db, "w-0", "B1", skill=Skill.WRITING, correct_answer="")
        orchestrator = SessionOrchestrator(db)
        assessment = await orchestrator.assign("stu-1", "en", AssessmentConfig(is_multi_skill=True), now=t0)
        ids = {s.skill: s.id for s in await orchestrator.list_sections(assessment.id)}
        for skill in (Skill.READING, Skill.LISTENING):
            await orchestrator.skip_section(assessment.id, ids[skill], now=t0)
        await orchestrator.start_section(assessment.id, ids[Skill.WRITING], now=t0)
        await orchestrator.submit_response(
            assessment.id, ids[Skill.WRITING], "w-0", response_text="Dear Sir or Madam", now=t0
        )
        await orchestrator.complete_section(assessment.id, ids[Skill.WRITING], now=t0)
        await orchestrator.skip_section(assessment.id, ids[Skill.SPEAKING], now=t0)
        return orchestrator, assessment.id, ids[Skill.WRITING]

    def test_ai_score_applied_to_section(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator, assessment_id, writing_id = await self._completed_writing(db, add_question, t0)

                ai_scorer = AsyncMock(spec=AiScoringService)
                ai_scorer.score_section.return_value = ScoreBlob(overall=64, cefr_level=CEFRLevel.B1)
                consumer = OutboxConsumer(db, mock_collaborators(ai_scorer), retry_wait=0)
                await consumer.process_pending()

                section, responses = ai_scorer.score_section.await_args.args
                assert section.id == writing_id
                assert [r.response_text for r in responses] == ["Dear Sir or Madam"]

                results = await orchestrator.get_results(assessment_id)
                assert results.writing_level == CEFRLevel.B1
                assert results.cefr_level == CEFRLevel.B1
                assert results.score == 64

                # Recomputation queued a fresh results_ready event
                assert await consumer.process_pending() == 1

        asyncio.run(scenario())

    def test_without_ai_scorer_section_waits_for_teacher(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                orchestrator, assessment_id, writing_id = await self._completed_writing(db, add_question, t0)
                await OutboxConsumer(db, mock_collaborators(), retry_wait=0).process_pending()

                sections = await orchestrator.list_sections(assessment_id)
                assert sections[2].ai_score is None
                assert all(r["status"] == "completed" for r in await event_rows(db))

        asyncio.run(scenario())


class TestDefaultCollaborators:

    def test_profile_level_written_to_students(self, memory_db, add_question, t0):
        async def scenario():
            async with memory_db() as db:
                await finished_single_skill(db, add_question, t0)
                await OutboxConsumer(db, default_collaborators(db), retry_wait=0).process_pending()

                assert await SqlStudentRepository(db).get_level("stu-1") == CEFRLevel.A2

        asyncio.run(scenario())
