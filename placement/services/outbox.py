"""
outbox.py - Domain events and their consumer

State changes write events into ``domain_events`` in the same transaction;
this module delivers them to the external collaborators afterwards, so slow
or failing side effects never block or undo a transition.

Provides:
- emit(events, event_type, aggregate_id, payload, now) - Queue an event (caller commits)
- OutboxConsumer.process_pending(limit) - Deliver pending events
- run_outbox_worker(...) - Background polling loop started by the server
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from placement.config import settings
from placement.db.repositories import EventRepository, SqlEventRepository
from placement.models.assessment import CEFRLevel

logger = logging.getLogger(__name__)

ASSESSMENT_ASSIGNED = "assessment.assigned"
ASSESSMENT_COMPLETED = "assessment.completed"
SECTION_COMPLETED = "section.completed"
RESULTS_READY = "assessment.results_ready"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


async def emit(
    events: EventRepository,
    event_type: str,
    aggregate_id: str,
    payload: Dict[str, Any],
    now: datetime,
) -> str:
    event_id = uuid.uuid4().hex
    await events.add(event_id, event_type, aggregate_id, payload, now)
    logger.debug(f"Queued {event_type} for {aggregate_id}")
    return event_id


class OutboxConsumer:
    """Delivers pending events to collaborators, one event at a time.

    Each collaborator call is retried with exponential backoff. An event whose
    steps all succeed is marked completed; otherwise it is marked failed with
    the collected errors and is not retried again.
    """

    def __init__(
        self,
        db,
        collaborators,
        *,
        events: Optional[EventRepository] = None,
        max_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
    ):
        self.db = db
        self.collaborators = collaborators
        self.events = events or SqlEventRepository(db)
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.retry_wait = settings.outbox_retry_wait_sec if retry_wait is None else retry_wait
        self._handlers = {
            ASSESSMENT_ASSIGNED: self._on_assigned,
            ASSESSMENT_COMPLETED: self._on_assessment_completed,
            SECTION_COMPLETED: self._on_section_completed,
            RESULTS_READY: self._on_results_ready,
        }

    async def process_pending(self, limit: Optional[int] = None) -> int:
        batch = await self.events.fetch_pending(limit or settings.outbox_batch_size)
        for event in batch:
            await self._process(event)
        return len(batch)

    async def _process(self, event: Dict[str, Any]) -> None:
        event_type = event["event_type"]
        handler = self._handlers.get(event_type)
        errors: List[str] = []
        attempts = 0

        if handler is None:
            errors.append(f"no handler for {event_type}")
        else:
            steps = handler(event["payload"])
            for name, step in steps:
                used, error = await self._run_step(step)
                attempts = max(attempts, used)
                if error:
                    logger.error(f"Outbox {event_type} {event['id']}: {name} failed: {error}")
                    errors.append(f"{name}: {error}")

        now = datetime.now(timezone.utc)
        if errors:
            await self.events.mark_failed(event["id"], attempts, "; ".join(errors), now)
        else:
            await self.events.mark_processed(event["id"], attempts, now)
        await self.db.commit()

    async def _run_step(self, step: Callable[[], Awaitable[None]]):
        """Run one collaborator call with retries; return (attempts, error or None)."""
        attempt_number = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                reraise=True,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    await step()
        except Exception as e:
            return attempt_number, str(e) or type(e).__name__
        return attempt_number, None

    # ── Handlers: each returns (name, zero-arg coroutine function) steps ──

    def _on_assigned(self, payload):
        notifications = self.collaborators.notifications
        return [(
            "notify_assigned",
            lambda: notifications.assessment_assigned(payload["student_id"], payload),
        )]

    def _on_assessment_completed(self, payload):
        return [self._profile_step(payload)]

    def _on_results_ready(self, payload):
        student_id = payload["student_id"]
        certificates = self.collaborators.certificates
        notifications = self.collaborators.notifications
        return [
            self._profile_step(payload),
            ("certificate", lambda: certificates.generate_for_assessment(student_id, payload["assessment_id"])),
            ("notify_results", lambda: notifications.results_ready(student_id, payload)),
        ]

    def _profile_step(self, payload):
        profile = self.collaborators.profile

        async def update():
            if not payload.get("cefr_level"):
                logger.debug(f"No level to record for student {payload['student_id']}")
                return
            await profile.update_language_level(payload["student_id"], CEFRLevel(payload["cefr_level"]))

        return ("profile_level", update)

    def _on_section_completed(self, payload):
        ai_scorer = self.collaborators.ai_scorer
        if ai_scorer is None:
            logger.info(f"No AI scorer configured, section {payload['section_id']} awaits teacher review")
            return []

        async def score():
            from placement.services.session_orchestrator import SessionOrchestrator

            orchestrator = SessionOrchestrator(self.db)
            section, responses = await orchestrator.get_section_for_scoring(payload["section_id"])
            blob = await ai_scorer.score_section(section, responses)
            await orchestrator.apply_ai_score(payload["section_id"], blob)

        return [("ai_score", score)]


async def run_outbox_worker(
    open_db,
    collaborators_factory,
    poll_interval: Optional[float] = None,
) -> None:
    """Poll the outbox until cancelled."""
    interval = poll_interval or settings.outbox_poll_interval_sec
    logger.info(f"Outbox worker started (every {interval}s)")
    while True:
        try:
            async with open_db() as db:
                consumer = OutboxConsumer(db, collaborators_factory(db))
                processed = await consumer.process_pending()
                if processed:
                    logger.info(f"Outbox delivered {processed} event(s)")
        except Exception as e:
            logger.error(f"Outbox poll failed: {e}")
        await asyncio.sleep(interval)
