"""
collaborators.py - External services the placement engine talks to

Provides:
- StudentProfile - Record a student's new proficiency level
- NotificationService - Assignment and results notifications
- CertificateIssuer - Certificate generation for finished assessments
- AiScoringService - Scores writing/speaking responses
- Collaborators - Bundle handed to the outbox consumer
- default_collaborators(db) - Database-backed profile, log-only notifications/certificates

All of them are only ever called from the outbox consumer, after the state
change that triggered them has been committed.
"""

import abc
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from placement.db.repositories import SqlStudentRepository, StudentRepository
from placement.models.assessment import CEFRLevel, ScoreBlob, Section, SectionResponse

logger = logging.getLogger(__name__)


class StudentProfile(abc.ABC):

    @abc.abstractmethod
    async def update_language_level(self, student_id: str, level: CEFRLevel) -> None:
        pass


class NotificationService(abc.ABC):

    @abc.abstractmethod
    async def assessment_assigned(self, student_id: str, details: Dict[str, Any]) -> None:
        pass

    @abc.abstractmethod
    async def results_ready(self, student_id: str, details: Dict[str, Any]) -> None:
        pass


class CertificateIssuer(abc.ABC):

    @abc.abstractmethod
    async def generate_for_assessment(self, student_id: str, assessment_id: str) -> None:
        pass


class AiScoringService(abc.ABC):

    @abc.abstractmethod
    async def score_section(self, section: Section, responses: List[SectionResponse]) -> ScoreBlob:
        """Return a score blob carrying at least ``overall`` and ``cefrLevel``."""


# ── Defaults ──────────────────────────────────────────────────────────

class DbStudentProfile(StudentProfile):
    """Writes the level to the students table; the caller commits."""

    def __init__(self, students: StudentRepository):
        self.students = students

    async def update_language_level(self, student_id, level):
        await self.students.update_level(student_id, CEFRLevel(level), datetime.now(timezone.utc))
        logger.info(f"Student {student_id} level set to {CEFRLevel(level).value}")


class LoggingNotificationService(NotificationService):

    async def assessment_assigned(self, student_id, details):
        logger.info(f"[notify] assessment {details.get('assessment_id')} assigned to student {student_id}")

    async def results_ready(self, student_id, details):
        logger.info(
            f"[notify] results ready for student {student_id}: "
            f"{details.get('cefr_level')} ({details.get('score')}%)"
        )


class LoggingCertificateIssuer(CertificateIssuer):

    async def generate_for_assessment(self, student_id, assessment_id):
        logger.info(f"[certificate] requested for assessment {assessment_id} (student {student_id})")


class Collaborators:

    def __init__(
        self,
        profile: StudentProfile,
        notifications: NotificationService,
        certificates: CertificateIssuer,
        ai_scorer: Optional[AiScoringService] = None,
    ):
        self.profile = profile
        self.notifications = notifications
        self.certificates = certificates
        self.ai_scorer = ai_scorer


def default_collaborators(db) -> Collaborators:
    return Collaborators(
        profile=DbStudentProfile(SqlStudentRepository(db)),
        notifications=LoggingNotificationService(),
        certificates=LoggingCertificateIssuer(),
    )
