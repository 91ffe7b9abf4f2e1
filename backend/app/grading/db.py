import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON, Column, DateTime, Index, Integer, MetaData, String, Table, Text, UniqueConstraint, and_,
    create_engine, delete, func, insert, select, update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import PersistenceFailure, QueueTransportFailure
from .models import GradingJob, GradingOutcome, JobStatus, SubmissionStatus
from .schemas import Quiz, Submission
from .selection import ShuffleAssignment

logger = logging.getLogger(__name__)

JSONType = JSON().with_variant(JSONB(), "postgresql")

metadata = MetaData()

# ==========================================
# 1. Collaborator documents (read-mostly)
# ==========================================
quiz_table = Table(
    "quiz",
    metadata,
    Column("quiz_id", String(64), primary_key=True),
    Column("document", JSONType, nullable=False),
    Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now()),
)

submission_table = Table(
    "submission",
    metadata,
    Column("submission_id", String(64), primary_key=True),
    Column("quiz_id", String(64), nullable=False, index=True),
    Column("student_id", String(64), nullable=False, index=True),
    Column("answers", JSONType, nullable=False),
    Column("graded_answers", JSONType),
    # submitted -> queued -> processing -> completed | error
    Column("status", String(20), nullable=False, default=SubmissionStatus.SUBMITTED.value),
    Column("total_score", Integer, default=0),
    Column("max_score", Integer, default=0),
    Column("error_message", Text),
    Column("submitted_at", DateTime, server_default=func.now()),
    Column("completed_at", DateTime),
)

# ==========================================
# 2. Grading core tables
# ==========================================
shuffle_assignment_table = Table(
    "shuffle_assignment",
    metadata,
    Column("student_id", String(64), primary_key=True),
    Column("quiz_id", String(64), primary_key=True),
    Column("assignment", JSONType, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)

grading_job_table = Table(
    "grading_job",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("submission_id", String(64), nullable=False),
    Column("status", String(20), nullable=False, default=JobStatus.QUEUED.value),
    Column("attempts", Integer, nullable=False, default=0),
    Column("run_at", DateTime, nullable=False),
    Column("locked_at", DateTime),
    Column("last_error", Text),
    Column("created_at", DateTime, server_default=func.now()),
    Column("finished_at", DateTime),
    UniqueConstraint("submission_id", name="uq_grading_job_submission"),
    Index("ix_grading_job_status_run_at", "status", "run_at"),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def _guard(action: str):
    """Translate SQLAlchemy errors into the grading error taxonomy."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise QueueTransportFailure(f"{action} failed: database unavailable") from e
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"{action} failed: {type(e).__name__}") from e


class GradingStore:
    """Storage for quizzes, submissions, shuffle assignments and grading jobs."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "GradingStore":
        return cls(create_engine(database_url, pool_pre_ping=True))

    def create_schema(self):
        metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()

    # ============================================================
    # Quizzes & submissions
    # ============================================================

    def save_quiz(self, quiz: Quiz):
        document = quiz.model_dump(mode="json")
        with _guard("save quiz"), self.engine.begin() as conn:
            exists = conn.execute(
                select(quiz_table.c.quiz_id).where(quiz_table.c.quiz_id == quiz.id)
            ).fetchone()
            if exists:
                conn.execute(update(quiz_table).where(quiz_table.c.quiz_id == quiz.id).values(document=document))
            else:
                conn.execute(insert(quiz_table).values(quiz_id=quiz.id, document=document))

    def load_quiz(self, quiz_id: str) -> Optional[Quiz]:
        with _guard("load quiz"), self.engine.connect() as conn:
            row = conn.execute(
                select(quiz_table.c.document).where(quiz_table.c.quiz_id == quiz_id)
            ).fetchone()
        if not row:
            return None
        return Quiz.model_validate(row._mapping["document"])

    def save_submission(self, submission: Submission):
        with _guard("save submission"), self.engine.begin() as conn:
            conn.execute(
                insert(submission_table).values(
                    submission_id=submission.id,
                    quiz_id=submission.quiz_id,
                    student_id=submission.student_id,
                    answers=[a.model_dump(mode="json") for a in submission.answers],
                    status=submission.status,
                    max_score=submission.max_score,
                )
            )

    def load_submission(self, submission_id: str) -> Optional[Submission]:
        with _guard("load submission"), self.engine.connect() as conn:
            row = conn.execute(
                select(submission_table).where(submission_table.c.submission_id == submission_id)
            ).fetchone()
        if not row:
            return None

        m = row._mapping
        return Submission(
            id=m["submission_id"],
            quiz_id=m["quiz_id"],
            student_id=m["student_id"],
            answers=m["answers"] or [],
            status=m["status"],
            total_score=m["total_score"] or 0,
            max_score=m["max_score"] or 0,
            error_message=m["error_message"],
            graded_answers=m["graded_answers"],
        )

    def mark_submission(self, submission_id: str, status: SubmissionStatus, error_message: Optional[str] = None):
        with _guard("update submission"), self.engine.begin() as conn:
            conn.execute(
                update(submission_table)
                .where(submission_table.c.submission_id == submission_id)
                .values(status=status.value, error_message=error_message)
            )

    def complete_submission(self, submission_id: str, outcome: GradingOutcome):
        """Overwrite (never accumulate) the final score, so retries are safe."""
        with _guard("complete submission"), self.engine.begin() as conn:
            conn.execute(
                update(submission_table)
                .where(submission_table.c.submission_id == submission_id)
                .values(
                    status=SubmissionStatus.COMPLETED.value,
                    total_score=outcome.total_score,
                    max_score=outcome.max_score,
                    graded_answers=[a.as_dict() for a in outcome.graded_answers],
                    error_message=None,
                    completed_at=utcnow(),
                )
            )

    # ============================================================
    # Shuffle assignments
    # ============================================================

    def load_assignment(self, student_id: str, quiz_id: str) -> Optional[ShuffleAssignment]:
        with _guard("load assignment"), self.engine.connect() as conn:
            row = conn.execute(
                select(shuffle_assignment_table.c.assignment).where(
                    shuffle_assignment_table.c.student_id == student_id,
                    shuffle_assignment_table.c.quiz_id == quiz_id,
                )
            ).fetchone()
        if not row:
            return None
        return ShuffleAssignment.from_dict(row._mapping["assignment"])

    def save_assignment(self, assignment: ShuffleAssignment):
        try:
            with _guard("save assignment"), self.engine.begin() as conn:
                conn.execute(
                    insert(shuffle_assignment_table).values(
                        student_id=assignment.student_id,
                        quiz_id=assignment.quiz_id,
                        assignment=assignment.to_dict(),
                    )
                )
        except PersistenceFailure as e:
            # a concurrent first access stored the identical assignment
            if not isinstance(e.__cause__, IntegrityError):
                raise

    # ============================================================
    # Grading jobs
    # ============================================================

    def _job_by_submission(self, conn, submission_id: str) -> Optional[GradingJob]:
        row = conn.execute(
            select(grading_job_table).where(grading_job_table.c.submission_id == submission_id)
        ).fetchone()
        return GradingJob.from_row(row) if row else None

    def get_job(self, submission_id: str) -> Optional[GradingJob]:
        with _guard("load job"), self.engine.connect() as conn:
            return self._job_by_submission(conn, submission_id)

    def upsert_job(self, submission_id: str, run_at: datetime) -> GradingJob:
        """Queue a job; one row per submission, so at most one active job each."""
        with _guard("enqueue job"), self.engine.begin() as conn:
            job = self._job_by_submission(conn, submission_id)

            if job is None:
                conn.execute(
                    insert(grading_job_table).values(
                        submission_id=submission_id,
                        status=JobStatus.QUEUED.value,
                        attempts=0,
                        run_at=run_at,
                    )
                )
            elif job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                conn.execute(
                    update(grading_job_table)
                    .where(grading_job_table.c.id == job.id)
                    .values(
                        status=JobStatus.QUEUED.value, attempts=0, run_at=run_at,
                        locked_at=None, last_error=None, finished_at=None,
                    )
                )
            else:
                return job

            return self._job_by_submission(conn, submission_id)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(QueueTransportFailure),
        reraise=True,
    )
    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[GradingJob]:
        """Atomically move the oldest due queued job to active."""
        now = now or utcnow()
        with _guard("claim job"), self.engine.begin() as conn:
            row = conn.execute(
                select(grading_job_table.c.id)
                .where(
                    grading_job_table.c.status == JobStatus.QUEUED.value,
                    grading_job_table.c.run_at <= now,
                )
                .order_by(grading_job_table.c.run_at, grading_job_table.c.id)
                .limit(1)
            ).fetchone()
            if not row:
                return None

            job_id = row._mapping["id"]
            claimed = conn.execute(
                update(grading_job_table)
                .where(
                    grading_job_table.c.id == job_id,
                    grading_job_table.c.status == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.ACTIVE.value,
                    attempts=grading_job_table.c.attempts + 1,
                    locked_at=now,
                )
            )
            if claimed.rowcount != 1:
                # another worker got it first
                return None

            return GradingJob.from_row(
                conn.execute(select(grading_job_table).where(grading_job_table.c.id == job_id)).fetchone()
            )

    def _claimed(self, job: GradingJob, match_lock: bool = False):
        """Where-clause matching the row only while this claim still holds it."""
        c = grading_job_table.c
        clauses = [c.id == job.id, c.status == JobStatus.ACTIVE.value, c.attempts == job.attempts]
        if match_lock:
            clauses.append(c.locked_at == job.locked_at)
        return and_(*clauses)

    def _update_claimed(self, action: str, job: GradingJob, values: dict, match_lock: bool = False) -> bool:
        with _guard(action), self.engine.begin() as conn:
            result = conn.execute(
                update(grading_job_table).where(self._claimed(job, match_lock)).values(**values)
            )
            return result.rowcount == 1

    def heartbeat_job(self, job: GradingJob) -> bool:
        """Refresh the lease of a running job; False once another run owns it."""
        return self._update_claimed("heartbeat job", job, {"locked_at": utcnow()})

    def complete_job(self, job: GradingJob) -> bool:
        return self._update_claimed(
            "complete job", job,
            dict(status=JobStatus.COMPLETED.value, locked_at=None, last_error=None, finished_at=utcnow()),
        )

    def retry_job(self, job: GradingJob, run_at: datetime, error: str, match_lock: bool = False) -> bool:
        return self._update_claimed(
            "reschedule job", job,
            dict(status=JobStatus.QUEUED.value, run_at=run_at, locked_at=None, last_error=error),
            match_lock=match_lock,
        )

    def fail_job(self, job: GradingJob, error: str, match_lock: bool = False) -> bool:
        return self._update_claimed(
            "fail job", job,
            dict(status=JobStatus.FAILED.value, locked_at=None, last_error=error, finished_at=utcnow()),
            match_lock=match_lock,
        )

    def find_stalled_jobs(self, stall_timeout: float, now: Optional[datetime] = None) -> List[GradingJob]:
        cutoff = (now or utcnow()) - timedelta(seconds=stall_timeout)
        with _guard("find stalled jobs"), self.engine.connect() as conn:
            rows = conn.execute(
                select(grading_job_table).where(
                    grading_job_table.c.status == JobStatus.ACTIVE.value,
                    grading_job_table.c.locked_at <= cutoff,
                )
            ).fetchall()
        return [GradingJob.from_row(r) for r in rows]

    def count_jobs_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        with _guard("count jobs"), self.engine.connect() as conn:
            rows = conn.execute(
                select(grading_job_table.c.status, func.count()).group_by(grading_job_table.c.status)
            ).fetchall()
        for status, count in rows:
            counts[status] = count
        return counts

    def prune_job_history(self, keep_completed: int, keep_failed: int) -> int:
        """Keep only the most recent terminal jobs of each kind."""
        removed = 0
        with _guard("prune jobs"), self.engine.begin() as conn:
            for status, keep in ((JobStatus.COMPLETED, keep_completed), (JobStatus.FAILED, keep_failed)):
                stale_ids = [
                    r[0] for r in conn.execute(
                        select(grading_job_table.c.id)
                        .where(grading_job_table.c.status == status.value)
                        .order_by(grading_job_table.c.finished_at.desc(), grading_job_table.c.id.desc())
                        .offset(keep)
                    ).fetchall()
                ]
                if stale_ids:
                    conn.execute(delete(grading_job_table).where(grading_job_table.c.id.in_(stale_ids)))
                    removed += len(stale_ids)
        return removed
