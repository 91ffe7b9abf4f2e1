import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from .config import Settings
from .db import GradingStore, utcnow
from .errors import RETRYABLE_ERRORS, GradingError, JobLeaseLost, QueueTransportFailure
from .grader import grade_answers
from .models import GradingJob, GradingOutcome, SubmissionStatus
from .sandbox_runner import SandboxExecutor
from .selection import get_or_create_assignment

logger = logging.getLogger(__name__)


class GradingQueue:
    """
    Durable grading queue backed by the grading_job table.

    A fixed pool of workers each runs one job at a time, so the pool size
    bounds how many sandboxes are alive at once. Extra submissions wait in
    the table. Infrastructure failures are retried with exponential backoff;
    everything else ends the job.
    """

    def __init__(self, store: GradingStore, executor: SandboxExecutor, settings: Settings):
        self.store = store
        self.executor = executor
        self.settings = settings
        self._workers: List[asyncio.Task] = []
        self._maintenance: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._closed = False
        self.active_submissions = set()

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self):
        """Start workers (call once at application startup)."""
        if self._workers:
            return

        self._stopping = asyncio.Event()
        self._closed = False
        await run_in_threadpool(self.recover_stalled)

        for i in range(self.settings.concurrency):
            self._workers.append(asyncio.create_task(self._worker(i)))
        self._maintenance = asyncio.create_task(self._maintenance_loop())
        logger.info(f"GradingQueue started with {self.settings.concurrency} workers.")

    async def shutdown(self, timeout: float = 30.0):
        """Stop taking jobs and let in-flight jobs finish."""
        self._closed = True
        if not self._workers:
            return

        self._stopping.set()
        tasks = list(self._workers)
        if self._maintenance:
            tasks.append(self._maintenance)

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            # left ACTIVE in the table; recovered as stalled on next start
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"GradingQueue shutdown cancelled {len(pending)} task(s) after {timeout}s")

        self._workers = []
        self._maintenance = None
        logger.info("GradingQueue stopped.")

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, worker_id: int):
        while not self._stopping.is_set():
            try:
                # tenacity backs off with blocking sleeps; keep them off the event loop
                job = await run_in_threadpool(self.store.claim_next_job)
            except GradingError as e:
                logger.error(f"GradingQueue Worker {worker_id} cannot claim a job: {e}")
                await self._idle(self.settings.poll_interval * 5)
                continue

            if job is None:
                await self._idle(self.settings.poll_interval)
                continue

            logger.info(f"GradingQueue Worker {worker_id} starting job [{job.submission_id}]...")
            await self.process_job(job)

    async def _maintenance_loop(self):
        interval = max(self.settings.poll_interval, self.settings.stall_timeout / 10)
        while not self._stopping.is_set():
            await self._idle(interval)
            if self._stopping.is_set():
                break
            try:
                await run_in_threadpool(self.recover_stalled)
            except GradingError as e:
                logger.error(f"Stalled job recovery failed: {e}")

    # ============================================================
    # Producer side
    # ============================================================

    async def enqueue(self, submission_id: str, delay_ms: int = 0) -> GradingJob:
        """Queue a submission for grading; a queued or active job is reused."""
        if self._closed:
            raise QueueTransportFailure("Grading queue is shutting down")

        run_at = utcnow() + timedelta(milliseconds=delay_ms)
        job = self.store.upsert_job(submission_id, run_at)
        if job.attempts == 0:
            self.store.mark_submission(submission_id, SubmissionStatus.QUEUED)
        logger.info(f"Queued submission {submission_id} for grading (Job ID: {job.id})")
        return job

    def stats(self) -> Dict[str, int]:
        counts = self.store.count_jobs_by_status()
        counts["workers"] = len(self._workers)
        counts["in_flight"] = len(self.active_submissions)
        return counts

    def job_status(self, submission_id: str) -> Optional[GradingJob]:
        return self.store.get_job(submission_id)

    # ============================================================
    # Job processing
    # ============================================================

    def _heartbeat(self, job: GradingJob):
        if not self.store.heartbeat_job(job):
            raise JobLeaseLost(f"Job for {job.submission_id} (attempt {job.attempts}) was taken over")

    async def _grade(self, job: GradingJob) -> GradingOutcome:
        submission_id = job.submission_id
        submission = self.store.load_submission(submission_id)
        if submission is None:
            raise GradingError(f"Submission {submission_id} not found")

        quiz = self.store.load_quiz(submission.quiz_id)
        if quiz is None:
            raise GradingError(f"Quiz {submission.quiz_id} not found")

        self.store.mark_submission(submission_id, SubmissionStatus.PROCESSING)

        assignment = get_or_create_assignment(self.store, submission.student_id, quiz)
        outcome = await grade_answers(
            quiz, submission.answers, assignment, self.executor,
            heartbeat=lambda: self._heartbeat(job),
        )

        self._heartbeat(job)
        self.store.complete_submission(submission_id, outcome)
        return outcome

    async def process_job(self, job: GradingJob):
        """Grade one submission end to end and record the job's next state."""
        submission_id = job.submission_id
        self.active_submissions.add(submission_id)
        try:
            outcome = await self._grade(job)
        except JobLeaseLost as e:
            logger.warning(f"Grading job [{submission_id}] abandoned: {e}")
            return
        except RETRYABLE_ERRORS as e:
            self._retry_or_fail(job, e)
            return
        except GradingError as e:
            logger.error(f"Grading job [{submission_id}] failed: {e}")
            self._fail(job, str(e))
            return
        except Exception as e:
            logger.exception(f"Grading job [{submission_id}] crashed: {e}")
            self._fail(job, "Internal grading error")
            return
        finally:
            self.active_submissions.discard(submission_id)

        try:
            if self.store.complete_job(job):
                self.store.prune_job_history(self.settings.keep_completed, self.settings.keep_failed)
            else:
                logger.warning(f"Grading job [{submission_id}] was taken over before it could be closed")
        except GradingError as e:
            # score is already written; a stalled-job rerun overwrites it identically
            logger.error(f"Could not close job [{submission_id}]: {e}")

        logger.info(
            f"Submission {submission_id} graded: {outcome.total_score}/{outcome.max_score} "
            f"(attempt {job.attempts})"
        )

    def _retry_or_fail(self, job: GradingJob, error: Exception, stalled: bool = False):
        if job.attempts > self.settings.max_retries:
            self._fail(job, f"Grading failed after {job.attempts} attempts: {error}", stalled)
            return

        delay = self.settings.backoff_delay(job.attempts)
        logger.warning(
            f"Grading job [{job.submission_id}] attempt {job.attempts} failed: {error}; "
            f"retrying in {delay:g}s"
        )
        try:
            run_at = utcnow() + timedelta(seconds=delay)
            if not self.store.retry_job(job, run_at, str(error), match_lock=stalled):
                logger.warning(f"Grading job [{job.submission_id}] changed hands, not rescheduled")
                return
            self.store.mark_submission(job.submission_id, SubmissionStatus.QUEUED, "Grading delayed, retrying")
        except GradingError as e:
            logger.error(f"Could not reschedule job [{job.submission_id}]: {e}")

    def _fail(self, job: GradingJob, message: str, stalled: bool = False):
        try:
            if not self.store.fail_job(job, message, match_lock=stalled):
                logger.warning(f"Grading job [{job.submission_id}] changed hands, not failed")
                return
            self.store.mark_submission(job.submission_id, SubmissionStatus.ERROR, message)
            self.store.prune_job_history(self.settings.keep_completed, self.settings.keep_failed)
        except GradingError as e:
            logger.error(f"Could not record failure for job [{job.submission_id}]: {e}")

    def recover_stalled(self):
        """
        Jobs whose lease was not refreshed within stall_timeout count as a
        failed attempt. Running jobs refresh the lease before every answer,
        and the reschedule only applies if the lease is still the stale one.
        """
        for job in self.store.find_stalled_jobs(self.settings.stall_timeout):
            if job.submission_id in self.active_submissions:
                continue
            logger.warning(f"Recovering stalled job [{job.submission_id}] (attempt {job.attempts})")
            self._retry_or_fail(job, QueueTransportFailure("worker stopped before finishing the job"), stalled=True)
