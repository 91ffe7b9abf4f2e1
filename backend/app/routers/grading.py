import logging

from fastapi import APIRouter, Depends, HTTPException, Path

from backend.app.grading.errors import GradingError
from backend.app.grading.grader import max_score_for
from backend.app.grading.models import SubmissionStatus
from backend.app.grading.schemas import Quiz, Submission
from backend.app.grading.selection import build_display, get_or_create_assignment
from backend.app.grading.services import GradingServices, get_services

router = APIRouter(tags=["Grading"])
logger = logging.getLogger(__name__)


# ==========================================
# Quiz snapshots & student views
# ==========================================

@router.put("/quizzes/{quiz_id}")
def publish_quiz(quiz: Quiz, quiz_id: str = Path(...), services: GradingServices = Depends(get_services)):
    """Store the published snapshot of a quiz that grading reads from."""
    if quiz.id != quiz_id:
        raise HTTPException(status_code=400, detail="Quiz id mismatch")
    services.store.save_quiz(quiz)
    return {"status": "success", "quiz_id": quiz_id, "questions": len(quiz.questions)}


@router.get("/quizzes/{quiz_id}/students/{student_id}/view")
def get_student_view(quiz_id: str, student_id: str, services: GradingServices = Depends(get_services)):
    """
    Questions as this student sees them.

    The assignment is created on first access and reused for grading.
    Correct answers and hidden test cases are never included.
    """
    quiz = services.store.load_quiz(quiz_id)
    if quiz is None:
        raise HTTPException(status_code=404, detail="Quiz not found.")

    assignment = get_or_create_assignment(services.store, student_id, quiz)
    return {
        "quiz_id": quiz.id,
        "title": quiz.title,
        "max_score": max_score_for(quiz, assignment),
        "questions": build_display(quiz, assignment),
    }


# ==========================================
# Submissions
# ==========================================

@router.post("/submissions")
async def submit(submission: Submission, services: GradingServices = Depends(get_services)):
    """Record a submission and queue it for grading."""
    quiz = services.store.load_quiz(submission.quiz_id)
    if quiz is None:
        raise HTTPException(status_code=404, detail="Quiz not found.")

    if services.store.load_submission(submission.id) is not None:
        raise HTTPException(status_code=409, detail="Submission already exists.")

    assignment = get_or_create_assignment(services.store, submission.student_id, quiz)
    submission.status = SubmissionStatus.SUBMITTED.value
    submission.max_score = max_score_for(quiz, assignment)
    services.store.save_submission(submission)

    try:
        job = await services.queue.enqueue(submission.id, delay_ms=0)
    except GradingError as e:
        logger.error(f"Could not queue submission {submission.id}: {e}")
        raise HTTPException(
            status_code=503,
            detail=(
                f"Submission {submission.id} was saved but not queued; "
                f"retry with POST /submissions/{submission.id}/grade."
            ),
        )

    return {"submission_id": submission.id, "status": SubmissionStatus.QUEUED.value, "queue_job_id": job.id}


@router.post("/submissions/{submission_id}/grade")
async def regrade(submission_id: str, services: GradingServices = Depends(get_services)):
    """Queue (or re-queue) grading of an existing submission."""
    if services.store.load_submission(submission_id) is None:
        raise HTTPException(status_code=404, detail="Submission not found.")

    try:
        job = await services.queue.enqueue(submission_id)
    except GradingError as e:
        logger.error(f"Could not queue submission {submission_id}: {e}")
        raise HTTPException(status_code=503, detail="Grading queue unavailable, please retry.")
    return job.as_dict()


@router.get("/submissions/{submission_id}")
def get_submission(submission_id: str, services: GradingServices = Depends(get_services)):
    submission = services.store.load_submission(submission_id)
    if submission is None:
        raise HTTPException(status_code=404, detail="Submission not found.")

    job = services.queue.job_status(submission_id)
    return {
        "submission_id": submission.id,
        "status": submission.status,
        "total_score": submission.total_score,
        "max_score": submission.max_score,
        "error_message": submission.error_message,
        "answers": submission.graded_answers or [],
        "job": job.as_dict() if job else None,
    }


@router.get("/grading/queue/stats")
def queue_stats(services: GradingServices = Depends(get_services)):
    return services.queue.stats()
