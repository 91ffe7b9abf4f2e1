import logging
from typing import Callable, Optional, Sequence

from .errors import MalformedAnswer, MissingQuestionReference, UnsupportedLanguage
from .judge_core import evaluate, score_test_results
from .models import GradedAnswer, GradingOutcome
from .sandbox_runner import SandboxExecutor
from .schemas import CodeQuestion, MultipleChoiceQuestion, Quiz, RawAnswer
from .selection import ShuffleAssignment, resolve_canonical_index

logger = logging.getLogger(__name__)


def max_score_for(quiz: Quiz, assignment: ShuffleAssignment) -> int:
    return sum(quiz.questions[i].points for i in assignment.display_order)


def _grade_multiple_choice(question: MultipleChoiceQuestion, answer: RawAnswer,
                           assignment: ShuffleAssignment) -> GradedAnswer:
    canonical = resolve_canonical_index(answer.answer, assignment.permutation_for(question.id))
    if not 0 <= canonical < len(question.options):
        raise MalformedAnswer(f"Option index {canonical} out of range")

    is_correct = canonical == question.correct_answer
    return GradedAnswer(
        question_id=question.id,
        question_type=question.type,
        raw_answer=answer.answer,
        is_correct=is_correct,
        score=question.points if is_correct else 0,
    )


async def _grade_code(question: CodeQuestion, answer: RawAnswer, executor: SandboxExecutor) -> GradedAnswer:
    graded = GradedAnswer(
        question_id=question.id,
        question_type=question.type,
        raw_answer=answer.code,
        is_correct=False,
        score=0,
    )

    if not answer.code or not answer.code.strip():
        graded.error = "No code submitted"
        return graded

    if not question.test_cases:
        graded.error = "Question has no test cases; not auto-graded"
        return graded

    logger.info(f"Executing code for question {question.id} ({question.language})")
    evaluation = await evaluate(question, answer.code, executor)

    graded.test_results = evaluation.test_results
    graded.score, graded.is_correct = score_test_results(question.points, evaluation.test_results)
    return graded


def _zero(answer: RawAnswer, error: str, question_type: str = "unknown") -> GradedAnswer:
    return GradedAnswer(
        question_id=answer.question_id,
        question_type=question_type,
        raw_answer=answer.code if answer.code is not None else answer.answer,
        is_correct=False,
        score=0,
        error=error,
    )


async def grade_answers(
    quiz: Quiz,
    answers: Sequence[RawAnswer],
    assignment: ShuffleAssignment,
    executor: SandboxExecutor,
    heartbeat: Optional[Callable[[], None]] = None,
) -> GradingOutcome:
    """
    Grade a submission's answers, strictly in stored order.

    Only the first answer to each assigned question counts; repeats and
    answers to questions the student was never shown score 0. Stale data
    (missing question, malformed answer, unknown language) scores that one
    answer 0 and grading goes on. SandboxCreationError propagates so the
    whole job is retried.

    `heartbeat` is called before each answer; whatever it raises aborts
    grading.
    """
    assigned = set(assignment.question_ids(quiz))
    seen = set()
    graded_answers = []
    total_score = 0

    for answer in answers:
        if heartbeat is not None:
            heartbeat()

        question = quiz.find_question(answer.question_id)
        try:
            if question is None:
                raise MissingQuestionReference(answer.question_id)
            if question.id not in assigned:
                raise MalformedAnswer(f"Question {question.id} was not assigned to this student")
            if question.id in seen:
                raise MalformedAnswer(f"Duplicate answer for question {question.id}")
            seen.add(question.id)

            if isinstance(question, MultipleChoiceQuestion):
                graded = _grade_multiple_choice(question, answer, assignment)
            else:
                graded = await _grade_code(question, answer, executor)

        except (MissingQuestionReference, MalformedAnswer, UnsupportedLanguage) as e:
            logger.warning(f"Skipping answer for {answer.question_id} on quiz {quiz.id}: {e}")
            graded = _zero(answer, str(e), question.type if question is not None else "unknown")

        total_score += graded.score
        graded_answers.append(graded)

    return GradingOutcome(
        total_score=total_score,
        max_score=max_score_for(quiz, assignment),
        graded_answers=graded_answers,
    )
