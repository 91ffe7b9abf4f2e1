import logging
from typing import List, Sequence, Tuple

from .errors import SandboxCreationError
from .languages import get_language_profile
from .models import Evaluation, OutcomeStatus, TestResult
from .schemas import CodeQuestion, TestCase
from .sandbox_runner import SandboxExecutor

logger = logging.getLogger(__name__)


def round_half_up(numerator: int, denominator: int) -> int:
    """round(numerator / denominator) with halves rounded up, in integers."""
    return (2 * numerator + denominator) // (2 * denominator)


def score_test_results(points: int, results: Sequence[TestResult]) -> Tuple[int, bool]:
    """
    Proportional score for a code answer.

    Returns (score, is_correct). Callers must not pass an empty result list:
    a question without test cases cannot be auto-graded.
    """
    total = len(results)
    if total == 0:
        raise ValueError("Cannot score a question without test cases")

    passed = sum(1 for r in results if r.passed)
    return round_half_up(points * passed, total), passed == total


async def run_test_cases(
    language_id: str,
    source_code: str,
    test_cases: Sequence[TestCase],
    executor: SandboxExecutor,
    stdin: str = "",
) -> Evaluation:
    """
    Main judging pipeline: one sandbox run per test case.

    Hidden and visible cases go through the same path. A timeout or runtime
    error fails only that case. A sandbox that cannot be created aborts the
    whole evaluation with SandboxCreationError so the job can be retried.
    Without test cases the code runs once with `stdin` (ad-hoc run mode)
    and `test_results` is None.

    Raises:
        UnsupportedLanguage: unknown language id.
        SandboxCreationError: the sandbox could not be brought up.
    """
    profile = get_language_profile(language_id)

    if not test_cases:
        outcome = await executor.run(profile, source_code, stdin)
        if outcome.status == OutcomeStatus.CREATION_ERROR:
            raise SandboxCreationError(outcome.error_text)
        error = outcome.stderr
        if not error and outcome.status != OutcomeStatus.OK:
            error = outcome.error_text
        return Evaluation(stdout=outcome.stdout, stderr=error)

    results: List[TestResult] = []
    for idx, tc in enumerate(test_cases, start=1):
        logger.info(f"Running test case {idx}/{len(test_cases)} for {language_id}")
        outcome = await executor.run(profile, source_code, tc.input)

        if outcome.status == OutcomeStatus.CREATION_ERROR:
            raise SandboxCreationError(outcome.error_text)

        error = "" if outcome.status == OutcomeStatus.OK else outcome.error_text
        expected = tc.expected_output.strip()
        actual = outcome.stdout.strip()

        results.append(
            TestResult(
                passed=(not error and actual == expected),
                input=tc.input,
                expected_output=expected,
                actual_output=actual,
                error=error,
            )
        )
        logger.info(f"Test case {idx}: {'PASSED' if results[-1].passed else 'FAILED'}")

    stdout = results[-1].actual_output if results else ""
    stderr = next((r.error for r in results if r.error), "")
    return Evaluation(stdout=stdout, stderr=stderr, test_results=results)


async def evaluate(question: CodeQuestion, source_code: str, executor: SandboxExecutor) -> Evaluation:
    """Evaluate a code answer against the question's own test cases."""
    return await run_test_cases(question.language, source_code, question.test_cases, executor)
