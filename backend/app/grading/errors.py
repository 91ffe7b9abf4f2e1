"""
Error taxonomy for the grading core.

Infrastructure failures (sandbox creation, queue transport) are retried by the
grading queue. Everything else is either local to one test case / one answer
or terminal for the job.
"""


class GradingError(Exception):
    """Base class for all grading core errors."""

    retryable = False


class UnsupportedLanguage(GradingError):
    def __init__(self, language_id: str):
        super().__init__(f"Unsupported language: {language_id}")
        self.language_id = language_id


class SandboxTimeout(GradingError):
    """
    Classifies a TIMED_OUT outcome. The executor reports timeouts as an
    ExecutionOutcome value and never raises this; it fails one test case only.
    """


class SandboxCreationError(GradingError):
    retryable = True


class ExecutionRuntimeError(GradingError):
    """Classifies a RUNTIME_ERROR outcome; reported as a value, never raised."""


class MissingQuestionReference(GradingError):
    def __init__(self, question_id: str):
        super().__init__(f"Question not found: {question_id}")
        self.question_id = question_id


class MalformedAnswer(GradingError):
    pass


class QueueTransportFailure(GradingError):
    retryable = True


class PersistenceFailure(GradingError):
    pass


class JobLeaseLost(GradingError):
    """This run no longer holds its job; it must not write any result."""


RETRYABLE_ERRORS = (SandboxCreationError, QueueTransportFailure)
