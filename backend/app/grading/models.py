from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class OutcomeStatus(str, Enum):
    OK = "ok"
    TIMED_OUT = "timed_out"
    CREATION_ERROR = "creation_error"
    RUNTIME_ERROR = "runtime_error"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SubmissionStatus(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    timed_out: bool = False


@dataclass
class ExecutionOutcome:
    """Result of one sandbox run; status tells the caller what to do with it."""
    status: OutcomeStatus
    result: ExecutionResult
    error_text: str = ""

    @classmethod
    def ok(cls, stdout: str, stderr: str = ""):
        return cls(OutcomeStatus.OK, ExecutionResult(stdout, stderr))

    @classmethod
    def timed_out(cls, timeout_sec: float):
        return cls(
            OutcomeStatus.TIMED_OUT,
            ExecutionResult("", "", timed_out=True),
            error_text=f"Time Limit Exceeded ({timeout_sec:g}s)",
        )

    @classmethod
    def creation_error(cls, message: str):
        return cls(OutcomeStatus.CREATION_ERROR, ExecutionResult("", ""), error_text=message)

    @classmethod
    def runtime_error(cls, stdout: str, stderr: str, message: str):
        return cls(OutcomeStatus.RUNTIME_ERROR, ExecutionResult(stdout, stderr), error_text=message)

    @property
    def stdout(self) -> str:
        return self.result.stdout

    @property
    def stderr(self) -> str:
        return self.result.stderr


@dataclass
class TestResult:
    __test__ = False

    passed: bool
    input: str
    expected_output: str
    actual_output: str
    error: str = ""

    def as_dict(self):
        return {
            "passed": self.passed,
            "input": self.input,
            "expected_output": self.expected_output,
            "actual_output": self.actual_output,
            "error": self.error,
        }


@dataclass
class Evaluation:
    stdout: str
    stderr: str
    test_results: Optional[List[TestResult]] = None

    def as_dict(self):
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "test_results": (
                [r.as_dict() for r in self.test_results]
                if self.test_results is not None else None
            ),
        }


@dataclass
class GradedAnswer:
    question_id: str
    question_type: str
    raw_answer: Any           # displayed option index or source code
    is_correct: bool
    score: int
    test_results: Optional[List[TestResult]] = None
    error: str = ""

    def as_dict(self):
        data = asdict(self)
        if self.test_results is not None:
            data["test_results"] = [r.as_dict() for r in self.test_results]
        return data


@dataclass
class GradingOutcome:
    total_score: int
    max_score: int
    graded_answers: List[GradedAnswer] = field(default_factory=list)


@dataclass
class GradingJob:
    id: int
    submission_id: str
    status: JobStatus
    attempts: int
    run_at: datetime
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "GradingJob":
        m = row._mapping
        return cls(
            id=m["id"],
            submission_id=m["submission_id"],
            status=JobStatus(m["status"]),
            attempts=m["attempts"],
            run_at=m["run_at"],
            locked_at=m["locked_at"],
            last_error=m["last_error"],
            finished_at=m["finished_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "last_error": self.last_error,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
