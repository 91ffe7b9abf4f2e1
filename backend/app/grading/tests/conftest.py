import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from backend.app.grading.config import Settings
from backend.app.grading.db import GradingStore
from backend.app.grading.models import ExecutionOutcome
from backend.app.grading.schemas import Quiz


class FakeExecutor:
    """Stands in for SandboxExecutor; `handler(profile, code, stdin)` decides the outcome."""

    def __init__(self):
        self.calls = []
        self.handler = lambda profile, code, stdin: ExecutionOutcome.ok(stdin)

    async def run(self, profile, source_code, stdin=""):
        self.calls.append((profile.id, source_code, stdin))
        return self.handler(profile, source_code, stdin)


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    store = GradingStore(engine)
    store.create_schema()
    yield store
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        concurrency=2,
        poll_interval=0.01,
        stall_timeout=60.0,
    )


@pytest.fixture
def quiz_data():
    return {
        "id": "quiz-1",
        "title": "Python basics",
        "questions": [
            {
                "type": "multiple-choice",
                "id": "q-mc1",
                "title": "Which keyword defines a function?",
                "options": ["func", "function", "def"],
                "correct_answer": 2,
                "points": 2,
            },
            {
                "type": "multiple-choice",
                "id": "q-mc2",
                "title": "len([1, 2]) is",
                "options": ["2", "1", "0", "error"],
                "correct_answer": 0,
                "points": 1,
            },
            {
                "type": "code",
                "id": "q-code1",
                "title": "Echo",
                "language": "python",
                "points": 6,
                "test_cases": [
                    {"input": "1", "expected_output": "1"},
                    {"input": "2", "expected_output": "2"},
                    {"input": "3", "expected_output": "3", "is_hidden": True},
                    {"input": "4", "expected_output": "4", "is_hidden": True},
                ],
            },
            {
                "type": "code",
                "id": "q-code2",
                "title": "Hello",
                "language": "python",
                "points": 3,
                "test_cases": [{"input": "", "expected_output": "Hello, World!"}],
            },
        ],
    }


@pytest.fixture
def quiz(quiz_data):
    return Quiz.model_validate(quiz_data)
