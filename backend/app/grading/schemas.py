"""
Documents exchanged with the storage collaborator and the HTTP layer.

Quiz and Submission are owned by the quiz CRUD service; the grading core only
reads quizzes and writes back scores.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class TestCase(BaseModel):
    __test__ = False

    input: str = ""
    expected_output: str
    is_hidden: bool = False


class MultipleChoiceQuestion(BaseModel):
    type: Literal["multiple-choice"] = "multiple-choice"
    id: str
    title: str = ""
    content: str = ""
    options: List[str]
    correct_answer: int
    points: int = Field(default=1, ge=1)


class CodeQuestion(BaseModel):
    type: Literal["code"] = "code"
    id: str
    title: str = ""
    content: str = ""
    language: str
    test_cases: List[TestCase] = Field(default_factory=list)
    starter_code: str = ""
    points: int = Field(default=1, ge=1)


Question = Annotated[Union[MultipleChoiceQuestion, CodeQuestion], Field(discriminator="type")]


class QuestionPoolConfig(BaseModel):
    enabled: bool = False
    multiple_choice_count: int = 0    # 0 = take every MCQ
    code_count: int = 0               # 0 = take every code question


class ShuffleConfig(BaseModel):
    shuffle_questions: bool = False
    shuffle_options: bool = False


class Quiz(BaseModel):
    id: str
    title: str = ""
    questions: List[Question] = Field(default_factory=list)
    question_pool_config: QuestionPoolConfig = Field(default_factory=QuestionPoolConfig)
    shuffle_config: ShuffleConfig = Field(default_factory=ShuffleConfig)

    def find_question(self, question_id: str) -> Optional[Union[MultipleChoiceQuestion, CodeQuestion]]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None


class RawAnswer(BaseModel):
    question_id: str
    answer: Optional[Any] = None   # displayed option index for MCQs
    code: Optional[str] = None


class Submission(BaseModel):
    id: str
    quiz_id: str
    student_id: str
    answers: List[RawAnswer] = Field(default_factory=list)
    status: str = "submitted"
    total_score: int = 0
    max_score: int = 0
    error_message: Optional[str] = None
    graded_answers: Optional[List[Dict[str, Any]]] = None


# ==========================================
# Request payloads
# ==========================================

class ExecutePayload(BaseModel):
    student_id: str
    language: str
    code: str
    input: str = ""


class TestPayload(BaseModel):
    __test__ = False

    student_id: str
    language: str
    code: str
    test_cases: List[TestCase]
