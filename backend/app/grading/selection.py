"""
Per-student question selection and shuffling.

The same (student_id, quiz_id) pair must always produce the same assignment,
in any process and in any implementation, because grading inverts exactly
what the student was shown. The algorithm is therefore fixed:

    seed      = first 8 bytes (big-endian) of sha256(f"{student_id}-{quiz_id}")
    generator = SplitMix64(seed)
    below(n)  = next_u64() % n
    shuffle   = Fisher-Yates, i from len-1 down to 1, j = below(i + 1), swap

One generator is consumed in this order: MCQ pool shuffle, code pool shuffle
(only when pooling is enabled), question order shuffle, then one option
permutation per multiple-choice question in display order.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .errors import MalformedAnswer
from .schemas import CodeQuestion, MultipleChoiceQuestion, Quiz

logger = logging.getLogger(__name__)

MASK64 = 0xFFFFFFFFFFFFFFFF


class SplitMix64:
    """SplitMix64 (Steele, Lea & Flood 2014); all arithmetic is mod 2**64."""

    def __init__(self, seed: int):
        self.state = seed & MASK64

    def next_u64(self) -> int:
        self.state = (self.state + 0x9E3779B97F4A7C15) & MASK64
        z = self.state
        z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & MASK64
        z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & MASK64
        return z ^ (z >> 31)

    def below(self, n: int) -> int:
        return self.next_u64() % n


def derive_seed(student_id: str, quiz_id: str) -> int:
    digest = hashlib.sha256(f"{student_id}-{quiz_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def shuffled(items: Sequence[Any], rng: SplitMix64) -> List[Any]:
    """Fisher-Yates on a copy, iterating high to low."""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.below(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


@dataclass
class ShuffleAssignment:
    student_id: str
    quiz_id: str
    display_order: List[int]                    # canonical question indices, in display order
    option_permutations: Dict[str, List[int]] = field(default_factory=dict)

    def question_ids(self, quiz: Quiz) -> List[str]:
        return [quiz.questions[i].id for i in self.display_order]

    def permutation_for(self, question_id: str) -> Optional[List[int]]:
        return self.option_permutations.get(question_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "quiz_id": self.quiz_id,
            "display_order": list(self.display_order),
            "option_permutations": {k: list(v) for k, v in self.option_permutations.items()},
        }

    @staticmethod
    def from_dict(data: dict) -> "ShuffleAssignment":
        return ShuffleAssignment(
            student_id=data["student_id"],
            quiz_id=data["quiz_id"],
            display_order=list(data["display_order"]),
            option_permutations={k: list(v) for k, v in (data.get("option_permutations") or {}).items()},
        )


def assign(student_id: str, quiz: Quiz) -> ShuffleAssignment:
    """Select and order the questions a student sees. Idempotent."""
    pool = quiz.question_pool_config
    shuffle = quiz.shuffle_config
    indices = list(range(len(quiz.questions)))

    if not pool.enabled and not shuffle.shuffle_questions and not shuffle.shuffle_options:
        return ShuffleAssignment(student_id, quiz.id, indices)

    rng = SplitMix64(derive_seed(student_id, quiz.id))
    selected = indices

    if pool.enabled:
        mcq = [i for i in indices if isinstance(quiz.questions[i], MultipleChoiceQuestion)]
        code = [i for i in indices if isinstance(quiz.questions[i], CodeQuestion)]
        mcq = shuffled(mcq, rng)
        code = shuffled(code, rng)
        if pool.multiple_choice_count > 0:
            mcq = mcq[:pool.multiple_choice_count]
        if pool.code_count > 0:
            code = code[:pool.code_count]
        selected = mcq + code

    if shuffle.shuffle_questions:
        selected = shuffled(selected, rng)

    permutations: Dict[str, List[int]] = {}
    if shuffle.shuffle_options:
        for i in selected:
            question = quiz.questions[i]
            if isinstance(question, MultipleChoiceQuestion) and question.options:
                permutations[question.id] = shuffled(range(len(question.options)), rng)

    return ShuffleAssignment(student_id, quiz.id, selected, permutations)


def resolve_canonical_index(displayed_index: Any, permutation: Optional[Sequence[int]]) -> int:
    """
    Map the option index a student picked back to the author's index.

    A stored MCQ answer is always a displayed index; this is the only way
    to interpret it.

    Raises:
        MalformedAnswer: not an integer, or outside the permutation.
    """
    if isinstance(displayed_index, bool) or not isinstance(displayed_index, int):
        raise MalformedAnswer(f"Answer is not an option index: {displayed_index!r}")
    if permutation is None:
        return displayed_index
    if not 0 <= displayed_index < len(permutation):
        raise MalformedAnswer(f"Option index {displayed_index} out of range")
    return permutation[displayed_index]


def build_display(quiz: Quiz, assignment: ShuffleAssignment) -> List[Dict[str, Any]]:
    """
    Student-facing view of the assigned questions.

    Options are reordered, the correct answer is never included, and hidden
    test cases are dropped.
    """
    view = []
    for position, index in enumerate(assignment.display_order):
        question = quiz.questions[index]
        item = {
            "id": question.id,
            "type": question.type,
            "title": question.title,
            "content": question.content,
            "points": question.points,
            "display_order": position,
        }
        if isinstance(question, MultipleChoiceQuestion):
            permutation = assignment.permutation_for(question.id)
            if permutation is None:
                item["options"] = list(question.options)
            else:
                item["options"] = [question.options[i] for i in permutation]
        else:
            item["language"] = question.language
            item["starter_code"] = question.starter_code
            item["test_cases"] = [
                {"input": tc.input, "expected_output": tc.expected_output}
                for tc in question.test_cases if not tc.is_hidden
            ]
        view.append(item)
    return view


def get_or_create_assignment(store, student_id: str, quiz: Quiz) -> ShuffleAssignment:
    """Return the stored assignment, creating it on first access."""
    existing = store.load_assignment(student_id, quiz.id)
    if existing is not None:
        return existing

    assignment = assign(student_id, quiz)
    store.save_assignment(assignment)
    logger.info(f"Created shuffle assignment for {student_id} on quiz {quiz.id}")
    return assignment
