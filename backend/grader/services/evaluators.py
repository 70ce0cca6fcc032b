"""
Deterministic evaluators - pure, network-free scoring per question type.

Each evaluator takes (question, normalized_answer) and returns an EvalResult,
or None when the question cannot be graded automatically. Evaluators are
registered per type tag; adding a type means adding one function and one
@register line.
"""

import math
from typing import Any, Callable, Dict, Optional

from grader.models.activity import Question
from grader.models.submission import EvalResult
from grader.services.normalizer import NO_ANSWER, uses_blanks

Evaluator = Callable[[Question, Any], Optional[EvalResult]]

EVALUATORS: Dict[str, Evaluator] = {}

NO_ANSWER_FEEDBACK = "No answer provided."
CORRECT_FEEDBACK = "Correct!"
INCORRECT_FEEDBACK = "Incorrect."


def register(*question_types: str):
    """Register an evaluator for one or more question types."""
    def decorator(fn: Evaluator) -> Evaluator:
        for qt in question_types:
            EVALUATORS[qt] = fn
        return fn
    return decorator


def unanswered_result() -> EvalResult:
    return EvalResult(
        score=0, is_correct=False, feedback=NO_ANSWER_FEEDBACK,
        status="unanswered", grader="deterministic"
    )


def all_or_nothing(question: Question, is_correct: bool) -> EvalResult:
    return EvalResult(
        score=question.marks if is_correct else 0,
        is_correct=is_correct,
        feedback=CORRECT_FEEDBACK if is_correct else INCORRECT_FEEDBACK,
        status="graded",
        grader="deterministic"
    )


def evaluate_deterministic(question: Question, normalized: Any) -> Optional[EvalResult]:
    """
    Score an answer with the evaluator registered for its type.

    Returns None for types with no deterministic evaluator, and for questions
    that lack the data needed to grade (e.g. no correct_answer).
    """
    evaluator = EVALUATORS.get(question.type)
    if evaluator is None:
        return None
    if normalized is NO_ANSWER:
        return unanswered_result()
    return evaluator(question, normalized)


# ============== OPTION MATCHERS ==============

@register("mcq", "dropdown")
def evaluate_single_select(question: Question, answer: str) -> EvalResult:
    selected = next((o for o in question.options if o.id == answer), None)
    return all_or_nothing(question, selected is not None and selected.is_correct is True)


@register("checkbox")
def evaluate_multi_select(question: Question, answer: list) -> EvalResult:
    # no partial credit: subsets and supersets both score zero
    selected = sorted(set(answer))
    return all_or_nothing(question, selected == question.correct_option_ids())


# ============== TEXT MATCHERS ==============

def text_matches(answer: str, correct_answer: str) -> bool:
    """
    Comma-separated correct answers are synonyms matched case-insensitively;
    a single correct answer must match exactly.
    """
    given = answer.strip()
    if "," in correct_answer:
        alternatives = [a.strip().lower() for a in correct_answer.split(",")]
        return given.lower() in [a for a in alternatives if a]
    return given == correct_answer.strip()


def _expected_text(question: Question) -> Optional[str]:
    if question.correct_answer and question.correct_answer.strip():
        return question.correct_answer
    if question.type == "error_identification" and question.error_description:
        return question.error_description
    return None


@register(
    "short_answer",
    "output_prediction",
    "error_identification",
    "concept_identification",
)
def evaluate_text(question: Question, answer: str) -> Optional[EvalResult]:
    expected = _expected_text(question)
    if expected is None:
        return None
    return all_or_nothing(question, text_matches(str(answer), expected))


@register("fill_blanks")
def evaluate_fill_blanks(question: Question, answer: Any) -> Optional[EvalResult]:
    if uses_blanks(question):
        return score_blanks(question, answer)
    return evaluate_text(question, answer)


@register("code_completion")
def evaluate_code_completion(question: Question, answer: Any) -> Optional[EvalResult]:
    if uses_blanks(question):
        return score_blanks(question, answer)
    if not question.correct_answer:
        return None
    # whole-code answers are compared exactly, no synonym handling
    return all_or_nothing(question, str(answer).strip() == question.correct_answer.strip())


# ============== NUMERIC ==============

def _to_float(value: Any) -> Optional[float]:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@register("numerical")
def evaluate_numerical(question: Question, answer: str) -> Optional[EvalResult]:
    given = _to_float(answer)

    if question.range_min is not None or question.range_max is not None:
        low = question.range_min if question.range_min is not None else -math.inf
        high = question.range_max if question.range_max is not None else math.inf
        return all_or_nothing(question, given is not None and low <= given <= high)

    expected = _to_float(question.correct_answer)
    if expected is None:
        return None
    if given is None:
        result = all_or_nothing(question, False)
        result.feedback = "Incorrect. The answer is not a number."
        return result

    if question.allowed_error is not None:
        # small epsilon so 10 +/- 0.5 accepts 10.5 despite float representation
        is_correct = abs(given - expected) <= question.allowed_error + 1e-9
    else:
        is_correct = given == expected
    return all_or_nothing(question, is_correct)


# ============== STRUCTURED BLANKS ==============

def score_blanks(question: Question, answer: Dict[str, str]) -> EvalResult:
    """
    Score each blank independently; the only partial-credit path.

    Score is the sum of marks of matched blanks, is_correct only when every
    blank matched.
    """
    fold = (lambda s: s) if question.case_sensitive else (lambda s: s.casefold())

    score = 0.0
    matched = 0
    for blank in question.blanks:
        given = fold((answer.get(blank.id) or "").strip())
        accepted = {fold(ca.strip()) for ca in blank.correct_answers}
        if given and given in accepted:
            score += blank.marks
            matched += 1

    total = len(question.blanks)
    all_correct = matched == total
    return EvalResult(
        score=score,
        is_correct=all_correct,
        feedback=CORRECT_FEEDBACK if all_correct else f"{matched}/{total} blanks correct.",
        status="graded",
        grader="deterministic"
    )
