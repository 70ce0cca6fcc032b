"""
Answer normalization - turns raw UI values into the shape each evaluator expects.

Raw values arrive as whatever the client form produced: an option id, a
comma-joined id list (checkbox), a JSON-encoded blank map, free text or code.
Anything empty becomes NO_ANSWER; normalization never raises.
"""

import json
from typing import Any, Dict, List, Optional

from grader.config import logger
from grader.models.activity import Question


class _NoAnswer:
    """Sentinel for an unanswered question"""

    def __bool__(self):
        return False

    def __repr__(self):
        return "NO_ANSWER"


NO_ANSWER = _NoAnswer()

SINGLE_SELECT_TYPES = {"mcq", "dropdown"}
MULTI_SELECT_TYPES = {"checkbox"}
BLANK_TYPES = {"code_completion", "fill_blanks"}
# answers that are source code keep their whitespace
CODE_TYPES = {"code_completion", "error_correction"}


def is_answered(value: Any) -> bool:
    return value is not NO_ANSWER


def uses_blanks(question: Question) -> bool:
    return question.type in BLANK_TYPES and bool(question.blanks)


def _parse_option_ids(raw: Any) -> List[str]:
    if isinstance(raw, (list, tuple, set)):
        items = [str(r) for r in raw]
    else:
        items = str(raw).split(",")
    return [i.strip() for i in items if i and i.strip()]


def _parse_blank_map(raw: Any, question_id: str) -> Dict[str, str]:
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Unreadable blank answers for question {question_id}: {e}")
            return {}
    if not isinstance(data, dict):
        logger.warning(f"Blank answers for question {question_id} are not a JSON object")
        return {}
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def normalize_answer(question: Question, raw: Any) -> Any:
    """
    Normalize a raw answer for a question.

    Returns NO_ANSWER, an option id (str), a list of option ids, a blank map
    (dict blank id -> fragment), or text/code (str).
    """
    if raw is None:
        return NO_ANSWER

    if question.type in MULTI_SELECT_TYPES:
        ids = _parse_option_ids(raw)
        return ids if ids else NO_ANSWER

    if uses_blanks(question):
        if isinstance(raw, str) and not raw.strip():
            return NO_ANSWER
        blank_map = _parse_blank_map(raw, question.id)
        if not any(v.strip() for v in blank_map.values()):
            return NO_ANSWER
        return blank_map

    if isinstance(raw, (dict, list)):
        # structured value for a scalar question; keep it comparable as text
        raw = json.dumps(raw)

    text = str(raw)
    if not text.strip():
        return NO_ANSWER

    if question.type in CODE_TYPES:
        return text
    return text.strip()


def answer_payload(question: Question, normalized: Any) -> Dict[str, Optional[Any]]:
    """Map a normalized answer onto the SubmissionAnswer payload fields"""
    payload = {
        "answer_text": None,
        "selected_option_id": None,
        "selected_option_ids": None,
        "blank_answers": None,
        "code": None,
        "file_url": None,
    }
    if not is_answered(normalized):
        return payload

    if question.type in SINGLE_SELECT_TYPES:
        payload["selected_option_id"] = normalized
    elif question.type in MULTI_SELECT_TYPES:
        payload["selected_option_ids"] = list(normalized)
    elif uses_blanks(question):
        payload["blank_answers"] = dict(normalized)
    elif question.type in CODE_TYPES:
        payload["code"] = normalized
    elif question.type == "file_upload":
        payload["file_url"] = normalized
    else:
        payload["answer_text"] = normalized
    return payload


def answer_fingerprint(normalized: Any) -> Optional[str]:
    """Stable text form of a normalized answer, used to tie a code run to the submitted answer"""
    if not is_answered(normalized):
        return None
    if isinstance(normalized, (dict, list)):
        return json.dumps(normalized, sort_keys=True)
    return str(normalized)
