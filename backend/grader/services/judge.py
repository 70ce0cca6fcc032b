"""
AI judge adapter - builds the grading request for open-ended answers and
normalizes the judge's {score, feedback} reply.

The keyword rule is load-bearing: when a question lists expected keywords, a
match with any single keyword (or a close synonym) must earn full marks,
whatever the model answer says.
"""

import asyncio
import json
from abc import ABC, abstractmethod
import math
import re
import uuid
from typing import Any, Optional

from pydantic import BaseModel

from grader.config import logger, get_llm_api_key, JUDGE_MODEL, JUDGE_TIMEOUT_SECONDS, JUDGE_MAX_RETRIES
from grader.errors import JudgeFailure
from grader.models.activity import Question
from grader.models.submission import EvalResult
from grader.services.llm import LlmChat, UserMessage

JUDGE_ELIGIBLE_TYPES = {
    "justification",
    "short_answer",
    "trace_execution",
    "concept_identification",
    "paragraph",
}

JUDGE_FAILED_FEEDBACK = "Could not auto-evaluate this answer. It is pending manual review."

JUDGE_SYSTEM_MESSAGE = """You are an expert teacher grading a student's answer.
Evaluate the STUDENT ANSWER against the QUESTION, the MODEL ANSWER and the RUBRIC.
Return a JSON object with exactly two fields:
1. "score": a number between 0 and the maximum marks stated in the request.
2. "feedback": a concise explanation of the score and how to improve.

Be fair and constructive. Return ONLY the JSON."""


class JudgeRequest(BaseModel):
    question_text: str
    student_answer: str
    model_answer: Optional[str] = None
    rubric: str
    max_marks: float


def is_judge_eligible(question: Question) -> bool:
    return question.evaluation_mode == "ai" and question.type in JUDGE_ELIGIBLE_TYPES


def build_rubric(question: Question) -> str:
    """Synthesize the rubric text, including the any-keyword full-marks override."""
    keywords = [k.strip() for k in question.expected_keywords if k and k.strip()]
    if keywords:
        rubric = (
            f"Expected keywords: {', '.join(keywords)}. "
            f"IMPORTANT: If the student's answer contains ANY ONE of the expected keywords "
            f"(exact or a close synonym), you MUST award FULL MARKS ({question.marks}). "
            f"A keyword match overrides the comparison with the model answer. "
            f"Only deduct marks if the answer is completely unrelated or uses the keyword in a wrong context."
        )
    else:
        rubric = (
            "No expected keywords. Score proportionally to how well the answer covers "
            "the model answer and rubric; partial marks are allowed."
        )
    if question.explanation_rubric:
        rubric += f" Additional rubric: {question.explanation_rubric}"
    return rubric


def build_judge_request(question: Question, answer: Any) -> JudgeRequest:
    return JudgeRequest(
        question_text=question.question_text,
        student_answer=str(answer),
        model_answer=question.model_answer or None,
        rubric=build_rubric(question),
        max_marks=question.marks,
    )


def build_judge_prompt(request: JudgeRequest) -> str:
    return f"""Question: {request.question_text}

Maximum marks: {request.max_marks:g}

Model Answer: {request.model_answer or 'No specific model answer provided, use general knowledge.'}

Rubric: {request.rubric}

Student Answer: {request.student_answer}

Evaluate now and return ONLY the JSON: {{"score": <0-{request.max_marks:g}>, "feedback": "..."}}"""


def parse_judge_reply(resp_text: str) -> dict:
    """Extract the {score, feedback} object from a model reply, tolerating code fences."""
    text = (resp_text or "").strip()

    # Strategy 1: Direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Strategy 2: Remove code blocks
    if text.startswith("```"):
        inner = text.split("```")[1]
        if inner.startswith("json"):
            inner = inner[4:]
        try:
            return json.loads(inner.strip())
        except json.JSONDecodeError:
            pass

    # Strategy 3: Find JSON in response
    json_match = re.search(r'\{[^{}]*"score"[^{}]*\}', text, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    raise JudgeFailure(f"Unparseable judge reply: {text[:200]}")


def normalize_judge_result(reply: Any, max_marks: float) -> EvalResult:
    """Validate a judge reply and clamp its score into [0, max_marks]."""
    if not isinstance(reply, dict):
        raise JudgeFailure(f"Judge reply is not an object: {reply!r}")

    raw_score = reply.get("score")
    if isinstance(raw_score, bool):
        raise JudgeFailure("Judge score is not a number")
    try:
        score = float(raw_score)
    except (TypeError, ValueError):
        raise JudgeFailure(f"Judge score is not a number: {raw_score!r}")
    if not math.isfinite(score):
        raise JudgeFailure(f"Judge score is not finite: {raw_score!r}")

    score = min(max(score, 0.0), float(max_marks))
    feedback = reply.get("feedback")
    return EvalResult(
        score=score,
        is_correct=score >= max_marks,
        feedback=str(feedback) if feedback else "Evaluated by AI.",
        status="graded",
        grader="ai"
    )


class JudgeService(ABC):
    """Interface of the external AI judge."""

    @abstractmethod
    async def grade(self, request: JudgeRequest) -> dict:
        """Return the raw {score, feedback} reply for one request."""


class GeminiJudge(JudgeService):
    """Judge backed by Gemini, bounded by a timeout and a few retries."""

    def __init__(self, model_name: str = JUDGE_MODEL, timeout: float = JUDGE_TIMEOUT_SECONDS,
                 max_retries: int = JUDGE_MAX_RETRIES, base_retry_delay: float = 2.0):
        self.model_name = model_name
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_retry_delay = base_retry_delay

    async def grade(self, request: JudgeRequest) -> dict:
        api_key = get_llm_api_key()
        if not api_key:
            raise JudgeFailure("AI service not configured (missing API key)")

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            if attempt > 0:
                wait_time = self.base_retry_delay * (2 ** (attempt - 1))
                logger.info(f"Waiting {wait_time}s before judge retry {attempt + 1}")
                await asyncio.sleep(wait_time)

            chat = LlmChat(
                api_key=api_key,
                session_id=f"judge_{uuid.uuid4().hex[:8]}",
                system_message=JUDGE_SYSTEM_MESSAGE,
            ).with_model("gemini", self.model_name).with_params(
                temperature=0, response_mime_type="application/json"
            )

            try:
                resp_text = await asyncio.wait_for(
                    chat.send_message(UserMessage(text=build_judge_prompt(request))),
                    timeout=self.timeout
                )
                return parse_judge_reply(resp_text)
            except asyncio.TimeoutError:
                logger.warning(f"Judge timed out after {self.timeout}s (attempt {attempt + 1}/{self.max_retries})")
                last_error = JudgeFailure(f"AI judge timed out after {self.timeout:g}s")
            except JudgeFailure as e:
                logger.warning(f"{e} (attempt {attempt + 1}/{self.max_retries})")
                last_error = e
            except Exception as e:
                logger.error(f"Judge call failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                last_error = JudgeFailure(f"AI judge call failed: {e}")

        raise last_error


async def judge_answer(question: Question, answer: Any, judge: JudgeService) -> EvalResult:
    """Grade one open-ended answer. Raises JudgeFailure when no usable score comes back."""
    request = build_judge_request(question, answer)
    try:
        reply = await judge.grade(request)
    except JudgeFailure:
        raise
    except Exception as e:
        raise JudgeFailure(f"AI judge call failed: {e}") from e
    return normalize_judge_result(reply, question.marks)
