"""
Code construction and execution verification.

Rebuilds a runnable program from a question template plus the student's
fragments, sends it to the Piston execution API and interprets the result.
Execution problems (compile errors, runtime errors, timeouts, an unreachable
service) are classified on the result, never raised.
"""

import re
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from grader.config import (
    logger,
    PISTON_URL,
    EXECUTION_TIMEOUT_SECONDS,
    DEFAULT_LANGUAGE,
    LANGUAGE_FILE_NAMES,
    get_language_version,
)
from grader.models.activity import Question
from grader.models.submission import EvalResult
from grader.services.normalizer import NO_ANSWER, uses_blanks
from grader.utils.concurrency import execution_semaphore

BLANK_MARKER = re.compile(r"({{.*?}})")

# kinds that mean the student's program is at fault
PROGRAM_FAILURES = {"compile_error", "runtime_error", "timeout"}
# kinds that mean we could not run anything at all
SERVICE_FAILURES = {"api_error", "unavailable"}

EXECUTION_SCORED_TYPES = {"error_correction", "output_prediction"}
RUNNABLE_TYPES = {"error_correction", "output_prediction", "code_completion"}


class ExecutionResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    error_kind: Optional[str] = None  # compile_error, runtime_error, timeout, api_error, unavailable

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class ExecutionOutcome(BaseModel):
    """What a code run shows the student, plus the verdict for execution-scored types"""
    ran: bool
    output: str = ""
    error: str = ""
    error_kind: Optional[str] = None
    result: Optional[EvalResult] = None


# ============== CODE CONSTRUCTION ==============

def fill_template(template: str, question: Question, fragments: dict) -> str:
    """Replace each {{...}} marker, in template order, with the matching blank fragment."""
    segments = BLANK_MARKER.split(template)
    blank_index = 0
    parts = []
    for segment in segments:
        if BLANK_MARKER.fullmatch(segment):
            blank = question.blanks[blank_index] if blank_index < len(question.blanks) else None
            blank_index += 1
            fragment = fragments.get(blank.id) if blank else None
            # an empty blank is sent as a space so the compiler rejects it
            parts.append(fragment if fragment and fragment.strip() else " ")
        else:
            parts.append(segment)
    return "".join(parts)


def build_runnable_code(question: Question, normalized: Any) -> Optional[str]:
    """
    Source to execute for a question, or None when nothing can be built.

    output_prediction runs the question's own template: the student's answer
    is the predicted stdout, not code.
    """
    if question.type == "output_prediction":
        return question.code_template or None

    if normalized is NO_ANSWER:
        return None

    if question.type == "code_completion" and uses_blanks(question):
        if not question.code_template:
            return None
        return fill_template(question.code_template, question, normalized)

    if question.type in ("code_completion", "error_correction"):
        return str(normalized)

    return None


# ============== EXECUTION SERVICE ==============

class ExecutionService:
    """Client for a Piston-compatible execution API."""

    def __init__(
        self,
        url: str = PISTON_URL,
        timeout: float = EXECUTION_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def execute(self, source: str, language: str = DEFAULT_LANGUAGE,
                      version: Optional[str] = None) -> ExecutionResult:
        payload = {
            "language": language,
            "version": version or get_language_version(language),
            "files": [
                {"name": LANGUAGE_FILE_NAMES.get(language, "main"), "content": source}
            ],
        }

        try:
            async with execution_semaphore:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"Execution timed out after {self.timeout}s ({language})")
            return ExecutionResult(
                stderr=f"Execution timed out after {self.timeout:g} seconds.",
                error_kind="timeout"
            )
        except httpx.HTTPError as e:
            logger.error(f"Execution service unreachable: {e}")
            return ExecutionResult(
                stderr="Failed to connect to the code execution service.",
                error_kind="unavailable"
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Execution service returned non-JSON ({response.status_code}): {response.text[:200]}")
            return ExecutionResult(
                stderr=f"Execution service error (HTTP {response.status_code}).",
                error_kind="api_error"
            )

        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error(f"Execution service returned HTTP {response.status_code}: {message or data}")
            return ExecutionResult(
                stderr=f"Execution service error (HTTP {response.status_code})"
                       + (f": {message}" if message else "."),
                error_kind="api_error"
            )

        return interpret_response(data)


def interpret_response(data: dict) -> ExecutionResult:
    """Classify a Piston response body."""
    if not isinstance(data, dict):
        return ExecutionResult(stderr="Malformed execution service response.", error_kind="api_error")

    # API-level error, e.g. unknown language/version or rate limit
    if data.get("message"):
        logger.error(f"Piston API Error: {data['message']}")
        return ExecutionResult(stderr=f"Piston API Error: {data['message']}", error_kind="api_error")

    compile_stage = data.get("compile") or {}
    if compile_stage.get("code") not in (None, 0) or compile_stage.get("stderr"):
        return ExecutionResult(
            stdout=compile_stage.get("stdout") or "",
            stderr=compile_stage.get("stderr") or compile_stage.get("output") or "Compilation failed.",
            error_kind="compile_error"
        )

    run = data.get("run")
    if not isinstance(run, dict):
        logger.error(f"Execution service response has no run stage: {str(data)[:200]}")
        return ExecutionResult(stderr="Malformed execution service response.", error_kind="api_error")
    stdout = run.get("stdout") or ""
    stderr = run.get("stderr") or ""

    if run.get("signal") == "SIGKILL":
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr or "Execution was killed (time or memory limit exceeded).",
            error_kind="timeout"
        )
    if stderr or run.get("code") not in (None, 0):
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr or f"Process exited with code {run.get('code')}.",
            error_kind="runtime_error"
        )
    return ExecutionResult(stdout=stdout, stderr="")


# ============== VERIFICATION ==============

def _not_run(message: str) -> ExecutionOutcome:
    return ExecutionOutcome(
        ran=False,
        error=message,
        result=EvalResult(score=None, is_correct=None, feedback=message,
                          status="not_run", grader="execution")
    )


def _judge_error_correction(question: Question, result: ExecutionResult) -> EvalResult:
    # running cleanly earns full marks; correction_code is not compared
    if result.ok:
        return EvalResult(score=question.marks, is_correct=True,
                          feedback="Great job! The code runs successfully.",
                          status="graded", grader="execution")
    if result.error_kind in PROGRAM_FAILURES:
        return EvalResult(score=0, is_correct=False,
                          feedback=f"The code still fails: {result.stderr.strip()}",
                          status="graded", grader="execution")
    return EvalResult(score=None, is_correct=None,
                      feedback=f"Could not verify the code yet: {result.stderr.strip()}",
                      status="execution_failed", grader="execution")


def judge_output_prediction(question: Question, predicted: str, result: ExecutionResult) -> EvalResult:
    if not result.ok:
        # the template itself failed; nothing to compare the prediction with
        return EvalResult(score=None, is_correct=None,
                          feedback=f"Could not run the program to check your prediction: {result.stderr.strip()}",
                          status="execution_failed", grader="execution")
    is_match = result.stdout.strip() == predicted.strip()
    if is_match:
        return EvalResult(score=question.marks, is_correct=True,
                          feedback="Correct! The actual output matches your prediction.",
                          status="graded", grader="execution")
    return EvalResult(score=0, is_correct=False,
                      feedback="Incorrect. The actual output does NOT match your prediction.",
                      status="graded", grader="execution")


async def verify_execution(question: Question, normalized: Any, service: ExecutionService,
                           language: str = DEFAULT_LANGUAGE) -> ExecutionOutcome:
    """
    Run the code for one question and interpret the result.

    For code_completion the run is informational: the structured blank score
    is computed separately, so the outcome carries no result.
    """
    if question.type not in RUNNABLE_TYPES:
        return _not_run("This question has no code to run.")

    if question.type == "output_prediction" and normalized is NO_ANSWER:
        return _not_run("Please enter your output prediction.")

    code = build_runnable_code(question, normalized)
    if not code:
        return _not_run("No code to run. Please complete the code first.")

    lang = question.language or language
    result = await service.execute(code, lang, question.language_version)
    logger.info(f"Ran question {question.id} ({question.type}, {lang}): {result.error_kind or 'ok'}")

    outcome = ExecutionOutcome(
        ran=True,
        output=result.stdout,
        error=result.stderr,
        error_kind=result.error_kind,
    )
    if question.type == "error_correction":
        outcome.result = _judge_error_correction(question, result)
    elif question.type == "output_prediction":
        outcome.result = judge_output_prediction(question, str(normalized), result)
    return outcome
