"""Submission and scoring-related Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timezone


SubmissionStatus = Literal["in_progress", "submitted", "evaluated"]

# graded           - score is final (deterministic, execution or judge)
# unanswered       - no answer, zero score
# pending_review   - not auto-gradable, waits for the teacher
# judge_failed     - AI judge errored, waits for a retry or the teacher
# not_run          - execution-scored question that was never run
# execution_failed - the execution service could not verify the answer
AnswerStatus = Literal[
    "graded", "unanswered", "pending_review", "judge_failed", "not_run", "execution_failed"
]


class EvalResult(BaseModel):
    """Uniform result of every evaluation strategy"""
    score: Optional[float] = None
    is_correct: Optional[bool] = None
    feedback: str = ""
    status: AnswerStatus = "graded"
    grader: Optional[str] = None  # deterministic, execution, ai, manual


class SubmissionAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")
    answer_id: str  # "{submission_id}_{question_id}"
    submission_id: str
    question_id: str
    answer_text: Optional[str] = None
    selected_option_id: Optional[str] = None
    selected_option_ids: Optional[List[str]] = None
    blank_answers: Optional[Dict[str, str]] = None
    code: Optional[str] = None
    file_url: Optional[str] = None
    score: Optional[float] = None
    is_correct: Optional[bool] = None
    feedback: Optional[str] = None
    status: AnswerStatus = "pending_review"
    grader: Optional[str] = None

    # draft execution record, written by a code run before submit
    executed: bool = False
    executed_answer: Optional[str] = None
    execution_output: Optional[str] = None
    execution_error: Optional[str] = None
    execution_error_kind: Optional[str] = None


class Submission(BaseModel):
    """One student's attempt at an activity"""
    model_config = ConfigDict(extra="ignore")
    submission_id: str
    activity_id: str
    student_id: str
    status: SubmissionStatus = "in_progress"
    total_score: Optional[float] = None
    feedback: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    submitted_at: Optional[datetime] = None
    evaluated_at: Optional[datetime] = None
    evaluated_by: Optional[str] = None


class SubmitRequest(BaseModel):
    """Raw UI values keyed by question id"""
    answers: Dict[str, Any]


class RunCodeRequest(BaseModel):
    question_id: str
    answer: Any = None


class RunCodeResponse(BaseModel):
    question_id: str
    ran: bool
    output: str = ""
    error: str = ""
    error_kind: Optional[str] = None
    result: Optional[EvalResult] = None


class QuestionGrade(BaseModel):
    score: float
    feedback: Optional[str] = None


class EvaluateRequest(BaseModel):
    """Teacher scores for items left to human review, keyed by question id"""
    scores: Dict[str, QuestionGrade] = {}
    feedback: Optional[str] = None


class SubmitResult(BaseModel):
    submission: Submission
    answers: List[SubmissionAnswer]
    warnings: List[str] = []
