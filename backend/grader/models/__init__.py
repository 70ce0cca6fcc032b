"""Pydantic models for the activity grader"""

from .user import User
from .activity import (
    QuestionType,
    EvaluationMode,
    QuestionOption,
    Blank,
    Question,
    Section,
    Activity,
    ActivityCreate,
)
from .submission import (
    EvalResult,
    SubmissionAnswer,
    Submission,
    SubmitRequest,
    RunCodeRequest,
    RunCodeResponse,
    QuestionGrade,
    EvaluateRequest,
    SubmitResult,
)
