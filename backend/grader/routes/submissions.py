"""Submission routes - view, run code, submit, evaluate."""

from fastapi import APIRouter, Depends, HTTPException

from grader.deps import get_current_user, get_teacher_user, get_student_user, get_grading_engine
from grader.models.submission import (
    SubmitRequest,
    RunCodeRequest,
    RunCodeResponse,
    EvaluateRequest,
)
from grader.models.user import User
from grader.services.grading import GradingEngine

router = APIRouter(tags=["submissions"])


@router.get("/submissions/{submission_id}")
async def get_submission(
    submission_id: str,
    user: User = Depends(get_current_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Get an attempt with its per-question answers"""
    result = await engine.get_submission(submission_id)
    if user.role == "student" and result.submission.student_id != user.user_id:
        raise HTTPException(status_code=403, detail="Not your submission")
    return result.model_dump(mode="json")


@router.post("/submissions/{submission_id}/run", response_model=RunCodeResponse)
async def run_code(
    submission_id: str,
    request: RunCodeRequest,
    user: User = Depends(get_student_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Run one question's code; compile/runtime errors come back in the body, not as HTTP errors"""
    outcome = await engine.run_code(submission_id, user.user_id, request.question_id, request.answer)
    return RunCodeResponse(question_id=request.question_id, **outcome.model_dump())


@router.post("/submissions/{submission_id}/submit")
async def submit_answers(
    submission_id: str,
    request: SubmitRequest,
    user: User = Depends(get_student_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Grade and submit the attempt. Per-question grading problems are returned as warnings."""
    result = await engine.submit(submission_id, user.user_id, request.answers)
    return result.model_dump(mode="json")


@router.post("/submissions/{submission_id}/evaluate")
async def evaluate_submission(
    submission_id: str,
    request: EvaluateRequest,
    user: User = Depends(get_teacher_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Teacher scores the items left for review and closes the attempt"""
    result = await engine.evaluate(submission_id, user.user_id, request.scores, request.feedback)
    return result.model_dump(mode="json")


@router.post("/submissions/{submission_id}/regrade-pending")
async def regrade_pending(
    submission_id: str,
    user: User = Depends(get_teacher_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Retry AI grading for answers the judge failed on"""
    result = await engine.regrade_pending(submission_id)
    return result.model_dump(mode="json")
