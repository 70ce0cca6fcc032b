"""Activity routes - authoring, reading, starting an attempt, reporting."""

from fastapi import APIRouter, Depends

from grader.deps import get_current_user, get_teacher_user, get_student_user, get_grading_engine
from grader.models.activity import ActivityCreate
from grader.models.user import User
from grader.services.grading import GradingEngine

router = APIRouter(tags=["activities"])

# fields that give answers away; stripped before students see a question
ANSWER_FIELDS = {
    "correct_answer",
    "allowed_error",
    "range_min",
    "range_max",
    "model_answer",
    "expected_keywords",
    "explanation_rubric",
    "correction_code",
    "error_description",
    "error_line_number",
}


def student_view(activity: dict) -> dict:
    """Hide correctness data from a student-facing copy of an activity."""
    questions = []
    for q in activity.get("questions", []):
        q = {k: v for k, v in q.items() if k not in ANSWER_FIELDS}
        q["options"] = [{k: v for k, v in o.items() if k != "is_correct"} for o in q.get("options", [])]
        q["blanks"] = [{k: v for k, v in b.items() if k != "correct_answers"} for b in q.get("blanks", [])]
        questions.append(q)
    return {**activity, "questions": questions}


@router.post("/activities")
async def create_activity(
    payload: ActivityCreate,
    user: User = Depends(get_teacher_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Create an activity (validated before it is stored)"""
    activity = await engine.create_activity(payload, user.user_id)
    return activity.model_dump(mode="json")


@router.get("/activities/{activity_id}")
async def get_activity(
    activity_id: str,
    user: User = Depends(get_current_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Get an activity; students get it without answers"""
    activity = (await engine.load_activity(activity_id)).model_dump(mode="json")
    if user.role == "student":
        return student_view(activity)
    return activity


@router.post("/activities/{activity_id}/start")
async def start_activity(
    activity_id: str,
    user: User = Depends(get_student_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Start (or resume) the student's single attempt"""
    submission = await engine.start_attempt(activity_id, user.user_id)
    return submission.model_dump(mode="json")


@router.get("/activities/{activity_id}/report")
async def get_activity_report(
    activity_id: str,
    user: User = Depends(get_teacher_user),
    engine: GradingEngine = Depends(get_grading_engine)
):
    """Marks per student and per question"""
    return await engine.activity_report(activity_id)
