"""
Grading service - drives evaluation across a whole attempt and owns the
attempt lifecycle (in_progress -> submitted -> evaluated).

Per question the engine picks exactly one strategy: the AI judge, the
recorded code-execution verdict, or a deterministic evaluator. A failure
while grading one question is recorded on that answer and reported as a
warning; it never aborts the submit.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from grader.config import logger
from grader.errors import (
    ActivityNotFound,
    SubmissionNotFound,
    QuestionNotFound,
    SubmissionRejected,
    InvalidActivity,
    JudgeFailure,
)
from grader.models.activity import Activity, ActivityCreate, Question
from grader.models.submission import (
    EvalResult,
    Submission,
    SubmissionAnswer,
    SubmitResult,
    QuestionGrade,
)
from grader.services.evaluators import evaluate_deterministic, unanswered_result
from grader.services.execution import (
    ExecutionOutcome,
    ExecutionResult,
    ExecutionService,
    EXECUTION_SCORED_TYPES,
    SERVICE_FAILURES,
    judge_output_prediction,
    verify_execution,
)
from grader.services.judge import (
    GeminiJudge,
    JudgeService,
    JUDGE_FAILED_FEEDBACK,
    is_judge_eligible,
    judge_answer,
)
from grader.services.normalizer import (
    NO_ANSWER,
    normalize_answer,
    answer_payload,
    answer_fingerprint,
)
from grader.services.store import SubmissionStore, answer_key
from grader.utils.validation import validate_activity_structure

PENDING_REVIEW_FEEDBACK = "Awaiting teacher review."
NOT_RUN_FEEDBACK = "Please run the code to verify your answer."
GRADING_ERROR_FEEDBACK = "Could not grade this answer yet. It is pending manual review."

# graders whose verdicts a teacher may not overwrite
AUTOMATIC_GRADERS = {"deterministic", "execution"}


def pending_review() -> EvalResult:
    return EvalResult(score=None, is_correct=None, feedback=PENDING_REVIEW_FEEDBACK,
                      status="pending_review", grader="manual")


def total_of(answers: List[SubmissionAnswer]) -> float:
    """Sum of every known score; unscored items count as nothing yet."""
    return float(sum(a.score for a in answers if a.score is not None))


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class GradingEngine:
    def __init__(
        self,
        store: SubmissionStore,
        judge: Optional[JudgeService] = None,
        executor: Optional[ExecutionService] = None,
    ):
        self.store = store
        self.judge = judge or GeminiJudge()
        self.executor = executor or ExecutionService()

    # ============== ACTIVITIES ==============

    async def create_activity(self, payload: ActivityCreate, teacher_id: str) -> Activity:
        validation = validate_activity_structure(payload.sections, payload.questions)
        if not validation["valid"]:
            raise InvalidActivity(validation["errors"], validation["warnings"])
        for warning in validation["warnings"]:
            logger.warning(f"Activity '{payload.title}': {warning}")

        activity = Activity(
            activity_id=f"act_{uuid.uuid4().hex[:12]}",
            created_by=teacher_id,
            total_marks=validation["total_marks"],
            **payload.model_dump(),
        )
        await self.store.insert_activity(activity.model_dump(mode="json"))
        logger.info(f"Created activity {activity.activity_id} with {len(activity.questions)} questions")
        return activity

    async def load_activity(self, activity_id: str) -> Activity:
        doc = await self.store.get_activity(activity_id)
        if not doc:
            raise ActivityNotFound(activity_id)
        return Activity(**doc)

    # ============== ATTEMPTS ==============

    async def start_attempt(self, activity_id: str, student_id: str) -> Submission:
        """Return the student's attempt, creating it on first access."""
        activity = await self.load_activity(activity_id)
        if not activity.is_published:
            raise SubmissionRejected("This activity is not published yet.", status_code=403)

        doc = await self.store.get_or_create_submission(
            activity_id, student_id, new_id=f"sub_{uuid.uuid4().hex[:12]}"
        )
        return Submission(**doc)

    async def _load_submission(self, submission_id: str) -> dict:
        submission = await self.store.get_submission(submission_id)
        if not submission:
            raise SubmissionNotFound(submission_id)
        return submission

    async def _load_owned_submission(self, submission_id: str, student_id: str) -> dict:
        submission = await self._load_submission(submission_id)
        if submission["student_id"] != student_id:
            raise SubmissionRejected("This attempt belongs to another student.", status_code=403)
        return submission

    @staticmethod
    def _ensure_in_progress(submission: dict):
        if submission["status"] != "in_progress":
            raise SubmissionRejected(
                f"This attempt is already {submission['status']}; answers can no longer change.",
                status=submission["status"]
            )

    @staticmethod
    def _ensure_before_deadline(activity: Activity):
        if activity.deadline and _as_utc(activity.deadline) < datetime.now(timezone.utc):
            raise SubmissionRejected("The deadline for this activity has passed.", status_code=403)

    async def get_submission(self, submission_id: str) -> SubmitResult:
        submission = await self._load_submission(submission_id)
        answers = await self.store.get_answers(submission_id)
        return SubmitResult(
            submission=Submission(**submission),
            answers=[SubmissionAnswer(**a) for a in answers],
        )

    # ============== CODE RUNS ==============

    async def run_code(self, submission_id: str, student_id: str,
                       question_id: str, raw_answer: Any) -> ExecutionOutcome:
        """
        Execute one question's code on behalf of the student.

        A successful call to the execution service is recorded on the draft
        answer, so the verdict survives until submit.
        """
        submission = await self._load_owned_submission(submission_id, student_id)
        self._ensure_in_progress(submission)
        activity = await self.load_activity(submission["activity_id"])
        question = activity.get_question(question_id)
        if question is None:
            raise QuestionNotFound(question_id)

        normalized = normalize_answer(question, raw_answer)
        outcome = await verify_execution(question, normalized, self.executor, activity.language)
        if not outcome.ran:
            return outcome

        draft = {
            "answer_id": answer_key(submission_id, question.id),
            "submission_id": submission_id,
            "question_id": question.id,
            **answer_payload(question, normalized),
            "executed": True,
            "executed_answer": answer_fingerprint(normalized),
            "execution_output": outcome.output,
            "execution_error": outcome.error,
            "execution_error_kind": outcome.error_kind,
        }
        if outcome.result is not None:
            draft.update(outcome.result.model_dump())

        saved = await self.store.save_draft_answer(draft)
        if not saved:
            raise SubmissionRejected("This attempt has already been submitted; answers can no longer change.")
        return outcome

    def _recorded_execution(self, question: Question, normalized: Any,
                            draft: Optional[dict]) -> Optional[EvalResult]:
        """Verdict from an earlier run of this exact answer, if there is one."""
        if not draft or not draft.get("executed"):
            return None

        if question.type == "output_prediction":
            if draft.get("execution_error_kind") in SERVICE_FAILURES:
                return None
            # the program output does not depend on the prediction, re-compare it
            run = ExecutionResult(
                stdout=draft.get("execution_output") or "",
                stderr=draft.get("execution_error") or "",
                error_kind=draft.get("execution_error_kind"),
            )
            return judge_output_prediction(question, str(normalized), run)

        if draft.get("executed_answer") != answer_fingerprint(normalized):
            return None
        if draft.get("status") is None or draft.get("grader") != "execution":
            return None
        return EvalResult(
            score=draft.get("score"),
            is_correct=draft.get("is_correct"),
            feedback=draft.get("feedback") or "",
            status=draft["status"],
            grader="execution",
        )

    # ============== GRADING ==============

    async def grade_question(self, question: Question, normalized: Any,
                             draft: Optional[dict] = None) -> Tuple[EvalResult, Optional[str]]:
        """Grade one answer. Returns the result and an optional warning."""
        if normalized is NO_ANSWER:
            return unanswered_result(), None

        if is_judge_eligible(question):
            try:
                return await judge_answer(question, normalized, self.judge), None
            except JudgeFailure as e:
                logger.warning(f"Judge failed for question {question.id}: {e}")
                result = EvalResult(score=None, is_correct=None, feedback=JUDGE_FAILED_FEEDBACK,
                                    status="judge_failed", grader="ai")
                return result, f"Could not auto-evaluate question {question.id}: {e}"

        if question.evaluation_mode == "manual":
            return pending_review(), None

        recorded = None
        if question.type in EXECUTION_SCORED_TYPES:
            recorded = self._recorded_execution(question, normalized, draft)
            if recorded is not None and recorded.status == "graded":
                return recorded, None

        result = evaluate_deterministic(question, normalized)
        if result is not None:
            return result, None

        if recorded is not None:
            return recorded, None
        if question.type in EXECUTION_SCORED_TYPES:
            return EvalResult(score=None, is_correct=None, feedback=NOT_RUN_FEEDBACK,
                              status="not_run", grader="execution"), None
        return pending_review(), None

    async def _grade_safely(self, question: Question, normalized: Any,
                            draft: Optional[dict]) -> Tuple[EvalResult, Optional[str]]:
        try:
            return await self.grade_question(question, normalized, draft)
        except Exception as e:
            logger.error(f"Grading question {question.id} failed: {e}", exc_info=True)
            result = EvalResult(score=None, is_correct=None, feedback=GRADING_ERROR_FEEDBACK,
                                status="pending_review", grader="manual")
            return result, f"Could not grade question {question.id}: {e}"

    @staticmethod
    def _answer_record(submission_id: str, question: Question, normalized: Any,
                       result: EvalResult, draft: Optional[dict]) -> SubmissionAnswer:
        draft = draft or {}
        return SubmissionAnswer(
            answer_id=answer_key(submission_id, question.id),
            submission_id=submission_id,
            question_id=question.id,
            **answer_payload(question, normalized),
            **result.model_dump(),
            executed=bool(draft.get("executed")),
            executed_answer=draft.get("executed_answer"),
            execution_output=draft.get("execution_output"),
            execution_error=draft.get("execution_error"),
            execution_error_kind=draft.get("execution_error_kind"),
        )

    async def submit(self, submission_id: str, student_id: str,
                     raw_answers: Dict[str, Any]) -> SubmitResult:
        """
        Grade every question of the attempt and move it to submitted.

        All checks run before anything is written: the attempt must be in
        progress, before the deadline, and every question answered.
        """
        submission = await self._load_owned_submission(submission_id, student_id)
        self._ensure_in_progress(submission)
        activity = await self.load_activity(submission["activity_id"])
        self._ensure_before_deadline(activity)

        questions = activity.ordered_questions()
        normalized = {q.id: normalize_answer(q, raw_answers.get(q.id)) for q in questions}
        missing = [q.id for q in questions if normalized[q.id] is NO_ANSWER]
        if missing:
            raise SubmissionRejected(
                f"Please answer all {len(missing)} remaining questions.",
                status_code=422,
                missing_question_ids=missing
            )
        unknown = set(raw_answers) - set(normalized)
        if unknown:
            logger.warning(f"Submission {submission_id}: ignoring answers for unknown questions {sorted(unknown)}")

        if not await self.store.claim_for_submit(submission_id):
            raise SubmissionRejected("This attempt has already been submitted.")

        try:
            drafts = {a["question_id"]: a for a in await self.store.get_answers(submission_id)}

            answers: List[SubmissionAnswer] = []
            warnings: List[str] = []
            for question in questions:
                draft = drafts.get(question.id)
                result, warning = await self._grade_safely(question, normalized[question.id], draft)
                if warning:
                    warnings.append(warning)
                answers.append(self._answer_record(submission_id, question, normalized[question.id], result, draft))

            for answer in answers:
                await self.store.upsert_answer(answer.model_dump())

            total_score = total_of(answers)
            updated = await self.store.mark_submitted(submission_id, total_score)
        except Exception:
            await self.store.release_claim(submission_id)
            raise

        if updated is None:
            raise SubmissionRejected("This attempt has already been submitted.")

        logger.info(
            f"Submission {submission_id} submitted: {total_score:g}/{activity.total_marks:g}, "
            f"{sum(1 for a in answers if a.score is None)} pending, {len(warnings)} warnings"
        )
        return SubmitResult(submission=Submission(**updated), answers=answers, warnings=warnings)

    # ============== EVALUATION ==============

    async def evaluate(self, submission_id: str, evaluator_id: str,
                       scores: Dict[str, QuestionGrade], feedback: Optional[str] = None) -> SubmitResult:
        """
        Teacher pass: score the items left for review and close the attempt.

        Automatic verdicts (deterministic and execution) are never changed.
        Every question must end up with a score.
        """
        submission = await self._load_submission(submission_id)
        if submission["status"] != "submitted":
            raise SubmissionRejected(
                f"Only submitted attempts can be evaluated (status is {submission['status']}).",
                status=submission["status"]
            )
        activity = await self.load_activity(submission["activity_id"])
        answers = {a["question_id"]: SubmissionAnswer(**a) for a in await self.store.get_answers(submission_id)}

        changed: List[SubmissionAnswer] = []
        for question_id, grade in scores.items():
            question = activity.get_question(question_id)
            if question is None:
                raise QuestionNotFound(question_id)
            answer = answers.get(question_id)
            if answer is None:
                raise SubmissionRejected(f"No answer recorded for question {question_id}.")
            if answer.grader in AUTOMATIC_GRADERS and answer.score is not None:
                raise SubmissionRejected(
                    f"Question {question_id} was graded automatically and cannot be re-scored.",
                    question_id=question_id
                )
            if not 0 <= grade.score <= question.marks:
                raise SubmissionRejected(
                    f"Score for question {question_id} must be between 0 and {question.marks}.",
                    status_code=422,
                    question_id=question_id
                )
            updated = answer.model_copy(update={
                "score": grade.score,
                "is_correct": grade.score >= question.marks,
                "feedback": grade.feedback or answer.feedback,
                "status": "graded",
                "grader": "manual",
            })
            answers[question_id] = updated
            changed.append(updated)

        pending = [qid for qid, a in answers.items() if a.score is None]
        if pending:
            raise SubmissionRejected(
                f"{len(pending)} question(s) still need a score.",
                status_code=422,
                pending_question_ids=pending
            )

        for answer in changed:
            await self.store.upsert_answer(answer.model_dump())

        ordered = [answers[q.id] for q in activity.ordered_questions() if q.id in answers]
        total_score = total_of(ordered)
        updated_submission = await self.store.mark_evaluated(submission_id, total_score, evaluator_id, feedback)
        if updated_submission is None:
            raise SubmissionRejected("This attempt was evaluated concurrently.")

        logger.info(f"Submission {submission_id} evaluated by {evaluator_id}: {total_score:g}")
        return SubmitResult(submission=Submission(**updated_submission), answers=ordered)

    async def regrade_pending(self, submission_id: str) -> SubmitResult:
        """
        Automated pass: retry the judge for answers it failed on. When nothing
        is left unscored the attempt becomes evaluated.
        """
        submission = await self._load_submission(submission_id)
        if submission["status"] != "submitted":
            raise SubmissionRejected(
                f"Only submitted attempts can be regraded (status is {submission['status']}).",
                status=submission["status"]
            )
        activity = await self.load_activity(submission["activity_id"])
        answers = {a["question_id"]: SubmissionAnswer(**a) for a in await self.store.get_answers(submission_id)}

        warnings: List[str] = []
        for question_id, answer in list(answers.items()):
            if answer.status != "judge_failed":
                continue
            question = activity.get_question(question_id)
            if question is None:
                continue
            normalized = normalize_answer(question, answer.answer_text)
            result, warning = await self._grade_safely(question, normalized, None)
            if warning:
                warnings.append(warning)
                continue
            updated = answer.model_copy(update=result.model_dump())
            await self.store.upsert_answer(updated.model_dump())
            answers[question_id] = updated

        ordered = [answers[q.id] for q in activity.ordered_questions() if q.id in answers]
        total_score = total_of(ordered)

        if all(a.score is not None for a in ordered):
            updated_submission = await self.store.mark_evaluated(submission_id, total_score, "auto")
            if updated_submission is None:
                raise SubmissionRejected("This attempt was evaluated concurrently.")
        else:
            await self.store.set_total_score(submission_id, total_score)
            updated_submission = await self.store.get_submission(submission_id)

        return SubmitResult(submission=Submission(**updated_submission), answers=ordered, warnings=warnings)

    # ============== REPORTING ==============

    async def activity_report(self, activity_id: str) -> dict:
        """One row per attempt with its total and per-question scores."""
        activity = await self.load_activity(activity_id)
        submissions = await self.store.list_submissions(activity_id)

        rows = []
        for sub in submissions:
            answers = await self.store.get_answers(sub["submission_id"])
            question_marks = {
                a["question_id"]: a["score"]
                for a in answers
                if isinstance(a.get("score"), (int, float))
            }
            rows.append({
                "submission_id": sub["submission_id"],
                "student_id": sub["student_id"],
                "status": sub["status"],
                "submitted_at": sub.get("submitted_at"),
                "total_score": sub.get("total_score"),
                "question_marks": question_marks,
                "pending_questions": [
                    a["question_id"] for a in answers
                    if a.get("score") is None and sub["status"] != "in_progress"
                ],
            })

        return {
            "activity_id": activity.activity_id,
            "title": activity.title,
            "total_marks": activity.total_marks,
            "questions": [
                {"id": q.id, "type": q.type, "marks": q.marks, "evaluation_mode": q.evaluation_mode}
                for q in activity.ordered_questions()
            ],
            "rows": rows,
        }
