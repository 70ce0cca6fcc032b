"""Tests for the grading engine: attempt lifecycle, submit, code runs and evaluation"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import (
    activity_payload,
    make_question,
    mcq_question,
    numerical_question,
    piston_ok,
    piston_compile_error,
)

from grader.errors import InvalidActivity, SubmissionRejected, QuestionNotFound
from grader.models.submission import QuestionGrade
from grader.services import grading as grading_module

FIXED_CODE = "public class Main { public static void main(String[] a) { System.out.println(1); } }"


def ai_question(id="q_ai", marks=4):
    return make_question(
        id, "short_answer", marks,
        order_index=2,
        evaluation_mode="ai",
        question_text="What lets a subclass reuse code?",
        expected_keywords=["inheritance"],
    )


def manual_question(id="q_para", marks=5):
    return make_question(id, "paragraph", marks, order_index=3, evaluation_mode="manual")


def error_correction_question(id="q_ec", marks=4):
    return make_question(
        id, "error_correction", marks,
        order_index=4,
        faulty_code="public class Main { public static void main(String[] a) { System.out.println(1) } }",
    )


def prediction_question(id="q_op", marks=3, **fields):
    return make_question(
        id, "output_prediction", marks,
        order_index=5,
        code_template='public class Main { public static void main(String[] a) { System.out.println("Hi"); } }',
        **fields,
    )


# ============== ACTIVITIES & ATTEMPTS ==============

async def test_create_activity_rejects_invalid_structure(engine):
    payload = activity_payload([mcq_question("q1"), numerical_question("q1")])
    with pytest.raises(InvalidActivity) as exc:
        await engine.create_activity(payload, "teacher_1")
    assert exc.value.status_code == 422
    assert "Duplicate question id: q1" in exc.value.details["errors"]


async def test_create_activity_totals_marks(engine):
    activity = await engine.create_activity(activity_payload([mcq_question(), numerical_question()]), "teacher_1")
    assert activity.total_marks == 15
    assert activity.activity_id.startswith("act_")
    loaded = await engine.load_activity(activity.activity_id)
    assert [q.id for q in loaded.ordered_questions()] == ["q_mcq", "q_num"]


async def test_start_attempt_is_reused(engine, start_attempt):
    activity, first = await start_attempt([mcq_question()])
    again = await engine.start_attempt(activity.activity_id, "student_1")
    assert first.status == "in_progress"
    assert again.submission_id == first.submission_id


async def test_concurrent_starts_create_one_attempt(engine, store):
    activity = await engine.create_activity(activity_payload([mcq_question()]), "teacher_1")
    attempts = await asyncio.gather(*[engine.start_attempt(activity.activity_id, "student_1") for _ in range(3)])
    assert len({a.submission_id for a in attempts}) == 1
    assert len(await store.list_submissions(activity.activity_id)) == 1


async def test_unpublished_activity_cannot_be_started(engine):
    activity = await engine.create_activity(activity_payload([mcq_question()], is_published=False), "teacher_1")
    with pytest.raises(SubmissionRejected) as exc:
        await engine.start_attempt(activity.activity_id, "student_1")
    assert exc.value.status_code == 403


# ============== SUBMIT ==============

async def test_end_to_end_mcq_and_numerical(engine, start_attempt):
    _, submission = await start_attempt([mcq_question(marks=10), numerical_question(marks=5)])

    result = await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_num": "3.15"})

    assert result.submission.status == "submitted"
    assert result.submission.total_score == 15
    assert result.submission.submitted_at is not None
    assert result.warnings == []
    assert [a.question_id for a in result.answers] == ["q_mcq", "q_num"]
    assert all(a.is_correct for a in result.answers)
    assert result.answers[0].answer_id == f"{submission.submission_id}_q_mcq"


async def test_second_submit_is_rejected_without_side_effects(engine, store, start_attempt):
    _, submission = await start_attempt([mcq_question(marks=10), numerical_question(marks=5)])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_num": "3.15"})

    with pytest.raises(SubmissionRejected) as exc:
        await engine.submit(submission.submission_id, "student_1", {"q_mcq": "B", "q_num": "0"})

    assert exc.value.status_code == 409
    assert await store.count_answers(submission.submission_id) == 2
    stored = await store.get_submission(submission.submission_id)
    assert stored["total_score"] == 15
    assert stored["status"] == "submitted"


async def test_missing_answers_reject_before_anything_is_written(engine, store, start_attempt):
    _, submission = await start_attempt([mcq_question(), numerical_question()])

    with pytest.raises(SubmissionRejected) as exc:
        await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_num": "  "})

    assert exc.value.status_code == 422
    assert exc.value.details["missing_question_ids"] == ["q_num"]
    assert await store.count_answers(submission.submission_id) == 0
    assert (await store.get_submission(submission.submission_id))["status"] == "in_progress"


async def test_submit_after_deadline_is_rejected(engine, start_attempt):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    _, submission = await start_attempt([mcq_question()], deadline=past)
    with pytest.raises(SubmissionRejected) as exc:
        await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A"})
    assert exc.value.status_code == 403


async def test_other_students_cannot_submit_an_attempt(engine, start_attempt):
    _, submission = await start_attempt([mcq_question()])
    with pytest.raises(SubmissionRejected) as exc:
        await engine.submit(submission.submission_id, "student_2", {"q_mcq": "A"})
    assert exc.value.status_code == 403


async def test_judge_failure_does_not_abort_submit(engine, judge, start_attempt):
    judge.error = TimeoutError("judge timed out")
    _, submission = await start_attempt([mcq_question(marks=10), ai_question()])

    result = await engine.submit(submission.submission_id, "student_1", {
        "q_mcq": "A",
        "q_ai": "Inheritance lets subclasses reuse code",
    })

    assert result.submission.status == "submitted"
    assert result.submission.total_score == 10
    ai_answer = result.answers[1]
    assert ai_answer.status == "judge_failed"
    assert ai_answer.score is None
    assert "pending manual review" in ai_answer.feedback
    assert len(result.warnings) == 1
    assert "q_ai" in result.warnings[0]


async def test_judge_score_is_recorded(engine, judge, start_attempt):
    judge.reply = {"score": 4, "feedback": "Mentions inheritance."}
    _, submission = await start_attempt([ai_question()])

    result = await engine.submit(submission.submission_id, "student_1", {"q_ai": "Inheritance"})

    assert result.submission.total_score == 4
    assert result.answers[0].grader == "ai"
    assert result.answers[0].is_correct is True


async def test_unexpected_grading_error_is_isolated(engine, monkeypatch, start_attempt):
    original = grading_module.evaluate_deterministic

    def flaky(question, normalized):
        if question.id == "q_num":
            raise RuntimeError("boom")
        return original(question, normalized)

    monkeypatch.setattr(grading_module, "evaluate_deterministic", flaky)
    _, submission = await start_attempt([mcq_question(marks=10), numerical_question()])

    result = await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_num": "3.14"})

    assert result.submission.status == "submitted"
    assert result.submission.total_score == 10
    assert result.answers[1].status == "pending_review"
    assert result.answers[1].score is None
    assert any("boom" in w for w in result.warnings)


async def test_manual_questions_wait_for_review(engine, start_attempt):
    _, submission = await start_attempt([manual_question()])
    result = await engine.submit(submission.submission_id, "student_1", {"q_para": "An essay."})
    assert result.answers[0].status == "pending_review"
    assert result.answers[0].score is None
    assert result.submission.total_score == 0


# ============== CODE RUNS ==============

async def test_run_then_submit_reuses_execution_verdict(engine, piston, store, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    piston.queue(piston_ok("1\n"))

    outcome = await engine.run_code(submission.submission_id, "student_1", "q_ec", FIXED_CODE)
    assert outcome.ran
    assert outcome.output == "1\n"
    assert outcome.result.score == 4

    draft = (await store.get_answers(submission.submission_id))[0]
    assert draft["executed"] is True

    result = await engine.submit(submission.submission_id, "student_1", {"q_ec": FIXED_CODE})
    answer = result.answers[0]
    assert (answer.score, answer.grader, answer.executed) == (4, "execution", True)
    assert len(piston.payloads) == 1


async def test_failed_run_scores_zero(engine, piston, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    piston.queue(piston_compile_error())

    outcome = await engine.run_code(submission.submission_id, "student_1", "q_ec", "class Main {")
    assert outcome.error_kind == "compile_error"

    result = await engine.submit(submission.submission_id, "student_1", {"q_ec": "class Main {"})
    assert result.answers[0].score == 0
    assert result.answers[0].is_correct is False


async def test_error_correction_never_run_is_not_scored(engine, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    result = await engine.submit(submission.submission_id, "student_1", {"q_ec": FIXED_CODE})
    answer = result.answers[0]
    assert answer.status == "not_run"
    assert answer.score is None
    assert answer.feedback == "Please run the code to verify your answer."


async def test_changed_code_after_run_is_not_scored(engine, piston, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    piston.queue(piston_ok("1\n"))
    await engine.run_code(submission.submission_id, "student_1", "q_ec", FIXED_CODE)

    result = await engine.submit(submission.submission_id, "student_1", {"q_ec": FIXED_CODE + " // edited"})
    assert result.answers[0].status == "not_run"


async def test_output_prediction_is_rechecked_against_recorded_output(engine, piston, start_attempt):
    _, submission = await start_attempt([prediction_question()])
    piston.queue(piston_ok("Hi\n"))
    await engine.run_code(submission.submission_id, "student_1", "q_op", "Hi")

    result = await engine.submit(submission.submission_id, "student_1", {"q_op": "Hello"})
    assert result.answers[0].score == 0
    assert result.answers[0].grader == "execution"
    assert len(piston.payloads) == 1


async def test_output_prediction_without_run_falls_back_to_text_match(engine, start_attempt):
    _, submission = await start_attempt([prediction_question(correct_answer="Hi")])
    result = await engine.submit(submission.submission_id, "student_1", {"q_op": "Hi"})
    assert result.answers[0].score == 3
    assert result.answers[0].grader == "deterministic"


async def test_run_for_unknown_question_is_rejected(engine, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    with pytest.raises(QuestionNotFound):
        await engine.run_code(submission.submission_id, "student_1", "q_missing", FIXED_CODE)


async def test_run_after_submit_is_rejected(engine, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_ec": FIXED_CODE})
    with pytest.raises(SubmissionRejected):
        await engine.run_code(submission.submission_id, "student_1", "q_ec", FIXED_CODE)


# ============== EVALUATION ==============

async def test_teacher_evaluation_closes_attempt(engine, start_attempt):
    _, submission = await start_attempt([mcq_question(marks=10), manual_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_para": "An essay."})

    result = await engine.evaluate(
        submission.submission_id, "teacher_1",
        {"q_para": QuestionGrade(score=3, feedback="Needs examples.")},
        feedback="Good effort",
    )

    assert result.submission.status == "evaluated"
    assert result.submission.total_score == 13
    assert result.submission.evaluated_by == "teacher_1"
    assert result.submission.feedback == "Good effort"
    assert result.answers[1].grader == "manual"
    assert result.answers[1].feedback == "Needs examples."

    with pytest.raises(SubmissionRejected):
        await engine.evaluate(submission.submission_id, "teacher_1", {})


async def test_evaluation_needs_every_pending_score(engine, start_attempt):
    _, submission = await start_attempt([mcq_question(), manual_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_para": "An essay."})

    with pytest.raises(SubmissionRejected) as exc:
        await engine.evaluate(submission.submission_id, "teacher_1", {})
    assert exc.value.status_code == 422
    assert exc.value.details["pending_question_ids"] == ["q_para"]


async def test_evaluation_cannot_overwrite_automatic_scores(engine, start_attempt):
    _, submission = await start_attempt([mcq_question(), manual_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "B", "q_para": "An essay."})

    with pytest.raises(SubmissionRejected) as exc:
        await engine.evaluate(submission.submission_id, "teacher_1", {
            "q_mcq": QuestionGrade(score=10),
            "q_para": QuestionGrade(score=5),
        })
    assert exc.value.details["question_id"] == "q_mcq"


async def test_evaluation_score_must_be_within_marks(engine, start_attempt):
    _, submission = await start_attempt([manual_question(marks=5)])
    await engine.submit(submission.submission_id, "student_1", {"q_para": "An essay."})
    with pytest.raises(SubmissionRejected) as exc:
        await engine.evaluate(submission.submission_id, "teacher_1", {"q_para": QuestionGrade(score=6)})
    assert exc.value.status_code == 422


async def test_regrade_pending_retries_judge(engine, judge, start_attempt):
    judge.error = TimeoutError("judge timed out")
    _, submission = await start_attempt([mcq_question(marks=10), ai_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_ai": "Inheritance"})

    judge.error = None
    judge.reply = {"score": 4, "feedback": "Correct concept."}
    result = await engine.regrade_pending(submission.submission_id)

    assert result.submission.status == "evaluated"
    assert result.submission.evaluated_by == "auto"
    assert result.submission.total_score == 14
    assert result.answers[1].status == "graded"
    assert result.warnings == []


async def test_regrade_pending_keeps_attempt_open_while_judge_fails(engine, judge, start_attempt):
    judge.error = TimeoutError("judge timed out")
    _, submission = await start_attempt([ai_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_ai": "Inheritance"})

    result = await engine.regrade_pending(submission.submission_id)
    assert result.submission.status == "submitted"
    assert result.answers[0].status == "judge_failed"
    assert len(result.warnings) == 1


# ============== REPORTING ==============

async def test_activity_report_lists_attempts(engine, start_attempt):
    activity, submission = await start_attempt([mcq_question(marks=10), manual_question()])
    await engine.submit(submission.submission_id, "student_1", {"q_mcq": "A", "q_para": "An essay."})
    await engine.start_attempt(activity.activity_id, "student_2")

    report = await engine.activity_report(activity.activity_id)

    assert report["total_marks"] == 15
    rows = {r["student_id"]: r for r in report["rows"]}
    assert rows["student_1"]["question_marks"] == {"q_mcq": 10}
    assert rows["student_1"]["pending_questions"] == ["q_para"]
    assert rows["student_2"]["status"] == "in_progress"
    assert rows["student_2"]["pending_questions"] == []


async def test_execution_service_error_never_awards_marks(engine, piston, start_attempt):
    _, submission = await start_attempt([error_correction_question()])
    piston.queue({"error": "Internal Server Error"}, status_code=500)

    outcome = await engine.run_code(submission.submission_id, "student_1", "q_ec", FIXED_CODE)
    assert outcome.error_kind == "api_error"
    assert outcome.result.score is None

    result = await engine.submit(submission.submission_id, "student_1", {"q_ec": FIXED_CODE})
    assert result.answers[0].status == "execution_failed"
    assert result.answers[0].score is None
    assert result.submission.total_score == 0
