"""
Pytest configuration and fixtures.

The engine is wired to an in-memory MongoDB (mongomock-motor), a scripted
Piston endpoint (httpx.MockTransport) and a fake judge.
"""

import json
from typing import Any, List, Optional

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from grader.models.activity import ActivityCreate, Question
from grader.services.execution import ExecutionService
from grader.services.grading import GradingEngine
from grader.services.judge import JudgeRequest, JudgeService
from grader.services.store import SubmissionStore

PISTON_TEST_URL = "http://piston.test/api/v2/execute"


def piston_ok(stdout: str = "") -> dict:
    return {
        "language": "java",
        "version": "15.0.2",
        "run": {"stdout": stdout, "stderr": "", "code": 0, "signal": None, "output": stdout},
    }


def piston_compile_error(message: str = "Main.java:3: error: ';' expected") -> dict:
    return {
        "language": "java",
        "version": "15.0.2",
        "compile": {"stdout": "", "stderr": message, "code": 1, "signal": None, "output": message},
        "run": {"stdout": "", "stderr": "", "code": None, "signal": None, "output": ""},
    }


def piston_runtime_error(message: str = "Exception in thread \"main\" java.lang.NullPointerException") -> dict:
    return {
        "language": "java",
        "version": "15.0.2",
        "run": {"stdout": "", "stderr": message, "code": 1, "signal": None, "output": message},
    }


class PistonStub:
    """Scripted Piston endpoint; records every payload it receives."""

    def __init__(self):
        self.responses: List[Any] = []
        self.payloads: List[dict] = []

    def queue(self, body: Any, status_code: int = 200):
        """Queue a JSON body, a raw text body, or an exception to raise."""
        self.responses.append((body, status_code))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        if not self.responses:
            return httpx.Response(200, json=piston_ok(""))
        body, status_code = self.responses.pop(0)
        if isinstance(body, Exception):
            raise body
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)


class FakeJudge(JudgeService):
    """Judge double returning a fixed reply, or raising a fixed error."""

    def __init__(self, reply: Optional[dict] = None, error: Optional[Exception] = None):
        self.reply = reply if reply is not None else {"score": 0, "feedback": "Not convincing."}
        self.error = error
        self.requests: List[JudgeRequest] = []

    async def grade(self, request: JudgeRequest) -> dict:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply


def make_question(id: str, type: str, marks: int = 5, **fields) -> Question:
    return Question(id=id, type=type, marks=marks, section_id="s1", **fields)


def mcq_question(id: str = "q_mcq", marks: int = 10) -> Question:
    return make_question(
        id, "mcq", marks,
        order_index=0,
        question_text="Which keyword declares a constant in Java?",
        options=[
            {"id": "A", "option_text": "final", "is_correct": True},
            {"id": "B", "option_text": "const", "is_correct": False},
        ],
    )


def numerical_question(id: str = "q_num", marks: int = 5) -> Question:
    return make_question(
        id, "numerical", marks,
        order_index=1,
        question_text="Value of pi to two decimals?",
        correct_answer="3.14",
        allowed_error=0.01,
    )


def activity_payload(questions: List[Question], **fields) -> ActivityCreate:
    data = {
        "title": "Java basics",
        "sections": [{"section_id": "s1", "title": "Part A", "order": 0}],
        "questions": questions,
        "is_published": True,
    }
    data.update(fields)
    return ActivityCreate(**data)


@pytest.fixture
async def store() -> SubmissionStore:
    database = AsyncMongoMockClient()["grader_test"]
    store = SubmissionStore(database)
    await store.ensure_indexes()
    return store


@pytest.fixture
def piston() -> PistonStub:
    return PistonStub()


@pytest.fixture
def executor(piston: PistonStub) -> ExecutionService:
    return ExecutionService(url=PISTON_TEST_URL, timeout=5, transport=httpx.MockTransport(piston.handler))


@pytest.fixture
def judge() -> FakeJudge:
    return FakeJudge()


@pytest.fixture
def engine(store: SubmissionStore, judge: FakeJudge, executor: ExecutionService) -> GradingEngine:
    return GradingEngine(store=store, judge=judge, executor=executor)


@pytest.fixture
def start_attempt(engine: GradingEngine):
    """Create a published activity from questions and start student_1's attempt on it."""

    async def _start(questions: List[Question], student_id: str = "student_1", **fields):
        activity = await engine.create_activity(activity_payload(questions, **fields), "teacher_1")
        submission = await engine.start_attempt(activity.activity_id, student_id)
        return activity, submission

    return _start
