"""
Document store access for activities, submissions and submission answers.

Uniqueness invariants are backed by indexes: one submission per
(activity_id, student_id) and one answer per answer_id.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from grader.config import logger, SUBMIT_CLAIM_TIMEOUT_SECONDS


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def answer_key(submission_id: str, question_id: str) -> str:
    return f"{submission_id}_{question_id}"


def without_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


class SubmissionStore:
    def __init__(self, database):
        self.db = database

    async def ensure_indexes(self):
        await self.db.activities.create_index("activity_id", unique=True)
        await self.db.submissions.create_index("submission_id", unique=True)
        await self.db.submissions.create_index(
            [("activity_id", ASCENDING), ("student_id", ASCENDING)], unique=True
        )
        await self.db.submission_answers.create_index("answer_id", unique=True)
        await self.db.submission_answers.create_index("submission_id")

    # ============== ACTIVITIES ==============

    async def insert_activity(self, activity: dict):
        await self.db.activities.insert_one(dict(activity))

    async def get_activity(self, activity_id: str) -> Optional[dict]:
        return await self.db.activities.find_one({"activity_id": activity_id}, {"_id": 0})

    # ============== SUBMISSIONS ==============

    async def get_or_create_submission(self, activity_id: str, student_id: str, new_id: str) -> dict:
        """Atomic create-if-absent; concurrent callers all get the same attempt."""
        key = {"activity_id": activity_id, "student_id": student_id}
        try:
            await self.db.submissions.update_one(
                key,
                {"$setOnInsert": {
                    "submission_id": new_id,
                    "status": "in_progress",
                    "total_score": None,
                    "created_at": now_iso(),
                }},
                upsert=True
            )
        except DuplicateKeyError:
            # another request inserted between our match and insert
            logger.info(f"Concurrent start for activity {activity_id}, student {student_id}; reusing attempt")
        return await self.db.submissions.find_one(key, {"_id": 0})

    async def get_submission(self, submission_id: str) -> Optional[dict]:
        return await self.db.submissions.find_one({"submission_id": submission_id}, {"_id": 0})

    async def list_submissions(self, activity_id: str) -> List[dict]:
        return await self.db.submissions.find(
            {"activity_id": activity_id}, {"_id": 0}
        ).sort("created_at", ASCENDING).to_list(1000)

    async def claim_for_submit(self, submission_id: str,
                               stale_after: float = SUBMIT_CLAIM_TIMEOUT_SECONDS) -> Optional[dict]:
        """
        Mark an in-progress attempt as being submitted. None if it is not claimable.

        A claim older than stale_after seconds was left by a worker that died
        mid-grading and can be taken over.
        """
        stale_before = (datetime.now(timezone.utc) - timedelta(seconds=stale_after)).isoformat()
        return without_id(await self.db.submissions.find_one_and_update(
            {
                "submission_id": submission_id,
                "status": "in_progress",
                "$or": [
                    {"submitting": {"$ne": True}},
                    {"submitting_since": {"$lt": stale_before}},
                ],
            },
            {"$set": {"submitting": True, "submitting_since": now_iso()}},
            return_document=ReturnDocument.AFTER
        ))

    async def release_claim(self, submission_id: str):
        await self.db.submissions.update_one(
            {"submission_id": submission_id, "status": "in_progress"},
            {"$unset": {"submitting": "", "submitting_since": ""}}
        )

    async def mark_submitted(self, submission_id: str, total_score: float) -> Optional[dict]:
        return without_id(await self.db.submissions.find_one_and_update(
            {"submission_id": submission_id, "status": "in_progress"},
            {
                "$set": {"status": "submitted", "total_score": total_score, "submitted_at": now_iso()},
                "$unset": {"submitting": "", "submitting_since": ""},
            },
            return_document=ReturnDocument.AFTER
        ))

    async def mark_evaluated(self, submission_id: str, total_score: float,
                             evaluated_by: str, feedback: Optional[str] = None) -> Optional[dict]:
        update = {
            "status": "evaluated",
            "total_score": total_score,
            "evaluated_at": now_iso(),
            "evaluated_by": evaluated_by,
        }
        if feedback is not None:
            update["feedback"] = feedback
        return without_id(await self.db.submissions.find_one_and_update(
            {"submission_id": submission_id, "status": "submitted"},
            {"$set": update},
            return_document=ReturnDocument.AFTER
        ))

    async def set_total_score(self, submission_id: str, total_score: float):
        await self.db.submissions.update_one(
            {"submission_id": submission_id},
            {"$set": {"total_score": total_score}}
        )

    # ============== ANSWERS ==============

    async def save_draft_answer(self, answer: dict) -> bool:
        """
        Upsert a pre-submit draft. Returns False when the answer is already
        locked by a submit, in which case nothing is written.
        """
        try:
            await self.db.submission_answers.update_one(
                {"answer_id": answer["answer_id"], "locked": {"$ne": True}},
                {"$set": {**answer, "updated_at": now_iso()}},
                upsert=True
            )
        except DuplicateKeyError:
            return False
        return True

    async def upsert_answer(self, answer: dict):
        """Idempotent write keyed by answer_id; submitted answers are locked against drafts."""
        await self.db.submission_answers.update_one(
            {"answer_id": answer["answer_id"]},
            {
                "$set": {**answer, "locked": True, "updated_at": now_iso()},
                "$setOnInsert": {"created_at": now_iso()},
            },
            upsert=True
        )

    async def get_answers(self, submission_id: str) -> List[dict]:
        return await self.db.submission_answers.find(
            {"submission_id": submission_id}, {"_id": 0}
        ).to_list(1000)

    async def count_answers(self, submission_id: str) -> int:
        return await self.db.submission_answers.count_documents({"submission_id": submission_id})
