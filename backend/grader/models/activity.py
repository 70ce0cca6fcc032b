"""Activity and question Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List, Literal
from datetime import datetime, timezone


QuestionType = Literal[
    "mcq",
    "checkbox",
    "dropdown",
    "short_answer",
    "paragraph",
    "fill_blanks",
    "numerical",
    "code_completion",
    "output_prediction",
    "trace_execution",
    "justification",
    "error_identification",
    "error_correction",
    "concept_identification",
    "file_upload",
]

EvaluationMode = Literal["auto", "ai", "manual"]


class QuestionOption(BaseModel):
    id: str
    option_text: str = ""
    is_correct: bool = False


class Blank(BaseModel):
    """One individually-scored slot of a code_completion / fill_blanks question"""
    id: str
    place_holder: Optional[str] = None  # e.g. "BLANK_1", display only
    correct_answers: List[str] = []
    marks: float = Field(ge=0)


class Question(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    section_id: Optional[str] = None
    order_index: int = 0
    question_text: str = ""
    type: QuestionType
    marks: int = Field(gt=0)
    evaluation_mode: EvaluationMode = "auto"

    # mcq / checkbox / dropdown
    options: List[QuestionOption] = []

    # short_answer, fill_blanks, numerical, output_prediction, ...
    correct_answer: Optional[str] = None
    allowed_error: Optional[float] = Field(default=None, ge=0)
    range_min: Optional[float] = None
    range_max: Optional[float] = None

    # structured blanks
    blanks: List[Blank] = []
    case_sensitive: bool = True

    # AI grading
    model_answer: Optional[str] = None
    expected_keywords: List[str] = []
    explanation_rubric: Optional[str] = None

    # code-based types
    code_template: Optional[str] = None
    faulty_code: Optional[str] = None
    correction_code: Optional[str] = None
    error_description: Optional[str] = None
    error_line_number: Optional[int] = None
    language: Optional[str] = None  # overrides the activity language
    language_version: Optional[str] = None

    allowed_file_types: List[str] = []

    @model_validator(mode="after")
    def blank_marks_match_total(self):
        if self.blanks:
            blank_total = sum(b.marks for b in self.blanks)
            if abs(blank_total - self.marks) > 1e-6:
                raise ValueError(
                    f"Question {self.id}: blank marks ({blank_total:g}) must add up to "
                    f"question marks ({self.marks})"
                )
        return self

    def correct_option_ids(self) -> List[str]:
        return sorted(o.id for o in self.options if o.is_correct)


class Section(BaseModel):
    section_id: str
    title: str = ""
    description: str = ""
    order: int = 0


class Activity(BaseModel):
    model_config = ConfigDict(extra="ignore")
    activity_id: str
    title: str
    description: str = ""
    instructions: Optional[str] = None
    subject_id: Optional[str] = None
    sections: List[Section] = []
    questions: List[Question] = []
    total_marks: float = 0
    language: str = "java"
    deadline: Optional[datetime] = None
    is_published: bool = False
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def ordered_questions(self) -> List[Question]:
        """Questions in the order students see them: section order, then order_index"""
        section_rank = {s.section_id: s.order for s in self.sections}
        return sorted(
            self.questions,
            key=lambda q: (section_rank.get(q.section_id, 0), q.order_index)
        )

    def get_question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


class ActivityCreate(BaseModel):
    """Model for creating an activity"""
    title: str
    description: str = ""
    instructions: Optional[str] = None
    subject_id: Optional[str] = None
    sections: List[Section] = []
    questions: List[Question]
    language: str = "java"
    deadline: Optional[datetime] = None
    is_published: bool = False
