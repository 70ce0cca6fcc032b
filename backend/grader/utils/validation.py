"""Validation utilities for activity structure."""

from typing import List, Dict, Any

from grader.models.activity import Question, Section

OPTION_TYPES = {"mcq", "checkbox", "dropdown"}
CODE_TEMPLATE_TYPES = {"output_prediction"}


def validate_activity_structure(sections: List[Section], questions: List[Question]) -> Dict[str, Any]:
    """
    Validate an activity's questions for consistency.
    Returns validation result with warnings/errors; errors block saving.
    """
    warnings = []
    errors = []

    if not questions:
        errors.append("No questions found")
        return {"valid": False, "errors": errors, "warnings": warnings}

    section_ids = {s.section_id for s in sections}
    if len(section_ids) != len(sections):
        errors.append("Duplicate section ids")

    total_marks = 0
    question_ids = set()

    for q in questions:
        if q.id in question_ids:
            errors.append(f"Duplicate question id: {q.id}")
        question_ids.add(q.id)

        total_marks += q.marks

        # every question lives in exactly one section
        if sections:
            if not q.section_id:
                errors.append(f"{q.id}: Missing section_id")
            elif q.section_id not in section_ids:
                errors.append(f"{q.id}: Unknown section '{q.section_id}'")

        if q.type in OPTION_TYPES:
            if not q.options:
                errors.append(f"{q.id}: {q.type} question has no options")
            else:
                option_ids = [o.id for o in q.options]
                if len(set(option_ids)) != len(option_ids):
                    errors.append(f"{q.id}: Duplicate option ids")
                correct = [o for o in q.options if o.is_correct]
                if not correct:
                    warnings.append(f"{q.id}: No option is marked correct")
                elif q.type in ("mcq", "dropdown") and len(correct) > 1:
                    warnings.append(f"{q.id}: More than one correct option on a single-select question")

        if q.blanks:
            blank_ids = [b.id for b in q.blanks]
            if len(set(blank_ids)) != len(blank_ids):
                errors.append(f"{q.id}: Duplicate blank ids")
            for b in q.blanks:
                if not b.correct_answers:
                    warnings.append(f"{q.id}({b.id}): Blank has no accepted answers")
            if q.type == "code_completion" and q.code_template:
                marker_count = q.code_template.count("{{")
                if marker_count != len(q.blanks):
                    warnings.append(
                        f"{q.id}: Template has {marker_count} blank markers but {len(q.blanks)} blanks are defined"
                    )

        if q.type == "numerical" and q.evaluation_mode == "auto":
            has_range = q.range_min is not None or q.range_max is not None
            if not has_range and not q.correct_answer:
                warnings.append(f"{q.id}: Numerical question has no correct answer or range")
            if q.range_min is not None and q.range_max is not None and q.range_min > q.range_max:
                errors.append(f"{q.id}: range_min is greater than range_max")

        if q.type in CODE_TEMPLATE_TYPES and not q.code_template:
            warnings.append(f"{q.id}: {q.type} question has no code template to run")

        if q.evaluation_mode == "ai" and not (q.model_answer or q.expected_keywords or q.explanation_rubric):
            warnings.append(f"{q.id}: AI-graded question has no model answer, keywords or rubric")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "total_marks": total_marks,
        "question_count": len(questions)
    }
