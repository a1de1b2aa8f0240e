"""
Admin authoring flows: question bank, exams, departments/subjects, users and
AI tutor customization.

Each flow takes the caller explicitly, checks the admin claim, validates the
payload, and only then touches storage. Flows raise errors.* on failure and
return a `{success, message, ...}` dict on success; `run_flow` turns raised
errors into the same shape for the HTTP layer.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from errors import DependencyError, LMSError, ValidationError
from identity import Caller, require_admin
from models import (
    AddQuestionInput, CreateExamFromBankInput, CreateExamFromSourceInput, CreateExamInput,
    DepartmentInput, InviteUserInput, SubjectInput, TutorCustomizationInput, parse_input,
)
from stores import Stores

logger = logging.getLogger(__name__)


def run_flow(fn: Callable[..., Dict[str, Any]], *args, **kwargs) -> Tuple[Dict[str, Any], int]:
    """Call a flow; map LMSError to the uniform failure shape and its HTTP status."""
    try:
        return fn(*args, **kwargs), 200
    except LMSError as e:
        return {"success": False, "message": e.message, "error": e.kind}, e.status


# =============================================================================
# Questions
# =============================================================================
def add_question(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    data = parse_input(AddQuestionInput, payload)
    q = stores.questions.add(data)
    logger.info("question %s added to %s / %s by %s", q.id, q.department, q.subject, caller.email)
    return {
        "success": True,
        "message": f"New question has been added to the {data.subject} question bank.",
        "questionId": q.id,
    }


def list_questions(caller: Optional[Caller], stores: Stores, department: Optional[str] = None,
                   subject: Optional[str] = None) -> Dict[str, Any]:
    require_admin(caller)
    qs = stores.questions.list(department=department, subject=subject)
    return {"success": True, "message": f"{len(qs)} question(s).", "questions": [q.to_dict() for q in qs]}


# =============================================================================
# Exams
# =============================================================================
def create_exam(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    """Exam from a hand-picked list of question ids (deduplicated, order kept)."""
    require_admin(caller)
    data = parse_input(CreateExamInput, payload)
    exam = stores.exams.create(data.title, data.description, data.duration, data.question_ids,
                               pass_threshold=data.pass_threshold)
    logger.info("exam %s created with %d questions by %s", exam.id, exam.question_count, caller.email)
    return {
        "success": True,
        "message": f'Exam "{data.title}" has been created successfully with {exam.question_count} questions.',
        "examId": exam.id,
    }


def create_exam_from_bank(caller: Optional[Caller], payload: Any, stores: Stores, ai) -> Dict[str, Any]:
    """The AI picks `questionCount` existing questions matching the prompt."""
    require_admin(caller)
    data = parse_input(CreateExamFromBankInput, payload)
    bank = stores.questions.list()
    if len(bank) < data.question_count:
        raise ValidationError(
            f"Cannot create exam. Requested {data.question_count} questions, "
            f"but only {len(bank)} are available in the bank.",
            field="questionCount",
        )
    selected = ai.select_question_ids(data.prompt, data.question_count, bank)
    known = {q.id for q in bank}
    picked = []
    for qid in selected:
        if qid in known and qid not in picked:
            picked.append(qid)
    if len(picked) != data.question_count:
        raise DependencyError("AI failed to select the required number of questions. "
                              "Please try a different prompt.")
    exam = stores.exams.create(data.title, data.description, data.duration, picked,
                               pass_threshold=data.pass_threshold)
    logger.info("exam %s built from bank (%d questions) by %s", exam.id, len(picked), caller.email)
    return {
        "success": True,
        "message": f'Exam "{data.title}" has been created successfully with {len(picked)} questions.',
        "examId": exam.id,
    }


def create_exam_from_source(caller: Optional[Caller], payload: Any, stores: Stores, ai) -> Dict[str, Any]:
    """
    Generate new questions from a prompt (and optional source text), save them,
    then save an exam referencing them. The two writes form a saga: if the exam
    insert fails, the freshly inserted questions are deleted again.
    """
    require_admin(caller)
    data = parse_input(CreateExamFromSourceInput, payload)
    generated = ai.generate_questions(data.prompt, data.difficulty, data.source_text)
    if not generated:
        raise DependencyError("The AI agent could not generate any questions from the provided "
                              "source and prompt. Please try again with a more detailed prompt.")
    logger.info("AI generated %d questions for exam %r", len(generated), data.title)

    created = stores.questions.add_many(generated)
    question_ids = [q.id for q in created]
    try:
        exam = stores.exams.create(data.title, data.description, data.duration, question_ids,
                                   pass_threshold=data.pass_threshold)
    except DependencyError:
        logger.warning("exam insert failed; removing %d orphaned questions", len(question_ids))
        try:
            stores.questions.delete_many(question_ids)
        except DependencyError:
            logger.exception("compensating delete failed; orphaned questions: %s", question_ids)
        raise
    logger.info("exam %s created from source with %d new questions by %s",
                exam.id, len(question_ids), caller.email)
    return {
        "success": True,
        "message": f'Exam "{data.title}" created successfully with {len(question_ids)} new questions.',
        "examId": exam.id,
        "questionsCreated": len(question_ids),
    }


def list_exams(caller: Optional[Caller], stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    exams = stores.exams.list()
    return {"success": True, "message": f"{len(exams)} exam(s).", "exams": [e.to_dict() for e in exams]}


# =============================================================================
# Departments & subjects
# =============================================================================
def add_department(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    data = parse_input(DepartmentInput, payload)
    dept = stores.departments.add(data.name)
    return {"success": True, "message": f'Department "{data.name}" has been created.',
            "departmentId": dept.id}


def list_departments(caller: Optional[Caller], stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    items = stores.departments.list()
    return {"success": True, "message": f"{len(items)} department(s).",
            "departments": [{"id": d.id, "name": d.name} for d in items]}


def add_subject(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    data = parse_input(SubjectInput, payload)
    subj = stores.subjects.add(data.name, data.department)
    return {"success": True,
            "message": f'Subject "{data.name}" has been added to the {data.department} department.',
            "subjectId": subj.id}


def list_subjects(caller: Optional[Caller], stores: Stores, department: Optional[str] = None) -> Dict[str, Any]:
    require_admin(caller)
    items = stores.subjects.list(department=department)
    return {"success": True, "message": f"{len(items)} subject(s).",
            "subjects": [{"id": s.id, "name": s.name, "department": s.department} for s in items]}


# =============================================================================
# Users
# =============================================================================
def list_users(caller: Optional[Caller], stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    users = stores.users.list()
    return {
        "success": True,
        "message": f"{len(users)} user(s).",
        "users": [{
            "uid": u.id,
            "name": u.full_name or "Unnamed User",
            "email": u.email,
            "role": "Admin" if u.role == "admin" else "Student",
            "avatar": u.initials,
        } for u in users],
    }


def invite_user(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    data = parse_input(InviteUserInput, payload)
    user = stores.users.upsert(data.email, role=data.role, full_name=data.full_name)
    label = "an Admin" if data.role == "admin" else "a Student"
    logger.info("user %s invited as %s by %s", user.email, data.role, caller.email)
    return {"success": True, "message": f"User {user.email} invited successfully as {label}.",
            "uid": user.id}


def seed_admin(email: str, stores: Stores) -> Dict[str, Any]:
    """Bootstrap the first administrator (CLI only, no caller)."""
    data = parse_input(InviteUserInput, {"email": email, "role": "admin", "fullName": "Admin User"})
    user = stores.users.upsert(data.email, role="admin", full_name=data.full_name)
    return {"success": True, "message": f"Admin user {user.email} created or updated successfully.",
            "uid": user.id}


# =============================================================================
# AI tutor customization
# =============================================================================
def customize_tutor(caller: Optional[Caller], payload: Any, stores: Stores) -> Dict[str, Any]:
    require_admin(caller)
    data = parse_input(TutorCustomizationInput, payload)
    stores.tutor_settings.upsert(data.department, data.custom_prompt, data.knowledge_base)
    logger.info("AI tutor customized for %s by %s", data.department, caller.email)
    return {"success": True, "message": f"AI Tutor for {data.department} has been updated successfully."}
