"""Domain records and boundary input schemas.

Records are plain dataclasses built from database rows. Inputs coming from
HTTP payloads (or from the AI provider) go through the pydantic models below
exactly once, via `parse_input`, which yields a typed value or raises
`errors.ValidationError` naming the offending field.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, get_args

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

DepartmentName = Literal[
    "Flying School",
    "Aircraft Maintenance Engineering",
    "Air Traffic Control",
    "Cabin Crew",
    "Prospective Students",
]
DEPARTMENTS = get_args(DepartmentName)


def _json_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        value = json.loads(value)
    return list(value)


def _json_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    return dict(value)


# =============================================================================
# Records
# =============================================================================
@dataclass
class Question:
    id: str
    question_text: str
    options: List[str]
    correct_answer: str
    department: str = ""
    subject: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Question":
        return cls(
            id=str(row["id"]),
            question_text=row.get("question_text") or "",
            options=[str(o) for o in _json_list(row.get("options"))],
            correct_answer=row.get("correct_answer") or "",
            department=row.get("department") or "",
            subject=row.get("subject") or "",
            created_at=row.get("created_at"),
        )

    def to_dict(self, include_answer: bool = True) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "questionText": self.question_text,
            "options": list(self.options),
            "department": self.department,
            "subject": self.subject,
        }
        if include_answer:
            out["correctAnswer"] = self.correct_answer
        return out


@dataclass
class Exam:
    id: str
    title: str
    description: str
    duration: int
    question_ids: List[str]
    question_count: int = 0
    pass_threshold: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Exam":
        ids = [str(i) for i in _json_list(row.get("question_ids"))]
        threshold = row.get("pass_threshold")
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            description=row.get("description") or "",
            duration=int(row.get("duration") or 0),
            question_ids=ids,
            question_count=int(row.get("question_count") or len(ids)),
            pass_threshold=int(threshold) if threshold is not None else None,
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "questionIds": list(self.question_ids),
            "questionCount": self.question_count,
            "passThreshold": self.pass_threshold,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ExamResult:
    exam_id: str
    user_id: str
    exam_title: str
    answers: Dict[str, str]
    score: int
    submitted_at: datetime
    subject: str = ""
    id: Optional[str] = None
    attempt_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ExamResult":
        return cls(
            id=str(row["id"]),
            attempt_id=row.get("attempt_id"),
            exam_id=str(row.get("exam_id") or ""),
            user_id=str(row.get("user_id") or ""),
            exam_title=row.get("exam_title") or "",
            answers={str(k): str(v) for k, v in _json_dict(row.get("answers")).items()},
            score=int(row.get("score") or 0),
            submitted_at=row.get("submitted_at"),
            subject=row.get("subject") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "examId": self.exam_id,
            "userId": self.user_id,
            "examTitle": self.exam_title,
            "subject": self.subject,
            "answers": dict(self.answers),
            "score": self.score,
            "submittedAt": self.submitted_at.isoformat() if self.submitted_at else None,
        }


@dataclass
class Department:
    id: str
    name: str


@dataclass
class Subject:
    id: str
    name: str
    department: str


@dataclass
class User:
    id: str
    email: str
    full_name: str = ""
    role: str = "student"
    created_at: Optional[datetime] = None

    @property
    def initials(self) -> str:
        names = (self.full_name or "").split()
        if len(names) > 1:
            return (names[0][0] + names[-1][0]).upper()
        if names:
            return names[0][0].upper()
        return "U"


@dataclass
class TutorSetting:
    department: str
    custom_prompt: str = ""
    knowledge_base: str = ""
    updated_at: Optional[datetime] = None


# =============================================================================
# Boundary inputs
# =============================================================================
class AddQuestionInput(BaseModel):
    question_text: str = Field(alias="questionText", min_length=1)
    options: List[str]
    correct_answer: str = Field(alias="correctAnswer", min_length=1)
    department: str = Field(min_length=1)
    subject: str = Field(min_length=1)

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}

    @field_validator("options")
    @classmethod
    def _options_not_blank(cls, v: List[str]) -> List[str]:
        if len(v) < 2:
            raise ValueError("At least two options are required.")
        opts = [o.strip() for o in v]
        if any(not o for o in opts):
            raise ValueError("Options must not be blank.")
        if len(set(opts)) != len(opts):
            raise ValueError("Options must be distinct.")
        return opts

    @model_validator(mode="after")
    def _answer_among_options(self) -> "AddQuestionInput":
        if self.correct_answer not in self.options:
            raise ValueError("correctAnswer must be one of the options.")
        return self


class GeneratedQuestion(AddQuestionInput):
    """A question produced by the AI generator: exactly four options."""

    options: List[str] = Field(min_length=4, max_length=4)


class _ExamBase(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    duration: int = Field(gt=0)
    pass_threshold: Optional[int] = Field(default=None, alias="passThreshold", ge=0, le=100)

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}


class CreateExamInput(_ExamBase):
    question_ids: List[str] = Field(alias="questionIds")

    @field_validator("question_ids")
    @classmethod
    def _dedupe(cls, v: List[str]) -> List[str]:
        seen = set()
        out: List[str] = []
        for qid in v:
            qid = str(qid).strip()
            if qid and qid not in seen:
                seen.add(qid)
                out.append(qid)
        if not out:
            raise ValueError("At least one question must be selected.")
        return out


class CreateExamFromBankInput(_ExamBase):
    prompt: str = Field(min_length=1)
    question_count: int = Field(alias="questionCount", gt=0)


class CreateExamFromSourceInput(_ExamBase):
    prompt: str = Field(min_length=1)
    difficulty: Literal["Easy", "Medium", "Hard"]
    source_text: Optional[str] = Field(default=None, alias="sourceText")


class DepartmentInput(BaseModel):
    name: str = Field(min_length=3)

    model_config = {"str_strip_whitespace": True}


class SubjectInput(BaseModel):
    name: str = Field(min_length=3)
    department: str = Field(min_length=1)

    model_config = {"str_strip_whitespace": True}


class InviteUserInput(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: Literal["admin", "student"] = "student"
    full_name: str = Field(default="", alias="fullName")

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}

    @field_validator("role", mode="before")
    @classmethod
    def _lower_role(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class TutorCustomizationInput(BaseModel):
    department: DepartmentName
    custom_prompt: str = Field(default="", alias="customPrompt")
    knowledge_base: str = Field(default="", alias="knowledgeBaseUpdate")

    model_config = {"populate_by_name": True}


class ProfileInput(BaseModel):
    full_name: str = Field(alias="fullName", min_length=2, max_length=80)

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}


M = TypeVar("M", bound=BaseModel)


def parse_input(model: Type[M], data: Any) -> M:
    """Validate `data` against `model`; the first problem becomes a ValidationError."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc") or ()) or None
        msg = str(err.get("msg") or "Invalid value.")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        raise ValidationError(msg, field=loc) from None


__all__ = [
    "DEPARTMENTS",
    "Question", "Exam", "ExamResult", "Department", "Subject", "User", "TutorSetting",
    "AddQuestionInput", "GeneratedQuestion", "CreateExamInput", "CreateExamFromBankInput",
    "CreateExamFromSourceInput", "DepartmentInput", "SubjectInput", "InviteUserInput",
    "TutorCustomizationInput", "ProfileInput", "parse_input",
]
