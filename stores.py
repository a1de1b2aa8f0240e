# stores.py
# PostgreSQL-backed collections (questions, exams, results, departments, subjects,
# users, tutor settings). Every store takes the same db helpers main.py builds
# around the psycopg pool:
#   fetch_one, fetch_all, execute, execute_returning (sql, params),
#   transaction() -> context manager yielding a dict_row cursor
# psycopg failures are wrapped in DependencyError; nothing here retries.

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import psycopg
from psycopg.types.json import Jsonb

from errors import DependencyError
from models import (
    AddQuestionInput, Department, Exam, ExamResult, Question, Subject, TutorSetting, User,
)
from state_store import KV_STATE_DDL

logger = logging.getLogger(__name__)

SCHEMA_DDL = [
    """
    CREATE TABLE IF NOT EXISTS questions (
        id             text PRIMARY KEY,
        question_text  text NOT NULL,
        options        jsonb NOT NULL,
        correct_answer text NOT NULL,
        department     text NOT NULL DEFAULT '',
        subject        text NOT NULL DEFAULT '',
        created_at     timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exams (
        id             text PRIMARY KEY,
        title          text NOT NULL,
        description    text NOT NULL DEFAULT '',
        duration       integer NOT NULL CHECK (duration > 0),
        question_ids   jsonb NOT NULL,
        question_count integer NOT NULL,
        pass_threshold integer,
        created_at     timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_results (
        id           text PRIMARY KEY,
        exam_id      text NOT NULL,
        user_id      text NOT NULL,
        exam_title   text NOT NULL DEFAULT '',
        subject      text NOT NULL DEFAULT '',
        answers      jsonb NOT NULL,
        score        integer NOT NULL CHECK (score BETWEEN 0 AND 100),
        submitted_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS exam_results_user_idx ON exam_results (user_id);",
    "ALTER TABLE exam_results ADD COLUMN IF NOT EXISTS attempt_id text;",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS exam_results_attempt_uidx
        ON exam_results (user_id, exam_id, attempt_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS departments (
        id         text PRIMARY KEY,
        name       text NOT NULL UNIQUE,
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS subjects (
        id         text PRIMARY KEY,
        name       text NOT NULL,
        department text NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id         text PRIMARY KEY,
        email      text NOT NULL UNIQUE,
        full_name  text NOT NULL DEFAULT '',
        role       text NOT NULL DEFAULT 'student',
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tutor_settings (
        department     text PRIMARY KEY,
        custom_prompt  text NOT NULL DEFAULT '',
        knowledge_base text NOT NULL DEFAULT '',
        updated_at     timestamptz NOT NULL DEFAULT now()
    );
    """,
    KV_STATE_DDL,
]


def new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _db_call(what: str):
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except psycopg.Error as e:
                logger.exception("database error while trying to %s", what)
                raise DependencyError(f"Database error: could not {what}.") from e
        return wrapper
    return deco


class _Store:
    def __init__(self, db: Dict[str, Callable]):
        self._fetch_one = db["fetch_one"]
        self._fetch_all = db["fetch_all"]
        self._execute = db["execute"]
        self._execute_returning = db.get("execute_returning")
        self._transaction = db.get("transaction")


# =============================================================================
# Questions
# =============================================================================
class QuestionStore(_Store):
    _INSERT = """
        INSERT INTO questions (id, question_text, options, correct_answer, department, subject, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s);
    """

    def _params(self, qid: str, data: AddQuestionInput, created_at: datetime) -> tuple:
        return (qid, data.question_text, Jsonb(list(data.options)), data.correct_answer,
                data.department, data.subject, created_at)

    @_db_call("add the question")
    def add(self, data: AddQuestionInput) -> Question:
        qid, created_at = new_id(), _now()
        self._execute(self._INSERT, self._params(qid, data, created_at))
        return Question(qid, data.question_text, list(data.options), data.correct_answer,
                        data.department, data.subject, created_at)

    @_db_call("save the generated questions")
    def add_many(self, items: Sequence[AddQuestionInput]) -> List[Question]:
        """All-or-nothing batch insert in one transaction."""
        created_at = _now()
        out: List[Question] = []
        with self._transaction() as cur:
            for data in items:
                qid = new_id()
                cur.execute(self._INSERT, self._params(qid, data, created_at))
                out.append(Question(qid, data.question_text, list(data.options), data.correct_answer,
                                    data.department, data.subject, created_at))
        return out

    @_db_call("load questions")
    def get_many(self, ids: Iterable[str]) -> List[Question]:
        """Order of the result is not guaranteed to match `ids`."""
        ids = [str(i) for i in ids]
        if not ids:
            return []
        rows = self._fetch_all("""
            SELECT id, question_text, options, correct_answer, department, subject, created_at
              FROM questions
             WHERE id = ANY(%s);
        """, (ids,))
        return [Question.from_row(r) for r in rows or []]

    @_db_call("list questions")
    def list(self, department: Optional[str] = None, subject: Optional[str] = None) -> List[Question]:
        where, params = [], []
        if department:
            where.append("department = %s")
            params.append(department)
        if subject:
            where.append("subject = %s")
            params.append(subject)
        sql = "SELECT id, question_text, options, correct_answer, department, subject, created_at FROM questions"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC;"
        return [Question.from_row(r) for r in self._fetch_all(sql, tuple(params)) or []]

    @_db_call("remove questions")
    def delete_many(self, ids: Sequence[str]) -> None:
        if ids:
            self._execute("DELETE FROM questions WHERE id = ANY(%s);", (list(ids),))

    @_db_call("count questions")
    def count(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS n FROM questions;", ())
        return int((row or {}).get("n") or 0)


# =============================================================================
# Exams
# =============================================================================
class ExamStore(_Store):
    _COLUMNS = "id, title, description, duration, question_ids, question_count, pass_threshold, created_at"

    @_db_call("create the exam")
    def create(self, title: str, description: str, duration: int, question_ids: Sequence[str],
               pass_threshold: Optional[int] = None) -> Exam:
        exam = Exam(
            id=new_id(),
            title=title,
            description=description,
            duration=int(duration),
            question_ids=list(question_ids),
            question_count=len(question_ids),
            pass_threshold=pass_threshold,
            created_at=_now(),
        )
        self._execute(f"""
            INSERT INTO exams ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s);
        """, (exam.id, exam.title, exam.description, exam.duration, Jsonb(exam.question_ids),
              exam.question_count, exam.pass_threshold, exam.created_at))
        return exam

    @_db_call("load the exam")
    def get(self, exam_id: str) -> Optional[Exam]:
        row = self._fetch_one(f"SELECT {self._COLUMNS} FROM exams WHERE id = %s;", (exam_id,))
        return Exam.from_row(row) if row else None

    @_db_call("list exams")
    def list(self, limit: Optional[int] = None) -> List[Exam]:
        sql = f"SELECT {self._COLUMNS} FROM exams ORDER BY created_at DESC"
        params: tuple = ()
        if limit:
            sql += " LIMIT %s"
            params = (int(limit),)
        return [Exam.from_row(r) for r in self._fetch_all(sql + ";", params) or []]

    @_db_call("load exam thresholds")
    def thresholds(self) -> Dict[str, Optional[int]]:
        rows = self._fetch_all("SELECT id, pass_threshold FROM exams;", ())
        return {str(r["id"]): r.get("pass_threshold") for r in rows or []}


# =============================================================================
# Results (append-only)
# =============================================================================
class ResultStore(_Store):
    _COLUMNS = "id, exam_id, user_id, attempt_id, exam_title, subject, answers, score, submitted_at"

    @_db_call("save your exam result")
    def create(self, result: ExamResult) -> str:
        """Insert once per attempt; a repeated attempt_id gets the stored id back."""
        rid = new_id()
        rows = self._execute_returning(f"""
            INSERT INTO exam_results ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, exam_id, attempt_id) DO UPDATE
               SET attempt_id = EXCLUDED.attempt_id
            RETURNING id;
        """, (rid, result.exam_id, result.user_id, result.attempt_id, result.exam_title, result.subject,
              Jsonb(dict(result.answers)), int(result.score), result.submitted_at))
        stored = str(rows[0]["id"]) if rows else rid
        if stored != rid:
            logger.warning("attempt %s already has result %s; not recording another", result.attempt_id, stored)
        return stored

    @_db_call("load the exam result")
    def get(self, result_id: str) -> Optional[ExamResult]:
        row = self._fetch_one(f"SELECT {self._COLUMNS} FROM exam_results WHERE id = %s;", (result_id,))
        return ExamResult.from_row(row) if row else None

    @_db_call("load your results")
    def list_for_user(self, user_id: str) -> List[ExamResult]:
        rows = self._fetch_all(f"""
            SELECT {self._COLUMNS} FROM exam_results
             WHERE user_id = %s
             ORDER BY submitted_at DESC;
        """, (user_id,))
        return [ExamResult.from_row(r) for r in rows or []]

    @_db_call("load results")
    def list_all(self, since: Optional[datetime] = None) -> List[ExamResult]:
        if since is not None:
            rows = self._fetch_all(
                f"SELECT {self._COLUMNS} FROM exam_results WHERE submitted_at >= %s;", (since,))
        else:
            rows = self._fetch_all(f"SELECT {self._COLUMNS} FROM exam_results;", ())
        return [ExamResult.from_row(r) for r in rows or []]

    @_db_call("load the leaderboard")
    def leaderboard(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._fetch_all("""
            SELECT u.id AS user_id, u.full_name, u.email,
                   COALESCE(SUM(r.score), 0) AS total_score,
                   COUNT(r.id) AS exams_taken
              FROM users u
              JOIN exam_results r ON r.user_id = u.id
             GROUP BY u.id, u.full_name, u.email
             ORDER BY total_score DESC, u.full_name ASC
             LIMIT %s;
        """, (int(limit),))
        out = []
        for rank, r in enumerate(rows or [], start=1):
            out.append({
                "rank": rank,
                "userId": str(r["user_id"]),
                "name": r.get("full_name") or (r.get("email") or "").split("@", 1)[0],
                "score": int(r.get("total_score") or 0),
                "examsTaken": int(r.get("exams_taken") or 0),
            })
        return out


# =============================================================================
# Departments & subjects
# =============================================================================
class DepartmentStore(_Store):
    @_db_call("add the department")
    def add(self, name: str) -> Department:
        did = new_id()
        self._execute("INSERT INTO departments (id, name, created_at) VALUES (%s, %s, %s);",
                      (did, name, _now()))
        return Department(did, name)

    @_db_call("list departments")
    def list(self) -> List[Department]:
        rows = self._fetch_all("SELECT id, name FROM departments ORDER BY name;", ())
        return [Department(str(r["id"]), r["name"]) for r in rows or []]


class SubjectStore(_Store):
    @_db_call("add the subject")
    def add(self, name: str, department: str) -> Subject:
        sid = new_id()
        self._execute("INSERT INTO subjects (id, name, department, created_at) VALUES (%s, %s, %s, %s);",
                      (sid, name, department, _now()))
        return Subject(sid, name, department)

    @_db_call("list subjects")
    def list(self, department: Optional[str] = None) -> List[Subject]:
        if department:
            rows = self._fetch_all(
                "SELECT id, name, department FROM subjects WHERE department = %s ORDER BY name;",
                (department,))
        else:
            rows = self._fetch_all("SELECT id, name, department FROM subjects ORDER BY name;", ())
        return [Subject(str(r["id"]), r["name"], r["department"]) for r in rows or []]


# =============================================================================
# Users
# =============================================================================
class UserStore(_Store):
    _COLUMNS = "id, email, full_name, role, created_at"

    @staticmethod
    def _from_row(r: Dict[str, Any]) -> User:
        return User(str(r["id"]), r["email"], r.get("full_name") or "", r.get("role") or "student",
                    r.get("created_at"))

    @_db_call("load the user")
    def get_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one(f"SELECT {self._COLUMNS} FROM users WHERE email = %s;", (email.lower(),))
        return self._from_row(row) if row else None

    @_db_call("save the user")
    def upsert(self, email: str, role: Optional[str] = None, full_name: str = "") -> User:
        """Create the user, or update role/name of an existing one."""
        email = email.strip().lower()
        display = full_name or email.split("@", 1)[0].replace(".", " ").title()
        rows = self._execute_returning(f"""
            INSERT INTO users (id, email, full_name, role, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE
               SET role = COALESCE(%s, users.role),
                   full_name = CASE WHEN %s <> '' THEN EXCLUDED.full_name ELSE users.full_name END
            RETURNING {self._COLUMNS};
        """, (new_id(), email, display, role or "student", _now(), role, full_name))
        return self._from_row(rows[0])

    def ensure(self, email: str) -> User:
        return self.get_by_email(email) or self.upsert(email)

    @_db_call("update your profile")
    def update_name(self, user_id: str, full_name: str) -> Optional[User]:
        rows = self._execute_returning(f"""
            UPDATE users SET full_name = %s WHERE id = %s
            RETURNING {self._COLUMNS};
        """, (full_name, user_id))
        return self._from_row(rows[0]) if rows else None

    @_db_call("list users")
    def list(self) -> List[User]:
        rows = self._fetch_all(f"SELECT {self._COLUMNS} FROM users ORDER BY created_at DESC;", ())
        return [self._from_row(r) for r in rows or []]

    @_db_call("count students")
    def count_students(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) AS n FROM users WHERE role = 'student';", ())
        return int((row or {}).get("n") or 0)


# =============================================================================
# AI tutor customization
# =============================================================================
class TutorSettingStore(_Store):
    @_db_call("load tutor settings")
    def get(self, department: str) -> Optional[TutorSetting]:
        row = self._fetch_one("""
            SELECT department, custom_prompt, knowledge_base, updated_at
              FROM tutor_settings WHERE department = %s;
        """, (department,))
        if not row:
            return None
        return TutorSetting(row["department"], row.get("custom_prompt") or "",
                            row.get("knowledge_base") or "", row.get("updated_at"))

    @_db_call("save tutor settings")
    def upsert(self, department: str, custom_prompt: str, knowledge_base: str) -> None:
        self._execute("""
            INSERT INTO tutor_settings (department, custom_prompt, knowledge_base, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (department) DO UPDATE
               SET custom_prompt  = EXCLUDED.custom_prompt,
                   knowledge_base = EXCLUDED.knowledge_base,
                   updated_at     = now();
        """, (department, custom_prompt, knowledge_base))


@dataclass
class Stores:
    questions: Any
    exams: Any
    results: Any
    departments: Any = None
    subjects: Any = None
    users: Any = None
    tutor_settings: Any = None


def build_stores(db: Dict[str, Callable]) -> Stores:
    return Stores(
        questions=QuestionStore(db),
        exams=ExamStore(db),
        results=ResultStore(db),
        departments=DepartmentStore(db),
        subjects=SubjectStore(db),
        users=UserStore(db),
        tutor_settings=TutorSettingStore(db),
    )


def ensure_schema(execute: Callable) -> None:
    for ddl in SCHEMA_DDL:
        execute(ddl)
