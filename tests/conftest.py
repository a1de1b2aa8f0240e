import copy
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import DependencyError  # noqa: E402
from identity import Caller, claims_for  # noqa: E402
from models import Department, Exam, Question, Subject, TutorSetting, User  # noqa: E402
from state_store import StateSlot  # noqa: E402
from stores import Stores  # noqa: E402


# -----------------------------------------------------------------------------
# In-memory stores
# -----------------------------------------------------------------------------
class MemoryStateStore:
    """Process-local state store with a lock per key."""

    def __init__(self):
        self._data = {}
        self._locks = {}
        self._guard = threading.Lock()
        self.sets = 0

    def get(self, key, default=None):
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key, value):
        self.sets += 1
        self._data[key] = copy.deepcopy(value)

    def delete(self, key):
        self._data.pop(key, None)

    @contextmanager
    def locked(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield StateSlot(key, self.get(key), lambda value: self.set(key, value))


class FakeQuestionStore:
    def __init__(self):
        self.rows = {}
        self._n = 0
        self.fail_add_many = False

    def _new(self, data):
        self._n += 1
        q = Question(f"q{self._n}", data.question_text, list(data.options), data.correct_answer,
                     data.department, data.subject, datetime.now(timezone.utc))
        return q

    def put(self, q):
        self.rows[q.id] = q
        return q

    def add(self, data):
        return self.put(self._new(data))

    def add_many(self, items):
        if self.fail_add_many:
            raise DependencyError("Database error: could not save the generated questions.")
        return [self.put(self._new(d)) for d in items]

    def get_many(self, ids):
        return [self.rows[i] for i in ids if i in self.rows]

    def list(self, department=None, subject=None):
        return [q for q in self.rows.values()
                if (not department or q.department == department) and (not subject or q.subject == subject)]

    def delete_many(self, ids):
        for i in ids:
            self.rows.pop(i, None)

    def count(self):
        return len(self.rows)


class FakeExamStore:
    def __init__(self):
        self.rows = {}
        self._n = 0
        self.fail_create = False

    def put(self, exam):
        self.rows[exam.id] = exam
        return exam

    def create(self, title, description, duration, question_ids, pass_threshold=None):
        if self.fail_create:
            raise DependencyError("Database error: could not create the exam.")
        self._n += 1
        return self.put(Exam(f"e{self._n}", title, description, int(duration), list(question_ids),
                             len(question_ids), pass_threshold, datetime.now(timezone.utc)))

    def get(self, exam_id):
        return self.rows.get(exam_id)

    def list(self, limit=None):
        items = list(reversed(list(self.rows.values())))
        return items[:limit] if limit else items

    def thresholds(self):
        return {e.id: e.pass_threshold for e in self.rows.values()}


class FakeResultStore:
    def __init__(self, users=None):
        self.rows = {}
        self.writes = 0
        self.fail_next = 0
        self.users = users

    def create(self, result):
        if self.fail_next:
            self.fail_next -= 1
            raise DependencyError("Database error: could not save your exam result.")
        self.writes += 1
        rid = f"r{self.writes}"
        result.id = rid
        self.rows[rid] = result
        return rid

    def get(self, result_id):
        return self.rows.get(result_id)

    def list_for_user(self, user_id):
        return [r for r in reversed(list(self.rows.values())) if r.user_id == user_id]

    def list_all(self, since=None):
        return [r for r in self.rows.values() if since is None or r.submitted_at >= since]

    def leaderboard(self, limit=50):
        totals = {}
        for r in self.rows.values():
            score, taken = totals.get(r.user_id, (0, 0))
            totals[r.user_id] = (score + r.score, taken + 1)
        ranked = sorted(totals.items(), key=lambda kv: -kv[1][0])[:limit]
        return [{"rank": i, "userId": uid, "name": uid, "score": s, "examsTaken": n}
                for i, (uid, (s, n)) in enumerate(ranked, start=1)]


class FakeDepartmentStore:
    def __init__(self):
        self.rows = []

    def add(self, name):
        d = Department(f"d{len(self.rows) + 1}", name)
        self.rows.append(d)
        return d

    def list(self):
        return sorted(self.rows, key=lambda d: d.name)


class FakeSubjectStore:
    def __init__(self):
        self.rows = []

    def add(self, name, department):
        s = Subject(f"s{len(self.rows) + 1}", name, department)
        self.rows.append(s)
        return s

    def list(self, department=None):
        return sorted((s for s in self.rows if not department or s.department == department),
                      key=lambda s: s.name)


class FakeUserStore:
    def __init__(self):
        self.rows = {}

    def get_by_email(self, email):
        return self.rows.get(email.lower())

    def upsert(self, email, role=None, full_name=""):
        email = email.strip().lower()
        u = self.rows.get(email)
        if u is None:
            u = User(f"u{len(self.rows) + 1}", email, full_name or email.split("@")[0], role or "student")
            self.rows[email] = u
        else:
            u.role = role or u.role
            u.full_name = full_name or u.full_name
        return u

    def ensure(self, email):
        return self.get_by_email(email) or self.upsert(email)

    def update_name(self, user_id, full_name):
        for u in self.rows.values():
            if u.id == user_id:
                u.full_name = full_name
                return u
        return None

    def list(self):
        return list(self.rows.values())

    def count_students(self):
        return sum(1 for u in self.rows.values() if u.role == "student")


class FakeTutorSettingStore:
    def __init__(self):
        self.rows = {}

    def get(self, department):
        return self.rows.get(department)

    def upsert(self, department, custom_prompt, knowledge_base):
        self.rows[department] = TutorSetting(department, custom_prompt, knowledge_base)


class FakeAI:
    def __init__(self):
        self.calls = []
        self.selected_ids = []
        self.generated = []
        self.fail = False

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail:
            raise DependencyError("The AI service is unavailable. Please try again.")

    def explain_answer(self, question, student_answer, correct_answer, topic):
        self._record("explain_answer", question, student_answer, correct_answer, topic)
        return {"explanation": f"The answer is {correct_answer}."}

    def tutor_response(self, question, history=(), custom_prompt="", knowledge_base=""):
        self._record("tutor_response", question, list(history), custom_prompt, knowledge_base)
        return {"response": f"answer to {question}"}

    def select_question_ids(self, prompt, question_count, bank):
        self._record("select_question_ids", prompt, question_count)
        return list(self.selected_ids)

    def generate_questions(self, prompt, difficulty, source_text=None):
        self._record("generate_questions", prompt, difficulty, source_text)
        return list(self.generated)

    def study_plan(self, student_id, exam_results):
        self._record("study_plan", student_id, list(exam_results))
        return {"studyPlan": "Week 1: review Air Law."}


def make_stores():
    users = FakeUserStore()
    return Stores(
        questions=FakeQuestionStore(),
        exams=FakeExamStore(),
        results=FakeResultStore(users),
        departments=FakeDepartmentStore(),
        subjects=FakeSubjectStore(),
        users=users,
        tutor_settings=FakeTutorSettingStore(),
    )


def make_caller(stores, email="student@example.com", role="student"):
    user = stores.users.upsert(email, role=role)
    return Caller(uid=user.id, email=user.email, name=user.full_name, claims=claims_for(email, role))


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def stores():
    return make_stores()


@pytest.fixture
def ai():
    return FakeAI()


@pytest.fixture
def admin(stores):
    return make_caller(stores, "admin@example.com", "admin")


@pytest.fixture
def student(stores):
    return make_caller(stores, "student@example.com", "student")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_app(stores, ai, clock, monkeypatch):
    """Flask app with every blueprint registered over the in-memory fakes."""
    import admin as admin_module
    import exam as exam_module
    import home as home_module
    import settings as settings_module
    import tutor as tutor_module

    def fake_render(template_name, **context):
        return f"{template_name}::{sorted(context)}"

    for mod in (exam_module, home_module, settings_module, tutor_module):
        monkeypatch.setattr(mod, "render_template", fake_render)

    def build(caller=None, state=None):
        app = Flask(__name__)
        app.testing = True
        app.secret_key = "test"
        state = state if state is not None else MemoryStateStore()
        deps = {"stores": stores, "state": state, "ai": ai, "shuffle": False, "clock": clock}

        app.add_url_rule("/login", endpoint="login", view_func=lambda: "login")
        home_module.register_home_routes(app, "", {"stores": stores})
        app.register_blueprint(exam_module.create_exam_blueprint("", deps))
        app.register_blueprint(tutor_module.create_tutor_blueprint("", deps))
        app.register_blueprint(settings_module.create_settings_blueprint("", {"stores": stores}))
        app.register_blueprint(admin_module.create_admin_blueprint("", {"stores": stores, "ai": ai}))

        @app.before_request
        def _set_caller():
            g.caller = caller

        app.state_store = state
        return app

    return build
