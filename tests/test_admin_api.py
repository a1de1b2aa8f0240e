import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from models import GeneratedQuestion  # noqa: E402

QUESTION = {
    "questionText": "Which instrument uses the pitot tube?",
    "options": ["Airspeed indicator", "Heading indicator", "Turn coordinator", "Compass"],
    "correctAnswer": "Airspeed indicator",
    "department": "Aircraft Maintenance Engineering",
    "subject": "Instruments",
}


def test_admin_adds_and_lists_questions(make_app, admin):
    client = make_app(caller=admin).test_client()
    resp = client.post("/admin/questions", json=QUESTION)
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True

    listed = client.get("/admin/questions?subject=Instruments").get_json()
    assert [q["questionText"] for q in listed["questions"]] == [QUESTION["questionText"]]
    assert listed["questions"][0]["correctAnswer"] == "Airspeed indicator"


def test_validation_errors_are_400_and_store_nothing(make_app, stores, admin):
    client = make_app(caller=admin).test_client()
    resp = client.post("/admin/questions", json={**QUESTION, "options": ["Airspeed indicator"]})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["success"] is False and body["error"] == "validation"
    assert stores.questions.count() == 0


def test_student_cannot_use_admin_api(make_app, stores, student):
    client = make_app(caller=student).test_client()
    resp = client.post("/admin/exams", json={"title": "x", "duration": 10, "questionIds": ["a"]})
    assert resp.status_code == 403
    assert stores.exams.list() == []
    assert client.get("/admin/analytics/kpis").status_code == 403


def test_anonymous_admin_call_is_401(make_app):
    client = make_app(caller=None).test_client()
    assert client.get("/admin/users").status_code == 401
    assert client.get("/admin/whoami").status_code == 401


def test_exam_from_source_endpoint(make_app, stores, admin, ai):
    ai.generated = [GeneratedQuestion(question_text="VOR stands for?", options=["A", "B", "C", "D"],
                                      correct_answer="A", department="Flying School", subject="Navigation")]
    client = make_app(caller=admin).test_client()
    resp = client.post("/admin/exams/from-source", json={"title": "Nav", "duration": 10, "prompt": "VOR",
                                                         "difficulty": "Easy"})
    assert resp.status_code == 200
    assert resp.get_json()["questionsCreated"] == 1


def test_exam_from_source_ai_failure_is_502(make_app, stores, admin, ai):
    ai.fail = True
    client = make_app(caller=admin).test_client()
    resp = client.post("/admin/exams/from-source", json={"title": "Nav", "duration": 10, "prompt": "VOR",
                                                         "difficulty": "Easy"})
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "dependency"
    assert stores.questions.count() == 0


def test_departments_subjects_users_and_tutor(make_app, stores, admin):
    client = make_app(caller=admin).test_client()
    assert client.post("/admin/departments", json={"name": "Cabin Crew"}).status_code == 200
    assert client.post("/admin/subjects", json={"name": "Safety", "department": "Cabin Crew"}).status_code == 200
    assert client.get("/admin/subjects", query_string={"department": "Cabin Crew"}).get_json()["subjects"][0]["name"] == "Safety"
    assert client.post("/admin/users/invite", json={"email": "fo@example.com", "role": "Student"}).status_code == 200
    emails = {u["email"] for u in client.get("/admin/users").get_json()["users"]}
    assert "fo@example.com" in emails
    resp = client.post("/admin/ai-customization", json={"department": "Cabin Crew", "customPrompt": "Be brief."})
    assert resp.status_code == 200
    assert stores.tutor_settings.get("Cabin Crew").custom_prompt == "Be brief."


def test_whoami_reports_claims(make_app, admin):
    data = make_app(caller=admin).test_client().get("/admin/whoami").get_json()
    assert data["claims"] == {"isAdmin": True, "isStudent": False}


def test_analytics_endpoints(make_app, admin):
    client = make_app(caller=admin).test_client()
    for name in ("kpis", "pass-fail", "score-distribution", "difficult-subjects"):
        resp = client.get(f"/admin/analytics/{name}")
        assert resp.status_code == 200, name
        assert isinstance(resp.get_json()["data"], list)
