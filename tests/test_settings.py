import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def _flashes(client):
    with client.session_transaction() as sess:
        return sess.get("_flashes", [])


def test_settings_page_renders_for_student(make_app, student):
    resp = make_app(caller=student).test_client().get("/student/settings")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "settings.html::['email', 'err', 'full_name']"


def test_update_display_name(make_app, stores, student):
    client = make_app(caller=student).test_client()
    resp = client.post("/student/settings", data={"fullName": "  Amelia Earhart "})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/student/settings")
    assert stores.users.get_by_email(student.email).full_name == "Amelia Earhart"
    assert ("success", "Profile updated successfully.") in _flashes(client)


def test_too_short_name_is_rejected(make_app, stores, student):
    before = stores.users.get_by_email(student.email).full_name
    client = make_app(caller=student).test_client()
    resp = client.post("/student/settings", data={"fullName": "A"})
    assert resp.status_code == 302
    assert stores.users.get_by_email(student.email).full_name == before
    assert [c for c, _ in _flashes(client)] == ["error"]


def test_settings_require_login(make_app):
    client = make_app(caller=None).test_client()
    assert client.get("/student/settings").headers["Location"].endswith("/login")
    assert client.post("/student/settings", data={"fullName": "Nobody"}).status_code == 302
