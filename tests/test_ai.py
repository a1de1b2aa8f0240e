import json
import sys
from pathlib import Path

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ai import AIClient  # noqa: E402
from errors import DependencyError  # noqa: E402
from models import Question  # noqa: E402


class FakeResponse:
    def __init__(self, content=None, status=200):
        self.content = content
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return {"choices": [{"message": {"content": self.content}}]}


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.exc:
            raise self.exc
        return self.response


def _client(content=None, **kw):
    session = FakeSession(FakeResponse(content, **kw))
    return AIClient(api_key="sk-test", model="gpt-test", timeout=5, session=session), session


def test_explain_answer_sends_json_mode_request():
    client, session = _client(json.dumps({"explanation": "7600 means radio failure."}))
    out = client.explain_answer("Radio failure squawk?", None, "7600", "Air Law")
    assert out == {"explanation": "7600 means radio failure."}
    body = session.posts[0]["json"]
    assert body["model"] == "gpt-test"
    assert body["response_format"] == {"type": "json_object"}
    assert "Student's Answer: Not answered" in body["messages"][1]["content"]
    assert session.posts[0]["headers"]["Authorization"] == "Bearer sk-test"


def test_fenced_json_is_accepted():
    client, _ = _client('```json\n{"response": "Hello"}\n```')
    assert client.tutor_response("Hi?") == {"response": "Hello"}


def test_custom_prompt_and_history_reach_the_model():
    client, session = _client(json.dumps({"response": "ok"}))
    client.tutor_response("Why?", history=[{"role": "user", "text": "What is QNH?"}],
                          custom_prompt="Answer like an examiner.", knowledge_base="PHAK ch. 7")
    system, user = (m["content"] for m in session.posts[0]["json"]["messages"])
    assert "Answer like an examiner." in system and "PHAK ch. 7" in system
    assert "user: What is QNH?" in user


@pytest.mark.parametrize("kwargs", [
    {"content": "not json at all"},
    {"content": json.dumps({"explanation": ""})},
    {"content": "{}", "status": 500},
])
def test_bad_responses_become_dependency_errors(kwargs):
    client, _ = _client(**kwargs)
    with pytest.raises(DependencyError):
        client.explain_answer("Q", "A", "B", "T")


def test_network_error_is_dependency_error():
    client = AIClient(api_key="sk", session=FakeSession(exc=requests.ConnectionError("down")))
    with pytest.raises(DependencyError):
        client.study_plan("u1", [])


def test_missing_api_key():
    with pytest.raises(DependencyError):
        AIClient(api_key="", session=FakeSession()).tutor_response("Hi")


def test_generate_questions_drops_invalid_items():
    good = {"questionText": "VOR?", "options": ["A", "B", "C", "D"], "correctAnswer": "C",
            "department": "Flying School", "subject": "Navigation"}
    bad = {**good, "options": ["A", "B"], "correctAnswer": "A"}
    wrong_answer = {**good, "correctAnswer": "E"}
    client, _ = _client(json.dumps({"generatedQuestions": [good, bad, wrong_answer, "junk"]}))
    out = client.generate_questions("VOR basics", "Easy")
    assert [q.question_text for q in out] == ["VOR?"]


def test_select_question_ids_returns_strings():
    client, session = _client(json.dumps({"selectedQuestionIds": ["q1", 2]}))
    bank = [Question("q1", "Q1?", ["A", "B"], "A", subject="Air Law")]
    assert client.select_question_ids("air law", 2, bank) == ["q1", "2"]
    assert "ID: q1" in session.posts[0]["json"]["messages"][1]["content"]
