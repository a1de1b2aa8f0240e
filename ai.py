# ai.py
# OpenAI chat-completions calls (JSON mode) behind a small client. Every flow
# sends one request and validates the JSON it gets back; network errors,
# HTTP errors and malformed output all surface as DependencyError. No retries.

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Sequence

import requests

from errors import DependencyError, ValidationError
from models import GeneratedQuestion, Question, parse_input

logger = logging.getLogger(__name__)

OPENAI_API_KEY = (os.getenv("OPENAI_API_KEY") or "").strip()
OPENAI_MODEL = (os.getenv("OPENAI_MODEL") or "gpt-4o-mini").strip()
OPENAI_TIMEOUT = int(os.getenv("OPENAI_TIMEOUT") or 90)
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

NOT_ANSWERED = "Not answered"


class AIClient:
    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL,
                 timeout: int = OPENAI_TIMEOUT, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.http = session or requests.Session()

    # ------------------------------------------------------------------ core
    def _chat_json(self, system: str, user: str, temperature: float = 0.2,
                   max_tokens: int = 1200) -> Dict[str, Any]:
        if not self.api_key:
            raise DependencyError("OPENAI_API_KEY is not set.")
        try:
            r = self.http.post(
                OPENAI_URL,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": self.model,
                    "messages": [{"role": "system", "content": system},
                                 {"role": "user", "content": user}],
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "response_format": {"type": "json_object"},
                },
                timeout=self.timeout,
            )
            r.raise_for_status()
            content = (r.json()["choices"][0]["message"]["content"] or "").strip()
        except requests.RequestException as e:
            logger.exception("AI request failed")
            raise DependencyError("The AI service is unavailable. Please try again.") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DependencyError("The AI service returned an unexpected response.") from e
        try:
            return json.loads(content)
        except ValueError:
            m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
            try:
                return json.loads(m.group(1) if m else content)
            except ValueError as e:
                raise DependencyError("The AI service returned malformed JSON.") from e

    # ---------------------------------------------------------------- flows
    def explain_answer(self, question: str, student_answer: Optional[str],
                       correct_answer: str, topic: str) -> Dict[str, str]:
        system = (
            "You are an expert aviation tutor. A student finished a mock exam and asked about one "
            "question. Explain the correct answer clearly and concisely, compare it with the "
            "student's answer, and say why the correct answer is best. If the student did not "
            "answer, just explain the correct answer. Return JSON {\"explanation\": \"...\"}."
        )
        user = (
            f"Topic: {topic or 'General aviation'}\n"
            f"Question: {question}\n"
            f"Student's Answer: {student_answer or NOT_ANSWERED}\n"
            f"Correct Answer: {correct_answer}\n"
        )
        data = self._chat_json(system, user, temperature=0.3, max_tokens=600)
        text = str((data or {}).get("explanation") or "").strip()
        if not text:
            raise DependencyError("The AI service returned an empty explanation.")
        return {"explanation": text}

    def tutor_response(self, question: str, history: Sequence[Dict[str, str]] = (),
                       custom_prompt: str = "", knowledge_base: str = "") -> Dict[str, str]:
        system = (
            "You are an expert AI tutor for FlightPrep LMS, an aviation college. Help students "
            "understand aviation topics clearly, concisely and encouragingly. If a question is "
            "outside aviation, politely decline and steer back to aviation. "
            "Return JSON {\"response\": \"...\"}."
        )
        if custom_prompt:
            system += "\n\nDepartment instructions:\n" + custom_prompt
        if knowledge_base:
            system += "\n\nReference material:\n" + knowledge_base
        turns = "\n".join(f"{t.get('role', 'user')}: {t.get('text', '')}" for t in history)
        user = (f"Conversation so far:\n{turns}\n\n" if turns else "") + f"Student question:\n{question}"
        data = self._chat_json(system, user, temperature=0.4, max_tokens=900)
        text = str((data or {}).get("response") or "").strip()
        if not text:
            raise DependencyError("The AI tutor returned an empty response.")
        return {"response": text}

    def select_question_ids(self, prompt: str, question_count: int,
                            bank: Sequence[Question]) -> List[str]:
        system = (
            "You build exams for an aviation training platform. Pick the question IDs from the "
            "bank that best match the exam prompt. Select exactly the requested number. "
            "Return JSON {\"selectedQuestionIds\": [\"...\"]}."
        )
        listing = "\n".join(f"- ID: {q.id}, Text: {q.question_text}, Subject: {q.subject}" for q in bank)
        user = (
            f"Exam Prompt: {prompt}\n"
            f"Number of Questions to Select: {question_count}\n\n"
            f"Available Questions:\n----------------\n{listing}\n----------------\n"
        )
        data = self._chat_json(system, user, temperature=0.0, max_tokens=1500)
        ids = (data or {}).get("selectedQuestionIds")
        if not isinstance(ids, list):
            raise DependencyError("The AI did not return a list of question IDs.")
        return [str(i) for i in ids]

    def generate_questions(self, prompt: str, difficulty: str,
                           source_text: Optional[str] = None) -> List[GeneratedQuestion]:
        system = (
            "You are an exam creation agent for an aviation training platform. Produce "
            "multiple-choice questions from the instructions and source material. Each question "
            "has exactly four options, one correct answer copied verbatim from the options, and a "
            "department (e.g. Flying School) and subject (e.g. Air Law) inferred from the content. "
            "If the source is already a list of questions, parse and format them; otherwise write "
            "new questions covering the material. Return JSON {\"generatedQuestions\": [{"
            "\"questionText\", \"options\", \"correctAnswer\", \"department\", \"subject\"}]}."
        )
        source = source_text.strip() if source_text else ""
        user = (
            f"Admin's Prompt: {prompt}\n"
            f"Difficulty Level: {difficulty}\n\n"
            "Source Material:\n"
            + (source if source else
               "No source material provided. Use general aviation knowledge related to the prompt.")
        )
        data = self._chat_json(system, user, temperature=0.3, max_tokens=3500)
        raw = (data or {}).get("generatedQuestions") or []
        out: List[GeneratedQuestion] = []
        for i, item in enumerate(raw if isinstance(raw, list) else [], start=1):
            try:
                out.append(parse_input(GeneratedQuestion, item))
            except ValidationError as e:
                logger.warning("dropping generated question %d: %s", i, e.message)
        return out

    def study_plan(self, student_id: str, exam_results: Sequence[Dict[str, Any]]) -> Dict[str, str]:
        system = (
            "You generate personalized study plans for aviation students. From the exam results, "
            "identify weak areas, list topics to study with resources for each and an estimated "
            "study time per topic. Return JSON {\"studyPlan\": \"...\"}."
        )
        user = (
            f"Student ID: {student_id}\n"
            f"Exam Results: {json.dumps(list(exam_results), ensure_ascii=False, default=str)}\n"
        )
        data = self._chat_json(system, user, temperature=0.4, max_tokens=1500)
        text = str((data or {}).get("studyPlan") or "").strip()
        if not text:
            raise DependencyError("The AI service returned an empty study plan.")
        return {"studyPlan": text}
