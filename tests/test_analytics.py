import sys
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import analytics  # noqa: E402
from models import Exam, ExamResult, Question  # noqa: E402

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _result(score, when=NOW, exam_id="e1", subject="Air Law"):
    return ExamResult(exam_id, "u1", "Mock", {}, score, when, subject=subject)


def test_kpis(stores, student):
    stores.questions.put(Question("q1", "Q?", ["A", "B"], "A"))
    stores.results.create(_result(80))
    stores.results.create(_result(61))
    kpis = {k["title"]: k["value"] for k in analytics.kpis(stores)}
    assert kpis == {"Exams Completed": "2", "Active Students": "1", "Avg. Score": "70%",
                    "Questions in Bank": "1"}


def test_pass_fail_covers_last_six_months_with_exam_thresholds(stores):
    stores.exams.put(Exam("lenient", "L", "", 10, ["q"], 1, pass_threshold=50))
    stores.results.create(_result(80, datetime(2024, 3, 1, tzinfo=timezone.utc)))
    stores.results.create(_result(60, datetime(2024, 3, 2, tzinfo=timezone.utc)))
    stores.results.create(_result(60, datetime(2024, 1, 9, tzinfo=timezone.utc), exam_id="lenient"))
    stores.results.create(_result(99, datetime(2023, 6, 1, tzinfo=timezone.utc)))

    rows = analytics.pass_fail_by_month(stores, now=NOW)
    assert [r["month"] for r in rows] == ["Oct", "Nov", "Dec", "Jan", "Feb", "Mar"]
    by_month = {r["month"]: (r["passed"], r["failed"]) for r in rows}
    assert by_month["Mar"] == (1, 1)
    assert by_month["Jan"] == (1, 0)
    assert by_month["Oct"] == (0, 0)


def test_score_distribution_buckets(stores):
    for score in (0, 50, 51, 70, 71, 90, 91, 100):
        stores.results.create(_result(score))
    assert analytics.score_distribution(stores) == [
        {"range": "0-50%", "count": 2},
        {"range": "51-70%", "count": 2},
        {"range": "71-90%", "count": 2},
        {"range": "91-100%", "count": 2},
    ]


def test_difficult_subjects_lowest_average_first(stores):
    scores = {"Air Law": [40, 60], "Navigation": [90], "Meteorology": [30], "": [70],
              "Human Factors": [80], "Principles of Flight": [85], "Radio": [95]}
    for subject, values in scores.items():
        for s in values:
            stores.results.create(_result(s, subject=subject))
    rows = analytics.difficult_subjects(stores)
    assert [r["subject"] for r in rows] == ["Meteorology", "Air Law", "General", "Human Factors",
                                            "Principles of Flight"]
    assert rows[1]["avgScore"] == 50.0
