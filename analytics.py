# analytics.py
# Admin dashboard figures computed over exam_results. Functions take the Stores
# container (plus `now` for the monthly view) and return JSON-ready lists.

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import scoring
from stores import Stores

SCORE_BUCKETS = (("0-50%", 50), ("51-70%", 70), ("71-90%", 90), ("91-100%", 100))
MONTHS_SHOWN = 6
DIFFICULT_SUBJECTS_SHOWN = 5


def _month_start(d: datetime, months_back: int) -> datetime:
    y, m = d.year, d.month - months_back
    while m <= 0:
        m += 12
        y -= 1
    return datetime(y, m, 1, tzinfo=d.tzinfo or timezone.utc)


def kpis(stores: Stores) -> List[Dict[str, Any]]:
    results = stores.results.list_all()
    avg = sum(r.score for r in results) / len(results) if results else 0
    return [
        {"title": "Exams Completed", "value": f"{len(results):,}"},
        {"title": "Active Students", "value": f"{stores.users.count_students():,}"},
        {"title": "Avg. Score", "value": f"{avg:.0f}%"},
        {"title": "Questions in Bank", "value": f"{stores.questions.count():,}"},
    ]


def pass_fail_by_month(stores: Stores, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Passed/failed counts for each of the last six months, oldest first."""
    now = now or datetime.now(timezone.utc)
    since = _month_start(now, MONTHS_SHOWN - 1)
    thresholds = stores.exams.thresholds()

    months: "OrderedDict[tuple, Dict[str, Any]]" = OrderedDict()
    for back in range(MONTHS_SHOWN - 1, -1, -1):
        start = _month_start(now, back)
        months[(start.year, start.month)] = {"month": start.strftime("%b"), "passed": 0, "failed": 0}

    for r in stores.results.list_all(since=since):
        if r.submitted_at is None:
            continue
        slot = months.get((r.submitted_at.year, r.submitted_at.month))
        if slot is None:
            continue
        if scoring.passed(r.score, thresholds.get(r.exam_id)):
            slot["passed"] += 1
        else:
            slot["failed"] += 1
    return list(months.values())


def score_distribution(stores: Stores) -> List[Dict[str, Any]]:
    counts = OrderedDict((label, 0) for label, _ in SCORE_BUCKETS)
    for r in stores.results.list_all():
        for label, upper in SCORE_BUCKETS:
            if r.score <= upper:
                counts[label] += 1
                break
    return [{"range": label, "count": n} for label, n in counts.items()]


def difficult_subjects(stores: Stores) -> List[Dict[str, Any]]:
    """Subjects with the lowest average score, at most five."""
    totals: Dict[str, List[int]] = {}
    for r in stores.results.list_all():
        totals.setdefault(r.subject or "General", []).append(r.score)
    rows = [{"subject": s, "avgScore": round(sum(v) / len(v), 2)} for s, v in totals.items()]
    rows.sort(key=lambda x: x["avgScore"])
    return rows[:DIFFICULT_SUBJECTS_SHOWN]
