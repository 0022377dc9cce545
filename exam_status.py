"""Exam lifecycle status: derived from the activation flag and the attempt window."""

from __future__ import annotations

import time
from typing import Any, Dict, Iterable, List, Optional

ACTIVE = "active"
UPCOMING = "upcoming"
COMPLETED = "completed"
INACTIVE = "inactive"

ALL_STATUSES = (ACTIVE, UPCOMING, COMPLETED, INACTIVE)

STATUS_CONFIG: Dict[str, Dict[str, str]] = {
    ACTIVE:    {"label": "En cours",  "variant": "default"},
    UPCOMING:  {"label": "À venir",   "variant": "secondary"},
    COMPLETED: {"label": "Terminé",   "variant": "secondary"},
    INACTIVE:  {"label": "Désactivé", "variant": "destructive"},
}


def now_ms() -> int:
    """Wall clock in epoch milliseconds. Only call this at the request edge."""
    return int(time.time() * 1000)


def _field(exam: Any, *names: str) -> Any:
    if isinstance(exam, dict):
        for n in names:
            if n in exam:
                return exam[n]
        return None
    for n in names:
        if hasattr(exam, n):
            return getattr(exam, n)
    return None


def resolve_status(exam: Any, now: int) -> str:
    """
    Map an exam to one of active / upcoming / completed / inactive.
    Precedence: kill switch, then before window, then after window.
    Both window bounds are inclusive for 'active'.
    """
    if not _field(exam, "is_active", "isActive"):
        return INACTIVE
    if now < int(_field(exam, "start_date", "startDate")):
        return UPCOMING
    if now > int(_field(exam, "end_date", "endDate")):
        return COMPLETED
    return ACTIVE


def can_attempt(exam: Any, now: int) -> bool:
    return resolve_status(exam, now) == ACTIVE


def status_label(status: str) -> str:
    return (STATUS_CONFIG.get(status) or {}).get("label", status)


def parse_statuses(raw: Optional[str]) -> List[str]:
    """'active,completed' -> ['active', 'completed']; unknown tags are dropped."""
    out: List[str] = []
    for part in (raw or "").split(","):
        s = part.strip().lower()
        if s in ALL_STATUSES and s not in out:
            out.append(s)
    return out


def filter_exams(exams: Iterable[Any], statuses: Optional[Iterable[str]],
                 query: Optional[str], now: int) -> List[Any]:
    wanted = set(statuses or [])
    q = (query or "").strip().lower()
    result = []
    for exam in exams or []:
        if wanted and resolve_status(exam, now) not in wanted:
            continue
        if q:
            title = str(_field(exam, "title") or "").lower()
            desc = str(_field(exam, "description") or "").lower()
            if q not in title and q not in desc:
                continue
        result.append(exam)
    return result


__all__ = [
    "ACTIVE", "UPCOMING", "COMPLETED", "INACTIVE", "ALL_STATUSES", "STATUS_CONFIG",
    "now_ms", "resolve_status", "can_attempt", "status_label", "parse_statuses", "filter_exams",
]
