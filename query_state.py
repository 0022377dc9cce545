"""
Tri-state result of a collaborator query: Loading, NotFound or Found(value).

Reactive lookups hand back LOADING until they resolve, then None or the
record. Callers branch on the variant instead of testing for None, so the
'still loading' case cannot be mistaken for 'does not exist'.
"""

from typing import Any, Dict

from exam_status import ACTIVE, resolve_status, status_label

LOADING = object()


class Loading:
    def __eq__(self, other):
        return isinstance(other, Loading)

    def __repr__(self):
        return "Loading()"


class NotFound:
    def __eq__(self, other):
        return isinstance(other, NotFound)

    def __repr__(self):
        return "NotFound()"


class Found:
    def __init__(self, value: Any):
        self.value = value

    def __eq__(self, other):
        return isinstance(other, Found) and other.value == self.value

    def __repr__(self):
        return f"Found({self.value!r})"


def from_subscription(raw: Any):
    if raw is LOADING:
        return Loading()
    if raw is None:
        return NotFound()
    return Found(raw)


def check_access(result, now: int) -> Dict[str, Any]:
    """Candidate gate over a query result: only an active exam may be attempted."""
    if isinstance(result, Loading):
        return {"state": "loading", "allowed": False, "status": None}
    if isinstance(result, NotFound):
        return {"state": "not_found", "allowed": False, "status": None}
    if isinstance(result, Found):
        status = resolve_status(result.value, now)
        return {"state": "found", "allowed": status == ACTIVE,
                "status": status, "label": status_label(status)}
    raise TypeError(f"not a query result: {result!r}")
