import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from query_state import LOADING, Found, Loading, NotFound, check_access, from_subscription  # noqa: E402

EXAM = {"id": "e1", "is_active": True, "start_date": 100, "end_date": 200}


def test_from_subscription_distinguishes_loading_from_missing():
    assert from_subscription(LOADING) == Loading()
    assert from_subscription(None) == NotFound()
    assert from_subscription(EXAM) == Found(EXAM)
    assert from_subscription(None) != Loading()


def test_loading_is_never_allowed():
    assert check_access(Loading(), 150) == {"state": "loading", "allowed": False, "status": None}


def test_not_found_is_never_allowed():
    assert check_access(NotFound(), 150)["state"] == "not_found"
    assert check_access(NotFound(), 150)["allowed"] is False


def test_found_exam_is_gated_on_status():
    live = check_access(Found(EXAM), 150)
    assert live["allowed"] is True
    assert live["status"] == "active"

    early = check_access(Found(EXAM), 99)
    assert early["allowed"] is False
    assert early["label"] == "À venir"

    off = check_access(Found(dict(EXAM, is_active=False)), 150)
    assert off["status"] == "inactive"


def test_raw_values_are_rejected():
    with pytest.raises(TypeError):
        check_access(None, 150)
