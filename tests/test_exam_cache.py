import pytest
from flask import Flask, g

from conftest import DAY, HOUR, NOW
from backend import ExamBackend
from exam import create_exam_blueprint
from exam_storage import answer_store_factory
from query_state import LOADING


@pytest.fixture
def identity():
    return {"user_id": 7, "user_email": "candidat@example.com"}


@pytest.fixture
def seeded_db(db):
    for qid, correct in (("q1", "A"), ("q2", "B")):
        db.add_question(qid, correct)
    db.add_exam("live", NOW - HOUR, NOW + DAY, completion_time=3600, question_ids=["q1", "q2"],
                title="ECN blanc cardiologie")
    db.add_exam("soon", NOW + HOUR, NOW + DAY, question_ids=["q1"])
    return db


def _make_app(db, clock, identity, **extra_deps):
    app = Flask(__name__)
    app.testing = True

    @app.before_request
    def _set_user():
        g.user_id = identity.get("user_id")
        g.user_email = identity.get("user_email")

    deps = {
        "backend": ExamBackend(db.fetch_one, db.fetch_all, db.execute, db.execute_returning),
        "answer_store_for": answer_store_factory("memory", clock=clock),
        "clock": clock,
    }
    deps.update(extra_deps)
    app.register_blueprint(create_exam_blueprint("", deps))
    return app


@pytest.fixture
def client(seeded_db, clock, identity):
    return _make_app(seeded_db, clock, identity).test_client()


def test_anonymous_is_unauthorized(client, identity):
    identity.clear()
    assert client.post("/exams/live/start").status_code == 401
    assert client.get("/exams/live/answers").status_code == 401


def test_exam_list_carries_status_labels(client):
    resp = client.get("/exams")
    assert resp.status_code == 200
    by_id = {e["id"]: e for e in resp.get_json()["exams"]}
    assert by_id["live"]["label"] == "En cours"
    assert by_id["soon"]["status"] == "upcoming"
    assert by_id["live"]["question_count"] == 2


def test_upcoming_exam_is_refused(client, seeded_db):
    resp = client.post("/exams/soon/start")
    assert resp.status_code == 403
    body = resp.get_json()
    assert body["status"] == "upcoming"
    assert body["label"] == "À venir"
    assert seeded_db.participations == {}


def test_unknown_exam_is_not_found(client):
    assert client.post("/exams/nope/start").status_code == 404
    assert client.get("/exams/nope/status").status_code == 404


def test_loading_lookup_blocks_without_touching_backend(seeded_db, clock, identity):
    app = _make_app(seeded_db, clock, identity, lookup_exam=lambda exam_id: LOADING)
    client = app.test_client()
    resp = client.post("/exams/live/start")
    assert resp.status_code == 503
    assert resp.get_json()["state"] == "loading"
    assert seeded_db.participations == {}
    assert client.get("/exams/live/status").get_json()["allowed"] is False


def test_reload_restores_cached_answers(client, clock):
    first = client.post("/exams/live/start").get_json()
    assert first["restored"] is False
    assert [q["id"] for q in first["questions"]] == ["q1", "q2"]
    assert "correct_answer" not in first["questions"][0]

    client.post("/exams/live/answers", json={"answers": {"q1": "B"}})
    client.post("/exams/live/answers", json={"answers": {"q1": "A", "q2": "B"}})

    clock.advance(60_000)
    again = client.post("/exams/live/start").get_json()
    assert again["resumed"] is True
    assert again["restored"] is True
    assert again["saved_answers"] == {"q1": "A", "q2": "B"}
    assert again["timer"]["time_remaining"] == HOUR - 60_000


def test_answers_must_be_an_object(client):
    assert client.post("/exams/live/answers", json={"answers": ["q1"]}).status_code == 400


def test_successful_submit_clears_cache(client):
    client.post("/exams/live/start")
    client.post("/exams/live/answers", json={"answers": {"q1": "A", "q2": "C"}})

    resp = client.post("/exams/live/submit", json={})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["score"] == 50
    assert body["auto_submitted"] is False
    assert client.get("/exams/live/answers").get_json() == {"ok": True, "answers": {}, "restored": False}


def test_transient_failure_keeps_cache(client, seeded_db, capsys):
    client.post("/exams/live/start")
    client.post("/exams/live/answers", json={"answers": {"q1": "A"}})

    seeded_db.fail = True
    resp = client.post("/exams/live/submit", json={})
    assert resp.status_code == 503
    assert resp.get_json()["cache_cleared"] is False
    assert "connection refused" in capsys.readouterr().out

    seeded_db.fail = False
    assert client.get("/exams/live/answers").get_json()["answers"] == {"q1": "A"}
    retry = client.post("/exams/live/submit", json={})
    assert retry.status_code == 200
    assert retry.get_json()["correct"] == 1


def test_definitive_rejection_clears_cache(client):
    client.post("/exams/live/answers", json={"answers": {"q1": "A"}})
    # never started: the backend refuses for good
    resp = client.post("/exams/live/submit", json={})
    assert resp.status_code == 409
    assert resp.get_json()["cache_cleared"] is True
    assert client.get("/exams/live/answers").get_json()["restored"] is False


def test_expired_timer_on_resume_auto_submits(client, seeded_db, clock):
    client.post("/exams/live/start")
    client.post("/exams/live/answers", json={"answers": {"q2": "B"}})

    clock.advance(HOUR + 1000)
    resp = client.post("/exams/live/start")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["auto_submitted"] is True
    assert body["status"] == "auto_submitted"
    assert body["correct"] == 1
    assert seeded_db.participation_for("live", "7")["status"] == "auto_submitted"
    assert client.get("/exams/live/answers").get_json()["restored"] is False


@pytest.fixture
def pause_client(seeded_db, clock, identity):
    for qid, correct in (("q3", "C"), ("q4", "D")):
        seeded_db.add_question(qid, correct)
    seeded_db.add_exam("pz", NOW - HOUR, NOW + DAY, completion_time=3600,
                       question_ids=["q1", "q2", "q3", "q4"], enable_pause=True)
    return _make_app(seeded_db, clock, identity).test_client()


def test_pause_routes_lock_questions_and_credit_the_timer(pause_client, clock):
    started = pause_client.post("/exams/pz/start").get_json()
    assert started["pause"] == {"enable_pause": True, "pause_duration_minutes": 15,
                                "pause_phase": "before_pause"}
    assert pause_client.get("/exams/pz/questions/3/access").get_json()["allowed"] is False

    assert pause_client.post("/exams/pz/pause", json={}).status_code == 409
    clock.advance(20 * 60_000)
    resp = pause_client.post("/exams/pz/pause", json={"manual": True})
    assert resp.status_code == 200
    assert resp.get_json()["pause_started_at"] == NOW + 20 * 60_000

    clock.advance(15 * 60_000)
    resumed = pause_client.post("/exams/pz/resume").get_json()
    assert resumed["is_pause_cut_short"] is False
    status = pause_client.get("/exams/pz/pause").get_json()
    assert status["pause_phase"] == "after_pause"
    assert status["midpoint"] == 2
    assert pause_client.get("/exams/pz/questions/3/access").get_json() == {"ok": True, "allowed": True}

    again = pause_client.post("/exams/pz/start").get_json()
    assert again["timer"]["paused_ms"] == 15 * 60_000
    assert again["timer"]["time_remaining"] == HOUR - 20 * 60_000


def test_pause_status_without_session_is_not_found(pause_client):
    assert pause_client.get("/exams/pz/pause").status_code == 404
    assert pause_client.post("/exams/nope/resume").status_code == 404


def test_results_wait_for_the_end_of_the_window(client, clock):
    client.post("/exams/live/start")
    client.post("/exams/live/submit", json={"answers": {"q1": "A"}})

    early = client.get("/exams/live/results")
    assert early.status_code == 403
    assert client.get("/exams/live/leaderboard").get_json() == {"ok": True, "leaderboard": []}

    clock.advance(DAY + 1)
    body = client.get("/exams/live/results").get_json()
    assert body["ok"] is True
    assert body["participant"]["score"] == 50
    assert body["questions"][0]["correct_answer"] == "A"
    board = client.get("/exams/live/leaderboard").get_json()["leaderboard"]
    assert [(e["rank"], e["user_id"]) for e in board] == [(1, "7")]


def test_leaderboard_is_hidden_from_non_participants(client, seeded_db, clock, identity):
    client.post("/exams/live/start")
    client.post("/exams/live/submit", json={"answers": {"q1": "A"}})
    clock.advance(DAY + 1)

    identity["user_id"] = 8
    assert client.get("/exams/live/leaderboard").get_json()["leaderboard"] == []
    missing = client.get("/exams/live/results")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "NO_PARTICIPATION"
