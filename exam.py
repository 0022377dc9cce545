# exam.py
# -----------------------------------------------------------------------------
# Candidate-side exam engine (JSON).
# - Access gate: only an 'active' exam can be started, resumed or submitted
# - In-progress answers cached per candidate/exam, hydrated on (re)start
# - Cache cleared once the backend has accepted the attempt
# - Expired timer on resume => auto-submit of the cached answers
# - Mid-exam pause, not counted against the timer
# - Own results and the leaderboard once the exam window has closed
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, g, jsonify, request

from backend import BackendUnavailable, ExamNotFound, ExamRejected
from exam_status import now_ms, resolve_status, status_label
from exam_timer import (
    calculate_time_remaining, format_exam_time, is_time_critical,
    is_time_running_out, should_auto_submit,
)
from query_state import check_access, from_subscription


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/app").
    Required deps: backend, answer_store_for(user_id) -> SessionAnswerStore
    Optional deps: clock() -> epoch ms, lookup_exam(exam_id) -> LOADING | None | exam
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    # ---- Required deps -------------------------------------------------------
    backend = deps["backend"]
    answer_store_for: Callable = deps["answer_store_for"]
    # ---- Optional deps -------------------------------------------------------
    clock: Callable[[], int] = deps.get("clock") or now_ms
    lookup_exam: Callable = deps.get("lookup_exam") or _lookup_via(backend)

    # --------------------------------- helpers --------------------------------
    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _user_id() -> Optional[str]:
        uid = getattr(g, "user_id", None)
        return str(uid) if uid else None

    def _gate(exam_id: str, now: int):
        """(exam, None) when attemptable, else (None, error response)."""
        try:
            raw = lookup_exam(exam_id)
        except BackendUnavailable as e:
            print(f"[exam] lookup failed for {exam_id}: {e}")
            return None, (jsonify({"ok": False, "error": "service indisponible"}), 503)
        result = from_subscription(raw)
        access = check_access(result, now)
        if access["state"] == "loading":
            return None, (jsonify({"ok": False, "state": "loading"}), 503)
        if access["state"] == "not_found":
            return None, (jsonify({"ok": False, "error": "Examen non trouvé"}), 404)
        if not access["allowed"]:
            return None, (jsonify({
                "ok": False,
                "error": "L'examen n'est pas disponible à cette période",
                "status": access["status"],
                "label": access["label"],
            }), 403)
        return result.value, None

    def _timer(started_at: int, completion_time: int, now: int, paused_ms: int = 0) -> Dict[str, Any]:
        remaining = calculate_time_remaining(started_at, completion_time, now, paused_ms)
        return {
            "started_at": started_at,
            "completion_time": completion_time,
            "paused_ms": paused_ms,
            "time_remaining": remaining,
            "time_display": format_exam_time(remaining),
            "running_out": is_time_running_out(remaining),
            "critical": is_time_critical(remaining),
        }

    def _submit(exam_id: str, user_id: str, answers: Dict[str, Any], now: int, is_auto: bool):
        store = answer_store_for(user_id)
        try:
            result = backend.submit_attempt(exam_id, user_id, answers, now, is_auto_submit=is_auto)
        except (ExamRejected, ExamNotFound) as e:
            # Definitive refusal: the cached answers can never be submitted.
            store.clear(exam_id)
            code = 404 if isinstance(e, ExamNotFound) else 409
            return jsonify({"ok": False, "error": str(e), "cache_cleared": True}), code
        except BackendUnavailable as e:
            # Retryable: keep the cache so a later submit still has the answers.
            print(f"[exam] submit failed for exam {exam_id} user {user_id}: {e}")
            return jsonify({"ok": False, "error": "Erreur lors de la soumission",
                            "cache_cleared": False}), 503
        store.clear(exam_id)
        return jsonify({"ok": True, "auto_submitted": is_auto, **result})

    # --------------------------------- routes ---------------------------------
    @bp.get("/exams")
    def exam_list():
        if not _user_id():
            return _unauthorized()
        now = clock()
        try:
            exams = backend.list_exams()
        except BackendUnavailable as e:
            print(f"[exam] list failed: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        items = []
        for ex in exams:
            st = resolve_status(ex, now)
            items.append({
                "id": ex["id"],
                "title": ex["title"],
                "description": ex.get("description"),
                "start_date": ex["start_date"],
                "end_date": ex["end_date"],
                "completion_time": ex["completion_time"],
                "question_count": len(ex.get("question_ids") or []),
                "status": st,
                "label": status_label(st),
            })
        return jsonify({"ok": True, "exams": items})

    @bp.get("/exams/<exam_id>/status")
    def exam_status(exam_id: str):
        if not _user_id():
            return _unauthorized()
        try:
            raw = lookup_exam(exam_id)
        except BackendUnavailable as e:
            print(f"[exam] lookup failed for {exam_id}: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        access = check_access(from_subscription(raw), clock())
        if access["state"] == "not_found":
            return jsonify({"ok": False, "error": "Examen non trouvé", **access}), 404
        return jsonify({"ok": True, **access})

    @bp.post("/exams/<exam_id>/start")
    def exam_start_or_resume(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        now = clock()
        exam, err = _gate(exam_id, now)
        if err:
            return err

        try:
            attempt = backend.start_attempt(exam_id, user_id, now)
            questions = backend.list_questions({"exam_id": exam_id})
        except (ExamRejected, ExamNotFound) as e:
            return jsonify({"ok": False, "error": str(e)}), 409
        except BackendUnavailable as e:
            print(f"[exam] start failed for exam {exam_id} user {user_id}: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503

        saved = answer_store_for(user_id).load(exam_id)
        timer = _timer(attempt["started_at"], exam["completion_time"], now, attempt.get("paused_ms") or 0)

        # Time ran out while the candidate was away: submit what the cache holds.
        if attempt.get("resumed") and should_auto_submit(timer["time_remaining"]):
            return _submit(exam_id, user_id, saved or {}, now, is_auto=True)

        return jsonify({
            "ok": True,
            "exam": {"id": exam["id"], "title": exam["title"]},
            "participation_id": attempt["participation_id"],
            "resumed": bool(attempt.get("resumed")),
            "timer": timer,
            "questions": questions,
            "saved_answers": saved or {},
            "restored": bool(saved),
            "pause": {"enable_pause": bool(exam.get("enable_pause")),
                      "pause_duration_minutes": exam.get("pause_duration_minutes"),
                      "pause_phase": attempt.get("pause_phase")},
        })

    @bp.post("/exams/<exam_id>/answers")
    def exam_save_answers(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        data = request.get_json(silent=True) or {}
        answers = data.get("answers")
        if not isinstance(answers, dict):
            return jsonify({"ok": False, "error": "answers must be an object"}), 400
        answer_store_for(user_id).save(exam_id, answers)
        return jsonify({"ok": True, "saved": len(answers)})

    @bp.get("/exams/<exam_id>/answers")
    def exam_load_answers(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        saved = answer_store_for(user_id).load(exam_id)
        return jsonify({"ok": True, "answers": saved or {}, "restored": saved is not None})

    @bp.post("/exams/<exam_id>/submit")
    def exam_submit(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        data = request.get_json(silent=True) or {}
        is_auto = bool(data.get("auto"))
        answers = data.get("answers")
        if answers is None:
            answers = answer_store_for(user_id).load(exam_id) or {}
        if not isinstance(answers, dict):
            return jsonify({"ok": False, "error": "answers must be an object"}), 400
        return _submit(exam_id, user_id, answers, clock(), is_auto)

    # ---------------------------------- pause ---------------------------------
    def _call(what: str, exam_id: str, fn: Callable[[], Any]):
        """Run a backend call; (value, None) or (None, error response)."""
        try:
            return fn(), None
        except ExamNotFound as e:
            return None, (jsonify({"ok": False, "error": str(e)}), 404)
        except ExamRejected as e:
            return None, (jsonify({"ok": False, "error": str(e)}), 409)
        except BackendUnavailable as e:
            print(f"[exam] {what} failed for exam {exam_id}: {e}")
            return None, (jsonify({"ok": False, "error": "service indisponible"}), 503)

    @bp.post("/exams/<exam_id>/pause")
    def exam_pause_start(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        data = request.get_json(silent=True) or {}
        manual = bool(data.get("manual"))
        result, err = _call("pause", exam_id,
                            lambda: backend.start_pause(exam_id, user_id, clock(), manual_trigger=manual))
        if err:
            return err
        return jsonify({"ok": True, **result})

    @bp.post("/exams/<exam_id>/resume")
    def exam_pause_resume(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        result, err = _call("resume", exam_id, lambda: backend.resume_from_pause(exam_id, user_id, clock()))
        if err:
            return err
        return jsonify({"ok": True, **result})

    @bp.get("/exams/<exam_id>/pause")
    def exam_pause_status(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        result, err = _call("pause status", exam_id, lambda: backend.get_pause_status(exam_id, user_id))
        if err:
            return err
        if result is None:
            return jsonify({"ok": False, "error": "Session non trouvée"}), 404
        return jsonify({"ok": True, **result})

    @bp.get("/exams/<exam_id>/questions/<int:index>/access")
    def exam_question_access(exam_id: str, index: int):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        result, err = _call("question access", exam_id,
                            lambda: backend.validate_question_access(exam_id, user_id, index))
        if err:
            return err
        return jsonify({"ok": True, **result})

    # --------------------------------- results --------------------------------
    @bp.get("/exams/<exam_id>/results")
    def exam_my_results(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        exam, err = _call("results", exam_id, lambda: backend.require_exam(exam_id))
        if err:
            return err
        # the correction stays hidden until the window closes for everyone
        if clock() < exam["end_date"]:
            return jsonify({"ok": False, "error": "Résultats disponibles après la fin de l'examen"}), 403
        result, err = _call("results", exam_id, lambda: backend.get_participant_results(exam_id, user_id))
        if err:
            return err
        if result.get("error"):
            return jsonify({"ok": False, **result}), 404
        return jsonify({"ok": True, **result})

    @bp.get("/exams/<exam_id>/leaderboard")
    def exam_leaderboard(exam_id: str):
        user_id = _user_id()
        if not user_id:
            return _unauthorized()
        exam, err = _call("leaderboard", exam_id, lambda: backend.require_exam(exam_id))
        if err:
            return err
        if clock() < exam["end_date"]:
            return jsonify({"ok": True, "leaderboard": []})
        entries, err = _call("leaderboard", exam_id, lambda: (
            backend.get_leaderboard(exam_id) if backend.has_participated(exam_id, user_id) else []))
        if err:
            return err
        return jsonify({"ok": True, "leaderboard": entries})

    return bp


# -----------------------------------------------------------------------------#
# Fallback helpers
# -----------------------------------------------------------------------------#
def _lookup_via(backend) -> Callable[[str], Any]:
    def _lookup(exam_id: str):
        return backend.get_exam(exam_id)
    return _lookup


__all__ = ["create_exam_blueprint"]
