import os
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, abort, g, jsonify, request

from backend import BackendUnavailable, ExamNotFound, ExamRejected
from exam_status import ALL_STATUSES, filter_exams, now_ms, parse_statuses, resolve_status, status_label
from mutation_guard import ACTIONS, CONFIRMING, MutationGuard

# =========================
# Admin gating / constants
# =========================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in ("1", "true", "yes")
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}

# Unanswered confirmations are dropped after this long
PENDING_TTL_MS = int(os.getenv("ADMIN_CONFIRM_TTL_SEC") or 900) * 1000


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Admin blueprint for exam management:
      • Exam list with status filter + search, per-status counts
      • Exam creation
      • Edit / deactivate / reactivate / delete behind a confirmation gate
        whenever the exam is currently running
    deps:
      - backend (get_exam, list_exams, create_exam, update_exam,
                 deactivate_exam, reactivate_exam, delete_exam)
      - clock() -> epoch ms                     (optional)
      - pending: dict shared by every mount of the console (optional)
    """
    backend = deps["backend"]
    clock: Callable[[], int] = deps.get("clock") or now_ms

    # Mount at /<BASE_PATH>/admin or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    # token -> (guard, admin email, created_at)
    _pending: Dict[str, Tuple[MutationGuard, str, int]] = deps.get("pending")
    if _pending is None:
        _pending = {}

    def _admin_email() -> str:
        return (getattr(g, "user_email", None) or "").lower().strip()

    def require_admin():
        if getattr(g, "is_admin", False):
            return
        email = _admin_email()
        if email and ADMIN_EMAILS and email in ADMIN_EMAILS:
            return
        abort(403)

    def _prune_pending(now: int):
        for token, (_guard, _email, created) in list(_pending.items()):
            if now - created > PENDING_TTL_MS:
                _pending.pop(token, None)

    def _mutation_for(action: str, exam_id: str, fields: Optional[Dict[str, Any]]):
        if action == "edit":
            return lambda: backend.update_exam(exam_id, fields or {})
        if action == "deactivate":
            return lambda: backend.deactivate_exam(exam_id)
        if action == "reactivate":
            return lambda: backend.reactivate_exam(exam_id)
        return lambda: backend.delete_exam(exam_id)

    def _result_response(guard: MutationGuard):
        res = guard.result
        body = {"state": "applied", "action": guard.action, "exam_id": guard.exam["id"], **res.to_dict()}
        return jsonify(body), (200 if res.ok else 409)

    @bp.get("/whoami")
    def admin_whoami():
        return jsonify({
            "auth_required": AUTH_REQUIRED,
            "current_user_email": getattr(g, "user_email", None),
            "is_admin": bool(getattr(g, "is_admin", False)),
            "admin_emails_enforced": bool(ADMIN_EMAILS),
        })

    # ---------- Exam list ----------
    @bp.get("/exams")
    def admin_exams():
        require_admin()
        now = clock()
        statuses = parse_statuses(request.args.get("status"))
        query = request.args.get("q")
        try:
            exams = backend.list_exams()
        except BackendUnavailable as e:
            print(f"[admin] exam list failed: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503

        counts = {s: 0 for s in ALL_STATUSES}
        for ex in exams:
            counts[resolve_status(ex, now)] += 1

        items = []
        for ex in filter_exams(exams, statuses, query, now):
            st = resolve_status(ex, now)
            items.append({**ex, "status": st, "label": status_label(st)})
        return jsonify({"ok": True, "exams": items, "counts": counts, "total": len(exams)})

    @bp.post("/exams")
    def admin_create_exam():
        require_admin()
        data = request.get_json(silent=True) or {}
        try:
            exam = backend.create_exam(data)
        except ExamRejected as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        except BackendUnavailable as e:
            print(f"[admin] exam create failed: {e}")
            return jsonify({"ok": False, "error": "Erreur lors de la création"}), 503
        return jsonify({"ok": True, "exam": exam}), 201

    # ---------- Guarded mutations ----------
    @bp.post("/exams/<exam_id>/<action>")
    def admin_exam_action(exam_id: str, action: str):
        require_admin()
        if action not in ACTIONS:
            abort(404)
        data = request.get_json(silent=True) or {}
        fields = data.get("fields")
        if action == "edit" and not isinstance(fields, dict):
            return jsonify({"ok": False, "error": "fields must be an object"}), 400

        try:
            exam = backend.get_exam(exam_id)
        except BackendUnavailable as e:
            print(f"[admin] exam lookup failed for {exam_id}: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        if not exam:
            return jsonify({"ok": False, "error": "Examen non trouvé"}), 404

        now = clock()
        _prune_pending(now)
        guard = MutationGuard(action, exam, _mutation_for(action, exam_id, fields))
        guard.request(now)
        if guard.state == CONFIRMING:
            token = uuid.uuid4().hex
            _pending[token] = (guard, _admin_email(), now)
            return jsonify({
                "ok": True,
                "state": CONFIRMING,
                "action": action,
                "exam_id": exam["id"],
                "token": token,
                "warning": guard.warning,
            }), 202
        return _result_response(guard)

    @bp.post("/confirmations/<token>")
    def admin_confirm(token: str):
        require_admin()
        _prune_pending(clock())
        entry = _pending.get(token)
        # a pending change belongs to the admin who asked for it
        if not entry or entry[1] != _admin_email():
            return jsonify({"ok": False, "error": "confirmation inconnue ou expirée"}), 404
        _pending.pop(token, None)
        guard, _email, _created = entry
        data = request.get_json(silent=True) or {}
        if not data.get("confirm"):
            guard.cancel()
            return jsonify({"ok": True, "state": "cancelled", "action": guard.action,
                            "exam_id": guard.exam["id"]})
        guard.confirm()
        return _result_response(guard)

    # ---------- Results ----------
    @bp.get("/exams/<exam_id>/leaderboard")
    def admin_leaderboard(exam_id: str):
        require_admin()
        try:
            entries = backend.get_leaderboard(exam_id)
        except ExamNotFound as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        except BackendUnavailable as e:
            print(f"[admin] leaderboard failed for {exam_id}: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        return jsonify({"ok": True, "leaderboard": entries})

    @bp.get("/exams/<exam_id>/participants/<user_id>/results")
    def admin_participant_results(exam_id: str, user_id: str):
        require_admin()
        try:
            result = backend.get_participant_results(exam_id, user_id)
        except ExamNotFound as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        except BackendUnavailable as e:
            print(f"[admin] results failed for {exam_id}/{user_id}: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        # admins also get the "not started / not finished" markers
        return jsonify({"ok": not result.get("error"), **result})

    # ---------- Maintenance ----------
    @bp.post("/maintenance/close-expired")
    def admin_close_expired():
        require_admin()
        try:
            summary = backend.close_expired_participations(clock())
        except BackendUnavailable as e:
            print(f"[admin] close-expired failed: {e}")
            return jsonify({"ok": False, "error": "service indisponible"}), 503
        return jsonify({"ok": True, **summary})

    return bp
