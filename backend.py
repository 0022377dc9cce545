"""
Exam / question / attempt records on Postgres.

Built from the host's fetch_one / fetch_all / execute / execute_returning
callables so it can be driven by the psycopg pool in main.py or by a fake in
tests.
"""

import json
import uuid
from typing import Any, Callable, Dict, List, Optional

import exam_pause
from exam_status import ACTIVE, resolve_status
from exam_timer import calculate_score_percentage, is_within_grace_period

PARTICIPATION_IN_PROGRESS = "in_progress"
PARTICIPATION_COMPLETED = "completed"
PARTICIPATION_AUTO_SUBMITTED = "auto_submitted"
_FINISHED = (PARTICIPATION_COMPLETED, PARTICIPATION_AUTO_SUBMITTED)

EXAM_FIELDS = ("title", "description", "is_active", "start_date", "end_date",
               "completion_time", "question_ids", "enable_pause", "pause_duration_minutes")

CLOSE_BATCH = 500
LEADERBOARD_LIMIT = 500


class BackendError(Exception):
    pass


class ExamNotFound(BackendError):
    pass


class ExamRejected(BackendError):
    """Definitive refusal: retrying the same request cannot succeed."""


class BackendUnavailable(BackendError):
    """Infrastructure failure: the same request may succeed later."""


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS public.exams (
        id                     TEXT PRIMARY KEY,
        title                  TEXT NOT NULL,
        description            TEXT,
        is_active              BOOLEAN NOT NULL DEFAULT TRUE,
        start_date             BIGINT NOT NULL,
        end_date               BIGINT NOT NULL,
        completion_time        INTEGER NOT NULL,
        question_ids           JSONB NOT NULL DEFAULT '[]'::jsonb,
        enable_pause           BOOLEAN NOT NULL DEFAULT FALSE,
        pause_duration_minutes INTEGER,
        created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (end_date > start_date)
    );
    ALTER TABLE public.exams ADD COLUMN IF NOT EXISTS enable_pause BOOLEAN NOT NULL DEFAULT FALSE;
    ALTER TABLE public.exams ADD COLUMN IF NOT EXISTS pause_duration_minutes INTEGER;
    CREATE TABLE IF NOT EXISTS public.questions (
        id               TEXT PRIMARY KEY,
        question         TEXT NOT NULL,
        options          JSONB NOT NULL DEFAULT '[]'::jsonb,
        correct_answer   TEXT NOT NULL,
        explanation      TEXT,
        domain           TEXT,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS public.exam_participations (
        id                      TEXT PRIMARY KEY,
        exam_id                 TEXT NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
        user_id                 TEXT NOT NULL,
        started_at              BIGINT NOT NULL,
        status                  TEXT NOT NULL,
        score                   INTEGER NOT NULL DEFAULT 0,
        completed_at            BIGINT,
        pause_phase             TEXT,
        pause_started_at        BIGINT,
        pause_ended_at          BIGINT,
        is_pause_cut_short      BOOLEAN,
        total_pause_duration_ms BIGINT NOT NULL DEFAULT 0,
        UNIQUE (exam_id, user_id)
    );
    ALTER TABLE public.exam_participations ADD COLUMN IF NOT EXISTS pause_phase TEXT;
    ALTER TABLE public.exam_participations ADD COLUMN IF NOT EXISTS pause_started_at BIGINT;
    ALTER TABLE public.exam_participations ADD COLUMN IF NOT EXISTS pause_ended_at BIGINT;
    ALTER TABLE public.exam_participations ADD COLUMN IF NOT EXISTS is_pause_cut_short BOOLEAN;
    ALTER TABLE public.exam_participations
        ADD COLUMN IF NOT EXISTS total_pause_duration_ms BIGINT NOT NULL DEFAULT 0;
    CREATE INDEX IF NOT EXISTS exam_participations_status_idx
        ON public.exam_participations (status);
    CREATE TABLE IF NOT EXISTS public.exam_answers (
        participation_id TEXT NOT NULL REFERENCES public.exam_participations(id) ON DELETE CASCADE,
        question_id      TEXT NOT NULL,
        selected_answer  TEXT NOT NULL,
        is_correct       BOOLEAN NOT NULL,
        PRIMARY KEY (participation_id, question_id)
    );
"""

_EXAM_COLUMNS = """id, title, description, is_active, start_date, end_date,
                   completion_time, question_ids, enable_pause, pause_duration_minutes"""

_PARTICIPATION_COLUMNS = """id, exam_id, user_id, started_at, status, score, completed_at,
                   pause_phase, pause_started_at, pause_ended_at, is_pause_cut_short,
                   total_pause_duration_ms"""

# Closes the attempt only if it is still in progress; the answers ride in the
# same statement so they are written only by the submit that won the claim.
_CLAIM_WITH_ANSWERS_SQL = """
    WITH claimed AS (
        UPDATE public.exam_participations
           SET status = %s, score = %s, completed_at = %s
         WHERE id = %s AND status = 'in_progress'
     RETURNING id
    ), written AS (
        INSERT INTO public.exam_answers (participation_id, question_id, selected_answer, is_correct)
        SELECT c.id, a.question_id, a.selected_answer, a.is_correct
          FROM claimed c
         CROSS JOIN jsonb_to_recordset(%s::jsonb)
               AS a(question_id TEXT, selected_answer TEXT, is_correct BOOLEAN)
        ON CONFLICT (participation_id, question_id)
        DO UPDATE SET selected_answer = EXCLUDED.selected_answer, is_correct = EXCLUDED.is_correct
    )
    SELECT id FROM claimed;
"""

_CLAIM_SQL = """
    UPDATE public.exam_participations
       SET status = %s, score = %s, completed_at = %s
     WHERE id = %s AND status = 'in_progress'
 RETURNING id;
"""


def _json_list(raw: Any) -> List[Any]:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    try:
        val = json.loads(raw)
    except Exception:
        return []
    return val if isinstance(val, list) else []


def exam_from_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    enable_pause = bool(row.get("enable_pause"))
    return {
        "id": str(row["id"]),
        "title": row.get("title") or "",
        "description": row.get("description"),
        "is_active": bool(row.get("is_active")),
        "start_date": int(row["start_date"]),
        "end_date": int(row["end_date"]),
        "completion_time": int(row.get("completion_time") or 0),
        "question_ids": [str(q) for q in _json_list(row.get("question_ids"))],
        "enable_pause": enable_pause,
        "pause_duration_minutes": exam_pause.pause_minutes(row.get("pause_duration_minutes")) if enable_pause else None,
    }


def _question_from_row(row: Dict[str, Any], with_answer: bool) -> Dict[str, Any]:
    q = {
        "id": str(row["id"]),
        "question": row.get("question") or "",
        "options": _json_list(row.get("options")),
        "domain": row.get("domain"),
    }
    if with_answer:
        q["correct_answer"] = row.get("correct_answer")
        q["explanation"] = row.get("explanation")
    return q


def _exam_summary(exam: Dict[str, Any]) -> Dict[str, Any]:
    return {k: exam[k] for k in ("id", "title", "description", "start_date", "end_date", "completion_time")}


def _pause_fields(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "pause_phase": p.get("pause_phase"),
        "pause_started_at": p.get("pause_started_at"),
        "pause_ended_at": p.get("pause_ended_at"),
        "is_pause_cut_short": p.get("is_pause_cut_short"),
        "total_pause_duration_ms": int(p.get("total_pause_duration_ms") or 0),
    }


class ExamBackend:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute: Callable,
                 execute_returning: Callable):
        self._fetch_one = fetch_one
        self._fetch_all = fetch_all
        self._execute = execute
        self._execute_returning = execute_returning

    # ------------------------------- db access --------------------------------
    def _one(self, sql: str, params=()):
        try:
            return self._fetch_one(sql, params)
        except Exception as e:
            raise BackendUnavailable(str(e)) from e

    def _all(self, sql: str, params=()):
        try:
            return self._fetch_all(sql, params) or []
        except Exception as e:
            raise BackendUnavailable(str(e)) from e

    def _run(self, sql: str, params=()):
        try:
            self._execute(sql, params)
        except Exception as e:
            raise BackendUnavailable(str(e)) from e

    def _returning(self, sql: str, params=()):
        try:
            return self._execute_returning(sql, params) or []
        except Exception as e:
            raise BackendUnavailable(str(e)) from e

    def ensure_schema(self):
        self._run(SCHEMA_SQL, ())

    # --------------------------------- exams ----------------------------------
    def get_exam(self, exam_id: str) -> Optional[Dict[str, Any]]:
        row = self._one(f"""
            SELECT {_EXAM_COLUMNS}
              FROM public.exams
             WHERE id = %s;
        """, (str(exam_id),))
        return exam_from_row(row)

    def require_exam(self, exam_id: str) -> Dict[str, Any]:
        exam = self.get_exam(exam_id)
        if not exam:
            raise ExamNotFound("Examen non trouvé")
        return exam

    def list_exams(self) -> List[Dict[str, Any]]:
        rows = self._all(f"""
            SELECT {_EXAM_COLUMNS}
              FROM public.exams
             ORDER BY start_date DESC;
        """, ())
        return [exam_from_row(r) for r in rows]

    def create_exam(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        data = self._clean_fields(fields)
        missing = [k for k in ("title", "start_date", "end_date", "completion_time") if data.get(k) in (None, "")]
        if missing:
            raise ExamRejected(f"Champs requis manquants : {', '.join(missing)}")
        self._check_window(data["start_date"], data["end_date"])
        enable_pause = data.get("enable_pause", False)
        exam_id = uuid.uuid4().hex
        self._run("""
            INSERT INTO public.exams
                (id, title, description, is_active, start_date, end_date, completion_time,
                 question_ids, enable_pause, pause_duration_minutes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
        """, (exam_id, data["title"], data.get("description"), data.get("is_active", True),
              data["start_date"], data["end_date"], data["completion_time"],
              json.dumps(data.get("question_ids") or []), enable_pause,
              exam_pause.pause_minutes(data.get("pause_duration_minutes")) if enable_pause else None))
        return self.require_exam(exam_id)

    def update_exam(self, exam_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        exam = self.require_exam(exam_id)
        data = self._clean_fields(fields)
        if not data:
            return exam
        self._check_window(data.get("start_date", exam["start_date"]),
                           data.get("end_date", exam["end_date"]))
        cols, params = [], []
        for k in EXAM_FIELDS:
            if k in data:
                cols.append(f"{k} = %s")
                params.append(json.dumps(data[k]) if k == "question_ids" else data[k])
        params.append(str(exam_id))
        self._run(f"UPDATE public.exams SET {', '.join(cols)} WHERE id = %s;", tuple(params))
        return self.require_exam(exam_id)

    def deactivate_exam(self, exam_id: str) -> Dict[str, Any]:
        self.require_exam(exam_id)
        self._run("UPDATE public.exams SET is_active = FALSE WHERE id = %s;", (str(exam_id),))
        return {"success": True}

    def reactivate_exam(self, exam_id: str) -> Dict[str, Any]:
        self.require_exam(exam_id)
        self._run("UPDATE public.exams SET is_active = TRUE WHERE id = %s;", (str(exam_id),))
        return {"success": True}

    def delete_exam(self, exam_id: str) -> Dict[str, Any]:
        self.require_exam(exam_id)
        row = self._one("SELECT COUNT(*) AS n FROM public.exam_participations WHERE exam_id = %s;",
                        (str(exam_id),))
        self._run("""
            DELETE FROM public.exam_answers
             WHERE participation_id IN (SELECT id FROM public.exam_participations WHERE exam_id = %s);
        """, (str(exam_id),))
        self._run("DELETE FROM public.exam_participations WHERE exam_id = %s;", (str(exam_id),))
        self._run("DELETE FROM public.exams WHERE id = %s;", (str(exam_id),))
        return {"success": True, "deleted_participations": int((row or {}).get("n") or 0)}

    @staticmethod
    def _clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k in EXAM_FIELDS:
            if k not in (fields or {}):
                continue
            v = fields[k]
            if k in ("start_date", "end_date", "completion_time"):
                try:
                    v = int(v)
                except (TypeError, ValueError):
                    raise ExamRejected(f"Valeur invalide pour {k}") from None
            elif k in ("is_active", "enable_pause"):
                v = bool(v)
            elif k == "pause_duration_minutes":
                v = exam_pause.pause_minutes(v)
            elif k == "question_ids":
                v = [str(q) for q in (v or [])]
            elif k == "title":
                v = str(v or "").strip()
            out[k] = v
        return out

    @staticmethod
    def _check_window(start_date: int, end_date: int):
        if end_date <= start_date:
            raise ExamRejected("La date de fin doit être postérieure à la date de début")

    # ------------------------------- questions --------------------------------
    def list_questions(self, filter: Optional[Dict[str, Any]] = None,
                       with_answers: bool = False) -> List[Dict[str, Any]]:
        """filter: {'exam_id': ...} (exam order), {'ids': [...]}, {'domain': ...} or None."""
        f = filter or {}
        if f.get("exam_id"):
            exam = self.require_exam(f["exam_id"])
            return self._questions_by_ids(exam["question_ids"], with_answers)
        if f.get("ids") is not None:
            return self._questions_by_ids([str(i) for i in f["ids"]], with_answers)
        if f.get("domain"):
            rows = self._all("""
                SELECT id, question, options, correct_answer, explanation, domain
                  FROM public.questions
                 WHERE domain = %s
                 ORDER BY created_at;
            """, (f["domain"],))
        else:
            rows = self._all("""
                SELECT id, question, options, correct_answer, explanation, domain
                  FROM public.questions
                 ORDER BY created_at;
            """, ())
        return [_question_from_row(r, with_answers) for r in rows]

    def get_exam_with_questions(self, exam_id: str, with_answers: bool = False) -> Dict[str, Any]:
        exam = self.require_exam(exam_id)
        return {**exam, "questions": self._questions_by_ids(exam["question_ids"], with_answers)}

    def _questions_by_ids(self, ids: List[str], with_answers: bool) -> List[Dict[str, Any]]:
        if not ids:
            return []
        rows = self._all("""
            SELECT id, question, options, correct_answer, explanation, domain
              FROM public.questions
             WHERE id = ANY(%s);
        """, (list(ids),))
        by_id = {str(r["id"]): r for r in rows}
        return [_question_from_row(by_id[i], with_answers) for i in ids if i in by_id]

    # -------------------------------- attempts --------------------------------
    def _participation(self, exam_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self._one(f"""
            SELECT {_PARTICIPATION_COLUMNS}
              FROM public.exam_participations
             WHERE exam_id = %s AND user_id = %s;
        """, (str(exam_id), str(user_id)))

    def _require_running(self, exam_id: str, user_id: str) -> Dict[str, Any]:
        participation = self._participation(exam_id, user_id)
        if not participation:
            raise ExamRejected("Session d'examen non trouvée")
        if participation.get("status") != PARTICIPATION_IN_PROGRESS:
            raise ExamRejected("L'examen n'est pas en cours")
        return participation

    def start_attempt(self, exam_id: str, user_id: str, now: int) -> Dict[str, Any]:
        """Create the participation, or resume the one in progress."""
        exam = self.require_exam(exam_id)
        if resolve_status(exam, now) != ACTIVE:
            raise ExamRejected("L'examen n'est pas disponible à cette période")

        existing = self._participation(exam_id, user_id)
        if existing:
            if existing.get("status") in _FINISHED:
                raise ExamRejected("Vous avez déjà passé cet examen")
            if existing.get("status") == PARTICIPATION_IN_PROGRESS:
                return {"participation_id": str(existing["id"]),
                        "started_at": int(existing["started_at"]),
                        "resumed": True,
                        "paused_ms": exam_pause.paused_ms(existing, now),
                        **_pause_fields(existing)}

        participation_id = uuid.uuid4().hex
        phase = exam_pause.initial_phase(exam["enable_pause"])
        self._run("""
            INSERT INTO public.exam_participations
                (id, exam_id, user_id, started_at, status, score, pause_phase)
            VALUES (%s, %s, %s, %s, %s, 0, %s);
        """, (participation_id, str(exam_id), str(user_id), int(now), PARTICIPATION_IN_PROGRESS, phase))
        return {"participation_id": participation_id, "started_at": int(now), "resumed": False,
                "paused_ms": 0, **_pause_fields({"pause_phase": phase})}

    def submit_attempt(self, exam_id: str, user_id: str, answers: Dict[str, Any],
                       now: int, is_auto_submit: bool = False) -> Dict[str, Any]:
        exam = self.require_exam(exam_id)
        if resolve_status(exam, now) != ACTIVE:
            raise ExamRejected("L'examen n'est pas disponible à cette période")

        participation = self._participation(exam_id, user_id)
        if not participation:
            raise ExamRejected("Session d'examen non trouvée. Vous devez d'abord démarrer l'examen.")
        if participation.get("status") in _FINISHED:
            raise ExamRejected("Vous avez déjà passé cet examen")
        if participation.get("status") != PARTICIPATION_IN_PROGRESS:
            raise ExamRejected("Cette session d'examen n'est plus active")

        elapsed = int(now) - int(participation["started_at"]) - exam_pause.paused_ms(participation, now)
        max_time_ms = exam["completion_time"] * 1000
        if not is_within_grace_period(elapsed, max_time_ms, is_auto_submit):
            if not is_auto_submit:
                raise ExamRejected("Temps écoulé ! La soumission n'a pas pu être traitée à temps.")
            # abandoned session: accepted, but worth noting
            minutes_late = round((elapsed - max_time_ms) / 60000)
            print(f"[exam] late auto-submit accepted: {minutes_late} min over for exam {exam_id}")

        if exam["enable_pause"] and participation.get("pause_phase"):
            try:
                exam_pause.check_answers(participation["pause_phase"], exam["question_ids"],
                                         [q for q, v in (answers or {}).items() if v is not None])
            except exam_pause.PauseError as e:
                raise ExamRejected(str(e)) from None

        questions = self._questions_by_ids(exam["question_ids"], with_answers=True)
        correct_by_id = {q["id"]: q.get("correct_answer") for q in questions}
        graded = []
        for qid, selected in (answers or {}).items():
            qid = str(qid)
            if qid not in correct_by_id or selected is None:
                continue
            graded.append({"question_id": qid, "selected_answer": str(selected),
                           "is_correct": correct_by_id[qid] == str(selected)})
        correct_count = sum(1 for a in graded if a["is_correct"])
        score = calculate_score_percentage(correct_count, len(exam["question_ids"]))

        status = PARTICIPATION_AUTO_SUBMITTED if is_auto_submit else PARTICIPATION_COMPLETED
        claimed = self._returning(_CLAIM_WITH_ANSWERS_SQL,
                                  (status, score, int(now), str(participation["id"]), json.dumps(graded)))
        if not claimed:
            raise ExamRejected("Vous avez déjà passé cet examen")

        return {"score": score, "correct": correct_count,
                "total": len(exam["question_ids"]), "status": status}

    def close_expired_participations(self, now: int, limit: int = CLOSE_BATCH) -> Dict[str, int]:
        """Close attempts still in progress on exams whose window has ended."""
        rows = self._all("""
            SELECT p.id, p.exam_id, e.question_ids
              FROM public.exam_participations p
              JOIN public.exams e ON e.id = p.exam_id
             WHERE p.status = 'in_progress' AND e.end_date < %s
             LIMIT %s;
        """, (int(now), int(limit)))
        closed = 0
        for row in rows:
            hit = self._one("""
                SELECT COUNT(*) AS n FROM public.exam_answers
                 WHERE participation_id = %s AND is_correct;
            """, (str(row["id"]),))
            total = len(_json_list(row.get("question_ids")))
            score = calculate_score_percentage(int((hit or {}).get("n") or 0), total)
            if self._returning(_CLAIM_SQL, (PARTICIPATION_AUTO_SUBMITTED, score, int(now), str(row["id"]))):
                closed += 1
        if closed:
            print(f"[cron] closed {closed} expired participation(s) of {len(rows)} in progress")
        return {"closed": closed, "processed": len(rows)}

    # --------------------------------- pause ----------------------------------
    def start_pause(self, exam_id: str, user_id: str, now: int, manual_trigger: bool = False) -> Dict[str, Any]:
        exam = self.require_exam(exam_id)
        if not exam["enable_pause"]:
            raise ExamRejected("La pause n'est pas activée pour cet examen")
        participation = self._require_running(exam_id, user_id)
        try:
            exam_pause.validate_transition(participation.get("pause_phase"), exam_pause.DURING_PAUSE)
        except exam_pause.PauseError as e:
            raise ExamRejected(str(e)) from None
        if not manual_trigger:
            elapsed = int(now) - int(participation["started_at"])
            if not exam_pause.can_auto_pause(elapsed, exam["completion_time"]):
                raise ExamRejected(
                    "La pause automatique ne peut être déclenchée qu'à la mi-parcours du chronomètre")
        self._run("""
            UPDATE public.exam_participations
               SET pause_phase = %s, pause_started_at = %s
             WHERE id = %s;
        """, (exam_pause.DURING_PAUSE, int(now), str(participation["id"])))
        return {"pause_started_at": int(now), "pause_duration_minutes": exam["pause_duration_minutes"]}

    def resume_from_pause(self, exam_id: str, user_id: str, now: int) -> Dict[str, Any]:
        exam = self.require_exam(exam_id)
        participation = self._require_running(exam_id, user_id)
        try:
            exam_pause.validate_transition(participation.get("pause_phase"), exam_pause.AFTER_PAUSE)
        except exam_pause.PauseError as e:
            raise ExamRejected(str(e)) from None
        started = int(participation.get("pause_started_at") or now)
        planned_end = started + exam_pause.pause_minutes(exam["pause_duration_minutes"]) * 60_000
        duration = int(now) - started
        cut_short = int(now) < planned_end
        self._run("""
            UPDATE public.exam_participations
               SET pause_phase = %s, pause_ended_at = %s, is_pause_cut_short = %s,
                   total_pause_duration_ms = %s
             WHERE id = %s;
        """, (exam_pause.AFTER_PAUSE, int(now), cut_short, duration, str(participation["id"])))
        return {"pause_ended_at": int(now), "is_pause_cut_short": cut_short,
                "total_pause_duration_ms": duration}

    def get_pause_status(self, exam_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        exam = self.get_exam(exam_id)
        if not exam:
            return None
        participation = self._participation(exam_id, user_id)
        if not participation:
            return None
        total = len(exam["question_ids"])
        half = exam_pause.midpoint(total)
        return {
            "enable_pause": exam["enable_pause"],
            "pause_duration_minutes": exam_pause.pause_minutes(exam["pause_duration_minutes"]),
            **_pause_fields(participation),
            "total_questions": total,
            "midpoint": half,
            "questions_before_pause": half,
            "questions_after_pause": total - half,
        }

    def validate_question_access(self, exam_id: str, user_id: str, question_index: int) -> Dict[str, Any]:
        exam = self.get_exam(exam_id)
        if not exam:
            return {"allowed": False, "reason": "Examen non trouvé"}
        if not exam["enable_pause"]:
            return {"allowed": True}
        participation = self._participation(exam_id, user_id)
        if not participation:
            return {"allowed": False, "reason": "Session non trouvée"}
        return exam_pause.question_access(True, participation.get("pause_phase"),
                                          int(question_index), len(exam["question_ids"]))

    # -------------------------------- results ---------------------------------
    def get_participant_results(self, exam_id: str, user_id: str) -> Dict[str, Any]:
        """Scored attempt with answers and corrected questions, or an error marker."""
        exam = self.require_exam(exam_id)
        participation = self._participation(exam_id, user_id)
        if not participation:
            return {"error": "NO_PARTICIPATION",
                    "message": "Ce participant n'a pas encore commencé cet examen",
                    "exam": _exam_summary(exam)}
        if participation.get("status") not in _FINISHED:
            return {"error": "NOT_COMPLETED",
                    "message": "Ce participant n'a pas encore terminé l'examen",
                    "status": participation.get("status"),
                    "exam": _exam_summary(exam)}
        answers = self._all("""
            SELECT question_id, selected_answer, is_correct
              FROM public.exam_answers
             WHERE participation_id = %s;
        """, (str(participation["id"]),))
        return {
            "exam": _exam_summary(exam),
            "participant": {
                "participation_id": str(participation["id"]),
                "user_id": str(participation["user_id"]),
                "status": participation["status"],
                "score": int(participation.get("score") or 0),
                "started_at": participation.get("started_at"),
                "completed_at": participation.get("completed_at"),
                "answers": [{"question_id": str(a["question_id"]),
                             "selected_answer": a["selected_answer"],
                             "is_correct": bool(a["is_correct"])} for a in answers],
            },
            "questions": self._questions_by_ids(exam["question_ids"], with_answers=True),
        }

    def has_participated(self, exam_id: str, user_id: str) -> bool:
        return self._participation(exam_id, user_id) is not None

    def get_leaderboard(self, exam_id: str, limit: int = LEADERBOARD_LIMIT) -> List[Dict[str, Any]]:
        """Finished attempts, best score first; ties go to the earlier finisher."""
        self.require_exam(exam_id)
        rows = self._all("""
            SELECT p.id, p.user_id, p.score, p.completed_at, u.email, u.full_name
              FROM public.exam_participations p
              LEFT JOIN public.users u ON u.id::text = p.user_id
             WHERE p.exam_id = %s AND p.status IN ('completed', 'auto_submitted')
             ORDER BY p.score DESC, p.completed_at ASC
             LIMIT %s;
        """, (str(exam_id), int(limit)))
        return [{
            "rank": i + 1,
            "participation_id": str(r["id"]),
            "user_id": str(r["user_id"]),
            "name": r.get("full_name"),
            "email": r.get("email"),
            "score": int(r.get("score") or 0),
            "completed_at": r.get("completed_at"),
        } for i, r in enumerate(rows)]


__all__ = [
    "BackendError", "ExamNotFound", "ExamRejected", "BackendUnavailable",
    "ExamBackend", "exam_from_row", "SCHEMA_SQL",
]
