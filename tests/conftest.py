import json
import re
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

HOUR = 60 * 60 * 1000
DAY = 24 * HOUR
NOW = 1_760_000_000_000  # fixed epoch ms used across tests


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeDB:
    """In-memory stand-in for the Postgres tables, dispatching on SQL fragments."""

    def __init__(self):
        self.exams = {}
        self.questions = {}
        self.participations = {}
        self.answers = {}
        self.cache = {}
        self.users = {}
        self.executed = []
        self.fail = False

    # ---- seeding ---------------------------------------------------------------
    def add_exam(self, exam_id, start_date, end_date, is_active=True, completion_time=3600,
                 question_ids=(), title=None, description=None, enable_pause=False,
                 pause_duration_minutes=None):
        self.exams[exam_id] = {
            "id": exam_id,
            "title": title or f"Examen {exam_id}",
            "description": description,
            "is_active": is_active,
            "start_date": start_date,
            "end_date": end_date,
            "completion_time": completion_time,
            "question_ids": json.dumps(list(question_ids)),
            "enable_pause": enable_pause,
            "pause_duration_minutes": pause_duration_minutes,
        }

    def add_question(self, qid, correct, options=("A", "B", "C", "D"), domain="cardiologie"):
        self.questions[qid] = {
            "id": qid,
            "question": f"Question {qid}",
            "options": list(options),
            "correct_answer": correct,
            "explanation": None,
            "domain": domain,
        }

    def add_user(self, user_id, email, full_name=None):
        self.users[str(user_id)] = {"email": email, "full_name": full_name}

    def participation_for(self, exam_id, user_id):
        for p in self.participations.values():
            if p["exam_id"] == exam_id and p["user_id"] == user_id:
                return p
        return None

    def _check(self):
        if self.fail:
            raise RuntimeError("connection refused")

    @staticmethod
    def _assign(row, sql, params):
        cols = re.findall(r"(\w+) = %s", sql.split("WHERE")[0])
        for col, val in zip(cols, params):
            row[col] = val

    # ---- query surface ------------------------------------------------------------
    def fetch_one(self, sql, params=()):
        self._check()
        if "COUNT(*) AS n FROM public.exam_participations" in sql:
            return {"n": sum(1 for p in self.participations.values() if p["exam_id"] == params[0])}
        if "COUNT(*) AS n FROM public.exam_answers" in sql:
            return {"n": sum(1 for (pid, _), a in self.answers.items()
                             if pid == params[0] and a["is_correct"])}
        if "FROM public.exam_participations" in sql:
            row = self.participation_for(params[0], params[1])
            return dict(row) if row else None
        if "FROM public.exam_answer_cache" in sql:
            value = self.cache.get((params[0], params[1]))
            return {"value": value} if value is not None else None
        if "FROM public.exams" in sql:
            row = self.exams.get(params[0])
            return dict(row) if row else None
        return None

    def fetch_all(self, sql, params=()):
        self._check()
        if "JOIN public.exams e ON e.id = p.exam_id" in sql:
            now, limit = params
            rows = []
            for p in self.participations.values():
                exam = self.exams.get(p["exam_id"])
                if p["status"] == "in_progress" and exam and exam["end_date"] < now:
                    rows.append({"id": p["id"], "exam_id": p["exam_id"],
                                 "question_ids": exam["question_ids"]})
            return rows[:limit]
        if "LEFT JOIN public.users" in sql:
            exam_id, limit = params
            done = [p for p in self.participations.values()
                    if p["exam_id"] == exam_id and p["status"] in ("completed", "auto_submitted")]
            done.sort(key=lambda p: (-p["score"], p["completed_at"]))
            return [{"id": p["id"], "user_id": p["user_id"], "score": p["score"],
                     "completed_at": p["completed_at"],
                     **self.users.get(p["user_id"], {"email": None, "full_name": None})}
                    for p in done[:limit]]
        if "FROM public.exam_answers" in sql:
            return [{"question_id": qid, **a} for (pid, qid), a in self.answers.items()
                    if pid == params[0]]
        if "FROM public.exams" in sql:
            return sorted((dict(r) for r in self.exams.values()),
                          key=lambda r: r["start_date"], reverse=True)
        if "FROM public.questions" in sql:
            rows = list(self.questions.values())
            if "id = ANY" in sql:
                wanted = set(params[0])
                rows = [r for r in rows if r["id"] in wanted]
            elif "domain = %s" in sql:
                rows = [r for r in rows if r["domain"] == params[0]]
            return [dict(r) for r in rows]
        return []

    def execute(self, sql, params=()):
        self._check()
        self.executed.append((sql, params))
        if "CREATE TABLE" in sql:
            return
        if "INSERT INTO public.exam_answer_cache" in sql:
            self.cache[(params[0], params[1])] = params[2]
        elif "DELETE FROM public.exam_answer_cache" in sql:
            self.cache.pop((params[0], params[1]), None)
        elif "DELETE FROM public.exam_answers" in sql:
            pids = {p["id"] for p in self.participations.values() if p["exam_id"] == params[0]}
            self.answers = {k: v for k, v in self.answers.items() if k[0] not in pids}
        elif "DELETE FROM public.exam_participations" in sql:
            self.participations = {k: v for k, v in self.participations.items()
                                   if v["exam_id"] != params[0]}
        elif "DELETE FROM public.exams" in sql:
            self.exams.pop(params[0], None)
        elif "INSERT INTO public.exam_participations" in sql:
            pid, exam_id, user_id, started_at, status, phase = params
            self.participations[pid] = {"id": pid, "exam_id": exam_id, "user_id": user_id,
                                        "started_at": started_at, "status": status,
                                        "score": 0, "completed_at": None,
                                        "pause_phase": phase, "pause_started_at": None,
                                        "pause_ended_at": None, "is_pause_cut_short": None,
                                        "total_pause_duration_ms": 0}
        elif "UPDATE public.exam_participations" in sql:
            self._assign(self.participations[params[-1]], sql, params[:-1])
        elif "INSERT INTO public.exams" in sql:
            (exam_id, title, description, is_active, start_date, end_date,
             completion_time, question_ids, enable_pause, pause_minutes) = params
            self.exams[exam_id] = {"id": exam_id, "title": title, "description": description,
                                   "is_active": is_active, "start_date": start_date,
                                   "end_date": end_date, "completion_time": completion_time,
                                   "question_ids": question_ids, "enable_pause": enable_pause,
                                   "pause_duration_minutes": pause_minutes}
        elif "UPDATE public.exams SET is_active = FALSE" in sql:
            self.exams[params[0]]["is_active"] = False
        elif "UPDATE public.exams SET is_active = TRUE" in sql:
            self.exams[params[0]]["is_active"] = True
        elif "UPDATE public.exams SET" in sql:
            self._assign(self.exams[params[-1]], sql, params[:-1])

    def execute_returning(self, sql, params=()):
        self._check()
        self.executed.append((sql, params))
        if "UPDATE public.exam_participations" in sql and "status = 'in_progress'" in sql:
            status, score, completed_at, pid = params[:4]
            p = self.participations.get(pid)
            if not p or p["status"] != "in_progress":
                return []
            p.update(status=status, score=score, completed_at=completed_at)
            if len(params) > 4:
                for a in json.loads(params[4]):
                    self.answers[(pid, a["question_id"])] = {
                        "selected_answer": a["selected_answer"], "is_correct": a["is_correct"]}
            return [{"id": pid}]
        return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return FakeDB()
