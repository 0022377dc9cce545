"""
Mid-exam pause: one mandatory break at the halfway question.

    None/before_pause --start--> during_pause --resume--> after_pause

Questions from the midpoint on stay locked until the break is over, and
everything is locked during it. Pause time does not count against the timer.
"""

from typing import Any, Dict, Iterable, List, Optional

BEFORE_PAUSE = "before_pause"
DURING_PAUSE = "during_pause"
AFTER_PAUSE = "after_pause"

DEFAULT_PAUSE_MINUTES = 15
MAX_PAUSE_MINUTES = 60
# auto-trigger may fire this early, to absorb client clock drift
AUTO_PAUSE_TOLERANCE_MS = 10_000

_TRANSITIONS = {
    BEFORE_PAUSE: (DURING_PAUSE,),
    DURING_PAUSE: (AFTER_PAUSE,),
    AFTER_PAUSE: (),
}

_TRANSITION_ERRORS = {
    DURING_PAUSE: "La pause ne peut être démarrée qu'une seule fois",
    AFTER_PAUSE: "Vous n'êtes pas actuellement en pause",
}


class PauseError(ValueError):
    pass


def pause_minutes(raw: Any) -> int:
    try:
        minutes = int(raw) if raw not in (None, "") else DEFAULT_PAUSE_MINUTES
    except (TypeError, ValueError):
        minutes = DEFAULT_PAUSE_MINUTES
    return max(1, min(minutes, MAX_PAUSE_MINUTES))


def initial_phase(enable_pause: bool) -> Optional[str]:
    return BEFORE_PAUSE if enable_pause else None


def validate_transition(current: Optional[str], target: str) -> None:
    if target not in _TRANSITIONS.get(current or "", ()):
        raise PauseError(_TRANSITION_ERRORS.get(target) or f"Transition invalide: {current} -> {target}")


def midpoint(total_questions: int) -> int:
    return total_questions // 2


def can_auto_pause(elapsed_ms: int, completion_time_seconds: int) -> bool:
    half = completion_time_seconds * 1000 / 2
    return elapsed_ms >= half - AUTO_PAUSE_TOLERANCE_MS


def paused_ms(participation: Dict[str, Any], now: int) -> int:
    """Finished pause time, plus the running break if one is in progress."""
    total = int(participation.get("total_pause_duration_ms") or 0)
    if participation.get("pause_phase") == DURING_PAUSE and participation.get("pause_started_at"):
        total += max(0, int(now) - int(participation["pause_started_at"]))
    return total


def question_access(enable_pause: bool, phase: Optional[str], index: int, total: int) -> Dict[str, Any]:
    if not enable_pause:
        return {"allowed": True}
    if phase == BEFORE_PAUSE and index >= midpoint(total):
        return {"allowed": False, "reason": "Cette question sera déverrouillée après la pause obligatoire"}
    if phase == DURING_PAUSE:
        return {"allowed": False, "reason": "Questions verrouillées pendant la pause"}
    return {"allowed": True}


def check_answers(phase: Optional[str], question_ids: List[str], answered: Iterable[str]) -> None:
    """Raise PauseError when an answer targets a question the phase keeps locked."""
    index_of = {qid: i for i, qid in enumerate(question_ids)}
    half = midpoint(len(question_ids))
    for qid in answered:
        i = index_of.get(str(qid))
        if i is None:
            continue
        if phase == DURING_PAUSE:
            raise PauseError("Soumission non autorisée pendant la pause. Veuillez reprendre l'examen.")
        if phase == BEFORE_PAUSE and i >= half:
            raise PauseError(
                f"Tentative frauduleuse détectée : réponse soumise à une question verrouillée (Q{i + 1})")
