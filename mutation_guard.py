"""
Confirmation gate in front of admin exam mutations.

    idle --request(active)--> confirming --confirm--> applying --> idle
    idle --request(other)---> applying --> idle
    confirming --cancel--> idle

The backend mutation runs exactly once per entry into 'applying' and never
while 'confirming'. Status is not re-checked after confirmation; a conflict
is reported by the backend as an ordinary failure.
"""

from typing import Any, Callable, Dict, List, Optional

from exam_status import ACTIVE, resolve_status

IDLE = "idle"
CONFIRMING = "confirming"
APPLYING = "applying"

ACTIONS = ("edit", "deactivate", "reactivate", "delete")

_MESSAGES: Dict[str, Dict[str, str]] = {
    "edit": {
        "success": "Examen modifié avec succès",
        "failure": "Erreur lors de la modification",
        "warning": ("Attention : cet examen est actuellement en cours. Des candidats "
                    "pourraient déjà être en train de le passer. Toute modification "
                    "s'appliquera immédiatement."),
    },
    "deactivate": {
        "success": "Examen désactivé avec succès",
        "failure": "Erreur lors de la désactivation",
        "warning": ("Attention : cet examen est actuellement en cours. Des candidats "
                    "pourraient déjà être en train de le passer. La désactivation "
                    "interrompra immédiatement l'accès à l'examen pour tous les utilisateurs."),
    },
    "reactivate": {
        "success": "Examen réactivé avec succès",
        "failure": "Erreur lors de la réactivation",
        "warning": "Attention : cet examen est actuellement en cours.",
    },
    "delete": {
        "success": "Examen supprimé avec succès",
        "failure": "Erreur lors de la suppression",
        "warning": ("Attention : cet examen est actuellement en cours. Des candidats "
                    "pourraient déjà être en train de le passer. La suppression effacera "
                    "définitivement l'examen, les participations et les réponses."),
    },
}


class GuardStateError(RuntimeError):
    pass


class MutationResult:
    def __init__(self, ok: bool, message: str, value: Any = None, detail: Optional[str] = None):
        self.ok = ok
        self.message = message
        self.value = value
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": self.ok, "message": self.message}
        if self.ok and self.value is not None:
            out["result"] = self.value
        return out


class MutationGuard:
    def __init__(self, action: str, exam: Dict[str, Any], mutate: Callable[[], Any]):
        if action not in ACTIONS:
            raise ValueError(f"unknown exam action: {action}")
        self.action = action
        self.exam = exam
        self._mutate = mutate
        self.state = IDLE
        self.history: List[str] = []
        self.result: Optional[MutationResult] = None

    @property
    def warning(self) -> str:
        title = (self.exam or {}).get("title") or ""
        text = _MESSAGES[self.action]["warning"]
        return f"{text} Êtes-vous sûr ? (« {title} »)" if title else text

    def _enter(self, state: str):
        self.state = state
        self.history.append(state)

    def request(self, now: int) -> Optional[MutationResult]:
        """Start the interaction. Returns the result when applied directly, None while confirming."""
        if self.state != IDLE:
            raise GuardStateError(f"cannot request from state {self.state}")
        if resolve_status(self.exam, now) == ACTIVE:
            self._enter(CONFIRMING)
            return None
        return self._apply()

    def confirm(self) -> MutationResult:
        if self.state != CONFIRMING:
            raise GuardStateError(f"cannot confirm from state {self.state}")
        return self._apply()

    def cancel(self) -> None:
        if self.state != CONFIRMING:
            raise GuardStateError(f"cannot cancel from state {self.state}")
        self._enter(IDLE)

    def _apply(self) -> MutationResult:
        self._enter(APPLYING)
        msgs = _MESSAGES[self.action]
        try:
            value = self._mutate()
            self.result = MutationResult(True, msgs["success"], value=value)
        except Exception as e:
            print(f"[admin] exam {self.action} failed for {(self.exam or {}).get('id')}: {e}")
            self.result = MutationResult(False, msgs["failure"], detail=str(e))
        self._enter(IDLE)
        return self.result


__all__ = [
    "IDLE", "CONFIRMING", "APPLYING", "ACTIONS",
    "GuardStateError", "MutationResult", "MutationGuard",
]
