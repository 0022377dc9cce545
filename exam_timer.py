"""Pure helpers for the attempt countdown. All times are milliseconds."""

AUTO_SUBMIT_GRACE_MS = 30_000
MANUAL_SUBMIT_GRACE_MS = 5_000
RUNNING_OUT_MS = 10 * 60 * 1000
CRITICAL_MS = 5 * 60 * 1000


def calculate_time_remaining(server_start_time: int, completion_time_seconds: int,
                             now: int, paused_ms: int = 0) -> int:
    elapsed = now - server_start_time - (paused_ms or 0)
    return max(0, int(completion_time_seconds) * 1000 - elapsed)


def should_auto_submit(time_remaining: int) -> bool:
    return time_remaining <= 0


def format_exam_time(ms: int) -> str:
    ms = max(0, int(ms))
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    seconds = (ms % 60_000) // 1000
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def is_within_grace_period(time_elapsed: int, max_time_ms: int, is_auto_submit: bool = False) -> bool:
    """Submissions may land slightly late: 30s for auto-submit, 5s for manual."""
    grace = AUTO_SUBMIT_GRACE_MS if is_auto_submit else MANUAL_SUBMIT_GRACE_MS
    return time_elapsed <= max_time_ms + grace


def is_time_running_out(time_remaining: int) -> bool:
    return time_remaining < RUNNING_OUT_MS


def is_time_critical(time_remaining: int) -> bool:
    return time_remaining < CRITICAL_MS


def calculate_progress(current_index: int, total_questions: int) -> float:
    if total_questions == 0:
        return 0
    return (current_index + 1) / total_questions * 100


def calculate_score_percentage(correct_count: int, total_questions: int) -> int:
    if total_questions == 0:
        return 0
    # half-up, not banker's rounding
    return int(correct_count * 100 / total_questions + 0.5)
