from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID

from .storage import append_event, read_json, state_path, write_json_atomic
from .types import RunState, RunStatus


_STATE_LOCK = threading.RLock()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def save_run_state(run: RunState) -> RunState:
    with _STATE_LOCK:
        run.updated_at = now_utc()
        write_json_atomic(state_path(run.id), run.model_dump(mode='json'))
    return run


def load_run_state(run_id: UUID | str) -> RunState | None:
    try:
        path = state_path(run_id)
    except ValueError:
        return None
    if not path.exists():
        return None
    with _STATE_LOCK:
        payload = read_json(path)
    return RunState.model_validate(payload)


def mutate_run_state(run_id: UUID | str, fn: Callable[[RunState], None]) -> RunState:
    with _STATE_LOCK:
        existing = load_run_state(run_id)
        if existing is None:
            raise FileNotFoundError(f'Run not found: {run_id}')
        fn(existing)
        existing.updated_at = now_utc()
        write_json_atomic(state_path(run_id), existing.model_dump(mode='json'))
    return existing


def update_run_state(run_id: UUID | str, **fields: Any) -> RunState:
    def apply(run: RunState) -> None:
        for key, value in fields.items():
            setattr(run, key, value)

    return mutate_run_state(run_id, apply)


def set_status(run_id: UUID | str, status: RunStatus, message: str, *, event: str | None = None) -> RunState:
    run = update_run_state(run_id, status=status, message=message)
    append_event(run_id, event or 'status', status=status.value, message=message)
    return run


def fail_run(run_id: UUID | str, *, message: str, error: str, failed_step: str | None = None) -> RunState:
    run = update_run_state(run_id, status=RunStatus.failed, message=message, error=error, failed_step=failed_step)
    append_event(run_id, 'failed', message=message, error=error, failed_step=failed_step)
    return run
