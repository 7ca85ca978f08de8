from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

from .config import get_settings


def runs_root() -> Path:
    root = get_settings().data_dir / 'runs'
    root.mkdir(parents=True, exist_ok=True)
    return root


def _safe_run_id(run_id: UUID | str) -> str:
    if isinstance(run_id, UUID):
        return str(run_id)
    token = str(run_id or '').strip()
    if not token:
        raise ValueError('run_id is required')
    try:
        return str(UUID(token))
    except Exception as exc:
        raise ValueError(f'invalid run_id: {run_id}') from exc


def _safe_step_name(step: str) -> str:
    token = str(step or '').strip()
    if not token or not token.replace('_', '').isalnum():
        raise ValueError(f'invalid step name: {step!r}')
    return token


def run_dir(run_id: UUID | str) -> Path:
    path = runs_root() / _safe_run_id(run_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def state_path(run_id: UUID | str) -> Path:
    return run_dir(run_id) / 'run.json'


def events_path(run_id: UUID | str) -> Path:
    return run_dir(run_id) / 'events.jsonl'


def context_snapshot_path(run_id: UUID | str, step: str) -> Path:
    return run_dir(run_id) / f'context_{_safe_step_name(step)}.json'


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding='utf-8')
    tmp.replace(path)


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding='utf-8'))


def save_context_snapshot(run_id: UUID | str, step: str, payload: dict[str, Any]) -> Path:
    path = context_snapshot_path(run_id, step)
    write_json_atomic(path, payload)
    return path


def load_context_snapshot(run_id: UUID | str, step: str) -> dict[str, Any] | None:
    """Context as it stood after ``step`` finished, or None if the step never completed."""
    path = context_snapshot_path(run_id, step)
    if not path.exists():
        return None
    return read_json(path)


def append_event(run_id: UUID | str, event: str, **extra: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    row = {
        'ts': now,
        'event': event,
        **extra,
    }
    events_file = events_path(run_id)
    events_file.parent.mkdir(parents=True, exist_ok=True)
    with events_file.open('a', encoding='utf-8') as f:
        f.write(json.dumps(row, ensure_ascii=False, default=str) + '\n')


def read_events(run_id: UUID | str) -> list[dict[str, Any]]:
    path = events_path(run_id)
    if not path.exists():
        return []
    rows: list[dict[str, Any]] = []
    for line in path.read_text(encoding='utf-8').splitlines():
        if line.strip():
            rows.append(json.loads(line))
    return rows
