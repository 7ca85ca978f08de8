from __future__ import annotations

import base64
import logging
from contextlib import contextmanager
from typing import Any, Iterator

from docbuilder.errors import ContextOwnershipError, MissingPrerequisite
from docbuilder.types import LogEntry, LogLevel


logger = logging.getLogger(__name__)

SEED_FIELDS = ('report_id', 'session_id', 'options')

# Every produced field has exactly one step allowed to write it.
FIELD_OWNERS: dict[str, str] = {
    'inputs': 'fetch_inputs',
    'metadata': 'process_metadata',
    'metadata_validation': 'process_metadata',
    'template_id': 'select_template',
    'document_id': 'clone_template',
    'doc_link': 'clone_template',
    'folder_id': 'move_to_folder',
    'replacement': 'replace_placeholders',
    'title_font_size': 'adjust_title',
    'main_image': 'insert_main_image',
    'gallery': 'insert_gallery',
    'specific_images': 'insert_specific_images',
    'pdf_bytes': 'export_pdf',
    'pdf_size': 'export_pdf',
    'pdf_filename': 'upload_pdf',
    'pdf_link': 'upload_pdf',
    'links': 'persist_links',
}

_BYTES_TAG = '__bytes_b64__'

_LEVEL_MAP = {
    LogLevel.info: logging.INFO,
    LogLevel.warn: logging.WARNING,
    LogLevel.error: logging.ERROR,
}


class RunLog:
    """Append-only audit trail; every entry is mirrored to the module logger."""

    def __init__(self, entries: list[LogEntry] | None = None):
        self.entries: list[LogEntry] = list(entries or [])

    def add(self, level: LogLevel, message: str) -> LogEntry:
        entry = LogEntry(level=level, message=message)
        self.entries.append(entry)
        logger.log(_LEVEL_MAP[level], '%s', message)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(LogLevel.info, message)

    def warn(self, message: str) -> LogEntry:
        return self.add(LogLevel.warn, message)

    def error(self, message: str) -> LogEntry:
        return self.add(LogLevel.error, message)

    def messages(self, level: LogLevel | None = None) -> list[str]:
        return [entry.message for entry in self.entries if level is None or entry.level == level]

    def __len__(self) -> int:
        return len(self.entries)


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode('ascii')}
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BYTES_TAG}:
            return base64.b64decode(value[_BYTES_TAG])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


class PipelineContext:
    """Shared key/value bag for one run.

    Fields are never deleted. Seed fields are written once when the run
    starts; every other field may only be written while its owning step is
    the active one.
    """

    def __init__(self, values: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(values or {})
        self._active_step: str | None = None

    @classmethod
    def seeded(
        cls,
        report_id: str,
        *,
        session_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> 'PipelineContext':
        ctx = cls()
        ctx.seed(report_id, session_id=session_id, options=options)
        return ctx

    def seed(self, report_id: str, *, session_id: str | None = None, options: dict[str, Any] | None = None) -> None:
        self._values['report_id'] = str(report_id)
        if session_id is not None or 'session_id' not in self._values:
            self._values['session_id'] = session_id
        if options is not None or 'options' not in self._values:
            self._values['options'] = dict(options or {})

    @property
    def report_id(self) -> str:
        return str(self._values['report_id'])

    @property
    def session_id(self) -> str | None:
        return self._values.get('session_id')

    @property
    def options(self) -> dict[str, Any]:
        return self._values.get('options') or {}

    @property
    def active_step(self) -> str | None:
        return self._active_step

    @contextmanager
    def producing(self, step: str) -> Iterator['PipelineContext']:
        previous = self._active_step
        self._active_step = step
        try:
            yield self
        finally:
            self._active_step = previous

    def set(self, key: str, value: Any) -> None:
        owner = FIELD_OWNERS.get(key)
        if owner is None:
            raise ContextOwnershipError(f'Unknown context field: {key}')
        if owner != self._active_step:
            raise ContextOwnershipError(
                f'Context field {key!r} is owned by {owner}, not {self._active_step or "<no step>"}'
            )
        self._values[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        return self._values.get(key) is not None

    def require(self, *keys: str) -> tuple[Any, ...]:
        missing = [key for key in keys if not self.has(key)]
        if missing:
            raise MissingPrerequisite(self._active_step or '<unknown>', missing)
        return tuple(self._values[key] for key in keys)

    def keys(self) -> list[str]:
        return list(self._values)

    def to_dict(self) -> dict[str, Any]:
        return _encode(self._values)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> 'PipelineContext':
        values = _decode(dict(payload or {}))
        unknown = [key for key in values if key not in FIELD_OWNERS and key not in SEED_FIELDS]
        if unknown:
            raise ContextOwnershipError(f"Unknown context field(s): {', '.join(sorted(unknown))}")
        return cls(values)
