from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.errors import ContentSourceError, DocumentServiceError, ExportError, UploadError
from docbuilder.report.pdf_export import render_document_pdf
from docbuilder.storage import read_json, write_json_atomic
from docbuilder.types import ReportInputs, StoredFile, utcnow


logger = logging.getLogger(__name__)


def _safe_name(value: str, *, label: str) -> str:
    token = str(value or '').strip()
    if not token or '/' in token or '\\' in token or token.startswith('.'):
        raise ValueError(f'invalid {label}: {value!r}')
    return token


class LocalContentSource:
    """Reports stored as ``<root>/<report_id>.json``.

    The file holds the report inputs; links and notes are written back into
    the same file under ``links`` and ``notes``.
    """

    def __init__(self, root: Path):
        self.root = root
        self._lock = asyncio.Lock()

    def _path(self, report_id: str) -> Path:
        return self.root / f"{_safe_name(report_id, label='report id')}.json"

    def _load(self, report_id: str) -> dict[str, Any]:
        path = self._path(report_id)
        if not path.exists():
            raise ContentSourceError(f'Report not found: {report_id} ({path})')
        try:
            payload = read_json(path)
        except ValueError as exc:
            raise ContentSourceError(f'Report {report_id} is not valid JSON: {exc}') from exc
        if not isinstance(payload, dict):
            raise ContentSourceError(f'Report {report_id} must be a JSON object')
        return payload

    async def fetch_report_inputs(self, report_id: str) -> ReportInputs:
        payload = self._load(report_id)
        try:
            return ReportInputs.model_validate(
                {key: payload[key] for key in ('title', 'date', 'fields', 'images', 'gallery_urls') if key in payload}
            )
        except ValueError as exc:
            raise ContentSourceError(f'Report {report_id} has invalid inputs: {exc}') from exc

    async def persist_links(self, report_id: str, links: dict[str, str]) -> None:
        async with self._lock:
            payload = self._load(report_id)
            stored = dict(payload.get('links') or {})
            stored.update(links)
            payload['links'] = stored
            write_json_atomic(self._path(report_id), payload)

    async def add_note(self, report_id: str, note: str) -> None:
        async with self._lock:
            payload = self._load(report_id)
            notes = list(payload.get('notes') or [])
            notes.append({'timestamp': utcnow().isoformat(), 'note': note})
            payload['notes'] = notes
            write_json_atomic(self._path(report_id), payload)


class LocalFileStore:
    """File Store over the in-memory Document Service.

    Templates come from ``templates`` (id -> block spec) or from
    ``<templates_dir>/<template_id>.json``.
    """

    def __init__(
        self,
        documents: InMemoryDocumentService,
        *,
        templates: dict[str, list[Any]] | None = None,
        templates_dir: Path | None = None,
    ):
        self.documents = documents
        self.templates = dict(templates or {})
        self.templates_dir = templates_dir
        self.folders: dict[str, str] = {}
        self.names: dict[str, str] = {}

    def _template_spec(self, template_id: str) -> list[Any]:
        if template_id in self.templates:
            return self.templates[template_id]
        if self.templates_dir is None:
            raise DocumentServiceError(f'Template not found: {template_id}')
        path = self.templates_dir / f"{_safe_name(template_id, label='template id')}.json"
        if not path.exists():
            raise DocumentServiceError(f'Template not found: {template_id} ({path})')
        payload = read_json(path)
        blocks = payload.get('blocks') if isinstance(payload, dict) else payload
        if not isinstance(blocks, list):
            raise DocumentServiceError(f'Template {template_id} must be a list of blocks')
        return blocks

    @staticmethod
    def link_for(document_id: str) -> str:
        return f'local://documents/{document_id}'

    async def copy_template(self, template_id: str, *, name: str | None = None) -> StoredFile:
        source_id = f'template:{template_id}'
        try:
            self.documents.document(source_id)
        except DocumentServiceError:
            self.documents.create(self._template_spec(template_id), document_id=source_id)
        document_id = self.documents.copy(source_id)
        if name:
            self.names[document_id] = name
        logger.info('Copied template %s to %s', template_id, document_id)
        return StoredFile(id=document_id, link=self.link_for(document_id))

    async def move(self, file_id: str, folder_id: str) -> None:
        self.documents.document(file_id)
        self.folders[file_id] = folder_id


@dataclass
class LocalExportConfig:
    output_dir: Path
    font_name: str = 'Helvetica'
    title_font_size: int = 15
    body_font_size: int = 10
    margin: int = 48


class LocalExporter:
    def __init__(self, documents: InMemoryDocumentService, cfg: LocalExportConfig):
        self.documents = documents
        self.cfg = cfg

    async def export_as_pdf(self, document_id: str) -> bytes:
        tree = await self.documents.get_snapshot(document_id)
        try:
            return render_document_pdf(
                tree,
                font_name=self.cfg.font_name,
                title_font_size=self.cfg.title_font_size,
                body_font_size=self.cfg.body_font_size,
                margin=self.cfg.margin,
            )
        except Exception as exc:
            raise ExportError(f'PDF rendering failed for {document_id}: {exc}') from exc

    async def upload(self, data: bytes, filename: str, folder_id: str) -> str:
        folder = _safe_name(folder_id, label='folder id') if folder_id else 'unfiled'
        target = self.cfg.output_dir / folder / _safe_name(filename, label='file name')
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise UploadError(f'Could not write {target}: {exc}') from exc
        return target.resolve().as_uri()
