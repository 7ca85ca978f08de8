from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import pytest

from docbuilder.adapters.local import LocalContentSource, LocalExportConfig, LocalExporter, LocalFileStore
from docbuilder.config import Settings, get_settings
from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.errors import DocumentServiceError
from docbuilder.pipeline.orchestrator import ReportPipeline
from docbuilder.types import FetchedImage


def run(coro):
    return asyncio.run(coro)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        'data_dir': tmp_path / 'data',
        'template_id': 'base',
        'drive_folder_id': 'reports',
        'required_fields': 'title,date',
        'step_timeout_seconds': 10.0,
    }
    values.update(overrides)
    return Settings(**values)


class FakeImages:
    """Image source returning fixed-size images; URIs in ``broken`` fail."""

    def __init__(self, broken: Sequence[str] = ()):
        self.broken = set(broken)
        self.fetched: list[str] = []

    async def fetch(self, uri: str, *, source_ref: str | None = None) -> FetchedImage:
        self.fetched.append(uri)
        if uri in self.broken:
            return FetchedImage(source_ref=source_ref or uri, uri=uri, error='HTTP 404')
        return FetchedImage(source_ref=source_ref or uri, uri=uri, width=120, height=90)

    async def fetch_many(self, uris: Sequence[str]) -> list[FetchedImage]:
        return [await self.fetch(uri, source_ref=f'image[{index}]') for index, uri in enumerate(uris)]


class FlakyDocuments:
    """Wraps a document service and fails the listed ``apply_batch`` calls (1-based)."""

    def __init__(self, inner: InMemoryDocumentService, fail_calls: Sequence[int] = ()):
        self.inner = inner
        self.fail_calls = set(fail_calls)
        self.calls = 0

    async def get_snapshot(self, document_id: str):
        return await self.inner.get_snapshot(document_id)

    async def apply_batch(self, document_id: str, ops) -> None:
        self.calls += 1
        if self.calls in self.fail_calls:
            raise DocumentServiceError(f'quota exceeded on call {self.calls}')
        await self.inner.apply_batch(document_id, ops)


REPORT_TEMPLATE: list[Any] = [
    '{{title}}',
    'Report for {{title}} dated {{date}}',
    {'table': [['Item', '{{title}}'], ['Section', 'Gallery follows']]},
    '{{gallery}}',
    'End of report',
]


def gallery_urls(count: int) -> list[str]:
    return [f'https://images.example.com/similar-{index}.jpg' for index in range(count)]


def write_report(content_dir: Path, report_id: str, **payload: Any) -> Path:
    content_dir.mkdir(parents=True, exist_ok=True)
    path = content_dir / f'{report_id}.json'
    path.write_text(json.dumps(payload), encoding='utf-8')
    return path


@dataclass
class Harness:
    settings: Settings
    documents: InMemoryDocumentService
    files: LocalFileStore
    content: LocalContentSource
    exporter: LocalExporter
    images: FakeImages
    pipeline: ReportPipeline

    def report_payload(self, report_id: str) -> dict[str, Any]:
        return json.loads((self.settings.content_dir / f'{report_id}.json').read_text(encoding='utf-8'))


def build_harness(
    tmp_path: Path,
    *,
    template: list[Any] | None = None,
    images: Any = None,
    exporter: Any = None,
    documents: Any = None,
    **settings_overrides: Any,
) -> Harness:
    settings = make_settings(tmp_path, **settings_overrides)
    store = InMemoryDocumentService()
    files = LocalFileStore(store, templates={'base': list(template or REPORT_TEMPLATE)})
    content = LocalContentSource(settings.content_dir)
    local_exporter = LocalExporter(store, LocalExportConfig(output_dir=settings.uploads_dir))
    fake_images = images if images is not None else FakeImages()
    pipeline = ReportPipeline(
        content=content,
        documents=documents(store) if documents is not None else store,
        files=files,
        exporter=exporter if exporter is not None else local_exporter,
        images=fake_images,
        settings=settings,
    )
    return Harness(
        settings=settings,
        documents=store,
        files=files,
        content=content,
        exporter=local_exporter,
        images=fake_images,
        pipeline=pipeline,
    )


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv('DATA_DIR', str(tmp_path / 'data'))
    get_settings.cache_clear()
    yield tmp_path / 'data'
    get_settings.cache_clear()
