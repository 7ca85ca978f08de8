from __future__ import annotations

from typing import Protocol, Sequence

from docbuilder.document.model import DocumentTree, EditOp
from docbuilder.types import FetchedImage, ReportInputs, StoredFile


class DocumentService(Protocol):
    async def get_snapshot(self, document_id: str) -> DocumentTree: ...

    async def apply_batch(self, document_id: str, ops: list[EditOp]) -> None: ...


class FileStore(Protocol):
    async def copy_template(self, template_id: str, *, name: str | None = None) -> StoredFile: ...

    async def move(self, file_id: str, folder_id: str) -> None: ...


class Exporter(Protocol):
    async def export_as_pdf(self, document_id: str) -> bytes: ...

    async def upload(self, data: bytes, filename: str, folder_id: str) -> str: ...


class ContentSource(Protocol):
    async def fetch_report_inputs(self, report_id: str) -> ReportInputs: ...

    async def persist_links(self, report_id: str, links: dict[str, str]) -> None: ...

    async def add_note(self, report_id: str, note: str) -> None: ...


class ImageSource(Protocol):
    async def fetch_many(self, uris: Sequence[str]) -> list[FetchedImage]: ...

    async def fetch(self, uri: str, *, source_ref: str | None = None) -> FetchedImage: ...
