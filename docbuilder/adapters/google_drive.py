from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from docbuilder.errors import DocumentServiceError, ExportError, ReportPipelineError, UploadError
from docbuilder.types import StoredFile


logger = logging.getLogger(__name__)

PDF_MIME_TYPE = 'application/pdf'


@dataclass
class GoogleDriveConfig:
    base_url: str
    upload_url: str
    access_token: str | None
    timeout_seconds: int


def document_link(file_id: str) -> str:
    return f'https://docs.google.com/document/d/{file_id}/edit'


def multipart_body(metadata: dict[str, Any], data: bytes, mime_type: str, boundary: str) -> bytes:
    parts = [
        f'--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n'.encode('utf-8'),
        json.dumps(metadata).encode('utf-8'),
        f'\r\n--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n'.encode('utf-8'),
        data,
        f'\r\n--{boundary}--\r\n'.encode('utf-8'),
    ]
    return b''.join(parts)


class GoogleDriveAdapter:
    """File Store and Exporter over the Google Drive v3 REST API."""

    def __init__(self, cfg: GoogleDriveConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = str(self.cfg.access_token or '').strip()
        if token:
            headers['Authorization'] = f'Bearer {token}'
        headers.update(extra or {})
        return headers

    def _files_url(self, suffix: str = '') -> str:
        return f"{self.cfg.base_url.rstrip('/')}/files{suffix}"

    async def _send(
        self,
        method: str,
        url: str,
        *,
        error: type[ReportPipelineError],
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=max(5, int(self.cfg.timeout_seconds)),
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, url, headers=self._headers(headers), **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise error(
                    f'Drive API {method} {url} returned {exc.response.status_code}: {exc.response.text[:300]}'
                ) from exc
            except httpx.HTTPError as exc:
                raise error(f'Drive API {method} {url} failed: {exc}') from exc
        return response

    async def copy_template(self, template_id: str, *, name: str | None = None) -> StoredFile:
        body: dict[str, Any] = {}
        if name:
            body['name'] = name
        response = await self._send(
            'POST',
            self._files_url(f'/{template_id}/copy'),
            params={'fields': 'id,webViewLink', 'supportsAllDrives': 'true'},
            json=body,
            error=DocumentServiceError,
        )
        data = response.json()
        file_id = str(data.get('id') or '')
        if not file_id:
            raise DocumentServiceError(f'Template copy of {template_id} returned no file id')
        return StoredFile(id=file_id, link=str(data.get('webViewLink') or document_link(file_id)))

    async def move(self, file_id: str, folder_id: str) -> None:
        current = await self._send(
            'GET',
            self._files_url(f'/{file_id}'),
            params={'fields': 'parents', 'supportsAllDrives': 'true'},
            error=DocumentServiceError,
        )
        previous = ','.join(current.json().get('parents') or [])
        params = {'addParents': folder_id, 'fields': 'id,parents', 'supportsAllDrives': 'true'}
        if previous:
            params['removeParents'] = previous
        await self._send('PATCH', self._files_url(f'/{file_id}'), params=params, json={}, error=DocumentServiceError)
        logger.info('Moved %s to folder %s', file_id, folder_id)

    async def export_as_pdf(self, document_id: str) -> bytes:
        response = await self._send(
            'GET',
            self._files_url(f'/{document_id}/export'),
            params={'mimeType': PDF_MIME_TYPE},
            error=ExportError,
        )
        if not response.content:
            raise ExportError(f'Export of {document_id} returned an empty body')
        return response.content

    async def upload(self, data: bytes, filename: str, folder_id: str) -> str:
        boundary = f'docbuilder-{uuid.uuid4().hex}'
        metadata: dict[str, Any] = {'name': filename, 'mimeType': PDF_MIME_TYPE}
        if folder_id:
            metadata['parents'] = [folder_id]
        response = await self._send(
            'POST',
            f"{self.cfg.upload_url.rstrip('/')}/files",
            params={'uploadType': 'multipart', 'fields': 'id,webViewLink', 'supportsAllDrives': 'true'},
            headers={'Content-Type': f'multipart/related; boundary={boundary}'},
            content=multipart_body(metadata, data, PDF_MIME_TYPE, boundary),
            error=UploadError,
        )
        payload = response.json()
        link = str(payload.get('webViewLink') or '')
        if not link:
            file_id = str(payload.get('id') or '')
            if not file_id:
                raise UploadError(f'Upload of {filename} returned no file id')
            link = f'https://drive.google.com/file/d/{file_id}/view'
        return link
