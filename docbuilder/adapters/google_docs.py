from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from docbuilder.document.model import (
    Block,
    DeleteRange,
    DocumentTree,
    EditOp,
    InlineImage,
    InsertImage,
    InsertText,
    Paragraph,
    ParagraphElement,
    Table,
    TableCell,
    TableRow,
    TextRun,
    UpdateStyle,
)
from docbuilder.errors import DocumentServiceError


logger = logging.getLogger(__name__)

_TEXT_STYLE_FIELDS = {
    'font_size': 'fontSize',
    'bold': 'bold',
    'italic': 'italic',
    'underline': 'underline',
}
_PARAGRAPH_STYLE_FIELDS = {
    'alignment': 'alignment',
    'named_style_type': 'namedStyleType',
}


@dataclass
class GoogleDocsConfig:
    base_url: str
    access_token: str | None
    timeout_seconds: int


def _range(start: int, end: int) -> dict[str, int]:
    return {'startIndex': start, 'endIndex': end}


def _points(value: float) -> dict[str, Any]:
    return {'magnitude': value, 'unit': 'PT'}


def _text_style_request(op: UpdateStyle) -> dict[str, Any]:
    text_style: dict[str, Any] = {}
    for key, value in op.style.items():
        name = _TEXT_STYLE_FIELDS.get(key)
        if name is None:
            raise DocumentServiceError(f'Unsupported text style attribute: {key}')
        text_style[name] = _points(value) if key == 'font_size' else value
    return {
        'updateTextStyle': {
            'range': _range(op.start, op.end),
            'textStyle': text_style,
            'fields': ','.join(text_style),
        }
    }


def _paragraph_style_request(op: UpdateStyle) -> dict[str, Any]:
    paragraph_style: dict[str, Any] = {}
    for key, value in op.style.items():
        name = _PARAGRAPH_STYLE_FIELDS.get(key)
        if name is None:
            raise DocumentServiceError(f'Unsupported paragraph style attribute: {key}')
        paragraph_style[name] = value
    return {
        'updateParagraphStyle': {
            'range': _range(op.start, op.end),
            'paragraphStyle': paragraph_style,
            'fields': ','.join(paragraph_style),
        }
    }


def to_request(op: EditOp) -> dict[str, Any]:
    if isinstance(op, DeleteRange):
        return {'deleteContentRange': {'range': _range(op.start, op.end)}}
    if isinstance(op, InsertText):
        return {'insertText': {'location': {'index': op.at}, 'text': op.text}}
    if isinstance(op, InsertImage):
        return {
            'insertInlineImage': {
                'location': {'index': op.at},
                'uri': op.uri,
                'objectSize': {'height': _points(op.height), 'width': _points(op.width)},
            }
        }
    if isinstance(op, UpdateStyle):
        if op.target == 'paragraph':
            return _paragraph_style_request(op)
        return _text_style_request(op)
    raise DocumentServiceError(f'Unsupported operation: {op!r}')


def to_requests(ops: list[EditOp]) -> list[dict[str, Any]]:
    return [to_request(op) for op in ops]


def _text_style(raw: dict[str, Any]) -> dict[str, Any]:
    style: dict[str, Any] = {}
    for key, name in _TEXT_STYLE_FIELDS.items():
        if name not in raw:
            continue
        value = raw[name]
        style[key] = value.get('magnitude') if key == 'font_size' and isinstance(value, dict) else value
    return style


def _paragraph_style(raw: dict[str, Any]) -> dict[str, Any]:
    return {key: raw[name] for key, name in _PARAGRAPH_STYLE_FIELDS.items() if name in raw}


def _inline_image(element: dict[str, Any], inline_objects: dict[str, Any]) -> InlineImage:
    object_id = element['inlineObjectElement'].get('inlineObjectId', '')
    embedded = (inline_objects.get(object_id) or {}).get('inlineObjectProperties', {}).get('embeddedObject', {})
    size = embedded.get('size') or {}
    return InlineImage(
        start=int(element.get('startIndex', 0)),
        end=int(element.get('endIndex', 0)),
        uri=str((embedded.get('imageProperties') or {}).get('contentUri') or object_id),
        width=float((size.get('width') or {}).get('magnitude') or 0.0),
        height=float((size.get('height') or {}).get('magnitude') or 0.0),
    )


def _parse_content(content: list[dict[str, Any]], inline_objects: dict[str, Any]) -> tuple[Block, ...]:
    blocks: list[Block] = []
    for item in content:
        start = int(item.get('startIndex', 0))
        end = int(item.get('endIndex', 0))
        if 'paragraph' in item:
            raw = item['paragraph']
            elements: list[ParagraphElement] = []
            for element in raw.get('elements') or []:
                if 'textRun' in element:
                    run = element['textRun']
                    elements.append(
                        TextRun(
                            start=int(element.get('startIndex', 0)),
                            end=int(element.get('endIndex', 0)),
                            content=str(run.get('content') or ''),
                            style=_text_style(run.get('textStyle') or {}),
                        )
                    )
                elif 'inlineObjectElement' in element:
                    elements.append(_inline_image(element, inline_objects))
            blocks.append(
                Paragraph(
                    start=start,
                    end=end,
                    elements=tuple(elements),
                    style=_paragraph_style(raw.get('paragraphStyle') or {}),
                )
            )
        elif 'table' in item:
            rows: list[TableRow] = []
            for raw_row in item['table'].get('tableRows') or []:
                cells = tuple(
                    TableCell(
                        start=int(raw_cell.get('startIndex', 0)),
                        end=int(raw_cell.get('endIndex', 0)),
                        content=_parse_content(raw_cell.get('content') or [], inline_objects),
                    )
                    for raw_cell in raw_row.get('tableCells') or []
                )
                rows.append(
                    TableRow(start=int(raw_row.get('startIndex', 0)), end=int(raw_row.get('endIndex', 0)), cells=cells)
                )
            blocks.append(Table(start=start, end=end, rows=tuple(rows)))
        # section breaks and tables of contents carry no placeholder text
    return tuple(blocks)


def parse_document(payload: dict[str, Any]) -> DocumentTree:
    body = payload.get('body') or {}
    return DocumentTree(
        document_id=str(payload.get('documentId') or ''),
        body=_parse_content(body.get('content') or [], payload.get('inlineObjects') or {}),
        revision=0,
    )


class GoogleDocsDocumentService:
    """Document Service over the Google Docs REST API.

    ``apply_batch`` calls against one document are serialized.
    """

    def __init__(self, cfg: GoogleDocsConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    def _headers(self) -> dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        token = str(self.cfg.access_token or '').strip()
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _url(self, document_id: str, suffix: str = '') -> str:
        return f"{self.cfg.base_url.rstrip('/')}/documents/{document_id}{suffix}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=max(5, int(self.cfg.timeout_seconds)),
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise DocumentServiceError(
                    f'Docs API {method} {url} returned {exc.response.status_code}: {exc.response.text[:300]}'
                ) from exc
            except httpx.HTTPError as exc:
                raise DocumentServiceError(f'Docs API {method} {url} failed: {exc}') from exc
        data = response.json()
        if not isinstance(data, dict):
            raise DocumentServiceError(f'Docs API {method} {url} returned a non-object payload')
        return data

    async def get_snapshot(self, document_id: str) -> DocumentTree:
        async with self._lock(document_id):
            payload = await self._send('GET', self._url(document_id))
        return parse_document(payload)

    async def apply_batch(self, document_id: str, ops: list[EditOp]) -> None:
        if not ops:
            return
        requests = to_requests(ops)
        async with self._lock(document_id):
            await self._send('POST', self._url(document_id, ':batchUpdate'), json={'requests': requests})
        logger.debug('Applied %s request(s) to %s', len(requests), document_id)
