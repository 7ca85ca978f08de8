from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

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

_CHAR = 'char'
_IMAGE = 'image'
_SECTION = 'section'
_TABLE = 'table'
_ROW = 'row'
_CELL = 'cell'
_TABLE_END = 'table_end'
_CONTENT_KINDS = {_CHAR, _IMAGE}
_MARKER_KINDS = {_SECTION, _TABLE, _ROW, _CELL, _TABLE_END}


@dataclass
class _Unit:
    kind: str
    char: str = ''
    style: dict[str, Any] = field(default_factory=dict)
    paragraph_style: dict[str, Any] = field(default_factory=dict)
    image: tuple[str, float, float] | None = None

    @property
    def is_newline(self) -> bool:
        return self.kind == _CHAR and self.char == '\n'


def _char_units(text: str) -> list[_Unit]:
    return [_Unit(kind=_CHAR, char=ch) for ch in text]


def _emit_blocks(spec: Iterable[Any], out: list[_Unit]) -> None:
    for item in spec:
        if isinstance(item, str):
            for line in item.split('\n'):
                out.extend(_char_units(line + '\n'))
            continue
        if isinstance(item, dict) and 'table' in item:
            out.append(_Unit(kind=_TABLE))
            for row in item['table']:
                out.append(_Unit(kind=_ROW))
                for cell in row:
                    out.append(_Unit(kind=_CELL))
                    cell_spec = [cell] if isinstance(cell, str) else list(cell)
                    if not cell_spec:
                        cell_spec = ['']
                    _emit_blocks(cell_spec, out)
            out.append(_Unit(kind=_TABLE_END))
            continue
        raise ValueError(f'Unsupported template block: {item!r}')


def build_units(spec: Iterable[Any]) -> list[_Unit]:
    """Turn a JSON block spec into the linear unit space of a document.

    Strings are paragraphs (one per line); ``{"table": [[cell, ...], ...]}`` is a
    table whose cells are strings or nested block specs. Offset 0 holds the
    section marker so the body starts at offset 1.
    """
    units: list[_Unit] = [_Unit(kind=_SECTION)]
    _emit_blocks(spec, units)
    if len(units) == 1 or not units[-1].is_newline:
        units.extend(_char_units('\n'))
    return units


def _parse_paragraph(units: list[_Unit], i: int) -> tuple[Paragraph, int]:
    start = i
    elements: list[ParagraphElement] = []
    run_start: int | None = None
    run_chars: list[str] = []
    run_style: dict[str, Any] = {}
    paragraph_style: dict[str, Any] = {}

    def flush(end: int) -> None:
        nonlocal run_start, run_chars
        if run_start is not None and run_chars:
            elements.append(TextRun(start=run_start, end=end, content=''.join(run_chars), style=dict(run_style)))
        run_start = None
        run_chars = []

    while i < len(units):
        unit = units[i]
        if unit.kind == _CHAR:
            if run_start is not None and unit.style != run_style:
                flush(i)
            if run_start is None:
                run_start = i
                run_style = unit.style
            run_chars.append(unit.char)
            i += 1
            if unit.char == '\n':
                paragraph_style = dict(unit.paragraph_style)
                break
            continue
        if unit.kind == _IMAGE:
            flush(i)
            uri, width, height = unit.image or ('', 0.0, 0.0)
            elements.append(InlineImage(start=i, end=i + 1, uri=uri, width=width, height=height))
            i += 1
            continue
        break
    flush(i)
    return Paragraph(start=start, end=i, elements=tuple(elements), style=paragraph_style), i


def _parse_table(units: list[_Unit], i: int) -> tuple[Table, int]:
    start = i
    i += 1
    rows: list[TableRow] = []
    while i < len(units) and units[i].kind == _ROW:
        row_start = i
        i += 1
        cells: list[TableCell] = []
        while i < len(units) and units[i].kind == _CELL:
            cell_start = i
            i += 1
            content, i = _parse_blocks(units, i)
            cells.append(TableCell(start=cell_start, end=i, content=tuple(content)))
        rows.append(TableRow(start=row_start, end=i, cells=tuple(cells)))
    if i >= len(units) or units[i].kind != _TABLE_END:
        raise DocumentServiceError(f'Malformed table starting at offset {start}')
    i += 1
    return Table(start=start, end=i, rows=tuple(rows)), i


def _parse_blocks(units: list[_Unit], i: int) -> tuple[list[Block], int]:
    blocks: list[Block] = []
    while i < len(units):
        kind = units[i].kind
        if kind == _TABLE:
            table, i = _parse_table(units, i)
            blocks.append(table)
            continue
        if kind in _MARKER_KINDS:
            break
        paragraph, i = _parse_paragraph(units, i)
        blocks.append(paragraph)
    return blocks, i


class InMemoryDocument:
    """A mutable linear content space with atomic batch application."""

    def __init__(self, document_id: str, units: list[_Unit]):
        self.document_id = document_id
        self._units = units
        self.revision = 0

    def __len__(self) -> int:
        return len(self._units)

    def clone(self, document_id: str) -> 'InMemoryDocument':
        return InMemoryDocument(document_id, copy.deepcopy(self._units))

    def snapshot(self) -> DocumentTree:
        blocks, end = _parse_blocks(self._units, 1)
        if end != len(self._units):
            raise DocumentServiceError(f'Unparsed content at offset {end} in {self.document_id}')
        return DocumentTree(document_id=self.document_id, body=tuple(blocks), revision=self.revision)

    def apply(self, ops: list[EditOp]) -> None:
        work = copy.deepcopy(self._units)
        for index, op in enumerate(ops):
            try:
                self._apply_one(work, op)
            except DocumentServiceError as exc:
                raise DocumentServiceError(
                    f'Batch rejected at operation #{index} ({type(op).__name__}) on {self.document_id}: {exc}'
                ) from exc
        self._units = work
        self.revision += 1

    @staticmethod
    def _check_insert_position(units: list[_Unit], at: int) -> None:
        if at < 1 or at >= len(units):
            raise DocumentServiceError(f'insert offset {at} outside body [1, {len(units) - 1}]')
        if units[at].kind not in _CONTENT_KINDS:
            raise DocumentServiceError(f'insert offset {at} is not inside a paragraph')

    @staticmethod
    def _paragraph_style_at(units: list[_Unit], at: int) -> dict[str, Any]:
        for unit in units[at:]:
            if unit.is_newline:
                return dict(unit.paragraph_style)
            if unit.kind in _MARKER_KINDS:
                break
        return {}

    def _apply_one(self, units: list[_Unit], op: EditOp) -> None:
        if isinstance(op, DeleteRange):
            start, end = op.start, op.end
            if start < 1 or end <= start or end > len(units) - 1:
                raise DocumentServiceError(f'delete range [{start}, {end}) outside body')
            if any(unit.kind in _MARKER_KINDS for unit in units[start:end]):
                raise DocumentServiceError(f'delete range [{start}, {end}) crosses a structural element')
            if units[end - 1].is_newline and units[end].kind in _MARKER_KINDS:
                raise DocumentServiceError(f'delete range [{start}, {end}) would leave a paragraph unterminated')
            del units[start:end]
            return

        if isinstance(op, InsertText):
            if not op.text:
                raise DocumentServiceError('insert text requires non-empty text')
            self._check_insert_position(units, op.at)
            previous = units[op.at - 1]
            inherited = dict(previous.style) if previous.kind == _CHAR and not previous.is_newline else {}
            paragraph_style = self._paragraph_style_at(units, op.at)
            new_units: list[_Unit] = []
            for ch in op.text:
                unit = _Unit(kind=_CHAR, char=ch, style=dict(inherited))
                if ch == '\n':
                    unit.paragraph_style = dict(paragraph_style)
                new_units.append(unit)
            units[op.at:op.at] = new_units
            return

        if isinstance(op, InsertImage):
            if not str(op.uri or '').strip():
                raise DocumentServiceError('insert image requires a uri')
            if op.width <= 0 or op.height <= 0:
                raise DocumentServiceError(f'invalid image size {op.width}x{op.height}')
            self._check_insert_position(units, op.at)
            units.insert(op.at, _Unit(kind=_IMAGE, image=(op.uri, float(op.width), float(op.height))))
            return

        if isinstance(op, UpdateStyle):
            start, end = op.start, op.end
            if start < 1 or end <= start or end > len(units):
                raise DocumentServiceError(f'style range [{start}, {end}) outside body')
            if op.target == 'paragraph':
                k = start
                while k < len(units):
                    unit = units[k]
                    if unit.is_newline:
                        unit.paragraph_style.update(op.style)
                        if k + 1 >= end:
                            break
                    k += 1
                return
            if op.target != 'text':
                raise DocumentServiceError(f'unknown style target {op.target!r}')
            for unit in units[start:end]:
                if unit.kind in _CONTENT_KINDS:
                    unit.style.update(op.style)
            return

        raise DocumentServiceError(f'unsupported operation {op!r}')


class InMemoryDocumentService:
    """Document Service holding documents in process; used by the local backend and tests."""

    def __init__(self) -> None:
        self._documents: dict[str, InMemoryDocument] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._ids = itertools.count(1)
        self.batch_calls: list[tuple[str, int]] = []

    def create(self, spec: Iterable[Any], *, document_id: str | None = None) -> str:
        doc_id = document_id or self._next_id()
        self._documents[doc_id] = InMemoryDocument(doc_id, build_units(spec))
        return doc_id

    def copy(self, source_id: str, *, document_id: str | None = None) -> str:
        source = self.document(source_id)
        doc_id = document_id or self._next_id()
        self._documents[doc_id] = source.clone(doc_id)
        return doc_id

    def _next_id(self) -> str:
        while True:
            candidate = f'doc-{next(self._ids)}'
            if candidate not in self._documents:
                return candidate

    def document(self, document_id: str) -> InMemoryDocument:
        found = self._documents.get(document_id)
        if found is None:
            raise DocumentServiceError(f'Document not found: {document_id}')
        return found

    def _lock(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def get_snapshot(self, document_id: str) -> DocumentTree:
        async with self._lock(document_id):
            return self.document(document_id).snapshot()

    async def apply_batch(self, document_id: str, ops: list[EditOp]) -> None:
        if not ops:
            return
        async with self._lock(document_id):
            self.document(document_id).apply(list(ops))
            self.batch_calls.append((document_id, len(ops)))
        logger.debug('Applied %s operation(s) to %s', len(ops), document_id)
