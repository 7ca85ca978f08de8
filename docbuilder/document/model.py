from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Union


# An inline image occupies exactly one offset in the linear content space.
IMAGE_LENGTH = 1
OBJECT_REPLACEMENT_CHAR = '\ufffc'


@dataclass(frozen=True)
class Occurrence:
    start: int
    end: int
    token: str = ''

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class DeleteRange:
    start: int
    end: int


@dataclass(frozen=True)
class InsertText:
    at: int
    text: str


@dataclass(frozen=True)
class InsertImage:
    at: int
    uri: str
    width: float
    height: float


@dataclass(frozen=True)
class UpdateStyle:
    start: int
    end: int
    style: dict[str, Any] = field(default_factory=dict, hash=False)
    target: str = 'text'


EditOp = Union[DeleteRange, InsertText, InsertImage, UpdateStyle]


@dataclass(frozen=True)
class TextRun:
    start: int
    end: int
    content: str
    style: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class InlineImage:
    start: int
    end: int
    uri: str
    width: float
    height: float


ParagraphElement = Union[TextRun, InlineImage]


@dataclass(frozen=True)
class Paragraph:
    start: int
    end: int
    elements: tuple[ParagraphElement, ...]
    style: dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def text(self) -> str:
        parts: list[str] = []
        for element in self.elements:
            if isinstance(element, TextRun):
                parts.append(element.content)
            else:
                parts.append(OBJECT_REPLACEMENT_CHAR)
        return ''.join(parts)


@dataclass(frozen=True)
class TableCell:
    start: int
    end: int
    content: tuple['Block', ...]


@dataclass(frozen=True)
class TableRow:
    start: int
    end: int
    cells: tuple[TableCell, ...]


@dataclass(frozen=True)
class Table:
    start: int
    end: int
    rows: tuple[TableRow, ...]


Block = Union[Paragraph, Table]


def iter_paragraphs(blocks: tuple[Block, ...] | list[Block]) -> Iterator[Paragraph]:
    for block in blocks:
        if isinstance(block, Paragraph):
            yield block
            continue
        for row in block.rows:
            for cell in row.cells:
                yield from iter_paragraphs(cell.content)


@dataclass(frozen=True)
class DocumentTree:
    document_id: str
    body: tuple[Block, ...]
    revision: int = 0

    def paragraphs(self) -> list[Paragraph]:
        return list(iter_paragraphs(self.body))

    def text(self) -> str:
        return ''.join(paragraph.text for paragraph in self.paragraphs())

    def images(self) -> list[InlineImage]:
        found: list[InlineImage] = []
        for paragraph in self.paragraphs():
            for element in paragraph.elements:
                if isinstance(element, InlineImage):
                    found.append(element)
        return found
