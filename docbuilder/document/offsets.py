from __future__ import annotations

from typing import Any

from docbuilder.document.model import (
    IMAGE_LENGTH,
    DeleteRange,
    EditOp,
    InsertImage,
    InsertText,
    UpdateStyle,
)
from docbuilder.errors import OffsetOrderError


class OffsetSpace:
    """Checked batch builder over one snapshot's offsets.

    Regions must be added in strictly descending start order and may not
    overlap, so every emitted operation lands at offsets the earlier
    operations of the same batch have not shifted.
    """

    def __init__(self, *, body_start: int = 1, body_end: int | None = None):
        self._body_start = body_start
        self._body_end = body_end
        self._floor: int | None = None
        self._ops: list[EditOp] = []

    @property
    def floor(self) -> int | None:
        return self._floor

    def _claim(self, start: int, end: int) -> None:
        if start < self._body_start or end < start:
            raise OffsetOrderError(f'invalid region [{start}, {end})')
        if self._body_end is not None and end > self._body_end:
            raise OffsetOrderError(f'region [{start}, {end}) beyond snapshot end {self._body_end}')
        if self._floor is not None:
            if start >= self._floor:
                raise OffsetOrderError(
                    f'region starting at {start} is not below the previous region start {self._floor}'
                )
            if end > self._floor:
                raise OffsetOrderError(f'region [{start}, {end}) overlaps region starting at {self._floor}')
        self._floor = start

    def replace_text(self, start: int, end: int, text: str) -> None:
        self._claim(start, end)
        if end > start:
            self._ops.append(DeleteRange(start=start, end=end))
        if text:
            self._ops.append(InsertText(at=start, text=text))

    def replace_with_image(self, start: int, end: int, *, uri: str, width: float, height: float) -> None:
        self._claim(start, end)
        if end > start:
            self._ops.append(DeleteRange(start=start, end=end))
        self._ops.append(InsertImage(at=start, uri=uri, width=width, height=height))

    def delete(self, start: int, end: int) -> None:
        self.replace_text(start, end, '')

    def insert_text(self, at: int, text: str) -> None:
        self.replace_text(at, at, text)

    def style(self, start: int, end: int, style: dict[str, Any], *, target: str = 'text') -> None:
        self._claim(start, end)
        self._ops.append(UpdateStyle(start=start, end=end, style=dict(style), target=target))

    def ops(self) -> list[EditOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)


class CursorWriter:
    """Forward builder: each insertion lands at the cursor, which then advances
    by exactly the inserted length."""

    def __init__(self, cursor: int):
        self._origin = cursor
        self._cursor = cursor
        self._ops: list[EditOp] = []

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def advanced(self) -> int:
        return self._cursor - self._origin

    def delete(self, length: int) -> None:
        if length <= 0:
            return
        self._ops.append(DeleteRange(start=self._cursor, end=self._cursor + length))

    def text(self, text: str, *, paragraph_style: dict[str, Any] | None = None) -> None:
        if not text:
            return
        start = self._cursor
        self._ops.append(InsertText(at=start, text=text))
        self._cursor += len(text)
        if paragraph_style:
            self._ops.append(UpdateStyle(start=start, end=self._cursor, style=dict(paragraph_style), target='paragraph'))

    def image(self, uri: str, *, width: float, height: float) -> None:
        self._ops.append(InsertImage(at=self._cursor, uri=uri, width=width, height=height))
        self._cursor += IMAGE_LENGTH

    def ops(self) -> list[EditOp]:
        return list(self._ops)
