from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

from docbuilder.document.model import IMAGE_LENGTH, EditOp
from docbuilder.document.offsets import CursorWriter
from docbuilder.types import FetchedImage


ITEM_SPACER = '   '
ROW_SPACER = '\n\n'


@dataclass(frozen=True)
class PlacedImage:
    source_ref: str
    uri: str
    width: float
    height: float
    row: int
    col: int
    cursor_offset_before: int
    spacer: str

    @property
    def length(self) -> int:
        return IMAGE_LENGTH + len(self.spacer)


@dataclass
class GalleryPlan:
    grid_width: int
    placements: list[PlacedImage] = field(default_factory=list)
    dropped: list[FetchedImage] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.placements

    @property
    def rows(self) -> int:
        if not self.placements:
            return 0
        return self.placements[-1].row + 1

    @property
    def total_length(self) -> int:
        return sum(placed.length for placed in self.placements)

    def row_sizes(self) -> list[int]:
        sizes = [0] * self.rows
        for placed in self.placements:
            sizes[placed.row] += 1
        return sizes

    def spacer_counts(self) -> tuple[int, int]:
        row_breaks = sum(1 for placed in self.placements if placed.spacer == ROW_SPACER)
        items = sum(1 for placed in self.placements if placed.spacer == ITEM_SPACER)
        return items, row_breaks


def layout_gallery(images: Sequence[FetchedImage], grid_width: int) -> GalleryPlan:
    """Place valid images left-to-right, top-to-bottom on a ``grid_width`` grid.

    Invalid images are dropped and take no cell. Offsets are relative to the
    gallery anchor; each one is the exact sum of everything inserted before it.
    """
    if grid_width < 1:
        raise ValueError(f'grid_width must be >= 1, got {grid_width}')
    valid = [image for image in images if image.valid]
    plan = GalleryPlan(grid_width=grid_width, dropped=[image for image in images if not image.valid])

    cursor = 0
    last = len(valid) - 1
    for index, image in enumerate(valid):
        if index == last:
            spacer = ''
        elif (index + 1) % grid_width == 0:
            spacer = ROW_SPACER
        else:
            spacer = ITEM_SPACER
        placed = PlacedImage(
            source_ref=image.source_ref,
            uri=image.uri,
            width=image.width,
            height=image.height,
            row=index // grid_width,
            col=index % grid_width,
            cursor_offset_before=cursor,
            spacer=spacer,
        )
        plan.placements.append(placed)
        cursor += placed.length
    return plan


def default_batch_size(total_images: int, max_batch_images: int) -> int:
    return max(1, min(max_batch_images, math.ceil(total_images / 2)))


def plan_sub_batches(plan: GalleryPlan, size: int) -> list[list[PlacedImage]]:
    if size < 1:
        raise ValueError(f'sub-batch size must be >= 1, got {size}')
    placements = plan.placements
    return [placements[i:i + size] for i in range(0, len(placements), size)]


def sub_batch_ops(
    chunk: list[PlacedImage],
    anchor: int,
    *,
    width: float | None = None,
    height: float | None = None,
) -> tuple[list[EditOp], int]:
    """Translate one chunk to operations starting at ``anchor``.

    Returns the operations and the exact number of offsets they insert.
    """
    writer = CursorWriter(anchor)
    for placed in chunk:
        writer.image(
            placed.uri,
            width=width if width is not None else placed.width,
            height=height if height is not None else placed.height,
        )
        writer.text(placed.spacer)
    return writer.ops(), writer.advanced
