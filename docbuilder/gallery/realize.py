from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from docbuilder.document.offsets import CursorWriter
from docbuilder.document.scanner import placeholder_token, scan_placeholders
from docbuilder.errors import DocumentServiceError, PlaceholderNotFound
from docbuilder.gallery.layout import (
    GalleryPlan,
    default_batch_size,
    layout_gallery,
    plan_sub_batches,
    sub_batch_ops,
)
from docbuilder.ports import DocumentService
from docbuilder.types import FetchedImage


logger = logging.getLogger(__name__)

GALLERY_KEY = 'gallery'
GALLERY_TITLE_STYLE = {'alignment': 'CENTER', 'named_style_type': 'HEADING_3'}


@dataclass
class GalleryOptions:
    grid_width: int = 3
    max_batch_images: int = 10
    title: str = 'Similar Artworks'
    image_width: float = 150.0
    image_height: float = 150.0


@dataclass
class GalleryResult:
    plan: GalleryPlan
    inserted: int = 0
    failed_batches: list[int] = field(default_factory=list)
    inserted_length: int = 0

    @property
    def dropped(self) -> int:
        return len(self.plan.dropped)


async def realize_gallery(
    documents: DocumentService,
    document_id: str,
    images: list[FetchedImage],
    options: GalleryOptions,
    *,
    warn: Callable[[str], None] | None = None,
) -> GalleryResult:
    """Replace ``{{gallery}}`` with a titled image grid.

    Sub-batches are applied in order; the start of each one is the anchor
    plus the lengths of the sub-batches that were actually applied.
    """
    token = placeholder_token(GALLERY_KEY)
    snapshot = await documents.get_snapshot(document_id)
    occurrences = scan_placeholders(snapshot, token)
    if not occurrences:
        raise PlaceholderNotFound(token)
    placeholder = occurrences[0]

    plan = layout_gallery(images, options.grid_width)
    result = GalleryResult(plan=plan)

    header = CursorWriter(placeholder.start)
    header.delete(placeholder.length)
    if plan.is_empty:
        await documents.apply_batch(document_id, header.ops())
        logger.info('No valid gallery images; removed %s from %s', token, document_id)
        return result

    header.text(f'{options.title}\n', paragraph_style=GALLERY_TITLE_STYLE)
    await documents.apply_batch(document_id, header.ops())
    anchor = header.cursor

    size = default_batch_size(len(plan.placements), options.max_batch_images)
    drift = 0
    last_applied = None
    for index, chunk in enumerate(plan_sub_batches(plan, size)):
        ops, length = sub_batch_ops(
            chunk,
            anchor + drift,
            width=options.image_width,
            height=options.image_height,
        )
        try:
            await documents.apply_batch(document_id, ops)
        except DocumentServiceError as exc:
            result.failed_batches.append(index)
            message = f'Gallery sub-batch {index + 1} ({len(chunk)} image(s)) failed: {exc}'
            logger.warning('%s', message)
            if warn is not None:
                warn(message)
            continue
        drift += length
        result.inserted += len(chunk)
        last_applied = chunk[-1]

    # only the plan's final image has no spacer; anything else left at the end dangles
    if last_applied is not None and last_applied.spacer:
        trim = CursorWriter(anchor + drift - len(last_applied.spacer))
        trim.delete(len(last_applied.spacer))
        try:
            await documents.apply_batch(document_id, trim.ops())
            drift -= len(last_applied.spacer)
        except DocumentServiceError as exc:
            logger.warning('Could not trim trailing gallery spacer in %s: %s', document_id, exc)
    result.inserted_length = drift
    return result
