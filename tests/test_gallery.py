from __future__ import annotations

import math

import pytest
from conftest import FlakyDocuments, gallery_urls, run

from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.document.model import IMAGE_LENGTH, OBJECT_REPLACEMENT_CHAR, InlineImage, InsertImage, InsertText
from docbuilder.document.scanner import scan_placeholders
from docbuilder.errors import PlaceholderNotFound
from docbuilder.gallery.layout import (
    ITEM_SPACER,
    ROW_SPACER,
    default_batch_size,
    layout_gallery,
    plan_sub_batches,
    sub_batch_ops,
)
from docbuilder.gallery.realize import GalleryOptions, realize_gallery
from docbuilder.types import FetchedImage


def _images(count: int, *, broken: tuple[int, ...] = ()) -> list[FetchedImage]:
    images = []
    for index, uri in enumerate(gallery_urls(count)):
        if index in broken:
            images.append(FetchedImage(source_ref=f'image[{index}]', uri=uri, error='HTTP 404'))
        else:
            images.append(FetchedImage(source_ref=f'image[{index}]', uri=uri, width=150, height=100))
    return images


def _image_rows(snapshot) -> list[int]:
    rows = []
    for paragraph in snapshot.paragraphs():
        count = sum(1 for element in paragraph.elements if isinstance(element, InlineImage))
        if count:
            rows.append(count)
    return rows


def test_seven_images_on_three_columns():
    plan = layout_gallery(_images(7), 3)

    assert plan.row_sizes() == [3, 3, 1]
    assert [(placed.row, placed.col) for placed in plan.placements] == [
        (0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2), (2, 0),
    ]
    assert [placed.spacer for placed in plan.placements] == [
        ITEM_SPACER, ITEM_SPACER, ROW_SPACER, ITEM_SPACER, ITEM_SPACER, ROW_SPACER, '',
    ]
    assert plan.spacer_counts() == (4, 2)
    assert plan.total_length == 7 * IMAGE_LENGTH + 4 * len(ITEM_SPACER) + 2 * len(ROW_SPACER)


@pytest.mark.parametrize('count', [1, 2, 3, 4, 6, 7, 10, 13])
@pytest.mark.parametrize('width', [1, 2, 3, 4])
def test_spacer_counts_and_cursor_advancement(count, width):
    plan = layout_gallery(_images(count), width)
    row_breaks = (count - 1) // width
    items = count - 1 - row_breaks

    assert plan.spacer_counts() == (items, row_breaks)
    expected_cursor = 0
    for placed in plan.placements:
        assert placed.cursor_offset_before == expected_cursor
        expected_cursor += IMAGE_LENGTH + len(placed.spacer)
    assert plan.total_length == expected_cursor


def test_invalid_images_take_no_cell():
    plan = layout_gallery(_images(6, broken=(1, 4)), 3)

    assert [placed.source_ref for placed in plan.placements] == ['image[0]', 'image[2]', 'image[3]', 'image[5]']
    assert plan.row_sizes() == [3, 1]
    assert [image.source_ref for image in plan.dropped] == ['image[1]', 'image[4]']


def test_grid_width_must_be_positive():
    with pytest.raises(ValueError):
        layout_gallery(_images(2), 0)


@pytest.mark.parametrize(('count', 'expected'), [(1, 1), (2, 1), (7, 4), (20, 10), (40, 10)])
def test_default_batch_size(count, expected):
    assert default_batch_size(count, 10) == expected
    assert expected == max(1, min(10, math.ceil(count / 2)))


def test_sub_batches_cover_the_plan_in_order():
    plan = layout_gallery(_images(7), 3)
    chunks = plan_sub_batches(plan, 4)

    assert [len(chunk) for chunk in chunks] == [4, 3]
    assert [placed for chunk in chunks for placed in chunk] == plan.placements


def test_sub_batch_ops_track_exact_lengths():
    plan = layout_gallery(_images(4), 3)
    ops, length = sub_batch_ops(plan.placements, 50, width=150, height=150)

    assert length == plan.total_length
    assert ops == [
        InsertImage(50, plan.placements[0].uri, 150, 150),
        InsertText(51, ITEM_SPACER),
        InsertImage(54, plan.placements[1].uri, 150, 150),
        InsertText(55, ITEM_SPACER),
        InsertImage(58, plan.placements[2].uri, 150, 150),
        InsertText(59, ROW_SPACER),
        InsertImage(61, plan.placements[3].uri, 150, 150),
    ]


def _gallery_doc():
    service = InMemoryDocumentService()
    doc_id = service.create(['Before', '{{gallery}}', 'After'])
    return service, doc_id


def test_realize_builds_titled_grid():
    service, doc_id = _gallery_doc()
    result = run(realize_gallery(service, doc_id, _images(7), GalleryOptions()))
    snapshot = run(service.get_snapshot(doc_id))

    assert result.inserted == 7
    assert result.failed_batches == []
    assert scan_placeholders(snapshot, '{{gallery}}') == []
    assert _image_rows(snapshot) == [3, 3, 1]
    title = next(p for p in snapshot.paragraphs() if p.text == 'Similar Artworks\n')
    assert title.style == {'alignment': 'CENTER', 'named_style_type': 'HEADING_3'}
    assert all(image.width == 150 and image.height == 150 for image in snapshot.images())
    assert snapshot.paragraphs()[-1].text == 'After\n'
    # header batch plus two image sub-batches of 4 and 3
    assert [n for _doc, n in service.batch_calls] == [3, 8, 5]


def test_realize_with_no_valid_images_only_removes_placeholder():
    service, doc_id = _gallery_doc()
    result = run(realize_gallery(service, doc_id, _images(3, broken=(0, 1, 2)), GalleryOptions()))
    snapshot = run(service.get_snapshot(doc_id))

    assert result.inserted == 0
    assert result.dropped == 3
    assert snapshot.images() == []
    assert snapshot.text() == 'Before\n\nAfter\n'


def test_failed_sub_batch_is_skipped_and_drift_stays_exact():
    service, doc_id = _gallery_doc()
    flaky = FlakyDocuments(service, fail_calls=[2])
    warnings: list[str] = []

    result = run(realize_gallery(flaky, doc_id, _images(7), GalleryOptions(), warn=warnings.append))
    snapshot = run(service.get_snapshot(doc_id))

    assert result.failed_batches == [0]
    assert result.inserted == 3
    assert len(warnings) == 1 and 'sub-batch 1' in warnings[0]
    # the surviving sub-batch starts where the failed one would have
    assert _image_rows(snapshot) == [2, 1]
    assert [image.uri for image in snapshot.images()] == gallery_urls(7)[4:]
    assert snapshot.paragraphs()[-1].text == 'After\n'


def test_failed_last_sub_batch_leaves_no_trailing_spacer():
    service, doc_id = _gallery_doc()
    flaky = FlakyDocuments(service, fail_calls=[3])

    result = run(realize_gallery(flaky, doc_id, _images(7), GalleryOptions()))
    snapshot = run(service.get_snapshot(doc_id))

    assert result.failed_batches == [1]
    assert result.inserted == 4
    # four images plus item, item, row spacers; the dangling item spacer is removed
    assert result.inserted_length == 4 + 3 + 3 + 2
    assert _image_rows(snapshot) == [3, 1]
    image_lines = [p.text for p in snapshot.paragraphs() if OBJECT_REPLACEMENT_CHAR in p.text]
    assert image_lines[-1] == OBJECT_REPLACEMENT_CHAR + '\n'
    assert [n for _doc, n in service.batch_calls] == [3, 8, 1]
    assert snapshot.paragraphs()[-1].text == 'After\n'


def test_missing_gallery_placeholder_raises():
    service = InMemoryDocumentService()
    doc_id = service.create(['no gallery here'])

    with pytest.raises(PlaceholderNotFound):
        run(realize_gallery(service, doc_id, _images(2), GalleryOptions()))
