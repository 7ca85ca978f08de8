from __future__ import annotations

import pytest
from conftest import run

from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.document.model import OBJECT_REPLACEMENT_CHAR, DeleteRange, InlineImage, InsertText, Occurrence
from docbuilder.document.replace import (
    build_replacement_batch,
    format_field_value,
    replace_container,
    replace_fields,
    replace_placeholders,
    replace_with_image,
)
from docbuilder.document.scanner import scan_placeholders
from docbuilder.errors import PlaceholderNotFound


def _service_with(spec):
    service = InMemoryDocumentService()
    return service, service.create(spec)


def test_batch_is_emitted_in_descending_order():
    occurrences = [Occurrence(1, 8, '{{a}}'), Occurrence(30, 37, '{{a}}'), Occurrence(12, 19, '{{a}}')]
    ops = build_replacement_batch(occurrences, lambda _occ: 'v')

    assert ops == [
        DeleteRange(30, 37),
        InsertText(30, 'v'),
        DeleteRange(12, 19),
        InsertText(12, 'v'),
        DeleteRange(1, 8),
        InsertText(1, 'v'),
    ]


def test_composite_values_are_skipped_and_none_deletes():
    occurrences = [Occurrence(1, 6, '{{a}}'), Occurrence(10, 15, '{{b}}'), Occurrence(20, 25, '{{c}}')]
    values = {'{{a}}': None, '{{b}}': {'nested': True}, '{{c}}': ['x']}
    ops = build_replacement_batch(occurrences, lambda occ: values[occ.token])

    assert ops == [DeleteRange(1, 6)]


@pytest.mark.parametrize(
    ('key', 'value', 'expected'),
    [
        ('notes', '  lots   of\tspace  ', 'lots of space'),
        ('notes', 'line one\nline two\n\n\nline three', 'line one\n\nline two\n\nline three'),
        ('flag', True, 'Yes'),
        ('flag', False, 'No'),
        ('empty', None, ''),
        ('price', 1200, '1200'),
        ('condition_summary', 'overallCondition: Good\nsurfaceWear: minor', 'overall Condition: Good\n\nsurface Wear: minor'),
        ('style_summary', '- Ming: blue - Qing: red', '• Ming: blue\n\n• Qing: red'),
    ],
)
def test_format_field_value(key, value, expected):
    assert format_field_value(key, value) == expected


def test_field_pass_replaces_everywhere_and_is_idempotent():
    service, doc_id = _service_with(
        [
            '{{title}} by {{artist}}',
            {'table': [['{{title}}', ['{{artist}}', {'table': [['{{title}}']]}]]]},
            'Unused {{unknown}}',
        ]
    )
    data = {'title': 'Ming Vase', 'artist': 'Unknown   Potter', 'details': {'skip': 'me'}}

    counts, ops = run(replace_fields(service, doc_id, data))
    snapshot = run(service.get_snapshot(doc_id))

    assert counts == {'title': 3, 'artist': 2}
    assert len(ops) == 10
    assert scan_placeholders(snapshot, '{{title}}') == []
    assert scan_placeholders(snapshot, '{{artist}}') == []
    assert snapshot.text().startswith('Ming Vase by Unknown Potter\n')
    assert '{{unknown}}' in snapshot.text()

    again_counts, again_ops = run(replace_fields(service, doc_id, data))
    assert again_counts == {}
    assert again_ops == []


def test_container_pass_runs_before_fields_on_fresh_offsets():
    service, doc_id = _service_with(['{{appraisal_card}}', 'Title: {{title}}', '{{statistics_section}} {{title}}'])
    containers = {
        'appraisal_card': 'APPRAISAL SUMMARY\nItem Title: Ming Vase\nMedium: Porcelain',
        'statistics_section': '',
        'missing_section': 'never used',
    }

    report = run(replace_placeholders(service, doc_id, {'title': 'Ming Vase'}, containers))
    text = run(service.get_snapshot(doc_id)).text()

    assert report.containers_replaced == {'appraisal_card': 1, 'statistics_section': 1}
    assert report.fields_replaced == {'title': 2}
    assert report.total_replaced == 4
    assert any('missing_section' in warning for warning in report.warnings)
    assert text == (
        'APPRAISAL SUMMARY\nItem Title: Ming Vase\nMedium: Porcelain\n'
        'Title: Ming Vase\n'
        ' Ming Vase\n'
    )


def test_no_placeholders_reports_warning():
    service, doc_id = _service_with(['Static text only'])
    report = run(replace_placeholders(service, doc_id, {'title': 'x'}, {}))

    assert report.total_replaced == 0
    assert report.op_count == 0
    assert 'No placeholders found to replace.' in report.warnings


def test_replace_container_without_placeholder_raises():
    service, doc_id = _service_with(['nothing'])

    with pytest.raises(PlaceholderNotFound):
        run(replace_container(service, doc_id, 'appraisal_card', 'content'))


def test_replace_with_image_swaps_every_occurrence():
    service, doc_id = _service_with(['{{main_image}}', 'Again: {{main_image}}'])
    count = run(replace_with_image(service, doc_id, 'main_image', uri='https://img.example.com/m.jpg', width=400, height=300))
    snapshot = run(service.get_snapshot(doc_id))

    assert count == 2
    assert scan_placeholders(snapshot, '{{main_image}}') == []
    images = snapshot.images()
    assert len(images) == 2
    assert all(isinstance(image, InlineImage) and (image.width, image.height) == (400, 300) for image in images)
    assert snapshot.text() == f'{OBJECT_REPLACEMENT_CHAR}\nAgain: {OBJECT_REPLACEMENT_CHAR}\n'
