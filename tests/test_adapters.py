from __future__ import annotations

import json

import httpx
import pytest
from conftest import run, write_report

from docbuilder.adapters.google_docs import GoogleDocsConfig, GoogleDocsDocumentService, parse_document, to_requests
from docbuilder.adapters.google_drive import GoogleDriveAdapter, GoogleDriveConfig, multipart_body
from docbuilder.adapters.local import LocalContentSource, LocalExportConfig, LocalExporter, LocalFileStore
from docbuilder.adapters.wordpress import WordPressConfig, WordPressContentSource, inputs_from_post
from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.document.model import DeleteRange, InlineImage, InsertImage, InsertText, Table, UpdateStyle
from docbuilder.errors import ContentSourceError, DocumentServiceError, ExportError


DOCS_PAYLOAD = {
    'documentId': 'doc-42',
    'body': {
        'content': [
            {'endIndex': 1, 'sectionBreak': {}},
            {
                'startIndex': 1,
                'endIndex': 11,
                'paragraph': {
                    'elements': [
                        {
                            'startIndex': 1,
                            'endIndex': 10,
                            'textRun': {'content': '{{title}}', 'textStyle': {'fontSize': {'magnitude': 18, 'unit': 'PT'}}},
                        },
                        {'startIndex': 10, 'endIndex': 11, 'inlineObjectElement': {'inlineObjectId': 'kix.1'}},
                    ],
                    'paragraphStyle': {'namedStyleType': 'HEADING_1', 'alignment': 'CENTER'},
                },
            },
            {
                'startIndex': 11,
                'endIndex': 20,
                'table': {
                    'tableRows': [
                        {
                            'startIndex': 12,
                            'endIndex': 19,
                            'tableCells': [
                                {
                                    'startIndex': 13,
                                    'endIndex': 19,
                                    'content': [
                                        {
                                            'startIndex': 14,
                                            'endIndex': 19,
                                            'paragraph': {
                                                'elements': [
                                                    {'startIndex': 14, 'endIndex': 19, 'textRun': {'content': 'cell\n'}}
                                                ]
                                            },
                                        }
                                    ],
                                }
                            ],
                        }
                    ]
                },
            },
        ]
    },
    'inlineObjects': {
        'kix.1': {
            'inlineObjectProperties': {
                'embeddedObject': {
                    'imageProperties': {'contentUri': 'https://lh3.example.com/img'},
                    'size': {'width': {'magnitude': 150, 'unit': 'PT'}, 'height': {'magnitude': 100, 'unit': 'PT'}},
                }
            }
        }
    },
}


def _docs(handler) -> GoogleDocsDocumentService:
    cfg = GoogleDocsConfig(base_url='https://docs.example.com/v1', access_token='token-1', timeout_seconds=10)
    return GoogleDocsDocumentService(cfg, transport=httpx.MockTransport(handler))


def _drive(handler) -> GoogleDriveAdapter:
    cfg = GoogleDriveConfig(
        base_url='https://drive.example.com/drive/v3',
        upload_url='https://drive.example.com/upload/drive/v3',
        access_token='token-1',
        timeout_seconds=10,
    )
    return GoogleDriveAdapter(cfg, transport=httpx.MockTransport(handler))


def test_operations_translate_to_docs_requests():
    requests = to_requests(
        [
            DeleteRange(5, 12),
            InsertText(5, 'Vase'),
            InsertImage(9, 'https://img.example.com/a.jpg', 150, 100),
            UpdateStyle(1, 5, {'font_size': 16, 'bold': True}),
            UpdateStyle(1, 5, {'alignment': 'CENTER', 'named_style_type': 'HEADING_3'}, 'paragraph'),
        ]
    )

    assert requests == [
        {'deleteContentRange': {'range': {'startIndex': 5, 'endIndex': 12}}},
        {'insertText': {'location': {'index': 5}, 'text': 'Vase'}},
        {
            'insertInlineImage': {
                'location': {'index': 9},
                'uri': 'https://img.example.com/a.jpg',
                'objectSize': {'height': {'magnitude': 100, 'unit': 'PT'}, 'width': {'magnitude': 150, 'unit': 'PT'}},
            }
        },
        {
            'updateTextStyle': {
                'range': {'startIndex': 1, 'endIndex': 5},
                'textStyle': {'fontSize': {'magnitude': 16, 'unit': 'PT'}, 'bold': True},
                'fields': 'fontSize,bold',
            }
        },
        {
            'updateParagraphStyle': {
                'range': {'startIndex': 1, 'endIndex': 5},
                'paragraphStyle': {'alignment': 'CENTER', 'namedStyleType': 'HEADING_3'},
                'fields': 'alignment,namedStyleType',
            }
        },
    ]


def test_unsupported_style_attribute_is_rejected():
    with pytest.raises(DocumentServiceError, match='strikethrough'):
        to_requests([UpdateStyle(1, 2, {'strikethrough': True})])


def test_parse_document_builds_tree():
    tree = parse_document(DOCS_PAYLOAD)

    assert tree.document_id == 'doc-42'
    paragraph, table = tree.body
    assert paragraph.style == {'alignment': 'CENTER', 'named_style_type': 'HEADING_1'}
    assert paragraph.elements[0].style == {'font_size': 18}
    image = paragraph.elements[1]
    assert isinstance(image, InlineImage)
    assert (image.uri, image.width, image.height) == ('https://lh3.example.com/img', 150.0, 100.0)
    assert isinstance(table, Table)
    assert table.rows[0].cells[0].content[0].text == 'cell\n'


def test_docs_service_round_trip():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == 'GET':
            return httpx.Response(200, json=DOCS_PAYLOAD)
        return httpx.Response(200, json={'documentId': 'doc-42', 'replies': []})

    service = _docs(handler)
    tree = run(service.get_snapshot('doc-42'))
    run(service.apply_batch('doc-42', [DeleteRange(1, 10), InsertText(1, 'Vase')]))
    run(service.apply_batch('doc-42', []))

    assert tree.document_id == 'doc-42'
    assert len(seen) == 2
    post = seen[1]
    assert post.url.path == '/v1/documents/doc-42:batchUpdate'
    assert post.headers['authorization'] == 'Bearer token-1'
    assert [next(iter(item)) for item in json.loads(post.content)['requests']] == ['deleteContentRange', 'insertText']


def test_docs_service_error_is_wrapped():
    service = _docs(lambda request: httpx.Response(500, text='backend unavailable'))

    with pytest.raises(DocumentServiceError, match='returned 500: backend unavailable'):
        run(service.apply_batch('doc-42', [InsertText(1, 'x')]))


def test_multipart_body_layout():
    body = multipart_body({'name': 'a.pdf'}, b'%PDF-1.4', 'application/pdf', 'B')

    assert body.startswith(b'--B\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n{"name": "a.pdf"}')
    assert b'\r\n--B\r\nContent-Type: application/pdf\r\n\r\n%PDF-1.4' in body
    assert body.endswith(b'\r\n--B--\r\n')


def test_drive_copy_move_and_upload():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        if path.endswith('/copy'):
            return httpx.Response(200, json={'id': 'copy-1'})
        if request.method == 'GET':
            return httpx.Response(200, json={'parents': ['root-a', 'root-b']})
        if request.method == 'PATCH':
            return httpx.Response(200, json={'id': 'copy-1', 'parents': ['folder-9']})
        return httpx.Response(200, json={'id': 'pdf-7'})

    drive = _drive(handler)
    stored = run(drive.copy_template('tmpl-1', name='Report - Vase'))
    run(drive.move(stored.id, 'folder-9'))
    link = run(drive.upload(b'%PDF-1.4', 'sess-1.pdf', 'folder-9'))

    assert stored.id == 'copy-1'
    assert stored.link == 'https://docs.google.com/document/d/copy-1/edit'
    assert json.loads(seen[0].content) == {'name': 'Report - Vase'}
    patch = seen[2]
    assert patch.url.params['addParents'] == 'folder-9'
    assert patch.url.params['removeParents'] == 'root-a,root-b'
    upload = seen[3]
    assert upload.url.path == '/upload/drive/v3/files'
    assert upload.url.params['uploadType'] == 'multipart'
    assert upload.headers['content-type'].startswith('multipart/related; boundary=')
    assert b'"parents": ["folder-9"]' in upload.content
    assert link == 'https://drive.google.com/file/d/pdf-7/view'


def test_drive_export_failures_raise_export_error():
    drive = _drive(lambda request: httpx.Response(403, text='export not allowed'))
    with pytest.raises(ExportError, match='403'):
        run(drive.export_as_pdf('doc-1'))

    empty = _drive(lambda request: httpx.Response(200, content=b''))
    with pytest.raises(ExportError, match='empty body'):
        run(empty.export_as_pdf('doc-1'))


def test_inputs_from_post():
    post = {
        'title': {'rendered': 'Ming &amp; Qing Vase'},
        'date': '2024-05-01T10:30:00',
        'acf': {
            'main': {'url': 'https://cdn.example.com/main.jpg'},
            'age': 'https://cdn.example.com/age.jpg',
            'signature': False,
            'googlevision': ['https://cdn.example.com/g1.jpg', {'url': 'https://cdn.example.com/g2.jpg'}, 7],
            'value': '12500',
        },
    }
    inputs = inputs_from_post(post)

    assert inputs.title == 'Ming & Qing Vase'
    assert inputs.date == '2024-05-01'
    assert inputs.images == {'main': 'https://cdn.example.com/main.jpg', 'age': 'https://cdn.example.com/age.jpg'}
    assert inputs.gallery_urls == ['https://cdn.example.com/g1.jpg', 'https://cdn.example.com/g2.jpg']
    assert inputs.fields['value'] == '12500'


def test_wordpress_links_and_notes():
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == 'GET':
            return httpx.Response(200, json={'acf': {'notes': 'earlier note'}})
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={'id': 10})

    cfg = WordPressConfig(
        base_url='https://wp.example.com/wp-json/wp/v2',
        username='editor',
        app_password='app pass',
        post_type='appraisals',
        timeout_seconds=10,
    )
    source = WordPressContentSource(cfg, transport=httpx.MockTransport(handler))
    run(source.persist_links('10', {'pdf_link': 'https://pdf', 'doc_link': 'https://doc'}))
    run(source.add_note('10', 'PDF generated successfully.'))

    assert posted[0] == {'acf': {'pdflink': 'https://pdf', 'doclink': 'https://doc'}}
    notes = posted[1]['acf']['notes']
    assert notes.startswith('earlier note\n[')
    assert notes.endswith('] PDF generated successfully.')


def test_wordpress_missing_post_raises():
    cfg = WordPressConfig(
        base_url='https://wp.example.com/wp-json/wp/v2',
        username=None,
        app_password=None,
        post_type='appraisals',
        timeout_seconds=10,
    )
    source = WordPressContentSource(cfg, transport=httpx.MockTransport(lambda request: httpx.Response(404, json={})))

    with pytest.raises(ContentSourceError, match='404'):
        run(source.fetch_report_inputs('999'))


def test_local_content_source(tmp_path):
    write_report(tmp_path, 'r1', title='Vase', fields={'value': 10}, unrelated='ignored')
    source = LocalContentSource(tmp_path)

    inputs = run(source.fetch_report_inputs('r1'))
    run(source.persist_links('r1', {'pdf_link': 'file:///a.pdf'}))
    run(source.add_note('r1', 'first'))
    stored = json.loads((tmp_path / 'r1.json').read_text(encoding='utf-8'))

    assert inputs.title == 'Vase'
    assert inputs.fields == {'value': 10}
    assert stored['links'] == {'pdf_link': 'file:///a.pdf'}
    assert [item['note'] for item in stored['notes']] == ['first']
    with pytest.raises(ContentSourceError, match='not found'):
        run(source.fetch_report_inputs('r2'))
    with pytest.raises(ValueError):
        run(source.fetch_report_inputs('../r1'))


def test_local_file_store_and_exporter(tmp_path):
    documents = InMemoryDocumentService()
    templates_dir = tmp_path / 'templates'
    templates_dir.mkdir()
    (templates_dir / 'disk.json').write_text(json.dumps({'blocks': ['From disk {{title}}']}), encoding='utf-8')
    files = LocalFileStore(documents, templates={'inline': ['Inline']}, templates_dir=templates_dir)

    first = run(files.copy_template('disk', name='Report - Vase'))
    second = run(files.copy_template('inline'))
    run(files.move(first.id, 'reports'))

    assert first.link == f'local://documents/{first.id}'
    assert run(documents.get_snapshot(first.id)).text() == 'From disk {{title}}\n'
    assert run(documents.get_snapshot(second.id)).text() == 'Inline\n'
    assert files.folders == {first.id: 'reports'}
    with pytest.raises(DocumentServiceError, match='Template not found'):
        run(files.copy_template('missing'))

    exporter = LocalExporter(documents, LocalExportConfig(output_dir=tmp_path / 'out'))
    data = run(exporter.export_as_pdf(first.id))
    link = run(exporter.upload(data, 'sess.pdf', 'reports'))

    assert data.startswith(b'%PDF')
    assert link == (tmp_path / 'out' / 'reports' / 'sess.pdf').resolve().as_uri()
