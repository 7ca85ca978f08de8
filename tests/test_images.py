from __future__ import annotations

import httpx
import pymupdf
import pytest
from conftest import run

from docbuilder.errors import ImageFetchError
from docbuilder.images import HttpImageFetcher, ImageFetchConfig, decode_dimensions, fit_within


def _png(width: int = 40, height: int = 20) -> bytes:
    pixmap = pymupdf.Pixmap(pymupdf.csRGB, pymupdf.IRect(0, 0, width, height), False)
    pixmap.clear_with(255)
    return pixmap.tobytes('png')


PNG = _png()


def _fetcher(handler, **overrides) -> HttpImageFetcher:
    values = {'timeout_seconds': 5, 'max_bytes': 1024 * 1024, 'max_width': 200, 'max_height': 150, 'concurrency': 2}
    values.update(overrides)
    return HttpImageFetcher(ImageFetchConfig(**values), transport=httpx.MockTransport(handler))


def _serve(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == '/ok.png':
        return httpx.Response(200, content=PNG, headers={'content-type': 'image/png'})
    if path == '/page.html':
        return httpx.Response(200, content=b'<html></html>', headers={'content-type': 'text/html; charset=utf-8'})
    if path == '/empty.png':
        return httpx.Response(200, content=b'', headers={'content-type': 'image/png'})
    if path == '/garbage.png':
        return httpx.Response(200, content=b'not really a png', headers={'content-type': 'image/png'})
    return httpx.Response(404)


def test_decode_and_fit():
    assert decode_dimensions(PNG) == (40, 20)
    assert fit_within(40, 20, 200, 150) == (200, 100)
    assert fit_within(1000, 2000, 200, 150) == (75, 150)
    with pytest.raises(ValueError):
        decode_dimensions(b'\x00\x01')


def test_fetch_scales_into_bounds():
    image = run(_fetcher(_serve).fetch('https://img.example.com/ok.png', source_ref='main'))

    assert image.valid
    assert image.source_ref == 'main'
    assert (image.width, image.height) == (200, 100)


@pytest.mark.parametrize(
    ('path', 'reason'),
    [
        ('/missing.png', 'HTTP 404'),
        ('/page.html', 'unexpected content type text/html'),
        ('/empty.png', 'empty body'),
        ('/garbage.png', 'undecodable image data'),
    ],
)
def test_fetch_rejects_bad_responses(path, reason):
    with pytest.raises(ImageFetchError) as excinfo:
        run(_fetcher(_serve).fetch(f'https://img.example.com{path}'))

    assert reason in excinfo.value.reason


def test_fetch_rejects_oversized_and_non_http():
    with pytest.raises(ImageFetchError, match='exceeds limit'):
        run(_fetcher(_serve, max_bytes=10).fetch('https://img.example.com/ok.png'))
    with pytest.raises(ImageFetchError, match='not an http'):
        run(_fetcher(_serve).fetch('ftp://img.example.com/ok.png'))


def test_fetch_many_keeps_order_and_marks_failures():
    uris = [
        'https://img.example.com/ok.png',
        'https://img.example.com/missing.png',
        'https://img.example.com/ok.png',
        'https://img.example.com/page.html',
    ]
    images = run(_fetcher(_serve).fetch_many(uris))

    assert [image.source_ref for image in images] == ['image[0]', 'image[1]', 'image[2]', 'image[3]']
    assert [image.valid for image in images] == [True, False, True, False]
    assert images[1].error == 'HTTP 404'
    assert [image.uri for image in images] == uris
