from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from docbuilder.errors import ImageFetchError
from docbuilder.types import FetchedImage


logger = logging.getLogger(__name__)


@dataclass
class ImageFetchConfig:
    timeout_seconds: int
    max_bytes: int
    max_width: int
    max_height: int
    concurrency: int


def decode_dimensions(data: bytes) -> tuple[int, int]:
    import pymupdf

    try:
        pixmap = pymupdf.Pixmap(data)
    except Exception as exc:
        raise ValueError(f'undecodable image data: {exc}') from exc
    width, height = int(pixmap.width), int(pixmap.height)
    if width <= 0 or height <= 0:
        raise ValueError(f'invalid decoded size {width}x{height}')
    return width, height


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


class HttpImageFetcher:
    def __init__(self, cfg: ImageFetchConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=max(1, int(self.cfg.timeout_seconds)),
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch(self, uri: str, *, source_ref: str | None = None) -> FetchedImage:
        async with self._client() as client:
            return await self._fetch_with(client, uri, source_ref=source_ref or uri)

    async def _fetch_with(self, client: httpx.AsyncClient, uri: str, *, source_ref: str) -> FetchedImage:
        target = str(uri or '').strip()
        if not target.startswith(('http://', 'https://')):
            raise ImageFetchError(target, 'not an http(s) url')
        try:
            response = await client.get(target)
        except httpx.HTTPError as exc:
            raise ImageFetchError(target, f'{type(exc).__name__}: {exc}') from exc
        if response.status_code != 200:
            raise ImageFetchError(target, f'HTTP {response.status_code}')

        content_type = str(response.headers.get('content-type') or '').split(';')[0].strip().lower()
        if not content_type.startswith('image/'):
            raise ImageFetchError(target, f'unexpected content type {content_type or "<missing>"}')
        body = response.content
        if not body:
            raise ImageFetchError(target, 'empty body')
        if len(body) > int(self.cfg.max_bytes):
            raise ImageFetchError(target, f'{len(body)} bytes exceeds limit {int(self.cfg.max_bytes)}')

        try:
            width, height = decode_dimensions(body)
        except ValueError as exc:
            raise ImageFetchError(target, str(exc)) from exc
        fitted_width, fitted_height = fit_within(width, height, self.cfg.max_width, self.cfg.max_height)
        return FetchedImage(source_ref=source_ref, uri=target, width=fitted_width, height=fitted_height)

    async def fetch_many(self, uris: Sequence[str]) -> list[FetchedImage]:
        semaphore = asyncio.Semaphore(max(1, int(self.cfg.concurrency)))

        async with self._client() as client:

            async def one(index: int, uri: str) -> FetchedImage:
                source_ref = f'image[{index}]'
                async with semaphore:
                    try:
                        return await self._fetch_with(client, uri, source_ref=source_ref)
                    except ImageFetchError as exc:
                        logger.warning('Dropping %s: %s', source_ref, exc)
                        return FetchedImage(source_ref=source_ref, uri=str(uri or ''), error=exc.reason)

            return list(await asyncio.gather(*(one(index, uri) for index, uri in enumerate(uris))))
