from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from docbuilder.errors import ContentSourceError
from docbuilder.types import ReportInputs, utcnow


logger = logging.getLogger(__name__)

IMAGE_FIELDS = {'main': 'main', 'age': 'age', 'signature': 'signature'}
GALLERY_FIELD = 'googlevision'
LINK_FIELDS = {'pdf_link': 'pdflink', 'doc_link': 'doclink'}
NOTES_FIELD = 'notes'


@dataclass
class WordPressConfig:
    base_url: str
    username: str | None
    app_password: str | None
    post_type: str
    timeout_seconds: int


def extract_image_url(value: Any) -> str | None:
    if isinstance(value, str) and value.startswith('http'):
        return value
    if isinstance(value, dict) and value.get('url'):
        return str(value['url'])
    return None


def extract_gallery_urls(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    urls = [extract_image_url(item) for item in value]
    return [url for url in urls if url]


def inputs_from_post(post: dict[str, Any]) -> ReportInputs:
    acf = post.get('acf') if isinstance(post.get('acf'), dict) else {}
    title = post.get('title')
    if isinstance(title, dict):
        title = title.get('rendered')
    raw_date = str(post.get('date') or '')
    images = {key: extract_image_url(acf.get(field)) for key, field in IMAGE_FIELDS.items()}
    return ReportInputs(
        title=html.unescape(str(title or '')).strip(),
        date=raw_date.split('T')[0] or None,
        fields=dict(acf),
        images={key: url for key, url in images.items() if url},
        gallery_urls=extract_gallery_urls(acf.get(GALLERY_FIELD)),
    )


class WordPressContentSource:
    """Content Source over the WordPress REST API with ACF fields."""

    def __init__(self, cfg: WordPressConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    def _auth(self) -> httpx.BasicAuth | None:
        if not self.cfg.username or not self.cfg.app_password:
            return None
        return httpx.BasicAuth(self.cfg.username, self.cfg.app_password)

    def _post_url(self, report_id: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}/{self.cfg.post_type.strip('/')}/{report_id}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=max(5, int(self.cfg.timeout_seconds)),
            auth=self._auth(),
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ContentSourceError(
                    f'WordPress {method} {url} returned {exc.response.status_code}: {exc.response.text[:300]}'
                ) from exc
            except httpx.HTTPError as exc:
                raise ContentSourceError(f'WordPress {method} {url} failed: {exc}') from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise ContentSourceError(f'WordPress {method} {url} returned invalid JSON') from exc
        if not isinstance(data, dict):
            raise ContentSourceError(f'WordPress {method} {url} returned a non-object payload')
        return data

    async def fetch_report_inputs(self, report_id: str) -> ReportInputs:
        post = await self._send('GET', self._post_url(report_id), params={'_fields': 'acf,title,date'})
        return inputs_from_post(post)

    async def persist_links(self, report_id: str, links: dict[str, str]) -> None:
        acf = {LINK_FIELDS.get(key, key): value for key, value in links.items()}
        await self._send('POST', self._post_url(report_id), json={'acf': acf})
        logger.info('Links stored on %s %s', self.cfg.post_type, report_id)

    async def add_note(self, report_id: str, note: str) -> None:
        current = await self._send('GET', self._post_url(report_id), params={'_fields': f'acf.{NOTES_FIELD}'})
        existing = str((current.get('acf') or {}).get(NOTES_FIELD) or '')
        entry = f'[{utcnow().strftime("%Y-%m-%d %H:%M:%S")}] {note}'
        notes = f'{existing}\n{entry}' if existing else entry
        await self._send('POST', self._post_url(report_id), json={'acf': {NOTES_FIELD: notes}})
