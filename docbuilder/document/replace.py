from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from docbuilder.document.model import EditOp, Occurrence
from docbuilder.document.offsets import OffsetSpace
from docbuilder.document.scanner import placeholder_token, scan_many, scan_placeholders
from docbuilder.errors import PlaceholderNotFound
from docbuilder.ports import DocumentService


logger = logging.getLogger(__name__)

_HORIZONTAL_WS_PATTERN = re.compile(r'[^\S\n]+')
_CAMEL_BOUNDARY_PATTERN = re.compile(r'(?<=[a-z0-9])(?=[A-Z])')

ValueProvider = Callable[[Occurrence], Any]


def is_composite(value: Any) -> bool:
    return isinstance(value, (dict, list, tuple, set))


def _humanize_key(key: str) -> str:
    spaced = _CAMEL_BOUNDARY_PATTERN.sub(' ', key.replace('_', ' '))
    return ' '.join(spaced.split())


def format_summary_field(text: str) -> str:
    if ':' not in text:
        return text
    stripped = text.strip()
    if stripped.startswith('-'):
        items = [item.strip() for item in stripped.split('-') if item.strip()]
        if not items:
            return text
        return '\n\n'.join(f'• {item}' for item in items)

    lines = [line.strip() for line in re.split(r'[\r\n-]', stripped) if line.strip()]
    formatted: list[str] = []
    for line in lines:
        colon = line.find(':')
        if colon > 0:
            key = _humanize_key(line[:colon].strip())
            value = line[colon + 1:].strip()
            formatted.append(f'{key}: {value}')
        else:
            formatted.append(line)
    return '\n\n'.join(formatted)


def format_field_value(key: str, value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        text = 'Yes' if value else 'No'
    else:
        text = str(value)
    if key.endswith('_summary') and ':' in text:
        return format_summary_field(text)
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    paragraphs: list[str] = []
    for line in text.split('\n'):
        collapsed = _HORIZONTAL_WS_PATTERN.sub(' ', line).strip()
        if collapsed:
            paragraphs.append(collapsed)
    return '\n\n'.join(paragraphs)


def build_replacement_batch(occurrences: list[Occurrence], value_provider: ValueProvider) -> list[EditOp]:
    """Delete-then-insert for every occurrence, highest offset first.

    Composite values are skipped; callers render them into text beforehand.
    """
    space = OffsetSpace()
    for occurrence in sorted(occurrences, key=lambda item: item.start, reverse=True):
        value = value_provider(occurrence)
        if is_composite(value):
            continue
        space.replace_text(occurrence.start, occurrence.end, '' if value is None else str(value))
    return space.ops()


@dataclass
class ReplacementReport:
    containers_replaced: dict[str, int] = field(default_factory=dict)
    fields_replaced: dict[str, int] = field(default_factory=dict)
    op_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def total_replaced(self) -> int:
        return sum(self.containers_replaced.values()) + sum(self.fields_replaced.values())


async def replace_container(
    documents: DocumentService,
    document_id: str,
    key: str,
    content: str,
) -> int:
    token = placeholder_token(key)
    snapshot = await documents.get_snapshot(document_id)
    occurrences = scan_placeholders(snapshot, token)
    if not occurrences:
        raise PlaceholderNotFound(token)
    ops = build_replacement_batch(occurrences, lambda _occurrence: content)
    await documents.apply_batch(document_id, ops)
    return len(occurrences)


async def replace_with_image(
    documents: DocumentService,
    document_id: str,
    key: str,
    *,
    uri: str,
    width: float,
    height: float,
) -> int:
    """Swap every ``{{key}}`` for an inline image of the given size."""
    token = placeholder_token(key)
    snapshot = await documents.get_snapshot(document_id)
    occurrences = scan_placeholders(snapshot, token)
    if not occurrences:
        raise PlaceholderNotFound(token)
    space = OffsetSpace()
    for occurrence in reversed(occurrences):
        space.replace_with_image(occurrence.start, occurrence.end, uri=uri, width=width, height=height)
    await documents.apply_batch(document_id, space.ops())
    return len(occurrences)


def field_tokens(data: Mapping[str, Any]) -> dict[str, str]:
    tokens: dict[str, str] = {}
    for key, value in data.items():
        if is_composite(value):
            continue
        tokens[placeholder_token(key)] = str(key)
    return tokens


async def replace_fields(
    documents: DocumentService,
    document_id: str,
    data: Mapping[str, Any],
) -> tuple[dict[str, int], list[EditOp]]:
    tokens = field_tokens(data)
    snapshot = await documents.get_snapshot(document_id)
    occurrences = scan_many(snapshot, tokens.keys())
    counts: dict[str, int] = {}
    for occurrence in occurrences:
        key = tokens[occurrence.token]
        counts[key] = counts.get(key, 0) + 1

    def provide(occurrence: Occurrence) -> Any:
        key = tokens[occurrence.token]
        return format_field_value(key, data.get(key))

    ops = build_replacement_batch(occurrences, provide)
    if ops:
        await documents.apply_batch(document_id, ops)
    return counts, ops


async def replace_placeholders(
    documents: DocumentService,
    document_id: str,
    data: Mapping[str, Any],
    containers: Mapping[str, str] | None = None,
) -> ReplacementReport:
    """Container pass first, then a field pass against a freshly fetched snapshot.

    Each container substitution re-reads the document because a composite
    section shifts every offset after it.
    """
    report = ReplacementReport()
    for key, content in (containers or {}).items():
        try:
            count = await replace_container(documents, document_id, key, content)
        except PlaceholderNotFound as exc:
            report.warnings.append(str(exc))
            logger.warning('%s', exc)
            continue
        report.containers_replaced[key] = count

    counts, ops = await replace_fields(documents, document_id, data)
    report.fields_replaced = counts
    report.op_count = len(ops)
    if not ops:
        report.warnings.append('No placeholders found to replace.')
    logger.info('%s placeholder occurrence(s) replaced in %s', report.total_replaced, document_id)
    return report
