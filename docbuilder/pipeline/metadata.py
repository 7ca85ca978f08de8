from __future__ import annotations

import logging
from typing import Any, Mapping

from docbuilder.report.formatters import format_currency
from docbuilder.types import MetadataValidation


logger = logging.getLogger(__name__)


def validate_metadata(metadata: dict[str, Any], required_fields: list[str]) -> MetadataValidation:
    missing: list[str] = []
    empty: list[str] = []
    for name in required_fields:
        if name not in metadata:
            missing.append(name)
            metadata[name] = ''
            continue
        value = metadata[name]
        if value is None or value == '' or value == [] or value == {} or value is False:
            empty.append(name)
            if not isinstance(value, (list, dict)):
                metadata[name] = ''
    return MetadataValidation(is_valid=not missing, missing_fields=missing, empty_fields=empty)


def process_metadata(
    fields: Mapping[str, Any],
    required_fields: list[str],
) -> tuple[dict[str, Any], MetadataValidation]:
    """Copy report fields, normalize required ones and derive ``appraisal_value``.

    Missing required fields are filled with ``''`` so placeholders still get
    cleared; they are reported, never fatal.
    """
    metadata: dict[str, Any] = dict(fields)

    raw_value = metadata.get('value')
    if raw_value is None or raw_value == '':
        metadata.setdefault('appraisal_value', '')
    else:
        formatted = format_currency(raw_value)
        metadata['appraisal_value'] = formatted if formatted != 'N/A' else str(raw_value)

    validation = validate_metadata(metadata, required_fields)
    if validation.missing_fields:
        logger.warning('Missing required metadata fields: %s', ', '.join(validation.missing_fields))
    if validation.empty_fields:
        logger.info('Empty metadata fields: %s', ', '.join(validation.empty_fields))
    return metadata, validation


def select_template_id(
    report_type: str | None,
    *,
    default_template_id: str | None,
    overrides: Mapping[str, str],
) -> str:
    normalized = str(report_type or '').strip()
    if normalized and normalized in overrides:
        template_id = str(overrides[normalized] or '').strip()
        if not template_id:
            raise ValueError(f'Template for report type {normalized!r} is configured empty')
        return template_id
    template_id = str(default_template_id or '').strip()
    if not template_id:
        raise ValueError('Default template id is not configured (TEMPLATE_ID)')
    return template_id
