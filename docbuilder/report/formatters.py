from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping


_NON_NUMERIC_PATTERN = re.compile(r'[^\d.\-]')
_RESULTS_LIMIT = 10


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _NON_NUMERIC_PATTERN.sub('', str(value or ''))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def format_currency(value: Any) -> str:
    if value is None or value == '':
        return 'N/A'
    number = _parse_number(value)
    if number is None:
        return 'N/A'
    sign = '-' if number < 0 else ''
    return f'{sign}${abs(number):,.0f}'


def format_percentage(value: Any) -> str:
    if value is None or value == '':
        return 'N/A'
    text = str(value).strip()
    if text.endswith('%'):
        return text
    try:
        number = float(text)
    except ValueError:
        return 'N/A'
    if number.is_integer():
        return f'{int(number)}%'
    return f'{number:g}%'


def _format_date(value: Any) -> str:
    text = str(value or '').strip()
    if not text:
        return 'Unknown'
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return text
    return f'{parsed.strftime("%b")} {parsed.day}, {parsed.year}'


def _pick(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key)
    text = str(value).strip() if value is not None else ''
    return text or default


def build_summary_card(data: Mapping[str, Any]) -> str:
    lines = [
        'APPRAISAL SUMMARY',
        f"Item Title: {_pick(data, 'title', 'Untitled')}",
        f"Artist/Creator: {_pick(data, 'creator', 'Unknown Artist')}",
        f"Object Type: {_pick(data, 'object_type', 'Art Object')}",
        f"Period/Age: {_pick(data, 'estimated_age', 'Unknown')}",
        f"Medium: {_pick(data, 'medium', 'Unknown')}",
        f"Condition: {_pick(data, 'condition_summary', 'Not assessed')}",
        f"Appraised Value: {_pick(data, 'appraisal_value', 'Not determined')}",
        '',
        'MARKET METRICS',
        f"Market Demand: {format_percentage(data.get('market_demand'))}",
        f"Rarity: {format_percentage(data.get('rarity'))}",
        f"Condition Score: {format_percentage(data.get('condition_score'))}",
    ]
    return '\n'.join(lines)


def build_statistics_section(
    statistics: Mapping[str, Any] | None,
    justification: Mapping[str, Any] | None = None,
    data: Mapping[str, Any] | None = None,
) -> str:
    """Render market statistics, the valuation justification and comparable
    auction results as plain paragraphs."""
    statistics = statistics or {}
    justification = justification or {}
    data = data or {}

    count = statistics.get('count') or 'N/A'
    if statistics.get('average_price'):
        mean = format_currency(statistics['average_price'])
    elif statistics.get('mean'):
        mean = format_currency(statistics['mean'])
    else:
        mean = 'N/A'
    median = format_currency(statistics['median_price']) if statistics.get('median_price') else 'N/A'
    if statistics.get('price_min') and statistics.get('price_max'):
        price_range = f"{format_currency(statistics['price_min'])} - {format_currency(statistics['price_max'])}"
    else:
        price_range = 'Not available'

    summary_text = (
        data.get('statistics_summary_text')
        or statistics.get('summary_text')
        or 'Market statistics analysis is based on comparable items.'
    )
    justification_text = justification.get('explanation') or 'No detailed justification available for this appraisal.'

    lines = [
        'Market Statistics & Valuation Analysis',
        f'Sample Size: {count}',
        f'Average Price: {mean}',
        f'Median Price: {median}',
        f'Price Range: {price_range}',
        f"Value Percentile: {statistics.get('percentile') or 'N/A'}",
        f"Market Confidence: {statistics.get('confidence_level') or 'Low'}",
        '',
        'Statistical Market Analysis',
        str(summary_text).strip(),
        '',
        'Valuation Justification',
        str(justification_text).strip(),
    ]

    results = data.get('top_auction_results') or justification.get('auctionResults') or []
    rows = [row for row in results if isinstance(row, Mapping)][:_RESULTS_LIMIT] if isinstance(results, list) else []
    if rows:
        lines.extend(['', 'Comparable Market Results'])
        for row in rows:
            price = format_currency(row.get('price')) if row.get('price') else 'N/A'
            diff = f" ({row['diff']})" if row.get('diff') else ''
            lines.append(
                f"{row.get('title') or 'Unknown Item'} | {row.get('house') or 'Unknown'} | "
                f"{_format_date(row.get('date'))} | {price}{diff}"
            )

    lines.extend(
        [
            '',
            f'Note: Statistics based on {count} comparable items from auction records and market data.',
        ]
    )
    return '\n'.join(lines)


def title_font_size(title: str) -> int:
    length = len(str(title or ''))
    if length <= 20:
        return 18
    if length <= 40:
        return 16
    return 14


def build_container_sections(data: Mapping[str, Any], keys: list[str]) -> dict[str, str]:
    sections: dict[str, str] = {}
    for key in keys:
        if key == 'appraisal_card':
            sections[key] = build_summary_card(data)
        elif key == 'statistics_section':
            statistics = data.get('statistics')
            if isinstance(statistics, Mapping):
                justification = data.get('justification')
                sections[key] = build_statistics_section(
                    statistics,
                    justification if isinstance(justification, Mapping) else {},
                    data,
                )
            else:
                sections[key] = ''
        else:
            value = data.get(key)
            sections[key] = '' if value is None or isinstance(value, (dict, list)) else str(value)
    return sections
