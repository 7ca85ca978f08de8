from __future__ import annotations

import io
from typing import Any
from xml.sax.saxutils import escape

from reportlab.graphics.shapes import Drawing, Rect, String
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.platypus import Paragraph as PdfParagraph
from reportlab.platypus import SimpleDocTemplate, Spacer
from reportlab.platypus import Table as PdfTable
from reportlab.platypus import TableStyle

from docbuilder.document.model import Block, DocumentTree, InlineImage, Paragraph, TextRun


_ALIGNMENTS = {
    'START': TA_LEFT,
    'LEFT': TA_LEFT,
    'CENTER': TA_CENTER,
    'END': TA_RIGHT,
    'RIGHT': TA_RIGHT,
    'JUSTIFIED': TA_JUSTIFY,
}


def _contains_cjk(text: str) -> bool:
    for ch in text:
        if '\u4e00' <= ch <= '\u9fff':
            return True
    return False


def _pick_font(text: str, preferred: str) -> str:
    if _contains_cjk(text):
        try:
            pdfmetrics.registerFont(UnicodeCIDFont('STSong-Light'))
            return 'STSong-Light'
        except Exception:
            return preferred
    return preferred


def _build_styles(font: str, title_font_size: int, body_font_size: int) -> dict[str, ParagraphStyle]:
    styles = getSampleStyleSheet()
    normal = ParagraphStyle(
        'DBBody',
        parent=styles['Normal'],
        fontName=font,
        fontSize=body_font_size,
        leading=max(13, int(body_font_size * 1.45)),
        spaceAfter=4,
    )
    return {
        'NORMAL_TEXT': normal,
        'TITLE': ParagraphStyle(
            'DBTitle',
            parent=styles['Title'],
            fontName=font,
            fontSize=title_font_size + 3,
            leading=int((title_font_size + 3) * 1.3),
        ),
        'HEADING_1': ParagraphStyle(
            'DBH1',
            parent=styles['Heading1'],
            fontName=font,
            fontSize=title_font_size,
            leading=max(18, int(title_font_size * 1.35)),
            spaceBefore=8,
            spaceAfter=6,
        ),
        'HEADING_2': ParagraphStyle(
            'DBH2',
            parent=styles['Heading2'],
            fontName=font,
            fontSize=max(12, int(title_font_size * 0.82)),
            leading=max(14, int(title_font_size * 1.1)),
            spaceBefore=6,
            spaceAfter=4,
        ),
        'HEADING_3': ParagraphStyle(
            'DBH3',
            parent=styles['Heading3'],
            fontName=font,
            fontSize=max(11, int(title_font_size * 0.72)),
            leading=max(13, int(title_font_size * 1.0)),
            spaceBefore=5,
            spaceAfter=3,
        ),
    }


def _paragraph_style(paragraph: Paragraph, styles: dict[str, ParagraphStyle]) -> ParagraphStyle:
    named = str(paragraph.style.get('named_style_type') or 'NORMAL_TEXT')
    base = styles.get(named, styles['NORMAL_TEXT'])
    alignment = paragraph.style.get('alignment')
    if alignment in _ALIGNMENTS:
        return ParagraphStyle(f'{base.name}-{alignment}', parent=base, alignment=_ALIGNMENTS[alignment])
    return base


def _run_markup(run: TextRun) -> str:
    text = escape(run.content.rstrip('\n')).replace('\n', '<br/>')
    if not text:
        return ''
    size = run.style.get('font_size')
    if size:
        text = f'<font size="{int(size)}">{text}</font>'
    if run.style.get('bold'):
        text = f'<b>{text}</b>'
    if run.style.get('italic'):
        text = f'<i>{text}</i>'
    return text


def _image_box(image: InlineImage) -> Drawing:
    # Remote images are not downloaded here; a framed box of the inserted size stands in.
    width, height = max(1.0, float(image.width)), max(1.0, float(image.height))
    drawing = Drawing(width, height)
    drawing.add(Rect(0, 0, width, height, strokeColor=colors.grey, fillColor=colors.whitesmoke))
    label = image.uri.rsplit('/', 1)[-1][:40] or 'image'
    drawing.add(String(4, height / 2, label, fontSize=7, fillColor=colors.grey))
    return drawing


def _paragraph_flowables(paragraph: Paragraph, styles: dict[str, ParagraphStyle]) -> list[Any]:
    style = _paragraph_style(paragraph, styles)
    markup: list[str] = []
    images: list[InlineImage] = []
    for element in paragraph.elements:
        if isinstance(element, TextRun):
            markup.append(_run_markup(element))
        else:
            images.append(element)

    flowables: list[Any] = []
    text = ''.join(markup)
    if text.strip():
        flowables.append(PdfParagraph(text, style))
    if images:
        row = PdfTable([[_image_box(image) for image in images]], hAlign='LEFT')
        row.setStyle(TableStyle([('VALIGN', (0, 0), (-1, -1), 'TOP')]))
        flowables.append(row)
    if not flowables:
        flowables.append(Spacer(1, 2 * mm))
    return flowables


def _block_flowables(blocks: tuple[Block, ...], styles: dict[str, ParagraphStyle]) -> list[Any]:
    story: list[Any] = []
    for block in blocks:
        if isinstance(block, Paragraph):
            story.extend(_paragraph_flowables(block, styles))
            continue
        data = [[_block_flowables(cell.content, styles) for cell in row.cells] for row in block.rows]
        if not data:
            continue
        table = PdfTable(data, hAlign='LEFT')
        table.setStyle(
            TableStyle(
                [
                    ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
                    ('VALIGN', (0, 0), (-1, -1), 'TOP'),
                ]
            )
        )
        story.append(table)
        story.append(Spacer(1, 2 * mm))
    return story


def render_document_pdf(
    tree: DocumentTree,
    *,
    title: str | None = None,
    font_name: str = 'Helvetica',
    title_font_size: int = 15,
    body_font_size: int = 10,
    margin: int = 48,
) -> bytes:
    """Render a document snapshot to PDF bytes with reportlab."""
    font = _pick_font(tree.text(), font_name)
    styles = _build_styles(font, title_font_size, body_font_size)

    story = _block_flowables(tree.body, styles)
    if not story:
        story.append(PdfParagraph('Empty document', styles['NORMAL_TEXT']))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=margin,
        rightMargin=margin,
        topMargin=margin,
        bottomMargin=margin,
        title=title or tree.document_id,
    )
    doc.build(story)
    return buffer.getvalue()
