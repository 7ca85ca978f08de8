from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from docbuilder.config import Settings
from docbuilder.document.offsets import OffsetSpace
from docbuilder.document.replace import replace_placeholders as run_replacement
from docbuilder.document.replace import replace_with_image
from docbuilder.document.scanner import find_text_run
from docbuilder.errors import ContentSourceError, ExportError, ImageFetchError, PlaceholderNotFound
from docbuilder.gallery.realize import GalleryOptions, realize_gallery
from docbuilder.pipeline.context import PipelineContext, RunLog
from docbuilder.pipeline.metadata import process_metadata as normalize_metadata
from docbuilder.pipeline.metadata import select_template_id
from docbuilder.ports import ContentSource, DocumentService, Exporter, FileStore, ImageSource
from docbuilder.report.formatters import build_container_sections, title_font_size
from docbuilder.types import ReportInputs


logger = logging.getLogger(__name__)


class Criticality(str, Enum):
    critical = 'critical'
    non_critical = 'non_critical'


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Warn:
    message: str


@dataclass(frozen=True)
class Abort:
    error: str
    exception: BaseException | None = None


StepOutcome = Union[Continue, Skip, Warn, Abort]


@dataclass
class StepServices:
    content: ContentSource
    documents: DocumentService
    files: FileStore
    exporter: Exporter
    images: ImageSource
    settings: Settings
    log: RunLog


StepFn = Callable[[PipelineContext, StepServices], Awaitable[StepOutcome]]


@dataclass(frozen=True)
class StepDescriptor:
    name: str
    execute: StepFn
    criticality: Criticality = Criticality.critical

    @property
    def is_critical(self) -> bool:
        return self.criticality == Criticality.critical


async def _best_effort_note(services: StepServices, report_id: str, note: str) -> None:
    try:
        await services.content.add_note(report_id, note)
    except ContentSourceError as exc:
        services.log.warn(f'Could not add note to report {report_id}: {exc}')


async def fetch_inputs(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    inputs = await services.content.fetch_report_inputs(ctx.report_id)
    ctx.set('inputs', inputs.model_dump(mode='json'))
    services.log.info(
        f'Fetched report {ctx.report_id}: "{inputs.title}" with {len(inputs.fields)} field(s), '
        f'{len(inputs.gallery_urls)} gallery image(s)'
    )
    return Continue()


async def process_metadata(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    (raw_inputs,) = ctx.require('inputs')
    inputs = ReportInputs.model_validate(raw_inputs)
    fields: dict[str, Any] = dict(inputs.fields)
    if inputs.title:
        fields.setdefault('title', inputs.title)
    if inputs.date:
        fields.setdefault('date', inputs.date)

    metadata, validation = normalize_metadata(fields, services.settings.required_field_names())
    ctx.set('metadata', metadata)
    ctx.set('metadata_validation', validation.model_dump(mode='json'))
    if validation.is_valid:
        services.log.info(f'Metadata processed: {len(metadata)} field(s)')
        return Continue()

    missing = ', '.join(validation.missing_fields)
    await _best_effort_note(services, ctx.report_id, f'PDF generation warning: Missing fields: {missing}')
    return Warn(f'Missing required metadata fields: {missing}')


async def select_template(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    (metadata,) = ctx.require('metadata')
    report_type = ctx.options.get('template_type') or metadata.get('appraisal_type')
    settings = services.settings
    template_id = select_template_id(
        report_type,
        default_template_id=settings.template_id,
        overrides=settings.template_overrides,
    )
    ctx.set('template_id', template_id)
    services.log.info(f'Using template {template_id} for report type {report_type or "<default>"}')
    return Continue()


async def clone_template(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    template_id, metadata = ctx.require('template_id', 'metadata')
    title = str(metadata.get('title') or '').strip() or ctx.report_id
    stored = await services.files.copy_template(template_id, name=f'Report - {title}')
    ctx.set('document_id', stored.id)
    ctx.set('doc_link', stored.link)
    services.log.info(f'Template cloned: {stored.id}')
    return Continue()


async def move_to_folder(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    (document_id,) = ctx.require('document_id')
    folder_id = str(ctx.options.get('folder_id') or services.settings.drive_folder_id or '').strip()
    if not folder_id:
        raise ValueError('Destination folder id is not configured (DRIVE_FOLDER_ID)')
    await services.files.move(document_id, folder_id)
    ctx.set('folder_id', folder_id)
    services.log.info(f'Document {document_id} moved to folder {folder_id}')
    return Continue()


async def replace_placeholders(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    document_id, metadata = ctx.require('document_id', 'metadata')
    containers = build_container_sections(metadata, services.settings.container_keys())
    report = await run_replacement(services.documents, document_id, metadata, containers)
    ctx.set(
        'replacement',
        {
            'containers': dict(report.containers_replaced),
            'fields': dict(report.fields_replaced),
            'op_count': report.op_count,
        },
    )
    for warning in report.warnings:
        services.log.warn(warning)
    if report.total_replaced == 0:
        return Warn('No placeholders were replaced')
    services.log.info(f'Replaced {report.total_replaced} placeholder occurrence(s)')
    return Continue()


async def adjust_title(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    document_id, metadata = ctx.require('document_id', 'metadata')
    title = str(metadata.get('title') or '').strip()
    if not title:
        return Skip('No title to adjust')
    snapshot = await services.documents.get_snapshot(document_id)
    run = find_text_run(snapshot, title)
    if run is None:
        return Warn(f'Title text not found in document: {title}')
    size = title_font_size(title)
    space = OffsetSpace()
    space.style(run.start, run.end, {'font_size': size})
    await services.documents.apply_batch(document_id, space.ops())
    ctx.set('title_font_size', size)
    services.log.info(f'Title font size set to {size}pt')
    return Continue()


async def _insert_named_image(
    services: StepServices,
    document_id: str,
    key: str,
    uri: str,
) -> int:
    image = await services.images.fetch(uri, source_ref=key)
    if not image.valid:
        raise ImageFetchError(uri, image.error or 'invalid image')
    return await replace_with_image(
        services.documents,
        document_id,
        key,
        uri=image.uri,
        width=services.settings.specific_image_width,
        height=services.settings.specific_image_height,
    )


async def insert_main_image(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    document_id, raw_inputs = ctx.require('document_id', 'inputs')
    uri = (raw_inputs.get('images') or {}).get('main')
    if not uri:
        return Skip('No main image available to insert')
    try:
        count = await _insert_named_image(services, document_id, 'main_image', uri)
    except (ImageFetchError, PlaceholderNotFound) as exc:
        return Warn(f'Error inserting main image: {exc}')
    ctx.set('main_image', {'uri': uri, 'inserted': count})
    services.log.info('Main image inserted successfully')
    return Continue()


async def insert_gallery(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    document_id, raw_inputs = ctx.require('document_id', 'inputs')
    urls = list(raw_inputs.get('gallery_urls') or [])
    settings = services.settings
    images = await services.images.fetch_many(urls)
    for image in images:
        if not image.valid:
            services.log.warn(f'Dropping gallery {image.source_ref} ({image.uri}): {image.error}')
    try:
        result = await realize_gallery(
            services.documents,
            document_id,
            images,
            GalleryOptions(
                grid_width=settings.gallery_grid_width,
                max_batch_images=settings.gallery_max_batch_images,
                title=settings.gallery_title,
                image_width=settings.gallery_image_width,
                image_height=settings.gallery_image_height,
            ),
            warn=services.log.warn,
        )
    except PlaceholderNotFound as exc:
        return Warn(str(exc))
    ctx.set(
        'gallery',
        {
            'requested': len(urls),
            'inserted': result.inserted,
            'dropped': result.dropped,
            'rows': result.plan.row_sizes(),
            'failed_batches': list(result.failed_batches),
        },
    )
    if result.plan.is_empty:
        return Warn('No valid gallery images; gallery placeholder removed')
    services.log.info(f'Added {result.inserted} gallery image(s) in {result.plan.rows} row(s)')
    if result.failed_batches:
        return Warn(f'{len(result.failed_batches)} gallery sub-batch(es) failed')
    return Continue()


SPECIFIC_IMAGE_KEYS = (('age', 'age_image'), ('signature', 'signature_image'))


async def insert_specific_images(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    document_id, raw_inputs = ctx.require('document_id', 'inputs')
    sources = raw_inputs.get('images') or {}
    inserted: dict[str, int] = {}
    problems: list[str] = []
    for source_key, placeholder in SPECIFIC_IMAGE_KEYS:
        uri = sources.get(source_key)
        if not uri:
            continue
        try:
            inserted[placeholder] = await _insert_named_image(services, document_id, placeholder, uri)
        except (ImageFetchError, PlaceholderNotFound) as exc:
            problems.append(f'{placeholder}: {exc}')
    ctx.set('specific_images', inserted)
    if problems:
        return Warn('Error inserting specific images: ' + '; '.join(problems))
    if not inserted:
        return Skip('No specific images to insert')
    services.log.info(f"Inserted specific image(s): {', '.join(sorted(inserted))}")
    return Continue()


async def export_pdf(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    (document_id,) = ctx.require('document_id')
    data = await services.exporter.export_as_pdf(document_id)
    if not data:
        raise ExportError(f'Export of {document_id} returned no data')
    ctx.set('pdf_bytes', data)
    ctx.set('pdf_size', len(data))
    services.log.info(f'PDF generated successfully, size: {len(data)} bytes')
    return Continue()


def pdf_filename(report_id: str, session_id: str | None) -> str:
    session = str(session_id or '').strip()
    if session:
        return f'{session}.pdf'
    return f'Report_{report_id}_{uuid.uuid4()}.pdf'


async def upload_pdf(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    data, folder_id = ctx.require('pdf_bytes', 'folder_id')
    filename = pdf_filename(ctx.report_id, ctx.session_id)
    link = await services.exporter.upload(data, filename, folder_id)
    ctx.set('pdf_filename', filename)
    ctx.set('pdf_link', link)
    services.log.info(f'PDF uploaded as {filename}')
    return Continue()


async def persist_links(ctx: PipelineContext, services: StepServices) -> StepOutcome:
    pdf_link, doc_link = ctx.require('pdf_link', 'doc_link')
    links = {'pdf_link': pdf_link, 'doc_link': doc_link}
    await services.content.persist_links(ctx.report_id, links)
    ctx.set('links', links)
    await _best_effort_note(services, ctx.report_id, f'PDF generated successfully. PDF: {pdf_link} Doc: {doc_link}')
    services.log.info('Links persisted to content source')
    return Continue()


STEPS: tuple[StepDescriptor, ...] = (
    StepDescriptor('fetch_inputs', fetch_inputs),
    StepDescriptor('process_metadata', process_metadata),
    StepDescriptor('select_template', select_template),
    StepDescriptor('clone_template', clone_template),
    StepDescriptor('move_to_folder', move_to_folder),
    StepDescriptor('replace_placeholders', replace_placeholders),
    StepDescriptor('adjust_title', adjust_title, Criticality.non_critical),
    StepDescriptor('insert_main_image', insert_main_image, Criticality.non_critical),
    StepDescriptor('insert_gallery', insert_gallery, Criticality.non_critical),
    StepDescriptor('insert_specific_images', insert_specific_images, Criticality.non_critical),
    StepDescriptor('export_pdf', export_pdf),
    StepDescriptor('upload_pdf', upload_pdf),
    StepDescriptor('persist_links', persist_links),
)


def step_names() -> list[str]:
    return [step.name for step in STEPS]
