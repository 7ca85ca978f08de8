from __future__ import annotations

import asyncio
import traceback
from typing import Any, Sequence
from uuid import UUID

from docbuilder.adapters.google_docs import GoogleDocsConfig, GoogleDocsDocumentService
from docbuilder.adapters.google_drive import GoogleDriveAdapter, GoogleDriveConfig
from docbuilder.adapters.local import LocalContentSource, LocalExportConfig, LocalExporter, LocalFileStore
from docbuilder.adapters.wordpress import WordPressConfig, WordPressContentSource
from docbuilder.config import Settings, get_settings
from docbuilder.document.memory import InMemoryDocumentService
from docbuilder.images import HttpImageFetcher, ImageFetchConfig
from docbuilder.pipeline.context import PipelineContext, RunLog
from docbuilder.pipeline.orchestrator import PipelineResult, ReportPipeline
from docbuilder.pipeline.steps import Abort, StepOutcome
from docbuilder.state import fail_run, load_run_state, mutate_run_state, save_run_state, set_status
from docbuilder.storage import append_event, load_context_snapshot, save_context_snapshot
from docbuilder.types import RunPayload, RunState, RunStatus


def _build_image_fetcher(settings: Settings) -> HttpImageFetcher:
    return HttpImageFetcher(
        ImageFetchConfig(
            timeout_seconds=settings.image_fetch_timeout_seconds,
            max_bytes=settings.image_max_bytes,
            max_width=settings.image_max_width,
            max_height=settings.image_max_height,
            concurrency=settings.image_fetch_concurrency,
        )
    )


def _build_local_pipeline(settings: Settings) -> ReportPipeline:
    documents = InMemoryDocumentService()
    return ReportPipeline(
        content=LocalContentSource(settings.content_dir),
        documents=documents,
        files=LocalFileStore(documents, templates_dir=settings.templates_dir),
        exporter=LocalExporter(
            documents,
            LocalExportConfig(
                output_dir=settings.uploads_dir,
                font_name=settings.pdf_font_name,
                title_font_size=settings.pdf_title_font_size,
                body_font_size=settings.pdf_body_font_size,
                margin=settings.pdf_page_margin,
            ),
        ),
        images=_build_image_fetcher(settings),
        settings=settings,
    )


def _build_google_pipeline(settings: Settings) -> ReportPipeline:
    if not settings.wordpress_base_url:
        raise ValueError('WORDPRESS_BASE_URL is required for the google backend')
    drive = GoogleDriveAdapter(
        GoogleDriveConfig(
            base_url=settings.google_drive_base_url,
            upload_url=settings.google_drive_upload_url,
            access_token=settings.google_access_token,
            timeout_seconds=settings.google_timeout_seconds,
        )
    )
    return ReportPipeline(
        content=WordPressContentSource(
            WordPressConfig(
                base_url=settings.wordpress_base_url,
                username=settings.wordpress_username,
                app_password=settings.wordpress_app_password,
                post_type=settings.wordpress_post_type,
                timeout_seconds=settings.wordpress_timeout_seconds,
            )
        ),
        documents=GoogleDocsDocumentService(
            GoogleDocsConfig(
                base_url=settings.google_docs_base_url,
                access_token=settings.google_access_token,
                timeout_seconds=settings.google_timeout_seconds,
            )
        ),
        files=drive,
        exporter=drive,
        images=_build_image_fetcher(settings),
        settings=settings,
    )


def build_pipeline(settings: Settings | None = None) -> ReportPipeline:
    settings = settings or get_settings()
    backend = str(settings.backend or '').strip().lower()
    if backend == 'local':
        return _build_local_pipeline(settings)
    if backend == 'google':
        return _build_google_pipeline(settings)
    raise ValueError(f'Unknown backend: {settings.backend!r} (expected local or google)')


def _outcome_detail(outcome: StepOutcome) -> dict[str, Any]:
    detail: dict[str, Any] = {'outcome': type(outcome).__name__.lower()}
    for name in ('reason', 'message', 'error'):
        value = getattr(outcome, name, None)
        if value:
            detail[name] = value
    return detail


def _step_recorder(run_id: UUID):
    def record(step: str, outcome: StepOutcome, ctx: PipelineContext) -> None:
        append_event(run_id, 'step_finished', step=step, **_outcome_detail(outcome))
        if isinstance(outcome, Abort):
            return
        save_context_snapshot(run_id, step, ctx.to_dict())

        def apply(state: RunState) -> None:
            state.current_step = step
            if step not in state.completed_steps:
                state.completed_steps.append(step)

        mutate_run_state(run_id, apply)

    return record


def create_run(report_id: str, *, session_id: str | None = None, options: dict[str, Any] | None = None) -> RunState:
    run = RunState(report_id=str(report_id), session_id=session_id, options=dict(options or {}))
    save_run_state(run)
    append_event(run.id, 'created', report_id=run.report_id, session_id=session_id)
    return run


def _finish_run(run_id: UUID, result: PipelineResult) -> RunState:
    def apply(state: RunState) -> None:
        state.logs = list(result.logs)
        state.artifacts.document_id = result.context.get('document_id')
        state.artifacts.doc_link = result.context.get('doc_link')
        state.artifacts.pdf_link = result.context.get('pdf_link')
        state.artifacts.pdf_filename = result.context.get('pdf_filename')

    mutate_run_state(run_id, apply)
    if not result.success:
        return fail_run(
            run_id,
            message='Report pipeline failed.',
            error=result.error or 'unknown error',
            failed_step=result.failed_step,
        )
    if result.stopped_after:
        return set_status(run_id, RunStatus.stopped, f'Stopped after {result.stopped_after}.', event='stopped')
    run = set_status(run_id, RunStatus.completed, 'Report pipeline completed.', event='completed')
    append_event(run_id, 'links', **result.links)
    return run


async def run_report(
    report_id: str,
    *,
    session_id: str | None = None,
    start_step: str | None = None,
    options: dict[str, Any] | None = None,
    context: PipelineContext | None = None,
    stop_after: str | None = None,
    pipeline: ReportPipeline | None = None,
    run: RunState | None = None,
) -> tuple[RunState, PipelineResult]:
    """Run one report and keep its state, events and step snapshots on disk."""
    pipeline = pipeline or build_pipeline()
    if run is None:
        run = create_run(report_id, session_id=session_id, options=options)
    run_id = run.id

    def apply_start(state: RunState) -> None:
        state.start_step = start_step
        state.error = None
        state.failed_step = None

    mutate_run_state(run_id, apply_start)
    set_status(run_id, RunStatus.running, f"Running from {start_step or 'the first step'}...")

    result = await pipeline.run(
        run.report_id,
        session_id=session_id if session_id is not None else run.session_id,
        start_step=start_step,
        options=options if options is not None else run.options,
        context=context,
        stop_after=stop_after,
        on_step_finished=_step_recorder(run_id),
    )
    return _finish_run(run_id, result), result


def _record_crash(run_id: UUID, exc: BaseException) -> RunState:
    detail = ''.join(traceback.format_exception_only(type(exc), exc)).strip()
    append_event(run_id, 'pipeline_exception', error=detail, stack=traceback.format_exc())
    return fail_run(run_id, message='Report pipeline crashed.', error=detail)


def _previous_step(pipeline: ReportPipeline, step: str) -> str | None:
    names = pipeline.list_steps()
    index = names.index(step)
    return names[index - 1] if index > 0 else None


async def resume_report(
    run_id: UUID | str,
    *,
    start_step: str | None = None,
    pipeline: ReportPipeline | None = None,
) -> tuple[RunState, PipelineResult]:
    """Continue a stored run from ``start_step`` (default: after its last completed step)
    with the context snapshot recorded by the step before it."""
    run = load_run_state(run_id)
    if run is None:
        raise FileNotFoundError(f'Run not found: {run_id}')
    pipeline = pipeline or build_pipeline()
    names = pipeline.list_steps()

    if start_step is None:
        done = [name for name in names if name in run.completed_steps]
        if not done:
            start_step = names[0]
        elif done[-1] == names[-1]:
            raise ValueError(f'Run {run.id} already completed every step')
        else:
            start_step = names[names.index(done[-1]) + 1]
    if start_step not in names:
        # the pipeline reports the invalid step with the list of valid ones
        return await run_report(run.report_id, start_step=start_step, pipeline=pipeline, run=run)

    context = None
    previous = _previous_step(pipeline, start_step)
    if previous is not None:
        snapshot = load_context_snapshot(run.id, previous)
        if snapshot is None:
            raise FileNotFoundError(f'No context snapshot for step {previous} in run {run.id}')
        context = PipelineContext.from_dict(snapshot)
    append_event(run.id, 'resumed', start_step=start_step)
    return await run_report(
        run.report_id,
        start_step=start_step,
        context=context,
        pipeline=pipeline,
        run=run,
    )


async def run_batch(
    report_ids: Sequence[str],
    *,
    options: dict[str, Any] | None = None,
    pipeline: ReportPipeline | None = None,
    concurrency: int | None = None,
) -> list[tuple[RunState, PipelineResult]]:
    """Run independent reports concurrently over one shared set of clients."""
    settings = get_settings()
    pipeline = pipeline or build_pipeline(settings)
    semaphore = asyncio.Semaphore(max(1, int(concurrency or settings.batch_concurrency)))

    async def one(report_id: str) -> tuple[RunState, PipelineResult]:
        async with semaphore:
            run = create_run(report_id, options=options)
            try:
                return await run_report(report_id, options=options, pipeline=pipeline, run=run)
            except Exception as exc:
                crashed = _record_crash(run.id, exc)
                log = RunLog()
                log.error(f'Report pipeline crashed: {crashed.error}')
                result = PipelineResult(success=False, context=PipelineContext(), logs=log.entries, error=crashed.error)
                return crashed, result

    return list(await asyncio.gather(*(one(report_id) for report_id in report_ids)))


def run_payload(run: RunState, result: PipelineResult) -> RunPayload:
    return RunPayload(
        run_id=run.id,
        report_id=run.report_id,
        status=run.status,
        success=result.success,
        message=run.message,
        error=result.error,
        failed_step=result.failed_step,
        links=dict(result.links),
        logs=list(result.logs),
    )


def run_report_sync(
    report_id: str,
    *,
    session_id: str | None = None,
    options: dict[str, Any] | None = None,
    **kwargs: Any,
) -> RunPayload | None:
    run = create_run(report_id, session_id=session_id, options=options)
    try:
        run, result = asyncio.run(run_report(report_id, session_id=session_id, options=options, run=run, **kwargs))
    except Exception as exc:
        _record_crash(run.id, exc)
        return None
    return run_payload(run, result)
