from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from docbuilder.config import Settings
from docbuilder.document.model import InsertText
from docbuilder.errors import InvalidStepError, MissingPrerequisite, ReportPipelineError
from docbuilder.pipeline.context import PipelineContext, RunLog
from docbuilder.pipeline.steps import (
    STEPS,
    Abort,
    Skip,
    StepDescriptor,
    StepOutcome,
    StepServices,
    Warn,
)
from docbuilder.ports import ContentSource, DocumentService, Exporter, FileStore, ImageSource
from docbuilder.types import LogEntry


logger = logging.getLogger(__name__)

StepHook = Callable[[str, StepOutcome, PipelineContext], None]


@dataclass
class PipelineResult:
    success: bool
    context: PipelineContext
    logs: list[LogEntry]
    links: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    failed_step: str | None = None
    executed_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stopped_after: str | None = None

    def payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'success': self.success,
            'links': dict(self.links),
            'logs': [entry.model_dump(mode='json') for entry in self.logs],
        }
        if not self.success:
            payload['error'] = self.error
            payload['failed_step'] = self.failed_step
        if self.stopped_after:
            payload['stopped_after'] = self.stopped_after
        return payload


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return 'step timed out'
    text = str(exc).strip()
    return text or type(exc).__name__


class ReportPipeline:
    """Runs the fixed step sequence against injected collaborators."""

    def __init__(
        self,
        *,
        content: ContentSource,
        documents: DocumentService,
        files: FileStore,
        exporter: Exporter,
        images: ImageSource,
        settings: Settings,
        steps: Sequence[StepDescriptor] = STEPS,
    ):
        self.content = content
        self.documents = documents
        self.files = files
        self.exporter = exporter
        self.images = images
        self.settings = settings
        self.steps = tuple(steps)

    def list_steps(self) -> list[str]:
        return [step.name for step in self.steps]

    def _resolve_start(self, start_step: str | None) -> int:
        if not start_step:
            return 0
        names = self.list_steps()
        if start_step not in names:
            raise InvalidStepError(start_step, names)
        return names.index(start_step)

    async def run(
        self,
        report_id: str,
        *,
        session_id: str | None = None,
        start_step: str | None = None,
        options: dict[str, Any] | None = None,
        context: PipelineContext | None = None,
        stop_after: str | None = None,
        on_step_finished: StepHook | None = None,
    ) -> PipelineResult:
        log = RunLog()
        ctx = context if context is not None else PipelineContext()
        ctx.seed(report_id, session_id=session_id, options=options)

        try:
            first = self._resolve_start(start_step)
            if stop_after is not None:
                self._resolve_start(stop_after)
        except InvalidStepError as exc:
            log.error(str(exc))
            return PipelineResult(success=False, context=ctx, logs=log.entries, error=str(exc))

        if first:
            log.info(f'Resuming report {report_id} from step {self.steps[first].name}')
        else:
            log.info(f'Starting report pipeline for {report_id}')

        services = StepServices(
            content=self.content,
            documents=self.documents,
            files=self.files,
            exporter=self.exporter,
            images=self.images,
            settings=self.settings,
            log=log,
        )
        result = PipelineResult(success=True, context=ctx, logs=log.entries)

        for step in self.steps[first:]:
            log.info(f'Executing step: {step.name}')
            result.executed_steps.append(step.name)
            outcome = await self._execute(step, ctx, services)

            if isinstance(outcome, Abort) and not step.is_critical and not isinstance(
                outcome.exception, MissingPrerequisite
            ):
                outcome = Warn(outcome.error)

            if on_step_finished is not None:
                on_step_finished(step.name, outcome, ctx)

            if isinstance(outcome, Abort):
                log.error(f'Step {step.name} failed: {outcome.error}')
                await self._recover(ctx, log, outcome.error)
                result.success = False
                result.error = outcome.error
                result.failed_step = step.name
                return result
            if isinstance(outcome, Warn):
                log.warn(f'{step.name}: {outcome.message}')
                result.warnings.append(outcome.message)
            elif isinstance(outcome, Skip):
                log.info(f'Skipped {step.name}: {outcome.reason}')

            if stop_after == step.name:
                result.stopped_after = step.name
                log.info(f'Stopping after step {step.name}')
                break

        result.links = dict(ctx.get('links') or {})
        if result.stopped_after is None:
            log.info(f'Report pipeline completed for {report_id}')
        return result

    async def _execute(self, step: StepDescriptor, ctx: PipelineContext, services: StepServices) -> StepOutcome:
        timeout = float(self.settings.step_timeout_seconds)
        try:
            with ctx.producing(step.name):
                return await asyncio.wait_for(step.execute(ctx, services), timeout=timeout)
        except MissingPrerequisite as exc:
            return Abort(str(exc), exc)
        except asyncio.TimeoutError as exc:
            return Abort(f'{step.name} exceeded {timeout:g}s timeout', exc)
        except (ReportPipelineError, ValueError, OSError) as exc:
            logger.debug('Step %s raised', step.name, exc_info=True)
            return Abort(_describe(exc), exc)
        except Exception as exc:
            logger.debug('Step %s raised unexpectedly', step.name, exc_info=True)
            return Abort(f'{type(exc).__name__}: {_describe(exc)}', exc)

    async def _recover(self, ctx: PipelineContext, log: RunLog, error: str) -> None:
        timeout = float(self.settings.step_timeout_seconds)
        document_id = ctx.get('document_id')
        if document_id:
            anchor = int(self.settings.error_anchor_offset)
            try:
                await asyncio.wait_for(
                    self.documents.apply_batch(
                        document_id,
                        [InsertText(at=anchor, text=f'ERROR GENERATING PDF: {error}\n\n')],
                    ),
                    timeout=timeout,
                )
                log.info(f'Error annotation written to document {document_id}')
            except Exception as exc:
                logger.debug('Error annotation for %s raised', document_id, exc_info=True)
                log.error(f'Could not annotate document {document_id}: {_describe(exc)}')
        try:
            await asyncio.wait_for(
                self.content.add_note(ctx.report_id, f'PDF generation error: {error}'),
                timeout=timeout,
            )
        except Exception as exc:
            logger.debug('Error note for %s raised', ctx.report_id, exc_info=True)
            log.error(f'Could not add error note to report {ctx.report_id}: {_describe(exc)}')
