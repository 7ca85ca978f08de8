from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    queued = 'queued'
    running = 'running'
    stopped = 'stopped'
    completed = 'completed'
    failed = 'failed'


class LogLevel(str, Enum):
    info = 'info'
    warn = 'warn'
    error = 'error'


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.info
    message: str


class ReportInputs(BaseModel):
    title: str = ''
    date: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    images: dict[str, str] = Field(default_factory=dict)
    gallery_urls: list[str] = Field(default_factory=list)


class MetadataValidation(BaseModel):
    is_valid: bool = True
    missing_fields: list[str] = Field(default_factory=list)
    empty_fields: list[str] = Field(default_factory=list)


class StoredFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    link: str


class FetchedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_ref: str
    uri: str
    width: float = 0.0
    height: float = 0.0
    error: str | None = None

    @property
    def valid(self) -> bool:
        return self.error is None and self.width > 0 and self.height > 0


class RunArtifacts(BaseModel):
    document_id: str | None = None
    doc_link: str | None = None
    pdf_link: str | None = None
    pdf_filename: str | None = None


class RunState(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    report_id: str
    session_id: str | None = None
    start_step: str | None = None

    status: RunStatus = RunStatus.queued
    message: str = 'Run queued.'
    error: str | None = None
    failed_step: str | None = None
    current_step: str | None = None
    completed_steps: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    artifacts: RunArtifacts = Field(default_factory=RunArtifacts)
    logs: list[LogEntry] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class RunPayload(BaseModel):
    run_id: UUID
    report_id: str
    status: RunStatus
    success: bool
    message: str
    error: str | None
    failed_step: str | None
    links: dict[str, str]
    logs: list[LogEntry]
