from __future__ import annotations


class ReportPipelineError(Exception):
    """Base class for every error raised by the report pipeline."""


class MissingPrerequisite(ReportPipelineError):
    def __init__(self, step: str, fields: list[str]):
        self.step = step
        self.fields = list(fields)
        joined = ', '.join(self.fields)
        super().__init__(f'{step} requires context field(s) not produced yet: {joined}')


class ContextOwnershipError(ReportPipelineError):
    pass


class PlaceholderNotFound(ReportPipelineError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(f'No occurrences found for placeholder {token}')


class DocumentServiceError(ReportPipelineError):
    pass


class OffsetOrderError(ReportPipelineError):
    pass


class ImageFetchError(ReportPipelineError):
    def __init__(self, uri: str, reason: str):
        self.uri = uri
        self.reason = reason
        super().__init__(f'Image {uri} rejected: {reason}')


class ExportError(ReportPipelineError):
    pass


class UploadError(ReportPipelineError):
    pass


class ContentSourceError(ReportPipelineError):
    pass


class InvalidStepError(ReportPipelineError):
    def __init__(self, step: str, valid_steps: list[str]):
        self.step = step
        self.valid_steps = list(valid_steps)
        super().__init__(f"Invalid starting step: {step}. Valid steps are: {', '.join(self.valid_steps)}")
