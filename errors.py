"""Error taxonomy for the download pipeline.

Every stage raises a PipelineError subclass with the underlying exception
chained, so the HTTP layer can render a stage-specific message without
knowing anything about requests, zipfile or the Drive API.
"""
from typing import Optional


class ConfigError(Exception):
    """Raised at startup when required configuration is missing or invalid."""


class PipelineError(Exception):
    stage = "pipeline"
    title = "Something went wrong!"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage:
            self.stage = stage

    def __str__(self):
        return f"[{self.stage}] {self.message}"


class InvalidInput(PipelineError):
    stage = "intake"
    title = "Invalid URL!"


class MalformedURL(PipelineError):
    stage = "intake"
    title = "Invalid URL!"


class FetchFailed(PipelineError):
    stage = "crawl"
    title = "Error downloading website!"


class ArchiveFailed(PipelineError):
    stage = "archive"
    title = "Error packaging website!"


class TokenRefreshFailed(PipelineError):
    stage = "auth"
    title = "Could not reach Google Drive!"


class ReauthRequired(TokenRefreshFailed):
    """The refresh token was rejected; the user must grant consent again."""

    def __init__(self, message: str, consent_url: str):
        super().__init__(message)
        self.consent_url = consent_url


class UploadFailed(PipelineError):
    stage = "upload"
    title = "Error uploading archive!"
