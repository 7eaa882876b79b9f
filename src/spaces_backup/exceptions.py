# src/spaces_backup/exceptions.py
"""Custom exceptions for the spaces-backup application."""

import traceback
from typing import Any, Dict, Optional


class BackupError(Exception):
    """
    Base exception for all application-specific errors.

    Every failure that reaches the invocation boundary is an instance of this
    class, so it can be rendered as structured data instead of escaping.

    Attributes:
        stage (str): The pipeline stage that failed.
    """

    stage: str = "pipeline"

    @property
    def kind(self) -> str:
        """
        The classifier reported to callers, e.g. ``"ListingError"``.

        Returns:
            str: The exception class name.
        """
        return type(self).__name__

    @property
    def is_client_error(self) -> bool:
        """
        Whether the failure is the caller's fault (bad configuration).

        Returns:
            bool: True for client-class failures, False for runtime failures.
        """
        return False

    def to_payload(self, include_stack: bool = False) -> Dict[str, Any]:
        """
        Render the error as a JSON-serializable dictionary.

        Args:
            include_stack (bool): Attach the formatted traceback as ``stack``.

        Returns:
            Dict[str, Any]: The error body.
        """
        payload: Dict[str, Any] = {
            "error": "Backup failed",
            "kind": self.kind,
            "stage": self.stage,
            "message": str(self),
        }
        cause: Optional[BaseException] = self.__cause__
        if cause is not None:
            payload["cause"] = repr(cause)
        if include_stack:
            payload["stack"] = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return payload


class ConfigError(BackupError):
    """Raised for missing or invalid configuration, before any network call."""

    stage = "config"

    def __init__(self, message: str, missing: Optional[list] = None) -> None:
        super().__init__(message)
        self.missing: list = list(missing or [])

    @property
    def is_client_error(self) -> bool:
        return True

    def to_payload(self, include_stack: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = super().to_payload(include_stack)
        if self.missing:
            payload["error"] = "Missing required environment variables"
            payload["missing"] = self.missing
        else:
            payload["error"] = "Invalid configuration"
        return payload


class ListingError(BackupError):
    """Raised when enumerating the source bucket fails."""

    stage = "listing"


class FetchError(BackupError):
    """Raised when reading a single source object fails."""

    stage = "fetch"

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key: Optional[str] = key

    def to_payload(self, include_stack: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = super().to_payload(include_stack)
        if self.key is not None:
            payload["key"] = self.key
        return payload


class ArchiveError(BackupError):
    """Raised when the zip encoder rejects an entry or fails to finalize."""

    stage = "archive"


class UploadError(BackupError):
    """Raised when writing the archive to the destination bucket fails."""

    stage = "upload"


class PipelineError(BackupError):
    """Raised for unclassified failures inside the pipeline."""

    pass
