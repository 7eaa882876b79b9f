# src/spaces_backup/__init__.py
"""
spaces-backup: Stream a whole Spaces bucket into a single zip archive.

Objects are listed, downloaded, deflated and uploaded to a destination bucket
as one pipeline, so the archive is never staged on disk or held in memory.

The primary entry point for programmatic use is the `BackupPipeline` class;
serverless hosts call `spaces_backup.handler.main`.
"""

from typing import List

from spaces_backup.exceptions import BackupError
from spaces_backup.models import BackupResult
from spaces_backup.pipeline import BackupPipeline

__all__: List[str] = ["BackupError", "BackupPipeline", "BackupResult"]
