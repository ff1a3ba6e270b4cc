"""
File source interface

A FileSource lists budget files that changed since a checkpoint, fetches them
into a local staging directory, and parses them. Concrete sources cover SFTP,
S3 and a local upload directory.
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.column_mapper import suggest_mappings
from ..core.models import ReceivedFile
from .parsers import ParsedFile, is_supported_file, parse_file

logger = logging.getLogger(__name__)

DEFAULT_STAGING_DIR = '/tmp/budget-sync-imports'

# Rows handed to the mapper when sampling a file
SAMPLE_ROWS = 10


def cleanup_staging(staging_dir: str, older_than_days: int = 7) -> int:
    """
    Delete staged downloads older than the retention window

    Returns:
        Number of files removed
    """
    if not os.path.isdir(staging_dir):
        return 0
    cutoff = time.time() - older_than_days * 24 * 60 * 60
    deleted = 0
    for name in os.listdir(staging_dir):
        path = os.path.join(staging_dir, name)
        if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
            os.remove(path)
            deleted += 1
    if deleted:
        logger.info("Cleaned up %d old staged files from %s", deleted, staging_dir)
    return deleted


def newest_file(files: List[ReceivedFile]) -> Optional[ReceivedFile]:
    """Most recently received file (ties: first listed)"""
    newest = None
    for f in files:
        if newest is None or f.received_at > newest.received_at:
            newest = f
    return newest


class FileSource(ABC):
    """Base class for budget file sources"""

    source_type = ''

    def __init__(self, source_config: Optional[Dict[str, Any]] = None,
                 staging_dir: str = DEFAULT_STAGING_DIR):
        self.config = dict(source_config or {})
        self.staging_dir = staging_dir
        os.makedirs(self.staging_dir, exist_ok=True)

    @abstractmethod
    def poll(self, since: Optional[datetime] = None, latest_only: bool = False) -> List[ReceivedFile]:
        """
        List supported files modified strictly after `since` and stage them locally

        With latest_only, only the most recently modified match is staged.

        Raises:
            SourceUnavailable: connectivity or auth failure; nothing is returned
        """

    @abstractmethod
    def test_connection(self) -> Dict[str, Any]:
        """Check the source is reachable; returns {'success': bool, 'message': str}"""

    def parse(self, file: ReceivedFile) -> ParsedFile:
        logger.info("Parsing file: %s", file.file_name)
        return parse_file(file.file_path, file.file_name)

    def discover_schema(self) -> Dict[str, Any]:
        """
        Sample the newest file on the source

        Returns:
            Dict with file_name, headers, sample_rows and suggested mappings,
            or {'file_name': None} when the source holds no supported files
        """
        received = newest_file(self.poll(None, latest_only=True))
        if received is None:
            return {'file_name': None, 'headers': [], 'sample_rows': [], 'mapping': None}

        parsed = self.parse(received)
        sample = parsed.rows[:SAMPLE_ROWS]
        return {
            'file_name': received.file_name,
            'headers': parsed.headers,
            'sample_rows': sample,
            'mapping': suggest_mappings(parsed.headers, sample),
        }

    def is_supported_file(self, file_name: str) -> bool:
        return is_supported_file(file_name)

    def staging_path(self, file_name: str) -> str:
        """Unique local path for a downloaded file"""
        return os.path.join(self.staging_dir, f"{int(time.time() * 1000)}_{os.path.basename(file_name)}")

    def cleanup_staging(self, older_than_days: int = 7) -> int:
        return cleanup_staging(self.staging_dir, older_than_days)
