"""
Local upload directory source

Files dropped into a directory (e.g. by the web upload handler) are read in
place; no copy is made.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.models import SOURCE_UPLOAD, ReceivedFile
from .base import FileSource, newest_file

logger = logging.getLogger(__name__)


class LocalUploadSource(FileSource):

    source_type = SOURCE_UPLOAD

    @property
    def upload_dir(self) -> str:
        return self.config.get('local_path') or os.path.join(self.staging_dir, 'uploads')

    def poll(self, since: Optional[datetime] = None, latest_only: bool = False) -> List[ReceivedFile]:
        if not os.path.isdir(self.upload_dir):
            logger.warning("Local path does not exist: %s", self.upload_dir)
            return []

        received = []
        for file_name in sorted(os.listdir(self.upload_dir)):
            file_path = os.path.join(self.upload_dir, file_name)
            if not os.path.isfile(file_path):
                continue

            stats = os.stat(file_path)
            modified = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
            if since is not None and modified <= since:
                continue
            if not self.is_supported_file(file_name):
                logger.debug("Skipping unsupported file: %s", file_name)
                continue

            received.append(ReceivedFile(
                file_name=file_name,
                file_path=file_path,
                file_size=stats.st_size,
                received_at=modified,
                source=self.source_type,
                metadata={'local_path': file_path},
            ))
            logger.info("Found local file: %s (%d bytes)", file_name, stats.st_size)

        if latest_only and received:
            return [newest_file(received)]
        return received

    def test_connection(self) -> Dict[str, Any]:
        if os.path.isdir(self.upload_dir):
            return {'success': True, 'message': f"Upload directory available: {self.upload_dir}"}
        return {'success': False, 'message': f"Upload directory not found: {self.upload_dir}"}
