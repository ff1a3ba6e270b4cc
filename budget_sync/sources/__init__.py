"""File acquisition: SFTP, S3 and local upload sources"""
from typing import Any, Dict, Optional

from ..core.errors import UnknownSourceType
from ..core.models import SOURCE_S3, SOURCE_SFTP, SOURCE_UPLOAD
from .base import DEFAULT_STAGING_DIR, FileSource, newest_file
from .local import LocalUploadSource
from .parsers import ParsedFile, parse_file
from .s3 import S3Source
from .sftp import SFTPSource

SOURCE_REGISTRY = {
    SOURCE_SFTP: SFTPSource,
    SOURCE_S3: S3Source,
    SOURCE_UPLOAD: LocalUploadSource,
}


def create_source(source_type: str,
                  source_config: Optional[Dict[str, Any]] = None,
                  staging_dir: str = DEFAULT_STAGING_DIR) -> FileSource:
    """
    Instantiate the FileSource registered for a source type

    Raises:
        UnknownSourceType: no source is registered under source_type
    """
    source_class = SOURCE_REGISTRY.get(source_type)
    if source_class is None:
        raise UnknownSourceType(source_type)
    return source_class(source_config, staging_dir)


__all__ = [
    'FileSource', 'LocalUploadSource', 'ParsedFile', 'S3Source', 'SFTPSource',
    'SOURCE_REGISTRY', 'create_source', 'newest_file', 'parse_file',
]
