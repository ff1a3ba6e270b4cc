"""
S3 source

Customers drop budget files under a bucket prefix; each poll lists the prefix
and downloads objects modified since the checkpoint.
"""
import logging
import posixpath
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..core.errors import SourceUnavailable
from ..core.models import SOURCE_S3, ReceivedFile, utcnow
from .base import DEFAULT_STAGING_DIR, FileSource

logger = logging.getLogger(__name__)

S3_ERRORS = (BotoCoreError, ClientError)


class S3Source(FileSource):
    """
    Config keys:
        bucket_name, prefix (''), region ('us-east-1'),
        access_key_id / secret_access_key (optional; default credential chain otherwise)
    """

    source_type = SOURCE_S3

    def __init__(self, source_config=None, staging_dir=DEFAULT_STAGING_DIR, client=None):
        super().__init__(source_config, staging_dir)
        self._client = client

    @property
    def bucket(self) -> str:
        bucket = self.config.get('bucket_name')
        if not bucket:
            raise SourceUnavailable(self.source_type, 'S3 requires bucket_name')
        return bucket

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                's3',
                region_name=self.config.get('region', 'us-east-1'),
                aws_access_key_id=self.config.get('access_key_id'),
                aws_secret_access_key=self.config.get('secret_access_key'),
            )
        return self._client

    def poll(self, since: Optional[datetime] = None, latest_only: bool = False) -> List[ReceivedFile]:
        bucket = self.bucket
        prefix = self.config.get('prefix', '')
        received = []

        try:
            logger.info("Listing S3 objects in %s/%s", bucket, prefix)
            candidates = []
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    key = obj.get('Key')
                    if not key or key.endswith('/'):
                        continue

                    modified = obj.get('LastModified')
                    if since is not None and modified is not None and modified <= since:
                        continue

                    file_name = posixpath.basename(key)
                    if not self.is_supported_file(file_name):
                        logger.info("Skipping unsupported file: %s", file_name)
                        continue
                    candidates.append((modified or utcnow(), file_name, obj))

            if latest_only and candidates:
                candidates = [max(candidates, key=lambda candidate: candidate[0])]

            for modified, file_name, obj in candidates:
                key = obj['Key']
                local_file = self.staging_path(file_name)
                logger.info("Downloading from S3: %s", key)
                body = self.client.get_object(Bucket=bucket, Key=key)['Body'].read()
                with open(local_file, 'wb') as f:
                    f.write(body)

                received.append(ReceivedFile(
                    file_name=file_name,
                    file_path=local_file,
                    file_size=obj.get('Size', len(body)),
                    received_at=modified,
                    source=self.source_type,
                    metadata={'s3_key': key, 's3_bucket': bucket, 'etag': obj.get('ETag')},
                ))
                logger.info("Downloaded from S3: %s (%s bytes)", file_name, obj.get('Size'))
        except S3_ERRORS as e:
            logger.error("S3 error: %s", e)
            raise SourceUnavailable(self.source_type, str(e)) from e

        return received

    def test_connection(self) -> Dict[str, Any]:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except SourceUnavailable as e:
            return {'success': False, 'message': str(e)}
        except S3_ERRORS as e:
            return {'success': False, 'message': f"S3 connection failed: {e}"}
        return {'success': True, 'message': f"Bucket {self.config.get('bucket_name')} is accessible"}
