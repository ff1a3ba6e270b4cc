"""
SFTP source

Customers drop budget files into a directory on an SFTP server; each poll lists
the directory and downloads anything new into staging.
"""
import io
import logging
import posixpath
import stat
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import paramiko

from ..core.errors import SourceUnavailable
from ..core.models import SOURCE_SFTP, ReceivedFile
from .base import FileSource

logger = logging.getLogger(__name__)

SFTP_ERRORS = (paramiko.SSHException, OSError, EOFError)
KEY_TYPES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


def load_private_key(pem: str) -> paramiko.PKey:
    """Load a PEM/OpenSSH private key of any supported type"""
    last_error = None
    for key_type in KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(pem))
        except paramiko.SSHException as e:
            last_error = e
    raise paramiko.SSHException(f"Unsupported private key: {last_error}")


class SFTPSource(FileSource):
    """
    Config keys:
        host, port (22), username, password or private_key, remote_path ('/')
    """

    source_type = SOURCE_SFTP

    def _connect(self):
        host = self.config.get('host')
        username = self.config.get('username')
        if not host or not username:
            raise SourceUnavailable(self.source_type, 'SFTP requires host and username')

        transport = paramiko.Transport((host, int(self.config.get('port', 22))))
        try:
            private_key = self.config.get('private_key')
            transport.connect(
                username=username,
                password=self.config.get('password'),
                pkey=load_private_key(private_key) if private_key else None,
            )
            client = paramiko.SFTPClient.from_transport(transport)
        except BaseException:
            transport.close()
            raise
        logger.info("Connected to SFTP: %s", host)
        return transport, client

    def poll(self, since: Optional[datetime] = None, latest_only: bool = False) -> List[ReceivedFile]:
        remote_path = self.config.get('remote_path', '/')
        transport = None
        received = []

        try:
            transport, client = self._connect()
            candidates = []
            for attr in client.listdir_attr(remote_path):
                if stat.S_ISDIR(attr.st_mode or 0):
                    continue

                modified = datetime.fromtimestamp(attr.st_mtime or 0, tz=timezone.utc)
                if since is not None and modified <= since:
                    continue
                if not self.is_supported_file(attr.filename):
                    logger.info("Skipping unsupported file: %s", attr.filename)
                    continue
                candidates.append((modified, attr))

            if latest_only and candidates:
                candidates = [max(candidates, key=lambda candidate: candidate[0])]

            for modified, attr in candidates:
                remote_file = posixpath.join(remote_path, attr.filename)
                local_file = self.staging_path(attr.filename)
                logger.info("Downloading: %s", attr.filename)
                client.get(remote_file, local_file)

                received.append(ReceivedFile(
                    file_name=attr.filename,
                    file_path=local_file,
                    file_size=attr.st_size or 0,
                    received_at=modified,
                    source=self.source_type,
                    metadata={'remote_path': remote_file, 'modify_time': attr.st_mtime},
                ))
                logger.info("Downloaded: %s (%s bytes)", attr.filename, attr.st_size)
        except SFTP_ERRORS as e:
            logger.error("SFTP error: %s", e)
            raise SourceUnavailable(self.source_type, str(e)) from e
        finally:
            if transport is not None:
                transport.close()

        return received

    def test_connection(self) -> Dict[str, Any]:
        try:
            transport, client = self._connect()
            try:
                client.listdir(self.config.get('remote_path', '/'))
            finally:
                transport.close()
        except SourceUnavailable as e:
            return {'success': False, 'message': str(e)}
        except SFTP_ERRORS as e:
            return {'success': False, 'message': f"SFTP connection failed: {e}"}
        return {'success': True, 'message': f"Connected to {self.config.get('host')}"}
