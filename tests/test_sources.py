"""Tests for file sources and spreadsheet parsers"""
import io
import os
import stat
import time
from datetime import datetime, timedelta, timezone
from unittest import mock

import openpyxl
import paramiko
import pytest
from botocore.exceptions import ClientError

from budget_sync.core.errors import EmptyOrUnparseable, SourceUnavailable, UnknownSourceType, UnsupportedFileType
from budget_sync.core.models import BUDGETED_AMOUNT, DEPARTMENT
from budget_sync.sources import LocalUploadSource, S3Source, SFTPSource, create_source, newest_file, parse_file
from budget_sync.sources.base import cleanup_staging

from .conftest import write_csv


EPOCH_2025 = datetime(2025, 1, 1, tzinfo=timezone.utc)
FIXTURES = os.path.join(os.path.dirname(__file__), 'fixtures')


# Parsers

def test_parse_csv_strips_bom_and_blank_rows(tmp_path):
    path = tmp_path / 'budget.csv'
    path.write_bytes('\ufeffDepartment,Budget\nEngineering,500000\n,\n\nSales,300\n'.encode('utf-8'))

    parsed = parse_file(str(path))

    assert parsed.headers == ['Department', 'Budget']
    assert parsed.rows == [['Engineering', '500000'], ['Sales', '300']]
    assert parsed.records()[1] == {'Department': 'Sales', 'Budget': '300'}


def test_parse_csv_pads_short_rows(tmp_path):
    path = write_csv(tmp_path / 'budget.csv', [['A', 'B', 'C'], ['1'], ['1', '2', '3', '4']])

    assert parse_file(path).rows == [['1', '', ''], ['1', '2', '3']]


def test_parse_xlsx(tmp_path):
    path = str(tmp_path / 'budget.xlsx')
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.append(['Department', 'Fiscal Period', 'Budget'])
    sheet.append(['Engineering', 'FY2025', 500000])
    sheet.append([None, None, None])
    sheet.append(['Sales', 'FY2025', 250000.5])
    workbook.save(path)

    parsed = parse_file(path)

    assert parsed.headers == ['Department', 'Fiscal Period', 'Budget']
    assert parsed.rows == [['Engineering', 'FY2025', 500000], ['Sales', 'FY2025', 250000.5]]


def test_parse_xls():
    parsed = parse_file(os.path.join(FIXTURES, 'budget.xls'))

    assert parsed.headers == ['Department', 'Fiscal Period', 'Budget']
    assert parsed.rows == [['Engineering', 'FY2025', 500000], ['Sales', 'FY2025', 1250.5]]
    assert isinstance(parsed.rows[0][2], int)


@pytest.mark.parametrize('content', [b'not really a spreadsheet', b''])
def test_corrupt_xls_is_unparseable(tmp_path, content):
    path = tmp_path / 'budget.xls'
    path.write_bytes(content)

    with pytest.raises(EmptyOrUnparseable):
        parse_file(str(path))


def test_staged_name_decides_format(tmp_path):
    path = write_csv(tmp_path / 'download.tmp', [['Department'], ['Sales']])

    assert parse_file(path, 'budget.csv').rows == [['Sales']]


@pytest.mark.parametrize('file_name', ['budget.txt', 'budget.pdf', 'budget'])
def test_unsupported_file_type(tmp_path, file_name):
    path = tmp_path / file_name
    path.write_text('Department\nSales\n')

    with pytest.raises(UnsupportedFileType):
        parse_file(str(path))


def test_empty_file_is_unparseable(tmp_path):
    path = tmp_path / 'budget.csv'
    path.write_text('\n\n')

    with pytest.raises(EmptyOrUnparseable):
        parse_file(str(path))


def test_corrupt_xlsx_is_unparseable(tmp_path):
    path = tmp_path / 'budget.xlsx'
    path.write_bytes(b'not really a zip file')

    with pytest.raises(EmptyOrUnparseable):
        parse_file(str(path))


# Local uploads

def test_local_source_filters_by_mtime_and_extension(upload_dir, staging_dir):
    old = EPOCH_2025.timestamp()
    new = (EPOCH_2025 + timedelta(days=2)).timestamp()
    write_csv(upload_dir / 'old.csv', [['Department']], mtime=old)
    write_csv(upload_dir / 'new.csv', [['Department']], mtime=new)
    write_csv(upload_dir / 'notes.txt', [['hello']], mtime=new)
    (upload_dir / 'archive').mkdir()

    source = LocalUploadSource({'local_path': str(upload_dir)}, staging_dir)

    assert [f.file_name for f in source.poll()] == ['new.csv', 'old.csv']
    files = source.poll(EPOCH_2025 + timedelta(days=1))
    assert [f.file_name for f in files] == ['new.csv']
    assert files[0].received_at == EPOCH_2025 + timedelta(days=2)
    assert files[0].metadata == {'local_path': str(upload_dir / 'new.csv')}


def test_local_source_checkpoint_is_exclusive(upload_dir, staging_dir):
    write_csv(upload_dir / 'budget.csv', [['Department']], mtime=EPOCH_2025.timestamp())
    source = LocalUploadSource({'local_path': str(upload_dir)}, staging_dir)

    assert source.poll(EPOCH_2025) == []


def test_local_source_missing_directory(tmp_path, staging_dir):
    source = LocalUploadSource({'local_path': str(tmp_path / 'nowhere')}, staging_dir)

    assert source.poll() == []
    assert source.test_connection()['success'] is False


def test_local_source_defaults_under_staging(staging_dir):
    source = LocalUploadSource({}, staging_dir)

    assert source.upload_dir == os.path.join(staging_dir, 'uploads')


def test_discover_schema(upload_dir, staging_dir):
    write_csv(upload_dir / 'budget.csv', [
        ['Department', 'Fiscal Period', 'Budget'],
        *[['Engineering', 'FY2025', str(i)] for i in range(15)],
    ])
    source = LocalUploadSource({'local_path': str(upload_dir)}, staging_dir)

    schema = source.discover_schema()

    assert schema['file_name'] == 'budget.csv'
    assert len(schema['sample_rows']) == 10
    assert schema['mapping'].column_map()[DEPARTMENT] == 'Department'
    assert schema['mapping'].column_map()[BUDGETED_AMOUNT] == 'Budget'


def test_discover_schema_without_files(upload_dir, staging_dir):
    source = LocalUploadSource({'local_path': str(upload_dir)}, staging_dir)

    assert source.discover_schema()['file_name'] is None


# SFTP

def sftp_entry(name, mtime, size=100, directory=False):
    attr = paramiko.SFTPAttributes()
    attr.filename = name
    attr.st_mtime = int(mtime.timestamp())
    attr.st_size = size
    attr.st_mode = (stat.S_IFDIR if directory else stat.S_IFREG) | 0o644
    return attr


@pytest.fixture
def sftp_client():
    client = mock.MagicMock()

    def download(remote, local):
        with open(local, 'w') as f:
            f.write('Department\nSales\n')

    client.get.side_effect = download
    with mock.patch.object(paramiko, 'Transport') as transport, \
            mock.patch.object(paramiko.SFTPClient, 'from_transport', return_value=client):
        client.transport = transport.return_value
        yield client


SFTP_CONFIG = {'host': 'sftp.example.com', 'username': 'acme', 'password': 'secret', 'remote_path': '/budgets'}


def test_sftp_poll_downloads_new_files(sftp_client, staging_dir):
    sftp_client.listdir_attr.return_value = [
        sftp_entry('old.csv', EPOCH_2025),
        sftp_entry('budget.xlsx', EPOCH_2025 + timedelta(days=3), size=2048),
        sftp_entry('readme.txt', EPOCH_2025 + timedelta(days=3)),
        sftp_entry('archive', EPOCH_2025 + timedelta(days=3), directory=True),
    ]
    source = SFTPSource(SFTP_CONFIG, staging_dir)

    files = source.poll(EPOCH_2025)

    assert [f.file_name for f in files] == ['budget.xlsx']
    assert files[0].file_size == 2048
    assert files[0].metadata['remote_path'] == '/budgets/budget.xlsx'
    assert files[0].file_path.startswith(staging_dir)
    assert os.path.exists(files[0].file_path)
    sftp_client.get.assert_called_once_with('/budgets/budget.xlsx', files[0].file_path)
    paramiko.Transport.assert_called_once_with(('sftp.example.com', 22))
    sftp_client.transport.close.assert_called_once()


def test_sftp_discover_schema_downloads_only_newest(sftp_client, staging_dir):
    sftp_client.listdir_attr.return_value = [
        sftp_entry('jan.csv', EPOCH_2025),
        sftp_entry('mar.csv', EPOCH_2025 + timedelta(days=60)),
        sftp_entry('feb.csv', EPOCH_2025 + timedelta(days=30)),
    ]
    source = SFTPSource(SFTP_CONFIG, staging_dir)

    schema = source.discover_schema()

    assert schema['file_name'] == 'mar.csv'
    assert schema['headers'] == ['Department']
    sftp_client.get.assert_called_once()
    assert sftp_client.get.call_args.args[0] == '/budgets/mar.csv'


def test_sftp_auth_failure_is_source_unavailable(sftp_client, staging_dir):
    sftp_client.transport.connect.side_effect = paramiko.AuthenticationException('Authentication failed.')
    source = SFTPSource(SFTP_CONFIG, staging_dir)

    with pytest.raises(SourceUnavailable) as e:
        source.poll()

    assert e.value.source_type == 'sftp'
    assert 'Authentication failed' in str(e.value)
    sftp_client.transport.close.assert_called()


def test_sftp_listing_failure_closes_transport(sftp_client, staging_dir):
    sftp_client.listdir_attr.side_effect = IOError('No such file')
    source = SFTPSource(SFTP_CONFIG, staging_dir)

    with pytest.raises(SourceUnavailable):
        source.poll()

    sftp_client.transport.close.assert_called_once()


def test_sftp_requires_host(staging_dir):
    source = SFTPSource({'username': 'acme'}, staging_dir)

    with pytest.raises(SourceUnavailable):
        source.poll()
    assert source.test_connection()['success'] is False


def test_sftp_test_connection(sftp_client, staging_dir):
    result = SFTPSource(SFTP_CONFIG, staging_dir).test_connection()

    assert result == {'success': True, 'message': 'Connected to sftp.example.com'}
    sftp_client.listdir.assert_called_once_with('/budgets')


# S3

def s3_client(objects):
    client = mock.MagicMock()
    client.get_paginator.return_value.paginate.return_value = [{'Contents': objects}]
    client.get_object.side_effect = lambda Bucket, Key: {'Body': io.BytesIO(b'Department\nSales\n')}
    return client


def test_s3_poll_downloads_new_objects(staging_dir):
    client = s3_client([
        {'Key': 'budgets/', 'LastModified': EPOCH_2025 + timedelta(days=3), 'Size': 0},
        {'Key': 'budgets/old.csv', 'LastModified': EPOCH_2025, 'Size': 10, 'ETag': '"a"'},
        {'Key': 'budgets/new.csv', 'LastModified': EPOCH_2025 + timedelta(days=3), 'Size': 17, 'ETag': '"b"'},
        {'Key': 'budgets/notes.txt', 'LastModified': EPOCH_2025 + timedelta(days=3), 'Size': 5},
    ])
    source = S3Source({'bucket_name': 'acme-budgets', 'prefix': 'budgets/'}, staging_dir, client=client)

    files = source.poll(EPOCH_2025)

    assert [f.file_name for f in files] == ['new.csv']
    assert files[0].metadata == {'s3_key': 'budgets/new.csv', 's3_bucket': 'acme-budgets', 'etag': '"b"'}
    with open(files[0].file_path) as f:
        assert f.read() == 'Department\nSales\n'
    client.get_paginator.return_value.paginate.assert_called_once_with(Bucket='acme-budgets', Prefix='budgets/')


def test_s3_latest_only_downloads_one_object(staging_dir):
    client = s3_client([
        {'Key': 'budgets/jan.csv', 'LastModified': EPOCH_2025, 'Size': 17},
        {'Key': 'budgets/mar.csv', 'LastModified': EPOCH_2025 + timedelta(days=60), 'Size': 17},
        {'Key': 'budgets/feb.csv', 'LastModified': EPOCH_2025 + timedelta(days=30), 'Size': 17},
    ])
    source = S3Source({'bucket_name': 'acme-budgets', 'prefix': 'budgets/'}, staging_dir, client=client)

    files = source.poll(latest_only=True)

    assert [f.file_name for f in files] == ['mar.csv']
    client.get_object.assert_called_once_with(Bucket='acme-budgets', Key='budgets/mar.csv')

    assert source.discover_schema()['file_name'] == 'mar.csv'
    assert client.get_object.call_count == 2


def test_s3_access_denied_is_source_unavailable(staging_dir):
    client = mock.MagicMock()
    client.get_paginator.return_value.paginate.side_effect = ClientError(
        {'Error': {'Code': 'AccessDenied', 'Message': 'Access Denied'}}, 'ListObjectsV2')
    source = S3Source({'bucket_name': 'acme-budgets'}, staging_dir, client=client)

    with pytest.raises(SourceUnavailable) as e:
        source.poll()

    assert 'AccessDenied' in str(e.value)


def test_s3_requires_bucket(staging_dir):
    source = S3Source({}, staging_dir, client=mock.MagicMock())

    with pytest.raises(SourceUnavailable):
        source.poll()
    assert source.test_connection()['success'] is False


def test_s3_test_connection(staging_dir):
    client = mock.MagicMock()
    source = S3Source({'bucket_name': 'acme-budgets'}, staging_dir, client=client)

    assert source.test_connection()['success'] is True
    client.head_bucket.assert_called_once_with(Bucket='acme-budgets')


# Helpers

def test_create_source(staging_dir):
    assert isinstance(create_source('upload', {}, staging_dir), LocalUploadSource)
    assert isinstance(create_source('sftp', {}, staging_dir), SFTPSource)
    assert isinstance(create_source('s3', {}, staging_dir), S3Source)

    with pytest.raises(UnknownSourceType) as e:
        create_source('dropbox', {}, staging_dir)
    assert e.value.to_dict() == {'code': 'UNKNOWN_SOURCE_TYPE', 'error': 'Unknown source type: dropbox'}


def test_newest_file(upload_dir, staging_dir):
    write_csv(upload_dir / 'a.csv', [['x']], mtime=EPOCH_2025.timestamp())
    write_csv(upload_dir / 'b.csv', [['x']], mtime=(EPOCH_2025 + timedelta(hours=1)).timestamp())
    files = LocalUploadSource({'local_path': str(upload_dir)}, staging_dir).poll()

    assert newest_file(files).file_name == 'b.csv'
    assert newest_file([]) is None


def test_cleanup_staging(tmp_path):
    stale = tmp_path / 'stale.csv'
    fresh = tmp_path / 'fresh.csv'
    stale.write_text('x')
    fresh.write_text('x')
    ten_days_ago = time.time() - 10 * 24 * 60 * 60
    os.utime(stale, (ten_days_ago, ten_days_ago))
    (tmp_path / 'uploads').mkdir()

    assert cleanup_staging(str(tmp_path), older_than_days=7) == 1
    assert not stale.exists()
    assert fresh.exists()
    assert (tmp_path / 'uploads').exists()
    assert cleanup_staging(str(tmp_path / 'missing')) == 0
