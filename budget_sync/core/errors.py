"""
Sync error taxonomy

Every failure the sync pipeline can surface, grouped so the scheduler can tell
retryable failures (source or database briefly unreachable) from the ones an
operator has to fix in the source file.
"""
from typing import List, Optional


class BudgetSyncError(Exception):
    """Base class for all budget sync errors"""

    code = 'SYNC_ERROR'

    def to_dict(self) -> dict:
        return {'code': self.code, 'error': str(self)}


class TransientSyncError(BudgetSyncError):
    """Failure that may succeed if the run is retried later"""


class SourceUnavailable(TransientSyncError):
    """Connectivity or auth failure against a file source (whole poll aborts)"""

    code = 'SOURCE_UNAVAILABLE'

    def __init__(self, source_type: str, cause: str):
        self.source_type = source_type
        self.cause = cause
        super().__init__(f"{source_type.upper()} poll failed: {cause}")


class PersistenceUnavailable(TransientSyncError):
    """Ledger store cannot be reached; fatal to the run"""

    code = 'PERSISTENCE_UNAVAILABLE'


class EmptyOrUnparseable(BudgetSyncError):
    """File has no headers, no data rows, or cannot be parsed"""

    code = 'EMPTY_OR_UNPARSEABLE'


class UnsupportedFileType(EmptyOrUnparseable):
    """File extension is not one of the supported spreadsheet formats"""

    code = 'UNSUPPORTED_FILE_TYPE'


class UnknownSourceType(BudgetSyncError):
    """Source type has no registered FileSource"""

    code = 'UNKNOWN_SOURCE_TYPE'

    def __init__(self, source_type: str):
        self.source_type = source_type
        super().__init__(f"Unknown source type: {source_type}")


class LowMappingConfidence(BudgetSyncError):
    """Column mapping is too uncertain to apply without a human"""

    code = 'LOW_MAPPING_CONFIDENCE'

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        self.fields = list(fields or [])
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['fields'] = self.fields
        return data


class RowTransformError(BudgetSyncError):
    """A single source row could not be turned into a budget record"""

    code = 'ROW_TRANSFORM_ERROR'

    def __init__(self, row: int, message: str, field: Optional[str] = None):
        self.row = row
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({'row': self.row, 'field': self.field})
        return data


class ReconciliationError(BudgetSyncError):
    """A specific budget record could not be written to the ledger"""

    code = 'RECONCILIATION_ERROR'

    def __init__(self, message: str, record: Optional[dict] = None):
        self.record = record or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['record'] = self.record
        return data


class SchedulerError(BudgetSyncError):
    """Invalid scheduler request (unknown tenant, bad cadence)"""

    code = 'SCHEDULER_ERROR'
