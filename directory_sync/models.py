"""
Data model for directory synchronization.

Source records are immutable snapshots of directory identities. Target records are
the employee rows held by the record store. A SyncRunSummary collects one
SyncResult per processed record and is the only place counters are kept.
"""

import random
import string
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union


class SyncOutcome:
    """Outcome tags for a single processed record."""

    ADDED = 'Added'
    UPDATED = 'Updated'
    SKIPPED = 'Skipped'
    DEACTIVATED = 'Deactivated'
    ERROR = 'Error'

    ALL = (ADDED, UPDATED, SKIPPED, DEACTIVATED, ERROR)


class SyncStatus:
    """Lifecycle of a sync run."""

    RUNNING = 'Running'
    COMPLETED = 'Completed'
    COMPLETED_WITH_ERRORS = 'CompletedWithErrors'
    FAILED = 'Failed'


class SyncMode:
    FULL = 'Full'
    SINGLE = 'Single'
    GROUP = 'Group'
    DELTA = 'Delta'


class RecordStatus:
    ACTIVE = 'Active'
    INACTIVE = 'Inactive'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceRecord:
    """Snapshot of one directory identity at query time."""

    external_id: str
    principal_name: str = ''
    display_name: str = ''
    given_name: Optional[str] = None
    surname: Optional[str] = None
    email: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    office_location: Optional[str] = None
    business_phones: Tuple[str, ...] = ()
    mobile_phone: Optional[str] = None
    employee_id: Optional[str] = None
    employee_type: Optional[str] = None
    account_enabled: bool = True
    user_type: str = 'Member'
    company_name: Optional[str] = None
    cost_center: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Human readable identifier: email, then principal name, then external id."""
        return self.email or self.principal_name or self.external_id


@dataclass(frozen=True)
class Tombstone:
    """Change-feed entry marking a directory identity as removed."""

    external_id: str
    email: Optional[str] = None
    principal_name: Optional[str] = None
    display_name: Optional[str] = None
    reason: str = 'deleted'

    @property
    def identifier(self) -> str:
        return self.email or self.principal_name or self.external_id


ChangeEntry = Union[SourceRecord, Tombstone]


@dataclass
class DeltaPage:
    """
    One page of change-feed results.

    ``next_link`` is set while more pages remain; the final page carries
    ``delta_link``, the continuation token for the next incremental run.
    """

    changes: List[ChangeEntry] = field(default_factory=list)
    next_link: Optional[str] = None
    delta_link: Optional[str] = None


@dataclass
class TargetRecord:
    """Employee record held by the record store."""

    id: Optional[int] = None
    title: str = ''
    email: Optional[str] = None
    external_id: Optional[str] = None
    status: str = RecordStatus.ACTIVE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    location: Optional[str] = None
    office_phone: Optional[str] = None
    mobile_phone: Optional[str] = None
    employee_number: Optional[str] = None
    employment_type: Optional[str] = None
    company_name: Optional[str] = None
    cost_center: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @property
    def identifier(self) -> str:
        return self.email or self.title or str(self.id)


@dataclass(frozen=True)
class FieldMapping:
    """Declares that ``source_field`` of a SourceRecord propagates to ``target_field``."""

    source_field: str
    target_field: str
    enabled: bool = True


@dataclass
class SyncResult:
    """Outcome for one source record, tombstone or reconciled orphan."""

    identifier: str
    display_name: str
    outcome: str
    item_id: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome != SyncOutcome.ERROR

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['success'] = self.success
        return data


def generate_sync_id(now: Optional[datetime] = None) -> str:
    """Generate a time-ordered run id with a random suffix, e.g. SYNC-20240101120000-k3x9a1."""
    now = now or utcnow()
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"SYNC-{now.strftime('%Y%m%d%H%M%S')}-{suffix}"


@dataclass
class SyncRunSummary:
    """
    Summary of one sync invocation.

    Results must be recorded through ``add_result`` so that the counters always
    equal the results partitioned by outcome.
    """

    sync_id: str
    mode: str
    started_at: datetime
    status: str = SyncStatus.RUNNING
    completed_at: Optional[datetime] = None
    total_processed: int = 0
    added: int = 0
    updated: int = 0
    deactivated: int = 0
    skipped: int = 0
    errors: int = 0
    results: List[SyncResult] = field(default_factory=list)
    error_details: List[str] = field(default_factory=list)
    error_details_dropped: int = 0
    max_error_details: int = 50
    fallback_to_full: bool = False

    _COUNTERS = {
        SyncOutcome.ADDED: 'added',
        SyncOutcome.UPDATED: 'updated',
        SyncOutcome.DEACTIVATED: 'deactivated',
        SyncOutcome.SKIPPED: 'skipped',
        SyncOutcome.ERROR: 'errors',
    }

    @classmethod
    def start(cls, mode: str, max_error_details: int = 50) -> 'SyncRunSummary':
        now = utcnow()
        return cls(sync_id=generate_sync_id(now), mode=mode, started_at=now,
                   max_error_details=max_error_details)

    def add_result(self, result: SyncResult) -> None:
        counter = self._COUNTERS.get(result.outcome)
        if counter is None:
            raise ValueError(f"Unknown sync outcome: {result.outcome}")
        self.results.append(result)
        setattr(self, counter, getattr(self, counter) + 1)
        if result.outcome == SyncOutcome.ERROR and result.error:
            self.add_error_detail(f"{result.identifier}: {result.error}")

    def add_results(self, results: List[SyncResult]) -> None:
        for result in results:
            self.add_result(result)

    def add_error_detail(self, detail: str) -> None:
        if len(self.error_details) < self.max_error_details:
            self.error_details.append(detail)
        else:
            self.error_details_dropped += 1

    def complete(self) -> None:
        """Stamp the final status of a run that finished."""
        self.status = SyncStatus.COMPLETED_WITH_ERRORS if self.errors > 0 else SyncStatus.COMPLETED
        self.completed_at = utcnow()

    def fail(self, error: BaseException) -> None:
        self.status = SyncStatus.FAILED
        self.completed_at = utcnow()
        self.add_error_detail(f"Fatal error: {error}")

    @property
    def runtime_seconds(self) -> float:
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()

    def counters_consistent(self) -> bool:
        tally = {name: 0 for name in self._COUNTERS.values()}
        for result in self.results:
            tally[self._COUNTERS[result.outcome]] += 1
        return all(getattr(self, name) == count for name, count in tally.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sync_id': self.sync_id,
            'mode': self.mode,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'runtime_seconds': round(self.runtime_seconds, 3),
            'total_processed': self.total_processed,
            'added': self.added,
            'updated': self.updated,
            'deactivated': self.deactivated,
            'skipped': self.skipped,
            'errors': self.errors,
            'results': [result.to_dict() for result in self.results],
            'error_details': list(self.error_details),
            'error_details_dropped': self.error_details_dropped,
            'fallback_to_full': self.fallback_to_full,
        }


@dataclass
class SyncLogEntry:
    id: int
    sync_id: str
    status: str
    message: str
    timestamp: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sync_id': self.sync_id,
            'status': self.status,
            'message': self.message,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class DeltaSyncStatus:
    has_stored_delta: bool
    last_delta_sync: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_stored_delta': self.has_stored_delta,
            'last_delta_sync': self.last_delta_sync.isoformat() if self.last_delta_sync else None,
        }


class TokenLookupReason:
    FOUND = 'found'
    NEVER_SYNCED = 'never_synced'
    STORE_UNAVAILABLE = 'store_unavailable'


@dataclass(frozen=True)
class TokenLookup:
    """
    Result of reading the stored delta token.

    Distinguishes "never synced" from "store unreadable"; in both cases
    ``token`` is None and the next delta run starts from the beginning.
    """

    token: Optional[str]
    reason: str
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.reason == TokenLookupReason.FOUND
