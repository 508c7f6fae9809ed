"""
Sync orchestrator for Directory Sync.

Drives the four run modes (full, single, group, delta) through one shared
classification routine, applies source filters, processes records in chunks on
an optional bounded worker pool, reconciles deletions in full mode and keeps the
delta continuation token current.
"""

import zlib
import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from directory_sync.audit import SyncLogSink, audited
from directory_sync.config import SyncOptions, merge_options
from directory_sync.delta_state import DeltaStateStore
from directory_sync.directory_client import DirectoryClient
from directory_sync.errors import (
    DeltaQueryError, DirectoryUnavailableError, RecordError, StoreUnavailableError
)
from directory_sync.mapper import map_source_to_target
from directory_sync.matcher import RecordIndex, normalize_email
from directory_sync.models import (
    ChangeEntry, DeltaSyncStatus, RecordStatus, SourceRecord, SyncLogEntry, SyncMode,
    SyncOutcome, SyncResult, SyncRunSummary, TargetRecord, Tombstone, TokenLookup,
    TokenLookupReason, utcnow
)
from directory_sync.retry import RetryPolicy
from directory_sync.rules import apply_rules
from directory_sync.store import RecordStoreClient

logger = logging.getLogger(__name__)

# Fields every run needs regardless of the configured mappings
BASE_SELECT_FIELDS = ('external_id', 'principal_name', 'display_name', 'email',
                      'account_enabled', 'user_type', 'department')


def passes_filters(source: SourceRecord, options: SyncOptions) -> bool:
    """Return True if the record survives all configured filters (AND-combined)."""
    if not options.include_disabled and not source.account_enabled:
        return False

    if options.user_types:
        allowed_types = {user_type.lower() for user_type in options.user_types}
        if (source.user_type or '').lower() not in allowed_types:
            return False

    if options.department_filter:
        allowed_departments = {department.lower() for department in options.department_filter}
        if (source.department or '').lower() not in allowed_departments:
            return False

    if options.exclude_users:
        excluded = {user.lower() for user in options.exclude_users}
        if (source.principal_name or '').lower() in excluded:
            return False
        if source.email and source.email.lower() in excluded:
            return False

    return True


def _comparable(value: Any) -> Any:
    return None if value == '' else value


def diff_fields(existing: TargetRecord, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return the mapped fields whose values differ from the stored record, ignoring sync timestamps."""
    changes = {}
    for name, value in fields.items():
        if name == 'last_synced_at':
            continue
        if _comparable(getattr(existing, name, None)) != _comparable(value):
            changes[name] = value
    return changes


class _CreatedRecords:
    """Records created earlier in the current run, so a repeated identity is not created twice."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_external_id: Dict[str, TargetRecord] = {}
        self._by_email: Dict[str, TargetRecord] = {}
        self._linked: Dict[int, str] = {}

    def add(self, record: TargetRecord):
        with self._lock:
            self._by_external_id[record.external_id] = record
            email = normalize_email(record.email)
            if email:
                self._by_email.setdefault(email, record)

    def link(self, record_id: int, external_id: str) -> Optional[str]:
        """Link an unlinked record once per run; returns the identity it was already linked to, if any."""
        with self._lock:
            current = self._linked.get(record_id)
            if current is None:
                self._linked[record_id] = external_id
            return current

    def lookup(self, source: SourceRecord) -> Optional[TargetRecord]:
        with self._lock:
            record = self._by_external_id.get(source.external_id)
            if record is None:
                email = normalize_email(source.email)
                if email:
                    record = self._by_email.get(email)
            return record


class SyncOrchestrator:
    """
    Synchronizes directory identities into the employee record store.

    Every public sync entry point returns a SyncRunSummary. Record-level failures
    become Error results; run-level failures raise a RunError carrying the
    Failed summary.
    """

    def __init__(self, directory: DirectoryClient, store: RecordStoreClient,
                 options: Optional[SyncOptions] = None,
                 delta_state: Optional[DeltaStateStore] = None,
                 audit_sink: Optional[SyncLogSink] = None,
                 notifier: Optional[Callable[[SyncRunSummary], Any]] = None,
                 retry_config: Union[RetryPolicy, Dict[str, Any], None] = None,
                 progress_callback: Optional[Callable[[int, int], None]] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize the orchestrator.

        Args:
            directory: Source of directory identities
            store: Employee record store
            options: Sync behaviour (defaults when omitted)
            delta_state: Persistence for the change-feed token; delta runs start over without it
            audit_sink: Sync log; runs are not logged without it
            notifier: Called with every finished or failed summary
            retry_config: RetryPolicy or ``error_handling`` configuration section
            progress_callback: Called with (processed, total) after every chunk
            overrides: Partial option values applied over ``options`` for this orchestrator

        Raises:
            ConfigurationError: If an override names an unknown option
        """
        self.directory = directory
        self.store = store
        self.options = merge_options(options or SyncOptions(), overrides)
        self.delta_state = delta_state
        self.audit_sink = audit_sink
        self.notifier = notifier
        self.progress_callback = progress_callback

        if isinstance(retry_config, RetryPolicy):
            self.retry_policy = retry_config
        else:
            self.retry_policy = RetryPolicy.from_config(retry_config)

    # Entry points

    @audited(SyncMode.FULL)
    def sync_all_users(self, summary: SyncRunSummary):
        """Sync every directory user and, when enabled, deactivate records no user matched."""
        sources = self._list_source_users()
        sources = [source for source in sources if passes_filters(source, self.options)]
        logger.info(f"{len(sources)} directory users remain after filtering")

        index = self._load_index()
        matched_ids = set()
        for source in sources:
            record = index.lookup(source)
            if record is not None:
                matched_ids.add(record.id)

        self._process(sources, index, summary)

        if self.options.deactivate_missing:
            self._reconcile(index, matched_ids, summary)

    @audited(SyncMode.SINGLE)
    def sync_single_user(self, summary: SyncRunSummary, identifier: str):
        """Sync one user identified by external id, principal name or email."""
        try:
            source = self._call('Get directory user', self.directory.get_user, identifier)
        except Exception as e:
            raise DirectoryUnavailableError(f"Directory lookup for {identifier} failed: {e}", cause=e) from e

        summary.total_processed = 1
        if source is None:
            logger.warning(f"User not found in directory: {identifier}")
            summary.add_result(SyncResult(identifier=identifier, display_name=identifier,
                                          outcome=SyncOutcome.ERROR, error='User not found in directory'))
            return

        def find(record: SourceRecord) -> Optional[TargetRecord]:
            return self._call('Find employee record', self.store.find_by_external_id_or_email,
                              record.external_id, record.email)

        summary.add_result(self._classify(source, find, _CreatedRecords()))

    @audited(SyncMode.GROUP)
    def sync_users_from_group(self, summary: SyncRunSummary, group_id: str):
        """Sync the members of one directory group. Never deactivates non-members."""
        try:
            member_ids = self._call('List group members', self.directory.list_group_members, group_id)
        except Exception as e:
            raise DirectoryUnavailableError(f"Could not list members of group {group_id}: {e}", cause=e) from e

        logger.info(f"Group {group_id} has {len(member_ids)} members")

        sources = []
        for member_id in member_ids:
            try:
                source = self._call('Get directory user', self.directory.get_user, member_id)
            except Exception as e:
                logger.error(f"Failed to fetch group member {member_id}: {e}")
                summary.total_processed += 1
                summary.add_result(SyncResult(identifier=member_id, display_name=member_id,
                                              outcome=SyncOutcome.ERROR,
                                              error=f"Failed to fetch member: {e}"))
                continue

            if source is None:
                logger.warning(f"Group member {member_id} not found in directory")
                continue
            if passes_filters(source, self.options):
                sources.append(source)

        index = self._load_index()
        self._process(sources, index, summary)

    @audited(SyncMode.DELTA)
    def sync_delta(self, summary: SyncRunSummary):
        """
        Apply directory changes since the stored token.

        The new token is stored only after every page was read and processed,
        even when there were no changes. A failing change query stores nothing
        and raises DeltaQueryError, which advises a full sync.
        """
        lookup = self._get_token()
        if lookup.reason == TokenLookupReason.STORE_UNAVAILABLE:
            logger.warning(f"Delta token unavailable ({lookup.error}); starting from the beginning")
        elif not lookup.found:
            logger.info("No stored delta token; starting from the beginning")

        changes, delta_link = self._collect_changes(lookup.token)
        entries = [entry for entry in changes
                   if isinstance(entry, Tombstone) or passes_filters(entry, self.options)]
        logger.info(f"Delta query returned {len(changes)} changes, {len(entries)} after filtering")

        index = self._load_index()
        self._process(entries, index, summary)

        if not delta_link:
            logger.warning("Change feed returned no continuation token; nothing stored")
        elif self.delta_state is not None and not self.delta_state.save_token(delta_link):
            summary.add_error_detail("Delta token could not be saved; the next delta run repeats these changes")

    def handle_deleted_user(self, tombstone: Tombstone, index: RecordIndex) -> SyncResult:
        """Deactivate the Active record linked to a deleted directory identity."""
        identifier = tombstone.identifier
        display_name = tombstone.display_name or identifier

        try:
            record = index.lookup_tombstone(tombstone)
            if record is None:
                return SyncResult(identifier=identifier, display_name=display_name,
                                  outcome=SyncOutcome.SKIPPED, message='No linked employee record')
            if record.status != RecordStatus.ACTIVE:
                return SyncResult(identifier=identifier, display_name=display_name,
                                  outcome=SyncOutcome.SKIPPED, item_id=record.id,
                                  message='Employee record already inactive')

            self._call('Deactivate employee record', self.store.update, record.id,
                       {'status': RecordStatus.INACTIVE, 'last_synced_at': utcnow()})
            logger.info(f"Deactivated {identifier} (record {record.id}): removed from directory")
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.DEACTIVATED, item_id=record.id,
                              message=f"Deactivated: {tombstone.reason}")
        except Exception as e:
            logger.error(f"Failed to handle deleted user {identifier}: {e}")
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.ERROR, error=str(e))

    def get_sync_history(self, count: int = 10) -> List[SyncLogEntry]:
        if self.audit_sink is None:
            return []
        return self.audit_sink.get_history(count)

    def get_delta_sync_status(self) -> DeltaSyncStatus:
        if self.delta_state is None:
            return DeltaSyncStatus(has_stored_delta=False)
        return self.delta_state.get_status()

    def reset_delta_sync(self) -> bool:
        if self.delta_state is None:
            return False
        reset = self.delta_state.reset_token()
        if reset:
            self._log_event('DeltaReset', 'Completed', 'Delta token reset by operator')
        return reset

    # Run plumbing

    def _call(self, operation_name: str, func: Callable, *args) -> Any:
        return self.retry_policy.call(operation_name, func, *args)

    def _select_fields(self) -> List[str]:
        selected = list(BASE_SELECT_FIELDS)
        wanted = [mapping.source_field for mapping in self.options.field_mappings if mapping.enabled]
        for rule in self.options.mapping_rules:
            wanted.extend(condition.field for condition in rule.conditions)
        for name in wanted:
            if name not in selected:
                selected.append(name)
        return selected

    def _list_source_users(self) -> List[SourceRecord]:
        filters = {}
        if not self.options.include_disabled:
            filters['account_enabled'] = True
        if self.options.department_filter:
            filters['departments'] = list(self.options.department_filter)

        try:
            users = self._call('List directory users', self.directory.list_users, self._select_fields(), filters)
        except Exception as e:
            raise DirectoryUnavailableError(f"Could not list directory users: {e}", cause=e) from e

        logger.info(f"Retrieved {len(users)} users from directory")
        return users

    def _load_index(self) -> RecordIndex:
        try:
            records = self._call('Query employee records', self.store.query_all, None)
        except Exception as e:
            raise StoreUnavailableError(f"Could not read employee records: {e}", cause=e) from e

        logger.info(f"Loaded {len(records)} existing employee records")
        return RecordIndex.build(records)

    def _get_token(self) -> TokenLookup:
        if self.delta_state is None:
            return TokenLookup(token=None, reason=TokenLookupReason.NEVER_SYNCED)
        return self.delta_state.get_token()

    def _collect_changes(self, token: Optional[str]) -> Tuple[List[ChangeEntry], Optional[str]]:
        """Read every change-feed page; keeps the latest entry per identity."""
        latest: Dict[str, ChangeEntry] = {}
        seen_links: Set[str] = {token} if token else set()
        page_count = 0

        try:
            while True:
                page = self._call('Query directory changes', self.directory.query_delta, token)
                page_count += 1
                for entry in page.changes:
                    latest.pop(entry.external_id, None)
                    latest[entry.external_id] = entry
                if not page.next_link:
                    break
                if page.next_link in seen_links:
                    raise DeltaQueryError(f"Change feed repeated a page link after {page_count} pages")
                seen_links.add(page.next_link)
                token = page.next_link
        except DeltaQueryError:
            raise
        except Exception as e:
            raise DeltaQueryError(f"Delta query failed after {page_count} pages: {e}", cause=e) from e

        return list(latest.values()), page.delta_link

    def _process(self, entries: List[ChangeEntry], index: RecordIndex, summary: SyncRunSummary):
        """Classify entries chunk by chunk, recording results in source order."""
        created = _CreatedRecords()
        total = len(entries)
        batch_size = self.options.batch_size
        processed = 0

        executor = None
        if self.options.max_workers > 1 and total > 1:
            executor = ThreadPoolExecutor(max_workers=self.options.max_workers,
                                          thread_name_prefix='directory-sync')
        try:
            for start in range(0, total, batch_size):
                chunk = entries[start:start + batch_size]
                summary.add_results(self._process_chunk(chunk, index, created, executor))
                processed += len(chunk)
                summary.total_processed += len(chunk)
                logger.debug(f"Processed {processed}/{total} records")
                self._report_progress(processed, total)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

    def _process_chunk(self, chunk: List[ChangeEntry], index: RecordIndex, created: _CreatedRecords,
                       executor: Optional[ThreadPoolExecutor] = None) -> List[SyncResult]:
        workers = self.options.max_workers
        if executor is None or len(chunk) <= 1:
            return [self._classify_entry(entry, index, created) for entry in chunk]

        # Entries sharing a key land in the same shard and run sequentially
        shards: Dict[int, List[Tuple[int, ChangeEntry]]] = defaultdict(list)
        for position, entry in enumerate(chunk):
            shards[self._shard_for(entry, index, workers)].append((position, entry))

        results: List[Optional[SyncResult]] = [None] * len(chunk)
        futures = [executor.submit(self._run_shard, shard, index, created) for shard in shards.values()]
        for future in futures:
            for position, result in future.result():
                results[position] = result
        return results

    def _run_shard(self, shard: Iterable[Tuple[int, ChangeEntry]], index: RecordIndex,
                   created: _CreatedRecords) -> List[Tuple[int, SyncResult]]:
        return [(position, self._classify_entry(entry, index, created)) for position, entry in shard]

    @staticmethod
    def _shard_for(entry: ChangeEntry, index: RecordIndex, workers: int) -> int:
        record = index.lookup(entry)
        if record is not None:
            key = f"id:{record.id}"
        else:
            email = normalize_email(entry.email)
            key = f"email:{email}" if email else f"ext:{entry.external_id}"
        return zlib.crc32(key.encode('utf-8')) % workers

    def _classify_entry(self, entry: ChangeEntry, index: RecordIndex, created: _CreatedRecords) -> SyncResult:
        if isinstance(entry, Tombstone):
            return self.handle_deleted_user(entry, index)
        return self._classify(entry, index.lookup, created)

    def _classify(self, source: SourceRecord, find: Callable[[SourceRecord], Optional[TargetRecord]],
                  created: _CreatedRecords) -> SyncResult:
        """Create, update or skip the employee record for one directory user."""
        identifier = source.identifier
        display_name = source.display_name or identifier

        try:
            existing = find(source) or created.lookup(source)

            now = utcnow()
            rule_outcome = apply_rules(source, map_source_to_target(source, self.options.field_mappings, now),
                                       self.options.mapping_rules)
            if rule_outcome.skipped_by:
                return SyncResult(identifier=identifier, display_name=display_name,
                                  outcome=SyncOutcome.SKIPPED, item_id=existing.id if existing else None,
                                  message=f"Skipped by rule '{rule_outcome.skipped_by}'")

            fields = rule_outcome.fields
            if not source.account_enabled:
                fields['status'] = RecordStatus.INACTIVE

            if existing is not None:
                return self._update_existing(source, existing, fields, display_name, created)

            fields['external_id'] = source.external_id
            fields.setdefault('status', RecordStatus.ACTIVE)
            item_id = self._call('Create employee record', self.store.create, fields)
            created.add(TargetRecord(id=item_id, **{k: v for k, v in fields.items() if k != 'id'}))
            logger.info(f"Added {identifier} as record {item_id}")
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.ADDED, item_id=item_id)

        except Exception as e:
            logger.error(f"Failed to sync {identifier}: {e}")
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.ERROR, error=str(e))

    def _update_existing(self, source: SourceRecord, existing: TargetRecord,
                         fields: Dict[str, Any], display_name: str, created: _CreatedRecords) -> SyncResult:
        identifier = source.identifier

        if existing.external_id and existing.external_id != source.external_id:
            raise RecordError(f"Employee record {existing.id} is linked to another directory identity")
        if not existing.external_id:
            linked_to = created.link(existing.id, source.external_id)
            if linked_to is not None and linked_to != source.external_id:
                raise RecordError(f"Employee record {existing.id} was linked to another directory identity in this run")

        if not self.options.update_existing:
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.SKIPPED, item_id=existing.id,
                              message='Updates of existing records are disabled')

        changes = diff_fields(existing, fields)
        if not existing.external_id:
            changes['external_id'] = source.external_id
        if not changes:
            return SyncResult(identifier=identifier, display_name=display_name,
                              outcome=SyncOutcome.SKIPPED, item_id=existing.id, message='No changes')

        changes['last_synced_at'] = fields.get('last_synced_at') or utcnow()
        self._call('Update employee record', self.store.update, existing.id, changes)
        logger.info(f"Updated {identifier} (record {existing.id}): {', '.join(sorted(changes))}")
        return SyncResult(identifier=identifier, display_name=display_name,
                          outcome=SyncOutcome.UPDATED, item_id=existing.id)

    def _reconcile(self, index: RecordIndex, matched_ids: Set[int], summary: SyncRunSummary):
        """Deactivate Active records that no directory user matched in this run."""
        orphans = [record for record in index.records()
                   if record.id not in matched_ids and record.status == RecordStatus.ACTIVE]
        if orphans:
            logger.info(f"Deactivating {len(orphans)} employee records missing from the directory")

        for record in orphans:
            identifier = record.identifier
            try:
                self._call('Deactivate employee record', self.store.update, record.id,
                           {'status': RecordStatus.INACTIVE, 'last_synced_at': utcnow()})
                summary.add_result(SyncResult(identifier=identifier, display_name=record.title or identifier,
                                              outcome=SyncOutcome.DEACTIVATED, item_id=record.id,
                                              message='Not found in directory'))
            except Exception as e:
                logger.error(f"Failed to deactivate record {record.id}: {e}")
                summary.add_result(SyncResult(identifier=identifier, display_name=record.title or identifier,
                                              outcome=SyncOutcome.ERROR, item_id=record.id, error=str(e)))

    def _report_progress(self, processed: int, total: int):
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(processed, total)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _log_event(self, run_id: str, status: str, message: str):
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.log_event(run_id, status, message)
        except Exception as e:
            logger.warning(f"Sync log write failed for {run_id}: {e}")

    def _notify(self, summary: SyncRunSummary):
        if self.notifier is None:
            return
        try:
            self.notifier(summary)
        except Exception as e:
            logger.warning(f"Sync notification failed for {summary.sync_id}: {e}")
