"""
In-memory index of existing employee records.

Directory identities are the authoritative key once a record is linked, but
records that were never synced can only be discovered by email, so lookups try
the external id first and fall back to the lower-cased email.
"""

from typing import Dict, Iterable, List, Optional, Union

from directory_sync.models import SourceRecord, TargetRecord, Tombstone


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


class RecordIndex:
    """Read-only lookup of target records by external id and by normalized email."""

    def __init__(self):
        self._by_external_id: Dict[str, TargetRecord] = {}
        self._by_email: Dict[str, TargetRecord] = {}
        self._records: List[TargetRecord] = []

    @classmethod
    def build(cls, records: Iterable[TargetRecord]) -> 'RecordIndex':
        index = cls()
        for record in records:
            index._records.append(record)
            if record.external_id:
                index._by_external_id.setdefault(record.external_id, record)
            email = normalize_email(record.email)
            if email:
                # A linked record wins the email key over an unlinked duplicate
                current = index._by_email.get(email)
                if current is None or (not current.external_id and record.external_id):
                    index._by_email[email] = record
        return index

    def lookup(self, source: Union[SourceRecord, Tombstone]) -> Optional[TargetRecord]:
        """Find the record for a directory identity: external id first, then email."""
        record = self._by_external_id.get(source.external_id)
        if record is not None:
            return record
        email = normalize_email(source.email)
        if email:
            return self._by_email.get(email)
        return None

    def lookup_tombstone(self, tombstone: Tombstone) -> Optional[TargetRecord]:
        """
        Find the record a tombstone refers to.

        Only linked records qualify: an email match against a record linked to
        another identity, or never linked at all, is not evidence of deletion.
        """
        record = self.lookup(tombstone)
        if record is not None and record.external_id == tombstone.external_id:
            return record
        return None

    def records(self) -> List[TargetRecord]:
        return list(self._records)
