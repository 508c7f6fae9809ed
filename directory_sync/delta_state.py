"""
Persistence of the change-feed continuation token.

The token lives in one row of the settings list (ConfigType 'DeltaLink').
Failures never propagate: reads degrade to a TokenLookup that says why no token
is available, writes return False and log a warning.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from directory_sync.models import DeltaSyncStatus, TokenLookup, TokenLookupReason
from directory_sync.store import ListClient, StoreError, odata_quote

logger = logging.getLogger(__name__)

DELTA_CONFIG_TYPE = 'DeltaLink'


class DeltaStateStore:
    """Reads and writes the stored delta token in the settings list."""

    def __init__(self, list_client: ListClient, list_name: str = 'SyncConfig'):
        self.list_client = list_client
        self.list_name = list_name

    def _find_row(self) -> Optional[Dict[str, Any]]:
        items = self.list_client.query(
            self.list_name,
            select=['Id', 'ConfigType', 'ConfigValue', 'Modified'],
            filter=f"ConfigType eq {odata_quote(DELTA_CONFIG_TYPE)}",
            top=1
        )
        return items[0] if items else None

    def get_token(self) -> TokenLookup:
        try:
            row = self._find_row()
        except (StoreError, OSError) as e:
            logger.warning(f"Could not read stored delta token from {self.list_name}: {e}")
            return TokenLookup(token=None, reason=TokenLookupReason.STORE_UNAVAILABLE, error=str(e))

        token = row.get('ConfigValue') if row else None
        if not token:
            return TokenLookup(token=None, reason=TokenLookupReason.NEVER_SYNCED)
        return TokenLookup(token=token, reason=TokenLookupReason.FOUND)

    def save_token(self, token: str) -> bool:
        """Store the token, updating the existing row when there is one."""
        try:
            row = self._find_row()
            if row:
                self.list_client.update(self.list_name, int(row['Id']), {'ConfigValue': token})
            else:
                self.list_client.add(self.list_name, {
                    'Title': 'Delta Link',
                    'ConfigType': DELTA_CONFIG_TYPE,
                    'ConfigValue': token
                })
        except (StoreError, OSError) as e:
            logger.warning(f"Could not save delta token to {self.list_name}: {e}")
            return False

        logger.debug("Stored new delta token")
        return True

    def reset_token(self) -> bool:
        """Clear the stored token so the next delta run starts from the beginning."""
        try:
            row = self._find_row()
            if row:
                self.list_client.update(self.list_name, int(row['Id']), {'ConfigValue': ''})
        except (StoreError, OSError) as e:
            logger.warning(f"Could not reset delta token in {self.list_name}: {e}")
            return False

        logger.info("Delta token reset; next delta sync will start from the beginning")
        return True

    def get_status(self) -> DeltaSyncStatus:
        try:
            row = self._find_row()
        except (StoreError, OSError) as e:
            logger.warning(f"Could not read delta sync status: {e}")
            return DeltaSyncStatus(has_stored_delta=False)

        if not row or not row.get('ConfigValue'):
            return DeltaSyncStatus(has_stored_delta=False)
        return DeltaSyncStatus(has_stored_delta=True, last_delta_sync=parse_timestamp(row.get('Modified')))


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None
