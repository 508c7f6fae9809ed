#!/usr/bin/env python3
"""
Unit tests for delta token persistence.
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.delta_state import DELTA_CONFIG_TYPE, DeltaStateStore, parse_timestamp
from directory_sync.models import TokenLookupReason
from tests.fakes import FakeListClient


class TestDeltaStateStore(unittest.TestCase):

    def setUp(self):
        self.lists = FakeListClient()
        self.state = DeltaStateStore(self.lists, 'SyncConfig')

    def test_never_synced(self):
        lookup = self.state.get_token()
        self.assertIsNone(lookup.token)
        self.assertEqual(lookup.reason, TokenLookupReason.NEVER_SYNCED)

    def test_store_unavailable_is_distinguished(self):
        self.lists.fail = True
        lookup = self.state.get_token()
        self.assertIsNone(lookup.token)
        self.assertEqual(lookup.reason, TokenLookupReason.STORE_UNAVAILABLE)
        self.assertIn('503', lookup.error)

    def test_save_creates_then_updates_single_row(self):
        self.assertTrue(self.state.save_token('cookie-1'))
        self.assertTrue(self.state.save_token('cookie-2'))

        rows = self.lists.lists['SyncConfig']
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['ConfigType'], DELTA_CONFIG_TYPE)
        self.assertEqual(self.state.get_token().token, 'cookie-2')

    def test_other_settings_rows_untouched(self):
        self.lists.add('SyncConfig', {'Title': 'Other', 'ConfigType': 'Schedule', 'ConfigValue': 'nightly'})
        self.state.save_token('cookie-1')

        rows = {row['ConfigType']: row['ConfigValue'] for row in self.lists.lists['SyncConfig']}
        self.assertEqual(rows, {'Schedule': 'nightly', DELTA_CONFIG_TYPE: 'cookie-1'})

    def test_save_failure_returns_false(self):
        self.lists.fail = True
        self.assertFalse(self.state.save_token('cookie-1'))

    def test_save_propagates_nothing_on_os_error(self):
        client = Mock()
        client.query.side_effect = ConnectionResetError("reset by peer")
        self.assertFalse(DeltaStateStore(client).save_token('cookie-1'))

    def test_reset(self):
        self.state.save_token('cookie-1')
        self.assertTrue(self.state.reset_token())
        self.assertEqual(self.state.get_token().reason, TokenLookupReason.NEVER_SYNCED)
        self.assertTrue(self.state.reset_token())

    def test_status(self):
        self.assertFalse(self.state.get_status().has_stored_delta)

        self.state.save_token('cookie-1')
        status = self.state.get_status()
        self.assertTrue(status.has_stored_delta)
        self.assertEqual(status.last_delta_sync.tzinfo, timezone.utc)

        self.lists.fail = True
        self.assertFalse(self.state.get_status().has_stored_delta)


class TestParseTimestamp(unittest.TestCase):

    def test_values(self):
        self.assertEqual(parse_timestamp('2024-02-01T10:00:00Z'),
                         datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp('yesterday'))
        now = datetime.now(timezone.utc)
        self.assertIs(parse_timestamp(now), now)


if __name__ == '__main__':
    unittest.main()
