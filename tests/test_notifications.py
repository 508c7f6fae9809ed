#!/usr/bin/env python3
"""
Test suite for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync import notifications
from directory_sync.models import SyncMode, SyncOutcome, SyncResult, SyncRunSummary


def make_summary(errors=0, added=0, mode=SyncMode.FULL):
    summary = SyncRunSummary.start(mode)
    for i in range(added):
        summary.add_result(SyncResult(identifier=f'new{i}@example.com', display_name=f'New {i}',
                                      outcome=SyncOutcome.ADDED))
    for i in range(errors):
        summary.add_result(SyncResult(identifier=f'bad{i}@example.com', display_name=f'Bad {i}',
                                      outcome=SyncOutcome.ERROR, error='HTTP 400: Bad Request'))
    summary.total_processed = added + errors
    summary.complete()
    return summary


class NotificationTestCase(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_success': False,
            'email_on_error': True,
            'email_on_failure': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'sync@example.com',
            'smtp_password': 'secret',
            'email_from': 'sync@example.com',
            'email_to': ['admin@example.com', 'hr@example.com']
        }
        patcher = patch('directory_sync.notifications.smtplib.SMTP')
        self.mock_smtp = patcher.start()
        self.addCleanup(patcher.stop)
        self.server = self.mock_smtp.return_value


class TestSendEmail(NotificationTestCase):

    def test_send_with_starttls_and_login(self):
        self.assertTrue(notifications.send_email('Subject', 'Body', self.config))

        self.mock_smtp.assert_called_once_with('smtp.example.com', 587, timeout=30)
        self.server.starttls.assert_called_once()
        self.server.login.assert_called_once_with('sync@example.com', 'secret')
        from_addr, to_addrs, _ = self.server.sendmail.call_args[0]
        self.assertEqual(to_addrs, ['admin@example.com', 'hr@example.com'])
        self.server.quit.assert_called_once()

    def test_disabled(self):
        self.config['enable_email'] = False
        self.assertFalse(notifications.send_email('Subject', 'Body', self.config))
        self.mock_smtp.assert_not_called()

    def test_missing_server_or_recipients(self):
        self.assertFalse(notifications.send_email('S', 'B', dict(self.config, smtp_server=None)))
        self.assertFalse(notifications.send_email('S', 'B', dict(self.config, email_to=[])))

    def test_recipient_override(self):
        notifications.send_email('S', 'B', self.config, recipients=['ops@example.com'])
        self.assertEqual(self.server.sendmail.call_args[0][1], ['ops@example.com'])

    def test_ssl_port(self):
        self.config['smtp_port'] = 465
        with patch('directory_sync.notifications.smtplib.SMTP_SSL') as mock_ssl:
            self.assertTrue(notifications.send_email('S', 'B', self.config))
        mock_ssl.assert_called_once_with('smtp.example.com', 465, timeout=30)
        self.mock_smtp.assert_not_called()

    def test_smtp_failure_returns_false(self):
        self.server.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')
        self.assertFalse(notifications.send_email('S', 'B', self.config))
        self.server.quit.assert_called_once()

    def test_connection_failure_returns_false(self):
        self.mock_smtp.side_effect = ConnectionRefusedError('refused')
        self.assertFalse(notifications.send_email('S', 'B', self.config))


class TestSyncSummary(NotificationTestCase):

    def test_success_not_sent_by_default(self):
        self.assertFalse(notifications.send_sync_summary(make_summary(added=1), self.config))
        self.mock_smtp.assert_not_called()

    def test_success_sent_when_enabled(self):
        self.config['email_on_success'] = True
        self.assertTrue(notifications.send_sync_summary(make_summary(added=1), self.config))

    def test_errors_sent_with_subject(self):
        summary = make_summary(errors=2)
        with patch('directory_sync.notifications.send_email', return_value=True) as mock_send:
            self.assertTrue(notifications.send_sync_summary(summary, self.config))

        subject = mock_send.call_args[0][0]
        self.assertEqual(subject, 'Directory Sync Full: CompletedWithErrors (2 errors)')

    def test_failed_run_sent(self):
        summary = SyncRunSummary.start(SyncMode.DELTA)
        summary.fail(RuntimeError('directory unreachable'))
        summary.fallback_to_full = True

        with patch('directory_sync.notifications.send_email', return_value=True) as mock_send:
            self.assertTrue(notifications.send_sync_summary(summary, self.config, ['ops@example.com']))

        subject, body, _, recipients = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync Delta: Failed')
        self.assertIn('a full sync is recommended', body)
        self.assertIn('Fatal error: directory unreachable', body)
        self.assertEqual(recipients, ['ops@example.com'])

    def test_body_truncates_errors(self):
        body = notifications.format_summary_body(make_summary(errors=13), self.config)

        self.assertIn('  10. bad9@example.com: HTTP 400: Bad Request', body)
        self.assertNotIn('bad10@example.com', body)
        self.assertIn('... and 3 more errors', body)
        self.assertIn('  Errors: 13', body)

    def test_body_lists_added_users(self):
        self.config['include_added_users'] = True
        self.config['max_users_to_list'] = 2
        body = notifications.format_summary_body(make_summary(added=3), self.config)

        self.assertIn('Added Users:', body)
        self.assertIn('  - New 0 (new0@example.com)', body)
        self.assertIn('  ... and 1 more', body)


class TestOperationalNotifications(NotificationTestCase):

    def test_failure_notification(self):
        with patch('directory_sync.notifications.send_email', return_value=True) as mock_send:
            self.assertTrue(notifications.send_failure_notification(
                'Directory Connection Failure', 'bind refused', self.config, {'server': 'dc01'}))

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Sync Alert: Directory Connection Failure')
        self.assertIn('Error Message: bind refused', body)
        self.assertIn('  server: dc01', body)

    def test_failure_notification_disabled(self):
        self.config['email_on_failure'] = False
        self.assertFalse(notifications.send_failure_notification('X', 'y', self.config))

    def test_configuration_test_email(self):
        self.assertTrue(notifications.test_notification_config(self.config))
        self.assertIn('Configuration Test', self.server.sendmail.call_args[0][2])


if __name__ == '__main__':
    unittest.main()
