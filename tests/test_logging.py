#!/usr/bin/env python3
"""
Test suite for logging infrastructure.

Covers file logging, retention cleanup and scrubbing of credentials and
continuation tokens from log output.
"""

import os
import sys
import time
import shutil
import logging
import logging.handlers
import tempfile
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.logging_setup import LoggingManager, SensitiveDataFilter


def make_record(msg, args=None):
    return logging.LogRecord('directory_sync.test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def test_patterns(self):
        cases = [
            ('password=secret123', 'password=****'),
            ('token=abc123def456', 'token=****'),
            ('{"bind_password": "topsecret"}', '{"bind_password": "****"}'),
            ('{"password": "test123"}', '{"password": "****"}'),
            ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
            ('Resuming from delta_link=AAECAwQ= after restart', 'Resuming from delta_link=**** after restart'),
            ('Normal message without secrets', 'Normal message without secrets'),
        ]
        for message, expected in cases:
            with self.subTest(message=message):
                self.assertEqual(self.filter.scrub(message), expected)

    def test_filter_formats_args_before_scrubbing(self):
        record = make_record('Binding to %s with password=%s', ('dc01', 'hunter2'))

        self.assertTrue(self.filter.filter(record))
        self.assertEqual(record.getMessage(), 'Binding to dc01 with password=****')
        self.assertIsNone(record.args)


class TestLoggingManager(unittest.TestCase):

    def setUp(self):
        self.log_dir = tempfile.mkdtemp(prefix='directory_sync_test_logs_')
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in list(self.root.handlers):
            handler.close()
        self.root.handlers[:] = self.saved_handlers
        self.root.setLevel(self.saved_level)
        shutil.rmtree(self.log_dir, ignore_errors=True)

    def configure(self, **overrides):
        config = {
            'level': 'DEBUG',
            'log_dir': self.log_dir,
            'rotation': 'daily',
            'retention_days': 3,
            'console_output': False
        }
        config.update(overrides)
        manager = LoggingManager()
        manager.setup_logging(config)
        return manager

    def read_log(self):
        for handler in self.root.handlers:
            handler.flush()
        with open(os.path.join(self.log_dir, 'directory-sync.log'), encoding='utf-8') as f:
            return f.read()

    def test_file_logging_scrubs_secrets(self):
        self.configure()
        logger = logging.getLogger('directory_sync.test')
        logger.debug("debug detail")
        logger.info("Connecting with password=topsecret")

        content = self.read_log()
        self.assertIn('debug detail', content)
        self.assertIn('password=****', content)
        self.assertNotIn('topsecret', content)

    def test_rotating_handler_by_default(self):
        self.configure()
        self.assertIsInstance(self.root.handlers[0], logging.handlers.TimedRotatingFileHandler)

    def test_plain_file_handler_without_rotation(self):
        self.configure(rotation='none')
        handler = self.root.handlers[0]
        self.assertIs(type(handler), logging.FileHandler)

    def test_console_handler(self):
        self.configure(console_output=True, console_level='ERROR')
        console = [h for h in self.root.handlers if type(h) is logging.StreamHandler]
        self.assertEqual(len(console), 1)
        self.assertEqual(console[0].level, logging.ERROR)

    def test_setup_is_idempotent(self):
        manager = self.configure()
        handlers = list(self.root.handlers)
        manager.setup_logging({'log_dir': self.log_dir, 'console_output': True})
        self.assertEqual(self.root.handlers, handlers)

    def test_retention_cleanup_removes_only_old_rotations(self):
        current_file = os.path.join(self.log_dir, 'directory-sync.log')
        old_file = os.path.join(self.log_dir, 'directory-sync.log.2020-01-01')
        recent_file = os.path.join(self.log_dir, 'directory-sync.log.2099-01-01')
        unrelated_file = os.path.join(self.log_dir, 'other.log.2020-01-01')
        ten_days_ago = time.time() - 10 * 86400
        for path in (current_file, old_file, recent_file, unrelated_file):
            with open(path, 'w') as f:
                f.write('old entries\n')
            if path in (old_file, unrelated_file):
                os.utime(path, (ten_days_ago, ten_days_ago))

        self.configure()

        self.assertFalse(os.path.exists(old_file))
        self.assertTrue(os.path.exists(current_file))
        self.assertTrue(os.path.exists(recent_file))
        self.assertTrue(os.path.exists(unrelated_file))

    def test_retention_disabled(self):
        old_file = os.path.join(self.log_dir, 'directory-sync.log.2020-01-01')
        with open(old_file, 'w') as f:
            f.write('old entries\n')
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old_file, (ten_days_ago, ten_days_ago))

        self.configure(retention_days=0)

        self.assertTrue(os.path.exists(old_file))

    def test_custom_file_name(self):
        self.configure(file_name='sync-audit.log')
        logging.getLogger('directory_sync.test').info('custom file')
        for handler in self.root.handlers:
            handler.flush()
        self.assertTrue(os.path.exists(os.path.join(self.log_dir, 'sync-audit.log')))

    def test_creates_missing_log_directory(self):
        nested = os.path.join(self.log_dir, 'nested', 'logs')
        self.configure(log_dir=nested)
        self.assertTrue(os.path.isdir(nested))


if __name__ == '__main__':
    unittest.main()
