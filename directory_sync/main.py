"""
Application entry point for Directory Sync.

Wires configuration, logging, the directory and record store clients and the
sync orchestrator together, and exposes them through the directory-sync CLI.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from directory_sync.audit import SyncLogSink
from directory_sync.config import load_config, ConfigurationError, SyncOptions
from directory_sync.delta_state import DeltaStateStore
from directory_sync.directory_client import LDAPDirectoryClient, DirectoryConnectionError
from directory_sync.errors import DeltaQueryError, RunError
from directory_sync.logging_setup import setup_logging
from directory_sync.models import SyncRunSummary, SyncStatus
from directory_sync.notifications import (
    send_failure_notification,
    send_sync_summary,
    test_notification_config
)
from directory_sync.orchestrator import SyncOrchestrator
from directory_sync.store import ListClient, ListRecordStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMPLETED_WITH_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_RUN_FAILED = 4

MODES = ('full', 'single', 'group', 'delta')


class SyncApplication:
    """
    Builds the sync components from configuration and runs one command.

    Each run method returns a process exit code.
    """

    def __init__(self, config_path: Optional[str] = None, output=None,
                 overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
            output: Stream JSON results are written to (stdout by default)
            overrides: Sync options that take precedence over the ``sync`` section
        """
        self.config_path = config_path
        self.output = output or sys.stdout
        self.overrides = overrides or {}
        self.config = None
        self.directory_client = None
        self.list_client = None
        self.orchestrator = None

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_directory(self):
        error_config = self.config.get('error_handling', {})
        self.directory_client = LDAPDirectoryClient(self.config['directory'])
        try:
            self.directory_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except DirectoryConnectionError:
            self.directory_client = None
            raise

    def _build_orchestrator(self) -> SyncOrchestrator:
        store_config = self.config['record_store']
        notifications_config = self.config.get('notifications', {})

        if self.directory_client is None:
            self.directory_client = LDAPDirectoryClient(self.config['directory'])
        self.list_client = ListClient(store_config)
        options = SyncOptions.from_config(self.config.get('sync'), notifications_config.get('email_to'))

        def notify(summary: SyncRunSummary):
            send_sync_summary(summary, notifications_config, options.notification_recipients)

        self.orchestrator = SyncOrchestrator(
            directory=self.directory_client,
            store=ListRecordStore(self.list_client, store_config['employees_list'], store_config['page_size']),
            options=options,
            delta_state=DeltaStateStore(self.list_client, store_config['sync_config_list']),
            audit_sink=SyncLogSink(self.list_client, store_config['sync_log_list']),
            notifier=notify,
            retry_config=self.config.get('error_handling'),
            progress_callback=_log_progress,
            overrides=self.overrides
        )
        return self.orchestrator

    def _prepare(self, connect_directory: bool = True) -> SyncOrchestrator:
        self._load_configuration()
        setup_logging(self.config.get('logging'))
        if connect_directory:
            self._connect_directory()
        return self._build_orchestrator()

    def _print(self, data: Any):
        self.output.write(json.dumps(data, indent=2, default=str) + '\n')

    def run_sync(self, mode: str, user: Optional[str] = None, group: Optional[str] = None) -> int:
        """
        Run one sync and print its summary.

        Returns:
            Exit code (0 completed, 1 completed with errors, 2-4 failures)
        """
        try:
            orchestrator = self._prepare()
            logger.info(f"Starting directory sync in {mode} mode")
            summary = self._run_mode(orchestrator, mode, user, group)

            self._print(summary.to_dict())
            if summary.status == SyncStatus.COMPLETED_WITH_ERRORS:
                logger.warning(f"Sync {summary.sync_id} completed with {summary.errors} errors")
                return EXIT_COMPLETED_WITH_ERRORS
            logger.info(f"Sync {summary.sync_id} completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self.output.write(f"Configuration error: {e}\n")
            return EXIT_CONFIGURATION_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            send_failure_notification("Directory Connection Failed", str(e),
                                      self.config.get('notifications', {}),
                                      {'Component': 'Directory Connection',
                                       'Impact': 'Sync aborted before any record was processed'})
            return EXIT_DIRECTORY_ERROR
        except RunError as e:
            logger.error(f"Sync run failed: {e}")
            if e.summary is not None:
                self._print(e.summary.to_dict())
            return EXIT_RUN_FAILED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            send_failure_notification("Sync Failed", f"Unexpected error: {e}",
                                      (self.config or {}).get('notifications', {}))
            return EXIT_RUN_FAILED
        finally:
            self._cleanup()

    def _run_mode(self, orchestrator: SyncOrchestrator, mode: str,
                  user: Optional[str], group: Optional[str]) -> SyncRunSummary:
        if mode == 'full':
            return orchestrator.sync_all_users()
        if mode == 'single':
            return orchestrator.sync_single_user(user)
        if mode == 'group':
            return orchestrator.sync_users_from_group(group)

        try:
            return orchestrator.sync_delta()
        except DeltaQueryError as e:
            if not self.config.get('delta', {}).get('fallback_to_full', True):
                raise
            logger.warning(f"Delta sync failed ({e}); falling back to full sync")
            return orchestrator.sync_all_users()

    def show_history(self, count: int) -> int:
        try:
            orchestrator = self._prepare(connect_directory=False)
        except ConfigurationError as e:
            self.output.write(f"Configuration error: {e}\n")
            return EXIT_CONFIGURATION_ERROR
        try:
            self._print([entry.to_dict() for entry in orchestrator.get_sync_history(count)])
            return EXIT_OK
        finally:
            self._cleanup()

    def show_delta_status(self) -> int:
        try:
            orchestrator = self._prepare(connect_directory=False)
        except ConfigurationError as e:
            self.output.write(f"Configuration error: {e}\n")
            return EXIT_CONFIGURATION_ERROR
        try:
            self._print(orchestrator.get_delta_sync_status().to_dict())
            return EXIT_OK
        finally:
            self._cleanup()

    def reset_delta(self) -> int:
        try:
            orchestrator = self._prepare(connect_directory=False)
        except ConfigurationError as e:
            self.output.write(f"Configuration error: {e}\n")
            return EXIT_CONFIGURATION_ERROR
        try:
            reset = orchestrator.reset_delta_sync()
            self._print({'reset': reset})
            return EXIT_OK if reset else EXIT_RUN_FAILED
        finally:
            self._cleanup()

    def test_email(self) -> int:
        try:
            self._load_configuration()
        except ConfigurationError as e:
            self.output.write(f"Configuration error: {e}\n")
            return EXIT_CONFIGURATION_ERROR

        if test_notification_config(self.config.get('notifications', {})):
            self.output.write("Test email sent successfully\n")
            return EXIT_OK
        self.output.write("Failed to send test email\n")
        return EXIT_COMPLETED_WITH_ERRORS

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            test_client = LDAPDirectoryClient(self.config['directory'])
            test_client.connect(max_retries=1, retry_wait=1)
            test_client.disconnect()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory connection successful'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        store_config = self.config['record_store']
        try:
            with ListClient(store_config) as client:
                missing = [name for name in (store_config['employees_list'], store_config['sync_log_list'],
                                             store_config['sync_config_list'])
                           if not client.list_exists(name)]
            if missing:
                raise ValueError(f"Missing lists: {', '.join(missing)}")
            health_status['checks']['record_store'] = {
                'status': 'pass',
                'message': 'Record store lists reachable'
            }
        except Exception as e:
            health_status['checks']['record_store'] = {
                'status': 'fail',
                'message': f'Record store check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory_client:
            self.directory_client.disconnect()
            self.directory_client = None
        if self.list_client:
            self.list_client.close()
            self.list_client = None


def _log_progress(processed: int, total: int):
    logger.info(f"Progress: {processed}/{total} records")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='directory-sync', description='Directory to employee record sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--mode', choices=MODES, default='full', help='Sync mode (default: full)')
    parser.add_argument('--user', help='User to sync in single mode (object GUID, UPN or email)')
    parser.add_argument('--group', help='Group to sync in group mode (DN or object GUID)')
    parser.add_argument('--deactivate-missing', action='store_true', default=None,
                        help='Deactivate records of users no longer in the directory (full mode)')
    parser.add_argument('--include-disabled', action='store_true', default=None,
                        help='Also sync disabled directory accounts')
    parser.add_argument('--batch-size', type=int, metavar='N', help='Records processed per chunk')
    parser.add_argument('--history', type=int, metavar='N', help='Show the N most recent sync log entries')
    parser.add_argument('--delta-status', action='store_true', help='Show the stored delta token status')
    parser.add_argument('--reset-delta', action='store_true', help='Clear the stored delta token')
    parser.add_argument('--health-check', action='store_true', help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true', help='Send test email notification')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.mode == 'single' and not args.user:
        parser.error('--mode single requires --user')
    if args.mode == 'group' and not args.group:
        parser.error('--mode group requires --group')

    overrides = {
        name: value for name, value in (
            ('deactivate_missing', args.deactivate_missing),
            ('include_disabled', args.include_disabled),
            ('batch_size', args.batch_size),
        ) if value is not None
    }

    app = SyncApplication(config_path=args.config, overrides=overrides)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)
    elif args.test_email:
        sys.exit(app.test_email())
    elif args.history is not None:
        sys.exit(app.show_history(args.history))
    elif args.delta_status:
        sys.exit(app.show_delta_status())
    elif args.reset_delta:
        sys.exit(app.reset_delta())
    else:
        sys.exit(app.run_sync(args.mode, user=args.user, group=args.group))


if __name__ == "__main__":
    main()
