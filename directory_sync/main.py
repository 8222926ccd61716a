"""
Main entry point for Directory Sync.

Loads configuration and the CSV desired state, builds the directory gateway
and runs one reconciliation. Exit codes:

    0  success, dry run, or halted waiting for delete confirmation
    1  at least one applied directory operation failed
    2  configuration error (including invalid desired state)
    3  directory connection or authentication error during planning
    4  unexpected error
"""

import sys
import json
import asyncio
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from directory_sync.config import load_config, ConfigurationError
from directory_sync.csv_loader import load_desired_state
from directory_sync.export import AccountExporter
from directory_sync.gateway.base import DirectoryAPIError
from directory_sync.gateway.credentials import CredentialError, create_credential_provider
from directory_sync.gateway.graph import GraphDirectoryGateway
from directory_sync.logging_setup import setup_logging
from directory_sync.notifications import (
    send_configuration_error,
    send_directory_connection_failure,
    send_failure_notification,
    send_operation_errors_notification,
    send_success_summary,
    test_notification_config,
)
from directory_sync.protection import AccountProtectionFilter
from directory_sync.reconciler import ReconciliationDriver, ReconciliationError, RunOptions, RunSummary

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_OPERATION_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class DirectorySyncApp:
    """
    Application orchestrator for one reconciliation run.

    Args:
        config_path: Path to the YAML configuration file
        options: Run options from the command line
        csv_path: Overrides ``source.csv_path`` from the configuration
    """

    def __init__(self, config_path: Optional[str] = None, options: Optional[RunOptions] = None,
                 csv_path: Optional[str] = None):
        self.config_path = config_path
        self.options = options or RunOptions()
        self.csv_path = csv_path
        self.config = None
        self.run_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete reconciliation process.

        Returns:
            Exit code
        """
        self.run_stats['start_time'] = datetime.now()
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info("Starting Directory Sync")

            summary = asyncio.run(self._reconcile())
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._notify(send_configuration_error, str(e), self.config_path)
            return EXIT_CONFIGURATION_ERROR
        except ReconciliationError as e:
            logger.error(f"Directory error: {e}")
            self._notify(send_directory_connection_failure, str(e))
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, "Reconciliation Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR

        self.run_stats['end_time'] = datetime.now()
        self.run_stats['runtime_seconds'] = (
            self.run_stats['end_time'] - self.run_stats['start_time']
        ).total_seconds()

        self._present(summary)

        if summary.halted or self.options.dry_run:
            return EXIT_SUCCESS

        self._export(summary)

        stats = dict(summary.to_dict(), runtime_seconds=self.run_stats['runtime_seconds'])
        if summary.failed:
            logger.warning(f"Reconciliation completed with {len(summary.errors)} failed operations")
            self._notify(send_operation_errors_notification, stats, summary.errors)
        else:
            logger.info("Reconciliation completed successfully")
            self._notify(send_success_summary, stats)

        return summary.exit_code

    def _load_configuration(self):
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    async def _reconcile(self) -> RunSummary:
        csv_path = self.csv_path or self.config['source']['csv_path']
        desired, custom_fields = load_desired_state(csv_path)
        if custom_fields:
            logger.info(f"Custom attributes detected: {', '.join(custom_fields)}")

        protection_config = self.config['protection']
        protection_filter = AccountProtectionFilter.from_config(protection_config)
        logger.info(protection_filter.describe())

        async with self._create_gateway() as gateway:
            driver = ReconciliationDriver(
                gateway,
                protection_filter=protection_filter,
                protect_updates=protection_config.get('protect_updates', True),
                license_sku_ids=self.config.get('licensing', {}).get('sku_ids', []),
            )
            return await driver.run(desired, custom_fields, self.options)

    def _create_gateway(self) -> GraphDirectoryGateway:
        directory_config = self.config['directory']
        batching = self.config['batching']
        error_config = self.config.get('error_handling', {})

        try:
            credentials = create_credential_provider(directory_config['auth'], error_config)
        except CredentialError as e:
            raise ConfigurationError(str(e))

        return GraphDirectoryGateway(
            directory_config,
            credentials,
            batch_size=batching['batch_size'],
            batch_delay=batching['batch_delay_seconds'],
            max_retries=error_config.get('max_retries', 3),
            retry_wait=error_config.get('retry_wait_seconds', 2),
        )

    def _present(self, summary: RunSummary):
        print(summary.report)
        for warning in summary.warnings:
            print(f"WARNING: {warning}")

        if self.options.dry_run:
            print("\nDry run: no changes were applied.")
        elif summary.halted:
            print(f"\n{len(summary.delta.delete)} accounts would be deleted. No changes were applied.")
            print("Re-run with --force to apply the deletions, or with --skip-delete to leave them.")
        else:
            print(f"\nCreated: {summary.created}  Updated: {summary.updated}  Deleted: {summary.deleted}  "
                  f"Unchanged: {summary.unchanged}  Errors: {len(summary.errors)}")
            for error in summary.errors:
                print(f"ERROR: {error}")

    def _export(self, summary: RunSummary):
        if not summary.created_accounts and not summary.updated_emails:
            return

        output_config = self.config['output']
        exporter = AccountExporter(output_config['export_path'], output_config['passwords_path'])
        try:
            exporter.export_accounts(summary)
            if output_config.get('export_passwords') and summary.created_accounts:
                exporter.export_passwords(summary)
        except OSError as e:
            logger.error(f"Failed to export accounts: {e}")

    def _notify(self, sender, *args):
        notifications_config = (self.config or {}).get('notifications', {})
        try:
            sender(*args, notifications_config)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, credentials and directory access.

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
            asyncio.run(self._check_directory())
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory connection successful'
            }
        except (ConfigurationError, CredentialError, DirectoryAPIError) as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            missing_fields = [f for f in ('smtp_server', 'email_from', 'email_to') if not notifications_config.get(f)]
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

    async def _check_directory(self):
        async with self._create_gateway() as gateway:
            await gateway.test_connection()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Reconcile directory accounts against a CSV desired state')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--csv', help='Path to the desired state CSV (overrides source.csv_path)')
    parser.add_argument('--dry-run', action='store_true', help='Report the plan without applying changes')
    parser.add_argument('--force', action='store_true', help='Apply deletions without confirmation')
    parser.add_argument('--skip-create', action='store_true', help='Do not create accounts')
    parser.add_argument('--skip-update', action='store_true', help='Do not update accounts')
    parser.add_argument('--skip-delete', action='store_true', help='Do not delete accounts')
    parser.add_argument('--show-diff', action='store_true', help='Print the detailed plan before applying')
    parser.add_argument('--skip-licenses', action='store_true', help='Do not assign licenses to new accounts')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of reconciliation')
    parser.add_argument('--test-email', action='store_true', help='Send test email notification')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    options = RunOptions(
        dry_run=args.dry_run,
        force=args.force,
        skip_create=args.skip_create,
        skip_update=args.skip_update,
        skip_delete=args.skip_delete,
        show_diff=args.show_diff,
        skip_licenses=args.skip_licenses,
    )
    app = DirectorySyncApp(config_path=args.config, options=options, csv_path=args.csv)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.test_email:
        try:
            app._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION_ERROR)

        if test_notification_config(app.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    sys.exit(app.run())


if __name__ == "__main__":
    main()
