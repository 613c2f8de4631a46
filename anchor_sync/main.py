"""
Command line entry point and orchestration for anchor-sync.

``propagate`` copies the source attribute to the target attribute for every
object in the selected scope and exports the results to CSV. ``join`` pairs
one object in a source directory with one object in a target directory.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from anchor_sync.config import load_config, options_from_config, ConfigurationError
from anchor_sync.context import RunContext, EnvironmentPreconditionError
from anchor_sync.engine import propagate
from anchor_sync.executor import ConfirmCallback
from anchor_sync.joiner import CrossDomainJoiner, JoinError, PreconditionViolation
from anchor_sync.ldap_client import DirectoryClient, LDAPConnectionError
from anchor_sync.logging_setup import setup_logging, audit_logger
from anchor_sync.models import (
    AttributePair, DirectoryObjectRef, OperationStatus, RunSummary,
    DEFAULT_SOURCE_ATTRIBUTE, DEFAULT_TARGET_ATTRIBUTE
)
from anchor_sync.reporting import export_csv
from anchor_sync.scope import ScopeResolutionError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_SCOPE_ERROR = 5
EXIT_JOIN_ERROR = 6


class ConsoleConfirm:
    """Interactive per-object confirmation on stdin: yes, no, all or quit."""

    def __init__(self, action: str):
        self.action = action
        self.approve_all = False
        self.declined_all = False

    def __call__(self, obj: DirectoryObjectRef) -> bool:
        if self.approve_all:
            return True
        if self.declined_all:
            return False

        while True:
            try:
                answer = input(f"{self.action} on {obj.distinguished_name}? [y]es/[n]o/[a]ll/[q]uit: ")
            except EOFError:
                logger.warning("No more input; declining remaining confirmations")
                self.declined_all = True
                return False
            answer = answer.strip().lower()
            if answer in ('y', 'yes'):
                return True
            if answer in ('n', 'no'):
                return False
            if answer in ('a', 'all'):
                self.approve_all = True
                return True
            if answer in ('q', 'quit'):
                self.declined_all = True
                return False


class PropagationOrchestrator:
    """
    Runs one attribute propagation from configuration to CSV report.

    Handles configuration, logging, the directory connection and exit codes
    around the propagation pipeline.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 confirm: Optional[ConfirmCallback] = None):
        """
        Initialize propagation orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Values replacing keys of the ``propagation`` section
            confirm: Per-object confirmation callback
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.confirm = confirm
        self.directory = None
        self.run_context = None
        self.reporter = None
        self.report_path = None

    def run(self) -> int:
        """
        Run the complete propagation.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self.run_context = RunContext.create(self.config)
            setup_logging(self.config.get('logging', {}), self.run_context)

            options = options_from_config(self.config)
            logger.info(f"Starting propagation of {options.attributes.source} to {options.attributes.target} "
                        f"for {options.scope}")

            self._connect_directory()

            with self.run_context.use_directory(self.directory):
                self.reporter = propagate(self.run_context, options, confirm=self._confirm_callback(options))

            self._export_results()
            summary = self.reporter.summary()
            self._log_run_summary(summary)

            lookup_failures = sum(1 for r in self.reporter.results if r.status == OperationStatus.GET_FAILED)
            if summary.failed or lookup_failures:
                logger.warning(f"Propagation completed with {summary.failed} write failure(s) "
                               f"and {lookup_failures} lookup failure(s)")
                return EXIT_PARTIAL_FAILURE
            logger.info("Propagation completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except (ScopeResolutionError, EnvironmentPreconditionError) as e:
            logger.error(f"Propagation aborted: {e}")
            return EXIT_SCOPE_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load configuration and apply command line overrides."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        propagation = self.config.setdefault('propagation', {})
        for key, value in self.overrides.items():
            if value is not None:
                propagation[key] = value
        audit_logger.log_configuration_access(self.config_path)

    def _connect_directory(self):
        if not self.config.get('ldap', {}).get('server_url'):
            raise ConfigurationError("An ldap section is required for propagation")
        self.directory = DirectoryClient(self.config['ldap'])
        try:
            self.directory.connect()
        except LDAPConnectionError:
            self.directory = None
            raise

    def _confirm_callback(self, options) -> Optional[ConfirmCallback]:
        if self.confirm is not None:
            return self.confirm
        if self.config['propagation'].get('confirm') and not options.report_only:
            return ConsoleConfirm(f"Set {options.attributes.target}")
        return None

    def _export_results(self):
        results = self.reporter.results
        if not results:
            logger.info("No results to export")
            return
        self.report_path = export_csv(results, self.run_context.report_path)

    def _log_run_summary(self, summary: RunSummary):
        runtime = (datetime.now() - self.run_context.started_at).total_seconds()
        results = self.reporter.results

        logger.info("=== Propagation Summary ===")
        logger.info(f"Total runtime: {runtime:.2f} seconds")
        logger.info(f"Identity lookups: {len(self.reporter.lookups)}")
        logger.info(f"Lookup failures: {sum(1 for r in results if r.status == OperationStatus.GET_FAILED)}")
        logger.info(f"Report-only records: {sum(1 for r in results if r.status == OperationStatus.REPORT_ONLY)}")
        logger.info(f"Writes attempted: {summary.attempted}")
        logger.info(f"Writes succeeded: {summary.succeeded}")
        logger.info(f"Writes failed: {summary.failed}")
        if self.report_path:
            logger.info(f"Results exported to: {self.report_path}")
        stats = self.directory.get_connection_stats()
        logger.info(f"Directory connections used: {', '.join(stats['open_connections']) or 'none'}")

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.disconnect()


class JoinOrchestrator:
    """Runs one cross-directory join from configuration."""

    def __init__(self, source_identity: str, target_identity: str, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None, confirm: Optional[ConfirmCallback] = None):
        self.source_identity = source_identity
        self.target_identity = target_identity
        self.config_path = config_path
        self.overrides = overrides or {}
        self.confirm = confirm
        self.config = None
        self.source_client = None
        self.target_client = None
        self.result = None

    def run(self) -> int:
        try:
            self.config = load_config(self.config_path)
            join_config = self.config.get('join')
            if not join_config:
                raise ConfigurationError("No join section configured")

            propagation = self.config.get('propagation', {})
            propagation.update({k: v for k, v in self.overrides.items() if v is not None})

            run_context = RunContext.create(self.config, name='anchor_sync_join')
            setup_logging(self.config.get('logging', {}), run_context)

            self.source_client = DirectoryClient(join_config['source']['ldap'])
            self.target_client = DirectoryClient(join_config['target']['ldap'])

            attributes = AttributePair(
                source=propagation.get('source_attribute', DEFAULT_SOURCE_ATTRIBUTE),
                target=propagation.get('target_attribute', DEFAULT_TARGET_ATTRIBUTE)
            )
            confirm = self.confirm
            if confirm is None and propagation.get('confirm'):
                confirm = ConsoleConfirm(f"Join {self.source_identity} to")

            joiner = CrossDomainJoiner(
                self.source_client, self.target_client, run_context,
                attributes=attributes,
                dry_run=bool(propagation.get('dry_run', False)),
                confirm=confirm
            )
            logger.info(f"Joining {self.source_identity} -> {self.target_identity}")
            self.result = joiner.join(self.source_identity, self.target_identity)

            if self.result.applied:
                logger.info(f"Join completed: {self.result.source_dn} -> {self.result.target_dn}")
            else:
                logger.info("Join not applied (dry run or not confirmed)")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except PreconditionViolation as e:
            logger.error(f"Join precondition failed: {e}")
            return EXIT_JOIN_ERROR
        except JoinError as e:
            logger.error(f"Join failed: {e}")
            return EXIT_JOIN_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            for client in (self.source_client, self.target_client):
                if client and client.is_connected:
                    client.disconnect()


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description='Copy a stable identifier attribute between attributes of directory objects'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    prop = subparsers.add_parser('propagate', help='Copy the source attribute to the target attribute')
    scope = prop.add_mutually_exclusive_group()
    scope.add_argument('--identity', nargs='+', help='SAM account names, DNs or GUIDs')
    scope.add_argument('--search-base', help='Distinguished name to search under')
    scope.add_argument('--domain', help='Domain FQDN')
    scope.add_argument('--forest', help='Forest FQDN')
    prop.add_argument('--search-scope', default='subtree', choices=['base', 'onelevel', 'subtree'],
                      help='Search scope for --search-base')
    prop.add_argument('--source-attribute', help='Attribute to read the value from')
    prop.add_argument('--target-attribute', help='Attribute to write the value to')
    prop.add_argument('--report-only', action='store_true', default=None,
                      help='Report current values without writing')
    prop.add_argument('--only-null-target', action='store_true', default=None,
                      help='Only process objects whose target attribute is empty')
    prop.add_argument('--dry-run', action='store_true', default=None, help='Show what would be written')
    prop.add_argument('--confirm', action='store_true', default=None, help='Ask before every write')

    join = subparsers.add_parser('join', help='Join one source object to one target object')
    join.add_argument('--source-identity', required=True, help='Object in the source directory')
    join.add_argument('--target-identity', required=True, help='Object in the target directory')
    join.add_argument('--source-attribute', help='Attribute to read the value from')
    join.add_argument('--target-attribute', help='Attribute to write the value to')
    join.add_argument('--dry-run', action='store_true', default=None, help='Show what would be written')
    join.add_argument('--confirm', action='store_true', default=None, help='Ask before writing')
    return parser


def scope_override(args) -> Optional[Dict[str, Any]]:
    """Translate scope flags into a ``propagation.scope`` mapping."""
    if args.identity:
        return {'type': 'identity', 'identities': args.identity}
    if args.search_base:
        return {'type': 'search_base', 'search_base': args.search_base, 'search_scope': args.search_scope}
    if args.domain:
        return {'type': 'domain', 'domain': args.domain}
    if args.forest:
        return {'type': 'forest', 'forest': args.forest}
    return None


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    if args.command == 'join':
        orchestrator = JoinOrchestrator(
            args.source_identity, args.target_identity, config_path=args.config,
            overrides={
                'source_attribute': args.source_attribute,
                'target_attribute': args.target_attribute,
                'dry_run': args.dry_run,
                'confirm': args.confirm,
            }
        )
    else:
        orchestrator = PropagationOrchestrator(
            config_path=args.config,
            overrides={
                'scope': scope_override(args),
                'source_attribute': args.source_attribute,
                'target_attribute': args.target_attribute,
                'report_only': args.report_only,
                'only_update_null_target': args.only_null_target,
                'dry_run': args.dry_run,
                'confirm': args.confirm,
            }
        )

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
