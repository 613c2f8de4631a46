"""
Per-object execution of the attribute copy.

In report mode the executor only records what it sees. In apply mode it asks
the confirmation gate, honours dry runs and writes the source value into the
target attribute on each object's home domain, once, without retries.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from anchor_sync.ldap_client import AttributeUpdateError
from anchor_sync.logging_setup import audit_logger
from anchor_sync.models import (
    AttributePair, DirectoryObjectRef, OperationResult, OperationStatus, format_value, is_unset
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[DirectoryObjectRef], bool]


def always_confirm(obj: DirectoryObjectRef) -> bool:
    return True


class PropagationExecutor:
    """Copies the source attribute value to the target attribute, object by object."""

    def __init__(self, client, attributes: AttributePair, reporter, run_context,
                 report_only: bool = False, dry_run: bool = False,
                 confirm: Optional[ConfirmCallback] = None):
        self.client = client
        self.attributes = attributes
        self.reporter = reporter
        self.run_context = run_context
        self.report_only = report_only
        self.dry_run = dry_run
        self.confirm = confirm or always_confirm

    def execute(self, objects: List[DirectoryObjectRef]):
        mode = 'report' if self.report_only else ('dry-run' if self.dry_run else 'apply')
        logger.info(f"Processing {len(objects)} object(s) in {mode} mode: "
                    f"{self.attributes.source} -> {self.attributes.target}")

        for obj in objects:
            if self.report_only:
                self._report(obj)
            else:
                self._apply(obj)

    def _report(self, obj: DirectoryObjectRef):
        logger.info(f"{obj.distinguished_name}: {self.attributes.source}="
                    f"{format_value(obj.get_attribute(self.attributes.source))} "
                    f"{self.attributes.target}={format_value(obj.get_attribute(self.attributes.target))}")
        self.reporter.record(OperationResult.for_object(
            obj, self.attributes, OperationStatus.REPORT_ONLY, self.run_context.started_at
        ))

    def _apply(self, obj: DirectoryObjectRef):
        target = self.attributes.target
        value = obj.get_attribute(self.attributes.source)

        if not self.confirm(obj):
            logger.info(f"Skipped {obj.distinguished_name}: not confirmed")
            return

        if self.dry_run:
            logger.info(f"What if: set {target} to {format_value(value)} on "
                        f"{obj.distinguished_name} via {obj.domain}")
            return

        if is_unset(value):
            message = f"{self.attributes.source} has no value on {obj.distinguished_name}"
            logger.error(message)
            self.reporter.record(OperationResult.for_object(
                obj, self.attributes, OperationStatus.FAILED, datetime.now(), error_message=message
            ))
            return

        try:
            self.client.update_attribute(obj.distinguished_name, obj.domain, target, value)
        except AttributeUpdateError as e:
            logger.error(f"Failed to set {target} on {obj.distinguished_name}: {e}")
            self._record_failure(obj, str(e))
            return
        except Exception as e:
            logger.error(f"Unexpected error setting {target} on {obj.distinguished_name}: {e}", exc_info=True)
            self._record_failure(obj, f"{type(e).__name__}: {e}")
            return

        logger.info(f"Set {target} to {format_value(value)} on {obj.distinguished_name}")
        audit_logger.log_attribute_write(obj.distinguished_name, target, obj.domain, True)
        self.reporter.record(OperationResult.for_object(
            obj, self.attributes, OperationStatus.SUCCEEDED, datetime.now(), target_value=value
        ))

    def _record_failure(self, obj: DirectoryObjectRef, message: str):
        audit_logger.log_attribute_write(obj.distinguished_name, self.attributes.target, obj.domain, False)
        self.reporter.record(OperationResult.for_object(
            obj, self.attributes, OperationStatus.FAILED, datetime.now(), error_message=message
        ))
