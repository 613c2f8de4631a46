"""
Cross-directory join of one source object and one target object.

Copies the source object's identifier value into the target object's target
attribute when the two directories cannot yet be correlated automatically.
The source value must exist and the target attribute must still be empty;
anything else aborts the join without writing.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Iterator, Optional

from ldap3.core.exceptions import LDAPException

from anchor_sync.context import RunContext
from anchor_sync.enumerator import ObjectLookupError, locate_object
from anchor_sync.executor import ConfirmCallback, always_confirm
from anchor_sync.ldap_client import AttributeUpdateError, LDAPConnectionError, LDAPQueryError
from anchor_sync.logging_setup import audit_logger
from anchor_sync.models import AttributePair, format_value, is_unset

logger = logging.getLogger(__name__)

SOURCE = 'source'
TARGET = 'target'


class JoinError(Exception):
    """Raised when a join fails; ``side`` names the directory that failed."""

    def __init__(self, side: str, message: str):
        self.side = side
        super().__init__(f"{side.capitalize()} side: {message}")


class PreconditionViolation(JoinError):
    """Raised when the source value is missing or the target is already joined."""
    pass


@dataclass(frozen=True)
class JoinResult:
    source_identifier: str
    target_identifier: str
    source_dn: str
    target_dn: str
    target_domain: str
    value: Any
    applied: bool


class CrossDomainJoiner:
    """Joins one object in a source directory to one object in a target directory."""

    def __init__(self, source_client, target_client, run_context: RunContext,
                 attributes: Optional[AttributePair] = None, dry_run: bool = False,
                 confirm: Optional[ConfirmCallback] = None):
        self.source_client = source_client
        self.target_client = target_client
        self.run_context = run_context
        self.attributes = attributes or AttributePair()
        self.dry_run = dry_run
        self.confirm = confirm or always_confirm

    @contextmanager
    def _acquire(self, side: str, client) -> Iterator[Any]:
        """Activate one side's directory; errors leave with the side attached."""
        try:
            with self.run_context.use_directory(client) as active:
                yield active
        except JoinError:
            raise
        except (LDAPConnectionError, LDAPQueryError, LDAPException,
                ObjectLookupError, AttributeUpdateError) as e:
            raise JoinError(side, str(e)) from e

    def join(self, source_identifier: str, target_identifier: str) -> JoinResult:
        """
        Join the two objects.

        Returns:
            JoinResult; ``applied`` is False for dry runs and declined joins

        Raises:
            PreconditionViolation: If the source value is empty or the target is already set
            JoinError: If either side cannot be reached, read or written
        """
        source_attr = self.attributes.source
        target_attr = self.attributes.target

        with self._acquire(SOURCE, self.source_client) as client:
            source = locate_object(client, source_identifier, self.attributes)
            value = source.get_attribute(source_attr)
            if is_unset(value):
                raise PreconditionViolation(
                    SOURCE, f"{source_attr} is empty on {source.distinguished_name}"
                )
            logger.info(f"Source {source.distinguished_name} has {source_attr}={format_value(value)}")

        with self._acquire(TARGET, self.target_client) as client:
            target = locate_object(client, target_identifier, self.attributes)
            existing = target.get_attribute(target_attr)
            if not is_unset(existing):
                raise PreconditionViolation(
                    TARGET, f"{target_attr} is already set on {target.distinguished_name} "
                            f"({format_value(existing)})"
                )

            result = JoinResult(
                source_identifier=source_identifier,
                target_identifier=target_identifier,
                source_dn=source.distinguished_name,
                target_dn=target.distinguished_name,
                target_domain=target.domain,
                value=value,
                applied=False
            )

            if not self.confirm(target):
                logger.info(f"Join of {target.distinguished_name} not confirmed")
                return result

            if self.dry_run:
                logger.info(f"What if: set {target_attr} to {format_value(value)} on "
                            f"{target.distinguished_name} via {target.domain}")
                return result

            client.update_attribute(target.distinguished_name, target.domain, target_attr, value)

        audit_logger.log_join(source.distinguished_name, target.distinguished_name, target_attr)
        logger.info(f"Joined {source.distinguished_name} -> {target.distinguished_name}")
        return replace(result, applied=True)
