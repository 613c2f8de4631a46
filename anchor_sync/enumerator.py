"""
Object enumeration for propagation runs.

Runs the resolved query units, or locates each requested identity through
the global catalog and its home domain, and returns uniform object snapshots.
"""

import logging
from typing import List

from ldap3.core.exceptions import LDAPException

from anchor_sync.ldap_client import LDAPConnectionError, LDAPQueryError, domain_from_dn
from anchor_sync.models import (
    AttributePair, DirectoryObjectRef, ExecutionUnit, Identity, OperationResult,
    OperationStatus, ScopeSelector, SearchScope
)
from anchor_sync.scope import ScopeResolutionError

logger = logging.getLogger(__name__)


class EnumerationError(ScopeResolutionError):
    """Raised when a query unit cannot be executed."""
    pass


class ObjectLookupError(Exception):
    """Raised when a single identity cannot be located or fetched."""
    pass


def requested_attributes(attributes: AttributePair) -> List[str]:
    """Attributes to request for every enumerated object, without duplicates."""
    names = ['distinguishedName', 'objectClass', 'sAMAccountName', attributes.source, attributes.target]
    seen = set()
    unique = []
    for name in names:
        if name.lower() not in seen:
            seen.add(name.lower())
            unique.append(name)
    return unique


def locate_object(client, identifier: str, attributes: AttributePair) -> DirectoryObjectRef:
    """
    Find an object anywhere in the forest and read it from its home domain.

    The global catalog only carries a partial attribute set, so the object is
    first discovered there and then fetched again from its own domain.

    Raises:
        ObjectLookupError: If either lookup fails
    """
    try:
        found = client.get_object(identifier, attributes=['distinguishedName'])
        home_domain = domain_from_dn(found.dn)
        logger.debug(f"Located {identifier} at {found.dn} (home domain {home_domain})")
    except (LDAPQueryError, LDAPConnectionError, LDAPException, ValueError) as e:
        raise ObjectLookupError(f"Cannot locate '{identifier}': {e}") from e

    try:
        entry = client.get_object(identifier, server=home_domain, attributes=requested_attributes(attributes))
    except (LDAPQueryError, LDAPConnectionError, LDAPException) as e:
        raise ObjectLookupError(f"Cannot read '{identifier}' from {home_domain}: {e}") from e

    return DirectoryObjectRef.from_entry(entry, home_domain, attributes, identifier=identifier)


class ObjectEnumerator:
    """Produces the object list for a run, recording identity lookup outcomes."""

    def __init__(self, client, attributes: AttributePair, reporter, run_context):
        self.client = client
        self.attributes = attributes
        self.reporter = reporter
        self.run_context = run_context

    def enumerate(self, selector: ScopeSelector, units: List[ExecutionUnit]) -> List[DirectoryObjectRef]:
        match selector:
            case Identity(ids=ids):
                objects = self._enumerate_identities(ids)
            case _:
                objects = self._enumerate_units(units)

        logger.info(f"Enumerated {len(objects)} object(s)")
        return objects

    def _enumerate_units(self, units: List[ExecutionUnit]) -> List[DirectoryObjectRef]:
        objects = []
        for unit in units:
            logger.info(f"Querying {unit.server} ({unit.search_base or 'domain root'})")
            try:
                entries = self.client.query_objects(
                    unit.search_filter,
                    search_base=unit.search_base,
                    search_scope=(unit.search_scope or SearchScope.SUBTREE).value,
                    server=unit.server,
                    attributes=requested_attributes(self.attributes)
                )
            except (LDAPQueryError, LDAPConnectionError, LDAPException) as e:
                raise EnumerationError(f"Query against {unit.server} failed: {e}") from e

            logger.debug(f"{unit.server} returned {len(entries)} object(s)")
            objects.extend(DirectoryObjectRef.from_entry(entry, unit.server, self.attributes) for entry in entries)
        return objects

    def _enumerate_identities(self, ids) -> List[DirectoryObjectRef]:
        objects = []
        timestamp = self.run_context.started_at

        for identifier in ids:
            try:
                obj = locate_object(self.client, identifier, self.attributes)
            except ObjectLookupError as e:
                logger.error(str(e))
                self._record_lookup_failure(identifier, str(e))
                continue
            except Exception as e:
                logger.error(f"Unexpected error looking up '{identifier}': {e}", exc_info=True)
                self._record_lookup_failure(identifier, f"{type(e).__name__}: {e}")
                continue

            logger.info(f"Retrieved {identifier} from {obj.domain}")
            self.reporter.record_lookup(OperationResult.for_object(
                obj, self.attributes, OperationStatus.GET_SUCCEEDED, timestamp
            ))
            objects.append(obj)

        return objects

    def _record_lookup_failure(self, identifier: str, message: str):
        self.reporter.record_lookup(OperationResult(
            identifier=identifier,
            domain='',
            object_class='',
            distinguished_name='',
            timestamp=self.run_context.started_at,
            status=OperationStatus.GET_FAILED,
            error_message=message,
            source_attribute_name=self.attributes.source,
            target_attribute_name=self.attributes.target,
        ))
