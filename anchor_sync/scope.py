"""
Scope resolution: turn a scope selector into directory query units.
"""

import logging
from typing import List

from anchor_sync.ldap_client import DirectoryMetadataError, domain_from_dn
from anchor_sync.models import (
    ScopeSelector, Identity, SearchBase, Domain, Forest, ExecutionUnit, SearchScope
)

logger = logging.getLogger(__name__)

PERSON_OR_GROUP_FILTER = '(|(objectClass=person)(objectClass=group))'


class ScopeResolutionError(Exception):
    """Raised when a domain, forest or search base cannot be resolved."""
    pass


class ScopeResolver:
    """Builds the (server, query) units for a run before any object is read."""

    def __init__(self, client):
        self.client = client

    def resolve(self, selector: ScopeSelector) -> List[ExecutionUnit]:
        """
        Resolve a scope selector into execution units.

        Identity scopes produce no units; each identifier is located on its own.

        Raises:
            ScopeResolutionError: If any metadata lookup fails
        """
        match selector:
            case Forest(fqdn=fqdn):
                units = self._resolve_forest(fqdn)
            case Domain(fqdn=fqdn):
                units = [self._domain_unit(fqdn)]
            case SearchBase(dn=dn, scope=scope):
                units = [self._search_base_unit(dn, scope)]
            case Identity():
                units = []
            case _:
                raise ScopeResolutionError(f"Unsupported scope selector: {selector!r}")

        logger.info(f"Resolved scope {type(selector).__name__} into {len(units)} query unit(s)")
        return units

    def _resolve_forest(self, fqdn: str) -> List[ExecutionUnit]:
        try:
            forest = self.client.resolve_forest(fqdn)
        except DirectoryMetadataError as e:
            raise ScopeResolutionError(f"Failed to resolve forest {fqdn}: {e}") from e

        return [self._domain_unit(domain) for domain in forest.domains]

    def _domain_unit(self, fqdn: str) -> ExecutionUnit:
        try:
            domain = self.client.resolve_domain(fqdn)
        except DirectoryMetadataError as e:
            raise ScopeResolutionError(f"Failed to resolve domain {fqdn}: {e}") from e

        return ExecutionUnit(server=domain.dns_root, search_filter=PERSON_OR_GROUP_FILTER)

    def _search_base_unit(self, dn: str, scope: SearchScope) -> ExecutionUnit:
        try:
            server = domain_from_dn(dn)
        except ValueError as e:
            raise ScopeResolutionError(f"Cannot derive a server from search base: {e}") from e

        return ExecutionUnit(
            server=server,
            search_filter=PERSON_OR_GROUP_FILTER,
            search_base=dn,
            search_scope=scope
        )
