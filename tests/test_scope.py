#!/usr/bin/env python3
"""
Unit tests for scope resolution.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from anchor_sync.ldap_client import DirectoryMetadataError, DomainInfo, ForestInfo
from anchor_sync.models import Domain, Forest, Identity, SearchBase, SearchScope
from anchor_sync.scope import PERSON_OR_GROUP_FILTER, ScopeResolutionError, ScopeResolver
from fakes import FakeDirectoryClient


class TestScopeResolver(unittest.TestCase):
    """Test cases for ScopeResolver."""

    def setUp(self):
        self.client = FakeDirectoryClient()
        self.client.connect()
        self.client.add_domain('example.com')
        self.client.add_domain('corp.example.com', forest='example.com')
        self.client.add_domain('emea.example.com', forest='example.com')
        self.client.add_forest('example.com', ['example.com', 'corp.example.com', 'emea.example.com'])
        self.resolver = ScopeResolver(self.client)

    def test_forest_produces_one_unit_per_domain(self):
        units = self.resolver.resolve(Forest('example.com'))

        self.assertEqual([u.server for u in units], ['example.com', 'corp.example.com', 'emea.example.com'])
        for unit in units:
            self.assertEqual(unit.search_filter, PERSON_OR_GROUP_FILTER)
            self.assertIsNone(unit.search_base)

    def test_forest_resolution_failure_is_fatal(self):
        with self.assertRaises(ScopeResolutionError) as ctx:
            self.resolver.resolve(Forest('unknown.example'))
        self.assertIn('unknown.example', str(ctx.exception))

    def test_forest_with_unresolvable_domain_is_fatal(self):
        self.client.add_forest('broken.example', ['broken.example', 'missing.broken.example'])
        self.client.add_domain('broken.example')

        with self.assertRaises(ScopeResolutionError) as ctx:
            self.resolver.resolve(Forest('broken.example'))
        self.assertIn('missing.broken.example', str(ctx.exception))

    def test_domain_produces_single_unit_on_dns_root(self):
        client = Mock()
        client.resolve_domain.return_value = DomainInfo(
            dns_root='corp.example.com', distinguished_name='DC=corp,DC=example,DC=com'
        )

        units = ScopeResolver(client).resolve(Domain('CORP.example.com'))

        self.assertEqual(len(units), 1)
        self.assertEqual(units[0].server, 'corp.example.com')
        self.assertEqual(units[0].search_filter, PERSON_OR_GROUP_FILTER)
        client.resolve_domain.assert_called_once_with('CORP.example.com')

    def test_domain_resolution_failure_is_fatal(self):
        client = Mock()
        client.resolve_domain.side_effect = DirectoryMetadataError("DC unreachable")

        with self.assertRaises(ScopeResolutionError):
            ScopeResolver(client).resolve(Domain('corp.example.com'))

    def test_search_base_server_from_domain_components(self):
        dn = 'OU=Users,OU=Managed,DC=corp,DC=example,DC=com'
        units = self.resolver.resolve(SearchBase(dn, SearchScope.ONE_LEVEL))

        self.assertEqual(len(units), 1)
        self.assertEqual(units[0].server, 'corp.example.com')
        self.assertEqual(units[0].search_base, dn)
        self.assertEqual(units[0].search_scope, SearchScope.ONE_LEVEL)

    def test_search_base_does_not_query_metadata(self):
        client = Mock()
        ScopeResolver(client).resolve(SearchBase('OU=Users,DC=corp,DC=example,DC=com'))

        client.resolve_domain.assert_not_called()
        client.resolve_forest.assert_not_called()

    def test_search_base_without_domain_components(self):
        with self.assertRaises(ScopeResolutionError):
            self.resolver.resolve(SearchBase('OU=Users,O=Example'))

    def test_identity_has_no_units(self):
        client = Mock()
        units = ScopeResolver(client).resolve(Identity(('jdoe', 'asmith')))

        self.assertEqual(units, [])
        client.resolve_domain.assert_not_called()
        client.resolve_forest.assert_not_called()

    def test_forest_metadata_resolved_before_domains(self):
        client = Mock()
        client.resolve_forest.return_value = ForestInfo(
            name='example.com', root_domain='example.com', domains=('example.com',)
        )
        client.resolve_domain.return_value = DomainInfo(dns_root='example.com', distinguished_name='DC=example,DC=com')

        ScopeResolver(client).resolve(Forest('example.com'))

        self.assertEqual([c[0] for c in client.method_calls], ['resolve_forest', 'resolve_domain'])


if __name__ == '__main__':
    unittest.main()
