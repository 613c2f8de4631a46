#!/usr/bin/env python3
"""
Unit tests for the LDAP directory client.

Covers connection retry, paged searches, global catalog lookups, domain and
forest metadata resolution and single attribute writes, with ldap3's Server
and Connection replaced by mocks.
"""

import os
import sys
import unittest
import uuid
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_ADD
from ldap3.utils.conv import escape_bytes

from anchor_sync.ldap_client import (
    AttributeUpdateError, DirectoryClient, DirectoryEntry, DirectoryMetadataError, LDAPConnectionError,
    LDAPQueryError, ObjectNotFoundError, PAGED_RESULTS_CONTROL, domain_from_dn, domain_to_dn, identity_filter
)


def entry(dn, attributes=None, raw_attributes=None):
    return {'type': 'searchResEntry', 'dn': dn,
            'attributes': attributes or {}, 'raw_attributes': raw_attributes or {}}


def paged_result(cookie=None):
    return {'description': 'success', 'controls': {PAGED_RESULTS_CONTROL: {'value': {'cookie': cookie}}}}


class ScriptedConnection:
    """Connection stand-in that replays one response per search call."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.search_calls = []
        self.response = []
        self.result = {}
        self.modify = Mock(return_value=True)

    def search(self, **kwargs):
        self.search_calls.append(kwargs)
        ok, response, result = self.pages.pop(0)
        self.response = response
        self.result = result
        return ok

    def unbind(self):
        return True


class TestDirectoryHelpers(unittest.TestCase):

    def test_domain_from_dn(self):
        self.assertEqual(domain_from_dn('OU=Users,DC=Corp,DC=Example,DC=com'), 'corp.example.com')

    def test_domain_from_dn_without_dc(self):
        with self.assertRaises(ValueError):
            domain_from_dn('OU=Users,O=Example')

    def test_domain_to_dn(self):
        self.assertEqual(domain_to_dn('corp.example.com'), 'DC=corp,DC=example,DC=com')

    def test_identity_filter_for_name(self):
        self.assertEqual(identity_filter('jdoe'), '(|(sAMAccountName=jdoe)(distinguishedName=jdoe))')

    def test_identity_filter_escapes_special_characters(self):
        self.assertIn(r'(sAMAccountName=a\2ab)', identity_filter('a*b'))

    def test_identity_filter_for_guid(self):
        guid = uuid.uuid4()
        self.assertIn(f"(objectGUID={escape_bytes(guid.bytes_le)})", identity_filter(str(guid)))
        self.assertIn('objectGUID', identity_filter('{' + str(guid) + '}'))

    def test_directory_entry_lookup_is_case_insensitive(self):
        e = DirectoryEntry(dn='CN=x', attributes={'objectClass': ['user']},
                           raw_attributes={'objectGUID': [b'\x01' * 16]})
        self.assertEqual(e.get('objectclass'), ['user'])
        self.assertEqual(e.get_raw('OBJECTGUID'), b'\x01' * 16)
        self.assertIsNone(e.get_raw('mS-DS-ConsistencyGuid'))


class TestDirectoryClient(unittest.TestCase):
    """Test cases for DirectoryClient."""

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://dc01.corp.example.com:636',
            'bind_dn': 'CN=svc-anchor,OU=Service,DC=corp,DC=example,DC=com',
            'bind_password': 'test_password',
            'page_size': 2,
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
        }
        self.server_patcher = patch('anchor_sync.ldap_client.Server')
        self.connection_patcher = patch('anchor_sync.ldap_client.Connection')
        self.sleep_patcher = patch('anchor_sync.ldap_client.time.sleep')
        self.mock_server = self.server_patcher.start()
        self.mock_connection_cls = self.connection_patcher.start()
        self.sleep_patcher.start()
        self.addCleanup(patch.stopall)

        self.mock_connection = Mock()
        self.mock_connection.open.return_value = True
        self.mock_connection.bind.return_value = True
        self.mock_connection_cls.return_value = self.mock_connection

    def _client(self, connection=None):
        client = DirectoryClient(self.config)
        if connection is not None:
            self.mock_connection_cls.return_value = connection
            connection.open = Mock(return_value=True)
            connection.bind = Mock(return_value=True)
        client.connect()
        return client

    def test_initialization(self):
        client = DirectoryClient(self.config)

        self.assertEqual(client.host, 'dc01.corp.example.com')
        self.assertEqual(client.port, 636)
        self.assertTrue(client.use_ssl)
        self.assertEqual(client.global_catalog_port, 3269)
        self.assertEqual(client.max_retries, 2)
        self.assertFalse(client.is_connected)

    def test_plain_ldap_defaults(self):
        self.config['server_url'] = 'ldap://dc01.corp.example.com'
        client = DirectoryClient(self.config)

        self.assertEqual(client.port, 389)
        self.assertEqual(client.global_catalog_port, 3268)
        self.assertIsNone(client._create_tls_config())

    def test_connect_success(self):
        client = self._client()

        self.assertTrue(client.is_connected)
        self.mock_connection.bind.assert_called_once()
        self.assertEqual(client.get_connection_stats()['open_connections'], ['dc01.corp.example.com:636'])

    def test_connect_retries_then_fails(self):
        self.mock_connection.bind.return_value = False
        client = DirectoryClient(self.config)

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()

        self.assertIn('after 2 attempts', str(ctx.exception))
        self.assertEqual(self.mock_connection.bind.call_count, 2)
        self.assertFalse(client.is_connected)

    @patch('anchor_sync.ldap_client.time.sleep')
    def test_connect_explicit_retry_settings(self, mock_sleep):
        self.mock_connection.bind.return_value = False
        client = DirectoryClient(self.config)

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect(max_retries=1, retry_wait=0)

        self.assertIn('after 1 attempts', str(ctx.exception))
        self.assertEqual(self.mock_connection.bind.call_count, 1)
        mock_sleep.assert_not_called()

    def test_query_requires_connection(self):
        client = DirectoryClient(self.config)

        with self.assertRaises(LDAPQueryError):
            client.query_objects('(objectClass=user)', server='corp.example.com')

    def test_query_follows_paging_cookie(self):
        connection = ScriptedConnection([
            (True, [entry('CN=A,DC=corp,DC=example,DC=com'), entry('CN=B,DC=corp,DC=example,DC=com')],
             paged_result(b'next')),
            (True, [entry('CN=C,DC=corp,DC=example,DC=com'), {'type': 'searchResRef'}], paged_result()),
        ])
        client = self._client(connection)

        entries = client.query_objects('(objectClass=user)', server='dc01.corp.example.com')

        self.assertEqual([e.dn for e in entries], [
            'CN=A,DC=corp,DC=example,DC=com', 'CN=B,DC=corp,DC=example,DC=com', 'CN=C,DC=corp,DC=example,DC=com'
        ])
        self.assertEqual(len(connection.search_calls), 2)
        self.assertNotIn('paged_cookie', connection.search_calls[0])
        self.assertEqual(connection.search_calls[1]['paged_cookie'], b'next')
        self.assertEqual(connection.search_calls[0]['search_base'], 'DC=dc01,DC=corp,DC=example,DC=com')

    def test_query_missing_base_returns_nothing(self):
        connection = ScriptedConnection([(False, [], {'description': 'noSuchObject'})])
        client = self._client(connection)

        self.assertEqual(client.query_objects('(objectClass=user)', search_base='OU=Gone,DC=corp,DC=example,DC=com',
                                              server='dc01.corp.example.com'), [])

    def test_query_failure_raises(self):
        connection = ScriptedConnection([(False, [], {'description': 'operationsError'})])
        client = self._client(connection)

        with self.assertRaises(LDAPQueryError):
            client.query_objects('(objectClass=user)', server='dc01.corp.example.com')

    def test_get_object_uses_global_catalog_without_server(self):
        connection = ScriptedConnection([
            (True, [entry('CN=Jane,OU=Users,DC=emea,DC=example,DC=com')], paged_result()),
        ])
        client = self._client(connection)

        found = client.get_object('jdoe', attributes=['distinguishedName'])

        self.assertEqual(found.dn, 'CN=Jane,OU=Users,DC=emea,DC=example,DC=com')
        self.assertEqual(connection.search_calls[0]['search_base'], '')
        ports = [c.kwargs['port'] for c in self.mock_server.call_args_list]
        self.assertEqual(ports, [636, 3269])

    def test_get_object_not_found(self):
        connection = ScriptedConnection([(True, [], paged_result())])
        client = self._client(connection)

        with self.assertRaises(ObjectNotFoundError):
            client.get_object('nobody')

    def test_get_object_ambiguous(self):
        connection = ScriptedConnection([
            (True, [entry('CN=A,DC=corp,DC=example,DC=com'), entry('CN=B,DC=corp,DC=example,DC=com')],
             paged_result()),
        ])
        client = self._client(connection)

        with self.assertRaises(LDAPQueryError) as ctx:
            client.get_object('dup')
        self.assertNotIsInstance(ctx.exception, ObjectNotFoundError)

    def test_resolve_forest_lists_domains(self):
        connection = ScriptedConnection([
            (True, [{'attributes': {
                'configurationNamingContext': ['CN=Configuration,DC=example,DC=com'],
                'rootDomainNamingContext': ['DC=example,DC=com'],
            }}], {'description': 'success'}),
            (True, [
                entry('CN=EMEA,CN=Partitions,CN=Configuration,DC=example,DC=com', {'dnsRoot': ['EMEA.example.com']}),
                entry('CN=ROOT,CN=Partitions,CN=Configuration,DC=example,DC=com', {'dnsRoot': ['example.com']}),
            ], paged_result()),
        ])
        client = self._client(connection)

        forest = client.resolve_forest('example.com')

        self.assertEqual(forest.root_domain, 'example.com')
        self.assertEqual(forest.domains, ('emea.example.com', 'example.com'))
        self.assertEqual(connection.search_calls[1]['search_base'], 'CN=Partitions,CN=Configuration,DC=example,DC=com')

    def test_resolve_forest_failure(self):
        connection = ScriptedConnection([(False, [], {'description': 'unavailable'})])
        client = self._client(connection)

        with self.assertRaises(DirectoryMetadataError):
            client.resolve_forest('example.com')

    def test_resolve_domain(self):
        connection = ScriptedConnection([
            (True, [{'attributes': {
                'defaultNamingContext': ['DC=corp,DC=example,DC=com'],
                'configurationNamingContext': ['CN=Configuration,DC=example,DC=com'],
                'rootDomainNamingContext': ['DC=example,DC=com'],
                'dnsHostName': ['dc01.corp.example.com'],
            }}], {'description': 'success'}),
            (True, [entry('CN=CORP,CN=Partitions,CN=Configuration,DC=example,DC=com',
                          {'dnsRoot': ['corp.example.com'], 'nETBIOSName': 'CORP'})], paged_result()),
        ])
        client = self._client(connection)

        info = client.resolve_domain('corp.example.com')

        self.assertEqual(info.dns_root, 'corp.example.com')
        self.assertEqual(info.distinguished_name, 'DC=corp,DC=example,DC=com')
        self.assertEqual(info.netbios_name, 'CORP')
        self.assertEqual(info.forest, 'example.com')
        self.assertEqual(info.host_name, 'dc01.corp.example.com')

    def test_update_attribute_adds_value(self):
        connection = ScriptedConnection([])
        client = self._client(connection)
        value = uuid.uuid4().bytes_le
        dn = 'CN=Jane,OU=Users,DC=corp,DC=example,DC=com'

        self.assertTrue(client.update_attribute(dn, 'corp.example.com', 'mS-DS-ConsistencyGuid', value))

        connection.modify.assert_called_once_with(dn, {'mS-DS-ConsistencyGuid': [(MODIFY_ADD, [value])]})

    def test_update_attribute_existing_equal_value_is_noop(self):
        value = uuid.uuid4().bytes_le
        dn = 'CN=Jane,OU=Users,DC=corp,DC=example,DC=com'
        connection = ScriptedConnection([
            (True, [entry(dn, raw_attributes={'mS-DS-ConsistencyGuid': [value]})], paged_result()),
        ])
        client = self._client(connection)
        connection.modify.return_value = False
        connection.result = {'description': 'attributeOrValueExists'}

        self.assertTrue(client.update_attribute(dn, 'corp.example.com', 'mS-DS-ConsistencyGuid', value))

    def test_update_attribute_existing_different_value_fails(self):
        dn = 'CN=Jane,OU=Users,DC=corp,DC=example,DC=com'
        connection = ScriptedConnection([
            (True, [entry(dn, raw_attributes={'mS-DS-ConsistencyGuid': [uuid.uuid4().bytes_le]})], paged_result()),
        ])
        client = self._client(connection)
        connection.modify.return_value = False
        connection.result = {'description': 'attributeOrValueExists'}

        with self.assertRaises(AttributeUpdateError):
            client.update_attribute(dn, 'corp.example.com', 'mS-DS-ConsistencyGuid', uuid.uuid4().bytes_le)

    def test_update_attribute_rejected(self):
        connection = ScriptedConnection([])
        client = self._client(connection)
        connection.modify.return_value = False
        connection.result = {'description': 'insufficientAccessRights', 'message': '00002098'}

        with self.assertRaises(AttributeUpdateError) as ctx:
            client.update_attribute('CN=Jane,DC=corp,DC=example,DC=com', 'corp.example.com',
                                    'mS-DS-ConsistencyGuid', b'\x01' * 16)
        self.assertIn('insufficientAccessRights', str(ctx.exception))

    def test_disconnect_closes_all_connections(self):
        client = self._client()
        client._connection_for('emea.example.com')

        client.disconnect()

        self.assertFalse(client.is_connected)
        self.assertEqual(client.get_connection_stats()['open_connections'], [])


if __name__ == '__main__':
    unittest.main()
