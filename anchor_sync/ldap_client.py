"""
Directory client for querying and updating Active Directory over LDAP.

This module provides the directory capability used by the propagation engine:
object queries against a domain controller or the global catalog, single
object lookups, domain and forest metadata resolution, and single attribute
writes.
"""

import logging
import ssl
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple
from urllib.parse import urlparse

from ldap3 import Server, Connection, ALL, BASE, LEVEL, SUBTREE, MODIFY_ADD, Tls
from ldap3.core.exceptions import (
    LDAPException, LDAPBindError, LDAPInvalidDnError
)
from ldap3.utils.conv import escape_bytes, escape_filter_chars
from ldap3.utils.dn import parse_dn

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class ObjectNotFoundError(LDAPQueryError):
    """Raised when an identifier matches no directory object."""
    pass


class DirectoryMetadataError(LDAPQueryError):
    """Raised when domain or forest metadata cannot be resolved."""
    pass


class AttributeUpdateError(Exception):
    """Raised when writing an attribute on a directory object fails."""
    pass


@dataclass
class DirectoryEntry:
    """One object returned by a directory search."""

    dn: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    raw_attributes: Dict[str, List[bytes]] = field(default_factory=dict)

    def __post_init__(self):
        self.attributes = {k.lower(): v for k, v in (self.attributes or {}).items()}
        self.raw_attributes = {k.lower(): v for k, v in (self.raw_attributes or {}).items()}

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name.lower(), default)

    def get_raw(self, name: str) -> Optional[bytes]:
        """First raw value of an attribute, or None when it is not set."""
        values = self.raw_attributes.get(name.lower())
        if not values:
            return None
        if isinstance(values, (list, tuple)):
            return values[0]
        return values


@dataclass(frozen=True)
class DomainInfo:
    dns_root: str
    distinguished_name: str
    netbios_name: Optional[str] = None
    forest: Optional[str] = None
    host_name: Optional[str] = None


@dataclass(frozen=True)
class ForestInfo:
    name: str
    root_domain: str
    domains: Tuple[str, ...] = ()


def domain_from_dn(dn: str) -> str:
    """
    Convert the DC= suffix of a distinguished name into a DNS domain name.

    Raises:
        ValueError: If the DN is malformed or carries no DC components
    """
    try:
        components = parse_dn(dn)
    except LDAPInvalidDnError as e:
        raise ValueError(f"Invalid distinguished name '{dn}': {e}")

    labels = [value for attr, value, _ in components if attr.upper() == 'DC']
    if not labels:
        raise ValueError(f"Distinguished name has no domain components: {dn}")
    return '.'.join(labels).lower()


def domain_to_dn(domain: str) -> str:
    """Convert a DNS domain name into its naming context DN."""
    return ','.join(f"DC={label}" for label in domain.strip('.').split('.'))


def identity_filter(identifier: str) -> str:
    """Build a filter matching an identifier as SAM name, DN or objectGUID."""
    escaped = escape_filter_chars(identifier)
    clauses = [f"(sAMAccountName={escaped})", f"(distinguishedName={escaped})"]
    try:
        guid = uuid.UUID(identifier.strip('{}'))
        clauses.append(f"(objectGUID={escape_bytes(guid.bytes_le)})")
    except ValueError:
        pass
    return f"(|{''.join(clauses)})"


class DirectoryClient:
    """
    LDAP client for an Active Directory forest.

    Holds one bound connection to the configured domain controller and opens
    further connections on demand, one per domain server or global catalog.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        parsed = urlparse(self.server_url if '://' in self.server_url else f"ldap://{self.server_url}")
        self.host = parsed.hostname or self.server_url

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.port = parsed.port or (636 if self.use_ssl else 389)
        self.global_catalog_port = config.get('global_catalog_port', 3269 if self.use_ssl else 3268)
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        # Retry settings from error_handling config
        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.connection = None
        self._connections: Dict[Tuple[str, int], Connection] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish the primary connection with retry logic.

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        self.connection = self._open_connection(self.host, self.port, max_retries, retry_wait)
        self._connections[(self.host.lower(), self.port)] = self.connection
        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_connection(self, host: str, port: int, max_retries: Optional[int] = None,
                         retry_wait: Optional[int] = None) -> Connection:
        if max_retries is None:
            max_retries = self.max_retries
        if retry_wait is None:
            retry_wait = self.retry_wait
        use_ssl = self.use_ssl

        try:
            server = Server(
                host,
                port=port,
                use_ssl=use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {host}:{port} (SSL: {use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server {host}:{port}: {e}")

        last_exception = None
        for attempt in range(max_retries):
            connection = None
            try:
                connection = Connection(
                    server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {connection.result}")

                if self.start_tls and not use_ssl:
                    if not connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not connection.bind():
                    raise LDAPBindError(f"Bind failed: {connection.result}")

                logger.debug(f"Bound to {host}:{port}")
                return connection

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} to {host}:{port} failed: {e}")
                self._safe_unbind(connection)
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except Exception as e:
                last_exception = e
                logger.error(f"Unexpected error during LDAP connection to {host}:{port}: {e}")
                self._safe_unbind(connection)
                break

        error_msg = f"Failed to connect to LDAP server {host}:{port} after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    @staticmethod
    def _safe_unbind(connection):
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring unbind failure on broken connection: {e}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close every open LDAP connection."""
        for (host, port), connection in list(self._connections.items()):
            try:
                connection.unbind()
                logger.debug(f"LDAP connection to {host}:{port} closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection to {host}:{port}: {e}")
        self._connections.clear()
        self.connection = None
        self._connected = False

    def _connection_for(self, server: Optional[str] = None, global_catalog: bool = False) -> Connection:
        """Return a bound connection to a domain server or the global catalog."""
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        host = server or self.host
        port = self.global_catalog_port if global_catalog else self.port
        key = (host.lower(), port)
        if key not in self._connections:
            self._connections[key] = self._open_connection(host, port)
        return self._connections[key]

    def _search(self, connection: Connection, search_base: str, search_filter: str,
                search_scope, attributes: List[str]) -> List[DirectoryEntry]:
        """Run a paged search and collect every returned entry."""
        entries = []
        page_count = 0
        cookie = None

        while True:
            kwargs = {}
            if cookie:
                kwargs['paged_cookie'] = cookie
            success = connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=search_scope,
                attributes=attributes,
                paged_size=self.page_size,
                **kwargs
            )
            description = (connection.result or {}).get('description')
            if not success and description == 'noSuchObject':
                break
            if not success and description != 'success':
                raise LDAPQueryError(f"Search failed: {connection.result}")

            page_count += 1
            for item in connection.response or []:
                if item.get('type') != 'searchResEntry':
                    continue
                entries.append(DirectoryEntry(
                    dn=item['dn'],
                    attributes=dict(item.get('attributes', {})),
                    raw_attributes=dict(item.get('raw_attributes', {}))
                ))

            controls = (connection.result or {}).get('controls') or {}
            cookie = controls.get(PAGED_RESULTS_CONTROL, {}).get('value', {}).get('cookie')
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages from {search_base or '<forest>'}")
        return entries

    def query_objects(self, search_filter: str, search_base: Optional[str] = None,
                      search_scope=SUBTREE, server: Optional[str] = None,
                      attributes: Optional[List[str]] = None) -> List[DirectoryEntry]:
        """
        Query objects by filter.

        Without a server the query goes to the global catalog, which sees every
        domain in the forest but only a partial attribute set.

        Raises:
            LDAPQueryError: If query fails
        """
        global_catalog = server is None
        if search_base is None:
            search_base = '' if global_catalog else domain_to_dn(server)

        connection = self._connection_for(server, global_catalog=global_catalog)
        logger.debug(f"Searching {server or 'global catalog'} with filter: {search_filter} in base: {search_base}")

        try:
            return self._search(connection, search_base, search_filter, search_scope,
                                attributes or ['distinguishedName', 'objectClass'])
        except LDAPQueryError:
            raise
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

    def get_object(self, identifier: str, server: Optional[str] = None,
                   attributes: Optional[List[str]] = None) -> DirectoryEntry:
        """
        Fetch exactly one object by SAM name, DN or GUID.

        Raises:
            ObjectNotFoundError: If nothing matches
            LDAPQueryError: If the query fails or the identifier is ambiguous
        """
        entries = self.query_objects(identity_filter(identifier), server=server, attributes=attributes)
        if not entries:
            raise ObjectNotFoundError(
                f"Cannot find an object with identity '{identifier}' on {server or 'the global catalog'}"
            )
        if len(entries) > 1:
            raise LDAPQueryError(f"Identity '{identifier}' is ambiguous: {len(entries)} objects match")
        return entries[0]

    def _read_root_dse(self, connection: Connection, attributes: List[str]) -> Dict[str, Any]:
        success = connection.search(
            search_base='',
            search_filter='(objectClass=*)',
            search_scope=BASE,
            attributes=attributes
        )
        if not success or not connection.response:
            raise DirectoryMetadataError(f"Cannot read rootDSE: {connection.result}")

        values = {}
        for name, value in connection.response[0].get('attributes', {}).items():
            if isinstance(value, (list, tuple)):
                value = value[0] if value else None
            values[name.lower()] = value
        return values

    def resolve_domain(self, fqdn: str) -> DomainInfo:
        """
        Resolve domain metadata by asking one of its domain controllers.

        Raises:
            DirectoryMetadataError: If the domain cannot be reached or described
        """
        try:
            connection = self._connection_for(fqdn)
            dse = self._read_root_dse(connection, [
                'defaultNamingContext', 'configurationNamingContext',
                'rootDomainNamingContext', 'dnsHostName'
            ])
            naming_context = dse.get('defaultnamingcontext')
            if not naming_context:
                raise DirectoryMetadataError(f"Domain {fqdn} did not report a naming context")

            partitions = f"CN=Partitions,{dse['configurationnamingcontext']}"
            refs = self._search(
                connection, partitions,
                f"(&(objectClass=crossRef)(nCName={escape_filter_chars(naming_context)}))",
                LEVEL, ['dnsRoot', 'nETBIOSName']
            )
        except DirectoryMetadataError:
            raise
        except (LDAPConnectionError, LDAPQueryError, LDAPException, KeyError) as e:
            raise DirectoryMetadataError(f"Cannot resolve domain {fqdn}: {e}")

        netbios_name = None
        dns_root = domain_from_dn(naming_context)
        if refs:
            netbios_name = _first(refs[0].get('nETBIOSName'))
            dns_root = _first(refs[0].get('dnsRoot')) or dns_root

        forest = None
        if dse.get('rootdomainnamingcontext'):
            forest = domain_from_dn(dse['rootdomainnamingcontext'])

        info = DomainInfo(
            dns_root=dns_root.lower(),
            distinguished_name=naming_context,
            netbios_name=netbios_name,
            forest=forest,
            host_name=dse.get('dnshostname')
        )
        logger.debug(f"Resolved domain {fqdn}: {info}")
        return info

    def resolve_forest(self, fqdn: str) -> ForestInfo:
        """
        Resolve forest metadata and list the DNS roots of all its domains.

        Raises:
            DirectoryMetadataError: If the forest cannot be reached or described
        """
        try:
            connection = self._connection_for(fqdn)
            dse = self._read_root_dse(connection, ['configurationNamingContext', 'rootDomainNamingContext'])
            partitions = f"CN=Partitions,{dse['configurationnamingcontext']}"
            root_domain = domain_from_dn(dse['rootdomainnamingcontext'])
            # systemFlags bit 2 marks crossRefs of domain naming contexts
            refs = self._search(
                connection, partitions,
                '(&(objectClass=crossRef)(systemFlags:1.2.840.113556.1.4.803:=2))',
                LEVEL, ['dnsRoot']
            )
        except (LDAPConnectionError, LDAPQueryError, LDAPException, KeyError, ValueError) as e:
            raise DirectoryMetadataError(f"Cannot resolve forest {fqdn}: {e}")

        domains = tuple(sorted({_first(ref.get('dnsRoot')).lower() for ref in refs if ref.get('dnsRoot')}))
        if not domains:
            raise DirectoryMetadataError(f"Forest {fqdn} reported no domains")

        logger.info(f"Forest {root_domain} has {len(domains)} domains: {', '.join(domains)}")
        return ForestInfo(name=root_domain, root_domain=root_domain, domains=domains)

    def update_attribute(self, identifier: str, server: str, attribute_name: str, value: Any) -> bool:
        """
        Add a value to an attribute of one object on a specific domain server.

        Adding a value the object already holds is a no-op.

        Raises:
            AttributeUpdateError: If the write is rejected
        """
        try:
            if '=' in identifier:
                dn = identifier
            else:
                dn = self.get_object(identifier, server=server, attributes=['distinguishedName']).dn

            connection = self._connection_for(server)
            if connection.modify(dn, {attribute_name: [(MODIFY_ADD, [value])]}):
                return True

            result = connection.result or {}
            if result.get('description') == 'attributeOrValueExists':
                current = self.get_object(dn, server=server, attributes=[attribute_name]).get_raw(attribute_name)
                if current == value:
                    logger.debug(f"{attribute_name} on {dn} already holds the value")
                    return True
                raise AttributeUpdateError(f"{attribute_name} on {dn} already holds a different value")

            raise AttributeUpdateError(
                f"Failed to update {attribute_name} on {dn}: "
                f"{result.get('description', 'unknown')} {result.get('message', '')}".strip()
            )
        except AttributeUpdateError:
            raise
        except (LDAPConnectionError, LDAPQueryError, LDAPException) as e:
            raise AttributeUpdateError(f"Failed to update {attribute_name} on {identifier}: {e}")

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'page_size': self.page_size,
            'open_connections': sorted(f"{host}:{port}" for host, port in self._connections)
        }


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value
