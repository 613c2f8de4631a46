"""
Data model for attribute propagation runs.

Scope selectors, the attribute pair being copied, per-object directory
snapshots and the result records produced for each object.
"""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, Tuple, Union

from ldap3 import BASE, LEVEL, SUBTREE

DEFAULT_SOURCE_ATTRIBUTE = 'ObjectGUID'
DEFAULT_TARGET_ATTRIBUTE = 'mS-DS-ConsistencyGuid'


class SearchScope(Enum):
    BASE = BASE
    ONE_LEVEL = LEVEL
    SUBTREE = SUBTREE

    @classmethod
    def parse(cls, value: Union[str, 'SearchScope']) -> 'SearchScope':
        """Accept Base/OneLevel/SubTree in any case, with or without separators."""
        if isinstance(value, cls):
            return value
        normalized = str(value).replace('_', '').replace('-', '').lower()
        aliases = {
            'base': cls.BASE,
            'onelevel': cls.ONE_LEVEL,
            'level': cls.ONE_LEVEL,
            'subtree': cls.SUBTREE,
        }
        if normalized not in aliases:
            raise ValueError(f"Unknown search scope: {value}")
        return aliases[normalized]


@dataclass(frozen=True)
class Identity:
    ids: Tuple[str, ...]


@dataclass(frozen=True)
class SearchBase:
    dn: str
    scope: SearchScope = SearchScope.SUBTREE


@dataclass(frozen=True)
class Domain:
    fqdn: str


@dataclass(frozen=True)
class Forest:
    fqdn: str


ScopeSelector = Union[Identity, SearchBase, Domain, Forest]


@dataclass(frozen=True)
class AttributePair:
    source: str = DEFAULT_SOURCE_ATTRIBUTE
    target: str = DEFAULT_TARGET_ATTRIBUTE


@dataclass(frozen=True)
class ExecutionUnit:
    """One query to run against one server."""

    server: str
    search_filter: str
    search_base: Optional[str] = None
    search_scope: Optional[SearchScope] = None


@dataclass(frozen=True)
class PropagationOptions:
    scope: ScopeSelector
    attributes: AttributePair = field(default_factory=AttributePair)
    report_only: bool = False
    only_update_null_target: bool = False
    dry_run: bool = False


def is_unset(value: Any) -> bool:
    """
    True when an attribute holds no value at all.

    An empty string or empty byte string is a value, not an absent attribute.
    """
    if value is None:
        return True
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def format_value(value: Any) -> str:
    """
    Render an attribute value for logs and reports.

    16-byte binary values are GUIDs in Active Directory's little-endian layout.
    """
    if is_unset(value):
        return ''
    if isinstance(value, (bytes, bytearray)):
        if len(value) == 16:
            return str(uuid.UUID(bytes_le=bytes(value)))
        try:
            text = bytes(value).decode('utf-8')
            if text.isprintable():
                return text
        except UnicodeDecodeError:
            pass
        return base64.b64encode(bytes(value)).decode('ascii')
    if isinstance(value, (list, tuple)):
        return ';'.join(format_value(v) for v in value)
    return str(value)


@dataclass
class DirectoryObjectRef:
    """Snapshot of one directory object taken at enumeration time."""

    identifier: str
    domain: str
    object_class: str
    distinguished_name: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.attributes = {name.lower(): value for name, value in self.attributes.items()}

    def get_attribute(self, name: str) -> Any:
        return self.attributes.get(name.lower())

    @classmethod
    def from_entry(cls, entry, domain: str, attributes: AttributePair,
                   identifier: Optional[str] = None) -> 'DirectoryObjectRef':
        """Build a snapshot from a DirectoryEntry, keeping raw values of the copied attributes."""
        object_classes = entry.get('objectClass') or []
        if isinstance(object_classes, str):
            object_classes = [object_classes]
        return cls(
            identifier=identifier or entry.dn,
            domain=domain,
            object_class=object_classes[-1] if object_classes else '',
            distinguished_name=entry.dn,
            attributes={
                attributes.source: entry.get_raw(attributes.source),
                attributes.target: entry.get_raw(attributes.target),
            }
        )


class OperationStatus(str, Enum):
    GET_SUCCEEDED = 'GetSucceeded'
    GET_FAILED = 'GetFailed'
    REPORT_ONLY = 'ReportOnly'
    SUCCEEDED = 'Succeeded'
    FAILED = 'Failed'

    @property
    def is_mutation(self) -> bool:
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED)


@dataclass(frozen=True)
class OperationResult:
    identifier: str
    domain: str
    object_class: str
    distinguished_name: str
    timestamp: datetime
    status: OperationStatus
    error_message: str = ''
    source_attribute_name: str = DEFAULT_SOURCE_ATTRIBUTE
    source_attribute_value: Any = None
    target_attribute_name: str = DEFAULT_TARGET_ATTRIBUTE
    target_attribute_value: Any = None

    @classmethod
    def for_object(cls, obj: DirectoryObjectRef, attributes: AttributePair, status: OperationStatus,
                   timestamp: datetime, error_message: str = '',
                   target_value: Any = None) -> 'OperationResult':
        return cls(
            identifier=obj.identifier,
            domain=obj.domain,
            object_class=obj.object_class,
            distinguished_name=obj.distinguished_name,
            timestamp=timestamp,
            status=status,
            error_message=error_message,
            source_attribute_name=attributes.source,
            source_attribute_value=obj.get_attribute(attributes.source),
            target_attribute_name=attributes.target,
            target_attribute_value=(
                target_value if target_value is not None else obj.get_attribute(attributes.target)
            ),
        )

    def to_row(self) -> Dict[str, str]:
        """Flatten the record into export columns."""
        return {
            'Identifier': self.identifier,
            'Domain': self.domain,
            'ObjectClass': self.object_class,
            'DistinguishedName': self.distinguished_name,
            'Timestamp': self.timestamp.isoformat(timespec='seconds'),
            'Status': self.status.value,
            'ErrorMessage': self.error_message,
            'SourceAttribute': self.source_attribute_name,
            'SourceValue': format_value(self.source_attribute_value),
            'TargetAttribute': self.target_attribute_name,
            'TargetValue': format_value(self.target_attribute_value),
        }


@dataclass(frozen=True)
class RunSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
