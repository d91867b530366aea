"""DNS record model: desired records for a node and comparison helpers."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

FORWARD_TYPES = ("A", "AAAA")
PTR = "PTR"


class DuplicatePolicy(Enum):
    """Which remote record wins when several share (name, type).

    FIRST:     The first record in provider list order.
    LOWEST_ID: The record with the lowest provider id (oldest on Linode).
    """

    FIRST = "first"
    LOWEST_ID = "lowest-id"


class ReverseMode(Enum):
    """Where a node's reverse (PTR) mapping is published.

    RECORD: A PTR record inside the node domain.
    RDNS:   The rDNS field of the Linode IP address itself.
    """

    RECORD = "record"
    RDNS = "rdns"


@dataclass(frozen=True)
class DesiredRecord:
    """A record the controller wants to exist."""

    name: str
    type: str
    target: str


@dataclass(frozen=True)
class DesiredRecordSet:
    """Forward and reverse records derived from one node."""

    forward: DesiredRecord
    reverse: DesiredRecord

    def __iter__(self):
        return iter((self.forward, self.reverse))

    @property
    def names(self) -> List[str]:
        return [normalize_name(self.forward.name), normalize_name(self.reverse.name)]


@dataclass(frozen=True)
class RemoteRecord:
    """A record as returned by the DNS provider."""

    id: str
    name: str
    type: str
    target: str
    ttl: int = 0


def normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


def record_type_for(ip: IPAddress) -> str:
    return "A" if ip.version == 4 else "AAAA"


def reverse_pointer(ip: IPAddress) -> str:
    """Return the reverse lookup label, e.g. ``10.2.0.192.in-addr.arpa``."""
    return ip.reverse_pointer


def fqdn(hostname: str, domain: str) -> str:
    return f"{hostname.rstrip('.')}.{domain.strip('.')}"


def desired_records(hostname: str, ip: Union[str, IPAddress], domain: str) -> DesiredRecordSet:
    """Build the forward and reverse records for a node.

    The reverse record is published inside ``domain`` under the reverse
    pointer label of the address.
    """
    address = ipaddress.ip_address(str(ip))
    node_fqdn = fqdn(hostname, domain)
    forward = DesiredRecord(
        name=node_fqdn,
        type=record_type_for(address),
        target=str(address),
    )
    reverse = DesiredRecord(
        name=fqdn(reverse_pointer(address), domain),
        type=PTR,
        target=node_fqdn,
    )
    return DesiredRecordSet(forward=forward, reverse=reverse)


def same_key(remote: RemoteRecord, desired: DesiredRecord) -> bool:
    """True when remote and desired share (name, type)."""
    return (
        normalize_name(remote.name) == normalize_name(desired.name)
        and remote.type.upper() == desired.type.upper()
    )


def matches(remote: Union[RemoteRecord, DesiredRecord], desired: DesiredRecord) -> bool:
    """Compare (name, type, target), ignoring provider fields like id and ttl."""
    if normalize_name(remote.name) != normalize_name(desired.name):
        return False
    if remote.type.upper() != desired.type.upper():
        return False
    return same_target(desired.type, remote.target, desired.target)


def same_target(record_type: str, left: str, right: str) -> bool:
    """Compare record targets by value: addresses as IPs, anything else as names."""
    if record_type.upper() in FORWARD_TYPES:
        try:
            return ipaddress.ip_address(left.strip()) == ipaddress.ip_address(right.strip())
        except ValueError:
            pass
    return normalize_name(left) == normalize_name(right)


def _id_sort_key(record: RemoteRecord):
    # Linode ids are integers; anything else sorts after them as text.
    try:
        return (0, int(record.id), "")
    except (TypeError, ValueError):
        return (1, 0, str(record.id))


def pick_authoritative(
    records: Sequence[RemoteRecord], policy: DuplicatePolicy = DuplicatePolicy.FIRST
) -> Optional[RemoteRecord]:
    """Choose the record treated as authoritative among duplicates."""
    if not records:
        return None
    if policy == DuplicatePolicy.LOWEST_ID:
        return min(records, key=_id_sort_key)
    return records[0]
