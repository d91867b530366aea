"""Node model, address resolution and the Kubernetes finalizer client."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from node_dns.errors import FinalizerConflict, NoAddressAvailable
from node_dns.records import IPAddress, normalize_name

logger = logging.getLogger(__name__)

FINALIZER = "k8s.haim.dev/linode-dns-finalizer"

HOSTNAME_SOURCES = ("address", "name")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class NodeAddress:
    type: str
    address: str


@dataclass(frozen=True)
class Node:
    """The parts of a Kubernetes Node the controller cares about."""

    name: str
    addresses: Tuple[NodeAddress, ...] = ()
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[datetime] = None
    resource_version: str = ""

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str = FINALIZER) -> bool:
        return finalizer in self.finalizers

    @classmethod
    def from_kube(cls, obj: Any) -> "Node":
        """Build a Node from a ``V1Node`` returned by the kubernetes client."""
        metadata = obj.metadata
        status = getattr(obj, "status", None)
        addresses = []
        for item in getattr(status, "addresses", None) or []:
            if item is None or not item.address:
                continue
            addresses.append(NodeAddress(type=str(item.type or ""), address=str(item.address)))
        return cls(
            name=metadata.name,
            addresses=tuple(addresses),
            finalizers=tuple(metadata.finalizers or ()),
            deletion_timestamp=metadata.deletion_timestamp,
            resource_version=metadata.resource_version or "",
        )


@dataclass(frozen=True)
class NamingRules:
    """How a node's published hostname and address are chosen.

    address_types:   Status address types to publish, in order of preference.
    hostname_source: "address" uses the Hostname status address (falling back
                     to the node name), "name" always uses the node name.
    """

    address_types: Tuple[str, ...] = ("ExternalIP",)
    hostname_source: str = "address"


# =============================================================================
# Address Resolution
# =============================================================================


class NodeAddressResolver:
    """Extracts the hostname and IP address to publish for a node."""

    def __init__(self, domain: str, rules: NamingRules = NamingRules()):
        self._domain = normalize_name(domain)
        self._rules = rules

    @property
    def rules(self) -> NamingRules:
        return self._rules

    def resolve_hostname(self, node: Node) -> str:
        hostname = ""
        if self._rules.hostname_source == "address":
            for address in node.addresses:
                if address.type == "Hostname" and address.address.strip():
                    hostname = address.address
                    break
        hostname = normalize_name(hostname or node.name)
        # Hostnames that already carry the parent domain would double it.
        suffix = f".{self._domain}"
        if hostname.endswith(suffix):
            hostname = hostname[: -len(suffix)]
        return hostname

    def resolve_ip(self, node: Node) -> IPAddress:
        for address_type in self._rules.address_types:
            for address in node.addresses:
                if address.type != address_type:
                    continue
                try:
                    return ipaddress.ip_address(address.address.strip())
                except ValueError:
                    logger.debug(
                        f"Node {node.name}: ignoring unparseable {address_type} '{address.address}'"
                    )
        raise NoAddressAvailable(
            f"Node {node.name} has no usable {'/'.join(self._rules.address_types)} address"
        )

    def resolve(self, node: Node) -> Tuple[str, IPAddress]:
        """Return (hostname, ip) for the node or raise NoAddressAvailable."""
        hostname = self.resolve_hostname(node)
        if not hostname:
            raise NoAddressAvailable(f"Node {node.name} has no usable hostname")
        return hostname, self.resolve_ip(node)


# =============================================================================
# Kubernetes Finalizer Client
# =============================================================================


class KubeNodeClient:
    """Adds and removes finalizers on nodes with optimistic concurrency.

    Each patch is a JSON patch guarded by a ``test`` on the resourceVersion
    that was read, so concurrent edits by other controllers make the patch
    fail instead of being overwritten. Conflicts are retried with a fresh
    read a bounded number of times.
    """

    CONFLICT_STATUSES = (409, 422)

    def __init__(
        self,
        core_api: CoreV1Api,
        *,
        timeout_seconds: float = 10.0,
        max_conflict_retries: int = 5,
    ):
        self._core_api = core_api
        self._timeout = timeout_seconds
        self._max_conflict_retries = max_conflict_retries

    def add_finalizer(self, name: str, finalizer: str = FINALIZER) -> bool:
        """Ensure the finalizer is present. Returns False if the node is gone."""
        return self._ensure(name, finalizer, present=True)

    def remove_finalizer(self, name: str, finalizer: str = FINALIZER) -> bool:
        """Ensure the finalizer is absent. Returns False if the node is gone."""
        return self._ensure(name, finalizer, present=False)

    def _ensure(self, name: str, finalizer: str, *, present: bool) -> bool:
        for attempt in range(1, self._max_conflict_retries + 1):
            try:
                obj = self._core_api.read_node(name, _request_timeout=self._timeout)
            except ApiException as e:
                if e.status == 404:
                    return False
                raise

            current: List[str] = list(obj.metadata.finalizers or [])
            if (finalizer in current) == present:
                return True

            if present:
                updated = current + [finalizer]
            else:
                updated = [f for f in current if f != finalizer]
            patch = [
                {
                    "op": "test",
                    "path": "/metadata/resourceVersion",
                    "value": obj.metadata.resource_version,
                },
                {"op": "add", "path": "/metadata/finalizers", "value": updated},
            ]
            try:
                self._core_api.patch_node(name, patch, _request_timeout=self._timeout)
            except ApiException as e:
                if e.status == 404:
                    return False
                if e.status in self.CONFLICT_STATUSES:
                    logger.debug(
                        f"Node {name} changed while patching finalizers "
                        f"(attempt {attempt}/{self._max_conflict_retries})"
                    )
                    continue
                raise
            logger.info(f"{'Added' if present else 'Removed'} finalizer {finalizer} on node {name}")
            return True

        raise FinalizerConflict(
            f"Node {name} kept changing; gave up patching finalizers "
            f"after {self._max_conflict_retries} attempts"
        )
