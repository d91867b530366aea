"""Node reconciliation.

Each pass recomputes desired state from the node object and actual state from
the DNS provider, diffs the two snapshots and applies the minimal set of
changes. The controller's finalizer guards cleanup: it is added before any
record is created and removed only after the node's records are gone.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from kubernetes.client.exceptions import ApiException

from node_dns.errors import (
    ErrorClass,
    NoAddressAvailable,
    NodeDNSError,
    ProviderConflict,
    ProviderNotFound,
    classify_error,
)
from node_dns.nodes import FINALIZER, KubeNodeClient, Node, NodeAddressResolver
from node_dns.providers import DNSProvider
from node_dns.records import (
    FORWARD_TYPES,
    PTR,
    DesiredRecord,
    DuplicatePolicy,
    IPAddress,
    RemoteRecord,
    ReverseMode,
    desired_records,
    fqdn,
    matches,
    normalize_name,
    pick_authoritative,
    same_key,
    same_target,
)

logger = logging.getLogger(__name__)


class Action(Enum):
    CONVERGE = "converge"
    TERMINATE = "terminate"
    IGNORE = "ignore"


class Outcome(Enum):
    IN_SYNC = "in-sync"
    CHANGED = "changed"
    SKIPPED = "skipped"
    CLEANED_UP = "cleaned-up"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """What one reconciliation attempt did."""

    node: str
    action: Action
    outcome: Outcome = Outcome.IN_SYNC
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error: Optional[BaseException] = None
    error_class: Optional[ErrorClass] = None

    @property
    def failed(self) -> bool:
        return self.outcome == Outcome.FAILED


@dataclass(frozen=True)
class Change:
    """A single create or update against the provider."""

    kind: str
    desired: DesiredRecord
    record_id: Optional[str] = None


@dataclass
class ConvergePlan:
    changes: List[Change] = field(default_factory=list)
    duplicates: List[Tuple[DesiredRecord, List[RemoteRecord]]] = field(default_factory=list)
    # Records of a previous address: the other forward type, or a PTR at an old
    # reverse name that still points at the node.
    stale: List[RemoteRecord] = field(default_factory=list)


# =============================================================================
# Pure Diffing
# =============================================================================


def plan_changes(
    desired: Iterable[DesiredRecord],
    remote: Sequence[RemoteRecord],
    policy: DuplicatePolicy = DuplicatePolicy.FIRST,
) -> ConvergePlan:
    """Diff desired records against a snapshot of remote records."""
    plan = ConvergePlan()
    for record in desired:
        candidates = [r for r in remote if same_key(r, record)]
        current = pick_authoritative(candidates, policy)
        if len(candidates) > 1:
            plan.duplicates.append((record, [c for c in candidates if c is not current]))
        if current is None:
            plan.changes.append(Change(kind="create", desired=record))
        elif not matches(current, record):
            plan.changes.append(Change(kind="update", desired=record, record_id=current.id))
        name = normalize_name(record.name)
        if record.type in FORWARD_TYPES:
            plan.stale.extend(
                r
                for r in remote
                if normalize_name(r.name) == name
                and r.type.upper() in FORWARD_TYPES
                and r.type.upper() != record.type
            )
        elif record.type == PTR:
            plan.stale.extend(
                r
                for r in remote
                if r.type.upper() == PTR
                and normalize_name(r.name) != name
                and same_target(PTR, r.target, record.target)
            )
    return plan


def records_to_delete(
    remote: Sequence[RemoteRecord], node_fqdn: str, reverse_name: Optional[str] = None
) -> List[RemoteRecord]:
    """Select the records owned by a node that is going away.

    Forward records are matched by name. PTR records are matched by the
    reverse name of the last known address, or by pointing at the node's FQDN.
    """
    name = normalize_name(node_fqdn)
    reverse = normalize_name(reverse_name) if reverse_name else None
    doomed: List[RemoteRecord] = []
    for record in remote:
        record_name = normalize_name(record.name)
        record_type = record.type.upper()
        if record_type in FORWARD_TYPES and record_name == name:
            doomed.append(record)
        elif record_type == PTR and (
            record_name == reverse or normalize_name(record.target) == name
        ):
            doomed.append(record)
    return doomed


# =============================================================================
# Converged Cache
# =============================================================================


class ConvergedCache:
    """Remembers nodes that converged recently to avoid redundant API traffic.

    Entries expire after ``ttl_seconds`` so that drift in the provider is
    still repaired. A ttl of 0 disables the cache.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, str, float]] = {}
        self._lock = threading.Lock()

    def is_fresh(self, name: str, hostname: str, ip: IPAddress) -> bool:
        if self._ttl <= 0:
            return False
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            return False
        cached_hostname, cached_ip, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            return False
        return cached_hostname == hostname and cached_ip == str(ip)

    def put(self, name: str, hostname: str, ip: IPAddress) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._entries[name] = (hostname, str(ip), self._clock())

    def forget(self, name: str) -> None:
        with self._lock:
            self._entries.pop(name, None)


# =============================================================================
# Reconciler
# =============================================================================


class NodeReconciler:
    """Converges the DNS records of one node per call."""

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        node_client: KubeNodeClient,
        resolver: NodeAddressResolver,
        domain: str,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.FIRST,
        reverse_mode: ReverseMode = ReverseMode.RECORD,
        resync_interval_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.dns_provider = dns_provider
        self.node_client = node_client
        self.resolver = resolver
        self.domain = normalize_name(domain)
        self.duplicate_policy = duplicate_policy
        self.reverse_mode = reverse_mode
        self.cache = ConvergedCache(resync_interval_seconds, clock=clock)

    def reconcile(self, name: str, node: Optional[Node]) -> ReconcileResult:
        """Run one reconciliation pass for a node.

        ``node`` is the latest observed state, or None when the node is no
        longer part of the cluster. Errors never escape: they are classified
        and returned on the result.
        """
        if node is None:
            self.cache.forget(name)
            result = ReconcileResult(node=name, action=Action.IGNORE, outcome=Outcome.IGNORED)
        elif node.is_terminating and not node.has_finalizer(FINALIZER):
            self.cache.forget(name)
            result = ReconcileResult(node=name, action=Action.IGNORE, outcome=Outcome.IGNORED)
        elif node.is_terminating:
            result = ReconcileResult(node=name, action=Action.TERMINATE)
            self._run(self._terminate, node, result)
        else:
            result = ReconcileResult(node=name, action=Action.CONVERGE)
            self._run(self._converge, node, result)

        self._log_result(result)
        return result

    def _run(
        self,
        step: Callable[[Node, ReconcileResult], None],
        node: Node,
        result: ReconcileResult,
    ) -> None:
        try:
            step(node, result)
        except Exception as e:
            self.cache.forget(node.name)
            result.outcome = Outcome.FAILED
            result.error = e
            result.error_class = classify_error(e)
            if result.error_class is ErrorClass.TRANSIENT and not _is_known_error(e):
                logger.error(f"Unexpected error reconciling node {node.name}", exc_info=True)

    # -------------------------------------------------------------------------
    # Converging
    # -------------------------------------------------------------------------

    def _converge(self, node: Node, result: ReconcileResult) -> None:
        try:
            hostname, ip = self.resolver.resolve(node)
        except NoAddressAvailable as e:
            logger.debug(f"{e}; waiting for the next update")
            result.outcome = Outcome.SKIPPED
            result.error_class = ErrorClass.BENIGN
            return

        if node.has_finalizer(FINALIZER) and self.cache.is_fresh(node.name, hostname, ip):
            result.outcome = Outcome.IN_SYNC
            return

        desired = desired_records(hostname, ip, self.domain)

        # The finalizer must exist before any record does.
        if not node.has_finalizer(FINALIZER):
            if not self.node_client.add_finalizer(node.name, FINALIZER):
                logger.debug(f"Node {node.name} disappeared before its finalizer was added")
                result.outcome = Outcome.IGNORED
                return

        if self.reverse_mode is ReverseMode.RDNS:
            records = [desired.forward]
        else:
            records = list(desired)
        wanted = {normalize_name(r.name) for r in records}
        node_fqdn = normalize_name(desired.forward.name)
        remote = [
            r
            for r in self.dns_provider.list_records(self.domain)
            if normalize_name(r.name) in wanted
            or (r.type.upper() == PTR and normalize_name(r.target) == node_fqdn)
        ]
        plan = plan_changes(records, remote, self.duplicate_policy)

        for record, extras in plan.duplicates:
            logger.warning(
                f"Found {len(extras) + 1} records for {record.name} {record.type}; "
                f"using one per '{self.duplicate_policy.value}' policy and leaving "
                f"ids {', '.join(r.id for r in extras)} untouched"
            )

        for change in plan.changes:
            if change.kind == "create":
                self.dns_provider.create_record(self.domain, change.desired)
                result.created += 1
                continue
            try:
                self.dns_provider.update_record(self.domain, change.record_id, change.desired)
                result.updated += 1
            except ProviderConflict:
                logger.info(
                    f"Record {change.record_id} for {change.desired.name} vanished during update, creating it"
                )
                self.dns_provider.create_record(self.domain, change.desired)
                result.created += 1

        for record in plan.stale:
            logger.info(
                f"Removing stale {record.type} record {record.id} ({record.name} -> "
                f"{record.target}) left from a previous address of node {node.name}"
            )
            self.dns_provider.delete_record(self.domain, record.id)
            result.deleted += 1

        if self.reverse_mode is ReverseMode.RDNS:
            if self._ensure_rdns(str(ip), desired.forward.name):
                result.updated += 1

        self.cache.put(node.name, hostname, ip)
        changed = result.created or result.updated or result.deleted
        result.outcome = Outcome.CHANGED if changed else Outcome.IN_SYNC

    def _ensure_rdns(self, ip: str, target: str) -> bool:
        """Point the address's rDNS at the node. Returns True if it was changed."""
        current = self.dns_provider.get_ip_rdns(ip)
        if current is not None and normalize_name(current) == normalize_name(target):
            return False
        self.dns_provider.set_ip_rdns(ip, target)
        return True

    # -------------------------------------------------------------------------
    # Terminating
    # -------------------------------------------------------------------------

    def _terminate(self, node: Node, result: ReconcileResult) -> None:
        self.cache.forget(node.name)
        hostname = self.resolver.resolve_hostname(node)
        node_fqdn = fqdn(hostname, self.domain)
        reverse_name: Optional[str] = None
        ip: Optional[IPAddress] = None
        try:
            _, ip = self.resolver.resolve(node)
            reverse_name = desired_records(hostname, ip, self.domain).reverse.name
        except NoAddressAvailable:
            logger.debug(
                f"Node {node.name} has no address left; cleaning up by name and PTR target"
            )

        remote = self.dns_provider.list_records(self.domain)
        for record in records_to_delete(remote, node_fqdn, reverse_name):
            self.dns_provider.delete_record(self.domain, record.id)
            result.deleted += 1

        if self.reverse_mode is ReverseMode.RDNS and ip is not None:
            if self._release_rdns(str(ip), node_fqdn):
                result.deleted += 1

        # Only now is it safe to let Kubernetes finish deleting the node.
        self.node_client.remove_finalizer(node.name, FINALIZER)
        result.outcome = Outcome.CLEANED_UP

    def _release_rdns(self, ip: str, node_fqdn: str) -> bool:
        """Restore the default rDNS of an address that still points at the node."""
        try:
            current = self.dns_provider.get_ip_rdns(ip)
        except ProviderNotFound as e:
            # The address left the account; there is nothing of ours to reset.
            logger.warning(f"Skipping reverse DNS cleanup: {e}")
            return False
        if current is None or normalize_name(current) != normalize_name(node_fqdn):
            return False
        self.dns_provider.set_ip_rdns(ip, None)
        return True

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    def _log_result(self, result: ReconcileResult) -> None:
        message = (
            f"node={result.node} action={result.action.value} outcome={result.outcome.value} "
            f"created={result.created} updated={result.updated} deleted={result.deleted}"
        )
        if result.failed:
            logger.warning(
                f"{message} error_class={result.error_class.value} error={result.error}"
            )
        elif result.outcome in (Outcome.CHANGED, Outcome.CLEANED_UP):
            logger.info(message)
        else:
            logger.debug(message)


def _is_known_error(error: BaseException) -> bool:
    return isinstance(error, (NodeDNSError, ApiException, requests.exceptions.RequestException))
