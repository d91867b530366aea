"""Node watch loop and worker pool.

The watch thread only turns node events into queue markers; it never waits on
reconciliation. A pool of worker threads drains the queue, hands each node to
the reconciler and schedules retries according to the retry policy.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, List, Optional

from kubernetes import watch
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from node_dns.nodes import Node
from node_dns.reconciler import NodeReconciler, Outcome
from node_dns.workqueue import RetryPolicy, WorkQueue

logger = logging.getLogger(__name__)


class NodeDNSController:
    """Watches cluster nodes and reconciles their DNS records."""

    def __init__(
        self,
        *,
        core_api: CoreV1Api,
        reconciler: NodeReconciler,
        retry_policy: Optional[RetryPolicy] = None,
        queue: Optional[WorkQueue] = None,
        workers: int = 4,
        watch_timeout_seconds: int = 290,
        request_timeout_seconds: float = 10.0,
    ):
        self.core_api = core_api
        self.reconciler = reconciler
        self.retry_policy = retry_policy or RetryPolicy()
        self.queue = queue or WorkQueue()
        self.workers = max(1, workers)
        self.watch_timeout_seconds = watch_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.ready = threading.Event()
        self.fatal_error: Optional[ApiException] = None
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._active_watcher: Optional[watch.Watch] = None
        self._watcher_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Record the latest state of a node and mark it for reconciliation."""
        node = Node.from_kube(obj)
        if event_type == "DELETED":
            logger.debug(f"Node {node.name} deleted from the cluster")
            self.queue.add(node.name, None)
        else:
            self.queue.add(node.name, node)

    def _sync_from_list(self, listing: Any) -> Optional[str]:
        """Enqueue every listed node and mark vanished ones as gone."""
        seen = set()
        for obj in listing.items or []:
            self.handle_event("ADDED", obj)
            seen.add(obj.metadata.name)
        for name in self.queue.known_keys() - seen:
            logger.debug(f"Node {name} vanished while the watch was disconnected")
            self.queue.add(name, None)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _list_nodes(self) -> Optional[str]:
        listing = self.core_api.list_node(_request_timeout=self.request_timeout_seconds)
        resource_version = self._sync_from_list(listing)
        logger.info(f"Listed {len(listing.items or [])} node(s) at resourceVersion {resource_version}")
        return resource_version

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def process_next(self, timeout: Optional[float] = 1.0) -> bool:
        """Reconcile one queued node. Returns False if nothing was processed."""
        item = self.queue.get(timeout=timeout)
        if item is None:
            return False
        name, node = item
        delay: Optional[float] = None
        try:
            result = self.reconciler.reconcile(name, node)
            if result.outcome == Outcome.FAILED and result.error is not None:
                delay = self.retry_policy.next_delay(name, result.error)
            else:
                self.retry_policy.forget(name)
        except Exception as e:
            logger.error(f"Unexpected error processing node {name}: {e}", exc_info=True)
            delay = self.retry_policy.next_delay(name, e)
        finally:
            self.queue.done(name)
        if delay is not None:
            self.queue.add_after(name, delay)
        return True

    def _worker(self) -> None:
        while not self.queue.shutting_down:
            self.process_next(timeout=1.0)

    def start_workers(self) -> None:
        for index in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"node-dns-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.workers} worker(s)")

    # -------------------------------------------------------------------------
    # Watch loop
    # -------------------------------------------------------------------------

    def stop(self) -> None:
        """Request shutdown and interrupt the open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _fail(self, error: ApiException) -> None:
        self.fatal_error = error
        self._stop.set()

    def watch_nodes(self) -> None:
        """List-then-watch nodes until stopped.

        410 Gone re-lists and resumes; 401/403 stop the loop because they
        need RBAC or credential fixes; other errors back off with jitter.
        """
        resource_version: Optional[str] = None
        backoff_seconds = 1

        while not self._stop.is_set():
            try:
                resource_version = self._list_nodes()
                self.ready.set()
                break
            except ApiException as exc:
                if exc.status in (401, 403):
                    logger.error(
                        f"Kubernetes API access denied listing nodes (status={exc.status}). "
                        f"Check the service account's RBAC permissions."
                    )
                    self._fail(exc)
                    return
                logger.error(f"Initial node list failed: {exc}")
            except Exception:
                logger.exception("Unexpected error during initial node list")
            self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    self.core_api.list_node,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._stop.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or {}
                        code = raw.get("code") if isinstance(raw, dict) else None
                        raise ApiException(status=code or 500, reason=str(raw))
                    if obj is None or getattr(obj, "metadata", None) is None:
                        continue
                    if obj.metadata.resource_version:
                        resource_version = obj.metadata.resource_version
                    self.handle_event(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._list_nodes()
                    except ApiException as relist_exc:
                        logger.error(f"Failed to re-list nodes after 410: {relist_exc}")
                        resource_version = None
                    continue
                if exc.status in (401, 403):
                    logger.error(
                        f"Kubernetes API watch denied (status={exc.status}). "
                        f"Check the service account's RBAC permissions."
                    )
                    self._fail(exc)
                    return
                logger.error(f"Kubernetes API watch error: {exc}")
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                logger.exception("Unexpected watch error")
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def run_forever(self) -> None:
        """Run workers and the watch loop until ``stop()`` is called.

        On shutdown no new reconciliation is started; the ones in flight are
        allowed to finish so no node is left with half-applied changes.
        Raises the Kubernetes error that stopped the watch, if any.
        """
        self.start_workers()
        watcher_thread = threading.Thread(target=self.watch_nodes, name="node-dns-watch", daemon=True)
        watcher_thread.start()
        try:
            self._stop.wait()
        finally:
            logger.info("Shutting down: waiting for in-flight reconciliations")
            self.queue.shut_down()
            for thread in self._threads:
                thread.join()
            self.ready.clear()
            logger.info("Controller stopped")
        if self.fatal_error is not None:
            raise self.fatal_error
