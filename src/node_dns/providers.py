"""DNS provider gateway.

Wraps the provider HTTP API behind a small interface: list, create, update
and delete records of one domain, and read or set the reverse DNS of an
address. Provider failures are normalized into the exceptions in
``node_dns.errors``. The gateway never retries; retry policy lives in the
work queue.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

import requests

from node_dns.errors import (
    ProviderAuthError,
    ProviderConflict,
    ProviderError,
    ProviderNotFound,
    ProviderRateLimited,
    ProviderUnavailable,
)
from node_dns.records import DesiredRecord, RemoteRecord, normalize_name

logger = logging.getLogger(__name__)

LINODE_API_URL = "https://api.linode.com/v4"

# Linode only accepts the TTL values offered in its UI; 300 is the smallest.
DEFAULT_RECORD_TTL = 300

DEFAULT_RETRY_AFTER_SECONDS = 30.0


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self, domain: str) -> bool:
        """Check credentials and that the domain exists."""
        pass

    @abstractmethod
    def list_records(self, domain: str) -> List[RemoteRecord]:
        """Return every record of the domain, following pagination."""
        pass

    @abstractmethod
    def create_record(self, domain: str, desired: DesiredRecord) -> RemoteRecord:
        """Create a record."""
        pass

    @abstractmethod
    def update_record(self, domain: str, record_id: str, desired: DesiredRecord) -> RemoteRecord:
        """Update a record in place. Raises ProviderConflict if it is gone."""
        pass

    @abstractmethod
    def delete_record(self, domain: str, record_id: str) -> None:
        """Delete a record. Deleting an absent record succeeds."""
        pass

    @abstractmethod
    def get_ip_rdns(self, ip: str) -> Optional[str]:
        """Return the reverse DNS name set on an address, or None."""
        pass

    @abstractmethod
    def set_ip_rdns(self, ip: str, target: Optional[str]) -> None:
        """Point an address's reverse DNS at ``target``; None restores the default."""
        pass


def to_relative_name(name: str, domain: str) -> str:
    """Convert a fully qualified name to the domain-relative form Linode stores."""
    fq = normalize_name(name)
    zone = normalize_name(domain)
    if fq == zone:
        return ""
    suffix = f".{zone}"
    if fq.endswith(suffix):
        return fq[: -len(suffix)]
    return fq


def to_fqdn(name: str, domain: str) -> str:
    """Convert a domain-relative Linode record name to a fully qualified name."""
    zone = normalize_name(domain)
    relative = normalize_name(name or "")
    return f"{relative}.{zone}" if relative else zone


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0.0, float(value))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def _error_reason(response: requests.Response) -> str:
    """Extract the Linode error reasons from a failed response, if any."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return ""
    reasons = [str(e.get("reason")) for e in errors if isinstance(e, dict) and e.get("reason")]
    return "; ".join(reasons)


class LinodeDNSProvider(DNSProvider):
    """Linode API v4 DNS provider implementation."""

    PAGE_SIZE = 500

    def __init__(
        self,
        token: str,
        url: str = LINODE_API_URL,
        timeout_seconds: float = 10.0,
        ttl_seconds: int = DEFAULT_RECORD_TTL,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._ttl = ttl_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
        )
        self._domain_ids: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "Linode"

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        url = f"{self._url}/{path.lstrip('/')}"
        try:
            response = self._session.request(
                method, url, params=params, json=body, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(f"{method} {path} failed: {e}") from e

        if response.ok:
            return response

        status = response.status_code
        reason = _error_reason(response)
        message = f"{method} {path} returned {status}" + (f": {reason}" if reason else "")
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise ProviderRateLimited(message, retry_after=retry_after, status=status)
        if status in (401, 403):
            raise ProviderAuthError(message, status)
        if status == 404:
            raise ProviderNotFound(message, status)
        if status >= 500:
            raise ProviderUnavailable(message, status)
        raise ProviderError(message, status)

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from {self.name}: {e}", response.status_code) from e

    def _paginate(self, path: str) -> Iterator[Dict[str, Any]]:
        page = 1
        while True:
            response = self._request(
                "GET", path, params={"page": page, "page_size": self.PAGE_SIZE}
            )
            payload = self._json(response)
            if not isinstance(payload, dict):
                raise ProviderError(
                    f"Unexpected response format from {self.name}: "
                    f"expected object, got {type(payload).__name__}"
                )
            for item in payload.get("data") or []:
                if isinstance(item, dict):
                    yield item
                else:
                    logger.warning(f"Skipping malformed item from {path}: {item}")
            pages = int(payload.get("pages") or 1)
            if page >= pages:
                return
            page += 1

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    def _domain_id(self, domain: str) -> int:
        key = normalize_name(domain)
        with self._lock:
            cached = self._domain_ids.get(key)
        if cached is not None:
            return cached

        for item in self._paginate("domains"):
            if normalize_name(str(item.get("domain") or "")) == key:
                domain_id = int(item["id"])
                with self._lock:
                    self._domain_ids[key] = domain_id
                logger.debug(f"Resolved {self.name} domain {domain} to id {domain_id}")
                return domain_id
        raise ProviderNotFound(f"Could not find domain {domain} at {self.name}")

    def _forget_domain(self, domain: str) -> None:
        with self._lock:
            self._domain_ids.pop(normalize_name(domain), None)

    def test_connection(self, domain: str) -> bool:
        try:
            self._domain_id(domain)
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False
        logger.info(f"{self.name} connection successful, domain {domain} found")
        return True

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _to_remote(self, domain: str, item: Dict[str, Any]) -> RemoteRecord:
        return RemoteRecord(
            id=str(item.get("id")),
            name=to_fqdn(str(item.get("name") or ""), domain),
            type=str(item.get("type") or "").upper(),
            target=str(item.get("target") or ""),
            ttl=int(item.get("ttl_sec") or 0),
        )

    def _record_body(self, domain: str, desired: DesiredRecord) -> Dict[str, Any]:
        return {
            "type": desired.type,
            "name": to_relative_name(desired.name, domain),
            "target": desired.target,
            "ttl_sec": self._ttl,
        }

    def list_records(self, domain: str) -> List[RemoteRecord]:
        domain_id = self._domain_id(domain)
        try:
            items = list(self._paginate(f"domains/{domain_id}/records"))
        except ProviderNotFound as e:
            self._forget_domain(domain)
            raise ProviderNotFound(f"Domain {domain} disappeared from {self.name}: {e}") from e

        records: List[RemoteRecord] = []
        for item in items:
            if item.get("id") is None or not item.get("type"):
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(self._to_remote(domain, item))
        return records

    def create_record(self, domain: str, desired: DesiredRecord) -> RemoteRecord:
        domain_id = self._domain_id(domain)
        try:
            response = self._request(
                "POST", f"domains/{domain_id}/records", body=self._record_body(domain, desired)
            )
        except ProviderNotFound as e:
            self._forget_domain(domain)
            raise ProviderNotFound(f"Domain {domain} disappeared from {self.name}: {e}") from e
        record = self._to_remote(domain, self._json(response))
        logger.info(f"Created DNS record: {desired.name} {desired.type} -> {desired.target}")
        return record

    def update_record(self, domain: str, record_id: str, desired: DesiredRecord) -> RemoteRecord:
        domain_id = self._domain_id(domain)
        try:
            response = self._request(
                "PUT",
                f"domains/{domain_id}/records/{record_id}",
                body=self._record_body(domain, desired),
            )
        except ProviderNotFound as e:
            # Either the record or the whole domain is gone; re-resolve next time.
            self._forget_domain(domain)
            raise ProviderConflict(f"Record {record_id} was deleted concurrently: {e}", 404) from e
        record = self._to_remote(domain, self._json(response))
        logger.info(
            f"Updated DNS record {record_id}: {desired.name} {desired.type} -> {desired.target}"
        )
        return record

    def delete_record(self, domain: str, record_id: str) -> None:
        domain_id = self._domain_id(domain)
        try:
            self._request("DELETE", f"domains/{domain_id}/records/{record_id}")
        except ProviderNotFound:
            self._forget_domain(domain)
            logger.debug(f"DNS record {record_id} already absent")
            return
        logger.info(f"Deleted DNS record {record_id} from {domain}")

    # -------------------------------------------------------------------------
    # Address rDNS
    # -------------------------------------------------------------------------

    def get_ip_rdns(self, ip: str) -> Optional[str]:
        try:
            response = self._request("GET", f"networking/ips/{ip}")
        except ProviderNotFound as e:
            raise ProviderNotFound(
                f"Address {ip} is not managed by this {self.name} account: {e}", 404
            ) from e
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise ProviderError(
                f"Unexpected response format from {self.name}: "
                f"expected object, got {type(payload).__name__}"
            )
        rdns = payload.get("rdns")
        return normalize_name(str(rdns)) if rdns else None

    def set_ip_rdns(self, ip: str, target: Optional[str]) -> None:
        self._request("PUT", f"networking/ips/{ip}", body={"rdns": target})
        if target:
            logger.info(f"Set reverse DNS of {ip} to {target}")
        else:
            logger.info(f"Reset reverse DNS of {ip} to the {self.name} default")
