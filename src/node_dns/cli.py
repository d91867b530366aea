#!/usr/bin/env python3
"""node-dns - Node DNS Records for Kubernetes

Keeps forward (hostname -> IP) and reverse (IP -> hostname) DNS records in a
Linode domain in sync with the nodes of a Kubernetes cluster. Records are
created when a node joins and deleted when it leaves; a finalizer on each node
guarantees the records are cleaned up before the node object goes away.

Environment variables:

    Required:
        NODE_DOMAIN            Parent domain for node records, e.g. k8s.example.com.
                               Must already exist at Linode.
        LINODE_API_TOKEN       Linode API token with Domains read/write scope.

    Linode:
        LINODE_API_URL         API base URL (default: https://api.linode.com/v4)
        API_TIMEOUT_SECONDS    Timeout for each Linode and Kubernetes call (default: 10)
        RECORD_TTL_SECONDS     TTL of created records (default: 300)

    Naming rules:
        NODE_ADDRESS_TYPES     Comma-separated node address types to publish, in order
                               of preference (default: ExternalIP)
        HOSTNAME_SOURCE        "address" (Hostname node address, falling back to the
                               node name) or "name" (default: address)
        DUPLICATE_POLICY       Which record wins when several share a name and type:
                               "first" (provider order) or "lowest-id" (default: first)
        REVERSE_MODE           Where the reverse mapping goes: "record" (a PTR record inside
                               NODE_DOMAIN) or "rdns" (the rDNS field of the Linode IP
                               address; the token also needs IPs read/write scope)
                               (default: record)
        NODE_DNS_CONFIG_PATH   Optional YAML file overriding the naming rules
                               (default: /config/node-dns.yaml)
                               Example config file:
                                 address_types: [ExternalIP, InternalIP]
                                 hostname_source: name
                                 duplicate_policy: lowest-id
                                 reverse_mode: rdns

    Runtime:
        WORKERS                    Concurrent reconciliations (default: 4)
        RETRY_BASE_SECONDS         First retry delay (default: 1)
        RETRY_MAX_SECONDS          Retry delay cap (default: 300)
        FATAL_MAX_ATTEMPTS         Attempts before giving up on auth/domain errors (default: 5)
        RESYNC_INTERVAL_SECONDS    How long a converged node is trusted before its records
                                   are checked again; 0 checks on every event (default: 600)
        WATCH_TIMEOUT_SECONDS      Server-side watch timeout (default: 290)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

Operators: if the controller is removed without letting it clean up, the
finalizer k8s.haim.dev/linode-dns-finalizer must be stripped from every node by
hand, or node deletion will hang.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from node_dns.controller import NodeDNSController
from node_dns.nodes import HOSTNAME_SOURCES, KubeNodeClient, NamingRules, NodeAddressResolver
from node_dns.providers import LINODE_API_URL as DEFAULT_LINODE_API_URL
from node_dns.providers import DNSProvider, LinodeDNSProvider
from node_dns.reconciler import NodeReconciler
from node_dns.records import DuplicatePolicy, ReverseMode
from node_dns.workqueue import RetryPolicy

# =============================================================================
# Configuration
# =============================================================================

NODE_DOMAIN = os.getenv("NODE_DOMAIN", "").strip().rstrip(".")
LINODE_API_TOKEN = os.getenv("LINODE_API_TOKEN", "").strip()
LINODE_API_URL = os.getenv("LINODE_API_URL", DEFAULT_LINODE_API_URL)
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "10"))
RECORD_TTL_SECONDS = int(os.getenv("RECORD_TTL_SECONDS", "300"))

# Naming rules
NODE_ADDRESS_TYPES = os.getenv("NODE_ADDRESS_TYPES", "ExternalIP")
HOSTNAME_SOURCE = os.getenv("HOSTNAME_SOURCE", "address").lower().strip()
DUPLICATE_POLICY = os.getenv("DUPLICATE_POLICY", "first").lower().strip()
REVERSE_MODE = os.getenv("REVERSE_MODE", "record").lower().strip()
NODE_DNS_CONFIG_PATH = os.getenv("NODE_DNS_CONFIG_PATH", "/config/node-dns.yaml")

# Runtime configuration
WORKERS = int(os.getenv("WORKERS", "4"))
RETRY_BASE_SECONDS = float(os.getenv("RETRY_BASE_SECONDS", "1"))
RETRY_MAX_SECONDS = float(os.getenv("RETRY_MAX_SECONDS", "300"))
FATAL_MAX_ATTEMPTS = int(os.getenv("FATAL_MAX_ATTEMPTS", "5"))
RESYNC_INTERVAL_SECONDS = float(os.getenv("RESYNC_INTERVAL_SECONDS", "600"))
WATCH_TIMEOUT_SECONDS = int(os.getenv("WATCH_TIMEOUT_SECONDS", "290"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Utility Functions
# =============================================================================


def _parse_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return [item.strip() for item in items if item and item.strip()]


def load_rules_file(config_path: str) -> Dict[str, Any]:
    """Load naming rule overrides from a YAML file, if it exists."""
    path = Path(config_path) if config_path else None
    if path is None or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {path}: {e}")
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        return {}
    logger.info(f"Loaded naming rules from {path}")
    return data


def build_naming_rules(overrides: Optional[Dict[str, Any]] = None) -> NamingRules:
    """Combine environment defaults with overrides from the YAML file."""
    overrides = overrides or {}
    address_types = _parse_list(overrides.get("address_types", NODE_ADDRESS_TYPES))
    hostname_source = str(overrides.get("hostname_source") or HOSTNAME_SOURCE).lower().strip()
    return NamingRules(
        address_types=tuple(address_types),
        hostname_source=hostname_source,
    )


def parse_duplicate_policy(value: str) -> DuplicatePolicy:
    try:
        return DuplicatePolicy(value.lower().strip())
    except ValueError:
        choices = ", ".join(p.value for p in DuplicatePolicy)
        raise ValueError(f"Unsupported DUPLICATE_POLICY: '{value}'. Supported: {choices}")


def parse_reverse_mode(value: str) -> ReverseMode:
    try:
        return ReverseMode(value.lower().strip())
    except ValueError:
        choices = ", ".join(m.value for m in ReverseMode)
        raise ValueError(f"Unsupported REVERSE_MODE: '{value}'. Supported: {choices}")


# =============================================================================
# Factories
# =============================================================================


def create_dns_provider() -> DNSProvider:
    """Factory function to create the Linode DNS provider."""
    return LinodeDNSProvider(
        LINODE_API_TOKEN,
        url=LINODE_API_URL,
        timeout_seconds=API_TIMEOUT_SECONDS,
        ttl_seconds=RECORD_TTL_SECONDS,
    )


def create_core_api() -> client.CoreV1Api:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.debug("Using kubeconfig Kubernetes configuration")
    return client.CoreV1Api()


def create_controller(
    dns_provider: DNSProvider,
    core_api: client.CoreV1Api,
    rules: NamingRules,
    duplicate_policy: DuplicatePolicy,
    reverse_mode: ReverseMode = ReverseMode.RECORD,
) -> NodeDNSController:
    reconciler = NodeReconciler(
        dns_provider=dns_provider,
        node_client=KubeNodeClient(core_api, timeout_seconds=API_TIMEOUT_SECONDS),
        resolver=NodeAddressResolver(NODE_DOMAIN, rules),
        domain=NODE_DOMAIN,
        duplicate_policy=duplicate_policy,
        reverse_mode=reverse_mode,
        resync_interval_seconds=RESYNC_INTERVAL_SECONDS,
    )
    retry_policy = RetryPolicy(
        base_seconds=RETRY_BASE_SECONDS,
        max_seconds=RETRY_MAX_SECONDS,
        fatal_max_attempts=FATAL_MAX_ATTEMPTS,
    )
    return NodeDNSController(
        core_api=core_api,
        reconciler=reconciler,
        retry_policy=retry_policy,
        workers=WORKERS,
        watch_timeout_seconds=WATCH_TIMEOUT_SECONDS,
        request_timeout_seconds=API_TIMEOUT_SECONDS,
    )


# =============================================================================
# Main
# =============================================================================


def validate_config(rules_overrides: Optional[Dict[str, Any]] = None) -> bool:
    """Validate configuration."""
    errors = []
    rules_overrides = rules_overrides or {}

    if not NODE_DOMAIN:
        errors.append("NODE_DOMAIN environment variable is not defined")
    if not LINODE_API_TOKEN:
        errors.append("LINODE_API_TOKEN environment variable is not defined")

    rules = build_naming_rules(rules_overrides)
    if not rules.address_types:
        errors.append("At least one node address type is required (NODE_ADDRESS_TYPES)")
    if rules.hostname_source not in HOSTNAME_SOURCES:
        errors.append(
            f"Unsupported HOSTNAME_SOURCE: {rules.hostname_source}. "
            f"Supported: {', '.join(HOSTNAME_SOURCES)}"
        )

    try:
        parse_duplicate_policy(str(rules_overrides.get("duplicate_policy") or DUPLICATE_POLICY))
    except ValueError as e:
        errors.append(str(e))
    try:
        parse_reverse_mode(str(rules_overrides.get("reverse_mode") or REVERSE_MODE))
    except ValueError as e:
        errors.append(str(e))

    if WORKERS < 1:
        errors.append(f"WORKERS must be >= 1, got: {WORKERS}")
    if RETRY_BASE_SECONDS <= 0 or RETRY_MAX_SECONDS < RETRY_BASE_SECONDS:
        errors.append("RETRY_BASE_SECONDS must be > 0 and <= RETRY_MAX_SECONDS")
    if FATAL_MAX_ATTEMPTS < 1:
        errors.append(f"FATAL_MAX_ATTEMPTS must be >= 1, got: {FATAL_MAX_ATTEMPTS}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"node-dns: Kubernetes nodes -> Linode domain {NODE_DOMAIN or '<unset>'}")

    rules_overrides = load_rules_file(NODE_DNS_CONFIG_PATH)
    if not validate_config(rules_overrides):
        logger.error("Configuration validation failed")
        sys.exit(1)

    rules = build_naming_rules(rules_overrides)
    duplicate_policy = parse_duplicate_policy(
        str(rules_overrides.get("duplicate_policy") or DUPLICATE_POLICY)
    )
    reverse_mode = parse_reverse_mode(str(rules_overrides.get("reverse_mode") or REVERSE_MODE))

    dns_provider = create_dns_provider()
    logger.info(f"DNS Provider: {dns_provider.name}")
    logger.info(f"Address types: {', '.join(rules.address_types)}")
    logger.info(f"Hostname source: {rules.hostname_source}")
    logger.info(f"Duplicate policy: {duplicate_policy.value}")
    logger.info(f"Reverse mode: {reverse_mode.value}")
    logger.info(f"Workers: {WORKERS}")

    # Test connection
    if not dns_provider.test_connection(NODE_DOMAIN):
        logger.error(f"Cannot use domain {NODE_DOMAIN} at {dns_provider.name}. Exiting.")
        sys.exit(1)

    try:
        core_api = create_core_api()
        controller = create_controller(
            dns_provider, core_api, rules, duplicate_policy, reverse_mode
        )

        def _shutdown(signum, _frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            controller.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        controller.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except ApiException as e:
        logger.error(f"Kubernetes API error, terminating: status={e.status} reason={e.reason}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error, terminating: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
