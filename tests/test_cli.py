from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.exceptions import ApiException

from node_dns import cli
from node_dns.records import DuplicatePolicy, ReverseMode

# =============================================================================
# Rules File
# =============================================================================


def test_load_rules_file_reads_mapping(tmp_path: Path) -> None:
    path = tmp_path / "node-dns.yaml"
    path.write_text(
        "address_types: [ExternalIP, InternalIP]\nhostname_source: name\n", encoding="utf-8"
    )

    rules = cli.load_rules_file(str(path))

    assert rules == {"address_types": ["ExternalIP", "InternalIP"], "hostname_source": "name"}


def test_load_rules_file_missing_returns_empty(tmp_path: Path) -> None:
    assert cli.load_rules_file(str(tmp_path / "absent.yaml")) == {}


def test_load_rules_file_empty_path_returns_empty() -> None:
    assert cli.load_rules_file("") == {}


def test_load_rules_file_invalid_yaml_returns_empty(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("address_types: [ExternalIP\n", encoding="utf-8")

    assert cli.load_rules_file(str(path)) == {}


def test_load_rules_file_non_mapping_returns_empty(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- ExternalIP\n", encoding="utf-8")

    assert cli.load_rules_file(str(path)) == {}


# =============================================================================
# Naming Rules
# =============================================================================


def test_build_naming_rules_uses_environment_defaults(monkeypatch) -> None:
    monkeypatch.setattr(cli, "NODE_ADDRESS_TYPES", "ExternalIP, InternalIP")
    monkeypatch.setattr(cli, "HOSTNAME_SOURCE", "address")

    rules = cli.build_naming_rules()

    assert rules.address_types == ("ExternalIP", "InternalIP")
    assert rules.hostname_source == "address"


def test_build_naming_rules_file_overrides_environment(monkeypatch) -> None:
    monkeypatch.setattr(cli, "NODE_ADDRESS_TYPES", "ExternalIP")

    rules = cli.build_naming_rules({"address_types": ["InternalIP"], "hostname_source": "Name"})

    assert rules.address_types == ("InternalIP",)
    assert rules.hostname_source == "name"


def test_parse_duplicate_policy() -> None:
    assert cli.parse_duplicate_policy("first") is DuplicatePolicy.FIRST
    assert cli.parse_duplicate_policy(" Lowest-ID ") is DuplicatePolicy.LOWEST_ID


def test_parse_duplicate_policy_invalid() -> None:
    with pytest.raises(ValueError, match="Unsupported DUPLICATE_POLICY"):
        cli.parse_duplicate_policy("newest")


def test_parse_reverse_mode() -> None:
    assert cli.parse_reverse_mode("record") is ReverseMode.RECORD
    assert cli.parse_reverse_mode(" RDNS ") is ReverseMode.RDNS


def test_parse_reverse_mode_invalid() -> None:
    with pytest.raises(ValueError, match="Unsupported REVERSE_MODE"):
        cli.parse_reverse_mode("zone")


# =============================================================================
# Validation
# =============================================================================


@pytest.fixture
def valid_env(monkeypatch):
    monkeypatch.setattr(cli, "NODE_DOMAIN", "k8s.example.com")
    monkeypatch.setattr(cli, "LINODE_API_TOKEN", "secret")
    monkeypatch.setattr(cli, "NODE_ADDRESS_TYPES", "ExternalIP")
    monkeypatch.setattr(cli, "HOSTNAME_SOURCE", "address")
    monkeypatch.setattr(cli, "DUPLICATE_POLICY", "first")
    monkeypatch.setattr(cli, "REVERSE_MODE", "record")
    monkeypatch.setattr(cli, "WORKERS", 4)
    monkeypatch.setattr(cli, "RETRY_BASE_SECONDS", 1.0)
    monkeypatch.setattr(cli, "RETRY_MAX_SECONDS", 300.0)
    monkeypatch.setattr(cli, "FATAL_MAX_ATTEMPTS", 5)
    return monkeypatch


def test_validate_config_ok(valid_env) -> None:
    assert cli.validate_config() is True


def test_validate_config_requires_domain_and_token(valid_env) -> None:
    valid_env.setattr(cli, "NODE_DOMAIN", "")
    valid_env.setattr(cli, "LINODE_API_TOKEN", "")

    assert cli.validate_config() is False


def test_validate_config_rejects_unknown_hostname_source(valid_env) -> None:
    assert cli.validate_config({"hostname_source": "label"}) is False


def test_validate_config_rejects_unknown_duplicate_policy(valid_env) -> None:
    valid_env.setattr(cli, "DUPLICATE_POLICY", "random")

    assert cli.validate_config() is False


def test_validate_config_rejects_unknown_reverse_mode(valid_env) -> None:
    assert cli.validate_config({"reverse_mode": "both"}) is False


def test_validate_config_rejects_empty_address_types(valid_env) -> None:
    valid_env.setattr(cli, "NODE_ADDRESS_TYPES", " , ")

    assert cli.validate_config() is False


def test_validate_config_rejects_zero_workers(valid_env) -> None:
    valid_env.setattr(cli, "WORKERS", 0)

    assert cli.validate_config() is False


# =============================================================================
# Main
# =============================================================================


def test_main_exits_when_domain_unreachable(valid_env, tmp_path: Path) -> None:
    valid_env.setattr(cli, "NODE_DNS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    provider = MagicMock()
    provider.name = "Linode"
    provider.test_connection.return_value = False

    with patch.object(cli, "create_dns_provider", return_value=provider), patch.object(
        cli, "create_controller"
    ) as create_controller:
        with pytest.raises(SystemExit) as exc_info:
            cli.main()

    assert exc_info.value.code == 1
    create_controller.assert_not_called()


def test_main_exits_on_invalid_config(valid_env, tmp_path: Path) -> None:
    valid_env.setattr(cli, "NODE_DNS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    valid_env.setattr(cli, "LINODE_API_TOKEN", "")

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 1


def test_main_exits_nonzero_when_kubernetes_denies_access(valid_env, tmp_path: Path) -> None:
    valid_env.setattr(cli, "NODE_DNS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    valid_env.setattr(cli, "WORKERS", 1)
    provider = MagicMock()
    provider.name = "Linode"
    provider.test_connection.return_value = True
    core_api = MagicMock()
    core_api.list_node.side_effect = ApiException(status=403, reason="Forbidden")

    with patch.object(cli, "create_dns_provider", return_value=provider), patch.object(
        cli, "create_core_api", return_value=core_api
    ), patch.object(cli.signal, "signal"):
        with pytest.raises(SystemExit) as exc_info:
            cli.main()

    assert exc_info.value.code == 1
    provider.list_records.assert_not_called()
