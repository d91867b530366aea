"""Unit tests for the record model and comparison helpers."""

import ipaddress

from node_dns.records import (
    DesiredRecord,
    DuplicatePolicy,
    RemoteRecord,
    desired_records,
    fqdn,
    matches,
    normalize_name,
    pick_authoritative,
    reverse_pointer,
    same_key,
    same_target,
)

DOMAIN = "k8s.example.com"


class TestNormalization:
    def test_normalize_name(self) -> None:
        assert normalize_name(" Node1.K8S.Example.COM. ") == "node1.k8s.example.com"

    def test_fqdn(self) -> None:
        assert fqdn("node1", "k8s.example.com.") == "node1.k8s.example.com"

    def test_reverse_pointer_ipv4(self) -> None:
        assert reverse_pointer(ipaddress.ip_address("192.0.2.10")) == "10.2.0.192.in-addr.arpa"

    def test_reverse_pointer_ipv6(self) -> None:
        pointer = reverse_pointer(ipaddress.ip_address("2001:db8::1"))
        assert pointer.startswith("1.0.0.0.")
        assert pointer.endswith(".8.b.d.0.1.0.0.2.ip6.arpa")


class TestDesiredRecords:
    """Tests for deriving forward and reverse records from a node."""

    def test_ipv4_node(self) -> None:
        desired = desired_records("node1", "192.0.2.10", DOMAIN)

        assert desired.forward == DesiredRecord("node1.k8s.example.com", "A", "192.0.2.10")
        assert desired.reverse == DesiredRecord(
            "10.2.0.192.in-addr.arpa.k8s.example.com", "PTR", "node1.k8s.example.com"
        )

    def test_ipv6_node(self) -> None:
        desired = desired_records("node1", "2001:db8::1", DOMAIN)

        assert desired.forward.type == "AAAA"
        assert desired.forward.target == "2001:db8::1"
        assert desired.reverse.name.endswith(".ip6.arpa.k8s.example.com")

    def test_ipv6_target_is_compressed(self) -> None:
        desired = desired_records("node1", "2001:0db8:0000:0000:0000:0000:0000:0001", DOMAIN)

        assert desired.forward.target == "2001:db8::1"

    def test_set_iterates_forward_then_reverse(self) -> None:
        desired = desired_records("node1", "192.0.2.10", DOMAIN)

        assert [r.type for r in desired] == ["A", "PTR"]
        assert desired.names == [
            "node1.k8s.example.com",
            "10.2.0.192.in-addr.arpa.k8s.example.com",
        ]


class TestComparison:
    """Tests for matching remote records against desired ones."""

    def test_matches_ignores_id_ttl_case_and_trailing_dot(self) -> None:
        desired = DesiredRecord("node1.k8s.example.com", "PTR", "target.k8s.example.com")
        remote = RemoteRecord(
            id="9", name="NODE1.k8s.example.com.", type="ptr", target="target.k8s.example.com.", ttl=3600
        )

        assert matches(remote, desired)

    def test_matches_detects_target_change(self) -> None:
        desired = DesiredRecord("node1.k8s.example.com", "A", "192.0.2.10")
        remote = RemoteRecord(id="9", name="node1.k8s.example.com", type="A", target="192.0.2.11")

        assert same_key(remote, desired)
        assert not matches(remote, desired)

    def test_matches_ipv6_target_by_value(self) -> None:
        desired = desired_records("node1", "2001:db8::1", DOMAIN).forward

        for spelling in ("2001:DB8::1", "2001:0db8:0:0:0:0:0:1", "2001:0DB8::0001"):
            remote = RemoteRecord(id="9", name="node1.k8s.example.com", type="AAAA", target=spelling)
            assert matches(remote, desired), spelling

    def test_matches_ptr_target_case_insensitively(self) -> None:
        desired = desired_records("node1", "192.0.2.10", DOMAIN).reverse
        remote = RemoteRecord(
            id="9", name=desired.name, type="PTR", target="Node1.K8S.example.com."
        )

        assert matches(remote, desired)

    def test_same_target_falls_back_to_names_for_unparseable_addresses(self) -> None:
        assert same_target("A", "Not-An-IP", "not-an-ip")
        assert not same_target("A", "192.0.2.1", "192.0.2.2")

    def test_same_key_distinguishes_types(self) -> None:
        desired = DesiredRecord("node1.k8s.example.com", "A", "192.0.2.10")
        remote = RemoteRecord(id="9", name="node1.k8s.example.com", type="AAAA", target="2001:db8::1")

        assert not same_key(remote, desired)


class TestPickAuthoritative:
    def _records(self):
        return [
            RemoteRecord(id="30", name="n.k8s.example.com", type="A", target="192.0.2.1"),
            RemoteRecord(id="4", name="n.k8s.example.com", type="A", target="192.0.2.2"),
            RemoteRecord(id="100", name="n.k8s.example.com", type="A", target="192.0.2.3"),
        ]

    def test_empty(self) -> None:
        assert pick_authoritative([]) is None

    def test_first_policy_uses_provider_order(self) -> None:
        assert pick_authoritative(self._records(), DuplicatePolicy.FIRST).id == "30"

    def test_lowest_id_policy_compares_numerically(self) -> None:
        assert pick_authoritative(self._records(), DuplicatePolicy.LOWEST_ID).id == "4"
