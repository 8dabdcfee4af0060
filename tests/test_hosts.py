import pytest

from tls_cert_checker.errors import ConfigurationError, NameResolutionError
from tls_cert_checker.hosts import classify_pattern, expand, expand_hosts, system_resolver
from tls_cert_checker.models import PatternKind, Target


def fake_resolver(table):
    def resolve(name):
        if name not in table:
            raise NameResolutionError(f"failed to resolve {name}: no such host")
        return table[name]

    return resolve


@pytest.mark.parametrize(
    "pattern,kind",
    [
        ("192.168.5.10", PatternKind.SINGLE_IP),
        ("2001:db8::1", PatternKind.SINGLE_IP),
        ("192.168.5.0/30", PatternKind.CIDR),
        ("192.168.5.10-15", PatternKind.PARTIAL_RANGE),
        ("www.example.com", PatternKind.FQDN),
        ("intranet", PatternKind.HOSTNAME),
    ],
)
def test_classify_pattern(pattern, kind):
    assert classify_pattern(pattern).kind is kind


@pytest.mark.parametrize(
    "pattern",
    ["", "192.168.5-6.10", "192.168.5.20-10", "192.168.5.250-300", "10.0.0.0/40"],
)
def test_classify_rejects(pattern):
    with pytest.raises(ConfigurationError):
        classify_pattern(pattern)


def test_cidr_includes_network_and_broadcast():
    targets = expand(["192.168.5.0/30"], ports=(443,), resolver=fake_resolver({}))
    assert [t.ip for t in targets] == ["192.168.5.0", "192.168.5.1", "192.168.5.2", "192.168.5.3"]
    assert all(t.name == "" for t in targets)


def test_partial_range_is_inclusive():
    expansion = expand_hosts(["10.1.1.250-252"], resolver=fake_resolver({}))
    assert [ip for _, ip in expansion.hosts] == ["10.1.1.250", "10.1.1.251", "10.1.1.252"]


def test_names_resolve_to_every_address():
    resolver = fake_resolver({"www.example.com": ["192.0.2.10", "2001:db8::10"]})
    targets = expand(["www.example.com"], ports=(443, 8443), resolver=resolver)
    assert targets == [
        Target("www.example.com", "192.0.2.10", 443),
        Target("www.example.com", "192.0.2.10", 8443),
        Target("www.example.com", "2001:db8::10", 443),
        Target("www.example.com", "2001:db8::10", 8443),
    ]


def test_resolution_failure_is_recorded_not_fatal():
    resolver = fake_resolver({"ok.example": ["192.0.2.1"]})
    expansion = expand_hosts(["missing.example", "ok.example"], resolver=resolver)
    assert expansion.hosts == [("ok.example", "192.0.2.1")]
    assert "missing.example" in expansion.errors
    assert expansion.ip_count == 1


def test_duplicate_patterns_collapse_but_overlap_is_kept():
    expansion = expand_hosts(
        ["192.168.5.1", "192.168.5.1", "192.168.5.0/31"], resolver=fake_resolver({})
    )
    assert [ip for _, ip in expansion.hosts] == ["192.168.5.1", "192.168.5.0", "192.168.5.1"]
    assert len(expansion.patterns) == 2


def test_expansion_is_idempotent():
    resolver = fake_resolver({"www.example.com": ["192.0.2.10"]})
    first = expand(["192.168.5.0/30", "10.1.1.1-2", "www.example.com"], resolver=resolver)
    again = expand([t.ip for t in first], resolver=resolver)
    assert {(t.ip, t.port) for t in again} == {(t.ip, t.port) for t in first}


def test_overlong_label_is_a_resolution_error():
    bad = "a" * 64 + ".example.com"
    with pytest.raises(NameResolutionError):
        system_resolver(bad)

    expansion = expand_hosts([bad, "10.0.0.1"])
    assert bad in expansion.errors
    assert expansion.hosts == [("", "10.0.0.1")]
