import datetime as dt

from cryptography.hazmat.primitives import hashes

from conftest import NOW, build_cert, make_pki, wrap
from tls_cert_checker.models import (
    CheckKind,
    DiscoveredChain,
    RetrievalContext,
    ServiceState,
    Target,
    Thresholds,
    ValidationCheckResult,
)
from tls_cert_checker.report import (
    ERRORS_HEADER,
    REPORT_HEADER,
    CheckOutput,
    PerfData,
    chain_report,
    checks_tally,
    perfdata,
    plugin_output,
    render,
    scan_detailed_table,
    scan_overview_table,
    summarize_chain,
    summary_line,
)
from tls_cert_checker.validation import ValidationPolicy, evaluate

CONTEXT = RetrievalContext(server="www.example.com", ip="192.0.2.10", port=443, host_value="www.example.com")


def _verdict(pki, **policy_args):
    policy = ValidationPolicy(**policy_args)
    return evaluate(pki.chain(), policy, CONTEXT, NOW), policy


def test_checks_tally():
    results = [
        ValidationCheckResult(CheckKind.EXPIRATION, ServiceState.OK, "a"),
        ValidationCheckResult(CheckKind.HOSTNAME, ServiceState.CRITICAL, "b"),
        ValidationCheckResult(CheckKind.SANS_LIST, ServiceState.OK, "c", ignored=True),
        ValidationCheckResult(CheckKind.WEAK_SIGNATURE, ServiceState.OK, "d"),
    ]
    assert checks_tally(results) == (
        "[checks: 1 IGNORED (SANs List), 1 FAILED (Hostname), "
        "2 SUCCESSFUL (Expiration, Weak Signature)]"
    )


def test_ok_summary_line(pki):
    verdict, _ = _verdict(pki, dns_name="www.example.com")
    assert verdict.overall_status is ServiceState.OK
    assert summary_line(verdict) == (
        'OK: Expiration validation successful: leaf cert "www.example.com" expires next with '
        "65d 23h remaining (until 2025-08-06 11:30:00 +0000 UTC) "
        "[checks: 1 IGNORED (SANs List), 0 FAILED, 3 SUCCESSFUL (Expiration, Hostname, Weak Signature)]"
    )


def test_warning_and_critical_summary(pki):
    warning, policy = _verdict(pki, dns_name="www.example.com", thresholds=Thresholds(30, 70))
    assert summary_line(warning).startswith("WARNING: Expiration validation failed: leaf cert")

    assert "\tStatus: [WARNING] 65d 23h remaining" in render(warning, policy).body

    critical, _ = _verdict(pki, dns_name="www.example.com", thresholds=Thresholds(70, 90))
    assert summary_line(critical).startswith("CRITICAL: Expiration validation failed: leaf cert")


def test_render_sections(pki):
    verdict, policy = _verdict(pki, server="mail.example.net")
    output = render(verdict, policy)
    body = output.body
    assert output.summary.startswith("CRITICAL: Hostname validation using value")
    assert body.index(ERRORS_HEADER) < body.index(REPORT_HEADER)
    assert "* hostname verification failed: certificate is valid for example.com, www.example.com" in body
    assert "3 certs retrieved for service running on www.example.com (192.0.2.10) at port 443" in body
    assert "[CRITICAL] Hostname validation" in body
    assert "Certificate 1 of 3 (leaf):" in body
    assert "Certificate 3 of 3 (root):" in body
    assert "\tSANs entries (2): [example.com, www.example.com]" in body
    assert "\tStatus: [OK] 65d 23h remaining" in body
    assert "SANs List" not in body.split(REPORT_HEADER)[1].split("Certificate 1")[0]
    assert "KeyID" not in body


def test_render_lists_ignored_when_asked(pki):
    verdict, policy = _verdict(pki, server="mail.example.net", ignore=frozenset({CheckKind.HOSTNAME}))
    quiet = render(verdict, policy)
    assert ERRORS_HEADER not in quiet.body
    loud = render(verdict, policy, list_ignored_errors=True)
    assert ERRORS_HEADER in loud.body
    assert "[--] Hostname validation" in loud.body
    assert "[--] SANs List validation ignored" in loud.body


def test_render_verbose(pki):
    verdict, policy = _verdict(pki, dns_name="www.example.com")
    body = render(verdict, policy, verbose=True).body
    assert "\tKeyID: " in body
    assert "\tIssuerKeyID: None" in body
    assert "\tFingerprint (SHA-256): " in body


def test_render_is_deterministic(pki):
    verdict, policy = _verdict(pki, dns_name="www.example.com")
    assert str(render(verdict, policy)) == str(render(verdict, policy))


def test_weak_root_marked_ignored(rsa_key):
    root, root_key = build_cert(cn="Legacy Root", ca=True, key=rsa_key, hash_alg=hashes.SHA1())
    leaf, _ = build_cert(cn="svc.example", sans=("svc.example",), issuer=root, issuer_key=root_key)
    text = chain_report(wrap(leaf, root), ValidationPolicy(), NOW)
    assert "Signature Algorithm: [WEAK, IGNORED] SHA1-RSA" in text
    assert "Signature Algorithm: [OK] SHA256-RSA" in text


def test_perfdata(pki):
    perf = perfdata(pki.chain(), Thresholds(15, 30), NOW)
    text = [str(p) for p in perf]
    assert text[0] == "'expires_leaf'=65d;30;15;;"
    assert text[1].startswith("'life_remaining_leaf'=")
    assert text[2] == "'expires_intermediate'=1000d;30;15;;"
    assert "'certs_present_root'=1;;;;" in text
    assert "'certs_present_unknown'=0;;;;" in text


def test_plugin_output():
    output = CheckOutput("OK: fine", "body")
    assert plugin_output(output, [PerfData("a", 1)]) == "OK: fine\nbody | 'a'=1;;;;"
    assert plugin_output(CheckOutput("OK: fine", "")) == "OK: fine"


def _summaries():
    healthy = make_pki(NOW)
    expiring = make_pki(NOW, leaf_remaining=dt.timedelta(days=3))
    records = [
        DiscoveredChain(Target("www.example.com", "192.0.2.10", 443), healthy.chain()),
        DiscoveredChain(Target("", "192.0.2.11", 443), expiring.chain()),
    ]
    return [summarize_chain(r, Thresholds(), NOW) for r in records]


def test_summarize_chain():
    healthy, expiring = _summaries()
    assert healthy.status is ServiceState.OK
    assert not healthy.has_issues
    assert expiring.status is ServiceState.CRITICAL
    assert expiring.overview == "[EXPIRED: 0, EXPIRING: 1, OK: 2]"


def test_unnamed_target_skips_hostname_check():
    pki = make_pki(NOW)
    record = DiscoveredChain(Target("", "192.0.2.12", 443), pki.chain())
    assert summarize_chain(record, Thresholds(), NOW).status is ServiceState.OK


def test_overview_table():
    summaries = _summaries()
    issues_only = scan_overview_table(summaries).splitlines()
    assert issues_only[0].startswith("Host (Name/FQDN)")
    assert issues_only[1].startswith("----")
    assert len(issues_only) == 3
    assert issues_only[2].startswith("N/A")
    assert "192.0.2.11" in issues_only[2]
    assert len(scan_overview_table(summaries, show_valid=True).splitlines()) == 4


def test_detailed_table():
    summaries = _summaries()
    rows = scan_detailed_table(summaries, NOW).splitlines()[2:]
    assert len(rows) == 1
    assert "CRITICAL (leaf)" in rows[0]
    everything = scan_detailed_table(summaries, NOW, show_valid_certs=True, show_hosts_with_valid_certs=True)
    assert len(everything.splitlines()[2:]) == 6


def test_table_columns_are_aligned():
    lines = scan_overview_table(_summaries(), show_valid=True).splitlines()
    offset = lines[0].index("IP Addr")
    assert lines[1][offset - 2:offset] == "  "
    assert all(line[offset:].startswith("192.0.2.1") for line in lines[2:])
