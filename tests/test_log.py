import io
import logging

from tls_cert_checker.log import TRACE, LogfmtFormatter, setup_logging


def test_logfmt_output():
    stream = io.StringIO()
    logger = setup_logging("debug", stream)
    logging.getLogger("tls_cert_checker.fetch").debug(
        "connecting to service", extra={"fields": {"ip": "192.0.2.1", "port": 443, "note": "two words"}}
    )
    line = stream.getvalue().strip()
    assert logger.name == "tls_cert_checker"
    assert "level=debug" in line
    assert "logger=tls_cert_checker.fetch" in line
    assert 'msg="connecting to service"' in line
    assert line.endswith('ip=192.0.2.1 port=443 note="two words"')


def test_level_filtering():
    stream = io.StringIO()
    setup_logging("warn", stream)
    log = logging.getLogger("tls_cert_checker.scanner")
    log.info("hidden")
    log.warning("shown")
    assert "hidden" not in stream.getvalue()
    assert "level=warn" in stream.getvalue()


def test_trace_and_disabled():
    stream = io.StringIO()
    setup_logging("trace", stream)
    logging.getLogger("tls_cert_checker.probe").log(TRACE, "port not open")
    assert "level=trace" in stream.getvalue()

    quiet = io.StringIO()
    setup_logging("disabled", quiet)
    logging.getLogger("tls_cert_checker").critical("nothing")
    assert quiet.getvalue() == ""


def test_formatter_escapes_quotes():
    record = logging.LogRecord("x", logging.ERROR, __file__, 1, 'bad "value"', None, None)
    assert 'msg="bad \\"value\\""' in LogfmtFormatter().format(record)
