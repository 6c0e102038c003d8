import logging

from mctpstack.log import (
    RX_TAG,
    TX_TAG,
    format_payload,
    get_logger,
    trace_rx,
    trace_tx,
)


def test_get_logger_is_child_of_package_logger():
    logger = get_logger("core")
    assert logger.name == "mctpstack.core"
    assert logger.parent is logging.getLogger("mctpstack")


def test_get_logger_returns_registered_logger():
    logger = get_logger("astlpc")
    assert logger.name == "mctpstack.astlpc"
    assert logger is logging.getLogger("mctpstack.astlpc")


def test_format_payload_hex_bytes():
    assert format_payload(bytes([0x01, 0xFF, 0x0A])) == "01 ff 0a"


def test_format_payload_empty():
    assert format_payload(b"") == ""


def test_format_payload_accepts_bytearray_and_memoryview():
    data = bytearray(range(5))
    assert format_payload(data) == "00 01 02 03 04"
    assert format_payload(memoryview(data)) == "00 01 02 03 04"
    assert format_payload(bytes(data)) == "00 01 02 03 04"


def test_trace_rx_logs_tag_and_dump(caplog):
    logger = get_logger("test_rx")
    caplog.set_level(logging.DEBUG, logger=logger.name)
    payload = bytes([0x01, 0x08, 0x09, 0xC8])
    trace_rx(logger, payload)
    assert len(caplog.records) == 1
    message = caplog.records[0].getMessage()
    assert RX_TAG in message
    assert "01 08 09 c8" in message
    assert caplog.records[0].levelno == logging.DEBUG


def test_trace_tx_logs_tag(caplog):
    logger = get_logger("test_tx")
    caplog.set_level(logging.DEBUG, logger=logger.name)
    trace_tx(logger, b"\x00\x8a\x0b")
    assert len(caplog.records) == 1
    assert TX_TAG in caplog.records[0].getMessage()
    assert RX_TAG not in caplog.records[0].getMessage()


def test_trace_silent_above_debug(caplog):
    logger = get_logger("test_quiet")
    caplog.set_level(logging.INFO, logger=logger.name)
    logger.setLevel(logging.INFO)
    trace_tx(logger, b"\x01\x02")
    trace_rx(logger, b"\x01\x02")
    assert caplog.records == []