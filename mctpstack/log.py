"""Logging helpers shared by the stack and its bindings."""

from __future__ import annotations

import logging

ROOT_LOGGER_NAME = "mctpstack"

RX_TAG = "<RX<"
TX_TAG = ">TX>"

logging.getLogger(ROOT_LOGGER_NAME).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return the logger for one component of the stack, e.g. ``"core"``."""
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def format_payload(payload: bytes | bytearray | memoryview) -> str:
    """Render a payload as space-separated two-digit hex bytes."""
    return " ".join(f"{byte:02x}" for byte in bytes(payload))


def trace(logger: logging.Logger, tag: str, payload: bytes | bytearray | memoryview) -> None:
    """Log a packet dump at debug level, prefixed with ``tag``."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    data = bytes(payload)
    logger.debug("%s len %d: %s", tag, len(data), format_payload(data))


def trace_rx(logger: logging.Logger, payload: bytes | bytearray | memoryview) -> None:
    """Log a received packet."""
    trace(logger, RX_TAG, payload)


def trace_tx(logger: logging.Logger, payload: bytes | bytearray | memoryview) -> None:
    """Log a transmitted packet."""
    trace(logger, TX_TAG, payload)