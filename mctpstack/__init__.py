"""MCTP endpoint stack with control commands and ASPEED LPC, PCIe and I3C bindings."""

__version__ = "0.1.0"

__all__ = ["log", "packet", "core", "control", "asti3c", "astlpc", "astpcie"]