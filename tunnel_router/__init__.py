"""Tunnel router: provisions, supervises and fronts a loopback proxy backend."""

__version__ = "0.3.0"
