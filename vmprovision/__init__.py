"""Provision bootable Alpine Linux VM disk images."""

__version__ = "0.1.0"
