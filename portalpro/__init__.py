"""Tenant-scoped client portal service."""

__version__ = "0.1.0"
