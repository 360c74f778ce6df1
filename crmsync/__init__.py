"""Offline-first CRM record synchronization."""

__version__ = "0.1.0"
