"""Conversation message reconciliation for the CRM inbox."""

__version__ = "1.0.0"
