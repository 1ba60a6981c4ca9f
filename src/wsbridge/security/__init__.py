"""Credential handling."""

from .credentials import Credential, resolve_credential

__all__ = ["Credential", "resolve_credential"]
