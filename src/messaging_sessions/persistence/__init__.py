"""
Session Persistence

Per-tenant credential storage.
"""

from messaging_sessions.persistence.credentials import (
    CredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)

__all__ = [
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
]
