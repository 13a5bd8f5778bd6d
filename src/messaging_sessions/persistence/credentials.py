"""
Credential Store

Keeps each tenant's pairing credentials so a reconnect does not need a new
scan. The file store writes one directory per tenant and can encrypt the
credentials at rest with Fernet.
"""

import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from messaging_sessions.session.registry import validate_tenant_id

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "creds.json"


class CredentialStore(ABC):
    """Load, persist and wipe per-tenant credentials."""

    @abstractmethod
    def load(self, tenant_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    def persist(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def wipe(self, tenant_id: str) -> None:
        """Remove every artifact for the tenant. Must not fail if none exist."""
        ...


class MemoryCredentialStore(CredentialStore):
    """In-process store, for development and tests."""

    def __init__(self) -> None:
        self.credentials: dict[str, dict[str, Any]] = {}
        self.wipes: list[str] = []

    def load(self, tenant_id: str) -> dict[str, Any] | None:
        creds = self.credentials.get(tenant_id)
        return dict(creds) if creds is not None else None

    def persist(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        self.credentials[tenant_id] = {**self.credentials.get(tenant_id, {}), **credentials}

    def wipe(self, tenant_id: str) -> None:
        self.wipes.append(tenant_id)
        self.credentials.pop(tenant_id, None)


class FileCredentialStore(CredentialStore):
    """
    Credentials under ``<sessions_dir>/<tenant_id>/creds.json``.

    If an encryption key is configured the file holds a Fernet token instead
    of plain JSON.
    """

    def __init__(self, sessions_dir: str | Path, encryption_key: str | None = None):
        self.sessions_dir = Path(sessions_dir)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None
        if self._fernet is None:
            logger.warning("CREDENTIALS_ENCRYPTION_KEY not set, storing credentials unencrypted")

    def session_path(self, tenant_id: str) -> Path:
        return self.sessions_dir / validate_tenant_id(tenant_id)

    def load(self, tenant_id: str) -> dict[str, Any] | None:
        path = self.session_path(tenant_id) / CREDENTIALS_FILE
        if not path.exists():
            return None

        raw = path.read_bytes()
        try:
            if self._fernet is not None:
                raw = self._fernet.decrypt(raw)
            return json.loads(raw)
        except (InvalidToken, ValueError) as e:
            # Unreadable credentials are as good as none; the tenant re-scans
            logger.error(
                f"Discarding unreadable credentials: {e!r}",
                extra={"tenant_id": tenant_id, "path": str(path)},
            )
            return None

    def persist(self, tenant_id: str, credentials: dict[str, Any]) -> None:
        directory = self.session_path(tenant_id)
        directory.mkdir(parents=True, exist_ok=True)

        merged = {**(self.load(tenant_id) or {}), **credentials}
        data = json.dumps(merged, default=str).encode()
        if self._fernet is not None:
            data = self._fernet.encrypt(data)

        tmp = directory / f"{CREDENTIALS_FILE}.tmp"
        tmp.write_bytes(data)
        tmp.chmod(0o600)
        tmp.replace(directory / CREDENTIALS_FILE)

    def wipe(self, tenant_id: str) -> None:
        directory = self.session_path(tenant_id)
        if directory.exists():
            shutil.rmtree(directory)
            logger.info(f"Wiped session artifacts", extra={"tenant_id": tenant_id})
