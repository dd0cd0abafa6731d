"""
Coherence Sync: Local Identity

LocalStateStore is the device-local key/value blob store (the browser's
localStorage in the original client). Values are JSON strings under fixed
keys; the file variant persists them to ~/.coherence_sync/local_state.json.

IdentitySession owns the `observer_session` key: {visitorId, visitorToken},
created lazily on first access and never deleted here. Only the
IdentityAnchor calls adopt().
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from . import config as cfg
from .models import VisitorIdentity

log = logging.getLogger("coherence.identity")


class LocalStateStore:
    """In-memory string blobs by key. Base for the file-backed variant."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._persist()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    def _persist(self) -> None:
        pass


class FileStateStore(LocalStateStore):
    """Blobs kept in one JSON file, rewritten atomically on every change."""

    def __init__(self, path: Optional[Path] = None):
        super().__init__()
        self.path = Path(path) if path else cfg.LOCAL_STATE_FILE
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.error(f"Local state at {self.path} unreadable, starting empty: {exc}")
            return
        if isinstance(data, dict):
            self._data = {k: v for k, v in data.items() if isinstance(v, str)}

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class IdentitySession:
    """Durable pseudonymous visitor identity, independent of auth state."""

    def __init__(self, local: LocalStateStore, key: str = cfg.IDENTITY_KEY):
        self._local = local
        self._key = key

    def get(self) -> VisitorIdentity:
        """Return the stored identity, creating it on first access."""
        stored = self._local.get(self._key)
        if stored:
            try:
                return VisitorIdentity.from_dict(json.loads(stored))
            except (ValueError, TypeError, AttributeError) as exc:
                log.error(f"Failed to parse observer session, regenerating: {exc}")

        identity = VisitorIdentity.generate()
        self._write(identity)
        log.info(f"Initialized new visitor identity {identity.visitor_id}")
        return identity

    @property
    def visitor_id(self) -> str:
        return self.get().visitor_id

    def adopt(self, visitor_id: str) -> VisitorIdentity:
        """Replace the visitor id, keeping the token."""
        current = self.get()
        if current.visitor_id == visitor_id:
            return current
        updated = VisitorIdentity(visitor_id=visitor_id, visitor_token=current.visitor_token)
        self._write(updated)
        log.info(f"Visitor identity re-anchored: {current.visitor_id} -> {visitor_id}")
        return updated

    def _write(self, identity: VisitorIdentity) -> None:
        self._local.set(self._key, json.dumps(identity.to_dict()))
