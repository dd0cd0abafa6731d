"""
Remote progress store interface.

Documents live in named collections and are addressed by id:

    users/{uid}                   admin progress
    observers/{visitorId}         observer progress
    principal_mappings/{uid}      uid -> visitorId
    access_codes/{code}           code -> uid, visitorId

Writes are last-writer-wins. Any field holding SERVER_TIMESTAMP is replaced
by the store's clock when the write lands, so "now" fields never carry
client clock skew.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from coherence_sync import config as cfg
from coherence_sync.models import SERVER_TIMESTAMP, Principal, parse_timestamp, utc_now

Document = Dict[str, Any]

_TS_TAG = "__ts__"


def resolve_server_timestamps(doc: Document, now: datetime) -> Document:
    """Copy of `doc` with every SERVER_TIMESTAMP replaced by `now`."""
    resolved = {}
    for key, value in doc.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, dict):
            resolved[key] = resolve_server_timestamps(value, now)
        else:
            resolved[key] = value
    return resolved


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TS_TAG: value.isoformat()}
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and _TS_TAG in obj:
        return parse_timestamp(obj[_TS_TAG])
    return obj


def encode_document(doc: Document) -> str:
    """JSON body for SQL backends; datetimes survive the round trip."""
    return json.dumps(doc, default=_encode_default)


def decode_document(body: str) -> Document:
    return json.loads(body, object_hook=_decode_hook)


def record_location(principal: Principal, visitor_id: str) -> Tuple[str, str]:
    """Admins are keyed by uid, observers by their visitor id."""
    if principal.is_admin:
        return cfg.ADMIN_COLLECTION, principal.uid
    return cfg.OBSERVER_COLLECTION, visitor_id


class RemoteProgressStore(ABC):
    """Abstract document store. Backends raise TransientStoreError on failure."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now

    def server_now(self) -> datetime:
        return self._clock()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        """Replace the whole document (upsert)."""
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        """Merge top-level fields into the document, creating it if absent."""
        ...

    # Admin tooling only. The engine never deletes or enumerates.

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    @abstractmethod
    async def scan(self, collection: str) -> List[Tuple[str, Document]]:
        ...
