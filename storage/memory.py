"""In-process document store. Used by tests and `COHERENCE_STORE=memory`."""

import copy
import logging
from typing import Dict, List, Optional, Tuple

from .base import Document, RemoteProgressStore, resolve_server_timestamps

log = logging.getLogger("storage.memory")


class MemoryProgressStore(RemoteProgressStore):

    def __init__(self, clock=None):
        super().__init__(clock)
        self._collections: Dict[str, Dict[str, Document]] = {}
        self.writes = 0

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, doc: Document) -> None:
        resolved = resolve_server_timestamps(doc, self.server_now())
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(resolved)
        self.writes += 1

    async def update(self, collection: str, doc_id: str, partial: Document) -> None:
        resolved = resolve_server_timestamps(partial, self.server_now())
        existing = self._collections.setdefault(collection, {}).setdefault(doc_id, {})
        existing.update(copy.deepcopy(resolved))
        self.writes += 1

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._collections.get(collection, {}).pop(doc_id, None) is not None

    async def scan(self, collection: str) -> List[Tuple[str, Document]]:
        docs = self._collections.get(collection, {})
        return [(doc_id, copy.deepcopy(doc)) for doc_id, doc in sorted(docs.items())]
