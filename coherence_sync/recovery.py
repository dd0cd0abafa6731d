"""
Coherence Sync: Recovery Channel

Access codes let an observer re-anchor a new device to existing progress:

    assign(uid, visitorId) -> "K7P-3QX"      stored in access_codes/{code}
    recover("k7p-3qx ")    -> RecoveryGrant(token, visitorId, expires_at)

AccessCodeService is the server side (store + token minter). A session
talks to it through a RecoveryChannel: in-process (LocalRecoveryChannel) or
over HTTP against the API server (HttpRecoveryChannel, httpx).
Over HTTP, assignment is authenticated with the caller's bearer token and
only for a visitor id anchored to that caller. Redemption needs no token:
it is how a device without one gets back in.
"""

import logging
import random
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from . import config as cfg
from .auth import TokenMinter
from .errors import RecoveryCodeInvalid, RecoveryError, TransientStoreError
from .models import SERVER_TIMESTAMP, parse_timestamp

log = logging.getLogger("coherence.recovery")


def generate_code(rng: Optional[random.Random] = None) -> str:
    """XXX-XXX over the unambiguous alphabet."""
    choice = rng.choice if rng is not None else secrets.choice
    groups = [
        "".join(choice(cfg.CODE_ALPHABET) for _ in range(cfg.CODE_GROUP_LENGTH))
        for _ in range(2)
    ]
    return "-".join(groups)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


@dataclass
class RecoveryGrant:
    token: str
    visitor_id: Optional[str]
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "visitorId": self.visitor_id,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryGrant":
        return cls(
            token=data["token"],
            visitor_id=data.get("visitorId"),
            expires_at=parse_timestamp(data.get("expiresAt")),
        )


class AccessCodeService:
    """Issues and redeems access codes against the progress store."""

    def __init__(
        self,
        store,
        minter: TokenMinter,
        rng: Optional[random.Random] = None,
        attempts: int = cfg.CODE_ATTEMPTS,
    ):
        self._store = store
        self._minter = minter
        self._rng = rng
        self._attempts = attempts
        self.stats = {"assigned": 0, "reused": 0, "recovered": 0, "rejected": 0}

    async def owns_visitor(self, uid: str, visitor_id: str) -> bool:
        """True when `visitor_id` is anchored to `uid` (or is the uid itself)."""
        if visitor_id == uid:
            return True
        mapping = await self._store.get(cfg.MAPPING_COLLECTION, uid)
        return bool(mapping) and mapping.get("visitorId") == visitor_id

    async def assign(self, uid: str, visitor_id: str) -> str:
        """Return the visitor's code, creating one if it has none.

        An existing code is reused only when it still resolves to `uid`.
        """
        try:
            observer = await self._store.get(cfg.OBSERVER_COLLECTION, visitor_id)
            existing = (observer or {}).get("accessCode")
            entry = await self._store.get(cfg.ACCESS_CODE_COLLECTION, existing) if existing else None
            if entry and entry.get("uid") == uid:
                self.stats["reused"] += 1
                return existing

            for _ in range(self._attempts):
                code = generate_code(self._rng)
                if await self._store.get(cfg.ACCESS_CODE_COLLECTION, code) is None:
                    break
            else:
                raise RecoveryError(
                    f"No free access code after {self._attempts} attempts"
                )

            await self._store.set(
                cfg.ACCESS_CODE_COLLECTION,
                code,
                {"uid": uid, "visitorId": visitor_id, "createdAt": SERVER_TIMESTAMP},
            )
            await self._store.update(
                cfg.OBSERVER_COLLECTION, visitor_id, {"accessCode": code}
            )
        except TransientStoreError as exc:
            raise RecoveryError(f"Access code assignment failed: {exc}") from exc

        self.stats["assigned"] += 1
        log.info(f"Access code issued for visitor {visitor_id}")
        return code

    async def recover(self, code: str) -> RecoveryGrant:
        normalized = normalize_code(code)
        try:
            entry = await self._store.get(cfg.ACCESS_CODE_COLLECTION, normalized) if normalized else None
        except TransientStoreError as exc:
            raise RecoveryError(f"Access code lookup failed: {exc}") from exc

        if not entry or not entry.get("uid"):
            self.stats["rejected"] += 1
            log.warning(f"Recovery attempt with unknown code {normalized!r}")
            raise RecoveryCodeInvalid(normalized)

        token, expires_at = self._minter.mint(entry["uid"])
        self.stats["recovered"] += 1
        log.info(f"Recovery grant issued for visitor {entry.get('visitorId')}")
        return RecoveryGrant(token=token, visitor_id=entry.get("visitorId"), expires_at=expires_at)


# ── Channels ──────────────────────────────────────────────


class RecoveryChannel(ABC):
    """How a session reaches the access code service."""

    @abstractmethod
    async def assign(self, uid: str, visitor_id: str, token: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def recover(self, code: str) -> RecoveryGrant:
        ...

    async def close(self) -> None:
        pass


class LocalRecoveryChannel(RecoveryChannel):

    def __init__(self, service: AccessCodeService):
        self.service = service

    async def assign(self, uid: str, visitor_id: str, token: Optional[str] = None) -> str:
        return await self.service.assign(uid, visitor_id)

    async def recover(self, code: str) -> RecoveryGrant:
        return await self.service.recover(code)


class HttpRecoveryChannel(RecoveryChannel):
    """Talks to the API server's /api/v1/recovery routes."""

    def __init__(
        self,
        base_url: str = cfg.RECOVERY_URL,
        timeout: float = cfg.RECOVERY_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _post(self, path: str, body: dict, token: Optional[str] = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            return await self._client.post(path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise RecoveryError(f"Recovery service unreachable: {exc}") from exc

    async def assign(self, uid: str, visitor_id: str, token: Optional[str] = None) -> str:
        if not token:
            raise RecoveryError("Access code assignment needs a bearer token")
        resp = await self._post(
            "/api/v1/recovery/assign", {"uid": uid, "visitorId": visitor_id}, token
        )
        if resp.status_code in (401, 403):
            raise RecoveryError(f"Access code assignment refused: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise RecoveryError(f"Access code assignment failed: HTTP {resp.status_code}")
        return resp.json()["code"]

    async def recover(self, code: str) -> RecoveryGrant:
        resp = await self._post("/api/v1/recovery/recover", {"code": code})
        if resp.status_code == 404:
            raise RecoveryCodeInvalid(normalize_code(code))
        if resp.status_code != 200:
            raise RecoveryError(f"Recovery failed: HTTP {resp.status_code}: {resp.text[:200]}")
        return RecoveryGrant.from_dict(resp.json())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
