"""
Coherence Sync: Auth Gateway

The engine treats authentication as an opaque gateway that hands out
Principals. AuthGateway is that contract; LocalAuthGateway is an in-process
implementation (anonymous accounts, password / federated credentials,
linking with collision detection, recovery tokens) used by the CLI runner
and the tests.

Credential payloads:
    password:    {"email": ..., "password": ...}
    federated:   {"subject": ..., "email": ...}   e.g. kind="google.com"
"""

import base64
import hashlib
import hmac
import inspect
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from . import config as cfg
from .errors import AuthenticationError, IdentityCollisionError
from .models import Principal, Role, utc_now

log = logging.getLogger("coherence.auth")

PrincipalListener = Callable[[Optional[Principal]], Any]


class AuthGateway(ABC):
    """Issues and upgrades Principals. Owns the auth session lifecycle."""

    def __init__(self):
        self._listeners: List[PrincipalListener] = []
        self._current: Optional[Principal] = None

    @property
    def current(self) -> Optional[Principal]:
        return self._current

    def add_listener(self, callback: PrincipalListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: PrincipalListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def _set_current(self, principal: Optional[Principal]) -> None:
        self._current = principal
        for callback in list(self._listeners):
            try:
                result = callback(principal)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.warning(f"Principal listener failed: {exc}")

    @abstractmethod
    async def sign_in_anonymous(self) -> Principal:
        ...

    @abstractmethod
    async def sign_in_with_credential(self, kind: str, payload: Dict[str, Any]) -> Principal:
        """Sign in to the principal owning the credential.

        Raises IdentityCollisionError when the identity behind the payload is
        already bound to a different credential kind.
        """
        ...

    @abstractmethod
    async def link_credential(
        self, principal: Principal, kind: str, payload: Dict[str, Any]
    ) -> Principal:
        """Attach a credential to `principal` in place (same uid).

        Raises IdentityCollisionError when the credential already belongs to
        another principal.
        """
        ...

    @abstractmethod
    async def sign_in_with_token(self, token: str) -> Principal:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    async def id_token(self) -> Optional[str]:
        """Bearer token proving the current principal to the API server."""
        return None


# ── Recovery tokens ───────────────────────────────────────


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class TokenMinter:
    """Short-lived HMAC-SHA256 signed tokens: <b64(uid|exp)>.<hexsig>."""

    def __init__(
        self,
        secret: Optional[str] = None,
        ttl: timedelta = cfg.TOKEN_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._secret = (secret or cfg.TOKEN_SECRET or secrets.token_hex(32)).encode()
        self._ttl = ttl
        self._clock = clock or utc_now

    def _sign(self, body: str) -> str:
        return hmac.new(self._secret, body.encode(), hashlib.sha256).hexdigest()

    def mint(self, uid: str) -> Tuple[str, datetime]:
        expires_at = self._clock() + self._ttl
        body = _b64(f"{uid}|{int(expires_at.timestamp())}".encode())
        return f"{body}.{self._sign(body)}", expires_at

    def verify(self, token: str) -> str:
        """Return the token's uid, or raise AuthenticationError."""
        body, _, signature = token.partition(".")
        if not body or not signature:
            raise AuthenticationError("Malformed token")
        if not hmac.compare_digest(signature, self._sign(body)):
            raise AuthenticationError("Token signature mismatch")
        try:
            uid, _, exp = _unb64(body).decode().rpartition("|")
            expires = int(exp)
        except (ValueError, UnicodeDecodeError) as exc:
            raise AuthenticationError(f"Malformed token: {exc}") from exc
        if not uid or self._clock().timestamp() > expires:
            raise AuthenticationError("Token expired")
        return uid


# ── In-process gateway ────────────────────────────────────


def credential_key(kind: str, payload: Dict[str, Any]) -> str:
    if kind == "password":
        email = payload.get("email")
        if not email:
            raise ValueError("password credential requires an email")
        return str(email).strip().lower()
    subject = payload.get("subject") or payload.get("email")
    if not subject:
        raise ValueError(f"{kind} credential requires a subject")
    return str(subject)


def _hash_password(password: str, salt: bytes) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode(), salt, 100_000).hex()


@dataclass
class _Account:
    uid: str
    kinds: Set[str] = field(default_factory=set)
    email: Optional[str] = None
    role: Role = Role.OBSERVER
    password_hash: Optional[str] = None
    salt: bytes = field(default_factory=lambda: secrets.token_bytes(16))


class LocalAuthGateway(AuthGateway):
    """Account registry kept in memory for one process."""

    def __init__(
        self,
        minter: Optional[TokenMinter] = None,
        admin_emails=None,
        allow_signup: bool = True,
    ):
        super().__init__()
        self.minter = minter or TokenMinter()
        self._admin_emails = {e.lower() for e in (admin_emails or cfg.ADMIN_EMAILS)}
        self._allow_signup = allow_signup
        self._accounts: Dict[str, _Account] = {}
        self._credentials: Dict[Tuple[str, str], str] = {}

    def _principal(self, account: _Account) -> Principal:
        role = account.role
        if account.email and account.email.lower() in self._admin_emails:
            role = Role.ADMIN
        return Principal(
            uid=account.uid,
            role=role,
            linked_credential_kinds=frozenset(account.kinds),
            is_anonymous=not account.kinds,
            email=account.email,
        )

    def _new_account(self) -> _Account:
        account = _Account(uid=uuid.uuid4().hex[:28])
        self._accounts[account.uid] = account
        return account

    def _bind(self, account: _Account, kind: str, payload: Dict[str, Any]) -> None:
        key = credential_key(kind, payload)
        account.kinds.add(kind)
        account.email = payload.get("email") or account.email
        if kind == "password":
            account.password_hash = _hash_password(str(payload.get("password", "")), account.salt)
        self._credentials[(kind, key)] = account.uid

    def _owner_by_email(self, email: Optional[str]) -> Optional[_Account]:
        if not email:
            return None
        email = email.lower()
        for account in self._accounts.values():
            if account.email and account.email.lower() == email and account.kinds:
                return account
        return None

    def set_role(self, uid: str, role: Role) -> Principal:
        """Promote/demote an account (admin tooling)."""
        account = self._accounts[uid]
        account.role = role
        return self._principal(account)

    async def sign_in_anonymous(self) -> Principal:
        account = self._new_account()
        principal = self._principal(account)
        log.info(f"Anonymous principal issued: {principal.uid}")
        await self._set_current(principal)
        return principal

    async def sign_in_with_credential(self, kind: str, payload: Dict[str, Any]) -> Principal:
        key = credential_key(kind, payload)
        uid = self._credentials.get((kind, key))

        if uid is not None:
            account = self._accounts[uid]
            if kind == "password":
                supplied = _hash_password(str(payload.get("password", "")), account.salt)
                if not hmac.compare_digest(supplied, account.password_hash or ""):
                    raise AuthenticationError("Invalid email or password")
        else:
            other = self._owner_by_email(payload.get("email"))
            if other is not None:
                raise IdentityCollisionError(kind, other.uid)
            if not self._allow_signup:
                raise AuthenticationError(f"No account for {kind} credential")
            account = self._new_account()
            self._bind(account, kind, payload)
            log.info(f"New account created via {kind}: {account.uid}")

        principal = self._principal(account)
        await self._set_current(principal)
        return principal

    async def link_credential(
        self, principal: Principal, kind: str, payload: Dict[str, Any]
    ) -> Principal:
        key = credential_key(kind, payload)
        owner = self._credentials.get((kind, key))
        if owner is not None and owner != principal.uid:
            raise IdentityCollisionError(kind, owner)
        other = self._owner_by_email(payload.get("email"))
        if other is not None and other.uid != principal.uid:
            raise IdentityCollisionError(kind, other.uid)

        account = self._accounts.get(principal.uid)
        if account is None:
            raise AuthenticationError(f"Unknown principal {principal.uid}")
        self._bind(account, kind, payload)
        linked = self._principal(account)
        log.info(f"Linked {kind} to {linked.uid}")
        await self._set_current(linked)
        return linked

    async def sign_in_with_token(self, token: str) -> Principal:
        uid = self.minter.verify(token)
        account = self._accounts.get(uid)
        if account is None:
            # Token minted elsewhere for a uid this process has not seen.
            account = _Account(uid=uid)
            self._accounts[uid] = account
        principal = self._principal(account)
        await self._set_current(principal)
        return principal

    async def id_token(self) -> Optional[str]:
        if self._current is None:
            return None
        token, _ = self.minter.mint(self._current.uid)
        return token

    async def sign_out(self) -> None:
        if self._current is not None:
            log.info(f"Signing out {self._current.uid}")
        await self._set_current(None)
