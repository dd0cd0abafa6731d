"""
Coherence Sync: Data Model

VisitorIdentity: durable local pseudonymous identity.
Principal: auth session identity issued by the AuthGateway.
ProgressRecord: remote progress document (camelCase on the wire).
SyncCursor: last flushed score/day/state, bounds write amplification.
MigrationPayload: {day, score} carried across a risky identity switch.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from . import config as cfg


class CoherenceState(str, Enum):
    STABLE = "FEED_STABLE"
    RECOVERING = "SYNC_RECOVERING"
    FRAYING = "COHERENCE_FRAYING"
    FRAGMENTED = "SIGNAL_FRAGMENTED"
    CRITICAL = "CRITICAL_INTERFERENCE"


class Role(str, Enum):
    ADMIN = "admin"
    OBSERVER = "observer"


class _ServerTimestamp:
    """Placeholder resolved to the store's own clock at write time."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings and epoch milliseconds; return aware UTC."""
    if value is None or value is SERVER_TIMESTAMP:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class VisitorIdentity:
    visitor_id: str
    visitor_token: str

    @classmethod
    def generate(cls) -> "VisitorIdentity":
        return cls(visitor_id=str(uuid.uuid4()), visitor_token=str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, str]:
        return {"visitorId": self.visitor_id, "visitorToken": self.visitor_token}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VisitorIdentity":
        visitor_id = data.get("visitorId")
        visitor_token = data.get("visitorToken")
        if not isinstance(visitor_id, str) or not isinstance(visitor_token, str):
            raise ValueError("observer session blob is missing visitorId/visitorToken")
        return cls(visitor_id=visitor_id, visitor_token=visitor_token)


@dataclass(frozen=True)
class Principal:
    uid: str
    role: Role = Role.OBSERVER
    linked_credential_kinds: FrozenSet[str] = frozenset()
    is_anonymous: bool = True
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def session_key(self) -> str:
        """Distinguishes a uid before and after it links a credential."""
        return f"{self.uid}_{self.is_anonymous}"


@dataclass(frozen=True)
class MigrationPayload:
    day: int
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"day": self.day, "score": self.score}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationPayload":
        return cls(day=int(data["day"]), score=float(data["score"]))


@dataclass
class ProgressRecord:
    """Remote progress document for one identity."""
    start_date: datetime
    last_seen_at: datetime
    coherence_score: float = cfg.INITIAL_SCORE
    coherence_state: CoherenceState = CoherenceState.STABLE
    day_progress: int = 1
    is_anchored: bool = False
    anchored_principal_uid: Optional[str] = None
    access_code: Optional[str] = None
    seen_fragments: List[str] = field(default_factory=list)
    visit_count: int = 0
    visitor_id: Optional[str] = None
    email: Optional[str] = None

    def copy(self, **changes) -> "ProgressRecord":
        changes.setdefault("seen_fragments", list(self.seen_fragments))
        return replace(self, **changes)

    def to_document(self) -> Dict[str, Any]:
        return {
            "coherenceScore": self.coherence_score,
            "coherenceState": self.coherence_state.value,
            "dayProgress": self.day_progress,
            "startDate": self.start_date,
            "lastSeenAt": self.last_seen_at,
            "isAnchored": self.is_anchored,
            "anchoredPrincipalUid": self.anchored_principal_uid,
            "accessCode": self.access_code,
            "seenFragments": list(self.seen_fragments),
            "visitCount": self.visit_count,
            "visitorId": self.visitor_id,
            "email": self.email,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], now: datetime) -> "ProgressRecord":
        """Build a record from a stored document, filling legacy gaps.

        lastSeenAt falls back to startDate, then createdAt, then now.
        """
        start = (
            parse_timestamp(doc.get("startDate"))
            or parse_timestamp(doc.get("createdAt"))
            or now
        )
        last_seen = parse_timestamp(doc.get("lastSeenAt")) or start

        score = doc.get("coherenceScore")
        if not isinstance(score, (int, float)) or isinstance(score, bool):
            score = cfg.INITIAL_SCORE

        state = doc.get("coherenceState")
        try:
            state = CoherenceState(state)
        except ValueError:
            state = CoherenceState.STABLE

        day = doc.get("dayProgress")
        if not isinstance(day, int) or isinstance(day, bool) or day < 1:
            day = 1

        return cls(
            start_date=start,
            last_seen_at=last_seen,
            coherence_score=float(score),
            coherence_state=state,
            day_progress=day,
            is_anchored=bool(doc.get("isAnchored", False)),
            anchored_principal_uid=doc.get("anchoredPrincipalUid"),
            access_code=doc.get("accessCode"),
            seen_fragments=list(doc.get("seenFragments") or []),
            visit_count=int(doc.get("visitCount") or 0),
            visitor_id=doc.get("visitorId"),
            email=doc.get("email"),
        )


@dataclass
class SyncCursor:
    """What the remote store last received from this session."""
    score: float
    day: int
    state: CoherenceState
    synced_at: Optional[datetime] = None
