from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Client:
    id: str
    secret: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_value(self) -> Dict[str, Any]:
        return {**self.attributes, "id": self.id, "secret": self.secret, "name": self.name}

    def to_metadata(self) -> Dict[str, Any]:
        return {"name": self.name, "secret": self.secret}

    @classmethod
    def from_value(cls, value: Dict[str, Any]) -> "Client":
        attributes = {
            k: v for k, v in value.items() if k not in {"id", "secret", "name"}
        }
        return cls(
            id=value["id"],
            secret=value["secret"],
            name=value.get("name", ""),
            attributes=attributes,
        )


@dataclass
class User:
    id: str
    client_id: str
    username: Optional[str] = None
    email_addresses: List[str] = field(default_factory=list)
    email_verified: bool = False

    def to_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"emailVerified": self.email_verified}
        if self.username:
            metadata["username"] = self.username
        if self.email_addresses:
            metadata["emailAddresses"] = list(self.email_addresses)
        return metadata

    @classmethod
    def from_metadata(
        cls, client_id: str, user_id: str, metadata: Optional[Dict[str, Any]]
    ) -> "User":
        metadata = metadata or {}
        return cls(
            id=user_id,
            client_id=client_id,
            username=metadata.get("username"),
            email_addresses=[
                addr for addr in (metadata.get("emailAddresses") or []) if addr
            ],
            email_verified=bool(metadata.get("emailVerified", False)),
        )


@dataclass
class Session:
    id: str
    client_id: str
    user_id: str
    created_at: datetime
    last_used_at: datetime
    # Only known when the record body was read, not from a listing
    rotations: Optional[int] = None

    def to_value(self) -> Dict[str, Any]:
        return {"issuedAt": to_iso(self.created_at), "rotations": self.rotations or 0}

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "createdAt": to_iso(self.created_at),
            "lastUsedAt": to_iso(self.last_used_at),
        }


@dataclass
class ArchiveResult:
    archived: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0

    def as_dict(self) -> Dict[str, Any]:
        return {"archived": self.archived, "failed": self.failed}
