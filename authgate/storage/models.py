from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class Principal:
    """An account known to the credential repository."""

    id: str
    email: str
    password_hash: str
    role: Role = Role.USER
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "role": self.role.value,
            "is_active": self.is_active,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict) -> "Principal":
        return cls(
            id=record["id"],
            email=record["email"],
            password_hash=record["password_hash"],
            role=Role(record.get("role", Role.USER.value)),
            is_active=bool(record.get("is_active", True)),
            first_name=record.get("first_name"),
            last_name=record.get("last_name"),
            created_at=datetime.fromisoformat(record["created_at"])
            if record.get("created_at")
            else datetime.utcnow(),
        )
