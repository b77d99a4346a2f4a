from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User:
    """A registered library member."""

    def __init__(self, name: str, email: str, role: UserRole | str = UserRole.USER, id: int | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip()
        self.role = UserRole(role)

    def __repr__(self) -> str:
        return f"User(id={self.id!r}, email={self.email!r}, role={self.role.value})"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role.value}

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data.get("role") or UserRole.USER,
        )
