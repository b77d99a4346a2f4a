import sqlite3
from typing import List, Optional

from database import Database
from errors import NotFoundError
from user import User


class MembershipStore:
    """User records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_by_id(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self.db.connection(conn) as c:
            row = c.execute("SELECT id, name, email, role FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def get_by_email(self, email: str, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self.db.connection(conn) as c:
            row = c.execute("SELECT id, name, email, role FROM users WHERE email = ?", (email,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list(self, conn: Optional[sqlite3.Connection] = None) -> List[User]:
        with self.db.connection(conn) as c:
            rows = c.execute("SELECT id, name, email, role FROM users ORDER BY id").fetchall()
        return [User.from_dict(dict(row)) for row in rows]

    def create(self, user: User, conn: Optional[sqlite3.Connection] = None) -> User:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
                (user.name, user.email, user.role.value),
            )
            user.id = cursor.lastrowid
        return user

    def update(self, user: User, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE users SET name = ?, email = ?, role = ? WHERE id = ?",
                (user.name, user.email, user.role.value, user.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("User", user.id)

    def delete(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute("DELETE FROM users WHERE id = ?", (user_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("User", user_id)

    def count(self, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.connection(conn) as c:
            return c.execute("SELECT COUNT(*) FROM users").fetchone()[0]
