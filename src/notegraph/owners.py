"""Owners and projects.

Every entry belongs to exactly one owner, and candidate search never crosses
owners.  Projects are optional named groupings inside one owner.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any

from notegraph.storage import Storage

log = logging.getLogger(__name__)


@dataclass
class Owner:
    id: int
    name: str
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Project:
    id: int
    owner_id: int
    name: str
    description: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OwnerManager:
    """Async CRUD over the ``owners`` and ``projects`` tables."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def create_owner(self, name: str) -> Owner:
        """Create an owner.

        Raises
        ------
        ValueError
            If *name* is empty or already taken.
        """
        if not name or not name.strip():
            raise ValueError("Owner name must be a non-empty string")
        try:
            rows = await self._storage.execute_write_returning(
                "INSERT INTO owners (name) VALUES (?) RETURNING id, name, created_at",
                (name.strip(),),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Owner {name!r} already exists") from exc
        owner = Owner(**dict(rows[0]))
        log.info("Created owner %d (%s)", owner.id, owner.name)
        return owner

    async def get_owner(self, owner_id: int) -> Owner | None:
        rows = await self._storage.execute(
            "SELECT id, name, created_at FROM owners WHERE id = ?", (owner_id,)
        )
        return Owner(**dict(rows[0])) if rows else None

    async def list_owners(self) -> list[Owner]:
        rows = await self._storage.execute(
            "SELECT id, name, created_at FROM owners ORDER BY id"
        )
        return [Owner(**dict(r)) for r in rows]

    async def owner_ids(self) -> list[int]:
        rows = await self._storage.execute("SELECT id FROM owners ORDER BY id")
        return [r["id"] for r in rows]

    async def create_project(
        self, owner_id: int, name: str, description: str = ""
    ) -> Project:
        """Create a project for *owner_id*; names are unique per owner."""
        if not name or not name.strip():
            raise ValueError("Project name must be a non-empty string")
        if await self.get_owner(owner_id) is None:
            raise ValueError(f"Owner {owner_id} does not exist")
        try:
            rows = await self._storage.execute_write_returning(
                """
                INSERT INTO projects (owner_id, name, description)
                VALUES (?, ?, ?)
                RETURNING id, owner_id, name, description, created_at
                """,
                (owner_id, name.strip(), description),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(
                f"Project {name!r} already exists for owner {owner_id}"
            ) from exc
        return Project(**dict(rows[0]))

    async def list_projects(self, owner_id: int) -> list[Project]:
        rows = await self._storage.execute(
            """
            SELECT id, owner_id, name, description, created_at
            FROM projects WHERE owner_id = ? ORDER BY name
            """,
            (owner_id,),
        )
        return [Project(**dict(r)) for r in rows]
