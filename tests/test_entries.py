"""Tests for entry CRUD, listing and the cascading delete."""

from __future__ import annotations

import pytest

from notegraph.entries import Entry, EntryManager, LinkEdge
from notegraph.errors import EntryNotFoundError
from notegraph.owners import OwnerManager
from notegraph.storage import Storage

from tests.conftest import (
    fetch_links,
    insert_entry,
    insert_link,
    insert_owner,
    insert_project,
    unit_vector,
)


@pytest.fixture
def manager(storage: Storage) -> EntryManager:
    return EntryManager(storage)


class TestCreate:
    async def test_create_returns_entry(self, manager: EntryManager, owner_id: int) -> None:
        entry = await manager.create(
            owner_id, "React Hooks Tips", "useEffect cleanup", tags=["React", " Hooks ", ""]
        )
        assert isinstance(entry, Entry)
        assert entry.id > 0
        assert entry.tags == ["React", "Hooks"]
        assert entry.embedding is None
        assert entry.links == []
        assert entry.created_at == entry.updated_at

    async def test_invalid_kind(self, manager: EntryManager, owner_id: int) -> None:
        with pytest.raises(ValueError, match="Invalid entry kind"):
            await manager.create(owner_id, "t", "b", kind="video")

    async def test_blank_title(self, manager: EntryManager, owner_id: int) -> None:
        with pytest.raises(ValueError, match="title"):
            await manager.create(owner_id, "   ", "b")

    async def test_unknown_owner(self, manager: EntryManager) -> None:
        with pytest.raises(ValueError, match="does not exist"):
            await manager.create(999, "t", "b")

    async def test_foreign_project_rejected(self, storage: Storage, manager: EntryManager) -> None:
        ada = await insert_owner(storage, "ada")
        bob = await insert_owner(storage, "bob")
        bobs_project = await insert_project(storage, bob, "work")
        with pytest.raises(ValueError, match="Project"):
            await manager.create(ada, "t", "b", project_id=bobs_project)

    async def test_to_dict_hides_vector(self, storage: Storage, manager: EntryManager) -> None:
        owner = await insert_owner(storage, "ada")
        entry_id = await insert_entry(storage, owner, "A", embedding=unit_vector(0))
        entry = await manager.require(entry_id)
        data = entry.to_dict()
        assert "embedding" not in data
        assert data["has_embedding"] is True


class TestRead:
    async def test_get_scoped_to_owner(self, storage: Storage, manager: EntryManager) -> None:
        ada = await insert_owner(storage, "ada")
        bob = await insert_owner(storage, "bob")
        entry_id = await insert_entry(storage, ada, "A")
        assert await manager.get(entry_id, ada) is not None
        assert await manager.get(entry_id, bob) is None

    async def test_require_raises(self, manager: EntryManager) -> None:
        with pytest.raises(EntryNotFoundError):
            await manager.require(12345)

    async def test_links_loaded_in_insertion_order(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        a = await insert_entry(storage, owner_id, "A")
        b = await insert_entry(storage, owner_id, "B")
        c = await insert_entry(storage, owner_id, "C")
        await insert_link(storage, a, c, reason="second topic")
        await insert_link(storage, a, b, reason="first topic")

        entry = await manager.require(a)
        assert [link.target_id for link in entry.links] == [c, b]
        assert isinstance(entry.links[0], LinkEdge)
        assert entry.linked_ids() == {b, c}

    async def test_list_newest_first_with_total(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        old = await insert_entry(storage, owner_id, "old", age_minutes=10)
        new = await insert_entry(storage, owner_id, "new", age_minutes=1)
        entries, total = await manager.list_for_owner(owner_id, limit=1)
        assert total == 2
        assert [e.id for e in entries] == [new]
        entries, _ = await manager.list_for_owner(owner_id, limit=1, offset=1)
        assert [e.id for e in entries] == [old]

    async def test_list_filters_by_tag(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        react = await insert_entry(storage, owner_id, "A", tags=["React"])
        await insert_entry(storage, owner_id, "B", tags=["CSS"])
        entries, total = await manager.list_for_owner(owner_id, tag="React")
        assert total == 1
        assert entries[0].id == react

    async def test_missing_embeddings(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        bare = await insert_entry(storage, owner_id, "bare")
        await insert_entry(storage, owner_id, "embedded", embedding=unit_vector(0))
        pending = await manager.missing_embeddings(owner_id)
        assert [e.id for e in pending] == [bare]

    async def test_text_search_escapes_wildcards(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        hit = await insert_entry(storage, owner_id, "100% coverage")
        await insert_entry(storage, owner_id, "1000 coverage")
        found = await manager.text_search(owner_id, "100%")
        assert [e.id for e in found] == [hit]


class TestUpdate:
    async def test_body_change_marks_stale(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        entry_id = await insert_entry(storage, owner_id, "A", embedding=unit_vector(0))
        entry, stale = await manager.update(entry_id, owner_id, body="new body")
        assert stale is True
        assert entry.body == "new body"
        assert entry.embedding is None

    async def test_kind_change_keeps_embedding(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        entry_id = await insert_entry(storage, owner_id, "A", embedding=unit_vector(0))
        entry, stale = await manager.update(entry_id, owner_id, kind="code")
        assert stale is False
        assert entry.kind == "code"
        assert entry.has_embedding

    async def test_same_tags_not_stale(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        entry_id = await insert_entry(storage, owner_id, "A", tags=["x"], embedding=unit_vector(0))
        _, stale = await manager.update(entry_id, owner_id, tags=["x"])
        assert stale is False

    async def test_unknown_field(self, storage: Storage, manager: EntryManager, owner_id: int) -> None:
        entry_id = await insert_entry(storage, owner_id, "A")
        with pytest.raises(ValueError, match="Cannot update"):
            await manager.update(entry_id, owner_id, embedding=[1.0])


class TestDelete:
    async def test_removes_links_in_both_directions(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        a = await insert_entry(storage, owner_id, "A")
        b = await insert_entry(storage, owner_id, "B")
        c = await insert_entry(storage, owner_id, "C")
        await insert_link(storage, a, b)
        await insert_link(storage, b, a)
        await insert_link(storage, c, a, reason="conflict", score=None, is_contradiction=True)
        await insert_link(storage, b, c)

        removed = await manager.delete(a, owner_id)

        assert removed == 3
        assert await manager.get(a) is None
        remaining = await fetch_links(storage)
        assert [(l["source_id"], l["target_id"]) for l in remaining] == [(b, c)]
        assert a not in (await manager.require(b)).linked_ids()
        assert (await manager.require(c)).links == []

    async def test_bumps_referrer_updated_at(
        self, storage: Storage, manager: EntryManager, owner_id: int
    ) -> None:
        a = await insert_entry(storage, owner_id, "A", age_minutes=5)
        b = await insert_entry(storage, owner_id, "B", age_minutes=5)
        await insert_link(storage, b, a)
        before = (await manager.require(b)).updated_at

        await manager.delete(a, owner_id)

        assert (await manager.require(b)).updated_at > before

    async def test_removes_vector_row(self, vec_storage: Storage) -> None:
        manager = EntryManager(vec_storage)
        owner = await insert_owner(vec_storage, "ada")
        a = await insert_entry(vec_storage, owner, "A", embedding=unit_vector(0))
        await manager.delete(a, owner)
        rows = await vec_storage.execute("SELECT entry_id FROM entries_vec WHERE entry_id = ?", (a,))
        assert rows == []

    async def test_wrong_owner_not_found(self, storage: Storage, manager: EntryManager) -> None:
        ada = await insert_owner(storage, "ada")
        bob = await insert_owner(storage, "bob")
        a = await insert_entry(storage, ada, "A")
        with pytest.raises(EntryNotFoundError):
            await manager.delete(a, bob)
        assert await manager.get(a) is not None


class TestOwners:
    async def test_duplicate_owner_rejected(self, storage: Storage) -> None:
        owners = OwnerManager(storage)
        await owners.create_owner("ada")
        with pytest.raises(ValueError, match="already exists"):
            await owners.create_owner("ada")

    async def test_projects_unique_per_owner(self, storage: Storage) -> None:
        owners = OwnerManager(storage)
        ada = await owners.create_owner("ada")
        bob = await owners.create_owner("bob")
        await owners.create_project(ada.id, "work")
        await owners.create_project(bob.id, "work")
        with pytest.raises(ValueError, match="already exists"):
            await owners.create_project(ada.id, "work")
        assert [p.name for p in await owners.list_projects(ada.id)] == ["work"]

    async def test_project_for_unknown_owner(self, storage: Storage) -> None:
        owners = OwnerManager(storage)
        with pytest.raises(ValueError, match="does not exist"):
            await owners.create_project(42, "work")
