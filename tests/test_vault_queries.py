"""Tests for VaultStore entry mutators and queries.

Covers:
  - add / remove / import (per-element results)
  - tags, groups, favorites, notes
  - use counting (single and batched), recently/most used
  - search
  - returned entries are copies
"""

import asyncio

import pytest

from twofa_vault.vault.exceptions import EntryNotFound, InvalidEncoding, InvalidSecret
from twofa_vault.vault.storage import MemoryStorage
from twofa_vault.vault.vault_store import VaultStore

PASSWORD = "correct horse battery"
SECRET = "JBSWY3DPEHPK3PXP"


@pytest.fixture
def store(fast_envelope_service):
    return VaultStore(MemoryStorage(), envelope_service=fast_envelope_service, persist_delay_ms=20)


async def _open(store, *partials):
    await store.unlock(PASSWORD)
    return [await store.add_entry({"secret": SECRET, **p}) for p in partials]


class TestAddRemove:

    @pytest.mark.asyncio
    async def test_add_normalizes(self, store):
        entry, = await _open(store, {"issuer": " GitHub ", "label": "alice", "digits": 12})
        assert entry.issuer == "GitHub"
        assert entry.digits == 10
        assert entry.period == 30
        assert entry.id

    @pytest.mark.asyncio
    async def test_add_with_same_id_replaces(self, store):
        await _open(store, {"id": "one", "issuer": "Old"})
        await store.add_entry({"id": "one", "issuer": "New", "secret": SECRET})
        entries = store.get_entries()
        assert len(entries) == 1
        assert entries[0].issuer == "New"

    @pytest.mark.asyncio
    async def test_add_rejects_bad_secret(self, store):
        await store.unlock(PASSWORD)
        with pytest.raises(InvalidSecret):
            await store.add_entry({"issuer": "x", "secret": ""})
        with pytest.raises(InvalidEncoding):
            await store.add_entry({"issuer": "x", "secret": "ABC1"})
        assert store.get_entries() == []

    @pytest.mark.asyncio
    async def test_remove(self, store):
        a, b = await _open(store, {"label": "a"}, {"label": "b"})
        await store.remove_entry(a.id)
        assert [e.id for e in store.get_entries()] == [b.id]

    @pytest.mark.asyncio
    async def test_remove_unknown(self, store):
        await store.unlock(PASSWORD)
        with pytest.raises(EntryNotFound):
            await store.remove_entry("missing")

    @pytest.mark.asyncio
    async def test_get_entry(self, store):
        entry, = await _open(store, {"label": "a"})
        assert store.get_entry(entry.id).label == "a"
        with pytest.raises(EntryNotFound):
            store.get_entry("missing")


class TestImport:

    @pytest.mark.asyncio
    async def test_partial_success(self, store):
        await store.unlock(PASSWORD)
        results = await store.import_entries([
            {"issuer": "A", "secret": SECRET},
            {"issuer": "B", "secret": "not base32!"},
            {"issuer": "C"},
            "not a dict",
        ])
        assert [r.status for r in results] == ["ok", "failed", "failed", "failed"]
        assert results[0].entry.issuer == "A"
        assert results[1].reason
        assert results[1].input == {"issuer": "B", "secret": "not base32!"}
        assert [e.issuer for e in store.get_entries()] == ["A"]

    @pytest.mark.asyncio
    async def test_imported_fields_stay_queryable(self, store):
        await store.unlock(PASSWORD)
        await store.import_entries([
            {"secret": SECRET, "label": "naive", "lastUsed": "2024-01-01T00:00:00"},
            {"secret": SECRET, "label": "aware", "lastUsed": "2024-01-02T00:00:00+00:00"},
            {"secret": SECRET, "label": "garbled", "lastUsed": "last tuesday"},
            {"secret": SECRET, "label": "numeric", "group": 5},
        ])
        assert [e.label for e in store.get_recently_used()] == ["aware", "naive"]
        assert [e.label for e in store.search("5")] == ["numeric"]
        assert store.search("x") == []
        assert store.get_all_groups() == ["5"]

    @pytest.mark.asyncio
    async def test_import_persists_once(self, store):
        await store.unlock(PASSWORD)
        await store.import_entries([{"issuer": str(i), "secret": SECRET} for i in range(10)])
        await store.lock(flush=True)
        assert len(await store.unlock(PASSWORD)) == 10


class TestOrganization:

    @pytest.mark.asyncio
    async def test_tags(self, store):
        entry, other = await _open(store, {"label": "a"}, {"label": "b", "tags": ["home"]})
        await store.add_tag_to_entry(entry.id, "work")
        updated = await store.add_tag_to_entry(entry.id, "work")
        assert updated.tags == ["work"]
        assert store.get_all_tags() == ["home", "work"]
        assert [e.id for e in store.get_entries_by_tag("work")] == [entry.id]

        updated = await store.remove_tag_from_entry(entry.id, "work")
        assert updated.tags == []
        assert store.get_all_tags() == ["home"]

    @pytest.mark.asyncio
    async def test_tag_change_bumps_updated_at(self, store):
        entry, = await _open(store, {"label": "a"})
        await asyncio.sleep(0.01)
        updated = await store.add_tag_to_entry(entry.id, "work")
        assert updated.updated_at > entry.updated_at

    @pytest.mark.asyncio
    async def test_groups(self, store):
        a, b, c = await _open(store, {"label": "a"}, {"label": "b"}, {"label": "c"})
        await store.set_group(a.id, "Work")
        await store.set_group(b.id, "Personal")
        assert store.get_all_groups() == ["Personal", "Work"]
        assert [e.id for e in store.get_entries_by_group("Work")] == [a.id]
        assert [e.id for e in store.get_entries_by_group(None)] == [c.id]

        cleared = await store.set_group(a.id, "")
        assert cleared.group is None

    @pytest.mark.asyncio
    async def test_favorites(self, store):
        a, b = await _open(store, {"label": "a"}, {"label": "b"})
        assert (await store.toggle_favorite(a.id)).favorite
        assert [e.id for e in store.get_favorites()] == [a.id]
        assert not (await store.toggle_favorite(a.id)).favorite
        assert store.get_favorites() == []

    @pytest.mark.asyncio
    async def test_notes(self, store):
        entry, = await _open(store, {"label": "a"})
        updated = await store.update_notes(entry.id, "recovery codes in safe")
        assert updated.notes == "recovery codes in safe"
        assert store.get_entry(entry.id).notes == "recovery codes in safe"

    @pytest.mark.asyncio
    async def test_unknown_id(self, store):
        await store.unlock(PASSWORD)
        with pytest.raises(EntryNotFound):
            await store.add_tag_to_entry("missing", "x")
        with pytest.raises(EntryNotFound):
            await store.toggle_favorite("missing")
        with pytest.raises(EntryNotFound):
            await store.increment_use_count("missing")

    @pytest.mark.asyncio
    async def test_noop_change_does_not_schedule_write(self, store):
        entry, = await _open(store, {"label": "a", "tags": ["work"]})
        await store.flush_persist()
        await store.add_tag_to_entry(entry.id, "work")
        assert not store.get_persist_state().scheduled


class TestUsage:

    @pytest.mark.asyncio
    async def test_increment_use_count(self, store):
        entry, = await _open(store, {"label": "a"})
        updated = await store.increment_use_count(entry.id)
        assert updated.use_count == 1
        assert updated.last_used is not None

    @pytest.mark.asyncio
    async def test_batched_counts_duplicates(self, store):
        a, b = await _open(store, {"label": "a"}, {"label": "b"})
        updated = await store.increment_use_counts([a.id, a.id, b.id, "missing", ""])
        counts = {e.id: e.use_count for e in updated}
        assert counts == {a.id: 2, b.id: 1}

    @pytest.mark.asyncio
    async def test_batched_empty(self, store):
        await store.unlock(PASSWORD)
        assert await store.increment_use_counts([]) == []

    @pytest.mark.asyncio
    async def test_most_used(self, store):
        a, b, c = await _open(store, {"label": "a"}, {"label": "b"}, {"label": "c"})
        await store.increment_use_counts([b.id, b.id, a.id])
        assert [e.label for e in store.get_most_used()] == ["b", "a"]
        assert [e.label for e in store.get_most_used(limit=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_recently_used(self, store):
        a, b = await _open(store, {"label": "a"}, {"label": "b"})
        await store.increment_use_count(a.id)
        await asyncio.sleep(0.01)
        await store.increment_use_count(b.id)
        assert [e.label for e in store.get_recently_used()] == ["b", "a"]


class TestSearch:

    @pytest.mark.asyncio
    async def test_matches_fields_case_insensitively(self, store):
        await _open(
            store,
            {"issuer": "GitHub", "label": "alice"},
            {"issuer": "Bank", "label": "bob", "tags": ["Finance"]},
            {"issuer": "Mail", "label": "carol", "group": "Personal", "notes": "backup key"},
        )
        assert [e.issuer for e in store.search("github")] == ["GitHub"]
        assert [e.issuer for e in store.search("BOB")] == ["Bank"]
        assert [e.issuer for e in store.search("finance")] == ["Bank"]
        assert [e.issuer for e in store.search("personal")] == ["Mail"]
        assert [e.issuer for e in store.search("backup")] == ["Mail"]
        assert store.search("nothing") == []

    @pytest.mark.asyncio
    async def test_empty_query_returns_all(self, store):
        await _open(store, {"label": "a"}, {"label": "b"})
        assert len(store.search("")) == 2

    @pytest.mark.asyncio
    async def test_search_within_collection(self, store):
        a, b = await _open(store, {"issuer": "Acme", "label": "a"}, {"issuer": "Acme", "label": "b"})
        await store.toggle_favorite(a.id)
        assert [e.label for e in store.search("acme", store.get_favorites())] == ["a"]


class TestCopies:

    @pytest.mark.asyncio
    async def test_returned_entries_are_copies(self, store):
        entry, = await _open(store, {"label": "a"})
        entry.tags.append("mutated")
        snapshot = store.get_entries()
        snapshot[0].label = "changed"
        assert store.get_entry(entry.id).tags == []
        assert store.get_entry(entry.id).label == "a"
