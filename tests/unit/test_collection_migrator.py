"""
Unit tests for the collection migrator
"""

import pytest

from firestore_vault.infrastructure.errors import PartialCommitError
from firestore_vault.models.schemas import MigrationState
from firestore_vault.tools.collection_migrator import DEFAULT_SOURCES, CollectionMigrator


@pytest.fixture
def legacy_store(store):
    store.seed("documents/d1", {"userId": "u1", "title": "One"})
    store.seed("documents/d2", {"userId": "u2", "title": "Two"})
    store.seed("documents/d3", {"title": "Orphan"})
    return store


class TestMigrate:

    @pytest.mark.asyncio
    async def test_copies_under_owner_and_counts_missing_owner(self, legacy_store, executor):
        record = await CollectionMigrator(legacy_store, executor).migrate("documents")

        assert (record.total, record.migrated, record.errors, record.deleted) == (3, 2, 1, 0)
        assert record.state == MigrationState.DONE
        assert legacy_store.data("users/u1/documents/d1") == {"userId": "u1", "title": "One"}
        assert legacy_store.exists("users/u2/documents/d2")
        assert legacy_store.exists("documents/d1")
        assert legacy_store.exists("documents/d3")

    @pytest.mark.asyncio
    async def test_delete_originals_after_copies(self, legacy_store, executor):
        record = await CollectionMigrator(legacy_store, executor).migrate(
            "documents", delete_originals=True)

        assert record.deleted == 2
        assert not legacy_store.exists("documents/d1")
        assert not legacy_store.exists("documents/d2")
        assert legacy_store.exists("documents/d3")

        ops = [op for commit in legacy_store.commits for op in commit]
        first_delete = next(i for i, (kind, _) in enumerate(ops) if kind == "delete")
        assert all(kind == "set" for kind, _ in ops[:first_delete])

    @pytest.mark.asyncio
    async def test_empty_source(self, store, executor):
        record = await CollectionMigrator(store, executor).migrate("quizzes")

        assert record.total == 0
        assert record.state == MigrationState.DONE
        assert store.commits == []

    @pytest.mark.asyncio
    async def test_custom_owner_field_and_collection(self, store, executor):
        store.seed("quizzes/q1", {"ownerId": "acct-7"})

        await CollectionMigrator(store, executor, owner_collection="accounts",
                                 owner_field="ownerId").migrate("quizzes")

        assert store.exists("accounts/acct-7/quizzes/q1")

    @pytest.mark.asyncio
    async def test_copy_failure_keeps_originals(self, legacy_store, executor):
        legacy_store.fail_on_commit = 1

        with pytest.raises(PartialCommitError):
            await CollectionMigrator(legacy_store, executor).migrate(
                "documents", delete_originals=True)

        assert legacy_store.exists("documents/d1")
        assert not legacy_store.exists("users/u1/documents/d1")

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_writes(self, legacy_store, dry_executor):
        before = legacy_store.paths()

        record = await CollectionMigrator(legacy_store, dry_executor).migrate(
            "documents", delete_originals=True)

        assert (record.total, record.migrated, record.errors, record.deleted) == (3, 2, 1, 2)
        assert legacy_store.paths() == before


class TestMigrateAll:

    @pytest.mark.asyncio
    async def test_default_order(self, store, executor):
        summary = await CollectionMigrator(store, executor).migrate_all()

        assert [r.collection for r in summary.records] == list(DEFAULT_SOURCES)
        assert DEFAULT_SOURCES[0] == "directories"

    @pytest.mark.asyncio
    async def test_failed_collection_does_not_stop_others(self, store, executor):
        store.seed("directories/f1", {"userId": "u1"})
        store.seed("documents/d1", {"userId": "u1"})
        store.fail_on_commit = 1

        summary = await CollectionMigrator(store, executor).migrate_all(
            ["directories", "documents"])

        failed, done = summary.records
        assert failed.state == MigrationState.FAILED
        assert failed.total == 1
        assert failed.migrated == 0
        assert "Commit 1 failed" in failed.error
        assert done.state == MigrationState.DONE
        assert done.migrated == 1
        assert summary.failed_collections == ["directories"]
        assert store.exists("users/u1/documents/d1")

    @pytest.mark.asyncio
    async def test_summary_totals(self, legacy_store, executor):
        legacy_store.seed("quizzes/q1", {"userId": "u3"})

        summary = await CollectionMigrator(legacy_store, executor).migrate_all(
            delete_originals=True)

        assert summary.total == 4
        assert summary.migrated == 3
        assert summary.errors == 1
        assert summary.deleted == 3
        assert summary.delete_originals
        assert summary.failed_collections == []
