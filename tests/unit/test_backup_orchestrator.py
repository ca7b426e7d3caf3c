"""
Unit tests for the backup/restore orchestrator and backup unit discovery
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from firestore_vault.infrastructure.errors import MissingArtifactError, StepFailedError
from firestore_vault.infrastructure.monitoring import run_tracer
from firestore_vault.models.schemas import UserBackup
from firestore_vault.orchestration.backup_orchestrator import (
    FIRESTORE_STEP,
    RULES_STEP,
    BackupOrchestrator,
    find_latest_unit,
    list_units,
    parse_unit_name,
    unit_name,
)


class TestUnitNames:

    def test_unit_name_format(self):
        now = datetime(2024, 1, 2, 3, 4, 5, 678999, tzinfo=timezone.utc)
        assert unit_name(now) == "firebase-backup-2024-01-02_03-04-05-678Z"

    def test_unit_name_pads_early_years(self):
        now = datetime(987, 6, 5, 4, 3, 2, tzinfo=timezone.utc)
        assert unit_name(now) == "firebase-backup-0987-06-05_04-03-02-000Z"
        assert parse_unit_name(unit_name(now)) == now

    def test_parse_round_trip(self):
        now = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
        assert parse_unit_name(unit_name(now)) == now

    @pytest.mark.parametrize("name", [
        "firebase-backup-latest",
        "other-2024-01-02_03-04-05-678Z",
        "firebase-backup-2024-13-02_03-04-05-678Z",
        "firebase-backup-2024-01-02_03-04-05Z",
    ])
    def test_parse_rejects_unrelated_names(self, name):
        assert parse_unit_name(name) is None

    def test_latest_unit_ignores_unrelated_entries(self, tmp_path):
        for name in ["firebase-backup-2024-01-01_00-00-00-000Z",
                     "firebase-backup-2024-03-01_00-00-00-000Z",
                     "firebase-backup-2024-02-01_00-00-00-000Z",
                     "scratch", "zzz-notes"]:
            (tmp_path / name).mkdir()
        (tmp_path / "firebase-backup-2025-01-01_00-00-00-000Z").write_text("not a dir")

        latest = find_latest_unit(tmp_path)

        assert latest.name == "firebase-backup-2024-03-01_00-00-00-000Z"
        assert [u.name for u in list_units(tmp_path)] == [
            "firebase-backup-2024-03-01_00-00-00-000Z",
            "firebase-backup-2024-02-01_00-00-00-000Z",
            "firebase-backup-2024-01-01_00-00-00-000Z",
        ]

    def test_custom_prefix(self, tmp_path):
        (tmp_path / "nightly-2024-05-01_10-00-00-500Z").mkdir()
        (tmp_path / "firebase-backup-2024-06-01_10-00-00-500Z").mkdir()

        units = list_units(tmp_path, prefix="nightly-")

        assert [u.name for u in units] == ["nightly-2024-05-01_10-00-00-500Z"]
        assert units[0].created_at == datetime(2024, 5, 1, 10, 0, 0, 500000, tzinfo=timezone.utc)

    def test_no_units(self, tmp_path):
        assert find_latest_unit(tmp_path) is None
        assert find_latest_unit(tmp_path / "missing") is None


@pytest.fixture
def orchestrator(store, auth_store, vault_settings):
    return BackupOrchestrator(store, auth_store, vault_settings)


@pytest.fixture
def project_files(vault_settings):
    root = Path(vault_settings.PROJECT_ROOT)
    root.mkdir(parents=True)
    (root / "firestore.rules").write_text("rules_version = '2';\n", encoding="utf-8")
    return root


async def make_unit(orchestrator, store, auth_store, unit_dir):
    """Back up a small project, then empty the stores"""
    store.seed("users/u1", {"name": "Ada"})
    store.seed("users/u1/documents/d1", {"title": "A"})
    auth_store.users["u1"] = UserBackup(uid="u1", email="ada@example.com",
                                        custom_claims={"role": "admin"})
    await orchestrator.run_backup(unit_dir)
    store.documents.clear()
    store.times.clear()
    auth_store.users.clear()
    return unit_dir


class TestRunBackup:

    @pytest.mark.asyncio
    async def test_full_backup_layout(self, orchestrator, store, auth_store, project_files):
        store.seed("users/u1", {"name": "Ada"})
        auth_store.users["u1"] = UserBackup(uid="u1", email="ada@example.com")

        report = await orchestrator.run_backup()

        unit = Path(report.directory)
        assert unit.parent == orchestrator.config.backups_path
        assert parse_unit_name(unit.name) is not None
        assert (unit / "auth" / "users.json").is_file()
        assert (unit / "firestore" / "collections" / "users.json").is_file()
        assert (unit / "rules" / "firestore.rules").is_file()

        saved = json.loads((unit / "backup-report.json").read_text())
        assert saved["projectId"] == "test-project"
        assert saved["authBackup"]["totalUsers"] == 1
        assert saved["firestoreBackup"]["totalDocuments"] == 1
        assert saved["rulesBackup"]["filesBackedUp"] == 1
        assert saved["rulesBackup"]["storageRules"]["exists"] is False
        assert "directory" not in saved

    @pytest.mark.asyncio
    async def test_selected_steps_only(self, orchestrator, tmp_path):
        report = await orchestrator.run_backup(tmp_path / "unit", steps=(FIRESTORE_STEP,))

        assert report.auth_backup is None
        assert report.rules_backup is None
        assert not (tmp_path / "unit" / "auth").exists()
        assert (tmp_path / "unit" / "firestore" / "metadata.json").is_file()

    @pytest.mark.asyncio
    async def test_failed_step_aborts(self, orchestrator, auth_store, tmp_path, mocker):
        mocker.patch.object(auth_store, "list_users", side_effect=RuntimeError("auth down"))

        with pytest.raises(StepFailedError) as exc_info:
            await orchestrator.run_backup(tmp_path / "unit")

        assert exc_info.value.step == "auth"
        assert not (tmp_path / "unit" / "firestore").exists()
        assert not (tmp_path / "unit" / "backup-report.json").exists()
        assert exc_info.value.report.auth_backup is None


class TestRunRestore:

    @pytest.mark.asyncio
    async def test_restores_every_step(self, orchestrator, store, auth_store, project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")
        (project_files / "firestore.rules").write_text("changed", encoding="utf-8")

        report = await orchestrator.run_restore(unit)

        assert report.success
        assert report.auth_restore.imported == 1
        assert report.firestore_restore.documents_written == 2
        assert report.rules_restore.rules_restored == 1
        assert store.data("users/u1/documents/d1") == {"title": "A"}
        assert auth_store.claims == {"u1": {"role": "admin"}}
        assert (project_files / "firestore.rules").read_text() == "rules_version = '2';\n"
        assert len(list(project_files.glob("firestore.rules.backup.*"))) == 1

        saved = json.loads((unit / "restore-report.json").read_text())
        assert saved["dryRun"] is False
        assert saved["firestoreRestore"]["documentsWritten"] == 2
        assert saved["authRestore"]["success"] is True

    @pytest.mark.asyncio
    async def test_missing_step_directories_are_skipped(self, orchestrator, tmp_path):
        (tmp_path / "empty-unit").mkdir()

        report = await orchestrator.run_restore(tmp_path / "empty-unit")

        assert report.auth_restore.skipped
        assert report.firestore_restore.skipped
        assert report.rules_restore.skipped
        assert report.success

    @pytest.mark.asyncio
    async def test_missing_unit(self, orchestrator, tmp_path):
        with pytest.raises(MissingArtifactError):
            await orchestrator.run_restore(tmp_path / "nope")

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, orchestrator, store, auth_store, project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")

        report = await orchestrator.run_restore(unit, dry_run=True)

        assert report.dry_run
        assert report.firestore_restore.documents_written == 2
        assert report.auth_restore.imported == 1
        assert store.paths() == []
        assert store.commits == []
        assert auth_store.users == {}
        assert auth_store.import_batches == []
        assert list(project_files.glob("firestore.rules.backup.*")) == []
        assert (unit / "restore-report.json").is_file()

    @pytest.mark.asyncio
    async def test_dry_run_continues_after_failed_step(self, orchestrator, store, auth_store,
                                                       project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")
        (unit / "firestore" / "collections" / "users.json").write_text("{}", encoding="utf-8")

        report = await orchestrator.run_restore(unit, dry_run=True)

        assert report.firestore_restore.success is False
        assert "JSON array" in report.firestore_restore.error
        assert report.rules_restore.success
        assert not report.success

    @pytest.mark.asyncio
    async def test_live_failure_aborts_and_writes_report(self, orchestrator, store, auth_store,
                                                         project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")
        store.fail_on_commit = store.commit_attempts + 1

        with pytest.raises(StepFailedError) as exc_info:
            await orchestrator.run_restore(unit)

        assert exc_info.value.step == "firestore"
        saved = json.loads((unit / "restore-report.json").read_text())
        assert saved["authRestore"]["success"] is True
        assert saved["firestoreRestore"]["success"] is False
        assert saved["rulesRestore"]["success"] is False
        assert saved["rulesRestore"]["skipped"] is False

    @pytest.mark.asyncio
    async def test_unselected_steps_are_skipped(self, orchestrator, store, auth_store,
                                                project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")

        report = await orchestrator.run_restore(unit, steps=(FIRESTORE_STEP, RULES_STEP))

        assert report.auth_restore.skipped
        assert auth_store.import_batches == []
        assert report.firestore_restore.success
        assert report.success

    @pytest.mark.asyncio
    async def test_live_failure_carries_partial_report(self, orchestrator, store, auth_store,
                                                       project_files, tmp_path):
        unit = await make_unit(orchestrator, store, auth_store, tmp_path / "unit")
        store.fail_on_commit = store.commit_attempts + 1

        with pytest.raises(StepFailedError) as exc_info:
            await orchestrator.run_restore(unit)

        report = exc_info.value.report
        assert report.auth_restore.imported == 1
        assert report.firestore_restore.error is not None
        assert not report.success

    @pytest.mark.asyncio
    async def test_missing_directory_traced_once(self, orchestrator, tmp_path, mocker):
        (tmp_path / "empty-unit").mkdir()
        add_step = mocker.spy(run_tracer, "add_trace_step")

        await orchestrator.run_restore(tmp_path / "empty-unit")

        statuses = [(call.args[1], call.args[2]) for call in add_step.call_args_list]
        assert statuses == [("auth", "skipped"), ("firestore", "skipped"), ("rules", "skipped")]
