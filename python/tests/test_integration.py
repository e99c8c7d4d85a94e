"""
Integration Tests - End-to-end backup workflows.

Tests:
- prepare is read-only
- Full execute pipeline (scan → diff → hash → plan → package → save)
- Incremental second runs
- Limit, packaging and phase failures leave the manifest untouched
"""

import json

import pytest

from conftest import FakeArchiver
from episodic_backup.errors import BackupError, BackupPhaseError, LimitExceededError, PackagingError
from episodic_backup.manifest import ManifestStore
from episodic_backup.models import EpisodeStatus
from episodic_backup.orchestrator import Orchestrator, main, new_series_id, run_execute, run_prepare


@pytest.fixture
def orchestrator(test_config, fake_archiver):
    return Orchestrator(test_config, fake_archiver)


def _manifest_path(workspace, config):
    return workspace / config.control_dir_name / config.manifest_filename


class TestPrepare:
    """Tests for Orchestrator.prepare."""

    @pytest.mark.asyncio
    async def test_preview(self, orchestrator, workspace, sample_files, fake_archiver, test_config):
        preview = await orchestrator.prepare(workspace)

        assert preview.summary.new_count == len(sample_files)
        assert preview.summary.total_size == sum(p.stat().st_size for p in sample_files.values())
        assert len(preview.episodes) == 1
        assert preview.episodes[0].file_count == len(sample_files)
        assert not preview.exceeds_limit

    @pytest.mark.asyncio
    async def test_writes_nothing(self, orchestrator, workspace, sample_files, fake_archiver, test_config):
        await orchestrator.prepare(workspace)

        assert not (workspace / test_config.control_dir_name).exists()
        assert fake_archiver.calls == []
        assert all(r.content_hash == "" for r in (await orchestrator.prepare(workspace)).suspects.values())

    @pytest.mark.asyncio
    async def test_flags_limit_without_raising(self, orchestrator, workspace, sample_files):
        preview = await orchestrator.prepare(workspace, max_total_bytes=10)

        assert preview.exceeds_limit

    @pytest.mark.asyncio
    async def test_episode_bound(self, orchestrator, workspace, sample_files):
        preview = await orchestrator.prepare(workspace, max_episode_bytes=40)

        assert len(preview.episodes) > 1

    @pytest.mark.asyncio
    async def test_run_prepare(self, workspace, sample_files, test_config):
        preview = await run_prepare(workspace, test_config)

        assert preview.summary.new_count == len(sample_files)


class TestExecute:
    """End-to-end tests for Orchestrator.execute."""

    @pytest.mark.asyncio
    async def test_first_backup(self, orchestrator, workspace, delivery, sample_files, fake_archiver, test_config):
        result = await orchestrator.execute(workspace, delivery, password="pw")

        assert len(result.episodes) == 1
        episode = result.episodes[0]
        assert episode.status is EpisodeStatus.COMPLETED
        assert episode.package_path.exists()
        assert episode.package_path.name == f"{result.manifest.series_id}-E001.7z"
        assert fake_archiver.calls[0]["password"] == "pw"

        manifest_path = _manifest_path(workspace, test_config)
        assert result.manifest_path == manifest_path
        saved = json.loads(manifest_path.read_text(encoding="utf-8"))
        assert set(saved["files"]) == {str(p) for p in sample_files.values()}
        assert all(entry["contentHash"] for entry in saved["files"].values())
        assert saved["metadata"]["episodeCount"] == 1
        assert saved["episodeId"] == "E001"
        assert (delivery / f"{result.manifest.series_id}-manifest.json").exists()

    @pytest.mark.asyncio
    async def test_deduplicates(self, orchestrator, workspace, delivery, duplicate_files, fake_archiver):
        original, copy = duplicate_files

        result = await orchestrator.execute(workspace, delivery)

        assert fake_archiver.calls[0]["files"] == ["copy.txt"]
        assert [r.path for r in result.worker_result.metadata_update] == [str(original)]
        # Both paths are recorded; one hash index entry
        assert set(result.manifest.files) == {str(original), str(copy)}
        assert len(result.manifest.hash_to_file) == 1

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, orchestrator, workspace, delivery, sample_files, fake_archiver):
        first = await orchestrator.execute(workspace, delivery)
        second = await orchestrator.execute(workspace, delivery)

        assert second.episodes == []
        assert second.summary.changed_count == 0
        assert len(fake_archiver.calls) == 1
        assert second.manifest.series_id == first.manifest.series_id
        assert second.manifest.episode_count == 1
        assert second.manifest.hash_to_file == first.manifest.hash_to_file

    @pytest.mark.asyncio
    async def test_incremental_run(self, orchestrator, workspace, delivery, sample_files, fake_archiver):
        first = await orchestrator.execute(workspace, delivery)
        sample_files["txt"].write_text("Meeting notes, revised and considerably longer.\n")
        sample_files["csv"].unlink()
        added = workspace / "chapters" / "outline.md"
        added.write_text("1. Intro\n2. Method\n")

        second = await orchestrator.execute(workspace, delivery)

        assert second.summary.new_count == 1
        assert second.summary.modified_count == 1
        assert second.summary.deleted_count == 1
        assert fake_archiver.calls[1]["files"] == ["chapters/outline.md", "notes.txt"]
        assert second.episodes[0].id == "E002"
        assert second.episodes[0].package_path.name == f"{first.manifest.series_id}-E002.7z"
        assert str(sample_files["csv"]) not in second.manifest.files
        assert second.manifest.episode_count == 2

    @pytest.mark.asyncio
    async def test_moved_content_not_repackaged(self, orchestrator, workspace, delivery, sample_files, fake_archiver):
        await orchestrator.execute(workspace, delivery)
        moved = workspace / "archive" / "notes.txt"
        moved.parent.mkdir()
        sample_files["txt"].rename(moved)

        result = await orchestrator.execute(workspace, delivery)

        assert result.episodes == []
        assert result.manifest.hash_to_file
        assert str(moved) in result.manifest.hash_to_file.values()

    @pytest.mark.asyncio
    async def test_limit_checked_before_hashing(self, orchestrator, workspace, delivery, sample_files, monkeypatch, test_config):
        hashed = []

        async def _run(*args, **kwargs):
            hashed.append(args)

        monkeypatch.setattr(orchestrator._pool, "run", _run)

        with pytest.raises(LimitExceededError) as excinfo:
            await orchestrator.execute(workspace, delivery, max_total_bytes=10)

        assert excinfo.value.phase == "limit"
        assert hashed == []
        assert not _manifest_path(workspace, test_config).exists()

    @pytest.mark.asyncio
    async def test_packaging_failure_saves_nothing(self, workspace, delivery, sample_files, test_config):
        archiver = FakeArchiver(fail_at=2)
        orchestrator = Orchestrator(test_config, archiver)

        with pytest.raises(PackagingError) as excinfo:
            await orchestrator.execute(workspace, delivery, max_episode_bytes=60)

        assert excinfo.value.phase == "package"
        assert len(archiver.calls) == 2
        assert not _manifest_path(workspace, test_config).exists()

        # Nothing was recorded, so a retry sees the same changes
        preview = await orchestrator.prepare(workspace)
        assert preview.summary.new_count == len(sample_files)

    @pytest.mark.asyncio
    async def test_retry_after_failed_packaging(self, workspace, delivery, sample_files, test_config):
        """A run that fails mid-way leaves nothing that blocks the next one."""
        first = await Orchestrator(test_config, FakeArchiver()).execute(workspace, delivery)
        extra = workspace / "extra"
        extra.mkdir()
        for name in ("a", "b", "c"):
            (extra / f"{name}.txt").write_text(name * 40)

        with pytest.raises(PackagingError):
            await Orchestrator(test_config, FakeArchiver(fail_at=2)).execute(
                workspace, delivery, max_episode_bytes=60,
            )

        series_id = first.manifest.series_id
        assert sorted(p.name for p in delivery.glob("*.7z")) == [f"{series_id}-E001.7z"]

        retry = await Orchestrator(test_config, FakeArchiver()).execute(
            workspace, delivery, max_episode_bytes=60,
        )

        assert [e.id for e in retry.episodes] == ["E002", "E003", "E004"]
        assert all(e.package_path.exists() for e in retry.episodes)
        assert retry.manifest.episode_count == 4

    @pytest.mark.asyncio
    async def test_raising_archiver_is_packaging_error(self, workspace, delivery, sample_files, test_config):
        class _Crashing:
            def pack(self, files, target, root, password=None, on_progress=None):
                raise RuntimeError("segfault in archiver")

        with pytest.raises(PackagingError) as excinfo:
            await Orchestrator(test_config, _Crashing()).execute(workspace, delivery)

        assert excinfo.value.phase == "package"
        assert not _manifest_path(workspace, test_config).exists()

    @pytest.mark.asyncio
    async def test_foreign_error_wrapped_with_phase(self, orchestrator, workspace, delivery, sample_files, monkeypatch):
        def _broken_save(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(orchestrator._store, "save", _broken_save)

        with pytest.raises(BackupPhaseError) as excinfo:
            await orchestrator.execute(workspace, delivery)

        assert excinfo.value.phase == "save"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert str(excinfo.value).startswith("[save]")
        # Archives the manifest never recorded are not left behind
        assert list(delivery.glob("*.7z")) == []

    @pytest.mark.asyncio
    async def test_missing_workspace(self, orchestrator, temp_dir, delivery):
        with pytest.raises(BackupError) as excinfo:
            await orchestrator.execute(temp_dir / "nope", delivery)

        assert excinfo.value.phase == "scan"

    @pytest.mark.asyncio
    async def test_corrupted_manifest_starts_over(self, orchestrator, workspace, delivery, sample_files, test_config):
        path = _manifest_path(workspace, test_config)
        path.parent.mkdir()
        path.write_text("{ definitely not json")

        result = await orchestrator.execute(workspace, delivery)

        assert result.summary.new_count == len(sample_files)
        assert not ManifestStore(test_config).load(workspace).is_empty()

    @pytest.mark.asyncio
    async def test_run_execute(self, workspace, delivery, sample_files, test_config, fake_archiver):
        result = await run_execute(workspace, delivery, config=test_config, archiver=fake_archiver)

        assert len(result.episodes) == 1


def test_series_id_format():
    series_id = new_series_id()

    assert series_id.startswith("S")
    assert len(series_id) == len("S20240301120000-abcdef")
    assert new_series_id() != series_id


def test_cli_prepare(workspace, sample_files, test_config, capsys):
    assert main(["prepare", str(workspace)]) == 0

    assert f"{len(sample_files)} new" in capsys.readouterr().out
