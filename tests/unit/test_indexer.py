import asyncio
import json
from pathlib import Path

from vault_assistant.config import IndexConfig
from vault_assistant.ingest import indexer as indexer_module
from vault_assistant.ingest.indexer import VaultIndexer
from vault_assistant.ingest.store import ChunkStore, read_snapshot
from vault_assistant.ingest.vault import FileSystemVault


def _make_vault(root: Path) -> FileSystemVault:
    vault = FileSystemVault(root)
    vault.write("Notes/A.md", "# Intro\nHello world")
    vault.write("Notes/B.md", "## Todo\nTODO buy milk\n## Done\nwashed car")
    vault.write("Journal.md", "plain text without headings")
    vault.write("image.png", "not markdown")
    return vault


def _indexer(vault: FileSystemVault, **config: object) -> VaultIndexer:
    return VaultIndexer(
        vault,
        ChunkStore(),
        vault.root / ".vault-assistant/index/index.json",
        config=IndexConfig(save_debounce_seconds=0.05, **config),
    )


def _signature(indexer: VaultIndexer) -> set[tuple[str, str, tuple[str, ...], str]]:
    return {(c.id, c.file, tuple(c.headings), c.content) for c in indexer.store.chunks()}


def test_rebuild_and_incremental_updates_agree(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    full = _indexer(vault)
    incremental = _indexer(vault)

    async def scenario() -> None:
        await full.rebuild()
        for path in vault.list_files():
            await incremental.handle_modify(path)
        await incremental.shutdown()

    asyncio.run(scenario())

    assert _signature(full) == _signature(incremental)
    assert {c.file for c in full.store.chunks()} == {"Notes/A.md", "Notes/B.md", "Journal.md"}


def test_rapid_modifications_produce_one_snapshot_write(tmp_path: Path, monkeypatch) -> None:
    vault = _make_vault(tmp_path)
    indexer = _indexer(vault)
    writes: list[list[str]] = []
    original = indexer_module.write_snapshot

    def counting(path, chunks):
        writes.append([chunk.content for chunk in chunks])
        original(path, chunks)

    monkeypatch.setattr(indexer_module, "write_snapshot", counting)

    async def scenario() -> None:
        for version in range(5):
            vault.write("Notes/A.md", f"# Intro\nversion {version}")
            await indexer.handle_modify("Notes/A.md")
        assert indexer.save_pending
        await asyncio.sleep(0.3)

    asyncio.run(scenario())

    assert len(writes) == 1
    assert writes[0] == ["version 4"]
    saved = read_snapshot(indexer.snapshot_path)
    assert [chunk.content for chunk in saved] == ["version 4"]


def test_corrupt_snapshot_triggers_rebuild(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    indexer = _indexer(vault)
    indexer.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
    indexer.snapshot_path.write_text("{not json", encoding="utf-8")

    asyncio.run(indexer.initialize())

    assert len(indexer.store) > 0
    records = json.loads(indexer.snapshot_path.read_text(encoding="utf-8"))
    assert {record["file"] for record in records} == {"Notes/A.md", "Notes/B.md", "Journal.md"}
    assert set(records[0]) == {"id", "file", "headings", "content", "updated"}


def test_snapshot_is_loaded_instead_of_rebuilding(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    first = _indexer(vault)
    asyncio.run(first.rebuild())

    vault.write("Notes/C.md", "# Later\nadded after the snapshot")
    second = _indexer(vault)
    asyncio.run(second.initialize())

    assert "Notes/C.md" not in second.store.files()
    assert _signature(first) == _signature(second)


def test_delete_and_rename_update_store(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    indexer = _indexer(vault)

    async def scenario() -> None:
        await indexer.rebuild()
        (vault.root / "Notes/A.md").rename(vault.root / "Notes/Renamed.md")
        await indexer.handle_rename("Notes/Renamed.md", "Notes/A.md")
        vault.delete("Journal.md")
        await indexer.handle_delete("Journal.md")
        await indexer.shutdown()

    asyncio.run(scenario())

    files = set(indexer.store.files())
    assert files == {"Notes/B.md", "Notes/Renamed.md"}
    assert indexer.store.chunks_for("Notes/Renamed.md")[0].id == "Notes/Renamed.md::0"


def test_excluded_and_hidden_documents_are_skipped(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    vault.write("Private/secret.md", "# Secret\ncode words")
    vault.write(".vault-assistant/backups/copy.md", "# Backup\nold text")
    indexer = _indexer(vault, exclude_folders=["Private"])

    async def scenario() -> None:
        await indexer.rebuild()
        await indexer.handle_modify("Private/secret.md")
        await indexer.handle_modify(".vault-assistant/backups/copy.md")

    asyncio.run(scenario())

    assert "Private/secret.md" not in indexer.store.files()
    assert ".vault-assistant/backups/copy.md" not in indexer.store.files()


def test_disabled_index_ignores_changes_but_serves_mentions(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    indexer = _indexer(vault, enabled=False)

    async def scenario() -> list:
        await indexer.initialize()
        await indexer.handle_modify("Notes/A.md")
        return await indexer.ensure_file_chunks("Notes/B.md")

    chunks = asyncio.run(scenario())

    assert len(indexer.store) == 0
    assert [chunk.headings for chunk in chunks] == [["Todo"], ["Done"]]
    assert not indexer.snapshot_path.exists()


def test_document_listing_follows_file_events(tmp_path: Path) -> None:
    vault = _make_vault(tmp_path)
    indexer = _indexer(vault)

    async def scenario() -> None:
        await indexer.rebuild()
        (vault.root / "Journal.md").rename(vault.root / "Diary.md")
        await indexer.handle_rename("Diary.md", "Journal.md")
        vault.delete("Notes/A.md")
        await indexer.handle_delete("Notes/A.md")
        await indexer.handle_modify("image.png")
        await indexer.shutdown()

    asyncio.run(scenario())

    assert sorted(indexer.document_paths()) == ["Diary.md", "Notes/B.md"]
