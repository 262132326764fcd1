import asyncio
import json
from pathlib import Path

from instancer.utils.content_cache import ContentCacheEntry, ContentLookupCache


def test_missing_file_is_an_empty_cache(tmp_path: Path) -> None:
    cache = ContentLookupCache(tmp_path / "mod_cache.json")
    assert cache.lookup("sodium.jar", 10) is None


def test_reads_existing_cache_format(tmp_path: Path) -> None:
    path = tmp_path / "mod_cache.json"
    path.write_text(
        json.dumps(
            {
                "sodium.jar-1024": {
                    "title": "Sodium",
                    "icon": "https://cdn.test/sodium.png",
                    "version": "0.5.3",
                    "projectId": "AANobbMI",
                    "versionId": "abc",
                    "hash": "deadbeef",
                }
            }
        )
    )
    cache = ContentLookupCache(path)

    entry = cache.lookup("sodium.jar", 1024)
    assert entry is not None
    assert entry.title == "Sodium"
    assert entry.project_id == "AANobbMI"
    assert cache.lookup_hash("deadbeef") == entry
    assert cache.lookup("sodium.jar", 1025) is None


def test_record_merges_fields(tmp_path: Path) -> None:
    cache = ContentLookupCache(tmp_path / "mod_cache.json")
    cache.record("mod.jar", 5, ContentCacheEntry(sha1="aa"))
    merged = cache.record("mod.jar", 5, ContentCacheEntry(project_id="P", title="Mod"))

    assert merged == ContentCacheEntry(sha1="aa", project_id="P", title="Mod")
    assert cache.lookup_hash("aa") == merged


def test_save_merges_with_entries_written_by_others(tmp_path: Path) -> None:
    path = tmp_path / "mod_cache.json"
    ours = ContentLookupCache(path)
    theirs = ContentLookupCache(path)
    ours.load()
    theirs.load()

    ours.record("a.jar", 1, ContentCacheEntry(sha1="11"))
    theirs.record("b.jar", 2, ContentCacheEntry(sha1="22"))
    asyncio.run(theirs.save())
    asyncio.run(ours.save())

    data = json.loads(path.read_text())
    assert data["a.jar-1"] == {"hash": "11"}
    assert data["b.jar-2"] == {"hash": "22"}
    assert ours.lookup("b.jar", 2) is not None


def test_corrupt_cache_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "mod_cache.json"
    path.write_text("{not json")
    cache = ContentLookupCache(path)

    assert cache.lookup("a.jar", 1) is None
    cache.record("a.jar", 1, ContentCacheEntry(title="A"))
    asyncio.run(cache.save())

    assert json.loads(path.read_text()) == {"a.jar-1": {"title": "A"}}


def test_save_without_changes_does_not_create_file(tmp_path: Path) -> None:
    path = tmp_path / "mod_cache.json"
    asyncio.run(ContentLookupCache(path).save())
    assert not path.exists()
