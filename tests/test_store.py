"""
Tests for fossilctl.store — insert pipeline, versioning, queries, traversal.

Covers the store properties: idempotent add, hash determinism, fuzzy
dedup on same title, version monotonicity, bounded cyclic traversal,
and best-effort bulk scans.
"""

import json

import pytest

from fossilctl.config import DedupConfig, FossilConfig
from fossilctl.enrichment import KeywordEnrichmentProvider, NullEnrichmentProvider
from fossilctl.store import FossilStore
from fossilctl.types import (
    EntryValidationError,
    FossilEntry,
    FossilQuery,
    MalformedFossilError,
    content_hash,
)


@pytest.fixture
def store(tmp_path):
    return FossilStore(tmp_path / ".context-fossil").initialize()


def _files(store):
    return sorted(p.name for p in store.entries_dir.glob("*.json"))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestInitialize:
    def test_layout(self, store):
        assert store.entries_dir.is_dir()
        assert store.snapshots_dir.is_dir()
        assert store.exports_dir.is_dir()
        data = json.loads(store.index_path.read_text(encoding="utf-8"))
        assert data["entries"] == {} and data["version"] == "1.0.0"

    def test_idempotent(self, store):
        store.add_entry({"title": "t", "content": "c"})
        store.initialize()
        assert len(store.load_index()) == 1

    def test_root_from_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        s = FossilStore().initialize()
        assert (tmp_path / ".context-fossil" / "index.json").exists()
        assert s.root.name == ".context-fossil"


# ---------------------------------------------------------------------------
# add_entry
# ---------------------------------------------------------------------------


class TestAddEntry:
    def test_creates_entry(self, store):
        e = store.add_entry({
            "type": "plan", "title": "Roadmap", "content": "step 1",
            "tags": ["q1"], "source": "llm",
        })
        assert e.id.startswith("fossil_")
        assert e.version == 1
        assert e.created_at and e.created_at == e.updated_at
        assert e.metadata["contentHash"] == content_hash("step 1", "plan", "Roadmap")
        assert _files(store) == [f"{e.id}.json"]
        index = store.load_index()
        assert index.types == {"plan": [e.id]}
        assert index.tags == {"q1": [e.id]}

    def test_accepts_entry_object(self, store):
        e = store.add_entry(FossilEntry(type="result", title="t", content="c"))
        assert store.get_entry(e.id).type == "result"

    def test_identical_add_is_idempotent(self, store):
        draft = {"type": "knowledge", "title": "X", "content": "hello"}
        first = store.add_entry(draft)
        second = store.add_entry(draft)
        assert second.id == first.id
        assert second.version == 2
        assert len(second.previous_versions) == 1
        assert len(_files(store)) == 1

    def test_similar_same_title_updates(self, store):
        first = store.add_entry({"title": "A", "content": "The quick brown fox"})
        second = store.add_entry({"title": "A", "content": "The quick brown fox."})
        assert second.id == first.id
        assert second.version == 2
        assert second.content == "The quick brown fox."
        assert second.metadata["similarityScore"] == 95.0
        assert second.metadata["contentHash"] == content_hash(
            "The quick brown fox.", "knowledge", "A")
        assert len(_files(store)) == 1

    def test_similar_content_other_title_creates(self, store):
        store.add_entry({"title": "A", "content": "The quick brown fox"})
        store.add_entry({"title": "B", "content": "The quick brown fox."})
        assert len(_files(store)) == 2

    def test_dissimilar_same_title_creates(self, store):
        store.add_entry({"title": "A", "content": "The quick brown fox"})
        store.add_entry({"title": "A", "content": "Completely unrelated text here"})
        assert len(_files(store)) == 2

    def test_threshold_override(self, store):
        store.add_entry({"title": "A", "content": "abcdefghij"})
        e = store.add_entry({"title": "A", "content": "abcdeXYZWV"}, similarity_threshold=40)
        assert e.version == 2

    def test_dedup_disabled(self, tmp_path):
        cfg = FossilConfig(dedup=DedupConfig(enabled=False))
        s = FossilStore(tmp_path / "s", config=cfg).initialize()
        s.add_entry({"title": "A", "content": "The quick brown fox"})
        s.add_entry({"title": "A", "content": "The quick brown fox."})
        assert len(_files(s)) == 2

    def test_invalid_draft_writes_nothing(self, store):
        with pytest.raises(EntryValidationError):
            store.add_entry({"title": "", "content": "c"})
        with pytest.raises(EntryValidationError):
            store.add_entry({"title": "t", "content": "c", "type": "memo"})
        assert _files(store) == []
        assert len(store.load_index()) == 0

    def test_bad_link_fields_write_nothing(self, store):
        with pytest.raises(EntryValidationError, match="parentId"):
            store.add_entry({"title": "A", "content": "x", "parentId": 123}, link_to_parent=True)
        with pytest.raises(EntryValidationError, match="children"):
            store.add_entry({"title": "B", "content": "y", "children": [1, None]})
        assert _files(store) == []
        assert len(store.load_index()) == 0

    def test_draft_with_id_rejected(self, store):
        with pytest.raises(EntryValidationError, match="id"):
            store.add_entry({"id": "fossil_x", "title": "t", "content": "c"})

    def test_link_to_parent(self, store):
        parent = store.add_entry({"title": "parent", "content": "p"})
        child = store.add_entry(
            {"title": "child", "content": "c", "parentId": parent.id},
            link_to_parent=True,
        )
        reloaded = store.get_entry(parent.id)
        assert reloaded.children == [child.id]
        assert reloaded.version == 2
        assert child.parent_id == parent.id

    def test_parent_not_linked_by_default(self, store):
        parent = store.add_entry({"title": "parent", "content": "p"})
        store.add_entry({"title": "child", "content": "c", "parentId": parent.id})
        assert store.get_entry(parent.id).children == []


# ---------------------------------------------------------------------------
# get / update
# ---------------------------------------------------------------------------


class TestGetEntry:
    def test_unknown_is_none(self, store):
        assert store.get_entry("fossil_nope_1") is None

    def test_unsafe_id_is_none(self, store):
        assert store.get_entry("../index") is None
        assert store.get_entry("") is None

    def test_corrupt_file_raises(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        (store.entries_dir / f"{e.id}.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(MalformedFossilError):
            store.get_entry(e.id)


class TestUpdateEntry:
    def test_version_monotonic(self, store):
        e = store.add_entry({"title": "t", "content": "v1"})
        for n in range(2, 6):
            prior = store.get_entry(e.id)
            updated = store.update_entry(e.id, {"content": f"v{n}"})
            assert updated.version == prior.version + 1
            assert len(updated.previous_versions) == len(prior.previous_versions) + 1
        assert updated.version == 5

    def test_history_entries_have_no_nested_history(self, store):
        e = store.add_entry({"title": "t", "content": "v1"})
        store.update_entry(e.id, {"content": "v2"})
        updated = store.update_entry(e.id, {"content": "v3"})
        for snap in updated.previous_versions:
            assert "previousVersions" not in snap
        assert [s["content"] for s in updated.previous_versions] == ["v1", "v2"]

    def test_immutable_fields_ignored(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        updated = store.update_entry(e.id, {
            "id": "fossil_other", "createdAt": "1999", "version": 99, "content": "d",
        })
        assert updated.id == e.id
        assert updated.created_at == e.created_at
        assert updated.version == 2

    def test_updated_at_advances(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        updated = store.update_entry(e.id, {"content": "d"})
        assert updated.updated_at >= e.updated_at

    def test_hash_tracks_content(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        updated = store.update_entry(e.id, {"content": "d", "title": "u"})
        assert updated.metadata["contentHash"] == content_hash("d", "knowledge", "u")
        assert store.find_by_content_hash(content_hash("d", "knowledge", "u")).id == e.id

    def test_tags_rebucketed(self, store):
        e = store.add_entry({"title": "t", "content": "c", "tags": ["old"]})
        store.update_entry(e.id, {"tags": ["new"]})
        index = store.load_index()
        assert "old" not in index.tags
        assert index.tags["new"] == [e.id]

    def test_camel_case_keys(self, store):
        parent = store.add_entry({"title": "p", "content": "p"})
        e = store.add_entry({"title": "t", "content": "c"})
        updated = store.update_entry(e.id, {"parentId": parent.id})
        assert updated.parent_id == parent.id

    def test_unknown_id(self, store):
        assert store.update_entry("fossil_nope_1", {"content": "x"}) is None

    def test_invalid_update_rejected(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        with pytest.raises(EntryValidationError):
            store.update_entry(e.id, {"type": "memo"})
        assert store.get_entry(e.id).version == 1


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.fixture
def mixed(store):
    for i in range(12):
        store.add_entry({"type": "plan", "title": f"plan {i}", "content": f"plan body {i}",
                         "tags": ["roadmap"] if i % 2 else ["ops"]})
    for i in range(3):
        store.add_entry({"type": "insight", "title": f"insight {i}",
                         "content": f"Lesson about caching {i}", "source": "llm"})
    return store


class TestQueryEntries:
    def test_type_with_pagination(self, mixed):
        page = mixed.query_entries({"type": "plan", "limit": 10, "offset": 0})
        assert len(page) == 10
        assert all(e.type == "plan" for e in page)

    def test_offset(self, mixed):
        rest = mixed.query_entries(FossilQuery(type="plan", limit=10, offset=10))
        assert [e.title for e in rest] == ["plan 10", "plan 11"]

    def test_insertion_order(self, mixed):
        titles = [e.title for e in mixed.query_entries(FossilQuery(type="insight"))]
        assert titles == ["insight 0", "insight 1", "insight 2"]

    def test_tags_and_source(self, mixed):
        assert len(mixed.query_entries(FossilQuery(tags=["roadmap"]))) == 6
        assert len(mixed.query_entries(FossilQuery(source="llm"))) == 3

    def test_search_case_insensitive(self, mixed):
        found = mixed.query_entries(FossilQuery(search="CACHING"))
        assert len(found) == 3

    def test_search_matches_tags(self, mixed):
        assert len(mixed.query_entries(FossilQuery(search="roadm", limit=100))) == 6

    def test_search_before_pagination(self, mixed):
        found = mixed.query_entries(FossilQuery(search="caching", limit=2, offset=1))
        assert [e.title for e in found] == ["insight 1", "insight 2"]

    def test_default_query(self, mixed):
        assert len(mixed.query_entries()) == 15


class TestFindHelpers:
    def test_find_by_content_hash(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        assert store.find_by_content_hash(e.metadata["contentHash"]).id == e.id
        assert store.find_by_content_hash("000000000000") is None

    def test_find_similar_sorted(self, tmp_path):
        cfg = FossilConfig(dedup=DedupConfig(enabled=False))
        s = FossilStore(tmp_path / "s", config=cfg).initialize()
        s.add_entry({"title": "T", "content": "abcdefghij"})
        s.add_entry({"title": "T", "content": "abcdefghiX"})
        s.add_entry({"title": "Other", "content": "abcdefghij"})
        matches = s.find_similar("T", "abcdefghij", threshold=50)
        assert [score for _, score in matches] == [100.0, 90.0]
        assert all(e.title == "T" for e, _ in matches)


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


class TestRelatedEntries:
    def _chain(self, store):
        root = store.add_entry({"title": "root", "content": "r"})
        mid = store.add_entry({"title": "mid", "content": "m", "parentId": root.id},
                              link_to_parent=True)
        leaf = store.add_entry({"title": "leaf", "content": "l", "parentId": mid.id},
                               link_to_parent=True)
        return root, mid, leaf

    def test_children_and_parents(self, store):
        root, mid, leaf = self._chain(store)
        assert {e.id for e in store.get_related_entries(mid.id)} == {root.id, leaf.id}

    def test_depth_bound(self, store):
        root, mid, leaf = self._chain(store)
        assert [e.id for e in store.get_related_entries(root.id, max_depth=1)] == [mid.id]
        assert [e.id for e in store.get_related_entries(root.id, max_depth=2)] == [mid.id, leaf.id]

    def test_excludes_start(self, store):
        root, _, _ = self._chain(store)
        assert root.id not in {e.id for e in store.get_related_entries(root.id)}

    def test_cycle_terminates(self, store):
        a = store.add_entry({"title": "a", "content": "a"})
        b = store.add_entry({"title": "b", "content": "b"})
        store.update_entry(a.id, {"children": [b.id], "parentId": b.id})
        store.update_entry(b.id, {"children": [a.id], "parentId": a.id})
        related = store.get_related_entries(a.id, max_depth=10)
        assert [e.id for e in related] == [b.id]

    def test_dangling_links_skipped(self, store):
        a = store.add_entry({"title": "a", "content": "a", "children": ["fossil_gone_1"]})
        assert store.get_related_entries(a.id) == []

    def test_non_string_links_on_disk_skipped(self, store):
        a = store.add_entry({"title": "a", "content": "a"})
        b = store.add_entry({"title": "b", "content": "b"})
        raw = store.get_entry(a.id)
        raw.children = [1, None, b.id]
        raw.parent_id = 42
        store.save_entry(raw)
        assert [e.id for e in store.get_related_entries(a.id)] == [b.id]

    def test_unknown_start(self, store):
        assert store.get_related_entries("fossil_nope_1") == []
        assert store.get_entry(123) is None


# ---------------------------------------------------------------------------
# Bulk scans and reporting
# ---------------------------------------------------------------------------


class TestGetAllEntries:
    def test_skips_corrupt_file(self, store, caplog):
        good = store.add_entry({"title": "good", "content": "g"})
        bad = store.add_entry({"title": "bad", "content": "b"})
        (store.entries_dir / f"{bad.id}.json").write_text("not json", encoding="utf-8")
        with caplog.at_level("WARNING"):
            ids = [e.id for e in store.get_all_entries()]
        assert ids == [good.id]
        assert bad.id in caplog.text

    def test_skips_missing_file(self, store):
        e = store.add_entry({"title": "t", "content": "c"})
        (store.entries_dir / f"{e.id}.json").unlink()
        assert list(store.get_all_entries()) == []


class TestStatistics:
    def test_counts(self, mixed):
        stats = mixed.get_statistics()
        assert stats["totalEntries"] == 15
        assert stats["byType"] == {"plan": 12, "insight": 3}
        assert stats["bySource"] == {"manual": 12, "llm": 3}
        assert stats["byTag"] == {"ops": 6, "roadmap": 6}
        assert stats["storageSize"] > 0
        assert stats["lastUpdated"]

    def test_empty_store(self, store):
        stats = store.get_statistics()
        assert stats["totalEntries"] == 0
        assert stats["storageSize"] == 0


class TestContextSummary:
    def test_shape(self, mixed):
        summary = json.loads(mixed.generate_context_summary())
        assert summary["totalEntries"] == 15
        assert summary["byType"] == {"plan": 12, "insight": 3}
        assert len(summary["recentEntries"]) == 10
        assert summary["recentEntries"][0]["title"] == "plan 0"

    def test_key_insights_from_most_recent(self, mixed):
        summary = json.loads(mixed.generate_context_summary())
        assert len(summary["keyInsights"]) == 3
        assert all(k.endswith("...") for k in summary["keyInsights"])
        assert any(k.startswith("insight 2: Lesson about caching 2") for k in summary["keyInsights"])

    def test_insight_content_truncated(self, store):
        store.add_entry({"type": "decision", "title": "D", "content": "x" * 500})
        summary = json.loads(store.generate_context_summary())
        assert summary["keyInsights"] == ["D: " + "x" * 100 + "..."]

    def test_filtered(self, mixed):
        summary = json.loads(mixed.generate_context_summary({"type": "insight"}))
        assert summary["totalEntries"] == 3


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


class TestEnhanceEntry:
    def test_keyword_enrichment_versioned(self, store):
        e = store.add_entry({
            "title": "CI", "content": "The test workflow failed with an error",
            "tags": ["ci"],
        })
        updated = store.enhance_entry_with_tags(e.id, KeywordEnrichmentProvider())
        assert updated.version == 2
        semantic = updated.metadata["semanticTags"]
        assert semantic["semanticCategory"] == "testing"
        assert semantic["sentiment"] == "negative"
        assert "concept:testing" in updated.tags
        assert "category:testing" in updated.tags
        assert updated.tags[0] == "ci"
        assert updated.metadata["excerpt"] == "The test workflow failed with an error"
        assert "relationships" in updated.metadata

    def test_tags_not_duplicated(self, store):
        e = store.add_entry({"title": "T", "content": "automation notes"})
        store.enhance_entry_with_tags(e.id, KeywordEnrichmentProvider())
        again = store.enhance_entry_with_tags(e.id, KeywordEnrichmentProvider())
        assert again.tags.count("concept:automation") == 1
        assert again.version == 3

    def test_null_provider(self, store):
        e = store.add_entry({"title": "T", "content": "plain"})
        updated = store.enhance_entry_with_tags(e.id, NullEnrichmentProvider())
        assert updated.metadata["relationships"] == {}
        assert updated.tags == ["category:general"]

    def test_default_provider_from_config(self, store):
        e = store.add_entry({"title": "T", "content": "readme documentation"})
        updated = store.enhance_entry_with_tags(e.id)
        assert updated.metadata["semanticTags"]["semanticCategory"] == "documentation"

    def test_unknown_id(self, store):
        assert store.enhance_entry_with_tags("fossil_nope_1") is None
