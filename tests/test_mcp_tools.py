"""
Tests for the 11 MCP tools in fossilctl.mcp.tools.

Tools are called directly (not over the MCP protocol) through a mock
FastMCP that captures registrations.
"""

import io
import json

import pytest

from fossilctl.config import EnrichmentConfig, FossilConfig
from fossilctl.mcp.audit import AuditLogger
from fossilctl.mcp.tools import register_fossil_tools
from fossilctl.store import FossilStore


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


@pytest.fixture
def mcp_env(tmp_path):
    """Store, audit buffer and mock MCP with every tool registered."""
    store = FossilStore(tmp_path / "fossils").initialize()
    buf = io.StringIO()
    mcp = MockMCP()
    register_fossil_tools(mcp, store, audit=AuditLogger(output=buf))
    return {"mcp": mcp, "store": store, "audit": buf}


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    env["audit"].seek(0)
    return [json.loads(line) for line in env["audit"].read().splitlines() if line]


# ---------------------------------------------------------------------------
# Tool count
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_11_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == 11

    def test_all_tool_names(self, mcp_env):
        expected = {
            "fossil_add", "fossil_update", "fossil_enhance",
            "fossil_get", "fossil_query", "fossil_related", "fossil_summary",
            "fossil_snapshot", "fossil_export", "fossil_cleanup", "fossil_stats",
        }
        assert set(mcp_env["mcp"].tools.keys()) == expected


# ---------------------------------------------------------------------------
# WRITE
# ---------------------------------------------------------------------------


class TestFossilAdd:
    def test_created(self, mcp_env):
        r = call(mcp_env, "fossil_add", title="Plan", content="do things",
                 type="plan", tags="ops, release")
        assert r["status"] == "ok"
        assert r["created"] is True
        entry = mcp_env["store"].get_entry(r["id"])
        assert entry.tags == ["ops", "release"]
        assert entry.source == "llm"

    def test_deduplicated(self, mcp_env):
        first = call(mcp_env, "fossil_add", title="T", content="same")
        second = call(mcp_env, "fossil_add", title="T", content="same")
        assert second["id"] == first["id"]
        assert second["created"] is False
        assert second["version"] == 2

    def test_invalid(self, mcp_env):
        r = call(mcp_env, "fossil_add", title="T", content="x", type="bogus")
        assert r["status"] == "invalid"
        assert audit_records(mcp_env)[-1]["outcome"] == "invalid"

    def test_parent_link(self, mcp_env):
        parent = call(mcp_env, "fossil_add", title="P", content="p")["id"]
        child = call(mcp_env, "fossil_add", title="C", content="c", parent_id=parent)["id"]
        assert mcp_env["store"].get_entry(parent).children == [child]

    def test_audit_has_no_raw_content(self, mcp_env):
        secret_body = "x" * 500
        call(mcp_env, "fossil_add", title="Long", content=secret_body)
        record = audit_records(mcp_env)[-1]
        assert record["tool"] == "fossil_add"
        assert record["d"]["bytes"] == 500
        assert secret_body not in json.dumps(record)


class TestFossilUpdate:
    def test_ok(self, mcp_env):
        eid = call(mcp_env, "fossil_add", title="T", content="v1")["id"]
        r = call(mcp_env, "fossil_update", id=eid, content="v2", tags="a,b")
        assert r == {"status": "ok", "id": eid, "version": 2}
        assert mcp_env["store"].get_entry(eid).tags == ["a", "b"]

    def test_not_found(self, mcp_env):
        r = call(mcp_env, "fossil_update", id="fossil_missing_1", title="x")
        assert r["status"] == "not_found"

    def test_invalid(self, mcp_env):
        eid = call(mcp_env, "fossil_add", title="T", content="v1")["id"]
        assert call(mcp_env, "fossil_update", id=eid, title="  ")["status"] == "invalid"


class TestFossilEnhance:
    def test_keyword(self, mcp_env):
        eid = call(mcp_env, "fossil_add", title="T", content="automation workflow")["id"]
        r = call(mcp_env, "fossil_enhance", id=eid)
        assert r["status"] == "ok"
        assert r["semanticTags"]["semanticCategory"] == "automation"
        assert r["excerpt"] == "automation workflow"
        assert r["version"] == 2

    def test_unknown_provider(self, mcp_env):
        eid = call(mcp_env, "fossil_add", title="T", content="x")["id"]
        assert call(mcp_env, "fossil_enhance", id=eid, provider="magic")["status"] == "invalid"

    def test_not_found(self, mcp_env):
        assert call(mcp_env, "fossil_enhance", id="fossil_missing_1")["status"] == "not_found"

    def test_llm_from_config(self, tmp_path):
        cfg = FossilConfig(enrichment=EnrichmentConfig(provider="llm", llm_cmd="false"))
        store = FossilStore(tmp_path / "s", config=cfg).initialize()
        mcp = MockMCP()
        register_fossil_tools(mcp, store, audit=AuditLogger(output=io.StringIO()))
        eid = mcp.tools["fossil_add"](title="T", content="readme")["id"]
        r = mcp.tools["fossil_enhance"](id=eid)
        assert r["status"] == "ok"
        assert r["semanticTags"]["semanticCategory"] == "documentation"


# ---------------------------------------------------------------------------
# READ
# ---------------------------------------------------------------------------


class TestFossilGet:
    def test_with_history(self, mcp_env):
        eid = call(mcp_env, "fossil_add", title="T", content="v1")["id"]
        call(mcp_env, "fossil_update", id=eid, content="v2")
        r = call(mcp_env, "fossil_get", id=eid)
        assert r["status"] == "ok"
        assert r["entry"]["content"] == "v2"
        assert len(r["entry"]["previousVersions"]) == 1

    def test_not_found(self, mcp_env):
        assert call(mcp_env, "fossil_get", id="fossil_missing_1")["status"] == "not_found"

    def test_unsafe_id(self, mcp_env):
        assert call(mcp_env, "fossil_get", id="../index")["status"] == "not_found"


class TestFossilQuery:
    @pytest.fixture
    def populated(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="alpha", type="plan", tags="x")
        call(mcp_env, "fossil_add", title="B", content="beta", type="insight", tags="y")
        call(mcp_env, "fossil_add", title="C", content="gamma", type="plan", source="api")
        return mcp_env

    def test_type(self, populated):
        r = call(populated, "fossil_query", type="plan")
        assert [e["title"] for e in r["entries"]] == ["A", "C"]
        assert r["count"] == 2

    def test_tags_and_source(self, populated):
        assert call(populated, "fossil_query", tags="y")["count"] == 1
        assert [e["title"] for e in call(populated, "fossil_query", source="api")["entries"]] == ["C"]

    def test_no_history_in_results(self, populated):
        for entry in call(populated, "fossil_query")["entries"]:
            assert "previousVersions" not in entry

    def test_default_limit(self, mcp_env):
        for i in range(25):
            call(mcp_env, "fossil_add", title=f"t{i}", content=f"distinct body {i}")
        assert call(mcp_env, "fossil_query")["count"] == 20

    def test_negative_offset(self, populated):
        assert call(populated, "fossil_query", offset=-1)["status"] == "invalid"

    def test_date_range(self, populated):
        assert call(populated, "fossil_query", until="2000-01-01")["count"] == 0


class TestFossilRelated:
    def test_chain(self, mcp_env):
        a = call(mcp_env, "fossil_add", title="A", content="a")["id"]
        b = call(mcp_env, "fossil_add", title="B", content="b", parent_id=a)["id"]
        c = call(mcp_env, "fossil_add", title="C", content="c", parent_id=b)["id"]
        r = call(mcp_env, "fossil_related", id=a)
        assert {e["id"] for e in r["entries"]} == {b, c}
        assert call(mcp_env, "fossil_related", id=a, max_depth=1)["count"] == 1

    def test_unknown_is_empty(self, mcp_env):
        r = call(mcp_env, "fossil_related", id="fossil_missing_1")
        assert r == {"status": "ok", "entries": [], "count": 0}


class TestFossilSummary:
    def test_shape(self, mcp_env):
        call(mcp_env, "fossil_add", title="Decided", content="use files", type="decision")
        r = call(mcp_env, "fossil_summary")
        assert r["status"] == "ok"
        assert r["totalEntries"] == 1
        assert r["byType"] == {"decision": 1}
        assert r["keyInsights"] == ["Decided: use files..."]

    def test_filtered(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="a", type="plan")
        call(mcp_env, "fossil_add", title="B", content="b", type="result")
        assert call(mcp_env, "fossil_summary", type="result")["totalEntries"] == 1


# ---------------------------------------------------------------------------
# BATCH / HEALTH
# ---------------------------------------------------------------------------


class TestFossilSnapshot:
    def test_ok(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="a")
        r = call(mcp_env, "fossil_snapshot", name="nightly")
        assert r["status"] == "ok"
        assert r["entryCount"] == 1

    def test_empty_name(self, mcp_env):
        assert call(mcp_env, "fossil_snapshot", name="")["status"] == "invalid"


class TestFossilExport:
    def test_markdown(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="a")
        r = call(mcp_env, "fossil_export", format="markdown")
        assert r["status"] == "ok"
        assert r["path"].endswith("fossil-export-latest.md")

    def test_unknown_format(self, mcp_env):
        assert call(mcp_env, "fossil_export", format="xml")["status"] == "invalid"


class TestFossilCleanup:
    def test_dry_run(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="a")
        r = call(mcp_env, "fossil_cleanup", dry_run=True)
        assert r["status"] == "ok"
        assert r["duplicate_groups"] == 0
        assert audit_records(mcp_env)[-1]["d"] == {"dry_run": True, "groups": 0, "removed": 0}


class TestFossilStats:
    def test_counts(self, mcp_env):
        call(mcp_env, "fossil_add", title="A", content="a", tags="k")
        r = call(mcp_env, "fossil_stats")
        assert r["status"] == "ok"
        assert r["totalEntries"] == 1
        assert r["byTag"] == {"k": 1}
        assert r["bySource"] == {"llm": 1}


class TestAuditTrail:
    def test_one_record_per_call(self, mcp_env):
        call(mcp_env, "fossil_stats")
        call(mcp_env, "fossil_get", id="fossil_missing_1")
        records = audit_records(mcp_env)
        assert [r["tool"] for r in records] == ["fossil_stats", "fossil_get"]
        assert [r["outcome"] for r in records] == ["ok", "not_found"]
        assert records[0]["rid"] != records[1]["rid"]
        assert records[0]["root"] == str(mcp_env["store"].root)
