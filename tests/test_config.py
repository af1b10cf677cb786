"""
Tests for fossilctl.config — defaults, validation, file loading.
"""

import json

import pytest

from fossilctl.config import (
    ConsolidateConfig,
    DedupConfig,
    EnrichmentConfig,
    FossilConfig,
    ValidationError,
    load_config,
)


class TestDefaults:
    def test_store_defaults(self):
        cfg = FossilConfig()
        assert cfg.store.root == ".context-fossil"
        assert cfg.store.index_version == "1.0.0"

    def test_independent_thresholds(self):
        cfg = FossilConfig()
        assert cfg.dedup.similarity_threshold == 60.0
        assert cfg.consolidate.similarity_threshold == 80.0

    def test_export_and_summary(self):
        cfg = FossilConfig()
        assert cfg.export.default_limit == 100
        assert cfg.export.stable is True
        assert (cfg.summary.recent_limit, cfg.summary.insight_window,
                cfg.summary.excerpt_chars) == (10, 5, 100)

    def test_defaults_validate(self):
        assert FossilConfig().validate() == []


class TestValidation:
    def test_threshold_out_of_range(self):
        errors = DedupConfig(similarity_threshold=150).validate()
        assert errors and "dedup.similarity_threshold" in errors[0]

    def test_threshold_wrong_type(self):
        errors = ConsolidateConfig(similarity_threshold="high").validate()
        assert errors and "expected int/float" in errors[0]

    def test_llm_provider_needs_command(self):
        errors = EnrichmentConfig(provider="llm").validate()
        assert any("llm_cmd" in e for e in errors)

    def test_unknown_provider(self):
        errors = EnrichmentConfig(provider="magic").validate()
        assert any("unknown provider" in e for e in errors)


class TestLoadConfig:
    def test_none_gives_defaults(self):
        assert load_config(None) == FossilConfig()

    def test_missing_file_falls_back(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == FossilConfig()

    def test_invalid_json_falls_back(self, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(str(p)) == FossilConfig()

    def test_unknown_key_falls_back(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"dedup": {"bogus": 1}}), encoding="utf-8")
        assert load_config(str(p)) == FossilConfig()

    def test_partial_sections(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({
            "store": {"root": "/data/fossils"},
            "consolidate": {"fuzzy": True},
        }), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.store.root == "/data/fossils"
        assert cfg.consolidate.fuzzy is True
        assert cfg.dedup.similarity_threshold == 60.0

    def test_strict_raises(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"dedup": {"similarity_threshold": -5}}), encoding="utf-8")
        assert load_config(str(p)).dedup.similarity_threshold == -5
        with pytest.raises(ValidationError, match="dedup.similarity_threshold"):
            load_config(str(p), strict=True)
