"""
Tests for attnctl.config — defaults, validate() ranges, load_config().

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import json

import pytest

from attnctl.config import (
    AggregateConfig,
    AttentionConfig,
    EnrichConfig,
    IntentConfig,
    LockConfig,
    PreferenceConfig,
    TaskConfig,
    ThemeConfig,
    ValidationError,
    load_config,
)


class TestDefaults:
    def test_documented_defaults(self):
        cfg = AttentionConfig()
        assert cfg.tasks.dormancy_days == 14
        assert cfg.tasks.bankruptcy_ceiling == 30
        assert cfg.preferences.min_corrections == 3
        assert cfg.preferences.min_agreement == 0.7
        assert cfg.enrich.timeout_s == 60.0
        assert cfg.lock.stale_after_hours is None

    def test_defaults_valid(self):
        assert AttentionConfig().validate() == []


class TestSectionValidation:
    def test_window_size_zero(self):
        errors = AggregateConfig(window_size=0).validate()
        assert any("window_size" in e for e in errors)

    def test_min_sessions_below_two(self):
        errors = AggregateConfig(min_sessions=1).validate()
        assert any("min_sessions" in e for e in errors)

    def test_threshold_above_one(self):
        errors = ThemeConfig(keyword_threshold=1.5).validate()
        assert any("keyword_threshold" in e for e in errors)

    def test_wrong_type_reported(self):
        errors = TaskConfig(dormancy_days="14").validate()
        assert any("expected int" in e for e in errors)

    def test_agreement_out_of_range(self):
        errors = PreferenceConfig(min_agreement=-0.1).validate()
        assert any("min_agreement" in e for e in errors)

    def test_stale_lock_enabled_range(self):
        assert LockConfig(stale_after_hours=4).validate() == []
        assert LockConfig(stale_after_hours=0).validate() != []

    def test_enrich_timeout(self):
        assert EnrichConfig(timeout_s=0).validate() != []
        assert EnrichConfig(timeout_s=5).validate() == []

    def test_intent_thresholds(self):
        assert IntentConfig(min_occurrences=1).validate() != []
        assert IntentConfig(max_proposals=0).validate() != []
        assert IntentConfig(min_occurrences=2, min_distinct_days=1).validate() == []

    def test_top_level_collects_all(self):
        cfg = AttentionConfig(
            tasks=TaskConfig(dormancy_days=0),
            themes=ThemeConfig(min_size=1),
        )
        errors = cfg.validate()
        assert len(errors) == 2


class TestLoadConfig:
    def test_none_gives_defaults(self):
        assert load_config(None).tasks.dormancy_days == 14

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "absent.json"))
        assert cfg.aggregate.window_size == 50

    def test_invalid_json_gives_defaults(self, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(str(p)).tasks.bankruptcy_ceiling == 30

    def test_unknown_key_gives_defaults(self, tmp_path):
        p = tmp_path / "unknown.json"
        p.write_text(json.dumps({"tasks": {"no_such_knob": 1}}), encoding="utf-8")
        assert load_config(str(p)).tasks.dormancy_days == 14

    def test_partial_sections(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({
            "tasks": {"dormancy_days": 7},
            "enrich": {"llm_cmd": "claude -p", "timeout_s": 30.0},
        }), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.tasks.dormancy_days == 7
        assert cfg.tasks.bankruptcy_ceiling == 30
        assert cfg.enrich.llm_cmd == "claude -p"
        assert cfg.themes.min_signal_score == 8.0

    def test_intents_section(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"intents": {"max_proposals": 3}}), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.intents.max_proposals == 3
        assert cfg.intents.min_occurrences == 3

    def test_strict_raises(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"tasks": {"dormancy_days": 0}}), encoding="utf-8")
        with pytest.raises(ValidationError, match="dormancy_days"):
            load_config(str(p), strict=True)

    def test_non_strict_tolerates_out_of_range(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"tasks": {"dormancy_days": 0}}), encoding="utf-8")
        assert load_config(str(p)).tasks.dormancy_days == 0
