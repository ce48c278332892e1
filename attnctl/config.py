"""
Attention Engine Configuration

Configuration dataclasses for attnctl: store, lock, aggregation window,
theme clustering, task scoring, preference learning, intent proposals and
enrichment.
Includes load_config() for reading a JSON config file with silent fallback
to compiled defaults.

All thresholds are tunables; the defaults are the documented ones
(dormancy 14 days, bankruptcy ceiling 30, 3 corrections at 0.7 agreement,
60 s enrichment timeout).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".attention/attention.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return []


@dataclass
class LockConfig:
    """Session lock configuration.

    ``stale_after_hours`` is disabled (None) by default: a held lock only
    goes away through release or an audited force-clear.
    """
    stale_after_hours: Optional[float] = None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.stale_after_hours is not None:
            _check_range(errors, "lock.stale_after_hours",
                          float(self.stale_after_hours), 0.01, 8760.0)
        return errors


@dataclass
class AggregateConfig:
    """Cross-session recurrence scan configuration."""
    window_size: int = 50
    co_occurring_cap: int = 5
    min_sessions: int = 2
    ignored_domains: List[str] = field(
        default_factory=lambda: ["localhost", "127.0.0.1", "newtab"]
    )
    distinguishing_query_keys: List[str] = field(
        default_factory=lambda: ["id", "v", "p", "q", "page", "article"]
    )

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "aggregate.window_size",
                      self.window_size, 1, 100000, int)
        _check_range(errors, "aggregate.co_occurring_cap",
                      self.co_occurring_cap, 0, 100, int)
        _check_range(errors, "aggregate.min_sessions",
                      self.min_sessions, 2, 1000, int)
        return errors


@dataclass
class ThemeConfig:
    """Theme clustering thresholds."""
    keyword_threshold: float = 0.3
    cooccurrence_threshold: float = 0.5
    min_size: int = 2
    min_signal_score: float = 8.0
    recurrence_weight: float = 1.0
    days_weight: float = 2.0
    carry_forward_jaccard: float = 0.6
    max_label_keywords: int = 3
    interests_dir: Optional[str] = None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "themes.keyword_threshold",
                      self.keyword_threshold, 0.0, 1.0, float)
        _check_range(errors, "themes.cooccurrence_threshold",
                      self.cooccurrence_threshold, 0.0, 1.0, float)
        _check_range(errors, "themes.min_size",
                      self.min_size, 2, 1000, int)
        _check_range(errors, "themes.min_signal_score",
                      self.min_signal_score, 0.0, 1e6, float)
        _check_range(errors, "themes.carry_forward_jaccard",
                      self.carry_forward_jaccard, 0.0, 1.0, float)
        _check_range(errors, "themes.max_label_keywords",
                      self.max_label_keywords, 1, 10, int)
        return errors


@dataclass
class TaskConfig:
    """Task candidate scoring configuration."""
    ghost_min_occurrences: int = 2
    dormancy_days: int = 14
    bankruptcy_ceiling: int = 30
    default_defer_hours: int = 24
    pause_days: int = 30
    max_candidates: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "tasks.ghost_min_occurrences",
                      self.ghost_min_occurrences, 2, 1000, int)
        _check_range(errors, "tasks.dormancy_days",
                      self.dormancy_days, 1, 3650, int)
        _check_range(errors, "tasks.bankruptcy_ceiling",
                      self.bankruptcy_ceiling, 1, 100000, int)
        _check_range(errors, "tasks.default_defer_hours",
                      self.default_defer_hours, 1, 8760, int)
        _check_range(errors, "tasks.pause_days",
                      self.pause_days, 1, 3650, int)
        _check_range(errors, "tasks.max_candidates",
                      self.max_candidates, 1, 10000, int)
        return errors


@dataclass
class PreferenceConfig:
    """Preference rule learning configuration."""
    min_corrections: int = 3
    min_agreement: float = 0.7
    max_path_exceptions: int = 3
    max_source_corrections: int = 5

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "preferences.min_corrections",
                      self.min_corrections, 1, 10000, int)
        _check_range(errors, "preferences.min_agreement",
                      self.min_agreement, 0.0, 1.0, float)
        _check_range(errors, "preferences.max_path_exceptions",
                      self.max_path_exceptions, 0, 100, int)
        return errors


@dataclass
class IntentConfig:
    """Intent proposal thresholds."""
    min_occurrences: int = 3
    min_distinct_days: int = 2
    max_proposals: int = 10
    habitual_after: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "intents.min_occurrences",
                      self.min_occurrences, 2, 1000, int)
        _check_range(errors, "intents.min_distinct_days",
                      self.min_distinct_days, 1, 3650, int)
        _check_range(errors, "intents.max_proposals",
                      self.max_proposals, 1, 1000, int)
        _check_range(errors, "intents.habitual_after",
                      self.habitual_after, 2, 100000, int)
        return errors


@dataclass
class EnrichConfig:
    """LLM enrichment configuration (external command)."""
    llm_cmd: str = ""
    timeout_s: float = 60.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "enrich.timeout_s",
                      float(self.timeout_s), 0.1, 3600.0)
        return errors


@dataclass
class AttentionConfig:
    """Top-level attnctl configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    aggregate: AggregateConfig = field(default_factory=AggregateConfig)
    themes: ThemeConfig = field(default_factory=ThemeConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    preferences: PreferenceConfig = field(default_factory=PreferenceConfig)
    intents: IntentConfig = field(default_factory=IntentConfig)
    enrich: EnrichConfig = field(default_factory=EnrichConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AttentionConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "lock" in d:
            kwargs["lock"] = LockConfig(**d["lock"])
        if "aggregate" in d:
            kwargs["aggregate"] = AggregateConfig(**d["aggregate"])
        if "themes" in d:
            kwargs["themes"] = ThemeConfig(**d["themes"])
        if "tasks" in d:
            kwargs["tasks"] = TaskConfig(**d["tasks"])
        if "preferences" in d:
            kwargs["preferences"] = PreferenceConfig(**d["preferences"])
        if "intents" in d:
            kwargs["intents"] = IntentConfig(**d["intents"])
        if "enrich" in d:
            kwargs["enrich"] = EnrichConfig(**d["enrich"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.lock.validate())
        errors.extend(self.aggregate.validate())
        errors.extend(self.themes.validate())
        errors.extend(self.tasks.validate())
        errors.extend(self.preferences.validate())
        errors.extend(self.intents.validate())
        errors.extend(self.enrich.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> AttentionConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        AttentionConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = AttentionConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = AttentionConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = AttentionConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )
    return cfg
