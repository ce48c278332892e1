"""
Tests for attnctl.interests — markdown research notes as keywords.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from attnctl.interests import (
    Interest,
    extract_interest_keywords,
    load_interests,
    match_interests,
    parse_frontmatter,
)


class TestFrontmatter:
    def test_lists_and_scalars(self):
        fm, body = parse_frontmatter(
            "---\ntitle: Memory safety\ntags: [rust, 'borrow checker']\n---\n# Notes\n"
        )
        assert fm["title"] == "Memory safety"
        assert fm["tags"] == ["rust", "borrow checker"]
        assert body == "# Notes\n"

    def test_no_frontmatter(self):
        fm, body = parse_frontmatter("# Just a heading\n")
        assert fm == {}
        assert body == "# Just a heading\n"


class TestKeywords:
    def test_sources_combined(self):
        kws = extract_interest_keywords(
            "kernel-dev.md",
            {"tags": "ebpf, tracing", "title": "Linux internals"},
            "## Scheduler design\nSome **lock-free queues** here.",
        )
        assert kws == [
            "kernel", "dev", "ebpf", "tracing", "linux", "internals",
            "scheduler", "design", "lockfree", "queues",
        ]

    def test_deduplicated(self):
        kws = extract_interest_keywords("rust.md", {"tags": ["rust"]}, "# Rust")
        assert kws == ["rust"]


class TestLoad:
    def test_directory(self, tmp_path):
        (tmp_path / "b-notes.md").write_text("# Compilers\n", encoding="utf-8")
        (tmp_path / "a_topic.md").write_text(
            "---\ntitle: Type systems\n---\nbody", encoding="utf-8")
        (tmp_path / "ignored.txt").write_text("nope", encoding="utf-8")
        interests = load_interests(str(tmp_path))
        assert [i.name for i in interests] == ["Type systems", "b notes"]
        assert "compilers" in interests[1].keywords

    def test_missing_directory(self, tmp_path):
        assert load_interests(str(tmp_path / "absent")) == []
        assert load_interests(None) == []

    def test_undecodable_file_skipped(self, tmp_path):
        (tmp_path / "bad.md").write_bytes(b"\xff\xfe\xfa")
        (tmp_path / "good.md").write_text("# Good", encoding="utf-8")
        assert [i.name for i in load_interests(str(tmp_path))] == ["good"]

    def test_skipped_note_logged(self, tmp_path, caplog):
        bad = tmp_path / "bad.md"
        bad.write_bytes(b"\xff\xfe\xfa")
        with caplog.at_level("WARNING", logger="attnctl.interests"):
            load_interests(str(tmp_path))
        [record] = caplog.records
        assert record.getMessage().startswith(f"Skipping interest note {bad}: ")


class TestMatch:
    def test_ranked_by_matches(self):
        interests = [
            Interest(name="One", keywords=["rust"]),
            Interest(name="Two", keywords=["rust", "kernel"]),
            Interest(name="None", keywords=["pasta"]),
        ]
        assert match_interests("Rust kernel modules", interests) == ["Two", "One"]

    def test_short_keywords_ignored(self):
        assert match_interests("an ml paper", [Interest(name="ML", keywords=["ml"])]) == []
