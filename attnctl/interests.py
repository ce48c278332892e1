"""
Research Interests — markdown notes as an external memory

Reads a folder of markdown notes (one interest per file) and extracts
topic keywords from the file name, simple YAML frontmatter (``title``,
``tags``/``topics``/``keywords``), headings and bold text.  Themes are
matched against these keywords to surface ``memory_connections``.

Unreadable files are skipped with a warning; a missing folder yields no
interests.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n(.*)$", re.DOTALL)
_HEADING_RE = re.compile(r"^#{1,3}\s+(.+)$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

# Keywords shorter than this are too ambiguous to match inside theme text
MIN_MATCH_LENGTH = 4


@dataclass
class Interest:
    """One research interest note."""

    name: str
    keywords: List[str] = field(default_factory=list)
    path: str = ""


def parse_frontmatter(text: str) -> Tuple[Dict[str, object], str]:
    """Split simple ``key: value`` frontmatter from the body.

    ``[a, b]`` values become lists; anything else stays a string.
    """
    m = _FRONTMATTER_RE.match(text)
    if not m:
        return {}, text
    fm: Dict[str, object] = {}
    for line in m.group(1).splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        value = value.strip()
        if value.startswith("[") and value.endswith("]"):
            fm[key.strip()] = [
                v.strip().strip("\"'") for v in value[1:-1].split(",") if v.strip()
            ]
        else:
            fm[key.strip()] = value
    return fm, m.group(2)


def _words(text: str, min_len: int) -> List[str]:
    out = []
    for token in text.split():
        token = _NON_ALNUM_RE.sub("", token.lower())
        if len(token) >= min_len:
            out.append(token)
    return out


def extract_interest_keywords(
    filename: str, frontmatter: Dict[str, object], body: str,
) -> List[str]:
    """Keywords of one note, deduplicated in discovery order."""
    keywords: Dict[str, None] = {}
    stem = re.sub(r"\.md$", "", filename, flags=re.IGNORECASE)
    for token in re.split(r"[-_\s]+", stem):
        if len(token) > 2:
            keywords[token.lower()] = None

    tags = frontmatter.get("tags") or frontmatter.get("topics") or frontmatter.get("keywords")
    if isinstance(tags, str):
        tags = tags.split(",")
    for tag in tags or []:
        tag = str(tag).strip().lower()
        if tag:
            keywords[tag] = None

    title = frontmatter.get("title")
    if isinstance(title, str):
        for w in _words(title, MIN_MATCH_LENGTH):
            keywords[w] = None
    for heading in _HEADING_RE.findall(body):
        for w in _words(heading, MIN_MATCH_LENGTH):
            keywords[w] = None
    for bold in _BOLD_RE.findall(body):
        for w in _words(bold, MIN_MATCH_LENGTH):
            keywords[w] = None
    return list(keywords)


def load_interests(directory: Optional[str]) -> List[Interest]:
    """Load all ``*.md`` notes of a directory, sorted by file name."""
    if not directory or not os.path.isdir(directory):
        return []
    interests: List[Interest] = []
    for fname in sorted(os.listdir(directory)):
        if not fname.lower().endswith(".md"):
            continue
        path = os.path.join(directory, fname)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping interest note {path}: {e}")
            continue
        fm, body = parse_frontmatter(text)
        title = fm.get("title")
        name = title if isinstance(title, str) and title else (
            re.sub(r"\.md$", "", fname, flags=re.IGNORECASE).replace("-", " ").replace("_", " ")
        )
        interests.append(Interest(
            name=name,
            keywords=extract_interest_keywords(fname, fm, body),
            path=path,
        ))
    logger.debug(f"Loaded {len(interests)} research interests from {directory}")
    return interests


def match_interests(theme_text: str, interests: List[Interest]) -> List[str]:
    """Names of interests whose keywords occur in the theme text.

    Ordered by number of matched keywords desc, then name.
    """
    text = theme_text.lower()
    scored = []
    for interest in interests:
        matched = [
            kw for kw in interest.keywords
            if len(kw) >= MIN_MATCH_LENGTH and kw in text
        ]
        if matched:
            scored.append((-len(matched), interest.name))
    return [name for _, name in sorted(scored)]
