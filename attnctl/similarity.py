"""
Stdlib text and URL normalization for attention signals.

Provides the identity function for tabs (normalized URL) and the keyword
measures used by theme clustering:
- **URL identity**: scheme + host + path, query kept only for keys that
  materially distinguish a page (``?v=``, ``?id=`` ...).
- **Title keywords**: lowercase tokens minus stop words and web noise.
- **Set Jaccard**: overlap of keyword or co-occurrence sets.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import re
import string
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

# ---------------------------------------------------------------------------
# URL identity
# ---------------------------------------------------------------------------

# Query keys that change which document a URL points to
DEFAULT_DISTINGUISHING_KEYS = frozenset({"id", "v", "p", "q", "page", "article"})

WEB_SCHEMES = frozenset({"http", "https"})


def is_web_url(url: str) -> bool:
    """True for http(s) URLs; browser-internal pages (chrome:, blob:, about:) are not."""
    if not url:
        return False
    return urlsplit(url.strip()).scheme.lower() in WEB_SCHEMES


def url_domain(url: str) -> str:
    """Host part of a URL, lowercased, without a leading ``www.``."""
    try:
        host = (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def url_host(url: str) -> str:
    """``url_domain`` plus the explicit port, if any (``localhost:3000``)."""
    host = url_domain(url)
    try:
        port = urlsplit(url.strip()).port
    except ValueError:
        return host
    return f"{host}:{port}" if host and port else host


def normalize_url(
    url: str,
    distinguishing_keys: Optional[Iterable[str]] = None,
) -> str:
    """Normalize a URL into a tab identity.

    Steps:
      1. Lowercase scheme and host, drop ``www.``
      2. Drop trailing slash from the path (root path becomes empty)
      3. Keep only distinguishing query keys, sorted
      4. Drop the fragment

    Non-web URLs are returned stripped but otherwise unchanged.
    """
    url = (url or "").strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    scheme = parts.scheme.lower()
    if scheme not in WEB_SCHEMES:
        return url
    host = url_host(url)
    path = parts.path.rstrip("/")
    keys = (
        DEFAULT_DISTINGUISHING_KEYS
        if distinguishing_keys is None
        else frozenset(distinguishing_keys)
    )
    kept = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=False)
        if k.lower() in keys
    )
    query = f"?{urlencode(kept)}" if kept else ""
    return f"{scheme}://{host}{path}{query}"


# ---------------------------------------------------------------------------
# Keyword extraction
# ---------------------------------------------------------------------------

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "its", "this", "that", "was",
    "are", "were", "be", "been", "has", "have", "had", "do", "does", "did",
    "not", "no", "nor", "as", "if", "how", "what", "when", "where", "which",
    "who", "will", "can", "may", "just", "about", "into", "than", "then",
    "also", "more", "some", "such", "only", "other", "new", "your", "our",
    "all", "any", "each", "much", "most", "very", "over", "out", "get",
    # web noise
    "page", "home", "www", "com", "org", "net", "http", "https", "html",
    "google", "docs", "edit", "tab", "view", "blog", "post", "article",
    "medium", "reddit", "linkedin", "github", "wikipedia", "youtube",
    "untitled", "document", "null", "undefined",
    # generic tech vocabulary
    "use", "using", "used", "api", "app", "apps", "cloud", "data",
    "help", "guide", "tutorial", "introduction", "overview", "getting",
    "started", "create", "build", "make", "update", "learn", "free",
    "best", "top", "list", "part", "step", "way", "work", "works",
    "tool", "tools", "service", "services", "platform", "system",
})

# Punctuation except hyphen (hyphenated words are joined, not split)
_PUNCT_TABLE = str.maketrans(
    {c: " " for c in string.punctuation if c != "-"}
)

_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace."""
    text = (text or "").lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def extract_keywords(title: str) -> list[str]:
    """Meaningful keywords of a tab title, in title order.

    Tokens of length <= 2 and stop words are dropped; hyphens are removed
    so that ``open-source`` and ``opensource`` collapse together.
    """
    words = []
    for token in normalize(title).split():
        if len(token) <= 2 or token in STOP_WORDS:
            continue
        token = token.replace("-", "")
        if token:
            words.append(token)
    return words


def domain_stem(domain: str) -> str:
    """Registrable label of a host (``docs.python.org`` -> ``python``)."""
    labels = [p for p in (domain or "").split(".") if p]
    if len(labels) >= 2:
        return labels[-2]
    return labels[0] if labels else ""


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Set-level Jaccard similarity.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Returns 0.0 when either set is empty (no evidence of relatedness).
    """
    set_a = set(a)
    set_b = set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)
