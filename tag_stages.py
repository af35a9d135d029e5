"""In-process extraction stages over a sequence of tag/attribute rows."""

import re
from collections import Counter
from typing import Iterable, Iterator, List, NamedTuple, Optional

# Constants
DISPLAY_WIDTH = 30
REPLACEMENT_CHAR = "\ufffd"
JS_FILENAME_PATTERN = r"([^/]+\.js)(?!.*[^/]+\.js)"
KEYWORD_MARKER = "keywords"
WHITESPACE = " \t\n\r\f\v"

_js_filename_re = re.compile(JS_FILENAME_PATTERN)


class TagAttributeRow(NamedTuple):
    tag: str
    attribute: str
    value: str
    original: str


class AggregatedCount(NamedTuple):
    key: str
    count: int


def extract_js_filename(value: Optional[str]) -> str:
    """Return the last `name.js` match in value, or an empty string.

    The lookahead rejects any match followed by another `name.js`, so
    `cdn.jsdelivr.net/npm/vue.js` gives `vue.js`, not `cdn.js`.
    """
    match = _js_filename_re.search(value or "")
    return match.group(1) if match else ""


def split_keywords(value: Optional[str]) -> List[str]:
    """Split a keyword list on commas; k commas always give k + 1 elements."""
    return (value or "").split(",")


def clean_keyword(keyword: str) -> str:
    return truncate(keyword.strip(WHITESPACE))


def truncate(key: str, width: int = DISPLAY_WIDTH) -> str:
    return key[:width]


def is_displayable(key: Optional[str]) -> bool:
    """Empty keys come from pattern mismatches, U+FFFD from undecodable bytes."""
    return bool(key) and REPLACEMENT_CHAR not in key


def select_rows(rows: Iterable[TagAttributeRow], tag: str, attribute: str,
                original_contains: Optional[str] = None) -> Iterator[TagAttributeRow]:
    for row in rows:
        if row.tag != tag or row.attribute != attribute:
            continue
        if original_contains is not None and original_contains not in (row.original or ""):
            continue
        yield row


def rank(keys: Iterable[str]) -> List[AggregatedCount]:
    """Group equal keys and order the groups by count descending, then key."""
    counts = Counter(keys)
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [AggregatedCount(key, count) for key, count in ordered]


def apply_limit(counts: List[AggregatedCount], limit: Optional[int]) -> List[AggregatedCount]:
    if limit is None:
        return counts
    if limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit}")
    return counts[:limit]


def count_tags(rows) -> int:
    """Count tag/attribute rows."""
    return sum(1 for _ in rows)


def top_js_libraries(rows: Iterable[TagAttributeRow], limit: Optional[int] = None) -> List[AggregatedCount]:
    """Rank script filenames referenced by <script src=...>."""
    # Step 1-4: filter, extract, group and sort
    scripts = select_rows(rows, "script", "src")
    ranked = rank(extract_js_filename(row.value) for row in scripts)

    # Step 5-6: truncate for display after grouping, then drop empty or garbled keys
    displayed = [AggregatedCount(truncate(item.key), item.count) for item in ranked]
    displayed = [item for item in displayed if is_displayable(item.key)]
    return apply_limit(displayed, limit)


def keyword_keys(rows: Iterable[TagAttributeRow]) -> Iterator[str]:
    """Explode each keyword row into one cleaned key per comma-separated element."""
    for row in rows:
        for keyword in split_keywords(row.value):
            yield clean_keyword(keyword)


def top_keywords(rows: Iterable[TagAttributeRow], limit: Optional[int] = None) -> List[AggregatedCount]:
    """Rank keywords listed in <meta ... content=...> tags mentioning keywords."""
    meta_rows = select_rows(rows, "meta", "content", original_contains=KEYWORD_MARKER)
    ranked = rank(keyword_keys(meta_rows))
    return apply_limit([item for item in ranked if is_displayable(item.key)], limit)
