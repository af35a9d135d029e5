"""Spark DataFrame queries over the tag/attribute table produced by warc_loader."""

import logging
from typing import List, Optional

from pyspark.sql import DataFrame
from pyspark.sql.functions import col, explode, regexp_extract, regexp_replace, split, substring

from tag_stages import (
    DISPLAY_WIDTH,
    JS_FILENAME_PATTERN,
    KEYWORD_MARKER,
    REPLACEMENT_CHAR,
    AggregatedCount,
)

logger = logging.getLogger(__name__)

# Java's \s is the same ASCII set as tag_stages.WHITESPACE
TRIM_PATTERN = r"^\s+|\s+$"


def _displayable(key_col):
    return (key_col != "") & ~key_col.contains(REPLACEMENT_CHAR)


def _rank(df: DataFrame, limit: Optional[int]) -> DataFrame:
    ranked = df.orderBy(col("count").desc(), col("key").asc())
    if limit is None:
        return ranked
    if limit < 1:
        raise ValueError(f"limit must be a positive integer, got {limit}")
    return ranked.limit(limit)


def count_tags(df: DataFrame) -> int:
    """Count tag/attribute rows in the loaded table."""
    return df.count()


def top_js_libraries(df: DataFrame, limit: Optional[int] = None) -> DataFrame:
    """Build the query ranking script filenames referenced by <script src=...>."""
    libraries = df.filter((col("tag") == "script") & (col("attribute") == "src")) \
        .select(regexp_extract(col("value"), JS_FILENAME_PATTERN, 1).alias("key")) \
        .groupBy("key").count() \
        .withColumn("key", substring(col("key"), 1, DISPLAY_WIDTH)) \
        .filter(_displayable(col("key")))
    return _rank(libraries, limit)


def top_keywords(df: DataFrame, limit: Optional[int] = None) -> DataFrame:
    """Build the query ranking keywords listed in <meta content=...> keyword tags."""
    keywords = df.filter(
        (col("tag") == "meta")
        & (col("attribute") == "content")
        & col("original").contains(KEYWORD_MARKER)
    )
    # One row per comma-separated element, then trim and truncate
    keywords = keywords.select(explode(split(col("value"), ",")).alias("key")) \
        .select(substring(regexp_replace(col("key"), TRIM_PATTERN, ""), 1, DISPLAY_WIDTH).alias("key")) \
        .groupBy("key").count() \
        .filter(_displayable(col("key")))
    return _rank(keywords, limit)


def collect_counts(df: DataFrame) -> List[AggregatedCount]:
    """Run a ranking query and return its rows in order."""
    rows = df.select("key", "count").collect()
    logger.info(f"Collected {len(rows)} aggregated rows")
    return [AggregatedCount(row["key"], int(row["count"])) for row in rows]
