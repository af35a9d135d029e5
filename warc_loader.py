"""Load WARC archives into a table of HTML tag/attribute occurrences.

Every attribute of every HTML start tag found in a WARC response record
becomes one row ``(tag, attribute, value, original)`` where ``original`` is
the raw start-tag text as it appeared in the page. The Spark loader parses
one archive per task and returns a cached DataFrame; ``load_rows`` does the
same work in-process for small inputs.
"""

import codecs
import gzip
import logging
import os
import zlib
from contextlib import contextmanager
from html.parser import HTMLParser
from typing import Iterator, List, Optional, Sequence
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError
from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import StringType, StructField, StructType
from warcio.archiveiterator import ArchiveIterator
from warcio.exceptions import ArchiveLoadFailed

from tag_stages import TagAttributeRow

logger = logging.getLogger(__name__)

# Constants
TAG_SCHEMA = StructType([
    StructField("tag", StringType(), False),
    StructField("attribute", StringType(), True),
    StructField("value", StringType(), True),
    StructField("original", StringType(), True),
])
DEFAULT_CHARSET = "utf-8"
HTTP_TIMEOUT_SECONDS = 60
COMMON_CRAWL_PREFIX = "https://data.commoncrawl.org/"


class LoadError(Exception):
    """Raised when an archive cannot be reached or parsed."""


class TagAttributeParser(HTMLParser):
    """Collect one row per attribute of every start tag."""

    def __init__(self):
        super().__init__()
        self.rows: List[TagAttributeRow] = []

    def handle_starttag(self, tag, attrs):
        original = self.get_starttag_text() or ""
        for name, value in attrs:
            self.rows.append(TagAttributeRow(tag, name, value or "", original))


def parse_tags(html: str) -> List[TagAttributeRow]:
    """Tokenize an HTML document into tag/attribute rows."""
    parser = TagAttributeParser()
    parser.feed(html)
    parser.close()
    return parser.rows


def charset_of(content_type: Optional[str]) -> str:
    """Return the charset named in a Content-Type header if it is a known text encoding."""
    for param in (content_type or "").split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() != "charset":
            continue
        charset = value.strip().strip("\"'")
        try:
            codec = codecs.lookup(charset)
        except LookupError:
            logger.warning(f"Unknown charset {charset!r}, decoding as {DEFAULT_CHARSET}")
            continue
        # bytes-to-bytes codecs such as base64 or hex cannot decode a page
        if codec._is_text_encoding:
            return charset
        logger.warning(f"Charset {charset!r} is not a text encoding, decoding as {DEFAULT_CHARSET}")
    return DEFAULT_CHARSET


def _s3_location(path: str):
    parsed = urlparse(path)
    return parsed.netloc, parsed.path.lstrip("/")


def _is_url(path: str) -> bool:
    return urlparse(path).scheme in ("http", "https")


def _is_s3(path: str) -> bool:
    return urlparse(path).scheme in ("s3", "s3a", "s3n")


@contextmanager
def open_archive(path: str):
    """Open a local, S3 or HTTP archive as a binary stream."""
    if _is_s3(path):
        bucket, key = _s3_location(path)
        body = boto3.client('s3').get_object(Bucket=bucket, Key=key)['Body']
        try:
            yield body
        finally:
            body.close()
    elif _is_url(path):
        with requests.get(path, stream=True, timeout=HTTP_TIMEOUT_SECONDS) as response:
            response.raise_for_status()
            yield response.raw
    else:
        with open(path, "rb") as stream:
            yield stream


def check_reachable(path: str):
    """Fail fast on the driver before any Spark job is submitted."""
    try:
        if _is_s3(path):
            bucket, key = _s3_location(path)
            boto3.client('s3').head_object(Bucket=bucket, Key=key)
        elif _is_url(path):
            requests.head(path, allow_redirects=True, timeout=HTTP_TIMEOUT_SECONDS).raise_for_status()
        elif not os.path.isfile(path):
            raise LoadError(f"Archive not found: {path}")
    except (ClientError, BotoCoreError, requests.RequestException) as e:
        raise LoadError(f"Archive unreachable: {path}: {e}") from e


def read_archive(path: str) -> Iterator[TagAttributeRow]:
    """Yield tag/attribute rows from the HTML responses stored in one WARC file."""
    pages = 0
    try:
        with open_archive(path) as stream:
            for record in ArchiveIterator(stream):
                if record.rec_type != 'response' or record.http_headers is None:
                    # WARC request, metadata or non-HTTP records
                    continue
                content_type = record.http_headers.get_header('Content-Type')
                if content_type is None or 'html' not in content_type.lower():
                    continue
                payload = record.content_stream().read()
                html = payload.decode(charset_of(content_type), errors="replace")
                pages += 1
                yield from parse_tags(html)
    except (OSError, ValueError, zlib.error, ArchiveLoadFailed, ClientError, BotoCoreError,
            requests.RequestException) as e:
        raise LoadError(f"Could not read archive {path}: {e}") from e
    logger.info(f"Parsed {pages} HTML pages from {path}")


def _check_paths(paths: Sequence[str]):
    if not paths:
        raise LoadError("No archive paths were given")
    for path in paths:
        check_reachable(path)


def load(spark: SparkSession, paths: Sequence[str], partitions: int = 1) -> DataFrame:
    """Parse archives on the executors into a cached table with TAG_SCHEMA."""
    if partitions < 1:
        raise ValueError(f"partitions must be a positive integer, got {partitions}")
    paths = list(paths)
    _check_paths(paths)

    logger.info(f"Loading {len(paths)} archive(s) into {partitions} partition(s)")
    rows = spark.sparkContext.parallelize(paths, len(paths)).flatMap(read_archive)
    df = spark.createDataFrame(rows, TAG_SCHEMA).repartition(partitions).cache()
    try:
        row_count = df.count()
    except Exception as e:
        df.unpersist()
        raise LoadError(f"Failed to parse archives {paths}: {e}") from e
    logger.info(f"Loaded {row_count} tag/attribute rows")
    return df


def load_rows(paths: Sequence[str]) -> List[TagAttributeRow]:
    """Parse archives in-process, for inputs that fit in memory."""
    paths = list(paths)
    _check_paths(paths)
    rows = [row for path in paths for row in read_archive(path)]
    logger.info(f"Loaded {len(rows)} tag/attribute rows")
    return rows


def common_crawl_paths(crawl: str, start: int, end: Optional[int] = None) -> List[str]:
    """Return URLs of the start..end (1-based, inclusive) WARC files of a Common Crawl crawl."""
    end = start if end is None else end
    if start < 1 or end < start:
        raise ValueError(f"Invalid Common Crawl range {start}..{end}")

    listing_url = f"{COMMON_CRAWL_PREFIX}crawl-data/{crawl}/warc.paths.gz"
    try:
        response = requests.get(listing_url, timeout=HTTP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as e:
        raise LoadError(f"Common Crawl listing unreachable: {listing_url}: {e}") from e

    keys = gzip.decompress(response.content).decode("utf-8").split()
    if end > len(keys):
        raise ValueError(f"Crawl {crawl} lists {len(keys)} WARC files, asked for {start}..{end}")
    return [COMMON_CRAWL_PREFIX + key for key in keys[start - 1:end]]
