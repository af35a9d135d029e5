"""
Shared fixtures: a local Spark session and WARC archive builders
"""
import io
import os
import shutil

import pytest
from warcio.statusandheaders import StatusAndHeaders
from warcio.warcwriter import WARCWriter

from tag_stages import TagAttributeRow

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

SAMPLE_PAGE = b"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="keywords" content="news, sports, weather">
    <script src="https://cdn.example.com/libs/jquery.js"></script>
    <script async src="/static/app.js"></script>
</head>
<body><p>hello</p></body>
</html>
"""


def write_warc(path, pages):
    """Write (url, content_type, body) responses to a gzipped WARC file"""
    with open(path, "wb") as fh:
        writer = WARCWriter(fh, gzip=True)
        writer.write_record(writer.create_warcinfo_record(os.path.basename(str(path)), {"software": "tests"}))
        for url, content_type, body in pages:
            http_headers = StatusAndHeaders("200 OK", [("Content-Type", content_type)], protocol="HTTP/1.0")
            record = writer.create_warc_record(
                url, "response", payload=io.BytesIO(body), http_headers=http_headers
            )
            writer.write_record(record)
    return str(path)


@pytest.fixture
def sample_warc(tmp_path):
    """Archive with one HTML page and one image response"""
    return write_warc(tmp_path / "sample.warc.gz", [
        ("http://example.com/", "text/html; charset=utf-8", SAMPLE_PAGE),
        ("http://example.com/logo.png", "image/png", b"\x89PNG\r\n"),
    ])


@pytest.fixture
def malformed_warc(tmp_path):
    path = tmp_path / "broken.warc"
    path.write_bytes(b"GARBAGE\n\n")
    return str(path)


@pytest.fixture
def mixed_rows():
    """Rows covering both extractors, ties, truncation and garbled values"""
    long_name = "a-very-long-javascript-library-name.min.js"
    return [
        TagAttributeRow("script", "src", "https://cdn.example.com/jquery.js", '<script src="...">'),
        TagAttributeRow("script", "src", "/js/jquery.js", '<script src="/js/jquery.js">'),
        TagAttributeRow("script", "src", "analytics.js", '<script src="analytics.js">'),
        TagAttributeRow("script", "src", "/assets/" + long_name, "<script>"),
        TagAttributeRow("script", "src", "/caf\ufffd.js", "<script>"),
        TagAttributeRow("script", "src", "/no/match/here", "<script>"),
        TagAttributeRow("script", "type", "text/javascript.js", "<script>"),
        TagAttributeRow("link", "href", "/style.js", "<link>"),
        TagAttributeRow("meta", "content", "news, sports,weather", '<meta name="keywords" content="...">'),
        TagAttributeRow("meta", "content", " news ,\tcafé, ", '<meta name="keywords" content="...">'),
        TagAttributeRow("meta", "content", "garbled \ufffd word", '<meta name="keywords" content="...">'),
        TagAttributeRow("meta", "content", "", '<meta name="keywords" content="">'),
        TagAttributeRow("meta", "content", "ignored, words", '<meta name="description" content="...">'),
        TagAttributeRow("meta", "name", "keywords", '<meta name="keywords" content="...">'),
    ]


@pytest.fixture(scope="session")
def spark():
    """Local Spark session; skipped when no Java runtime is installed"""
    if shutil.which("java") is None and not os.environ.get("JAVA_HOME"):
        pytest.skip("Spark tests need a Java runtime")
    # Python workers must be able to import the project modules
    os.environ["PYTHONPATH"] = os.pathsep.join(filter(None, [ROOT_DIR, os.environ.get("PYTHONPATH")]))

    from pyspark.sql import SparkSession
    session = SparkSession.builder \
        .master("local[2]") \
        .appName("WarcTagAnalysisTests") \
        .config("spark.sql.shuffle.partitions", "2") \
        .config("spark.ui.enabled", "false") \
        .getOrCreate()
    yield session
    session.stop()
