"""
Tests for the Spark ranking queries
"""
import pytest

import tag_stages
from tag_queries import collect_counts, count_tags, top_js_libraries, top_keywords
from tag_stages import TagAttributeRow
from warc_loader import TAG_SCHEMA


@pytest.fixture
def table(spark):
    def build(rows):
        return spark.createDataFrame(rows, TAG_SCHEMA)
    return build


def script(value):
    return TagAttributeRow("script", "src", value, f'<script src="{value}">')


class TestCountTags:

    def test_counts_rows(self, table, mixed_rows):
        assert count_tags(table(mixed_rows)) == len(mixed_rows)

    def test_empty_table(self, table):
        assert count_tags(table([])) == 0


class TestTopJsLibraries:

    def test_single_cdn_script(self, table):
        df = table([script("https://cdn.example.com/jquery.js")])
        assert collect_counts(top_js_libraries(df)) == [("jquery.js", 1)]

    def test_counts_are_ranked(self, table):
        df = table([script("a.js")] * 3 + [script("b.js")])
        assert collect_counts(top_js_libraries(df)) == [("a.js", 3), ("b.js", 1)]

    def test_last_path_segment_wins_over_js_host(self, table):
        rows = [script("https://cdn.jsdelivr.net/npm/vue.js"), script("/a/b.js/c.js")]
        assert collect_counts(top_js_libraries(table(rows))) == [("c.js", 1), ("vue.js", 1)]
        assert collect_counts(top_js_libraries(table(rows))) == tag_stages.top_js_libraries(rows)

    def test_matches_in_process_stages(self, table, mixed_rows):
        df = table(mixed_rows)
        assert collect_counts(top_js_libraries(df)) == tag_stages.top_js_libraries(mixed_rows)

    def test_limit(self, table, mixed_rows):
        assert collect_counts(top_js_libraries(table(mixed_rows), limit=1)) == [("jquery.js", 2)]
        with pytest.raises(ValueError):
            top_js_libraries(table(mixed_rows), limit=0)


class TestTopKeywords:

    def test_keywords_are_exploded(self, table):
        df = table([TagAttributeRow("meta", "content", "news, sports, weather",
                                    "<meta name=keywords content=...>")])
        assert collect_counts(top_keywords(df)) == [("news", 1), ("sports", 1), ("weather", 1)]

    def test_empty_value_contributes_nothing(self, table):
        df = table([TagAttributeRow("meta", "content", "", '<meta name="keywords" content="">')])
        assert collect_counts(top_keywords(df)) == []

    def test_matches_in_process_stages(self, table, mixed_rows):
        df = table(mixed_rows)
        assert collect_counts(top_keywords(df)) == tag_stages.top_keywords(mixed_rows)

    def test_idempotent(self, table, mixed_rows):
        df = table(mixed_rows)
        assert collect_counts(top_keywords(df)) == collect_counts(top_keywords(df))
