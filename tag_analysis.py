"""Count HTML tag attributes in WARC archives and rank script libraries and meta keywords using Spark."""

import argparse
import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Union

import boto3
import pandas as pd
import plotly.graph_objects as go
import psutil
from pyspark.sql import SparkSession
from pyspark.sql.functions import spark_partition_id

import tag_queries
import tag_stages
from tag_stages import AggregatedCount
from warc_loader import LoadError, common_crawl_paths, load, load_rows

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
logging.getLogger('py4j').setLevel(logging.WARNING)

# Constants
APP_NAME = "WarcTagAnalysis"
OUTPUT_DIR = "/tmp/warc_tag_results/"
RESULTS_PREFIX = "warc_tag_results/"
COMMON_CRAWL_ID = "CC-MAIN-2017-13"
DEFAULT_PARTITIONS = 8
TOP_N = 10
SPARK_CONFIG = {
    "spark.sql.shuffle.partitions": "8",
    "spark.executor.memory": "4g",
    "spark.driver.memory": "4g",
    "spark.network.timeout": "600s",
}
QUERIES = {
    "js_libraries": "Top JavaScript Libraries",
    "keywords": "Top Meta Keywords",
}


def upload_to_s3(local_path: str, bucket_name: str, s3_key: str, max_retries: int = 3):
    """Upload a result, plot or metrics file to S3 with exponential backoff retries."""
    s3_client = boto3.client('s3')
    for attempt in range(max_retries):
        try:
            s3_client.upload_file(local_path, bucket_name, s3_key)
            logger.info(f"Uploaded to s3://{bucket_name}/{s3_key}")
            return
        except Exception as e:
            logger.warning(f"S3 upload attempt {attempt + 1} failed: {e}")
            if attempt == max_retries - 1:
                logger.error(f"Failed to upload to s3://{bucket_name}/{s3_key} after {max_retries} attempts")
                raise
            time.sleep(2 ** attempt)


def counts_frame(counts: List[AggregatedCount]) -> pd.DataFrame:
    return pd.DataFrame(counts, columns=["key", "count"])


def top_counts_figure(counts_df: pd.DataFrame, title: str) -> go.Figure:
    """Build a bar chart of ranked keys and their counts."""
    fig = go.Figure([go.Bar(
        x=counts_df['key'],
        y=counts_df['count'],
        text=counts_df['count'],
        textposition='auto',
        marker_color='teal',
        marker_line_color='black',
        marker_line_width=1.5,
        opacity=0.85
    )])
    fig.update_layout(
        title=title,
        xaxis_title="Key",
        yaxis_title="Count",
        title_x=0.5,
        height=600,
        width=800,
        font=dict(family="Arial, sans-serif", size=16, color="black"),
        plot_bgcolor='rgba(240, 240, 240, 0.95)',
        paper_bgcolor='white',
        xaxis=dict(tickangle=45, gridcolor='lightgray'),
        yaxis=dict(gridcolor='lightgray'),
        showlegend=False,
        margin=dict(l=50, r=50, t=100, b=150)
    )
    return fig


def plot_top_counts(counts_df: pd.DataFrame, title: str, name: str, output_dir: str) -> List[str]:
    """Save a ranked-count bar chart as PNG and interactive HTML."""
    fig = top_counts_figure(counts_df, title)
    png_path = os.path.join(output_dir, f"{name}.png")
    html_path = os.path.join(output_dir, f"{name}.html")
    fig.write_image(png_path, format="png", scale=2)
    fig.write_html(html_path)
    logger.info(f"Plot saved to {png_path}")
    return [png_path, html_path]


def write_json(data, output_dir: str, name: str) -> str:
    path = os.path.join(output_dir, f"{name}.json")
    with open(path, "w") as f:
        json.dump(data, f, indent=4)
    logger.info(f"Saved {path}")
    return path


def spark_query(name: str):
    build = {"js_libraries": tag_queries.top_js_libraries, "keywords": tag_queries.top_keywords}[name]
    return lambda table, limit: tag_queries.collect_counts(build(table, limit))


def local_query(name: str):
    return {"js_libraries": tag_stages.top_js_libraries, "keywords": tag_stages.top_keywords}[name]


def timed(query, table, limit):
    start = time.time()
    result = query(table, limit)
    return result, time.time() - start


def run_queries(table, limit: Optional[int], engine: str = "spark"):
    """Run both extractors concurrently over the shared read-only table."""
    make_query = spark_query if engine == "spark" else local_query
    with ThreadPoolExecutor(max_workers=len(QUERIES)) as executor:
        futures = {
            name: executor.submit(timed, make_query(name), table, limit)
            for name in QUERIES
        }
        results = {name: future.result() for name, future in futures.items()}

    counts = {name: result for name, (result, _) in results.items()}
    times = {name: elapsed for name, (_, elapsed) in results.items()}
    for name, elapsed in times.items():
        logger.info(f"Query {name} returned {len(counts[name])} rows in {elapsed:.2f} seconds")
    return counts, times


def run_analysis(spark: Optional[SparkSession], paths: List[str], partitions: int = DEFAULT_PARTITIONS,
                 limit: Optional[int] = TOP_N, output_dir: str = OUTPUT_DIR, engine: str = "spark",
                 plots: bool = True, bucket_name: Optional[str] = None,
                 prefix: str = RESULTS_PREFIX) -> Dict[str, Union[float, int]]:
    """Load archives, count tags, rank script libraries and keywords, and save the results."""
    logger.info(f"Analyzing {len(paths)} archive(s) with the {engine} engine")
    metrics: Dict[str, Union[float, int]] = {"archives": len(paths), "partitions_requested": partitions}
    start = time.time()

    # Step 1: Load archives; a LoadError aborts before anything is written
    if engine == "spark":
        table = load(spark, paths, partitions)
        total_tags = tag_queries.count_tags(table)
    else:
        table = load_rows(paths)
        total_tags = tag_stages.count_tags(table)
    metrics["load_time_seconds"] = time.time() - start

    # Step 2: Tag counter smoke test
    metrics["total_tags"] = total_tags
    if total_tags == 0:
        logger.warning("Archives produced no tag/attribute rows")
    else:
        logger.info(f"Loaded {total_tags} tag/attribute rows in {metrics['load_time_seconds']:.2f} seconds")

    # Step 3: Both extractors over the shared table
    counts, times = run_queries(table, limit, engine)
    for name, elapsed in times.items():
        metrics[f"{name}_time_seconds"] = elapsed

    # Step 4: Save results and plots
    os.makedirs(output_dir, exist_ok=True)
    written = []
    for name, title in QUERIES.items():
        counts_df = counts_frame(counts[name])
        written.append(write_json(counts_df.to_dict(orient='records'), output_dir, f"top_{name}"))
        if plots and not counts_df.empty:
            written.extend(plot_top_counts(counts_df, title, f"top_{name}", output_dir))
        logger.info(f"{title}: {counts[name][:5]}")

    # Step 5: Calculate throughput, latency and resource usage
    metrics["total_execution_time_seconds"] = time.time() - start
    elapsed = metrics["total_execution_time_seconds"]
    metrics["throughput_rows_per_second"] = total_tags / elapsed if elapsed > 0 else 0
    metrics["latency_per_row_ms"] = (elapsed / total_tags * 1000) if total_tags > 0 else 0
    if engine == "spark":
        metrics["partition_count"] = table.select(spark_partition_id()).distinct().count()
    metrics["cpu_usage_percent"] = psutil.cpu_percent(interval=1)
    metrics["memory_usage_percent"] = psutil.virtual_memory().percent
    written.append(write_json(metrics, output_dir, "metrics"))

    if bucket_name:
        for path in written:
            upload_to_s3(path, bucket_name, f"{prefix}{os.path.basename(path)}")

    return metrics


def parse_conf(pairs: List[str]) -> Dict[str, str]:
    """Parse repeated KEY=VALUE Spark settings."""
    conf = dict(SPARK_CONFIG)
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Spark setting must look like KEY=VALUE, got {pair!r}")
        conf[key.strip()] = value.strip()
    return conf


def build_spark_session(app_name: str = APP_NAME, master: Optional[str] = None,
                        conf: Optional[Dict[str, str]] = None) -> SparkSession:
    builder = SparkSession.builder.appName(app_name)
    if master:
        builder = builder.master(master)
    for key, value in (conf if conf is not None else SPARK_CONFIG).items():
        builder = builder.config(key, value)
    return builder.getOrCreate()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("paths", nargs="*", help="WARC files: local paths, s3:// keys or http(s) URLs")
    parser.add_argument("--crawl", default=COMMON_CRAWL_ID, help="Common Crawl crawl id used with --cc-start")
    parser.add_argument("--cc-start", type=int, help="first Common Crawl WARC file (1-based)")
    parser.add_argument("--cc-end", type=int, help="last Common Crawl WARC file (defaults to --cc-start)")
    parser.add_argument("--partitions", type=int, default=DEFAULT_PARTITIONS)
    parser.add_argument("--limit", type=int, default=TOP_N, help="rows kept per ranking")
    parser.add_argument("--engine", choices=["spark", "local"], default="spark")
    parser.add_argument("--output-dir", default=OUTPUT_DIR)
    parser.add_argument("--bucket", help="upload results to this S3 bucket")
    parser.add_argument("--prefix", default=RESULTS_PREFIX)
    parser.add_argument("--master", help="Spark master URL, e.g. local[*]")
    parser.add_argument("--conf", action="append", default=[], metavar="KEY=VALUE")
    parser.add_argument("--no-plots", action="store_true")
    args = parser.parse_args(argv)
    if not args.paths and args.cc_start is None:
        parser.error("give archive paths or --cc-start")
    return args


def main(argv=None):
    """Parse arguments, start Spark if needed and run the analysis."""
    args = parse_args(argv)
    paths = list(args.paths)
    if args.cc_start is not None:
        paths.extend(common_crawl_paths(args.crawl, args.cc_start, args.cc_end))

    spark = build_spark_session(master=args.master, conf=parse_conf(args.conf)) if args.engine == "spark" else None
    try:
        metrics = run_analysis(
            spark, paths,
            partitions=args.partitions,
            limit=args.limit,
            output_dir=args.output_dir,
            engine=args.engine,
            plots=not args.no_plots,
            bucket_name=args.bucket,
            prefix=args.prefix,
        )
        logger.info(f"Analysis finished in {metrics['total_execution_time_seconds']:.2f} seconds")
    except LoadError as e:
        logger.error(f"Could not load archives: {e}")
        raise
    except Exception as e:
        logger.error(f"Error during processing: {e}")
        raise
    finally:
        if spark is not None:
            spark.stop()


if __name__ == "__main__":
    main()
