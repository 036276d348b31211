#!/usr/bin/env python3
import argparse
import logging
import sys
import time
from typing import BinaryIO, Optional, Sequence

from fetchlib.config import DEFAULT_USER_AGENT, FetchConfig
from fetchlib.fetcher import ContentFetcher
from fetchlib.metrics import Metrics, StatsLogger
from fetchlib.prometheus_exporter import PrometheusExporter
from fetchlib.types import SUCCESS_END_CODE, SUCCESS_START_CODE, FetchOption, WorkerState


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch a URL's content type, or stream its body without waiting for it to end.")
    parser.add_argument("url", help="URL to fetch.")
    parser.add_argument(
        "--content-type-only", action="store_true", help="Only report the status code and content type."
    )
    parser.add_argument("--out", dest="output_path", default=None, help="File to write the body to (default: stdout).")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop streaming after this many seconds (0: until the body ends).")
    parser.add_argument("--max-bytes", type=int, default=0, help="Stop streaming after this many bytes (0: no limit).")
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent header to send.")
    parser.add_argument("--connect-timeout", type=float, default=30.0, help="Connection timeout in seconds.")
    parser.add_argument("--metrics-interval", type=float, default=0.0, help="Seconds between perf logs (0 to disable).")
    parser.add_argument("--prometheus-port", type=int, default=0, help="Serve Prometheus metrics on this port (0 to disable).")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    return parser.parse_args(argv)


def stream_body(reader, out: BinaryIO, deadline: Optional[float], max_bytes: int, poll_s: float = 0.25) -> int:
    """Copy the body to ``out`` until it ends, ``deadline`` passes or ``max_bytes`` are copied."""
    copied = 0
    while True:
        if deadline is not None and time.monotonic() >= deadline:
            return copied
        try:
            chunk = reader.read(timeout=poll_s)
        except TimeoutError:
            continue
        if not chunk:
            return copied
        if max_bytes and copied + len(chunk) > max_bytes:
            chunk = chunk[: max_bytes - copied]
        out.write(chunk)
        copied += len(chunk)
        if max_bytes and copied >= max_bytes:
            return copied


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    log_level = logging.WARNING
    if args.verbose == 1:
        log_level = logging.INFO
    elif args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(message)s",
    )

    config = FetchConfig(
        connect_timeout=max(1.0, args.connect_timeout),
        user_agent=args.user_agent,
    )
    metrics = Metrics()
    fetcher = ContentFetcher(args.url, config=config, metrics=metrics)

    def live_bytes() -> int:
        if fetcher.state in (WorkerState.COMPLETED, WorkerState.CANCELLED):
            return 0
        return fetcher.bytes_streamed

    exporter = None
    if args.prometheus_port > 0:
        exporter = PrometheusExporter(metrics, port=args.prometheus_port, live_bytes=live_bytes)
        exporter.start()

    stats: Optional[StatsLogger] = None
    try:
        if args.content_type_only:
            result = fetcher.get_content(FetchOption.CONTENT_TYPE)
            if result is None:
                return 2
            print(result.get_status_code(), result.get_content_type() or "-")
            return 0 if result.is_status_code_success() else 1

        result = fetcher.get_content(FetchOption.ENTIRE_BODY)
        if result is None:
            return 2
        if args.metrics_interval > 0:
            stats = StatsLogger(metrics, args.metrics_interval, logging.info, live_bytes=live_bytes)
            stats.start()

        deadline = time.monotonic() + args.duration if args.duration > 0 else None
        if args.output_path:
            with open(args.output_path, "wb") as out:
                copied = stream_body(result.body, out, deadline, max(0, args.max_bytes))
        else:
            copied = stream_body(result.body, sys.stdout.buffer, deadline, max(0, args.max_bytes))
            sys.stdout.buffer.flush()
        fetcher.cancel()
        result.body.close()
        status, content_type = result.get_status_code(), result.get_content_type()
        print(f"{status} {content_type or '-'} {copied} bytes", file=sys.stderr)
        return 0 if SUCCESS_START_CODE <= status <= SUCCESS_END_CODE else 1
    finally:
        fetcher.close()
        if stats:
            stats.stop()
        if exporter:
            exporter.stop()


if __name__ == "__main__":
    sys.exit(main())
