"""CLI: replay a JSONL file of observations through the fusion service.

Each input line is one observation payload, e.g.
    {"entity": "AAPL", "source": "news", "value": 0.4, "ts": 1700000000000}

Alerts are written to stdout as JSON lines; logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TextIO, Tuple

from loguru import logger

from sentiment_fusion.core.config import Settings, default_settings, load_settings
from sentiment_fusion.core.errors import ConfigError, ObservationValidationError
from sentiment_fusion.core.logsetup import configure_logging
from sentiment_fusion.live.metrics import Metrics
from sentiment_fusion.live.publisher import ALERT, CallbackSink, LogSink, PublishItem, Sink
from sentiment_fusion.live.service import SentimentFusionService


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Sentiment Fusion replay")
    p.add_argument("--config", default=None, help="settings.yaml (defaults are used when omitted)")
    p.add_argument("--input", required=True, help="JSONL observation file, '-' for stdin")
    p.add_argument("--inline", action="store_true", help="Process synchronously without the partition queues")
    p.add_argument("--metrics", action="store_true", help="Print Prometheus metrics to stderr at the end")
    p.add_argument("--log-level", default=None, help="Override logging.level")
    return p.parse_args(argv)


def _read_jsonl(stream: TextIO) -> Iterator[Dict[str, Any]]:
    for lineno, line in enumerate(stream, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"[Replay] line {lineno}: invalid JSON ({e.msg}); skipped")


def _emit(item: PublishItem) -> None:
    sys.stdout.write(json.dumps(item.payload.to_dict(), default=str) + "\n")
    sys.stdout.flush()


async def _replay(settings: Settings, sinks: List[Sink], rows: Iterator[Dict[str, Any]],
                  inline: bool) -> Tuple[Dict[str, int], Metrics]:
    # queues and locks bind to the running loop, so the service is built in here
    service = SentimentFusionService(settings, sinks=sinks)
    counts = {"rows": 0, "rejected": 0}
    async with service:
        for row in rows:
            counts["rows"] += 1
            try:
                if inline:
                    service.process_now(row)
                else:
                    service.ingest(row)
            except ObservationValidationError as e:
                counts["rejected"] += 1
                logger.warning(f"[Replay] row {counts['rows']} rejected: {e}")
            # let partition workers keep up with the reader
            await asyncio.sleep(0)
    return counts, service.metrics


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.config) if args.config else default_settings()
    except ConfigError as e:
        logger.error(f"[Replay] {e}")
        return 2

    log_cfg = settings.logging
    if args.log_level:
        log_cfg = log_cfg.model_copy(update={"level": args.log_level.upper()})
    configure_logging(log_cfg)

    sinks = [CallbackSink(_emit, kinds=(ALERT,), name="stdout")]
    if settings.publisher.log_sink:
        sinks.append(LogSink())

    if args.input == "-":
        counts, metrics = asyncio.run(_replay(settings, sinks, _read_jsonl(sys.stdin), args.inline))
    else:
        path = Path(args.input)
        if not path.is_file():
            logger.error(f"[Replay] input not found: {path}")
            return 2
        with open(path, "r", encoding="utf-8") as f:
            counts, metrics = asyncio.run(_replay(settings, sinks, _read_jsonl(f), args.inline))

    snap = metrics.snapshot()
    logger.info(f"[Replay] rows={counts['rows']} rejected={counts['rejected']} "
                f"alerts={snap['counters'].get('alerts_emitted', 0)} "
                f"latency={snap['latency_ingest_to_result']}")
    if args.metrics:
        sys.stderr.write(metrics.to_prometheus())
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":  # pragma: no cover
    run()
