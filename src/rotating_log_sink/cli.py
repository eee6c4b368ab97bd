"""Click CLI for rotating-log-sink.

Entry point registered in ``pyproject.toml`` as ``rotating-log-sink``.

Subcommands::

    rotating-log-sink -c config.json                 # tee stdin into configured sinks
    rotating-log-sink --path app.log --count 5       # ad-hoc single sink
    rotating-log-sink schedule --period monthly      # print upcoming boundaries

Signals: SIGTERM/SIGINT stop after the current line, SIGHUP rotates every
sink immediately.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

import click
import orjson

from rotating_log_sink import __version__
from rotating_log_sink.config import (
    AppConfig,
    LogFileConfig,
    SinkConfig,
    load_config,
    validate_sinks,
)
from rotating_log_sink.handler import RotatingSinkHandler
from rotating_log_sink.models import RotationSpec
from rotating_log_sink.scheduler import compute_next, utcnow
from rotating_log_sink.sink import RotatingFileSink, SinkState

logger = logging.getLogger("rotating_log_sink")

CONFIG_ENV = "ROTATING_LOG_SINK_CONFIG"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _make_formatter(fmt: str) -> logging.Formatter:
    if fmt == "text":
        return logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    return _JsonFormatter()


_stderr_handler: Optional[logging.Handler] = None


def _setup_logging(level: str, fmt: str = "json") -> None:
    """Configure the root logger with output on stderr."""
    global _stderr_handler

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # One stderr handler per process, even if main() runs more than once.
    if _stderr_handler is not None:
        root.removeHandler(_stderr_handler)
    _stderr_handler = logging.StreamHandler(sys.stderr)
    _stderr_handler.setFormatter(_make_formatter(fmt))
    root.addHandler(_stderr_handler)


def _attach_log_file(file_cfg: LogFileConfig, fmt: str, max_delay: float) -> RotatingSinkHandler:
    """Send the application's own logs to a rotating sink as well."""
    os.makedirs(os.path.dirname(os.path.abspath(file_cfg.path)), exist_ok=True)
    sink = RotatingFileSink(
        path=file_cfg.path,
        count=file_cfg.count,
        period=file_cfg.period,
        gzip=file_cfg.gzip,
        max_delay=max_delay,
    )
    handler = RotatingSinkHandler(sink)
    handler.setFormatter(_make_formatter(fmt))
    logging.getLogger().addHandler(handler)
    return handler


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None,
              help=f"Config file path (or ${CONFIG_ENV}).")
@click.option("--path", default=None, help="Ad-hoc sink: live file path.")
@click.option("--period", default=None,
              help="Ad-hoc sink: hourly/daily/weekly/monthly/yearly or <N><h|d|w|m|y>.")
@click.option("--count", type=int, default=None, help="Ad-hoc sink: backups to keep.")
@click.option("--gzip/--no-gzip", default=False, help="Ad-hoc sink: compress backups.")
@click.option("--max-delay-ms", type=int, default=None,
              help="Override the scheduler timer cap.")
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE",
              help="Override a ${VAR} used in the config file.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    path: Optional[str],
    period: Optional[str],
    count: Optional[int],
    gzip: bool,
    max_delay_ms: Optional[int],
    variables: tuple[str, ...],
    log_level: Optional[str],
    validate_only: bool,
) -> None:
    """Copy stdin lines into one or more calendar-rotated log files."""
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    overrides: dict[str, str] = {}
    for item in variables:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--var")
        overrides[key] = value

    cfg_path = config_path or os.environ.get(CONFIG_ENV)
    try:
        cfg = load_config(cfg_path, overrides=overrides) if cfg_path else AppConfig()
        if path:
            if count is None:
                raise ValueError("--count is required with --path")
            cfg.sinks.append(
                SinkConfig(path=path, period=period or "daily", count=count, gzip=gzip)
            )
        if max_delay_ms is not None:
            cfg.scheduler.max_delay_ms = max_delay_ms
        validate_sinks(cfg)
        if not cfg.sinks:
            raise ValueError("no sinks configured (use --config or --path)")
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    effective_level = (
        log_level
        or os.environ.get("ROTATING_LOG_SINK_LOG_LEVEL")
        or cfg.logging.level
    )
    _setup_logging(effective_level, cfg.logging.format)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting rotating-log-sink %s (%d sinks)", __version__, len(cfg.sinks)
    )
    asyncio.run(_run_pipeline(cfg, click.get_binary_stream("stdin")))


# ── async pipeline ──────────────────────────────────────────────────


def _pump_lines(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue, stream) -> None:
    """Read *stream* on a daemon thread and hand lines to the event loop."""
    try:
        for line in iter(stream.readline, b""):
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except RuntimeError:
        return  # loop closed during shutdown


async def _rotate_all(sinks: list[RotatingFileSink]) -> None:
    for sink in sinks:
        if sink.state is SinkState.ROTATING:
            logger.info("Skipping %s: rotation already in flight", sink.path)
            continue
        await sink.rotate()


async def _run_pipeline(cfg: AppConfig, stream) -> None:
    """Core async loop: stdin line → every sink, until EOF or a stop signal."""
    loop = asyncio.get_running_loop()
    max_delay = cfg.scheduler.max_delay_ms / 1000.0

    sinks = []
    for sc in cfg.sinks:
        os.makedirs(os.path.dirname(os.path.abspath(sc.path)), exist_ok=True)
        sinks.append(RotatingFileSink(
            path=sc.path,
            count=sc.count,
            period=sc.period,
            gzip=sc.gzip,
            max_delay=max_delay,
            flush_every_n=cfg.flush.every_n_writes,
        ))
        logger.info("Sink %s: next rotation at %s", sc.path, sinks[-1].next_rotate_at.isoformat())

    log_handler = None
    if cfg.logging.file.enabled:
        log_handler = _attach_log_file(cfg.logging.file, cfg.logging.format, max_delay)

    queue: asyncio.Queue = asyncio.Queue()
    background: set[asyncio.Task] = set()

    # --- signal handling ---
    def _handle_stop() -> None:
        logger.info("Received shutdown signal")
        queue.put_nowait(None)

    def _handle_hup() -> None:
        logger.info("Received SIGHUP, rotating all sinks")
        task = loop.create_task(_rotate_all(sinks))
        background.add(task)
        task.add_done_callback(background.discard)

    for sig, callback in ((signal.SIGTERM, _handle_stop), (signal.SIGINT, _handle_stop),
                          (getattr(signal, "SIGHUP", None), _handle_hup)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError, ValueError):
            pass  # Windows, or not on the main thread

    reader = threading.Thread(
        target=_pump_lines, args=(loop, queue, stream), name="stdin-reader", daemon=True
    )
    reader.start()

    line_count = 0
    try:
        while True:
            line = await queue.get()
            if line is None:
                break
            for sink in sinks:
                sink.write(line)
            line_count += 1
    finally:
        for task in list(background):
            await task
        for sink in sinks:
            await sink.wait_rotation()
            sink.end()
        if log_handler is not None:
            await log_handler.sink.wait_rotation()
            logging.getLogger().removeHandler(log_handler)
            log_handler.close()
        logger.info("Pipeline shut down (wrote %d lines)", line_count)


# ── schedule subcommand ─────────────────────────────────────────────


@main.command("schedule")
@click.option("--period", default="daily", show_default=True, help="Rotation period.")
@click.option("-n", "--number", "number", type=int, default=5, show_default=True,
              help="How many boundaries to print.")
@click.option("--from", "start", default=None,
              help="ISO-8601 instant to start from (default: now, UTC).")
def schedule(period: str, number: int, start: Optional[str]) -> None:
    """Print the next rotation instants for PERIOD."""
    try:
        spec = RotationSpec.parse(period, 0)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--period") from exc
    try:
        now = datetime.fromisoformat(start) if start else utcnow()
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--from") from exc

    previous = None
    for _ in range(number):
        previous = compute_next(spec, previous, now)
        click.echo(previous.isoformat())
