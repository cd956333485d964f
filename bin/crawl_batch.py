#!/usr/bin/env python3
"""
ShardFetch Batch Crawler

Downloads every (url, destination) pair listed in numbered shard files,
one shard at a time, with a fixed ceiling on in-flight requests.

Per shard (a "wave"):
- Read the whole shard list into memory
- Fan out fetches on a thread pool, gated by a ticket pool
- Wait for every fetch, then flush failures to <fail_path>/<shard>.txt
- Stop the whole run if two waves finish less than min_round_interval apart

Usage:
  python crawl_batch.py --config crawl.json --start 1 --end 10

Author: FLOW-DC Team
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, fields
from typing import Callable, Optional

import requests
from tqdm import tqdm

from failure_recorder import FailureLogError, FailureRecorder, failure_log_path
from http_transport import ProxyConfigError, build_session, request_timeout
from single_fetch import FetchStatus, WorkItem, fetch_one, load_work_items


DEFAULT_CONFIG_FILE = "crawl.json"

logger = logging.getLogger("shardfetch.range")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class CrawlConfig:
    """Main application configuration."""
    timeout: int = 30
    max_concurrent: int = 64
    proxy_url: str = ""
    use_proxy: bool = False
    urls_path: str = "urls"
    fail_path: str = "fail"
    storage_path: str = "storage"
    log_path: str = "logs"
    name_template: str = "train-{index:05d}-of-03550"
    min_round_interval: float = 300.0
    show_progress: bool = True

    def validate(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        try:
            self.name_template.format(index=0)
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(f"Bad name_template {self.name_template!r}: {e}") from e


CONFIG_KEYS = tuple(f.name for f in fields(CrawlConfig) if f.name != "show_progress")

_CASTS = {"int": int, "float": float, "str": str}


def _coerce(values: dict) -> dict:
    out = {}
    for f in fields(CrawlConfig):
        if f.name not in values:
            continue
        v = values[f.name]
        if f.type == "bool":
            if not isinstance(v, bool):
                raise ValueError(f"{f.name} must be true or false, got {v!r}")
        else:
            try:
                v = _CASTS[f.type](v)
            except (TypeError, ValueError):
                raise ValueError(f"{f.name}: cannot use {v!r}") from None
        out[f.name] = v
    return out


def load_config(path: str) -> dict:
    """Read a JSON config file; unknown keys are ignored."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a JSON object")
    return _coerce({k: data[k] for k in CONFIG_KEYS if k in data})


def parse_args(argv: Optional[list[str]] = None) -> tuple[CrawlConfig, Optional[int], Optional[int]]:
    """
    Parse command line arguments and the JSON config file.

    Keys from the config file override flag defaults. Without --config,
    ./crawl.json is used when present.

    Returns:
        (config, start, end); start/end are None when not given

    Raises:
        OSError, ValueError: If the config file is unreadable or invalid
    """
    defaults = CrawlConfig()
    p = argparse.ArgumentParser(
        description="ShardFetch batch crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python crawl_batch.py --config crawl.json
  python crawl_batch.py --urls_path urls --storage_path images --start 1 --end 10
""",
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--start", type=int, default=None, help="First shard index (prompted if omitted)")
    p.add_argument("--end", type=int, default=None, help="Last shard index, inclusive")
    p.add_argument("--timeout", type=int, default=defaults.timeout, help="Request timeout in seconds")
    p.add_argument("--max_concurrent", type=int, default=defaults.max_concurrent,
                   help="Maximum simultaneous fetches")
    p.add_argument("--proxy_url", type=str, default=defaults.proxy_url)
    p.add_argument("--use_proxy", action="store_true", default=defaults.use_proxy)
    p.add_argument("--urls_path", type=str, default=defaults.urls_path, help="Folder of shard lists")
    p.add_argument("--fail_path", type=str, default=defaults.fail_path, help="Folder for failure logs")
    p.add_argument("--storage_path", type=str, default=defaults.storage_path, help="Folder for images")
    p.add_argument("--log_path", type=str, default=defaults.log_path, help="Folder for range logs")
    p.add_argument("--name_template", type=str, default=defaults.name_template)
    p.add_argument("--min_round_interval", type=float, default=defaults.min_round_interval,
                   help="Stop when two shards finish closer than this many seconds")
    p.add_argument("--no_progress", action="store_true")

    args = p.parse_args(argv)

    values = {k: getattr(args, k) for k in CONFIG_KEYS}
    config_file = args.config
    if config_file is None and os.path.exists(DEFAULT_CONFIG_FILE):
        config_file = DEFAULT_CONFIG_FILE
    if config_file:
        values.update(load_config(config_file))

    cfg = CrawlConfig(show_progress=not args.no_progress, **values)
    cfg.validate()
    return cfg, args.start, args.end


# =============================================================================
# CONCURRENCY PRIMITIVES
# =============================================================================

class TicketPool:
    """Fixed-size pool of fetch tickets."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._inflight = 0
        self._peak = 0
        self._cond = threading.Condition()

    def acquire(self) -> None:
        """Take a ticket, blocking while all are out."""
        with self._cond:
            while self._inflight >= self._limit:
                self._cond.wait()
            self._inflight += 1
            self._peak = max(self._peak, self._inflight)

    def release(self) -> None:
        with self._cond:
            if self._inflight == 0:
                raise RuntimeError("release() without a matching acquire()")
            self._inflight -= 1
            self._cond.notify(1)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def inflight(self) -> int:
        with self._cond:
            return self._inflight

    @property
    def peak(self) -> int:
        with self._cond:
            return self._peak


class RoundTooFast(Exception):
    """Two consecutive waves finished closer together than allowed."""

    def __init__(self, interval: float, min_interval: float):
        super().__init__(
            f"Waves finished {interval:.1f}s apart (< {min_interval:.0f}s)"
        )
        self.interval = interval
        self.min_interval = min_interval


class RoundClock:
    """Remembers when the previous wave ended."""

    def __init__(self, min_interval: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last_end: Optional[float] = None

    @property
    def last_end(self) -> Optional[float]:
        return self._last_end

    def mark_round_end(self) -> float:
        """
        Record the end of a wave.

        Raises:
            RoundTooFast: If the previous wave ended less than min_interval ago.
                The stored end time is left as it was.
        """
        now = self._clock()
        if self._last_end is not None:
            interval = now - self._last_end
            if interval < self.min_interval:
                raise RoundTooFast(interval, self.min_interval)
        self._last_end = now
        return now


# =============================================================================
# ENGINE
# =============================================================================

FetchFn = Callable[[requests.Session, WorkItem, str, FailureRecorder, object], FetchStatus]


class Engine:
    """
    Owns everything shared across waves: HTTP session, ticket pool, failure
    recorder, round clock and worker threads.
    """

    def __init__(
        self,
        cfg: CrawlConfig,
        session: Optional[requests.Session] = None,
        recorder: Optional[FailureRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        fetch: FetchFn = fetch_one,
    ):
        self.cfg = cfg
        self.session = session if session is not None else build_session(
            cfg.max_concurrent, cfg.proxy_url, cfg.use_proxy
        )
        self.tickets = TicketPool(cfg.max_concurrent)
        self.recorder = recorder if recorder is not None else FailureRecorder()
        self.round_clock = RoundClock(cfg.min_round_interval, clock=clock)
        self._fetch = fetch
        self._timeout = request_timeout(cfg.timeout)
        self._executor = ThreadPoolExecutor(
            max_workers=cfg.max_concurrent, thread_name_prefix="fetch"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.session.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _ticketed_fetch(self, item: WorkItem, pbar, pbar_lock: threading.Lock) -> FetchStatus:
        try:
            return self._fetch(self.session, item, self.cfg.storage_path, self.recorder, self._timeout)
        finally:
            self.tickets.release()
            with pbar_lock:
                pbar.update(1)

    def _dispatch(self, name: str, items: list[WorkItem]) -> None:
        futures: list[Future] = []
        pbar = tqdm(total=len(items), desc=name, unit="url", disable=not self.cfg.show_progress)
        pbar_lock = threading.Lock()
        try:
            for item in items:
                self.tickets.acquire()
                try:
                    futures.append(self._executor.submit(self._ticketed_fetch, item, pbar, pbar_lock))
                except BaseException:
                    self.tickets.release()
                    raise
        finally:
            # Never leave a wave with workers still running
            wait(futures)
            pbar.close()

        for fut in futures:
            fut.result()

    def _flush_failures(self, name: str) -> None:
        fail_file = failure_log_path(self.cfg.fail_path, name)
        try:
            written = self.recorder.flush(fail_file)
            print(f"[Fail] {name}: {written} failure records written")
        except FailureLogError as e:
            print(f"[Fail] {e} ({len(e.records)} records dropped)")
            logger.error("%s (%d records dropped)", e, len(e.records))

    def run_wave(self, name: str) -> bool:
        """
        Process one shard list.

        Args:
            name: Shard name; reads <urls_path>/<name>.txt

        Returns:
            False if the shard list couldn't be read (wave skipped), else True

        Raises:
            RoundTooFast: If this wave ended too soon after the previous one.
                Failures are flushed before this is raised.
        """
        print(f"[Wave] Starting {name}")
        list_path = os.path.join(self.cfg.urls_path, name + ".txt")

        t0 = time.monotonic()
        try:
            items = load_work_items(list_path)
        except OSError as e:
            print(f"[Load] Cannot open {list_path}: {e}")
            return False
        print(f"[Load] {name}: {len(items)} lines in {time.monotonic() - t0:.2f}s")

        try:
            self._dispatch(name, items)
        finally:
            # Failures recorded before a worker bug still reach the log
            self._flush_failures(name)

        self.round_clock.mark_round_end()
        print(f"[Wave] {name} finished at {time.strftime('%Y-%m-%d %H:%M:%S')}")
        return True


# =============================================================================
# RANGE DRIVER
# =============================================================================

def shard_name(template: str, index: int) -> str:
    return template.format(index=index)


def prompt_range(input_fn: Callable[[str], str] = input) -> tuple[int, int]:
    """
    Ask for the first and last shard index.

    Raises:
        ValueError: If either answer isn't an integer
    """
    raw_start = input_fn("Start index (e.g. 1 for train-00001): ")
    try:
        start = int(raw_start.strip())
    except ValueError:
        raise ValueError(f"Cannot parse start index {raw_start!r}") from None

    raw_end = input_fn("End index (e.g. 10 for train-00010): ")
    try:
        end = int(raw_end.strip())
    except ValueError:
        raise ValueError(f"Cannot parse end index {raw_end!r}") from None
    return start, end


def provision_dirs(cfg: CrawlConfig, name: str) -> None:
    """Create the shard's storage folder plus the failure and log folders."""
    os.makedirs(os.path.join(cfg.storage_path, name), exist_ok=True)
    os.makedirs(cfg.fail_path, exist_ok=True)
    os.makedirs(cfg.log_path, exist_ok=True)


def open_range_log(log_path: str, start: int, end: int) -> logging.Handler:
    """Attach the log-<start>-<end>.txt file handler to the range logger."""
    os.makedirs(log_path, exist_ok=True)
    handler = logging.FileHandler(
        os.path.join(log_path, f"log-{start}-{end}.txt"), mode="a", encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter("%(asctime)s %(filename)s:%(lineno)d: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return handler


def run_range(engine: Engine, start: int, end: int) -> Optional[int]:
    """
    Run one wave per index in [start, end].

    Returns:
        The index at which the stop heuristic fired, or None if the whole
        range was processed

    Raises:
        OSError: If a shard's folders can't be created
    """
    for index in range(start, end + 1):
        name = shard_name(engine.cfg.name_template, index)
        provision_dirs(engine.cfg, name)
        try:
            done = engine.run_wave(name)
        except RoundTooFast as e:
            print(f"[Stop] {e}; exiting.")
            logger.info("Stopped after %s: %s", name, e)
            return index
        if done:
            logger.info("Finished: %s", name)
        else:
            logger.info("Skipped: %s", name)
    print(f"[Range] Shards {start}..{end} done")
    return None


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point. Returns the process exit status."""
    try:
        cfg, start, end = parse_args(argv)
    except (OSError, ValueError) as e:
        print(f"[Config] {e}")
        return 1

    print("=" * 72)
    print("ShardFetch Batch Crawler")
    print("=" * 72)
    print(f"[Config] {asdict(cfg)}")

    try:
        session = build_session(cfg.max_concurrent, cfg.proxy_url, cfg.use_proxy)
    except ProxyConfigError as e:
        print(f"[Proxy] {e}")
        return 1

    if start is None or end is None:
        try:
            start, end = prompt_range()
        except (ValueError, EOFError) as e:
            print(f"[Range] {e}")
            session.close()
            return 1

    try:
        handler = open_range_log(cfg.log_path, start, end)
    except OSError as e:
        print(f"[Range] Cannot open range log: {e}")
        session.close()
        return 1

    try:
        with Engine(cfg, session=session) as engine:
            run_range(engine, start, end)
    except OSError as e:
        print(f"[Range] {e}")
        return 1
    finally:
        logger.removeHandler(handler)
        handler.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
