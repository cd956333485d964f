#!/usr/bin/env python3
"""
ShardFetch Single Fetch Module

Functions for fetching one (url, destination) pair of a shard list.

This module is used by crawl_batch.py and provides:
- sanitize_path(): Trim a destination hint to a known image suffix
- parse_work_line() / load_work_items(): Shard list parsing
- fetch_one(): GET, classify, and save one item or record its failure
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from failure_recorder import FailureRecorder


NOT_A_PICTURE = "not-pic"

# Scan order matters: ".jpg" is tried before ".jpeg"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")

CHUNK_SIZE = 64 * 1024


class FetchStatus(Enum):
    """Per-item outcome of fetch_one."""
    SAVED = "saved"        # body written to disk
    SKIPPED = "skipped"    # destination is not an image, body dropped
    FAILED = "failed"      # failure recorded


@dataclass(frozen=True)
class WorkItem:
    """One line of a shard list."""
    resource: str
    destination: str


def sanitize_path(path: str) -> str:
    """
    Cut a destination hint right after its image extension.

    Matching is case-insensitive but the returned prefix keeps the original
    case, so "Foo/BAR.JPG?x=1" becomes "Foo/BAR.JPG".

    Args:
        path: Raw destination from the shard list

    Returns:
        Prefix ending at the extension, or NOT_A_PICTURE if none is present
    """
    lower_path = path.lower()
    for ext in IMAGE_EXTENSIONS:
        idx = lower_path.find(ext)
        if idx != -1:
            return path[:idx + len(ext)]
    return NOT_A_PICTURE


def parse_work_line(line: str) -> Optional[WorkItem]:
    """Split a line on its first whitespace run; None when it has fewer than two fields."""
    parts = line.strip().split(None, 1)
    if len(parts) < 2:
        return None
    destination = parts[1].strip()
    if not destination:
        return None
    return WorkItem(resource=parts[0], destination=destination)


def load_work_items(file_path: str) -> list[WorkItem]:
    """
    Read a whole shard list into memory.

    Args:
        file_path: Path to the shard list

    Returns:
        WorkItems in line order, malformed lines dropped

    Raises:
        OSError: If the file can't be opened or read
    """
    items = []
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            item = parse_work_line(line)
            if item is not None:
                items.append(item)
    return items


def _total_timeout(timeout: tuple[float, float] | float) -> float:
    if isinstance(timeout, tuple):
        return timeout[1]
    return timeout


def _read_body(resp: requests.Response, deadline: float) -> bytes:
    """Read the whole body; a trickling server can't run past `deadline`."""
    chunks = []
    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
        chunks.append(chunk)
        if time.monotonic() > deadline:
            raise requests.exceptions.Timeout(f"Body not complete before deadline: {resp.url}")
    return b"".join(chunks)


def _storage_file_path(storage_root: str, sanitized: str) -> str:
    """
    Join a sanitized destination onto storage_root.

    Raises:
        ValueError: If the result would land outside storage_root
    """
    root = os.path.abspath(storage_root)
    file_path = os.path.normpath(os.path.join(root, sanitized.lstrip("/\\")))
    if os.path.commonpath([root, file_path]) != root or file_path == root:
        raise ValueError(f"destination escapes storage root: {sanitized!r}")
    return file_path


def fetch_one(
    session: requests.Session,
    item: WorkItem,
    storage_root: str,
    recorder: FailureRecorder,
    timeout: tuple[float, float] | float,
) -> FetchStatus:
    """
    Fetch one item and save it under storage_root.

    Network errors, 403/429 responses, body read errors, overall timeouts and
    file errors are recorded in `recorder` and never raised. Other non-2xx
    statuses are saved like a 200.

    Args:
        session: Shared requests Session
        item: Resource/destination pair
        storage_root: Root folder for saved images
        recorder: Failure recorder of the current wave
        timeout: requests timeout, seconds or (connect, read); the read part
            also bounds the whole request

    Returns:
        FetchStatus of the item
    """
    deadline = time.monotonic() + _total_timeout(timeout)
    try:
        with session.get(item.resource, stream=True, timeout=timeout) as resp:
            if resp.status_code in (403, 429):
                recorder.record(item.resource, item.destination)
                return FetchStatus.FAILED

            # TODO: decide whether 404/5xx bodies should be recorded as failures instead of saved
            try:
                body = _read_body(resp, deadline)
            except requests.RequestException:
                recorder.record(item.resource, item.destination)
                return FetchStatus.FAILED
    except requests.RequestException:
        recorder.record(item.resource, item.destination)
        return FetchStatus.FAILED

    sanitized = sanitize_path(item.destination)
    if sanitized == NOT_A_PICTURE:
        return FetchStatus.SKIPPED

    # ValueError covers paths outside the root and embedded NUL bytes
    try:
        file_path = _storage_file_path(storage_root, sanitized)
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        f = open(file_path, "wb")
    except (OSError, ValueError) as e:
        recorder.record(item.resource, item.destination)
        print(f"[Save] Failed to create {sanitized!r}: {e}")
        return FetchStatus.FAILED

    # A failed write leaves whatever was already written in place
    try:
        with f:
            f.write(body)
    except OSError:
        recorder.record(item.resource, item.destination)
        return FetchStatus.FAILED
    return FetchStatus.SAVED
