"""
Global mutation lock.

One lock file serialises full sync cycles and quick operations across
processes on the host. The file is created with O_CREAT | O_EXCL and
holds the holder's pid, acquisition time and a per-holder token.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1


class CycleLock:
    """
    Exclusive, non-reentrant lock file.

    A lock older than ``stale_after_seconds`` is assumed to belong to a
    crashed process and is broken. Acquisition never queues: after the
    bounded wait the caller gets False and reports itself busy.
    """

    def __init__(self, path: Path | str, stale_after_seconds: float = 3600.0):
        self.path = Path(path)
        self.stale_after_seconds = stale_after_seconds
        self._token: str | None = None

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self, timeout: float = 0.0) -> bool:
        """
        Try to take the lock, polling until ``timeout`` seconds pass.

        Returns:
            True if acquired, False if another holder kept it
        """
        if self._token is not None:
            raise RuntimeError(f"Lock already held by this process: {self.path}")

        deadline = time.monotonic() + max(timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            if self._try_create():
                logger.debug("Acquired lock %s", self.path)
                return True
            if self._break_if_stale():
                continue
            if time.monotonic() >= deadline:
                logger.info("Lock busy: %s (%s)", self.path, self._describe_holder())
                return False
            time.sleep(POLL_INTERVAL_SECONDS)

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if self._token is None:
            return
        token, self._token = self._token, None

        holder = self._read_holder()
        if holder is not None and holder.get("token") != token:
            logger.warning("Lock %s was taken over by another holder; leaving it", self.path)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Lock file %s vanished before release", self.path)
            return
        logger.debug("Released lock %s", self.path)

    @contextmanager
    def held(self, timeout: float = 0.0) -> Iterator[bool]:
        """
        Context manager form: yields whether the lock was acquired and
        releases it on every exit path.
        """
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False

        token = uuid.uuid4().hex
        payload = {
            "pid": os.getpid(),
            "acquired_at": time.time(),
            "acquired_at_iso": datetime.now(timezone.utc).isoformat(),
            "token": token,
        }
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle)
        except OSError:
            self.path.unlink(missing_ok=True)
            raise
        self._token = token
        return True

    def _read_holder(self, path: Path | None = None) -> dict | None:
        try:
            return json.loads((path or self.path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Half-written by a holder that is still creating it
            return {}

    def _age_seconds(self, holder: dict) -> float | None:
        acquired_at = holder.get("acquired_at")
        if isinstance(acquired_at, (int, float)):
            return time.time() - acquired_at
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _break_if_stale(self) -> bool:
        """
        Break the lock if its holder is stale.

        The file is first renamed aside, which only one breaker can do,
        and deleted only if it still carries the token inspected here. A
        fresh lock moved aside this way is put back and the caller
        reports busy.

        Returns:
            True if the caller should retry creating the lock
        """
        holder = self._read_holder()
        if holder is None:
            # Released between our attempt and this check
            return True
        age = self._age_seconds(holder)
        if age is None:
            return True
        if age < self.stale_after_seconds:
            return False

        aside = self.path.with_name(f"{self.path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            # Another breaker or the holder got there first
            return True

        moved = self._read_holder(aside) or {}
        if moved.get("token") != holder.get("token"):
            self._restore(aside)
            return False

        logger.warning(
            "Breaking stale lock %s held by pid %s for %.0fs",
            self.path,
            holder.get("pid", "?"),
            age,
        )
        aside.unlink(missing_ok=True)
        return True

    def _restore(self, aside: Path) -> None:
        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.error(
                "Could not restore lock %s: a new holder took it while it was set aside (%s)",
                self.path,
                aside,
            )
            return
        aside.unlink(missing_ok=True)
        logger.info("Lock %s changed hands while checking staleness; left in place", self.path)

    def _describe_holder(self) -> str:
        holder = self._read_holder() or {}
        return f"pid {holder.get('pid', '?')} since {holder.get('acquired_at_iso', '?')}"
