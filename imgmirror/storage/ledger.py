"""Append-only dedup ledger: the single source of truth for "already seen".

The on-disk log holds one record per line, either ``id`` or ``id,fingerprint``.
The in-memory sets and the log are always updated together under one lock.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import IO, Dict, Optional

from imgmirror.errors import LedgerError
from imgmirror.selection.fingerprint import FingerprintEngine, GradientHash
from imgmirror.storage.models import Fingerprint, LedgerState

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = "data/posts.csv"


class DedupLedger:
    """Durable set of seen post IDs and image fingerprints shared by all bots.

    Usage:
        ledger = DedupLedger("data/posts.csv")
        ledger.load()
        if not ledger.contains_id(post_id):
            ...
        ledger.close()
    """

    def __init__(
        self,
        path: str = DEFAULT_LEDGER_PATH,
        engine: Optional[FingerprintEngine] = None,
        fsync: bool = True,
    ):
        self.path = path
        self.engine = engine or GradientHash()
        self.fsync = fsync
        self._state = LedgerState()
        self._lock = threading.RLock()
        self._handle: Optional[IO[str]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self, create: bool = False) -> LedgerState:
        """Replay the log and open it for appending.

        Malformed fingerprint fields keep their identifier. A trailing fragment
        without a newline is an interrupted write: it is not replayed and is
        cut from the file before appending resumes.
        """
        path = Path(self.path)
        if create:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)

        with self._lock:
            state = LedgerState()
            malformed = 0
            try:
                with open(path, "rb") as f:
                    raw = f.read()
            except OSError as e:
                raise LedgerError(f"Unable to open ledger: {e}", self.path) from e

            # Everything after the last newline was never fully committed
            committed = raw.rfind(b"\n") + 1
            if committed < len(raw):
                logger.warning(
                    "Discarding interrupted record at end of %s: %r",
                    self.path,
                    raw[committed:],
                )
                self._truncate(path, committed)

            try:
                lines = raw[:committed].decode("utf-8").split("\n")
            except UnicodeDecodeError as e:
                raise LedgerError(f"Ledger is not valid UTF-8: {e}", self.path) from e

            for line in lines:
                line = line.rstrip("\r")
                if not line:
                    continue
                if not self._replay(state, line):
                    malformed += 1

            if self._handle:
                self._handle.close()
            try:
                self._handle = open(path, "a", encoding="utf-8", newline="")
            except OSError as e:
                raise LedgerError(f"Unable to open ledger for append: {e}", self.path) from e

            self._state = state

        if malformed:
            logger.warning("%d ledger records had malformed fingerprints", malformed)
        logger.info(
            "%d post IDs loaded into memory, %d image hashes loaded into memory",
            len(state.seen_ids),
            len(state.seen_fingerprints),
        )
        return state.copy()

    def _truncate(self, path: Path, size: int) -> None:
        try:
            with open(path, "r+b") as f:
                f.truncate(size)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
        except OSError as e:
            raise LedgerError(f"Unable to discard interrupted record: {e}", self.path) from e

    def _replay(self, state: LedgerState, line: str) -> bool:
        post_id, sep, raw_fp = line.partition(",")
        state.seen_ids.add(post_id)
        if not sep:
            return True
        try:
            state.seen_fingerprints.add(self.engine.parse(raw_fp))
        except ValueError:
            return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._handle:
                self._handle.close()
                self._handle = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def contains_id(self, post_id: str) -> bool:
        with self._lock:
            return post_id in self._state.seen_ids

    def contains_fingerprint(self, fp: Fingerprint) -> bool:
        with self._lock:
            return fp in self._state.seen_fingerprints

    @property
    def state(self) -> LedgerState:
        """A snapshot copy of the current sets."""
        with self._lock:
            return self._state.copy()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "post_ids": len(self._state.seen_ids),
                "fingerprints": len(self._state.seen_fingerprints),
            }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reject(self, post_id: str) -> None:
        """Record a post that will never be published. Known IDs are not rewritten."""
        with self._lock:
            if post_id in self._state.seen_ids:
                return
            self._append(post_id)
            self._state.seen_ids.add(post_id)
            self._log_size()

    def accept(self, post_id: str, fp: Fingerprint) -> None:
        """Record a post together with the fingerprint of its image."""
        with self._lock:
            self._append(f"{post_id},{self.engine.format(fp)}")
            self._state.seen_ids.add(post_id)
            self._state.seen_fingerprints.add(fp)
            self._log_size()

    def commit_fingerprint(self, post_id: str, fp: Fingerprint) -> bool:
        """Accept the post unless its fingerprint is already known, then reject it.

        The check and the write happen under one lock so concurrent bots cannot
        both accept the same image, and a post another bot already recorded is
        left alone. Returns True when accepted.
        """
        with self._lock:
            if post_id in self._state.seen_ids:
                return False
            if fp in self._state.seen_fingerprints:
                self.reject(post_id)
                return False
            self.accept(post_id, fp)
            return True

    def _append(self, record: str) -> None:
        if self._handle is None:
            raise LedgerError("Ledger is not open; call load() first", self.path)
        if "\n" in record or "\r" in record:
            raise ValueError(f"ledger record must be a single line: {record!r}")
        try:
            self._handle.write(record + "\n")
            self._handle.flush()
            if self.fsync:
                os.fsync(self._handle.fileno())
        except OSError as e:
            raise LedgerError(f"Unable to append to ledger: {e}", self.path) from e

    def _log_size(self) -> None:
        logger.debug(
            "Database now contains %d post IDs and %d hashes",
            len(self._state.seen_ids),
            len(self._state.seen_fingerprints),
        )
