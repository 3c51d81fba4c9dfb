"""Tests for the dedup ledger: replay, append format, crash recovery, locking."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from imgmirror.errors import LedgerError
from imgmirror.selection.fingerprint import PerceptualHash
from imgmirror.storage.ledger import DedupLedger
from imgmirror.storage.models import LedgerState


# --- Fixtures ---

@pytest.fixture
def ledger_path(tmp_path):
    """Return a path to a ledger file that does not exist yet."""
    return str(tmp_path / "data" / "posts.csv")


@pytest.fixture
def ledger(ledger_path):
    """Return a loaded, empty DedupLedger."""
    led = DedupLedger(ledger_path, fsync=False)
    led.load(create=True)
    yield led
    led.close()


def write_log(path: str, content: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


def reload(path: str) -> LedgerState:
    led = DedupLedger(path, fsync=False)
    try:
        return led.load()
    finally:
        led.close()


# --- Load / replay ---

class TestLoad:
    def test_create_bootstraps_missing_file(self, ledger_path):
        led = DedupLedger(ledger_path)
        state = led.load(create=True)
        led.close()
        assert Path(ledger_path).exists()
        assert state.seen_ids == set()
        assert state.seen_fingerprints == set()

    def test_missing_file_without_create_is_fatal(self, ledger_path):
        led = DedupLedger(ledger_path)
        with pytest.raises(LedgerError) as exc:
            led.load()
        assert exc.value.path == ledger_path

    def test_replay_both_record_kinds(self, ledger_path):
        write_log(ledger_path, "abc\ndef,12345\nghi,0\n")
        state = reload(ledger_path)
        assert state.seen_ids == {"abc", "def", "ghi"}
        assert state.seen_fingerprints == {12345, 0}

    def test_malformed_fingerprint_keeps_id(self, ledger_path):
        write_log(ledger_path, "good,42\nbad,notanumber\nneg,-5\n")
        state = reload(ledger_path)
        assert state.seen_ids == {"good", "bad", "neg"}
        assert state.seen_fingerprints == {42}

    def test_blank_lines_and_crlf_ignored(self, ledger_path):
        write_log(ledger_path, "a\r\n\nb,7\r\n\n")
        state = reload(ledger_path)
        assert state.seen_ids == {"a", "b"}
        assert state.seen_fingerprints == {7}

    def test_torn_tail_is_not_replayed(self, ledger_path):
        write_log(ledger_path, "a,1\nb\nc,12")
        state = reload(ledger_path)
        assert state.seen_ids == {"a", "b"}
        assert state.seen_fingerprints == {1}

    def test_load_returns_copy(self, ledger):
        state = ledger.load()
        state.seen_ids.add("intruder")
        assert not ledger.contains_id("intruder")


# --- Mutations ---

class TestMutations:
    def test_reject_appends_lone_id(self, ledger, ledger_path):
        ledger.reject("abc")
        assert Path(ledger_path).read_text() == "abc\n"
        assert ledger.contains_id("abc")
        assert ledger.state.seen_fingerprints == set()

    def test_accept_appends_id_and_fingerprint(self, ledger, ledger_path):
        ledger.accept("abc", 987654321)
        assert Path(ledger_path).read_text() == "abc,987654321\n"
        assert ledger.contains_id("abc")
        assert ledger.contains_fingerprint(987654321)

    def test_commit_fingerprint_rejects_known_image(self, ledger, ledger_path):
        assert ledger.commit_fingerprint("first", 55) is True
        assert ledger.commit_fingerprint("second", 55) is False
        assert Path(ledger_path).read_text() == "first,55\nsecond\n"
        assert ledger.contains_id("second")

    def test_known_id_not_rewritten(self, ledger, ledger_path):
        ledger.accept("abc", 9)
        ledger.reject("abc")
        assert ledger.commit_fingerprint("abc", 10) is False
        assert Path(ledger_path).read_text() == "abc,9\n"
        assert not ledger.contains_fingerprint(10)

    def test_mutation_before_load_raises(self, ledger_path):
        led = DedupLedger(ledger_path)
        with pytest.raises(LedgerError):
            led.reject("abc")
        assert not led.contains_id("abc")

    def test_multiline_record_refused(self, ledger):
        with pytest.raises(ValueError):
            ledger.reject("bad\nid")
        assert not ledger.contains_id("bad\nid")

    def test_sets_are_monotonic(self, ledger):
        sizes = []
        for i in range(5):
            ledger.reject(f"r{i}")
            ledger.commit_fingerprint(f"a{i}", i % 3)
            s = ledger.stats()
            sizes.append((s["post_ids"], s["fingerprints"]))
        assert sizes == sorted(sizes)
        assert sizes[-1] == (10, 3)

    def test_stats(self, ledger):
        ledger.reject("x")
        ledger.accept("y", 1)
        assert ledger.stats() == {"post_ids": 2, "fingerprints": 1}


# --- Persistence / crash consistency ---

class TestPersistence:
    def test_replay_matches_live_state(self, ledger, ledger_path):
        ledger.reject("a")
        ledger.accept("b", 2)
        ledger.commit_fingerprint("c", 2)
        ledger.commit_fingerprint("d", 3)
        live = ledger.state
        assert reload(ledger_path) == live

    def test_append_after_torn_tail_replays_to_live_state(self, ledger_path):
        write_log(ledger_path, "a,1\nb\nc,12")
        led = DedupLedger(ledger_path, fsync=False)
        state = led.load()
        assert state == LedgerState({"a", "b"}, {1})

        led.accept("d", 3)
        live = led.state
        led.close()

        assert Path(ledger_path).read_text() == "a,1\nb\nd,3\n"
        assert reload(ledger_path) == live
        assert live == LedgerState({"a", "b", "d"}, {1, 3})

    def test_torn_tail_cut_at_load(self, ledger_path):
        write_log(ledger_path, "a,1\nb,2")
        reload(ledger_path)
        assert Path(ledger_path).read_text() == "a,1\n"

    def test_file_without_any_newline_is_emptied(self, ledger_path):
        write_log(ledger_path, "partial")
        assert reload(ledger_path) == LedgerState()
        assert Path(ledger_path).read_text() == ""

    def test_reopen_appends_rather_than_truncates(self, ledger_path):
        write_log(ledger_path, "old\n")
        led = DedupLedger(ledger_path, fsync=False)
        led.load()
        led.reject("new")
        led.close()
        assert Path(ledger_path).read_text() == "old\nnew\n"

    def test_perceptual_fingerprints_roundtrip(self, ledger_path):
        engine = PerceptualHash(hash_size=16)
        fp = "ab" * 32
        led = DedupLedger(ledger_path, engine=engine, fsync=False)
        led.load(create=True)
        led.accept("p", fp)
        led.close()

        again = DedupLedger(ledger_path, engine=engine, fsync=False)
        state = again.load()
        again.close()
        assert state.seen_fingerprints == {fp}


# --- Concurrency ---

class TestConcurrency:
    def test_same_fingerprint_accepted_once(self, ledger, ledger_path):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: ledger.commit_fingerprint(f"p{i}", 777), range(32)))

        assert results.count(True) == 1
        lines = Path(ledger_path).read_text().splitlines()
        assert len(lines) == 32
        assert sum(1 for line in lines if line.endswith(",777")) == 1
        assert ledger.stats() == {"post_ids": 32, "fingerprints": 1}

    def test_same_post_recorded_once(self, ledger, ledger_path):
        # Two bots sharing a subreddit may both download the same post
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: ledger.commit_fingerprint("shared", i), range(16)))

        assert results.count(True) == 1
        assert len(Path(ledger_path).read_text().splitlines()) == 1
        assert ledger.stats() == {"post_ids": 1, "fingerprints": 1}
