"""
Tests for attnctl.ledger — append-only dispositions and the status index.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import threading
from datetime import datetime, timezone

import pytest

from attnctl.ledger import DispositionLedger
from attnctl.store import AttentionStore, PersistenceError
from attnctl.types import Disposition


@pytest.fixture
def store():
    s = AttentionStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def ledger(store):
    return DispositionLedger(store)


def _d(identity, action, ts="2025-03-01T10:00:00Z", **kw):
    return Disposition(tab_identity=identity, action=action, timestamp=ts, **kw)


class TestStatus:
    def test_unknown_is_unresolved(self, ledger):
        assert ledger.current_status("https://a.com") == "unresolved"

    def test_latest_wins(self, ledger):
        ledger.append(_d("x", "trash", "2025-03-01T10:00:00Z"))
        ledger.append(_d("x", "regroup", "2025-03-02T10:00:00Z"))
        assert ledger.current_status("x") == "regroup"

    def test_out_of_order_timestamp(self, ledger):
        ledger.append(_d("x", "complete", "2025-03-05T10:00:00Z"))
        # Appended later but timestamped earlier: does not override
        ledger.append(_d("x", "regroup", "2025-03-01T10:00:00Z"))
        assert ledger.current_status("x") == "complete"

    def test_same_timestamp_tie_broken_by_sequence(self, ledger):
        ledger.append(_d("x", "trash"))
        ledger.append(_d("x", "regroup"))
        assert ledger.current_status("x") == "regroup"

    def test_persistence_across_reload(self, store, ledger):
        ledger.append(_d("x", "trash"))
        reloaded = DispositionLedger(store)
        assert reloaded.current_status("x") == "trash"
        assert reloaded.cursor == 1


class TestIdempotency:
    def test_replayed_key_returns_original(self, ledger, store):
        first = ledger.append(_d("x", "trash"), idempotency_key="k1")
        again = ledger.append(_d("x", "trash"), idempotency_key="k1")
        assert again.seq == first.seq
        assert len(store.read_dispositions()) == 1

    def test_batch_replay(self, ledger, store):
        batch = [_d("a", "trash"), _d("b", "trash")]
        out = ledger.append_batch(batch, idempotency_key="B1")
        replay = ledger.append_batch([_d("a", "trash"), _d("b", "trash")],
                                     idempotency_key="B1")
        assert [d.seq for d in replay] == [d.seq for d in out]
        assert len(store.read_dispositions()) == 2

    def test_batch_key_survives_reload(self, ledger, store):
        ledger.append_batch([_d("a", "trash"), _d("b", "trash")], idempotency_key="B1")
        reloaded = DispositionLedger(store)
        replay = reloaded.append_batch([_d("a", "trash")], idempotency_key="B1")
        assert len(replay) == 2
        assert len(store.read_dispositions()) == 2

    def test_empty_batch(self, ledger):
        assert ledger.append_batch([]) == []


class TestFailure:
    def test_failed_write_not_indexed(self, ledger, store, monkeypatch):
        def boom(_):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store, "append_dispositions", boom)
        with pytest.raises(PersistenceError):
            ledger.append(_d("x", "trash"))
        assert ledger.current_status("x") == "unresolved"
        assert ledger.cursor == 0


class TestAnnotations:
    def test_active_until_expiry(self, ledger):
        ledger.append(_d("x", "annotate",
                         payload={"kind": "defer", "until": "2025-03-02T00:00:00Z"}))
        before = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
        after = datetime(2025, 3, 3, tzinfo=timezone.utc)
        assert ledger.active_annotation("x", "defer", before) is not None
        assert ledger.active_annotation("x", "defer", after) is None

    def test_without_until_never_expires(self, ledger):
        ledger.append(_d("x", "annotate", payload={"kind": "engage"}))
        assert ledger.active_annotation("x", "engage") is not None
        assert ledger.active_annotation("x", "pause") is None

    def test_annotation_is_not_terminal(self, ledger):
        ledger.append(_d("x", "annotate", payload={"kind": "note"}))
        assert not ledger.snapshot().is_terminal("x")


class TestSnapshot:
    def test_snapshot_is_frozen(self, ledger):
        ledger.append(_d("x", "trash"))
        snap = ledger.snapshot()
        ledger.append(_d("y", "complete"))
        assert snap.cursor == 1
        assert snap.current_status("y") == "unresolved"
        assert ledger.snapshot().current_status("y") == "complete"

    def test_snapshot_read_only(self, ledger):
        snap = ledger.snapshot()
        with pytest.raises(TypeError):
            snap.latest["x"] = None

    def test_summary(self, ledger):
        ledger.append(_d("x", "trash"))
        ledger.append(_d("y", "trash"))
        ledger.append(_d("y", "complete", "2025-03-02T10:00:00Z"))
        s = ledger.summary()
        assert s == {
            "entries": 3,
            "identities": 2,
            "by_status": {"complete": 1, "trash": 1},
        }
        assert ledger.snapshot().summary() == s


class TestSessionStats:
    def test_counts_per_session(self, ledger):
        ledger.append(_d("x", "trash", session_id="S1"))
        ledger.append(_d("y", "complete", session_id="S1"))
        ledger.append(_d("z", "trash", session_id="S2"))
        stats = ledger.stats_for_session("S1")
        assert stats["trashed_count"] == 1
        assert stats["completed_count"] == 1
        assert stats["regrouped_count"] == 0
        assert ledger.stats_for_session("none")["trashed_count"] == 0


class TestSharedDatabase:
    """Ledgers on separate connections to one database file."""

    @pytest.fixture
    def pair(self, tmp_path):
        db = str(tmp_path / "attention.db")
        a_store, b_store = AttentionStore(db), AttentionStore(db)
        yield DispositionLedger(a_store), DispositionLedger(b_store)
        a_store.close()
        b_store.close()

    def test_other_writer_seen_by_status(self, pair):
        a, b = pair
        assert a.current_status("x") == "unresolved"
        b.append(_d("x", "trash"))
        assert a.current_status("x") == "trash"
        assert a.cursor == 1

    def test_other_writer_seen_by_snapshot(self, pair):
        a, b = pair
        a.append(_d("x", "trash"))
        b.append(_d("y", "complete"))
        snap = a.snapshot()
        assert snap.cursor == 2
        assert snap.is_terminal("y")

    def test_interleaved_appends_keep_order(self, pair):
        a, b = pair
        a.append(_d("x", "trash", "2025-03-01T10:00:00Z"))
        b.append(_d("x", "annotate", "2025-03-01T10:00:00Z", payload={"kind": "note"}))
        assert a.current_status("x") == "annotate"
        assert b.current_status("x") == "annotate"
        assert a.summary() == b.summary()

    def test_other_writer_key_replayed(self, pair):
        a, b = pair
        first = b.append(_d("x", "trash"), idempotency_key="k1")
        again = a.append(_d("x", "trash"), idempotency_key="k1")
        assert again.seq == first.seq
        assert a.cursor == 1


class TestConcurrentAppends:
    def test_threads_share_one_ledger(self, ledger, store):
        barrier = threading.Barrier(8)

        def run(i):
            barrier.wait()
            for j in range(5):
                ledger.append(_d(f"t{i}-{j}", "trash"))

        threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert ledger.cursor == 40
        assert len({d.seq for d in store.read_dispositions()}) == 40
        assert ledger.summary()["by_status"] == {"trash": 40}

    def test_same_key_from_threads_appends_once(self, ledger, store):
        barrier = threading.Barrier(6)
        results = []

        def run():
            barrier.wait()
            results.append(ledger.append(_d("x", "trash"), idempotency_key="same"))

        threads = [threading.Thread(target=run) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.read_dispositions()) == 1
        assert {r.seq for r in results} == {1}
