import threading

from chat_engine.provider.key_pool import (
    ERROR_COOLDOWN_SECONDS,
    KeyHealthPool,
    is_valid_api_key,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_empty_pool_returns_none():
    pool = KeyHealthPool()
    assert pool.select_healthy() is None
    assert len(pool) == 0


def test_selection_is_stable_without_state_change():
    clock = FakeClock()
    pool = KeyHealthPool(["a", "b", "c"], clock=clock)
    pool.report_error("a")
    pool.report_error("b")

    first = pool.select_healthy()
    second = pool.select_healthy()
    assert first == second == "c"


def test_recently_failed_key_ranks_after_healthy_key():
    clock = FakeClock()
    pool = KeyHealthPool(["A", "B"], clock=clock)

    pool.report_error("A")
    clock.advance(1)

    assert pool.select_healthy() == "B"


def test_cooldown_expiry_restores_eligibility_not_priority():
    clock = FakeClock()
    single = KeyHealthPool(["A"], clock=clock)
    single.report_error("A")
    clock.advance(ERROR_COOLDOWN_SECONDS + 1)
    assert single.select_healthy() == "A"

    clock = FakeClock()
    pool = KeyHealthPool(["A", "B"], clock=clock)
    pool.report_error("A")
    clock.advance(ERROR_COOLDOWN_SECONDS + 1)
    assert pool.select_healthy() == "B"


def test_cooling_key_is_still_returned_when_every_key_is_cooling():
    clock = FakeClock()
    pool = KeyHealthPool(["A", "B"], clock=clock)
    pool.report_error("A")
    pool.report_error("B")
    pool.report_error("B")

    assert pool.select_healthy() == "A"


def test_ties_keep_insertion_order():
    pool = KeyHealthPool(["first", "second", "third"], clock=FakeClock())
    assert pool.select_healthy() == "first"


def test_unknown_key_report_is_ignored():
    pool = KeyHealthPool(["A"], clock=FakeClock())
    pool.report_error("missing")
    [record] = pool.snapshot()
    assert record.error_count == 0
    assert record.last_error_at is None


def test_initialize_resets_counters():
    clock = FakeClock()
    pool = KeyHealthPool(["A", "B"], clock=clock)
    pool.report_error("A")

    pool.initialize(["A", "B"])

    assert [r.error_count for r in pool.snapshot()] == [0, 0]
    assert pool.select_healthy() == "A"


def test_duplicate_keys_share_one_record():
    clock = FakeClock()
    pool = KeyHealthPool(clock=clock)
    pool.initialize(["A", "A", "B"])

    assert len(pool) == 2
    assert [r.key for r in pool.snapshot()] == ["A", "B"]

    pool.report_error("A")
    clock.advance(1)

    assert pool.select_healthy() == "B"


def test_custom_cooldown_window():
    clock = FakeClock()
    pool = KeyHealthPool(["A", "B"], cooldown_seconds=10, clock=clock)
    pool.report_error("A")
    pool.report_error("B")
    pool.report_error("B")
    clock.advance(11)

    assert pool.select_healthy() == "A"


def test_concurrent_reports_do_not_lose_increments():
    pool = KeyHealthPool(["A"], clock=FakeClock())

    def _hammer() -> None:
        for _ in range(500):
            pool.report_error("A")

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    [record] = pool.snapshot()
    assert record.error_count == 4000


def test_key_shape_check():
    assert is_valid_api_key("AIza" + "x" * 35)
    assert not is_valid_api_key("sk-not-a-gemini-key")
