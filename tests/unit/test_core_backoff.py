from __future__ import annotations

from eventfabric.core.backoff import Backoff


def test_delay_grows_exponentially_without_jitter() -> None:
    b = Backoff(initial_delay=0.5, max_delay=100.0, multiplier=2.0, jitter=False)
    assert [b.compute_delay(i) for i in range(4)] == [0.5, 1.0, 2.0, 4.0]


def test_delay_is_capped() -> None:
    b = Backoff(initial_delay=1.0, max_delay=5.0, jitter=False)
    assert b.compute_delay(10) == 5.0


def test_jitter_stays_within_half_to_full_delay() -> None:
    b = Backoff(initial_delay=2.0, max_delay=2.0, jitter=True)
    for _ in range(50):
        d = b.compute_delay(3)
        assert 1.0 <= d <= 2.0
