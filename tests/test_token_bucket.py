import threading
import time

import pytest

from ratewarden.token_bucket import TokenBucket


@pytest.mark.parametrize(
    "capacity, refill_rate, expected_cap",
    [
        (10, 5, 10),
        (0, 5, 1),
        (-5, 5, 1),
        (10, 0, 10),
        (10, -5, 10),
    ],
)
def test_new_token_bucket(capacity, refill_rate, expected_cap):
    bucket = TokenBucket(capacity, refill_rate)
    assert bucket.capacity == expected_cap
    assert bucket.remaining() == expected_cap


@pytest.mark.parametrize("refill_rate", [0, -5])
def test_non_positive_rate_defaults_to_one(refill_rate):
    assert TokenBucket(10, refill_rate).refill_rate == 1


def test_allow():
    bucket = TokenBucket(3, 10)
    assert [bucket.allow() for _ in range(3)] == [True, True, True]
    assert bucket.allow() is False
    time.sleep(0.2)
    assert bucket.allow() is True


def test_refill():
    bucket = TokenBucket(10, 2)
    assert all(bucket.allow() for _ in range(10))
    assert bucket.remaining() == 0
    time.sleep(0.55)
    assert bucket.remaining() >= 1
    time.sleep(0.55)
    assert bucket.remaining() >= 2


def test_remaining():
    bucket = TokenBucket(5, 10)
    assert bucket.remaining() == 5
    bucket.allow()
    bucket.allow()
    assert bucket.remaining() == 3


def test_capacity():
    assert TokenBucket(15, 5).capacity == 15


def test_reset():
    bucket = TokenBucket(5, 10)
    for _ in range(5):
        bucket.allow()
    assert bucket.remaining() == 0
    bucket.reset()
    assert bucket.remaining() == 5


def test_refill_never_exceeds_capacity():
    bucket = TokenBucket(2, 100)
    bucket.allow()
    time.sleep(0.1)
    assert bucket.remaining() == 2


def test_concurrent_access():
    bucket = TokenBucket(100, 1)
    results = []
    lock = threading.Lock()

    def worker():
        local = [bucket.allow() for _ in range(10)]
        with lock:
            results.extend(local)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 100
    assert bucket.remaining() == 0


def test_refill_interval():
    assert TokenBucket(10, 2).refill_interval == 0.5
    assert TokenBucket(10, 10).refill_interval == 0.1