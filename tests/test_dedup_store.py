"""
Tests for the per-device rate limiter and its capacity cleanup.
"""

from ble_http_gateway import DedupStore


def test_unknown_device_is_eligible():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    assert store.should_send('AA:BB:CC:DD:EE:FF', 1_700_000_000)


def test_rate_limit_window():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    addr = 'AA:BB:CC:DD:EE:FF'

    assert store.should_send(addr, 0)
    store.record(addr, 0)

    assert not store.should_send(addr, 3)
    assert not store.should_send(addr, 4)
    assert store.should_send(addr, 5)
    assert store.should_send(addr, 6)


def test_unknown_device_eligible_near_epoch():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    assert store.should_send('AA:BB:CC:DD:EE:FF', 0)
    assert store.should_send('AA:BB:CC:DD:EE:FF', 3)


def test_record_overwrites_timestamp():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    store.record('A', 100)
    store.record('A', 200)
    assert store.last_sent['A'] == 200
    assert len(store) == 1


def test_record_does_not_enforce_capacity():
    store = DedupStore(rate_limit_sec=5, max_entries=2)
    for i in range(5):
        store.record(f'dev{i}', i)
    assert len(store) == 5


def test_cleanup_under_capacity_is_noop():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    for i in range(50):
        store.record(f'dev{i}', i)
    assert store.cleanup(1000) == 0
    assert len(store) == 50


def test_cleanup_evicts_oldest_entries():
    store = DedupStore(rate_limit_sec=5, max_entries=50)
    for i in range(60):
        store.record(f'dev{i:02d}', 1000 + i)

    removed = store.cleanup(2000)

    assert removed == 10
    assert len(store) == 50
    for i in range(10):
        assert f'dev{i:02d}' not in store
    for i in range(10, 60):
        assert f'dev{i:02d}' in store


def test_cleanup_equal_ages_evicted_in_discovery_order():
    store = DedupStore(rate_limit_sec=5, max_entries=2)
    for name in ('first', 'second', 'third', 'fourth'):
        store.record(name, 100)

    store.cleanup(200)

    assert list(store.last_sent) == ['third', 'fourth']
