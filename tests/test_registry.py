"""
Tests for the in-memory connection registry.

Tests cover:
- register/unregister round trip leaves no entry behind
- Multi-device users
- Idempotent register
- Moving a handle between users
- Concurrent mutation from many threads
"""

import threading

from prometheus_client import REGISTRY

from messenger.registry import ConnectionRegistry


class Handle:
    """Stand-in for a live connection; hashes by identity."""


class TestRegisterUnregister:

    def test_register_then_unregister_goes_offline(self):
        registry = ConnectionRegistry()
        handle = Handle()

        registry.register(1, handle)
        assert registry.is_online(1)
        assert registry.handles_for(1) == {handle}

        registry.unregister(1, handle)
        assert registry.handles_for(1) == frozenset()
        assert not registry.is_online(1)

    def test_unknown_user_is_offline(self):
        registry = ConnectionRegistry()
        assert registry.handles_for(42) == frozenset()
        assert not registry.is_online(42)

    def test_register_is_idempotent(self):
        registry = ConnectionRegistry()
        handle = Handle()

        registry.register(1, handle)
        registry.register(1, handle)

        assert len(registry.handles_for(1)) == 1

    def test_unregister_unknown_handle_is_noop(self):
        registry = ConnectionRegistry()
        registry.unregister(1, Handle())
        assert not registry.is_online(1)


class TestMultiDevice:

    def test_user_stays_online_until_last_handle_leaves(self):
        registry = ConnectionRegistry()
        phone, laptop = Handle(), Handle()

        registry.register(7, phone)
        registry.register(7, laptop)
        assert registry.handles_for(7) == {phone, laptop}

        registry.unregister(7, phone)
        assert registry.is_online(7)
        assert registry.handles_for(7) == {laptop}

        registry.unregister(7, laptop)
        assert not registry.is_online(7)

    def test_handles_for_returns_snapshot(self):
        registry = ConnectionRegistry()
        handle = Handle()
        registry.register(1, handle)

        snapshot = registry.handles_for(1)
        registry.unregister(1, handle)

        assert snapshot == {handle}

    def test_handle_belongs_to_one_user(self):
        registry = ConnectionRegistry()
        handle = Handle()

        registry.register(1, handle)
        registry.register(2, handle)

        assert not registry.is_online(1)
        assert registry.handles_for(2) == {handle}
        assert registry.handles_for(1) == frozenset()


class TestConcurrency:

    def test_parallel_register_and_unregister(self):
        registry = ConnectionRegistry()
        handles = [Handle() for _ in range(200)]
        barrier = threading.Barrier(8)

        def worker(chunk):
            barrier.wait()
            for handle in chunk:
                registry.register(5, handle)
            for handle in chunk:
                registry.unregister(5, handle)

        threads = [threading.Thread(target=worker, args=(handles[i::8],)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert registry.handles_for(5) == frozenset()
        assert not registry.is_online(5)


class TestGauge:

    def test_gauge_tracks_registered_handles(self):
        registry = ConnectionRegistry()
        phone, laptop = Handle(), Handle()

        registry.register(1, phone)
        registry.register(1, laptop)
        assert REGISTRY.get_sample_value("realtime_connections") == 2

        registry.unregister(1, phone)
        assert REGISTRY.get_sample_value("realtime_connections") == 1

        registry.unregister(1, laptop)
        assert REGISTRY.get_sample_value("realtime_connections") == 0
