"""Unit tests for deduplicated magnet metadata resolution."""

from __future__ import annotations

import concurrent.futures
import threading

import bencodepy
import pytest

from conftest import FakeEngine, FakeTaskHandle, info_hash_of
from swarmctl.events import EventCategory, ListenerBus
from swarmctl.session.magnet_handling import MagnetFetchCoordinator
from swarmctl.utils.exceptions import DecodeError, TorrentError, UnknownSourceError

pytestmark = [pytest.mark.unit, pytest.mark.session]


@pytest.fixture
def bus():
    return ListenerBus()


@pytest.fixture
def fake_engine(bus):
    engine = FakeEngine()
    engine.attach(bus)
    return engine


@pytest.fixture
def coordinator(fake_engine, bus):
    return MagnetFetchCoordinator(fake_engine, bus)


@pytest.fixture
def metadata(torrent_bytes):
    """Raw info dictionary as the engine delivers it after a fetch."""
    return bencodepy.encode(bencodepy.decode(torrent_bytes(name="linux.iso"))[b"info"])


def _magnet(info_hash: str) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}&dn=linux"


class TestResolve:
    """Test resolve and deduplication."""

    def test_returns_magnet_info_immediately(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        info, handle = coordinator.resolve(_magnet(info_hash))

        assert info.info_hash == info_hash
        assert info.display_name == "linux"
        assert not handle.done()
        assert fake_engine.fetches == [_magnet(info_hash)]
        assert coordinator.is_pending(info_hash)

    def test_metadata_resolves_handle(self, coordinator, fake_engine, bus, metadata):
        info_hash = info_hash_of(metadata)
        _, handle = coordinator.resolve(_magnet(info_hash))

        fake_engine.deliver_metadata(info_hash, metadata=metadata)

        result = handle.result(timeout=1)
        assert result.name == "linux.iso"
        assert result.info_hash == info_hash
        assert not coordinator.is_pending(info_hash)
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0

    def test_other_hashes_are_ignored(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        _, handle = coordinator.resolve(_magnet(info_hash))

        fake_engine.deliver_metadata("f" * 40, metadata=metadata)

        assert not handle.done()
        assert coordinator.is_pending(info_hash)

    def test_cached_metadata_resolves_without_fetch(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        fake_engine.cached_metadata[info_hash] = metadata

        _, handle = coordinator.resolve(_magnet(info_hash))

        assert handle.result(timeout=0).name == "linux.iso"
        assert fake_engine.fetches == []

    def test_concurrent_resolves_share_one_fetch(self, coordinator, fake_engine, bus, metadata):
        """Test N concurrent resolves start exactly one engine fetch."""
        info_hash = info_hash_of(metadata)
        barrier = threading.Barrier(8)

        def _resolve():
            barrier.wait()
            return coordinator.resolve(_magnet(info_hash))[1]

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as pool:
            handles = list(pool.map(lambda _: _resolve(), range(8)))

        assert len(fake_engine.fetches) == 1
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 1

        fake_engine.deliver_metadata(info_hash, metadata=metadata)

        results = [h.result(timeout=1) for h in handles]
        assert len({id(h) for h in handles}) == 8
        assert all(r == results[0] for r in results)
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0

    def test_decode_failure_shared_by_all_callers(self, coordinator, fake_engine):
        info_hash = "a" * 40
        handles = [coordinator.resolve(_magnet(info_hash))[1] for _ in range(3)]

        fake_engine.deliver_metadata(info_hash, metadata=b"garbage")

        for handle in handles:
            assert isinstance(handle.exception(timeout=1), DecodeError)
        assert len(fake_engine.fetches) == 1

    def test_malformed_info_fields_fail_every_caller(self, coordinator, fake_engine, bus):
        info_hash = "e" * 40
        handles = [coordinator.resolve(_magnet(info_hash))[1] for _ in range(2)]
        malformed = bencodepy.encode(
            {b"name": b"x", b"piece length": 16, b"length": 1, b"pieces": 5}
        )

        fake_engine.deliver_metadata(info_hash, metadata=malformed)

        for handle in handles:
            assert handle.done()
            assert isinstance(handle.exception(timeout=1), DecodeError)
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0

    def test_missing_bytes_is_decode_error(self, coordinator, fake_engine):
        info_hash = "b" * 40
        _, handle = coordinator.resolve(_magnet(info_hash))

        fake_engine.deliver_metadata(info_hash)

        with pytest.raises(DecodeError, match="Unknown metadata"):
            handle.result(timeout=1)

    def test_engine_error_fails_handle(self, coordinator, fake_engine):
        info_hash = "c" * 40
        _, handle = coordinator.resolve(_magnet(info_hash))

        fake_engine.deliver_metadata(info_hash, error="tracker unreachable")

        exc = handle.exception(timeout=1)
        assert isinstance(exc, TorrentError)
        assert "tracker unreachable" in str(exc)

    def test_fetch_start_failure(self, coordinator, fake_engine, bus, monkeypatch):
        def _fail(uri):
            raise OSError("engine down")

        monkeypatch.setattr(fake_engine, "fetch_metadata", _fail)
        _, handle = coordinator.resolve(_magnet("d" * 40))

        assert isinstance(handle.exception(timeout=1), OSError)
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0
        assert coordinator.pending_hashes == []

    def test_invalid_uris(self, coordinator):
        with pytest.raises(UnknownSourceError):
            coordinator.resolve("http://example.com/a.torrent")
        with pytest.raises(DecodeError):
            coordinator.resolve("magnet:?xt=urn:btih:123")

    @pytest.mark.asyncio
    async def test_handle_is_awaitable(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        _, handle = coordinator.resolve(_magnet(info_hash))

        threading.Timer(0.02, fake_engine.deliver_metadata, (info_hash, metadata)).start()

        result = await handle
        assert result.info_hash == info_hash


class TestCancel:
    """Test cancellation."""

    def test_cancel_pending(self, coordinator, fake_engine, bus):
        info_hash = "e" * 40
        _, first = coordinator.resolve(_magnet(info_hash))
        _, second = coordinator.resolve(_magnet(info_hash))

        assert coordinator.cancel(info_hash.upper()) is True

        assert first.cancelled() and second.cancelled()
        assert fake_engine.cancelled_fetches == [info_hash]
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0
        assert coordinator.cancel(info_hash) is False

    def test_cancel_after_resolution_is_noop(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        _, handle = coordinator.resolve(_magnet(info_hash))
        fake_engine.deliver_metadata(info_hash, metadata=metadata)

        assert coordinator.cancel(info_hash) is False
        assert handle.result(timeout=0).name == "linux.iso"
        assert fake_engine.cancelled_fetches == []

    def test_cancel_skips_added_torrents(self, coordinator, fake_engine):
        info_hash = "1" * 40
        coordinator.resolve(_magnet(info_hash))
        fake_engine.tasks[info_hash] = FakeTaskHandle(info_hash)

        assert coordinator.cancel(info_hash) is False
        assert coordinator.is_pending(info_hash)

    def test_handle_cancel_affects_only_that_caller(self, coordinator, fake_engine, metadata):
        info_hash = info_hash_of(metadata)
        _, first = coordinator.resolve(_magnet(info_hash))
        _, second = coordinator.resolve(_magnet(info_hash))

        assert first.cancel() is True
        fake_engine.deliver_metadata(info_hash, metadata=metadata)

        assert first.cancelled()
        assert second.result(timeout=1).name == "linux.iso"

    def test_cancel_all(self, coordinator, fake_engine, bus):
        coordinator.resolve(_magnet("2" * 40))
        coordinator.resolve(_magnet("3" * 40))

        assert coordinator.cancel_all() == 2
        assert sorted(fake_engine.cancelled_fetches) == ["2" * 40, "3" * 40]
        assert bus.listener_count(EventCategory.METADATA_LOADED) == 0

    def test_resolution_and_cancellation_race(self, coordinator, fake_engine, bus, metadata):
        """Test the listener is removed exactly once whichever side wins."""
        info_hash = info_hash_of(metadata)
        for _ in range(20):
            _, handle = coordinator.resolve(_magnet(info_hash))
            barrier = threading.Barrier(2)

            def _deliver():
                barrier.wait()
                fake_engine.deliver_metadata(info_hash, metadata=metadata)

            def _cancel():
                barrier.wait()
                coordinator.cancel(info_hash)

            threads = [threading.Thread(target=_deliver), threading.Thread(target=_cancel)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert handle.done()
            assert bus.listener_count(EventCategory.METADATA_LOADED) == 0
            assert not coordinator.is_pending(info_hash)
