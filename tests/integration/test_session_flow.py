"""End-to-end session flows over the fake engine."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import info_hash_of
from swarmctl.core.magnet import generate_magnet_link
from swarmctl.core.policy import EnvironmentReadings
from swarmctl.events import EventCategory
from swarmctl.models import ControllerConfig, PolicyConfig, WatchDirConfig
from swarmctl.session.models import AddTorrentParams, SessionState, Torrent

pytestmark = [pytest.mark.integration, pytest.mark.session]


async def _start(ctrl, wait_until, drain):
    await ctrl.start()
    await wait_until(ctrl.is_running)
    await drain(ctrl)


class TestRestoreUnderPolicy:
    """Restored torrents honour the power/network policy."""

    @pytest.mark.asyncio
    async def test_metered_restore_pauses_everything(
        self, make_controller, config, store, engine, environment, wait_until, drain
    ):
        store.add(Torrent(id="a" * 40, name="one", download_path="/d", date_added=1.0))
        store.add(Torrent(id="b" * 40, name="two", download_path="/d", date_added=2.0))
        environment.readings = EnvironmentReadings(is_metered=True)
        ctrl = make_controller(
            config=config.model_copy(update={"policy": PolicyConfig(unmetered_only=True)})
        )

        await _start(ctrl, wait_until, drain)
        try:
            assert engine.global_paused
            assert all(task.paused for task in engine.tasks.values())
            assert len(engine.tasks) == 2
            assert "resume_all" not in engine.call_names()

            environment.readings = EnvironmentReadings(is_metered=False)
            ctrl.reschedule_torrents()
            await drain(ctrl)

            assert not any(task.paused for task in engine.tasks.values())
        finally:
            await ctrl.stop()


class TestWatchDir:
    """Files dropped into the watch directory become torrents."""

    @pytest.mark.asyncio
    async def test_dropped_file_added_and_removed(
        self, make_controller, config, store, torrent_bytes, tmp_path, wait_until, drain
    ):
        watch = tmp_path / "watch"
        existing = watch / "existing.torrent"
        watch.mkdir()
        existing.write_bytes(torrent_bytes(name="existing"))
        ctrl = make_controller(
            config=config.model_copy(
                update={"watch_dir": WatchDirConfig(enabled=True, path=str(watch))}
            )
        )

        await _start(ctrl, wait_until, drain)
        try:
            dropped = watch / "dropped.torrent"
            dropped.write_bytes(torrent_bytes(name="dropped"))

            await wait_until(lambda: len(store) == 2, timeout=5.0)
            await wait_until(lambda: not existing.exists() and not dropped.exists(), timeout=5.0)
            assert sorted(t.name for t in store.get_all_torrents()) == ["dropped", "existing"]
        finally:
            await ctrl.stop()

    @pytest.mark.asyncio
    async def test_known_torrent_file_removed(
        self, make_controller, config, store, torrent_bytes, tmp_path, wait_until, drain
    ):
        watch = tmp_path / "watch"
        watch.mkdir()
        data = torrent_bytes(name="twice")
        ctrl = make_controller(
            config=config.model_copy(
                update={"watch_dir": WatchDirConfig(enabled=True, path=str(watch))}
            )
        )
        await _start(ctrl, wait_until, drain)
        try:
            await ctrl.add_torrent(AddTorrentParams(source=data))

            again = watch / "again.torrent"
            again.write_bytes(data)

            await wait_until(lambda: not again.exists(), timeout=5.0)
            assert len(store) == 1
        finally:
            await ctrl.stop()

    @pytest.mark.asyncio
    async def test_broken_file_kept(
        self, make_controller, config, store, tmp_path, wait_until, drain
    ):
        watch = tmp_path / "watch"
        watch.mkdir()
        broken = watch / "broken.torrent"
        broken.write_bytes(b"d4:info")
        ctrl = make_controller(
            config=config.model_copy(
                update={"watch_dir": WatchDirConfig(enabled=True, path=str(watch))}
            )
        )
        await _start(ctrl, wait_until, drain)
        try:
            watcher = ctrl._watcher
            await wait_until(lambda: watcher.stats["failed"] == 1, timeout=5.0)

            assert broken.exists()
            assert len(store) == 0
        finally:
            await ctrl.stop()


class TestMagnetFlow:
    """Resolving a magnet link and adding the result."""

    @pytest.mark.asyncio
    async def test_fetch_then_add(self, running_controller, engine, store, torrent_bytes):
        data = torrent_bytes(name="from-magnet")
        info_hash = info_hash_of(data)
        uri = generate_magnet_link(info_hash, display_name="from-magnet")

        info, handle = running_controller.fetch_magnet(uri)
        assert info.info_hash == info_hash
        assert engine.fetches == [uri]

        engine.deliver_metadata(info_hash, metadata=data)
        metainfo = await handle

        torrent = await running_controller.add_torrent(AddTorrentParams(source=metainfo.raw))
        assert torrent.id == info_hash
        assert store.get_torrent_by_id(info_hash).name == "from-magnet"

    @pytest.mark.asyncio
    async def test_cancel_fetch(self, running_controller, engine):
        info_hash = "e" * 40
        _info, handle = running_controller.fetch_magnet(generate_magnet_link(info_hash))

        assert running_controller.cancel_fetch_magnet(info_hash)
        assert handle.cancelled()
        assert engine.cancelled_fetches == [info_hash]


class TestShutdown:
    """Stopping with work still outstanding."""

    @pytest.mark.asyncio
    async def test_stop_with_pending_magnet_and_watch_add(
        self, make_controller, config, engine, store, torrent_bytes, tmp_path, wait_until, drain
    ):
        watch = tmp_path / "watch"
        watch.mkdir()
        ctrl = make_controller(
            config=config.model_copy(
                update={
                    "watch_dir": WatchDirConfig(enabled=True, path=str(watch)),
                    "controller": ControllerConfig(shutdown_timeout=0.3),
                }
            )
        )
        await _start(ctrl, wait_until, drain)
        bus = ctrl.bus
        gate = threading.Event()
        try:
            # Hold the dispatcher so the watch-dir add stays queued.
            ctrl.dispatcher.submit(gate.wait, 5.0, name="blocker")
            pending_file = watch / "queued.torrent"
            pending_file.write_bytes(torrent_bytes(name="queued"))
            watcher = ctrl._watcher
            await wait_until(lambda: watcher.pending_count == 1, timeout=5.0)

            info_hash = "f" * 40
            _info, handle = ctrl.fetch_magnet(generate_magnet_link(info_hash))

            await ctrl.stop()

            assert ctrl.state is SessionState.STOPPED
            assert handle.cancelled()
            assert info_hash in engine.cancelled_fetches
            assert bus.listener_count(EventCategory.METADATA_LOADED) == 0
            assert pending_file.exists()
            assert len(store) == 0
        finally:
            gate.set()


class TestConcurrentCallers:
    """Adds from many threads are serialized on the dispatcher."""

    @pytest.mark.asyncio
    async def test_parallel_sync_adds(self, running_controller, engine, store, torrent_bytes):
        batches = [AddTorrentParams(source=torrent_bytes(name=f"t{i}")) for i in range(8)]

        def _add(params):
            return running_controller.add_torrent_sync(params, timeout=5.0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            loop = asyncio.get_running_loop()
            results = await asyncio.gather(
                *(loop.run_in_executor(pool, _add, params) for params in batches)
            )

        assert sorted(t.name for t in results) == [f"t{i}" for i in range(8)]
        assert len(store) == 8
        adds = [
            thread
            for (name, *_), thread in zip(engine.calls, engine.call_threads)
            if name == "add_torrent"
        ]
        assert len(adds) == 8
        assert set(adds) == {running_controller.dispatcher.name}
