"""Session controller.

Owns the lifecycle of the transfer engine session and routes every mutating
engine call through a single :class:`TaskDispatcher` worker. Engine
notifications arrive on the :class:`ListenerBus`, usually on engine threads;
anything that needs the event loop is marshalled onto it.

Lifecycle::

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED

``RUNNING`` is entered when the engine reports ``SESSION_STARTED``, not when
:meth:`SessionController.start` returns.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import dataclasses
import random
import threading
from concurrent.futures import Future
from operator import methodcaller
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterable

from swarmctl.config.config import ConfigManager
from swarmctl.core.magnet import MagnetInfo, is_magnet, normalize_magnet_hash, parse_magnet
from swarmctl.core.metainfo import TorrentMetaInfo, decode_metainfo
from swarmctl.core.policy import should_pause
from swarmctl.environment import SystemEnvironmentProbe
from swarmctl.events import (
    Event,
    EventCategory,
    ListenerBus,
    ListenerHandle,
    MetadataLoadedEvent,
    RestoreErrorEvent,
    SessionErrorEvent,
    TaskEvent,
)
from swarmctl.models import (
    RANDOM_PORT_RANGE_MAX,
    RANDOM_PORT_RANGE_MIN,
    RANDOM_PORT_RANGE_SPAN,
    Config,
    SessionSettings,
)
from swarmctl.session.completion import DownloadsCompletedSignal
from swarmctl.session.dispatcher import TaskDispatcher
from swarmctl.session.magnet_handling import MagnetFetchCoordinator, MetadataHandle
from swarmctl.session.models import (
    AddTorrentParams,
    Priority,
    SessionState,
    TaskStatus,
    Torrent,
    TorrentInfo,
    Visibility,
)
from swarmctl.session.signals import NeedsStartObservation, Subscription, ValueChannel
from swarmctl.session.tasks import TaskSupervisor
from swarmctl.session.types import (
    EnvironmentProbeProtocol,
    FileSystemProtocol,
    StreamingEndpointProtocol,
    TaskHandleProtocol,
    TorrentStoreProtocol,
    TransferEngineProtocol,
)
from swarmctl.storage.folder_watcher import DirectoryWatcher
from swarmctl.storage.fs import LocalFileSystem
from swarmctl.streaming.server import StreamServer
from swarmctl.utils.exceptions import (
    DecodeError,
    DispatcherError,
    EngineUnavailableError,
    InsufficientSpaceError,
    SwarmCtlError,
    TorrentAlreadyExistsError,
    UnknownSourceError,
    ValidationError,
)
from swarmctl.utils.logging_config import LoggingContext, get_logger, log_exception

logger = get_logger(__name__)

TaskOp = Callable[[TaskHandleProtocol], Any]


def random_port_range() -> tuple[int, int]:
    """Pick a listen port range inside the random-port window."""
    first = random.randint(
        RANDOM_PORT_RANGE_MIN, RANDOM_PORT_RANGE_MAX - RANDOM_PORT_RANGE_SPAN
    )
    return first, first + RANDOM_PORT_RANGE_SPAN


def _toggle_pause(task: TaskHandleProtocol) -> None:
    if task.is_paused():
        task.resume()
    else:
        task.pause()


def _resume_if_paused(task: TaskHandleProtocol) -> None:
    if task.is_paused():
        task.resume()


def _descriptor_file_name(torrent: Torrent) -> str:
    name = Path(torrent.name.replace("\\", "/")).name
    if name in ("", ".", ".."):
        name = torrent.id
    return f"{name}.torrent"


def _remove_trackers(urls: list[str]) -> TaskOp:
    drop = set(urls)

    def _op(task: TaskHandleProtocol) -> None:
        task.replace_trackers([u for u in task.get_trackers() if u not in drop])

    return _op


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SessionController:
    """Orchestrates one transfer engine session."""

    def __init__(
        self,
        engine: TransferEngineProtocol,
        store: TorrentStoreProtocol,
        config: Config | ConfigManager | None = None,
        fs: FileSystemProtocol | None = None,
        bus: ListenerBus | None = None,
        environment: EnvironmentProbeProtocol | None = None,
        streaming: StreamingEndpointProtocol | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            engine: Transfer engine driven by this controller
            store: Persistent torrent records
            config: Static configuration, or a manager whose changes are
                pushed into the engine while the session runs
            fs: Filesystem facade (local disk by default)
            bus: Listener bus shared with the engine
            environment: Battery/connection probe for the pause policy
            streaming: Streaming endpoint (aiohttp server by default)

        """
        if isinstance(config, ConfigManager):
            self.config_manager: ConfigManager | None = config
            self._config = config.config
        else:
            self.config_manager = None
            self._config = config or Config()

        self.engine = engine
        self.store = store
        self.fs: FileSystemProtocol = fs or LocalFileSystem(self.config.storage)
        self.bus = bus or ListenerBus()
        self.environment: EnvironmentProbeProtocol = environment or SystemEnvironmentProbe(
            lambda: self.config.policy
        )
        self.streaming = streaming

        self.dispatcher = TaskDispatcher(error_callback=self._on_dispatch_error)
        self.magnets = MagnetFetchCoordinator(engine, self.bus)
        self.completion = DownloadsCompletedSignal(engine, self.bus)
        self.tasks = TaskSupervisor()
        self.running: ValueChannel[bool] = ValueChannel(False)

        self._state = SessionState.STOPPED
        self._transition_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listener_handles: list[ListenerHandle] = []
        self._completion_sub: Subscription | None = None
        self._needs_start: set[NeedsStartObservation] = set()
        self._watcher: DirectoryWatcher | None = None
        self._streaming_address: tuple[str, int] | None = None
        self._random_range: tuple[int, int] | None = None
        self._stop_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> Config:
        if self.config_manager is not None:
            return self.config_manager.config
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    def _set_state(self, state: SessionState) -> None:
        old, self._state = self._state, state
        logger.info("Session state: %s -> %s", old.value, state.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the engine session.

        Returns once the engine has been asked to start. The controller
        becomes running when the engine reports ``SESSION_STARTED``.

        Raises:
            DispatcherError: the worker abandoned by a previous stop is
                still inside an engine call.

        """
        async with self._transition_lock:
            if self._state is not SessionState.STOPPED:
                return
            self._loop = asyncio.get_running_loop()
            self._random_range = None
            self.dispatcher.start()
            self._set_state(SessionState.STARTING)

            with LoggingContext("session_start"):
                self._register_engine_listeners()
                self._completion_sub = self.completion.subscribe(
                    self._on_downloads_completed
                )
                if self.config_manager is not None:
                    self.config_manager.add_change_callback(self._on_config_changed)
                try:
                    await self.dispatcher.run(
                        self._start_engine,
                        self._resolve_settings(self.config.session),
                        name="start_engine",
                    )
                except BaseException:
                    await self._teardown(self.config.controller.shutdown_timeout)
                    self._set_state(SessionState.STOPPED)
                    raise

    def _start_engine(self, settings: SessionSettings) -> None:
        self.engine.attach(self.bus)
        self.engine.apply_settings(settings)
        self.engine.start()

    async def stop(self) -> None:
        """Stop the session, cancelling outstanding work.

        Queued dispatcher units are discarded, the in-flight one is awaited
        for at most ``controller.shutdown_timeout`` seconds.
        """
        async with self._transition_lock:
            if self._state is not SessionState.RUNNING:
                return
            self._set_state(SessionState.STOPPING)
            timeout = self.config.controller.shutdown_timeout

            with LoggingContext("session_stop"):
                await self._teardown(timeout)
                try:
                    await asyncio.to_thread(self.fs.clean_temp_dir)
                except Exception as e:
                    logger.warning("Temp cleanup failed: %s", e, exc_info=True)

            self._set_state(SessionState.STOPPED)
        self.running.publish(False)

    async def _teardown(self, timeout: float) -> None:
        for observation in list(self._needs_start):
            observation.cancel()
        self._needs_start.clear()
        self.tasks.cancel_all()

        await self._stop_watch_dir()
        await self._stop_streaming()

        cancelled = self.magnets.cancel_all()
        if cancelled:
            logger.info("Cancelled %d pending metadata fetch(es)", cancelled)

        if self._completion_sub is not None:
            self._completion_sub.cancel()
            self._completion_sub = None
        if self.config_manager is not None:
            self.config_manager.remove_change_callback(self._on_config_changed)

        await self._run_detached(self.dispatcher.stop, timeout, timeout=timeout + 1.0)
        await self._run_detached(self.engine.stop, timeout=timeout)
        self.engine.detach()
        self._unregister_engine_listeners()
        await self.tasks.wait_all_cancelled(timeout)

    async def _run_detached(
        self, fn: Callable[..., Any], *args: Any, timeout: float
    ) -> bool:
        """Run a blocking call on a daemon thread, giving up after ``timeout``.

        A hung call is abandoned rather than joined, so it cannot hold up
        interpreter exit the way a default-executor thread would.
        """
        future: concurrent.futures.Future[Any] = concurrent.futures.Future()
        name = getattr(fn, "__qualname__", repr(fn))

        def _runner() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=_runner, name=f"swarmctl-{name}", daemon=True).start()
        try:
            await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(future)), timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not finish within %.1fs", name, timeout)
            return False
        except Exception as e:
            logger.warning("%s failed: %s", name, e, exc_info=True)
            return False
        return True

    def _register_engine_listeners(self) -> None:
        routes: dict[EventCategory, Callable[[Event], None]] = {
            EventCategory.SESSION_STARTED: self._on_engine_started,
            EventCategory.SESSION_STOPPED: self._on_engine_stopped,
            EventCategory.TASK_ADDED: self._on_task_ready,
            EventCategory.TASK_LOADED: self._on_task_ready,
            EventCategory.METADATA_LOADED: self._on_metadata_loaded,
            EventCategory.TASK_FINISHED: self._on_task_finished,
            EventCategory.RESTORE_ERROR: self._on_restore_error,
        }
        self._listener_handles = [
            self.bus.register(category, callback) for category, callback in routes.items()
        ]

    def _unregister_engine_listeners(self) -> None:
        for handle in self._listener_handles:
            self.bus.unregister(handle)
        self._listener_handles = []

    def _spawn(self, factory: Callable[[], Coroutine[Any, Any, Any]], name: str) -> None:
        """Run ``factory()`` as a supervised task on the controller's loop.

        Safe to call from engine threads.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        def _create() -> None:
            self.tasks.create_task(factory(), name=name)

        if _running_loop() is loop:
            _create()
            return
        try:
            loop.call_soon_threadsafe(_create)
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s", name)

    def _spawn_stop(self, reason: str) -> None:
        """Schedule :meth:`stop` outside the supervisor so stop cannot cancel itself."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        def _create() -> None:
            if self._stop_task is not None and not self._stop_task.done():
                return
            logger.info("Stopping session: %s", reason)
            self._stop_task = loop.create_task(self.stop(), name="session_stop")

        if _running_loop() is loop:
            _create()
            return
        try:
            loop.call_soon_threadsafe(_create)
        except RuntimeError:
            logger.debug("Event loop closed, not stopping for %s", reason)

    async def _on_session_started(self) -> None:
        async with self._transition_lock:
            if self._state is not SessionState.STARTING:
                return
            self._set_state(SessionState.RUNNING)
        self.running.publish(True)

        settings = self.config.session
        if settings.ip_filter_enabled and settings.ip_filter_path:
            self._submit(
                self.engine.enable_ip_filter,
                settings.ip_filter_path,
                name="enable_ip_filter",
            )
        await self._start_watch_dir()
        await self._start_streaming()

        # FIFO dispatch: the reschedule runs once restore has finished.
        self._submit(self._restore_torrents_sync, name="restore_torrents")
        self._submit(self._reschedule_sync, name="reschedule_torrents")

    async def _start_watch_dir(self) -> None:
        watch = self.config.watch_dir
        if not watch.enabled or not watch.path:
            return
        try:
            directory = self.fs.to_path(watch.path)
        except UnknownSourceError as e:
            log_exception(logger, e, "Watch dir")
            return

        watcher = DirectoryWatcher(
            directory,
            self._ingest_watched_file,
            fs=self.fs,
            suffix=watch.suffix,
            delete_after_add=watch.delete_after_add,
            recursive=watch.recursive,
        )
        try:
            await watcher.start()
        except OSError as e:
            logger.warning("Watch dir: could not start on %s: %s", directory, e)
            return
        self._watcher = watcher

    async def _stop_watch_dir(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is None:
            return
        try:
            await watcher.stop()
        except Exception:
            logger.warning("Watch dir: error while stopping", exc_info=True)

    async def _start_streaming(self) -> None:
        streaming = self.config.streaming
        if not streaming.enabled:
            return
        if self.streaming is None:
            self.streaming = StreamServer(self._resolve_stream_file)
        try:
            await self.streaming.start(streaming.host, streaming.port)
        except OSError as e:
            logger.warning(
                "Streaming server could not bind %s:%d: %s",
                streaming.host,
                streaming.port,
                e,
            )
            return
        self._streaming_address = (streaming.host, streaming.port)

    async def _stop_streaming(self) -> None:
        if self._streaming_address is None or self.streaming is None:
            return
        self._streaming_address = None
        try:
            await self.streaming.stop()
        except Exception:
            logger.warning("Streaming server: error while stopping", exc_info=True)

    def _restore_torrents_sync(self) -> int:
        with LoggingContext("restore_torrents"):
            torrents = self.store.get_all_torrents()
            self.engine.restore_torrents(torrents)
        return len(torrents)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe_needs_start(
        self,
        callback: Callable[[bool], None],
        interval: float | None = None,
    ) -> NeedsStartObservation:
        """Report whether the session needs starting.

        Calls back immediately with ``not is_running()``, then, while the
        session stays down, with ``True`` every ``interval`` seconds. Must be
        called from the event loop thread.
        """
        if interval is None:
            interval = self.config.controller.needs_start_interval
        observation = NeedsStartObservation(self.is_running, callback, interval)
        if observation.emit_initial():
            self._needs_start.add(observation)
            observation.task = self.tasks.create_task(observation.poll(), name="needs_start")
            observation.task.add_done_callback(
                lambda _t: self._needs_start.discard(observation)
            )
        return observation

    def observe_running(self, callback: Callable[[bool], None]) -> Subscription:
        """Current running state, then one update per start/stop."""
        return self.running.subscribe(callback)

    def observe_torrent_meta_info(
        self,
        torrent_id: str,
        callback: Callable[[TorrentMetaInfo | None], None],
    ) -> Subscription:
        """Current metadata of ``torrent_id``, then every metadata update."""
        torrent_id = torrent_id.lower()

        def _deliver(metainfo: TorrentMetaInfo | None) -> None:
            try:
                callback(metainfo)
            except Exception:
                logger.exception("Metadata observer %r failed", callback)

        def _on_event(event: Event) -> None:
            if not isinstance(event, MetadataLoadedEvent) or event.error:
                return
            if event.torrent_id.lower() != torrent_id:
                return
            metainfo = None
            if event.metadata is not None:
                metainfo = self._decode_quietly(event.metadata, torrent_id)
            _deliver(metainfo or self.get_torrent_meta_info(torrent_id))

        handle = self.bus.register(EventCategory.METADATA_LOADED, _on_event)
        _deliver(self.get_torrent_meta_info(torrent_id))
        return Subscription(lambda: self.bus.unregister(handle))

    # ------------------------------------------------------------------
    # Engine listeners (called on engine threads)
    # ------------------------------------------------------------------

    def _on_engine_started(self, _event: Event) -> None:
        self._spawn(self._on_session_started, "session_started")

    def _on_engine_stopped(self, _event: Event) -> None:
        if self._state is SessionState.RUNNING:
            logger.warning("Engine session stopped while the controller was running")
            self._spawn_stop("engine stopped")

    def _on_task_ready(self, event: Event) -> None:
        if isinstance(event, TaskEvent) and event.torrent_id:
            self._submit(self._apply_task_policy_sync, event.torrent_id, name="task_policy")

    def _on_metadata_loaded(self, event: Event) -> None:
        if not isinstance(event, MetadataLoadedEvent) or not event.torrent_id:
            return
        # A failed fetch still gets the pause policy applied.
        self._submit(
            self._on_metadata_loaded_sync,
            event.torrent_id,
            None if event.error else event.metadata,
            name="metadata_loaded",
        )

    def _on_task_finished(self, event: Event) -> None:
        if isinstance(event, TaskEvent) and event.torrent_id:
            self._submit(self._on_task_finished_sync, event.torrent_id, name="task_finished")

    def _on_restore_error(self, event: Event) -> None:
        if isinstance(event, RestoreErrorEvent) and event.torrent_id:
            self._submit(
                self._record_error_sync,
                event.torrent_id,
                event.error or "restore failed",
                name="restore_error",
            )

    def _on_downloads_completed(self) -> None:
        if self.config.controller.auto_stop_when_complete and self.is_running():
            self._spawn_stop("all downloads completed")

    def _on_dispatch_error(self, name: str, exc: BaseException) -> None:
        self.bus.emit(SessionErrorEvent(message=f"{name}: {exc}"))

    def _on_config_changed(self, config: Config) -> None:
        self._submit(
            self.engine.apply_settings,
            self._resolve_settings(config.session),
            name="apply_settings",
        )

    # ------------------------------------------------------------------
    # Dispatch helpers
    # ------------------------------------------------------------------

    def _submit(self, fn: Callable[..., Any], *args: Any, name: str) -> Future | None:
        """Queue ``fn`` on the dispatcher; None when the session is not running."""
        if not self.is_running():
            logger.debug("Dispatcher: %s skipped, session not running", name)
            return None
        try:
            return self.dispatcher.submit(fn, *args, name=name)
        except DispatcherError:
            logger.debug("Dispatcher: %s skipped, dispatcher stopped", name)
            return None

    def _task_op(self, torrent_id: str, op: TaskOp) -> Any:
        task = self.engine.get_task(torrent_id)
        if task is None or not task.is_valid():
            logger.debug("No task for %s", torrent_id)
            return None
        return op(task)

    def _submit_task_op(self, torrent_id: str, op: TaskOp, name: str) -> Future | None:
        return self._submit(self._task_op, torrent_id, op, name=name)

    def _submit_bulk(
        self,
        torrent_ids: Iterable[str],
        op: Callable[[str], Any],
        name: str,
    ) -> Future | None:
        ids = list(torrent_ids)

        def _unit() -> int:
            done = 0
            for torrent_id in ids:
                try:
                    op(torrent_id)
                except Exception as e:
                    logger.warning("Dispatcher: %s failed for %s: %s", name, torrent_id, e)
                else:
                    done += 1
            return done

        return self._submit(_unit, name=name)

    def _submit_bulk_task_op(
        self, torrent_ids: Iterable[str], op: TaskOp, name: str
    ) -> Future | None:
        return self._submit_bulk(torrent_ids, lambda tid: self._task_op(tid, op), name)

    def _live_task(self, torrent_id: str) -> TaskHandleProtocol | None:
        if not self.is_running():
            return None
        task = self.engine.get_task(torrent_id)
        if task is None or not task.is_valid():
            return None
        return task

    # ------------------------------------------------------------------
    # Adding torrents
    # ------------------------------------------------------------------

    def _add_torrent_sync(self, params: AddTorrentParams, remove_file: bool = False) -> Torrent:
        """Validate, add to the engine and persist. Runs on the dispatcher."""
        params = dataclasses.replace(params)
        with LoggingContext("torrent_add", expected=(TorrentAlreadyExistsError,)):
            metainfo: TorrentMetaInfo | None = None
            source_path: str | None = None

            if params.from_magnet:
                if not isinstance(params.source, str):
                    msg = "Magnet adds need a URI source"
                    raise UnknownSourceError(msg)
                info = parse_magnet(params.source)
                params.info_hash = params.info_hash or info.info_hash
                params.name = params.name or info.display_name or info.info_hash
            else:
                data = params.source
                if isinstance(data, str):
                    source_path = data
                    data = self.fs.read_bytes(data)
                metainfo = decode_metainfo(data)
                params.source = data
                params.info_hash = metainfo.info_hash
                params.name = params.name or metainfo.name
                if not params.file_priorities:
                    params.file_priorities = [Priority.DEFAULT] * metainfo.file_count

            if not params.download_path:
                params.download_path = self.fs.default_download_path()

            if metainfo is not None and not params.ignore_free_space:
                available = self.fs.get_dir_available_bytes(params.download_path)
                if available < metainfo.total_size:
                    raise InsufficientSpaceError(
                        params.download_path, metainfo.total_size, available
                    )

            torrent_id = self.engine.add_torrent(params)
            torrent = Torrent(
                id=torrent_id,
                name=params.name,
                download_path=params.download_path,
            )
            self.store.add(torrent)
            logger.info("Added torrent %s (%s)", torrent.name, torrent_id)

            if metainfo is not None:
                self._save_descriptor(torrent, metainfo.raw)
            if remove_file and source_path is not None:
                try:
                    self.fs.delete(source_path)
                except OSError as e:
                    logger.warning("Could not remove %s: %s", source_path, e)
            return torrent

    def _add_torrent_file_sync(self, locator: str, download_path: str | None) -> Torrent:
        locator = normalize_magnet_hash(locator)
        if is_magnet(locator):
            params = AddTorrentParams(source=locator, from_magnet=True, download_path=download_path)
        elif self.fs.is_local(locator):
            params = AddTorrentParams(source=locator, download_path=download_path)
        else:
            msg = f"Unsupported torrent source: {locator}"
            raise UnknownSourceError(msg, {"locator": locator})
        return self._add_torrent_sync(params)

    def _ingest_watched_file(self, path: Path) -> Future:
        # The watcher reports failures and deletes the source itself.
        return self.dispatcher.submit(
            self._add_torrent_file_sync,
            str(path),
            None,
            name="watch_dir_add",
            report=False,
        )

    def _submit_add(self, fn: Callable[..., Torrent], *args: Any, name: str) -> Future:
        if not self.is_running():
            msg = "Session is not running"
            raise EngineUnavailableError(msg, {"operation": name})
        try:
            return self.dispatcher.submit(fn, *args, name=name, report=False)
        except DispatcherError as e:
            msg = "Session is stopping"
            raise EngineUnavailableError(msg, {"operation": name}) from e

    async def add_torrent(self, params: AddTorrentParams, remove_file: bool = False) -> Torrent:
        """Add a torrent from caller-built parameters.

        Raises:
            EngineUnavailableError: the session is not running.
            DecodeError: the descriptor bytes are malformed.
            InsufficientSpaceError: not enough room at the destination.
            TorrentAlreadyExistsError: the info hash is already tracked.

        """
        future = self._submit_add(self._add_torrent_sync, params, remove_file, name="add_torrent")
        return await asyncio.wrap_future(future)

    def add_torrent_sync(
        self,
        params: AddTorrentParams,
        remove_file: bool = False,
        timeout: float | None = None,
    ) -> Torrent:
        """Blocking variant of :meth:`add_torrent` for threads off the event loop."""
        future = self._submit_add(self._add_torrent_sync, params, remove_file, name="add_torrent")
        return future.result(timeout)

    def add_torrent_bytes(self, data: bytes, download_path: str | None = None) -> Future | None:
        """Add a torrent from raw descriptor bytes."""
        params = AddTorrentParams(source=data, download_path=download_path)
        return self._submit(self._add_torrent_sync, params, name="add_torrent_bytes")

    def add_torrent_file(self, locator: str, download_path: str | None = None) -> Future | None:
        """Add a torrent from a local path, ``file://`` URI or magnet link."""
        return self._submit(
            self._add_torrent_file_sync, locator, download_path, name="add_torrent_file"
        )

    def add_torrents(self, params_list: Iterable[AddTorrentParams]) -> Future | None:
        """Add several torrents; failures are logged and skipped.

        The returned future resolves to the list of added torrents.
        """
        batch = list(params_list)

        def _unit() -> list[Torrent]:
            added = []
            for params in batch:
                try:
                    added.append(self._add_torrent_sync(params))
                except Exception as e:
                    logger.warning(
                        "Dispatcher: add_torrents failed for %s: %s",
                        params.name or "torrent",
                        e,
                    )
            return added

        return self._submit(_unit, name="add_torrents")

    def fetch_magnet(self, magnet_uri: str) -> tuple[MagnetInfo, MetadataHandle] | None:
        """Resolve a magnet link's metadata.

        Returns the parsed magnet immediately plus a handle completing with
        the torrent metadata, or None when the session is not running.

        Raises:
            UnknownSourceError: not a magnet URI.
            DecodeError: the info hash is malformed.

        """
        if not self.is_running():
            return None
        return self.magnets.resolve(magnet_uri)

    def cancel_fetch_magnet(self, info_hash: str) -> bool:
        return self.magnets.cancel(info_hash)

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------

    def _delete_sync(self, torrent_id: str, with_files: bool) -> None:
        with LoggingContext("torrent_delete", torrent_id=torrent_id):
            if self.engine.get_task(torrent_id) is not None:
                self.engine.delete_torrent(torrent_id, with_files)
            self.store.delete(torrent_id)

    def delete_torrent(self, torrent_id: str, with_files: bool = False) -> Future | None:
        return self._submit(self._delete_sync, torrent_id, with_files, name="delete_torrent")

    def delete_torrents(
        self, torrent_ids: Iterable[str], with_files: bool = False
    ) -> Future | None:
        return self._submit_bulk(
            torrent_ids, lambda tid: self._delete_sync(tid, with_files), "delete_torrents"
        )

    def pause_torrent(self, torrent_id: str) -> Future | None:
        return self._submit_task_op(torrent_id, methodcaller("pause"), "pause_torrent")

    def resume_torrent(self, torrent_id: str) -> Future | None:
        return self._submit_task_op(torrent_id, methodcaller("resume"), "resume_torrent")

    def pause_resume_torrent(self, torrent_id: str) -> Future | None:
        """Pause a running task or resume a paused one."""
        return self._submit_task_op(torrent_id, _toggle_pause, "pause_resume_torrent")

    def resume_if_paused(self, torrent_id: str) -> Future | None:
        return self._submit_task_op(torrent_id, _resume_if_paused, "resume_if_paused")

    def pause_torrents(self, torrent_ids: Iterable[str]) -> Future | None:
        return self._submit_bulk_task_op(torrent_ids, methodcaller("pause"), "pause_torrents")

    def resume_torrents(self, torrent_ids: Iterable[str]) -> Future | None:
        return self._submit_bulk_task_op(torrent_ids, methodcaller("resume"), "resume_torrents")

    def pause_all(self) -> Future | None:
        return self._submit(self.engine.pause_all, name="pause_all")

    def resume_all(self) -> Future | None:
        return self._submit(self.engine.resume_all, name="resume_all")

    def force_recheck(self, torrent_ids: Iterable[str]) -> Future | None:
        return self._submit_bulk_task_op(
            torrent_ids, methodcaller("force_recheck"), "force_recheck"
        )

    def force_announce(self, torrent_ids: Iterable[str]) -> Future | None:
        return self._submit_bulk_task_op(
            torrent_ids, methodcaller("force_announce"), "force_announce"
        )

    def add_trackers(self, torrent_id: str, urls: list[str]) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("add_trackers", list(urls)), "add_trackers"
        )

    def replace_trackers(self, torrent_id: str, urls: list[str]) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("replace_trackers", list(urls)), "replace_trackers"
        )

    def remove_trackers(self, torrent_id: str, urls: list[str]) -> Future | None:
        return self._submit_task_op(torrent_id, _remove_trackers(urls), "remove_trackers")

    def _rename_sync(self, torrent_id: str, name: str) -> None:
        task = self.engine.get_task(torrent_id)
        if task is None or not task.is_valid():
            return
        task.set_name(name)
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is not None:
            self.store.update(torrent.with_changes(name=name))

    def set_torrent_name(self, torrent_id: str, name: str) -> Future | None:
        return self._submit(self._rename_sync, torrent_id, name, name="set_torrent_name")

    def _move_sync(self, torrent_id: str, path: str) -> None:
        task = self.engine.get_task(torrent_id)
        if task is None or not task.is_valid():
            return
        task.move_storage(path)
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is not None:
            self.store.update(torrent.with_changes(download_path=path))

    def set_download_path(self, torrent_ids: Iterable[str], path: str) -> Future | None:
        """Move the storage of each task to ``path``."""
        return self._submit_bulk(
            torrent_ids, lambda tid: self._move_sync(tid, path), "set_download_path"
        )

    def set_sequential_download(self, torrent_id: str, enabled: bool) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("set_sequential_download", enabled), "set_sequential_download"
        )

    def set_first_last_piece_priority(self, torrent_id: str, enabled: bool) -> Future | None:
        return self._submit_task_op(
            torrent_id,
            methodcaller("set_first_last_piece_priority", enabled),
            "set_first_last_piece_priority",
        )

    def prioritize_files(self, torrent_id: str, priorities: list[Priority]) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("set_file_priorities", list(priorities)), "prioritize_files"
        )

    def set_download_speed_limit(self, torrent_id: str, limit: int) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("set_download_limit", limit), "set_download_limit"
        )

    def set_upload_speed_limit(self, torrent_id: str, limit: int) -> Future | None:
        return self._submit_task_op(
            torrent_id, methodcaller("set_upload_limit", limit), "set_upload_limit"
        )

    def _set_visibility_sync(self, torrent_id: str, visibility: Visibility) -> None:
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is not None and torrent.visibility is not visibility:
            self.store.update(torrent.with_changes(visibility=visibility))

    def mark_as_hidden(self, torrent_id: str) -> Future | None:
        return self._submit(
            self._set_visibility_sync, torrent_id, Visibility.HIDDEN, name="mark_as_hidden"
        )

    def _record_error_sync(self, torrent_id: str, error: str) -> None:
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is not None:
            self.store.update(torrent.with_changes(error=error))
        logger.warning("Could not restore %s: %s", torrent_id, error)

    def _on_task_finished_sync(self, torrent_id: str) -> None:
        self._set_visibility_sync(torrent_id, Visibility.HIDDEN)
        storage = self.config.storage
        if storage.move_after_download and storage.move_after_download_in:
            task = self.engine.get_task(torrent_id)
            if task is not None and task.is_valid():
                target = str(Path(storage.move_after_download_in).expanduser())
                if Path(task.save_path()) != Path(target):
                    self._move_sync(torrent_id, target)

    def _on_metadata_loaded_sync(self, torrent_id: str, raw: bytes | None) -> None:
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is not None and raw is not None and torrent.name == torrent_id:
            metainfo = self._decode_quietly(raw, torrent_id)
            if metainfo is not None:
                self.store.update(torrent.with_changes(name=metainfo.name))
        self._apply_task_policy_sync(torrent_id)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _resolve_settings(self, settings: SessionSettings) -> SessionSettings:
        if not settings.random_port:
            return settings
        if self._random_range is None:
            self._random_range = random_port_range()
        first, second = self._random_range
        return settings.model_copy(update={"port_range_first": first, "port_range_second": second})

    def get_settings(self) -> SessionSettings:
        return self.config.session

    def set_settings(self, settings: SessionSettings) -> None:
        """Replace the session settings and push them into a running engine."""
        new_config = self.config.model_copy(update={"session": settings})
        if self.config_manager is not None:
            # The change callback pushes the settings while running.
            self.config_manager.apply(new_config)
            return
        self._config = new_config
        self._on_config_changed(new_config)

    def _update_settings(self, **changes: Any) -> None:
        settings = SessionSettings.model_validate({**self.config.session.model_dump(), **changes})
        self.set_settings(settings)

    def set_random_port_range(self) -> tuple[int, int]:
        """Pick a fresh random listen range and apply it."""
        first, second = random_port_range()
        self._update_settings(port_range_first=first, port_range_second=second)
        return first, second

    def set_port_range(self, first: int, second: int) -> None:
        """Set the listen range; ``-1`` leaves that end unchanged."""
        changes = {}
        if first != -1:
            changes["port_range_first"] = first
        if second != -1:
            changes["port_range_second"] = second
        if changes:
            self._update_settings(**changes)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def _policy_says_pause(self) -> bool:
        readings = self.environment.read()
        return should_pause(
            self.config.policy,
            readings,
            self.config.controller.default_low_battery_level,
        )

    def _reschedule_sync(self) -> bool:
        stop = self._policy_says_pause()
        if stop:
            self.engine.pause_all()
        else:
            self.engine.resume_all()
        logger.debug("Policy: %s all torrents", "paused" if stop else "resumed")
        return stop

    def _apply_task_policy_sync(self, torrent_id: str) -> None:
        if not self._policy_says_pause():
            return
        task = self.engine.get_task(torrent_id)
        if task is not None and task.is_valid() and not task.is_paused():
            task.pause()
            logger.info("Policy: paused %s", torrent_id)

    def reschedule_torrents(self) -> Future | None:
        """Re-evaluate the power/network policy and pause or resume everything."""
        return self._submit(self._reschedule_sync, name="reschedule_torrents")

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def make_info(self, torrent_id: str) -> TorrentInfo | None:
        torrent = self.store.get_torrent_by_id(torrent_id)
        if torrent is None:
            return None
        task = self._live_task(torrent_id)
        if task is None:
            return TorrentInfo.basic(torrent)
        status: TaskStatus = task.status()
        return TorrentInfo(
            id=torrent.id,
            name=torrent.name,
            date_added=torrent.date_added,
            state=status.state,
            progress=status.progress,
            download_rate=status.download_rate,
            upload_rate=status.upload_rate,
            total_downloaded=status.total_downloaded,
            total_uploaded=status.total_uploaded,
            num_peers=status.num_peers,
            num_seeds=status.num_seeds,
            eta=status.eta,
            error=status.error or torrent.error,
            sequential_download=task.is_sequential_download(),
            file_priorities=tuple(task.file_priorities()),
            download_path=task.save_path(),
        )

    def make_info_list(self) -> list[TorrentInfo]:
        """Info for every visible torrent, oldest first."""
        infos = []
        for torrent in self.store.get_all_torrents():
            if torrent.visibility is Visibility.HIDDEN:
                continue
            info = self.make_info(torrent.id)
            if info is not None:
                infos.append(info)
        return infos

    def _decode_quietly(self, raw: bytes, torrent_id: str) -> TorrentMetaInfo | None:
        try:
            return decode_metainfo(raw)
        except DecodeError as e:
            logger.warning("Bad metadata for %s: %s", torrent_id, e)
            return None

    def get_torrent_meta_info(self, torrent_id: str) -> TorrentMetaInfo | None:
        if not self.is_running():
            return None
        task = self._live_task(torrent_id)
        raw = task.metadata() if task is not None else self.engine.get_cached_metadata(torrent_id)
        if raw is None:
            return None
        return self._decode_quietly(raw, torrent_id)

    def make_magnet(self, torrent_id: str, include_priorities: bool = False) -> str | None:
        task = self._live_task(torrent_id)
        return task.make_magnet(include_priorities) if task is not None else None

    def get_tracker_urls(self, torrent_id: str) -> list[str]:
        task = self._live_task(torrent_id)
        return task.get_trackers() if task is not None else []

    def get_download_speed_limit(self, torrent_id: str) -> int:
        task = self._live_task(torrent_id)
        return task.download_limit() if task is not None else -1

    def get_upload_speed_limit(self, torrent_id: str) -> int:
        task = self._live_task(torrent_id)
        return task.upload_limit() if task is not None else -1

    def is_sequential_download(self, torrent_id: str) -> bool:
        task = self._live_task(torrent_id)
        return task is not None and task.is_sequential_download()

    def is_first_last_piece_priority(self, torrent_id: str) -> bool:
        task = self._live_task(torrent_id)
        return task is not None and task.is_first_last_piece_priority()

    def get_pieces(self, torrent_id: str) -> list[bool]:
        task = self._live_task(torrent_id)
        return task.pieces() if task is not None else []

    def _resolve_stream_file(self, torrent_id: str, file_index: int) -> Path | None:
        task = self._live_task(torrent_id)
        if task is None:
            return None
        paths = task.file_paths()
        if not 0 <= file_index < len(paths):
            return None
        return Path(task.save_path()) / paths[file_index]

    def get_stream_url(self, torrent_id: str, file_index: int) -> str | None:
        """URL serving one file of a task, or None when streaming is off."""
        if self._streaming_address is None or self.streaming is None:
            return None
        task = self._live_task(torrent_id)
        if task is None or not 0 <= file_index < len(task.file_paths()):
            return None
        host, port = self._streaming_address
        return self.streaming.build_url(host, port, torrent_id, file_index)

    def _save_descriptor(
        self, torrent: Torrent, raw: bytes, directory: str | None = None
    ) -> Path | None:
        directory = directory or self.config.storage.save_torrents_in
        if not directory or not raw:
            return None
        try:
            path = self.fs.create_file(directory, _descriptor_file_name(torrent))
            self.fs.write_bytes(str(path), raw)
        except (OSError, ValidationError) as e:
            logger.warning("Could not save torrent file for %s: %s", torrent.id, e)
            return None
        return path

    def save_torrent_file(self, torrent_id: str, directory: str | None = None) -> Path | None:
        """Write the task's descriptor into ``directory`` (default ``save_torrents_in``)."""
        torrent = self.store.get_torrent_by_id(torrent_id)
        task = self._live_task(torrent_id)
        if torrent is None or task is None:
            return None
        raw = task.metadata()
        if raw is None:
            logger.debug("No metadata yet for %s", torrent_id)
            return None
        return self._save_descriptor(torrent, raw, directory)


_controller: SessionController | None = None
_controller_lock = threading.Lock()


def create_controller(
    engine: TransferEngineProtocol,
    store: TorrentStoreProtocol,
    config: Config | ConfigManager | None = None,
    **kwargs: Any,
) -> SessionController:
    """Build and register the process-wide controller.

    Raises:
        SwarmCtlError: a controller was already created.

    """
    global _controller
    with _controller_lock:
        if _controller is not None:
            msg = "Session controller already created"
            raise SwarmCtlError(msg)
        _controller = SessionController(engine, store, config, **kwargs)
        return _controller


def get_controller() -> SessionController:
    """Return the process-wide controller created by :func:`create_controller`."""
    if _controller is None:
        msg = "Session controller not created"
        raise SwarmCtlError(msg)
    return _controller


def reset_controller() -> None:
    """Forget the process-wide controller (it is not stopped)."""
    global _controller
    with _controller_lock:
        _controller = None
