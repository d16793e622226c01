"""
Background poller that turns media server snapshots into session rows.

Two loops run while started: a poll loop (snapshot every interval, the first
cycle after start being a reconciliation poll) and a stale-session sweep.
Cycles for one server are serialized; different servers poll in parallel.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.config import Settings, settings as default_settings
from ..core.database import SessionLocal, utcnow
from ..core.exceptions import SessionNotFoundError, SnapshotFetchError
from ..core.locks import KeyedLock
from ..models.server import Server
from ..models.server_user import ServerUser
from ..providers.factory import ProviderFactory
from ..schemas.rule import RuleDefinition
from ..schemas.snapshot import HistoryEntry, SessionSnapshot
from . import session_queries
from .server_user_service import ServerUserService
from .session_lifecycle import (
    SessionCreationInput,
    SessionLifecycleManager,
    SessionStopInput,
    SessionUpdateInput,
    session_lifecycle as default_lifecycle,
)
from .session_mapper import serialize_session, serialize_violation
from .state_tracker import detect_media_change, should_force_stop_stale_session

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    enabled: bool = True
    interval_ms: int = default_settings.poll_interval_ms


@dataclass
class ServerPollResult:
    server_id: int
    success: bool
    reconciliation: bool = False
    started: List[Any] = field(default_factory=list)
    updated: List[Any] = field(default_factory=list)
    stopped: List[Any] = field(default_factory=list)
    violations: List[Any] = field(default_factory=list)
    error: Optional[str] = None


class SessionPoller:
    """Owns the poll and sweep loops and the in-memory view of tracked session keys"""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        lifecycle: SessionLifecycleManager = default_lifecycle,
        provider_factory: Callable = ProviderFactory.create_provider,
        config: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.provider_factory = provider_factory
        self.config = config

        self.cache_service = None
        self.pubsub_service = None
        self.poll_config = PollerConfig(enabled=config.poller_enabled, interval_ms=config.poll_interval_ms)

        self.is_running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._server_locks = KeyedLock()
        self._sweep_lock = asyncio.Lock()

        # server_id -> session_key -> session id
        self._tracked: Dict[int, Dict[str, int]] = {}
        self._server_health: Dict[int, bool] = {}

        self.last_poll_at: Optional[datetime] = None
        self.last_sweep_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def initialize(self, cache_service=None, pubsub_service=None):
        """Attach the cache and pub/sub collaborators"""
        self.cache_service = cache_service
        self.pubsub_service = pubsub_service
        logger.info("Session poller initialized")

    # Lifecycle

    async def start(self, config: Optional[PollerConfig] = None):
        """Start the poll and sweep loops; calling it while running does nothing"""
        if self.is_running:
            logger.warning("Session poller already running")
            return

        if config is not None:
            self.poll_config = config
        if not self.poll_config.enabled:
            logger.info("Session poller disabled, not starting")
            return

        self.is_running = True
        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Started session poller (interval {self.poll_config.interval_ms}ms, sweep {self.config.sweep_interval_ms}ms)")

    async def stop(self):
        """Stop both loops, letting any in-flight cycle finish first"""
        if not self.is_running:
            return

        self.is_running = False
        self._stop_event.set()
        tasks = [task for task in (self._poll_task, self._sweep_task) if task is not None]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Poller loop ended with error: {result}")
        self._poll_task = None
        self._sweep_task = None
        logger.info("Stopped session poller")

    async def _wait(self, interval_ms: int) -> bool:
        """Sleep for the interval; True when stop was requested meanwhile"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll_loop(self):
        last_reconciliation: Optional[datetime] = None
        reconcile_every = timedelta(milliseconds=self.config.reconciliation_interval_ms)
        while not self._stop_event.is_set():
            try:
                now = utcnow()
                if last_reconciliation is None or now - last_reconciliation >= reconcile_every:
                    last_reconciliation = now
                    await self.trigger_reconciliation_poll()
                else:
                    await self.trigger_poll()
            except Exception as e:
                logger.error(f"Error in session poll loop: {e}")
                self.last_error = str(e)
            if await self._wait(self.poll_config.interval_ms):
                break

    async def _sweep_loop(self):
        while not self._stop_event.is_set():
            if await self._wait(self.config.sweep_interval_ms):
                break
            await self.sweep_stale_sessions()

    # Polling

    async def trigger_poll(self) -> List[ServerPollResult]:
        """Poll every enabled server not connected for push events"""
        return await self._poll_servers(reconciliation=False)

    async def trigger_reconciliation_poll(self) -> List[ServerPollResult]:
        """Poll every enabled server and re-check all sessions the database believes are active"""
        return await self._poll_servers(reconciliation=True)

    async def _poll_servers(self, reconciliation: bool) -> List[ServerPollResult]:
        db = self.session_factory()
        try:
            servers = db.query(Server).filter(Server.enabled == True).all()
            rules = session_queries.get_active_rules(db)
        finally:
            db.close()

        if not reconciliation:
            servers = [server for server in servers if not server.push_enabled]

        results = await asyncio.gather(
            *[self._poll_server(server, reconciliation, rules) for server in servers],
            return_exceptions=True,
        )

        cycle_results = []
        for server, result in zip(servers, results):
            if isinstance(result, Exception):
                logger.error(f"Poll cycle failed for server {server.id} ({server.name}): {result}")
                self.last_error = f"Server {server.id}: {result}"
                cycle_results.append(ServerPollResult(server_id=server.id, success=False, error=str(result)))
            else:
                cycle_results.append(result)

        self.last_poll_at = utcnow()
        return cycle_results

    async def _fetch(self, server: Server, reconciliation: bool) -> Tuple[List[SessionSnapshot], List[HistoryEntry]]:
        db = self.session_factory()
        try:
            provider = self.provider_factory(server, db)
        finally:
            db.close()

        timeout = self.config.snapshot_fetch_timeout_seconds
        try:
            snapshots = await asyncio.wait_for(provider.fetch_snapshot(), timeout=timeout)
        except asyncio.TimeoutError:
            raise SnapshotFetchError(server.id, f"timed out after {timeout}s")

        history: List[HistoryEntry] = []
        if reconciliation:
            since = utcnow() - timedelta(hours=self.config.recent_history_hours)
            try:
                history = await asyncio.wait_for(provider.fetch_recent_history(since), timeout=timeout)
            except (SnapshotFetchError, asyncio.TimeoutError) as e:
                logger.warning(f"Could not load watch history for server {server.id}: {e}")

        return snapshots, history

    async def _poll_server(
        self,
        server: Server,
        reconciliation: bool,
        rules: List[RuleDefinition],
    ) -> ServerPollResult:
        async with self._server_locks.acquire(server.id):
            result = ServerPollResult(server_id=server.id, success=False, reconciliation=reconciliation)

            try:
                snapshots, history_entries = await self._fetch(server, reconciliation)
            except SnapshotFetchError as e:
                # Never treat a failed fetch as "nothing playing"
                logger.warning(str(e))
                result.error = str(e)
                await self._record_health(server, False)
                return result

            await self._record_health(server, True)
            now = utcnow()

            # One entry per session key, last report wins
            by_key: Dict[str, SessionSnapshot] = {}
            for snapshot in snapshots:
                by_key[snapshot.session_key] = snapshot

            db = self.session_factory()
            try:
                users = ServerUserService(db).resolve_for_snapshots(server.id, by_key.values())
                active = session_queries.find_active_sessions_for_server(db, server.id)
                since = now - timedelta(hours=self.config.recent_history_hours)
                recent = session_queries.batch_get_recent_user_sessions(
                    db,
                    [user.id for user in users.values()],
                    since,
                    self.config.max_recent_sessions_per_user,
                )
                external_ids: Dict[int, str] = {}
                if reconciliation and history_entries and active:
                    rows = db.query(ServerUser.id, ServerUser.external_id).filter(
                        ServerUser.id.in_({s.server_user_id for s in active})
                    ).all()
                    external_ids = {row[0]: row[1] for row in rows}
                db.query(Server).filter(Server.id == server.id).update({"last_seen_at": now})
                db.commit()
            finally:
                db.close()

            active_by_key = {session.session_key: session for session in active}
            tracked = self._tracked.setdefault(server.id, {})

            # Creates and updates first
            for key, snapshot in by_key.items():
                user = users.get(snapshot.external_user_id)
                if user is None:
                    logger.warning(f"No server user for {snapshot.external_user_id} on server {server.id}, skipping {key}")
                    continue

                existing = active_by_key.get(key)
                creation = SessionCreationInput(
                    server_id=server.id,
                    server_user_id=user.id,
                    snapshot=snapshot,
                    now=now,
                    recent_sessions=recent[user.id],
                    active_rules=rules,
                )

                if existing is None or detect_media_change(existing.rating_key, snapshot.rating_key):
                    if existing is None:
                        created = await self.lifecycle.create_session_with_rules_atomic(creation)
                    else:
                        created = await self.lifecycle.handle_media_change_atomic(creation)
                    self._collect_creation(result, created)
                    tracked[key] = created.session.id
                    if created.created:
                        # Later creates in this cycle see this stream as history
                        recent[user.id].insert(0, created.session)
                else:
                    try:
                        update = await self.lifecycle.update_session_atomic(SessionUpdateInput(
                            server_id=server.id,
                            session_id=existing.id,
                            snapshot=snapshot,
                            now=now,
                        ))
                    except SessionNotFoundError as e:
                        logger.warning(str(e))
                        continue
                    if update.updated:
                        result.updated.append(update.session)
                        tracked[key] = update.session.id

            # Then stops
            if reconciliation:
                candidates = [s for key, s in active_by_key.items() if key not in by_key]
            else:
                candidates = [
                    active_by_key[key] for key in list(tracked)
                    if key not in by_key and key in active_by_key
                ]

            for session in candidates:
                progress_ms = self._history_progress(session, history_entries, external_ids)
                stop = await self.lifecycle.stop_session_atomic(SessionStopInput(
                    session_id=session.id,
                    stopped_at=now,
                    progress_ms=progress_ms,
                ))
                if stop.was_updated:
                    result.stopped.append(stop.session)

            for key in list(tracked):
                if key not in by_key:
                    del tracked[key]

            result.success = True

        await self._publish_cycle(server.id, result)
        if result.started or result.stopped:
            logger.info(
                f"Server {server.id} ({server.name}): {len(result.started)} started, "
                f"{len(result.updated)} updated, {len(result.stopped)} stopped"
            )
        return result

    def _collect_creation(self, result: ServerPollResult, created):
        if created.created:
            result.started.append(created.session)
        else:
            result.updated.append(created.session)
        result.stopped.extend(created.stopped_sessions)
        result.violations.extend(created.violations)

    @staticmethod
    def _history_progress(session, entries: List[HistoryEntry], external_ids: Dict[int, str]) -> Optional[int]:
        """Latest position the server recorded for this user and media after the session started"""
        external_id = external_ids.get(session.server_user_id)
        if not entries or external_id is None or not session.rating_key:
            return None
        positions = [
            entry.progress_ms for entry in entries
            if entry.external_user_id == external_id
            and entry.rating_key == session.rating_key
            and entry.viewed_at >= session.started_at
            and entry.progress_ms is not None
        ]
        return max(positions) if positions else None

    # Stale sweep

    async def sweep_stale_sessions(self) -> int:
        """Force-stop active sessions not observed within the stale timeout; returns how many were stopped"""
        async with self._sweep_lock:
            stopped = []
            try:
                now = utcnow()
                timeout_ms = self.config.stale_session_timeout_ms
                cutoff = now - timedelta(milliseconds=timeout_ms)

                db = self.session_factory()
                try:
                    stale = session_queries.find_stale_sessions(db, cutoff)
                finally:
                    db.close()

                for session in stale:
                    if not should_force_stop_stale_session(session.last_seen_at, now, timeout_ms):
                        continue
                    try:
                        stop = await self.lifecycle.stop_session_atomic(SessionStopInput(
                            session_id=session.id,
                            stopped_at=session.last_seen_at,
                            force_stopped=True,
                            seen_before=cutoff,
                        ))
                    except Exception as e:
                        logger.error(f"Failed to force-stop stale session {session.id}: {e}")
                        continue
                    if stop.was_updated:
                        stopped.append(stop.session)
                        tracked = self._tracked.get(session.server_id, {})
                        if tracked.get(session.session_key) == session.id:
                            del tracked[session.session_key]
            except Exception as e:
                logger.error(f"Error sweeping stale sessions: {e}")
                self.last_error = str(e)

            self.last_sweep_at = utcnow()

        if stopped:
            logger.info(f"Force-stopped {len(stopped)} stale sessions")
            for session in stopped:
                await self._publish_stop(session)
        return len(stopped)

    # Outbound

    async def _record_health(self, server: Server, healthy: bool):
        previous = self._server_health.get(server.id)
        self._server_health[server.id] = healthy
        try:
            if self.cache_service is not None:
                await self.cache_service.set_server_health(server.id, healthy)
            if previous is True and not healthy:
                logger.warning(f"Server {server.id} ({server.name}) is down")
                await self._publish("server:down", {"server_id": server.id, "server_name": server.name})
            elif previous is False and healthy:
                logger.info(f"Server {server.id} ({server.name}) is back up")
                await self._publish("server:up", {"server_id": server.id, "server_name": server.name})
        except Exception as e:
            logger.error(f"Error recording health for server {server.id}: {e}")

    async def _publish(self, event: str, data: Dict[str, Any]):
        if self.pubsub_service is None:
            return
        try:
            await self.pubsub_service.publish(event, data)
        except Exception as e:
            logger.error(f"Error publishing {event}: {e}")

    async def _publish_stop(self, session):
        await self._publish("session:stopped", serialize_session(session))
        if self.cache_service is not None:
            try:
                await self.cache_service.remove_session(session.server_id, session.session_key)
            except Exception as e:
                logger.error(f"Error removing session {session.id} from cache: {e}")

    async def _publish_cycle(self, server_id: int, result: ServerPollResult):
        """Broadcast a finished cycle; the database is already committed"""
        for session in result.started:
            await self._publish("session:started", serialize_session(session))
        for session in result.updated:
            await self._publish("session:updated", serialize_session(session))
        for violation in result.violations:
            await self._publish("violation:new", serialize_violation(violation))
        for session in result.stopped:
            await self._publish_stop(session)

        if self.cache_service is None:
            return
        try:
            for session in result.started + result.updated:
                await self.cache_service.set_session(server_id, session.session_key, serialize_session(session))
            if result.reconciliation:
                await self.cache_service.replace_server_sessions(
                    server_id,
                    {s.session_key: serialize_session(s) for s in result.started + result.updated},
                )
        except Exception as e:
            logger.error(f"Error syncing session cache for server {server_id}: {e}")

    def tracked_session_count(self) -> int:
        return sum(len(keys) for keys in self._tracked.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "enabled": self.poll_config.enabled,
            "interval_ms": self.poll_config.interval_ms,
            "sweep_interval_ms": self.config.sweep_interval_ms,
            "last_poll_at": self.last_poll_at,
            "last_sweep_at": self.last_sweep_at,
            "last_error": self.last_error,
            "tracked_sessions": self.tracked_session_count(),
        }


# Global poller instance
session_poller = SessionPoller()


def initialize_poller(cache_service=None, pubsub_service=None):
    session_poller.initialize(cache_service, pubsub_service)


async def start_poller(enabled: bool = True, interval_ms: Optional[int] = None):
    await session_poller.start(PollerConfig(
        enabled=enabled,
        interval_ms=interval_ms or default_settings.poll_interval_ms,
    ))


async def stop_poller():
    await session_poller.stop()


async def trigger_poll():
    return await session_poller.trigger_poll()


async def trigger_reconciliation_poll():
    return await session_poller.trigger_reconciliation_poll()


async def sweep_stale_sessions() -> int:
    return await session_poller.sweep_stale_sessions()
