"""
Background scheduling of vector builds.

BuildScheduler is what diary record hooks call. The hook side only
validates and decides; the build itself runs on a thread pool, bounded
by a per-pass deadline, and nothing it does can reach the caller.

At most one build runs per user (BuildSlots). A trigger that arrives
while that user's build is running is folded into it: the running
build does one more incremental pass before releasing the slot, so the
change is picked up without two passes ever overlapping.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Union

from .builder import IndexBuilder
from .context import BuildContext
from .errors import BuildInProgress, DiaryIndexError
from .protocol import SettingsProtocol
from .settings_store import AI_ENABLED
from .types import BuildResult

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT = 300.0  # 5 minutes per pass
DEFAULT_MAX_WORKERS = 4

IDLE = "idle"
BUILDING = "building"


class BuildSlots:
    """
    Per-user build markers with insert-if-absent semantics.

    Each held slot carries a rerun flag, set when another trigger for
    the same user arrives while the slot is held.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._held: dict[str, bool] = {}  # user_id -> rerun requested

    def try_acquire(self, user_id: str, *, request_rerun: bool = False) -> bool:
        """
        Take the slot for user_id if it is free.

        Returns False if it is already held; with request_rerun the holder
        is asked to run one more pass before releasing.
        """
        with self._lock:
            if user_id in self._held:
                if request_rerun:
                    self._held[user_id] = True
                return False
            self._held[user_id] = False
            return True

    def mark_dirty(self, user_id: str) -> bool:
        """Request a rerun if the slot is held. Returns whether it was held."""
        with self._lock:
            if user_id in self._held:
                self._held[user_id] = True
                return True
            return False

    def release_or_continue(self, user_id: str) -> bool:
        """
        End the holder's current pass.

        Returns True if a rerun was requested: the slot stays held and the
        flag is cleared. Otherwise the slot is released and False returned.
        """
        with self._lock:
            if self._held.get(user_id):
                self._held[user_id] = False
                return True
            self._held.pop(user_id, None)
            return False

    def release(self, user_id: str) -> None:
        with self._lock:
            self._held.pop(user_id, None)

    def is_held(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._held

    def held(self) -> list[str]:
        with self._lock:
            return sorted(self._held)


class BuildScheduler:
    """
    Runs incremental vector builds off the request path.

    Args:
        builder: IndexBuilder doing the actual work
        settings: Per-user settings; builds run only when ai.enabled is true
        timeout: Wall-clock budget of each pass, from launch
        max_workers: Builds of different users that may run at once
        log: Where build outcomes are reported (default: module logger)
    """

    def __init__(
        self,
        builder: IndexBuilder,
        settings: SettingsProtocol,
        *,
        timeout: float = DEFAULT_BUILD_TIMEOUT,
        max_workers: int = DEFAULT_MAX_WORKERS,
        log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    ):
        self._builder = builder
        self._settings = settings
        self._timeout = timeout
        self._log = log or logger
        self._slots = BuildSlots()
        self._contexts: dict[str, BuildContext] = {}
        self._contexts_lock = threading.Lock()
        # Set by shutdown(cancel_running=True); guarded by _contexts_lock
        self._stopping = False
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="diaryindex-build",
        )

    @property
    def slots(self) -> BuildSlots:
        return self._slots

    def state(self, user_id: str) -> str:
        """IDLE or BUILDING."""
        return BUILDING if self._slots.is_held(user_id) else IDLE

    # -------------------------------------------------------------------------
    # Record hooks
    # -------------------------------------------------------------------------

    def on_entry_changed(self, user_id: str) -> Optional[Future]:
        """
        Handle a diary entry create/update notification.

        Returns the Future of a newly launched build, or None if nothing
        was launched (no user, AI disabled, or folded into a running
        build). Never raises.
        """
        try:
            if not user_id:
                return None
            if not self._ai_enabled(user_id):
                return None
            if not self._slots.try_acquire(user_id, request_rerun=True):
                self._log.debug("Build already running for user %s; change folded into it", user_id)
                return None
            return self._launch(user_id, BuildContext(self._timeout))
        except Exception as e:
            self._log.error("Failed to schedule vector build for user %s: %s", user_id, e)
            return None

    def on_entry_deleted(self, user_id: str, entry_id: str) -> None:
        """
        Handle a diary entry delete notification: drop its vector.

        If a build is running for the user it is asked to run once more,
        so a vector it writes for the deleted entry is removed again.
        Never raises.
        """
        if not user_id or not entry_id:
            return
        try:
            if self._builder.remove_entry(user_id, entry_id):
                self._log.debug("Removed vector of deleted entry %s (user %s)", entry_id, user_id)
            self._slots.mark_dirty(user_id)
        except Exception as e:
            self._log.error(
                "Failed to remove vector of deleted entry %s (user %s): %s",
                entry_id, user_id, e,
            )

    # -------------------------------------------------------------------------
    # Synchronous builds
    # -------------------------------------------------------------------------

    def build_now(
        self,
        user_id: str,
        *,
        full: bool = False,
        timeout: Optional[float] = None,
    ) -> BuildResult:
        """
        Run a build in the calling thread, sharing the user's build slot.

        Errors propagate to the caller. Triggers that arrived meanwhile are
        handed to a background pass afterwards.

        Raises:
            BuildInProgress: If a build is already running for the user
        """
        if not self._slots.try_acquire(user_id):
            raise BuildInProgress(f"A vector build is already running for user {user_id}")
        ctx = BuildContext(self._timeout if timeout is None else timeout)
        kind = "full" if full else "incremental"
        self._track(user_id, ctx)
        try:
            if full:
                result = self._builder.build_all(ctx, user_id)
            else:
                result = self._builder.build_incremental(ctx, user_id)
            self._report(user_id, kind, result, ctx)
            return result
        finally:
            self._untrack(user_id)
            if self._slots.release_or_continue(user_id):
                if self._is_stopping():
                    self._slots.release(user_id)
                else:
                    self._launch(user_id, BuildContext(self._timeout))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def shutdown(self, wait: bool = True, *, cancel_running: bool = False) -> None:
        """
        Stop accepting builds.

        Args:
            wait: Block until running builds finish
            cancel_running: Cancel running builds first; their remaining
                entries are reported as Cancelled and pending reruns are
                dropped
        """
        if cancel_running:
            with self._contexts_lock:
                self._stopping = True
                for ctx in self._contexts.values():
                    ctx.cancel()
        self._executor.shutdown(wait=wait)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ai_enabled(self, user_id: str) -> bool:
        """Read ai.enabled; unreadable settings count as disabled."""
        try:
            enabled, found = self._settings.get_bool(user_id, AI_ENABLED)
        except DiaryIndexError as e:
            self._log.warning("Settings unavailable for user %s, skipping build: %s", user_id, e)
            return False
        return found and enabled

    def _launch(self, user_id: str, ctx: BuildContext) -> Optional[Future]:
        """Submit a build for a user whose slot is already held."""
        try:
            return self._executor.submit(self._run, user_id, ctx)
        except RuntimeError as e:
            # Executor already shut down
            self._slots.release(user_id)
            self._log.warning("Vector build for user %s not started: %s", user_id, e)
            return None

    def _run(self, user_id: str, ctx: BuildContext) -> Optional[BuildResult]:
        """Worker body: run passes until no rerun is pending, then free the slot."""
        released = False
        try:
            while True:
                self._log.info("Vector build started for user %s", user_id)
                result = self._run_pass(user_id, ctx)
                if not self._slots.release_or_continue(user_id):
                    released = True
                    return result
                if self._is_stopping():
                    self._log.debug("Scheduler stopping; rerun for user %s dropped", user_id)
                    return result
                self._log.debug("Entries changed during build for user %s; running again", user_id)
                ctx = BuildContext(self._timeout)
        finally:
            if not released:
                self._slots.release(user_id)

    def _run_pass(self, user_id: str, ctx: BuildContext) -> Optional[BuildResult]:
        self._track(user_id, ctx)
        try:
            result = self._builder.build_incremental(ctx, user_id)
        except DiaryIndexError as e:
            self._log.error(
                "Vector build failed for user %s after %.2fs: %s",
                user_id, ctx.elapsed(), e,
                extra={"user_id": user_id, "elapsed": round(ctx.elapsed(), 3)},
            )
            return None
        except Exception:
            self._log.exception("Unexpected error in vector build for user %s", user_id)
            return None
        finally:
            self._untrack(user_id)
        self._report(user_id, "incremental", result, ctx)
        return result

    def _report(self, user_id: str, kind: str, result: BuildResult, ctx: BuildContext) -> None:
        elapsed = ctx.elapsed()
        self._log.info(
            "Vector build (%s) completed for user %s in %.2fs: "
            "requested=%d success=%d failed=%d skipped=%d removed=%d",
            kind, user_id, elapsed,
            result.requested, result.success, result.failed, result.skipped, result.removed,
            extra={
                "user_id": user_id,
                "build_kind": kind,
                "requested": result.requested,
                "success": result.success,
                "failed": result.failed,
                "skipped": result.skipped,
                "removed": result.removed,
                "cancelled": result.cancelled,
                "elapsed": round(elapsed, 3),
            },
        )
        for failure in result.errors:
            if not failure.cancelled:
                self._log.warning("Entry %s of user %s not indexed: %s",
                                  failure.entry_id, user_id, failure.cause)
        if result.cancelled:
            self._log.warning("%d entries of user %s not indexed: %s",
                              result.cancelled, user_id, ctx.reason())

    def _is_stopping(self) -> bool:
        with self._contexts_lock:
            return self._stopping

    def _track(self, user_id: str, ctx: BuildContext) -> None:
        with self._contexts_lock:
            if self._stopping:
                ctx.cancel()
            self._contexts[user_id] = ctx

    def _untrack(self, user_id: str) -> None:
        with self._contexts_lock:
            self._contexts.pop(user_id, None)
