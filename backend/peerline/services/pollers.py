from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from peerline.core.config import settings
from peerline.core.errors import SignalingFetchError
from peerline.core.telemetry import log_event
from peerline.models.schemas import CallSnapshot, CallStatus
from peerline.services.session_store import CallSessionStore


Callback = Callable[..., Union[None, Awaitable[None]]]


async def _emit(callback: Optional[Callback], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


class _IntervalPoller(ABC):
    """Fixed-interval loop with a bounded, non-fatal failure count.

    A failed fetch is retried on the next tick. Once ``max_failures`` fetches
    in a row have failed, ``error`` is set and reported once; it stays set
    until a fetch succeeds again. Polling never stops because of it.
    """

    component = "poller"
    tick_action = "poll_tick"
    error_detail = "Failed to fetch call session"

    def __init__(
        self,
        *,
        interval: float,
        max_failures: Optional[int],
        on_error: Optional[Callback],
    ) -> None:
        self._interval = interval
        self._max_failures = max(1, max_failures if max_failures is not None else settings.SIGNALING_MAX_FETCH_FAILURES)
        self._on_error = on_error
        self._failures = 0
        self._task: Optional[asyncio.Task] = None
        self.error: Optional[SignalingFetchError] = None

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether there is anything to poll."""

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @abstractmethod
    async def poll_once(self) -> Any:
        """Run one tick."""

    async def _record_failure(self, exc: Exception, **context: Any) -> None:
        self._failures += 1
        log_event(
            self.component,
            "fetch_failed",
            status="warning",
            details={"error": f"{type(exc).__name__}: {exc}", "consecutive": self._failures, **context},
        )
        if self._failures >= self._max_failures and self.error is None:
            self.error = SignalingFetchError(self.error_detail)
            log_event(self.component, "fetch_error_surfaced", status="error", details=context)
            await _emit(self._on_error, self.error)

    async def _record_success(self) -> None:
        self._failures = 0
        if self.error is not None:
            self.error = None
            log_event(self.component, "fetch_recovered")
            await _emit(self._on_error, None)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                log_event(
                    self.component,
                    "poll_handler_error",
                    status="error",
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running or not self.enabled:
            return
        self._task = asyncio.ensure_future(self._run())
        log_event(self.component, "start", details={"interval_s": self._interval})

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        log_event(self.component, "stop")


class SignalingPoller(_IntervalPoller):
    """Poll one call's session snapshot and report edges.

    Status changes fire only when the status differs from the last one seen;
    offer and answer each fire once, when they first appear.
    """

    component = "signaling_poller"

    def __init__(
        self,
        store: CallSessionStore,
        *,
        call_id: Optional[str] = None,
        interval: Optional[float] = None,
        max_failures: Optional[int] = None,
        on_status: Optional[Callback] = None,
        on_offer: Optional[Callback] = None,
        on_answer: Optional[Callback] = None,
        on_missing: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
    ) -> None:
        super().__init__(
            interval=interval if interval is not None else settings.SIGNALING_POLL_INTERVAL_SECONDS,
            max_failures=max_failures,
            on_error=on_error,
        )
        self._store = store
        self._call_id = call_id or ""
        self._on_status = on_status
        self._on_offer = on_offer
        self._on_answer = on_answer
        self._on_missing = on_missing
        self._reset()

    def _reset(self) -> None:
        self._last_status: Optional[CallStatus] = None
        self._last_offer: Optional[str] = None
        self._last_answer: Optional[str] = None
        self._missing_reported = False
        self._failures = 0
        self.error = None

    @property
    def call_id(self) -> str:
        return self._call_id

    @property
    def enabled(self) -> bool:
        return bool(self._call_id)

    @property
    def last_status(self) -> Optional[CallStatus]:
        return self._last_status

    def set_call_id(self, call_id: Optional[str]) -> None:
        call_id = call_id or ""
        if call_id == self._call_id:
            return
        was_running = self.running
        self.stop()
        self._call_id = call_id
        self._reset()
        if was_running:
            self.start()

    async def poll_once(self) -> Optional[CallSnapshot]:
        if not self.enabled:
            return None
        call_id = self._call_id
        try:
            snapshot = await self._store.fetch_session(call_id)
        except Exception as exc:
            if call_id == self._call_id:
                await self._record_failure(exc, call_id=call_id)
            return None
        if call_id != self._call_id:
            return None
        await self._record_success()
        log_event(self.component, self.tick_action, call_id=call_id, details={"present": snapshot is not None})

        if snapshot is None:
            if not self._missing_reported:
                self._missing_reported = True
                log_event(self.component, "session_missing", status="warning", call_id=call_id)
                await _emit(self._on_missing, call_id)
            return None

        if snapshot.status != self._last_status:
            previous = self._last_status
            self._last_status = snapshot.status
            log_event(self.component, "status_changed", call_id=call_id, details={"from": previous, "to": snapshot.status})
            await _emit(self._on_status, snapshot)
        if snapshot.offer and self._last_offer is None:
            self._last_offer = snapshot.offer
            await _emit(self._on_offer, snapshot)
        if snapshot.answer and self._last_answer is None:
            self._last_answer = snapshot.answer
            log_event(self.component, "answer_available", call_id=call_id)
            await _emit(self._on_answer, snapshot)
        return snapshot


class IncomingCallWatcher(_IntervalPoller):
    """Poll the calls addressed to the local identity.

    Each call id is surfaced at most once for the lifetime of the watcher.
    Displayed prompts are dismissed as soon as their call turns ended/missed or
    drops off the pending list.
    """

    component = "incoming_watcher"
    tick_action = "incoming_poll_tick"
    error_detail = "Failed to check for incoming calls"

    def __init__(
        self,
        store: CallSessionStore,
        *,
        self_id: Optional[str] = None,
        interval: Optional[float] = None,
        max_failures: Optional[int] = None,
        on_incoming: Optional[Callback] = None,
        on_dismissed: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
    ) -> None:
        super().__init__(
            interval=interval if interval is not None else settings.INCOMING_POLL_INTERVAL_SECONDS,
            max_failures=max_failures,
            on_error=on_error,
        )
        self._store = store
        self._self_id = self_id or ""
        self._on_incoming = on_incoming
        self._on_dismissed = on_dismissed
        self._seen: Set[str] = set()
        self._prompts: "OrderedDict[str, CallSnapshot]" = OrderedDict()

    @property
    def enabled(self) -> bool:
        return bool(self._self_id)

    @property
    def self_id(self) -> str:
        return self._self_id

    @property
    def current(self) -> Optional[CallSnapshot]:
        for snapshot in self._prompts.values():
            return snapshot
        return None

    @property
    def prompts(self) -> List[CallSnapshot]:
        return list(self._prompts.values())

    def has_seen(self, call_id: str) -> bool:
        return call_id in self._seen

    def get(self, call_id: str) -> Optional[CallSnapshot]:
        return self._prompts.get(call_id)

    def set_identity(self, self_id: Optional[str]) -> None:
        self_id = self_id or ""
        if self_id == self._self_id:
            return
        was_running = self.running
        self.stop()
        self._self_id = self_id
        self._seen.clear()
        self._prompts.clear()
        self._failures = 0
        self.error = None
        if was_running:
            self.start()

    def dismiss(self, call_id: str) -> Optional[CallSnapshot]:
        """Drop a prompt after the user accepted or declined it."""
        self._seen.add(call_id)
        return self._prompts.pop(call_id, None)

    async def poll_once(self) -> List[CallSnapshot]:
        if not self.enabled:
            return []
        self_id = self._self_id
        try:
            calls = await self._store.list_pending_inbound_calls(self_id)
        except Exception as exc:
            if self_id == self._self_id:
                await self._record_failure(exc, peer_id=self_id)
            return []
        if self_id != self._self_id:
            return []
        await self._record_success()
        log_event(self.component, self.tick_action, peer_id=self_id, details={"pending": len(calls)})

        by_id: Dict[str, CallSnapshot] = {call.id: call for call in calls}
        for call_id in list(self._prompts):
            latest = by_id.get(call_id)
            if latest is None or latest.is_terminal:
                self._prompts.pop(call_id, None)
                reason = latest.status if latest is not None else "withdrawn"
                log_event(self.component, "auto_dismissed", call_id=call_id, details={"reason": reason})
                await _emit(self._on_dismissed, call_id, reason)
            else:
                self._prompts[call_id] = latest

        surfaced: List[CallSnapshot] = []
        for call in calls:
            if call.id in self._seen:
                continue
            self._seen.add(call.id)
            if call.is_terminal:
                continue
            self._prompts[call.id] = call
            surfaced.append(call)
            log_event(self.component, "incoming_call", call_id=call.id, peer_id=call.caller, details={"kind": call.kind})
            await _emit(self._on_incoming, call)
        return surfaced
