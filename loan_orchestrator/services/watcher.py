"""Settlement watcher - turns signing-request resolution into exactly-once callbacks

Two producers feed the same subscription: push events (signing platform
webhooks, via ``notify``) and polling (``poll_status`` and the background
poll task). Whichever observes a terminal status first fires the callback;
the subscription is torn down before the callback runs, so the other
producer finds nothing to deliver. Anything that still reaches the state
machine twice is stopped there by its state check.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from loan_orchestrator.config import settings
from loan_orchestrator.domain.exceptions import DownstreamError
from loan_orchestrator.domain.models import RequestState, RequestStatus

logger = logging.getLogger(__name__)

StatusSource = Callable[[str], Awaitable[RequestStatus]]
Callback = Callable[[RequestStatus], Awaitable[object]]


class SubscriptionHandle:
    """Live interest in one request on behalf of one context (a loan)"""

    def __init__(
        self,
        watcher: "SettlementWatcher",
        request_id: str,
        context: str,
        on_confirmed: Callback,
        on_rejected: Callback,
    ):
        self.request_id = request_id
        self.context = context
        self.on_confirmed = on_confirmed
        self.on_rejected = on_rejected
        self.fired = False
        self.cancelled = False
        self._watcher = watcher
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self.fired and not self.cancelled

    def cancel(self) -> None:
        if not self.active:
            return
        self.cancelled = True
        self._watcher._detach(self)

    def __repr__(self) -> str:
        return f"SubscriptionHandle(request_id={self.request_id!r}, context={self.context!r}, active={self.active})"


class SettlementWatcher:
    """Tracks pending lock and payment requests until they resolve"""

    def __init__(
        self,
        status_source: StatusSource,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            status_source: Fetches the current status of a request (gateway)
            poll_interval: Seconds between background polls; 0 disables the poll task
            timeout: Seconds after which an unresolved subscription is dropped
        """
        self._status_source = status_source
        self.poll_interval = settings.watcher_poll_interval_seconds if poll_interval is None else poll_interval
        self.timeout = settings.watcher_timeout_seconds if timeout is None else timeout
        self._by_context: Dict[str, SubscriptionHandle] = {}
        self._by_request: Dict[str, SubscriptionHandle] = {}

    def subscribe(
        self,
        request_id: str,
        context: str,
        on_confirmed: Callback,
        on_rejected: Callback,
    ) -> SubscriptionHandle:
        """Watch a request; replaces any earlier subscription for the same context"""
        prior = self._by_context.get(context)
        if prior is not None:
            logger.info(
                "Replacing subscription",
                extra={"context": context, "old_request_id": prior.request_id, "request_id": request_id},
            )
            prior.cancel()
        stale = self._by_request.get(request_id)
        if stale is not None:
            stale.cancel()

        handle = SubscriptionHandle(self, request_id, context, on_confirmed, on_rejected)
        self._by_context[context] = handle
        self._by_request[request_id] = handle

        if self.poll_interval > 0:
            handle._task = asyncio.create_task(self._poll_loop(handle), name=f"watch-{request_id}")
        logger.info("Subscribed to request", extra={"context": context, "request_id": request_id})
        return handle

    def get(self, context: str) -> Optional[SubscriptionHandle]:
        return self._by_context.get(context)

    @property
    def subscriptions(self) -> List[SubscriptionHandle]:
        return list(self._by_context.values())

    async def poll_status(self, request_id: str) -> RequestStatus:
        """
        Ask the source for the request's status and deliver it if terminal.

        Safe to call any number of times, with or without a subscription.
        """
        status = await self._status_source(request_id)
        if status.is_terminal:
            await self._deliver(status)
        return status

    async def notify(self, status: RequestStatus) -> bool:
        """Push path. Returns True if this event fired a callback"""
        if not status.is_terminal:
            return False
        return await self._deliver(status)

    async def close(self) -> None:
        """Cancel every subscription and wait for poll tasks to stop"""
        handles = list(self._by_request.values())
        tasks = [h._task for h in handles if h._task is not None]
        for handle in handles:
            handle.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _detach(self, handle: SubscriptionHandle) -> None:
        if self._by_context.get(handle.context) is handle:
            del self._by_context[handle.context]
        if self._by_request.get(handle.request_id) is handle:
            del self._by_request[handle.request_id]
        task = handle._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _deliver(self, status: RequestStatus) -> bool:
        handle = self._by_request.get(status.request_id)
        if handle is None or not handle.active:
            return False

        # Tear down before the callback: no later event reaches this subscription
        handle.fired = True
        self._detach(handle)

        callback = handle.on_confirmed if status.state == RequestState.CONFIRMED else handle.on_rejected
        try:
            await callback(status)
        except Exception:
            logger.exception(
                "Subscription callback failed",
                extra={"context": handle.context, "request_id": status.request_id, "state": status.state.value},
            )
        return True

    async def _poll_loop(self, handle: SubscriptionHandle) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while handle.active:
            await asyncio.sleep(self.poll_interval)
            if not handle.active:
                return
            try:
                status = await self._status_source(handle.request_id)
            except DownstreamError as e:
                logger.warning(
                    "Status poll failed, will retry",
                    extra={"request_id": handle.request_id, "error": str(e)},
                )
                status = None
            except Exception:
                logger.exception("Unexpected error polling request status", extra={"request_id": handle.request_id})
                status = None

            if status is not None and status.is_terminal:
                await self._deliver(status)
                return
            if loop.time() >= deadline:
                logger.warning(
                    "Subscription timed out without resolution",
                    extra={"context": handle.context, "request_id": handle.request_id},
                )
                handle.cancel()
                return
