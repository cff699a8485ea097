"""
Outbound HTTP client for WEBHOOK actions.
"""

import asyncio
import httpx
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..rules.models import WebhookMethod, WebhookResult


MAX_RESPONSE_CHARS = 2000


@dataclass
class WebhookRequest:
    """One webhook call produced by a rule firing."""
    url: str
    method: WebhookMethod = WebhookMethod.POST
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None


class WebhookClient:
    """Issues webhook calls with a bounded timeout; never raises for call failures."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.timeout = timeout
        self.transport = transport
        self.metrics = metrics
        self.logger = get_logger("rules.webhook_client")

    async def call(self, request: WebhookRequest) -> WebhookResult:
        """Perform one call and describe its outcome."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if request.method == WebhookMethod.GET:
                    response = await client.get(request.url, headers=request.headers)
                else:
                    response = await client.post(request.url, headers=request.headers, content=request.body)

            success = 200 <= response.status_code < 300
            result = WebhookResult(
                url=request.url,
                method=request.method,
                status_code=response.status_code,
                response=response.text[:MAX_RESPONSE_CHARS],
                success=success
            )
            if not success:
                self.logger.warning(
                    "Webhook returned non-2xx status",
                    url=request.url,
                    status_code=response.status_code
                )

        except httpx.TimeoutException as e:
            self.logger.warning("Webhook timed out", url=request.url, timeout=self.timeout)
            result = _failed(request, f"Timeout after {self.timeout}s: {e}")
        except httpx.RequestError as e:
            self.logger.warning("Webhook request failed", url=request.url, error=str(e))
            result = _failed(request, str(e) or e.__class__.__name__)

        self._record(result)
        return result

    def _record(self, result: WebhookResult) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(
                "webhook_calls_total",
                outcome="success" if result.success else "failure"
            )


def _failed(request: WebhookRequest, message: str) -> WebhookResult:
    return WebhookResult(
        url=request.url,
        method=request.method,
        status_code=0,
        response=message,
        success=False
    )


class WebhookDispatcher:
    """Dispatches webhook calls concurrently for one execution and joins them in order."""

    def __init__(self, client: WebhookClient, max_concurrency: int = 10):
        self.client = client
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._pending: List[Tuple[WebhookRequest, asyncio.Task]] = []

    def dispatch(self, request: WebhookRequest) -> None:
        task = asyncio.get_running_loop().create_task(self._bounded_call(request))
        self._pending.append((request, task))

    async def _bounded_call(self, request: WebhookRequest) -> WebhookResult:
        async with self._semaphore:
            return await self.client.call(request)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def join(self, timeout: Optional[float] = None) -> List[WebhookResult]:
        """Wait for every dispatched call; results follow dispatch order.

        Calls still running when ``timeout`` elapses are cancelled and
        reported as failed.
        """
        if not self._pending:
            return []

        tasks = [task for _, task in self._pending]
        if timeout is None or timeout > 0:
            await asyncio.wait(tasks, timeout=timeout)

        results = []
        cancelled = []
        for request, task in self._pending:
            if not task.done():
                task.cancel()
                cancelled.append(task)
                results.append(_failed(request, "Cancelled: execution deadline reached"))
            elif task.cancelled():
                results.append(_failed(request, "Cancelled"))
            elif task.exception() is not None:
                results.append(_failed(request, str(task.exception())))
            else:
                results.append(task.result())
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        self._pending = []
        return results
