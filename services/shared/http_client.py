"""
httpx client that forwards the current trace id to outbound calls.

    async with traced_client(timeout=10.0) as client:
        resp = await client.post(url, json=payload)
"""

import httpx
from contextlib import asynccontextmanager
from typing import AsyncIterator

from services.shared.logging import trace_id_var


class TraceTransport(httpx.AsyncHTTPTransport):
    """Adds X-Trace-ID from the request-scoped ContextVar."""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        trace_id = trace_id_var.get("")
        if trace_id:
            request.headers["X-Trace-ID"] = trace_id
        return await super().handle_async_request(request)


@asynccontextmanager
async def traced_client(
    timeout: float = 10.0,
    **kwargs,
) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=TraceTransport(),
        timeout=timeout,
        **kwargs,
    ) as client:
        yield client
