import time
from contextvars import ContextVar

from sqlalchemy import event
from starlette.types import ASGIApp, Message, Receive, Scope, Send

query_count_var: ContextVar[int] = ContextVar("query_count", default=0)


def install_query_counter(engine) -> None:
    """
    Count every SQL statement issued on *engine* against the current
    request's ``query_count_var``.

    A read served from the cache issues no statements, so the
    ``X-Query-Count`` header doubles as a quick cache-hit probe.  Call
    once per engine (production engine in ``database.py``, test engine
    in ``conftest.py``).
    """

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _count_query(conn, cursor, statement, parameters, context, executemany):
        query_count_var.set(query_count_var.get() + 1)


class TimingMiddleware:
    """
    Pure ASGI middleware adding ``X-Response-Time-Ms`` and
    ``X-Query-Count`` to every HTTP response.

    WebSocket scopes pass straight through; a socket lives for the whole
    session so per-request timing means nothing there.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        query_count_var.set(0)
        started = time.perf_counter()

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
                headers = list(message.get("headers", []))
                headers += [
                    (b"x-response-time-ms", str(elapsed_ms).encode()),
                    (b"x-query-count", str(query_count_var.get()).encode()),
                ]
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_headers)
