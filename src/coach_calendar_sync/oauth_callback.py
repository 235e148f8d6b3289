"""
One-shot local HTTP listener for the OAuth redirect.
"""

import asyncio
import logging
from collections.abc import Callable
from http import HTTPStatus
from urllib.parse import parse_qsl
from urllib.parse import urlsplit

from coach_calendar_sync.models import AuthFlowError

logger = logging.getLogger(__name__)

# Same bounds http.client applies to a response head.
_MAX_LINE = 65536
_MAX_HEADERS = 100

_DONE_PAGE = (
    "<!doctype html><html><body>"
    "<p>Authorization received. You can close this window.</p>"
    "</body></html>"
)


def _http_response(status: HTTPStatus, body: str) -> bytes:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status.value} {status.phrase}\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + payload


async def _read_request_target(reader: asyncio.StreamReader) -> str | None:
    """Return the request-target of an HTTP/1.x request and drain its headers.

    Raises ValueError for a line longer than the reader's limit or too many
    header lines.
    """
    request_line = await reader.readline()
    if not request_line:
        return None
    for _ in range(_MAX_HEADERS + 1):
        line = await reader.readline()
        if line in (b"\r\n", b"\n", b""):
            break
    else:
        raise ValueError(f"more than {_MAX_HEADERS} header lines")
    parts = request_line.decode("latin-1").split()
    return parts[1] if len(parts) >= 2 else "/"


async def wait_for_callback(
    redirect_uri: str,
    timeout: float | None,
    on_listening: Callable[[], object] | None = None,
) -> dict[str, str]:
    """Serve ``redirect_uri`` until the first matching request arrives.

    Returns that request's query parameters. Requests to other paths get a
    404 and are otherwise ignored. The listener is always closed before this
    returns or raises; ``timeout`` of None waits indefinitely.
    """
    target = urlsplit(redirect_uri)
    host = target.hostname or "127.0.0.1"
    port = target.port or 80
    path = target.path or "/"

    loop = asyncio.get_running_loop()
    received: asyncio.Future[dict[str, str]] = loop.create_future()
    # Browsers may hold speculative idle connections open; these are closed
    # explicitly so shutting the server down never waits on them.
    open_writers: set[asyncio.StreamWriter] = set()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        open_writers.add(writer)
        try:
            try:
                request_target = await _read_request_target(reader)
            except ValueError as e:
                logger.debug(f"Rejected malformed OAuth redirect request: {e}")
                writer.write(_http_response(HTTPStatus.BAD_REQUEST, "Bad request"))
                await writer.drain()
                return
            if request_target is None:
                return
            url = urlsplit(request_target)
            if url.path != path or received.done():
                writer.write(_http_response(HTTPStatus.NOT_FOUND, "Not found"))
            else:
                writer.write(_http_response(HTTPStatus.OK, _DONE_PAGE))
                received.set_result(dict(parse_qsl(url.query)))
            await writer.drain()
        except ConnectionError as e:
            logger.debug(f"OAuth redirect connection dropped: {e}")
        finally:
            open_writers.discard(writer)
            writer.close()

    try:
        server = await asyncio.start_server(handle, host, port, limit=_MAX_LINE)
    except OSError as e:
        raise AuthFlowError(f"Cannot listen for the OAuth redirect on {host}:{port}: {e}") from e

    logger.debug(f"Waiting for OAuth redirect on {host}:{port}{path}")
    try:
        if on_listening is not None:
            on_listening()
        return await asyncio.wait_for(received, timeout)
    except TimeoutError:
        raise AuthFlowError("Authorization timed out waiting for the browser redirect") from None
    finally:
        server.close()
        for writer in list(open_writers):
            writer.close()
        await server.wait_closed()
