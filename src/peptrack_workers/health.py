"""Health endpoint for container healthchecks.

A bare asyncio.start_server: GET /health answers 200 when the database
responds to SELECT 1 within 2s and 503 otherwise. The body carries the
registered projections and the metrics snapshot.
"""

import asyncio
import json
import logging

import psycopg

from .metrics import get_metrics
from .registry import get_projection_metadata

logger = logging.getLogger(__name__)

_STATUS_LINES = {
    200: "HTTP/1.1 200 OK",
    404: "HTTP/1.1 404 Not Found",
    503: "HTTP/1.1 503 Service Unavailable",
}


async def _check_db(db_url: str) -> str:
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
    except (psycopg.Error, OSError, TimeoutError):
        return "error"
    return "ok"


def health_body(db_status: str) -> tuple[bool, str]:
    """Return (healthy, JSON body) for a DB status."""
    metrics = get_metrics()
    healthy = db_status == "ok"
    body = json.dumps({
        "status": "ok" if healthy else "degraded",
        "db": db_status,
        "uptime_seconds": metrics["uptime_seconds"],
        "projections": sorted(get_projection_metadata()),
        "metrics": metrics,
    })
    return healthy, body


def _http_response(status: int, body: str) -> bytes:
    return (
        f"{_STATUS_LINES[status]}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n\r\n{body}"
    ).encode()


async def _route(request_line: str, db_url: str) -> bytes:
    # "GET /health HTTP/1.1"
    parts = request_line.split()
    path = parts[1] if len(parts) >= 2 else "/"
    if path != "/health":
        return _http_response(404, json.dumps({"error": "not_found"}))
    healthy, body = health_body(await _check_db(db_url))
    return _http_response(200 if healthy else 503, body)


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=5)
            writer.write(await _route(raw.decode("utf-8", errors="replace").strip(), db_url))
            await writer.drain()
        except Exception:
            logger.debug("Health request failed", exc_info=True)
        finally:
            writer.close()
            await writer.wait_closed()

    server = await asyncio.start_server(handle, "0.0.0.0", port)
    logger.info("Health endpoint on port %d", port)
    return server
