"""MCP server for the loop observatory.

Exposes the observatory REST endpoints as MCP tools so AI clients can check
which agent loops are running, how they ended, and what they did recently.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, quote
from urllib.request import Request, urlopen

from mcp.server.fastmcp import FastMCP

BASE_URL = os.environ.get("LOOP_OBSERVATORY_BASE_URL", "http://127.0.0.1:5050").rstrip("/")
REQUEST_TIMEOUT_SEC = float(os.environ.get("LOOP_OBSERVATORY_MCP_TIMEOUT_SEC", "10"))

mcp = FastMCP("loop-observatory")


def _build_url(path: str, params: dict[str, Any] | None = None) -> str:
    query = urlencode(params or {}, doseq=True)
    return f"{BASE_URL}{path}{'?' + query if query else ''}"


def _loop_path(loop_id: str, suffix: str = "") -> str:
    return f"/api/loops/{quote(loop_id, safe='')}{suffix}"


def _failure(error: str, details: str, status_code: Optional[int] = None, data: Any = None) -> dict[str, Any]:
    result: dict[str, Any] = {"ok": False, "base_url": BASE_URL, "error": error, "details": details}
    if status_code is not None:
        result["status_code"] = status_code
    if data is not None:
        result["data"] = data
    return result


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except ValueError:
        return None


def _request(method: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Call the observatory and wrap the outcome in an {ok, base_url, ...} envelope."""
    request = Request(url=_build_url(path, params), method=method)
    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SEC) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            body = response.read().decode(charset)
            status_code = int(response.status)
    except HTTPError as exc:
        try:
            details = exc.read().decode("utf-8", errors="replace")
        except OSError:
            details = ""
        # The observatory answers 404/400/503 with its own {ok, error} body.
        return _failure(f"HTTP error {exc.code}", details, status_code=int(exc.code), data=_parse_json(details))
    except URLError as exc:
        return _failure("Connection error", str(exc.reason))

    try:
        data = json.loads(body) if body else {}
    except json.JSONDecodeError as exc:
        return _failure("Invalid JSON response", str(exc), status_code=status_code)
    return {"ok": True, "base_url": BASE_URL, "status_code": status_code, "data": data}


def _http_get(path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return _request("GET", path, params)


def filter_loops(loops: dict[str, Any], health: Optional[str] = None, host: Optional[str] = None) -> dict[str, Any]:
    """Keep only loops matching the given health and/or host name."""
    selected = {}
    for loop_id, state in loops.items():
        if not isinstance(state, dict):
            continue
        if health and state.get("health") != health:
            continue
        if host and state.get("hostName") != host:
            continue
        selected[loop_id] = state
    return selected


@mcp.tool()
def observatory_ready() -> dict[str, Any]:
    """Return observatory readiness from /ready."""
    return _http_get("/ready")


@mcp.tool()
def observatory_status(health: Optional[str] = None, host: Optional[str] = None) -> dict[str, Any]:
    """Return tracked loops from /api/status, optionally filtered by health (running, completed, errored, stale) or host."""
    payload = _http_get("/api/status")
    if not payload.get("ok"):
        return payload

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    loops = data.get("loops") if isinstance(data.get("loops"), dict) else {}
    data["loops"] = filter_loops(loops, health=health, host=host)
    payload["data"] = data
    return payload


@mcp.tool()
def loop_events(loop_id: str, count: int = 100) -> dict[str, Any]:
    """Return the most recent buffered events for one loop using /api/loops/<loopId>/events."""
    return _http_get(_loop_path(loop_id, "/events"), {"count": count})


@mcp.tool()
def remove_loop(loop_id: str) -> dict[str, Any]:
    """Stop tracking one loop and delete its log file on the owning host (DELETE /api/loops/<loopId>)."""
    return _request("DELETE", _loop_path(loop_id))


if __name__ == "__main__":
    mcp.run()
