from __future__ import annotations

import json
import urllib.parse
from http.client import HTTPException
from urllib.error import HTTPError
from urllib.request import Request, urlopen

USER_AGENT = "dev-monitor/1.0"


class HttpClientError(Exception):
    pass


def probe(url: str, timeout: float = 2.0, method: str = "HEAD") -> int:
    """Issue a lightweight request and return the HTTP status.

    Error statuses are returned, not raised: a 404 still proves something is
    listening. Connection-level failures raise ``HttpClientError``.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    req = Request(url, method=method, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return int(resp.status)
    except HTTPError as exc:
        return int(exc.code)
    except (OSError, HTTPException) as exc:
        raise HttpClientError(str(exc)) from exc


def is_alive_status(status: int) -> bool:
    return 200 <= status < 400 or status == 404


def http_get_json(url: str, timeout: float = 2.0, method: str = "GET") -> object:
    """Fetch JSON from a local endpoint (CDP discovery)."""
    req = Request(url, method=method, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (OSError, HTTPException, ValueError) as exc:
        raise HttpClientError(str(exc)) from exc


__all__ = ["HttpClientError", "http_get_json", "is_alive_status", "probe"]
