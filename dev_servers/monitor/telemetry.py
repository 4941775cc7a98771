"""Turn raw CDP events into one-line browser log messages.

Only events that usually change a debugging decision are kept: console output,
uncaught exceptions, failed or error-status requests, navigations and loads.
Everything else maps to ``None`` and never reaches the session log.
"""

from __future__ import annotations

from typing import Any


def _str(x: Any, *, max_len: int = 500) -> str:
    try:
        s = str(x)
    except Exception:  # noqa: BLE001
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def _remote_obj_to_str(obj: Any) -> str:
    """Best-effort conversion of CDP RemoteObject to short string."""
    if not isinstance(obj, dict):
        return _str(obj)
    for k in ("value", "unserializableValue", "description"):
        if k in obj and obj.get(k) is not None:
            return _str(obj.get(k))
    typ = obj.get("type")
    subtype = obj.get("subtype")
    return _str(f"<{typ}{('/' + subtype) if subtype else ''}>")


def _location(url: Any, line: Any, col: Any) -> str:
    if not isinstance(url, str) or not url:
        return ""
    loc = url
    if isinstance(line, int):
        # CDP line/column numbers are zero-based.
        loc += f":{line + 1}"
        if isinstance(col, int):
            loc += f":{col + 1}"
    return loc


def _stack_top(params: dict[str, Any]) -> str:
    st = params.get("stackTrace")
    if not isinstance(st, dict):
        return ""
    frames = st.get("callFrames")
    if not isinstance(frames, list) or not frames or not isinstance(frames[0], dict):
        return ""
    f0 = frames[0]
    return _location(f0.get("url"), f0.get("lineNumber"), f0.get("columnNumber"))


def _console(params: dict[str, Any]) -> str:
    level = str(params.get("type") or "log").upper()
    args = params.get("args")
    text = " ".join(_remote_obj_to_str(a) for a in args) if isinstance(args, list) else ""
    msg = f"[CONSOLE {level}] {_str(text, max_len=2000)}"
    if level in {"ERROR", "WARNING", "ASSERT"} and (where := _stack_top(params)):
        msg += f" ({where})"
    return msg


def _exception(params: dict[str, Any]) -> str:
    details = params.get("exceptionDetails")
    if not isinstance(details, dict):
        details = {}
    msg = details.get("text") or "Uncaught exception"
    exception = details.get("exception")
    if isinstance(exception, dict):
        msg = exception.get("description") or exception.get("value") or msg
    out = f"[RUNTIME ERROR] {_str(msg, max_len=2000)}"
    where = _location(details.get("url"), details.get("lineNumber"), details.get("columnNumber"))
    if where:
        out += f" at {where}"
    return out


def _browser_log(params: dict[str, Any]) -> str | None:
    entry = params.get("entry")
    if not isinstance(entry, dict):
        return None
    level = str(entry.get("level") or "info").upper()
    text = _str(entry.get("text") or "", max_len=2000)
    url = entry.get("url")
    suffix = f" ({url})" if isinstance(url, str) and url else ""
    return f"[BROWSER LOG {level}] {text}{suffix}"


class EventFormatter:
    """Stateful formatter: remembers request metadata to label later responses."""

    def __init__(self, max_requests: int = 2000) -> None:
        self._requests: dict[str, dict[str, Any]] = {}
        self._max_requests = max_requests

    def _remember(self, request_id: str, meta: dict[str, Any]) -> None:
        self._requests[request_id] = meta
        if len(self._requests) > self._max_requests:
            # Drop the oldest entry; dicts keep insertion order.
            self._requests.pop(next(iter(self._requests)))

    def describe(self, event: dict[str, Any]) -> str | None:
        method = event.get("method")
        params = event.get("params")
        if not isinstance(method, str):
            return None
        if not isinstance(params, dict):
            params = {}

        if method == "Runtime.consoleAPICalled":
            return _console(params)
        if method == "Runtime.exceptionThrown":
            return _exception(params)
        if method == "Log.entryAdded":
            return _browser_log(params)

        if method == "Network.requestWillBeSent":
            req = params.get("request")
            request_id = params.get("requestId")
            if not isinstance(req, dict):
                return None
            verb = req.get("method") if isinstance(req.get("method"), str) else "GET"
            url = _str(req.get("url") or "", max_len=2000)
            if isinstance(request_id, str):
                self._remember(request_id, {"method": verb, "url": url})
            return f"[NETWORK REQUEST] {verb} {url}"

        if method == "Network.responseReceived":
            resp = params.get("response")
            if not isinstance(resp, dict):
                return None
            try:
                status = int(resp.get("status"))
            except (TypeError, ValueError):
                return None
            if status < 400:
                return None
            meta = self._requests.get(str(params.get("requestId") or ""), {})
            verb = meta.get("method", "")
            url = resp.get("url") or meta.get("url", "")
            label = f"{verb} {url}".strip()
            return f"[NETWORK RESPONSE] {status} {label}"

        if method == "Network.loadingFailed":
            request_id = str(params.get("requestId") or "")
            meta = self._requests.pop(request_id, {})
            error = _str(params.get("errorText") or "request failed")
            label = f"{meta.get('method', '')} {meta.get('url', '')}".strip()
            if params.get("canceled") is True:
                return None
            return f"[NETWORK ERROR] {error} {label}".rstrip()

        if method == "Network.loadingFinished":
            self._requests.pop(str(params.get("requestId") or ""), None)
            return None

        if method == "Page.frameNavigated":
            frame = params.get("frame")
            if isinstance(frame, dict) and not frame.get("parentId"):
                return f"[NAVIGATION] {_str(frame.get('url') or '', max_len=2000)}"
            return None

        if method == "Page.loadEventFired":
            return "[PAGE] Load complete"

        if method == "Page.javascriptDialogOpening":
            kind = params.get("type") or "dialog"
            return f"[DIALOG] {kind}: {_str(params.get('message') or '')}"

        return None


__all__ = ["EventFormatter"]
