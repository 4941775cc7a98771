from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
import signal
import socket

_LOGGER = logging.getLogger("dev.monitor.ports")


_LOOPBACKS = ((socket.AF_INET, "127.0.0.1"), (socket.AF_INET6, "::1"))
_WILDCARDS = ((socket.AF_INET, "0.0.0.0"), (socket.AF_INET6, "::"))


def _accepts(family: int, host: str, port: int, timeout: float) -> bool:
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            return sock.connect_ex((host, port)) == 0
    except OSError:
        return False


def _bind_refused(family: int, host: str, port: int) -> bool:
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError:
        # Address family not available on this host.
        return False
    with sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            return exc.errno == errno.EADDRINUSE
    return False


def port_in_use(port: int, timeout: float = 0.2) -> bool:
    """Return True if anything listens on ``port``, on any address family.

    Loopback connects catch servers bound to ``localhost`` only (Node often
    binds ``::1`` alone); wildcard binds catch listeners on other interfaces.
    """
    port = int(port)
    if any(_accepts(family, host, port, timeout) for family, host in _LOOPBACKS):
        return True
    return any(_bind_refused(family, host, port) for family, host in _WILDCARDS)


def find_free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


async def listening_pids(port: int) -> list[int]:
    """PIDs bound to ``port`` according to lsof (empty when lsof is unavailable)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "lsof",
            "-ti",
            f":{int(port)}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        _LOGGER.debug("lsof_unavailable port=%s error=%s", port, exc)
        return []
    out, _ = await proc.communicate()
    pids: list[int] = []
    for raw in out.decode(errors="replace").split():
        with contextlib.suppress(ValueError):
            pid = int(raw)
            if pid != os.getpid() and pid not in pids:
                pids.append(pid)
    return pids


async def release_port(port: int, name: str = "process") -> bool:
    """Kill whatever is bound to ``port``. Returns True if anything was killed."""
    killed = False
    for pid in await listening_pids(port):
        try:
            os.kill(pid, signal.SIGKILL)
            killed = True
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            _LOGGER.warning("Could not kill %s on port %s (pid %s): %s", name, port, pid, exc)
    if killed:
        _LOGGER.info("Killed %s on port %s", name, port)
    return killed


__all__ = ["find_free_port", "listening_pids", "port_in_use", "release_port"]
