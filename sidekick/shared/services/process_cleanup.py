"""Best-effort cleanup for stale assistant CLI subprocesses.

A turn killed mid-flight by a crashed host can leave its
``claude --print --output-format stream-json`` child running with no
reader. Those orphans are found with ``ps`` and sent SIGTERM.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_MAX_ANCESTRY_HOPS = 32
_CANDIDATE_PATTERNS = (
    re.compile(r"\bclaude(?:\.exe|\.cmd)?\b.*--output-format\s+stream-json"),
)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid, ppid = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _descends_from(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    ancestor_pid: int,
) -> bool:
    cur = proc
    for _ in range(_MAX_ANCESTRY_HOPS):
        if cur.pid == ancestor_pid:
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
    return False


def is_assistant_cli_process(args: str) -> bool:
    return any(pattern.search(args) for pattern in _CANDIDATE_PATTERNS)


def cleanup_stale_runtime_processes(*, current_pid: int | None = None) -> int:
    """Kill orphaned assistant CLI processes; return how many were signalled.

    A process is reaped only when it matches the stream-json CLI
    signature, is orphaned (parent is PID 1 or gone), and is not part
    of the current process tree.
    """
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Could not list processes: %s", exc)
        return 0

    killed = 0
    for proc in table.values():
        if proc.pid == pid or not is_assistant_cli_process(proc.args):
            continue
        is_orphan = proc.ppid == 1 or proc.ppid not in table
        if not is_orphan or _descends_from(proc, table, pid):
            continue

        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except OSError as exc:
            logger.warning(
                "Failed to reap stale process pid=%d: %s: %s",
                proc.pid, type(exc).__name__, exc,
            )
            continue
        killed += 1
        logger.info(
            "Reaped stale CLI process pid=%d ppid=%d cmd=%s",
            proc.pid, proc.ppid, proc.args[:180],
        )
    return killed
