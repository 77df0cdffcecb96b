"""
Process discovery and signalling for session control.

Matching is heuristic: a command-line substring match can find zero, one or
several unrelated processes. Callers only ever signal, never assume success.
"""

import logging
import os
import signal
from typing import Iterable, Protocol

import psutil

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = "claude"


class ProcessMatcher(Protocol):
    def find_processes(self) -> list[int]:
        ...

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        ...


def _signal_with_psutil(pid: int, sig: signal.Signals) -> bool:
    try:
        psutil.Process(pid).send_signal(sig)
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied, ProcessLookupError, PermissionError) as e:
        logger.warning(f"Failed to signal process {pid} with {sig.name}: {e}")
        return False


class PsutilProcessMatcher:
    """Finds processes whose name or command line contains ``pattern``."""

    def __init__(self, pattern: str = DEFAULT_PATTERN):
        self.pattern = pattern.lower()

    def _excluded(self) -> set[int]:
        excluded = {os.getpid()}
        try:
            excluded.add(os.getppid())
        except OSError:
            pass
        return excluded

    def find_processes(self) -> list[int]:
        excluded = self._excluded()
        pids = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                info = proc.info
                if info["pid"] in excluded:
                    continue
                name = (info.get("name") or "").lower()
                cmdline = " ".join(info.get("cmdline") or []).lower()
                if self.pattern in name or self.pattern in cmdline:
                    pids.append(info["pid"])
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        return _signal_with_psutil(pid, sig)


class NullProcessMatcher:
    """Matches nothing. For sandboxed deployments without process access."""

    def find_processes(self) -> list[int]:
        return []

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        return False


class AllowListProcessMatcher:
    """Only ever reports and signals an explicit set of live pids."""

    def __init__(self, pids: Iterable[int]):
        self.pids = set(pids)

    def find_processes(self) -> list[int]:
        return sorted(pid for pid in self.pids if psutil.pid_exists(pid))

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        if pid not in self.pids:
            logger.warning(f"Refusing to signal pid {pid}: not in allow-list")
            return False
        return _signal_with_psutil(pid, sig)
