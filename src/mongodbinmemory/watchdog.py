"""Kill a mongod process once the process that started it has gone away.

Run as ``python -m mongodbinmemory.watchdog <owner-pid> <child-pid>``. Without
this, a mongod whose owner crashed would be re-parented to init and keep
running.
"""
from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from typing import Optional, Sequence

POLL_INTERVAL_S = 0.5


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else
        return True
    return True


def watch(owner_pid: int, child_pid: int, interval: float = POLL_INTERVAL_S) -> int:
    parent_pid = os.getppid()
    while True:
        if not _pid_alive(child_pid):
            return 0
        if os.getppid() != parent_pid or not _pid_alive(owner_pid):
            try:
                os.kill(child_pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            return 0
        time.sleep(interval)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m mongodbinmemory.watchdog", description=__doc__)
    parser.add_argument("owner_pid", type=int)
    parser.add_argument("child_pid", type=int)
    parser.add_argument("--interval", type=float, default=POLL_INTERVAL_S)
    args = parser.parse_args(argv)

    # Ctrl-C in the owner's terminal must not take the watchdog down before mongod
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    return watch(args.owner_pid, args.child_pid, args.interval)


if __name__ == "__main__":
    sys.exit(main())
