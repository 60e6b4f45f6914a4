import os
import signal
import subprocess
import sys
import threading

import pytest

from mongodbinmemory import watchdog

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX only")


def _sleeper() -> subprocess.Popen:
    return subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def test_kills_child_when_owner_is_gone():
    child = _sleeper()
    try:
        assert watchdog.watch(_dead_pid(), child.pid, interval=0.01) == 0
        assert child.wait(timeout=5) == -signal.SIGKILL
    finally:
        if child.poll() is None:
            child.kill()
            child.wait()


def test_exits_when_child_is_gone():
    assert watchdog.watch(os.getpid(), _dead_pid(), interval=0.01) == 0


def test_leaves_child_alone_while_owner_lives():
    child = _sleeper()
    result = []
    t = threading.Thread(target=lambda: result.append(watchdog.watch(os.getpid(), child.pid, interval=0.01)))
    t.start()
    try:
        t.join(timeout=0.5)
        assert t.is_alive()
        assert child.poll() is None
    finally:
        child.kill()
        child.wait()
        t.join(timeout=5)
    assert result == [0]


def test_main_parses_pids():
    child = _sleeper()
    try:
        assert watchdog.main([str(_dead_pid()), str(child.pid), "--interval", "0.01"]) == 0
        assert child.wait(timeout=5) == -signal.SIGKILL
    finally:
        if child.poll() is None:
            child.kill()
            child.wait()
        signal.signal(signal.SIGINT, signal.default_int_handler)
