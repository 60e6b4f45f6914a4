# Python MongoDB in-memory server for test suites
# - Downloads, verifies and caches a mongod binary for the host platform
# - Starts mongod with an ephemeral storage engine (or a single-member replica set)
# - Parses mongod's JSON logs to learn the bound port and forwards them to a Python logger callback
# - Starts a watchdog process so mongod can't outlive this process
#
# Requires Python 3.10+
from __future__ import annotations

import contextlib
import json
import logging
import os
import queue
import shutil
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Any, Callable, Optional, Union

import pymongo
from pymongo.errors import PyMongoError

from . import watchdog as _watchdog
from .download import Fetcher, OsReleaseReader, PlatformInfo, fetch, get_mongod
from .errors import (
    MongoDBInMemoryError,
    ReplicaSetError,
    StartupFailedError,
    StartupTimeoutError,
)

__all__ = [
    "Config",
    "DefaultConfig",
    "Server",
    "start",
    "start_server",
]

LOGGER = logging.getLogger(__name__)
MONGOD_LOGGER = logging.getLogger(__name__ + ".mongod")

# How long mongod gets to report that it is accepting connections
STARTUP_TIMEOUT_US = 5_000_000

_WAITING_FOR_CONNECTIONS = "Waiting for connections"
_FAILURE_SEVERITIES = frozenset({"E", "F"})
_KILL_WAIT_S = 10.0
_LOG_THREAD_JOIN_S = 2.0

# mongod severities: F(atal), E(rror), W(arning), I(nfo), D1-D5 (debug)
_PY_LOG_LEVELS = {
    "F": logging.CRITICAL,
    "E": logging.ERROR,
    "W": logging.WARNING,
    "I": logging.INFO,
}

_StartupEvent = Union[int, MongoDBInMemoryError]


@dataclass(slots=True)
class Config:
    # The port mongod should listen on. If 0, mongod chooses a free port.
    Port: int = 0
    # The name of the replica set to initiate, or "" to run a standalone server.
    ReplicaSet: str = ""
    # The data directory to use, or "" for a fresh temp directory. Removed when the server stops.
    DataDir: str = ""
    # How long to wait, in microseconds, for mongod to start accepting connections.
    StartupTimeoutUs: int = STARTUP_TIMEOUT_US
    # If set, this function is called for each log line printed by mongod.
    # timestamp can be None if the line could not be parsed
    Logger: Optional[Callable[[Optional[datetime], str, str], None]] = None


def _log_to_python_logger(ts: Optional[datetime], severity: str, msg: str) -> None:
    MONGOD_LOGGER.log(_PY_LOG_LEVELS.get(severity, logging.DEBUG), "%s", msg)


def DefaultConfig() -> Config:
    return Config(Logger=_log_to_python_logger)


def _parse_log_timestamp(record: dict[str, Any]) -> Optional[datetime]:
    t = record.get("t")
    if not isinstance(t, dict) or not isinstance(t.get("$date"), str):
        return None
    ts = t["$date"]
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(ts)
    except ValueError:
        return None


def _parse_log_record(line: str) -> Optional[tuple[Optional[datetime], str, str, dict[str, Any]]]:
    try:
        record = json.loads(line)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    severity = record.get("s")
    msg = record.get("msg")
    if not isinstance(severity, str) or not isinstance(msg, str):
        return None
    attr = record.get("attr")
    if not isinstance(attr, dict):
        attr = {}
    return _parse_log_timestamp(record), severity, msg, attr


def _forward(config: Config, ts: Optional[datetime], severity: str, msg: str) -> None:
    if not config.Logger:
        return
    try:
        config.Logger(ts, severity, msg)
    except Exception:
        LOGGER.exception("mongod log callback failed")


def _stream_mongod_logs(stdout: IO[str], signal_q: "queue.Queue[_StartupEvent]", config: Config) -> None:
    """Forward mongod's output to the Logger and publish the startup outcome once.

    Keeps reading until mongod closes its output, long after startup has been decided.
    """
    decided = False

    def _publish(event: _StartupEvent) -> None:
        nonlocal decided
        if not decided:
            decided = True
            signal_q.put(event)

    try:
        for raw in stdout:
            _handle_line(raw.rstrip("\n"), config, _publish)
    except ValueError:
        # stop() closed the pipe while mongod's output was still open
        if not stdout.closed:
            raise
        return

    _publish(StartupFailedError("mongod exited before accepting connections; check mongod logs for error"))


def _handle_line(line: str, config: Config, publish: Callable[[_StartupEvent], None]) -> None:
    if not line:
        return
    parsed = _parse_log_record(line)
    if parsed is None:
        _forward(config, None, "I", line)
        return

    ts, severity, msg, attr = parsed
    _forward(config, ts, severity, f"{msg} {json.dumps(attr)}" if attr else msg)

    if severity in _FAILURE_SEVERITIES:
        publish(StartupFailedError(msg))
    elif severity == "I" and msg == _WAITING_FOR_CONNECTIONS:
        port = attr.get("port")
        if isinstance(port, int) and not isinstance(port, bool):
            publish(port)
        else:
            publish(StartupFailedError(f"could not read port from log line: {line}"))


def _prepare_cmd_args(config: Config, data_dir: str) -> list[str]:
    args: list[str] = ["--bind_ip", "localhost", "--port", str(config.Port), "--dbpath", data_dir]
    if config.ReplicaSet:
        args += ["--storageEngine", "wiredTiger", "--replSet", config.ReplicaSet]
    else:
        args += ["--storageEngine", "ephemeralForTest"]
    return args


def _start_mongod_process(mongod_exec: str, args: list[str]) -> subprocess.Popen[str]:
    # stderr is folded into stdout so a single reader sees every line in order
    return subprocess.Popen(
        [mongod_exec] + args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        # mongod output is not guaranteed to be valid UTF-8
        encoding="utf-8",
        errors="replace",
    )


def _start_watchdog(child_pid: int) -> subprocess.Popen[bytes]:
    return subprocess.Popen(
        [sys.executable, os.path.abspath(_watchdog.__file__), str(os.getpid()), str(child_pid)],
        stdin=subprocess.DEVNULL,
        # Own session, so signals sent to our process group reach mongod before the watchdog
        start_new_session=True,
    )


def _wait_for_port(signal_q: "queue.Queue[_StartupEvent]", config: Config) -> int:
    timeout_s = config.StartupTimeoutUs / 1_000_000.0 if config.StartupTimeoutUs > 0 else STARTUP_TIMEOUT_US / 1_000_000.0
    try:
        event = signal_q.get(timeout=timeout_s)
    except queue.Empty:
        raise StartupTimeoutError(f"timeout ({timeout_s:.3f}s) waiting for mongod to accept connections") from None
    if isinstance(event, MongoDBInMemoryError):
        raise event
    return event


class Server:
    """A running mongod. Stop it with :meth:`stop` or use it as a context manager."""

    def __init__(self, data_dir: str, port: int, replica_set: Optional[str] = None) -> None:
        self._data_dir = data_dir
        self._port = port
        self._replica_set = replica_set
        self._process: Optional[subprocess.Popen[str]] = None
        self._watchdog: Optional[subprocess.Popen[bytes]] = None
        self._log_thread: Optional[threading.Thread] = None
        self._stop_lock = threading.Lock()
        self._stopped = False

    @property
    def port(self) -> int:
        return self._port

    @property
    def replica_set(self) -> Optional[str]:
        return self._replica_set

    @property
    def data_dir(self) -> str:
        return self._data_dir

    @property
    def uri(self) -> str:
        return f"mongodb://localhost:{self._port}"

    @property
    def process(self) -> Optional[subprocess.Popen[str]]:
        return self._process

    @property
    def watchdog(self) -> Optional[subprocess.Popen[bytes]]:
        return self._watchdog

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"Server(uri={self.uri!r}, replica_set={self._replica_set!r}, data_dir={self._data_dir!r})"

    def stop(self) -> None:
        """Kill mongod and the watchdog and remove the data directory.

        Safe to call more than once. Failures are logged, never raised.
        """
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

            proc, self._process = self._process, None
            if proc is not None:
                try:
                    proc.kill()
                    proc.wait(timeout=_KILL_WAIT_S)
                except (OSError, subprocess.TimeoutExpired) as e:
                    LOGGER.error("error stopping mongod process %d: %s", proc.pid, e)
                if self._log_thread is not None and self._log_thread is not threading.current_thread():
                    self._log_thread.join(timeout=_LOG_THREAD_JOIN_S)
                if proc.stdout is not None:
                    with contextlib.suppress(OSError):
                        proc.stdout.close()

            watchdog, self._watchdog = self._watchdog, None
            if watchdog is not None:
                try:
                    watchdog.kill()
                    watchdog.wait(timeout=_KILL_WAIT_S)
                except (OSError, subprocess.TimeoutExpired) as e:
                    LOGGER.error("error stopping watcher process %d: %s", watchdog.pid, e)

            try:
                shutil.rmtree(self._data_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                LOGGER.error("error removing data directory %s: %s", self._data_dir, e)


def _initiate_replica_set(server: Server) -> None:
    name = server.replica_set
    LOGGER.info("initiating replica set %s on %s", name, server.uri)
    client: pymongo.MongoClient[dict[str, Any]] = pymongo.MongoClient(server.uri, directConnection=True)
    try:
        client.admin.command(
            "replSetInitiate",
            {"_id": name, "members": [{"_id": 0, "host": f"localhost:{server.port}"}]},
        )
    except PyMongoError as e:
        raise ReplicaSetError(f"could not initiate replica set {name!r}: {e}") from e
    finally:
        client.close()


def start_server(config: Config, mongod_exec: Union[str, os.PathLike[str]]) -> Server:
    if not 0 <= config.Port <= 65535:
        raise MongoDBInMemoryError(f"Port must be between 0 and 65535, got {config.Port}")

    data_dir = config.DataDir or tempfile.mkdtemp(prefix="mongodb-in-memory-")
    server = Server(data_dir=data_dir, port=config.Port, replica_set=config.ReplicaSet or None)
    try:
        os.makedirs(data_dir, exist_ok=True)
        args = _prepare_cmd_args(config, data_dir)
        LOGGER.info("starting mongod server: %s %s", mongod_exec, " ".join(args))
        proc = _start_mongod_process(os.fspath(mongod_exec), args)
        server._process = proc

        assert proc.stdout is not None
        signal_q: "queue.Queue[_StartupEvent]" = queue.Queue()
        server._log_thread = threading.Thread(
            target=_stream_mongod_logs, args=(proc.stdout, signal_q, config), name="mongod-logs", daemon=True
        )
        server._log_thread.start()

        LOGGER.info("starting watcher for mongod pid %d", proc.pid)
        server._watchdog = _start_watchdog(proc.pid)

        server._port = _wait_for_port(signal_q, config)
        LOGGER.info("mongod accepting connections on port %d (data dir %s)", server.port, data_dir)

        if server.replica_set:
            _initiate_replica_set(server)
    except BaseException:
        server.stop()
        raise

    return server


def start(
    version: str,
    config: Optional[Config] = None,
    *,
    fetcher: Fetcher = fetch,
    platform_info: Optional[PlatformInfo] = None,
    os_release: Optional[OsReleaseReader] = None,
) -> Server:
    """Start a mongod of the given version ("x.y.z", 4.4 or later), downloading it if needed."""
    if config is None:
        config = DefaultConfig()
    mongod_exec = get_mongod(version, fetcher=fetcher, platform_info=platform_info, os_release=os_release)
    return start_server(config, mongod_exec)
