"""
Child process execution with live output capture.

stdout and stderr are read by two pump threads into one queue. The calling
thread drains the queue and hands each line to a callback as soon as it
arrives, so progress is visible while the program is still running.
"""

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from core.errors import ExecutionError

logger = logging.getLogger(__name__)

_EOF = object()


def _pump(stream, lines: queue.Queue) -> None:
    """Forward lines from one pipe into the shared queue."""
    try:
        for line in iter(stream.readline, ""):
            lines.put(line.rstrip("\r\n"))
    except ValueError:
        # Pipe closed underneath us during a forced kill
        pass
    finally:
        stream.close()
        lines.put(_EOF)


class ProcessRunner:
    """
    Runs provisioning commands as child processes.

    Live processes are tracked per job so shutdown can terminate them.

    Usage:
        runner = ProcessRunner()
        rc = runner.run(job_id, ["pulumi", "up", "--yes"], cwd, env, on_line=print)
        runner.terminate_all(grace_period=30)
    """

    def __init__(self):
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once terminate_all has run; no new children are started."""
        return self._closed

    def _spawn(
        self,
        job_id: str,
        args: Sequence[str],
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]],
    ) -> subprocess.Popen:
        with self._lock:
            if self._closed:
                raise ExecutionError(f"not starting {args[0]}: shutting down")
            try:
                process = subprocess.Popen(
                    list(args),
                    cwd=str(cwd),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as e:
                raise ExecutionError(f"failed to start {args[0]}: {e}") from e
            self._processes[job_id] = process
        logger.debug(
            f"[{job_id}] Started {args[0]} (pid {process.pid})",
            extra={"job_id": job_id},
        )
        return process

    def _release(self, job_id: str, process: subprocess.Popen) -> None:
        with self._lock:
            if self._processes.get(job_id) is process:
                del self._processes[job_id]

    def run(
        self,
        job_id: str,
        args: Sequence[str],
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]],
        on_line: Callable[[str], None],
    ) -> int:
        """
        Run a command, streaming combined output line by line.

        If on_line raises, the child is killed and the exception propagates.

        Returns:
            The process exit code

        Raises:
            ExecutionError: the program could not be started
        """
        process = self._spawn(job_id, args, cwd, env)
        lines: queue.Queue = queue.Queue()
        pumps = [
            threading.Thread(target=_pump, args=(process.stdout, lines), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, lines), daemon=True),
        ]
        for pump in pumps:
            pump.start()

        try:
            open_streams = len(pumps)
            while open_streams:
                item = lines.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                on_line(item)
            return process.wait()
        except BaseException:
            self._kill(process)
            raise
        finally:
            for pump in pumps:
                pump.join(timeout=5)
            self._release(job_id, process)

    def capture(
        self,
        job_id: str,
        args: Sequence[str],
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]],
    ) -> Tuple[int, str, str]:
        """
        Run a command and collect its output without streaming it.

        Used for commands whose output may contain secrets.

        Returns:
            (exit code, stdout, stderr)
        """
        process = self._spawn(job_id, args, cwd, env)
        try:
            stdout, stderr = process.communicate()
        except BaseException:
            self._kill(process)
            raise
        finally:
            self._release(job_id, process)
        return process.returncode, stdout, stderr

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            process = self._processes.get(job_id)
        return process is not None and process.poll() is None

    def terminate_all(self, grace_period: float) -> List[str]:
        """
        Ask every live child to exit, then force-kill stragglers.

        The runner is closed first, so a program between commands cannot
        start another child afterwards.

        Returns:
            Job ids whose child process was signalled
        """
        with self._lock:
            self._closed = True
            targets = list(self._processes.items())

        signalled = []
        for job_id, process in targets:
            if process.poll() is None:
                logger.warning(
                    f"[{job_id}] Sending SIGTERM to pid {process.pid}",
                    extra={"job_id": job_id},
                )
                self._signal(process, signal.SIGTERM)
                signalled.append(job_id)

        deadline = time.monotonic() + max(grace_period, 0)
        for job_id, process in targets:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.error(
                    f"[{job_id}] pid {process.pid} ignored SIGTERM, killing",
                    extra={"job_id": job_id},
                )
                self._kill(process)

        return signalled

    def _signal(self, process: subprocess.Popen, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _kill(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"pid {process.pid} did not exit after SIGKILL")
