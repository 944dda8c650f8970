#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import os
import signal
import struct
import termios
from typing import AsyncIterator, Mapping, Optional, Sequence


DEFAULT_COLS = 120
DEFAULT_ROWS = 32
MIN_COLS = 20
MIN_ROWS = 4
READ_CHUNK = 4096


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _claim_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def clamp_geometry(cols: int, rows: int) -> tuple[int, int]:
    return max(MIN_COLS, int(cols)), max(MIN_ROWS, int(rows))


class PtyProcess:
    """
    A child process attached to a pseudo-terminal.

    Output is decoded as UTF-8 and delivered through a single FIFO channel
    (``chunks()``), ending after the child exits and the master side has been
    drained. Input written with ``write()`` is delivered in submission order.
    """

    def __init__(self, process: asyncio.subprocess.Process, master_fd: int, loop: asyncio.AbstractEventLoop) -> None:
        self._process = process
        self._fd: Optional[int] = master_fd
        self._loop = loop
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_input = bytearray()
        self._output_done = False
        os.set_blocking(master_fd, False)
        loop.add_reader(master_fd, self._on_readable)
        self._exit_task = loop.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    # -- output ---------------------------------------------------------

    def _read_available(self) -> bool:
        """Read whatever is ready; return False once the master side hit EOF."""
        while self._fd is not None:
            try:
                data = os.read(self._fd, READ_CHUNK)
            except BlockingIOError:
                return True
            except OSError as exc:
                # Linux reports EIO once every slave descriptor is closed.
                if exc.errno in (errno.EIO, errno.EBADF):
                    return False
                raise
            if not data:
                return False
            text = self._decoder.decode(data)
            if text:
                self._queue.put_nowait(text)
        return False

    def _on_readable(self) -> None:
        try:
            more = self._read_available()
        except OSError:
            more = False
        if not more:
            self._finish_output()

    def _finish_output(self) -> None:
        if self._output_done:
            return
        self._output_done = True
        if self._fd is not None:
            self._loop.remove_reader(self._fd)
            self._loop.remove_writer(self._fd)
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._queue.put_nowait(tail)
        self._queue.put_nowait(None)

    async def _watch_exit(self) -> int:
        code = await self._process.wait()
        # Grandchildren may keep the slave open; stop reading once the child is gone.
        if not self._output_done:
            try:
                self._read_available()
            except OSError:
                pass
            self._finish_output()
        return code

    async def chunks(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def wait(self) -> int:
        return await asyncio.shield(self._exit_task)

    # -- input / control ------------------------------------------------

    def write(self, data: str) -> None:
        if self._fd is None:
            raise OSError(errno.EBADF, "terminal is closed")
        if not data:
            return
        self._pending_input.extend(data.encode("utf-8", errors="replace"))
        self._flush_input()

    def _flush_input(self) -> None:
        if self._fd is None:
            self._pending_input.clear()
            return
        while self._pending_input:
            try:
                written = os.write(self._fd, self._pending_input)
            except BlockingIOError:
                self._loop.add_writer(self._fd, self._flush_input)
                return
            del self._pending_input[:written]
        self._loop.remove_writer(self._fd)

    def resize(self, cols: int, rows: int) -> tuple[int, int]:
        cols, rows = clamp_geometry(cols, rows)
        if self._fd is not None:
            _set_window_size(self._fd, cols, rows)
        return cols, rows

    def _signal_group(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    def terminate(self) -> None:
        """Ask the child to exit, as a terminal hang-up would."""
        self._signal_group(signal.SIGHUP)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)


async def spawn_pty(
    argv: Sequence[str],
    *,
    cwd: str,
    env: Mapping[str, str],
    cols: int = DEFAULT_COLS,
    rows: int = DEFAULT_ROWS,
) -> PtyProcess:
    """Spawn ``argv`` on a fresh pseudo-terminal. Raises OSError when the spawn fails."""
    loop = asyncio.get_running_loop()
    master_fd, slave_fd = os.openpty()
    try:
        _set_window_size(slave_fd, *clamp_geometry(cols, rows))
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=dict(env),
            start_new_session=True,
            preexec_fn=_claim_controlling_tty,
        )
    except BaseException:
        for fd in (master_fd, slave_fd):
            try:
                os.close(fd)
            except OSError:
                pass
        raise
    try:
        os.close(slave_fd)
    except OSError:
        pass
    return PtyProcess(process, master_fd, loop)
