"""Tests for termote.pty (PtyHost with PTY and pipe backends).

These spawn a real ``/bin/sh``.
"""

from __future__ import annotations

import asyncio
import os
import pty
import sys

import pytest

from termote.pty.manager import PtyHost
from termote.pty.session import PipeProcess, ProcessStatus

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="needs a POSIX /bin/sh",
)


class Collector:
    """Data callback that accumulates output and can wait for a marker."""

    def __init__(self) -> None:
        self.data = bytearray()

    def __call__(self, chunk: bytes) -> None:
        self.data.extend(chunk)

    async def wait_for(self, needle: bytes, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while needle not in self.data:
            if loop.time() > deadline:
                raise AssertionError(f"{needle!r} not seen in {bytes(self.data)!r}")
            await asyncio.sleep(0.01)


async def spawn_sh(host: PtyHost, args: tuple[str, ...] = ()) -> Collector:
    out = Collector()
    host.on_data(out)
    await host.spawn("/bin/sh", args)
    return out


async def finish(host: PtyHost) -> int | None:
    host.write(b"exit 0\n")
    return await asyncio.wait_for(host.wait_exit(), timeout=5)


# ---------------------------------------------------------------------------
# PTY backend
# ---------------------------------------------------------------------------


class TestPtyBackend:
    async def test_echo_round_trip(self) -> None:
        host = PtyHost()
        out = await spawn_sh(host)
        assert host.backend == "pty"
        assert host.resizable
        # Arithmetic so the typed echo itself does not match
        host.write(b"echo marker-$((1+2))\n")
        await out.wait_for(b"marker-3")
        assert await finish(host) == 0

    async def test_str_input_accepted(self) -> None:
        host = PtyHost()
        out = await spawn_sh(host)
        host.write("echo str-$((4+4))\n")
        await out.wait_for(b"str-8")
        await finish(host)

    async def test_startup_command_injected(self) -> None:
        host = PtyHost(settle_delay=0.05)
        out = await spawn_sh(host, ("echo", "injected-$((2*3))"))
        await out.wait_for(b"injected-6")
        await finish(host)

    async def test_env_passed_to_child(self) -> None:
        host = PtyHost(env={"TERMOTE_SESSION_ID": "sess-42"})
        out = await spawn_sh(host)
        host.write(b'echo "id=$TERMOTE_SESSION_ID"\n')
        await out.wait_for(b"id=sess-42")
        await finish(host)

    async def test_initial_and_changed_geometry(self) -> None:
        host = PtyHost(cols=90, rows=20)
        out = await spawn_sh(host)
        host.write(b"stty size\n")
        await out.wait_for(b"20 90")
        host.resize(100, 30)
        assert host.geometry == (100, 30)
        host.write(b"stty size\n")
        await out.wait_for(b"30 100")
        await finish(host)

    async def test_kill_ends_process(self) -> None:
        host = PtyHost()
        codes: list[int | None] = []
        host.on_exit(codes.append)
        await spawn_sh(host)
        host.kill()
        code = await asyncio.wait_for(host.wait_exit(), timeout=5)
        assert code != 0
        assert codes == [code]
        assert host.process is not None
        assert host.process.status is ProcessStatus.EXITED
        assert not host.alive

    async def test_exit_code_reported(self) -> None:
        host = PtyHost()
        await spawn_sh(host)
        host.write(b"exit 7\n")
        assert await asyncio.wait_for(host.wait_exit(), timeout=5) == 7

    async def test_on_exit_after_exit_fires_immediately(self) -> None:
        host = PtyHost()
        await spawn_sh(host)
        await finish(host)
        codes: list[int | None] = []
        host.on_exit(codes.append)
        assert codes == [0]

    async def test_spawn_twice_rejected(self) -> None:
        host = PtyHost()
        await spawn_sh(host)
        with pytest.raises(RuntimeError):
            await host.spawn("/bin/sh")
        await finish(host)

    async def test_write_after_exit_is_dropped(self) -> None:
        host = PtyHost()
        await spawn_sh(host)
        await finish(host)
        host.write(b"echo too late\n")


# ---------------------------------------------------------------------------
# Pipe fallback
# ---------------------------------------------------------------------------


class TestPipeFallback:
    async def test_falls_back_when_pty_unavailable(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def no_pty() -> tuple[int, int]:
            raise OSError("out of pty devices")

        monkeypatch.setattr(pty, "openpty", no_pty)
        host = PtyHost()
        out = await spawn_sh(host)
        assert host.backend == "pipe"
        assert isinstance(host.process, PipeProcess)
        assert not host.resizable
        host.write(b"echo piped-$((5+5))\n")
        await out.wait_for(b"piped-10")
        assert await finish(host) == 0

    async def test_stderr_merged(self) -> None:
        host = PtyHost(prefer_pty=False)
        out = await spawn_sh(host)
        host.write(b"echo to-stderr-$((1+1)) >&2\n")
        await out.wait_for(b"to-stderr-2")
        await finish(host)

    async def test_resize_is_noop(self) -> None:
        host = PtyHost(prefer_pty=False)
        await spawn_sh(host)
        host.resize(120, 40)
        assert host.alive
        await finish(host)

    async def test_kill_terminates(self) -> None:
        host = PtyHost(prefer_pty=False)
        await spawn_sh(host)
        host.kill()
        code = await asyncio.wait_for(host.wait_exit(), timeout=5)
        assert code != 0
