"""Shared fakes for the playback core: provider, sink, voice transport, processes."""

import asyncio
import sys
import textwrap
from types import SimpleNamespace

import pytest
import pytest_asyncio

from core.interfaces import TransportEvent
from core.player import PlayerSettings, SessionPlayer
from core.track import Track


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_track(title: str, requester: str = "tester") -> Track:
    return Track(title=title, url=f"https://youtu.be/{title}", requested_by=requester, duration=90)


class FakeStream:
    def __init__(self, track, volume):
        self.track = track
        self.volume = volume
        self.closed = False

    def read(self, size):
        return b"" if self.closed else b"\x00" * size

    def close(self):
        self.closed = True


class FakeProvider:
    """Resolves any query; open_stream can be gated or made to fail per title."""

    def __init__(self):
        self.opened = []
        self.streams = []
        self.gates = {}
        self.failures = {}
        self.resolve_error = None

    async def resolve(self, query, requester):
        if self.resolve_error is not None:
            raise self.resolve_error
        return make_track(query, requester)

    async def open_stream(self, track, volume=1.0):
        self.opened.append(track)
        gate = self.gates.get(track.title)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(track.title)
        if error is not None:
            raise error
        stream = FakeStream(track, volume)
        self.streams.append(stream)
        return stream

    def opens_of(self, title):
        return sum(1 for t in self.opened if t.title == title)


class FakeSink:
    """Mimics discord.py: stop() fires the after-callback on the next loop pass."""

    def __init__(self):
        self.on_idle = None
        self.on_error = None
        self.played = []
        self.current = None
        self.paused = False

    def play(self, stream):
        self.current = stream
        self.paused = False
        self.played.append(stream)

    def pause(self):
        if self.current is None or self.paused:
            return False
        self.paused = True
        return True

    def unpause(self):
        if not self.paused:
            return False
        self.paused = False
        return True

    def stop(self, force=False):
        stream, self.current = self.current, None
        if stream is not None:
            asyncio.get_running_loop().call_soon(self.on_idle, stream)

    def finish(self):
        """Current stream reached its end."""
        stream, self.current = self.current, None
        self.on_idle(stream)

    def fail(self, error):
        stream, self.current = self.current, None
        self.on_error(stream, error)


class FakeHandle:
    def __init__(self, channel, listener):
        self.channel_id = channel.id
        self.listener = listener
        self.sink = None
        self.destroyed = False
        self.reconnects = 0
        self.reconnect_results = []

    async def wait_ready(self, timeout):
        return None

    async def reconnect(self, timeout):
        self.reconnects += 1
        if self.reconnect_results:
            result = self.reconnect_results.pop(0)
            if isinstance(result, BaseException):
                raise result

    def subscribe(self, sink):
        self.sink = sink

    async def destroy(self):
        self.destroyed = True

    def emit(self, event: TransportEvent):
        self.listener(event)


class FakeTransport:
    def __init__(self):
        self.handles = []
        self.join_error = None

    async def join(self, channel, listener):
        if self.join_error is not None:
            raise self.join_error
        handle = FakeHandle(channel, listener)
        self.handles.append(handle)
        return handle

    @property
    def handle(self):
        return self.handles[-1] if self.handles else None


class RecordingSleep:
    """Instant sleep that remembers every requested delay."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Sleep that never returns on its own."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.Event().wait()


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    _next_pid = 1000

    def __init__(self, obeys_term=True):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.obeys_term = obeys_term
        self.signals = []
        self.kills = 0
        self._exited = asyncio.Event()

    def exit(self, code=0):
        self.returncode = code
        self._exited.set()

    def send_signal(self, sig):
        self.signals.append(sig)
        if self.obeys_term:
            self.exit(-sig)

    def kill(self):
        self.kills += 1
        self.exit(-9)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


@pytest.fixture
def channel():
    return SimpleNamespace(id=111)


@pytest.fixture
def other_channel():
    return SimpleNamespace(id=222)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest_asyncio.fixture
async def player(provider, transport, sink, sleeper):
    settings = PlayerSettings(idle_timeout=0)
    p = SessionPlayer(1, provider, transport, sink, settings, sleep=sleeper)
    p.start()
    yield p
    await p.destroy()


async def pump(player, rounds: int = 3) -> None:
    """Run the player until its mailbox and background tasks go quiet."""
    for _ in range(rounds):
        await settle()
        await player.drain_events()
    await settle()


# =============================================================================
# Fake yt-dlp / ffmpeg executables for stream provider tests
# =============================================================================

FAKE_YTDLP = '''
import json
import sys
from pathlib import Path

args = sys.argv[1:]
target = args[args.index("--") + 1]

if "--dump-json" in args:
    if "missing" in target:
        sys.exit(0)
    if "private" in target:
        sys.stderr.write("ERROR: [youtube] abc123: Private video. Sign in if you've been granted access\\n")
        sys.exit(1)
    if "flaky" in target:
        counter = Path(__file__).with_name("flaky.count")
        calls = int(counter.read_text()) if counter.exists() else 0
        counter.write_text(str(calls + 1))
        if calls == 0:
            sys.stderr.write("ERROR: HTTP Error 429: Too Many Requests\\n")
            sys.exit(1)
    slug = target.split(":", 1)[-1].replace(" ", "-")
    locator = "http://media.invalid/expired" if "stale" in target else "http://media.invalid/ok"
    print(json.dumps({
        "title": "Song " + slug,
        "webpage_url": "https://www.youtube.com/watch?v=" + slug,
        "duration": 61,
        "url": locator,
    }))
    sys.exit(0)

sys.stdout.buffer.write(b"\\x01" * 8192)
sys.stdout.flush()
'''

FAKE_FFMPEG = '''
import sys

args = sys.argv[1:]
source = args[args.index("-i") + 1]
if source == "pipe:0":
    data = sys.stdin.buffer.read()
    if not data:
        sys.stderr.write("pipe:0: End of file\\n")
        sys.exit(1)
elif "hang" in source:
    import os
    import time
    os.close(1)
    time.sleep(30)
    sys.exit(0)
elif "expired" in source:
    sys.stderr.write("HTTP error 403 Forbidden\\n")
    sys.exit(1)
else:
    data = b"\\x02" * 3840 * 4
sys.stdout.buffer.write(data)
sys.stdout.flush()
'''


@pytest.fixture
def fake_tools(tmp_path):
    """(extractor_command, ffmpeg_path) backed by small Python scripts."""
    ytdlp = tmp_path / "fake_ytdlp.py"
    ytdlp.write_text(textwrap.dedent(FAKE_YTDLP))
    ffmpeg = tmp_path / "ffmpeg"
    ffmpeg.write_text(f"#!{sys.executable}\n" + textwrap.dedent(FAKE_FFMPEG))
    ffmpeg.chmod(0o755)
    return [sys.executable, str(ytdlp)], str(ffmpeg)

