"""Provider tests against small Python stand-ins for yt-dlp and ffmpeg."""

import asyncio

import pytest

from core.errors import InvalidQuery, NotFound, PermanentUpstream
from systems.process_supervisor import ProcessSupervisor
from systems.stream_cache import StreamCache
from systems import stream_provider as stream_provider_module
from systems.stream_provider import YtDlpStreamProvider, parse_command
from tests.conftest import RecordingSleep, make_track, settle


@pytest.fixture
def supervisor():
    return ProcessSupervisor()


@pytest.fixture
def cache():
    return StreamCache(ttl=300)


@pytest.fixture
def stream_provider(fake_tools, supervisor, cache, tmp_path):
    extractor, ffmpeg = fake_tools
    return YtDlpStreamProvider(
        supervisor,
        cache,
        extractor_command=extractor,
        ffmpeg_path=ffmpeg,
        cookies_path=str(tmp_path / "missing-cookies.txt"),
        startup_timeout=10,
        resolve_timeout=10,
        setup_timeout=20,
        retry_base_delay=0,
        sleep=RecordingSleep(),
    )


def test_parse_command():
    assert parse_command("") == parse_command(None)
    assert parse_command("yt-dlp --proxy 'socks5://h:1'") == ["yt-dlp", "--proxy", "socks5://h:1"]


@pytest.mark.asyncio
async def test_resolve_search_caches_locator(stream_provider, cache, supervisor):
    track = await stream_provider.resolve("lofi beats", "alice")

    assert track.title == "Song lofi-beats"
    assert track.url == "https://www.youtube.com/watch?v=lofi-beats"
    assert track.duration == 61
    assert track.requested_by == "alice"
    assert cache.get(track.cache_key) == "http://media.invalid/ok"
    await settle()
    assert supervisor.active_count == 0


@pytest.mark.asyncio
async def test_resolve_rejects_bad_input_without_spawning(stream_provider, supervisor):
    with pytest.raises(InvalidQuery):
        await stream_provider.resolve("song; rm -rf /", "alice")
    with pytest.raises(InvalidQuery):
        await stream_provider.resolve("https://example.com/watch?v=1", "alice")
    assert supervisor.active_count == 0


@pytest.mark.asyncio
async def test_resolve_no_results_is_not_found(stream_provider):
    with pytest.raises(NotFound):
        await stream_provider.resolve("missing song", "alice")


@pytest.mark.asyncio
async def test_private_video_is_permanent_and_not_counted_by_breaker(stream_provider):
    for _ in range(6):
        with pytest.raises(PermanentUpstream):
            await stream_provider.resolve("private thing", "alice")
    assert stream_provider.breaker.failure_count == 0


@pytest.mark.asyncio
async def test_rate_limit_is_retried(stream_provider):
    track = await stream_provider.resolve("flaky song", "alice")
    assert track.title == "Song flaky-song"
    assert stream_provider._sleep.delays


@pytest.mark.asyncio
async def test_open_stream_from_cached_locator(stream_provider, supervisor):
    track = await stream_provider.resolve("lofi beats", "alice")

    stream = await stream_provider.open_stream(track, volume=0.5)
    try:
        assert stream.track is track
        assert stream.volume == 0.5
        assert stream.read(3840) == b"\x02" * 3840
    finally:
        stream.close()

    assert stream.closed
    assert stream.read(10) == b""
    await settle()


@pytest.mark.asyncio
async def test_open_stream_through_extractor_pipe(stream_provider):
    track = make_track("uncached")

    stream = await stream_provider.open_stream(track)
    try:
        assert stream.read(4096) == b"\x01" * 4096
    finally:
        stream.close()


@pytest.mark.asyncio
async def test_expired_locator_falls_back_to_extractor(stream_provider, cache):
    track = await stream_provider.resolve("stale song", "alice")
    assert cache.get(track.cache_key) == "http://media.invalid/expired"

    stream = await stream_provider.open_stream(track)
    try:
        assert stream.read(16) == b"\x01" * 16
    finally:
        stream.close()
    assert cache.get(track.cache_key) is None


@pytest.mark.asyncio
async def test_cancelled_open_kills_silent_pipeline(stream_provider, cache, supervisor, monkeypatch):
    # ffmpeg closes its output without exiting; the open waits out EXIT_GRACE
    monkeypatch.setattr(stream_provider_module, "EXIT_GRACE", 30.0)
    track = make_track("silent")
    cache.put(track.cache_key, "http://media.invalid/hang")

    task = asyncio.create_task(stream_provider.open_stream(track))
    await asyncio.sleep(1.5)
    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await settle()
    assert supervisor.active_count == 0
