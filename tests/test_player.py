import asyncio

import pytest

from core.errors import NotFound, PermanentUpstream, StateConflict, TransientUpstream
from core.interfaces import TransportEvent
from core.player import LoopMode, PlaybackState
from systems.voice_manager import ConnectionState
from tests.conftest import make_track, pump, settle


@pytest.mark.asyncio
async def test_play_resolves_joins_and_starts(player, provider, sink, transport, channel):
    track, position = await player.play("song a", "alice", channel)
    await pump(player)

    assert position == 1
    assert track.requested_by == "alice"
    assert player.state == PlaybackState.PLAYING
    assert player.current_track is track
    assert sink.current.track is track
    assert transport.handle.sink is sink


@pytest.mark.asyncio
async def test_play_surfaces_resolve_failure(player, provider, channel):
    provider.resolve_error = NotFound("no results")
    with pytest.raises(NotFound):
        await player.play("nothing", "alice", channel)
    assert len(player.queue) == 0


@pytest.mark.asyncio
async def test_end_to_end_queue_advances_with_prebuffer(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")

    await player.enqueue(a, channel)
    await pump(player)
    assert len(player.queue) == 0
    assert player.current_track is a
    assert player.state == PlaybackState.PLAYING

    await player.enqueue(b, channel)
    await settle()
    assert len(player.queue) == 1
    assert player.current_track is a
    assert player.prebuffered_track is b

    sink.finish()
    await pump(player)
    assert player.current_track is b
    assert len(player.queue) == 0
    assert player.prebuffered_track is None
    assert provider.opens_of("b") == 1


@pytest.mark.asyncio
async def test_loop_track_replays_before_queue(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")
    player.set_loop_mode(LoopMode.TRACK)
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    sink.finish()
    await pump(player)

    assert player.current_track is a
    assert player.queue.peek() is b
    assert provider.opens_of("a") == 2


@pytest.mark.asyncio
async def test_loop_queue_sends_finished_track_to_back(player, sink, channel):
    a, b = make_track("a"), make_track("b")
    player.set_loop_mode("queue")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    sink.finish()
    await pump(player)

    assert player.current_track is b
    assert player.queue_snapshot() == [a]


@pytest.mark.asyncio
async def test_skip_advances_even_when_looping_track(player, sink, channel):
    a, b = make_track("a"), make_track("b")
    player.set_loop_mode(LoopMode.TRACK)
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    assert player.skip() is a
    await pump(player)

    assert player.current_track is b
    assert len(player.queue) == 0


@pytest.mark.asyncio
async def test_skip_with_nothing_playing(player):
    with pytest.raises(StateConflict):
        player.skip()


@pytest.mark.asyncio
async def test_stop_clears_everything(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    player.stop()
    await pump(player)

    assert player.state == PlaybackState.STOPPED
    assert player.current_track is None
    assert len(player.queue) == 0
    assert player.prebuffered_track is None
    assert all(stream.closed for stream in provider.streams)

    c = make_track("c")
    await player.enqueue(c, channel)
    await pump(player)
    assert player.current_track is c


@pytest.mark.asyncio
async def test_stop_during_stream_open_discards_result(player, provider, sink, channel):
    a = make_track("a")
    provider.gates["a"] = asyncio.Event()
    await player.enqueue(a, channel)
    await settle()
    assert player.state == PlaybackState.STARTING

    player.stop()
    provider.gates["a"].set()
    await pump(player)

    assert player.state == PlaybackState.STOPPED
    assert sink.played == []
    assert provider.streams[0].closed


@pytest.mark.asyncio
async def test_prebuffer_in_flight_is_dropped_when_front_changes(player, provider, sink, channel):
    a, b, c = make_track("a"), make_track("b"), make_track("c")
    await player.enqueue(a, channel)
    await pump(player)

    provider.gates["b"] = asyncio.Event()
    await player.enqueue(b, channel)
    await player.enqueue(c, channel)
    await settle()
    assert player.prebuffered_track is b

    assert player.move_in_queue(2, 1)
    await settle()
    provider.gates["b"].set()
    await settle()

    assert player.prebuffered_track is c
    assert all(stream.track is not b for stream in provider.streams)

    sink.finish()
    await pump(player)
    assert player.current_track is c
    assert provider.opens_of("c") == 1


@pytest.mark.asyncio
async def test_completed_prebuffer_is_closed_when_track_removed(player, provider, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()
    prebuffered = provider.streams[-1]
    assert prebuffered.track is b

    assert player.remove_from_queue(1) is b
    assert prebuffered.closed
    assert player.prebuffered_track is None


@pytest.mark.asyncio
async def test_failed_start_moves_to_next_track(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")
    provider.failures["a"] = PermanentUpstream()
    player.queue.enqueue(a)
    await player.enqueue(b, channel)
    await pump(player)

    assert player.current_track is b
    assert [s.track for s in sink.played] == [b]


@pytest.mark.asyncio
async def test_transient_sink_error_retries_same_track(player, sink, sleeper, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    sink.fail(TransientUpstream())
    await pump(player)

    assert 2 in sleeper.delays
    assert player.current_track is a
    assert [s.track for s in sink.played] == [a, a]
    assert player.queue.peek() is b


@pytest.mark.asyncio
async def test_sink_error_retries_are_bounded(player, sink, sleeper, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    for _ in range(player.settings.max_retries):
        sink.fail(TransientUpstream())
        await pump(player)
        assert player.current_track is a

    sink.fail(TransientUpstream())
    await pump(player)

    assert player.current_track is b
    assert [d for d in sleeper.delays if d >= 2] == [2, 4, 8]


@pytest.mark.asyncio
async def test_permanent_sink_error_skips(player, sink, sleeper, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()

    sink.fail(PermanentUpstream())
    await pump(player)

    assert player.current_track is b
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_pause_and_resume_conflicts(player, channel):
    with pytest.raises(StateConflict):
        player.pause()

    await player.enqueue(make_track("a"), channel)
    await pump(player)

    player.pause()
    assert player.state == PlaybackState.PAUSED
    with pytest.raises(StateConflict):
        player.pause()

    player.resume()
    assert player.state == PlaybackState.PLAYING
    with pytest.raises(StateConflict):
        player.resume()


@pytest.mark.asyncio
async def test_volume_clamps(player):
    assert player.set_volume(250) == 200
    assert player.set_volume(-10) == 0
    assert player.set_volume(75) == 75
    assert player.volume == 75
    assert player.volume_multiplier == 0.75


@pytest.mark.asyncio
async def test_volume_applies_to_next_stream_and_refreshes_prebuffer(player, provider, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)
    await player.enqueue(b, channel)
    await settle()
    old = provider.streams[-1]

    player.set_volume(50)
    await settle()

    assert old.closed
    assert provider.streams[-1].track is b
    assert provider.streams[-1].volume == 0.5
    assert provider.streams[0].volume == 1.0


@pytest.mark.asyncio
async def test_volume_change_during_claimed_prebuffer_still_plays_track(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)

    provider.gates["b"] = asyncio.Event()
    await player.enqueue(b, channel)
    await settle()
    assert player.prebuffered_track is b

    sink.finish()
    await settle()
    player.set_volume(50)
    provider.gates["b"].set()
    await pump(player)

    assert player.current_track is b
    assert player.state == PlaybackState.PLAYING
    assert sink.current.volume == 0.5
    assert provider.opens_of("b") == 2
    assert all(s.closed for s in provider.streams if s is not sink.current and s.track is b)


@pytest.mark.asyncio
async def test_unexpected_prebuffer_error_is_contained(player, provider, sink, channel):
    a, b = make_track("a"), make_track("b")
    await player.enqueue(a, channel)
    await pump(player)

    provider.failures["b"] = RuntimeError("decoder exploded")
    await player.enqueue(b, channel)
    await settle()
    assert player.prebuffered_track is None

    del provider.failures["b"]
    sink.finish()
    await pump(player)
    assert player.current_track is b


@pytest.mark.asyncio
async def test_playlist_cap_and_overwrite(player):
    player.queue.enqueue(make_track("x"))
    for i in range(10):
        player.save_playlist(f"list {i}")

    with pytest.raises(StateConflict):
        player.save_playlist("list 10")

    assert player.save_playlist("list 3") == ("list 3", 1)
    assert len(player.list_playlists()) == 10
    assert player.has_playlist("list 3")


@pytest.mark.asyncio
async def test_playlist_save_and_load_starts_playback(player, channel):
    x, y = make_track("x"), make_track("y")
    player.queue.extend([x, y])
    assert player.save_playlist("mix") == ("mix", 2)
    player.queue.clear()

    assert await player.load_playlist("mix", channel=channel) == 2
    await pump(player)

    assert player.current_track is x
    assert player.queue_snapshot() == [y]

    assert await player.load_playlist("mix", append=True) == 2
    assert player.queue_snapshot() == [y, x, y]


@pytest.mark.asyncio
async def test_playlist_errors(player):
    with pytest.raises(StateConflict):
        player.save_playlist("empty")
    with pytest.raises(NotFound):
        await player.load_playlist("nope")
    assert not player.delete_playlist("nope")


@pytest.mark.asyncio
async def test_shuffle_empty_queue(player):
    with pytest.raises(StateConflict):
        player.shuffle_queue()


@pytest.mark.asyncio
async def test_voice_destroyed_releases_playback(player, provider, transport, channel):
    await player.enqueue(make_track("a"), channel)
    await pump(player)
    epoch = player.epoch

    transport.handle.emit(TransportEvent.DESTROYED)
    await pump(player)

    assert player.connection.state == ConnectionState.DESTROYED
    assert player.current_track is None
    assert player.state == PlaybackState.IDLE
    assert player.epoch > epoch
    assert provider.streams[0].closed


@pytest.mark.asyncio
async def test_voice_reconnect_keeps_session(player, transport, channel):
    await player.enqueue(make_track("a"), channel)
    await pump(player)

    transport.handle.emit(TransportEvent.DISCONNECTED)
    assert player.connection.state == ConnectionState.RECONNECTING
    await pump(player)

    assert player.connection.is_ready
    assert transport.handle.reconnects == 1


@pytest.mark.asyncio
async def test_status(player, channel):
    await player.enqueue(make_track("a"), channel)
    await pump(player)
    player.set_loop_mode("queue")

    assert player.status() == {
        "volume": 100,
        "loop_mode": "queue",
        "is_playing": True,
        "queue_size": 0,
    }
