# tests/test_engine.py

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from jukebox.device import DeviceStateChange, PlayerState
from jukebox.errors import BindError, BindFailure, InvalidPositionError, NoMatchError

from conftest import make_track

pytestmark = pytest.mark.asyncio

FINISHED = DeviceStateChange(PlayerState.PLAYING, PlayerState.IDLE)


def playing(box, tracks, cursor=0):
    """Puts a jukebox in the middle of playing `tracks[cursor]`."""
    box.tracks[:] = tracks
    box.cursor = cursor
    box.state = PlayerState.PLAYING
    return box


# --- enqueue ---

async def test_enqueue_appends_in_resolved_order_and_starts_playback(jukebox, mock_resolver, mock_binder,
                                                                    mock_voice_client, mock_source):
    t1, t2, t3 = make_track(1), make_track(2), make_track(3)
    mock_resolver.resolve.side_effect = [[t1, t2], [t3]]

    await jukebox.enqueue('spotify playlist')
    await jukebox.enqueue('another song')

    assert jukebox.tracks == [t1, t2, t3]
    assert jukebox.cursor == 0
    assert jukebox.state is PlayerState.PLAYING
    mock_binder.bind.assert_awaited_once()
    assert mock_binder.bind.await_args.args[0] is t1
    mock_voice_client.play.assert_called_once()
    assert mock_voice_client.play.call_args.args[0] is mock_source


async def test_enqueue_with_no_match_leaves_queue_and_device_alone(jukebox, mock_resolver, mock_binder,
                                                                  mock_voice_client):
    mock_resolver.resolve.side_effect = NoMatchError('nothing')

    with pytest.raises(NoMatchError):
        await jukebox.enqueue('asdkjhasdkjh')

    assert jukebox.tracks == []
    assert jukebox.state is PlayerState.IDLE
    mock_binder.bind.assert_not_awaited()
    mock_voice_client.play.assert_not_called()


async def test_enqueue_while_disconnected_does_not_bind(offline_jukebox, mock_resolver, mock_binder):
    mock_resolver.resolve.return_value = [make_track(1)]

    await offline_jukebox.enqueue('song')

    assert len(offline_jukebox.tracks) == 1
    mock_binder.bind.assert_not_awaited()


async def test_concurrent_try_play_binds_only_once(jukebox, mock_binder, mock_voice_client):
    jukebox.tracks[:] = [make_track(1), make_track(2)]

    await asyncio.gather(jukebox.try_play(), jukebox.try_play())

    mock_binder.bind.assert_awaited_once()
    mock_voice_client.play.assert_called_once()


# --- advance ---

async def test_finished_track_advances_cursor_and_plays_next(jukebox, mock_binder):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(jukebox, tracks)

    await jukebox.handle_state_change(FINISHED)

    assert jukebox.cursor == 1
    assert mock_binder.bind.await_args.args[0] is tracks[1]
    assert jukebox.state is PlayerState.PLAYING


async def test_track_loop_keeps_cursor(offline_jukebox):
    playing(offline_jukebox, [make_track(1), make_track(2)])
    offline_jukebox.toggle_track_loop()

    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.cursor == 0
    assert len(offline_jukebox.tracks) == 2


async def test_end_of_queue_without_queue_loop_empties_queue(offline_jukebox):
    playing(offline_jukebox, [make_track(1), make_track(2)], cursor=1)

    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.tracks == []
    assert offline_jukebox.cursor == 0


async def test_end_of_queue_with_queue_loop_wraps(offline_jukebox):
    tracks = [make_track(1), make_track(2)]
    playing(offline_jukebox, tracks, cursor=1)
    assert offline_jukebox.toggle_queue_loop() is True

    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.tracks == tracks
    assert offline_jukebox.cursor == 0


async def test_queue_loop_cycles_forever(offline_jukebox):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(offline_jukebox, tracks)
    offline_jukebox.loop_queue = True

    seen = []
    for _ in range(7):
        await offline_jukebox.handle_state_change(FINISHED)
        seen.append(offline_jukebox.cursor)

    assert seen == [1, 2, 0, 1, 2, 0, 1]
    assert offline_jukebox.tracks == tracks


async def test_loop_flags_survive_queue_end(offline_jukebox):
    playing(offline_jukebox, [make_track(1), make_track(2)], cursor=1)
    offline_jukebox.toggle_track_loop()

    offline_jukebox.remove_at(1)
    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.tracks == []
    assert offline_jukebox.loop_track is True


async def test_other_transitions_are_ignored(offline_jukebox):
    playing(offline_jukebox, [make_track(1), make_track(2)])

    await offline_jukebox.handle_state_change(DeviceStateChange(PlayerState.IDLE, PlayerState.PLAYING))

    assert offline_jukebox.cursor == 0
    assert offline_jukebox.state is PlayerState.PLAYING


# --- skip-and-continue ---

async def test_bind_failure_skips_to_next_track(jukebox, mock_binder, mock_source, mock_voice_client):
    tracks = [make_track(1), make_track(2)]
    jukebox.tracks[:] = tracks
    mock_binder.bind.side_effect = [BindError(BindFailure.STREAM_UNAVAILABLE), mock_source]

    await jukebox.try_play()

    assert jukebox.cursor == 1
    assert jukebox.state is PlayerState.PLAYING
    mock_voice_client.play.assert_called_once()
    titles = [call.args[0].title for call in jukebox.announce.await_args_list]
    assert titles[0] == 'Track unavailable'


async def test_skip_wraps_around_to_start(jukebox, mock_binder, mock_source):
    tracks = [make_track(1), make_track(2), make_track(3)]
    jukebox.tracks[:] = tracks
    jukebox.cursor = 2
    mock_binder.bind.side_effect = [BindError(BindFailure.UNRESOLVABLE), mock_source]

    await jukebox.try_play()

    assert jukebox.cursor == 0
    assert mock_binder.bind.await_args.args[0] is tracks[0]


async def test_queue_of_unplayable_tracks_is_reported_exhausted(jukebox, mock_binder, mock_voice_client):
    jukebox.tracks[:] = [make_track(1), make_track(2), make_track(3)]
    jukebox.loop_queue = True
    mock_binder.bind.side_effect = BindError(BindFailure.UNRESOLVABLE)

    await jukebox.try_play()

    assert mock_binder.bind.await_count == 3
    assert jukebox.state is PlayerState.IDLE
    assert len(jukebox.tracks) == 3
    mock_voice_client.play.assert_not_called()
    assert jukebox.announce.await_args.args[0].title == 'Queue exhausted'


async def test_track_removed_while_binding_is_not_played(jukebox, mock_binder, mock_voice_client):
    tracks = [make_track(1), make_track(2)]
    jukebox.tracks[:] = tracks
    first_source, second_source = MagicMock(), MagicMock()

    async def bind(track, volume):
        if track is tracks[0]:
            jukebox.remove_at(0)
            return first_source
        return second_source

    mock_binder.bind.side_effect = bind

    await jukebox.try_play()

    first_source.cleanup.assert_called_once()
    assert mock_voice_client.play.call_args.args[0] is second_source
    assert jukebox.current is tracks[1]


async def test_failed_track_removed_while_binding_does_not_skip_its_successor(jukebox, mock_binder,
                                                                              mock_source):
    tracks = [make_track(1), make_track(2), make_track(3)]
    jukebox.tracks[:] = tracks
    bound = []

    async def bind(track, volume):
        bound.append(track.title)
        if track is tracks[0]:
            jukebox.remove_at(0)
            raise BindError(BindFailure.STREAM_UNAVAILABLE)
        return mock_source

    mock_binder.bind.side_effect = bind

    await jukebox.try_play()

    assert bound == ['Song 1', 'Song 2']
    assert jukebox.current is tracks[1]
    assert jukebox.state is PlayerState.PLAYING
    jukebox.announce.assert_awaited_once()
    assert jukebox.announce.await_args.args[0].title == 'Song 2 is now playing'


async def test_skip_during_bind_plays_the_next_track(jukebox, mock_binder, mock_voice_client):
    tracks = [make_track(1), make_track(2), make_track(3)]
    jukebox.tracks[:] = tracks
    first_source, second_source = MagicMock(), MagicMock()
    binding, release = asyncio.Event(), asyncio.Event()

    async def bind(track, volume):
        if track is tracks[0]:
            binding.set()
            await release.wait()
            return first_source
        return second_source

    mock_binder.bind.side_effect = bind

    playback = asyncio.create_task(jukebox.try_play())
    await binding.wait()
    skipping = asyncio.create_task(jukebox.skip())
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(playback, skipping)

    first_source.cleanup.assert_called_once()
    mock_voice_client.play.assert_called_once()
    assert mock_voice_client.play.call_args.args[0] is second_source
    assert jukebox.cursor == 1
    assert jukebox.current is tracks[1]
    assert jukebox.state is PlayerState.PLAYING


async def test_now_playing_is_empty_until_a_track_actually_plays(jukebox, mock_binder):
    jukebox.tracks[:] = [make_track(1), make_track(2)]
    mock_binder.bind.side_effect = BindError(BindFailure.UNRESOLVABLE)

    await jukebox.try_play()

    assert jukebox.announce.await_args.args[0].title == 'Queue exhausted'
    assert jukebox.current is not None
    assert jukebox.now_playing() is None


# --- remove ---

async def test_remove_before_cursor_keeps_current_track(offline_jukebox):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(offline_jukebox, tracks, cursor=2)

    removed = offline_jukebox.remove_at(0)

    assert removed is tracks[0]
    assert offline_jukebox.cursor == 1
    assert offline_jukebox.current is tracks[2]


async def test_remove_after_cursor_keeps_cursor(offline_jukebox):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(offline_jukebox, tracks, cursor=0)

    offline_jukebox.remove_at(2)

    assert offline_jukebox.cursor == 0
    assert offline_jukebox.tracks == tracks[:2]


@pytest.mark.parametrize('position', [-1, 3, 10])
async def test_remove_invalid_position_changes_nothing(offline_jukebox, position):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(offline_jukebox, tracks, cursor=1)

    with pytest.raises(InvalidPositionError):
        offline_jukebox.remove_at(position)

    assert offline_jukebox.tracks == tracks
    assert offline_jukebox.cursor == 1


async def test_remove_playing_track_plays_the_one_that_slid_in(jukebox, mock_binder, mock_voice_client):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(jukebox, tracks, cursor=1)

    jukebox.remove_at(1)
    mock_voice_client.stop.assert_called_once()
    assert jukebox.cursor == 1

    await jukebox.handle_state_change(FINISHED)

    assert jukebox.cursor == 1
    assert mock_binder.bind.await_args.args[0] is tracks[2]


async def test_remove_playing_track_with_track_loop_does_not_go_back(jukebox, mock_binder):
    tracks = [make_track(1), make_track(2), make_track(3)]
    playing(jukebox, tracks, cursor=1)
    jukebox.loop_track = True

    jukebox.remove_at(1)
    await jukebox.handle_state_change(FINISHED)

    assert mock_binder.bind.await_args.args[0] is tracks[2]


async def test_remove_last_playing_track_ends_queue(offline_jukebox):
    tracks = [make_track(1), make_track(2)]
    playing(offline_jukebox, tracks, cursor=1)

    offline_jukebox.remove_at(1)
    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.tracks == []
    assert offline_jukebox.cursor == 0


async def test_remove_only_track_empties_queue(offline_jukebox):
    playing(offline_jukebox, [make_track(1)])

    offline_jukebox.remove_at(0)
    await offline_jukebox.handle_state_change(FINISHED)

    assert offline_jukebox.tracks == []
    assert offline_jukebox.cursor == 0


async def test_remove_cursor_track_while_idle_clamps(offline_jukebox):
    offline_jukebox.tracks[:] = [make_track(1), make_track(2)]
    offline_jukebox.cursor = 1

    offline_jukebox.remove_at(1)

    assert offline_jukebox.cursor == 0


# --- shuffle ---

@pytest.mark.parametrize('cursor', [0, 3, 7])
async def test_shuffle_never_moves_current_track(offline_jukebox, cursor):
    tracks = [make_track(n) for n in range(8)]
    for _ in range(25):
        playing(offline_jukebox, list(tracks), cursor=cursor)

        offline_jukebox.shuffle()

        assert offline_jukebox.tracks[cursor] is tracks[cursor]
        assert offline_jukebox.cursor == cursor
        assert sorted(t.title for t in offline_jukebox.tracks) == sorted(t.title for t in tracks)


async def test_shuffle_single_track_is_noop(offline_jukebox):
    track = make_track(1)
    playing(offline_jukebox, [track])

    offline_jukebox.shuffle()

    assert offline_jukebox.tracks == [track]


async def test_mutations_leave_other_tracks_untouched(offline_jukebox):
    tracks = [make_track(n) for n in range(5)]
    before = [(t.locator, t.title, t.duration) for t in tracks]
    playing(offline_jukebox, list(tracks), cursor=2)

    offline_jukebox.shuffle()
    offline_jukebox.remove_at(4)
    offline_jukebox.toggle_queue_loop()

    assert [(t.locator, t.title, t.duration) for t in tracks] == before


# --- stop, clear, disconnect ---

async def test_skip_stops_device(jukebox, mock_voice_client):
    tracks = [make_track(1), make_track(2)]
    playing(jukebox, tracks)

    skipped = await jukebox.skip()

    assert skipped is tracks[0]
    mock_voice_client.stop.assert_called_once()


async def test_pause_and_resume_pass_through(jukebox, mock_voice_client):
    track = make_track(1)
    playing(jukebox, [track])

    assert jukebox.pause() is track
    assert jukebox.resume() is track

    mock_voice_client.pause.assert_called_once()
    mock_voice_client.resume.assert_called_once()


async def test_pause_when_idle_reports_nothing(jukebox, mock_voice_client):
    assert jukebox.pause() is None
    mock_voice_client.pause.assert_not_called()


async def test_clear_stops_and_ignores_the_resulting_idle_event(jukebox, mock_resolver, mock_binder,
                                                                mock_voice_client):
    playing(jukebox, [make_track(1), make_track(2)], cursor=1)

    jukebox.clear()

    assert jukebox.tracks == []
    assert jukebox.cursor == 0
    assert jukebox.state is PlayerState.IDLE
    mock_voice_client.stop.assert_called_once()

    new_track = make_track(9)
    mock_resolver.resolve.return_value = [new_track]
    await jukebox.enqueue('new song')
    # The stop issued by clear() arrives late and must not advance past the new track.
    await jukebox.handle_state_change(FINISHED)

    assert jukebox.tracks == [new_track]
    assert jukebox.cursor == 0
    assert jukebox.state is PlayerState.PLAYING


async def test_disconnect_tears_down_connection(jukebox, mock_voice_client):
    playing(jukebox, [make_track(1)])

    await jukebox.disconnect()

    mock_voice_client.disconnect.assert_awaited_once()
    assert jukebox.device.voice_client is None
    assert jukebox.tracks == []


async def test_connect_joins_then_moves(offline_jukebox, mock_voice_client):
    first, second = MagicMock(), MagicMock()
    first.connect = AsyncMock(return_value=mock_voice_client)
    mock_voice_client.channel = first

    await offline_jukebox.connect(first)
    await offline_jukebox.connect(first)
    await offline_jukebox.connect(second)

    first.connect.assert_awaited_once()
    mock_voice_client.move_to.assert_awaited_once_with(second)


async def test_set_volume_validates_range(jukebox):
    jukebox.set_volume(150)
    assert jukebox.volume == 150

    with pytest.raises(ValueError):
        jukebox.set_volume(201)


# --- consumer task and registry ---

async def test_device_notification_reaches_the_consumer(jukebox, mock_binder, mock_voice_client):
    tracks = [make_track(1), make_track(2)]
    jukebox.tracks[:] = tracks
    jukebox.start()
    try:
        await jukebox.try_play()
        after = mock_voice_client.play.call_args.kwargs['after']
        after(None)
        for _ in range(10):
            await asyncio.sleep(0)
        assert jukebox.cursor == 1
        assert mock_binder.bind.await_args.args[0] is tracks[1]
    finally:
        await jukebox.close()


async def test_registry_hands_out_one_jukebox_per_guild(registry):
    first = registry.get(1)

    assert registry.get(1) is first
    assert registry.get(2) is not first
    assert len(registry) == 2

    await registry.discard(1)

    assert 1 not in registry
    assert registry.get(1) is not first
