"""Tests for the room operations applied inside mutations."""

from __future__ import annotations

import random

import pytest

from aioroomsync.exceptions import NotHeadError, ParticipantNotFoundError, TrackNotFoundError
from aioroomsync.models.state import (
    Armed,
    ClientPresence,
    OnBarrier,
    Paused,
    Playing,
    RoomState,
)
from aioroomsync.server import room
from aioroomsync.server.barrier import ARM_LEAD_S

from helpers import join

NOW = 2_000.0


class TestPlayPause:
    """Playback control transitions."""

    def test_play_waits_on_barrier(self, room_state: RoomState):
        room_state.play_state = Paused(position=5.0)
        join(room_state, "alice", NOW)

        room.play(room_state, NOW)

        assert room_state.play_state == OnBarrier(position=5.0)

    def test_play_arms_at_once_when_barrier_already_satisfied(self, room_state: RoomState):
        room_state.play_state = Paused(position=5.0)
        join(room_state, "alice", NOW, ack=room_state.head)

        room.play(room_state, NOW)

        assert room_state.play_state == Armed(wall_time_at_song_start=NOW + ARM_LEAD_S - 5.0)

    def test_play_with_nobody_present_arms(self, room_state: RoomState):
        room.play(room_state, NOW)
        assert isinstance(room_state.play_state, Armed)

    def test_play_while_playing_is_noop(self, room_state: RoomState):
        room_state.play_state = Playing(wall_time_at_song_start=NOW - 10)
        room.play(room_state, NOW)
        assert room_state.play_state == Playing(wall_time_at_song_start=NOW - 10)

    def test_pause_while_playing_keeps_position(self, room_state: RoomState):
        room_state.play_state = Playing(wall_time_at_song_start=NOW - 30.0)
        room.pause(room_state, NOW)
        assert room_state.play_state == Paused(position=30.0)

    def test_pause_before_armed_start_clamps_to_zero(self, room_state: RoomState):
        room_state.play_state = Armed(wall_time_at_song_start=NOW + 1.0)
        room.pause(room_state, NOW)
        assert room_state.play_state == Paused(position=0.0)

    def test_pause_on_barrier_keeps_position(self, room_state: RoomState):
        room_state.play_state = OnBarrier(position=7.0)
        room.pause(room_state, NOW)
        assert room_state.play_state == Paused(position=7.0)


class TestSeek:
    """Seeking keeps the mode and moves the position."""

    def test_seek_paused(self, room_state: RoomState):
        room.seek(room_state, NOW, 12.0)
        assert room_state.play_state == Paused(position=12.0)

    def test_seek_on_barrier(self, room_state: RoomState):
        room_state.play_state = OnBarrier(position=1.0)
        room.seek(room_state, NOW, 12.0)
        assert room_state.play_state == OnBarrier(position=12.0)

    def test_seek_playing_rearms(self, room_state: RoomState):
        room_state.play_state = Playing(wall_time_at_song_start=NOW - 100)
        room.seek(room_state, NOW, 12.0)
        assert room_state.play_state == Armed(wall_time_at_song_start=NOW + ARM_LEAD_S - 12.0)

    def test_negative_position_clamped(self, room_state: RoomState):
        room.seek(room_state, NOW, -3.0)
        assert room_state.play_state == Paused(position=0.0)

    def test_promote_armed_only_for_matching_anchor(self, room_state: RoomState):
        room_state.play_state = Armed(wall_time_at_song_start=NOW)

        assert not room.promote_armed(room_state, anchor=NOW - 1)
        assert room.promote_armed(room_state, anchor=NOW)
        assert room_state.play_state == Playing(wall_time_at_song_start=NOW)


class TestQueue:
    """Queue operations and the head change rule."""

    def test_next_rotates_and_restarts_barrier(self, room_state: RoomState, track_ids):
        room_state.play_state = Playing(wall_time_at_song_start=NOW - 5)
        join(room_state, "alice", NOW, ack=track_ids[0])

        room.next_track(room_state)

        assert room_state.queue == track_ids[1:] + track_ids[:1]
        assert room_state.play_state == OnBarrier(position=0.0)
        assert room_state.clients["alice"].acknowledged_head is None

    def test_previous_rotates_backwards(self, room_state: RoomState, track_ids):
        room.previous_track(room_state)
        assert room_state.queue == track_ids[-1:] + track_ids[:-1]
        assert room_state.play_state == OnBarrier(position=0.0)

    def test_nudge_moves_track_to_next_up(self, room_state: RoomState, track_ids):
        join(room_state, "alice", NOW, ack=track_ids[0])

        room.nudge(room_state, track_ids[3])

        assert room_state.queue == [track_ids[0], track_ids[3], *track_ids[1:3], track_ids[4]]
        # Head unchanged, acknowledgement survives
        assert room_state.clients["alice"].acknowledged_head == track_ids[0]
        assert room_state.play_state == Paused(position=0.0)

    def test_nudge_unknown_track(self, room_state: RoomState):
        with pytest.raises(TrackNotFoundError):
            room.nudge(room_state, "tnope")

    def test_shuffle_keeps_head_and_tracks(self, room_state: RoomState, track_ids):
        room.shuffle(room_state, random.Random(7))
        assert room_state.queue[0] == track_ids[0]
        assert sorted(room_state.queue) == sorted(track_ids)

    def test_reset_keeps_head_in_front(self, room_state: RoomState, track_ids):
        room_state.queue = [track_ids[2], track_ids[4], track_ids[0], track_ids[1], track_ids[3]]

        room.reset_queue(room_state, track_ids)

        assert room_state.queue == track_ids[2:] + track_ids[:2]

    def test_realigned_queue_without_head(self, track_ids):
        assert room.realigned_queue("tgone", track_ids) == track_ids
        assert room.realigned_queue(None, track_ids) == track_ids


class TestParticipants:
    """Possession, heartbeat and connection bookkeeping."""

    def test_possession_of_non_head_rejected(self, room_state: RoomState, track_ids):
        join(room_state, "alice", NOW)
        with pytest.raises(NotHeadError):
            room.report_possession(room_state, "alice", track_ids[1], NOW)
        assert room_state.clients["alice"].acknowledged_head is None

    def test_possession_of_unknown_participant(self, room_state: RoomState, track_ids):
        with pytest.raises(ParticipantNotFoundError):
            room.report_possession(room_state, "nobody", track_ids[0], NOW)

    def test_last_possession_arms(self, room_state: RoomState, track_ids):
        room_state.play_state = OnBarrier(position=0.0)
        join(room_state, "alice", NOW, ack=track_ids[0])
        join(room_state, "bob", NOW)

        room.report_possession(room_state, "bob", track_ids[0], NOW)

        assert room_state.play_state == Armed(wall_time_at_song_start=NOW + ARM_LEAD_S)

    def test_heartbeat_join_and_refresh(self, room_state: RoomState):
        assert room.heartbeat(room_state, "alice", NOW)
        assert room_state.clients["alice"] == ClientPresence(last_heartbeat=NOW)

        assert not room.heartbeat(room_state, "alice", NOW + 3)
        assert room_state.clients["alice"].last_heartbeat == NOW + 3

    def test_heartbeat_evicts_stale(self, room_state: RoomState):
        room_state.clients["old"] = ClientPresence(last_heartbeat=NOW - room.EVICT_AFTER_S - 1)
        join(room_state, "alice", NOW)

        assert room.heartbeat(room_state, "alice", NOW)
        assert "old" not in room_state.clients

    def test_connect_counts_as_heartbeat(self, room_state: RoomState):
        room_state.clients["alice"] = ClientPresence(last_heartbeat=NOW - 100)

        room.connect(room_state, "alice", NOW)

        assert room_state.clients["alice"] == ClientPresence(last_heartbeat=NOW, connected=True)

    def test_disconnect_of_straggler_arms(self, room_state: RoomState, track_ids):
        room_state.play_state = OnBarrier(position=0.0)
        join(room_state, "alice", NOW, ack=track_ids[0])
        join(room_state, "carol", NOW)

        assert room.disconnect(room_state, "carol", NOW)

        assert isinstance(room_state.play_state, Armed)
        assert not room_state.clients["carol"].connected

    def test_disconnect_unknown_is_bookkeeping(self, room_state: RoomState):
        assert not room.disconnect(room_state, "nobody", NOW)

    def test_room_codes(self):
        code = room.generate_room_code()
        assert len(code) == room.ROOM_CODE_LENGTH
        assert code.isalnum()
        assert code == code.lower()
