"""Tests for the room session controller."""
import re
import threading

import pytest

from errors import (
    AlreadyInRoom,
    ImageGenerationFailed,
    NoSuchPlayer,
    RoomFull,
    RoomNotFound,
    ValidationFailed,
)
from game import Player, Room, RoomController, player_view
from prompts import IMAGE_PROMPTS


# --- create -----------------------------------------------------------------

def test_create_room_puts_caller_in_slot_one(controller, store):
    room = controller.create_room('  Alice ', caller_id='alice')

    assert re.fullmatch(r'[0-9A-Z]{6}', room.code)
    assert room.player1 == Player(id='alice', name='Alice')
    assert room.player2 is None
    assert room.round_active is False

    record = store.get_room(room.code)
    assert record['player1_id'] == 'alice'
    assert record['player1_score'] == 0
    assert record['player2_id'] is None
    assert record['player2_name'] is None


def test_create_room_uses_identity_provider(store, images):
    controller = RoomController(store, images, identity=lambda: 'session-1')
    room = controller.create_room('Alice')
    assert room.player1.id == 'session-1'


def test_create_room_requires_name(controller, store):
    with pytest.raises(ValidationFailed):
        controller.create_room('   ', caller_id='alice')
    assert store._rooms == {}


def test_create_room_requires_identity(controller):
    with pytest.raises(ValidationFailed):
        controller.create_room('Alice')


def test_create_room_skips_taken_codes(controller, store, monkeypatch):
    store.put_room('AAAAAA', Room(code='AAAAAA', player1=Player('x', 'X')).to_record())
    codes = iter(['AAAAAA', 'BBBBBB'])
    monkeypatch.setattr('game.generate_room_code', lambda rng: next(codes))

    room = controller.create_room('Alice', caller_id='alice')
    assert room.code == 'BBBBBB'
    assert store.get_room('AAAAAA')['player1_id'] == 'x'


# --- join -------------------------------------------------------------------

def test_join_fills_slot_two_only(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    before = store.get_room(room.code)

    joined = controller.join_room(room.code.lower() + ' ', 'Bob', caller_id='bob')

    assert joined.player2 == Player(id='bob', name='Bob')
    after = store.get_room(room.code)
    for column in ('player1_id', 'player1_name', 'player1_score', 'player1_image', 'player1_prompt'):
        assert after[column] == before[column]


def test_join_unknown_room(controller):
    with pytest.raises(RoomNotFound):
        controller.join_room('ZZZZZZ', 'Bob', caller_id='bob')


def test_join_requires_code_and_name(controller):
    with pytest.raises(ValidationFailed):
        controller.join_room('', 'Bob', caller_id='bob')
    with pytest.raises(ValidationFailed):
        controller.join_room('ABCDEF', ' ', caller_id='bob')


def test_join_full_room_by_third_player(controller, store, ready_room):
    before = store.get_room(ready_room.code)
    with pytest.raises(RoomFull):
        controller.join_room(ready_room.code, 'Carol', caller_id='carol')
    assert store.get_room(ready_room.code) == before


def test_join_again_as_player_one_is_harmless(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    before = store.get_room(room.code)

    with pytest.raises(AlreadyInRoom) as exc_info:
        controller.join_room(room.code, 'Alice again', caller_id='alice')

    assert exc_info.value.notice_type == 'info'
    assert exc_info.value.slot == 1
    assert exc_info.value.room.code == room.code
    assert store.get_room(room.code) == before


def test_join_loses_race_for_open_slot(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    original = store._update_room

    def carol_gets_there_first(code, fields, expected):
        store._rooms[code].update(player2_id='carol', player2_name='Carol', player2_score=0)
        return original(code, fields, expected)

    store._update_room = carol_gets_there_first

    with pytest.raises(RoomFull):
        controller.join_room(room.code, 'Bob', caller_id='bob')
    assert store.get_room(room.code)['player2_id'] == 'carol'


# --- rounds -----------------------------------------------------------------

def test_start_round_assigns_two_distinct_prompts(controller, store, images, ready_room):
    room = controller.start_round(ready_room.code)

    assert room.round_active is True
    assert room.player1.prompt != room.player2.prompt
    assert room.player1.prompt in IMAGE_PROMPTS
    assert room.player2.prompt in IMAGE_PROMPTS
    assert room.player1.image == f'data:image/png;base64,{room.player1.prompt}'
    assert room.player2.image == f'data:image/png;base64,{room.player2.prompt}'
    assert sorted(images.prompts) == sorted([room.player1.prompt, room.player2.prompt])


def test_start_round_always_distinct(controller, ready_room):
    for _ in range(25):
        room = controller.change_images(ready_room.code)
        assert room.player1.prompt != room.player2.prompt


def test_controllers_share_image_pool(store, images, ready_room, monkeypatch):
    threads = []
    generate = images.generate

    def record_thread(prompt):
        threads.append(threading.current_thread().name)
        return generate(prompt)

    monkeypatch.setattr(images, 'generate', record_thread)
    for _ in range(2):
        RoomController(store, images).start_round(ready_room.code)

    assert len(threads) == 4
    assert all(name.startswith('image-gen') for name in threads)


def test_start_round_needs_two_players(controller, images):
    room = controller.create_room('Alice', caller_id='alice')
    with pytest.raises(ValidationFailed):
        controller.start_round(room.code)
    assert images.prompts == []


def test_start_round_failure_writes_nothing(controller, store, images, ready_room):
    images.fail = True
    with pytest.raises(ImageGenerationFailed):
        controller.start_round(ready_room.code)

    record = store.get_room(ready_room.code)
    assert record['round_active'] is False
    assert record['player1_image'] == ''
    assert record['player2_prompt'] == ''


def test_start_round_wraps_unexpected_errors(controller, store, images, ready_room):
    images.error = ConnectionError('network down')
    with pytest.raises(ImageGenerationFailed):
        controller.start_round(ready_room.code)
    assert store.get_room(ready_room.code)['round_active'] is False


def test_end_round_clears_images_and_prompts(controller, ready_room):
    controller.start_round(ready_room.code)
    room = controller.end_round(ready_room.code)

    assert room.round_active is False
    for player in (room.player1, room.player2):
        assert player.image == ''
        assert player.prompt == ''


def test_end_round_unknown_room(controller):
    with pytest.raises(RoomNotFound):
        controller.end_round('NOPE00')


# --- guess ------------------------------------------------------------------

def test_correct_guess_scores_and_ends_round(controller, active_room):
    result = controller.guess('AB12CD', "I think it's A Red Car", caller_id='bob')

    assert result.correct is True
    room = result.room
    assert room.player2.score == 1
    assert room.player1.score == 0
    assert room.round_active is False
    assert room.last_winner_id == 'bob'
    assert room.last_winner_name == 'Bob'


def test_wrong_guess_changes_nothing(controller, store, active_room):
    before = store.get_room('AB12CD')
    result = controller.guess('AB12CD', 'a blue car', caller_id='bob')

    assert result.correct is False
    assert store.get_room('AB12CD') == before


def test_guess_targets_opponent_prompt_not_own(controller, active_room):
    result = controller.guess('AB12CD', 'a red car', caller_id='alice')
    assert result.correct is False

    result = controller.guess('AB12CD', 'is it a cute cat?', caller_id='alice')
    assert result.correct is True
    assert result.room.player1.score == 1


def test_simultaneous_correct_guesses_score_once(controller, store, active_room):
    original = store._update_room
    raced = []

    def alice_wins_first(code, fields, expected):
        if not raced:
            raced.append(True)
            store._update_room = original
            controller.guess('AB12CD', 'a cute cat', caller_id='alice')
        return original(code, fields, expected)

    store._update_room = alice_wins_first

    result = controller.guess('AB12CD', 'a red car', caller_id='bob')

    room = controller.get_room('AB12CD')
    assert room.player1.score == 1
    assert room.player2.score == 0
    assert room.last_winner_id == 'alice'
    assert result.correct is False
    assert result.round_over is True


def test_duplicate_correct_guess_scores_once(controller, store, active_room):
    original = store._update_room
    raced = []

    def same_guess_lands_first(code, fields, expected):
        if not raced:
            raced.append(True)
            store._update_room = original
            controller.guess('AB12CD', 'a red car', caller_id='bob')
        return original(code, fields, expected)

    store._update_room = same_guess_lands_first

    controller.guess('AB12CD', 'a red car', caller_id='bob')

    room = controller.get_room('AB12CD')
    assert room.player2.score == 1
    assert room.round_active is False


def test_correct_guess_after_round_ended_does_not_score(controller, store, active_room):
    store.update_room('AB12CD', {'round_active': False})

    result = controller.guess('AB12CD', 'a red car', caller_id='bob')

    assert result.correct is False
    assert result.round_over is True
    assert controller.get_room('AB12CD').player2.score == 0


def test_guess_without_prompts_is_wrong(controller, ready_room):
    result = controller.guess(ready_room.code, 'anything', caller_id='bob')
    assert result.correct is False


def test_guess_requires_text(controller, active_room):
    with pytest.raises(ValidationFailed):
        controller.guess('AB12CD', '  ', caller_id='bob')


def test_guess_by_stranger(controller, active_room):
    with pytest.raises(NoSuchPlayer):
        controller.guess('AB12CD', 'a red car', caller_id='carol')


# --- leave ------------------------------------------------------------------

def test_last_player_leaving_deletes_room_and_chat(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    controller.send_message(room.code, 'hello?', caller_id='alice')

    controller.leave_room(room.code, caller_id='alice')

    assert store.get_room(room.code) is None
    assert store.list_messages(room.code) == []


def test_player_one_leaving_promotes_player_two(controller, store, active_room):
    store.update_room('AB12CD', {'player2_score': 4})
    controller.send_message('AB12CD', 'bye', caller_id='alice')

    controller.leave_room('AB12CD', caller_id='alice')

    room = controller.get_room('AB12CD')
    assert room.player1 == Player(id='bob', name='Bob', score=4, image='img-2', prompt='a cute cat')
    assert room.player2 is None
    assert room.round_active is False
    record = store.get_room('AB12CD')
    assert all(record[f'player2_{name}'] is None for name in ('id', 'name', 'score', 'image', 'prompt'))
    assert store.list_messages('AB12CD') == []


def test_player_two_leaving_clears_slot_two(controller, store, active_room):
    controller.leave_room('AB12CD', caller_id='bob')

    room = controller.get_room('AB12CD')
    assert room.player1.id == 'alice'
    assert room.player1.prompt == 'a red car'
    assert room.player2 is None
    assert room.round_active is False


def test_stranger_leaving_changes_nothing(controller, store, active_room):
    controller.send_message('AB12CD', 'hi', caller_id='bob')
    before = store.get_room('AB12CD')

    controller.leave_room('AB12CD', caller_id='carol')

    assert store.get_room('AB12CD') == before
    assert len(store.list_messages('AB12CD')) == 1


def test_leave_deleted_room_is_idempotent(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    controller.leave_room(room.code, caller_id='alice')
    controller.leave_room(room.code, caller_id='alice')
    assert store.get_room(room.code) is None


def test_leave_retries_after_concurrent_join(controller, store):
    room = controller.create_room('Alice', caller_id='alice')
    original = store._delete_room
    calls = []

    def bob_joins_first(code, expected):
        if not calls:
            store._rooms[code].update(player2_id='bob', player2_name='Bob', player2_score=0,
                                      player2_image='', player2_prompt='')
        calls.append(expected)
        return original(code, expected)

    store._delete_room = bob_joins_first

    controller.leave_room(room.code, caller_id='alice')

    promoted = controller.get_room(room.code)
    assert promoted.player1.id == 'bob'
    assert promoted.player2 is None


# --- chat -------------------------------------------------------------------

def test_send_message(controller, store, ready_room):
    message = controller.send_message(ready_room.code, ' hi Bob ', caller_id='alice')

    assert message.text == 'hi Bob'
    assert message.sender_name == 'Alice'
    assert message.timestamp > 0
    assert controller.list_messages(ready_room.code) == [message]


def test_send_message_validation(controller, ready_room):
    with pytest.raises(ValidationFailed):
        controller.send_message(ready_room.code, '', caller_id='alice')
    with pytest.raises(NoSuchPlayer):
        controller.send_message(ready_room.code, 'hi', caller_id='carol')


def test_messages_are_capped_to_latest_hundred(controller, store, ready_room):
    for i in range(105):
        store.add_message(ready_room.code, {
            'sender_id': 'alice', 'sender_name': 'Alice', 'text': f'm{i}', 'timestamp': 1000 + i,
        })

    messages = controller.list_messages(ready_room.code)
    assert len(messages) == 100
    assert messages[0].text == 'm5'
    assert messages[-1].text == 'm104'


# --- subscriptions and views -------------------------------------------------

def test_room_subscription_pushes_snapshots(controller, ready_room):
    seen = []
    unsubscribe = controller.subscribe_room(ready_room.code, seen.append)

    controller.start_round(ready_room.code)
    controller.leave_room(ready_room.code, caller_id='bob')
    controller.leave_room(ready_room.code, caller_id='alice')
    unsubscribe()
    controller.create_room('Carol', caller_id='carol')

    assert seen[0].player2.id == 'bob'
    assert seen[1].round_active is True
    assert seen[2].player2 is None
    assert seen[-1] is None
    assert len(seen) == 4


def test_message_subscription(controller, ready_room):
    seen = []
    unsubscribe = controller.subscribe_messages(ready_room.code, seen.append)
    controller.send_message(ready_room.code, 'hello', caller_id='bob')
    unsubscribe()
    controller.send_message(ready_room.code, 'unheard', caller_id='bob')

    assert seen[0] == []
    assert [m.text for m in seen[1]] == ['hello']
    assert len(seen) == 2


def test_player_view_swaps_images(active_room):
    alice = player_view(active_room, 'alice')
    bob = player_view(active_room, 'bob')

    assert alice.slot == 1 and bob.slot == 2
    assert alice.my_image == bob.opponent_image == 'img-1'
    assert bob.my_image == alice.opponent_image == 'img-2'
    assert alice.opponent_name == 'Bob'
    assert 'a red car' not in alice.to_dict().values()
    assert alice.to_dict()['my_image'] == 'img-1'


def test_player_view_for_stranger(active_room):
    view = player_view(active_room, 'carol')
    assert view.slot is None
    assert view.my_image == '' and view.opponent_image == ''


def test_player_view_waiting_for_opponent():
    room = Room(code='ABCDEF', player1=Player('alice', 'Alice'))
    view = player_view(room, 'alice')
    assert view.has_opponent is False
    assert view.can_start is False
