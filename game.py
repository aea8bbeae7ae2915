"""
Room session controller.

A room holds two player slots. Each round both players get a generated image;
a player scores by typing a guess that contains the prompt behind the
opponent's image.

    Empty -> create -> waiting for player 2 -> join -> ready
    ready -> start round -> round active -> correct guess | end round -> ready
    last player leaves -> room deleted
"""
import logging
import random
import string
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from errors import (
    AlreadyInRoom,
    GameError,
    ImageGenerationFailed,
    NoSuchPlayer,
    RemoteWriteFailed,
    RoomFull,
    RoomNotFound,
    ValidationFailed,
)
from prompts import IMAGE_PROMPTS, pick_prompt_pair

logger = logging.getLogger(__name__)

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase
ROOM_CODE_ATTEMPTS = 5

# Conditional writes that lose a race are re-read and retried this many times
WRITE_ATTEMPTS = 3

PLAYER_FIELDS = ('id', 'name', 'score', 'image', 'prompt')

# Shared by every controller; each round submits its two image requests here
image_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix='image-gen')


def generate_room_code(rng=random):
    return ''.join(rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_code(code):
    return (code or '').strip().upper()


def require_text(value, message):
    text = (value or '').strip()
    if not text:
        raise ValidationFailed(message)
    return text


def now_ms():
    return int(time.time() * 1000)


@dataclass
class Player:
    id: str
    name: str
    score: int = 0
    image: str = ''
    prompt: str = ''


def slot_fields(slot: int, player: Optional[Player]) -> dict:
    """Room columns of one slot. An empty slot has every column set to None."""
    return {
        f'player{slot}_{name}': (getattr(player, name) if player else None)
        for name in PLAYER_FIELDS
    }


@dataclass
class Room:
    code: str
    player1: Optional[Player] = None
    player2: Optional[Player] = None
    round_active: bool = False
    last_winner_id: Optional[str] = None
    last_winner_name: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> 'Room':
        def player(slot):
            player_id = record.get(f'player{slot}_id')
            if not player_id:
                return None
            return Player(
                id=player_id,
                name=record.get(f'player{slot}_name') or '',
                score=record.get(f'player{slot}_score') or 0,
                image=record.get(f'player{slot}_image') or '',
                prompt=record.get(f'player{slot}_prompt') or '',
            )

        return cls(
            code=record['code'],
            player1=player(1),
            player2=player(2),
            round_active=bool(record.get('round_active')),
            last_winner_id=record.get('last_winner_id'),
            last_winner_name=record.get('last_winner_name'),
            created_at=record.get('created_at'),
        )

    def to_record(self) -> dict:
        record = {'code': self.code}
        record.update(slot_fields(1, self.player1))
        record.update(slot_fields(2, self.player2))
        record.update({
            'round_active': self.round_active,
            'last_winner_id': self.last_winner_id,
            'last_winner_name': self.last_winner_name,
            'created_at': self.created_at,
        })
        return record

    def player(self, slot: int) -> Optional[Player]:
        return self.player1 if slot == 1 else self.player2

    def slot_of(self, player_id) -> Optional[int]:
        if self.player1 and self.player1.id == player_id:
            return 1
        if self.player2 and self.player2.id == player_id:
            return 2
        return None

    @property
    def is_full(self) -> bool:
        return self.player1 is not None and self.player2 is not None


@dataclass
class ChatMessage:
    sender_id: str
    sender_name: str
    text: str
    timestamp: int

    @classmethod
    def from_record(cls, record: dict) -> 'ChatMessage':
        return cls(
            sender_id=record['sender_id'],
            sender_name=record.get('sender_name') or '',
            text=record['text'],
            timestamp=record['timestamp'],
        )

    def to_record(self) -> dict:
        return {
            'sender_id': self.sender_id,
            'sender_name': self.sender_name,
            'text': self.text,
            'timestamp': self.timestamp,
        }


@dataclass
class PlayerView:
    """What one player sees of a room: their own image and the opponent's."""
    code: str
    slot: Optional[int]
    my_name: Optional[str] = None
    my_score: int = 0
    my_image: str = ''
    opponent_name: Optional[str] = None
    opponent_score: int = 0
    opponent_image: str = ''
    has_opponent: bool = False
    round_active: bool = False
    can_start: bool = False
    last_winner_id: Optional[str] = None
    last_winner_name: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def player_view(room: Room, local_id) -> PlayerView:
    """Project a room onto the player `local_id`. Prompts are never exposed."""
    slot = room.slot_of(local_id)
    view = PlayerView(
        code=room.code,
        slot=slot,
        round_active=room.round_active,
        can_start=room.is_full and not room.round_active,
        last_winner_id=room.last_winner_id,
        last_winner_name=room.last_winner_name,
    )
    if slot is None:
        return view

    me = room.player(slot)
    opponent = room.player(2 if slot == 1 else 1)
    view.my_name = me.name
    view.my_score = me.score
    view.my_image = me.image
    if opponent:
        view.has_opponent = True
        view.opponent_name = opponent.name
        view.opponent_score = opponent.score
        view.opponent_image = opponent.image
    return view


@dataclass
class GuessResult:
    correct: bool
    room: Room
    guesser_id: str = ''
    guesser_name: str = ''
    round_over: bool = False


class RoomController:
    """
    Drives room lifecycle and rounds against an injected document store and
    image generator.

    `identity` is a callable returning the id of the player making the current
    call; operations also accept an explicit `caller_id`.
    """

    def __init__(self, store, images, identity: Optional[Callable[[], str]] = None,
                 prompts=IMAGE_PROMPTS, rng=None):
        self.store = store
        self.images = images
        self.identity = identity
        self.prompts = tuple(prompts)
        self.rng = rng or random.Random()

    def _caller(self, caller_id=None):
        if caller_id is None and self.identity is not None:
            caller_id = self.identity()
        if not caller_id:
            raise ValidationFailed('Player is not signed in yet. Please try again.')
        return caller_id

    # --- reads ----------------------------------------------------------

    def get_room(self, code) -> Room:
        code = normalize_code(code)
        record = self.store.get_room(code)
        if record is None:
            raise RoomNotFound(code)
        return Room.from_record(record)

    def list_messages(self, code) -> List[ChatMessage]:
        return [ChatMessage.from_record(r) for r in self.store.list_messages(normalize_code(code))]

    def subscribe_room(self, code, on_change: Callable[[Optional[Room]], None]):
        """`on_change` gets a Room, or None once the room is deleted."""
        def forward(record):
            on_change(Room.from_record(record) if record is not None else None)
        return self.store.subscribe_room(normalize_code(code), forward)

    def subscribe_messages(self, code, on_change: Callable[[List[ChatMessage]], None]):
        def forward(records):
            on_change([ChatMessage.from_record(r) for r in records])
        return self.store.subscribe_messages(normalize_code(code), forward)

    @staticmethod
    def player_view(room: Room, local_id) -> PlayerView:
        return player_view(room, local_id)

    # --- room lifecycle -------------------------------------------------

    def create_room(self, display_name, caller_id=None) -> Room:
        name = require_text(display_name, 'Please enter your name.')
        caller_id = self._caller(caller_id)

        room = Room(
            code=self._free_room_code(),
            player1=Player(id=caller_id, name=name),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.store.put_room(room.code, room.to_record())
        logger.info(f"✅ Created room {room.code} for {name} ({caller_id[:8]})")
        return room

    def _free_room_code(self):
        for _ in range(ROOM_CODE_ATTEMPTS):
            code = generate_room_code(self.rng)
            if self.store.get_room(code) is None:
                return code
            logger.warning(f"⚠️  Room code {code} already taken, drawing another")
        raise RemoteWriteFailed('Could not find a free room code. Please try again.')

    def join_room(self, code, display_name, caller_id=None) -> Room:
        """
        Take the open slot of room `code`.

        Raises AlreadyInRoom (an info notice, carrying the room) when the
        caller already holds a slot, so re-entering is harmless.
        """
        code = require_text(normalize_code(code), 'Please enter the room code and your name.')
        name = require_text(display_name, 'Please enter the room code and your name.')
        caller_id = self._caller(caller_id)

        for _ in range(WRITE_ATTEMPTS):
            room = self.get_room(code)
            slot = room.slot_of(caller_id)
            if slot is not None:
                raise AlreadyInRoom(code, slot, room)
            if room.is_full:
                raise RoomFull(code)

            open_slot = 1 if room.player1 is None else 2
            fields = {f'player{open_slot}_id': caller_id, f'player{open_slot}_name': name,
                      f'player{open_slot}_score': 0, f'player{open_slot}_image': '',
                      f'player{open_slot}_prompt': ''}
            if self.store.update_room(code, fields, expected={f'player{open_slot}_id': None}):
                logger.info(f"✅ {name} ({caller_id[:8]}) joined room {code} as player {open_slot}")
                return self.get_room(code)
            logger.warning(f"⚠️  Slot {open_slot} of room {code} was taken concurrently")

        raise RoomFull(code)

    def leave_room(self, code, caller_id=None):
        """
        Vacate the caller's slot.

        Player 1 leaving promotes player 2 into slot 1; the last player leaving
        deletes the room. The room's chat is purged either way. The room write
        is conditional on the slot ids just read and is retried on conflict;
        the purge that follows is idempotent.
        """
        code = normalize_code(code)
        caller_id = self._caller(caller_id)

        for _ in range(WRITE_ATTEMPTS):
            record = self.store.get_room(code)
            if record is None:
                logger.info(f"Room {code} already gone")
                break

            room = Room.from_record(record)
            slot = room.slot_of(caller_id)
            if slot is None:
                logger.warning(f"⚠️  {caller_id[:8]} tried to leave room {code} without being in it")
                return

            if self._vacate(room, slot, caller_id):
                break
        else:
            raise RemoteWriteFailed('Room changed while leaving. Please try again.')

        removed = self.store.delete_messages(code)
        logger.info(f"✅ {caller_id[:8]} left room {code} ({removed} messages purged)")

    def _vacate(self, room, slot, caller_id):
        other_id = room.player2.id if room.player2 else None

        if slot == 1 and room.player2 is None:
            return self.store.delete_room(room.code, expected={'player1_id': caller_id, 'player2_id': None})

        if slot == 1:
            fields = slot_fields(1, room.player2)
            expected = {'player1_id': caller_id, 'player2_id': other_id}
        else:
            fields = {}
            expected = {'player2_id': caller_id}
        fields.update(slot_fields(2, None))
        fields['round_active'] = False
        return self.store.update_room(room.code, fields, expected=expected)

    # --- rounds ---------------------------------------------------------

    def start_round(self, code) -> Room:
        """
        Give both players a fresh image. Both images are generated concurrently;
        if either fails nothing is written.
        """
        room = self.get_room(code)
        if not room.is_full:
            raise ValidationFailed('Two players are needed to start the game.')

        prompt1, prompt2 = pick_prompt_pair(self.prompts, self.rng)
        futures = [image_executor.submit(self.images.generate, p) for p in (prompt1, prompt2)]
        try:
            image1, image2 = [f.result() for f in futures]
        except GameError:
            raise
        except Exception as e:
            logger.error(f"❌ Error generating images for room {room.code}: {e}")
            raise ImageGenerationFailed('Failed to generate images. Please try again.') from e

        fields = {
            'player1_image': image1,
            'player2_image': image2,
            'player1_prompt': prompt1,
            'player2_prompt': prompt2,
            'round_active': True,
        }
        expected = {'player1_id': room.player1.id, 'player2_id': room.player2.id}
        if not self.store.update_room(room.code, fields, expected=expected):
            raise RemoteWriteFailed('Players changed while the images were generated.')

        logger.info(f"✅ New round in room {room.code}")
        return self.get_room(room.code)

    def change_images(self, code) -> Room:
        return self.start_round(code)

    def guess(self, code, text, caller_id=None) -> GuessResult:
        guess_text = require_text(text, 'Please enter your guess.')
        caller_id = self._caller(caller_id)

        for _ in range(WRITE_ATTEMPTS):
            room = self.get_room(code)
            slot = room.slot_of(caller_id)
            if slot is None:
                raise NoSuchPlayer(room.code, caller_id)

            me = room.player(slot)
            opponent = room.player(2 if slot == 1 else 1)
            target = opponent.prompt if opponent else ''
            if not target or target.lower() not in guess_text.lower():
                return GuessResult(correct=False, room=room, guesser_id=caller_id, guesser_name=me.name)
            if not room.round_active:
                # Someone already won this round
                return GuessResult(correct=False, room=room, guesser_id=caller_id,
                                   guesser_name=me.name, round_over=True)

            fields = {
                f'player{slot}_score': me.score + 1,
                'round_active': False,
                'last_winner_id': caller_id,
                'last_winner_name': me.name,
            }
            expected = {
                f'player{slot}_id': caller_id,
                f'player{slot}_score': me.score,
                'round_active': True,
            }
            if self.store.update_room(room.code, fields, expected=expected):
                logger.info(f"✅ {me.name} guessed right in room {room.code}")
                return GuessResult(correct=True, room=self.get_room(room.code),
                                   guesser_id=caller_id, guesser_name=me.name)

        raise RemoteWriteFailed('Room changed while scoring your guess. Please try again.')

    def end_round(self, code) -> Room:
        room = self.get_room(code)
        fields = {
            'round_active': False,
            'player1_image': '',
            'player2_image': '',
            'player1_prompt': '',
            'player2_prompt': '',
        }
        if not self.store.update_room(room.code, fields):
            raise RoomNotFound(room.code)
        logger.info(f"Round ended in room {room.code}")
        return self.get_room(room.code)

    # --- chat -----------------------------------------------------------

    def send_message(self, code, text, caller_id=None, caller_name=None) -> ChatMessage:
        body = require_text(text, 'Message is empty.')
        caller_id = self._caller(caller_id)
        room = self.get_room(code)
        slot = room.slot_of(caller_id)
        if slot is None:
            raise NoSuchPlayer(room.code, caller_id)

        message = ChatMessage(
            sender_id=caller_id,
            sender_name=caller_name or room.player(slot).name,
            text=body,
            timestamp=now_ms(),
        )
        self.store.add_message(room.code, message.to_record())
        return message
