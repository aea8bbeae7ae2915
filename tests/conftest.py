"""
Pytest fixtures for GuessDuel tests.
"""
import random
import threading

import pytest

from db import MemoryStore
from errors import ImageGenerationFailed
from game import Player, Room, RoomController


class FakeImages:
    """Image generator stand-in: the 'image' is the prompt itself."""

    def __init__(self):
        self.prompts = []
        self.fail = False
        self.error = None
        self._lock = threading.Lock()

    def generate(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise ImageGenerationFailed('Failed to generate images. Please try again.')
        return f'data:image/png;base64,{prompt}'


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def controller(store, images):
    return RoomController(store, images, rng=random.Random(7))


@pytest.fixture
def ready_room(controller):
    """Room with Alice in slot 1 and Bob in slot 2."""
    room = controller.create_room('Alice', caller_id='alice')
    return controller.join_room(room.code, 'Bob', caller_id='bob')


@pytest.fixture
def active_room(store):
    """Room AB12CD mid-round: Alice has 'a red car', Bob has 'a cute cat'."""
    room = Room(
        code='AB12CD',
        player1=Player(id='alice', name='Alice', image='img-1', prompt='a red car'),
        player2=Player(id='bob', name='Bob', image='img-2', prompt='a cute cat'),
        round_active=True,
    )
    store.put_room(room.code, room.to_record())
    return room
