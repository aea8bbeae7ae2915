"""
Game error taxonomy.

Every error carries the notification type the browser should use when the
error is shown to the player ('error' or 'info').
"""


class GameError(Exception):
    """Base class for failures reported back to the player."""
    notice_type = 'error'


class ValidationFailed(GameError):
    """A required field was empty or a precondition does not hold."""


class RoomNotFound(GameError):
    def __init__(self, code):
        super().__init__(f'Room {code} does not exist or was deleted.')
        self.code = code


class RoomFull(GameError):
    def __init__(self, code):
        super().__init__(f'Room {code} is already full.')
        self.code = code


class AlreadyInRoom(GameError):
    notice_type = 'info'

    def __init__(self, code, slot, room=None):
        super().__init__(f'You are already in room {code} as player {slot}.')
        self.code = code
        self.slot = slot
        self.room = room


class NoSuchPlayer(GameError):
    def __init__(self, code, player_id):
        super().__init__(f'You are not a player in room {code}.')
        self.code = code
        self.player_id = player_id


class ImageGenerationFailed(GameError):
    pass


class RemoteWriteFailed(GameError):
    """The document store rejected or failed a call."""
