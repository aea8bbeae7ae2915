"""
Document store for GuessDuel rooms and chat messages.

Rooms are flat records keyed by room code; each room owns an append-only list
of chat messages. Both are namespaced by APP_ID so several deployments can
share one database.

Change notification happens in-process: after each write the store pushes the
latest snapshot to every listener subscribed to that room. All writes of a
deployment go through this server, so the listeners see every change.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from supabase import create_client, Client

import config
from errors import RemoteWriteFailed

logger = logging.getLogger(__name__)

# Most recent messages kept in a chat snapshot
MESSAGE_LIMIT = 100


class Listeners:
    """Thread-safe callback registry keyed by topic."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks: Dict[tuple, Dict[object, Callable]] = {}

    def add(self, topic, callback) -> Callable[[], None]:
        token = object()
        with self._lock:
            self._callbacks.setdefault(topic, {})[token] = callback

        def unsubscribe():
            with self._lock:
                callbacks = self._callbacks.get(topic)
                if callbacks is None:
                    return
                callbacks.pop(token, None)
                if not callbacks:
                    del self._callbacks[topic]

        return unsubscribe

    def has(self, topic) -> bool:
        with self._lock:
            return bool(self._callbacks.get(topic))

    def notify(self, topic, snapshot):
        with self._lock:
            callbacks = list(self._callbacks.get(topic, {}).values())
        for callback in callbacks:
            # One broken listener must not keep the others from updating
            try:
                callback(copy.deepcopy(snapshot))
            except Exception:
                logger.exception(f"❌ Listener failed for {topic[0]} {topic[1]}")


class DocumentStore(ABC):
    """
    Room and message persistence with change subscriptions.

    Subclasses implement the raw reads and writes; this class publishes
    snapshots to subscribers after every write.
    """

    def __init__(self):
        self.listeners = Listeners()

    # --- raw storage, implemented by subclasses -------------------------

    @abstractmethod
    def get_room(self, code: str) -> Optional[dict]:
        """Point read. Returns the room record or None."""

    @abstractmethod
    def list_messages(self, code: str, limit: int = MESSAGE_LIMIT) -> List[dict]:
        """The `limit` most recent messages of a room, oldest first."""

    @abstractmethod
    def _write_room(self, code: str, record: dict):
        pass

    @abstractmethod
    def _update_room(self, code: str, fields: dict, expected: dict) -> bool:
        pass

    @abstractmethod
    def _delete_room(self, code: str, expected: dict) -> bool:
        pass

    @abstractmethod
    def _insert_message(self, code: str, message: dict):
        pass

    @abstractmethod
    def _delete_messages(self, code: str) -> int:
        pass

    def resolve_user_id(self, access_token: str) -> Optional[str]:
        """Map an auth token to a durable user id. Stores without auth return None."""
        return None

    # --- writes with notification ---------------------------------------

    def put_room(self, code: str, record: dict):
        """Full replace of a room record."""
        self._write_room(code, record)
        self._publish_room(code)

    def update_room(self, code: str, fields: dict, expected: Optional[dict] = None) -> bool:
        """
        Field-level merge into an existing room.

        When `expected` is given the update only applies if every named column
        still holds the given value. Returns whether a row was updated.
        """
        applied = self._update_room(code, fields, expected or {})
        if applied:
            self._publish_room(code)
        return applied

    def delete_room(self, code: str, expected: Optional[dict] = None) -> bool:
        deleted = self._delete_room(code, expected or {})
        if deleted:
            self._publish_room(code)
        return deleted

    def add_message(self, code: str, message: dict):
        self._insert_message(code, message)
        self._publish_messages(code)

    def delete_messages(self, code: str) -> int:
        count = self._delete_messages(code)
        if count:
            self._publish_messages(code)
        return count

    # --- subscriptions --------------------------------------------------

    def subscribe_room(self, code: str, on_change: Callable[[Optional[dict]], None]) -> Callable[[], None]:
        """
        Call `on_change` with the current room record (None once deleted) now
        and after every later change. Returns the unsubscribe handle.
        """
        unsubscribe = self.listeners.add(('room', code), on_change)
        try:
            on_change(self.get_room(code))
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def subscribe_messages(self, code: str, on_change: Callable[[List[dict]], None]) -> Callable[[], None]:
        unsubscribe = self.listeners.add(('messages', code), on_change)
        try:
            on_change(self.list_messages(code))
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def _publish_room(self, code):
        topic = ('room', code)
        if self.listeners.has(topic):
            self.listeners.notify(topic, self.get_room(code))

    def _publish_messages(self, code):
        topic = ('messages', code)
        if self.listeners.has(topic):
            self.listeners.notify(topic, self.list_messages(code))


def _matches(record: dict, expected: dict) -> bool:
    return all(record.get(column) == value for column, value in expected.items())


class MemoryStore(DocumentStore):
    """Process-local store, used when Supabase is not configured and in tests."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._rooms: Dict[str, dict] = {}
        self._messages: Dict[str, List[dict]] = {}
        self._next_message_id = 1

    def get_room(self, code):
        with self._lock:
            record = self._rooms.get(code)
            return copy.deepcopy(record) if record is not None else None

    def list_messages(self, code, limit=MESSAGE_LIMIT):
        with self._lock:
            messages = sorted(self._messages.get(code, []), key=lambda m: (m['timestamp'], m['id']))
            return copy.deepcopy(messages[-limit:]) if limit else []

    def _write_room(self, code, record):
        with self._lock:
            self._rooms[code] = copy.deepcopy(record)

    def _update_room(self, code, fields, expected):
        with self._lock:
            record = self._rooms.get(code)
            if record is None or not _matches(record, expected):
                return False
            record.update(copy.deepcopy(fields))
            return True

    def _delete_room(self, code, expected):
        with self._lock:
            record = self._rooms.get(code)
            if record is None or not _matches(record, expected):
                return False
            del self._rooms[code]
            return True

    def _insert_message(self, code, message):
        with self._lock:
            stored = dict(message, id=self._next_message_id, room_code=code)
            self._next_message_id += 1
            self._messages.setdefault(code, []).append(stored)

    def _delete_messages(self, code):
        with self._lock:
            return len(self._messages.pop(code, []))


class SupabaseStore(DocumentStore):
    """
    Supabase-backed store.

    Expects two tables:
      rooms(app_id, code, player1_*, player2_*, round_active,
            last_winner_id, last_winner_name, created_at), primary key (app_id, code)
      messages(id, app_id, room_code, sender_id, sender_name, text, timestamp)
    """

    def __init__(self, client: Client, app_id: str = config.APP_ID,
                 rooms_table: str = 'rooms', messages_table: str = 'messages'):
        super().__init__()
        self.client = client
        self.app_id = app_id
        self.rooms_table = rooms_table
        self.messages_table = messages_table

    def _rooms(self):
        return self.client.table(self.rooms_table)

    def _messages(self):
        return self.client.table(self.messages_table)

    def _execute(self, action: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"❌ Error {action}: {e}")
            raise RemoteWriteFailed(f'Database error while {action}. Please try again.') from e

    @staticmethod
    def _with_expected(query, expected):
        for column, value in expected.items():
            query = query.is_(column, 'null') if value is None else query.eq(column, value)
        return query

    def get_room(self, code):
        query = self._rooms().select('*').eq('app_id', self.app_id).eq('code', code)
        result = self._execute(f'reading room {code}', query)
        if not result.data:
            return None
        record = dict(result.data[0])
        record.pop('app_id', None)
        return record

    def list_messages(self, code, limit=MESSAGE_LIMIT):
        query = (self._messages().select('*')
                 .eq('app_id', self.app_id)
                 .eq('room_code', code)
                 .order('timestamp', desc=True)
                 .limit(limit))
        result = self._execute(f'loading messages of room {code}', query)
        return list(reversed(result.data or []))

    def _write_room(self, code, record):
        row = dict(record, code=code, app_id=self.app_id)
        self._execute(f'writing room {code}', self._rooms().upsert(row))
        logger.info(f"✅ Wrote room {code}")

    def _update_room(self, code, fields, expected):
        query = self._rooms().update(fields).eq('app_id', self.app_id).eq('code', code)
        result = self._execute(f'updating room {code}', self._with_expected(query, expected))
        return bool(result.data)

    def _delete_room(self, code, expected):
        query = self._rooms().delete().eq('app_id', self.app_id).eq('code', code)
        result = self._execute(f'deleting room {code}', self._with_expected(query, expected))
        if result.data:
            logger.info(f"✅ Deleted room {code}")
        return bool(result.data)

    def _insert_message(self, code, message):
        row = dict(message, app_id=self.app_id, room_code=code)
        self._execute(f'sending message to room {code}', self._messages().insert(row))

    def _delete_messages(self, code):
        query = self._messages().delete().eq('app_id', self.app_id).eq('room_code', code)
        result = self._execute(f'deleting messages of room {code}', query)
        return len(result.data or [])

    def resolve_user_id(self, access_token):
        try:
            response = self.client.auth.get_user(access_token)
        except Exception as e:
            logger.warning(f"⚠️  Could not verify access token: {e}")
            return None
        user = getattr(response, 'user', None)
        return user.id if user else None


def create_store() -> DocumentStore:
    """Supabase store when credentials are configured, in-memory store otherwise."""
    if config.SUPABASE_URL and config.SUPABASE_KEY:
        client = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
        logger.info(f"✅ Using Supabase store (namespace: {config.APP_ID})")
        return SupabaseStore(client)

    logger.warning("⚠️  WARNING: Supabase credentials not found. Rooms are kept in memory only.")
    return MemoryStore()
