"""
Chat synchronization.

ChatService carries the writes: appending messages, keeping each chat's
`last_message` preview current, flipping read receipts and the delayed
assistant reply. ChatSession is one viewer's state, kept in sync through
live queries: the viewer's chat list, the history of the single active
chat and a cache of participant display info.

The message insert and the preview update are two separate writes. If
the second one fails the preview stays stale until the next message.
"""
import logging
import random
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

import config
from database import DocumentStore, Subscription, to_public
from errors import AuthenticationError, ForbiddenError, NotFoundError, PlatformError, ValidationError
from presence import Presence
from schemas import AI_ASSISTANT_ID, Chat, Message, User, UserInfo
from session import ASSISTANT_INFO, SessionStore, lookup_users

logger = logging.getLogger(__name__)

CHAT_TYPES = ("direct", "group", "ai")
OLDEST_FIRST = [("timestamp", 1), ("_id", 1)]

AI_REPLIES = [
    "I'd be happy to help with that!",
    "Let me find that information for you.",
    "That's a great question. Here's what I found...",
    "According to your class material, you should focus on...",
    "Don't forget your assignment is due soon!",
    "I've analyzed your question and think that...",
    "Have you considered approaching this from a different angle?",
    "Based on your course content, I'd suggest...",
    "I've checked your schedule, and you have time for this on Thursday.",
    "Your professor has covered this topic in last week's lecture.",
]

Scheduler = Callable[[float, Callable[[], None]], None]
Listener = Callable[[dict], None]

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def timer_scheduler(delay: float, fn: Callable[[], None]):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


def sort_chats(chats: List[Chat]) -> List[Chat]:
    """Newest last message first; chats without messages go last."""
    def key(chat: Chat):
        if chat.last_message is None:
            return (0, _NEVER)
        return (1, chat.last_message.timestamp)

    return sorted(chats, key=key, reverse=True)


def normalize_participants(participant_ids: Iterable[str], creator_id: str) -> List[str]:
    participants = []
    for pid in participant_ids:
        if pid and pid not in participants:
            participants.append(pid)
    if creator_id not in participants:
        participants.append(creator_id)
    return participants


def same_pair(chat: Chat, participants: List[str]) -> bool:
    return (chat.type == "direct" and len(chat.participants) == 2
            and set(chat.participants) == set(participants))


class ChatService:
    def __init__(self, store: DocumentStore, presence: Optional[Presence] = None,
                 scheduler: Scheduler = timer_scheduler, rng: Optional[random.Random] = None,
                 reply_delay: float = config.AI_REPLY_DELAY_SECONDS):
        self.store = store
        self.presence = presence or Presence(store)
        self.scheduler = scheduler
        self.rng = rng or random.Random()
        self.reply_delay = reply_delay

    def get_chat(self, chat_id: str) -> Chat:
        doc = self.store.get_document("chats", chat_id)
        if not doc:
            raise NotFoundError("Chat not found")
        return Chat(**to_public(doc))

    def list_chats(self, user_id: str) -> List[Chat]:
        docs = self.store.get_documents("chats", {"participants": user_id})
        return sort_chats([Chat(**to_public(d)) for d in docs])

    def list_messages(self, chat_id: str) -> List[Message]:
        docs = self.store.get_documents("messages", {"chat_id": chat_id}, sort=OLDEST_FIRST)
        return [Message(**to_public(d)) for d in docs]

    def find_direct_chat(self, first: str, second: str) -> Optional[Chat]:
        doc = self.store.find_one("chats", {
            "type": "direct",
            "participants": {"$all": [first, second], "$size": 2},
        })
        return Chat(**to_public(doc)) if doc else None

    def create_chat(self, creator_id: str, participant_ids: Iterable[str], chat_type: str,
                    group_name: Optional[str] = None, class_id: Optional[str] = None) -> str:
        """Id of the new chat, or of the existing direct chat between the same pair."""
        if chat_type not in CHAT_TYPES:
            raise ValidationError(f"Chat type must be one of {', '.join(CHAT_TYPES)}")
        participants = normalize_participants(participant_ids, creator_id)
        if chat_type == "ai" and AI_ASSISTANT_ID not in participants:
            participants.insert(0, AI_ASSISTANT_ID)
        if chat_type in ("direct", "ai") and len(participants) != 2:
            raise ValidationError(f"A {chat_type} chat needs exactly two participants")
        if chat_type == "direct":
            existing = self.find_direct_chat(*participants)
            if existing is not None:
                return existing.id
        chat_id = self.store.create_document("chats", {
            "participants": participants,
            "type": chat_type,
            "group_name": group_name if chat_type == "group" else None,
            "class_id": class_id,
            "last_message": None,
        })
        logger.info("Created %s chat %s for %d participants", chat_type, chat_id, len(participants))
        return chat_id

    def send_message(self, chat: Chat, sender_id: Optional[str], text: str) -> Optional[Message]:
        """Append a message; empty text or a missing sender is a no-op."""
        if not sender_id or not text or not text.strip():
            return None
        if chat.type == "ai":
            # the sender is always the one viewing an assistant chat
            message = self._append(chat.id, sender_id, text, read=True)
            self._update_preview(message)
            self.scheduler(self.reply_delay, lambda: self.deliver_ai_reply(chat.id))
            return message
        message = self._append(chat.id, sender_id, text, read=False)
        self._update_preview(message)
        return message

    def deliver_ai_reply(self, chat_id: str) -> Optional[Message]:
        """Runs even if the viewer has left the chat; failures are dropped."""
        text = self.rng.choice(AI_REPLIES)
        try:
            reply = self._append(chat_id, AI_ASSISTANT_ID, text, read=False)
            self._update_preview(reply)
        except PlatformError:
            logger.warning("Assistant reply for chat %s was dropped", chat_id)
            return None
        return reply

    def _append(self, chat_id: str, sender_id: str, text: str, read: bool) -> Message:
        timestamp = self.store.now()
        mid = self.store.create_document("messages", {
            "chat_id": chat_id,
            "sender_id": sender_id,
            "text": text,
            "timestamp": timestamp,
            "read": read,
        })
        return Message(id=mid, chat_id=chat_id, sender_id=sender_id, text=text, timestamp=timestamp, read=read)

    def _update_preview(self, message: Message):
        self.store.update_document("chats", message.chat_id, {"last_message": {
            "sender_id": message.sender_id,
            "text": message.text,
            "timestamp": message.timestamp,
        }})

    def mark_messages_read(self, messages: Iterable[Message], viewer_id: str) -> int:
        """Flip read on unread messages from other senders. Best effort."""
        ids = [m.id for m in messages if not m.read and m.sender_id != viewer_id]
        if not ids:
            return 0
        try:
            return self.store.update_documents("messages", {"_id": {"$in": ids}, "read": False}, {"read": True})
        except PlatformError:
            logger.warning("Read receipts for %d messages were dropped", len(ids))
            return 0

    def mark_chat_read(self, chat_id: str, viewer_id: str) -> int:
        try:
            return self.store.update_documents(
                "messages",
                {"chat_id": chat_id, "sender_id": {"$ne": viewer_id}, "read": False},
                {"read": True},
            )
        except PlatformError:
            logger.warning("Read receipts for chat %s were dropped", chat_id)
            return 0

    def unread_count(self, chat_id: str, viewer_id: str) -> int:
        return self.store.count_documents(
            "messages", {"chat_id": chat_id, "sender_id": {"$ne": viewer_id}, "read": False}
        )


class ChatSession:
    """One viewer's live chat state.

    Exactly one message subscription is open at a time, for the active
    chat. `close()` must be called when the viewer goes away.
    """

    def __init__(self, service: ChatService, user: User, listener: Optional[Listener] = None,
                 session: Optional[SessionStore] = None):
        self.service = service
        self.store = service.store
        self.user: Optional[User] = user
        self.chats: List[Chat] = []
        self.messages_by_chat: Dict[str, List[Message]] = {}
        self.user_info: Dict[str, UserInfo] = {AI_ASSISTANT_ID: ASSISTANT_INFO}
        self.active_chat: Optional[Chat] = None
        self.loading = True
        self.closed = False
        self._listener = listener
        self._chats_subscription: Optional[Subscription] = None
        self._messages_subscription: Optional[Subscription] = None
        self._unsubscribe_session = session.subscribe(self._on_session_change) if session else None

    @property
    def active_chat_messages(self) -> List[Message]:
        if self.active_chat is None:
            return []
        return self.messages_by_chat.get(self.active_chat.id, [])

    def subscribe_to_my_chats(self):
        if self.user is None:
            raise AuthenticationError("User not authenticated")
        if self._chats_subscription is not None:
            self._chats_subscription.cancel()
        self._chats_subscription = self.store.watch(
            "chats", {"participants": self.user.id}, self._on_chats, on_error=self._on_error
        )

    def _on_chats(self, docs: List[dict]):
        self.chats = sort_chats([Chat(**to_public(d)) for d in docs])
        self.loading = False
        self._cache_user_info()
        if self.active_chat is not None:
            self.active_chat = next((c for c in self.chats if c.id == self.active_chat.id), self.active_chat)
        self._emit({"type": "chats", "chats": self.chats})

    def _cache_user_info(self):
        seen = {pid for chat in self.chats for pid in chat.participants}
        seen.add(self.user.id)
        missing = [pid for pid in seen if pid not in self.user_info]
        if missing:
            self.user_info.update(lookup_users(self.store, missing))

    def set_active_chat(self, chat: Union[Chat, str, None]):
        if isinstance(chat, str):
            chat = self._find_chat(chat)
        elif chat is not None:
            self._require_participant(chat)
        if self._messages_subscription is not None:
            self._messages_subscription.cancel()
            self._messages_subscription = None
        self.active_chat = chat
        if chat is None:
            return
        chat_id = chat.id
        self._messages_subscription = self.store.watch(
            "messages", {"chat_id": chat_id},
            lambda docs: self._on_messages(chat_id, docs),
            sort=OLDEST_FIRST, on_error=self._on_error,
        )

    def _on_messages(self, chat_id: str, docs: List[dict]):
        self.messages_by_chat[chat_id] = [Message(**to_public(d)) for d in docs]
        self._emit({"type": "messages", "chat_id": chat_id, "messages": self.messages_by_chat[chat_id]})
        if self.user is not None and self.active_chat is not None and self.active_chat.id == chat_id:
            self.mark_as_read(chat_id)

    def mark_as_read(self, chat_id: Optional[str] = None) -> int:
        if self.user is None:
            return 0
        chat_id = chat_id or (self.active_chat.id if self.active_chat else None)
        if chat_id is None:
            return 0
        if self.active_chat is None or chat_id != self.active_chat.id:
            self._find_chat(chat_id)
        return self.service.mark_messages_read(self.messages_by_chat.get(chat_id, []), self.user.id)

    def send_message(self, chat_id: str, text: str) -> Optional[Message]:
        if self.user is None or not text or not text.strip():
            return None
        return self.service.send_message(self._find_chat(chat_id), self.user.id, text)

    def create_chat(self, participant_ids: Iterable[str], chat_type: str,
                    group_name: Optional[str] = None, class_id: Optional[str] = None) -> str:
        if self.user is None:
            raise AuthenticationError("User not authenticated")
        participants = normalize_participants(participant_ids, self.user.id)
        if chat_type == "direct" and len(participants) == 2:
            existing = next((c for c in self.chats if same_pair(c, participants)), None)
            if existing is not None:
                return existing.id
        return self.service.create_chat(self.user.id, participants, chat_type, group_name, class_id)

    def unread_count(self, chat_id: str) -> int:
        if self.user is None:
            return 0
        return self.service.unread_count(chat_id, self.user.id)

    def is_online(self, user_id: str) -> bool:
        return self.service.presence.is_online(user_id)

    def get_user_info(self, user_id: str) -> Optional[UserInfo]:
        return self.user_info.get(user_id)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.set_active_chat(None)
        if self._chats_subscription is not None:
            self._chats_subscription.cancel()
            self._chats_subscription = None
        if self._unsubscribe_session is not None:
            self._unsubscribe_session()
            self._unsubscribe_session = None
        self.user = None
        self._emit({"type": "closed"})

    def _find_chat(self, chat_id: str) -> Chat:
        cached = next((c for c in self.chats if c.id == chat_id), None)
        return self._require_participant(cached if cached is not None else self.service.get_chat(chat_id))

    def _require_participant(self, chat: Chat) -> Chat:
        if self.user is None or self.user.id not in chat.participants:
            raise ForbiddenError("Not a participant of this chat")
        return chat

    def _on_session_change(self, user: Optional[User]):
        if user is None:
            self.close()

    def _on_error(self, exc: PlatformError):
        logger.error("Chat subscription for %s failed: %s", self.user.id if self.user else None, exc)
        self._emit({"type": "error", "detail": exc.message})

    def _emit(self, event: dict):
        if self._listener is not None:
            self._listener(event)
