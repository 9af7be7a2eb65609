"""Heartbeat presence: a user is online while their last heartbeat is recent."""
from datetime import timedelta

import config
from database import DocumentStore
from schemas import AI_ASSISTANT_ID


class Presence:
    def __init__(self, store: DocumentStore,
                 window: timedelta = timedelta(seconds=config.PRESENCE_WINDOW_SECONDS)):
        self.store = store
        self.window = window

    def heartbeat(self, user_id: str) -> bool:
        return self.store.update_document("users", user_id, {"last_active": self.store.now()})

    def is_online(self, user_id: str) -> bool:
        if user_id == AI_ASSISTANT_ID:
            return True
        doc = self.store.get_document("users", user_id)
        if not doc or not doc.get("last_active"):
            return False
        return self.store.now() - doc["last_active"] <= self.window
