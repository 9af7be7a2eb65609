import logging
from typing import List, Optional

from database import DocumentStore, to_public
from errors import NotFoundError, PlatformError, ValidationError
from schemas import Notification

logger = logging.getLogger(__name__)

FILTERS = ("all", "unread")
NEWEST_FIRST = [("timestamp", -1), ("_id", -1)]


class NotificationFeed:
    """Per-user notifications persisted in the `notifications` collection."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def list(self, user_id: str, filter: str = "all") -> List[Notification]:
        if filter not in FILTERS:
            raise ValidationError(f"Unknown notification filter: {filter}")
        query = {"user_id": user_id}
        if filter == "unread":
            query["read"] = False
        docs = self.store.get_documents("notifications", query, sort=NEWEST_FIRST)
        return [Notification(**to_public(d)) for d in docs]

    def unread_count(self, user_id: str) -> int:
        return self.store.count_documents("notifications", {"user_id": user_id, "read": False})

    def mark_read(self, user_id: str, notification_id: str):
        doc = self.store.get_document("notifications", notification_id)
        if not doc or doc.get("user_id") != user_id:
            raise NotFoundError("Notification not found")
        if not doc.get("read"):
            self.store.update_document("notifications", notification_id, {"read": True})

    def mark_all_read(self, user_id: str) -> int:
        return self.store.update_documents("notifications", {"user_id": user_id, "read": False}, {"read": True})

    def notify(self, user_id: str, title: str, message: str, type: str = "system",
               related_id: Optional[str] = None) -> Notification:
        nid = self.store.create_document("notifications", {
            "user_id": user_id,
            "title": title,
            "message": message,
            "read": False,
            "type": type,
            "related_id": related_id,
            "timestamp": self.store.now(),
        })
        return Notification(**to_public(self.store.get_document("notifications", nid)))

    def notify_quietly(self, user_id: str, title: str, message: str, type: str = "system",
                       related_id: Optional[str] = None) -> Optional[Notification]:
        """Best-effort variant for side notifications of another write."""
        try:
            return self.notify(user_id, title, message, type, related_id)
        except PlatformError:
            logger.warning("Dropped %s notification for %s", type, user_id)
            return None
