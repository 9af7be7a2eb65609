"""
Meeting request log.

Students create requests (always pending); the addressed professor
accepts or rejects them. The service does not check who transitions a
meeting, and re-applying a status simply overwrites it; the HTTP layer
restricts transitions to the addressed professor.
"""
import logging
from typing import List, Optional

from database import DocumentStore, to_public
from errors import NotFoundError, PlatformError, ValidationError
from notifications import NotificationFeed
from schemas import Meeting
from session import lookup_users

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("accepted", "rejected")
NEWEST_FIRST = [("created_at", -1), ("_id", -1)]


class MeetingLog:
    def __init__(self, store: DocumentStore, notifications: Optional[NotificationFeed] = None):
        self.store = store
        self.notifications = notifications

    def create(self, student_id: str, professor_id: str, date: str, time: str, reason: str,
               class_id: Optional[str] = None) -> Meeting:
        fields = {"student_id": student_id, "professor_id": professor_id,
                  "date": date, "time": time, "reason": reason}
        missing = [name for name, value in fields.items() if not value or not str(value).strip()]
        if missing:
            raise ValidationError(f"Missing required meeting fields: {', '.join(missing)}")
        mid = self.store.create_document("meetings", {
            **fields,
            "class_id": class_id,
            "status": "pending",
            "response_message": None,
        })
        meeting = self.get(mid)
        logger.info("Meeting %s requested by %s with %s", mid, student_id, professor_id)
        self._announce(professor_id, student_id, "New Meeting Request",
                       "{name} has requested a meeting.", mid)
        return meeting

    def get(self, meeting_id: str) -> Meeting:
        doc = self.store.get_document("meetings", meeting_id)
        if not doc:
            raise NotFoundError("Meeting not found")
        return Meeting(**to_public(doc))

    def list_for_student(self, student_id: str) -> List[Meeting]:
        docs = self.store.get_documents("meetings", {"student_id": student_id}, sort=NEWEST_FIRST)
        return [Meeting(**to_public(d)) for d in docs]

    def list_for_professor(self, professor_id: str) -> List[Meeting]:
        docs = self.store.get_documents("meetings", {"professor_id": professor_id}, sort=NEWEST_FIRST)
        return [Meeting(**to_public(d)) for d in docs]

    def transition(self, meeting_id: str, status: str, response_message: Optional[str] = None) -> Meeting:
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"Meeting status must be one of {', '.join(TERMINAL_STATUSES)}")
        values = {"status": status}
        if response_message:
            values["response_message"] = response_message
        if not self.store.update_document("meetings", meeting_id, values):
            raise NotFoundError("Meeting not found")
        meeting = self.get(meeting_id)
        logger.info("Meeting %s %s", meeting_id, status)
        self._announce(meeting.student_id, meeting.professor_id, "Meeting Request Status",
                       "{name} has " + status + " your meeting request.", meeting_id)
        return meeting

    def delete(self, meeting_id: str):
        if not self.store.delete_document("meetings", meeting_id):
            raise NotFoundError("Meeting not found")

    def _announce(self, recipient_id: str, subject_id: str, title: str, template: str, meeting_id: str):
        if self.notifications is None:
            return
        try:
            subject = lookup_users(self.store, [subject_id])[subject_id]
        except PlatformError:
            logger.warning("Skipped notification for meeting %s", meeting_id)
            return
        self.notifications.notify_quietly(
            recipient_id, title, template.format(name=subject.display_name), "meeting", meeting_id
        )
