"""
Demo data for the portal.

    python seed.py seed     # clear, then load the demo cast
    python seed.py clear    # delete every document and identity account

Every demo account uses the password `password123`.
"""
import argparse
import logging
import random
from datetime import timedelta
from typing import Dict, List, Optional

import config
from database import COLLECTIONS, IDENTITY_COLLECTIONS, DocumentStore, get_database
from identity import IdentityProvider
from schemas import AI_ASSISTANT_ID
from session import register_user

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "password123"
PROFESSOR_ID = "prof_llorente"
CLASS_ID = "conflicts101"

# (handle, display name); ids are student_<handle>, emails <handle>.ieu2021@student.ie.edu
STUDENTS = [
    ("vbarbier", "Victor Barbier"),
    ("lbrudniakber", "Lea Brudniak"),
    ("ncajiao", "Nicolas Cajiao"),
    ("rdantasmarti", "Ricardo Dantas"),
    ("cdecarcer", "Carlos de Carcer"),
    ("mroriz", "Manuel Rodriguez"),
    ("jgarcia", "Jorge Garcia"),
    ("dgrechezelko", "Daria Grechezelko"),
    ("tvonhabsburg", "Tamara von Habsburg"),
    ("nkravchuk", "Nikita Kravchuk"),
    ("clopez", "Carlos Lopez"),
    ("elozoya", "Eduardo Lozoya"),
    ("amartin", "Alvaro Martin"),
    ("amasquelierp", "Alexandre Masquelier"),
    ("imoral", "Ignacio Moral"),
    ("jmorenoz", "Javier Moreno"),
    ("amory", "Alexandre Mory"),
    ("rmosconikatc", "Riccardo Mosconi"),
    ("qnguyen", "Quoc Nguyen"),
    ("aperin", "Alvaro Perin"),
    ("mrestrepo", "Maria Restrepo"),
    ("asafie", "Alexandru Safie"),
    ("ssalinero", "Sofia Salinero"),
    ("aschiavolin", "Alberto Schiavolin"),
    ("ssella", "Sara Sella"),
    ("rsiddiqui", "Raza Siddiqui"),
    ("atopalovic", "Aleksa Topalovic"),
    ("murunuela", "Marcos Urunuela"),
    ("avalencia", "Alejandro Valencia"),
    ("cvelasco", "Carmen Velasco"),
    ("tyadav", "Tanay Yadav"),
    ("etakimoto", "Emilie Takimoto"),
]

STUDENT_IDS = [f"student_{handle}" for handle, _ in STUDENTS]

SUBGROUPS = [
    ("Research Group A", "Please check the new reading materials", "2025-04-25", "bg-blue-500"),
    ("Research Group B", "Case study presentation next week", "2025-04-27", "bg-purple-500"),
    ("Research Group C", "Draft of final paper due soon", "2025-04-30", "bg-green-500"),
    ("Research Group D", "Meeting with professor on Thursday", "2025-05-02", "bg-pink-500"),
]

PROFESSOR_LINES = ["How is your project going?", "Please submit your assignment by Friday.",
                   "Would you like to schedule a meeting?"]
STUDENT_LINES = ["I'm making good progress!", "Thank you for the feedback on my research proposal!",
                 "Yes, I would like to schedule a meeting."]
GROUP_LINES = [
    "Hi everyone, how's the project going?",
    "I've added my section to the document",
    "Can we meet tomorrow to discuss the next steps?",
    "Has anyone found any good sources for the research?",
    "I'm having trouble with the analysis part, can someone help?",
]
DIRECT_LINES = [
    "Hey, how's it going?",
    "Do you have time to review my part of the project?",
    "Are you going to the lecture tomorrow?",
    "I found a great resource for our research",
    "Let's meet at the library to study",
    "Did you understand what the professor meant about the case study?",
]


def student_email(handle: str) -> str:
    return f"{handle}.ieu2021@student.ie.edu"


def clear_database(store: DocumentStore) -> Dict[str, int]:
    """Delete every document in every collection, identity accounts and sessions included."""
    deleted = {}
    for name in COLLECTIONS + IDENTITY_COLLECTIONS:
        deleted[name] = store.delete_documents(name)
        logger.info("Cleared collection: %s (%d)", name, deleted[name])
    return deleted


def seed_users(identity: IdentityProvider) -> List[str]:
    register_user(
        identity, "cllorente@faculty.ie.edu", DEFAULT_PASSWORD, "Professor Carlos Llorente", "professor",
        user_id=PROFESSOR_ID, department="Computer Science",
        office_hours="Mondays 3-5pm, Thursdays 2-4pm", teaching_classes=[CLASS_ID],
    )
    for handle, name in STUDENTS:
        register_user(
            identity, student_email(handle), DEFAULT_PASSWORD, name, "student",
            user_id=f"student_{handle}", major="Computer Science", year=3, enrolled_classes=[CLASS_ID],
        )
    logger.info("Users seeded: %d", len(STUDENTS) + 1)
    return [PROFESSOR_ID] + STUDENT_IDS


def seed_classes(store: DocumentStore):
    subgroups = []
    for i, (name, last_message, due_date, color) in enumerate(SUBGROUPS):
        subgroups.append({
            "id": f"{CLASS_ID}_sg_{i + 1}",
            "name": name,
            "class_id": CLASS_ID,
            "members": STUDENT_IDS[i * 8:(i + 1) * 8],
            "due_date": due_date,
            "last_message": last_message,
            "color": color,
        })
    store.create_document("classes", {
        "name": "Conflicts Business and Law",
        "instructor_id": PROFESSOR_ID,
        "schedule": "Tue, 10:00AM - 12:00PM",
        "description": "Study of conflicts between business interests and legal frameworks",
        "enrolled_students": list(STUDENT_IDS),
        "subgroups": subgroups,
    }, doc_id=CLASS_ID)
    logger.info("Classes seeded: 1")


def seed_meetings(store: DocumentStore):
    now = store.now()
    meetings = [
        ("meeting_1", "student_vbarbier", "2025-03-15", "14:00", "Discuss case study analysis",
         "pending", None, 3),
        ("meeting_2", "student_lbrudniakber", "2025-03-18", "13:30", "Review research proposal",
         "rejected", "I have a faculty meeting at this time. Please reschedule for next week.", 5),
        ("meeting_3", "student_ncajiao", "2025-03-20", "15:00", "Discuss research methodology",
         "pending", None, 2),
        ("meeting_4", "student_rdantasmarti", "2025-03-16", "11:00", "Review assignment feedback",
         "accepted", "Looking forward to our meeting!", 6),
    ]
    for mid, student_id, date, time, reason, status, response, days_ago in meetings:
        store.create_document("meetings", {
            "student_id": student_id,
            "professor_id": PROFESSOR_ID,
            "class_id": CLASS_ID,
            "date": date,
            "time": time,
            "reason": reason,
            "status": status,
            "response_message": response,
            "created_at": now - timedelta(days=days_ago),
        }, doc_id=mid)
    logger.info("Meetings seeded: %d", len(meetings))


def _chat(store: DocumentStore, chat_id: str, participants: List[str], chat_type: str,
          messages: List[dict], created_at, group_name: Optional[str] = None, class_id: Optional[str] = None):
    """Insert a chat and its messages; the preview is the latest message."""
    latest = max(messages, key=lambda m: m["timestamp"]) if messages else None
    store.create_document("chats", {
        "participants": participants,
        "type": chat_type,
        "group_name": group_name,
        "class_id": class_id,
        "last_message": {
            "sender_id": latest["sender_id"],
            "text": latest["text"],
            "timestamp": latest["timestamp"],
        } if latest else None,
        "created_at": created_at,
    }, doc_id=chat_id)
    for j, message in enumerate(messages):
        store.create_document("messages", {"chat_id": chat_id, **message}, doc_id=f"{chat_id}_msg_{j}")


def seed_chats(store: DocumentStore, rng: random.Random) -> int:
    now = store.now()
    day = timedelta(days=1)
    names = dict((f"student_{handle}", name) for handle, name in STUDENTS)
    count = 0

    for sid in STUDENT_IDS:
        _chat(store, f"ai_chat_{sid}", [sid, AI_ASSISTANT_ID], "ai", [{
            "sender_id": AI_ASSISTANT_ID,
            "text": f"Hello {names[sid]}, I'm Ed AI. How can I help you today?",
            "timestamp": now - day,
            "read": True,
        }], created_at=now - 30 * day)
        count += 1

    for i, sid in enumerate(STUDENT_IDS[:10]):
        offset = (i + 1) * day
        messages = []
        for j in range(rng.randint(2, 4)):
            by_professor = j % 2 == 0
            messages.append({
                "sender_id": PROFESSOR_ID if by_professor else sid,
                "text": (PROFESSOR_LINES if by_professor else STUDENT_LINES)[j % 3],
                "timestamp": now - offset + timedelta(hours=j),
                "read": True,
            })
        _chat(store, f"prof_student_{i}", [sid, PROFESSOR_ID], "direct", messages,
              created_at=now - offset - 5 * day)
        count += 1

    for i, (group_name, _, _, _) in enumerate(SUBGROUPS):
        members = STUDENT_IDS[i * 8:(i + 1) * 8]
        messages = [{
            "sender_id": rng.choice(members),
            "text": text,
            "timestamp": now - i * day - timedelta(hours=3 * j),
            "read": j < 3,
        } for j, text in enumerate(GROUP_LINES)]
        _chat(store, f"group_{CLASS_ID}_sg_{i + 1}", members, "group", messages,
              created_at=now - 20 * day, group_name=group_name, class_id=CLASS_ID)
        count += 1

    pairs = set()
    i = 0
    while i < 15:
        first, second = rng.sample(STUDENT_IDS, 2)
        if frozenset((first, second)) in pairs:
            continue
        pairs.add(frozenset((first, second)))
        offset = rng.randrange(10) * day
        total = rng.randint(2, 5)
        unread_tail = rng.randrange(2)
        messages = [{
            "sender_id": first if j % 2 == 0 else second,
            "text": rng.choice(DIRECT_LINES),
            "timestamp": now - offset + timedelta(minutes=30 * j),
            "read": j < total - unread_tail,
        } for j in range(total)]
        _chat(store, f"student_direct_{i}", [first, second], "direct", messages,
              created_at=now - offset - 15 * day)
        count += 1
        i += 1

    logger.info("Chats seeded: %d", count)
    return count


def seed_notifications(store: DocumentStore):
    now = store.now()
    notifications = [
        ("notif_1", "student_rdantasmarti", "Meeting Request Status",
         "Professor Llorente has accepted your meeting request.", False, "meeting", "meeting_4", 5),
        ("notif_2", "student_lbrudniakber", "Meeting Request Status",
         "Professor Llorente has rejected your meeting request. Please reschedule.", True, "meeting",
         "meeting_2", 4),
        ("notif_3", "student_ncajiao", "New Assignment",
         "A new assignment has been posted in Conflicts Business and Law.", False, "class", CLASS_ID, 1),
        ("notif_4", "student_vbarbier", "New Message",
         "You have a new message from Professor Llorente.", False, "chat", "prof_student_0", 9),
        ("notif_5", PROFESSOR_ID, "New Meeting Request",
         "Victor Barbier has requested a meeting.", True, "meeting", "meeting_1", 3),
        ("notif_6", PROFESSOR_ID, "New Meeting Request",
         "Nicolas Cajiao has requested a meeting.", False, "meeting", "meeting_3", 2),
    ]
    for nid, user_id, title, message, read, kind, related_id, days_ago in notifications:
        store.create_document("notifications", {
            "user_id": user_id,
            "title": title,
            "message": message,
            "read": read,
            "type": kind,
            "related_id": related_id,
            "timestamp": now - timedelta(days=days_ago),
        }, doc_id=nid)
    logger.info("Notifications seeded: %d", len(notifications))


def seed_all(store: DocumentStore, identity: Optional[IdentityProvider] = None,
             rng: Optional[random.Random] = None):
    identity = identity or IdentityProvider(store)
    rng = rng or random.Random()
    clear_database(store)
    seed_users(identity)
    seed_classes(store)
    seed_meetings(store)
    seed_chats(store, rng)
    seed_notifications(store)
    logger.info("Database seeding completed successfully!")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed or clear the portal database")
    parser.add_argument("command", choices=["seed", "clear"])
    parser.add_argument("--random-seed", type=int, default=None, help="make the generated chats reproducible")
    args = parser.parse_args(argv)

    config.configure_logging()
    store = DocumentStore(get_database())
    if args.command == "clear":
        clear_database(store)
    else:
        seed_all(store, rng=random.Random(args.random_seed))


if __name__ == "__main__":
    main()
