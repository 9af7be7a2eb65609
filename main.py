import asyncio
import logging
import os
from dataclasses import dataclass
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from starlette.concurrency import run_in_threadpool

import config
from chat import ChatService, ChatSession, Scheduler, timer_scheduler
from classes import ClassDirectory
from database import DocumentStore, get_database
from errors import AuthenticationError, PlatformError, PortalError
from identity import IdentityProvider
from meetings import MeetingLog
from notifications import NotificationFeed
from presence import Presence
from schemas import Chat, ChatType, Class, Meeting, Message, Notification, Role, Session, User
from session import SessionStore, load_profile, register_user

logger = logging.getLogger(__name__)


# -----------------------------
# Composition root
# -----------------------------
@dataclass
class Services:
    store: DocumentStore
    identity: IdentityProvider
    classes: ClassDirectory
    meetings: MeetingLog
    chats: ChatService
    notifications: NotificationFeed
    presence: Presence


def build_services(store: DocumentStore, scheduler: Scheduler = timer_scheduler, rng=None) -> Services:
    notifications = NotificationFeed(store)
    presence = Presence(store)
    return Services(
        store=store,
        identity=IdentityProvider(store),
        classes=ClassDirectory(store),
        meetings=MeetingLog(store, notifications),
        chats=ChatService(store, presence, scheduler=scheduler, rng=rng),
        notifications=notifications,
        presence=presence,
    )


# -----------------------------
# Request models
# -----------------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    display_name: str
    role: Role = "student"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class MeetingCreate(BaseModel):
    professor_id: str
    class_id: Optional[str] = None
    date: str
    time: str
    reason: str


class MeetingResponse(BaseModel):
    status: Literal["accepted", "rejected"]
    response_message: Optional[str] = None


class ChatCreate(BaseModel):
    participants: List[str]
    type: ChatType = "direct"
    group_name: Optional[str] = None
    class_id: Optional[str] = None


class MessageCreate(BaseModel):
    text: str


class EnrollRequest(BaseModel):
    student_id: str


class SubgroupCreate(BaseModel):
    name: str
    members: List[str] = []
    due_date: Optional[str] = None
    color: str = "bg-blue-500"


class SubgroupUpdate(BaseModel):
    name: Optional[str] = None
    members: Optional[List[str]] = None
    due_date: Optional[str] = None
    last_message: Optional[str] = None
    color: Optional[str] = None


class ClassUpdate(BaseModel):
    name: Optional[str] = None
    schedule: Optional[str] = None
    description: Optional[str] = None


# -----------------------------
# Dependencies
# -----------------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    return authorization.replace("Bearer ", "").strip()


def get_current_user(token: str = Depends(get_token), services: Services = Depends(get_services)) -> User:
    user_id = services.identity.resolve(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return load_profile(services.store, user_id)


def require_participant(chat: Chat, user: User):
    if user.id not in chat.participants:
        raise HTTPException(status_code=403, detail="Not a participant of this chat")


def require_instructor(found: Class, user: User):
    if user.role != "professor" or found.instructor_id != user.id:
        raise HTTPException(status_code=403, detail="Only the class instructor can change it")


def instructed_class(class_id: str, user: User, services: Services) -> Class:
    found = services.classes.get_class(class_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Class not found")
    require_instructor(found, user)
    return found


router = APIRouter()


@router.get("/")
def read_root():
    return {"message": "University Portal API"}


@router.get("/schema")
def get_schema():
    # Minimal schema export so collections can be inspected
    return {
        "users": User.model_json_schema(),
        "classes": Class.model_json_schema(),
        "meetings": Meeting.model_json_schema(),
        "chats": Chat.model_json_schema(),
        "messages": Message.model_json_schema(),
        "notifications": Notification.model_json_schema(),
        "sessions": Session.model_json_schema(),
    }


@router.get("/test")
def test_database(services: Services = Depends(get_services)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": services.store.name,
        "connection_status": "Not Connected",
        "collections": [],
        "live_queries": services.store.live_query_count(),
    }
    try:
        resp["collections"] = services.store.list_collection_names()[:10]
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except PlatformError as e:
        resp["database"] = f"⚠️  Connected but Error: {e.message[:50]}"
    return resp


# -----------------------------
# Auth
# -----------------------------
@router.post("/auth/register")
def register(req: RegisterRequest, services: Services = Depends(get_services)):
    user = register_user(services.identity, req.email, req.password, req.display_name, req.role)
    return {"user": user}


@router.post("/auth/login")
def login(req: LoginRequest, services: Services = Depends(get_services)):
    session = SessionStore(services.identity, services.store)
    user = session.sign_in(req.email, req.password)
    session.release()
    return {"token": session.token, "user": user}


@router.post("/auth/logout")
def logout(token: str = Depends(get_token), services: Services = Depends(get_services)):
    if not services.identity.revoke(token):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"status": "ok"}


@router.get("/auth/me")
def me(current: User = Depends(get_current_user)):
    return current


# -----------------------------
# Classes
# -----------------------------
@router.get("/classes")
def my_classes(current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return services.classes.list_for_role(current)


@router.get("/classes/{class_id}")
def class_details(class_id: str, current: User = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    found = services.classes.get_class(class_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Class not found")
    return found


@router.patch("/classes/{class_id}")
def update_class(class_id: str, req: ClassUpdate, current: User = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    return services.classes.update_class(class_id, **req.model_dump(exclude_unset=True))


@router.delete("/classes/{class_id}")
def delete_class(class_id: str, current: User = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    services.classes.delete_class(class_id)
    return {"status": "ok"}


@router.get("/classes/{class_id}/students")
def class_roster(class_id: str, current: User = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    return services.classes.roster(class_id)


@router.post("/classes/{class_id}/students")
def enroll(class_id: str, req: EnrollRequest, current: User = Depends(get_current_user),
           services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    return services.classes.enroll_student(class_id, req.student_id)


@router.delete("/classes/{class_id}/students/{student_id}")
def unenroll(class_id: str, student_id: str, current: User = Depends(get_current_user),
             services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    return services.classes.remove_student(class_id, student_id)


@router.post("/classes/{class_id}/subgroups")
def add_subgroup(class_id: str, req: SubgroupCreate, current: User = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    return services.classes.create_subgroup(class_id, req.name, req.members, req.due_date, req.color)


@router.patch("/classes/{class_id}/subgroups/{subgroup_id}")
def edit_subgroup(class_id: str, subgroup_id: str, req: SubgroupUpdate, current: User = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    instructed_class(class_id, current, services)
    return services.classes.update_subgroup(class_id, subgroup_id, **req.model_dump(exclude_unset=True))


# -----------------------------
# Meetings
# -----------------------------
@router.post("/meetings")
def request_meeting(req: MeetingCreate, current: User = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    if current.role != "student":
        raise HTTPException(status_code=403, detail="Only students can request meetings")
    return services.meetings.create(current.id, req.professor_id, req.date, req.time, req.reason, req.class_id)


@router.get("/meetings")
def my_meetings(current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    if current.role == "professor":
        return services.meetings.list_for_professor(current.id)
    return services.meetings.list_for_student(current.id)


@router.patch("/meetings/{meeting_id}")
def respond_to_meeting(meeting_id: str, req: MeetingResponse, current: User = Depends(get_current_user),
                       services: Services = Depends(get_services)):
    meeting = services.meetings.get(meeting_id)
    if current.role != "professor" or meeting.professor_id != current.id:
        raise HTTPException(status_code=403, detail="Only the addressed professor can respond")
    return services.meetings.transition(meeting_id, req.status, req.response_message)


@router.delete("/meetings/{meeting_id}")
def withdraw_meeting(meeting_id: str, current: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    meeting = services.meetings.get(meeting_id)
    if meeting.student_id != current.id:
        raise HTTPException(status_code=403, detail="Only the requesting student can withdraw")
    services.meetings.delete(meeting_id)
    return {"status": "ok"}


# -----------------------------
# Chats
# -----------------------------
@router.get("/chats")
def my_chats(current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    out = []
    for chat in services.chats.list_chats(current.id):
        out.append({**chat.model_dump(), "unread": services.chats.unread_count(chat.id, current.id)})
    return out


@router.post("/chats")
def create_chat(req: ChatCreate, current: User = Depends(get_current_user),
                services: Services = Depends(get_services)):
    chat_id = services.chats.create_chat(current.id, req.participants, req.type, req.group_name, req.class_id)
    return services.chats.get_chat(chat_id)


@router.get("/chats/{chat_id}/messages")
def chat_messages(chat_id: str, current: User = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    require_participant(services.chats.get_chat(chat_id), current)
    return services.chats.list_messages(chat_id)


@router.post("/chats/{chat_id}/messages")
def send_message(chat_id: str, req: MessageCreate, current: User = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    chat = services.chats.get_chat(chat_id)
    require_participant(chat, current)
    message = services.chats.send_message(chat, current.id, req.text)
    if message is None:
        raise HTTPException(status_code=422, detail="Message text is required")
    return message


@router.post("/chats/{chat_id}/read")
def read_chat(chat_id: str, current: User = Depends(get_current_user),
              services: Services = Depends(get_services)):
    require_participant(services.chats.get_chat(chat_id), current)
    return {"marked": services.chats.mark_chat_read(chat_id, current.id)}


# -----------------------------
# Notifications
# -----------------------------
@router.get("/notifications")
def my_notifications(filter: str = "all", current: User = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    return services.notifications.list(current.id, filter)


@router.post("/notifications/read-all")
def read_all_notifications(current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"marked": services.notifications.mark_all_read(current.id)}


@router.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, current: User = Depends(get_current_user),
                      services: Services = Depends(get_services)):
    services.notifications.mark_read(current.id, notification_id)
    return {"status": "ok"}


# -----------------------------
# Presence
# -----------------------------
@router.post("/presence/heartbeat")
def heartbeat(current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    services.presence.heartbeat(current.id)
    return {"online": True}


@router.get("/presence/{user_id}")
def presence(user_id: str, current: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"user_id": user_id, "online": services.presence.is_online(user_id)}


# -----------------------------
# Live chat stream
# -----------------------------
def _handle_command(chat: ChatSession, services: Services, command: dict) -> Optional[dict]:
    action = command.get("action")
    if chat.closed:
        return {"type": "error", "detail": "Session closed"}
    if action == "open":
        chat.set_active_chat(command.get("chat_id"))
    elif action == "close":
        chat.set_active_chat(None)
    elif action == "send":
        chat.send_message(command.get("chat_id"), command.get("text", ""))
    elif action == "create":
        chat_id = chat.create_chat(command.get("participants", []), command.get("type", "direct"),
                                   command.get("group_name"), command.get("class_id"))
        return {"type": "created", "chat_id": chat_id}
    elif action == "read":
        return {"type": "read", "marked": chat.mark_as_read(command.get("chat_id"))}
    elif action == "heartbeat":
        services.presence.heartbeat(chat.user.id)
    else:
        return {"type": "error", "detail": f"Unknown action: {action}"}
    return None


async def _forward_events(websocket: WebSocket, outbox: asyncio.Queue):
    while True:
        event = await outbox.get()
        try:
            await websocket.send_json(jsonable_encoder(event))
        except WebSocketDisconnect:
            return


@router.websocket("/ws/chats")
async def chat_stream(websocket: WebSocket, token: str = Query(...)):
    services: Services = websocket.app.state.services
    session = SessionStore(services.identity, services.store)
    try:
        user = await run_in_threadpool(session.restore, token)
    except AuthenticationError:
        user = None
    if user is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def push(event: dict):
        loop.call_soon_threadsafe(outbox.put_nowait, event)

    chat = ChatSession(services.chats, user, listener=push, session=session)
    sender = asyncio.create_task(_forward_events(websocket, outbox))
    try:
        await run_in_threadpool(chat.subscribe_to_my_chats)
        while True:
            command = await websocket.receive_json()
            try:
                reply = await run_in_threadpool(_handle_command, chat, services, command)
            except PortalError as exc:
                reply = {"type": "error", "detail": exc.message}
            if reply is not None:
                push(reply)
    except WebSocketDisconnect:
        logger.debug("Chat stream for %s disconnected", user.id)
    finally:
        chat.close()
        session.release()
        sender.cancel()


# -----------------------------
# App
# -----------------------------
async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="University Portal API", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PortalError, portal_error_handler)
    app.state.services = services

    @app.on_event("startup")
    def on_startup():
        if app.state.services is None:
            app.state.services = build_services(DocumentStore(get_database()))
        app.state.services.store.ensure_indexes()

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config.configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
