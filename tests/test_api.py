import pytest
from starlette.websockets import WebSocketDisconnect


@pytest.fixture
def conflicts(services, professor, student):
    return services.classes.create_class(
        "Conflicts Business and Law", professor.id, "Tue, 10:00AM - 12:00PM",
        enrolled_students=[student.id], class_id="conflicts101",
    )


@pytest.fixture
def student_headers(login, student):
    return login("vbarbier.ieu2021@student.ie.edu")


@pytest.fixture
def professor_headers(login, professor):
    return login("cllorente@faculty.ie.edu")


def test_health_and_schema(client):
    health = client.get("/test").json()
    assert health["backend"] == "✅ Running"
    assert health["connection_status"] == "Connected"

    schema = client.get("/schema").json()
    assert {"users", "classes", "meetings", "chats", "messages", "notifications"} <= set(schema)


def test_register_login_me(client, login):
    res = client.post("/auth/register", json={
        "email": "new.ieu2021@student.ie.edu", "password": "secret", "display_name": "New Student",
    })
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "student"

    headers = login("new.ieu2021@student.ie.edu", "secret")
    me = client.get("/auth/me", headers=headers).json()
    assert me["display_name"] == "New Student"
    assert "password_hash" not in me


def test_register_duplicate_email(client, student):
    res = client.post("/auth/register", json={
        "email": "vbarbier.ieu2021@student.ie.edu", "password": "x", "display_name": "Dup",
    })
    assert res.status_code == 422
    assert res.json()["detail"] == "Email already registered"


def test_bad_credentials_and_tokens(client, student):
    res = client.post("/auth/login", json={"email": "vbarbier.ieu2021@student.ie.edu", "password": "nope"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid email or password"

    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer bogus"}).status_code == 401


def test_logout_invalidates_token(client, student_headers):
    assert client.post("/auth/logout", headers=student_headers).status_code == 200
    assert client.get("/auth/me", headers=student_headers).status_code == 401


def test_meeting_request_and_response(client, student_headers, professor_headers, professor):
    res = client.post("/meetings", headers=student_headers, json={
        "professor_id": professor.id, "date": "2025-03-15", "time": "14:00", "reason": "discuss proposal",
    })
    assert res.status_code == 200
    meeting_id = res.json()["id"]

    [pending] = client.get("/meetings", headers=professor_headers).json()
    assert (pending["id"], pending["status"]) == (meeting_id, "pending")

    res = client.patch(f"/meetings/{meeting_id}", headers=professor_headers,
                       json={"status": "accepted", "response_message": "See you then!"})
    assert res.status_code == 200

    [seen] = client.get("/meetings", headers=student_headers).json()
    assert seen["status"] == "accepted"
    assert seen["response_message"] == "See you then!"


def test_meeting_permissions(client, student_headers, professor_headers, professor, make_user, login):
    res = client.post("/meetings", headers=professor_headers, json={
        "professor_id": professor.id, "date": "2025-03-15", "time": "14:00", "reason": "x",
    })
    assert res.status_code == 403

    meeting_id = client.post("/meetings", headers=student_headers, json={
        "professor_id": professor.id, "date": "2025-03-15", "time": "14:00", "reason": "x",
    }).json()["id"]
    make_user("prof_other", "Other Prof", role="professor", email="other@faculty.ie.edu")
    other = login("other@faculty.ie.edu")
    res = client.patch(f"/meetings/{meeting_id}", headers=other, json={"status": "rejected"})
    assert res.status_code == 403

    res = client.patch("/meetings/missing", headers=professor_headers, json={"status": "rejected"})
    assert res.status_code == 404


def test_classes(client, conflicts, student_headers, professor_headers, other_student):
    [mine] = client.get("/classes", headers=student_headers).json()
    assert mine["id"] == "conflicts101"
    assert client.get("/classes/nope", headers=student_headers).status_code == 404

    res = client.post("/classes/conflicts101/students", headers=student_headers,
                      json={"student_id": other_student.id})
    assert res.status_code == 403
    res = client.post("/classes/conflicts101/students", headers=professor_headers,
                      json={"student_id": other_student.id})
    assert other_student.id in res.json()["enrolled_students"]

    roster = client.get("/classes/conflicts101/students", headers=student_headers).json()
    assert [s["display_name"] for s in roster["students"]] == ["Victor Barbier", "Lea Brudniak"]


def test_instructor_updates_and_deletes_class(client, conflicts, student_headers, professor_headers):
    res = client.patch("/classes/conflicts101", headers=student_headers, json={"schedule": "Wed"})
    assert res.status_code == 403

    res = client.patch("/classes/conflicts101", headers=professor_headers,
                       json={"schedule": "Thu, 14:00PM - 16:00PM", "description": "Spring term"})
    assert res.status_code == 200
    assert res.json()["schedule"] == "Thu, 14:00PM - 16:00PM"
    assert res.json()["name"] == "Conflicts Business and Law"
    assert client.patch("/classes/conflicts101", headers=professor_headers,
                        json={"name": " "}).status_code == 422

    assert client.delete("/classes/conflicts101", headers=student_headers).status_code == 403
    assert client.delete("/classes/conflicts101", headers=professor_headers).json() == {"status": "ok"}
    assert client.get("/classes/conflicts101", headers=professor_headers).status_code == 404
    assert client.delete("/classes/conflicts101", headers=professor_headers).status_code == 404
    assert client.patch("/classes/conflicts101", headers=professor_headers,
                        json={"schedule": "Fri"}).status_code == 404


def test_instructor_edits_subgroup(client, conflicts, student, student_headers, professor_headers):
    group = client.post("/classes/conflicts101/subgroups", headers=professor_headers,
                        json={"name": "Research Group A", "members": [student.id]}).json()

    url = f"/classes/conflicts101/subgroups/{group['id']}"
    assert client.patch(url, headers=student_headers, json={"name": "Mine now"}).status_code == 403
    res = client.patch(url, headers=professor_headers, json={"due_date": "2025-04-25", "color": "bg-green-500"})
    assert res.status_code == 200
    assert (res.json()["due_date"], res.json()["color"], res.json()["members"]) == (
        "2025-04-25", "bg-green-500", [student.id])

    res = client.patch("/classes/conflicts101/subgroups/missing", headers=professor_headers, json={"name": "X"})
    assert res.status_code == 404
    assert res.json()["detail"] == "Subgroup not found"


def test_student_withdraws_meeting_request(client, student_headers, professor_headers,
                                           professor, other_student, login):
    meeting_id = client.post("/meetings", headers=student_headers, json={
        "professor_id": professor.id, "date": "2025-03-15", "time": "14:00", "reason": "x",
    }).json()["id"]

    assert client.delete(f"/meetings/{meeting_id}", headers=professor_headers).status_code == 403
    outsider = login("lbrudniakber.ieu2021@student.ie.edu")
    assert client.delete(f"/meetings/{meeting_id}", headers=outsider).status_code == 403

    assert client.delete(f"/meetings/{meeting_id}", headers=student_headers).json() == {"status": "ok"}
    assert client.get("/meetings", headers=professor_headers).json() == []
    assert client.delete(f"/meetings/{meeting_id}", headers=student_headers).status_code == 404


def test_chat_messages_and_unread(client, student_headers, professor_headers, professor, student):
    chat = client.post("/chats", headers=student_headers,
                       json={"participants": [professor.id], "type": "direct"}).json()
    again = client.post("/chats", headers=professor_headers,
                        json={"participants": [student.id], "type": "direct"}).json()
    assert again["id"] == chat["id"]

    res = client.post(f"/chats/{chat['id']}/messages", headers=student_headers, json={"text": "Hello professor"})
    assert res.status_code == 200
    assert client.post(f"/chats/{chat['id']}/messages", headers=student_headers,
                       json={"text": "  "}).status_code == 422

    [listed] = client.get("/chats", headers=professor_headers).json()
    assert listed["unread"] == 1
    assert listed["last_message"]["text"] == "Hello professor"

    assert client.post(f"/chats/{chat['id']}/read", headers=professor_headers).json() == {"marked": 1}
    [listed] = client.get("/chats", headers=professor_headers).json()
    assert listed["unread"] == 0


def test_non_participant_cannot_read_chat(client, services, student, professor, other_student, login):
    chat_id = services.chats.create_chat(student.id, [professor.id], "direct")
    headers = login("lbrudniakber.ieu2021@student.ie.edu")
    assert client.get(f"/chats/{chat_id}/messages", headers=headers).status_code == 403
    assert client.get("/chats/missing/messages", headers=headers).status_code == 404


def test_chat_stream_rejects_outsider(client, services, student, professor, other_student, login):
    chat_id = services.chats.create_chat(student.id, [professor.id], "direct")
    chat = services.chats.get_chat(chat_id)
    services.chats.send_message(chat, professor.id, "Private feedback on your draft")
    token = login("lbrudniakber.ieu2021@student.ie.edu")["Authorization"].split()[1]
    denied = {"type": "error", "detail": "Not a participant of this chat"}

    with client.websocket_connect(f"/ws/chats?token={token}") as ws:
        assert ws.receive_json() == {"type": "chats", "chats": []}

        ws.send_json({"action": "open", "chat_id": chat_id})
        assert ws.receive_json() == denied
        ws.send_json({"action": "send", "chat_id": chat_id, "text": "let me in"})
        assert ws.receive_json() == denied
        ws.send_json({"action": "read", "chat_id": chat_id})
        assert ws.receive_json() == denied

    assert [m.text for m in services.chats.list_messages(chat_id)] == ["Private feedback on your draft"]
    assert services.chats.unread_count(chat_id, student.id) == 1
    assert services.store.live_query_count("messages") == 0


def test_notifications(client, student_headers, professor_headers, professor):
    client.post("/meetings", headers=student_headers, json={
        "professor_id": professor.id, "date": "2025-03-15", "time": "14:00", "reason": "x",
    })
    [note] = client.get("/notifications?filter=unread", headers=professor_headers).json()
    assert note["title"] == "New Meeting Request"

    res = client.post(f"/notifications/{note['id']}/read", headers=professor_headers)
    assert res.status_code == 200
    assert client.get("/notifications?filter=unread", headers=professor_headers).json() == []
    assert client.post(f"/notifications/{note['id']}/read", headers=student_headers).status_code == 404
    assert client.get("/notifications?filter=bogus", headers=professor_headers).status_code == 422
    assert client.post("/notifications/read-all", headers=professor_headers).json() == {"marked": 0}


def test_presence(client, student_headers, professor_headers, student):
    assert client.post("/presence/heartbeat", headers=student_headers).json() == {"online": True}
    res = client.get(f"/presence/{student.id}", headers=professor_headers).json()
    assert res == {"user_id": student.id, "online": True}


def test_chat_stream(client, services, student, professor, student_headers):
    chat_id = services.chats.create_chat(student.id, [professor.id], "direct")
    token = student_headers["Authorization"].split()[1]

    with client.websocket_connect(f"/ws/chats?token={token}") as ws:
        first = ws.receive_json()
        assert first["type"] == "chats"
        assert [c["id"] for c in first["chats"]] == [chat_id]

        ws.send_json({"action": "open", "chat_id": chat_id})
        assert ws.receive_json() == {"type": "messages", "chat_id": chat_id, "messages": []}

        ws.send_json({"action": "send", "chat_id": chat_id, "text": "Hello professor"})
        pushed = ws.receive_json()
        assert pushed["type"] == "messages"
        assert [m["text"] for m in pushed["messages"]] == ["Hello professor"]
        preview = ws.receive_json()
        assert preview["type"] == "chats"
        assert preview["chats"][0]["last_message"]["text"] == "Hello professor"

        ws.send_json({"action": "dance"})
        assert ws.receive_json() == {"type": "error", "detail": "Unknown action: dance"}


def test_chat_stream_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/chats?token=bogus") as ws:
            ws.receive_json()
