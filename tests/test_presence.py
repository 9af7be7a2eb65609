from datetime import timedelta

from schemas import AI_ASSISTANT_ID


def test_heartbeat_marks_user_online_until_window_passes(services, student, clock):
    presence = services.presence
    assert presence.is_online(student.id) is False

    assert presence.heartbeat(student.id) is True
    assert presence.is_online(student.id) is True

    clock.advance(timedelta(minutes=6))
    assert presence.is_online(student.id) is False


def test_assistant_is_always_online(services):
    assert services.presence.is_online(AI_ASSISTANT_ID) is True


def test_unknown_user_is_offline(services):
    assert services.presence.heartbeat("student_gone") is False
    assert services.presence.is_online("student_gone") is False
