from typing import Optional

import pytest
from fastapi import Header, HTTPException, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.apis.deps import get_identity, ws_identity
from app.modules.quiz.authz import Identity
from main import app

from conftest import run_sync, seed_quiz


def _identity(token: Optional[str]) -> Optional[Identity]:
    if not token:
        return None
    return Identity(id=token, is_admin=token.startswith("admin"))


async def fake_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    token = authorization.split(" ", 1)[1] if authorization else None
    identity = _identity(token)
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


async def fake_ws_identity(websocket: WebSocket) -> Optional[Identity]:
    return _identity(websocket.query_params.get("access_token"))


def auth(who: str) -> dict:
    return {"Authorization": f"Bearer {who}"}


@pytest.fixture
def client():
    app.dependency_overrides[get_identity] = fake_identity
    app.dependency_overrides[ws_identity] = fake_ws_identity
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def receive_until(ws, kind: str) -> dict:
    while True:
        msg = ws.receive_json()
        if msg["type"] == kind:
            return msg["data"]


def _create(client, quiz_id: int, who: str = "teacher-1"):
    return client.post(f"/v1/quiz/{quiz_id}/sessions", headers=auth(who))


def test_create_session_and_lookup(client):
    quiz_id = run_sync(seed_quiz())
    res = _create(client, quiz_id)
    assert res.status_code == 201
    body = res.json()
    assert body["created"] is True
    assert body["ws_url"] == "/v1/quiz/ws"
    code = body["session"]["code"]
    session_id = body["session"]["session_id"]

    again = _create(client, quiz_id)
    assert again.status_code == 200
    assert again.json()["session"]["code"] == code

    by_pin = client.get(f"/v1/quiz/sessions/pin/{code}", headers=auth("student-a"))
    assert by_pin.status_code == 200
    assert by_pin.json()["status"] == "waiting"

    detail = client.get(f"/v1/quiz/sessions/{session_id}", headers=auth("teacher-1"))
    assert detail.status_code == 200
    assert detail.json()["creator_id"] == "teacher-1"

    listed = client.get(f"/v1/quiz/{quiz_id}/sessions", headers=auth("teacher-1"))
    assert [s["session_id"] for s in listed.json()] == [session_id]

    board = client.get(f"/v1/quiz/sessions/{session_id}/leaderboard", headers=auth("teacher-1"))
    assert board.json() == {"session_id": session_id, "entries": []}


def test_error_envelopes(client):
    quiz_id = run_sync(seed_quiz())
    session_id = _create(client, quiz_id).json()["session"]["session_id"]

    res = client.get("/v1/quiz/sessions/pin/12ab56", headers=auth("student-a"))
    assert res.status_code == 400
    assert res.json()["kind"] == "validation"
    assert "6 digits" in res.json()["detail"]

    res = client.get("/v1/quiz/sessions/pin/000000", headers=auth("student-a"))
    assert res.status_code == 404
    assert res.json()["kind"] == "not_found"

    res = client.get(f"/v1/quiz/sessions/{session_id}", headers=auth("student-a"))
    assert res.status_code == 403
    assert res.json() == {"detail": "Unauthorized", "kind": "unauthorized"}

    res = _create(client, quiz_id, who="student-a")
    assert res.status_code == 403

    assert client.post(f"/v1/quiz/{quiz_id}/sessions").status_code == 401


def test_cleanup_is_admin_only(client):
    assert client.post("/v1/quiz/cleanup", headers=auth("teacher-1")).status_code == 403
    res = client.post("/v1/quiz/cleanup", headers=auth("admin-1"))
    assert res.status_code == 200
    assert res.json() == {"sessions": 0, "events": 0}


def test_websocket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/quiz/ws") as ws:
            ws.receive_json()


def test_websocket_game_flow(client):
    quiz_id = run_sync(seed_quiz())
    code = _create(client, quiz_id).json()["session"]["code"]

    with client.websocket_connect("/v1/quiz/ws?access_token=teacher-1") as teacher:
        teacher.send_json({"type": "teacher-join", "data": {"code": code}})
        assert receive_until(teacher, "teacher-joined")["code"] == code

        with client.websocket_connect("/v1/quiz/ws?access_token=student-a") as student:
            student.send_json({"type": "join", "data": {"code": code, "displayName": "Alice"}})
            joined = receive_until(student, "joined")
            assert joined["rejoined"] is False
            assert joined["session"]["participant_count"] == 1
            assert receive_until(teacher, "participant-joined")["participant_count"] == 1

            student.send_json(
                {"type": "answer", "data": {"question_index": 0, "selected_options": [0]}}
            )
            assert receive_until(student, "error")["kind"] == "state"

            student.send_json({"type": "start"})
            assert receive_until(student, "error")["kind"] == "unauthorized"

            teacher.send_json({"type": "start"})
            started = receive_until(teacher, "started")
            assert started["question"]["options"][0]["is_correct"] is True
            shown = receive_until(student, "question-started")
            assert all("is_correct" not in o for o in shown["options"])

            student.send_json(
                {
                    "type": "answer",
                    "data": {"questionIndex": 0, "selections": [0], "elapsedMs": 0},
                }
            )
            ack = receive_until(student, "answer-received")
            assert ack["is_correct"] is True and ack["points"] == 10
            notice = receive_until(teacher, "answer-submitted")
            assert notice["identity"] == "student-a"

            student.send_json({"type": "status"})
            status = receive_until(student, "status")
            assert status["answered_current"] is True
            assert status["total_score"] == 10

            teacher.send_json({"type": "bogus"})
            assert receive_until(teacher, "error")["kind"] == "validation"
            teacher.send_text("not json")
            assert receive_until(teacher, "error")["kind"] == "validation"

            teacher.send_json({"type": "next-question"})
            advanced = receive_until(teacher, "question-advanced")
            assert advanced["changed"] is True
            assert advanced["session"]["current_question_index"] == 1

            teacher.send_json({"type": "get-leaderboard"})
            entries = receive_until(teacher, "leaderboard")["entries"]
            assert entries[0]["identity"] == "student-a"

            teacher.send_json({"type": "end"})
            ended = receive_until(teacher, "ended")
            assert ended["session"]["status"] == "ended"
            assert ended["leaderboard"][0]["total_score"] == 10
            final = receive_until(student, "quiz-ended")
            assert final["leaderboard"][0]["display_name"] == "Alice"


def test_websocket_commands_need_a_bound_session(client):
    with client.websocket_connect("/v1/quiz/ws?access_token=teacher-1") as ws:
        ws.send_json({"type": "start"})
        err = receive_until(ws, "error")
        assert err["kind"] == "validation"
        ws.send_json({"type": "join", "data": {"code": "000000", "displayName": "T"}})
        assert receive_until(ws, "error")["kind"] == "not_found"
