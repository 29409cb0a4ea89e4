"""HTTP / WebSocket API 테스트."""

import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import app

API = "/api/v1"
PASSWORD = "correct-horse"


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


def signup(client, email: str | None = None) -> tuple[dict, dict]:
    email = email or f"{uuid.uuid4().hex[:12]}@example.com"
    response = client.post(
        f"{API}/auth/register",
        json={"email": email, "username": email.split("@")[0], "password": PASSWORD},
    )
    assert response.status_code == 201, response.text
    login = client.post(f"{API}/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200, login.text
    return response.json(), {"Authorization": f"Bearer {login.json()['access_token']}"}


@pytest.fixture(scope="module")
def admin(client):
    user, headers = signup(client, "admin@example.com")
    assert user["role"] == "admin"
    return headers


def create_video(client, headers, data: bytes, **fields):
    body = {"filename": "clip.mp4", "size_bytes": len(data), "content_type": "video/mp4", **fields}
    return client.post(f"{API}/videos", json=body, headers=headers)


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_register_and_login(client):
    user, headers = signup(client)
    assert user["role"] == "editor"

    duplicate = client.post(
        f"{API}/auth/register",
        json={"email": user["email"], "username": "someone-else", "password": PASSWORD},
    )
    assert duplicate.status_code == 400

    bad_login = client.post(f"{API}/auth/login", json={"email": user["email"], "password": "wrong"})
    assert bad_login.status_code == 401

    me = client.get(f"{API}/auth/me", headers=headers)
    assert me.json()["id"] == user["id"]
    assert client.get(f"{API}/auth/me").status_code == 401


def test_chunked_upload_flow(client):
    _, headers = signup(client)
    data = bytes(range(256)) * 8

    created = create_video(client, headers, data, title="First run")
    assert created.status_code == 201, created.text
    video = created.json()
    assert video["status"] == "uploading"
    assert video["title"] == "First run"
    video_id = video["id"]

    # Second half first, then a retry of the same chunk
    for offset in (1024, 1024, 0):
        response = client.put(
            f"{API}/videos/{video_id}/chunks/{offset}", content=data[offset:offset + 1024], headers=headers
        )
        assert response.status_code == 200, response.text
    assert response.json()["upload_progress"] == 100

    completed = client.post(f"{API}/videos/{video_id}/complete", headers=headers)
    assert completed.status_code == 202, completed.text
    assert completed.json()["status"] == "processing"

    listed = client.get(f"{API}/videos", params={"status": "processing"}, headers=headers).json()
    assert listed["total"] == 1
    assert listed["videos"][0]["id"] == video_id

    full = client.get(f"{API}/videos/{video_id}/content", headers=headers)
    assert full.status_code == 200
    assert full.content == data

    partial = client.get(
        f"{API}/videos/{video_id}/content", headers={**headers, "Range": "bytes=0-99"}
    )
    assert partial.status_code == 206
    assert partial.content == data[:100]
    assert partial.headers["Content-Range"] == f"bytes 0-99/{len(data)}"

    stats = client.get(f"{API}/videos/stats", headers=headers).json()
    assert stats["total"] == 1
    assert stats["processing"] == 1
    assert stats["by_status"]["processing"] == 1

    renamed = client.patch(
        f"{API}/videos/{video_id}", json={"title": "Renamed", "filename": "run.mp4"}, headers=headers
    )
    assert renamed.json()["filename"] == "run.mp4"
    assert renamed.json()["title"] == "Renamed"

    assert client.delete(f"{API}/videos/{video_id}", headers=headers).status_code == 204
    assert client.get(f"{API}/videos/{video_id}", headers=headers).status_code == 404


def test_error_status_codes(client):
    _, headers = signup(client)

    assert create_video(client, headers, b"x" * 10, content_type="text/plain").status_code == 400
    assert create_video(client, headers, b"x" * 10, id="stats").status_code == 400
    assert create_video(client, headers, b"x", size_bytes=10 * 1024 ** 4).status_code == 413

    video_id = f"clip-{uuid.uuid4().hex[:8]}"
    assert create_video(client, headers, b"x" * 10, id=video_id).status_code == 201
    assert create_video(client, headers, b"x" * 10, id=video_id).status_code == 409

    # Completing before all bytes arrived
    assert client.post(f"{API}/videos/{video_id}/complete", headers=headers).status_code == 400

    too_long = client.put(f"{API}/videos/{video_id}/chunks/5", content=b"y" * 10, headers=headers)
    assert too_long.status_code == 413
    failed = client.get(f"{API}/videos/{video_id}", headers=headers).json()
    assert failed["status"] == "error"
    assert failed["error_reason"]

    # Terminal: no more chunks, no completion
    assert client.put(f"{API}/videos/{video_id}/chunks/0", content=b"y", headers=headers).status_code == 409
    assert client.post(f"{API}/videos/{video_id}/complete", headers=headers).status_code == 409


def test_ownership_and_roles(client, admin):
    owner, owner_headers = signup(client)
    viewer, viewer_headers = signup(client)
    video_id = create_video(client, owner_headers, b"x" * 10).json()["id"]

    # Someone else's video does not exist for them
    assert client.get(f"{API}/videos/{video_id}", headers=viewer_headers).status_code == 404
    assert client.get(f"{API}/videos", headers=viewer_headers).json()["total"] == 0
    assert client.get(f"{API}/videos/{video_id}", headers=admin).status_code == 200

    # Only admins manage roles; the change applies on the next request
    forbidden = client.patch(
        f"{API}/auth/users/{viewer['id']}/role", json={"role": "viewer"}, headers=owner_headers
    )
    assert forbidden.status_code == 403
    demoted = client.patch(f"{API}/auth/users/{viewer['id']}/role", json={"role": "viewer"}, headers=admin)
    assert demoted.json()["role"] == "viewer"
    assert create_video(client, viewer_headers, b"x" * 10).status_code == 403

    assert client.get(f"{API}/admin/dead-letters", headers=owner_headers).status_code == 403
    assert client.get(f"{API}/admin/dead-letters", headers=admin).status_code == 200


def test_notifications_websocket(client):
    _, headers = signup(client)
    token = headers["Authorization"].split(" ", 1)[1]

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"{API}/notifications/ws?token=bogus"):
            pass

    with client.websocket_connect(f"{API}/notifications/ws?token={token}") as ws:
        video_id = create_video(client, headers, b"x" * 10).json()["id"]
        event = ws.receive_json()

    assert event["video_id"] == video_id
    assert event["status"] == "uploading"
    assert "owner_id" not in event
