# tests/test_routes.py

from __future__ import annotations

import re
import time

import pytest
from fastapi.testclient import TestClient

from app.main import create_app


def poll(fn, timeout: float = 3.0, interval: float = 0.02):
    """The realtime refetch runs on the app's loop; give it a moment."""
    deadline = time.monotonic() + timeout
    while True:
        value = fn()
        if value:
            return value
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(interval)


def list_titles(client: TestClient, filter: str = "All") -> list[str]:
    html = client.get("/tasks/list", params={"filter": filter}).text
    return re.findall(r'<span class="label">([^<]*)</span>', html)


def task_ids(client: TestClient) -> list[int]:
    html = client.get("/tasks/list").text
    return [int(i) for i in re.findall(r'data-id="(\d+)"', html)]


@pytest.fixture()
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture()
def signed_in(client):
    resp = client.post("/auth", data={"email": "ada@example.com", "password": "hunter22", "mode": "signup"})
    assert resp.status_code == 200
    assert "My Todo List" in resp.text
    return client


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}


def test_task_list_requires_session(client) -> None:
    resp = client.get("/", follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/auth"


def test_drag_endpoints_answer_401_without_session(client) -> None:
    resp = client.post("/tasks/drag/end", json={"drag_id": 1, "drop_id": 2})

    assert resp.status_code == 401


def test_auth_screen_toggles_mode(client) -> None:
    assert "Don't have an account?" in client.get("/auth").text
    assert "Already have an account?" in client.get("/auth", params={"mode": "signup"}).text


def test_wrong_password_shows_notice(signed_in) -> None:
    signed_in.post("/logout")

    resp = signed_in.post("/auth", data={"email": "ada@example.com", "password": "nope-nope", "mode": "login"})

    assert resp.status_code == 400
    assert "Invalid login credentials" in resp.text


def test_signed_in_user_skips_auth_screen(signed_in) -> None:
    resp = signed_in.get("/auth", follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/"


def test_add_shows_up_via_realtime_refetch(signed_in) -> None:
    resp = signed_in.post("/tasks", data={"title": "  Buy milk ", "priority": "High"}, follow_redirects=False)
    assert resp.status_code == 303

    assert poll(lambda: list_titles(signed_in) == ["Buy milk"])
    page = signed_in.get("/").text
    assert "badge-red" in page


def test_blank_add_inserts_nothing(signed_in) -> None:
    signed_in.post("/tasks", data={"title": "   ", "priority": "Low"})
    time.sleep(0.1)

    assert list_titles(signed_in) == []
    assert "No tasks" in signed_in.get("/tasks/list").text


def test_toggle_filter_and_delete(signed_in) -> None:
    signed_in.post("/tasks", data={"title": "laundry", "priority": "Low"})
    poll(lambda: task_ids(signed_in))
    task_id = task_ids(signed_in)[0]

    signed_in.post(f"/tasks/{task_id}/toggle", data={"completed": "false"})
    poll(lambda: list_titles(signed_in, "Completed") == ["laundry"])
    assert list_titles(signed_in, "Active") == []

    signed_in.post(f"/tasks/{task_id}/delete")
    poll(lambda: list_titles(signed_in) == [])


def test_failed_delete_is_reported(signed_in) -> None:
    resp = signed_in.post("/tasks/424242/delete", data={"filter": "Active"}, follow_redirects=False)

    assert resp.status_code == 303
    location = resp.headers["location"]
    assert "filter=Active" in location
    assert "error=" in location


def test_drag_reorder_round_trip(signed_in) -> None:
    signed_in.post("/tasks", data={"title": "first", "priority": "Medium"})
    signed_in.post("/tasks", data={"title": "second", "priority": "Medium"})
    poll(lambda: list_titles(signed_in) == ["second", "first"])
    time.sleep(0.1)  # let the second notification's refetch land
    second, first = task_ids(signed_in)

    assert signed_in.post("/tasks/drag/start", json={"drag_id": second}).status_code == 204
    resp = signed_in.post("/tasks/drag/end", json={"drag_id": second, "drop_id": first, "filter": "All"})

    assert resp.json() == {"reordered": True}
    assert list_titles(signed_in) == ["first", "second"]


def test_cancelled_drag_keeps_order(signed_in) -> None:
    signed_in.post("/tasks", data={"title": "only", "priority": "Low"})
    poll(lambda: task_ids(signed_in))
    (task_id,) = task_ids(signed_in)

    signed_in.post("/tasks/drag/start", json={"drag_id": task_id})
    resp = signed_in.post("/tasks/drag/end", json={"drag_id": task_id, "drop_id": None})

    assert resp.json() == {"reordered": False}
    assert list_titles(signed_in) == ["only"]


def test_logout_tears_down_controller(signed_in) -> None:
    ctx = signed_in.app.state.context
    assert len(ctx.controllers) == 1

    resp = signed_in.post("/logout", follow_redirects=False)

    assert resp.status_code == 303
    assert resp.headers["location"] == "/auth"
    assert len(ctx.controllers) == 0
    assert signed_in.get("/", follow_redirects=False).status_code == 303


def test_signup_with_confirmation_flow(settings) -> None:
    settings = settings.model_copy(update={"require_email_confirmation": True})
    with TestClient(create_app(settings)) as client:
        resp = client.post("/auth", data={"email": "bob@example.com", "password": "hunter22", "mode": "signup"})
        assert resp.status_code == 200
        assert "Check your email for a confirmation link!" in resp.text

        resp = client.post("/auth", data={"email": "bob@example.com", "password": "hunter22", "mode": "login"})
        assert resp.status_code == 400
        assert "Email not confirmed" in resp.text

        assert client.get("/auth/confirm", params={"token": "garbage"}).status_code == 400


def test_drag_end_overtaking_start_keeps_list_live(signed_in) -> None:
    signed_in.post("/tasks", data={"title": "only", "priority": "Low"})
    poll(lambda: task_ids(signed_in))
    (task_id,) = task_ids(signed_in)

    signed_in.post("/tasks/drag/end", json={"drag_id": task_id, "drop_id": None})
    assert signed_in.post("/tasks/drag/start", json={"drag_id": task_id}).status_code == 204

    signed_in.post("/tasks", data={"title": "still live", "priority": "Low"})
    assert poll(lambda: list_titles(signed_in) == ["still live", "only"])
