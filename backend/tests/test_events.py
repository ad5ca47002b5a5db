"""
Tests for the session event stream.
"""

import asyncio
import json

import pytest

from conftest import auth
from routers.events import SessionEventBroker, broker, event_stream, format_sse


class TestBroker:
    def test_publish_reaches_only_the_session(self):
        b = SessionEventBroker()
        q1 = b.subscribe("s1")
        q2 = b.subscribe("s2")
        assert b.publish("s1", "drink_issue_created", {"issue_id": "i1"}) == 1
        assert q1.get_nowait() == ("drink_issue_created", {"issue_id": "i1"})
        assert q2.empty()

    def test_unsubscribe(self):
        b = SessionEventBroker()
        q = b.subscribe("s1")
        b.unsubscribe("s1", q)
        assert b.subscriber_count("s1") == 0
        assert b.publish("s1", "drink_issue_deleted", {}) == 0

    def test_format(self):
        assert format_sse("connected", {"session_id": "s1"}) == 'event: connected\ndata: {"session_id": "s1"}\n\n'


class TestEventStream:
    @pytest.mark.asyncio
    async def test_connected_then_events(self):
        queue = asyncio.Queue()
        stream = event_stream(queue, "s1", keepalive_seconds=5)
        assert await stream.__anext__() == format_sse("connected", {"session_id": "s1"})
        queue.put_nowait(("drink_issue_created", {"issue_id": "i1"}))
        chunk = await stream.__anext__()
        assert chunk.startswith("event: drink_issue_created\n")
        assert json.loads(chunk.split("data: ", 1)[1]) == {"issue_id": "i1"}
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self):
        stream = event_stream(asyncio.Queue(), "s1", keepalive_seconds=0.01)
        await stream.__anext__()
        assert await stream.__anext__() == ": keepalive\n\n"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stops_on_disconnect(self):
        async def disconnected():
            return True

        chunks = [c async for c in event_stream(asyncio.Queue(), "s1", 5, disconnected)]
        assert len(chunks) == 1


class TestPublishedByIssues:
    def test_create_and_delete_are_published(self, client, stocked, active_session):
        queue = broker.subscribe(active_session["id"])
        try:
            resp = client.post(
                "/open-bar/drink-issues/",
                json={
                    "session_id": active_session["id"],
                    "recipe_id": stocked["recipe"]["id"],
                    "category_selections": [
                        {"recipe_line_id": stocked["recipe"]["lines"][1]["id"], "ingredient_id": stocked["tonic"]["id"]}
                    ],
                },
                headers=auth("alice"),
            )
            issue_id = resp.json()["issue"]["id"]
            client.delete(f"/open-bar/drink-issues/{issue_id}", headers=auth("alice"))

            created = queue.get_nowait()
            deleted = queue.get_nowait()
        finally:
            broker.unsubscribe(active_session["id"], queue)

        assert created[0] == "drink_issue_created"
        assert created[1]["issue_id"] == issue_id
        assert created[1]["actor_id"] == str(client.users["alice"].id)
        assert created[1]["occurred_at"] == "2026-03-14T18:00:00"
        assert deleted[0] == "drink_issue_deleted"

    def test_outsider_cannot_subscribe(self, client, active_session):
        resp = client.get("/open-bar/events", params={"session_id": active_session["id"]}, headers=auth("bob"))
        assert resp.status_code == 403
