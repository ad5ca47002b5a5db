"""
Tests for the session lifecycle endpoints.
"""

import pytest

from conftest import auth, stock_of


SESSION_FINISHED = "Open Bar Finished! Do not serve more drinks."


def _create(client, catalog, user="alice", **payload):
    body = {"session_type_id": catalog["session_type"]["id"], **payload}
    resp = client.post("/open-bar/sessions/", json=body, headers=auth(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestCreate:
    def test_launch_opens_immediately(self, client, active_session):
        assert active_session["status"] == "active"
        assert active_session["name"] == "Wedding 2026-03-14 #1"
        assert active_session["opened_at"] == "2026-03-14T18:00:00"
        assert active_session["expected_end_at"] == "2026-03-14T20:00:00"
        assert active_session["time_limit_minutes"] == 120
        assert [m["name"] for m in active_session["members"]] == ["Alice"]

    def test_names_are_numbered_per_type_and_day(self, client, stocked, active_session):
        second = _create(client, stocked, user="bob", status="draft")
        assert second["name"] == "Wedding 2026-03-14 #2"

    def test_explicit_name_and_notes(self, client, catalog):
        session = _create(client, catalog, name="  Smith wedding ", notes="Garden bar")
        assert session["name"] == "Smith wedding"
        assert session["notes"] == "Garden bar"

    def test_draft_has_no_clock(self, client, catalog):
        session = _create(client, catalog, status="draft")
        assert session["status"] == "draft"
        assert session["opened_at"] is None
        assert session["expected_end_at"] is None
        assert session["members"] == []

    def test_inactive_type_rejected(self, client, catalog):
        client.patch(
            f"/open-bar/session-types/{catalog['session_type']['id']}",
            json={"is_active": False},
            headers=auth("manager"),
        )
        resp = client.post(
            "/open-bar/sessions/",
            json={"session_type_id": catalog["session_type"]["id"]},
            headers=auth("alice"),
        )
        assert resp.status_code == 400


class TestStart:
    def test_start_sets_expected_end(self, client, catalog, clock):
        session = _create(client, catalog, status="draft")
        clock.advance(minutes=7, seconds=30)
        resp = client.post(f"/open-bar/sessions/{session['id']}/start", headers=auth("alice"))
        assert resp.status_code == 200, resp.text
        started = resp.json()
        assert started["opened_at"] == "2026-03-14T18:07:30"
        assert started["expected_end_at"] == "2026-03-14T20:07:30"
        assert [m["name"] for m in started["members"]] == ["Alice"]

    def test_only_creator_or_manager_starts(self, client, catalog):
        session = _create(client, catalog, status="draft")
        assert client.post(f"/open-bar/sessions/{session['id']}/start", headers=auth("bob")).status_code == 403
        assert client.post(f"/open-bar/sessions/{session['id']}/start", headers=auth("manager")).status_code == 200

    def test_cannot_start_twice(self, client, active_session):
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/start", headers=auth("alice"))
        assert resp.status_code == 400


class TestJoinLeave:
    def test_join_and_leave(self, client, active_session):
        sid = active_session["id"]
        joined = client.post(f"/open-bar/sessions/{sid}/join", headers=auth("bob"))
        assert joined.status_code == 200
        members = {m["name"]: m["is_active"] for m in joined.json()["members"]}
        assert members == {"Alice": True, "bob@bar.test": True}
        assert joined.json()["status"] == "active"

        left = client.post(f"/open-bar/sessions/{sid}/leave", headers=auth("bob"))
        assert left.status_code == 200
        members = {m["name"]: m["is_active"] for m in left.json()["members"]}
        assert members == {"Alice": True, "bob@bar.test": False}

    def test_leave_without_membership(self, client, active_session):
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/leave", headers=auth("bob"))
        assert resp.status_code == 400

    def test_join_detaches_from_other_session(self, client, stocked, active_session):
        other = _create(client, stocked, user="manager")
        client.post(f"/open-bar/sessions/{active_session['id']}/join", headers=auth("bob"))
        resp = client.post(f"/open-bar/sessions/{other['id']}/join", headers=auth("bob"))
        assert resp.status_code == 200
        first = client.get(f"/open-bar/sessions/{active_session['id']}", headers=auth("bob")).json()
        bob = next(m for m in first["members"] if m["name"] == "bob@bar.test")
        assert bob["is_active"] is False

    def test_cannot_join_draft(self, client, catalog):
        session = _create(client, catalog, status="draft")
        assert client.post(f"/open-bar/sessions/{session['id']}/join", headers=auth("bob")).status_code == 400

    def test_cannot_join_expired(self, client, active_session, clock):
        clock.advance(minutes=120)
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/join", headers=auth("bob"))
        assert resp.status_code == 400
        assert resp.json()["detail"] == SESSION_FINISHED


class TestExpiry:
    def test_expired_exactly_at_expected_end(self, client, active_session, clock):
        sid = active_session["id"]
        clock.advance(minutes=119, seconds=59)
        assert client.get(f"/open-bar/sessions/{sid}", headers=auth("alice")).json()["is_expired"] is False
        clock.advance(seconds=1)
        assert client.get(f"/open-bar/sessions/{sid}", headers=auth("alice")).json()["is_expired"] is True


class TestVisibility:
    def test_bartenders_see_created_or_joined(self, client, active_session):
        assert client.get("/open-bar/sessions/", headers=auth("bob")).json() == []
        client.post(f"/open-bar/sessions/{active_session['id']}/join", headers=auth("bob"))
        assert [s["id"] for s in client.get("/open-bar/sessions/", headers=auth("bob")).json()] == [active_session["id"]]

    def test_manager_sees_everything(self, client, active_session):
        sessions = client.get("/open-bar/sessions/", headers=auth("manager")).json()
        assert [s["id"] for s in sessions] == [active_session["id"]]


class TestClose:
    def test_direct_close(self, client, active_session, clock):
        clock.advance(minutes=30)
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/close", headers=auth("alice"))
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["reconciliation"] == []
        assert body["session"]["status"] == "closed"
        assert body["session"]["closed_at"] == "2026-03-14T18:30:00"
        assert all(not m["is_active"] for m in body["session"]["members"])

    def test_only_creator_or_manager_closes(self, client, active_session):
        client.post(f"/open-bar/sessions/{active_session['id']}/join", headers=auth("bob"))
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/close", headers=auth("bob"))
        assert resp.status_code == 403
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/close", headers=auth("manager"))
        assert resp.status_code == 200

    def test_reconciliation_posts_one_correction(self, client, stocked, active_session):
        lime_id = stocked["lime"]["id"]
        client.post(
            "/open-bar/inventory/adjustments",
            json={"ingredient_id": lime_id, "quantity_delta": 10},
            headers=auth("manager"),
        )
        assert stock_of(client, lime_id) == 40

        resp = client.post(
            f"/open-bar/sessions/{active_session['id']}/close",
            json={"reconciliation": [{"ingredient_id": lime_id, "counted_stock": 35}]},
            headers=auth("alice"),
        )
        assert resp.status_code == 200, resp.text
        lines = resp.json()["reconciliation"]
        assert len(lines) == 1
        assert lines[0]["quantity_delta"] == -5
        assert lines[0]["system_stock"] == 40
        assert lines[0]["counted_stock"] == 35
        assert stock_of(client, lime_id) == 35

        corrections = client.get(
            "/open-bar/inventory/movements",
            params={"movement_type": "correction", "session_id": active_session["id"]},
            headers=auth("manager"),
        ).json()
        assert len(corrections) == 1
        assert corrections[0]["note"] == f"Session close reconciliation #{active_session['id']}"

    def test_matching_count_posts_nothing(self, client, stocked, active_session):
        resp = client.post(
            f"/open-bar/sessions/{active_session['id']}/close",
            json={"reconciliation": [{"ingredient_id": stocked["gin"]["id"], "counted_stock": 1000}]},
            headers=auth("alice"),
        )
        assert resp.status_code == 200
        assert resp.json()["reconciliation"] == []
        corrections = client.get(
            "/open-bar/inventory/movements", params={"movement_type": "correction"}, headers=auth("manager")
        ).json()
        assert corrections == []

    def test_duplicate_reconciliation_lines(self, client, stocked, active_session):
        gin_id = stocked["gin"]["id"]
        resp = client.post(
            f"/open-bar/sessions/{active_session['id']}/close",
            json={"reconciliation": [{"ingredient_id": gin_id, "counted_stock": 1}, {"ingredient_id": gin_id, "counted_stock": 2}]},
            headers=auth("alice"),
        )
        assert resp.status_code == 400

    def test_cannot_close_twice(self, client, active_session):
        client.post(f"/open-bar/sessions/{active_session['id']}/close", headers=auth("alice"))
        resp = client.post(f"/open-bar/sessions/{active_session['id']}/close", headers=auth("alice"))
        assert resp.status_code == 400


class TestDelete:
    def test_delete_removes_issues_and_restores_stock(self, client, stocked, active_session):
        gin_id = stocked["gin"]["id"]
        resp = client.post(
            "/open-bar/drink-issues/",
            json={
                "session_id": active_session["id"],
                "recipe_id": stocked["recipe"]["id"],
                "servings": 2,
                "strength": "single",
                "category_selections": [
                    {"recipe_line_id": stocked["recipe"]["lines"][1]["id"], "ingredient_id": stocked["tonic"]["id"]}
                ],
            },
            headers=auth("alice"),
        )
        assert resp.status_code == 201, resp.text
        assert stock_of(client, gin_id) == 900

        resp = client.delete(f"/open-bar/sessions/{active_session['id']}", headers=auth("alice"))
        assert resp.status_code == 204
        assert stock_of(client, gin_id) == pytest.approx(1000)
        assert stock_of(client, stocked["cup"]["id"]) == pytest.approx(20)
        assert client.get(f"/open-bar/sessions/{active_session['id']}", headers=auth("alice")).status_code == 404
        movements = client.get(
            "/open-bar/inventory/movements", params={"movement_type": "issue"}, headers=auth("manager")
        ).json()
        assert movements == []

    def test_only_creator_or_manager_deletes(self, client, active_session):
        assert client.delete(f"/open-bar/sessions/{active_session['id']}", headers=auth("bob")).status_code == 403
