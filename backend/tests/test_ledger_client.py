"""
Tests for the ledger client against the API (the TestClient stands in for requests.Session).
"""

from datetime import datetime

import pytest
import requests

from bar_client.api import ApiError, LedgerClient, parse_sse_lines
from bar_client.queue import LocalQueue
from bar_client.sync import SyncEngine
from conftest import auth, stock_of
from core.errors import (
    ConnectivityFailure,
    PermissionDenied,
    RecipeCapacityExceeded,
    SessionExpired,
    StockShortage,
)


def _ledger(client, user="alice"):
    return LedgerClient(base_url="", token=user, http=client)


def _payload(catalog, session, **overrides):
    payload = {
        "session_id": session["id"],
        "recipe_id": catalog["recipe"]["id"],
        "category_selections": [
            {"recipe_line_id": catalog["recipe"]["lines"][1]["id"], "ingredient_id": catalog["tonic"]["id"]}
        ],
    }
    payload.update(overrides)
    return payload


class UnreachableHttp:
    def request(self, method, url, **kwargs):
        raise requests.exceptions.ConnectionError("Connection refused")


class ResponseLostHttp:
    """Delivers the first drink issue POST, then times out before the response arrives."""

    def __init__(self, http):
        self.http = http
        self.lost = 0

    def request(self, method, url, **kwargs):
        resp = self.http.request(method, url, **kwargs)
        if method == "POST" and url.endswith("/drink-issues/") and not self.lost:
            self.lost += 1
            raise requests.exceptions.ReadTimeout("Read timed out")
        return resp


class TestDrinkIssues:
    def test_create_and_delete(self, client, stocked, active_session):
        ledger = _ledger(client)
        result = ledger.create_drink_issue(_payload(stocked, active_session))
        assert result["issue"]["session_id"] == active_session["id"]
        deleted = ledger.delete_drink_issue(result["issue"]["id"])
        assert deleted["movements_count"] == 4

    def test_shortage(self, client, stocked, active_session):
        with pytest.raises(StockShortage) as exc:
            _ledger(client).create_drink_issue(_payload(stocked, active_session, servings=25))
        assert {s["ingredient_name"] for s in exc.value.shortages} == {"Gin", "Tonic", "Highball"}
        assert str(exc.value).startswith("Insufficient stock: ")

    def test_expired_session(self, client, stocked, active_session, clock):
        clock.advance(hours=2)
        with pytest.raises(SessionExpired):
            _ledger(client).create_drink_issue(_payload(stocked, active_session))

    def test_not_a_member(self, client, stocked, active_session):
        with pytest.raises(PermissionDenied):
            _ledger(client, "bob").create_drink_issue(_payload(stocked, active_session))

    def test_get_session(self, client, stocked, active_session):
        ledger = _ledger(client)
        assert ledger.get_session(active_session["id"])["id"] == active_session["id"]
        with pytest.raises(ApiError) as exc:
            ledger.get_session("00000000-0000-0000-0000-000000000000")
        assert exc.value.status_code == 404

    def test_other_errors_keep_status_and_detail(self, client, stocked, active_session):
        with pytest.raises(ApiError) as exc:
            _ledger(client).create_drink_issue(_payload(stocked, active_session, category_selections=[]))
        assert exc.value.status_code == 400
        assert exc.value.detail["line_ids"] == [stocked["recipe"]["lines"][1]["id"]]
        assert "{" not in str(exc.value)


class TestCatalogAndLedger:
    def test_bootstrap_is_cached(self, client, stocked, active_session):
        ledger = _ledger(client)
        snap = ledger.get_bootstrap(business_date="2026-03-14")
        assert snap["current_user_session"]["id"] == active_session["id"]
        assert ledger.cache["bootstrap"] is snap

    def test_recipe_capacity_checked_before_sending(self, client, catalog):
        ledger = _ledger(client, "manager")
        ledger.get_bootstrap()
        recipe = {
            "name": "Pint of gin",
            "cup_ingredient_id": catalog["cup"]["id"],
            "lines": [{"line_type": "fixed_ingredient", "ingredient_id": catalog["gin"]["id"], "quantity": 400}],
        }
        with pytest.raises(RecipeCapacityExceeded) as exc:
            ledger.create_recipe(recipe)
        assert exc.value.overage_ml == pytest.approx(50)
        assert len(ledger.get_bootstrap()["recipes"]) == 1

    def test_recipe_capacity_from_the_server(self, client, catalog):
        ledger = _ledger(client, "manager")
        recipe = {
            "name": "Pint of gin",
            "cup_ingredient_id": catalog["cup"]["id"],
            "lines": [{"line_type": "fixed_ingredient", "ingredient_id": catalog["gin"]["id"], "quantity": 400}],
        }
        with pytest.raises(RecipeCapacityExceeded):
            ledger.create_recipe(recipe)

    def test_delivery_and_adjustment(self, client, catalog):
        ledger = _ledger(client, "manager")
        ledger.create_delivery(items=[{"ingredient_id": catalog["gin"]["id"], "quantity": 700, "unit_cost": 0.03}])
        ledger.create_adjustment(ingredient_id=catalog["gin"]["id"], quantity_delta=-20, movement_type="waste", note="spilled")
        movements = ledger.list_movements(ingredient_id=catalog["gin"]["id"])
        assert sorted(m["movement_type"] for m in movements) == ["delivery", "waste"]

    def test_managers_only(self, client, catalog):
        with pytest.raises(PermissionDenied):
            _ledger(client).create_category("Beer")


class TestSessions:
    def test_lifecycle(self, client, stocked):
        alice = _ledger(client)
        bob = _ledger(client, "bob")
        session = alice.create_session(session_type_id=stocked["session_type"]["id"], name="Smith wedding")
        assert session["status"] == "active"

        bob.join_session(session["id"])
        bob.leave_session(session["id"])
        with pytest.raises(PermissionDenied):
            bob.close_session(session["id"])

        closed = alice.close_session(session["id"], [{"ingredient_id": stocked["lime"]["id"], "counted_stock": 30}])
        assert closed["session"]["status"] == "closed"
        assert alice.delete_session(session["id"]) is None


class TestTransport:
    def test_unreachable_server(self):
        ledger = LedgerClient(base_url="http://bar.invalid", token="alice", http=UnreachableHttp())
        with pytest.raises(ConnectivityFailure) as exc:
            ledger.get_bootstrap()
        assert str(exc.value) == "no connection, saved locally"

    def test_parse_event_stream(self):
        lines = [
            "event: connected",
            'data: {"session_id": "s1"}',
            "",
            ": keepalive",
            "",
            "event: drink_issue_created",
            'data: {"issue_id": "i1"}',
            "",
        ]
        assert list(parse_sse_lines(lines)) == [
            ("connected", {"session_id": "s1"}),
            ("drink_issue_created", {"issue_id": "i1"}),
        ]


class TestOfflineTerminal:
    @pytest.mark.asyncio
    async def test_lost_response_does_not_issue_twice(self, client, stocked, active_session, clock):
        http = ResponseLostHttp(client)
        engine = SyncEngine(LedgerClient(base_url="", token="alice", http=http), LocalQueue(clock=clock), clock=clock)
        entry = await engine.queue_drink_issue(_payload(stocked, active_session))
        await engine.drain()
        assert http.lost == 1
        assert engine.queue.get(entry.local_id).offline is True

        await engine.set_online(False)
        await engine.set_online(True)

        synced = engine.queue.get(entry.local_id)
        assert synced.status == "synced"
        issues = client.get(
            "/open-bar/drink-issues/", params={"session_id": active_session["id"]}, headers=auth("alice")
        ).json()
        assert [i["id"] for i in issues] == [synced.remote_id]
        assert stock_of(client, stocked["gin"]["id"]) == pytest.approx(950)

    @pytest.mark.asyncio
    async def test_session_crossing_midnight_keeps_queued_drinks(self, client, stocked, clock):
        clock.set(datetime(2026, 3, 14, 23, 30))
        ledger = _ledger(client)
        session = ledger.create_session(session_type_id=stocked["session_type"]["id"])
        assert session["expected_end_at"] == "2026-03-15T01:30:00"

        engine = SyncEngine(ledger, LocalQueue(clock=clock), clock=clock, online=False)
        entry = await engine.queue_drink_issue(_payload(stocked, session))

        clock.set(datetime(2026, 3, 15, 0, 10))
        engine.apply_bootstrap(ledger.get_bootstrap())
        assert [e.local_id for e in engine.queue.entries] == [entry.local_id]
        assert engine.business_date == "2026-03-14"

        await engine.refresh()
        assert [s["id"] for s in engine.snapshot["sessions"]] == [session["id"]]
        assert len(engine.queue) == 1

        await engine.set_online(True)
        issue = client.get(
            "/open-bar/drink-issues/", params={"session_id": session["id"]}, headers=auth("alice")
        ).json()[0]
        # recorded at commit time, not when the terminal came back online
        assert issue["issued_at"] == "2026-03-14T23:30:00"
        assert issue["client_ref"] == entry.local_id
