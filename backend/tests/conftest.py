"""
Pytest configuration and fixtures for backend tests.

The API runs against an in-memory SQLite database (aiosqlite). Requests are
authenticated with `Authorization: Bearer <user key>` where the key is one of
the seeded users below ("manager", "alice", "bob").
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime

import pytest
from fastapi import HTTPException, Request, status
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db.database as database
from core.auth import current_active_user
from core.clock import FixedClock, get_clock
from db.database import User
from main import app


START = datetime(2026, 3, 14, 18, 0, 0)


def auth(key: str) -> dict:
    return {"Authorization": f"Bearer {key}"}


async def _seed_users(maker):
    users = {
        "manager": User(
            id=uuid.uuid4(),
            email="manager@bar.test",
            hashed_password="x",
            is_active=True,
            is_superuser=True,
            is_verified=True,
            display_name="Maya",
        ),
        "alice": User(
            id=uuid.uuid4(),
            email="alice@bar.test",
            hashed_password="x",
            is_active=True,
            is_superuser=False,
            is_verified=True,
            display_name="Alice",
        ),
        "bob": User(
            id=uuid.uuid4(),
            email="bob@bar.test",
            hashed_password="x",
            is_active=True,
            is_superuser=False,
            is_verified=True,
        ),
    }
    async with maker() as db:
        db.add_all(users.values())
        await db.commit()
    return users


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def client(clock, monkeypatch):
    """TestClient over a fresh in-memory database, with `client.users` seeded."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    maker = async_sessionmaker(engine, expire_on_commit=False)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "async_session_maker", maker)

    users = {}

    def override_current_user(request: Request):
        scheme, _, key = request.headers.get("Authorization", "").partition(" ")
        user = users.get(key) if scheme == "Bearer" else None
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return user

    app.dependency_overrides[current_active_user] = override_current_user
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as test_client:
        users.update(test_client.portal.call(_seed_users, maker))
        test_client.users = users
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def catalog(client):
    """
    A small bar: a 350 ml highball cup, gin, tonic (a mixer) and lime, with a
    Gin & Tonic recipe (50 ml gin, strength-sensitive, tonic tops up, 3 cubes of ice).
    """
    h = auth("manager")

    def post(path, payload):
        resp = client.post(path, json=payload, headers=h)
        assert resp.status_code == 201, resp.text
        return resp.json()

    spirits = post("/open-bar/ingredient-categories/", {"name": "Spirits"})
    mixers = post("/open-bar/ingredient-categories/", {"name": "Mixers", "sort_order": 1})
    cup = post(
        "/open-bar/ingredients/",
        {"name": "Highball", "base_unit": "unit", "is_cup": True, "cup_type": "disposable", "cup_capacity_ml": 350},
    )
    gin = post(
        "/open-bar/ingredients/",
        {"name": "Gin", "category_id": spirits["id"], "base_unit": "ml", "cost_per_unit": 0.04, "par_level": 2000},
    )
    tonic = post("/open-bar/ingredients/", {"name": "Tonic", "category_id": mixers["id"], "base_unit": "ml"})
    soda = post("/open-bar/ingredients/", {"name": "Soda", "category_id": mixers["id"], "base_unit": "ml"})
    lime = post("/open-bar/ingredients/", {"name": "Lime wedge", "base_unit": "unit"})

    recipe = post(
        "/open-bar/recipes/",
        {
            "name": "Gin & Tonic",
            "drink_type": "classic",
            "cup_ingredient_id": cup["id"],
            "has_ice": True,
            "ice_cubes": 3,
            "ask_strength": True,
            "lines": [
                {"line_type": "fixed_ingredient", "ingredient_id": gin["id"], "quantity": 50, "affects_strength": True},
                {"line_type": "category_selector", "category_id": mixers["id"], "is_top_up": True},
                {"line_type": "fixed_ingredient", "ingredient_id": lime["id"], "quantity": 1},
            ],
        },
    )
    session_type = post("/open-bar/session-types/", {"name": "Wedding", "default_time_limit_minutes": 120})

    return {
        "categories": {"spirits": spirits, "mixers": mixers},
        "cup": cup,
        "gin": gin,
        "tonic": tonic,
        "soda": soda,
        "lime": lime,
        "recipe": recipe,
        "session_type": session_type,
    }


@pytest.fixture
def stocked(client, catalog):
    """Catalog with stock: 20 cups, 1000 ml gin, 2000 ml tonic, 2000 ml soda, 30 limes."""
    items = [
        {"ingredient_id": catalog["cup"]["id"], "quantity": 20, "unit_cost": 0.1},
        {"ingredient_id": catalog["gin"]["id"], "quantity": 1000, "unit_cost": 0.04},
        {"ingredient_id": catalog["tonic"]["id"], "quantity": 2000, "unit_cost": 0.002},
        {"ingredient_id": catalog["soda"]["id"], "quantity": 2000},
        {"ingredient_id": catalog["lime"]["id"], "quantity": 30},
    ]
    resp = client.post(
        "/open-bar/deliveries",
        json={"supplier_name": "Cellar Co", "invoice_ref": "INV-1", "items": items},
        headers=auth("manager"),
    )
    assert resp.status_code == 201, resp.text
    return catalog


@pytest.fixture
def active_session(client, stocked):
    """A Wedding session launched by alice (120 minutes from START)."""
    resp = client.post(
        "/open-bar/sessions/",
        json={"session_type_id": stocked["session_type"]["id"], "status": "active"},
        headers=auth("alice"),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def stock_of(client, ingredient_id) -> float:
    resp = client.get(f"/open-bar/ingredients/{ingredient_id}", headers=auth("manager"))
    assert resp.status_code == 200, resp.text
    return resp.json()["current_stock"]
