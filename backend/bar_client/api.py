"""
Typed client for the Open Bar API.

One method per ledger operation. The client never retries on its own: drink
issues are retried by the sync engine, management calls by the user.

Errors:
- transport failures (no network, timeouts) -> ConnectivityFailure
- 403 -> PermissionDenied
- 409 with `shortages` -> StockShortage
- 400 with `overage_ml` -> RecipeCapacityExceeded
- anything else >= 400 -> ApiError (message already sanitized)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from bar_client.config import client_settings
from core.errors import (
    ConnectivityFailure,
    OpenBarError,
    PermissionDenied,
    RecipeCapacityExceeded,
    SessionExpired,
    StockShortage,
    sanitize_message,
)
from core.volume import (
    LINE_FIXED,
    RecipeLineSpec,
    available_liquid_capacity_ml,
    validate_recipe_capacity,
)

logger = logging.getLogger(__name__)

SESSION_EXPIRED_DETAIL = "Open Bar Finished! Do not serve more drinks."


class ApiError(OpenBarError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def _encode(payload: Any) -> Any:
    # UUIDs, dates and Decimals become strings the API accepts
    return json.loads(json.dumps(payload, default=str))


def _response_detail(resp) -> Any:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "detail" in body:
        return body["detail"]
    return body


def parse_sse_lines(lines) -> Iterator[Tuple[str, Any]]:
    """Turn text/event-stream lines into (event, data) pairs. Comments are dropped."""
    event, data_lines = "message", []
    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if line is None:
            continue
        if line == "":
            if data_lines:
                text = "\n".join(data_lines)
                try:
                    data = json.loads(text)
                except ValueError:
                    data = text
                yield event, data
            event, data_lines = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)


@dataclass
class LedgerClient:
    base_url: str
    email: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    timeout: float = 30
    # requests.Session or anything with the same request() signature
    http: Any = None
    cache: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.http is None:
            self.http = requests.Session()

    @classmethod
    def from_settings(cls) -> "LedgerClient":
        return cls(
            base_url=client_settings.api_url,
            email=client_settings.api_email or None,
            password=client_settings.api_password or None,
            token=client_settings.api_token or None,
            timeout=client_settings.request_timeout,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _send(self, method: str, path: str, **kwargs):
        try:
            return self.http.request(method, self._url(path), headers=self._headers(), timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.info("%s %s: no connection (%r)", method, path, e)
            raise ConnectivityFailure() from e

    def login(self) -> str:
        """FastAPI-Users JWT login: POST /auth/jwt/login with form fields username, password."""
        resp = self._send("POST", "/auth/jwt/login", data={"username": self.email, "password": self.password})
        if resp.status_code >= 400:
            raise ApiError(f"Login failed ({resp.status_code})", resp.status_code, _response_detail(resp))
        token = resp.json().get("access_token")
        if not token:
            raise ApiError("Login response missing access_token")
        self.token = token
        return token

    def _raise_for_response(self, method: str, path: str, resp) -> None:
        detail = _response_detail(resp)
        message = detail.get("message") if isinstance(detail, dict) else detail
        message = sanitize_message(message if isinstance(message, str) else None, f"{method} {path} failed ({resp.status_code})")
        if resp.status_code == 403:
            raise PermissionDenied(message)
        if isinstance(detail, dict) and detail.get("shortages"):
            raise StockShortage(detail["shortages"], message)
        if isinstance(detail, dict) and "overage_ml" in detail:
            raise RecipeCapacityExceeded(detail["overage_ml"])
        if message == SESSION_EXPIRED_DETAIL:
            raise SessionExpired(message)
        raise ApiError(message, resp.status_code, detail)

    def _request(self, method: str, path: str, *, json: Any = None, params: Dict[str, Any] | None = None) -> Any:
        if not self.token and self.email and self.password:
            self.login()

        kwargs: Dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = _encode(json)
        if params:
            kwargs["params"] = {k: str(v) for k, v in params.items() if v is not None}
        resp = self._send(method, path, **kwargs)

        # Token expired: log in again once
        if resp.status_code == 401 and self.email and self.password:
            self.login()
            resp = self._send(method, path, **kwargs)

        if resp.status_code >= 400:
            self._raise_for_response(method, path, resp)
        if resp.status_code == 204:
            return None
        return resp.json()

    # ----------------------------
    # Catalog
    # ----------------------------

    def create_ingredient(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/open-bar/ingredients/", json=payload)

    def update_ingredient(self, ingredient_id, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/open-bar/ingredients/{ingredient_id}", json=changes)

    def create_category(self, name: str, sort_order: int = 0) -> Dict[str, Any]:
        return self._request("POST", "/open-bar/ingredient-categories/", json={"name": name, "sort_order": sort_order})

    def update_category(self, category_id, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/open-bar/ingredient-categories/{category_id}", json=changes)

    def create_variant(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/open-bar/ingredient-variants/", json=payload)

    def update_variant(self, variant_id, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/open-bar/ingredient-variants/{variant_id}", json=changes)

    def _check_recipe_capacity(self, payload: Dict[str, Any]) -> None:
        """Capacity check against the cached catalog, before anything is sent."""
        ingredients = {str(i["id"]): i for i in (self.cache.get("bootstrap") or {}).get("ingredients", [])}
        cup = ingredients.get(str(payload.get("cup_ingredient_id")))
        if not cup:
            return
        specs = []
        for idx, line in enumerate(payload.get("lines") or []):
            line_type = line.get("line_type") or LINE_FIXED
            base_unit = None
            if line_type == LINE_FIXED:
                base_unit = (ingredients.get(str(line.get("ingredient_id"))) or {}).get("base_unit")
            specs.append(
                RecipeLineSpec(
                    line_id=idx,
                    line_type=line_type,
                    quantity=float(line.get("quantity") or 0),
                    is_optional=bool(line.get("is_optional")),
                    affects_strength=bool(line.get("affects_strength")),
                    is_top_up=bool(line.get("is_top_up")),
                    base_unit=base_unit,
                )
            )
        capacity = available_liquid_capacity_ml(cup.get("cup_capacity_ml"), bool(payload.get("has_ice")), payload.get("ice_cubes"))
        validate_recipe_capacity(specs, capacity)

    def create_recipe(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._check_recipe_capacity(payload)
        return self._request("POST", "/open-bar/recipes/", json=payload)

    def update_recipe(self, recipe_id, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Full replacement: the recipe's lines become `payload["lines"]`."""
        self._check_recipe_capacity(payload)
        return self._request("PUT", f"/open-bar/recipes/{recipe_id}", json=payload)

    def create_session_type(self, name: str, default_time_limit_minutes: int = 60, sort_order: int = 0) -> Dict[str, Any]:
        payload = {"name": name, "default_time_limit_minutes": default_time_limit_minutes, "sort_order": sort_order}
        return self._request("POST", "/open-bar/session-types/", json=payload)

    def update_session_type(self, session_type_id, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/open-bar/session-types/{session_type_id}", json=changes)

    def create_venue(self, name: str) -> Dict[str, Any]:
        return self._request("POST", "/open-bar/venues/", json={"name": name})

    # ----------------------------
    # Ledger
    # ----------------------------

    def create_delivery(
        self,
        *,
        items: List[Dict[str, Any]],
        supplier_name: Optional[str] = None,
        invoice_ref: Optional[str] = None,
        delivered_at: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Calls: POST /open-bar/deliveries
        items: [{variant_id, purchase_units, purchase_unit_cost?}] or [{ingredient_id, quantity, unit_cost?}]
        """
        payload = {
            "supplier_name": supplier_name,
            "invoice_ref": invoice_ref,
            "delivered_at": delivered_at,
            "notes": notes,
            "items": items,
        }
        return self._request("POST", "/open-bar/deliveries", json=payload)

    def create_adjustment(
        self,
        *,
        ingredient_id,
        quantity_delta: float,
        movement_type: str = "adjustment",  # adjustment | waste | correction
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "ingredient_id": ingredient_id,
            "movement_type": movement_type,
            "quantity_delta": quantity_delta,
            "note": note,
        }
        return self._request("POST", "/open-bar/inventory/adjustments", json=payload)

    def list_movements(self, **filters) -> List[Dict[str, Any]]:
        return self._request("GET", "/open-bar/inventory/movements", params=filters)

    def get_bootstrap(
        self,
        *,
        business_date: Optional[date | str] = None,
        session_limit: Optional[int] = None,
        delivery_limit: Optional[int] = None,
        session_issue_limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            "business_date": business_date,
            "session_limit": session_limit,
            "delivery_limit": delivery_limit,
            "session_issue_limit": session_issue_limit,
        }
        snapshot = self._request("GET", "/open-bar/bootstrap", params=params)
        self.cache["bootstrap"] = snapshot
        return snapshot

    # ----------------------------
    # Drink issues
    # ----------------------------

    def create_drink_issue(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {"issue": {...}}. Raises StockShortage when any ingredient is short."""
        return self._request("POST", "/open-bar/drink-issues/", json=payload)

    def delete_drink_issue(self, issue_id) -> Dict[str, Any]:
        return self._request("DELETE", f"/open-bar/drink-issues/{issue_id}")

    # ----------------------------
    # Sessions
    # ----------------------------

    def create_session(
        self,
        *,
        session_type_id,
        status: str = "active",
        name: Optional[str] = None,
        business_date: Optional[date | str] = None,
        venue_id=None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "session_type_id": session_type_id,
            "status": status,
            "name": name,
            "business_date": business_date,
            "venue_id": venue_id,
            "notes": notes,
        }
        return self._request("POST", "/open-bar/sessions/", json=payload)

    def get_session(self, session_id) -> Dict[str, Any]:
        return self._request("GET", f"/open-bar/sessions/{session_id}")

    def start_session(self, session_id) -> Dict[str, Any]:
        return self._request("POST", f"/open-bar/sessions/{session_id}/start")

    def join_session(self, session_id) -> Dict[str, Any]:
        return self._request("POST", f"/open-bar/sessions/{session_id}/join")

    def leave_session(self, session_id) -> Dict[str, Any]:
        return self._request("POST", f"/open-bar/sessions/{session_id}/leave")

    def close_session(self, session_id, reconciliation: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """reconciliation: [{ingredient_id, counted_stock}]; returns {"session", "reconciliation"}."""
        return self._request("POST", f"/open-bar/sessions/{session_id}/close", json={"reconciliation": reconciliation})

    def delete_session(self, session_id) -> None:
        return self._request("DELETE", f"/open-bar/sessions/{session_id}")

    # ----------------------------
    # Push channel
    # ----------------------------

    def stream_events(self, session_id) -> Iterator[Tuple[str, Any]]:
        """Blocking generator over the session's event stream. Run it in a worker thread."""
        if not self.token and self.email and self.password:
            self.login()
        try:
            resp = self.http.request(
                "GET",
                self._url("/open-bar/events"),
                params={"session_id": str(session_id)},
                headers={**self._headers(), "Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, None),
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise ConnectivityFailure() from e
        if resp.status_code >= 400:
            self._raise_for_response("GET", "/open-bar/events", resp)
        try:
            yield from parse_sse_lines(resp.iter_lines(decode_unicode=True))
        except (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise ConnectivityFailure() from e
        finally:
            resp.close()
