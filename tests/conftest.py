"""
Pytest fixtures: in-memory Firestore, FastAPI client and gateway doubles.
"""

import copy
import json
import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import httpx
import pytest
import pytz
from fastapi.testclient import TestClient
from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists, NotFound


NOW = datetime(2025, 3, 10, 15, 0, tzinfo=pytz.utc)


# --- In-memory Firestore ---
def _resolve_sentinels(data):
    return {
        key: (datetime.now(pytz.utc) if value is firestore.SERVER_TIMESTAMP else value)
        for key, value in data.items()
    }


def _matches(doc_data, field_filter):
    value = doc_data.get(field_filter.field_path)
    op = field_filter.op_string
    expected = field_filter.value
    if op == "==":
        return value == expected
    if op == "!=":
        return value is not None and value != expected
    if op == "in":
        return value in expected
    if value is None:
        return False
    if op == ">=":
        return value >= expected
    if op == ">":
        return value > expected
    if op == "<=":
        return value <= expected
    if op == "<":
        return value < expected
    raise ValueError(f"Unsupported operator {op}")


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, store, collection, doc_id):
        self._store = store
        self._collection = collection
        self.id = doc_id

    @property
    def _docs(self):
        return self._store.setdefault(self._collection, {})

    def get(self):
        return FakeSnapshot(self, copy.deepcopy(self._docs.get(self.id)))

    def set(self, data, merge=False):
        data = _resolve_sentinels(data)
        if merge and self.id in self._docs:
            self._docs[self.id].update(data)
        else:
            self._docs[self.id] = data

    def create(self, data):
        if self.id in self._docs:
            raise AlreadyExists(f"{self._collection}/{self.id} already exists")
        self._docs[self.id] = _resolve_sentinels(data)

    def update(self, data):
        if self.id not in self._docs:
            raise NotFound(f"{self._collection}/{self.id} not found")
        self._docs[self.id].update(_resolve_sentinels(data))

    def delete(self):
        self._docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, store, collection, filters=None, order=None, limit_to=None):
        self._store = store
        self._collection = collection
        self._filters = filters or []
        self._order = order
        self._limit = limit_to

    def where(self, filter=None):
        return FakeQuery(self._store, self._collection, self._filters + [filter], self._order, self._limit)

    def order_by(self, field, direction="ASCENDING"):
        return FakeQuery(self._store, self._collection, self._filters, (field, direction), self._limit)

    def limit(self, count):
        return FakeQuery(self._store, self._collection, self._filters, self._order, count)

    def stream(self):
        docs = self._store.setdefault(self._collection, {})
        results = [
            (doc_id, data) for doc_id, data in list(docs.items())
            if all(_matches(data, f) for f in self._filters)
        ]
        if self._order:
            field, direction = self._order
            results = [item for item in results if item[1].get(field) is not None]
            results.sort(key=lambda item: item[1][field], reverse=direction == firestore.Query.DESCENDING)
        if self._limit is not None:
            results = results[: self._limit]
        for doc_id, data in results:
            yield FakeSnapshot(FakeDocumentRef(self._store, self._collection, doc_id), copy.deepcopy(data))


class FakeCollection(FakeQuery):
    def __init__(self, store, name):
        super().__init__(store, name)

    def document(self, doc_id=None):
        return FakeDocumentRef(self._store, self._collection, doc_id or uuid.uuid4().hex[:20])

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return datetime.now(pytz.utc), ref


class FakeFirestore:
    def __init__(self):
        self.store = {}

    def collection(self, name):
        return FakeCollection(self.store, name)

    # Atalhos para os testes
    def seed(self, collection, doc_id, data):
        self.collection(collection).document(doc_id).set(data)

    def data(self, collection, doc_id):
        return copy.deepcopy(self.store.get(collection, {}).get(doc_id))

    def all(self, collection):
        return copy.deepcopy(self.store.get(collection, {}))


# --- Fixtures de dados ---
@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def owner():
    """Authenticated owner (decoded Firebase ID token)."""
    return {"uid": "owner-1", "email": "dono@barbearia.com"}


@pytest.fixture
def establishment(db):
    data = {
        "owner_id": "owner-1",
        "name": "Barbearia do Zé",
        "phone": "(11) 98888-7777",
        "subscription_status": "active",
        "subscription_end_date": datetime.now(pytz.utc) + timedelta(days=10),
        "plan_id": "plan-pro",
        "mp_access_token": "SHOP-TOKEN",
    }
    db.seed("establishments", "est-1", data)
    return {"id": "est-1", **data}


@pytest.fixture
def saas_plan(db):
    data = {"name": "Pro", "price": 97.0, "days_valid": 30}
    db.seed("saas_plans", "plan-pro", data)
    return {"id": "plan-pro", **data}


@pytest.fixture
def whatsapp_config(db, establishment):
    data = {
        "is_active": True,
        "instance_id": "inst-1",
        "api_token": "wa-token",
        "triggers": {"confirmation": True, "reminder_1h": True},
        "templates": {},
    }
    db.seed("whatsapp_config", establishment["id"], data)
    return data


# --- Gateways HTTP ---
@pytest.fixture
def wa_requests():
    return []


@pytest.fixture
def wa_response():
    """Mutable response returned by the fake WhatsApp gateway."""
    return {"status_code": 200, "json": {"status": "queued"}}


@pytest.fixture
def wa_client(wa_requests, wa_response):
    from barberpro.services.whatsapp_service import WhatsAppClient

    def handler(request):
        wa_requests.append({"url": str(request.url), "body": json.loads(request.content)})
        return httpx.Response(wa_response["status_code"], json=wa_response["json"])

    return WhatsAppClient(api_url="https://wa.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def iugu_requests():
    return []


@pytest.fixture
def iugu_routes():
    """Map of (method, path) -> (status, json) served by the fake Iugu API."""
    return {}


@pytest.fixture
def iugu_client(iugu_requests, iugu_routes):
    from barberpro.services.iugu_service import IuguClient

    def handler(request):
        body = json.loads(request.content) if request.content else None
        iugu_requests.append({"method": request.method, "path": request.url.path,
                              "body": body, "auth": request.headers.get("authorization")})
        status_code, payload = iugu_routes.get((request.method, request.url.path), (200, {}))
        return httpx.Response(status_code, json=payload)

    return IuguClient(api_token="iugu-test", base_url="https://iugu.test/v1", transport=httpx.MockTransport(handler))


@pytest.fixture
def mp_gateway():
    """Mercado Pago gateway double (the SDK itself is not called)."""
    return MagicMock(name="MercadoPagoGateway")


# --- App ---
@pytest.fixture
def auth_state(owner):
    return {"user": owner}


@pytest.fixture
def client(db, auth_state, mp_gateway, wa_client, iugu_client):
    from barberpro.core.auth import get_current_user, get_optional_user
    from barberpro.core.db import get_db
    from barberpro.core.deps import (
        get_establishment_gateway_factory, get_iugu_client,
        get_platform_gateway_factory, get_whatsapp_client,
    )
    from barberpro.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: auth_state["user"]
    app.dependency_overrides[get_optional_user] = lambda: auth_state["user"]
    app.dependency_overrides[get_platform_gateway_factory] = lambda: (lambda: mp_gateway)
    app.dependency_overrides[get_establishment_gateway_factory] = lambda: (lambda token: mp_gateway)
    app.dependency_overrides[get_whatsapp_client] = lambda: wa_client
    app.dependency_overrides[get_iugu_client] = lambda: iugu_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def super_admin(db, auth_state):
    db.seed("usuarios", "admin-1", {"email": "root@crdev.app", "tipo": "super_admin"})
    auth_state["user"] = {"uid": "admin-1", "email": "root@crdev.app"}
    return auth_state["user"]
