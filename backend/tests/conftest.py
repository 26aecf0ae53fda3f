"""Shared test fixtures and configuration for backend tests."""
import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chatdesk.auth.service import TokenService
from chatdesk.chat.gateway import ChatGateway, set_gateway
from chatdesk.chat.router import router
from chatdesk.chat.store import ChatStore
from chatdesk.users.service import UserDirectory, UserRecord

TEST_JWT_SECRET = "test-jwt-secret-for-chat-tests"

TEST_USERS = [
    UserRecord(id="customer-1", name="Test Customer", email="customer@test.com", role="customer"),
    UserRecord(id="customer-2", name="Other Customer", email="other@test.com", role="customer"),
    UserRecord(id="agent-1", name="Test Agent", email="agent@test.com", role="agent"),
    UserRecord(id="agent-2", name="Second Agent", email="agent2@test.com", role="admin"),
    UserRecord(id="inactive-1", name="Gone Customer", role="customer", is_active=False),
    UserRecord(id="vendor-1", name="Vendor", role="vendor"),
]


def run(coro):
    """Run a store coroutine from synchronous test code."""
    return asyncio.run(coro)


@pytest.fixture
def store():
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def users():
    directory = UserDirectory(db_path=":memory:")
    for user in TEST_USERS:
        directory.upsert_user(user)
    yield directory
    directory.close()


@pytest.fixture
def tokens():
    return TokenService(secret_key=TEST_JWT_SECRET)


@pytest.fixture
def gateway(store, users, tokens):
    """Gateway over in-memory DuckDB, installed as the process gateway."""
    chat_gateway = ChatGateway(store=store, users=users, tokens=tokens)
    set_gateway(chat_gateway)
    yield chat_gateway
    set_gateway(None)


@pytest.fixture
def client(gateway):
    """TestClient for the chat router.

    Used as a context manager so every WebSocket session shares one event
    loop, like connections on a real server.
    """
    test_app = FastAPI()
    test_app.include_router(router)
    with TestClient(test_app) as test_client:
        yield test_client


@pytest.fixture
def token_for(tokens):
    """Issue a valid access token for one of TEST_USERS."""
    roles = {u.id: u.role for u in TEST_USERS}

    def issue(user_id: str) -> str:
        return tokens.issue(user_id, roles.get(user_id, "customer"))

    return issue
