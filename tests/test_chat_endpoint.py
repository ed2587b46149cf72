import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from advisor.main import app
from advisor.models.chat import Turn
from advisor.routers.chat import get_coordinator
from advisor.services.database import MongoSessionStore
from advisor.services.errors import (
    GENERIC_RETRY_MESSAGE,
    HISTORY_RESET_MESSAGE,
    UpstreamProtocolError,
)
from advisor.services.session_store import InMemorySessionStore
from advisor.services.turns import OPENING_UTTERANCE, TurnCoordinator


def _chunk(text):
    delta = SimpleNamespace(content=text, role=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=None)])


class ScriptedLLM:
    def __init__(self) -> None:
        self.scripts: list[list] = []
        self.calls: list[list[Turn]] = []

    async def stream_reply(self, contents):
        self.calls.append(list(contents))
        for item in self.scripts.pop(0):
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield _chunk(item)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def client(store, llm):
    coordinator = TurnCoordinator(store=store, llm_client=llm)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    yield TestClient(app)
    app.dependency_overrides.clear()


OPENING_REPLY = (
    "I'm Tina. I help you to choose the right insurance policy. "
    "May I ask you a few personal questions to make sure I recommend the best policy for you?"
)


def test_opening_request_creates_two_turn_history(client, store, llm):
    llm.scripts.append([OPENING_REPLY[:30], OPENING_REPLY[30:]])

    response = client.post("/chat", json={"sessionId": "s1", "userResponse": ""})

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == OPENING_REPLY
    assert body["history"] == [
        {"role": "user", "text": OPENING_UTTERANCE},
        {"role": "assistant", "text": OPENING_REPLY},
    ]
    assert len(store.get("s1")) == 2
    assert llm.calls[0] == [Turn(role="user", text=OPENING_UTTERANCE)]


def test_follow_up_request_appends_user_and_assistant_turns(client, store, llm):
    llm.scripts.extend([[OPENING_REPLY], ["What type of vehicle ", "do you drive?"]])

    client.post("/chat", json={"sessionId": "s1", "userResponse": ""})
    response = client.post("/chat", json={"sessionId": "s1", "userResponse": "Yes, go ahead"})

    assert response.status_code == 200
    history = response.json()["history"]
    assert len(history) == 4
    assert [turn["role"] for turn in history] == ["user", "assistant", "user", "assistant"]
    assert history[2] == {"role": "user", "text": "Yes, go ahead"}
    assert response.json()["response"] == "What type of vehicle do you drive?"
    assert store.get("s1")[3].text == "What type of vehicle do you drive?"


@pytest.mark.parametrize(
    "payload",
    [
        {"userResponse": "hello"},
        {"sessionId": "", "userResponse": "hello"},
        {"sessionId": "s1"},
        {"sessionId": "s1", "userResponse": None},
    ],
)
def test_missing_fields_return_400_without_creating_session(client, store, llm, payload):
    response = client.post("/chat", json=payload)

    assert response.status_code == 400
    assert "error" in response.json()
    assert len(store) == 0
    assert llm.calls == []


def test_non_object_body_returns_400(client, store):
    response = client.post("/chat", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert "error" in response.json()
    assert len(store) == 0


def test_failure_mid_stream_returns_500_and_keeps_history(client, store, llm):
    llm.scripts.extend([[OPENING_REPLY], ["What type", RuntimeError("stream reset by peer")]])
    client.post("/chat", json={"sessionId": "s1", "userResponse": ""})
    before = store.get("s1")

    response = client.post("/chat", json={"sessionId": "s1", "userResponse": "Yes"})

    assert response.status_code == 500
    assert response.json() == {"error": GENERIC_RETRY_MESSAGE}
    assert store.get("s1") == before


def test_role_ordering_failure_asks_client_to_refresh(client, store, llm):
    llm.scripts.append([UpstreamProtocolError("First content should be with role 'user', got model")])

    response = client.post("/chat", json={"sessionId": "s1", "userResponse": "hello"})

    assert response.status_code == 500
    assert response.json() == {"error": HISTORY_RESET_MESSAGE}
    assert "s1" not in store


def test_healthcheck():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class UnreachableStore:
    def get(self, session_id):
        raise ServerSelectionTimeoutError("localhost:27017: connection refused")

    def set(self, session_id, turns):
        raise ServerSelectionTimeoutError("localhost:27017: connection refused")


class _StubCollection:
    def __init__(self, documents) -> None:
        self.documents = documents

    def find_one(self, query):
        return self.documents.get(query["sessionId"])

    def replace_one(self, query, document, upsert=False):
        self.documents[query["sessionId"]] = dict(document)


class _StubMongoClient:
    def __init__(self, documents) -> None:
        self._collection = _StubCollection(documents)
        self.admin = SimpleNamespace(command=lambda cmd: {"ok": 1})

    def __getitem__(self, name):
        return _StubDatabase(self._collection)


class _StubDatabase:
    name = "test-db"

    def __init__(self, collection) -> None:
        self._collection = collection

    def __getitem__(self, name):
        return self._collection


def _client_for(store, llm):
    coordinator = TurnCoordinator(store=store, llm_client=llm)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    return TestClient(app)


def test_unreachable_store_returns_json_500(llm):
    llm.scripts.append(["unused"])
    try:
        response = _client_for(UnreachableStore(), llm).post(
            "/chat", json={"sessionId": "s1", "userResponse": ""}
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": GENERIC_RETRY_MESSAGE}
    assert llm.calls == []


def test_history_stored_with_model_role_continues_the_conversation(llm):
    documents = {
        "s1": {
            "sessionId": "s1",
            "turns": [
                {"role": "user", "text": OPENING_UTTERANCE},
                {"role": "model", "text": OPENING_REPLY},
            ],
        }
    }
    store = MongoSessionStore(client=_StubMongoClient(documents))
    llm.scripts.append(["What type of vehicle do you drive?"])
    try:
        response = _client_for(store, llm).post(
            "/chat", json={"sessionId": "s1", "userResponse": "Yes"}
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert [turn["role"] for turn in response.json()["history"]] == [
        "user",
        "assistant",
        "user",
        "assistant",
    ]
    assert documents["s1"]["turns"][1] == {"role": "assistant", "text": OPENING_REPLY}


def test_stored_turn_with_unknown_role_asks_client_to_refresh(llm):
    documents = {
        "s1": {
            "sessionId": "s1",
            "turns": [{"role": "user", "text": "hi"}, {"role": "system", "text": "?"}],
        }
    }
    store = MongoSessionStore(client=_StubMongoClient(documents))
    try:
        response = _client_for(store, llm).post(
            "/chat", json={"sessionId": "s1", "userResponse": "Yes"}
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {"error": HISTORY_RESET_MESSAGE}
    assert llm.calls == []
