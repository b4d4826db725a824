"""
Tests for the HTTP surface
"""

import json

import pytest
from fastapi.testclient import TestClient

import main
from nutrilog.models import IntentDecision


@pytest.fixture
def client(monkeypatch, orchestrator):
    monkeypatch.setattr(main, "orchestrator", orchestrator)
    return TestClient(main.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_chat_returns_turn_result(client):
    response = client.post("/chat", json={"user_id": "u1", "message": "thanks"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["response_type"] == "chat_response"
    assert body["steps"] == ["Closing recognized"]


def test_chat_requires_user_id(client):
    response = client.post("/chat", json={"user_id": " ", "message": "hi"})
    assert response.status_code == 400


def test_chat_stream_sends_steps_then_response(client, classifier):
    classifier.decisions.append(IntentDecision(intent="greet"))

    response = client.post("/chat/stream", json={"user_id": "u1", "message": "hello"})

    events = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert events[0] == {"step": "Analyzing intent..."}
    assert events[-1]["response"]["response_type"] == "chat_response"
    assert events[-1]["response"]["steps"] == ["Analyzing intent..."]


def test_shutdown_drains_background_work(monkeypatch, orchestrator):
    drained = []

    async def drain():
        drained.append(True)

    monkeypatch.setattr(orchestrator, "drain", drain)
    monkeypatch.setattr(main, "orchestrator", orchestrator)

    with TestClient(main.app) as client:
        assert client.get("/").status_code == 200
        assert drained == []

    assert drained == [True]
