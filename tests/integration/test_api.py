import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from apis.flow_api import create_flow_api
from apis.webhook_message_api import create_webhook_message_api
from apis.session_api import create_session_api

from tests.conftest import ACCOUNT_ID, CONVERSATION_ID, yes_no_graph, whatsapp_payload, text_message

HEADERS = {"x-account-id": ACCOUNT_ID}


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(create_flow_api(
        log_util=engine.log_util,
        flow_service=engine.flow_service,
        session_transaction_service=engine.session_transaction_service
    ))
    app.include_router(create_webhook_message_api(log_util=engine.log_util, webhook_service=engine.webhook_service))
    app.include_router(create_session_api(
        log_util=engine.log_util,
        session_service=engine.session_service,
        webhook_service=engine.webhook_service
    ))
    return TestClient(app)


def create_and_publish(client):
    nodes, edges = yes_no_graph()
    response = client.post(
        "/flow/create",
        json={"name": "Welcome", "nodes": nodes, "edges": [e.model_dump() for e in edges]},
        headers=HEADERS
    )
    assert response.status_code == 200
    flow_id = response.json()["flow_id"]
    response = client.post(f"/flow/{flow_id}/publish", headers=HEADERS)
    assert response.status_code == 200
    return flow_id


def test_flow_api_requires_account_header(client):
    response = client.get("/flow/list")
    assert response.status_code == 401


def test_publish_invalid_flow_lists_errors(client):
    response = client.post("/flow/create", json={"name": "Empty"}, headers=HEADERS)
    flow_id = response.json()["flow_id"]

    response = client.post(f"/flow/{flow_id}/publish", headers=HEADERS)

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert "flow has no trigger node" in detail["errors"]


def test_unknown_flow_is_404(client):
    response = client.get("/flow/detail/nope", headers=HEADERS)
    assert response.status_code == 404


def test_publish_and_read_back(client):
    flow_id = create_and_publish(client)

    published = client.get(f"/flow/{flow_id}/published", headers=HEADERS).json()
    assert published["version"] == 1
    assert [n["id"] for n in published["graph"]["nodes"]][0] == "trigger"

    listed = client.get("/flow/list", headers=HEADERS).json()
    assert [flow["flow_id"] for flow in listed] == [flow_id]


def test_webhook_runs_the_flow(client, engine):
    create_and_publish(client)

    response = client.post("/webhook", json=whatsapp_payload([text_message("m1", "hi")]))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["events_received"] == 1
    assert body["events_accepted"] == 1
    assert engine.dispatcher.texts == ["Hi"]

    sessions = client.get(f"/session/conversation/{CONVERSATION_ID}", headers=HEADERS).json()
    assert len(sessions) == 1
    assert sessions[0]["current_node_id"] == "wait"

    detail = client.get(f"/session/detail/{sessions[0]['session_id']}", headers=HEADERS)
    assert detail.status_code == 200
    assert "session_token" not in detail.json()


def test_sessions_are_scoped_to_the_calling_account(client):
    create_and_publish(client)
    client.post("/webhook", json=whatsapp_payload([text_message("m1", "hi")]))
    sessions = client.get(f"/session/conversation/{CONVERSATION_ID}", headers=HEADERS).json()
    session_id = sessions[0]["session_id"]
    assert all("session_token" not in session for session in sessions)

    assert client.get(f"/session/detail/{session_id}").status_code == 401
    assert client.get(f"/session/conversation/{CONVERSATION_ID}").status_code == 401

    other = {"x-account-id": "someone-else"}
    assert client.get(f"/session/detail/{session_id}", headers=other).status_code == 404
    assert client.get(f"/session/conversation/{CONVERSATION_ID}", headers=other).json() == []


def test_webhook_answers_200_when_an_event_fails(client, engine, mocker):
    create_and_publish(client)
    mocker.patch.object(engine.interpreter, "start", side_effect=RuntimeError("boom"))

    response = client.post("/webhook", json=whatsapp_payload([text_message("m1", "hi")]))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "error"
    assert body["errors"] == 1
    assert "boom" in body["error_details"]


def test_webhook_that_cannot_be_recorded_is_500(client, engine, mocker):
    mocker.patch.object(engine.flow_db, "save_webhook_message", side_effect=RuntimeError("database down"))

    response = client.post("/webhook", json=whatsapp_payload([text_message("m1", "hi")]))

    assert response.status_code == 500


def test_session_start_conflict(client):
    flow_id = create_and_publish(client)
    body = {"flow_id": flow_id, "conversation_id": "PN1:15559990000"}

    first = client.post("/session/start", json=body, headers=HEADERS)
    second = client.post("/session/start", json=body, headers=HEADERS)

    assert first.status_code == 200
    assert first.json()["current_node_id"] == "wait"
    assert second.status_code == 409


def test_analytics(client):
    flow_id = create_and_publish(client)
    client.post("/webhook", json=whatsapp_payload([text_message("m1", "hi")]))

    analytics = client.get(f"/flow/{flow_id}/analytics", headers=HEADERS).json()

    assert analytics["session_counts"] == {"active": 1}
    assert analytics["node_counts"]["hi"] == 1
