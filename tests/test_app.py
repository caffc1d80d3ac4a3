"""HTTP surface and WebSocket control channel, end to end."""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from udprelay.config import DeploymentMode, RelayConfig
from udprelay.transport.app import create_app


@pytest.fixture
def config():
    return RelayConfig(
        port=8080,
        lookup_urls=[],
        deployment_mode=DeploymentMode.UNRESTRICTED,
        max_connections=2,
        environment="test",
        version="9.9.9",
    )


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["timestamp"]


def test_status(client):
    body = client.get("/status").json()
    assert body["status"] == "running"
    assert body["connections"] == 0
    assert body["udpSockets"] == 0
    assert body["environment"] == "test"
    assert body["deploymentMode"] == "unrestricted"
    assert body["version"] == "9.9.9"
    assert body["uptime"] >= 0


def test_status_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "UDP Relay" in response.text
    assert "/send-to-client/{clientId}" in response.text


def test_send_to_unknown_client(client):
    response = client.post("/send-to-client/nobody", json={"data": [1, 2]})
    assert response.status_code == 404
    assert response.json() == {"error": "Client not found"}


def test_send_to_client_rejects_bad_json(client):
    response = client.post(
        "/send-to-client/nobody",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON data"}


def test_control_channel_session(client):
    with client.websocket_connect("/") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "welcome"
        assert welcome["serverInfo"] == {"version": "9.9.9", "maxConnections": 2}
        client_id = welcome["clientId"]
        
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
        
        ws.send_json({"type": "foo"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["message"] == "Unknown message type: foo"
        
        ws.send_text("not json")
        assert ws.receive_json()["message"] == "Invalid message format"
        
        ws.send_json({"type": "udp_send", "data": [1], "remoteAddress": "127.0.0.1", "remotePort": 9})
        assert ws.receive_json()["message"] == "UDP not connected"
        
        ws.send_json({"type": "udp_connect", "localIP": "127.0.0.1", "localPort": 0})
        connected = ws.receive_json()
        assert connected["type"] == "udp_connected"
        assert connected["localAddress"] == "127.0.0.1"
        assert connected["localPort"] > 0
        
        clients = client.get("/clients").json()
        assert clients["totalClients"] == 1
        assert clients["clients"][0]["id"] == client_id
        assert clients["clients"][0]["hasUDP"] is True
        assert client.get("/status").json()["udpSockets"] == 1
        
        response = client.post(f"/send-to-client/{client_id}", json={"message": "hi"})
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": f"Data sent to client {client_id}",
            "targetIP": "127.0.0.1",
            "targetPort": 8081,
        }
        sent = ws.receive_json()
        assert sent["type"] == "udp_sent_to_client"
        assert sent["bytesSent"] == 2
        
        ws.send_json({"type": "udp_disconnect"})
        assert ws.receive_json()["type"] == "udp_disconnected"
    
    # Session is removed once the channel closes
    for _ in range(50):
        if client.get("/status").json()["connections"] == 0:
            break
        time.sleep(0.02)
    assert client.get("/status").json()["connections"] == 0


def test_ws_path_alias(client):
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["type"] == "welcome"


def test_capacity_limit_closes_with_try_again_later(client):
    with client.websocket_connect("/") as first, client.websocket_connect("/") as second:
        first.receive_json()
        second.receive_json()
        
        with client.websocket_connect("/") as third:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                third.receive_json()
        assert exc_info.value.code == 1013


def test_send_to_client_rejects_out_of_range_bytes(client):
    response = client.post("/send-to-client/nobody", json={"data": [256]})
    assert response.status_code == 400
