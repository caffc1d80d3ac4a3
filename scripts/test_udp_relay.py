#!/usr/bin/env python3
"""
Test Client - UDP Relay

Connects to a running relay and exercises the control channel:
1. Receives the welcome message
2. Requests UDP sockets with several local address/port combinations
   (including client-side addresses the relay host does not own)
3. Sends a datagram to a local echo responder and waits for it to come back
4. Disconnects the UDP socket

Usage:
    python -m udprelay            # in one terminal
    python scripts/test_udp_relay.py [ws://localhost:8080/]

In restricted mode every bind is reported as 0.0.0.0 with an
OS-assigned port, whatever was requested.
"""

import asyncio
import json
import socket
import sys

import websockets

RELAY_URL = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:8080/"

TEST_CASES = [
    {"localIP": "172.20.224.1", "localPort": 8081, "description": "Client address not owned by the relay host"},
    {"localIP": "192.168.1.101", "localPort": 8081, "description": "Another foreign client address"},
    {"localIP": "0.0.0.0", "localPort": 0, "description": "Standard bind-all case"},
]


async def recv_until(ws, *message_types: str, timeout: float = 10.0) -> dict:
    """Read messages until one of the given types (or an error) arrives."""
    while True:
        data = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))
        print(f"   ← {data['type']}")
        if data["type"] in message_types or data["type"] == "error":
            return data


async def test_bind(case: dict) -> dict:
    print("\n" + "─"*70)
    print(f"🧪 {case['description']}")
    print(f"   Requesting {case['localIP']}:{case['localPort']}")
    print("─"*70)
    
    async with websockets.connect(RELAY_URL) as ws:
        welcome = await recv_until(ws, "welcome")
        print(f"   Client ID: {welcome.get('clientId')}")
        
        await ws.send(json.dumps({
            "type": "udp_connect",
            "localIP": case["localIP"],
            "localPort": case["localPort"],
        }))
        result = await recv_until(ws, "udp_connected")
        
        if result["type"] == "udp_connected":
            print(f"✅ UDP ready: {result['localAddress']}:{result['localPort']}")
            print(f"   Server bind: {result['serverBindAddress']}:{result['serverBindPort']}")
        else:
            print(f"❌ UDP connect failed: {result['message']} ({result.get('category')})")
        return result


async def test_echo() -> bool:
    print("\n" + "="*70)
    print("🔁 ECHO ROUND TRIP")
    print("="*70)
    
    loop = asyncio.get_running_loop()
    echo = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    echo.bind(("127.0.0.1", 0))
    echo.setblocking(False)
    echo_ip, echo_port = echo.getsockname()
    print(f"   Echo responder on {echo_ip}:{echo_port}")
    
    async def respond():
        data, addr = await loop.sock_recvfrom(echo, 65535)
        await loop.sock_sendto(echo, data, addr)
    
    responder = asyncio.create_task(respond())
    try:
        async with websockets.connect(RELAY_URL) as ws:
            await recv_until(ws, "welcome")
            await ws.send(json.dumps({"type": "udp_connect", "localIP": "0.0.0.0", "localPort": 0}))
            connected = await recv_until(ws, "udp_connected")
            if connected["type"] != "udp_connected":
                print(f"❌ UDP connect failed: {connected['message']}")
                return False
            
            payload = list(b"hello relay")
            await ws.send(json.dumps({
                "type": "udp_send",
                "data": payload,
                "remoteAddress": echo_ip,
                "remotePort": echo_port,
            }))
            reply = await recv_until(ws, "udp_data")
            ok = reply["type"] == "udp_data" and reply["data"] == payload
            print(f"{'✅' if ok else '❌'} Echo: {bytes(reply.get('data', [])).decode(errors='replace')!r}")
            
            await ws.send(json.dumps({"type": "udp_disconnect"}))
            await recv_until(ws, "udp_disconnected")
            return ok
    finally:
        responder.cancel()
        echo.close()


async def main():
    print("="*70)
    print("📡 UDP RELAY TEST CLIENT")
    print("="*70)
    print(f"Relay URL: {RELAY_URL}")
    
    results = []
    for case in TEST_CASES:
        try:
            result = await test_bind(case)
            results.append((case["description"], result["type"] == "udp_connected", result.get("message")))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            print(f"❌ {e}")
            results.append((case["description"], False, str(e)))
        await asyncio.sleep(0.5)
    
    try:
        results.append(("Echo round trip", await test_echo(), None))
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        print(f"❌ {e}")
        results.append(("Echo round trip", False, str(e)))
    
    print("\n" + "="*70)
    print("📋 SUMMARY")
    print("="*70)
    for index, (description, ok, error) in enumerate(results, 1):
        print(f"{index}. {description}: {'✅ passed' if ok else '❌ failed'}")
        if error and not ok:
            print(f"   Error: {error}")
    
    passed = sum(1 for _, ok, _ in results if ok)
    print(f"\nTotal: {passed}/{len(results)} passed")
    return passed == len(results)


if __name__ == "__main__":
    try:
        sys.exit(0 if asyncio.run(main()) else 1)
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
