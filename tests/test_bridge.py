import asyncio
import json

from starlette.websockets import WebSocketState

from apps.api.bridge import bridge, pump_client_to_gateway, pump_gateway_to_client


CONNECT = json.dumps({"type": "req", "id": "1", "method": "connect", "params": {"client": {"id": "web"}}})


class _ClientSocket:
    def __init__(self, frames: list):
        self.frames = list(frames)
        self.sent: list = []
        self.client_state = WebSocketState.CONNECTED

    async def receive(self) -> dict:
        if not self.frames:
            return {"type": "websocket.disconnect", "code": 1000}
        frame = self.frames.pop(0)
        if isinstance(frame, bytes):
            return {"type": "websocket.receive", "bytes": frame}
        return {"type": "websocket.receive", "text": frame}

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.client_state = WebSocketState.DISCONNECTED


class _Upstream:
    def __init__(self, incoming=()):
        self.incoming = list(incoming)
        self.sent: list[str] = []
        self.closed = asyncio.Event()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed.set()

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        for message in self.incoming:
            yield message
        await self.closed.wait()


def test_client_frames_get_token_injected() -> None:
    ws = _ClientSocket([CONNECT, '{"type":"req","method":"chat.send","params":{}}'])
    upstream = _Upstream()

    asyncio.run(pump_client_to_gateway(ws, upstream, "secret"))

    first = json.loads(upstream.sent[0])
    assert first["params"]["auth"] == {"token": "secret"}
    assert first["params"]["client"] == {"id": "web"}
    assert upstream.sent[1] == '{"type":"req","method":"chat.send","params":{}}'
    assert upstream.closed.is_set()


def test_client_frames_pass_through_without_token() -> None:
    ws = _ClientSocket([CONNECT])
    upstream = _Upstream()

    asyncio.run(pump_client_to_gateway(ws, upstream, None))

    assert upstream.sent == [CONNECT]


def test_gateway_messages_are_relayed_as_text_or_bytes() -> None:
    ws = _ClientSocket([])
    upstream = _Upstream(["hello", b"\x00\x01"])
    upstream.closed.set()

    asyncio.run(pump_gateway_to_client(upstream, ws))

    assert ws.sent == ["hello", b"\x00\x01"]
    assert ws.client_state == WebSocketState.DISCONNECTED


def test_bridge_ends_when_client_disconnects() -> None:
    ws = _ClientSocket([CONNECT])
    upstream = _Upstream(["welcome"])

    asyncio.run(asyncio.wait_for(bridge(ws, upstream, "secret"), timeout=5))

    assert json.loads(upstream.sent[0])["params"]["auth"]["token"] == "secret"
    assert upstream.closed.is_set()


def test_binary_client_frames_are_forwarded_unchanged() -> None:
    ws = _ClientSocket([b"\x89PNG", CONNECT])
    upstream = _Upstream()

    asyncio.run(pump_client_to_gateway(ws, upstream, "secret"))

    assert upstream.sent[0] == b"\x89PNG"
    assert json.loads(upstream.sent[1])["params"]["auth"] == {"token": "secret"}
    assert upstream.closed.is_set()
