from __future__ import annotations

import json
import logging
import socket
import threading
from collections.abc import Iterator
from email.message import Message
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from cua_orchestrator.webhook.dispatcher import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    USER_AGENT,
    WebhookPayload,
    deliver,
    sign,
    verify,
)


class _Receiver:
    def __init__(self, status: int) -> None:
        self.status = status
        self.requests: list[tuple[Message, bytes]] = []


@pytest.fixture
def receiver() -> Iterator[tuple[_Receiver, str]]:
    state = _Receiver(status=200)

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:  # noqa: N802
            length = int(self.headers.get("Content-Length", "0"))
            # Header lookups on the message are case-insensitive.
            state.requests.append((self.headers, self.rfile.read(length)))
            self.send_response(state.status)
            self.end_headers()
            self.wfile.write(b"nope" if state.status >= 400 else b"ok")

        def log_message(self, *args: object) -> None:
            return None

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield state, f"http://127.0.0.1:{server.server_port}/hook"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def garbage_server() -> Iterator[str]:
    """Accepts one connection at a time and answers with a non-HTTP status line."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    listener.settimeout(0.2)
    stopped = threading.Event()

    def serve() -> None:
        while not stopped.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            with conn:
                conn.settimeout(1.0)
                try:
                    conn.recv(65536)
                    conn.sendall(b"NOT-HTTP garbage\r\n\r\n")
                except OSError:
                    pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{listener.getsockname()[1]}/hook"
    finally:
        stopped.set()
        thread.join(timeout=2.0)
        listener.close()


def _payload() -> WebhookPayload:
    return WebhookPayload(
        batch_execution_id="batch-1",
        task_id="task-1",
        task_index=0,
        status="paused",
        agent_status="needs_clarification",
        message="Which account?",
        next_step="Pick the account",
    )


SIGNED_BODY = '{"taskId":"t-1","status":"completed"}'


def test_signature_roundtrip() -> None:
    signature = sign(SIGNED_BODY, "secret")

    assert verify(SIGNED_BODY, signature, "secret")
    assert verify(SIGNED_BODY.encode("utf-8"), f"sha256={signature}", "secret")
    assert not verify(SIGNED_BODY, signature, "other")
    assert not verify(SIGNED_BODY, signature[:-2], "secret")


@pytest.mark.parametrize("position", range(len(SIGNED_BODY)))
def test_any_changed_byte_breaks_the_signature(position: int) -> None:
    signature = sign(SIGNED_BODY, "secret")
    raw = bytearray(SIGNED_BODY.encode("utf-8"))
    raw[position] ^= 0x01

    assert not verify(bytes(raw), signature, "secret")


def test_payload_serializes_with_camel_case_keys() -> None:
    data = json.loads(_payload().to_json())

    assert data["type"] == "task_status"
    assert data["batchExecutionId"] == "batch-1"
    assert data["taskIndex"] == 0
    assert data["agentStatus"] == "needs_clarification"
    assert data["nextStep"] == "Pick the account"
    assert "evidence" not in data
    assert data["timestamp"]


def test_deliver_signs_exact_body(receiver: tuple[_Receiver, str]) -> None:
    state, url = receiver

    result = deliver(url, _payload(), "secret")

    assert result.delivered
    assert result.status_code == 200
    headers, body = state.requests[0]
    assert headers["Content-Type"] == "application/json"
    assert headers["User-Agent"] == USER_AGENT
    assert headers[TIMESTAMP_HEADER]
    assert headers[SIGNATURE_HEADER] == f"sha256={sign(body, 'secret')}"
    assert verify(body, headers[SIGNATURE_HEADER], "secret")


def test_deliver_without_secret_sends_no_signature(receiver: tuple[_Receiver, str]) -> None:
    state, url = receiver

    result = deliver(url, {"type": "task_status", "taskId": "t"})

    assert result.delivered
    headers, body = state.requests[0]
    assert SIGNATURE_HEADER not in headers
    assert json.loads(body) == {"type": "task_status", "taskId": "t"}


def test_deliver_reports_rejection_without_raising(receiver: tuple[_Receiver, str]) -> None:
    state, url = receiver
    state.status = 500

    result = deliver(url, _payload(), "secret")

    assert not result.delivered
    assert result.status_code == 500


def test_deliver_to_unreachable_endpoint_does_not_raise(
    caplog: pytest.LogCaptureFixture,
) -> None:
    # Nothing listens on the discard port locally, so the connection is refused.
    with caplog.at_level(logging.ERROR, logger="cua_orchestrator.webhook.dispatcher"):
        result = deliver("http://127.0.0.1:9/hook", _payload(), "secret", timeout_s=1.0)

    assert not result.delivered
    assert result.error
    assert any(
        "webhook event=failed url=http://127.0.0.1:9/hook" in record.getMessage()
        for record in caplog.records
    )


def test_deliver_survives_malformed_http_response(
    garbage_server: str, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.ERROR, logger="cua_orchestrator.webhook.dispatcher"):
        result = deliver(garbage_server, _payload(), "secret", timeout_s=2.0)

    assert not result.delivered
    assert result.status_code is None
    assert any("webhook event=failed" in record.getMessage() for record in caplog.records)


def test_deliver_rejects_malformed_url_quietly() -> None:
    result = deliver("not-a-url", _payload())

    assert not result.delivered
