"""HTTP control surface: health, streaming start/stop/status, manual automation triggers."""

from __future__ import annotations

import hmac
import json
import logging
import threading
from datetime import date
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from core.exceptions import AutomationError

logger = logging.getLogger(__name__)

AUTOMATION_RULES = ("rebalance", "risk-check", "disconnect-check", "daily-summary")


class ControlServer:
    """
    JSON server on a background thread.

    `status_provider` feeds GET /health. `streaming` (a
    StreamingConnectionManager) and `orchestrator` (an AutomationOrchestrator)
    are optional; their routes answer 503 when absent. With `auth_token` set,
    every route except GET /health requires `Authorization: Bearer <token>`.
    """

    def __init__(
        self,
        port: int,
        status_provider: Callable[[], Dict[str, Any]],
        streaming: Optional[Any] = None,
        orchestrator: Optional[Any] = None,
        auth_token: Optional[str] = None,
        host: str = "0.0.0.0",
    ):
        self._port = int(port)
        self._host = host
        self._status_provider = status_provider
        self._streaming = streaming
        self._orchestrator = orchestrator
        self._auth_token = auth_token or None
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="ControlServer", daemon=True)
        self._thread.start()
        logger.info("Control server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down control server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    # ---- routing -----------------------------------------------------------

    def authorized(self, header: Optional[str]) -> bool:
        if self._auth_token is None:
            return True
        if not header or not header.startswith("Bearer "):
            return False
        return hmac.compare_digest(header[len("Bearer "):].strip(), self._auth_token)

    def handle_get(self, path: str) -> Tuple[int, Dict[str, Any]]:
        if path in ("/", "/health", "/healthz"):
            payload = self._status_provider() or {}
            return (200 if payload.get("ok", True) else 503), payload
        if path == "/streaming/status":
            if self._streaming is None:
                return 503, {"error": "streaming not configured"}
            return 200, self._streaming.get_status().to_dict()
        return 404, {"error": f"unknown route {path}"}

    def handle_post(self, path: str, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        if path.startswith("/streaming/"):
            if self._streaming is None:
                return 503, {"error": "streaming not configured"}
            action = path[len("/streaming/"):]
            if action == "start":
                state = self._streaming.start(body.get("account_id"))
            elif action == "stop":
                state = self._streaming.stop()
            elif action == "reset":
                state = self._streaming.reset_circuit()
            else:
                return 404, {"error": f"unknown streaming action {action}"}
            return 200, state.to_dict()

        if path.startswith("/automation/"):
            if self._orchestrator is None:
                return 503, {"error": "automation not configured"}
            rule = path[len("/automation/"):]
            if rule not in AUTOMATION_RULES:
                return 404, {"error": f"unknown automation rule {rule}"}
            kwargs: Dict[str, Any] = {}
            if rule == "daily-summary" and body.get("date"):
                kwargs["day"] = date.fromisoformat(str(body["date"]))
            return 200, self._orchestrator.run(rule, **kwargs).to_dict()

        return 404, {"error": f"unknown route {path}"}

    @staticmethod
    def _build_handler(server: "ControlServer"):

        class ControlHandler(BaseHTTPRequestHandler):
            def _reply(self, code: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _path(self) -> str:
                return self.path.split("?", 1)[0].rstrip("/") or "/"

            def do_GET(self):  # type: ignore[override]
                path = self._path()
                if path not in ("/", "/health", "/healthz") and not server.authorized(
                        self.headers.get("Authorization")):
                    self._reply(401, {"error": "unauthorized"})
                    return
                self._reply(*server.handle_get(path))

            def do_POST(self):  # type: ignore[override]
                if not server.authorized(self.headers.get("Authorization")):
                    self._reply(401, {"error": "unauthorized"})
                    return
                length = int(self.headers.get("Content-Length") or 0)
                try:
                    body = json.loads(self.rfile.read(length) or b"{}") if length else {}
                    if not isinstance(body, dict):
                        raise ValueError("request body must be a JSON object")
                    self._reply(*server.handle_post(self._path(), body))
                except ValueError as exc:
                    self._reply(400, {"error": str(exc)})
                except AutomationError as exc:
                    logger.error("Control request %s failed: %s", self.path, exc)
                    self._reply(500, {"error": str(exc)})

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return ControlHandler


__all__ = ["ControlServer", "AUTOMATION_RULES"]
