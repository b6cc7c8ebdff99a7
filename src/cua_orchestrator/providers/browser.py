"""Remote browser provider interface and an HTTP JSON adapter."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, parse, request

logger = logging.getLogger(__name__)


class BrowserProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class BrowserSession:
    handle: str
    control_url: str | None = None
    live_view_url: str | None = None


class BrowserProvider(Protocol):
    def create(self, *, timeout_s: int | None = None) -> BrowserSession: ...

    def pause(self, handle: str) -> None: ...

    def resume(self, handle: str) -> None: ...

    def destroy(self, handle: str) -> None: ...

    def control_url(self, handle: str) -> str | None: ...

    def screenshot(self, handle: str) -> str: ...

    def click(self, handle: str, x: int, y: int) -> None: ...

    def double_click(self, handle: str, x: int, y: int) -> None: ...

    def right_click(self, handle: str, x: int, y: int) -> None: ...

    def type_text(self, handle: str, text: str, *, delay_ms: int | None = None) -> None: ...

    def key_press(self, handle: str, keys: str) -> None: ...

    def scroll(self, handle: str, x: int, y: int, direction: str, amount: int) -> None: ...

    def move_mouse(self, handle: str, x: int, y: int) -> None: ...

    def cursor_position(self, handle: str) -> tuple[int, int]: ...


class HttpBrowserProvider:
    """Talks to a hosted browser service over a small JSON API.

    Sessions live under ``/browsers/{handle}`` and computer actions are posted
    to ``/browsers/{handle}/computer`` as ``{"action": ..., ...}``.
    """

    def __init__(self, *, base_url: str, api_key: str = "", timeout_s: float = 60.0) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_s = timeout_s

    def create(self, *, timeout_s: int | None = None) -> BrowserSession:
        payload: dict[str, Any] = {}
        if timeout_s is not None:
            payload["timeout_seconds"] = timeout_s
        data = self._call("POST", "/browsers", payload)
        handle = data.get("session_id") or data.get("id")
        if not handle:
            raise BrowserProviderError("Browser create response missing session id")
        logger.info("browser event=created handle=%s", handle)
        return BrowserSession(
            handle=str(handle),
            control_url=data.get("cdp_ws_url"),
            live_view_url=data.get("browser_live_view_url"),
        )

    def pause(self, handle: str) -> None:
        self._call("POST", f"/browsers/{self._quote(handle)}/pause")

    def resume(self, handle: str) -> None:
        self._call("POST", f"/browsers/{self._quote(handle)}/resume")

    def destroy(self, handle: str) -> None:
        self._call("DELETE", f"/browsers/{self._quote(handle)}")
        logger.info("browser event=destroyed handle=%s", handle)

    def control_url(self, handle: str) -> str | None:
        data = self._call("GET", f"/browsers/{self._quote(handle)}")
        return data.get("cdp_ws_url")

    def screenshot(self, handle: str) -> str:
        data = self._action(handle, "screenshot")
        image = data.get("base64_image") or data.get("image")
        if not image:
            raise BrowserProviderError("Screenshot response missing image data")
        return str(image)

    def click(self, handle: str, x: int, y: int) -> None:
        self._action(handle, "click", x=x, y=y, button="left")

    def double_click(self, handle: str, x: int, y: int) -> None:
        self._action(handle, "click", x=x, y=y, button="left", num_clicks=2)

    def right_click(self, handle: str, x: int, y: int) -> None:
        self._action(handle, "click", x=x, y=y, button="right")

    def type_text(self, handle: str, text: str, *, delay_ms: int | None = None) -> None:
        if delay_ms is None:
            self._action(handle, "type", text=text)
        else:
            self._action(handle, "type", text=text, delay_ms=delay_ms)

    def key_press(self, handle: str, keys: str) -> None:
        self._action(handle, "key", keys=keys)

    def scroll(self, handle: str, x: int, y: int, direction: str, amount: int) -> None:
        self._action(handle, "scroll", x=x, y=y, direction=direction, amount=amount)

    def move_mouse(self, handle: str, x: int, y: int) -> None:
        self._action(handle, "mouse_move", x=x, y=y)

    def cursor_position(self, handle: str) -> tuple[int, int]:
        data = self._action(handle, "cursor_position")
        try:
            return int(data["x"]), int(data["y"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BrowserProviderError("Cursor position response missing coordinates") from exc

    def _action(self, handle: str, action: str, **params: Any) -> dict[str, Any]:
        return self._call(
            "POST", f"/browsers/{self._quote(handle)}/computer", {"action": action, **params}
        )

    @staticmethod
    def _quote(handle: str) -> str:
        return parse.quote(handle, safe="")

    def _call(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload).encode("utf-8")

        req = request.Request(
            url=f"{self.base_url.rstrip('/')}{path}",
            data=data,
            method=method,
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise BrowserProviderError(
                f"Browser {method} {path} failed with status {exc.code}: {message[:300]}"
            ) from exc
        except error.URLError as exc:
            raise BrowserProviderError(f"Browser {method} {path} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise BrowserProviderError(f"Browser {method} {path} timed out") from exc

        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BrowserProviderError("Browser service returned non-JSON response") from exc
        return parsed if isinstance(parsed, dict) else {}
