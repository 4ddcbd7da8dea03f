"""HTTP handlers: ``http_check`` and ``webhook``.

``http_check`` issues a request and reports the status code; a response
outside ``expected_status`` (default: any 2xx) fails the execution.
``webhook`` POSTs a JSON payload (the task's ``payload`` merged over the
run's input data).

Config (http_check)::

    url:              required, http(s)
    method:           GET | POST | PUT | DELETE | PATCH | HEAD (default GET)
    headers:          mapping
    body:             str or JSON-able value
    expected_status:  int or list of ints (default: 200-299)
    timeout_ms:       request timeout (alias: timeoutMs; default 10000)
    follow_redirects: bool (default True)
"""

from __future__ import annotations

import time
from typing import Any

import httpx

from conductor.core.errors import HandlerError, ValidationError
from conductor.execution.context import ExecutionContext
from conductor.handlers.base import BaseHandler, require_choice, require_mapping, require_number, require_str

HTTP_METHODS = frozenset({"get", "post", "put", "delete", "patch", "head"})
DEFAULT_TIMEOUT_MS = 10_000
MAX_BODY_CHARS = 4_096


def _timeout_ms(config: dict[str, Any]) -> float:
    if "timeoutMs" in config and "timeout_ms" not in config:
        config = {**config, "timeout_ms": config["timeoutMs"]}
    return require_number(config, "timeout_ms", minimum=1, default=DEFAULT_TIMEOUT_MS)  # type: ignore[return-value]


class HttpCheckHandler(BaseHandler):
    """Issue an HTTP request and report the response status."""

    required = ("url",)

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def check(self, config: dict[str, Any]) -> None:
        url = require_str(config, "url")
        if not url.startswith(("http://", "https://")):
            raise ValidationError("'url' must start with http:// or https://", field="url", value=url)
        require_choice(config, "method", HTTP_METHODS, "get")
        require_mapping(config, "headers")
        _timeout_ms(config)
        expected = config.get("expected_status")
        if expected is not None:
            codes = expected if isinstance(expected, list) else [expected]
            if not all(isinstance(c, int) and 100 <= c <= 599 for c in codes):
                raise ValidationError("'expected_status' must be HTTP status codes", field="expected_status", value=expected)

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        config = ctx.config
        timeout = _timeout_ms(config) / 1000
        remaining = ctx.time_remaining()
        if remaining is not None:
            timeout = min(timeout, max(remaining, 0.001))

        method = config.get("method", "GET").upper()
        request_kwargs: dict[str, Any] = {"headers": config.get("headers") or {}}
        body = config.get("body")
        if body is not None:
            if isinstance(body, str | bytes):
                request_kwargs["content"] = body
            else:
                request_kwargs["json"] = body

        ctx.check_cancelled()
        started = time.perf_counter()
        with httpx.Client(
            timeout=timeout,
            transport=self._transport,
            follow_redirects=config.get("follow_redirects", True),
        ) as client:
            try:
                response = client.request(method, config["url"], **request_kwargs)
            except httpx.TimeoutException as e:
                raise HandlerError(f"{method} {config['url']} timed out after {timeout:.2f}s", cause=e) from e
            except httpx.HTTPError as e:
                raise HandlerError(f"{method} {config['url']} failed: {e}", cause=e) from e

        ctx.report_progress(100)
        ok = self._is_expected(response.status_code, config.get("expected_status"))
        output = {
            "status_code": response.status_code,
            "ok": ok,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 3),
            "headers": dict(response.headers),
            "body": response.text[:MAX_BODY_CHARS],
        }
        if not ok:
            raise HandlerError(f"{method} {config['url']} returned unexpected status {response.status_code}").with_context(
                status_code=response.status_code
            )
        return output

    @staticmethod
    def _is_expected(status_code: int, expected: int | list[int] | None) -> bool:
        if expected is None:
            return 200 <= status_code < 300
        codes = expected if isinstance(expected, list) else [expected]
        return status_code in codes


class WebhookHandler(HttpCheckHandler):
    """POST a JSON payload to a URL."""

    def check(self, config: dict[str, Any]) -> None:
        super().check(config)
        require_mapping(config, "payload")

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        payload = {**ctx.input, **(ctx.config.get("payload") or {})}
        ctx.config = {
            **ctx.config,
            "method": ctx.config.get("method", "POST"),
            "body": payload,
        }
        output = super().run(ctx)
        output["delivered"] = True
        return output
