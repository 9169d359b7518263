"""Diagnostic messages for failed sync runs."""

from __future__ import annotations

from typing import Any

import httpx


def _field_errors(body: dict[str, Any]) -> list[str]:
    items = body.get("errors")
    if not isinstance(items, list):
        return []
    messages = []
    for item in items:
        if not isinstance(item, dict):
            continue
        text = item.get("message") or item.get("code")
        if not text:
            continue
        context = item.get("context") or {}
        names = context.get("propertyName") if isinstance(context, dict) else None
        if isinstance(names, list) and names:
            text = f"{','.join(str(n) for n in names)}: {text}"
        messages.append(str(text))
    return messages


def describe_error(exc: BaseException) -> str:
    """Compose a failure message from whatever error metadata is available.

    Covers HTTP status and status text, error code, request URL, the remote
    message/category, correlation id and per-field validation errors.
    """
    parts: list[str] = []

    status = getattr(exc, "status_code", None)
    status_text = getattr(exc, "status_text", None)
    url = getattr(exc, "url", None)
    body = getattr(exc, "response", None)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        status_text = exc.response.reason_phrase
        url = str(exc.request.url)
        body = None
    elif isinstance(exc, httpx.RequestError):
        try:
            url = str(exc.request.url)
        except RuntimeError:
            url = None

    if status is not None:
        parts.append(f"HTTP {status}" + (f" {status_text}" if status_text else ""))

    code = getattr(exc, "errno", None)
    if isinstance(exc, httpx.HTTPError) and not isinstance(exc, httpx.HTTPStatusError):
        code = type(exc).__name__
    if code:
        parts.append(f"code={code}")

    if url:
        parts.append(f"url={url}")

    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    if isinstance(body, dict):
        message = body.get("message") or message
        category = body.get("category")
        if category:
            parts.append(f"category={category}")
        remote_code = body.get("code") or body.get("subCategory")
        if remote_code:
            parts.append(f"remote_code={remote_code}")
        correlation_id = body.get("correlationId")
        if correlation_id:
            parts.append(f"correlationId={correlation_id}")
        field_errors = _field_errors(body)
        if field_errors:
            parts.append("errors=" + "; ".join(field_errors))

    return " | ".join([str(message), *parts])
