"""Tests for sync failure diagnostics."""

from __future__ import annotations

import errno

import httpx

from crm_mirror.hubspot.client import HubSpotError
from crm_mirror.sync.errors import describe_error


def test_hubspot_error_includes_remote_metadata():
    err = HubSpotError(
        "Property values were not valid",
        400,
        response={
            "status": "error",
            "message": "Property values were not valid",
            "category": "VALIDATION_ERROR",
            "correlationId": "c0ffee",
            "errors": [
                {"message": "Invalid date", "context": {"propertyName": ["closedate"]}},
                {"code": "INVALID_EMAIL"},
            ],
        },
        url="https://api.hubapi.com/crm/v3/objects/contacts",
        status_text="Bad Request",
    )

    message = describe_error(err)

    assert message.startswith("Property values were not valid | ")
    assert "HTTP 400 Bad Request" in message
    assert "url=https://api.hubapi.com/crm/v3/objects/contacts" in message
    assert "category=VALIDATION_ERROR" in message
    assert "correlationId=c0ffee" in message
    assert "errors=closedate: Invalid date; INVALID_EMAIL" in message


def test_network_error_reports_class_and_url():
    request = httpx.Request("GET", "https://api.hubapi.com/crm/v3/objects/deals")
    message = describe_error(httpx.ConnectError("Name or service not known", request=request))

    assert message.startswith("Name or service not known")
    assert "code=ConnectError" in message
    assert "url=https://api.hubapi.com/crm/v3/objects/deals" in message


def test_http_status_error_uses_response():
    request = httpx.Request("GET", "https://api.hubapi.com/x")
    response = httpx.Response(502, request=request)
    exc = httpx.HTTPStatusError("upstream", request=request, response=response)

    assert "HTTP 502 Bad Gateway" in describe_error(exc)


def test_os_error_carries_errno():
    exc = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
    assert f"code={errno.ECONNREFUSED}" in describe_error(exc)


def test_plain_exception_falls_back_to_class_name():
    assert describe_error(RuntimeError()) == "RuntimeError"
    assert describe_error(ValueError("bad row")) == "bad row"
