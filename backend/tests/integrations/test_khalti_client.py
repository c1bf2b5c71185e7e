from __future__ import annotations

import json

from httpx import MockTransport, Response
import httpx
import pytest

from app.integrations.khalti_client import KhaltiClient, KhaltiError


def _client(handler) -> KhaltiClient:
    return KhaltiClient(
        secret_key="test_secret_key",
        base_url="https://dev.khalti.com/api/v2/",
        transport=MockTransport(handler),
    )


def test_initiate_posts_paisa_with_key_header():
    captured: dict = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return Response(
            200,
            json={"pidx": "bZQLD9wRVWo4CdESSfuSsB", "payment_url": "https://pay.khalti.com/?pidx=bZQ"},
        )

    payload = _client(handler).initiate_payment(
        amount_paisa=150000,
        purchase_order_id="SESSION-t-c-20300101-0900",
        purchase_order_name="Therapy session",
        return_url="https://healnest.test/verify",
        website_url="https://healnest.test",
        customer_info={"name": "Asha", "email": "", "phone": "9800000000"},
    )

    assert payload["pidx"] == "bZQLD9wRVWo4CdESSfuSsB"
    assert captured["url"] == "https://dev.khalti.com/api/v2/epayment/initiate/"
    assert captured["auth"] == "Key test_secret_key"
    assert captured["body"]["amount"] == 150000
    assert captured["body"]["customer_info"] == {"name": "Asha", "phone": "9800000000"}


def test_lookup_sends_pidx():
    captured: dict = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return Response(200, json={"pidx": "abc", "status": "Completed", "total_amount": 1000})

    payload = _client(handler).lookup_payment("abc")

    assert captured["body"] == {"pidx": "abc"}
    assert payload["status"] == "Completed"


def test_http_error_keeps_status_and_body():
    def handler(request):
        return Response(404, json={"detail": "Not found.", "error_key": "validation_error"})

    with pytest.raises(KhaltiError) as exc_info:
        _client(handler).lookup_payment("missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.error_body["error_key"] == "validation_error"


def test_transport_error_has_no_status():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(KhaltiError) as exc_info:
        _client(handler).lookup_payment("abc")

    assert exc_info.value.status_code is None


def test_malformed_json_is_an_error():
    def handler(request):
        return Response(200, content=b"<html>oops</html>")

    with pytest.raises(KhaltiError):
        _client(handler).lookup_payment("abc")


def test_secret_key_is_required():
    with pytest.raises(ValueError):
        KhaltiClient(secret_key="")
