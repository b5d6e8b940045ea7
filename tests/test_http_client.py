"""Tests for outbound HTTP retry behaviour."""

import asyncio

import httpx
import pytest

from checkout_core.exceptions import UpstreamError
from checkout_core.http_client import ApiClient


def _client(responses, max_retries=3):
    calls = []

    def handler(request):
        calls.append(request)
        response = responses[min(len(calls), len(responses)) - 1]
        if isinstance(response, Exception):
            raise response
        # Fresh copy per call; canned responses repeat
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    client = ApiClient(
        "http://collaborators.test",
        max_retries=max_retries,
        initial_backoff=0,
        max_backoff=0,
        transport=httpx.MockTransport(handler)
    )
    return client, calls


class TestRetry:
    def test_gateway_error_is_retried(self):
        client, calls = _client([httpx.Response(503), httpx.Response(200, json={"ok": True})])

        response = asyncio.run(client.get("/ping"))

        assert response.status_code == 200
        assert len(calls) == 2

    def test_transport_error_is_retried(self):
        client, calls = _client([httpx.ConnectError("refused"), httpx.Response(200, json={})])

        assert asyncio.run(client.get("/ping")).status_code == 200
        assert len(calls) == 2

    def test_gives_up_after_max_retries(self):
        client, calls = _client([httpx.Response(504)], max_retries=3)

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.get("/ping"))

        assert excinfo.value.status_code == 504
        assert len(calls) == 3

    def test_decoding_error_becomes_upstream_error(self):
        client, calls = _client([httpx.DecodingError("corrupt gzip body")])

        with pytest.raises(UpstreamError):
            asyncio.run(client.get("/ping"))

        assert len(calls) == 1

    def test_client_errors_are_not_retried(self):
        client, calls = _client([httpx.Response(404)])

        assert asyncio.run(client.get("/ping")).status_code == 404
        assert len(calls) == 1

    def test_timeout_raises_upstream_error(self):
        client, calls = _client([httpx.ReadTimeout("slow")], max_retries=2)

        with pytest.raises(UpstreamError):
            asyncio.run(client.post("/ping", json={}))
        assert len(calls) == 2


class TestJson:
    def test_malformed_body(self):
        client, _ = _client([httpx.Response(200, text="not json")])
        response = asyncio.run(client.get("/ping"))

        with pytest.raises(UpstreamError):
            ApiClient.json(response)
