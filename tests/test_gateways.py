"""Tests for the messaging gateway and webhook transport HTTP calls."""

import pytest
import requests

from salesflow.core.exceptions import ConfigurationError, TransportError
from salesflow.core.gateways import EvolutionMessagingGateway, RequestsWebhookTransport


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400


class FakeSession:
    """Stands in for requests.Session and records calls."""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def _record(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self._record("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._record("GET", url, **kwargs)


class TestEvolutionMessagingGateway:

    def test_posts_number_and_text(self):
        session = FakeSession()
        gateway = EvolutionMessagingGateway("https://evo.test/", "secret", timeout=7, session=session)

        assert gateway.send_text("sales-01", "5511987654321", "Hello")

        call = session.calls[0]
        assert call["url"] == "https://evo.test/message/sendText/sales-01"
        assert call["json"] == {"number": "5511987654321", "text": "Hello"}
        assert call["headers"]["apikey"] == "secret"
        assert call["timeout"] == 7

    def test_error_status_raises_transport_error(self):
        gateway = EvolutionMessagingGateway("https://evo.test", "secret",
                                            session=FakeSession(FakeResponse(401, "unauthorized")))
        with pytest.raises(TransportError) as exc_info:
            gateway.send_text("sales-01", "5511987654321", "Hello")
        assert exc_info.value.status_code == 401

    def test_network_error_raises_transport_error(self):
        session = FakeSession(error=requests.ConnectionError("refused"))
        gateway = EvolutionMessagingGateway("https://evo.test", "secret", session=session)
        with pytest.raises(TransportError, match="refused"):
            gateway.send_text("sales-01", "5511987654321", "Hello")

    def test_missing_base_url(self):
        gateway = EvolutionMessagingGateway("", "secret", session=FakeSession())
        with pytest.raises(ConfigurationError):
            gateway.send_text("sales-01", "5511987654321", "Hello")


class TestRequestsWebhookTransport:

    def test_post_sends_json(self):
        session = FakeSession(FakeResponse(201))
        transport = RequestsWebhookTransport(session=session)

        status = transport.request("POST", "https://hooks.test/x", {"lead_id": "l1"}, {"X-Key": "k"}, 5)

        assert status == 201
        call = session.calls[0]
        assert call["json"] == {"lead_id": "l1"}
        assert call["headers"] == {"Content-Type": "application/json", "X-Key": "k"}

    def test_get_sends_scalar_params_only(self):
        session = FakeSession()
        transport = RequestsWebhookTransport(session=session)

        transport.request("get", "https://hooks.test/x",
                          {"lead_id": "l1", "value": 10, "tags": [{"id": "t"}], "phone": None}, {}, 5)

        assert session.calls[0]["method"] == "GET"
        assert session.calls[0]["params"] == {"lead_id": "l1", "value": 10}

    def test_timeout_raises_transport_error(self):
        transport = RequestsWebhookTransport(session=FakeSession(error=requests.Timeout("slow")))
        with pytest.raises(TransportError):
            transport.request("POST", "https://hooks.test/x", {}, {}, 1)
