"""Tests for ProtocolGateway."""

import httpx
import pytest
import respx
from httpx import Response

from rsf.errors import GatewayTransportError
from rsf.gateway.client import ProtocolGateway, encode_body
from rsf.gateway.signing import Signer, generate_keypair, verify_header
from rsf.protocol.envelope import NackCode, ack_response, nack_response

PAYLOAD = {"context": {"action": "settle"}, "message": {"orders": []}}


@pytest.fixture
def keys():
    return generate_keypair()


@pytest.fixture
def gateway(keys):
    return ProtocolGateway(Signer("seller.example.com", "key-1", keys[0]), timeout=5.0)


class TestProtocolGateway:
    @respx.mock
    def test_dispatch_signs_and_posts(self, gateway, keys):
        route = respx.post("https://agency.example.com/rsf/settle").mock(
            return_value=Response(200, json=ack_response())
        )
        result = gateway.dispatch("https://agency.example.com/rsf/", "settle", PAYLOAD)
        assert result.status_code == 200
        assert result.body == ack_response()
        assert result.url == "https://agency.example.com/rsf/settle"

        request = route.calls.last.request
        assert request.content == encode_body(PAYLOAD)
        assert verify_header(request.headers["Authorization"], request.content, keys[1])

    @respx.mock
    def test_nack_is_returned(self, gateway):
        respx.post("https://buyer.example.com/recon").mock(
            return_value=Response(200, json=nack_response(NackCode.LOOKUP_FAILURE))
        )
        result = gateway.dispatch("https://buyer.example.com", "recon", PAYLOAD)
        assert result.body["error"]["code"] == "70030"

    @respx.mock
    def test_http_error_without_json(self, gateway):
        respx.post("https://buyer.example.com/recon").mock(
            return_value=Response(502, text="bad gateway")
        )
        result = gateway.dispatch("https://buyer.example.com", "recon", PAYLOAD)
        assert result.status_code == 502
        assert result.body is None

    @respx.mock
    def test_connection_error(self, gateway):
        respx.post("https://buyer.example.com/recon").mock(
            side_effect=httpx.ConnectError("refused")
        )
        with pytest.raises(GatewayTransportError) as exc:
            gateway.dispatch("https://buyer.example.com", "recon", PAYLOAD)
        assert exc.value.url == "https://buyer.example.com/recon"

    def test_verify_requires_header(self, gateway, keys):
        body = encode_body(PAYLOAD)
        assert not gateway.verify({}, body, keys[1])
        assert gateway.verify(gateway.sign(body), body, keys[1])
