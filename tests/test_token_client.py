"""
Tests for the OAuth token endpoint client, using httpx.MockTransport.
"""

import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from marketplace_auth.models.credential import Credential
from marketplace_auth.models.payloads import (
    AliExpressPayload,
    AmazonPayload,
    ApiKeyPayload,
    EbayPayload,
    MercadoLibrePayload,
)
from marketplace_auth.oauth.token_client import OAuthTokenClient, TokenGrant
from marketplace_auth.platform.errors import (
    AuthError,
    NetworkError,
    RateLimitError,
    RefreshFailure,
    ValidationError,
)
from marketplace_auth.signing.aliexpress import aliexpress_signature

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class _Recorder:
    """MockTransport handler that records requests and replays a response."""

    def __init__(self, response=None, status_code=200, error=None):
        self.requests = []
        self.response = response if response is not None else {"access_token": "new-access", "expires_in": 3600}
        self.status_code = status_code
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.response)

    @property
    def form(self):
        return {key: values[0] for key, values in parse_qs(self.requests[-1].content.decode()).items()}


def _make_client(recorder: _Recorder) -> OAuthTokenClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return OAuthTokenClient(http_client, clock=lambda: 1_700_000_000.0)


def _make_credential(marketplace_id, payload, environment="production", refresh_token="refresh-1") -> Credential:
    return Credential(
        user_id=1,
        marketplace_id=marketplace_id,
        environment=environment,
        payload=payload,
        access_token="old-access",
        refresh_token=refresh_token,
    )


EBAY = EbayPayload(app_id="app-1", dev_id="dev-1", cert_id="cert-1", redirect_uri="Ru-Name")
MELI = MercadoLibrePayload(client_id="meli-id", client_secret="meli-secret")
AMAZON = AmazonPayload(
    seller_id="A1", client_id="lwa-id", client_secret="lwa-secret",
    aws_access_key_id="AKIAEXAMPLE", aws_secret_access_key="aws-secret",
)
ALIEXPRESS = AliExpressPayload(app_key="12345", app_secret="ali-secret")


class TestTokenGrant:
    """Response parsing across marketplace shapes."""

    def test_mercadolibre_user_id_becomes_seller_user_id(self):
        grant = TokenGrant.model_validate({"access_token": "a", "user_id": 123456, "expires_in": 21600})

        assert grant.seller_user_id == "123456"
        assert grant.access_token_expires_at(NOW) == NOW + timedelta(seconds=21600)

    def test_aliexpress_refresh_expires_in_alias(self):
        grant = TokenGrant.model_validate(
            {"access_token": "a", "refresh_token": "r", "refresh_expires_in": "86400", "expires_in": "3600"}
        )

        assert grant.refresh_token_expires_at(NOW) == NOW + timedelta(days=1)
        assert grant.expires_in == 3600

    def test_repr_hides_tokens(self):
        grant = TokenGrant(access_token="very-secret-access", refresh_token="very-secret-refresh")

        assert "very-secret" not in repr(grant)

    def test_no_expiry(self):
        assert TokenGrant(access_token="a").access_token_expires_at(NOW) is None


class TestRefreshGrant:
    """Refresh requests per client authentication style."""

    @pytest.mark.asyncio
    async def test_ebay_uses_basic_auth(self):
        recorder = _Recorder({"access_token": "new-access", "expires_in": 7200, "token_type": "User Access Token"})
        client = _make_client(recorder)

        grant = await client.refresh(_make_credential("ebay", EBAY))

        request = recorder.requests[-1]
        assert str(request.url) == "https://api.ebay.com/identity/v1/oauth2/token"
        expected_basic = base64.b64encode(b"app-1:cert-1").decode()
        assert request.headers["Authorization"] == f"Basic {expected_basic}"
        assert recorder.form["grant_type"] == "refresh_token"
        assert recorder.form["refresh_token"] == "refresh-1"
        assert "https://api.ebay.com/oauth/api_scope" in recorder.form["scope"]
        assert "client_secret" not in recorder.form
        assert grant.access_token == "new-access"
        assert grant.expires_in == 7200

    @pytest.mark.asyncio
    async def test_ebay_sandbox_endpoint(self):
        recorder = _Recorder()

        await _make_client(recorder).refresh(_make_credential("ebay", EBAY, environment="sandbox"))

        assert recorder.requests[-1].url.host == "api.sandbox.ebay.com"

    @pytest.mark.asyncio
    async def test_mercadolibre_client_credentials_in_body(self):
        recorder = _Recorder({"access_token": "APP_USR-new", "refresh_token": "TG-new", "user_id": 99})

        grant = await _make_client(recorder).refresh(_make_credential("mercadolibre", MELI))

        assert str(recorder.requests[-1].url) == "https://api.mercadolibre.com/oauth/token"
        assert recorder.form["client_id"] == "meli-id"
        assert recorder.form["client_secret"] == "meli-secret"
        assert "Authorization" not in recorder.requests[-1].headers
        assert grant.refresh_token == "TG-new"
        assert grant.seller_user_id == "99"

    @pytest.mark.asyncio
    async def test_amazon_lwa(self):
        recorder = _Recorder({"access_token": "Atza|new", "refresh_token": "Atzr|r", "expires_in": 3600})

        await _make_client(recorder).refresh(_make_credential("amazon", AMAZON))

        assert str(recorder.requests[-1].url) == "https://api.amazon.com/auth/o2/token"
        assert recorder.form["client_id"] == "lwa-id"
        assert recorder.form["grant_type"] == "refresh_token"

    @pytest.mark.asyncio
    async def test_aliexpress_signed_refresh(self):
        recorder = _Recorder({"access_token": "ali-new", "refresh_token": "ali-r", "expires_in": 86400})

        await _make_client(recorder).refresh(_make_credential("aliexpress_dropshipping", ALIEXPRESS))

        form = recorder.form
        assert str(recorder.requests[-1].url) == "https://api-sg.aliexpress.com/rest/auth/token/refresh"
        assert form["app_key"] == "12345"
        assert form["refresh_token"] == "refresh-1"
        assert form["timestamp"] == "1700000000000"
        unsigned = {key: value for key, value in form.items() if key != "sign"}
        assert form["sign"] == aliexpress_signature(unsigned, "ali-secret", "/auth/token/refresh")
        assert "ali-secret" not in recorder.requests[-1].content.decode()

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self):
        recorder = _Recorder()

        with pytest.raises(RefreshFailure):
            await _make_client(recorder).refresh(_make_credential("ebay", EBAY, refresh_token=None))

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_non_oauth_marketplace_rejected(self):
        credential = _make_credential("aliexpress_affiliate", ApiKeyPayload(api_key="k", api_secret="s"))

        with pytest.raises(ValidationError):
            await _make_client(_Recorder()).refresh(credential)


class TestExchangeCode:
    """Authorization-code exchange."""

    @pytest.mark.asyncio
    async def test_form_exchange(self):
        recorder = _Recorder({"access_token": "a", "refresh_token": "r", "expires_in": 7200})

        await _make_client(recorder).exchange_code(_make_credential("ebay", EBAY), "auth-code", "Ru-Name")

        assert recorder.form == {
            "grant_type": "authorization_code",
            "code": "auth-code",
            "redirect_uri": "Ru-Name",
        }

    @pytest.mark.asyncio
    async def test_aliexpress_signed_exchange(self):
        recorder = _Recorder({"access_token": "a", "refresh_token": "r", "seller_id": 2001})

        grant = await _make_client(recorder).exchange_code(
            _make_credential("aliexpress_dropshipping", ALIEXPRESS), "auth-code",
        )

        assert str(recorder.requests[-1].url) == "https://api-sg.aliexpress.com/rest/auth/token/create"
        assert recorder.form["code"] == "auth-code"
        assert grant.seller_user_id == "2001"

    @pytest.mark.asyncio
    async def test_empty_code_rejected(self):
        with pytest.raises(ValidationError):
            await _make_client(_Recorder()).exchange_code(_make_credential("ebay", EBAY), "")


class TestTokenEndpointErrors:
    """Failures become typed errors."""

    @pytest.mark.asyncio
    async def test_invalid_grant_is_auth_error(self):
        recorder = _Recorder({"error": "invalid_grant", "error_description": "expired"}, status_code=400)

        with pytest.raises(AuthError) as exc_info:
            await _make_client(recorder).refresh(_make_credential("mercadolibre", MELI))

        assert exc_info.value.upstream_status == 400

    @pytest.mark.asyncio
    async def test_429_is_rate_limit(self):
        recorder = _Recorder({"message": "slow down"}, status_code=429)

        with pytest.raises(RateLimitError):
            await _make_client(recorder).refresh(_make_credential("ebay", EBAY))

    @pytest.mark.asyncio
    async def test_500_is_network_error(self):
        recorder = _Recorder({"message": "oops"}, status_code=500)

        with pytest.raises(NetworkError):
            await _make_client(recorder).refresh(_make_credential("ebay", EBAY))

    @pytest.mark.asyncio
    async def test_transport_error_is_network_error(self):
        recorder = _Recorder(error=httpx.ConnectError("refused"))

        with pytest.raises(NetworkError):
            await _make_client(recorder).refresh(_make_credential("ebay", EBAY))

    @pytest.mark.asyncio
    async def test_aliexpress_error_in_200_body(self):
        recorder = _Recorder({"code": "IllegalAccessToken", "message": "refresh token invalid"})

        with pytest.raises(AuthError):
            await _make_client(recorder).refresh(_make_credential("aliexpress_dropshipping", ALIEXPRESS))

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        async with OAuthTokenClient() as client:
            assert client._owns_client is True
        assert client._client.is_closed
