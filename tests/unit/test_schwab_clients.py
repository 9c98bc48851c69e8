"""
Tests for the Schwab OAuth and Trader API clients.

HTTP is faked with a MagicMock session; responses are MagicMocks with
status_code and json().
"""

from unittest.mock import MagicMock

import pytest
import requests

from config.models import SchwabConfig
from investtrack.domain.errors import (
    ProviderRequestError,
    ReauthenticationRequiredError,
    TokenRefreshError,
)
from investtrack.infrastructure.adapters.schwab import (
    SchwabOAuthClient,
    SchwabTraderClient,
    is_terminal_token_error,
    map_position,
)


def response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = str(body)
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


class TestTerminalErrorShapes:
    """Classification of token endpoint error bodies."""

    @pytest.mark.parametrize("body", [
        {"error": "refresh_token_authentication_error"},
        {"error": "unsupported_token_type"},
        {"error": "invalid_grant", "error_description": "Invalid Refresh Token"},
    ])
    def test_terminal(self, body):
        assert is_terminal_token_error(body) is True

    @pytest.mark.parametrize("body", [None, {}, {"error": "server_error"}, "oops"])
    def test_not_terminal(self, body):
        assert is_terminal_token_error(body) is False


class TestOAuthClient:
    """Token endpoint calls."""

    @pytest.mark.asyncio
    async def test_refresh_request_shape(self):
        """POST {base}/v1/oauth/token with Basic auth and a refresh_token form."""
        session = MagicMock()
        session.post.return_value = response(200, {
            "access_token": "A", "refresh_token": "R", "expires_in": 1800,
        })
        client = SchwabOAuthClient(SchwabConfig(api_base="https://api.example.com/"), session=session)

        pair = await client.refresh("key", "secret", "old-refresh")

        assert pair.access_token == "A"
        assert pair.refresh_token == "R"
        assert pair.expires_in == 1800
        args, kwargs = session.post.call_args
        assert args[0] == "https://api.example.com/v1/oauth/token"
        assert kwargs["auth"] == ("key", "secret")
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}

    @pytest.mark.asyncio
    async def test_code_exchange_with_verifier(self):
        session = MagicMock()
        session.post.return_value = response(200, {"access_token": "A", "refresh_token": "R", "expires_in": 1800})
        client = SchwabOAuthClient(session=session)

        await client.exchange_code("key", "secret", "CODE", "https://app/cb", code_verifier="V")

        form = session.post.call_args.kwargs["data"]
        assert form == {
            "grant_type": "authorization_code",
            "code": "CODE",
            "redirect_uri": "https://app/cb",
            "code_verifier": "V",
        }

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_is_terminal(self):
        session = MagicMock()
        session.post.return_value = response(400, {"error": "refresh_token_authentication_error"})
        client = SchwabOAuthClient(session=session)

        with pytest.raises(ReauthenticationRequiredError):
            await client.refresh("key", "secret", "bad")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        session = MagicMock()
        session.post.return_value = response(500, None)
        client = SchwabOAuthClient(session=session)

        with pytest.raises(TokenRefreshError):
            await client.refresh("key", "secret", "tok")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        client = SchwabOAuthClient(session=session)

        with pytest.raises(TokenRefreshError):
            await client.refresh("key", "secret", "tok")


class TestMapPosition:
    """Trader API position mapping."""

    def test_long_position(self):
        position = map_position({
            "instrument": {"symbol": "AAPL", "assetType": "EQUITY"},
            "longQuantity": 10,
            "shortQuantity": 0,
            "averagePrice": 100.0,
            "marketValue": 1500.0,
            "currentDayProfitLoss": 100.0,
        })

        assert position.symbol == "AAPL"
        assert position.security_type == "EQUITY"
        assert position.quantity == 10
        assert position.market_price == pytest.approx(150.0)
        assert position.unrealized_pnl == pytest.approx(500.0)
        assert position.day_change == pytest.approx(100.0)
        assert position.day_change_percent == pytest.approx(100.0 / 1400.0 * 100)

    def test_short_quantity_used_without_long(self):
        position = map_position({
            "instrument": {"symbol": "TSLA", "assetType": "EQUITY"},
            "longQuantity": 0,
            "shortQuantity": 5,
            "marketValue": 1000.0,
        })

        assert position.quantity == 5
        assert position.market_price == pytest.approx(200.0)


class TestTraderClient:
    """Account data calls."""

    @pytest.mark.asyncio
    async def test_get_account(self):
        session = MagicMock()
        session.get.return_value = response(200, {
            "securitiesAccount": {
                "accountNumber": "1234",
                "type": "MARGIN",
                "currentBalances": {"liquidationValue": 25000.5, "cashBalance": 500.0},
                "positions": [
                    {"instrument": {"symbol": "AAPL", "assetType": "EQUITY"},
                     "longQuantity": 10, "averagePrice": 100.0, "marketValue": 1500.0},
                ],
            }
        })
        client = SchwabTraderClient(session=session)

        account = await client.get_account("TOKEN", "HASH")

        assert account.liquidation_value == pytest.approx(25000.5)
        assert [p.symbol for p in account.positions] == ["AAPL"]
        args, kwargs = session.get.call_args
        assert args[0] == "https://api.schwabapi.com/trader/v1/accounts/HASH"
        assert kwargs["params"] == {"fields": "positions"}
        assert kwargs["headers"]["Authorization"] == "Bearer TOKEN"

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = MagicMock()
        session.get.return_value = response(401, {"message": "unauthorized"})
        client = SchwabTraderClient(session=session)

        with pytest.raises(ProviderRequestError) as exc_info:
            await client.get_account_numbers("TOKEN")

        assert exc_info.value.status_code == 401
