from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.errors import ExternalDependencyError
from app.services.pricing import base_symbol, convert_to_ledger_units, get_spot_price, is_stablecoin


def test_base_symbol_strips_network_suffix():
    assert base_symbol("USDT-TRC20") == "USDT"
    assert base_symbol("usdc_spl") == "USDC"
    assert base_symbol("SOL") == "SOL"
    assert is_stablecoin("USDC-TRC20")
    assert not is_stablecoin("TRX")


@pytest.mark.asyncio
async def test_stablecoins_are_one_to_one():
    lu, price = await convert_to_ledger_units(Decimal("12.345"), "USDT-TRC20")
    assert price == Decimal(1)
    assert lu == Decimal("12.35")


def _mock_http(response=None, error=None):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.get = AsyncMock(return_value=response, side_effect=error)
    return client


@pytest.mark.asyncio
async def test_spot_price_from_ticker():
    response = MagicMock(status_code=200)
    response.json.return_value = {"symbol": "SOLUSDT", "price": "142.50000000"}
    client = _mock_http(response)
    with patch("app.services.pricing.httpx.AsyncClient", return_value=client):
        price = await get_spot_price("SOL")
    assert price == Decimal("142.5")
    assert client.get.call_args.kwargs["params"] == {"symbol": "SOLUSDT"}


@pytest.mark.asyncio
async def test_price_source_failure_is_external_error():
    client = _mock_http(error=httpx.ConnectTimeout("timed out"))
    with patch("app.services.pricing.httpx.AsyncClient", return_value=client):
        with pytest.raises(ExternalDependencyError):
            await get_spot_price("TRX")


@pytest.mark.asyncio
async def test_non_200_is_external_error():
    client = _mock_http(MagicMock(status_code=451))
    with patch("app.services.pricing.httpx.AsyncClient", return_value=client):
        with pytest.raises(ExternalDependencyError):
            await get_spot_price("SOL")
