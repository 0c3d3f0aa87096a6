"""
TRON chain client.

Transaction lookups, balances and broadcasts use tronpy's AsyncTron; TRC20
Transfer events come from the TronGrid v1 events endpoint over httpx.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Optional

import base58
import httpx
from tronpy import AsyncTron
from tronpy.exceptions import AddressNotFound, TransactionNotFound
from tronpy.keys import PrivateKey
from tronpy.providers import AsyncHTTPProvider

from app.config import settings
from app.core.errors import ConfigurationError, ExternalDependencyError

logger = logging.getLogger(__name__)

SUN_PER_TRX = 1_000_000
TRC20_FEE_LIMIT_SUN = 100 * SUN_PER_TRX


def hex_to_base58(address: str) -> str:
    """TronGrid event results carry 0x-prefixed (or 41-prefixed) hex addresses."""
    if not address:
        return address
    if address.startswith("T") and len(address) == 34:
        return address
    raw = address[2:] if address.startswith("0x") else address
    if len(raw) == 40:
        raw = "41" + raw
    return base58.b58encode_check(bytes.fromhex(raw)).decode()


class TronClient:
    def __init__(self, fullnode: str, events_url: str, api_key: str = "", timeout: float = 15.0):
        if not fullnode or not events_url:
            raise ConfigurationError("TRON_FULLNODE / TRONGRID_API_URL is not configured")
        self.events_url = events_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        try:
            provider = AsyncHTTPProvider(fullnode, timeout=timeout, api_key=api_key or None)
            self.client = AsyncTron(provider=provider)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"TRON client could not be constructed: {type(e).__name__}") from e

    @classmethod
    def from_settings(cls) -> "TronClient":
        return cls(
            settings.TRON_FULLNODE,
            settings.TRONGRID_API_URL,
            api_key=settings.TRON_API_KEY,
            timeout=settings.RPC_TIMEOUT_SECONDS,
        )

    async def close(self) -> None:
        await self.client.close()

    # -- reads ---------------------------------------------------------------

    async def get_transaction(self, txid: str) -> Optional[dict]:
        try:
            return await self.client.get_transaction(txid)
        except TransactionNotFound:
            return None
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"TRON getTransaction failed: {type(e).__name__}") from e

    async def get_transaction_info(self, txid: str) -> Optional[dict]:
        try:
            return await self.client.get_transaction_info(txid)
        except TransactionNotFound:
            return None
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"TRON getTransactionInfo failed: {type(e).__name__}") from e

    async def get_transfer_events(self, txid: str) -> list[dict]:
        headers = {"TRON-PRO-API-KEY": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.events_url}/v1/transactions/{txid}/events", headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"TronGrid events lookup failed: {type(e).__name__}") from e
        return data.get("data") or []

    async def get_trx_balance(self, address: str) -> Decimal:
        try:
            return Decimal(str(await self.client.get_account_balance(address)))
        except AddressNotFound:
            # never activated
            return Decimal(0)
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"TRON balance lookup failed: {type(e).__name__}") from e

    async def get_trc20_balance(self, address: str, contract_address: str) -> tuple[Decimal, int]:
        try:
            contract = await self.client.get_contract(contract_address)
            raw = await contract.functions.balanceOf(address)
            decimals = await contract.functions.decimals()
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"TRC20 balance lookup failed: {type(e).__name__}") from e
        return Decimal(raw) / (Decimal(10) ** decimals), decimals

    # -- writes --------------------------------------------------------------

    async def send_trx(self, private_key: PrivateKey, from_address: str, to_address: str, amount_sun: int) -> str:
        txn = await self.client.trx.transfer(from_address, to_address, amount_sun).build()
        ret = await txn.sign(private_key).broadcast()
        return ret.txid

    async def send_trc20(
        self,
        private_key: PrivateKey,
        from_address: str,
        to_address: str,
        contract_address: str,
        amount_raw: int,
    ) -> str:
        contract = await self.client.get_contract(contract_address)
        builder = await contract.functions.transfer(to_address, amount_raw)
        txn = await builder.with_owner(from_address).fee_limit(TRC20_FEE_LIMIT_SUN).build()
        ret = await txn.sign(private_key).broadcast()
        return ret.txid

    async def confirm_transaction(self, txid: str, interval: float = 2.0) -> None:
        """Poll until the transaction is in a block; raise if it reverted or never lands."""
        deadline = asyncio.get_running_loop().time() + settings.TRON_CONFIRM_TIMEOUT_SECONDS
        while True:
            info = await self.get_transaction_info(txid)
            if info:
                result = (info.get("receipt") or {}).get("result", "SUCCESS")
                if result != "SUCCESS":
                    raise ExternalDependencyError(f"transaction {txid} failed on chain: {result}")
                return
            if asyncio.get_running_loop().time() >= deadline:
                raise ExternalDependencyError(f"transaction {txid} not confirmed before timeout")
            await asyncio.sleep(interval)
