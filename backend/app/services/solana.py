"""
Solana chain client.

Reads go through plain JSON-RPC over httpx (jsonParsed encoding), transfers are
built with solders / spl-token instructions and broadcast with solana-py's
AsyncClient.
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from app.config import settings
from app.core.errors import ConfigurationError, ExternalDependencyError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class SolanaClient:
    def __init__(self, rpc_url: str, timeout: float = 15.0):
        if not rpc_url or not rpc_url.startswith(("http://", "https://")):
            raise ConfigurationError("SOLANA_RPC_URL is not configured")
        self.rpc_url = rpc_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "SolanaClient":
        return cls(settings.SOLANA_RPC_URL, timeout=settings.RPC_TIMEOUT_SECONDS)

    async def _rpc(self, method: str, params: list):
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.rpc_url, json={
                    "jsonrpc": "2.0", "method": method, "params": params, "id": 1,
                })
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"Solana RPC {method} failed: {type(e).__name__}") from e
        if "error" in data:
            message = (data["error"] or {}).get("message", "unknown error")
            raise ExternalDependencyError(f"Solana RPC {method} error: {message}")
        return data.get("result")

    # -- reads ---------------------------------------------------------------

    async def get_transaction(self, signature: str) -> Optional[dict]:
        return await self._rpc("getTransaction", [
            signature,
            {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"},
        ])

    async def get_signatures(self, address: str, limit: int = 50) -> list[str]:
        result = await self._rpc("getSignaturesForAddress", [address, {"limit": limit}])
        return [item["signature"] for item in result or [] if item.get("signature")]

    async def get_balance(self, address: str) -> Decimal:
        """Native SOL balance."""
        result = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        lamports = (result or {}).get("value", 0)
        return Decimal(lamports) / LAMPORTS_PER_SOL

    async def get_token_balance(self, owner: str, mint: str) -> tuple[Decimal, Optional[int]]:
        """Sum of the owner's token accounts for ``mint`` as (ui amount, decimals)."""
        result = await self._rpc("getTokenAccountsByOwner", [
            owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"},
        ])
        total = Decimal(0)
        decimals = None
        for acc in (result or {}).get("value", []):
            token_amount = acc["account"]["data"]["parsed"]["info"]["tokenAmount"]
            decimals = token_amount.get("decimals", decimals)
            total += Decimal(token_amount.get("uiAmountString") or "0")
        return total, decimals

    async def account_exists(self, address: str) -> bool:
        result = await self._rpc("getAccountInfo", [address, {"encoding": "base64"}])
        return bool(result and result.get("value"))

    # -- writes --------------------------------------------------------------

    async def _send(self, keypair: Keypair, instructions: list) -> str:
        """Sign and broadcast; returns the signature without waiting for confirmation."""
        async with AsyncClient(self.rpc_url, timeout=self.timeout) as client:
            blockhash = (await client.get_latest_blockhash()).value.blockhash
            msg = Message.new_with_blockhash(instructions, keypair.pubkey(), blockhash)
            tx = Transaction([keypair], msg, blockhash)
            signature = (await client.send_transaction(tx)).value
        return str(signature)

    async def confirm_transaction(self, signature: str) -> None:
        async with AsyncClient(self.rpc_url, timeout=self.timeout) as client:
            resp = await client.confirm_transaction(Signature.from_string(signature), commitment=Confirmed)
        statuses = resp.value or []
        status = statuses[0] if statuses else None
        if status is None:
            raise ExternalDependencyError(f"transaction {signature} not confirmed before timeout")
        if status.err is not None:
            raise ExternalDependencyError(f"transaction {signature} failed on chain: {status.err}")

    async def send_sol(self, keypair: Keypair, to_address: str, lamports: int) -> str:
        ix = transfer(TransferParams(
            from_pubkey=keypair.pubkey(),
            to_pubkey=Pubkey.from_string(to_address),
            lamports=lamports,
        ))
        return await self._send(keypair, [ix])

    async def send_token(self, keypair: Keypair, to_owner: str, mint: str, amount: int, decimals: int) -> str:
        """transfer_checked from the source ATA, creating the destination ATA when missing."""
        mint_key = Pubkey.from_string(mint)
        owner_key = Pubkey.from_string(to_owner)
        source_ata = get_associated_token_address(keypair.pubkey(), mint_key)
        dest_ata = get_associated_token_address(owner_key, mint_key)

        instructions = []
        if not await self.account_exists(str(dest_ata)):
            instructions.append(create_associated_token_account(keypair.pubkey(), owner_key, mint_key))
        instructions.append(transfer_checked(TransferCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            source=source_ata,
            mint=mint_key,
            dest=dest_ata,
            owner=keypair.pubkey(),
            amount=amount,
            decimals=decimals,
        )))
        return await self._send(keypair, instructions)
