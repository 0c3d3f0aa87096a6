"""
Deposit verification: exactly-once credit, recipient checks, minimums and
pricing for Solana (SOL / SPL) and TRON (TRC20 / TRX).
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select, update

from app.config import settings
from app.core.errors import ConflictError, RecipientMismatch, ValidationError, VerificationFailure
from app.main import app
from app.models.balance import BalanceHistory
from app.models.bonus import Bonus, BonusHistory
from app.models.currency import Currency
from app.models.deposit_address import DepositAddress
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.services import deposit_addresses, deposits
from app.services.deposit_addresses import allocate_deposit_address
from app.services.deposits import (
    extract_solana_native_transfer, extract_trc20_transfer, normalize_txn_id, scan_solana_deposits,
    verify_solana_deposit, verify_tron_deposit,
)
from app.services.hd_wallet import SOLANA, TRON, derive_address
from app.services.ledger import balance_update, get_ledger_balance

from conftest import (
    SOL_SENDER, TRON_SENDER, add_trc20_deposit, create_user, currency_id, register_and_login,
    solana_native_tx, solana_token_tx,
)

SIG_A = "5" * 87 + "A"
SIG_B = "5" * 87 + "B"
TXID = "ab" * 32


async def _setup_solana(db, solana, amount="50", signature=SIG_A, mint=None):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, SOLANA)).address
    solana.transactions[signature] = solana_token_tx(address, mint or settings.SOLANA_USDC_MINT, amount)
    return user_id, address


async def _ledger(db, user_id) -> Decimal:
    balance = await get_ledger_balance(db, user_id)
    await db.refresh(balance)
    return Decimal(balance.balance)


# ---------------------------------------------------------------------------
# Solana
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_usdc_deposit_is_credited_once(db, solana):
    user_id, address = await _setup_solana(db, solana)
    usdc = await currency_id(db, "USDC", SOLANA)
    user = await db.get(User, user_id)

    first = await verify_solana_deposit(db, user, solana, usdc, SIG_A)
    assert not first.already_processed
    assert first.lu_amount == Decimal("50.00")
    assert first.payment.status == PaymentStatus.confirmed
    assert first.payment.address == address
    assert first.payment.from_address == SOL_SENDER

    second = await verify_solana_deposit(db, user, solana, usdc, SIG_A)
    assert second.already_processed
    assert second.payment.id == first.payment.id

    assert await _ledger(db, user_id) == Decimal("50.00")
    history = await db.scalar(select(func.count(BalanceHistory.id)).where(BalanceHistory.user_id == user_id))
    assert history == 1


@pytest.mark.asyncio
async def test_concurrent_credit_of_same_txn_credits_once(db, solana):
    user_id, address = await _setup_solana(db, solana)
    usdc = await currency_id(db, "USDC", SOLANA)
    user = await db.get(User, user_id)
    real_convert = deposits.convert_to_ledger_units

    async def convert_after_competitor(amount, symbol):
        # a parallel request for the same transaction commits its credit first
        balance = await get_ledger_balance(db, user_id)
        payment = Payment(
            txn_id=SIG_A, user_id=user_id, balance_id=balance.id, currency_id=usdc,
            ipn_type="deposit", method=SOLANA, amount=Decimal("50"), fiat_amount=Decimal("50.00"),
            status=PaymentStatus.confirmed, status_text="confirmed", address=address,
        )
        db.add(payment)
        await db.flush()
        await balance_update(db, balance.id, Decimal("50.00"), "deposit-solana", payment_id=payment.id)
        await db.commit()
        return await real_convert(amount, symbol)

    with patch.object(deposits, "convert_to_ledger_units", convert_after_competitor):
        result = await verify_solana_deposit(db, user, solana, usdc, SIG_A)

    assert result.already_processed
    assert await _ledger(db, user_id) == Decimal("50.00")
    count = await db.scalar(select(func.count(Payment.id)).where(Payment.txn_id == SIG_A))
    assert count == 1


@pytest.mark.asyncio
async def test_first_deposit_after_lost_allocation_race(db, solana):
    user_id = await create_user(db)
    usdc = await currency_id(db, "USDC", SOLANA)
    winner_address = derive_address(SOLANA, 1).address
    solana.transactions[SIG_A] = solana_token_tx(winner_address, settings.SOLANA_USDC_MINT, "50")
    real_next_index = deposit_addresses.next_index

    async def next_index_then_competitor(session, name):
        index = await real_next_index(session, name)
        winner_index = await real_next_index(session, name)
        session.add(DepositAddress(user_id=user_id, blockchain=SOLANA, index=winner_index, address=winner_address))
        await session.commit()
        return index

    with patch.object(deposit_addresses, "next_index", next_index_then_competitor):
        result = await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)

    assert result.payment.address == winner_address
    assert result.lu_amount == Decimal("50.00")
    assert await _ledger(db, user_id) == Decimal("50.00")


@pytest.mark.asyncio
async def test_pending_payment_is_confirmed_in_place(db, solana):
    user_id, address = await _setup_solana(db, solana)
    usdc = await currency_id(db, "USDC", SOLANA)
    db.add(Payment(
        txn_id=SIG_A, user_id=user_id, currency_id=usdc, ipn_type="deposit", method=SOLANA,
        amount=0, fiat_amount=0, status=PaymentStatus.pending, status_text="pending",
    ))
    await db.commit()
    user = await db.get(User, user_id)

    result = await verify_solana_deposit(db, user, solana, usdc, SIG_A)
    assert not result.already_processed
    assert result.payment.status == PaymentStatus.confirmed
    assert Decimal(result.payment.fiat_amount) == Decimal("50.00")
    assert await _ledger(db, user_id) == Decimal("50.00")


@pytest.mark.asyncio
async def test_txn_confirmed_for_another_user_is_conflict(db, solana):
    user_id, _ = await _setup_solana(db, solana)
    usdc = await currency_id(db, "USDC", SOLANA)
    await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)

    other_id = await create_user(db, "other@example.com")
    with pytest.raises(ConflictError):
        await verify_solana_deposit(db, await db.get(User, other_id), solana, usdc, SIG_A)


@pytest.mark.asyncio
async def test_recipient_mismatch(db, solana):
    user_id = await create_user(db)
    await allocate_deposit_address(db, user_id, SOLANA)
    solana.transactions[SIG_A] = solana_token_tx(SOL_SENDER, settings.SOLANA_USDC_MINT, "50", sender="Someone1111111111111111111111111111111111")
    usdc = await currency_id(db, "USDC", SOLANA)

    with pytest.raises(RecipientMismatch):
        await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)
    assert await db.scalar(select(func.count(Payment.id))) == 0


@pytest.mark.asyncio
async def test_below_minimum_is_rejected(db, solana):
    user_id, _ = await _setup_solana(db, solana, amount="5")
    usdc = await currency_id(db, "USDC", SOLANA)
    with pytest.raises(VerificationFailure) as exc:
        await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)
    assert "Minimum deposit" in exc.value.message
    assert await _ledger(db, user_id) == Decimal("0")


@pytest.mark.asyncio
async def test_failed_transaction_is_rejected(db, solana):
    user_id, address = await _setup_solana(db, solana)
    solana.transactions[SIG_A]["meta"]["err"] = {"InstructionError": [0, "Custom"]}
    usdc = await currency_id(db, "USDC", SOLANA)
    with pytest.raises(VerificationFailure):
        await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)


@pytest.mark.asyncio
async def test_sol_deposit_is_priced(db, solana):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, SOLANA)).address
    solana.transactions[SIG_B] = solana_native_tx(address, 500_000_000)
    sol = await currency_id(db, "SOL", SOLANA)

    with patch("app.services.pricing.get_spot_price", AsyncMock(return_value=Decimal("150.123"))):
        result = await verify_solana_deposit(db, await db.get(User, user_id), solana, sol, SIG_B)

    assert result.amount == Decimal("0.5")
    assert result.lu_amount == Decimal("75.06")
    assert result.payment.data["price"] == "150.123"


@pytest.mark.asyncio
async def test_sol_deposit_without_parsed_transfer_uses_lamport_delta(db, solana):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, SOLANA)).address
    # e.g. a program-routed transfer: no system "transfer" instruction, only balance changes
    solana.transactions[SIG_B] = {
        "meta": {
            "err": None,
            "preBalances": [5_000_000_000, 0, 1],
            "postBalances": [4_249_995_000, 750_000_000, 1],
            "preTokenBalances": [],
            "postTokenBalances": [],
        },
        "transaction": {"message": {
            "accountKeys": [
                {"pubkey": SOL_SENDER, "signer": True},
                {"pubkey": address, "signer": False},
                "11111111111111111111111111111111",
            ],
            "instructions": [{"programId": "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4", "data": "3Bxs"}],
        }},
    }
    sol = await currency_id(db, "SOL", SOLANA)

    with patch("app.services.pricing.get_spot_price", AsyncMock(return_value=Decimal("100"))):
        result = await verify_solana_deposit(db, await db.get(User, user_id), solana, sol, SIG_B)

    assert result.amount == Decimal("0.75")
    assert result.lu_amount == Decimal("75.00")
    assert result.payment.from_address == SOL_SENDER
    assert await _ledger(db, user_id) == Decimal("75.00")


def test_lamport_delta_ignores_other_accounts():
    tx = {
        "meta": {"preBalances": [10, 0], "postBalances": [0, 10]},
        "transaction": {"message": {"accountKeys": [SOL_SENDER, "SomeoneElse1111111111111111111111"], "instructions": []}},
    }
    assert extract_solana_native_transfer(tx, "NotInTx111111111111111111111111111") is None


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(db, solana):
    user_id = await create_user(db)
    usdc = await currency_id(db, "USDC", SOLANA)
    with pytest.raises(ValidationError):
        await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, "not-a-signature")


@pytest.mark.asyncio
async def test_bonus_is_applied_after_credit(db, solana):
    user_id, _ = await _setup_solana(db, solana, amount="100")
    bonus = Bonus(title="Welcome", amount_type="percentage", amount=Decimal("50"), up_to_amount=Decimal("30"),
                  deposit_amount_from=Decimal("10"), spend_amount=Decimal("0"), wager=Decimal("5"))
    db.add(bonus)
    await db.commit()
    usdc = await currency_id(db, "USDC", SOLANA)

    result = await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A, bonus_id=bonus.id)
    assert result.lu_amount == Decimal("100.00")
    history = await db.scalar(select(BonusHistory).where(BonusHistory.user_id == user_id))
    assert Decimal(history.amount) == Decimal("30")
    assert history.status == "active"
    balance = await get_ledger_balance(db, user_id)
    await db.refresh(balance)
    assert Decimal(balance.bonus) == Decimal("30")


@pytest.mark.asyncio
async def test_scan_credits_new_deposits(db, solana):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, SOLANA)).address
    solana.signatures[address] = [SIG_A, SIG_B]
    solana.transactions[SIG_A] = solana_token_tx(address, settings.SOLANA_USDT_MINT, "20")
    # SIG_B is not indexed by the node yet

    result = await scan_solana_deposits(db, await db.get(User, user_id), solana)
    assert result["deposits_found"] == 1
    assert result["deposits_confirmed"][0]["currency"] == "USDT"
    assert result["deposits_confirmed"][0]["lu_amount"] == 20.0
    assert len(result["errors"]) == 1

    again = await scan_solana_deposits(db, await db.get(User, user_id), solana)
    assert again["deposits_found"] == 0
    assert await _ledger(db, user_id) == Decimal("20.00")


# ---------------------------------------------------------------------------
# TRON
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_trc20_deposit_is_credited(db, tron):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, TRON)).address
    add_trc20_deposit(tron, TXID, address, 25_000_000)
    usdt = await currency_id(db, "USDT-TRC20", TRON)

    result = await verify_tron_deposit(db, await db.get(User, user_id), tron, usdt, "0x" + TXID.upper())
    assert result.lu_amount == Decimal("25.00")
    assert result.payment.txn_id == TXID
    assert result.payment.method == TRON

    again = await verify_tron_deposit(db, await db.get(User, user_id), tron, usdt, TXID)
    assert again.already_processed
    assert await _ledger(db, user_id) == Decimal("25.00")


@pytest.mark.asyncio
async def test_trc20_to_other_address_is_mismatch(db, tron):
    user_id = await create_user(db)
    await allocate_deposit_address(db, user_id, TRON)
    add_trc20_deposit(tron, TXID, "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj", 25_000_000)
    usdt = await currency_id(db, "USDT-TRC20", TRON)
    with pytest.raises(RecipientMismatch):
        await verify_tron_deposit(db, await db.get(User, user_id), tron, usdt, TXID)


@pytest.mark.asyncio
async def test_reverted_tron_transaction_is_rejected(db, tron):
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, TRON)).address
    add_trc20_deposit(tron, TXID, address, 25_000_000, result="REVERT")
    usdt = await currency_id(db, "USDT-TRC20", TRON)
    with pytest.raises(VerificationFailure):
        await verify_tron_deposit(db, await db.get(User, user_id), tron, usdt, TXID)


@pytest.mark.asyncio
async def test_native_trx_deposits_are_disabled(db, tron):
    user_id = await create_user(db)
    trx = await currency_id(db, "TRX", TRON)
    with pytest.raises(ValidationError):
        await verify_tron_deposit(db, await db.get(User, user_id), tron, trx, TXID)


@pytest.mark.asyncio
async def test_native_trx_deposit_when_enabled(db, tron, monkeypatch):
    monkeypatch.setattr(settings, "TRON_NATIVE_DEPOSITS_ENABLED", True)
    trx = await currency_id(db, "TRX", TRON)
    await db.execute(update(Currency).where(Currency.id == trx).values(deposit=True))
    await db.commit()
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, TRON)).address

    # plain TRX transfers carry no receipt result, only contractRet
    tron.transactions[TXID] = {
        "txID": TXID,
        "ret": [{"contractRet": "SUCCESS"}],
        "raw_data": {"contract": [{
            "type": "TransferContract",
            "parameter": {"value": {"owner_address": TRON_SENDER, "to_address": address, "amount": 200_000_000}},
        }]},
    }
    tron.infos[TXID] = {"id": TXID, "receipt": {"net_usage": 268}}

    with patch("app.services.pricing.get_spot_price", AsyncMock(return_value=Decimal("0.12"))):
        result = await verify_tron_deposit(db, await db.get(User, user_id), tron, trx, TXID)

    assert result.amount == Decimal("200")
    assert result.lu_amount == Decimal("24.00")
    assert result.payment.from_address == TRON_SENDER
    assert result.payment.data["price"] == "0.12"
    assert await _ledger(db, user_id) == Decimal("24.00")


@pytest.mark.asyncio
async def test_failed_native_trx_transfer_is_rejected(db, tron, monkeypatch):
    monkeypatch.setattr(settings, "TRON_NATIVE_DEPOSITS_ENABLED", True)
    trx = await currency_id(db, "TRX", TRON)
    await db.execute(update(Currency).where(Currency.id == trx).values(deposit=True))
    await db.commit()
    user_id = await create_user(db)
    address = (await allocate_deposit_address(db, user_id, TRON)).address
    tron.transactions[TXID] = {
        "txID": TXID,
        "ret": [{"contractRet": "OUT_OF_ENERGY"}],
        "raw_data": {"contract": [{
            "type": "TransferContract",
            "parameter": {"value": {"owner_address": TRON_SENDER, "to_address": address, "amount": 200_000_000}},
        }]},
    }
    tron.infos[TXID] = {"id": TXID}

    with pytest.raises(VerificationFailure):
        await verify_tron_deposit(db, await db.get(User, user_id), tron, trx, TXID)


def test_normalize_tron_txid():
    assert normalize_txn_id(TRON, "0x" + "AB" * 32) == "ab" * 32
    with pytest.raises(ValidationError):
        normalize_txn_id(TRON, "abc")


def test_extract_trc20_prefers_event_to_address():
    contract = settings.TRON_USDT_CONTRACT
    events = [
        {"event_name": "Transfer", "contract_address": contract,
         "result": {"from": "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj", "to": "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t", "value": "1"}},
        {"event_name": "Transfer", "contract_address": contract,
         "result": {"from": "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t", "to": "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj", "value": "2000000"}},
    ]
    match = extract_trc20_transfer(events, contract, "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj", 6)
    assert match.amount == Decimal("2")


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_deposit_endpoint(test_db, solana, tron):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await register_and_login(client, "depositor@example.com")
        headers = {"Authorization": f"Bearer {token}"}
        r = await client.get("/api/payments/solana/deposit-address", headers=headers)
        address = r.json()["address"]
        solana.transactions[SIG_A] = solana_token_tx(address, settings.SOLANA_USDC_MINT, "50")
        async with test_db() as session:
            usdc = await currency_id(session, "USDC", SOLANA)

        r = await client.post("/api/payments/deposit", headers=headers, json={"currencyId": usdc, "txn_id": SIG_A})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["already_processed"] is False
        assert body["lu_amount"] == 50.0

        r = await client.post("/api/payments/s-deposit", headers=headers, json={"currencyId": usdc, "txn_id": SIG_A})
        assert r.status_code == 200, r.text
        assert r.json()["already_processed"] is True
        assert r.json()["message"] == "Transaction already confirmed"

        r = await client.get("/api/auth/me", headers=headers)
        assert r.json()["balance"] == 50.0


@pytest.mark.asyncio
async def test_deposit_endpoint_maps_errors(test_db, solana, tron):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        token = await register_and_login(client, "missing@example.com")
        headers = {"Authorization": f"Bearer {token}"}
        async with test_db() as session:
            usdc = await currency_id(session, "USDC", SOLANA)
        r = await client.post("/api/payments/s-deposit", headers=headers, json={"currencyId": usdc, "txn_id": SIG_B})
        assert r.status_code == 404, r.text
        assert r.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_affiliate_postback_after_credit(db, solana):
    user_id = await create_user(db, affiliate="aff-7")
    address = (await allocate_deposit_address(db, user_id, SOLANA)).address
    solana.transactions[SIG_A] = solana_token_tx(address, settings.SOLANA_USDC_MINT, "40")
    usdc = await currency_id(db, "USDC", SOLANA)

    postback = AsyncMock(side_effect=RuntimeError("affiliate network down"))
    with patch("app.services.affiliate.deposit_postback", postback):
        result = await verify_solana_deposit(db, await db.get(User, user_id), solana, usdc, SIG_A)

    # a failed postback does not undo the credit
    assert not result.already_processed
    postback.assert_awaited_once_with(user_id, "player", result.payment.id, Decimal("40.00"))
    assert await _ledger(db, user_id) == Decimal("40.00")


@pytest.mark.asyncio
async def test_postback_disabled_without_url():
    from app.services.affiliate import deposit_postback
    assert await deposit_postback(1, "player", 1, Decimal("10")) is False
