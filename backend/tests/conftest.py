"""
Shared fixtures: in-memory SQLite database, seeded currencies and in-process
fakes for the Solana and TRON clients.

Settings are read from the environment at import time, so the environment is
populated before anything from ``app`` is imported.
"""
import os

TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
SOLANA_TREASURY = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TRON_TREASURY = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["SOLANA_DEPOSIT_MNEMONIC"] = TEST_MNEMONIC
os.environ["TRON_DEPOSIT_MNEMONIC"] = TEST_MNEMONIC
os.environ["SOLANA_TREASURY_ADDRESS"] = SOLANA_TREASURY
os.environ["TRON_TREASURY_ADDRESS"] = TRON_TREASURY
os.environ["AFFILIATE_POSTBACK_URL"] = ""

from decimal import Decimal  # noqa: E402

import pytest_asyncio  # noqa: E402
from httpx import AsyncClient  # noqa: E402
from sqlalchemy import select, update  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker  # noqa: E402

from app.config import settings  # noqa: E402
from app.core.chains import get_solana_client, get_tron_client  # noqa: E402
from app.core.redis import deposit_rate_limit  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.currency import Currency  # noqa: E402
from app.models.user import User, UserRole  # noqa: E402
from app.services.address_balances import get_balance_cache  # noqa: E402
from app.core.cache import TTLCache  # noqa: E402
from app.services.currencies import seed_currencies  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SOL_SENDER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TRON_SENDER = "TXLAQ63Xg1NAzckPwKHvzw7CSEmLMEqcdj"


# ---------------------------------------------------------------------------
# Chain fakes
# ---------------------------------------------------------------------------

class FakeSolanaClient:
    """Same surface as SolanaClient, backed by dicts."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.signatures: dict[str, list[str]] = {}
        self.balances: dict[str, Decimal] = {}
        self.token_balances: dict[tuple[str, str], tuple[Decimal, int]] = {}
        self.sent: list[dict] = []
        self.send_error: Exception | None = None
        self.next_signature = "5" * 87 + "S"
        self.confirm_error: Exception | None = None
        self.confirmed: list[str] = []
        self.on_get_transaction = None
        self.balance_calls = 0
        self.failing_addresses: set[str] = set()

    async def get_transaction(self, signature):
        if self.on_get_transaction:
            await self.on_get_transaction(signature)
        return self.transactions.get(signature)

    async def get_signatures(self, address, limit=50):
        return self.signatures.get(address, [])[:limit]

    async def get_balance(self, address):
        from app.core.errors import ExternalDependencyError
        self.balance_calls += 1
        if address in self.failing_addresses:
            raise ExternalDependencyError("Solana RPC getBalance failed: ConnectTimeout")
        return self.balances.get(address, Decimal(0))

    async def get_token_balance(self, owner, mint):
        return self.token_balances.get((owner, mint), (Decimal(0), None))

    async def send_sol(self, keypair, to_address, lamports):
        if self.send_error:
            raise self.send_error
        self.sent.append({"from": str(keypair.pubkey()), "to": to_address, "lamports": lamports})
        return self.next_signature

    async def send_token(self, keypair, to_owner, mint, amount, decimals):
        if self.send_error:
            raise self.send_error
        self.sent.append({"from": str(keypair.pubkey()), "to": to_owner, "mint": mint, "amount": amount})
        return self.next_signature

    async def confirm_transaction(self, signature):
        if self.confirm_error:
            raise self.confirm_error
        self.confirmed.append(signature)


class FakeTronClient:
    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.infos: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self.trx_balances: dict[str, Decimal] = {}
        self.trc20_balances: dict[tuple[str, str], Decimal] = {}
        self.sent: list[dict] = []
        self.send_error: Exception | None = None
        self.next_txid = "cd" * 32
        self.confirm_error: Exception | None = None
        self.confirmed: list[str] = []

    async def get_transaction(self, txid):
        return self.transactions.get(txid)

    async def get_transaction_info(self, txid):
        return self.infos.get(txid)

    async def get_transfer_events(self, txid):
        return self.events.get(txid, [])

    async def get_trx_balance(self, address):
        return self.trx_balances.get(address, Decimal(0))

    async def get_trc20_balance(self, address, contract_address):
        return self.trc20_balances.get((address, contract_address), Decimal(0)), 6

    async def send_trx(self, private_key, from_address, to_address, amount_sun):
        if self.send_error:
            raise self.send_error
        self.sent.append({"from": from_address, "to": to_address, "sun": amount_sun})
        return self.next_txid

    async def send_trc20(self, private_key, from_address, to_address, contract_address, amount_raw):
        if self.send_error:
            raise self.send_error
        self.sent.append({"from": from_address, "to": to_address, "contract": contract_address, "raw": amount_raw})
        return self.next_txid

    async def confirm_transaction(self, txid):
        if self.confirm_error:
            raise self.confirm_error
        self.confirmed.append(txid)


# ---------------------------------------------------------------------------
# Transaction payload builders
# ---------------------------------------------------------------------------

def solana_token_tx(owner: str, mint: str, amount: str, pre: str = "0", sender: str = SOL_SENDER, err=None) -> dict:
    sender_pre = Decimal("1000")
    return {
        "meta": {
            "err": err,
            "preBalances": [],
            "postBalances": [],
            "preTokenBalances": [
                {"accountIndex": 1, "mint": mint, "owner": owner, "uiTokenAmount": {"uiAmountString": pre}},
                {"accountIndex": 2, "mint": mint, "owner": sender, "uiTokenAmount": {"uiAmountString": str(sender_pre)}},
            ],
            "postTokenBalances": [
                {"accountIndex": 1, "mint": mint, "owner": owner,
                 "uiTokenAmount": {"uiAmountString": str(Decimal(pre) + Decimal(amount))}},
                {"accountIndex": 2, "mint": mint, "owner": sender,
                 "uiTokenAmount": {"uiAmountString": str(sender_pre - Decimal(amount))}},
            ],
        },
        "transaction": {"message": {"accountKeys": [], "instructions": []}},
    }


def solana_native_tx(destination: str, lamports: int, source: str = SOL_SENDER) -> dict:
    return {
        "meta": {"err": None, "preBalances": [], "postBalances": [], "preTokenBalances": [], "postTokenBalances": []},
        "transaction": {"message": {
            "accountKeys": [source, destination],
            "instructions": [{
                "program": "system",
                "parsed": {"type": "transfer", "info": {"source": source, "destination": destination, "lamports": lamports}},
            }],
        }},
    }


def add_trc20_deposit(tron: FakeTronClient, txid: str, to_address: str, raw_value: int, contract: str = None, result: str = "SUCCESS"):
    tron.transactions[txid] = {"txID": txid, "ret": [{"contractRet": result}], "raw_data": {"contract": []}}
    tron.infos[txid] = {"id": txid, "receipt": {"result": result}}
    tron.events[txid] = [{
        "event_name": "Transfer",
        "contract_address": contract or settings.TRON_USDT_CONTRACT,
        "result": {"from": TRON_SENDER, "to": to_address, "value": str(raw_value)},
    }]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_db():
    """Isolated in-memory SQLite DB with seeded currencies; overrides get_db."""
    engine = create_async_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    async with SessionLocal() as session:
        await seed_currencies(session)

    async def override_get_db():
        async with SessionLocal() as session:
            yield session

    async def no_rate_limit():
        return None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deposit_rate_limit] = no_rate_limit
    yield SessionLocal
    app.dependency_overrides.clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(test_db):
    async with test_db() as session:
        yield session


@pytest_asyncio.fixture
async def solana(test_db):
    client = FakeSolanaClient()
    app.dependency_overrides[get_solana_client] = lambda: client
    return client


@pytest_asyncio.fixture
async def tron(test_db):
    client = FakeTronClient()
    app.dependency_overrides[get_tron_client] = lambda: client
    return client


@pytest_asyncio.fixture
async def balance_cache(test_db):
    cache = TTLCache(ttl=60)
    app.dependency_overrides[get_balance_cache] = lambda: cache
    return cache


async def create_user(db, email: str = "player@example.com", role: UserRole = UserRole.user, affiliate=None) -> int:
    user = User(email=email, username=email.split("@")[0], password_hash="x", role=role, affiliate=affiliate)
    db.add(user)
    await db.commit()
    return user.id


async def currency_id(db, symbol: str, blockchain: str) -> int:
    return await db.scalar(
        select(Currency.id).where(Currency.symbol == symbol, Currency.blockchain == blockchain)
    )


async def register_and_login(client: AsyncClient, email: str, password: str = "pass1234") -> str:
    r = await client.post("/api/auth/register", json={"email": email, "password": password})
    assert r.status_code == 201, r.text
    r = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["access_token"]


async def login_admin(client: AsyncClient, SessionLocal, email: str = "admin@example.com") -> str:
    """Register a user, promote it to admin and return a JWT."""
    await register_and_login(client, email)
    async with SessionLocal() as session:
        await session.execute(update(User).where(User.email == email).values(role=UserRole.admin))
        await session.commit()
    r = await client.post("/api/auth/login", json={"email": email, "password": "pass1234"})
    return r.json()["access_token"]
