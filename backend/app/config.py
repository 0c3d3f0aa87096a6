from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str
    REDIS_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    BINANCE_BASE_URL: str = "https://api.binance.com"
    RPC_TIMEOUT_SECONDS: float = 15.0

    # Solana
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    SOLANA_DEPOSIT_MNEMONIC: str = ""
    SOLANA_MASTER_SEED: str = ""   # legacy name, used when SOLANA_DEPOSIT_MNEMONIC is empty
    SOLANA_TREASURY_ADDRESS: str = ""
    SOLANA_USDC_MINT: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    SOLANA_USDT_MINT: str = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

    # TRON
    TRON_FULLNODE: str = "https://api.trongrid.io"
    TRONGRID_API_URL: str = "https://api.trongrid.io"
    TRON_API_KEY: str = ""
    TRON_DEPOSIT_MNEMONIC: str = ""
    TRON_DERIVATION_PATH_TEMPLATE: str = "m/44'/195'/{index}'/0'/0'"
    TRON_TREASURY_ADDRESS: str = ""
    TRON_FEE_RESERVE: float = 2.0
    TRON_USDT_CONTRACT: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
    TRON_USDC_CONTRACT: str = "TLZSucJRjnqBKwvQz6n5hd29gbS4P7u7w8"
    TRON_NATIVE_DEPOSITS_ENABLED: bool = False
    TRON_CONFIRM_TIMEOUT_SECONDS: float = 60.0

    # Deposits / admin listing
    MIN_DEPOSIT_LU: float = 10.0
    DEPOSIT_RATE_LIMIT_PER_MINUTE: int = 5
    BALANCE_CACHE_TTL: float = 10.0
    BALANCE_FETCH_CONCURRENCY: int = 10
    AFFILIATE_POSTBACK_URL: str = ""

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgresql:// to postgresql+asyncpg:// for async support"""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @property
    def solana_mnemonic(self) -> str:
        return (self.SOLANA_DEPOSIT_MNEMONIC or self.SOLANA_MASTER_SEED).strip()

settings = Settings()
