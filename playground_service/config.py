from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Wallet used for simulated and live runs
    WALLET_ADDRESS: str = Field("0x36aE091C6264Cb30b2353806EEf2F969Dc2893f8")
    DEFAULT_BALANCES: Dict[str, str] = Field(default_factory=lambda: {"TCRO": "10", "USDC": "1000"})

    # Contract registry seeded into every virtual state
    EXECUTION_ROUTER_ADDRESS: str = Field("0x0B10060fF00CF2913a81f5BdBEA1378eD10092c6")
    TREASURY_VAULT_ADDRESS: str = Field("0x169439e816B63D3836e1E4e9C407c7936505C202")
    ATTESTATION_REGISTRY_ADDRESS: str = Field("0xb183502116bcc1b41Bb42C704F4868e5Dc812Ce2")

    # Ledger gateway (execute mode only)
    LEDGER_GATEWAY_URL: str = Field("http://localhost:3000/api/ledger")
    LEDGER_REQUEST_TIMEOUT_SECONDS: float = Field(15.0)
    LEDGER_CONFIRMATION_TIMEOUT_SECONDS: float = Field(60.0)
    LEDGER_POLL_INTERVAL_SECONDS: float = Field(1.0)
    EXPLORER_URL: str = Field("https://explorer.cronos.org/testnet")

    # Reasoning provider used by llm_agent steps
    REASONING_PROVIDER: str = Field("offline")
    OPENAI_API_KEY: Optional[str] = Field(None)
    OPENAI_BASE_URL: str = Field("https://api.openai.com/v1/chat/completions")
    REASONING_MODEL: str = Field("gpt-4")
    REASONING_TIMEOUT_SECONDS: float = Field(30.0)

    # Engine
    STEP_TIMEOUT_SECONDS: float = Field(45.0)
    TRACE_RETENTION_SECONDS: int = Field(3600)

    # Service
    PORT: int = Field(3000)
    RATE_LIMIT: str = Field("60/minute")
    LOG_LEVEL: str = Field("INFO")
    LOG_FILE: Optional[str] = Field(None)
    SENTRY_DSN: Optional[str] = Field(None)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
