import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv


@dataclass
class MarketConfig:
    platform_fee_rate: Decimal = Decimal("0.05")
    listing_fee: int = 0
    reservation_ttl_sec: int = 300
    reserve_retry_attempts: int = 3


@dataclass
class RewardConfig:
    signup_bonus: int = 100
    first_post_bonus: int = 25
    first_sale_bonus: int = 150
    referral_bonus: int = 200
    signup_email_pattern: str = r"@vitap\.edu\.in$"
    rules_path: Optional[str] = None


@dataclass
class ApiConfig:
    api_tokens: dict[str, str] = field(default_factory=dict)
    allow_header_auth: bool = False
    admin_accounts: frozenset[str] = frozenset()
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class AppConfig:
    market: MarketConfig = field(default_factory=MarketConfig)
    rewards: RewardConfig = field(default_factory=RewardConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_tokens(value: str) -> dict[str, str]:
    # API_TOKENS="token-a:alice,token-b:bob"
    tokens = {}
    for pair in _split(value):
        token, _, account_id = pair.partition(":")
        if token and account_id:
            tokens[token] = account_id
    return tokens


def load_config(env_file: Optional[str] = None) -> AppConfig:
    load_dotenv(env_file)

    market = MarketConfig(
        platform_fee_rate=Decimal(os.getenv("PLATFORM_FEE_RATE", "0.05")),
        listing_fee=int(os.getenv("LISTING_FEE", "0")),
        reservation_ttl_sec=int(os.getenv("RESERVATION_TTL_SEC", "300")),  # 5 min
        reserve_retry_attempts=int(os.getenv("RESERVE_RETRY_ATTEMPTS", "3")),
    )

    rewards = RewardConfig(
        signup_bonus=int(os.getenv("SIGNUP_BONUS", "100")),
        first_post_bonus=int(os.getenv("FIRST_POST_BONUS", "25")),
        first_sale_bonus=int(os.getenv("FIRST_SALE_BONUS", "150")),
        referral_bonus=int(os.getenv("REFERRAL_BONUS", "200")),
        signup_email_pattern=os.getenv("SIGNUP_EMAIL_PATTERN", r"@vitap\.edu\.in$"),
        rules_path=os.getenv("REWARD_RULES_PATH") or None,
    )

    api = ApiConfig(
        api_tokens=_parse_tokens(os.getenv("API_TOKENS", "")),
        allow_header_auth=os.getenv("ALLOW_HEADER_AUTH", "false").lower() == "true",
        admin_accounts=frozenset(_split(os.getenv("ADMIN_ACCOUNTS", ""))),
        cors_origins=_split(os.getenv("CORS_ORIGINS", "*")) or ["*"],
    )

    return AppConfig(
        market=market,
        rewards=rewards,
        api=api,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
