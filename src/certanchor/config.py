"""Issuer configuration, read from the environment and an optional .env file.

Keys (all optional unless noted):

    CERTANCHOR_CHAIN               bitcoinTestnet | bitcoinMainnet | bitcoinRegtest
    CERTANCHOR_ESPLORA_URL         Esplora API base URL (required for regtest)
    CERTANCHOR_PRIVATE_KEY         issuer key, 32-byte hex (required to issue)
    CERTANCHOR_FEE_TARGET_BLOCKS   confirmation target for fee estimates (6)
    CERTANCHOR_MAX_FEE_RATE        ceiling in sat/vB (none)
    CERTANCHOR_BROADCAST_RETRIES   transient broadcast retries (3)
    CERTANCHOR_RETRY_BACKOFF       seconds, multiplied by attempt number (2.0)
    CERTANCHOR_HTTP_TIMEOUT        seconds (20)
    CERTANCHOR_MIN_CONFIRMATIONS   confirmations required by the verifier (1)
    CERTANCHOR_ISSUER_NAME / _URL / _EMAIL, CERTANCHOR_BADGE_NAME / _DESCRIPTION
    CERTANCHOR_LOG_LEVEL           (INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from certanchor.chain.esplora import DEFAULT_ESPLORA_URLS
from certanchor.errors import ConfigError


SUPPORTED_CHAINS = ("bitcoinTestnet", "bitcoinMainnet", "bitcoinRegtest")


@dataclass(frozen=True)
class IssuerConfig:
    chain: str = "bitcoinTestnet"
    esplora_url: str = DEFAULT_ESPLORA_URLS["bitcoinTestnet"]
    private_key: Optional[str] = field(default=None, repr=False)
    fee_target_blocks: int = 6
    max_fee_rate: Optional[float] = None
    broadcast_retries: int = 3
    retry_backoff: float = 2.0
    http_timeout: float = 20.0
    min_confirmations: int = 1
    issuer_name: str = "Example University"
    issuer_url: str = "https://www.example.edu"
    issuer_email: str = "registrar@example.edu"
    badge_name: str = "Certificate of Accomplishment"
    badge_description: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> IssuerConfig:
        """Build a config from the process environment.

        ``env_file`` is loaded first with python-dotenv (existing variables
        win). Without one, the nearest .env at or above the working
        directory is used. ``environ`` replaces os.environ, mainly for tests.

        Raises:
            ConfigError: A value is present but malformed.
        """
        if environ is None:
            if env_file is not None:
                load_dotenv(env_file)
            else:
                load_dotenv(find_dotenv(usecwd=True))
            environ = os.environ

        def get(key: str) -> Optional[str]:
            value = environ.get(f"CERTANCHOR_{key}")
            return value.strip() if value and value.strip() else None

        chain = get("CHAIN") or cls.chain
        if chain not in SUPPORTED_CHAINS:
            raise ConfigError(
                f"CERTANCHOR_CHAIN must be one of {', '.join(SUPPORTED_CHAINS)}, got {chain!r}"
            )
        esplora_url = get("ESPLORA_URL") or DEFAULT_ESPLORA_URLS.get(chain)
        if esplora_url is None:
            raise ConfigError(f"CERTANCHOR_ESPLORA_URL is required for {chain}")

        defaults = cls()
        return cls(
            chain=chain,
            esplora_url=esplora_url,
            private_key=get("PRIVATE_KEY"),
            fee_target_blocks=_int(get("FEE_TARGET_BLOCKS"), defaults.fee_target_blocks, "FEE_TARGET_BLOCKS", minimum=1),
            max_fee_rate=_float(get("MAX_FEE_RATE"), None, "MAX_FEE_RATE"),
            broadcast_retries=_int(get("BROADCAST_RETRIES"), defaults.broadcast_retries, "BROADCAST_RETRIES", minimum=0),
            retry_backoff=_float(get("RETRY_BACKOFF"), defaults.retry_backoff, "RETRY_BACKOFF"),
            http_timeout=_float(get("HTTP_TIMEOUT"), defaults.http_timeout, "HTTP_TIMEOUT"),
            min_confirmations=_int(get("MIN_CONFIRMATIONS"), defaults.min_confirmations, "MIN_CONFIRMATIONS", minimum=1),
            issuer_name=get("ISSUER_NAME") or defaults.issuer_name,
            issuer_url=get("ISSUER_URL") or defaults.issuer_url,
            issuer_email=get("ISSUER_EMAIL") or defaults.issuer_email,
            badge_name=get("BADGE_NAME") or defaults.badge_name,
            badge_description=get("BADGE_DESCRIPTION") or defaults.badge_description,
            log_level=(get("LOG_LEVEL") or defaults.log_level).upper(),
        )

    def require_private_key(self) -> str:
        if not self.private_key:
            raise ConfigError("CERTANCHOR_PRIVATE_KEY is required to issue certificates")
        return self.private_key


def _int(raw: Optional[str], default: int, key: str, minimum: int = 0) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"CERTANCHOR_{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"CERTANCHOR_{key} must be >= {minimum}, got {value}")
    return value


def _float(raw: Optional[str], default: Optional[float], key: str) -> Optional[float]:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"CERTANCHOR_{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"CERTANCHOR_{key} must be >= 0, got {value}")
    return value
