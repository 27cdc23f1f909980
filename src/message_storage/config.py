"""
Pipeline configuration.

``PipelineConfig`` is a frozen pydantic model; build it directly or from
the environment (``.env`` files are honoured through python-dotenv).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic import ValidationError as PydanticValidationError

from message_storage.constants import (
    DEFAULT_BUMP_FACTOR,
    DEFAULT_MAX_FEE_BUMPS,
    DEFAULT_MAX_NONCE_RESYNCS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RECEIPT_TIMEOUT_MS,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_RETRY_MAX_DELAY_MS,
    GAS_ESTIMATION_BUFFER,
    MAX_GAS_LIMIT,
    MIN_REPLACEMENT_BUMP,
    PROVIDER_TIMEOUT_SECONDS,
)
from message_storage.errors import ValidationError
from message_storage.tx.pipeline import SubmissionPolicy

DEFAULT_ENV_PREFIX = "MESSAGE_STORAGE_"


class PipelineConfig(BaseModel):
    """
    Settings for the deployment and submission pipeline.

    Example:
        ```python
        config = PipelineConfig(
            rpc_url="http://127.0.0.1:8545",
            private_key=os.environ["MESSAGE_STORAGE_PRIVATE_KEY"],
            artifact_path="out/MessageStorage.json",
        )
        ```
    """

    model_config = ConfigDict(frozen=True)

    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        description="JSON-RPC endpoint of the chain node",
    )
    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Hex private key of the deployer. SECURITY: Store in environment variable",
    )
    mnemonic: Optional[SecretStr] = Field(
        default=None,
        description="BIP-39 mnemonic the deployer is derived from (alternative to private_key)",
    )
    account_index: int = Field(
        default=0,
        ge=0,
        description="Account index on the m/44'/60'/0'/0 path when using a mnemonic",
    )
    chain_id: Optional[int] = Field(
        default=None,
        ge=1,
        description="Chain ID; fetched from the node when not set",
    )
    artifact_path: Optional[Path] = Field(
        default=None,
        description="Compiled contract artifact (ABI + bytecode); bundled ABI when not set",
    )
    poll_interval_ms: int = Field(
        default=DEFAULT_POLL_INTERVAL_MS,
        ge=10,
        description="Delay between receipt and log polls in milliseconds",
    )
    receipt_timeout_ms: int = Field(
        default=DEFAULT_RECEIPT_TIMEOUT_MS,
        ge=100,
        description="Wall-clock window before a pending transaction counts as dropped",
    )
    max_retry_attempts: int = Field(
        default=DEFAULT_MAX_RETRY_ATTEMPTS,
        ge=1,
        description="Attempts per RPC call on transient network errors",
    )
    retry_base_delay_ms: int = Field(
        default=DEFAULT_RETRY_BASE_DELAY_MS,
        ge=0,
        description="First backoff delay in milliseconds",
    )
    retry_max_delay_ms: int = Field(
        default=DEFAULT_RETRY_MAX_DELAY_MS,
        ge=0,
        description="Backoff cap in milliseconds",
    )
    max_fee_bumps: int = Field(
        default=DEFAULT_MAX_FEE_BUMPS,
        ge=0,
        description="Rebuilds with higher fees allowed for one nonce",
    )
    gas_price_bump_factor: float = Field(
        default=DEFAULT_BUMP_FACTOR,
        ge=MIN_REPLACEMENT_BUMP,
        description="Fee multiplier per rebuild (nodes require at least 10% for replacement)",
    )
    gas_estimation_buffer: float = Field(
        default=GAS_ESTIMATION_BUFFER,
        ge=1.0,
        description="Multiplier applied to the node's gas estimate",
    )
    max_gas_limit: int = Field(
        default=MAX_GAS_LIMIT,
        ge=21_000,
        description="Upper bound for any transaction gas limit",
    )
    legacy_transactions: bool = Field(
        default=False,
        description="Send pre-EIP-1559 gasPrice transactions",
    )
    request_timeout_s: float = Field(
        default=PROVIDER_TIMEOUT_SECONDS,
        gt=0,
        description="HTTP request timeout for RPC calls in seconds",
    )
    max_nonce_resyncs: int = Field(
        default=DEFAULT_MAX_NONCE_RESYNCS,
        ge=0,
        description="Fresh nonces tried when another sender consumed ours",
    )

    @model_validator(mode="after")
    def _check_key_material(self) -> "PipelineConfig":
        if (self.private_key is None) == (self.mnemonic is None):
            raise ValueError("exactly one of private_key or mnemonic must be set")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must not be below retry_base_delay_ms")
        return self

    def submission_policy(self) -> SubmissionPolicy:
        return SubmissionPolicy(
            poll_interval_ms=self.poll_interval_ms,
            receipt_timeout_ms=self.receipt_timeout_ms,
            max_retry_attempts=self.max_retry_attempts,
            retry_base_delay_ms=self.retry_base_delay_ms,
            retry_max_delay_ms=self.retry_max_delay_ms,
            max_fee_bumps=self.max_fee_bumps,
            bump_factor=self.gas_price_bump_factor,
            max_nonce_resyncs=self.max_nonce_resyncs,
        )

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        *,
        environ: Optional[Mapping[str, str]] = None,
        dotenv: bool = True,
    ) -> "PipelineConfig":
        """
        Build a config from ``{prefix}{FIELD}`` environment variables.

        ``MNEMONIC`` without the prefix is accepted too. Unset variables
        keep their defaults.

        Raises:
            ValidationError: If a value is missing or out of range
        """
        if dotenv and environ is None:
            load_dotenv()
        env = os.environ if environ is None else environ

        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{prefix}{name.upper()}")
            if raw not in (None, ""):
                values[name] = raw
        if "mnemonic" not in values and env.get("MNEMONIC"):
            values["mnemonic"] = env["MNEMONIC"]

        try:
            return cls(**values)
        except PydanticValidationError as e:
            # pydantic echoes input values; keep secrets out of the message
            fields = sorted({".".join(str(p) for p in err["loc"]) or "config" for err in e.errors()})
            raise ValidationError(
                f"Invalid configuration: {', '.join(fields)}",
                details={"fields": fields},
            ) from None
