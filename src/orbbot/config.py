from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from orbbot.domain.strategy import EVParameters, RescalePolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    rpc_endpoint: str = Field(default="https://api.mainnet-beta.solana.com", alias="RPC_ENDPOINT")
    private_key: SecretStr | None = Field(default=None, alias="PRIVATE_KEY")
    game_adapter_factory: str | None = Field(default=None, alias="GAME_ADAPTER_FACTORY")

    dry_run: bool = Field(default=True, alias="DRY_RUN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    state_db_path: str = Field(default="orbbot_ledger.db", alias="STATE_DB_PATH")
    process_state_path: str = Field(
        default="orbbot_process_state.json", alias="PROCESS_STATE_PATH"
    )

    check_round_interval_ms: int = Field(default=10_000, alias="CHECK_ROUND_INTERVAL_MS")
    error_backoff_ms: int = Field(default=5_000, alias="ERROR_BACKOFF_MS")

    motherload_threshold: Decimal = Field(default=Decimal("50"), alias="MOTHERLOAD_THRESHOLD")

    budget_mode: Literal["percent", "fixed"] = Field(default="percent", alias="BUDGET_MODE")
    initial_automation_budget_pct: Decimal = Field(
        default=Decimal("90"), alias="INITIAL_AUTOMATION_BUDGET_PCT"
    )
    fixed_automation_budget: Decimal = Field(
        default=Decimal("0"), alias="FIXED_AUTOMATION_BUDGET"
    )
    min_automation_budget: Decimal = Field(default=Decimal("0.5"), alias="MIN_AUTOMATION_BUDGET")
    squares_per_round: int = Field(default=25, alias="SQUARES_PER_ROUND")
    fee_per_execution: Decimal = Field(default=Decimal("0.00001"), alias="FEE_PER_EXECUTION")

    enable_production_cost_check: bool = Field(
        default=True, alias="ENABLE_PRODUCTION_COST_CHECK"
    )
    min_expected_value: Decimal = Field(default=Decimal("0"), alias="MIN_EXPECTED_VALUE")
    estimated_competition_multiplier: Decimal = Field(
        default=Decimal("10"), alias="ESTIMATED_COMPETITION_MULTIPLIER"
    )

    rescale_increase_pct: Decimal = Field(default=Decimal("50"), alias="RESCALE_INCREASE_PCT")
    rescale_decrease_pct: Decimal = Field(default=Decimal("40"), alias="RESCALE_DECREASE_PCT")
    rescale_min_absolute_change: Decimal = Field(
        default=Decimal("100"), alias="RESCALE_MIN_ABSOLUTE_CHANGE"
    )

    checkpoint_batch_size: int = Field(default=10, alias="CHECKPOINT_BATCH_SIZE")
    checkpoint_batch_delay_ms: int = Field(default=1_000, alias="CHECKPOINT_BATCH_DELAY_MS")

    in_flight_max_age_ms: int = Field(default=600_000, alias="IN_FLIGHT_MAX_AGE_MS")
    in_flight_max_cycle_distance: int = Field(default=3, alias="IN_FLIGHT_MAX_CYCLE_DISTANCE")

    auto_claim_base_threshold: Decimal = Field(
        default=Decimal("0.1"), alias="AUTO_CLAIM_SOL_THRESHOLD"
    )
    auto_claim_reward_threshold: Decimal = Field(
        default=Decimal("1.0"), alias="AUTO_CLAIM_ORB_THRESHOLD"
    )
    auto_claim_staking_threshold: Decimal = Field(
        default=Decimal("0.5"), alias="AUTO_CLAIM_STAKING_ORB_THRESHOLD"
    )
    check_rewards_interval_ms: int = Field(default=300_000, alias="CHECK_REWARDS_INTERVAL_MS")

    auto_swap_enabled: bool = Field(default=True, alias="AUTO_SWAP_ENABLED")
    wallet_swap_threshold: Decimal = Field(
        default=Decimal("0.1"), alias="WALLET_ORB_SWAP_THRESHOLD"
    )
    min_reward_to_keep: Decimal = Field(default=Decimal("5"), alias="MIN_ORB_TO_KEEP")
    min_swap_amount: Decimal = Field(default=Decimal("0.1"), alias="MIN_ORB_SWAP_AMOUNT")
    slippage_bps: int = Field(default=50, alias="SLIPPAGE_BPS")
    min_reward_price_usd: Decimal = Field(default=Decimal("0"), alias="MIN_ORB_PRICE_USD")

    auto_stake_enabled: bool = Field(default=False, alias="AUTO_STAKE_ENABLED")
    stake_threshold: Decimal = Field(default=Decimal("50"), alias="STAKE_ORB_THRESHOLD")

    balance_snapshot_interval_ms: int = Field(
        default=300_000, alias="BALANCE_SNAPSHOT_INTERVAL_MS"
    )
    min_remaining_cycles_for_maintenance: int = Field(
        default=2, alias="MIN_REMAINING_CYCLES_FOR_MAINTENANCE"
    )

    submit_max_attempts: int = Field(default=3, alias="SUBMIT_MAX_ATTEMPTS")
    submit_base_delay_ms: int = Field(default=500, alias="SUBMIT_BASE_DELAY_MS")
    submit_max_delay_ms: int = Field(default=4_000, alias="SUBMIT_MAX_DELAY_MS")

    price_api_url: str = Field(default="https://lite-api.jup.ag/price/v2", alias="PRICE_API_URL")
    reward_token_mint: str | None = Field(default=None, alias="ORB_TOKEN_MINT")
    base_token_mint: str = Field(
        default="So11111111111111111111111111111111111111112", alias="BASE_TOKEN_MINT"
    )
    price_timeout_seconds: float = Field(default=10.0, alias="PRICE_TIMEOUT_SECONDS")

    dry_run_wallet_balance: Decimal = Field(default=Decimal("1.0"), alias="DRY_RUN_WALLET_BALANCE")
    dry_run_motherload: Decimal = Field(default=Decimal("250"), alias="DRY_RUN_MOTHERLOAD")
    dry_run_reward_price: Decimal = Field(default=Decimal("0.02"), alias="DRY_RUN_REWARD_PRICE")
    dry_run_cycle_seconds: float = Field(default=60.0, alias="DRY_RUN_CYCLE_SECONDS")

    fee_estimate_per_submit: Decimal = Field(
        default=Decimal("0.000005"), alias="FEE_ESTIMATE_PER_SUBMIT"
    )
    fee_discrepancy_tolerance: Decimal = Field(
        default=Decimal("0.001"), alias="FEE_DISCREPANCY_TOLERANCE"
    )
    reconciliation_tolerance: Decimal = Field(
        default=Decimal("0.1"), alias="RECONCILIATION_TOLERANCE"
    )

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: Literal["none", "otlp", "prometheus"] = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otlp_endpoint: str | None = Field(default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator(
        "check_round_interval_ms",
        "error_backoff_ms",
        "checkpoint_batch_delay_ms",
        "in_flight_max_age_ms",
        "check_rewards_interval_ms",
        "balance_snapshot_interval_ms",
        "submit_base_delay_ms",
        "submit_max_delay_ms",
        "min_remaining_cycles_for_maintenance",
    )
    def validate_non_negative_int(cls, value: int, info: ValidationInfo) -> int:
        if value < 0:
            raise ValueError(f"{cls._alias_for(info.field_name)} must be >= 0")
        return value

    @field_validator(
        "squares_per_round",
        "checkpoint_batch_size",
        "in_flight_max_cycle_distance",
        "submit_max_attempts",
    )
    def validate_positive_int(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{cls._alias_for(info.field_name)} must be > 0")
        return value

    @field_validator(
        "motherload_threshold",
        "fixed_automation_budget",
        "min_automation_budget",
        "fee_per_execution",
        "estimated_competition_multiplier",
        "rescale_min_absolute_change",
        "auto_claim_base_threshold",
        "auto_claim_reward_threshold",
        "auto_claim_staking_threshold",
        "wallet_swap_threshold",
        "min_reward_to_keep",
        "min_swap_amount",
        "min_reward_price_usd",
        "stake_threshold",
        "dry_run_wallet_balance",
        "dry_run_motherload",
        "dry_run_reward_price",
        "fee_estimate_per_submit",
        "fee_discrepancy_tolerance",
        "reconciliation_tolerance",
    )
    def validate_non_negative_decimal(cls, value: Decimal, info: ValidationInfo) -> Decimal:
        if value < 0:
            raise ValueError(f"{cls._alias_for(info.field_name)} must be >= 0")
        return value

    @field_validator("initial_automation_budget_pct")
    def validate_budget_pct(cls, value: Decimal) -> Decimal:
        if value <= 0 or value > 100:
            raise ValueError("INITIAL_AUTOMATION_BUDGET_PCT must be in (0, 100]")
        return value

    @field_validator("rescale_increase_pct", "rescale_decrease_pct")
    def validate_rescale_pct(cls, value: Decimal, info: ValidationInfo) -> Decimal:
        if value <= 0:
            raise ValueError(f"{cls._alias_for(info.field_name)} must be > 0")
        return value

    @field_validator("slippage_bps")
    def validate_slippage_bps(cls, value: int) -> int:
        if value < 0 or value > 10_000:
            raise ValueError("SLIPPAGE_BPS must be in [0, 10000]")
        return value

    @field_validator("price_timeout_seconds", "dry_run_cycle_seconds")
    def validate_positive_seconds(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{cls._alias_for(info.field_name)} must be > 0")
        return value

    @field_validator("log_level")
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @model_validator(mode="after")
    def validate_live_wiring(self) -> Settings:
        if not self.dry_run and not (self.game_adapter_factory or "").strip():
            raise ValueError("GAME_ADAPTER_FACTORY is required when DRY_RUN=false")
        if self.submit_max_delay_ms < self.submit_base_delay_ms:
            raise ValueError("SUBMIT_MAX_DELAY_MS must be >= SUBMIT_BASE_DELAY_MS")
        return self

    @classmethod
    def _alias_for(cls, field_name: str) -> str:
        field = cls.model_fields.get(field_name)
        if field is not None and isinstance(field.alias, str):
            return field.alias
        return field_name.upper()

    def ev_parameters(self) -> EVParameters:
        return EVParameters(
            estimated_competition_multiplier=self.estimated_competition_multiplier,
            min_expected_value=self.min_expected_value,
        )

    def rescale_policy(self) -> RescalePolicy:
        return RescalePolicy(
            increase_pct=self.rescale_increase_pct,
            decrease_pct=self.rescale_decrease_pct,
            min_absolute_change=self.rescale_min_absolute_change,
        )
