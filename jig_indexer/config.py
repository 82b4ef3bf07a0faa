"""Configuration management for the ownership indexer."""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # WhatsOnChain API Configuration
    woc_url: str = Field(
        default="https://api.whatsonchain.com/v1/bsv/main",
        description="WhatsOnChain REST API base URL"
    )
    request_timeout: int = Field(
        default=30,
        description="HTTP request timeout in seconds"
    )
    request_delay: float = Field(
        default=0.2,
        description="Seconds to wait after every live request while tracing"
    )
    build_request_delay: float = Field(
        default=0.25,
        description="Seconds to wait after every request while building a spend map"
    )
    discovery_request_delay: float = Field(
        default=0.5,
        description="Seconds to wait after each processed discovery transaction"
    )

    # Rate limiting
    rate_limit_delay: float = Field(
        default=5.0,
        description="Seconds to wait before retrying a rate-limited request"
    )
    rate_limit_max_attempts: Optional[int] = Field(
        default=None,
        description="Attempts per rate-limited request (unset retries forever)"
    )
    rate_limit_cooldown: float = Field(
        default=30.0,
        description="Cool-down before restarting a spend map build after rate-limit exhaustion"
    )
    build_max_restarts: int = Field(
        default=3,
        description="Number of times a spend map build may restart"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ledger.db",
        description="SQLAlchemy URL for the ledger and spend map store"
    )
    database_pool_size: int = Field(
        default=5,
        description="Database connection pool size (PostgreSQL only)"
    )
    database_pool_timeout: int = Field(
        default=10,
        description="Database pool timeout in seconds (PostgreSQL only)"
    )
    ledger_name: str = Field(
        default="rexxie",
        description="Key of the ledger document in the store"
    )

    # Collection
    collection_name: str = Field(default="Rexxie")
    collection_protocol: str = Field(default="Run (BSV)")
    collection_description: str = Field(
        default="Rexxie NFT collection on BSV via Run token protocol (originally RelayX)"
    )
    class_origin: str = Field(
        default="cdea2c203af755cd9477ca310c61021abaafc135a21d8f93b8ebfc6ca5f95712",
        description="Origin txid of the NFT class referenced by mints"
    )
    minting_address: str = Field(
        default="12nG9uFESfdyE9SdYHVXQeCGFdfYLcdYZG",
        description="Address that received every freshly minted NFT"
    )
    nft_vout: int = Field(
        default=3,
        description="Output index of the NFT jig in its mint transaction"
    )

    # Tracing
    dust_threshold_sats: int = Field(
        default=1000,
        description="Largest output value (satoshis) treated as a jig carrier"
    )
    max_hops: int = Field(
        default=50,
        description="Maximum spends followed per traced NFT"
    )
    batch_size: int = Field(
        default=2222,
        description="Maximum NFTs traced per direct indexing run"
    )
    start_from: int = Field(
        default=1,
        description="Lowest NFT number considered by direct indexing"
    )
    save_every: int = Field(
        default=50,
        description="Flush the ledger after this many traced NFTs"
    )
    auto_build_spend_map: bool = Field(
        default=False,
        description="Build the minting address spend map when it is missing"
    )

    # Discovery
    discovery_budget: int = Field(
        default=100,
        description="Maximum queue pops per discovery run"
    )
    max_deferrals: int = Field(
        default=3,
        description="Times a send may be deferred behind its input before it is recorded as discovered"
    )
    jig_input_index: int = Field(
        default=1,
        description="Input index carrying the jig in Run send transactions"
    )
    seed_txids: List[str] = Field(
        default=[
            "d0ef96ba417631626cfa62053e338422cb788d62945c7ac20dd7237f2bf9809a",
            "ab772754507274d1ba3a9cdf64b8aff2fd81392286711602022d4a5844119134",
        ],
        description="Known collection transactions used to seed discovery"
    )

    # API server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(
        default=3001,
        description="Port for the query API, health and metrics endpoints"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: str = Field(
        default="json",
        description="Log format (json or text)"
    )

    # Feature Flags
    enable_metrics: bool = Field(
        default=True,
        description="Enable Prometheus metrics endpoint"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
