"""Configuration management using Pydantic settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class IndexerConfig(BaseSettings):
    """Configuration for the graph indexer."""
    
    # Bitcoin Core RPC Settings
    bitcoin_rpc_host: str = Field(default="localhost", description="Bitcoin Core RPC host")
    bitcoin_rpc_port: int = Field(default=8332, description="Bitcoin Core RPC port")
    bitcoin_rpc_user: str = Field(default="", description="Bitcoin Core RPC username")
    bitcoin_rpc_password: str = Field(default="", description="Bitcoin Core RPC password")
    bitcoin_rpc_timeout: int = Field(default=30, description="RPC timeout in seconds")
    bitcoin_rpc_scheme: str = Field(default="http", description="RPC URL scheme (http|https)")
    
    # Database Settings
    db_url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides the db_* parts")
    db_host: str = Field(default="localhost", description="PostgreSQL host")
    db_port: int = Field(default=5432, description="PostgreSQL port")
    db_name: str = Field(default="bitcoin_graph", description="Database name")
    db_user: str = Field(default="graph_user", description="Database username")
    db_password: str = Field(default="", description="Database password")
    db_pool_size: int = Field(default=10, description="Connection pool size")
    db_max_overflow: int = Field(default=20, description="Max pool overflow")
    
    # Provider rate limiting and retry
    rate_limit_max_requests: int = Field(default=100, description="Provider calls allowed per window")
    rate_limit_time_window: float = Field(default=60.0, description="Rate limit window in seconds")
    retry_max_retries: int = Field(default=3, description="Retries for transient provider errors")
    retry_initial_delay: float = Field(default=1.0, description="Initial backoff delay in seconds")
    retry_max_delay: float = Field(default=30.0, description="Maximum backoff delay in seconds")
    retry_factor: float = Field(default=2.0, description="Backoff multiplier")
    cache_ttl_block: float = Field(default=3600.0, description="Block payload cache TTL in seconds")
    cache_ttl_tx: float = Field(default=3600.0, description="Transaction payload cache TTL in seconds")
    cache_max_size: int = Field(default=10_000, description="Max payloads held per cache")
    
    # Sync Settings
    sync_batch_size: int = Field(default=10, description="Blocks to process in batch")
    sync_concurrency: int = Field(default=3, description="Concurrent block fetches within a batch")
    sync_stagger_delay: float = Field(default=0.2, description="Base stagger delay between concurrent fetches")
    sync_start_height: int = Field(default=0, description="Starting block height")
    sync_poll_interval: float = Field(default=60.0, description="Seconds between sync ticks")
    store_retry_attempts: int = Field(default=3, description="Attempts for a failed block write")
    reorg_max_depth: Optional[int] = Field(default=None, description="Fork-point search limit (None = down to genesis)")
    height_propagation_max_depth: int = Field(default=100_000, description="Guard for descendant height walks")
    
    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json|text)")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size_mb: int = Field(default=100, description="Max log file size in MB")
    log_backup_count: int = Field(default=5, description="Number of log backups")
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"
        
    @property
    def bitcoin_rpc_url(self) -> str:
        """Generate Bitcoin Core RPC URL."""
        return f"{self.bitcoin_rpc_scheme}://{self.bitcoin_rpc_host}:{self.bitcoin_rpc_port}"
    
    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        if self.db_url:
            return self.db_url
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
