import os
import socket
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from dotenv import load_dotenv

from .units import coins_to_units

# Load .env file if it exists
load_dotenv()


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} must be a decimal number, got {raw!r}")
    if not value.is_finite() or value < 0:
        raise ValueError(f"{name} must be a non-negative decimal, got {raw!r}")
    return value


@dataclass
class Settings:
    db_path: str = "data/pool.db"
    log_level: str = "INFO"
    instance_id: str = ""

    # Node RPC
    rpc_host: str = "127.0.0.1"
    rpc_port: int = 8337
    rpc_user: str = ""
    rpc_pass: str = ""
    rpc_wallet: str = ""
    rpc_timeout: float = 30.0

    # Pool economics
    fee_percent: Decimal = Decimal("10")
    pplns_window_minutes: int = 120
    min_payout_threshold: Decimal = Decimal("100")
    block_maturity_confirmations: int = 100
    block_reward: Decimal = Decimal("10000")

    # Log sources
    ckpool_log_dir: str = "/var/log/ckpool"
    ckpool_log_path: str = "/var/log/ckpool/ckpool.log"
    address_prefix: str = "T"
    address_min_length: int = 30

    # Schedules (seconds)
    share_scan_interval: float = 30.0
    log_watch_interval: float = 2.0
    block_poll_interval: float = 5.0
    pplns_poll_interval: float = 60.0
    payout_interval: float = 3600.0
    worker_offline_after: float = 600.0
    activity_lock_ttl: float = 300.0

    def __post_init__(self):
        """Load settings from environment variables at instance creation time"""
        self.db_path = os.getenv("POOL_DB_PATH", self.db_path)
        self.log_level = os.getenv("LOG_LEVEL", self.log_level).upper()
        self.instance_id = os.getenv(
            "POOL_INSTANCE_ID", self.instance_id or f"{socket.gethostname()}-{os.getpid()}"
        )

        self.rpc_host = os.getenv("NODE_RPC_HOST", self.rpc_host)
        self.rpc_port = _env_int("NODE_RPC_PORT", str(self.rpc_port))
        self.rpc_user = os.getenv("NODE_RPC_USER", self.rpc_user)
        self.rpc_pass = os.getenv("NODE_RPC_PASS", self.rpc_pass)
        self.rpc_wallet = os.getenv("NODE_RPC_WALLET", self.rpc_wallet)
        self.rpc_timeout = _env_float("NODE_RPC_TIMEOUT", str(self.rpc_timeout))

        self.fee_percent = _env_decimal("POOL_FEE_PERCENT", str(self.fee_percent))
        if self.fee_percent > 100:
            raise ValueError(f"POOL_FEE_PERCENT must be at most 100, got {self.fee_percent}")
        self.pplns_window_minutes = _env_int("PPLNS_WINDOW_MINUTES", str(self.pplns_window_minutes))
        self.min_payout_threshold = _env_decimal("MIN_PAYOUT_THRESHOLD", str(self.min_payout_threshold))
        self.block_maturity_confirmations = _env_int(
            "BLOCK_MATURITY_CONFIRMATIONS", str(self.block_maturity_confirmations)
        )
        self.block_reward = _env_decimal("BLOCK_REWARD", str(self.block_reward))

        self.ckpool_log_dir = os.getenv("CKPOOL_LOG_DIR", self.ckpool_log_dir)
        self.ckpool_log_path = os.getenv("CKPOOL_LOG_PATH", self.ckpool_log_path)
        self.address_prefix = os.getenv("POOL_ADDRESS_PREFIX", self.address_prefix)
        self.address_min_length = _env_int("POOL_ADDRESS_MIN_LENGTH", str(self.address_min_length))

        self.share_scan_interval = _env_float("SHARE_SCAN_INTERVAL", str(self.share_scan_interval))
        self.log_watch_interval = _env_float("LOG_WATCH_INTERVAL", str(self.log_watch_interval))
        self.block_poll_interval = _env_float("BLOCK_POLL_INTERVAL", str(self.block_poll_interval))
        self.pplns_poll_interval = _env_float("PPLNS_POLL_INTERVAL", str(self.pplns_poll_interval))
        self.payout_interval = _env_float("PAYOUT_INTERVAL", str(self.payout_interval))
        self.worker_offline_after = _env_float("WORKER_OFFLINE_AFTER", str(self.worker_offline_after))
        self.activity_lock_ttl = _env_float("ACTIVITY_LOCK_TTL", str(self.activity_lock_ttl))

        if self.pplns_window_minutes <= 0:
            raise ValueError("PPLNS_WINDOW_MINUTES must be positive")
        if self.block_maturity_confirmations < 1:
            raise ValueError("BLOCK_MATURITY_CONFIRMATIONS must be at least 1")
        if self.min_payout_units <= 0:
            raise ValueError(f"MIN_PAYOUT_THRESHOLD must be at least one unit, got {self.min_payout_threshold}")

    @property
    def fee_basis_points(self) -> int:
        """Fee percentage scaled to two decimals, e.g. 10 -> 1000, 2.5 -> 250."""
        return int((self.fee_percent * 100).to_integral_value(rounding=ROUND_FLOOR))

    @property
    def pplns_window_seconds(self) -> int:
        return self.pplns_window_minutes * 60

    @property
    def min_payout_units(self) -> int:
        return coins_to_units(self.min_payout_threshold)

    @property
    def block_reward_units(self) -> int:
        return coins_to_units(self.block_reward)

    @property
    def node_url(self) -> str:
        url = f"http://{self.rpc_host}:{self.rpc_port}"
        if self.rpc_wallet:
            url += f"/wallet/{self.rpc_wallet}"
        return url
