"""
Bid Sync Configuration
======================
Runtime settings for the real-time bid client, read from the environment.

The launcher calls load_dotenv() first, so values may also come from a
.env file in the working directory.

Environment variables:
    AUCTION_WS_URL:                 STOMP-over-WebSocket endpoint
    AUCTION_API_URL:                REST base URL (items, bids)
    AUCTION_AUTH_TOKEN:             Bearer token sent on CONNECT and REST calls
    AUCTION_WS_RECONNECT_DELAY:     Base backoff delay in seconds (linear)
    AUCTION_WS_MAX_RECONNECTS:      Retries before giving up
    AUCTION_WS_RECONNECT_ON_CLOSE:  Retry after a clean server close too
    AUCTION_WS_HEARTBEAT_MS:        STOMP heart-beat, both directions
    AUCTION_WS_CONNECT_TIMEOUT:     Handshake + CONNECTED frame timeout
    AUCTION_BID_TIMEOUT:            Seconds to wait for a bid reply (0 = forever)
    AUCTION_API_TIMEOUT:            REST request timeout in seconds
"""

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SyncConfig:
    ws_url: str = field(default_factory=lambda: os.getenv("AUCTION_WS_URL", "ws://localhost:8080/ws/websocket"))
    api_url: str = field(default_factory=lambda: os.getenv("AUCTION_API_URL", "http://localhost:8080/api"))
    auth_token: str = field(default_factory=lambda: os.getenv("AUCTION_AUTH_TOKEN", ""))

    # Reconnect policy: delay = reconnect_delay * attempt, up to max_reconnect_attempts
    reconnect_delay: float = field(default_factory=lambda: float(os.getenv("AUCTION_WS_RECONNECT_DELAY", "3.0")))
    max_reconnect_attempts: int = field(default_factory=lambda: int(os.getenv("AUCTION_WS_MAX_RECONNECTS", "5")))
    reconnect_on_close: bool = field(default_factory=lambda: _env_bool("AUCTION_WS_RECONNECT_ON_CLOSE"))

    heartbeat_ms: int = field(default_factory=lambda: int(os.getenv("AUCTION_WS_HEARTBEAT_MS", "4000")))
    connect_timeout: float = field(default_factory=lambda: float(os.getenv("AUCTION_WS_CONNECT_TIMEOUT", "15.0")))

    bid_timeout: float = field(default_factory=lambda: float(os.getenv("AUCTION_BID_TIMEOUT", "10.0")))
    api_timeout: float = field(default_factory=lambda: float(os.getenv("AUCTION_API_TIMEOUT", "10.0")))

    def __post_init__(self):
        if not self.ws_url:
            raise ValueError("ws_url must not be empty")
        if self.reconnect_delay <= 0:
            raise ValueError(f"reconnect_delay must be positive, got {self.reconnect_delay}")
        if self.max_reconnect_attempts < 0:
            raise ValueError(f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}")
        if self.heartbeat_ms < 0:
            raise ValueError(f"heartbeat_ms must be >= 0, got {self.heartbeat_ms}")
        if self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive, got {self.connect_timeout}")
        if self.bid_timeout < 0:
            raise ValueError(f"bid_timeout must be >= 0, got {self.bid_timeout}")

    @property
    def stomp_host(self) -> str:
        """Virtual host for the STOMP CONNECT frame (hostname of ws_url)."""
        return urlparse(self.ws_url).hostname or "localhost"

    def connect_headers(self) -> dict:
        """Extra CONNECT headers (auth) for the STOMP session."""
        if self.auth_token:
            return {"Authorization": f"Bearer {self.auth_token}"}
        return {}
