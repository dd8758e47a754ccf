"""
Auction REST Client
===================
Read-only access to the auction server's REST API, used to show an item's
current state before live updates start streaming.

Fault-tolerant like the rest of the client:
- Every call returns None (or a safe default) on timeout, connection error,
  HTTP error or unparseable body
- Failures are logged as warnings, never raised

Usage:
    api = AuctionApiClient.from_config(SyncConfig())
    item = api.get_item(42)
    highest = api.get_highest_bid(42)
"""

import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger("auction_sync.api")


class AuctionApiClient:

    def __init__(self, base_url: str, auth_token: str = "", timeout: float = 10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "AuctionApiClient":
        return cls(config.api_url, auth_token=config.auth_token, timeout=config.api_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET {base_url}{path}. Returns the decoded JSON body, or None on failure."""
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, headers=self._headers(), params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.exceptions.Timeout:
            logger.warning(f"Auction API timeout: GET {path}")
            return None
        except requests.exceptions.ConnectionError:
            logger.warning(f"Auction API unreachable: GET {path}")
            return None
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            if status == 404:
                logger.warning(f"Auction API resource not found: GET {path}")
            else:
                logger.warning(f"Auction API error {status}: GET {path}")
            return None
        except ValueError as e:
            logger.warning(f"Auction API returned non-JSON body: GET {path} - {e}")
            return None

    # ========== Items ==========

    def list_items(self) -> List[Dict[str, Any]]:
        result = self._get("/items")
        return result if isinstance(result, list) else []

    def get_item(self, item_id) -> Optional[Dict[str, Any]]:
        return self._get(f"/items/{item_id}")

    def get_item_bids(self, item_id) -> List[Dict[str, Any]]:
        result = self._get(f"/items/{item_id}/bids")
        return result if isinstance(result, list) else []

    # ========== Bids ==========

    def get_highest_bid(self, item_id) -> Optional[Dict[str, Any]]:
        """Highest bid on an item, or None if there is none (or the call failed)."""
        return self._get(f"/bids/item/{item_id}/highest")

    def get_bid_count(self, item_id) -> Optional[int]:
        result = self._get(f"/bids/item/{item_id}/count")
        if isinstance(result, bool) or not isinstance(result, (int, float)):
            return None
        return int(result)
