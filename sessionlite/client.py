"""
SessionLite API Client
A small Python client for the SessionLite operations service.
"""

from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests


class SessionLiteClient:
    """
    HTTP client for the SessionLite operations service.

    Example:
        >>> client = SessionLiteClient("http://localhost:8000")
        >>> record = client.create_session(max_inactive_interval=90)
        >>> client.touch_session(record["id"])
        >>> client.sweep()
        {"bucket_ms": 1700000040000, "members": 0, ...}
    """

    def __init__(self, base_url: str = "http://localhost:8000", timeout: int = 5):
        """
        Initialize the client.

        Args:
            base_url: The base URL of the SessionLite service
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """
        Make an HTTP request to the API.

        Raises:
            requests.exceptions.RequestException: If request fails
        """
        url = urljoin(self.base_url, endpoint)
        kwargs.setdefault("timeout", self.timeout)

        response = self.session.request(method, url, **kwargs)
        response.raise_for_status()

        if response.headers.get("content-type", "").startswith("text/plain"):
            return response.text
        return response.json()

    def _get_or_none(self, method: str, endpoint: str) -> Optional[dict]:
        try:
            return self._request(method, endpoint)
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    def create_session(
        self,
        max_inactive_interval: Optional[int] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> dict:
        """
        Create and store a new record.

        Args:
            max_inactive_interval: Seconds of inactivity before expiry (server default if None)
            attributes: Application attributes to store with the record
        """
        return self._request(
            "POST",
            "/api/sessions",
            json={"max_inactive_interval": max_inactive_interval, "attributes": attributes or {}},
        )

    def get_session(self, record_id: str) -> Optional[dict]:
        """Fetch a record, or None if it is absent or expired."""
        return self._get_or_none("GET", f"/api/sessions/{record_id}")

    def touch_session(self, record_id: str) -> Optional[dict]:
        """Mark a record as used now. None if it no longer exists."""
        return self._get_or_none("POST", f"/api/sessions/{record_id}/touch")

    def delete_session(self, record_id: str) -> Optional[dict]:
        """Delete a record. None if it did not exist."""
        return self._get_or_none("DELETE", f"/api/sessions/{record_id}")

    def sweep(self, minute_ms: Optional[int] = None) -> dict:
        """Trigger a sweep of one expiration bucket (previous minute by default)."""
        return self._request("POST", "/api/sweep", json={"minute_ms": minute_ms})

    def stats(self) -> dict:
        return self._request("GET", "/api/stats")

    def metrics(self) -> str:
        """Prometheus text exposition."""
        return self._request("GET", "/api/metrics")

    def health(self) -> dict:
        return self._request("GET", "/health")

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
