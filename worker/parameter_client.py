"""
HTTP client for the remote key-value parameter server.
"""

import logging
from typing import Optional, Dict, Any

import httpx


logger = logging.getLogger(__name__)


OCTET_STREAM = "application/octet-stream"


class ParameterServerClient:
    """
    Pushes and pulls binary payloads by key.

    Pushes are sent once; a failed push raises. A pull of a key that has not
    been populated yet returns None so the caller can decide whether to retry.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8000",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None
    ):
        """
        Initialize parameter server client.

        Args:
            server_url: URL of the parameter server
            timeout: Request timeout in seconds
            client: Existing HTTP client to use instead of creating one
                (for example a FastAPI TestClient)
        """
        self.server_url = server_url.rstrip('/')
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(base_url=self.server_url, timeout=self.timeout)
        return self._client

    def push(self, key: str, payload: bytes):
        """
        Push a payload under a key.

        Raises:
            httpx.HTTPError: If the request fails
        """
        response = self._get_client().post(
            f"/push/{key}",
            content=payload,
            headers={"Content-Type": OCTET_STREAM}
        )
        response.raise_for_status()
        logger.debug(f"Pushed {len(payload)} bytes to {key}")

    def pull(self, key: str) -> Optional[bytes]:
        """
        Pull the current value of a key.

        Returns:
            Encoded value, or None if the key is not populated yet

        Raises:
            httpx.HTTPError: If the request fails for any other reason
        """
        response = self._get_client().get(f"/pull/{key}")
        if response.status_code == 404:
            logger.debug(f"Key {key} is not populated yet")
            return None
        response.raise_for_status()
        return response.content

    def health(self) -> Dict[str, Any]:
        response = self._get_client().get("/health")
        response.raise_for_status()
        return response.json()

    def close(self):
        """Close the HTTP client if this object created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
        self._client = None

    def __enter__(self) -> 'ParameterServerClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
