"""CLEAR Verified API client.

httpx-based async client for the two calls the node makes: creating a
verification session and retrieving its results. Every non-success path
raises ProviderError; nothing is retried here.
"""

import logging
from typing import Any, Optional

import httpx

from clear_node.config import API_BASE_URL, HTTP_TIMEOUT
from clear_node.exceptions import ProviderError
from clear_node.models import SessionHandle, VerificationResult

log = logging.getLogger(__name__)

SESSIONS_PATH = "/v1/verification_sessions"

_SUCCESS = (200, 201)


class VerificationClient:
    """Async HTTP client for the CLEAR verification_sessions API.

    Constructed once per process and injected into each VerificationFlow.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: CLEAR API host used for session creation
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "VerificationClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        # Lazily opened so the client also works outside ``async with``
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Accept": "*/*",
        }

    async def _send(self, method: str, url: str, api_key: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._http().request(method, url, headers=self._headers(api_key), **kwargs)
        except httpx.TimeoutException:
            log.error(f"CLEAR {method} {url} timeout")
            raise ProviderError.unavailable("Timeout")
        except httpx.RequestError as e:
            log.error(f"CLEAR {method} {url} error: {e}")
            raise ProviderError.unavailable(str(e))

        if response.status_code not in _SUCCESS:
            log.warning(f"CLEAR {method} {url} failed: {response.status_code}")
            raise ProviderError.bad_status(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError.invalid_response("body is not JSON", response.status_code)
        if not isinstance(data, dict):
            raise ProviderError.invalid_response("body is not a JSON object", response.status_code)
        return data

    async def create_session(self, api_key: str, project_id: str, redirect_url: str) -> SessionHandle:
        """Create a verification_session.

        Args:
            api_key: CLEAR API key
            project_id: project_id of the CLEAR project
            redirect_url: Where CLEAR returns the user, already carrying any
                correlation parameters

        Returns:
            SessionHandle with the session id and the UI token

        Raises:
            ProviderError: On non-200/201 status, transport failure or a body
                without id/token
        """
        data = await self._send(
            "POST",
            f"{self._base_url}{SESSIONS_PATH}/",
            api_key,
            json={"project_id": project_id, "redirect_url": redirect_url},
        )

        session_id = data.get("id")
        token = data.get("token")
        if not isinstance(session_id, str) or not session_id:
            raise ProviderError.invalid_response("verification_session.id missing")
        if not isinstance(token, str) or not token:
            raise ProviderError.invalid_response("verification_session.token missing")

        log.info(f"Created CLEAR verification session {session_id}")
        return SessionHandle(id=session_id, token=token)

    async def fetch_results(
        self,
        api_key: str,
        session_id: str,
        base_url: Optional[str] = None,
    ) -> VerificationResult:
        """Retrieve verification data for a session.

        Args:
            api_key: CLEAR API key
            session_id: verification_session.id from create_session
            base_url: Results endpoint (standard or secure); defaults to the
                client's base URL

        Returns:
            VerificationResult wrapping the raw response body

        Raises:
            ProviderError: On non-200/201 status or transport failure
        """
        endpoint = (base_url or self._base_url).rstrip("/")
        data = await self._send("GET", f"{endpoint}{SESSIONS_PATH}/{session_id}", api_key)
        log.info(f"Fetched CLEAR verification results for session {session_id}")
        return VerificationResult(body=data)
