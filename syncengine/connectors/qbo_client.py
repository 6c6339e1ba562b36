"""
QuickBooks Online API client.

Async client for the parts of the QuickBooks Online API the sync engine uses:
- OAuth2 authorization flow (authorization URL, code exchange, refresh, revoke)
- Company info lookup used to validate an access token
- Entity reads, paginated queries and creates
- Client-side rate limiting and bounded retry of transient failures

The client holds no token state. Every data call takes the access token and
realm id explicitly; the Token Manager owns the token lifecycle.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from syncengine.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class QBOAuthError(Exception):
    """Raised when an OAuth2 exchange with Intuit fails."""

    code = "oauth_failed"


class ProviderAPIError(Exception):
    """
    Raised when a QuickBooks API request fails.

    Attributes:
        status_code: HTTP status of the failed response, None for network
            errors and timeouts
        body: Response body (or the transport error text)
    """

    code = "provider_api_error"

    def __init__(self, status_code: Optional[int], body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"QuickBooks API error ({status_code or 'network'}): {body[:500]}")

    @property
    def is_transient(self) -> bool:
        """True for failures worth retrying: 5xx, 429, network and timeout."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class QBOClient:
    """
    QuickBooks Online API client.

    Attributes:
        client_id: Intuit OAuth2 client ID
        client_secret: Intuit OAuth2 client secret
        redirect_uri: OAuth2 callback URL
        base_url: QuickBooks API host for the configured environment
        max_retries: Attempts per request for transient failures
        retry_backoff: Base delay in seconds for exponential backoff
    """

    SUPPORTED_ENTITY_TYPES = ["Customer", "Item", "Invoice"]

    # Rate limiting: QuickBooks allows 500 requests per minute per realm
    RATE_LIMIT_REQUESTS = 500
    RATE_LIMIT_WINDOW = 60  # seconds

    DEFAULT_SCOPES = ["com.intuit.quickbooks.accounting"]

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            settings: Application settings (defaults to get_settings())
            http_client: Pre-built httpx client, e.g. one using MockTransport
        """
        settings = settings or get_settings()
        self.client_id = settings.intuit_client_id
        self.client_secret = settings.intuit_client_secret
        self.redirect_uri = settings.intuit_redirect_uri
        self.environment = settings.intuit_env
        self.base_url = settings.intuit_api_base_url
        self.auth_url = settings.intuit_auth_url
        self.token_url = settings.intuit_token_url
        self.revoke_url = settings.intuit_revoke_url
        self.minor_version = settings.qbo_minor_version
        self.max_retries = settings.qbo_max_retries
        self.retry_backoff = settings.qbo_retry_backoff_seconds
        self.page_size = settings.qbo_page_size
        self.validation_timeout = settings.qbo_validation_timeout_seconds

        self._request_times: dict[str, list[datetime]] = {}
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.qbo_http_timeout_seconds
        )

        logger.info(
            "qbo_client_initialized",
            environment=self.environment,
            has_credentials=bool(self.client_id and self.client_secret),
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self._http_client.aclose()

    # =========================================================================
    # OAuth2
    # =========================================================================

    def get_authorization_url(self, state: str, scopes: Optional[list[str]] = None) -> str:
        """
        Build the Intuit consent URL.

        Args:
            state: Opaque CSRF state echoed back on the callback
            scopes: OAuth scopes (defaults to the accounting scope)

        Returns:
            Complete authorization URL for user redirection
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": " ".join(scopes or self.DEFAULT_SCOPES),
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str], event: str) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        try:
            response = await self._http_client.post(
                self.token_url,
                data=data,
                headers=headers,
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"{event}_failed",
                status_code=e.response.status_code,
                error=e.response.text[:500],
            )
            raise QBOAuthError(f"{event} failed: {e.response.text}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{event}_error", error=str(e))
            raise QBOAuthError(f"Unexpected error during {event}: {e}") from e

        if not token_data.get("access_token"):
            raise QBOAuthError(f"{event} returned no access token")

        logger.info(f"{event}_succeeded", expires_in=token_data.get("expires_in"))
        return token_data

    async def exchange_code(self, auth_code: str) -> dict[str, Any]:
        """
        Exchange an authorization code for access and refresh tokens.

        Returns:
            Token response: access_token, refresh_token, expires_in, token_type

        Raises:
            QBOAuthError: If the exchange fails
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": auth_code,
                "redirect_uri": self.redirect_uri,
            },
            "oauth_code_exchange",
        )

    async def refresh_tokens(self, refresh_token: str) -> dict[str, Any]:
        """
        Trade a refresh token for a new access/refresh pair.

        Raises:
            QBOAuthError: If the refresh token is missing or rejected
        """
        if not refresh_token:
            raise QBOAuthError("No refresh token available")
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token_refresh",
        )

    async def revoke_token(self, token: str) -> None:
        """
        Revoke a refresh or access token at Intuit.

        Raises:
            QBOAuthError: If Intuit rejects the revocation
        """
        try:
            response = await self._http_client.post(
                self.revoke_url,
                json={"token": token},
                headers={"Accept": "application/json"},
                auth=(self.client_id, self.client_secret),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("token_revoke_failed", error=str(e))
            raise QBOAuthError(f"Failed to revoke token: {e}") from e
        logger.info("token_revoked")

    # =========================================================================
    # Requests
    # =========================================================================

    async def _rate_limit_wait(self, realm_id: str) -> None:
        """
        Keep under 500 requests per minute per realm.

        Tracks request times and sleeps until the oldest request leaves the
        window when the limit would be exceeded.
        """
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=self.RATE_LIMIT_WINDOW)
        times = [t for t in self._request_times.get(realm_id, []) if t > cutoff]

        if len(times) >= self.RATE_LIMIT_REQUESTS:
            sleep_time = (times[0] - cutoff).total_seconds()
            if sleep_time > 0:
                logger.warning("rate_limit_throttling", realm_id=realm_id, sleep_seconds=sleep_time)
                await asyncio.sleep(sleep_time)
                cutoff = datetime.utcnow() - timedelta(seconds=self.RATE_LIMIT_WINDOW)
                times = [t for t in times if t > cutoff]

        times.append(now)
        self._request_times[realm_id] = times

    async def _make_request(
        self,
        method: str,
        access_token: str,
        realm_id: str,
        endpoint: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        retry_count: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Make an authenticated API request with retry logic.

        Client errors (4xx other than 429) fail immediately. Server errors,
        429 and transport failures are retried with exponential backoff.

        Args:
            method: HTTP method
            access_token: OAuth access token
            realm_id: QuickBooks company id
            endpoint: Path below /v3/company/{realm_id}/
            params: Query parameters
            data: JSON request body
            retry_count: Attempts (defaults to max_retries)
            timeout: Per-request timeout override in seconds

        Returns:
            Decoded JSON response

        Raises:
            ProviderAPIError: If the request fails after retries
        """
        if not realm_id:
            raise ProviderAPIError(None, "No realm_id set - QuickBooks company not connected")

        attempts = retry_count or self.max_retries
        url = f"{self.base_url}/v3/company/{realm_id}/{endpoint}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        query = {"minorversion": self.minor_version, **(params or {})}
        request_kwargs: dict[str, Any] = {"params": query, "json": data, "headers": headers}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        for attempt in range(attempts):
            await self._rate_limit_wait(realm_id)
            try:
                response = await self._http_client.request(method, url, **request_kwargs)
                response.raise_for_status()
                logger.debug(
                    "qbo_api_request_success",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                )
                return response.json()

            except httpx.HTTPStatusError as e:
                error = ProviderAPIError(e.response.status_code, e.response.text)
                logger.error(
                    "qbo_api_request_failed",
                    method=method,
                    endpoint=endpoint,
                    status_code=e.response.status_code,
                    attempt=attempt + 1,
                )
            except httpx.TransportError as e:
                error = ProviderAPIError(None, str(e) or type(e).__name__)
                logger.error(
                    "qbo_api_request_error",
                    method=method,
                    endpoint=endpoint,
                    error=str(e),
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                )

            if not error.is_transient or attempt == attempts - 1:
                raise error

            wait_time = self.retry_backoff * (2**attempt)
            logger.info("retrying_request", endpoint=endpoint, wait_seconds=wait_time)
            await asyncio.sleep(wait_time)

        raise ProviderAPIError(None, "request was not attempted")

    # =========================================================================
    # Entities
    # =========================================================================

    def _check_entity_type(self, entity_type: str) -> None:
        if entity_type not in self.SUPPORTED_ENTITY_TYPES:
            raise ValueError(f"Unsupported entity type: {entity_type}")

    async def get_company_info(
        self, access_token: str, realm_id: str, validate: bool = False
    ) -> dict[str, Any]:
        """
        Read the company info record.

        Args:
            validate: Single attempt under the short validation timeout, used
                to check that an access token still works

        Raises:
            ProviderAPIError: On any failure
        """
        response = await self._make_request(
            "GET",
            access_token,
            realm_id,
            f"companyinfo/{realm_id}",
            retry_count=1 if validate else None,
            timeout=self.validation_timeout if validate else None,
        )
        return response.get("CompanyInfo", {})

    async def get_entity(
        self, access_token: str, realm_id: str, entity_type: str, entity_id: str
    ) -> dict[str, Any]:
        """
        Retrieve a single entity by id.

        Args:
            entity_type: QuickBooks entity name ("Customer", "Item", "Invoice")
            entity_id: QuickBooks entity id

        Returns:
            Entity data as dictionary
        """
        self._check_entity_type(entity_type)
        response = await self._make_request(
            "GET", access_token, realm_id, f"{entity_type.lower()}/{entity_id}"
        )
        logger.info("entity_retrieved", entity_type=entity_type, entity_id=entity_id)
        return response.get(entity_type, {})

    @staticmethod
    def build_query(
        entity_type: str,
        since: Optional[datetime] = None,
        start_position: int = 1,
        max_results: int = 1000,
    ) -> str:
        """Build a QuickBooks query language statement for one page."""
        query_parts = [f"SELECT * FROM {entity_type}"]
        if since:
            since_str = since.strftime("%Y-%m-%dT%H:%M:%S")
            query_parts.append(f"WHERE MetaData.LastUpdatedTime >= '{since_str}'")
        query_parts.append(f"STARTPOSITION {start_position}")
        query_parts.append(f"MAXRESULTS {max_results}")
        return " ".join(query_parts)

    async def query_entities(
        self,
        access_token: str,
        realm_id: str,
        entity_type: str,
        since: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Retrieve all entities of a type with automatic pagination.

        Args:
            entity_type: QuickBooks entity name
            since: Only entities modified at or after this time

        Returns:
            Complete list of matching entities
        """
        self._check_entity_type(entity_type)

        all_entities: list[dict[str, Any]] = []
        start_position = 1

        while True:
            query = self.build_query(entity_type, since, start_position, self.page_size)
            response = await self._make_request(
                "GET", access_token, realm_id, "query", params={"query": query}
            )
            entities = response.get("QueryResponse", {}).get(entity_type, [])
            if not entities:
                break

            all_entities.extend(entities)
            logger.debug(
                "entity_batch_retrieved",
                entity_type=entity_type,
                batch_size=len(entities),
                total=len(all_entities),
                start_position=start_position,
            )

            if len(entities) < self.page_size:
                break
            start_position += self.page_size

        logger.info(
            "all_entities_retrieved",
            entity_type=entity_type,
            realm_id=realm_id,
            total_count=len(all_entities),
        )
        return all_entities

    async def create_entity(
        self,
        access_token: str,
        realm_id: str,
        entity_type: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Create an entity (POST /{entity}).

        Returns:
            The created entity as returned by QuickBooks
        """
        self._check_entity_type(entity_type)
        response = await self._make_request(
            "POST", access_token, realm_id, entity_type.lower(), data=payload
        )
        created = response.get(entity_type, {})
        logger.info("entity_created", entity_type=entity_type, entity_id=created.get("Id"))
        return created
