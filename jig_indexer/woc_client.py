"""WhatsOnChain HTTP API client."""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from jig_indexer.config import settings
from jig_indexer.metrics import rate_limit_hits, remote_requests
from jig_indexer.models import Transaction
from jig_indexer.resilience import (
    RateLimitedError, RetryMechanism, Sleep, TransientError, rate_limit_config
)

logger = structlog.get_logger(__name__)


class ChainDataError(Exception):
    """The chain API answered with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransactionNotFound(ChainDataError):
    """The chain API does not know the requested transaction."""
    pass


class TransientChainError(TransientError):
    """Network failure or timeout talking to the chain API."""
    pass


class WhatsOnChainClient:
    """Client for the WhatsOnChain REST API.

    Every completed call is followed by ``request_delay`` seconds of sleep so a
    single indexing flow stays under the provider's rate limit. HTTP 429
    answers are retried with a fixed delay by a :class:`RetryMechanism`.
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: int = None,
        request_delay: float = None,
        rate_limit_delay: float = None,
        rate_limit_max_attempts: Optional[int] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.base_url = (base_url or settings.woc_url).rstrip("/")
        self.timeout = timeout or settings.request_timeout
        self.request_delay = settings.request_delay if request_delay is None else request_delay
        self.sleep = sleep or asyncio.sleep
        self.rate_limit_retry = RetryMechanism(
            rate_limit_config(
                settings.rate_limit_delay if rate_limit_delay is None else rate_limit_delay,
                rate_limit_max_attempts if rate_limit_max_attempts is not None
                else settings.rate_limit_max_attempts,
            ),
            sleep=self.sleep,
        )
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self.session:
            await self.session.close()
            self.session = None

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True,
    )
    async def _request(self, endpoint: str) -> Any:
        """Make one HTTP GET, retrying connection failures."""
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        url = f"{self.base_url}{endpoint}"
        logger.debug("WhatsOnChain request", url=url)
        async with self.session.get(url) as response:
            if response.status == 429:
                rate_limit_hits.inc()
                raise RateLimitedError(f"Rate limited on {endpoint}")
            if response.status == 404:
                raise TransactionNotFound(f"Not found: {endpoint}", status=404)
            if response.status != 200:
                body = await response.text()
                raise ChainDataError(
                    f"WoC {response.status}: {body[:200]}", status=response.status
                )
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise ChainDataError(
                    f"Malformed response from {endpoint}: {e}", status=response.status
                ) from e

    async def _get(self, endpoint: str, kind: str) -> Any:
        remote_requests.labels(endpoint=kind).inc()
        try:
            return await self.rate_limit_retry.execute(self._request, endpoint)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("WhatsOnChain request failed", endpoint=endpoint, error=str(e))
            raise TransientChainError(f"{endpoint}: {e}") from e
        finally:
            await self.sleep(self.request_delay)

    async def get_transaction(self, txid: str) -> Transaction:
        """Get a full transaction record.

        Args:
            txid: Transaction id

        Returns:
            Parsed transaction with inputs, outputs and block position
        """
        data = await self._get(f"/tx/hash/{txid}", "tx")
        if not isinstance(data, dict):
            raise ChainDataError(f"Unexpected transaction body for {txid}")
        return Transaction.from_woc(data)

    async def get_address_history(self, address: str) -> List[str]:
        """Get the ids of every transaction touching an address, oldest first."""
        return [entry["tx_hash"] for entry in await self.get_address_history_entries(address)]

    async def get_address_history_entries(self, address: str) -> List[Dict[str, Any]]:
        """Get raw history entries (``tx_hash`` and ``height``) for an address."""
        history = await self._get(f"/address/{address}/history", "history")
        return list(history or [])

    async def get_chain_info(self) -> Dict[str, Any]:
        """Get chain tip information."""
        return await self._get("/chain/info", "chain_info")

    async def health_check(self) -> bool:
        """Check if the API is reachable.

        Returns:
            True if the API answered, False otherwise
        """
        try:
            info = await self.get_chain_info()
            return bool(info.get("blocks"))
        except Exception:
            return False
