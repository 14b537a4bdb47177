"""Wallet trust-score collaborators.

HttpTrustScoreClient calls the external scoring service; CachedTrustScoreProvider
wraps any provider with a short-TTL Redis cache keyed by wallet. Both satisfy
the TrustScoreProvider protocol.

Every failure of the scoring service surfaces as UpstreamUnavailableError. The
Traffic Light decides what that means (no penalty); this module never does.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from escrow_engine.domain.collaborators import TrustScore
from escrow_engine.domain.exceptions import UpstreamUnavailableError
from escrow_engine.infrastructure.redis_client import cache_get_json, cache_set_json
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from escrow_engine.domain.collaborators import TrustScoreProvider

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "trust_score:"


class HttpTrustScoreClient:
    """Client for ``GET {base_url}/v1/wallets/{wallet}/score``."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def get_trust_score(self, wallet: str) -> TrustScore:
        wallet = wallet.lower()
        try:
            data = await self._fetch(wallet)
            score = TrustScore.from_dict({**data, "wallet": wallet})
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError("trust_score", str(exc)) from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailableError("trust_score", f"malformed response: {exc}") from exc

        logger.debug(
            "trust_score.fetched",
            wallet=wallet,
            score=score.score,
            risk_level=score.risk_level.value,
        )
        return score

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch(self, wallet: str) -> dict:
        """GET the score, retrying connection-level failures with backoff."""
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = await self._client.get(
            f"{self._base_url}/v1/wallets/{wallet}/score", headers=headers
        )
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class CachedTrustScoreProvider:
    """Serve recent scores from Redis before asking the wrapped provider."""

    def __init__(
        self,
        inner: TrustScoreProvider,
        redis: aioredis.Redis,
        ttl_seconds: int = 60,
    ) -> None:
        self._inner = inner
        self._redis = redis
        self._ttl_seconds = ttl_seconds

    async def get_trust_score(self, wallet: str) -> TrustScore:
        key = f"{CACHE_KEY_PREFIX}{wallet.lower()}"
        cached = await cache_get_json(self._redis, key)
        if cached is not None:
            logger.debug("trust_score.cache_hit", wallet=wallet.lower())
            return TrustScore.from_dict(cached)

        score = await self._inner.get_trust_score(wallet)
        await cache_set_json(self._redis, key, score.to_dict(), self._ttl_seconds)
        return score


def build_trust_score_provider(
    base_url: str,
    api_key: str = "",
    timeout_seconds: float = 5.0,
    redis: aioredis.Redis | None = None,
    cache_ttl_seconds: int = 60,
) -> TrustScoreProvider | None:
    """Provider for the configured service, cached when Redis is available.

    Returns None when no service URL is configured; the Traffic Light then
    evaluates without trust data.
    """
    if not base_url:
        return None
    provider: TrustScoreProvider = HttpTrustScoreClient(base_url, api_key, timeout_seconds)
    if redis is not None:
        provider = CachedTrustScoreProvider(provider, redis, cache_ttl_seconds)
    return provider
