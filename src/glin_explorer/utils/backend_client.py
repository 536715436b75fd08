import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ..models import FaucetStats, LeaderboardEntry, UserPoints

logger = logging.getLogger(__name__)


class BackendClient:
    """Read-only client for the GLIN backend API.

    Serves human-authored and aggregated data the chain does not store:
    task descriptions, leaderboard ranks, faucet statistics and provider
    hardware specs.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        """Initialize backend client.

        Args:
            base_url: Backend root URL (e.g. http://localhost:8080)
            request_timeout: Per-request timeout in seconds
            transport: Optional transport override (used in tests)
        """
        self.base_url: str = base_url.rstrip('/')
        self.request_timeout: float = request_timeout
        self.transport = transport

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Send a GET request to the backend.

        Args:
            path: API endpoint path
            params: Optional query parameters

        Returns:
            Decoded JSON response

        Raises:
            httpx.HTTPError: If the request fails or returns an error status
            ValueError: If the body is not valid JSON
        """
        async with httpx.AsyncClient(transport=self.transport) as client:
            full_url: str = self.base_url + path
            logger.debug(f"GET {full_url} params={params}")
            response: httpx.Response = await client.get(
                full_url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.request_timeout
            )
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _require_mapping(payload: Any, what: str) -> Mapping[str, Any]:
        if not isinstance(payload, Mapping):
            raise ValueError(f"Unexpected {what} response: {payload!r}")
        return payload

    @staticmethod
    def _require_list(payload: Any, what: str) -> list[Any]:
        if not isinstance(payload, list):
            raise ValueError(f"Unexpected {what} response: {payload!r}")
        return payload

    async def get_leaderboard(self, limit: int = 100) -> list[LeaderboardEntry]:
        """Fetch the testnet points leaderboard.

        Args:
            limit: Maximum number of entries

        Returns:
            Leaderboard entries ordered by rank
        """
        payload = self._require_list(
            await self._get('/api/v1/points/leaderboard', {"limit": limit}), "leaderboard"
        )
        try:
            return [
                LeaderboardEntry(
                    address=str(entry["address"]),
                    points=int(entry["points"]),
                    rank=int(entry["rank"]),
                    activities=int(entry.get("activities", 0))
                )
                for entry in payload
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed leaderboard entry: {e}") from e

    async def get_user_points(self, address: str) -> UserPoints:
        payload = self._require_mapping(
            await self._get(f'/api/v1/points/user/{address}'), "user points"
        )
        try:
            return UserPoints(
                address=str(payload.get("address", address)),
                points=int(payload["points"]),
                rank=int(payload["rank"])
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed user points: {e}") from e

    async def get_faucet_stats(self) -> FaucetStats:
        payload = self._require_mapping(await self._get('/api/v1/faucet/stats'), "faucet stats")
        try:
            return FaucetStats(
                total_claims=int(payload["totalClaims"]),
                total_distributed=str(payload["totalDistributed"]),
                unique_users=int(payload["uniqueUsers"])
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed faucet stats: {e}") from e

    async def check_faucet_status(self, address: str) -> dict[str, Any]:
        return dict(self._require_mapping(
            await self._get('/api/v1/faucet/status', {"address": address}), "faucet status"
        ))

    async def get_tasks(self, status: str | None = None) -> list[dict[str, Any]]:
        params = {"status": status} if status else None
        return self._require_list(await self._get('/api/v1/tasks', params), "tasks")

    async def get_task(self, task_id: str) -> dict[str, Any]:
        return dict(self._require_mapping(await self._get(f'/api/v1/tasks/{task_id}'), "task"))

    async def get_providers(self) -> list[dict[str, Any]]:
        return self._require_list(await self._get('/api/v1/providers'), "providers")

    async def get_provider(self, address: str) -> dict[str, Any]:
        return dict(self._require_mapping(
            await self._get(f'/api/v1/providers/{address}'), "provider"
        ))

    async def get_network_analytics(self) -> dict[str, Any]:
        return dict(self._require_mapping(
            await self._get('/api/v1/analytics/network'), "network analytics"
        ))
