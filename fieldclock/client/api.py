"""
Time clock API client.
Thin async wrapper over the /time-clock endpoints.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import settings
from .errors import ApiUnavailableError, error_from_response

logger = structlog.get_logger(__name__)


class ClockApiClient:
    """Client for the time clock HTTP API"""

    def __init__(
        self,
        user_id: str,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.user_id = str(user_id)
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        # An injected client is owned by the caller
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        headers = {"X-User-Id": self.user_id}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await self._client.request(method, f"/{endpoint.lstrip('/')}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ApiUnavailableError(f"Time clock API unreachable: {e}") from e

        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = None
        raise error_from_response(response.status_code, body)

    async def clock_in(
        self,
        personnel_id: str,
        project_id: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        accuracy: Optional[float] = None,
        source: str = "app",
    ) -> Dict[str, Any]:
        payload = {
            "personnel_id": str(personnel_id),
            "project_id": str(project_id),
            "lat": lat,
            "lng": lng,
            "accuracy": accuracy,
            "source": source,
        }
        return await self._request("POST", "/time-clock/clock-in", json=payload)

    async def clock_out(
        self,
        entry_id: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload = {"lat": lat, "lng": lng, "accuracy": accuracy}
        return await self._request("POST", f"/time-clock/entries/{entry_id}/clock-out", json=payload)

    async def send_location(self, entry_id: str, lat: float, lng: float, accuracy: Optional[float] = None) -> Dict[str, Any]:
        payload = {"lat": lat, "lng": lng, "accuracy": accuracy}
        return await self._request("POST", f"/time-clock/entries/{entry_id}/location", json=payload)

    async def start_lunch(self, entry_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/time-clock/entries/{entry_id}/lunch/start")

    async def end_lunch(self, entry_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/time-clock/entries/{entry_id}/lunch/end")

    async def get_open_entry(self, personnel_id: str, project_id: str) -> Optional[Dict[str, Any]]:
        data = await self._request(
            "GET",
            "/time-clock/open",
            params={"personnel_id": str(personnel_id), "project_id": str(project_id)},
        )
        return data.get("entry")
