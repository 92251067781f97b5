import logging
from typing import Any, Dict, Optional

import httpx

from .schemas import Lawyer, LawyerSearchResults

logger = logging.getLogger("uvicorn.error")

QUOTA_MESSAGE = (
    "Our lawyer search service is temporarily busy right now. "
    "Don't worry - this happens sometimes when lots of people are looking for legal help!"
)
UNAVAILABLE_MESSAGE = "Lawyer search service is temporarily unavailable. Please try again in a few minutes."
CONNECT_MESSAGE = "We're having trouble connecting to our lawyer search service right now. Please try again in a few minutes."
TIMEOUT_MESSAGE = (
    "Our lawyer search is taking longer than expected. This sometimes happens when the service is busy."
)

PRACTICE_AREAS = {
    "Family Law": "Family Law",
    "Employment Law": "Employment Law",
    "Tenant Rights Law": "Real Estate Law",
    "Personal Injury": "Personal Injury",
    "Business Law": "Business Law",
    "Criminal Law": "Criminal Law",
    "Civil Law": "Civil Law",
    "Contract Review": "Business Law",
    "Real Estate": "Real Estate Law",
    "General Consultation": "General Practice",
}


class LawyerSearchError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(LawyerSearchError):
    pass


class LawyerSearchTimeoutError(LawyerSearchError):
    pass


def practice_area_for(matter_type: str) -> str:
    return PRACTICE_AREAS.get(matter_type, "General Practice")


def _lawyer_from_raw(raw: Dict[str, Any]) -> Lawyer:
    city, state = raw.get("city"), raw.get("state")
    location = raw.get("location") or ", ".join(part for part in (city, state) if part)
    return Lawyer(
        id=str(raw.get("id") or raw.get("lawyer_id") or ""),
        name=raw.get("name") or raw.get("full_name") or "Unknown",
        firm=raw.get("firm") or raw.get("law_firm"),
        location=location,
        practice_areas=raw.get("practice_areas") or raw.get("specialties") or [],
        rating=raw.get("rating") or raw.get("avg_rating"),
        review_count=raw.get("review_count") or raw.get("total_reviews"),
        phone=raw.get("phone") or raw.get("phone_number"),
        email=raw.get("email") or raw.get("email_address"),
        website=raw.get("website") or raw.get("firm_website"),
    )


class LawyerSearchClient:
    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search_by_matter_type(
        self,
        matter_type: str,
        location: Optional[str] = None,
        limit: int = 10,
    ) -> LawyerSearchResults:
        params: Dict[str, Any] = {"practiceArea": practice_area_for(matter_type), "limit": limit}
        if location:
            parts = [part.strip() for part in location.split(",") if part.strip()]
            if len(parts) >= 2:
                params["city"], params["state"] = parts[0], parts[-1]
            elif parts:
                params["state"] = parts[0]
        data = await self._get("/lawyers", params)
        lawyers = [_lawyer_from_raw(item) for item in data.get("lawyers") or [] if isinstance(item, dict)]
        return LawyerSearchResults(
            matter_type=matter_type,
            lawyers=lawyers,
            total=int(data.get("total") or len(lawyers)),
        )

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            raise LawyerSearchError("Our lawyer search service is temporarily unavailable.")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = await self.client.get(f"{self.base_url}{path}", params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise LawyerSearchTimeoutError(TIMEOUT_MESSAGE) from exc
        except httpx.RequestError as exc:
            raise LawyerSearchError(CONNECT_MESSAGE) from exc
        if resp.status_code >= 400:
            body = resp.text
            logger.warning("Lawyer search failed status=%s body=%s", resp.status_code, body[:200])
            lowered = body.lower()
            if resp.status_code in (401, 429) and ("quota exceeded" in lowered or "daily quota" in lowered):
                raise QuotaExceededError(QUOTA_MESSAGE, resp.status_code)
            raise LawyerSearchError(UNAVAILABLE_MESSAGE, resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise LawyerSearchError(UNAVAILABLE_MESSAGE, resp.status_code) from exc
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
