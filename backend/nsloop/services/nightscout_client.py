import hashlib
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from nsloop.core.errors import NightscoutError
from nsloop.models.schemas import NightscoutEntry, NightscoutProfileDocument, NightscoutStatus

logger = logging.getLogger(__name__)


def _is_jwt(token: str) -> bool:
    return len(token) > 20 and token.count(".") >= 2


class NightscoutClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_seconds: int = 10,
        entered_by: str = "nsloop",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds
        self.entered_by = entered_by

        headers = self._auth_headers()
        headers["Accept"] = "application/json"

        # Access tokens (not JWTs) are only honoured as a query parameter
        params = {}
        if self.token and not _is_jwt(self.token) and "-" in self.token:
            params["token"] = self.token

        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=headers,
            params=params,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}

        if self.token:
            if _is_jwt(self.token):
                headers["Authorization"] = f"Bearer {self.token}"
            else:
                headers["API-SECRET"] = hashlib.sha1(self.token.encode("utf-8")).hexdigest()

        # An explicit secret wins over a token that looked like one
        if self.api_secret:
            headers["API-SECRET"] = hashlib.sha1(self.api_secret.encode("utf-8")).hexdigest()

        return headers

    async def _handle_response(self, response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
            if not response.content.strip():
                # Empty body is sometimes returned by Nightscout instead of []
                return []
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Nightscout API error",
                extra={"status_code": exc.response.status_code, "body": exc.response.text[:200]},
            )
            raise NightscoutError(f"Nightscout returned status {exc.response.status_code}") from exc
        except ValueError as exc:
            preview = response.text[:200]
            logger.error(f"Invalid JSON from Nightscout. Body: {preview!r}")
            raise NightscoutError(f"Nightscout returned invalid JSON (Body: {preview!r})") from exc

    async def _get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.get(endpoint, params=params)
        except httpx.TimeoutException as exc:
            raise NightscoutError(f"Timeout fetching {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise NightscoutError(f"Request to {endpoint} failed: {exc}") from exc
        return await self._handle_response(response)

    async def _post(self, endpoint: str, payload: list[dict[str, Any]]) -> Any:
        try:
            response = await self.client.post(endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise NightscoutError(f"Upload to {endpoint} failed: {exc}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(f"Nightscout Upload Failed: {exc.response.status_code} - {exc.response.text[:200]}")
            raise NightscoutError(f"Upload failed: {exc.response.status_code}") from exc

        if not response.content.strip():
            return {"status": "success", "uploaded_count": len(payload)}
        try:
            return response.json()
        except ValueError:
            return {"status": "success", "uploaded_count": len(payload)}

    async def get_status(self) -> NightscoutStatus:
        endpoint_candidates = ["/api/v1/status.json", "/api/v1/status"]
        last_error: Optional[Exception] = None
        for endpoint in endpoint_candidates:
            try:
                data = await self._get(endpoint)
                if not isinstance(data, dict):
                    raise NightscoutError(f"Expected dict for status, got {type(data).__name__}")
                return NightscoutStatus.model_validate(data)
            except (NightscoutError, ValidationError) as exc:
                last_error = exc
                logger.warning("Nightscout status endpoint failed", extra={"endpoint": endpoint, "error": str(exc)})
        raise NightscoutError(f"Unable to fetch Nightscout status: {last_error}")

    async def get_entries(self, count: int = 288) -> list[NightscoutEntry]:
        """Most recent CGM entries, newest-first. Malformed rows are skipped."""
        data = await self._get("/api/v1/entries.json", params={"count": count})
        if not isinstance(data, list):
            logger.warning(f"Expected list for entries, got {type(data)}")
            return []

        entries: list[NightscoutEntry] = []
        skipped = 0
        for item in data:
            if not isinstance(item, dict) or item.get("sgv") is None:
                # mbg/cal records carry no sgv
                skipped += 1
                continue
            try:
                entries.append(NightscoutEntry.model_validate(item))
            except (ValidationError, TypeError, ValueError):
                skipped += 1
        if skipped:
            logger.debug("Skipped %d non-sgv or malformed entries", skipped)
        entries.sort(key=lambda e: e.date, reverse=True)
        return entries

    async def get_treatments(self, count: int = 1000) -> list[dict[str, Any]]:
        """Raw treatment records. Translation into pump events happens elsewhere."""
        data = await self._get("/api/v1/treatments.json", params={"count": count})
        if not isinstance(data, list):
            logger.warning(f"Expected list for treatments, got {type(data)}")
            return []
        return [item for item in data if isinstance(item, dict)]

    async def get_profile(self) -> Optional[NightscoutProfileDocument]:
        data = await self._get("/api/v1/profile.json")
        document = data[0] if isinstance(data, list) and data else data
        if not isinstance(document, dict) or not document:
            return None
        try:
            return NightscoutProfileDocument.model_validate(document)
        except ValidationError as exc:
            raise NightscoutError(f"Malformed profile document: {exc.error_count()} errors") from exc

    async def upload_treatments(self, treatments: list[dict[str, Any]]) -> Any:
        # Some Nightscout versions reject treatments without enteredBy
        for t in treatments:
            if not t.get("enteredBy"):
                t["enteredBy"] = self.entered_by
        return await self._post("/api/v1/treatments", treatments)

    async def upload_devicestatus(self, statuses: list[dict[str, Any]]) -> Any:
        return await self._post("/api/v1/devicestatus", statuses)

    async def aclose(self) -> None:
        await self.client.aclose()
