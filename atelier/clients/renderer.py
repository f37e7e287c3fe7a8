"""Try-on image generation over HTTP."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..errors import RetryableExternalError, TerminalExternalError, raise_for_status
from .base import TryOnRenderer

logger = logging.getLogger(__name__)

FALLBACK_PROMPT = (
    "Generate a professional fashion photograph of a person wearing: {description}. "
    "Make it look like a high-end fashion editorial photo with clean background "
    "and natural lighting."
)


class HttpTryOnRenderer(TryOnRenderer):
    """Calls an image generation service that renders a person wearing items.

    The service receives the person photo first and the garment images as
    further references, and answers with a reference to the stored asset.
    When that yields no image and an outfit description is known, one
    text-only request describing the outfit is made before giving up.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, body: dict) -> httpx.Response:
        return await client.post(
            f"{self.endpoint}/try-on",
            json=body,
            headers=self._headers(),
            timeout=self._timeout,
        )

    async def _request(self, body: dict) -> Optional[str]:
        """POST ``body`` and return the asset reference, or ``None`` without one."""
        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.TimeoutException as exc:
            raise RetryableExternalError(f"Try-on request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise RetryableExternalError(f"Try-on request failed: {exc}") from exc

        raise_for_status(
            response.status_code,
            f"Try-on service returned HTTP {response.status_code}: {response.text[:200]}",
        )

        try:
            return response.json().get("asset_ref")
        except ValueError as exc:
            raise TerminalExternalError("Try-on service returned invalid JSON") from exc

    async def render_try_on(
        self,
        user_photo_ref: str,
        item_image_refs: list[str],
        outfit_description: Optional[str] = None,
    ) -> str:
        body: dict = {
            "person_image": user_photo_ref,
            "garment_images": list(item_image_refs),
        }
        if outfit_description:
            body["outfit_description"] = outfit_description
        asset_ref = await self._request(body)

        if not asset_ref and outfit_description:
            logger.warning("No image from reference-based try-on, retrying with a text-only prompt")
            asset_ref = await self._request(
                {"prompt": FALLBACK_PROMPT.format(description=outfit_description)}
            )

        if not asset_ref:
            raise TerminalExternalError(
                "Try-on service did not return an image; the request may have been blocked"
            )
        logger.debug(f"Rendered try-on asset {asset_ref}")
        return asset_ref
