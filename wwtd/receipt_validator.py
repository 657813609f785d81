# wwtd/receipt_validator.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wwtd.errors import UpstreamFailure, ValidationFailure

logger = logging.getLogger("wwtd_core")


class ReceiptEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: Optional[str] = None
    # the endpoint sends milliseconds since epoch as a string
    expires_date_ms: Union[str, int, None] = None

    def expires_at(self) -> Optional[datetime]:
        if self.expires_date_ms is None or self.expires_date_ms == "":
            return None
        try:
            ms = float(self.expires_date_ms)
        except ValueError as e:
            raise ValidationFailure(f"Invalid expires_date_ms: {self.expires_date_ms!r}") from e
        return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


class ReceiptValidationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Optional[int] = None
    latest_receipt_info: List[ReceiptEntry] = Field(...)


@dataclass(frozen=True)
class ActiveSubscription:
    product_id: Optional[str]
    expires_at: datetime


def parse_validation_payload(payload: Any) -> List[ReceiptEntry]:
    """Raises ValidationFailure on anything that isn't {latest_receipt_info: [...]}."""
    if not isinstance(payload, dict):
        raise ValidationFailure("Invalid receipt data.")
    try:
        return ReceiptValidationResponse.model_validate(payload).latest_receipt_info
    except ValidationError as e:
        raise ValidationFailure(f"Invalid receipt data: {e.error_count()} error(s)") from e


def select_active_subscription(
    entries: Iterable[ReceiptEntry],
    product_ids: Iterable[str],
    *,
    now: Optional[datetime] = None,
) -> Optional[ActiveSubscription]:
    """
    Among entries for the configured products that expire in the future,
    the one with the latest expiration wins.
    """
    now = now or datetime.now(timezone.utc)
    wanted = set(product_ids)
    best: Optional[ActiveSubscription] = None
    for entry in entries:
        if entry.product_id not in wanted:
            continue
        expires_at = entry.expires_at()
        if expires_at is None or expires_at <= now:
            continue
        if best is None or expires_at > best.expires_at:
            best = ActiveSubscription(product_id=entry.product_id, expires_at=expires_at)
    return best


class ReceiptValidator:
    """
    POSTs the base64 receipt blob to the validation endpoint and returns the
    parsed latest_receipt_info entries.
    """

    def __init__(self, url: str, *, shared_secret: str = "", timeout_sec: float = 20.0):
        self.url = url
        self.shared_secret = shared_secret
        self.timeout_sec = timeout_sec

    def _request_body(self, receipt_b64: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"receipt-data": receipt_b64}
        if self.shared_secret:
            body["password"] = self.shared_secret
        return body

    async def _post_json(self, payload: Dict[str, Any]) -> Any:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_sec)) as sess:
            async with sess.post(self.url, json=payload) as resp:
                resp.raise_for_status()
                return await resp.json(content_type=None)

    async def validate(self, receipt_b64: str) -> List[ReceiptEntry]:
        try:
            payload = await self._post_json(self._request_body(receipt_b64))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Receipt validation failed: %s", e)
            raise UpstreamFailure.wrap("receipt validation", e)
        except ValueError as e:
            raise ValidationFailure(f"Failed to parse receipt data: {e}") from e
        return parse_validation_payload(payload)
