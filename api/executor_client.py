"""
HTTP client for the out-of-process browser executor.

introspect() returns the raw form description for an apply URL; submit()
hands over a built payload and returns the executor's immediate receipt.
The authoritative result arrives later on the callback endpoint.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from api.config import config
from api.errors import ExecutorUnavailable
from api.logging_config import log_executor_call


@dataclass
class SubmitReceipt:
    status: str  # accepted | success | skipped | error
    message: str = ""

    @property
    def awaiting_callback(self) -> bool:
        return self.status in ("accepted", "success")


class ExecutorClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url if base_url is not None else config.EXECUTOR_URL).rstrip("/")
        self.timeout = timeout or config.EXECUTOR_TIMEOUT_SECONDS

    async def _post(self, operation: str, body: Dict[str, Any]) -> Any:
        if not self.base_url:
            raise ExecutorUnavailable("EXECUTOR_URL not configured")

        url = f"{self.base_url}/{operation}"
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=body) as resp:
                    if resp.status >= 500:
                        text = await resp.text()
                        log_executor_call(operation, url, error=f"HTTP {resp.status}")
                        raise ExecutorUnavailable(f"Executor {operation} returned HTTP {resp.status}: {text[:200]}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log_executor_call(operation, url, error=str(e) or type(e).__name__)
            raise ExecutorUnavailable(f"Executor {operation} unreachable: {e or type(e).__name__}")
        except ValueError as e:
            log_executor_call(operation, url, error=f"invalid JSON: {e}")
            raise ExecutorUnavailable(f"Executor {operation} returned invalid JSON")

        log_executor_call(operation, url, status=str(resp.status))
        return data

    async def introspect(self, apply_url: str) -> Any:
        data = await self._post("introspect", {"job": {"applyUrl": apply_url}})
        if isinstance(data, dict) and data.get("status") not in (None, "success"):
            # Reported failure: treated as "no fields" by the mapper
            return {"fields": []}
        return data

    async def submit(self, payload: Dict[str, Any]) -> SubmitReceipt:
        data = await self._post("submit", payload)
        if not isinstance(data, dict):
            return SubmitReceipt(status="error", message="Malformed executor response")
        status = str(data.get("status") or "error").lower()
        if status not in ("accepted", "success", "skipped", "error"):
            status = "error"
        return SubmitReceipt(status=status, message=str(data.get("message") or data.get("error") or ""))
