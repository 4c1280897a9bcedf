import asyncio
import json
import logging

import aiohttp

from .errors import IndexServiceError
from .settings import DEFAULT_INDEX_CONFIG

logger = logging.getLogger("TwosChat")


class OpenAIClient:
    """Minimal REST client for files, vector stores, assistants and threads."""

    def __init__(self, api_key: str, config: dict | None = None):
        self.api_key = api_key
        self.config = {**DEFAULT_INDEX_CONFIG, **(config or {})}

    @property
    def _base(self) -> str:
        base = self.config["base_url"].rstrip("/")
        if base.endswith("/v1"):
            return base
        return f"{base}/v1"

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "assistants=v2",
        }

    async def _request(self, method: str, path: str, *, json_body=None, data=None) -> dict:
        url = f"{self._base}{path}"
        timeout = aiohttp.ClientTimeout(total=self.config.get("timeout", 60))
        logger.debug("[index] %s %s", method, path)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, json=json_body, data=data, headers=self._headers
                ) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        text = await resp.text()
                        raise IndexServiceError(
                            f"{method} {path} failed: {text[:200] if text.strip() else '(empty response)'}",
                            status=resp.status,
                        )
                    payload = await resp.json(content_type=None)
        except aiohttp.ClientConnectorError as e:
            raise IndexServiceError(f"Cannot connect to {self._base}: {e}") from e
        except asyncio.TimeoutError as e:
            raise IndexServiceError(f"{method} {path} timed out") from e
        except ValueError as e:
            raise IndexServiceError(f"{method} {path} returned an unreadable body") from e
        except aiohttp.ClientError as e:
            raise IndexServiceError(f"{method} {path} failed: {e}") from e

        if not isinstance(payload, dict):
            raise IndexServiceError(
                f"{method} {path} returned unexpected payload: "
                f"{json.dumps(payload, ensure_ascii=False)[:300]}"
            )
        return payload

    async def upload_file(self, filename: str, content: bytes, purpose: str = "assistants") -> dict:
        form = aiohttp.FormData()
        form.add_field("purpose", purpose)
        form.add_field("file", content, filename=filename, content_type="application/json")
        return await self._request("POST", "/files", data=form)

    async def delete_file(self, file_id: str) -> dict:
        return await self._request("DELETE", f"/files/{file_id}")

    async def create_vector_store(self, name: str) -> dict:
        return await self._request("POST", "/vector_stores", json_body={"name": name})

    async def delete_vector_store(self, vector_store_id: str) -> dict:
        return await self._request("DELETE", f"/vector_stores/{vector_store_id}")

    async def create_file_batch(self, vector_store_id: str, file_ids: list[str]) -> dict:
        return await self._request(
            "POST",
            f"/vector_stores/{vector_store_id}/file_batches",
            json_body={"file_ids": list(file_ids)},
        )

    async def create_assistant(
        self,
        *,
        instructions: str,
        model: str,
        name: str,
        tools: list[dict],
        tool_resources: dict,
    ) -> dict:
        body = {
            "instructions": instructions,
            "model": model,
            "name": name,
            "tools": tools,
            "tool_resources": tool_resources,
        }
        return await self._request("POST", "/assistants", json_body=body)

    async def delete_assistant(self, assistant_id: str) -> dict:
        return await self._request("DELETE", f"/assistants/{assistant_id}")

    async def create_thread(self, messages: list[dict], tool_resources: dict) -> dict:
        body = {"messages": messages, "tool_resources": tool_resources}
        return await self._request("POST", "/threads", json_body=body)
