from __future__ import annotations

from typing import Any, Dict, List, Protocol

import httpx

from .project_constants import RACE_RESULTS_TABLE


class ResultStore(Protocol):
    async def insert_race_result(self, record: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class SupabaseResultStore:
    """Insert-only writer for the race_results table over PostgREST."""

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout_s: float = 10.0,
        table: str = RACE_RESULTS_TABLE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            transport=transport,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Prefer": "return=minimal",
            },
        )

    async def insert_race_result(self, record: Dict[str, Any]) -> None:
        resp = await self.client.post(self.endpoint, json=record)
        if resp.status_code >= 400:
            raise RuntimeError(
                f"Insert into race_results failed ({resp.status_code}): {resp.text}"
            )

    async def close(self) -> None:
        await self.client.aclose()


class MemoryResultStore:
    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    async def insert_race_result(self, record: Dict[str, Any]) -> None:
        self.records.append(record)

    async def close(self) -> None:
        pass
