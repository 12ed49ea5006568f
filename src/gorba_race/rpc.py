from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx


class RpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def close(self) -> None:
        await self.client.aclose()

    async def _post(self, method: str, params: List[Any]) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        resp = await self.client.post(self.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            raise RuntimeError(f"RPC error: {data['error']}")
        return data

    async def get_parsed_transaction(
        self, signature: str, commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        """Returns the jsonParsed transaction, or None if the cluster doesn't know it."""
        data = await self._post(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        return data.get("result")

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        data = await self._post("getLatestBlockhash", [{"commitment": commitment}])
        result = data.get("result") or {}
        value = result.get("value") or {}
        if "blockhash" not in value:
            raise RuntimeError("getLatestBlockhash returned no blockhash.")
        return value["blockhash"]

    async def send_transaction(self, tx_base64: str) -> str:
        """Submits a signed, serialized transaction. Returns its signature."""
        data = await self._post(
            "sendTransaction",
            [
                tx_base64,
                {"encoding": "base64", "preflightCommitment": "confirmed"},
            ],
        )
        return data["result"]

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        data = await self._post(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        values = (data.get("result") or {}).get("value") or [None]
        return values[0]

    async def confirm_transaction(
        self,
        signature: str,
        timeout_s: float = 60.0,
        poll_interval_s: float = 1.0,
    ) -> None:
        """
        Polls until the signature reaches confirmed/finalized commitment.
        Raises RuntimeError on an on-chain error or when timeout_s elapses.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            status = await self.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    raise RuntimeError(
                        f"Transaction {signature} failed: {status['err']}"
                    )
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if loop.time() >= deadline:
                raise RuntimeError(
                    f"Transaction {signature} not confirmed after {timeout_s:.0f}s"
                )
            await asyncio.sleep(poll_interval_s)
