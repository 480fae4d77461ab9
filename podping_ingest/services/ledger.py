from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from podping_ingest.core.errors import TransportError

logger = logging.getLogger(__name__)

PODPING_OPERATION_IDS = {
    "pp_podcast_update",
    "pp_podcast_live",
    "pp_podcast_liveEnd",
    "podping",
    "pp_video_update",
    "pp_video_live",
    "pp_video_liveEnd",
}


@dataclass(slots=True)
class LedgerEvent:
    block_number: int
    operation_id: str
    payload: str
    transaction_id: str | None = None
    op_index: int = 0


@dataclass(slots=True)
class LedgerBatch:
    events: list[LedgerEvent]
    last_scanned_block: int | None
    block_count: int


class HiveLedgerClient:
    """Hive JSON-RPC reader with ordered node failover."""

    def __init__(
        self,
        nodes: list[str],
        *,
        timeout_seconds: float = 3.0,
        user_agent: str = "podping-ingest/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not nodes:
            raise ValueError("at least one Hive RPC node is required")
        self.nodes = [node.rstrip("/") for node in nodes]
        self.timeout_seconds = timeout_seconds
        self.headers = {"Content-Type": "application/json", "User-Agent": user_agent}
        self._client = client

    async def get_head_block(self) -> int:
        request = {
            "jsonrpc": "2.0",
            "method": "condenser_api.get_dynamic_global_properties",
            "params": [],
            "id": 1,
        }
        result = await self._post_with_failover(request, parse=_single_result)
        try:
            return int(result["head_block_number"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError("head block missing from dynamic global properties") from exc

    async def list_events(self, from_block: int, to_block: int) -> LedgerBatch:
        """Scan blocks ``from_block..to_block`` inclusive for podping operations.

        Scanning stops at the first block the node could not return, so the
        caller never advances past a gap.
        """
        if to_block < from_block:
            return LedgerBatch(events=[], last_scanned_block=None, block_count=0)

        block_numbers = list(range(from_block, to_block + 1))
        request = [
            {"jsonrpc": "2.0", "method": "condenser_api.get_block", "params": [block_number], "id": index}
            for index, block_number in enumerate(block_numbers)
        ]
        results = await self._post_with_failover(request, parse=_batch_results)

        events: list[LedgerEvent] = []
        last_scanned_block: int | None = None
        for index, block_number in enumerate(block_numbers):
            block = results.get(index)
            if not isinstance(block, dict):
                logger.info("ledger block %s not yet available; stopping scan", block_number)
                break
            events.extend(extract_podping_operations(block, block_number=block_number))
            last_scanned_block = block_number

        block_count = 0 if last_scanned_block is None else last_scanned_block - from_block + 1
        return LedgerBatch(events=events, last_scanned_block=last_scanned_block, block_count=block_count)

    async def _post_with_failover(self, request: Any, *, parse) -> Any:
        errors: list[str] = []
        for node in self.nodes:
            try:
                if self._client is not None:
                    return parse(await self._post(self._client, node, request))
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    return parse(await self._post(client, node, request))
            except (httpx.HTTPError, ValueError) as exc:
                errors.append(f"{node}: {exc}")
                logger.debug("hive rpc node failed node=%s error=%s", node, exc)
        raise TransportError("all Hive RPC nodes failed: " + "; ".join(errors))

    async def _post(self, client: httpx.AsyncClient, node: str, request: Any) -> Any:
        response = await client.post(node, json=request, headers=self.headers, timeout=self.timeout_seconds)
        response.raise_for_status()
        return response.json()


def extract_podping_operations(block: dict[str, Any], *, block_number: int) -> list[LedgerEvent]:
    events: list[LedgerEvent] = []
    transactions = block.get("transactions")
    if not isinstance(transactions, list):
        return events

    transaction_ids = block.get("transaction_ids")
    for index, tx in enumerate(transactions):
        if not isinstance(tx, dict):
            continue
        tx_id = tx.get("transaction_id")
        if tx_id is None and isinstance(transaction_ids, list) and index < len(transaction_ids):
            tx_id = transaction_ids[index]
        for operation in tx.get("operations") or []:
            op_type, op_data = _split_operation(operation)
            if op_type not in {"custom_json", "custom_json_operation"} or not isinstance(op_data, dict):
                continue
            operation_id = op_data.get("id")
            if operation_id not in PODPING_OPERATION_IDS:
                continue
            payload = op_data.get("json")
            events.append(
                LedgerEvent(
                    block_number=block_number,
                    operation_id=operation_id,
                    payload=payload if isinstance(payload, str) else "",
                    transaction_id=str(tx_id) if tx_id is not None else None,
                    op_index=len(events),
                )
            )
    return events


def _split_operation(operation: Any) -> tuple[str | None, Any]:
    # condenser_api returns [type, data]; block_api returns {"type": ..., "value": ...}
    if isinstance(operation, list) and len(operation) == 2:
        return operation[0], operation[1]
    if isinstance(operation, dict):
        return operation.get("type"), operation.get("value")
    return None, None


def _single_result(body: Any) -> Any:
    if not isinstance(body, dict):
        raise ValueError("malformed rpc response")
    if body.get("error"):
        raise ValueError(f"rpc error: {_error_message(body['error'])}")
    if "result" not in body or body["result"] is None:
        raise ValueError("no result in rpc response")
    return body["result"]


def _batch_results(body: Any) -> dict[int, Any]:
    """Map batch response items by request id; nodes may reorder or drop items."""
    if not isinstance(body, list):
        raise ValueError("malformed batch rpc response")
    results: dict[int, Any] = {}
    for item in body:
        if not isinstance(item, dict) or not isinstance(item.get("id"), int):
            continue
        if item.get("error"):
            raise ValueError(f"rpc error: {_error_message(item['error'])}")
        results[item["id"]] = item.get("result")
    return results


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
