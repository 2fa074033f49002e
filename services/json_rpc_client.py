#!/usr/bin/env python3
import asyncio
import logging
from typing import Any, Optional, Sequence, Tuple

from aiohttp import ClientSession, ClientTimeout
from eth_abi import decode, encode
from web3 import Web3

from services.rate_limiter import RequestThrottle

logger = logging.getLogger(__name__)


class JsonRpcError(RuntimeError):
    """The endpoint answered with a JSON-RPC ``error`` member."""

    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.error = error
        message = error.get("message") if isinstance(error, dict) else error
        super().__init__(f"{method} failed: {message}")


def parse_signature(function_signature: str) -> Tuple[str, list[str]]:
    """Split ``name(type1,type2)`` into the name and its argument types."""
    signature = function_signature.strip()
    if signature.startswith("function "):
        signature = signature[len("function "):]
    open_idx = signature.find("(")
    close_idx = signature.find(")", open_idx)
    if open_idx <= 0 or close_idx < 0:
        raise ValueError(f"malformed function signature: {function_signature!r}")
    name = signature[:open_idx].strip()
    arg_blob = signature[open_idx + 1:close_idx].strip()
    arg_types = [part.strip().split(" ")[0] for part in arg_blob.split(",")] if arg_blob else []
    return name, arg_types


def encode_call(function_signature: str, args: Sequence[Any] = ()) -> str:
    name, arg_types = parse_signature(function_signature)
    if len(arg_types) != len(args):
        raise ValueError(f"{name} expects {len(arg_types)} args, got {len(args)}")
    canonical = f"{name}({','.join(arg_types)})"
    selector = Web3.keccak(text=canonical)[:4]
    payload = selector + (encode(arg_types, list(args)) if arg_types else b"")
    return "0x" + payload.hex()


class JsonRpcClient:
    """Rate-limited JSON-RPC transport for read-only contract calls."""

    def __init__(
        self,
        session: ClientSession,
        *,
        rpc_url: str,
        timeout: float,
        rate_limit_per_second: float = 2.0,
        throttle: Optional[RequestThrottle] = None,
    ) -> None:
        self._session = session
        self._rpc_url = rpc_url
        self._timeout = ClientTimeout(total=timeout)
        self._throttle = throttle or RequestThrottle(rate_limit_per_second)
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1

    async def call(
        self,
        contract_address: str,
        function_signature: str,
        args: Sequence[Any] = (),
        output_types: Sequence[str] = ("uint256",),
        block: str = "latest",
    ) -> Tuple[Any, ...]:
        """eth_call ``function_signature`` on ``contract_address`` and ABI-decode the result."""
        data = encode_call(function_signature, args)
        result = await self._eth_call(contract_address, data, block)
        if not result or result == "0x":
            raise ValueError(f"empty result from {function_signature} at {contract_address}")
        return tuple(decode(list(output_types), bytes.fromhex(result[2:])))

    async def _eth_call(self, to: str, data: str, block: str = "latest") -> Optional[str]:
        call_params = {"to": to, "data": data}
        return await self._rpc_call("eth_call", [call_params, block])

    async def _rpc_call(self, method: str, params: list) -> Optional[str]:
        await self._wait_for_rate_limit()
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }
        logger.debug("rpc -> %s id=%s", method, request_id)
        async with self._session.post(self._rpc_url, json=payload, timeout=self._timeout) as response:
            response.raise_for_status()
            data = await response.json()
        if 'error' in data:
            raise JsonRpcError(method, data['error'])
        return data.get('result')

    async def _wait_for_rate_limit(self) -> None:
        await self._throttle.wait_async()

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id
