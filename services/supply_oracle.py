#!/usr/bin/env python3
from decimal import Decimal

from analysis.rational import make_rational
from services.json_rpc_client import JsonRpcClient

NEGATIVE_SUPPLY_SIGNATURE = "negativeSupply()"


class NegativeSupplyOracle:
    """Reads the monitored token's negative supply. Every read hits the network."""

    def __init__(self, rpc_client: JsonRpcClient, token_address: str, token_decimals: int) -> None:
        self._rpc_client = rpc_client
        self._token_address = token_address
        self._token_decimals = token_decimals

    async def get_negative_supply(self) -> Decimal:
        (raw_supply,) = await self._rpc_client.call(
            self._token_address,
            NEGATIVE_SUPPLY_SIGNATURE,
            (),
            output_types=("uint256",),
        )
        return make_rational(raw_supply, self._token_decimals)
