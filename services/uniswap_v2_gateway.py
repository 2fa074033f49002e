"""Uniswap V2 swap and liquidity execution for a single token/comparator pair."""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract

import constants
from analysis.models import AddLiquidityResult, BuyResult, RemoveLiquidityResult, SellResult
from analysis.rational import divide, make_rational, multiply, to_rational, to_raw_units
from services.json_rpc_client import JsonRpcClient
from services.rate_limiter import RateLimitedHTTPProvider, RequestThrottle

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1
GET_RESERVES_SIGNATURE = "getReserves()"
GET_RESERVES_OUTPUT = ("uint112", "uint112", "uint32")


class TransactionFailedError(RuntimeError):
    """A transaction reverted, or the wallet cannot fund the requested operation."""


def create_wallet(private_key: str) -> LocalAccount:
    return Account.from_key(private_key)


def min_amount_after_slippage(raw_amount: int, slippage_percent: Decimal) -> int:
    slippage = to_rational(slippage_percent)
    if slippage < 0 or slippage >= 100:
        raise ValueError(f"slippage percent must be within [0, 100), got {slippage}")
    return to_raw_units(multiply(raw_amount, 1 - slippage.scaleb(-2)), 0)


def pair_amounts_for_deposit(
    token_raw: int,
    reserve_token: int,
    reserve_comparator: int,
    comparator_balance: int,
) -> tuple[int, int]:
    """
    Comparator amount needed to pair ``token_raw`` at the pool ratio.

    When the wallet cannot cover it, the token amount is reduced so that the
    whole comparator balance is paired instead.
    """
    if reserve_token <= 0 or reserve_comparator <= 0:
        raise TransactionFailedError("pair has no reserves; refusing to seed a price")
    comparator_raw = token_raw * reserve_comparator // reserve_token
    if comparator_raw > comparator_balance:
        comparator_raw = comparator_balance
        token_raw = comparator_raw * reserve_token // reserve_comparator
    return token_raw, comparator_raw


def price_from_reserves(
    reserve_token: int,
    reserve_comparator: int,
    token_decimals: int,
    comparator_decimals: int,
) -> Decimal:
    """Spot price in comparator units per token."""
    if reserve_token <= 0:
        raise ValueError("token reserve is empty")
    return divide(
        make_rational(reserve_comparator, comparator_decimals),
        make_rational(reserve_token, token_decimals),
    )


def receipt_poll_interval(throttle: RequestThrottle) -> float:
    """Receipt polling never outpaces the endpoint ceiling."""
    return max(constants.TX_RECEIPT_POLL_SECONDS, throttle.min_interval)


def order_reserves(reserve0: int, reserve1: int, token_is_token0: bool) -> tuple[int, int]:
    """(token reserve, comparator reserve) from the pair's token0/token1 reserves."""
    if token_is_token0:
        return int(reserve0), int(reserve1)
    return int(reserve1), int(reserve0)


class PairTracker:
    """Live handle on one token/comparator pair. Price reads share the rate-limited RPC client."""

    def __init__(
        self,
        rpc_client: JsonRpcClient,
        *,
        pair_address: str,
        token_address: str,
        comparator_address: str,
        token_decimals: int,
        comparator_decimals: int,
        token_is_token0: bool,
    ) -> None:
        self._rpc_client = rpc_client
        self.pair_address = pair_address
        self.token_address = token_address
        self.comparator_address = comparator_address
        self.token_decimals = token_decimals
        self.comparator_decimals = comparator_decimals
        self.token_is_token0 = token_is_token0

    async def get_reserves(self) -> tuple[int, int]:
        reserve0, reserve1, _ = await self._rpc_client.call(
            self.pair_address,
            GET_RESERVES_SIGNATURE,
            (),
            output_types=GET_RESERVES_OUTPUT,
        )
        return order_reserves(reserve0, reserve1, self.token_is_token0)

    async def get_new_price(self) -> Decimal:
        reserve_token, reserve_comparator = await self.get_reserves()
        return price_from_reserves(
            reserve_token,
            reserve_comparator,
            self.token_decimals,
            self.comparator_decimals,
        )


class UniswapV2Gateway:
    """Signs and submits router transactions. One transaction is in flight at a time."""

    def __init__(
        self,
        web3: Web3,
        *,
        router_address: str,
        factory_address: str,
        chain_id: int,
        deadline_seconds: int = constants.DEFAULT_SWAP_DEADLINE_SECONDS,
        priority_fee_gwei: float = constants.PRIORITY_FEE_GWEI,
        receipt_timeout: int = constants.TX_RECEIPT_TIMEOUT_SECONDS,
        receipt_poll_seconds: float = constants.TX_RECEIPT_POLL_SECONDS,
    ) -> None:
        self.web3 = web3
        self.router_address = web3.to_checksum_address(router_address)
        self.router: Contract = web3.eth.contract(address=self.router_address, abi=constants.UNISWAP_V2_ROUTER_ABI)
        self.factory: Contract = web3.eth.contract(
            address=web3.to_checksum_address(factory_address),
            abi=constants.UNISWAP_V2_FACTORY_ABI,
        )
        self.chain_id = chain_id
        self.deadline_seconds = deadline_seconds
        self.priority_fee_gwei = priority_fee_gwei
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_seconds = receipt_poll_seconds

    @classmethod
    def from_rpc_url(
        cls,
        rpc_url: str,
        *,
        timeout: float,
        throttle: RequestThrottle,
        **kwargs: Any,
    ) -> "UniswapV2Gateway":
        """Gateway whose web3 traffic shares ``throttle`` with the read-only client."""
        web3 = Web3(RateLimitedHTTPProvider(rpc_url, throttle, request_kwargs={"timeout": timeout}))
        if not web3.is_connected():
            raise RuntimeError(f"Could not connect to RPC URL: {rpc_url}")
        kwargs.setdefault("receipt_poll_seconds", receipt_poll_interval(throttle))
        return cls(web3, **kwargs)

    # --- Tracker ---

    async def create_tracker(
        self,
        rpc_client: JsonRpcClient,
        token_address: str,
        comparator_address: str,
    ) -> PairTracker:
        return await asyncio.to_thread(self._create_tracker_sync, rpc_client, token_address, comparator_address)

    def _create_tracker_sync(
        self,
        rpc_client: JsonRpcClient,
        token_address: str,
        comparator_address: str,
    ) -> PairTracker:
        token = self.web3.to_checksum_address(token_address)
        comparator = self.web3.to_checksum_address(comparator_address)
        pair_address = self.factory.functions.getPair(token, comparator).call()
        if int(pair_address, 16) == 0:
            raise ValueError(f"No Uniswap V2 pair for {token}/{comparator}")
        token0 = self._pair(pair_address).functions.token0().call()
        tracker = PairTracker(
            rpc_client,
            pair_address=pair_address,
            token_address=token,
            comparator_address=comparator,
            token_decimals=self._decimals(token),
            comparator_decimals=self._decimals(comparator),
            token_is_token0=token0.lower() == token.lower(),
        )
        logger.info("Tracking pair %s (%s/%s)", pair_address, token, comparator)
        return tracker

    # --- Liquidity ---

    async def add_liquidity(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        token_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> AddLiquidityResult:
        return await asyncio.to_thread(self._add_liquidity_sync, wallet, tracker, token_quantity, slippage_percent)

    def _add_liquidity_sync(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        token_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> AddLiquidityResult:
        token_contract = self._erc20(tracker.token_address)
        comparator_contract = self._erc20(tracker.comparator_address)
        pair_contract = self._pair(tracker.pair_address)
        token_raw = to_raw_units(token_quantity, tracker.token_decimals)
        if token_raw <= 0:
            raise ValueError(f"token quantity {token_quantity} rounds to zero")

        token_before = self._balance_of(token_contract, wallet.address)
        if token_before < token_raw:
            raise TransactionFailedError(f"insufficient_token_balance have_raw={token_before} want_raw={token_raw}")
        comparator_before = self._balance_of(comparator_contract, wallet.address)
        reserve_token, reserve_comparator = self._reserves(tracker)
        token_raw, comparator_raw = pair_amounts_for_deposit(
            token_raw, reserve_token, reserve_comparator, comparator_before
        )
        if token_raw <= 0 or comparator_raw <= 0:
            raise TransactionFailedError(f"insufficient_comparator_balance have_raw={comparator_before}")

        self._ensure_allowance(wallet, token_contract, token_raw)
        self._ensure_allowance(wallet, comparator_contract, comparator_raw)
        pair_before = self._balance_of(pair_contract, wallet.address)

        tx = self.router.functions.addLiquidity(
            tracker.token_address,
            tracker.comparator_address,
            token_raw,
            comparator_raw,
            min_amount_after_slippage(token_raw, slippage_percent),
            min_amount_after_slippage(comparator_raw, slippage_percent),
            wallet.address,
            self._deadline(),
        ).build_transaction(self._tx_params(wallet))
        tx_hash = self._send_and_wait(wallet, tx)

        pair_received = self._balance_of(pair_contract, wallet.address) - pair_before
        token_spent = token_before - self._balance_of(token_contract, wallet.address)
        comparator_spent = comparator_before - self._balance_of(comparator_contract, wallet.address)
        result = AddLiquidityResult(
            pair_quantity_received=make_rational(pair_received, constants.UNISWAP_V2_PAIR_DECIMALS),
            token_quantity_deposited=make_rational(token_spent, tracker.token_decimals),
            comparator_quantity_deposited=make_rational(comparator_spent, tracker.comparator_decimals),
            tx_hash=tx_hash,
        )
        logger.info("addLiquidity %s: %s", tx_hash, result)
        return result

    async def remove_liquidity(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        pair_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> RemoveLiquidityResult:
        return await asyncio.to_thread(self._remove_liquidity_sync, wallet, tracker, pair_quantity, slippage_percent)

    def _remove_liquidity_sync(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        pair_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> RemoveLiquidityResult:
        liquidity_raw = to_raw_units(pair_quantity, constants.UNISWAP_V2_PAIR_DECIMALS)
        if liquidity_raw <= 0:
            raise ValueError(f"pair quantity {pair_quantity} rounds to zero")
        pair_contract = self._pair(tracker.pair_address)
        pair_balance = self._balance_of(pair_contract, wallet.address)
        if pair_balance < liquidity_raw:
            raise TransactionFailedError(f"insufficient_pair_balance have_raw={pair_balance} want_raw={liquidity_raw}")

        total_supply = int(pair_contract.functions.totalSupply().call())
        reserve_token, reserve_comparator = self._reserves(tracker)
        expected_token = liquidity_raw * reserve_token // total_supply
        expected_comparator = liquidity_raw * reserve_comparator // total_supply

        token_contract = self._erc20(tracker.token_address)
        comparator_contract = self._erc20(tracker.comparator_address)
        self._ensure_allowance(wallet, pair_contract, liquidity_raw)
        token_before = self._balance_of(token_contract, wallet.address)
        comparator_before = self._balance_of(comparator_contract, wallet.address)

        tx = self.router.functions.removeLiquidity(
            tracker.token_address,
            tracker.comparator_address,
            liquidity_raw,
            min_amount_after_slippage(expected_token, slippage_percent),
            min_amount_after_slippage(expected_comparator, slippage_percent),
            wallet.address,
            self._deadline(),
        ).build_transaction(self._tx_params(wallet))
        tx_hash = self._send_and_wait(wallet, tx)

        token_received = self._balance_of(token_contract, wallet.address) - token_before
        comparator_received = self._balance_of(comparator_contract, wallet.address) - comparator_before
        result = RemoveLiquidityResult(
            token_quantity_received=make_rational(token_received, tracker.token_decimals),
            comparator_quantity_received=make_rational(comparator_received, tracker.comparator_decimals),
            tx_hash=tx_hash,
        )
        logger.info("removeLiquidity %s: %s", tx_hash, result)
        return result

    # --- Swaps ---

    async def sell_exact_tokens(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        token_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> SellResult:
        return await asyncio.to_thread(self._sell_exact_tokens_sync, wallet, tracker, token_quantity, slippage_percent)

    def _sell_exact_tokens_sync(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        token_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> SellResult:
        token_spent, comparator_received, tx_hash = self._swap_exact_in(
            wallet,
            tracker.token_address,
            tracker.comparator_address,
            to_raw_units(token_quantity, tracker.token_decimals),
            slippage_percent,
        )
        comparator_quantity = make_rational(comparator_received, tracker.comparator_decimals)
        result = SellResult(
            comparator_quantity_received=comparator_quantity,
            average_price=divide(comparator_quantity, make_rational(token_spent, tracker.token_decimals)),
            tx_hash=tx_hash,
        )
        logger.info("sellExactTokens %s: %s", tx_hash, result)
        return result

    async def buy_tokens_with_exact(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        comparator_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> BuyResult:
        return await asyncio.to_thread(
            self._buy_tokens_with_exact_sync, wallet, tracker, comparator_quantity, slippage_percent
        )

    def _buy_tokens_with_exact_sync(
        self,
        wallet: LocalAccount,
        tracker: PairTracker,
        comparator_quantity: Decimal,
        slippage_percent: Decimal,
    ) -> BuyResult:
        comparator_spent, token_received, tx_hash = self._swap_exact_in(
            wallet,
            tracker.comparator_address,
            tracker.token_address,
            to_raw_units(comparator_quantity, tracker.comparator_decimals),
            slippage_percent,
        )
        if token_received <= 0:
            raise TransactionFailedError(f"tx {tx_hash} returned no tokens")
        token_quantity = make_rational(token_received, tracker.token_decimals)
        result = BuyResult(
            token_quantity_received=token_quantity,
            average_price=divide(make_rational(comparator_spent, tracker.comparator_decimals), token_quantity),
            tx_hash=tx_hash,
        )
        logger.info("buyTokensWithExact %s: %s", tx_hash, result)
        return result

    def _swap_exact_in(
        self,
        wallet: LocalAccount,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_percent: Decimal,
    ) -> tuple[int, int, str]:
        """Swap exactly ``amount_in`` along [token_in, token_out]; returns (spent, received, tx hash)."""
        if amount_in <= 0:
            raise ValueError("amount_in is zero")
        in_contract = self._erc20(token_in)
        out_contract = self._erc20(token_out)
        in_before = self._balance_of(in_contract, wallet.address)
        if in_before < amount_in:
            raise TransactionFailedError(f"insufficient_balance token={token_in} have_raw={in_before} want_raw={amount_in}")
        self._ensure_allowance(wallet, in_contract, amount_in)

        path = [token_in, token_out]
        quoted_out = int(self.router.functions.getAmountsOut(amount_in, path).call()[-1])
        out_before = self._balance_of(out_contract, wallet.address)
        tx = self.router.functions.swapExactTokensForTokensSupportingFeeOnTransferTokens(
            amount_in,
            min_amount_after_slippage(quoted_out, slippage_percent),
            path,
            wallet.address,
            self._deadline(),
        ).build_transaction(self._tx_params(wallet))
        tx_hash = self._send_and_wait(wallet, tx)

        spent = in_before - self._balance_of(in_contract, wallet.address)
        received = self._balance_of(out_contract, wallet.address) - out_before
        if spent <= 0:
            raise TransactionFailedError(f"tx {tx_hash} spent nothing")
        return spent, received, tx_hash

    # --- Plumbing ---

    def _erc20(self, address: str) -> Contract:
        return self.web3.eth.contract(address=self.web3.to_checksum_address(address), abi=constants.ERC20_ABI)

    def _pair(self, address: str) -> Contract:
        return self.web3.eth.contract(address=self.web3.to_checksum_address(address), abi=constants.UNISWAP_V2_PAIR_ABI)

    def _reserves(self, tracker: PairTracker) -> tuple[int, int]:
        reserve0, reserve1, _ = self._pair(tracker.pair_address).functions.getReserves().call()
        return order_reserves(reserve0, reserve1, tracker.token_is_token0)

    def _decimals(self, address: str) -> int:
        return int(self._erc20(address).functions.decimals().call())

    @staticmethod
    def _balance_of(contract: Contract, owner: str) -> int:
        return int(contract.functions.balanceOf(owner).call())

    def _ensure_allowance(self, wallet: LocalAccount, token_contract: Contract, required_amount: int) -> None:
        allowance = int(token_contract.functions.allowance(wallet.address, self.router_address).call())
        if allowance >= required_amount:
            return
        approve_tx = token_contract.functions.approve(self.router_address, MAX_UINT256).build_transaction(
            self._tx_params(wallet)
        )
        self._send_and_wait(wallet, approve_tx)

    def _deadline(self) -> int:
        return int(time.time()) + int(self.deadline_seconds)

    def _tx_params(self, wallet: LocalAccount) -> dict[str, Any]:
        latest = self.web3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.web3.to_wei(self.priority_fee_gwei, "gwei"))
        return {
            "from": wallet.address,
            "chainId": int(self.chain_id),
            "nonce": self.web3.eth.get_transaction_count(wallet.address, "pending"),
            "maxFeePerGas": (base_fee * 2) + priority,
            "maxPriorityFeePerGas": priority,
            "type": 2,
        }

    def _send_and_wait(self, wallet: LocalAccount, tx: dict[str, Any]) -> str:
        gas = int(tx.get("gas") or self.web3.eth.estimate_gas(tx))
        tx["gas"] = int(gas * constants.GAS_LIMIT_BUFFER)
        signed = wallet.sign_transaction(tx)
        raw_tx: Optional[bytes] = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        receipt = self.web3.eth.wait_for_transaction_receipt(
            tx_hash,
            timeout=self.receipt_timeout,
            poll_latency=self.receipt_poll_seconds,
        )
        if int(receipt.status) != 1:
            raise TransactionFailedError(f"tx_failed hash={Web3.to_hex(tx_hash)}")
        return Web3.to_hex(tx_hash)
