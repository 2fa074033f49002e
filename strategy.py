# strategy.py
import logging
from decimal import Decimal
from typing import Any, Optional, Protocol

from analysis.models import (
    AddLiquidityResult,
    BuyResult,
    CycleState,
    Phase,
    RemoveLiquidityResult,
    SellResult,
)
from analysis.rational import format_rational
from analysis.triggers import (
    buy_trigger_met,
    sell_trigger_met,
    supply_below_buy_trigger,
    target_buy_price,
)
from config import AppConfig
from constants import C_BLUE, C_GREEN, C_RESET, C_YELLOW, SUPPLY_DISPLAY_PLACES
from polling import ShutdownRequested, ShutdownSignal, poll_until
from storage import SQLiteJournal

logger = logging.getLogger(__name__)


class SupplySource(Protocol):
    async def get_negative_supply(self) -> Decimal: ...


class PriceSource(Protocol):
    async def get_new_price(self) -> Decimal: ...


class TradeGateway(Protocol):
    async def add_liquidity(self, wallet: Any, tracker: Any, token_quantity: Decimal, slippage_percent: Decimal) -> AddLiquidityResult: ...

    async def remove_liquidity(self, wallet: Any, tracker: Any, pair_quantity: Decimal, slippage_percent: Decimal) -> RemoveLiquidityResult: ...

    async def sell_exact_tokens(self, wallet: Any, tracker: Any, token_quantity: Decimal, slippage_percent: Decimal) -> SellResult: ...

    async def buy_tokens_with_exact(self, wallet: Any, tracker: Any, comparator_quantity: Decimal, slippage_percent: Decimal) -> BuyResult: ...


PHASE_BANNERS = {
    Phase.ADD_LIQUIDITY: "Step 1: Add liquidity to keep tokens in neutral charge...",
    Phase.AWAIT_SELL_TRIGGER: "Step 2: Wait for negative supply to hit trigger...",
    Phase.REMOVE_LIQUIDITY: "Step 3: Remove liquidity...",
    Phase.SELL: "Step 4: Sell tokens for the comparator asset...",
    Phase.AWAIT_BUY_TRIGGER: "Step 5: Wait for negative supply to decrease and price to fall according to trigger settings...",
    Phase.BUY_BACK: "Step 6: Buy back tokens...",
}


class LiquidityCycleStrategy:
    """
    Runs the six-phase cycle forever (or once with ``run_once``).

    Gateway failures are never caught here: they end the run and the process.
    Only a shutdown request ends ``run()`` quietly.
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: TradeGateway,
        tracker: PriceSource,
        wallet: Any,
        supply_oracle: SupplySource,
        shutdown: Optional[ShutdownSignal] = None,
        journal: Optional[SQLiteJournal] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.tracker = tracker
        self.wallet = wallet
        self.supply_oracle = supply_oracle
        self.shutdown = shutdown or ShutdownSignal()
        self.journal = journal
        self.token_quantity_to_use: Optional[Decimal] = None
        self.cycles_completed = 0
        self._cycle_id: Optional[int] = None

    async def run(self) -> int:
        """Runs cycles until stopped. Returns the number of completed cycles."""
        if self.config.buys_quantity_with_comparator:
            print(
                f"{C_YELLOW}Seeding with a buy of {self.config.comparator_quantity_to_use} comparator "
                f"on the first cycle; later cycles reuse the tokens it yields.{C_RESET}"
            )
        print("Ready. Running bot...")
        try:
            while True:
                await self.run_cycle(self.cycles_completed + 1)
                self.cycles_completed += 1
                if self.config.run_once:
                    break
        except ShutdownRequested as exc:
            print(f"{C_YELLOW}Stopping: {exc}. Completed cycles: {self.cycles_completed}{C_RESET}")
        return self.cycles_completed

    async def run_cycle(self, cycle_number: int) -> CycleState:
        state = CycleState(cycle_number=cycle_number)
        print("\n" + "=" * 50)
        print(f"Cycle {cycle_number}")
        self._cycle_id = None
        if self.journal:
            self._cycle_id = await self.journal.record_cycle_start(cycle_number, state.phase.value)

        await self._add_liquidity(state)
        await self._await_sell_trigger(state)
        await self._remove_liquidity(state)
        await self._sell(state)
        await self._await_buy_trigger(state)
        await self._buy_back(state)

        if self.journal and self._cycle_id is not None:
            await self.journal.record_cycle_finish(self._cycle_id, state.phase.value)
        print(f"{C_GREEN}Cycle {cycle_number} complete.{C_RESET}")
        return state

    def _enter(self, state: CycleState, phase: Phase) -> None:
        self.shutdown.raise_if_requested()
        state.advance(phase)
        print(f"{C_BLUE}{PHASE_BANNERS[phase]}{C_RESET}")

    async def _journal(self, state: CycleState, phase: str, result: Any) -> None:
        state.results.append(result)
        if self.journal and self._cycle_id is not None:
            await self.journal.record_phase_result(self._cycle_id, phase, result)

    async def _resolve_token_quantity(self, state: CycleState) -> Decimal:
        if self.token_quantity_to_use is not None:
            return self.token_quantity_to_use
        if self.config.comparator_quantity_to_use is not None:
            seed = await self.gateway.buy_tokens_with_exact(
                self.wallet,
                self.tracker,
                self.config.comparator_quantity_to_use,
                self.config.slippage_percent,
            )
            await self._journal(state, "SEED_BUY", seed)
            quantity = seed.token_quantity_received
        else:
            quantity = self.config.token_quantity_to_use
        if not quantity or quantity <= 0:
            raise RuntimeError("Must specify either 'token-quantity-to-use' or 'comparator-quantity-to-use' in the config")
        self.token_quantity_to_use = quantity
        return quantity

    async def _add_liquidity(self, state: CycleState) -> None:
        self._enter(state, Phase.ADD_LIQUIDITY)
        state.token_quantity_to_use = await self._resolve_token_quantity(state)
        # The gateway may reduce the deposit to what the comparator balance can pair.
        result = await self.gateway.add_liquidity(
            self.wallet,
            self.tracker,
            state.token_quantity_to_use,
            self.config.slippage_percent,
        )
        state.pair_quantity = result.pair_quantity_received
        await self._journal(state, Phase.ADD_LIQUIDITY.value, result)

    async def _await_sell_trigger(self, state: CycleState) -> None:
        self._enter(state, Phase.AWAIT_SELL_TRIGGER)
        threshold = self.config.negative_supply_sell_trigger

        async def sell_condition() -> bool:
            supply = await self.supply_oracle.get_negative_supply()
            print(f"    Negative Supply: {format_rational(supply, SUPPLY_DISPLAY_PLACES)}")
            return sell_trigger_met(supply, threshold)

        polls = await poll_until(sell_condition, self.config.ping_interval_seconds, self.shutdown)
        logger.info("Sell trigger met after %d polls", polls)

    async def _remove_liquidity(self, state: CycleState) -> None:
        self._enter(state, Phase.REMOVE_LIQUIDITY)
        result = await self.gateway.remove_liquidity(
            self.wallet,
            self.tracker,
            state.pair_quantity,
            self.config.slippage_percent,
        )
        state.token_quantity = result.token_quantity_received
        await self._journal(state, Phase.REMOVE_LIQUIDITY.value, result)

    async def _sell(self, state: CycleState) -> None:
        self._enter(state, Phase.SELL)
        result = await self.gateway.sell_exact_tokens(
            self.wallet,
            self.tracker,
            state.token_quantity,
            self.config.slippage_percent,
        )
        state.comparator_quantity = result.comparator_quantity_received
        state.execution_price = result.average_price
        await self._journal(state, Phase.SELL.value, result)

    async def _await_buy_trigger(self, state: CycleState) -> None:
        self._enter(state, Phase.AWAIT_BUY_TRIGGER)
        threshold = self.config.negative_supply_buy_trigger
        state.target_price = target_buy_price(
            state.execution_price,
            self.config.price_fall_percent_trigger,
            places=self.config.token_decimals,
        )
        print(f"    Sold at {state.execution_price}; buying back below {state.target_price}")

        async def buy_condition() -> bool:
            supply = await self.supply_oracle.get_negative_supply()
            print(f"    Negative Supply: {format_rational(supply, SUPPLY_DISPLAY_PLACES)}")
            if not supply_below_buy_trigger(supply, threshold):
                return False
            # Price is only sampled once supply has recovered.
            price = await self.tracker.get_new_price()
            print(f"    Price: {price}")
            return buy_trigger_met(supply, threshold, price, state.target_price)

        polls = await poll_until(buy_condition, self.config.ping_interval_seconds, self.shutdown)
        logger.info("Buy trigger met after %d polls", polls)

    async def _buy_back(self, state: CycleState) -> None:
        self._enter(state, Phase.BUY_BACK)
        result = await self.gateway.buy_tokens_with_exact(
            self.wallet,
            self.tracker,
            state.comparator_quantity,
            self.config.slippage_percent,
        )
        await self._journal(state, Phase.BUY_BACK.value, result)
