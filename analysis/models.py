#!/usr/bin/env python3
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional


class Phase(str, Enum):
    """The six strategy phases, in the order a cycle runs them."""
    ADD_LIQUIDITY = "ADD_LIQUIDITY"
    AWAIT_SELL_TRIGGER = "AWAIT_SELL_TRIGGER"
    REMOVE_LIQUIDITY = "REMOVE_LIQUIDITY"
    SELL = "SELL"
    AWAIT_BUY_TRIGGER = "AWAIT_BUY_TRIGGER"
    BUY_BACK = "BUY_BACK"


@dataclass(frozen=True)
class AddLiquidityResult:
    """Outcome of depositing token + comparator into the pair."""
    pair_quantity_received: Decimal
    token_quantity_deposited: Decimal
    comparator_quantity_deposited: Decimal
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class RemoveLiquidityResult:
    """Outcome of burning pool shares."""
    token_quantity_received: Decimal
    comparator_quantity_received: Decimal
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class SellResult:
    """Outcome of selling an exact token quantity for the comparator asset."""
    comparator_quantity_received: Decimal
    average_price: Decimal  # comparator per token
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class BuyResult:
    """Outcome of spending an exact comparator quantity on tokens."""
    token_quantity_received: Decimal
    average_price: Decimal
    tx_hash: Optional[str] = None


@dataclass
class CycleState:
    """Quantities carried between the phases of one cycle."""
    cycle_number: int
    phase: Phase = Phase.ADD_LIQUIDITY
    token_quantity_to_use: Optional[Decimal] = None
    pair_quantity: Optional[Decimal] = None
    token_quantity: Optional[Decimal] = None
    comparator_quantity: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    results: list = field(default_factory=list)

    def advance(self, phase: Phase) -> None:
        self.phase = phase
