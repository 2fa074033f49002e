from decimal import Decimal

import pytest

from analysis.models import AddLiquidityResult, BuyResult, Phase, RemoveLiquidityResult, SellResult
from config import AppConfig
from polling import ShutdownSignal
from services.uniswap_v2_gateway import TransactionFailedError
from storage import SQLiteJournal
from strategy import LiquidityCycleStrategy


def _config(**overrides):
    values = dict(
        token_quantity_to_use=Decimal('1000'),
        comparator_quantity_to_use=None,
        ping_interval_ms=1,
        negative_supply_sell_trigger=Decimal('1000'),
        negative_supply_buy_trigger=Decimal('500'),
        price_fall_percent_trigger=Decimal('10'),
        slippage_percent=Decimal('1'),
        private_wallet_key='0x' + '11' * 32,
        json_rpc_endpoint_url='http://mock-rpc',
        journal_db_path=None,
        run_once=True,
    )
    values.update(overrides)
    return AppConfig(**values)


class RecordingGateway:
    """Returns fresh result objects so identity threading can be asserted."""

    def __init__(self, calls, sell_price=Decimal('100')):
        self.calls = calls
        self.inputs = {}
        self.add_result = AddLiquidityResult(
            pair_quantity_received=Decimal('31.622776601683793319'),
            token_quantity_deposited=Decimal('1000'),
            comparator_quantity_deposited=Decimal('1000'),
            tx_hash='0xadd',
        )
        self.remove_result = RemoveLiquidityResult(
            token_quantity_received=Decimal('1050.123456789'),
            comparator_quantity_received=Decimal('950'),
            tx_hash='0xremove',
        )
        self.sell_result = SellResult(
            comparator_quantity_received=Decimal('105012.3456789'),
            average_price=sell_price,
            tx_hash='0xsell',
        )
        self.buy_results = []

    async def add_liquidity(self, wallet, tracker, token_quantity, slippage_percent):
        self.calls.append('add_liquidity')
        self.inputs.setdefault('add_liquidity', []).append(token_quantity)
        return self.add_result

    async def remove_liquidity(self, wallet, tracker, pair_quantity, slippage_percent):
        self.calls.append('remove_liquidity')
        self.inputs.setdefault('remove_liquidity', []).append(pair_quantity)
        return self.remove_result

    async def sell_exact_tokens(self, wallet, tracker, token_quantity, slippage_percent):
        self.calls.append('sell_exact_tokens')
        self.inputs.setdefault('sell_exact_tokens', []).append(token_quantity)
        return self.sell_result

    async def buy_tokens_with_exact(self, wallet, tracker, comparator_quantity, slippage_percent):
        self.calls.append('buy_tokens_with_exact')
        self.inputs.setdefault('buy_tokens_with_exact', []).append(comparator_quantity)
        result = BuyResult(
            token_quantity_received=Decimal('777.000000001'),
            average_price=Decimal('0.3217'),
            tx_hash=f'0xbuy{len(self.buy_results)}',
        )
        self.buy_results.append(result)
        return result


class ScriptedOracle:
    def __init__(self, calls, supplies, on_exhausted=None):
        self.calls = calls
        self._supplies = [Decimal(value) for value in supplies]
        self._on_exhausted = on_exhausted
        self.samples = []

    async def get_negative_supply(self):
        self.calls.append('supply')
        if not self._supplies:
            if self._on_exhausted is None:
                raise AssertionError("oracle polled more often than scripted")
            return self._on_exhausted()
        value = self._supplies.pop(0)
        self.samples.append(value)
        return value


class ScriptedTracker:
    token_decimals = 9

    def __init__(self, calls, prices):
        self.calls = calls
        self._prices = [Decimal(value) for value in prices]

    async def get_new_price(self):
        self.calls.append('price')
        if not self._prices:
            raise AssertionError("price polled more often than scripted")
        return self._prices.pop(0)


def _strategy(config, gateway, oracle, tracker, **kwargs):
    return LiquidityCycleStrategy(config, gateway, tracker, wallet=object(), supply_oracle=oracle, **kwargs)


@pytest.mark.asyncio
async def test_one_cycle_runs_phases_in_order():
    calls = []
    gateway = RecordingGateway(calls)
    oracle = ScriptedOracle(calls, ['900', '1001', '450'])
    tracker = ScriptedTracker(calls, ['80'])

    completed = await _strategy(_config(), gateway, oracle, tracker).run()

    assert completed == 1
    assert calls == [
        'add_liquidity',
        'supply', 'supply',
        'remove_liquidity',
        'sell_exact_tokens',
        'supply', 'price',
        'buy_tokens_with_exact',
    ]


@pytest.mark.asyncio
async def test_quantities_are_threaded_by_identity():
    calls = []
    gateway = RecordingGateway(calls)
    oracle = ScriptedOracle(calls, ['1200', '400'])
    tracker = ScriptedTracker(calls, ['1'])

    await _strategy(_config(), gateway, oracle, tracker).run()

    assert gateway.inputs['add_liquidity'] == [Decimal('1000')]
    assert gateway.inputs['remove_liquidity'][0] is gateway.add_result.pair_quantity_received
    assert gateway.inputs['sell_exact_tokens'][0] is gateway.remove_result.token_quantity_received
    assert gateway.inputs['buy_tokens_with_exact'][0] is gateway.sell_result.comparator_quantity_received


@pytest.mark.asyncio
async def test_buy_back_waits_for_supply_and_price_on_the_same_sample(capsys):
    calls = []
    gateway = RecordingGateway(calls, sell_price=Decimal('100'))
    # 1200 trips the sell trigger at once; 1400 and 600 are above the buy trigger.
    oracle = ScriptedOracle(calls, ['1200', '1400', '600', '400', '400'])
    tracker = ScriptedTracker(calls, ['95', '85'])
    strategy = _strategy(_config(), gateway, oracle, tracker)

    state = await strategy.run_cycle(1)

    assert state.target_price == Decimal('90')
    assert state.phase is Phase.BUY_BACK
    assert calls == [
        'add_liquidity',
        'supply',
        'remove_liquidity',
        'sell_exact_tokens',
        'supply',
        'supply',
        'supply', 'price',
        'supply', 'price',
        'buy_tokens_with_exact',
    ]
    output = capsys.readouterr().out
    assert "Negative Supply: 1200.00" in output
    assert "Step 6: Buy back tokens..." in output


@pytest.mark.asyncio
async def test_price_is_never_read_while_supply_stays_high():
    calls = []
    shutdown = ShutdownSignal()

    def stop():
        shutdown.request("test done")
        return Decimal('600')

    gateway = RecordingGateway(calls)
    oracle = ScriptedOracle(calls, ['1200'] + ['600'] * 25 + ['500'] * 5, on_exhausted=stop)
    tracker = ScriptedTracker(calls, [])

    completed = await _strategy(_config(), gateway, oracle, tracker, shutdown=shutdown).run()

    assert completed == 0
    assert calls.count('price') == 0
    assert calls.count('supply') > 30
    assert 'buy_tokens_with_exact' not in calls


@pytest.mark.asyncio
async def test_shutdown_between_phases_stops_before_next_gateway_call():
    calls = []
    shutdown = ShutdownSignal()
    gateway = RecordingGateway(calls)

    async def add_then_stop(*args):
        shutdown.request("operator stop")
        return gateway.add_result

    gateway.add_liquidity = add_then_stop
    oracle = ScriptedOracle(calls, [])
    tracker = ScriptedTracker(calls, [])

    completed = await _strategy(_config(run_once=False), gateway, oracle, tracker, shutdown=shutdown).run()

    assert completed == 0
    assert calls == []


@pytest.mark.asyncio
async def test_gateway_failure_propagates_and_stops_the_cycle():
    calls = []
    gateway = RecordingGateway(calls)

    async def revert(*args):
        calls.append('remove_liquidity')
        raise TransactionFailedError("tx_failed hash=0xdead")

    gateway.remove_liquidity = revert
    oracle = ScriptedOracle(calls, ['2000'])
    tracker = ScriptedTracker(calls, [])

    with pytest.raises(TransactionFailedError):
        await _strategy(_config(), gateway, oracle, tracker).run()
    assert calls == ['add_liquidity', 'supply', 'remove_liquidity']


@pytest.mark.asyncio
async def test_oracle_failure_propagates():
    calls = []

    class BrokenOracle:
        async def get_negative_supply(self):
            raise ConnectionError("rpc timeout")

    with pytest.raises(ConnectionError):
        await _strategy(_config(), RecordingGateway(calls), BrokenOracle(), ScriptedTracker(calls, [])).run()


@pytest.mark.asyncio
async def test_comparator_quantity_seeds_tokens_on_first_cycle_only():
    calls = []
    gateway = RecordingGateway(calls)
    oracle = ScriptedOracle(calls, ['1200', '400', '1200', '400'])
    tracker = ScriptedTracker(calls, ['1', '1'])
    config = _config(token_quantity_to_use=Decimal('5'), comparator_quantity_to_use=Decimal('250'))
    strategy = _strategy(config, gateway, oracle, tracker)

    await strategy.run_cycle(1)
    await strategy.run_cycle(2)

    seed = gateway.buy_results[0]
    assert calls[:2] == ['buy_tokens_with_exact', 'add_liquidity']
    assert gateway.inputs['buy_tokens_with_exact'][0] == Decimal('250')
    assert gateway.inputs['add_liquidity'] == [seed.token_quantity_received, seed.token_quantity_received]
    # One seed buy plus one buy-back per cycle.
    assert calls.count('buy_tokens_with_exact') == 3


@pytest.mark.asyncio
async def test_journal_records_each_phase(tmp_path):
    calls = []
    journal = SQLiteJournal(db_path=tmp_path / "journal.db")
    gateway = RecordingGateway(calls)
    oracle = ScriptedOracle(calls, ['1200', '400'])
    tracker = ScriptedTracker(calls, ['1'])

    await _strategy(_config(), gateway, oracle, tracker, journal=journal).run()

    trades = await journal.fetch_recent_trades()
    assert [trade.phase for trade in reversed(trades)] == ['ADD_LIQUIDITY', 'REMOVE_LIQUIDITY', 'SELL', 'BUY_BACK']
    sell = next(trade for trade in trades if trade.phase == 'SELL')
    assert sell.payload['average_price'] == '100'
    cycle = await journal.fetch_cycle(trades[0].cycle_id)
    assert cycle.finished_at is not None
    assert cycle.last_phase == 'BUY_BACK'
    await journal.close()
