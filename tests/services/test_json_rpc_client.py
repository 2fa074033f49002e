import time

import pytest
from eth_abi import decode
from web3 import Web3

from fakes import FakeSession, result_payload
from services.json_rpc_client import JsonRpcClient, encode_call, parse_signature


def test_parse_signature_accepts_abi_fragment_style():
    name, arg_types = parse_signature('function balanceOf(address owner) external view returns (uint256)')
    assert name == 'balanceOf'
    assert arg_types == ['address']


def test_parse_signature_rejects_garbage():
    with pytest.raises(ValueError):
        parse_signature('negativeSupply')


def test_encode_call_appends_abi_encoded_args():
    owner = '0x' + 'ab' * 20
    data = encode_call('balanceOf(address)', [owner])

    selector = bytes(Web3.keccak(text='balanceOf(address)')[:4]).hex()
    assert data.startswith('0x' + selector)
    (decoded_owner,) = decode(['address'], bytes.fromhex(data[2 + 8:]))
    assert decoded_owner.lower() == owner


def test_encode_call_checks_arity():
    with pytest.raises(ValueError):
        encode_call('balanceOf(address)', [])


@pytest.mark.asyncio
async def test_call_decodes_multiple_outputs():
    session = FakeSession([result_payload(5, 7, 1_700_000_000)])
    client = JsonRpcClient(session, rpc_url='http://mock-rpc', timeout=5.0, rate_limit_per_second=0)

    result = await client.call('0x' + '01' * 20, 'getReserves()', output_types=('uint112', 'uint112', 'uint32'))

    assert result == (5, 7, 1_700_000_000)


@pytest.mark.asyncio
async def test_empty_result_is_an_error():
    session = FakeSession([{'jsonrpc': '2.0', 'id': 1, 'result': '0x'}])
    client = JsonRpcClient(session, rpc_url='http://mock-rpc', timeout=5.0, rate_limit_per_second=0)

    with pytest.raises(ValueError, match='empty result'):
        await client.call('0x' + '01' * 20, 'negativeSupply()')


@pytest.mark.asyncio
async def test_rate_limit_spaces_requests():
    session = FakeSession([result_payload(1), result_payload(2), result_payload(3)])
    client = JsonRpcClient(session, rpc_url='http://mock-rpc', timeout=5.0, rate_limit_per_second=20)

    started = time.monotonic()
    for _ in range(3):
        await client.call('0x' + '01' * 20, 'negativeSupply()')
    elapsed = time.monotonic() - started

    # Three calls at 20/s need at least two 50ms gaps.
    assert elapsed >= 0.09
