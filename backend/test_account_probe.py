import asyncio

import pytest
from solders.pubkey import Pubkey

from account_probe import MAX_ACCOUNTS_PER_CALL, AccountProber, AccountStatus
from conftest import FakeRpcClient
from errors import ProbeError


def test_reports_absent_empty_and_funded_accounts():
    missing, empty, funded = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    rpc = FakeRpcClient()
    rpc.set_balance(empty, 0)
    rpc.set_balance(funded, 69_500_000_000, decimals=9)

    states = asyncio.run(AccountProber(rpc).probe([missing, empty, funded], with_balance=[empty, funded, missing]))

    assert states[missing].status == AccountStatus.ABSENT
    assert states[empty].status == AccountStatus.PRESENT_EMPTY
    assert states[funded].status == AccountStatus.PRESENT_WITH_BALANCE
    assert states[funded].amount == 69_500_000_000
    assert str(states[funded].ui_amount) == "69.500000000"


def test_existence_only_probe_skips_balance_calls():
    addr = Pubkey.new_unique()
    rpc = FakeRpcClient(accounts={addr: b"\x01\x02"})
    states = asyncio.run(AccountProber(rpc).probe([addr]))
    assert states[addr].status == AccountStatus.PRESENT_EMPTY
    assert states[addr].data == b"\x01\x02"


def test_duplicate_addresses_probed_once():
    addr = Pubkey.new_unique()
    rpc = FakeRpcClient()
    asyncio.run(AccountProber(rpc).probe([addr, addr, addr]))
    assert rpc.multiple_calls == [[addr]]


def test_large_probe_sets_are_chunked():
    addresses = [Pubkey.new_unique() for _ in range(MAX_ACCOUNTS_PER_CALL + 5)]
    rpc = FakeRpcClient()
    states = asyncio.run(AccountProber(rpc).probe(addresses))
    assert [len(call) for call in rpc.multiple_calls] == [MAX_ACCOUNTS_PER_CALL, 5]
    assert len(states) == len(addresses)


def test_rpc_failure_is_retryable_error():
    rpc = FakeRpcClient(fail_accounts=True)
    with pytest.raises(ProbeError) as excinfo:
        asyncio.run(AccountProber(rpc).probe([Pubkey.new_unique()]))
    assert excinfo.value.retryable
    assert excinfo.value.status_code == 500


def test_rpc_failure_treated_as_absent_only_when_asked():
    addr = Pubkey.new_unique()
    rpc = FakeRpcClient(fail_accounts=True)
    states = asyncio.run(AccountProber(rpc, assume_absent_on_error=True).probe([addr]))
    assert states[addr].status == AccountStatus.ABSENT
    assert not states[addr].exists
