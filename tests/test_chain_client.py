import asyncio
import json

import httpx
import pytest
from eth_account.messages import encode_defunct
from web3 import Web3
from web3.exceptions import ContractLogicError

from conftest import SOLANA_ADDRESS, FakeChainClient, run
from soulbridge.abis import SOULBOUND_NFT
from soulbridge.errors import (
    ChainRpcError,
    ConcurrentRequestError,
    NetworkUnavailableError,
    NoProviderError,
    TransactionRevertedError,
    TransactionTimeoutError,
    UserRejectedError,
)
from soulbridge.networks import NETWORKS
from soulbridge.services.chain_client import (
    ContractRef,
    EvmChainClient,
    SolanaChainClient,
    WalletGuard,
    is_valid_address,
    revert_reason,
)
from soulbridge.services.wallets import USER_REJECTED, UNRECOGNIZED_CHAIN, EventEmitter, WalletRpcError


class ScriptedWallet(EventEmitter):
    """EIP-1193 wallet that knows Ethereum mainnet only."""

    def __init__(self, account):
        super().__init__()
        self.account = account
        self.known = {"0x1"}
        self.requests = []
        self.reject = set()
        self.refuse_add = False
        self.gate = None

    async def request(self, method, params=None):
        self.requests.append(method)
        if method in self.reject:
            raise WalletRpcError(USER_REJECTED, "User rejected the request")
        if method in ("eth_requestAccounts", "eth_accounts"):
            return [self.account.address]
        if method == "wallet_switchEthereumChain":
            if params[0]["chainId"] not in self.known:
                raise WalletRpcError(UNRECOGNIZED_CHAIN, "Unrecognized chain")
            return None
        if method == "wallet_addEthereumChain":
            if self.refuse_add:
                raise WalletRpcError(-32603, "Internal error")
            self.known.add(params[0]["chainId"])
            return None
        if method == "personal_sign":
            if self.gate is not None:
                await self.gate.wait()
            signed = self.account.sign_message(encode_defunct(text=params[0]))
            return Web3.to_hex(signed.signature)
        raise WalletRpcError(4200, "Unsupported")


@pytest.fixture
def wallet(owner):
    return ScriptedWallet(owner)


@pytest.fixture
def evm_client(wallet):
    return EvmChainClient(NETWORKS["polygon_amoy"], wallet)


def test_operations_without_wallet_raise_no_provider():
    client = EvmChainClient(NETWORKS["polygon_amoy"])
    with pytest.raises(NoProviderError):
        run(client.get_account())
    with pytest.raises(NoProviderError):
        run(client.sign_message("hello"))


def test_reconnect_does_not_stack_listeners(evm_client, wallet, owner):
    assert run(evm_client.connect()) == owner.address
    run(evm_client.connect())
    assert wallet.listener_count("accountsChanged") == 1
    assert wallet.listener_count("chainChanged") == 1

    run(evm_client.disconnect())
    assert wallet.listener_count("accountsChanged") == 0
    assert wallet.listener_count("chainChanged") == 0


def test_account_change_is_forwarded_and_invalidates_cache(evm_client, wallet, other):
    events = []
    run(evm_client.connect())
    unsubscribe = evm_client.subscribe(events.append)

    wallet.emit("accountsChanged", [other.address])
    assert events[-1].kind == "accountsChanged"
    assert events[-1].value == other.address
    assert run(evm_client.get_account()) == other.address

    unsubscribe()
    wallet.emit("chainChanged", "0x89")
    assert len(events) == 1


def test_ensure_network_adds_unknown_chain_and_retries(evm_client, wallet):
    run(evm_client.ensure_network(80002))
    assert wallet.requests == [
        "wallet_switchEthereumChain",
        "wallet_addEthereumChain",
        "wallet_switchEthereumChain",
    ]


def test_ensure_network_fails_when_wallet_refuses_to_add(evm_client, wallet):
    wallet.refuse_add = True
    with pytest.raises(NetworkUnavailableError):
        run(evm_client.ensure_network(80002))


def test_ensure_network_unknown_to_table(evm_client):
    with pytest.raises(NetworkUnavailableError):
        run(evm_client.ensure_network(424242))


def test_sign_message_rejected_by_user(evm_client, wallet):
    wallet.reject.add("personal_sign")
    with pytest.raises(UserRejectedError) as exc:
        run(evm_client.sign_message("hello"))
    assert exc.value.retryable


def test_second_concurrent_signature_fails_fast(evm_client, wallet):
    async def scenario():
        await evm_client.connect()
        wallet.gate = asyncio.Event()
        first = asyncio.create_task(evm_client.sign_message("first"))
        await asyncio.sleep(0)

        with pytest.raises(ConcurrentRequestError):
            await evm_client.sign_message("second")

        wallet.gate.set()
        return await first

    assert run(scenario()).startswith("0x")
    assert evm_client.guard.in_flight is None


def test_guard_is_shared_by_clients_of_one_wallet(wallet):
    guard = WalletGuard()
    first = EvmChainClient(NETWORKS["polygon"], wallet, guard)
    second = EvmChainClient(NETWORKS["ethereum"], wallet, guard)
    assert first.guard is second.guard


def test_revert_reason_strips_prefix():
    assert revert_reason(ContractLogicError("execution reverted: insufficient balance")) == "insufficient balance"
    assert revert_reason(ContractLogicError("execution reverted")) == "execution reverted"


def test_submit_contract_call_returns_receipt(owner):
    client = FakeChainClient("polygon_amoy", owner)
    client.events = {"IdentityVerified": {"tokenId": 3}}

    result = run(client.submit_contract_call(ContractRef(SOULBOUND_NFT, "0x0"), "verifyIdentity", []))

    assert result.receipt["status"] == 1
    assert client.decode_event(result.receipt, "IdentityVerified") == {"tokenId": 3}


def test_submit_contract_call_revert(owner):
    client = FakeChainClient("polygon_amoy", owner)
    client.revert_reason = "insufficient balance"

    with pytest.raises(TransactionRevertedError) as exc:
        run(client.submit_contract_call(ContractRef(SOULBOUND_NFT, "0x0"), "verifyIdentity", []))
    assert exc.value.reason == "insufficient balance"


def test_submit_contract_call_timeout_keeps_hash(owner):
    client = FakeChainClient("polygon_amoy", owner)
    client.hang = True

    with pytest.raises(TransactionTimeoutError) as exc:
        run(client.submit_contract_call(ContractRef(SOULBOUND_NFT, "0x0"), "verifyIdentity", []))
    assert exc.value.ambiguous
    assert exc.value.tx_hash in client.receipts
    assert client.guard.in_flight is None


def test_address_formats():
    assert is_valid_address("polygon", "0x" + "ab" * 20)
    assert not is_valid_address("polygon", "0x1234")
    assert is_valid_address("solana_devnet", SOLANA_ADDRESS)
    assert not is_valid_address("solana_devnet", "0x" + "ab" * 20)
    assert not is_valid_address("solana_devnet", "Gold1111111111111111111111111111111111111")


def test_solana_receipt_and_program_events():
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "getTransaction"
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {
            "slot": 42,
            "meta": {
                "err": None,
                "logMessages": [
                    "Program 11111111111111111111111111111111 invoke [1]",
                    'Program log: TokensLocked {"transferId": 5, "amount": "10"}',
                ],
            },
        }})

    client = SolanaChainClient(
        NETWORKS["solana_devnet"],
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    async def scenario():
        receipt = await client.get_receipt("sig")
        await client.close()
        return receipt

    receipt = run(scenario())
    assert client.receipt_succeeded(receipt)
    assert client.decode_event(receipt, "TokensLocked") == {"transferId": 5, "amount": "10"}
    assert client.decode_event(receipt, "VerificationRequested") is None


class PhantomLikeWallet(EventEmitter):
    """Solana wallet that approves silent connects only once trusted."""

    def __init__(self, trusted):
        super().__init__()
        self.trusted = trusted
        self.connects = []

    async def request(self, method, params=None):
        if method != "connect":
            raise WalletRpcError(4200, "Unsupported")
        self.connects.append(params)
        if (params or {}).get("onlyIfTrusted") and not self.trusted:
            raise WalletRpcError(USER_REJECTED, "User rejected the request")
        return {"publicKey": SOLANA_ADDRESS}


def test_solana_get_account_never_prompts():
    wallet = PhantomLikeWallet(trusted=True)
    client = SolanaChainClient(NETWORKS["solana_devnet"], wallet, http_client=httpx.AsyncClient())

    assert run(client.get_account()) == SOLANA_ADDRESS
    assert wallet.connects == [{"onlyIfTrusted": True}]


def test_solana_untrusted_wallet_has_no_current_account():
    wallet = PhantomLikeWallet(trusted=False)
    client = SolanaChainClient(NETWORKS["solana_devnet"], wallet, http_client=httpx.AsyncClient())

    assert run(client.get_account()) is None
    assert wallet.connects == [{"onlyIfTrusted": True}]

    # An explicit connect is the only path that may prompt
    assert run(client.connect()) == SOLANA_ADDRESS
    assert wallet.connects[-1] is None


def test_solana_rpc_failure_is_retryable():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "node is behind"}})

    client = SolanaChainClient(
        NETWORKS["solana_devnet"],
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(ChainRpcError) as exc:
        run(client.get_receipt("sig"))
    assert exc.value.retryable
    assert "node is behind" in exc.value.reason
