"""
SoulBridge Chain Clients
One client per chain: account discovery, network switching, message signing,
contract calls with receipt waits, and event decoding.

A client owns an explicit subscription list on its wallet. ``connect`` adds
the ``accountsChanged``/``chainChanged`` handlers, ``disconnect`` removes them,
so reconnect cycles never stack listeners.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import base58
import httpx
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from soulbridge.abis import ABIS
from soulbridge.config import config
from soulbridge.errors import (
    ChainRpcError,
    ConcurrentRequestError,
    NetworkUnavailableError,
    NoProviderError,
    TransactionRevertedError,
    TransactionTimeoutError,
    UserRejectedError,
)
from soulbridge.networks import NETWORKS, SOLANA, ChainNetwork, find_by_chain_id, get_network
from soulbridge.services.wallets import USER_REJECTED, UNRECOGNIZED_CHAIN, WalletRpcError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractRef:
    """A deployed contract (or Solana program): ABI name plus address."""
    name: str
    address: str


@dataclass
class ContractCallResult:
    tx_hash: str
    receipt: Dict[str, Any]


@dataclass(frozen=True)
class WalletEvent:
    """Wallet notification forwarded to subscribers."""
    chain: str
    kind: str  # "accountsChanged" or "chainChanged"
    value: Any


class WalletGuard:
    """
    At most one outstanding signature or transaction per wallet.

    Clients of the same chain family share a guard because they share the
    wallet; wallets are not reentrant.
    """

    def __init__(self):
        self.in_flight: Optional[str] = None

    @contextmanager
    def exclusive(self, operation: str):
        if self.in_flight is not None:
            raise ConcurrentRequestError(
                f"Wallet is busy with a {self.in_flight} request; wait for it to finish"
            )
        self.in_flight = operation
        try:
            yield
        finally:
            self.in_flight = None


def revert_reason(error: Exception) -> str:
    """Decoded revert reason from a ContractLogicError-style exception."""
    message = getattr(error, "message", None) or str(error)
    if isinstance(message, str) and message.startswith("execution reverted"):
        message = message[len("execution reverted"):].lstrip(": ").strip()
    return message or "execution reverted"


class ChainClient:
    """Base client. Subclasses implement the family-specific primitives."""

    family: str = ""
    ACCOUNTS_CHANGED = "accountsChanged"
    CHAIN_CHANGED = "chainChanged"

    def __init__(
        self,
        network: ChainNetwork,
        wallet=None,
        guard: WalletGuard = None,
        receipt_timeout: float = None,
    ):
        self.network = network
        self.wallet = wallet
        self.guard = guard or WalletGuard()
        self.receipt_timeout = receipt_timeout or config.TX_RECEIPT_TIMEOUT

        # Cached wallet state, invalidated by wallet notifications
        self._account: Optional[str] = None
        self._active_chain: Optional[Union[int, str]] = None

        self._subscriptions: List[Tuple[str, Callable]] = []
        self._listeners: List[Callable[[WalletEvent], None]] = []
        self.connected = False

    @property
    def key(self) -> str:
        return self.network.key

    # ============ Lifecycle ============

    async def connect(self) -> str:
        """Ask the wallet for an account and subscribe to its notifications."""
        self._require_wallet()
        with self.guard.exclusive("connect"):
            account = await self._request_accounts()
        if not account:
            raise NoProviderError(f"No {self.network.name} account authorized")

        if not self._subscriptions:
            self._add_subscription(self.ACCOUNTS_CHANGED, self._on_accounts_changed)
            self._add_subscription(self.CHAIN_CHANGED, self._on_chain_changed)

        self._account = account
        self.connected = True
        logger.info(f"[+] Connected {self.network.name} account {account}")
        return account

    async def disconnect(self) -> None:
        """Remove every wallet subscription and drop cached state."""
        for event, handler in self._subscriptions:
            self.wallet.remove_listener(event, handler)
        self._subscriptions.clear()
        self._account = None
        self._active_chain = None
        self.connected = False

    async def close(self) -> None:
        """Release transport resources. Subclasses override."""

    def _add_subscription(self, event: str, handler: Callable) -> None:
        self.wallet.on(event, handler)
        self._subscriptions.append((event, handler))

    def subscribe(self, listener: Callable[[WalletEvent], None]) -> Callable[[], None]:
        """Register a wallet-event listener. Returns the unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_accounts_changed(self, accounts) -> None:
        self._account = accounts[0] if accounts else None
        if not accounts:
            self.connected = False
        self._publish(WalletEvent(self.key, self.ACCOUNTS_CHANGED, self._account))

    def _on_chain_changed(self, chain_id) -> None:
        self._active_chain = None
        self._publish(WalletEvent(self.key, self.CHAIN_CHANGED, chain_id))

    def _publish(self, event: WalletEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # ============ Operations ============

    async def get_account(self) -> Optional[str]:
        """Currently authorized account, or None. Never prompts the user."""
        self._require_wallet()
        if self._account is None:
            self._account = await self._current_account()
        return self._account

    async def ensure_network(self, target_chain_id: Union[int, str]) -> None:
        raise NotImplementedError

    async def sign_message(self, message: str) -> str:
        """Signature over the UTF-8 ``message`` from the connected account."""
        self._require_wallet()
        account = await self._require_account()
        with self.guard.exclusive("signature"):
            signature = await self._sign(message, account)
        logger.info(f"Signed message with {self.network.name} account {account}")
        return signature

    async def submit_contract_call(
        self,
        contract_ref: ContractRef,
        method: str,
        args: Sequence[Any],
        on_sent: Callable[[str], None] = None,
    ) -> ContractCallResult:
        """
        Submit a contract call and suspend until one confirmation.

        ``on_sent`` receives the transaction hash as soon as the wallet returns
        it, before the receipt wait, so a caller cancelled mid-wait has
        already recorded what was sent.

        Raises:
            TransactionRevertedError: the call reverted (in preflight or on-chain)
            TransactionTimeoutError: no receipt within ``receipt_timeout``
        """
        self._require_wallet()
        account = await self._require_account()
        with self.guard.exclusive("transaction"):
            tx_hash = await self._send(contract_ref, method, list(args), account)
            logger.info(f"[+] {self.network.name} {method} submitted: {tx_hash}")
            if on_sent is not None:
                on_sent(tx_hash)

            try:
                receipt = await asyncio.wait_for(
                    self._wait_for_receipt(tx_hash), timeout=self.receipt_timeout
                )
            except asyncio.TimeoutError:
                raise TransactionTimeoutError(tx_hash, self.receipt_timeout) from None

        if not self._receipt_succeeded(receipt):
            reason = await self._failed_receipt_reason(tx_hash, receipt)
            logger.warning(f"[!] {self.network.name} {method} reverted: {reason}")
            raise TransactionRevertedError(reason, tx_hash)

        return ContractCallResult(tx_hash=tx_hash, receipt=receipt)

    def decode_event(self, receipt: Dict[str, Any], event_name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def receipt_succeeded(self, receipt: Dict[str, Any]) -> bool:
        return self._receipt_succeeded(receipt)

    async def failed_receipt_reason(self, tx_hash: str, receipt: Dict[str, Any]) -> str:
        """Decoded revert reason for a failed receipt."""
        return await self._failed_receipt_reason(tx_hash, receipt)

    @staticmethod
    def is_valid_address(address: str) -> bool:
        raise NotImplementedError

    @staticmethod
    def normalize_address(address: str) -> str:
        return address

    # ============ Helpers ============

    def _require_wallet(self) -> None:
        if self.wallet is None:
            raise NoProviderError(f"No wallet provider for {self.network.name}")

    async def _require_account(self) -> str:
        account = await self.get_account()
        if not account:
            raise NoProviderError(f"No {self.network.name} account connected")
        return account

    async def _wallet_request(self, method: str, params=None) -> Any:
        try:
            return await self.wallet.request(method, params)
        except WalletRpcError as exc:
            if exc.code == USER_REJECTED:
                raise UserRejectedError(f"{method} was rejected in the wallet") from exc
            raise

    # ============ Primitives ============

    async def _request_accounts(self) -> Optional[str]:
        raise NotImplementedError

    async def _current_account(self) -> Optional[str]:
        raise NotImplementedError

    async def _sign(self, message: str, account: str) -> str:
        raise NotImplementedError

    async def _send(self, contract_ref: ContractRef, method: str, args: list, account: str) -> str:
        raise NotImplementedError

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _receipt_succeeded(self, receipt: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def _failed_receipt_reason(self, tx_hash: str, receipt: Dict[str, Any]) -> str:
        return "Transaction reverted"


class EvmChainClient(ChainClient):
    """EVM chains through web3's AsyncWeb3 and an EIP-1193 wallet."""

    family = "evm"

    def __init__(self, network: ChainNetwork, wallet=None, guard: WalletGuard = None,
                 receipt_timeout: float = None, w3: AsyncWeb3 = None,
                 contracts: Sequence[ContractRef] = ()):
        super().__init__(network, wallet, guard, receipt_timeout)
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(config.get_rpc_url(network.rpc_url))
        )
        self._contracts: Dict[str, Any] = {}
        for ref in contracts:
            self._contract(ref)

    def _contract(self, ref: ContractRef):
        if ref.name not in self._contracts:
            self._contracts[ref.name] = self.w3.eth.contract(
                address=Web3.to_checksum_address(ref.address), abi=ABIS[ref.name]
            )
        return self._contracts[ref.name]

    async def ensure_network(self, target_chain_id: Union[int, str]) -> None:
        """
        Switch the wallet to ``target_chain_id``. An unrecognized chain is
        added from the network table and the switch retried once.
        """
        self._require_wallet()
        chain_id = int(target_chain_id, 16) if isinstance(target_chain_id, str) else target_chain_id
        hex_id = hex(chain_id)

        with self.guard.exclusive("network switch"):
            try:
                await self._wallet_request("wallet_switchEthereumChain", [{"chainId": hex_id}])
            except WalletRpcError as exc:
                if exc.code != UNRECOGNIZED_CHAIN:
                    raise NetworkUnavailableError(
                        f"Could not switch to chain {chain_id}: {exc.message}"
                    ) from exc

                target = find_by_chain_id(chain_id)
                if target is None:
                    raise NetworkUnavailableError(
                        f"Chain {chain_id} is unknown to the wallet and to the network table"
                    ) from exc

                logger.info(f"Chain {chain_id} unknown to wallet, adding {target.name}")
                try:
                    await self._wallet_request(
                        "wallet_addEthereumChain",
                        [target.add_chain_params(config.get_rpc_url(target.rpc_url))],
                    )
                    await self._wallet_request("wallet_switchEthereumChain", [{"chainId": hex_id}])
                except WalletRpcError as retry_exc:
                    raise NetworkUnavailableError(
                        f"Could not add {target.name}: {retry_exc.message}"
                    ) from retry_exc

        self._active_chain = chain_id

    async def _request_accounts(self) -> Optional[str]:
        accounts = await self._wallet_request("eth_requestAccounts")
        return accounts[0] if accounts else None

    async def _current_account(self) -> Optional[str]:
        accounts = await self._wallet_request("eth_accounts")
        return accounts[0] if accounts else None

    async def _sign(self, message: str, account: str) -> str:
        return await self._wallet_request("personal_sign", [message, account])

    async def _send(self, contract_ref: ContractRef, method: str, args: list, account: str) -> str:
        function = getattr(self._contract(contract_ref).functions, method)(*args)
        try:
            # Estimates gas, so a call that would revert fails here with its reason
            tx = await function.build_transaction({
                "from": account,
                "chainId": self.network.chain_id,
            })
        except ContractLogicError as exc:
            raise TransactionRevertedError(revert_reason(exc)) from exc
        return await self._wallet_request("eth_sendTransaction", [tx])

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        try:
            return await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted:
            raise TransactionTimeoutError(tx_hash, self.receipt_timeout) from None

    def _receipt_succeeded(self, receipt: Dict[str, Any]) -> bool:
        return receipt["status"] == 1

    async def _failed_receipt_reason(self, tx_hash: str, receipt: Dict[str, Any]) -> str:
        """Replay the reverted call at its block to recover the reason."""
        tx = await self.w3.eth.get_transaction(tx_hash)
        call = {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx.get("value", 0)}
        try:
            await self.w3.eth.call(call, block_identifier=receipt["blockNumber"])
        except ContractLogicError as exc:
            return revert_reason(exc)
        return "Transaction reverted"

    def decode_event(self, receipt: Dict[str, Any], event_name: str) -> Optional[Dict[str, Any]]:
        """Arguments of the first ``event_name`` log in ``receipt``, or None."""
        for contract in self._contracts.values():
            event_type = getattr(contract.events, event_name, None)
            if event_type is None:
                continue
            logs = event_type().process_receipt(receipt, errors=DISCARD)
            if logs:
                return dict(logs[0]["args"])
        return None

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    @staticmethod
    def is_valid_address(address: str) -> bool:
        return isinstance(address, str) and Web3.is_address(address)

    @staticmethod
    def normalize_address(address: str) -> str:
        return address.lower()

    async def close(self) -> None:
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()


class SolanaChainClient(ChainClient):
    """
    Solana through JSON-RPC (httpx) and a Phantom-style wallet.

    Program events are read from transaction logs written as
    ``Program log: <EventName> <json>``.
    """

    family = "solana"
    EVENT_PREFIX = "Program log: "
    RECEIPT_POLL_SECONDS = 1.0

    def __init__(self, network: ChainNetwork, wallet=None, guard: WalletGuard = None,
                 receipt_timeout: float = None, http_client: httpx.AsyncClient = None):
        super().__init__(network, wallet, guard, receipt_timeout)
        self.rpc_url = network.rpc_url
        self.client = http_client or httpx.AsyncClient(timeout=30.0)

    async def _rpc(self, method: str, params: list) -> Any:
        try:
            response = await self.client.post(self.rpc_url, json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": method,
                "params": params,
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChainRpcError(f"Solana RPC {method} failed: {e}") from e
        data = response.json()
        if data.get("error"):
            raise ChainRpcError(f"Solana RPC {method} failed: {data['error'].get('message')}")
        return data.get("result")

    async def ensure_network(self, target_chain_id: Union[int, str]) -> None:
        """Point the client at another cluster from the network table."""
        target = NETWORKS.get(str(target_chain_id))
        if target is None or target.family != SOLANA:
            raise NetworkUnavailableError(f"Unknown Solana cluster: {target_chain_id}")
        self.network = target
        self.rpc_url = target.rpc_url
        self._active_chain = target.key

    async def _request_accounts(self) -> Optional[str]:
        result = await self._wallet_request("connect")
        return str(result["publicKey"]) if result else None

    async def _current_account(self) -> Optional[str]:
        # A trusted-only connect answers silently or fails; it never prompts
        try:
            result = await self._wallet_request("connect", {"onlyIfTrusted": True})
        except UserRejectedError:
            return None
        return str(result["publicKey"]) if result else None

    async def _sign(self, message: str, account: str) -> str:
        result = await self._wallet_request("signMessage", {"message": message.encode("utf-8")})
        return base58.b58encode(bytes(result["signature"])).decode()

    async def _send(self, contract_ref: ContractRef, method: str, args: list, account: str) -> str:
        result = await self._wallet_request("signAndSendTransaction", {
            "programId": contract_ref.address,
            "instruction": method,
            "args": args,
        })
        return result["signature"]

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        while True:
            result = await self._rpc(
                "getSignatureStatuses", [[tx_hash], {"searchTransactionHistory": True}]
            )
            status = (result or {}).get("value", [None])[0]
            if status and status.get("confirmationStatus") in ("confirmed", "finalized"):
                receipt = await self.get_receipt(tx_hash)
                if receipt is not None:
                    return receipt
            await asyncio.sleep(self.RECEIPT_POLL_SECONDS)

    def _receipt_succeeded(self, receipt: Dict[str, Any]) -> bool:
        return receipt.get("err") is None

    async def _failed_receipt_reason(self, tx_hash: str, receipt: Dict[str, Any]) -> str:
        for line in receipt.get("logMessages", []):
            if "Error Message: " in line:
                return line.split("Error Message: ", 1)[1].rstrip(".")
        return f"Transaction failed: {receipt.get('err')}"

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        result = await self._rpc("getTransaction", [
            tx_hash, {"encoding": "json", "commitment": "confirmed",
                      "maxSupportedTransactionVersion": 0},
        ])
        if not result:
            return None
        meta = result.get("meta") or {}
        return {
            "signature": tx_hash,
            "slot": result.get("slot"),
            "err": meta.get("err"),
            "logMessages": meta.get("logMessages") or [],
        }

    def decode_event(self, receipt: Dict[str, Any], event_name: str) -> Optional[Dict[str, Any]]:
        prefix = f"{self.EVENT_PREFIX}{event_name} "
        for line in receipt.get("logMessages", []):
            if line.startswith(prefix):
                try:
                    return json.loads(line[len(prefix):])
                except json.JSONDecodeError:
                    logger.warning(f"[!] Undecodable {event_name} log: {line}")
        return None

    @staticmethod
    def is_valid_address(address: str) -> bool:
        if not isinstance(address, str) or not 32 <= len(address) <= 44:
            return False
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


CLIENT_TYPES = {
    "evm": EvmChainClient,
    "solana": SolanaChainClient,
}


def is_valid_address(chain: str, address: str) -> bool:
    """Address format check for ``chain`` without needing a connected client."""
    return CLIENT_TYPES[get_network(chain).family].is_valid_address(address)


def normalize_address(chain: str, address: str) -> str:
    """Canonical stored form of ``address`` (EVM addresses are lower-cased)."""
    return CLIENT_TYPES[get_network(chain).family].normalize_address(address)
