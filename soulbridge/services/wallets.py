"""
SoulBridge Wallet Providers

Wallets follow the EIP-1193 shape: ``request(method, params)`` plus
``on``/``remove_listener`` for ``accountsChanged`` and ``chainChanged``.
The server-held wallets sign with keys from configuration, the same way the
service signs its own transactions.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import base58
from eth_account import Account
from eth_account.messages import encode_defunct
from nacl.signing import SigningKey
from web3 import AsyncWeb3, Web3

from soulbridge.config import config
from soulbridge.networks import EVM, NETWORKS

logger = logging.getLogger(__name__)


# EIP-1193 / EIP-3085 provider error codes
USER_REJECTED = 4001
UNSUPPORTED_METHOD = 4200
UNRECOGNIZED_CHAIN = 4902


class WalletRpcError(Exception):
    """Error returned by a wallet provider."""

    def __init__(self, code: int, message: str):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class EventEmitter:
    """Minimal listener registry for wallet events."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

    def on(self, event: str, listener: Callable) -> None:
        self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Callable) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners[event])

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            listener(*args)


class LocalEvmWallet(EventEmitter):
    """
    EVM wallet backed by a private key.

    Knows every EVM network in the static table; networks added through
    ``wallet_addEthereumChain`` are remembered for the process lifetime.
    """

    def __init__(self, private_key: str = None, chain_key: str = None):
        super().__init__()
        key = private_key or config.PRIVATE_KEY
        if not key:
            raise ValueError("EVM private key not configured")
        self.account = Account.from_key(key)

        # hex chain id -> rpc url
        self._known_chains: Dict[str, str] = {
            network.hex_chain_id: config.get_rpc_url(network.rpc_url)
            for network in NETWORKS.values()
            if network.family == EVM
        }
        start = NETWORKS[chain_key or config.PRIMARY_CHAIN]
        self._chain_id = start.hex_chain_id
        self._clients: Dict[str, AsyncWeb3] = {}

    def _w3(self) -> AsyncWeb3:
        if self._chain_id not in self._clients:
            self._clients[self._chain_id] = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(self._known_chains[self._chain_id])
            )
        return self._clients[self._chain_id]

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        params = params or []

        if method in ("eth_requestAccounts", "eth_accounts"):
            return [self.account.address]

        if method == "eth_chainId":
            return self._chain_id

        if method == "wallet_switchEthereumChain":
            chain_id = params[0]["chainId"].lower()
            if chain_id not in self._known_chains:
                raise WalletRpcError(UNRECOGNIZED_CHAIN, f"Unrecognized chain ID {chain_id}")
            if chain_id != self._chain_id:
                self._chain_id = chain_id
                self.emit("chainChanged", chain_id)
            return None

        if method == "wallet_addEthereumChain":
            chain = params[0]
            rpc_urls = chain.get("rpcUrls") or []
            if not rpc_urls:
                raise WalletRpcError(-32602, "rpcUrls is required")
            self._known_chains[chain["chainId"].lower()] = rpc_urls[0]
            logger.info(f"[+] Added network {chain.get('chainName')} ({chain['chainId']})")
            return None

        if method == "personal_sign":
            message = params[0]
            signed = self.account.sign_message(encode_defunct(text=message))
            return Web3.to_hex(signed.signature)

        if method == "eth_sendTransaction":
            return await self._send_transaction(dict(params[0]))

        raise WalletRpcError(UNSUPPORTED_METHOD, f"Unsupported method {method}")

    async def _send_transaction(self, tx: dict) -> str:
        w3 = self._w3()
        tx.setdefault("from", self.account.address)
        tx["nonce"] = await w3.eth.get_transaction_count(self.account.address, "pending")
        tx.setdefault("gas", config.GAS_LIMIT)
        if "maxFeePerGas" not in tx and "gasPrice" not in tx:
            tx.update(await self._gas_params(w3))

        signed_tx = self.account.sign_transaction(tx)
        tx_hash = await w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _gas_params(self, w3: AsyncWeb3) -> Dict[str, int]:
        """EIP-1559 fees: twice the base fee plus a 2 gwei tip."""
        latest_block = await w3.eth.get_block("latest")
        base_fee = latest_block.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": await w3.eth.gas_price}
        priority_fee = Web3.to_wei(2, "gwei")
        return {
            "maxFeePerGas": base_fee * 2 + priority_fee,
            "maxPriorityFeePerGas": priority_fee,
        }


class LocalSolanaWallet(EventEmitter):
    """
    Solana wallet backed by a 64-byte keypair (base58, Solana CLI layout).

    Signs messages only: transaction building needs a Solana SDK this service
    does not ship, so ``signAndSendTransaction`` is reported as unsupported.
    """

    def __init__(self, secret_key: str = None):
        super().__init__()
        secret = base58.b58decode(secret_key or config.SOLANA_SECRET_KEY)
        if len(secret) not in (32, 64):
            raise ValueError("Solana secret key must be 32 or 64 bytes")
        self.signing_key = SigningKey(secret[:32])
        self.public_key = base58.b58encode(bytes(self.signing_key.verify_key)).decode()

    async def request(self, method: str, params: Optional[dict] = None) -> Any:
        params = params or {}

        if method == "connect":
            return {"publicKey": self.public_key}

        if method == "signMessage":
            signed = self.signing_key.sign(bytes(params["message"]))
            return {"signature": signed.signature, "publicKey": self.public_key}

        raise WalletRpcError(UNSUPPORTED_METHOD, f"Unsupported method {method}")
