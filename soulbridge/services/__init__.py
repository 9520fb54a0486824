"""
SoulBridge Services Package
Chain clients, identity registry, verification and bridge coordinators, and
the orchestration facade that wires them together.
"""

import logging

from soulbridge.abis import CROSS_CHAIN_BRIDGE, SOULBOUND_NFT
from soulbridge.config import config
from soulbridge.database import Store
from soulbridge.networks import EVM, NETWORKS, SOLANA
from soulbridge.services.backend_api import BackendAPI
from soulbridge.services.bridge import BridgeCoordinator
from soulbridge.services.chain_client import (
    ContractRef,
    EvmChainClient,
    SolanaChainClient,
    WalletGuard,
)
from soulbridge.services.facade import OrchestrationFacade
from soulbridge.services.identity_registry import IdentityRegistry
from soulbridge.services.polling import Poller
from soulbridge.services.verification import VerificationCoordinator
from soulbridge.services.verification_provider import create_provider
from soulbridge.services.wallets import LocalEvmWallet, LocalSolanaWallet

logger = logging.getLogger(__name__)


def create_facade(store: Store = None, backend: BackendAPI = None,
                  evm_wallet=None, solana_wallet=None) -> OrchestrationFacade:
    """Build the full service graph from configuration."""
    store = store or Store()
    backend = backend or BackendAPI()

    if evm_wallet is None and config.is_evm_wallet_configured():
        evm_wallet = LocalEvmWallet()
    if solana_wallet is None and config.SOLANA_SECRET_KEY:
        solana_wallet = LocalSolanaWallet()
    if evm_wallet is None:
        logger.warning("[!] No EVM wallet configured; EVM operations will fail")

    soulbound_nft = ContractRef(SOULBOUND_NFT, config.SOULBOUND_NFT_ADDRESS)
    bridge_contract = ContractRef(CROSS_CHAIN_BRIDGE, config.CROSS_CHAIN_BRIDGE_ADDRESS)
    primary_contracts = [soulbound_nft, bridge_contract] if config.is_contracts_configured() else []

    # Clients of one family share the wallet, so they share its guard
    guards = {EVM: WalletGuard(), SOLANA: WalletGuard()}
    clients = {}
    for key, network in NETWORKS.items():
        if network.family == EVM:
            clients[key] = EvmChainClient(
                network, evm_wallet, guards[EVM],
                contracts=primary_contracts if key == config.PRIMARY_CHAIN else (),
            )
        else:
            clients[key] = SolanaChainClient(network, solana_wallet, guards[SOLANA])

    bridge_contracts = {}
    if config.CROSS_CHAIN_BRIDGE_ADDRESS:
        bridge_contracts[config.PRIMARY_CHAIN] = bridge_contract

    registry = IdentityRegistry(store, backend, clients, soulbound_nft)
    verification = VerificationCoordinator(store, create_provider(backend))
    bridge = BridgeCoordinator(store, backend, clients, bridge_contracts)

    return OrchestrationFacade(store, backend, clients, registry, verification, bridge, Poller())


# Global instance, built on first use
_facade = None


def get_facade() -> OrchestrationFacade:
    global _facade
    if _facade is None:
        _facade = create_facade()
    return _facade


async def shutdown_facade() -> None:
    global _facade
    if _facade is not None:
        await _facade.close()
        _facade = None


__all__ = [
    'create_facade',
    'get_facade',
    'shutdown_facade',
    'OrchestrationFacade',
]
