"""
SoulBridge Network Table
Static network parameters for every supported chain. Used to build clients,
to register unknown networks with a wallet, and to validate addresses.
"""

from dataclasses import dataclass
from typing import Dict, Optional

EVM = "evm"
SOLANA = "solana"


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int


@dataclass(frozen=True)
class ChainNetwork:
    """Parameters for one supported chain."""
    key: str  # e.g. "polygon_amoy"; also used in link challenges
    name: str
    family: str  # EVM or SOLANA
    chain_id: Optional[int]  # EVM chain id, None for Solana clusters
    rpc_url: str  # may contain {alchemy_key}
    explorer_url: str
    currency: NativeCurrency
    # appended to explorer links, e.g. the Solana cluster selector
    explorer_query: str = ""

    @property
    def hex_chain_id(self) -> Optional[str]:
        """Chain id as the 0x-prefixed hex string wallets expect."""
        if self.chain_id is None:
            return None
        return hex(self.chain_id)

    def add_chain_params(self, rpc_url: str) -> dict:
        """Parameters for wallet_addEthereumChain."""
        return {
            "chainId": self.hex_chain_id,
            "chainName": self.name,
            "nativeCurrency": {
                "name": self.currency.name,
                "symbol": self.currency.symbol,
                "decimals": self.currency.decimals,
            },
            "rpcUrls": [rpc_url],
            "blockExplorerUrls": [self.explorer_url],
        }


ETHER = NativeCurrency("Ether", "ETH", 18)
POL = NativeCurrency("POL", "POL", 18)
SOL = NativeCurrency("Solana", "SOL", 9)


NETWORKS: Dict[str, ChainNetwork] = {
    "ethereum": ChainNetwork(
        key="ethereum",
        name="Ethereum Mainnet",
        family=EVM,
        chain_id=1,
        rpc_url="https://eth-mainnet.g.alchemy.com/v2/{alchemy_key}",
        explorer_url="https://etherscan.io",
        currency=ETHER,
    ),
    "sepolia": ChainNetwork(
        key="sepolia",
        name="Ethereum Sepolia",
        family=EVM,
        chain_id=11155111,
        rpc_url="https://eth-sepolia.g.alchemy.com/v2/{alchemy_key}",
        explorer_url="https://sepolia.etherscan.io",
        currency=ETHER,
    ),
    "polygon": ChainNetwork(
        key="polygon",
        name="Polygon Mainnet",
        family=EVM,
        chain_id=137,
        rpc_url="https://polygon-mainnet.g.alchemy.com/v2/{alchemy_key}",
        explorer_url="https://polygonscan.com",
        currency=POL,
    ),
    "polygon_amoy": ChainNetwork(
        key="polygon_amoy",
        name="Polygon Amoy Testnet",
        family=EVM,
        chain_id=80002,
        rpc_url="https://polygon-amoy.g.alchemy.com/v2/{alchemy_key}",
        explorer_url="https://amoy.polygonscan.com",
        currency=POL,
    ),
    "solana": ChainNetwork(
        key="solana",
        name="Solana Mainnet",
        family=SOLANA,
        chain_id=None,
        rpc_url="https://api.mainnet-beta.solana.com",
        explorer_url="https://explorer.solana.com",
        currency=SOL,
    ),
    "solana_devnet": ChainNetwork(
        key="solana_devnet",
        name="Solana Devnet",
        family=SOLANA,
        chain_id=None,
        rpc_url="https://api.devnet.solana.com",
        explorer_url="https://explorer.solana.com",
        currency=SOL,
        explorer_query="?cluster=devnet",
    ),
}


def get_network(key: str) -> ChainNetwork:
    """Look up a network by key; raises KeyError for unsupported chains."""
    try:
        return NETWORKS[key]
    except KeyError:
        raise KeyError(f"Unsupported chain: {key}") from None


def find_by_chain_id(chain_id: int) -> Optional[ChainNetwork]:
    for network in NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    return None
