"""
SoulBridge Contract ABIs
Minimal interfaces for the SoulboundNFT and CrossChainBridge contracts.
"""

SOULBOUND_NFT = "soulbound_nft"
CROSS_CHAIN_BRIDGE = "cross_chain_bridge"


SOULBOUND_NFT_ABI = [
    {
        "inputs": [
            {"name": "entity", "type": "address"},
            {"name": "did", "type": "string"},
            {"name": "verifiableCredential", "type": "string"}
        ],
        "name": "verifyIdentity",
        "outputs": [{"name": "tokenId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "tokenId", "type": "uint256"},
            {"name": "chainId", "type": "string"},
            {"name": "chainAddress", "type": "string"}
        ],
        "name": "addChainIdentity",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": True, "name": "entity", "type": "address"},
            {"indexed": False, "name": "did", "type": "string"}
        ],
        "name": "IdentityVerified",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": False, "name": "chainId", "type": "string"},
            {"indexed": False, "name": "chainAddress", "type": "string"}
        ],
        "name": "ChainIdentityAdded",
        "type": "event"
    }
]


CROSS_CHAIN_BRIDGE_ABI = [
    {
        "inputs": [
            {"name": "did", "type": "string"},
            {"name": "targetChain", "type": "string"}
        ],
        "name": "requestVerification",
        "outputs": [{"name": "requestId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "targetChain", "type": "string"},
            {"name": "targetAddress", "type": "string"}
        ],
        "name": "bridgeTokens",
        "outputs": [{"name": "transferId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "requestId", "type": "uint256"},
            {"indexed": False, "name": "did", "type": "string"},
            {"indexed": False, "name": "targetChain", "type": "string"}
        ],
        "name": "VerificationRequested",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "transferId", "type": "uint256"},
            {"indexed": True, "name": "token", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "targetChain", "type": "string"},
            {"indexed": False, "name": "targetAddress", "type": "string"}
        ],
        "name": "TokensLocked",
        "type": "event"
    }
]


ABIS = {
    SOULBOUND_NFT: SOULBOUND_NFT_ABI,
    CROSS_CHAIN_BRIDGE: CROSS_CHAIN_BRIDGE_ABI,
}
