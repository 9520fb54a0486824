"""
SoulBridge Cross-Chain Identity System

Soulbound identity issuance and cross-chain bridging using:
- EVM chains (Polygon, Ethereum) for Soulbound token issuance and bridge locks
- Solana as a bridge target
- An Onfido-style KYC/KYB provider for verification

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "SoulBridge Team"
