"""
SoulBridge Configuration Module
Loads environment variables and provides configuration settings for the
cross-chain identity orchestration service.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class Config:
    """Application configuration settings."""

    # ============ API Settings ============
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_LOG_LEVEL: str = os.getenv("API_LOG_LEVEL", "info")

    # ============ Backend (identity / verification / relay API) ============
    BACKEND_API_URL: str = os.getenv("BACKEND_API_URL", "http://localhost:3000/api")
    BACKEND_API_TOKEN: str = os.getenv("BACKEND_API_TOKEN", "")
    BACKEND_TIMEOUT: float = float(os.getenv("BACKEND_TIMEOUT", "30"))

    # ============ Chains ============
    # Chain the Soulbound token is issued on
    PRIMARY_CHAIN: str = os.getenv("PRIMARY_CHAIN", "polygon_amoy")

    # Alchemy RPC
    ALCHEMY_KEY: str = os.getenv("ALCHEMY_KEY", "")

    # Contract addresses on the primary chain
    SOULBOUND_NFT_ADDRESS: str = os.getenv("SOULBOUND_NFT_ADDRESS", "")
    CROSS_CHAIN_BRIDGE_ADDRESS: str = os.getenv("CROSS_CHAIN_BRIDGE_ADDRESS", "")

    # Server-held wallets
    PRIVATE_KEY: str = os.getenv("PRIVATE_KEY", "")
    SOLANA_SECRET_KEY: str = os.getenv("SOLANA_SECRET_KEY", "")  # base58, 64 bytes

    GAS_LIMIT: int = int(os.getenv("GAS_LIMIT", "300000"))

    # Seconds to wait for one confirmation before giving up
    TX_RECEIPT_TIMEOUT: float = float(os.getenv("TX_RECEIPT_TIMEOUT", "120"))

    # ============ Credentials ============
    CREDENTIAL_ISSUER_DID: str = os.getenv("CREDENTIAL_ISSUER_DID", "did:web:soulbridge")

    # ============ Admin ============
    # Required in X-Admin-Token on /api/admin routes when set
    ADMIN_API_TOKEN: str = os.getenv("ADMIN_API_TOKEN", "")

    # ============ Verification provider ============
    VERIFICATION_PROVIDER: str = os.getenv("VERIFICATION_PROVIDER", "onfido")
    ONFIDO_WORKFLOW_ID: str = os.getenv("ONFIDO_WORKFLOW_ID", "")

    # ============ Polling ============
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))

    # ============ Tokens ============
    DEFAULT_TOKEN_DECIMALS: int = int(os.getenv("DEFAULT_TOKEN_DECIMALS", "18"))

    # ============ Local state ============
    DB_PATH: str = os.getenv("DB_PATH", "data/soulbridge.db")

    def get_rpc_url(self, rpc_template: str) -> str:
        """Fill the Alchemy key into an RPC URL template."""
        return rpc_template.format(alchemy_key=self.ALCHEMY_KEY)

    def get_tx_url(self, network, tx_hash: str) -> str:
        """Get explorer URL for a transaction on ``network`` (a ChainNetwork)."""
        return f"{network.explorer_url.rstrip('/')}/tx/{tx_hash}{network.explorer_query}"

    def get_address_url(self, network, address: str) -> str:
        """Get explorer URL for an address on ``network``."""
        return f"{network.explorer_url.rstrip('/')}/address/{address}{network.explorer_query}"

    def is_evm_wallet_configured(self) -> bool:
        """Check if the server-held EVM wallet is configured."""
        if not self.PRIVATE_KEY:
            return False
        try:
            key_bytes = bytes.fromhex(self.PRIVATE_KEY.removeprefix("0x"))
            return len(key_bytes) == 32
        except ValueError:
            return False

    def is_contracts_configured(self) -> bool:
        """Check if the primary chain contracts are configured."""
        return bool(self.SOULBOUND_NFT_ADDRESS and self.CROSS_CHAIN_BRIDGE_ADDRESS)

    def is_backend_configured(self) -> bool:
        """Check if the backend API is configured."""
        return bool(self.BACKEND_API_URL)

    def ensure_data_dir(self) -> None:
        """Create the directory holding the local database."""
        directory = os.path.dirname(self.DB_PATH)
        if directory and self.DB_PATH != ":memory:":
            os.makedirs(directory, exist_ok=True)


# Global config instance
config = Config()
