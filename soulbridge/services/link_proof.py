"""
SoulBridge Address Link Proof
Challenge messages and signer checks proving control of a chain address.
"""

import logging

import base58
from eth_account import Account
from eth_account.messages import encode_defunct
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from soulbridge.networks import SOLANA, get_network

logger = logging.getLogger(__name__)


class SignatureLinkProof:
    """
    Builds the exact message a wallet signs to link an address, and checks
    the resulting signature.

    EVM signatures are EIP-191 personal messages (hex). Solana signatures are
    raw ed25519 signatures over the UTF-8 message (base58).
    """

    CHALLENGE_TEMPLATE = "Link {chain} address {address} to your account"

    def build_challenge(self, chain: str, address: str) -> str:
        return self.CHALLENGE_TEMPLATE.format(chain=chain, address=address)

    def verify(self, chain: str, address: str, message: str, signature: str) -> bool:
        """
        True iff ``signature`` over ``message`` was produced by ``address``.

        Malformed signatures or keys verify as False rather than raising.
        """
        if not signature or not address:
            return False

        if get_network(chain).family == SOLANA:
            return self._verify_solana(address, message, signature)
        return self._verify_evm(address, message, signature)

    def _verify_evm(self, address: str, message: str, signature: str) -> bool:
        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            logger.debug(f"EVM signature recovery failed: {e}")
            return False
        return recovered.lower() == address.lower()

    def _verify_solana(self, address: str, message: str, signature: str) -> bool:
        try:
            verify_key = VerifyKey(base58.b58decode(address))
            verify_key.verify(message.encode("utf-8"), base58.b58decode(signature))
            return True
        except (BadSignatureError, ValueError) as e:
            logger.debug(f"Solana signature check failed: {e}")
            return False


# Global instance
link_proof = SignatureLinkProof()
