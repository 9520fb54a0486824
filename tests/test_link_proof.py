import base58
from eth_account.messages import encode_defunct
from nacl.signing import SigningKey
from web3 import Web3

from soulbridge.services.link_proof import SignatureLinkProof


proof = SignatureLinkProof()


def test_challenge_text():
    assert (
        proof.build_challenge("ethereum", "0xABCD")
        == "Link ethereum address 0xABCD to your account"
    )


def test_evm_signature_verifies_case_insensitively(owner):
    message = proof.build_challenge("ethereum", owner.address)
    signature = Web3.to_hex(owner.sign_message(encode_defunct(text=message)).signature)

    assert proof.verify("ethereum", owner.address, message, signature)
    assert proof.verify("ethereum", owner.address.lower(), message, signature)


def test_evm_signature_from_other_account_fails(owner, other):
    message = proof.build_challenge("ethereum", owner.address)
    signature = Web3.to_hex(other.sign_message(encode_defunct(text=message)).signature)

    assert not proof.verify("ethereum", owner.address, message, signature)


def test_evm_signature_over_other_message_fails(owner):
    message = proof.build_challenge("ethereum", owner.address)
    signature = Web3.to_hex(owner.sign_message(encode_defunct(text="something else")).signature)

    assert not proof.verify("ethereum", owner.address, message, signature)


def test_malformed_signature_is_rejected(owner):
    message = proof.build_challenge("ethereum", owner.address)
    assert not proof.verify("ethereum", owner.address, message, "0x1234")
    assert not proof.verify("ethereum", owner.address, message, "")


def test_solana_signature():
    key = SigningKey(bytes(range(32)))
    address = base58.b58encode(bytes(key.verify_key)).decode()
    message = proof.build_challenge("solana_devnet", address)
    signature = base58.b58encode(key.sign(message.encode()).signature).decode()

    assert proof.verify("solana_devnet", address, message, signature)
    assert not proof.verify("solana_devnet", address, message + "!", signature)


def test_solana_signature_with_invalid_key():
    assert not proof.verify("solana_devnet", "not-base58-0OIl", "msg", "sig")
