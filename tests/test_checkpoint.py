"""Validator checkpoint signing."""

import pytest
from eth_account import Account
from hexbytes import HexBytes

from eth_smart_provider.checkpoint import Checkpoint, CheckpointHasher, CheckpointSigner, SignerMissing, Validator, convert_address_to_bytes32

MAILBOX = "0x" + "22" * 20

ROOT = HexBytes("0x" + "ab" * 32)


@pytest.fixture()
def signer() -> CheckpointSigner:
    return CheckpointSigner(Account.from_key("0x" + "11" * 32))


def test_message_layout():
    hasher = CheckpointHasher(local_domain=1, mailbox=MAILBOX)
    message = hasher.get_message(ROOT, 5)
    assert len(message) == 96
    assert message[0:32] == hasher.get_domain_hash()
    assert message[32:64] == ROOT
    assert int.from_bytes(message[64:96], "big") == 5


def test_domain_hash_depends_on_domain():
    assert CheckpointHasher(1, MAILBOX).get_domain_hash() != CheckpointHasher(2, MAILBOX).get_domain_hash()


def test_address_padding():
    padded = convert_address_to_bytes32(MAILBOX)
    assert padded == b"\x00" * 12 + b"\x22" * 20


def test_sign_and_verify(signer: CheckpointSigner):
    validator = Validator.from_signer(signer, local_domain=1, mailbox=MAILBOX)
    checkpoint = validator.sign_checkpoint(ROOT, 5)

    assert checkpoint.index == 5
    assert len(checkpoint.signature) == 65
    assert validator.hasher.recover_signer(checkpoint) == signer.address
    assert validator.matches_signer(checkpoint)

    # Another index is another digest
    tampered = Checkpoint(checkpoint.root, 6, checkpoint.signature)
    assert not validator.matches_signer(tampered)


def test_read_only_validator(signer: CheckpointSigner):
    """Verification works without a private key, signing does not."""
    signed = Validator.from_signer(signer, local_domain=1, mailbox=MAILBOX).sign_checkpoint(ROOT, 1)

    read_only = Validator(signer.address, CheckpointHasher(1, MAILBOX))
    assert read_only.matches_signer(signed)

    with pytest.raises(SignerMissing):
        read_only.sign_checkpoint(ROOT, 1)
