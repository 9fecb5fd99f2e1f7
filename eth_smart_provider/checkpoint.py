"""Validator checkpoint hashing, signing and verification.

A checkpoint commits to a merkle root and message index of a mailbox
on a local domain. Validators sign the checkpoint digest with an
EIP-191 personal message signature.

- :py:class:`CheckpointHasher` is stateless hashing and signature recovery

- :py:class:`CheckpointSigner` holds the private key

- :py:class:`Validator` composes both, signing is optional

Example:

.. code-block:: python

    account = Account.create()
    validator = Validator.from_signer(CheckpointSigner(account), local_domain=1, mailbox=mailbox_address)
    checkpoint = validator.sign_checkpoint(root, index=5)
    assert validator.matches_signer(checkpoint)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexAddress
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

logger = logging.getLogger(__name__)


#: Salt mixed into every domain hash
DOMAIN_HASH_SALT = "HYPERLANE"


class SignerMissing(Exception):
    """Tried to sign with a read-only validator."""


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """A signed merkle root at a message index."""

    #: Merkle root, 32 bytes
    root: HexBytes

    #: Message index the root was taken at
    index: int

    #: 65 bytes EIP-191 signature
    signature: HexBytes

    def __post_init__(self):
        assert len(self.root) == 32, f"Root must be 32 bytes, got {len(self.root)}"
        assert self.index >= 0, f"Bad index {self.index}"


def convert_address_to_bytes32(address: HexAddress | str) -> bytes:
    """Left pad a 20 bytes address to 32 bytes."""
    raw = HexBytes(address)
    assert len(raw) == 20, f"Not an address: {address}"
    return bytes(raw).rjust(32, b"\x00")


class CheckpointHasher:
    """Compute checkpoint digests for a mailbox on a domain.

    Holds no secrets.
    """

    def __init__(self, local_domain: int, mailbox: HexAddress | str):
        """
        :param local_domain:
            uint32 domain id of the chain the mailbox lives on

        :param mailbox:
            Mailbox contract address
        """
        assert 0 <= local_domain < 2**32, f"Bad domain {local_domain}"
        self.local_domain = local_domain
        self.mailbox = to_checksum_address(mailbox)

    def __repr__(self):
        return f"<CheckpointHasher domain:{self.local_domain} mailbox:{self.mailbox}>"

    def get_domain_hash(self) -> bytes:
        return keccak(
            encode_packed(
                ["uint32", "bytes32", "string"],
                [self.local_domain, convert_address_to_bytes32(self.mailbox), DOMAIN_HASH_SALT],
            )
        )

    def get_message(self, root: bytes | str, index: int) -> bytes:
        """Packed ``(domain hash, root, index)``."""
        root = HexBytes(root)
        assert len(root) == 32, f"Root must be 32 bytes, got {len(root)}"
        return encode_packed(["bytes32", "bytes32", "uint256"], [self.get_domain_hash(), bytes(root), index])

    def get_message_hash(self, root: bytes | str, index: int) -> bytes:
        """The 32 bytes digest validators sign."""
        return keccak(self.get_message(root, index))

    def recover_signer(self, checkpoint: Checkpoint) -> ChecksumAddress:
        """Get the address that signed the checkpoint."""
        message_hash = self.get_message_hash(checkpoint.root, checkpoint.index)
        return Account.recover_message(encode_defunct(primitive=message_hash), signature=checkpoint.signature)

    def matches_signer(self, checkpoint: Checkpoint, address: HexAddress | str) -> bool:
        return self.recover_signer(checkpoint).lower() == address.lower()


class CheckpointSigner:
    """Sign checkpoint digests with a local private key."""

    def __init__(self, account: LocalAccount):
        self.account = account

    def __repr__(self):
        return f"<CheckpointSigner {self.address}>"

    @property
    def address(self) -> ChecksumAddress:
        return self.account.address

    def sign(self, message_hash: bytes) -> HexBytes:
        """EIP-191 sign a 32 bytes digest."""
        assert len(message_hash) == 32, f"Expected 32 bytes digest, got {len(message_hash)}"
        signed = self.account.sign_message(encode_defunct(primitive=message_hash))
        return HexBytes(signed.signature)


class Validator:
    """A validator identity for one mailbox.

    Without a signer the validator can only verify checkpoints.
    """

    def __init__(self, address: HexAddress | str, hasher: CheckpointHasher, signer: Optional[CheckpointSigner] = None):
        if signer is not None:
            assert signer.address.lower() == address.lower(), f"Signer {signer.address} does not match validator {address}"
        self.address = to_checksum_address(address)
        self.hasher = hasher
        self.signer = signer

    def __repr__(self):
        return f"<Validator {self.address} domain:{self.hasher.local_domain}>"

    @classmethod
    def from_signer(cls, signer: CheckpointSigner, local_domain: int, mailbox: HexAddress | str) -> "Validator":
        return cls(signer.address, CheckpointHasher(local_domain, mailbox), signer)

    def matches_signer(self, checkpoint: Checkpoint) -> bool:
        """Was this checkpoint signed by this validator."""
        return self.hasher.matches_signer(checkpoint, self.address)

    def sign_checkpoint(self, root: bytes | str, index: int) -> Checkpoint:
        """Sign a merkle root at a message index.

        :raise SignerMissing:
            The validator was created without a signer
        """
        if self.signer is None:
            raise SignerMissing(f"Validator {self.address} has no signer")
        message_hash = self.hasher.get_message_hash(root, index)
        signature = self.signer.sign(message_hash)
        logger.debug("Validator %s signed checkpoint at index %d", self.address, index)
        return Checkpoint(HexBytes(root), index, signature)
