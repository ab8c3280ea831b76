"""
Command packing, command encryption and the hash-linked message queue.

A command is packed into one field element plus the new public key and an
EdDSA-Poseidon signature.  On the wire it is AES-GCM encrypted under a key
derived from the ECDH point between a one-time sender key and the
coordinator key, then chunked into seven field elements so it can be hashed
into the message chain.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from primitives import (
    ZERO_POINT, Keypair, Point, gen_ecdh_shared_key, hash2, hash5, poseidon,
    verify_signature,
)
from primitives.keys import Signature

logger = logging.getLogger(__name__)

UINT32 = 1 << 32
UINT96 = 1 << 96

CIPHERTEXT_FIELDS = 7
PLAINTEXT_FIELDS = 6
CHUNK_BYTES = 31
SEALED_BYTES = PLAINTEXT_FIELDS * 32 + 16
COMMAND_KDF_INFO = b"amaci-command-v1"
COMMAND_NONCE = bytes(12)


class MessageDecodeError(Exception):
    """Ciphertext does not decrypt to a well-formed command"""
    pass


# ============================================================================
# COMMANDS
# ============================================================================


def pack_command_fields(nonce: int, state_idx: int, vo_idx: int, new_votes: int, salt: int) -> int:
    if not (0 <= nonce < UINT32 and 0 <= state_idx < UINT32 and 0 <= vo_idx < UINT32):
        raise ValueError("nonce, state index and option index must fit in 32 bits")
    if not 0 <= new_votes < UINT96:
        raise ValueError("vote weight must fit in 96 bits")
    if not 0 <= salt < 1 << 56:
        raise ValueError("command salt must fit in 56 bits")
    return nonce + (state_idx << 32) + (vo_idx << 64) + (new_votes << 96) + (salt << 192)


def unpack_command_fields(packed: int) -> Tuple[int, int, int, int, int]:
    nonce = packed % UINT32
    state_idx = (packed >> 32) % UINT32
    vo_idx = (packed >> 64) % UINT32
    new_votes = (packed >> 96) % UINT96
    salt = packed >> 192
    return nonce, state_idx, vo_idx, new_votes, salt


@dataclass
class Command:
    """Plaintext user command"""
    state_idx: int
    vo_idx: int
    new_votes: int
    nonce: int
    new_pub_key: Point = ZERO_POINT
    salt: int = 0
    signature: Optional[Signature] = None

    def pack(self) -> int:
        return pack_command_fields(self.nonce, self.state_idx, self.vo_idx,
                                   self.new_votes, self.salt)

    @property
    def msg_hash(self) -> int:
        return poseidon([self.pack(), self.new_pub_key[0], self.new_pub_key[1]])

    def sign(self, keypair: Keypair) -> 'Command':
        self.signature = keypair.sign(self.msg_hash)
        return self

    def verify_signature(self, pub_key: Point) -> bool:
        if self.signature is None:
            return False
        return verify_signature(self.msg_hash, self.signature, pub_key)

    def is_deactivation(self) -> bool:
        """Sentinel pattern: zero weight and zero new key"""
        return self.new_votes == 0 and tuple(self.new_pub_key) == ZERO_POINT

    def to_plaintext(self) -> List[int]:
        if self.signature is None:
            raise ValueError("Command must be signed before encryption")
        (r8x, r8y), s = self.signature
        return [self.pack(), self.new_pub_key[0], self.new_pub_key[1], r8x, r8y, s]

    @classmethod
    def from_plaintext(cls, plaintext: Sequence[int]) -> 'Command':
        if len(plaintext) != PLAINTEXT_FIELDS:
            raise MessageDecodeError(f"Expected {PLAINTEXT_FIELDS} plaintext fields")
        nonce, state_idx, vo_idx, new_votes, salt = unpack_command_fields(plaintext[0])
        if salt >= 1 << 56:
            raise MessageDecodeError("Command salt exceeds 56 bits")
        return cls(
            state_idx=state_idx,
            vo_idx=vo_idx,
            new_votes=new_votes,
            nonce=nonce,
            new_pub_key=(plaintext[1], plaintext[2]),
            salt=salt,
            signature=((plaintext[3], plaintext[4]), plaintext[5]),
        )


# ============================================================================
# ENCRYPTION
# ============================================================================


def _command_key(shared_point: Point) -> bytes:
    material = shared_point[0].to_bytes(32, 'big') + shared_point[1].to_bytes(32, 'big')
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=COMMAND_KDF_INFO,
    ).derive(material)


def encrypt_command(command: Command, enc_priv_key: int, coord_pub_key: Point) -> List[int]:
    """Seal a signed command into seven field elements.

    The AES key is unique per one-time sender key, so a fixed nonce is safe.
    """
    key = _command_key(gen_ecdh_shared_key(enc_priv_key, coord_pub_key))
    plaintext = b"".join(v.to_bytes(32, 'big') for v in command.to_plaintext())
    sealed = AESGCM(key).encrypt(COMMAND_NONCE, plaintext, None)
    sealed = sealed.ljust(CIPHERTEXT_FIELDS * CHUNK_BYTES, b"\x00")
    return [int.from_bytes(sealed[i * CHUNK_BYTES:(i + 1) * CHUNK_BYTES], 'big')
            for i in range(CIPHERTEXT_FIELDS)]


def decrypt_command(ciphertext: Sequence[int], enc_pub_key: Point, coord_priv_key: int) -> Command:
    if len(ciphertext) != CIPHERTEXT_FIELDS:
        raise MessageDecodeError(f"Expected {CIPHERTEXT_FIELDS} ciphertext fields")
    try:
        raw = b"".join(int(v).to_bytes(CHUNK_BYTES, 'big') for v in ciphertext)
    except OverflowError as e:
        raise MessageDecodeError(f"Ciphertext element out of range: {e}")

    key = _command_key(gen_ecdh_shared_key(coord_priv_key, enc_pub_key))
    try:
        plaintext = AESGCM(key).decrypt(COMMAND_NONCE, raw[:SEALED_BYTES], None)
    except InvalidTag:
        raise MessageDecodeError("Command authentication failed")

    values = [int.from_bytes(plaintext[i * 32:(i + 1) * 32], 'big')
              for i in range(PLAINTEXT_FIELDS)]
    return Command.from_plaintext(values)


# ============================================================================
# MESSAGE CHAIN
# ============================================================================


@dataclass
class Message:
    ciphertext: List[int]
    enc_pub_key: Point
    prev_hash: int = 0
    hash: int = 0


def compute_message_hash(ciphertext: Sequence[int], enc_pub_key: Point, prev_hash: int) -> int:
    return hash2([
        hash5(list(ciphertext[:5])),
        hash5(list(ciphertext[5:]) + [enc_pub_key[0], enc_pub_key[1], prev_hash]),
    ])


def empty_message() -> Message:
    return Message(ciphertext=[0] * CIPHERTEXT_FIELDS, enc_pub_key=ZERO_POINT)


@dataclass
class MessageQueue:
    """Hash-linked list of published messages with their decrypted commands"""
    messages: List[Message] = field(default_factory=list)
    commands: List[Optional[Command]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def chain_hash(self) -> int:
        return self.messages[-1].hash if self.messages else 0

    def push(self, ciphertext: Sequence[int], enc_pub_key: Point,
             coord_priv_key: int) -> Tuple[Message, Optional[Command]]:
        prev_hash = self.chain_hash
        message = Message(
            ciphertext=list(ciphertext),
            enc_pub_key=tuple(enc_pub_key),
            prev_hash=prev_hash,
            hash=compute_message_hash(ciphertext, enc_pub_key, prev_hash),
        )
        try:
            command = decrypt_command(ciphertext, enc_pub_key, coord_priv_key)
        except (MessageDecodeError, ValueError) as e:
            logger.warning(f"Message {len(self.messages)} does not decode: {e}")
            command = None

        self.messages.append(message)
        self.commands.append(command)
        return message, command

    def window(self, start: int, end: int, size: int) -> Tuple[List[Message], List[Optional[Command]]]:
        """Messages [start, end) padded with empty slots up to ``size``"""
        messages = self.messages[start:end]
        commands = self.commands[start:end]
        while len(messages) < size:
            messages.append(empty_message())
            commands.append(None)
        return messages, commands


# ============================================================================
# CLIENT-SIDE BUILDERS
# ============================================================================


def build_message(keypair: Keypair, coord_pub_key: Point, state_idx: int, vo_idx: int,
                  new_votes: int, nonce: int, new_pub_key: Point = None,
                  salt: int = 0) -> Tuple[List[int], Point]:
    """Sign and encrypt one command under a fresh one-time key"""
    command = Command(
        state_idx=state_idx,
        vo_idx=vo_idx,
        new_votes=new_votes,
        nonce=nonce,
        new_pub_key=keypair.pub_key if new_pub_key is None else new_pub_key,
        salt=salt,
    ).sign(keypair)
    enc_keypair = Keypair()
    return encrypt_command(command, enc_keypair.priv_key, coord_pub_key), enc_keypair.pub_key


def batch_gen_messages(keypair: Keypair, coord_pub_key: Point, state_idx: int,
                       plan: Sequence[Tuple[int, int]],
                       start_nonce: int = 1) -> List[Tuple[List[int], Point]]:
    """Messages for a vote plan, in publication order.

    Commands are emitted last-first because the coordinator processes the
    queue from its tail; the command with the lowest nonce is published last.
    """
    payload = []
    for i in range(len(plan) - 1, -1, -1):
        vo_idx, weight = plan[i]
        payload.append(build_message(keypair, coord_pub_key, state_idx, vo_idx,
                                     weight, start_nonce + i))
    return payload


def build_deactivate_message(keypair: Keypair, coord_pub_key: Point,
                             state_idx: int) -> Tuple[List[int], Point]:
    return build_message(keypair, coord_pub_key, state_idx, 0, 0, 0,
                         new_pub_key=ZERO_POINT)
