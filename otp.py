"""
One-time-pad encryption.

Keys and cipher texts travel as armored text (see armor.py). Messages are
combined with keys by exclusive-or, so the same key encrypts and decrypts.
"""
import secrets
from typing import Callable, Union

import armor
from config import MAX_KEY_LENGTH, DECODE_ERRORS

RandomSource = Callable[[int], bytes]


class OTPError(Exception):
    """Base class for codec failures."""


class InvalidLength(OTPError):
    def __init__(self, length: int):
        self.length = length
        if length <= 0:
            reason = "key must have positive number of characters"
        else:
            reason = f"key length too large (maximum {MAX_KEY_LENGTH})"
        super().__init__(f"{reason}: {length}")


class RandomSourceError(OTPError):
    pass


class KeyDecodeError(OTPError):
    pass


class CipherDecodeError(OTPError):
    pass


class MessageTooLong(OTPError):
    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"message must not be longer than key: {length} > {limit} bytes")


class CipherTooLong(OTPError):
    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"cipher text must not be longer than key: {length} > {limit} bytes")


def xor(a: bytes, b: bytes) -> bytes:
    """Exclusive-or a and b; the tail of the longer one is copied unchanged."""
    if len(a) < len(b):
        a, b = b, a
    combined = bytearray(a)
    for i, byte in enumerate(b):
        combined[i] ^= byte
    return bytes(combined)


def _decode_key(armored_key: str) -> bytes:
    try:
        return armor.decode(armored_key)
    except armor.ArmorError as e:
        raise KeyDecodeError(f"decoding key: {e}") from e


def generate_key(length: int, read_random: RandomSource = secrets.token_bytes) -> str:
    """Create an armored key that can encrypt a message of up to length bytes."""
    if length <= 0 or length > MAX_KEY_LENGTH:
        raise InvalidLength(length)
    try:
        key = read_random(length)
    except Exception as e:
        raise RandomSourceError(f"generating key: {e}") from e
    if len(key) != length:
        raise RandomSourceError(
            f"could not create key of desired length: got {len(key)} of {length} bytes")
    return armor.encode(key)


def encrypt(message: Union[str, bytes], armored_key: str) -> str:
    if isinstance(message, str):
        message = message.encode()
    key = _decode_key(armored_key)
    if len(message) > len(key):
        raise MessageTooLong(len(message), len(key))
    return armor.encode(xor(message, key))


def decrypt(armored_cipher: str, armored_key: str) -> bytes:
    """
    Decrypt the cipher text with the key.

    The result is as long as the key: a message shorter than its key comes
    back padded with zero bytes, which callers strip with trim_padding.
    """
    try:
        cipher = armor.decode(armored_cipher)
    except armor.ArmorError as e:
        raise CipherDecodeError(f"decoding cipher text: {e}") from e
    key = _decode_key(armored_key)
    if len(cipher) > len(key):
        raise CipherTooLong(len(cipher), len(key))
    return xor(cipher, key)


def trim_padding(message: bytes) -> str:
    return message.rstrip(b"\x00").decode(errors=DECODE_ERRORS)
