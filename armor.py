"""Armoring: wrap raw bytes in labelled, base64-encoded PEM-style blocks."""
import base64
import binascii
import re

from config import ARMOR_LABEL, ARMOR_LINE_LENGTH

_BLOCK_RE = re.compile(
    r"^-----BEGIN (?P<label>[^\n]*?)-----[ \t\r]*\n"
    r"(?P<body>.*?)"
    r"^-----END (?P=label)-----[ \t\r]*(?:\n|\Z)",
    re.MULTILINE | re.DOTALL,
)
_WHITESPACE_RE = re.compile(r"\s+")


class ArmorError(ValueError):
    """Raised when text cannot be unarmored."""


class NoArmorData(ArmorError):
    """No complete BEGIN/END block was found."""


class TrailingData(ArmorError):
    """Non-whitespace text follows the END line."""


def encode(data: bytes, label: str = ARMOR_LABEL) -> str:
    base64_encoded = base64.b64encode(data).decode()
    lines = [base64_encoded[i:i + ARMOR_LINE_LENGTH]
             for i in range(0, len(base64_encoded), ARMOR_LINE_LENGTH)]
    body = "".join(line + "\n" for line in lines)
    return f"-----BEGIN {label}-----\n" + body + f"-----END {label}-----\n"


def _match(text: str):
    match = _BLOCK_RE.search(text)
    if match is None:
        raise NoArmorData("no armored data to decode")
    return match


def decode(text: str) -> bytes:
    """
    Return the body of the first armored block in text.

    Any label is accepted as long as the END line repeats it. Text before the
    block is ignored; anything but whitespace after it is an error.
    """
    match = _match(text)
    if text[match.end():].strip():
        raise TrailingData("extra text after armored data")
    body = _WHITESPACE_RE.sub("", match.group("body"))
    try:
        return base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise NoArmorData(f"invalid base64 body: {e}") from e

