#!/usr/bin/env python3
"""VBA project protection reader and remover for Excel workbooks.

This script decodes the protection fields of the VBA project embedded in an
Excel XLS, XLSM or XLSB file (protection state, password and visibility) and
can strip that protection without launching Excel.

    # Show usage:
    python vba_unlock.py --help

    # Print the protection state of Book.xlsm, trying to recover the password:
    python vba_unlock.py read --decode Book.xlsm

    # Remove protection, writing Book_unlocked.xlsm:
    python vba_unlock.py remove Book.xlsm

    # Remove protection in-place:
    python vba_unlock.py remove --inplace Book.xlsm

The PROJECT stream grammar, the data encryption algorithm and the password
hash structure follow MS-OVBA sections 2.3.1 and 2.4.3.

Copyright 2026 by the vba-unlock contributors.  Licensed under GNU GPL v3.
"""
from __future__ import annotations

import argparse
import enum
import hashlib
import io
import itertools
import logging
import os
import string
import sys
import uuid
import zipfile
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

try:
    import olefile
except ImportError as exc:  # pragma: no cover - dependency guard
    raise SystemExit(
        "The 'olefile' package is required. Install it via 'pip install olefile'."
    ) from exc


logger = logging.getLogger(__name__)

# Location of the VBA storage inside a zip based workbook (.xlsm/.xlsb)
ZIP_VBA_PATH = "xl/vbaProject.bin"
# Location of the PROJECT stream inside a legacy compound file workbook (.xls)
CFB_VBA_PATH = "_VBA_PROJECT_CUR/PROJECT"
# Location of the PROJECT stream inside vbaProject.bin
PROJECT_PATH = "PROJECT"

DEFAULT_CODEPAGE = "cp1252"
ENCRYPTION_VERSION = 2

# Canonical replacement lines for the remove command. They use the all-zero
# project ID and its project key (0xAC, the byte sum of the ID string), and
# decrypt to: protection state 0, no password, project visible.
UNLOCKED_ID = b'ID="{00000000-0000-0000-0000-000000000000}"\r\n'
UNLOCKED_CMG = b'CMG="191BB5C3B9C3B9C3B9C3B9"\r\n'
UNLOCKED_DPB = b'DPB="B1B31D5E1E5E1E5E"\r\n'
UNLOCKED_GC = b'GC="484AE4F7E5F7E508"\r\n'

# Candidates for the --decode dictionary attack, one per line, shipped beside
# this script (or under <prefix>/share/vba-unlock when installed)
WORDLIST_NAME = "password.lst"

INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class VbaUnlockError(Exception):
    """Base class for every error raised by this module."""


class VbaProjectError(VbaUnlockError, ValueError):
    """The PROJECT stream, or one of its encrypted fields, is malformed."""


class InvalidHexError(VbaProjectError):
    def __init__(self, value: str):
        super().__init__(f"Cannot apply VBA data decryption as supplied value is not valid hex: {value}")
        self.value = value


class DataEncryptionError(VbaProjectError):
    """Failure of the MS-OVBA data encryption algorithm."""


class EncryptionTooShortError(DataEncryptionError):
    def __init__(self, hex_string: str):
        super().__init__(f"The hex string {hex_string} is too short to be decrypted")
        self.hex_string = hex_string


class EncryptionVersionError(DataEncryptionError):
    def __init__(self, version: int):
        super().__init__(f"VBA data encryption version MUST be 2, not {version}")
        self.version = version


class EncryptionLengthError(DataEncryptionError):
    def __init__(self, actual: int, expected: int):
        super().__init__(
            f"The length of the decrypted data ({actual}) does not match the decrypted length field ({expected})"
        )
        self.actual = actual
        self.expected = expected


class PasswordHashError(VbaProjectError):
    """The 29 byte password hash structure is malformed."""


class PasswordHashLengthError(PasswordHashError):
    def __init__(self, length: int):
        super().__init__(f"The password hash structure must be 29 bytes, not {length}")
        self.length = length


class PasswordHashReservedError(PasswordHashError):
    def __init__(self, value: int):
        super().__init__(f"The reserved first byte of the password hash MUST be 0xff, not 0x{value:02x}")
        self.value = value


class PasswordHashTerminatorError(PasswordHashError):
    def __init__(self, value: int):
        super().__init__(f"The terminator of the password hash MUST be 0x00, not 0x{value:02x}")
        self.value = value


class SaltNullError(PasswordHashError):
    def __init__(self, salt: bytes, position: int):
        super().__init__(
            f"Byte {position} of the salt {salt.hex()} is flagged as null but is not encoded as 0x01"
        )
        self.salt = salt
        self.position = position


class HashNullError(PasswordHashError):
    def __init__(self, digest: bytes, position: int):
        super().__init__(
            f"Byte {position} of the hash {digest.hex()} is flagged as null but is not encoded as 0x01"
        )
        self.hash = digest
        self.position = position


class PasswordError(VbaProjectError):
    """The decrypted DPB field does not describe a password."""


class PasswordNoDataError(PasswordError):
    def __init__(self):
        super().__init__("The decrypted password had no data")


class PasswordNotNullError(PasswordError):
    def __init__(self, value: int):
        super().__init__(f"A project without a password MUST store 0x00, not 0x{value:02x}")
        self.value = value


class PlainTextTerminatorError(PasswordError):
    def __init__(self, value: int):
        super().__init__(f"A plain-text password MUST be null terminated, found 0x{value:02x}")
        self.value = value


class ProtectionStateError(VbaProjectError):
    """The decrypted CMG field is malformed."""


class ProtectionStateLengthError(ProtectionStateError):
    def __init__(self, length: int):
        super().__init__(f"The protection state should decrypt to 4 bytes, not {length}")
        self.length = length


class ReservedBitsError(ProtectionStateError):
    def __init__(self, data: bytes):
        bits = "".join(f"{byte:08b}" for byte in data)
        super().__init__(f"The upper 29 bits of the protection state are reserved and MUST be 0, got {bits}")
        self.data = data


class VisibilityError(VbaProjectError):
    """The decrypted GC field is malformed."""


class VisibilityLengthError(VisibilityError):
    def __init__(self, length: int):
        super().__init__(f"The visibility state should decrypt to 1 byte, not {length}")
        self.length = length


class InvalidVisibilityError(VisibilityError):
    def __init__(self, value: int):
        super().__init__(f"The visibility state must be 0x00 or 0xff, not 0x{value:02x}")
        self.value = value


class ProjectParseError(VbaProjectError):
    """The PROJECT stream does not follow the VBAPROJECTText grammar."""

    def __init__(self, remainder: bytes, buffer: bytes):
        offset = len(buffer) - len(remainder)
        super().__init__(
            f"Could not parse the PROJECT stream at offset {offset}: {remainder[:40]!r}"
        )
        self.remainder = remainder
        self.buffer = buffer
        self.offset = offset


class WorkbookError(VbaUnlockError):
    """The workbook container cannot be used."""


class NotExcelError(WorkbookError):
    def __init__(self, path: str):
        super().__init__(f"{path} is not an Excel file")
        self.path = path


class XlsxWorkbookError(WorkbookError):
    def __init__(self, path: str):
        super().__init__(f"{path} is Excel's format for files with no VBA. There is nothing to operate on")
        self.path = path


class NoVbaProjectError(WorkbookError):
    def __init__(self, location: str):
        super().__init__(f"Could not find '{location}' within the workbook")
        self.location = location


class CfbOpenError(WorkbookError):
    def __init__(self, reason: str):
        super().__init__(f"There was a problem reading the compound file: {reason}")
        self.reason = reason


class StreamSizeError(WorkbookError):
    def __init__(self, new_size: int, old_size: int):
        super().__init__(
            f"The rewritten PROJECT stream ({new_size} bytes) is larger than the original ({old_size} bytes)"
        )
        self.new_size = new_size
        self.old_size = old_size


# ---------------------------------------------------------------------------
# Hex conversion
# ---------------------------------------------------------------------------

def hex_to_bytes(value: str) -> bytes:
    """Convert an ASCII hex string to bytes, dropping a trailing half byte."""
    if any(ch not in string.hexdigits for ch in value):
        raise InvalidHexError(value)
    return bytes.fromhex(value[: len(value) - len(value) % 2])


def bytes_to_hex(data: bytes) -> str:
    return bytes(data).hex().upper()


# ---------------------------------------------------------------------------
# MS-OVBA data encryption (2.4.3)
# ---------------------------------------------------------------------------

def decrypt_data(encrypted: bytes) -> bytes:
    """Decrypt a CMG/DPB/GC payload as defined in MS-OVBA 2.4.3.3.

    The first three bytes hold the seed, the encrypted version and the
    encrypted project key. The seed also selects 0-3 leading random bytes that
    are skipped before the 4 byte length and the data itself.
    """
    encrypted = bytes(encrypted)
    if len(encrypted) < 8:
        # seed + version + key + length + at least one data byte
        raise EncryptionTooShortError(encrypted.hex())

    seed, version_enc, project_key_enc = encrypted[0], encrypted[1], encrypted[2]
    version = seed ^ version_enc
    if version != ENCRYPTION_VERSION:
        raise EncryptionVersionError(version)
    project_key = seed ^ project_key_enc
    ignored_length = (seed & 0x06) >> 1

    unencrypted_byte_1 = project_key
    encrypted_byte_1 = project_key_enc
    encrypted_byte_2 = version_enc

    length = 0
    data = bytearray()
    for index, byte_enc in enumerate(encrypted[3:]):
        byte = byte_enc ^ ((encrypted_byte_2 + unencrypted_byte_1) & 0xFF)
        encrypted_byte_2 = encrypted_byte_1
        encrypted_byte_1 = byte_enc
        unencrypted_byte_1 = byte
        if index < ignored_length:
            continue
        if index < ignored_length + 4:
            # Each length byte moves the accumulator by one nibble, not one byte
            length |= byte << (4 * (index - ignored_length))
            continue
        data.append(byte)

    if len(data) != length:
        raise EncryptionLengthError(len(data), length)
    return bytes(data)


def decrypt_hex(value: str) -> bytes:
    return decrypt_data(hex_to_bytes(value))


def encrypt_data(seed: int, project_key: int, data: bytes) -> bytes:
    """Encrypt ``data`` with the MS-OVBA algorithm; the inverse of ``decrypt_data``.

    The ignored bytes are filled deterministically so output is reproducible.
    The length bytes are laid out for the nibble-shift reconstruction used by
    ``decrypt_data``; below 256 bytes this is the plain little-endian form.
    """
    if not 0 <= seed <= 0xFF or not 0 <= project_key <= 0xFF:
        raise ValueError("seed and project key must be single bytes")
    data = bytes(data)
    length = len(data)
    if length >= 1 << 20:
        raise ValueError(f"Cannot encrypt {length} bytes, the length field holds at most 20 bits")

    version_enc = seed ^ ENCRYPTION_VERSION
    project_key_enc = seed ^ project_key
    ignored_length = (seed & 0x06) >> 1

    filler = [((i * 0x0F) ^ 0xA9) & 0xFF for i in range(ignored_length)]
    length_bytes = [length & 0xFF, 0, (length >> 8) & 0x0F, length >> 12]

    output = bytearray((seed, version_enc, project_key_enc))
    unencrypted_byte_1 = project_key
    encrypted_byte_1 = project_key_enc
    encrypted_byte_2 = version_enc
    for byte in itertools.chain(filler, length_bytes, data):
        byte_enc = byte ^ ((encrypted_byte_2 + unencrypted_byte_1) & 0xFF)
        output.append(byte_enc)
        encrypted_byte_2 = encrypted_byte_1
        encrypted_byte_1 = byte_enc
        unencrypted_byte_1 = byte
    return bytes(output)


# ---------------------------------------------------------------------------
# Password hash structure (2.3.1.16)
# ---------------------------------------------------------------------------

def _restore_nulls(raw: bytes, grbit: int, error: Callable[[bytes, int], PasswordHashError]) -> bytes:
    restored = bytearray(raw)
    for index in range(len(restored)):
        if (grbit >> index) & 1 == 0:
            if restored[index] != 0x01:
                raise error(bytes(raw), index)
            restored[index] = 0x00
    return bytes(restored)


def _elide_nulls(raw: bytes) -> Tuple[int, bytes]:
    grbit = 0
    encoded = bytearray()
    for index, byte in enumerate(raw):
        if byte == 0x00:
            encoded.append(0x01)
        else:
            grbit |= 1 << index
            encoded.append(byte)
    return grbit, bytes(encoded)


def decode_password_hash(data: bytes) -> Tuple[bytes, bytes]:
    """Return ``(salt, hash)`` from the 29 byte password hash structure.

    A clear bit in GrbitKey (salt) or GrbitHashNull (hash) marks a byte that
    was stored as 0x01 in place of a null.
    """
    data = bytes(data)
    if len(data) != 29:
        raise PasswordHashLengthError(len(data))
    if data[0] != 0xFF:
        raise PasswordHashReservedError(data[0])
    if data[28] != 0x00:
        raise PasswordHashTerminatorError(data[28])

    grbit_key = data[1] & 0x0F
    salt = _restore_nulls(data[4:8], grbit_key, SaltNullError)

    grbit_hash_null = (data[1] >> 4) | (data[2] << 4) | (data[3] << 12)
    digest = _restore_nulls(data[8:28], grbit_hash_null, HashNullError)
    return salt, digest


def encode_password_hash(salt: bytes, digest: bytes) -> bytes:
    """Build the 29 byte password hash structure for ``salt`` and ``digest``."""
    salt = bytes(salt)
    digest = bytes(digest)
    if len(salt) != 4:
        raise ValueError(f"The salt must be 4 bytes, not {len(salt)}")
    if len(digest) != 20:
        raise ValueError(f"The hash must be 20 bytes, not {len(digest)}")

    grbit_key, nulled_salt = _elide_nulls(salt)
    grbit_hash_null, nulled_hash = _elide_nulls(digest)
    header = bytes((
        0xFF,
        ((grbit_hash_null & 0x0F) << 4) | grbit_key,
        (grbit_hash_null >> 4) & 0xFF,
        (grbit_hash_null >> 12) & 0xFF,
    ))
    return header + nulled_salt + nulled_hash + b"\x00"


def generate_hash(password: str, salt: bytes, encoding: str = "utf-8") -> bytes:
    """SHA-1 of the password bytes followed by the salt."""
    return hashlib.sha1(password.encode(encoding) + bytes(salt)).digest()


def encode_password(password: str, salt: Optional[bytes] = None) -> bytes:
    """Hash ``password`` (with a random salt unless one is given) and encode it."""
    if salt is None:
        salt = os.urandom(4)
    return encode_password_hash(salt, generate_hash(password, salt))


def password_match_hash(candidate: str, salt: bytes, digest: bytes) -> bool:
    return generate_hash(candidate, salt) == bytes(digest)


def password_match(candidate: str, encoded: bytes) -> bool:
    """Check ``candidate`` against an encoded password hash structure."""
    salt, digest = decode_password_hash(encoded)
    return password_match_hash(candidate, salt, digest)


def crack_password(salt: bytes, digest: bytes, words: Iterable[str]) -> Optional[str]:
    """Return the first word whose salted SHA-1 equals ``digest``, if any."""
    tried = 0
    for word in words:
        tried += 1
        if password_match_hash(word, salt, digest):
            logger.debug("Password found after %d candidates", tried)
            return word
    logger.debug("No match among %d candidates", tried)
    return None


def load_wordlist(path: str) -> List[str]:
    """Read password candidates, one per line."""
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\r\n") for line in handle]


def default_wordlist_path() -> str:
    """Locate the bundled password.lst, next to this script or in the install prefix."""
    here = os.path.join(os.path.dirname(os.path.abspath(__file__)), WORDLIST_NAME)
    if os.path.exists(here):
        return here
    return os.path.join(sys.prefix, "share", "vba-unlock", WORDLIST_NAME)


def default_wordlist() -> List[str]:
    return load_wordlist(default_wordlist_path())


# ---------------------------------------------------------------------------
# Project model
# ---------------------------------------------------------------------------

class ModuleKind(enum.Enum):
    DOCUMENT = "Document"
    STANDARD = "Module"
    CLASS = "Class"
    DESIGNER = "BaseClass"


@dataclass(frozen=True)
class Module:
    kind: ModuleKind
    name: str
    # Only document modules carry a type library version (DocTLibVer)
    doc_tlib_ver: Optional[int] = None


@dataclass(frozen=True)
class Package:
    guid: uuid.UUID


Item = Union[Module, Package]


@dataclass(frozen=True)
class ProtectionState:
    user: bool
    host: bool
    vbe: bool


@dataclass(frozen=True)
class NoPassword:
    pass


@dataclass(frozen=True)
class HashedPassword:
    salt: bytes
    hash: bytes


@dataclass(frozen=True)
class PlainTextPassword:
    text: str


Password = Union[NoPassword, HashedPassword, PlainTextPassword]


class Visibility(enum.Enum):
    NOT_VISIBLE = 0x00
    VISIBLE = 0xFF


@dataclass(frozen=True)
class HostExtenderRef:
    index: int
    guid: uuid.UUID
    lib_name: str
    creation_flags: int


class WindowState(enum.Enum):
    CLOSED = "C"
    ZOOMED = "Z"
    MINIMIZED = "I"


@dataclass(frozen=True)
class Window:
    left: int
    top: int
    right: int
    bottom: int
    state: WindowState


@dataclass(frozen=True)
class WindowRecord:
    module: str
    code: Window
    designer: Optional[Window] = None


@dataclass(frozen=True)
class Project:
    """Parsed contents of the PROJECT stream."""

    project_id: uuid.UUID
    items: Tuple[Item, ...]
    help_file: Optional[str]
    exe_name: Optional[str]
    name: str
    help_id: int
    description: Optional[str]
    version_compatible: bool
    protection_state: ProtectionState
    password: Password
    visibility: Visibility
    host_extenders: Tuple[HostExtenderRef, ...]
    workspace: Optional[Tuple[WindowRecord, ...]]

    @classmethod
    def from_bytes(cls, data: bytes, codepage: str = DEFAULT_CODEPAGE) -> "Project":
        return parse_project(data, codepage)

    def is_locked(self) -> bool:
        """A project is locked when it is protected in the VBA editor."""
        return self.protection_state.vbe


# ---------------------------------------------------------------------------
# PROJECT stream grammar (2.3.1)
# ---------------------------------------------------------------------------
# Every helper takes the whole buffer and a start offset and returns the
# offset after the match together with the parsed value.

class _NoMatch(Exception):
    def __init__(self, pos: int):
        super().__init__(pos)
        self.pos = pos


_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")
_GUID_GROUPS = (8, 4, 4, 4, 12)


def _tag(data: bytes, pos: int, literal: bytes) -> int:
    if data.startswith(literal, pos):
        return pos + len(literal)
    raise _NoMatch(pos)


def _parse_newline(data: bytes, pos: int) -> int:
    if data[pos:pos + 2] in (b"\r\n", b"\n\r"):
        return pos + 2
    raise _NoMatch(pos)


def _take_hex(data: bytes, pos: int, count: int) -> Tuple[int, int]:
    chunk = data[pos:pos + count]
    if len(chunk) != count or any(byte not in _HEX_DIGITS for byte in chunk):
        raise _NoMatch(pos)
    return pos + count, int(chunk, 16)


def _parse_guid(data: bytes, pos: int) -> Tuple[int, uuid.UUID]:
    pos = _tag(data, pos, b"{")
    value = 0
    for index, width in enumerate(_GUID_GROUPS):
        if index:
            pos = _tag(data, pos, b"-")
        pos, group = _take_hex(data, pos, width)
        value = (value << (4 * width)) | group
    pos = _tag(data, pos, b"}")
    return pos, uuid.UUID(int=value)


def _parse_hex_int32(data: bytes, pos: int) -> Tuple[int, int]:
    start = pos
    pos = _tag(data, pos, b"&H")
    pos, value = _take_hex(data, pos, 8)
    if value > INT32_MAX:
        raise _NoMatch(start)
    return pos, value


def _parse_int32(data: bytes, pos: int) -> Tuple[int, int]:
    end = pos + 1 if data.startswith(b"-", pos) else pos
    digits_start = end
    while end < len(data) and 0x30 <= data[end] <= 0x39:
        end += 1
    if end == digits_start:
        raise _NoMatch(pos)
    value = int(data[pos:end])
    if not INT32_MIN <= value <= INT32_MAX:
        raise _NoMatch(pos)
    return end, value


def _parse_module_identifier(data: bytes, pos: int) -> Tuple[int, str]:
    if not data[pos:pos + 1].isalpha():
        raise _NoMatch(pos)
    end = pos + 1
    limit = min(len(data), pos + 31)
    while end < limit and (data[end:end + 1].isalnum() or data[end] == 0x5F):
        end += 1
    return end, data[pos:end].decode("ascii")


def _parse_quoted(data: bytes, pos: int, minimum: int, maximum: int, codepage: str) -> Tuple[int, str]:
    pos = _tag(data, pos, b'"')
    chars = bytearray()
    while len(chars) < maximum and pos < len(data):
        byte = data[pos]
        if byte in (0x20, 0x09, 0x21) or byte >= 0x23:
            chars.append(byte)
            pos += 1
        elif data.startswith(b'""', pos):
            chars.append(0x22)
            pos += 2
        else:
            break
    if len(chars) < minimum:
        raise _NoMatch(pos)
    pos = _tag(data, pos, b'"')
    return pos, chars.decode(codepage, errors="replace")


def _parse_hex_field(data: bytes, pos: int, min_digits: int, max_digits: int) -> Tuple[int, bytes]:
    end = pos
    limit = min(len(data), pos + max_digits - max_digits % 2)
    while end + 2 <= limit and data[end] in _HEX_DIGITS and data[end + 1] in _HEX_DIGITS:
        end += 2
    if end - pos < min_digits - min_digits % 2:
        raise _NoMatch(end)
    return end, hex_to_bytes(data[pos:end].decode("ascii"))


def _parse_lib_name(data: bytes, pos: int, codepage: str) -> Tuple[int, str]:
    end = pos
    while end < len(data) and data[end] > 0x20 and data[end] != 0x3B:
        end += 1
    return end, data[pos:end].decode(codepage, errors="replace")


def _optional(parser: Callable, data: bytes, pos: int, *args):
    try:
        return parser(data, pos, *args)
    except _NoMatch:
        return pos, None


# -- project fields ----------------------------------------------------------

def _parse_item(data: bytes, pos: int) -> Tuple[int, Item]:
    if data.startswith(b"Document=", pos):
        pos, name = _parse_module_identifier(data, pos + len(b"Document="))
        pos = _tag(data, pos, b"/")
        pos, doc_tlib_ver = _parse_hex_int32(data, pos)
        return pos, Module(ModuleKind.DOCUMENT, name, doc_tlib_ver)
    for kind in (ModuleKind.STANDARD, ModuleKind.CLASS, ModuleKind.DESIGNER):
        prefix = kind.value.encode("ascii") + b"="
        if data.startswith(prefix, pos):
            pos, name = _parse_module_identifier(data, pos + len(prefix))
            return pos, Module(kind, name)
    pos = _tag(data, pos, b"Package=")
    pos, guid = _parse_guid(data, pos)
    return pos, Package(guid)


def _parse_quoted_line(data: bytes, pos: int, prefix: bytes, minimum: int, maximum: int, codepage: str) -> Tuple[int, str]:
    pos = _tag(data, pos, prefix)
    pos, value = _parse_quoted(data, pos, minimum, maximum, codepage)
    return _parse_newline(data, pos), value


def _decode_protection_state(encrypted: bytes) -> ProtectionState:
    data = decrypt_data(encrypted)
    if len(data) != 4:
        raise ProtectionStateLengthError(len(data))
    if data[0] > 0x07 or any(data[1:]):
        raise ReservedBitsError(data)
    return ProtectionState(
        user=bool(data[0] & 0x01),
        host=bool(data[0] & 0x02),
        vbe=bool(data[0] & 0x04),
    )


def _decode_password(encrypted: bytes) -> Password:
    data = decrypt_data(encrypted)
    if not data:
        raise PasswordNoDataError()
    if len(data) == 1:
        if data[0] != 0x00:
            raise PasswordNotNullError(data[0])
        return NoPassword()
    if len(data) == 29:
        salt, digest = decode_password_hash(data)
        return HashedPassword(salt, digest)
    if data[-1] != 0x00:
        raise PlainTextTerminatorError(data[-1])
    return PlainTextPassword(data[:-1].decode("utf-8", errors="replace"))


def _decode_visibility(encrypted: bytes) -> Visibility:
    data = decrypt_data(encrypted)
    if len(data) != 1:
        raise VisibilityLengthError(len(data))
    try:
        return Visibility(data[0])
    except ValueError:
        raise InvalidVisibilityError(data[0]) from None


def _parse_encrypted_line(data: bytes, pos: int, prefix: bytes, min_digits: int, max_digits: int, decoder: Callable):
    start = pos
    pos = _tag(data, pos, prefix)
    pos, encrypted = _parse_hex_field(data, pos, min_digits, max_digits)
    pos = _tag(data, pos, b'"')
    pos = _parse_newline(data, pos)
    try:
        value = decoder(encrypted)
    except VbaProjectError as exc:
        raise _NoMatch(start) from exc
    return pos, value


def _parse_host_extender_ref(data: bytes, pos: int, codepage: str) -> Tuple[int, HostExtenderRef]:
    pos, index = _parse_hex_int32(data, pos)
    pos = _tag(data, pos, b"=")
    pos, guid = _parse_guid(data, pos)
    pos = _tag(data, pos, b";")
    pos, lib_name = _parse_lib_name(data, pos, codepage)
    pos = _tag(data, pos, b";")
    pos, creation_flags = _parse_hex_int32(data, pos)
    pos = _parse_newline(data, pos)
    return pos, HostExtenderRef(index, guid, lib_name, creation_flags)


def _parse_window(data: bytes, pos: int) -> Tuple[int, Window]:
    dims = []
    for _ in range(4):
        pos, value = _parse_int32(data, pos)
        pos = _tag(data, pos, b", ")
        dims.append(value)
    try:
        state = WindowState(data[pos:pos + 1].decode("latin-1"))
    except ValueError:
        raise _NoMatch(pos) from None
    return pos + 1, Window(dims[0], dims[1], dims[2], dims[3], state)


def _parse_window_record(data: bytes, pos: int) -> Tuple[int, WindowRecord]:
    pos, module = _parse_module_identifier(data, pos)
    pos = _tag(data, pos, b"=")
    pos, code = _parse_window(data, pos)
    designer = None
    if data.startswith(b", ", pos):
        try:
            pos, designer = _parse_window(data, pos + 2)
        except _NoMatch:
            designer = None
    pos = _parse_newline(data, pos)
    return pos, WindowRecord(module, code, designer)


def _parse_many(parser: Callable, data: bytes, pos: int, *args) -> Tuple[int, list]:
    values = []
    while True:
        try:
            pos, value = parser(data, pos, *args)
        except _NoMatch:
            return pos, values
        values.append(value)


def _parse_section_header(data: bytes, pos: int, title: bytes) -> int:
    pos = _parse_newline(data, pos)
    pos = _tag(data, pos, title)
    return _parse_newline(data, pos)


def _parse_workspace(data: bytes, pos: int) -> Tuple[int, List[WindowRecord]]:
    pos = _parse_section_header(data, pos, b"[Workspace]")
    return _parse_many(_parse_window_record, data, pos)


def _parse_item_line(data: bytes, pos: int) -> Tuple[int, Item]:
    pos, item = _parse_item(data, pos)
    return _parse_newline(data, pos), item


def _parse_version_compat(data: bytes, pos: int) -> Tuple[int, bool]:
    pos = _tag(data, pos, b'VersionCompatible32="393222000"')
    return _parse_newline(data, pos), True


def _parse_project_text(data: bytes, codepage: str) -> Tuple[int, Project]:
    pos = _tag(data, 0, b'ID="')
    pos, project_id = _parse_guid(data, pos)
    pos = _tag(data, pos, b'"')
    pos = _parse_newline(data, pos)

    pos, items = _parse_many(_parse_item_line, data, pos)
    pos, help_file = _optional(_parse_quoted_line, data, pos, b"HelpFile=", 0, 259, codepage)
    pos, exe_name = _optional(_parse_quoted_line, data, pos, b"ExeName32=", 0, 259, codepage)
    pos, name = _parse_quoted_line(data, pos, b"Name=", 1, 128, codepage)

    pos = _tag(data, pos, b'HelpContextID="')
    pos, help_id = _parse_int32(data, pos)
    pos = _tag(data, pos, b'"')
    pos = _parse_newline(data, pos)

    pos, description = _optional(_parse_quoted_line, data, pos, b"Description=", 0, 2000, codepage)
    pos, version_compatible = _optional(_parse_version_compat, data, pos)

    pos, protection_state = _parse_encrypted_line(data, pos, b'CMG="', 22, 28, _decode_protection_state)
    pos, password = _parse_encrypted_line(data, pos, b'DPB="', 16, 2000, _decode_password)
    pos, visibility = _parse_encrypted_line(data, pos, b'GC="', 16, 22, _decode_visibility)

    pos = _parse_section_header(data, pos, b"[Host Extender Info]")
    pos, host_extenders = _parse_many(_parse_host_extender_ref, data, pos, codepage)
    pos, workspace = _optional(_parse_workspace, data, pos)

    project = Project(
        project_id=project_id,
        items=tuple(items),
        help_file=help_file,
        exe_name=exe_name,
        name=name,
        help_id=help_id,
        description=description,
        version_compatible=bool(version_compatible),
        protection_state=protection_state,
        password=password,
        visibility=visibility,
        host_extenders=tuple(host_extenders),
        workspace=None if workspace is None else tuple(workspace),
    )
    return pos, project


def parse_project(data: bytes, codepage: str = DEFAULT_CODEPAGE) -> Project:
    """Parse the full contents of a PROJECT stream.

    Raises ``ProjectParseError`` on the first violation; when an encrypted
    field fails to decode the underlying error is chained as ``__cause__``.
    """
    data = bytes(data)
    try:
        pos, project = _parse_project_text(data, codepage)
    except _NoMatch as exc:
        raise ProjectParseError(data[exc.pos:], data) from exc.__cause__
    if pos < len(data):
        logger.debug("Ignoring %d trailing bytes after the PROJECT grammar", len(data) - pos)
    return project


# ---------------------------------------------------------------------------
# Protection removal
# ---------------------------------------------------------------------------

_UNLOCKED_LINES = (
    (b'ID="{', UNLOCKED_ID),
    (b'CMG="', UNLOCKED_CMG),
    (b'DPB="', UNLOCKED_DPB),
    (b'GC="', UNLOCKED_GC),
)


def unlock_project_stream(data: bytes) -> bytes:
    """Swap the ID, CMG, DPB and GC lines for the canonical unlocked lines.

    Lines are split after each LF and every other line is copied unchanged,
    terminator included. Nothing is decrypted or re-encrypted here.
    """
    output = bytearray()
    for line in io.BytesIO(bytes(data)):
        for prefix, replacement in _UNLOCKED_LINES:
            if len(line) >= 5 and line.startswith(prefix):
                logger.debug("Replacing %s line", prefix.split(b"=")[0].decode("ascii"))
                output += replacement
                break
        else:
            output += line
    return bytes(output)


def fit_stream(data: bytes, size: int) -> bytes:
    """Pad ``data`` with CRLF bytes to exactly ``size`` bytes.

    olefile can only overwrite a stream with data of the same size.
    """
    if len(data) > size:
        raise StreamSizeError(len(data), size)
    return data + (b"\r\n" * (size - len(data) + 1))[: size - len(data)]


# ---------------------------------------------------------------------------
# Workbook access
# ---------------------------------------------------------------------------

class WorkbookKind(enum.Enum):
    LEGACY = "xls"
    ZIP = "zip"


def workbook_kind(path: str) -> WorkbookKind:
    """Select the container strategy from the file extension."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".xls":
        return WorkbookKind.LEGACY
    if ext in (".xlsm", ".xlsb"):
        return WorkbookKind.ZIP
    if ext == ".xlsx":
        raise XlsxWorkbookError(path)
    raise NotExcelError(path)


def _open_cfb(bio: io.BytesIO, write_mode: bool = False):
    try:
        return olefile.OleFileIO(bio, write_mode=write_mode)
    except OSError as exc:
        raise CfbOpenError(str(exc)) from exc


def _read_cfb_stream(cfb_bytes: bytes, stream_path: str) -> bytes:
    ole = _open_cfb(io.BytesIO(cfb_bytes))
    try:
        if not ole.exists(stream_path):
            raise NoVbaProjectError(stream_path)
        return ole.openstream(stream_path).read()
    finally:
        ole.close()


def _zip_vba_member(zin: zipfile.ZipFile) -> Optional[zipfile.ZipInfo]:
    for item in zin.infolist():
        if item.filename.lower() == ZIP_VBA_PATH.lower():
            return item
    return None


def read_project_stream(path: str) -> bytes:
    """Return the raw PROJECT stream of the workbook at ``path``."""
    kind = workbook_kind(path)
    if kind is WorkbookKind.LEGACY:
        with open(path, "rb") as handle:
            cfb_bytes = handle.read()
        stream_path = CFB_VBA_PATH
    else:
        with zipfile.ZipFile(path, "r") as zin:
            member = _zip_vba_member(zin)
            if member is None:
                raise NoVbaProjectError(ZIP_VBA_PATH)
            cfb_bytes = zin.read(member)
        stream_path = PROJECT_PATH
    data = _read_cfb_stream(cfb_bytes, stream_path)
    logger.debug("Read %d byte PROJECT stream from %s", len(data), path)
    return data


def rewrite_project_stream(cfb_bytes: bytes, stream_path: str) -> bytes:
    """Return ``cfb_bytes`` with the PROJECT stream at ``stream_path`` unlocked."""
    bio = io.BytesIO(cfb_bytes)
    ole = _open_cfb(bio, write_mode=True)
    try:
        if not ole.exists(stream_path):
            raise NoVbaProjectError(stream_path)
        original = ole.openstream(stream_path).read()
        rewritten = fit_stream(unlock_project_stream(original), len(original))
        ole.write_stream(stream_path, rewritten)
        result = bio.getvalue()
    finally:
        ole.close()
    return result


def _remove_legacy(source: str, target: str) -> None:
    with open(source, "rb") as handle:
        cfb_bytes = handle.read()
    patched = rewrite_project_stream(cfb_bytes, CFB_VBA_PATH)
    with open(target, "wb") as handle:
        handle.write(patched)


def _remove_zip(source: str, target: str) -> None:
    found = False
    with zipfile.ZipFile(source, "r") as zin, zipfile.ZipFile(target, "w") as zout:
        for item in zin.infolist():
            data = zin.read(item.filename)
            if item.filename.lower() == ZIP_VBA_PATH.lower():
                data = rewrite_project_stream(data, PROJECT_PATH)
                found = True
            zout.writestr(item, data)
    if not found:
        raise NoVbaProjectError(ZIP_VBA_PATH)


def unlocked_filename(path: str) -> str:
    root, ext = os.path.splitext(path)
    return f"{root}_unlocked{ext}"


def remove_protection(path: str, in_place: bool = False) -> str:
    """Unlock the VBA project of ``path`` and return the path written."""
    kind = workbook_kind(path)
    output = path if in_place else unlocked_filename(path)
    tmp_output = output + ".tmp"
    try:
        if kind is WorkbookKind.LEGACY:
            _remove_legacy(path, tmp_output)
        else:
            _remove_zip(path, tmp_output)
    except Exception:
        if os.path.exists(tmp_output):
            os.remove(tmp_output)
        raise
    os.replace(tmp_output, output)
    logger.debug("Unlocked VBA project written to %s", output)
    return output


def read_workbook(
    path: str, decode: bool = False, wordlist: Optional[Sequence[str]] = None
) -> Tuple[Project, Optional[str]]:
    """Parse the workbook's VBA project; optionally try to recover its password."""
    project = parse_project(read_project_stream(path))
    decoded = None
    if decode and isinstance(project.password, HashedPassword):
        words = default_wordlist() if wordlist is None else wordlist
        decoded = crack_password(project.password.salt, project.password.hash, words)
    return project, decoded


def format_project(project: Project, decoded: Optional[str] = None, decode: bool = False) -> str:
    """Human-readable report of the protection fields."""
    state = project.protection_state
    lines = [
        "Project Protection State:",
        f"  User Protected: {state.user}",
        f"  Host Protected: {state.host}",
        f"  VBE Protected: {state.vbe}",
    ]
    password = project.password
    if isinstance(password, HashedPassword):
        lines.append("Project Password: Hashed (SHA1)")
        lines.append(f"  Salt: {password.salt.hex()}")
        lines.append(f"  SHA1 Hash: {password.hash.hex()}")
        if decode:
            if decoded is None:
                lines.append("  Was unable to decode the password. Try removing the password, which always works")
            else:
                lines.append(f"  Decoded Password: {decoded}")
    elif isinstance(password, PlainTextPassword):
        lines.append(f"Project Password: {password.text} (plain-text)")
    else:
        lines.append("Project Password: None")
    lines.append("Project Visibility:")
    lines.append("  Visible" if project.visibility is Visibility.VISIBLE else "  Not Visible")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read or remove the VBA project protection of Excel workbooks"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log debugging details to stderr",
    )
    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    read = commands.add_parser("read", help="Read the VBA project protection of the workbook")
    read.add_argument("filename", help="Path to the .xls, .xlsm or .xlsb workbook")
    read.add_argument(
        "--decode",
        "-d",
        action="store_true",
        help="Attempt to recover a hashed password with a dictionary attack",
    )
    read.add_argument(
        "--wordlist",
        "-w",
        help="File of candidate passwords, one per line (defaults to the bundled password.lst)",
    )

    remove = commands.add_parser("remove", help="Remove all VBA project protection")
    remove.add_argument("filename", help="Path to the .xls, .xlsm or .xlsb workbook")
    remove.add_argument(
        "--inplace",
        "--in-place",
        "-i",
        action="store_true",
        dest="in_place",
        help="Overwrite the workbook instead of writing <name>_unlocked next to it",
    )
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    vba_unlock.py - Read or remove VBA project protection in an Excel workbook.
    usage: vba_unlock.py [-h] [--verbose] {read,remove} ...

    Exit status:
        0 on success, 1 when the workbook cannot be read or rewritten,
        2 on invalid arguments or a missing file.
    """
    parser = build_arg_parser()
    if argv is None:
        args = parser.parse_args()
    else:
        args = parser.parse_args(list(argv))

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    source = os.path.abspath(args.filename)
    if not os.path.exists(source):
        parser.error(f"File not found: {source}")

    try:
        if args.command == "read":
            wordlist = load_wordlist(args.wordlist) if args.wordlist else None
            project, decoded = read_workbook(source, decode=args.decode, wordlist=wordlist)
            print(format_project(project, decoded, decode=args.decode), end="")
        else:
            output = remove_protection(source, in_place=args.in_place)
            print("VBA project protection removed.")
            if not args.in_place:
                print(f"Unlocked workbook written to: {output}")
    except (VbaUnlockError, OSError, zipfile.BadZipFile) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
