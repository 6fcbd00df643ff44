"""Provider checksum and OpenPGP detached-signature validation."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import platform
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

CHECKSUM_SEPARATOR = "  "

_GO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}

# OpenPGP hash algorithm id -> (hashlib name, DER-encoded DigestInfo prefix)
_HASHES = {
    2: ("sha1", bytes.fromhex("3021300906052b0e03021a05000414")),
    8: ("sha256", bytes.fromhex("3031300d060960864801650304020105000420")),
    9: ("sha384", bytes.fromhex("3041300d060960864801650304020205000430")),
    10: ("sha512", bytes.fromhex("3051300d060960864801650304020305000440")),
    11: ("sha224", bytes.fromhex("302d300d06096086480165030402040500041c")),
}

_RSA_ALGORITHMS = (1, 2, 3)
_RSA_SIGN_ALGORITHMS = (1, 3)


class ValidationError(Exception):
    """A provider binary or its checksums failed validation."""


def _go_os() -> str:
    name = sys.platform
    if name.startswith("linux"):
        return "linux"
    if name in ("win32", "cygwin"):
        return "windows"
    for prefix in ("freebsd", "openbsd", "netbsd"):
        if name.startswith(prefix):
            return prefix
    return name


def _go_arch() -> str:
    machine = platform.machine().lower()
    return _GO_ARCH.get(machine, machine)


def sha256_file(file_path: str | Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def validate_checksum_provider(provider_path: str | Path, checksum_path: str | Path) -> str:
    """Check the provider binary against the entry for this platform in a checksums file.

    Returns the verified digest.
    """
    sha256sum = sha256_file(provider_path)
    os_name, arch = _go_os(), _go_arch()
    with open(checksum_path, encoding="utf-8") as handle:
        for raw in handle:
            line = raw.removesuffix("\n").removesuffix("\r")
            split = line.split(CHECKSUM_SEPARATOR)
            if len(split) != 2:
                raise ValidationError("checksum file in incorrect format")
            expected, filename = split
            if os_name in filename and arch in filename:
                if expected == sha256sum:
                    return sha256sum
                raise ValidationError(f"provider checksum invalid expected {filename} got {sha256sum}")
    raise ValidationError(f"didn't find provider checksum validation for {provider_path}")


@dataclass(frozen=True)
class _RSAKey:
    n: int
    e: int

    @property
    def size_bytes(self) -> int:
        return (self.n.bit_length() + 7) // 8


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def take(self, n: int) -> bytes:
        chunk = self._data[self._pos : self._pos + n]
        if len(chunk) != n:
            raise ValidationError("truncated OpenPGP data")
        self._pos += n
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def uint(self, n: int) -> int:
        return int.from_bytes(self.take(n), "big")

    def rest(self) -> bytes:
        chunk = self._data[self._pos :]
        self._pos = len(self._data)
        return chunk

    def mpi(self) -> int:
        bits = self.uint(2)
        return int.from_bytes(self.take((bits + 7) // 8), "big")


def _crc24(data: bytes) -> int:
    crc = 0xB704CE
    for octet in data:
        crc ^= octet << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= 0x1864CFB
    return crc & 0xFFFFFF


def _dearmor(text: str) -> bytes:
    lines = [line.strip() for line in text.strip().splitlines()]
    try:
        begin = next(i for i, line in enumerate(lines) if line.startswith("-----BEGIN PGP"))
        end = next(i for i, line in enumerate(lines) if i > begin and line.startswith("-----END PGP"))
    except StopIteration:
        raise ValidationError("no OpenPGP armor found") from None
    body = lines[begin + 1 : end]
    if "" in body:
        body = body[body.index("") + 1 :]
    checksum = None
    if body and body[-1].startswith("=") and len(body[-1]) == 5:
        checksum = body.pop()[1:]
    try:
        data = base64.b64decode("".join(body), validate=True)
        if checksum is not None and int.from_bytes(base64.b64decode(checksum), "big") != _crc24(data):
            raise ValidationError("OpenPGP armor checksum mismatch")
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"invalid OpenPGP armor: {exc}") from exc
    return data


def _packets(data: bytes) -> Iterator[tuple[int, bytes]]:
    reader = _Reader(data)
    while not reader.at_end():
        header = reader.byte()
        if not header & 0x80:
            raise ValidationError("malformed OpenPGP packet header")
        if header & 0x40:
            tag = header & 0x3F
            body = bytearray()
            while True:
                first = reader.byte()
                partial = False
                if first < 192:
                    length = first
                elif first < 224:
                    length = ((first - 192) << 8) + reader.byte() + 192
                elif first == 255:
                    length = reader.uint(4)
                else:
                    length = 1 << (first & 0x1F)
                    partial = True
                body += reader.take(length)
                if not partial:
                    break
            yield tag, bytes(body)
        else:
            tag = (header >> 2) & 0x0F
            length_type = header & 0x03
            if length_type == 3:
                yield tag, reader.rest()
            else:
                length = reader.uint((1, 2, 4)[length_type])
                yield tag, reader.take(length)


def _parse_public_key(body: bytes) -> tuple[bytes, _RSAKey] | None:
    reader = _Reader(body)
    if reader.byte() != 4:
        return None
    reader.take(4)
    if reader.byte() not in _RSA_ALGORITHMS:
        return None
    n = reader.mpi()
    e = reader.mpi()
    if n < 3 or e < 3 or e % 2 == 0:
        raise ValidationError("invalid RSA key")
    fingerprint = hashlib.sha1(b"\x99" + len(body).to_bytes(2, "big") + body).digest()
    return fingerprint[-8:], _RSAKey(n, e)


def _read_keyring(text: str) -> dict[bytes, _RSAKey]:
    keys: dict[bytes, _RSAKey] = {}
    for tag, body in _packets(_dearmor(text)):
        if tag in (6, 14):
            parsed = _parse_public_key(body)
            if parsed is not None:
                keys[parsed[0]] = parsed[1]
    if not keys:
        raise ValidationError("no usable keys in keyring")
    return keys


@dataclass(frozen=True)
class _Signature:
    sig_type: int
    hash_algo: int
    hashed_part: bytes
    issuer: bytes | None
    left16: bytes
    value: int


def _subpackets(data: bytes) -> Iterator[tuple[int, bytes]]:
    reader = _Reader(data)
    while not reader.at_end():
        first = reader.byte()
        if first < 192:
            length = first
        elif first < 255:
            length = ((first - 192) << 8) + reader.byte() + 192
        else:
            length = reader.uint(4)
        if length == 0:
            raise ValidationError("empty signature subpacket")
        content = reader.take(length)
        yield content[0] & 0x7F, content[1:]


def _issuer(subpackets: bytes) -> bytes | None:
    for kind, content in _subpackets(subpackets):
        if kind == 16 and len(content) == 8:
            return content
        if kind == 33 and len(content) > 8:
            return content[1:][-8:]
    return None


def _parse_signature(body: bytes) -> _Signature:
    reader = _Reader(body)
    if reader.byte() != 4:
        raise ValidationError("unsupported signature version")
    sig_type = reader.byte()
    pub_algo = reader.byte()
    hash_algo = reader.byte()
    hashed_len = reader.uint(2)
    hashed = reader.take(hashed_len)
    hashed_part = body[: 6 + hashed_len]
    unhashed = reader.take(reader.uint(2))
    left16 = reader.take(2)
    if pub_algo not in _RSA_SIGN_ALGORITHMS:
        raise ValidationError(f"unsupported public key algorithm {pub_algo}")
    value = reader.mpi()
    issuer = _issuer(hashed) or _issuer(unhashed)
    return _Signature(sig_type, hash_algo, hashed_part, issuer, left16, value)


def _read_signature(raw: bytes) -> _Signature:
    if raw.lstrip().startswith(b"-----BEGIN"):
        raw = _dearmor(raw.decode("ascii", errors="replace"))
    for tag, body in _packets(raw):
        if tag == 2:
            return _parse_signature(body)
    raise ValidationError("no signature packet found")


def _rsa_verify(key: _RSAKey, value: int, digest_info: bytes) -> None:
    """Check an RSASSA-PKCS1-v1_5 signature value against an encoded digest."""
    size = key.size_bytes
    if value >= key.n or size < len(digest_info) + 11:
        raise ValidationError("RSA verification failure")
    decoded = pow(value, key.e, key.n).to_bytes(size, "big")
    expected = b"\x00\x01" + b"\xff" * (size - len(digest_info) - 3) + b"\x00" + digest_info
    if not hmac.compare_digest(decoded, expected):
        raise ValidationError("RSA verification failure")


def validate_file(target_path: str | Path, signature_path: str | Path, keyring_path: str | Path) -> str:
    """Verify a detached OpenPGP signature of a file against an armored keyring.

    Returns the hex key ID of the signing key.
    """
    keys = _read_keyring(Path(keyring_path).read_text(encoding="ascii"))
    data = Path(target_path).read_bytes()
    signature = _read_signature(Path(signature_path).read_bytes())

    if signature.sig_type == 0x01:
        data = data.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")
    elif signature.sig_type != 0x00:
        raise ValidationError(f"unsupported signature type {signature.sig_type:#x}")
    if signature.hash_algo not in _HASHES:
        raise ValidationError(f"unsupported hash algorithm {signature.hash_algo}")
    hash_name, prefix = _HASHES[signature.hash_algo]

    hasher = hashlib.new(hash_name)
    hasher.update(data)
    hasher.update(signature.hashed_part)
    hasher.update(b"\x04\xff" + len(signature.hashed_part).to_bytes(4, "big"))
    digest = hasher.digest()
    if digest[:2] != signature.left16:
        raise ValidationError("hash tag doesn't match")

    if signature.issuer is None or signature.issuer not in keys:
        raise ValidationError("signature made by unknown entity")
    _rsa_verify(keys[signature.issuer], signature.value, prefix + digest)
    return signature.issuer.hex()