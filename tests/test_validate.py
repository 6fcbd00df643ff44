import base64
import hashlib
import random
import textwrap

import pytest

from cqhub import validate
from cqhub.validate import (
    ValidationError,
    sha256_file,
    validate_checksum_provider,
    validate_file,
)

CREATED = 1_600_000_000
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
SHA256_DIGEST_INFO = bytes.fromhex("3031300d060960864801650304020105000420")
PUBLIC_EXPONENT = 65537


def _is_probable_prime(candidate, rng, rounds=32):
    if candidate < 2:
        return False
    for small in (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37):
        if candidate % small == 0:
            return candidate == small
    d, s = candidate - 1, 0
    while d % 2 == 0:
        d //= 2
        s += 1
    for _ in range(rounds):
        a = rng.randrange(2, candidate - 1)
        x = pow(a, d, candidate)
        if x in (1, candidate - 1):
            continue
        for _ in range(s - 1):
            x = pow(x, 2, candidate)
            if x == candidate - 1:
                break
        else:
            return False
    return True


def _prime(bits, rng):
    while True:
        candidate = rng.getrandbits(bits) | (1 << (bits - 1)) | (1 << (bits - 2)) | 1
        if (candidate - 1) % PUBLIC_EXPONENT and _is_probable_prime(candidate, rng):
            return candidate


def _generate_key(seed, bits=1024):
    rng = random.Random(seed)
    while True:
        p = _prime(bits // 2, rng)
        q = _prime(bits // 2, rng)
        if p != q and (p * q).bit_length() == bits:
            break
    n = p * q
    d = pow(PUBLIC_EXPONENT, -1, (p - 1) * (q - 1))
    return n, PUBLIC_EXPONENT, d


def _mpi(value):
    bits = value.bit_length()
    return bits.to_bytes(2, "big") + value.to_bytes((bits + 7) // 8, "big")


def _packet(tag, body):
    return bytes([0xC0 | tag, 0xFF]) + len(body).to_bytes(4, "big") + body


def _public_key_body(key):
    n, e, _ = key
    return b"\x04" + CREATED.to_bytes(4, "big") + b"\x01" + _mpi(n) + _mpi(e)


def _key_id(body):
    return hashlib.sha1(b"\x99" + len(body).to_bytes(2, "big") + body).digest()[-8:]


def _sign_digest(key, digest):
    n, _, d = key
    size = (n.bit_length() + 7) // 8
    info = SHA256_DIGEST_INFO + digest
    encoded = b"\x00\x01" + b"\xff" * (size - len(info) - 3) + b"\x00" + info
    return pow(int.from_bytes(encoded, "big"), d, n)


def _signature_packet(key, key_id, data):
    hashed = bytes([5, 2]) + CREATED.to_bytes(4, "big")
    hashed_part = bytes([4, 0, 1, 8]) + len(hashed).to_bytes(2, "big") + hashed
    trailer = b"\x04\xff" + len(hashed_part).to_bytes(4, "big")
    digest = hashlib.sha256(data + hashed_part + trailer).digest()
    unhashed = bytes([9, 16]) + key_id
    body = (
        hashed_part
        + len(unhashed).to_bytes(2, "big")
        + unhashed
        + digest[:2]
        + _mpi(_sign_digest(key, digest))
    )
    return _packet(2, body)


def _armor(kind, data, checksum_line=None):
    lines = [f"-----BEGIN PGP {kind}-----", ""]
    lines += textwrap.wrap(base64.b64encode(data).decode("ascii"), 64)
    if checksum_line:
        lines.append(checksum_line)
    lines.append(f"-----END PGP {kind}-----")
    return "\n".join(lines) + "\n"


@pytest.fixture(scope="module")
def signer():
    key = _generate_key(1)
    body = _public_key_body(key)
    return key, body, _key_id(body)


@pytest.fixture
def signed_files(tmp_path, signer):
    key, body, key_id = signer
    target = tmp_path / "checksums.txt"
    target.write_bytes(b"abc123  cq-provider-aws_linux_amd64\n")
    keyring = tmp_path / "key.asc"
    keyring.write_text(_armor("PUBLIC KEY BLOCK", _packet(6, body)))
    sig = tmp_path / "checksums.txt.sig"
    sig.write_bytes(_signature_packet(key, key_id, target.read_bytes()))
    return target, sig, keyring, key_id


def test_sha256_file_known_values(tmp_path):
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    abc = tmp_path / "abc"
    abc.write_bytes(b"abc")
    assert sha256_file(empty) == EMPTY_SHA256
    assert sha256_file(abc) == ABC_SHA256


def test_sha256_file_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        sha256_file(tmp_path / "nope")


def _platform_name():
    return f"cq-provider-aws_{validate._go_os()}_{validate._go_arch()}"


def test_checksum_matches_for_platform(tmp_path):
    provider = tmp_path / "provider"
    provider.write_bytes(b"abc")
    checksums = tmp_path / "checksums.txt"
    checksums.write_text(
        f"{'0' * 64}  cq-provider-aws_plan9_mips64\n{ABC_SHA256}  {_platform_name()}\n"
    )
    assert validate_checksum_provider(provider, checksums) == ABC_SHA256


def test_checksum_mismatch_raises(tmp_path):
    provider = tmp_path / "provider"
    provider.write_bytes(b"abc")
    checksums = tmp_path / "checksums.txt"
    checksums.write_text(f"{EMPTY_SHA256}  {_platform_name()}\n")
    with pytest.raises(ValidationError, match="provider checksum invalid"):
        validate_checksum_provider(provider, checksums)


def test_checksum_bad_format_raises(tmp_path):
    provider = tmp_path / "provider"
    provider.write_bytes(b"abc")
    checksums = tmp_path / "checksums.txt"
    checksums.write_text(f"{ABC_SHA256} {_platform_name()}\n")
    with pytest.raises(ValidationError, match="incorrect format"):
        validate_checksum_provider(provider, checksums)


def test_checksum_missing_platform_raises(tmp_path):
    provider = tmp_path / "provider"
    provider.write_bytes(b"abc")
    checksums = tmp_path / "checksums.txt"
    checksums.write_text(f"{ABC_SHA256}  cq-provider-aws_plan9_mips64\n")
    with pytest.raises(ValidationError, match="didn't find provider checksum"):
        validate_checksum_provider(provider, checksums)


def test_validate_file_binary_signature(signed_files):
    target, sig, keyring, key_id = signed_files
    assert validate_file(target, sig, keyring) == key_id.hex()


def test_validate_file_armored_signature(signed_files):
    target, sig, keyring, key_id = signed_files
    sig.write_text(_armor("SIGNATURE", sig.read_bytes()))
    assert validate_file(target, sig, keyring) == key_id.hex()


def test_validate_file_tampered_target_raises(signed_files):
    target, sig, keyring, _ = signed_files
    target.write_bytes(b"tampered  cq-provider-aws_linux_amd64\n")
    with pytest.raises(ValidationError):
        validate_file(target, sig, keyring)


def test_validate_file_forged_signature_value_raises(tmp_path, signed_files, signer):
    target, _, keyring, key_id = signed_files
    key, _, _ = signer
    forged_key = (key[0], key[1], key[2] + 2)
    sig = tmp_path / "forged.sig"
    sig.write_bytes(_signature_packet(forged_key, key_id, target.read_bytes()))
    with pytest.raises(ValidationError, match="RSA verification failure"):
        validate_file(target, sig, keyring)


def test_validate_file_unknown_signer_raises(tmp_path, signed_files):
    target, _, keyring, _ = signed_files
    other = _generate_key(2)
    other_id = _key_id(_public_key_body(other))
    sig = tmp_path / "other.sig"
    sig.write_bytes(_signature_packet(other, other_id, target.read_bytes()))
    with pytest.raises(ValidationError, match="unknown entity"):
        validate_file(target, sig, keyring)


def test_validate_file_bad_armor_checksum_raises(signed_files, signer):
    target, sig, keyring, _ = signed_files
    _, body, _ = signer
    keyring.write_text(_armor("PUBLIC KEY BLOCK", _packet(6, body), checksum_line="=AAAA"))
    with pytest.raises(ValidationError, match="checksum"):
        validate_file(target, sig, keyring)


def test_validate_file_keyring_without_keys_raises(signed_files):
    target, sig, keyring, _ = signed_files
    keyring.write_text(_armor("PUBLIC KEY BLOCK", sig.read_bytes()))
    with pytest.raises(ValidationError, match="no usable keys"):
        validate_file(target, sig, keyring)