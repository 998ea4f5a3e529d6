"""
Onion address formats.

Each format generates a fresh key, derives the onion address from the public
half and exports the private half as a tagged base64 string that ends up in
the key file. The registry at the bottom maps the --key names to formats.
"""
import base64
import hashlib

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa
from nacl.bindings import crypto_scalarmult_ed25519_base_noclamp

ONION_CHECKSUM_TAG = b".onion checksum"
ONION_V3_VERSION = b"\x03"


class OnionKeygenError(Exception):
    """Base class for every error raised by the keygen."""


class UnknownFormatError(OnionKeygenError):
    pass


class SecretFormatError(OnionKeygenError):
    """A key file whose contents cannot be decoded."""


def b32(data):
    return base64.b32encode(data).decode("ascii").upper()


def onion_checksum(public_bytes):
    """First two bytes of SHA3-256 over tag, public key and version."""
    digest = hashlib.sha3_256(ONION_CHECKSUM_TAG + public_bytes + ONION_V3_VERSION).digest()
    return digest[:2]


def expand_seed(seed):
    """SHA-512 the 32 byte seed and clamp the scalar half."""
    digest = hashlib.sha512(seed).digest()
    scalar = bytearray(digest[:32])
    scalar[0] &= 248
    scalar[31] &= 127
    scalar[31] |= 64
    return bytes(scalar) + digest[32:]


class KeyFormat:
    """Shared contract of the onion formats."""
    name = None
    tag = None
    onion_length = None

    def generate(self):
        raise NotImplementedError

    def public_bytes(self, key):
        raise NotImplementedError

    def onion_from_public(self, public_bytes):
        raise NotImplementedError

    def secret_bytes(self, key):
        raise NotImplementedError

    def public_from_secret(self, secret_bytes):
        raise NotImplementedError

    def onion(self, key):
        """Uppercase onion address of a key, without the .onion suffix."""
        return self.onion_from_public(self.public_bytes(key))

    def export_secret(self, key):
        payload = base64.b64encode(self.secret_bytes(key)).decode("ascii")
        return self.tag + payload

    def onion_from_secret(self, secret):
        """Re-derive the onion address from a tagged secret string."""
        return self.onion_from_public(self.public_from_secret(self.decode_secret(secret)))

    def decode_secret(self, secret):
        if not secret.startswith(self.tag):
            raise SecretFormatError(f"expected {self.tag!r} tag, got {secret[:16]!r}")
        try:
            return base64.b64decode(secret[len(self.tag):], validate=True)
        except ValueError as e:
            raise SecretFormatError(f"bad base64 payload: {e}") from e

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class Rsa1024Format(KeyFormat):
    """Legacy (v2) onion: base32 of the first half of SHA-1 over the PKCS#1 public DER."""
    name = "rsa"
    tag = "RSA1024:"
    onion_length = 16
    key_size = 1024

    def generate(self):
        return rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

    def public_bytes(self, key):
        return key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.PKCS1
        )

    def onion_from_public(self, public_bytes):
        digest = hashlib.sha1(public_bytes).digest()
        return b32(digest[:len(digest) // 2])

    def secret_bytes(self, key):
        # TraditionalOpenSSL + DER is the PKCS#1 RSAPrivateKey structure
        return key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        )

    def load_key(self, secret_bytes):
        try:
            key = serialization.load_der_private_key(secret_bytes, password=None)
        except ValueError as e:
            raise SecretFormatError(f"not an RSA private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SecretFormatError("not an RSA private key")
        return key

    def public_from_secret(self, secret_bytes):
        return self.public_bytes(self.load_key(secret_bytes))


class Ed25519V3Format(KeyFormat):
    """Modern (v3) onion: base32 of public key, checksum and version byte."""
    name = "ed25519"
    tag = "ED25519-V3:"
    onion_length = 56

    def generate(self):
        return ed25519.Ed25519PrivateKey.generate()

    def public_bytes(self, key):
        return key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    def onion_from_public(self, public_bytes):
        return b32(public_bytes + onion_checksum(public_bytes) + ONION_V3_VERSION)

    def secret_bytes(self, key):
        seed = key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        return expand_seed(seed)

    def public_from_secret(self, secret_bytes):
        if len(secret_bytes) != 64:
            raise SecretFormatError(f"expanded key must be 64 bytes, got {len(secret_bytes)}")
        # The scalar is stored clamped, so no second clamp here
        return crypto_scalarmult_ed25519_base_noclamp(secret_bytes[:32])


FORMATS = {
    Rsa1024Format.name: Rsa1024Format,
    Ed25519V3Format.name: Ed25519V3Format,
}


def get_format(name):
    try:
        return FORMATS[name.lower()]()
    except KeyError:
        raise UnknownFormatError(
            f"unknown key format {name!r}, expected one of: {', '.join(sorted(FORMATS))}"
        ) from None


def format_for_secret(secret):
    """Pick the format whose tag the secret carries."""
    for cls in FORMATS.values():
        if secret.startswith(cls.tag):
            return cls()
    raise SecretFormatError(f"unrecognised key tag in {secret[:16]!r}")


def onion_from_secret(secret):
    return format_for_secret(secret).onion_from_secret(secret)
