"""
Archive signing with Ed25519 keypairs.

Keys live in a keys directory as two companion files, ``<name>.pubkey`` and
``<name>.privkey`` (hex encoded). Signatures are detached files written next to
the archive as ``<archive>.<key name>.sig``.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import nacl.signing
from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError

logger = logging.getLogger(__name__)

PUBLIC_KEY_SUFFIX = ".pubkey"
PRIVATE_KEY_SUFFIX = ".privkey"
SIGNATURE_SUFFIX = ".sig"


class SigningError(Exception):
    """Raised when keys or archives cannot be read or written."""


@dataclass(frozen=True)
class Keypair:
    """A named Ed25519 keypair."""
    name: str
    public_key: nacl.signing.VerifyKey
    private_key: nacl.signing.SigningKey = field(repr=False)

    @property
    def fingerprint(self) -> str:
        return self.public_key.encode(encoder=HexEncoder).decode("ascii")[:16]


@dataclass(frozen=True)
class Signature:
    """A detached signature bound to one archive and one key."""
    key_name: str
    archive: Path
    path: Path
    data: bytes = field(repr=False)


def signature_path(archive_path: Union[str, Path], key_name: str) -> Path:
    archive_path = Path(archive_path)
    return archive_path.with_name(f"{archive_path.name}.{key_name}{SIGNATURE_SUFFIX}")


def load_public_key(path: Union[str, Path]) -> nacl.signing.VerifyKey:
    """
    Load a public key file.

    Raises:
        SigningError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        return nacl.signing.VerifyKey(path.read_bytes().strip(), encoder=HexEncoder)
    except OSError as e:
        raise SigningError(f"Failed to read public key {path}: {e}") from e
    except (CryptoError, ValueError, TypeError) as e:
        raise SigningError(f"Malformed public key {path}") from e


def read_signature(path: Union[str, Path], archive_path: Union[str, Path]) -> Signature:
    """Read a detached signature file produced by ``Signer.sign``."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise SigningError(f"Failed to read signature {path}: {e}") from e

    key_name = path.name[len(Path(archive_path).name) + 1:-len(SIGNATURE_SUFFIX)]
    return Signature(key_name=key_name, archive=Path(archive_path), path=path, data=data)


class Signer:
    """Creates keypairs, signs archives and verifies signatures."""

    def __init__(self, keys_dir: Union[str, Path]):
        """
        Initialize the signer.

        Args:
            keys_dir: Directory holding the keypair files
        """
        self.keys_dir = Path(keys_dir)

    def key_paths(self, name: str):
        return (
            self.keys_dir / f"{name}{PUBLIC_KEY_SUFFIX}",
            self.keys_dir / f"{name}{PRIVATE_KEY_SUFFIX}",
        )

    def exists(self, name: str) -> bool:
        return any(path.exists() for path in self.key_paths(name))

    def generate(self, name: str) -> Keypair:
        """
        Create and persist a new keypair.

        Raises:
            SigningError: If a keypair of that name already exists or cannot be written
        """
        public_path, private_path = self.key_paths(name)
        if self.exists(name):
            raise SigningError(f"Keypair '{name}' already exists in {self.keys_dir}")

        private_key = nacl.signing.SigningKey.generate()
        keypair = Keypair(name=name, public_key=private_key.verify_key, private_key=private_key)

        try:
            self.keys_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(private_key.encode(encoder=HexEncoder))
            with open(public_path, "xb") as f:
                f.write(keypair.public_key.encode(encoder=HexEncoder))
        except FileExistsError as e:
            raise SigningError(f"Keypair '{name}' already exists in {self.keys_dir}") from e
        except OSError as e:
            raise SigningError(f"Failed to write keypair '{name}': {e}") from e

        logger.info(f"Generated keypair '{name}' (fingerprint {keypair.fingerprint})")
        return keypair

    def load(self, name: str) -> Keypair:
        """
        Load an existing keypair.

        Raises:
            SigningError: If either key file is missing or malformed
        """
        public_path, private_path = self.key_paths(name)
        try:
            private_key = nacl.signing.SigningKey(private_path.read_bytes().strip(), encoder=HexEncoder)
        except OSError as e:
            raise SigningError(f"Failed to read private key '{name}': {e.strerror}") from e
        except (CryptoError, ValueError, TypeError) as e:
            raise SigningError(f"Malformed private key '{name}'") from e

        public_key = load_public_key(public_path)
        if public_key != private_key.verify_key:
            raise SigningError(f"Public and private key files of '{name}' do not match")

        return Keypair(name=name, public_key=public_key, private_key=private_key)

    def load_public(self, path: Union[str, Path, None] = None, name: Optional[str] = None) -> nacl.signing.VerifyKey:
        """Load a public key by file path, or by keypair name from the keys directory."""
        if path is None:
            if name is None:
                raise ValueError("Either path or name is required")
            path = self.key_paths(name)[0]
        return load_public_key(path)

    def sign(self, archive_path: Union[str, Path], keypair: Keypair) -> Signature:
        """
        Sign the current bytes of an archive and write the detached signature.

        Raises:
            SigningError: If the archive cannot be read or the signature written
        """
        archive_path = Path(archive_path)
        try:
            data = archive_path.read_bytes()
        except OSError as e:
            raise SigningError(f"Failed to read archive {archive_path}: {e.strerror}") from e

        signature = keypair.private_key.sign(data).signature
        path = signature_path(archive_path, keypair.name)
        try:
            path.write_bytes(signature)
        except OSError as e:
            raise SigningError(f"Failed to write signature {path}: {e.strerror}") from e

        logger.info(f"Signed {archive_path.name} with key '{keypair.name}'")
        return Signature(key_name=keypair.name, archive=archive_path, path=path, data=signature)

    @staticmethod
    def verify(archive_path: Union[str, Path], signature: Union[Signature, bytes],
               public_key: nacl.signing.VerifyKey) -> bool:
        """
        Verify a detached signature against an archive's current bytes.

        Returns:
            True if the signature is valid, False on any mismatch

        Raises:
            SigningError: If the archive cannot be read
        """
        archive_path = Path(archive_path)
        try:
            data = archive_path.read_bytes()
        except OSError as e:
            raise SigningError(f"Failed to read archive {archive_path}: {e.strerror}") from e

        raw = signature.data if isinstance(signature, Signature) else signature
        try:
            public_key.verify(data, raw)
        except (BadSignatureError, ValueError, TypeError):
            return False

        return True
