"""Persistent X25519 identity, pairing token and trusted admin keys."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

IDENTITY_FILE = "mgmt_identity.json"
_KEY_BYTES = 32
_TOKEN_BYTES = 16


class IdentityError(Exception):
    """Raised when the identity file cannot be read, parsed or written."""


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@dataclass
class MgmtIdentity:
    """The daemon's static key, pairing token and list of trusted admin keys."""

    privkey: str
    token: str
    trusted_admins: list[str] = field(default_factory=list)
    path: Path = field(default=Path(IDENTITY_FILE), compare=False, repr=False)

    @classmethod
    def load_or_create(cls, path: str | Path = IDENTITY_FILE) -> MgmtIdentity:
        """Load the identity at ``path``, generating and saving a new one if absent."""
        path = Path(path)
        if path.exists():
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise IdentityError(f"reading {path.name}: {exc}") from exc
            return cls._from_json(raw, path)
        key = X25519PrivateKey.generate()
        private = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        identity = cls(
            privkey=_b64encode(private),
            token=secrets.token_hex(_TOKEN_BYTES),
            trusted_admins=[],
            path=path,
        )
        identity.save()
        return identity

    @classmethod
    def _from_json(cls, raw: str, path: Path) -> MgmtIdentity:
        error = IdentityError(f"parsing {path.name}")
        try:
            data: Any = json.loads(raw)
        except ValueError as exc:
            raise error from exc
        if not isinstance(data, dict):
            raise error
        privkey = data.get("privkey")
        token = data.get("token")
        trusted = data.get("trusted_admins")
        if not isinstance(privkey, str) or not isinstance(token, str):
            raise error
        if not isinstance(trusted, list) or not all(isinstance(k, str) for k in trusted):
            raise error
        return cls(privkey=privkey, token=token, trusted_admins=list(trusted), path=path)

    def save(self, path: str | Path | None = None) -> None:
        """Write the identity atomically through a temporary file."""
        target = Path(path) if path is not None else self.path
        tmp = target.with_suffix(".json.tmp")
        document = {
            "privkey": self.privkey,
            "token": self.token,
            "trusted_admins": self.trusted_admins,
        }
        try:
            tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(tmp, target)
        except OSError as exc:
            raise IdentityError(f"writing {target.name}: {exc}") from exc

    def privkey_bytes(self) -> bytes:
        """Decode the stored private key."""
        try:
            return base64.b64decode(self.privkey, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise IdentityError("decode privkey") from exc

    def pubkey_fingerprint(self) -> str:
        """Hex SHA-256 of the X25519 public key derived from the private key."""
        raw = self.privkey_bytes()
        if len(raw) != _KEY_BYTES:
            raise IdentityError("privkey not 32 bytes")
        public = X25519PrivateKey.from_private_bytes(raw).public_key()
        return hashlib.sha256(public.public_bytes(Encoding.Raw, PublicFormat.Raw)).hexdigest()

    def is_trusted(self, pubkey_b64: str) -> bool:
        return pubkey_b64 in self.trusted_admins

    def pair(self, pubkey_b64: str) -> bool:
        """Trust an admin key and persist; return False if it was already trusted."""
        if self.is_trusted(pubkey_b64):
            return False
        self.trusted_admins.append(pubkey_b64)
        self.save()
        return True