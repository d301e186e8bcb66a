"""
authstate.crypto
----------------
Key generation for a brand-new credential (first boot of a session).

- X25519: noise, pairing-ephemeral, identity and signed pre-key pairs
- Ed25519: default signer for the signed pre-key
- init_auth_creds(): assembles a complete AuthenticationCreds

The store itself never encrypts or signs anything; this module only exists
so that a session with no persisted credential can start from fresh keys.
"""

from __future__ import annotations
from typing import Callable, Optional, Tuple
import os, secrets, uuid

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519

from .storage.models import AuthenticationCreds, KeyPair, SignedKeyPair
from .utils import b64e, b64url_e

Signer = Callable[[bytes, bytes], bytes]

# version byte prepended to Curve25519 public keys on the wire
KEY_TYPE_DJB = b"\x05"


# --------- X25519 ----------
def x25519_generate() -> Tuple[bytes, bytes]:
    sk = x25519.X25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()


def generate_key_pair() -> KeyPair:
    priv, pub = x25519_generate()
    return KeyPair(public=pub, private=priv)


def signal_pub_key(pub: bytes) -> bytes:
    return pub if len(pub) == 33 else KEY_TYPE_DJB + pub


# --------- Ed25519 ----------
def ed25519_sign(priv_raw: bytes, data: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.sign(data)


def ed25519_verify(pub_raw: bytes, sig: bytes, data: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def ed25519_public_for(priv_raw: bytes) -> bytes:
    return ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw).public_key().public_bytes_raw()


def signed_key_pair(identity: KeyPair, key_id: int, signer: Optional[Signer] = None) -> SignedKeyPair:
    signer = signer or ed25519_sign
    pre_key = generate_key_pair()
    signature = signer(identity.private, signal_pub_key(pre_key.public))
    return SignedKeyPair(key_pair=pre_key, signature=signature, key_id=key_id)


def registration_id() -> int:
    return int.from_bytes(os.urandom(2), "little") & 16383


def init_auth_creds(signer: Optional[Signer] = None) -> AuthenticationCreds:
    """
    Fresh credential for an unpaired session. `signer(private, message)`
    signs the signed pre-key; pass the protocol's own signer when peers must
    verify it.
    """
    identity = generate_key_pair()
    return AuthenticationCreds(
        noise_key=generate_key_pair(),
        pairing_ephemeral_key_pair=generate_key_pair(),
        signed_identity_key=identity,
        signed_pre_key=signed_key_pair(identity, 1, signer),
        registration_id=registration_id(),
        adv_secret_key=b64e(secrets.token_bytes(32)),
        processed_history_messages=[],
        next_pre_key_id=1,
        first_unuploaded_pre_key_id=1,
        account_sync_counter=0,
        account_settings={"unarchiveChats": False},
        device_id=b64url_e(uuid.uuid4().bytes),
        phone_id=str(uuid.uuid4()),
        identity_id=secrets.token_bytes(20),
        backup_token=secrets.token_bytes(20),
        registered=False,
        registration={},
    )
