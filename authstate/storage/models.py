# authstate/storage/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class KeyCategory(str, Enum):
    PRE_KEY = "pre-key"
    SESSION = "session"
    SENDER_KEY = "sender-key"
    SENDER_KEY_MEMORY = "sender-key-memory"
    APP_STATE_SYNC_KEY = "app-state-sync-key"
    APP_STATE_SYNC_VERSION = "app-state-sync-version"

    @classmethod
    def parse(cls, value: "KeyCategory | str") -> "KeyCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown key category: {value!r}") from None

    @property
    def prefix(self) -> str:
        """Identifier prefix used for this category in the legacy single table."""
        return f"{self.value}-"

    @property
    def is_binary(self) -> bool:
        return self in (KeyCategory.SESSION, KeyCategory.SENDER_KEY)


@dataclass
class KeyPair:
    public: bytes
    private: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"public": self.public, "private": self.private}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyPair":
        return cls(public=data["public"], private=data["private"])


@dataclass
class SignedKeyPair:
    key_pair: KeyPair
    signature: bytes
    key_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"keyPair": self.key_pair.to_dict(), "signature": self.signature, "keyId": self.key_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedKeyPair":
        return cls(
            key_pair=KeyPair.from_dict(data["keyPair"]),
            signature=data["signature"],
            key_id=int(data["keyId"]),
        )


# (attribute, wire name) for every scalar/structured credential field
_CREDS_FIELDS = (
    ("registration_id", "registrationId"),
    ("adv_secret_key", "advSecretKey"),
    ("processed_history_messages", "processedHistoryMessages"),
    ("next_pre_key_id", "nextPreKeyId"),
    ("first_unuploaded_pre_key_id", "firstUnuploadedPreKeyId"),
    ("account_sync_counter", "accountSyncCounter"),
    ("account_settings", "accountSettings"),
    ("device_id", "deviceId"),
    ("phone_id", "phoneId"),
    ("identity_id", "identityId"),
    ("backup_token", "backupToken"),
    ("registered", "registered"),
    ("registration", "registration"),
    ("pairing_code", "pairingCode"),
    ("last_prop_hash", "lastPropHash"),
    ("routing_info", "routingInfo"),
    ("me", "me"),
    ("account", "account"),
    ("signal_identities", "signalIdentities"),
    ("my_app_state_key_id", "myAppStateKeyId"),
    ("last_account_sync_timestamp", "lastAccountSyncTimestamp"),
    ("platform", "platform"),
)

_KEY_PAIR_FIELDS = (
    ("noise_key", "noiseKey"),
    ("pairing_ephemeral_key_pair", "pairingEphemeralKeyPair"),
    ("signed_identity_key", "signedIdentityKey"),
)


@dataclass
class AuthenticationCreds:
    """
    Long-term identity and account state of one session.

    Field names follow Python conventions; to_dict()/from_dict() use the
    camelCase names found in `creds` rows written by other clients so that
    legacy data decodes unchanged. Keys this class does not model are kept
    in `extra` and written back verbatim.
    """
    noise_key: KeyPair
    pairing_ephemeral_key_pair: KeyPair
    signed_identity_key: KeyPair
    signed_pre_key: SignedKeyPair
    registration_id: int
    adv_secret_key: str
    processed_history_messages: List[Any] = field(default_factory=list)
    next_pre_key_id: int = 1
    first_unuploaded_pre_key_id: int = 1
    account_sync_counter: int = 0
    account_settings: Dict[str, Any] = field(default_factory=lambda: {"unarchiveChats": False})
    device_id: str = ""
    phone_id: str = ""
    identity_id: bytes = b""
    backup_token: bytes = b""
    registered: bool = False
    registration: Dict[str, Any] = field(default_factory=dict)
    pairing_code: Optional[str] = None
    last_prop_hash: Optional[str] = None
    routing_info: Optional[bytes] = None
    me: Optional[Dict[str, Any]] = None
    account: Optional[Dict[str, Any]] = None
    signal_identities: List[Any] = field(default_factory=list)
    my_app_state_key_id: Optional[str] = None
    last_account_sync_timestamp: Optional[int] = None
    platform: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        for attr, wire in _KEY_PAIR_FIELDS:
            d[wire] = getattr(self, attr).to_dict()
        d["signedPreKey"] = self.signed_pre_key.to_dict()
        for attr, wire in _CREDS_FIELDS:
            d[wire] = getattr(self, attr)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthenticationCreds":
        try:
            kwargs: Dict[str, Any] = {
                attr: KeyPair.from_dict(data[wire]) for attr, wire in _KEY_PAIR_FIELDS
            }
            kwargs["signed_pre_key"] = SignedKeyPair.from_dict(data["signedPreKey"])
            kwargs["registration_id"] = int(data["registrationId"])
            kwargs["adv_secret_key"] = data["advSecretKey"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"credential is missing required field: {exc}") from exc

        for attr, wire in _CREDS_FIELDS:
            if attr in kwargs:
                continue
            if wire in data and data[wire] is not None:
                kwargs[attr] = data[wire]

        modelled = {wire for _, wire in _KEY_PAIR_FIELDS} | {wire for _, wire in _CREDS_FIELDS} | {"signedPreKey"}
        kwargs["extra"] = {k: v for k, v in data.items() if k not in modelled}
        return cls(**kwargs)


@dataclass
class Fingerprint:
    raw_id: int = 0
    current_index: int = 0
    device_indexes: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"rawId": self.raw_id, "currentIndex": self.current_index, "deviceIndexes": list(self.device_indexes)}


@dataclass
class AppStateSyncKeyData:
    key_data: bytes = b""
    fingerprint: Fingerprint = field(default_factory=Fingerprint)
    timestamp: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"keyData": self.key_data, "fingerprint": self.fingerprint.to_dict(), "timestamp": self.timestamp}


@dataclass
class DeviceRecord:
    """Anchor row of the normalized layout; owns every key row of its session."""
    id: int
    session: str
    creds: Optional[AuthenticationCreds] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
