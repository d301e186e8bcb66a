"""
authstate.storage.codec
-----------------------
Lossless conversion between in-memory key material and its stored text form.

Binary values are wrapped in a tagged envelope, {"type": "Buffer", "data": "<base64>"},
which is the layout legacy rows already use, so the decoder can tell a byte
payload from ordinary structured data without outside type information.
Decoding never raises to the caller of the store: decode_entry() returns a
DecodeResult and the store treats a failure as "absent".
"""

from __future__ import annotations
from dataclasses import dataclass, is_dataclass
from typing import Any, Dict, Optional
import json

from ..exceptions import SerializationError
from .models import (
    AppStateSyncKeyData, AuthenticationCreds, Fingerprint, KeyCategory,
)
from ..utils import b64d, b64e

BUFFER_TAG = "Buffer"


# --------- tagged envelope ----------
def _wrap(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": BUFFER_TAG, "data": b64e(bytes(value))}
    if is_dataclass(value) and hasattr(value, "to_dict"):
        return _wrap(value.to_dict())
    if isinstance(value, dict):
        return {str(k): _wrap(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wrap(v) for v in value]
    return value


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        if value.get("type") == BUFFER_TAG and "data" in value and len(value) == 2:
            data = value["data"]
            if isinstance(data, str):
                return b64d(data)
            # Node's native Buffer.toJSON() shape: a list of byte values
            if isinstance(data, list):
                return bytes(data)
        return {k: _unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_unwrap(v) for v in value]
    return value


def encode(value: Any) -> str:
    try:
        return json.dumps(_wrap(value), separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"value is not serializable: {exc}") from exc


def decode(stored: Any) -> Any:
    if isinstance(stored, (bytes, bytearray, memoryview)):
        stored = bytes(stored).decode("utf-8")
    try:
        return _unwrap(json.loads(stored))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"stored value is not decodable: {exc}") from exc


# --------- per-category shapes ----------
@dataclass
class DecodeResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "DecodeResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "DecodeResult":
        return cls(ok=False, error=error)


def _parse_timestamp(ts: Any) -> int:
    if isinstance(ts, bool):
        return 0
    if isinstance(ts, (int, float)):
        return int(ts)
    if isinstance(ts, str):
        try:
            return int(ts.strip(), 10)
        except ValueError:
            return 0
    if isinstance(ts, dict) and "low" in ts:
        # 64-bit {low, high} pairs produced by protobuf long encoders
        return (_as_int(ts.get("high")) << 32) | (_as_int(ts.get("low")) & 0xFFFFFFFF)
    return 0


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def normalize_app_state_sync_key(raw: Any) -> AppStateSyncKeyData:
    """Coerce the loosely typed wire shape of an app-state sync key into its canonical form."""
    if not isinstance(raw, dict):
        raise SerializationError(f"app-state-sync-key must be an object, got {type(raw).__name__}")

    key_data = raw.get("keyData")
    if isinstance(key_data, str):
        key_data = b64d(key_data)
    elif isinstance(key_data, list):
        key_data = bytes(key_data)
    elif not isinstance(key_data, bytes):
        key_data = b""

    fp = raw.get("fingerprint") if isinstance(raw.get("fingerprint"), dict) else {}
    indexes = fp.get("deviceIndexes")
    fingerprint = Fingerprint(
        raw_id=_as_int(fp.get("rawId")),
        current_index=_as_int(fp.get("currentIndex")),
        device_indexes=[_as_int(i) for i in indexes] if isinstance(indexes, list) else [],
    )
    return AppStateSyncKeyData(key_data=key_data, fingerprint=fingerprint, timestamp=_parse_timestamp(raw.get("timestamp")))


def encode_entry(category: KeyCategory | str, value: Any) -> str:
    category = KeyCategory.parse(category)
    if category.is_binary and not isinstance(value, (bytes, bytearray, memoryview)):
        raise SerializationError(f"{category.value} values must be bytes, got {type(value).__name__}")
    return encode(value)


def decode_entry(category: KeyCategory | str, stored: Any) -> DecodeResult:
    category = KeyCategory.parse(category)
    if stored is None:
        return DecodeResult.failure("null payload")
    try:
        value = decode(stored)
        if category.is_binary:
            if not isinstance(value, bytes):
                raise SerializationError(f"{category.value} payload is {type(value).__name__}, expected bytes")
        elif category is KeyCategory.APP_STATE_SYNC_KEY:
            value = normalize_app_state_sync_key(value)
        elif category is KeyCategory.PRE_KEY:
            # either a {public, private} pair or an opaque blob
            if isinstance(value, dict):
                if not isinstance(value.get("public"), bytes):
                    raise SerializationError("pre-key pair has no binary public key")
            elif not isinstance(value, bytes):
                raise SerializationError(f"pre-key payload is {type(value).__name__}")
        elif category is KeyCategory.SENDER_KEY_MEMORY:
            if not isinstance(value, dict):
                raise SerializationError("sender-key-memory payload is not an object")
        elif category is KeyCategory.APP_STATE_SYNC_VERSION:
            if not isinstance(value, dict):
                raise SerializationError("app-state-sync-version payload is not an object")
    except (SerializationError, ValueError, TypeError, OverflowError) as exc:
        return DecodeResult.failure(str(exc))
    return DecodeResult.success(value)


# --------- credentials ----------
def encode_creds(creds: AuthenticationCreds) -> str:
    return encode(creds.to_dict())


def decode_creds(stored: Any) -> AuthenticationCreds:
    return creds_from_data(decode(stored))


def creds_from_data(data: Any) -> AuthenticationCreds:
    if not isinstance(data, dict):
        raise SerializationError("credential payload is not an object")
    try:
        return AuthenticationCreds.from_dict(data)
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc
