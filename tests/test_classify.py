import pytest

from authstate.storage.classify import (
    RULES, classify, legacy_identifier, more_specific_prefixes, split_identifier,
)
from authstate.storage.models import KeyCategory


@pytest.mark.parametrize("identifier, expected", [
    ("pre-key-12", KeyCategory.PRE_KEY),
    ("session-123@s.whatsapp.net.0", KeyCategory.SESSION),
    ("sender-key-group@g.us--peer--0", KeyCategory.SENDER_KEY),
    ("sender-key-memory-group@g.us", KeyCategory.SENDER_KEY_MEMORY),
    ("app-state-sync-key-AAAAAQ==", KeyCategory.APP_STATE_SYNC_KEY),
    ("app-state-sync-version-regular_high", KeyCategory.APP_STATE_SYNC_VERSION),
])
def test_classify_known_prefixes(identifier, expected):
    assert classify(identifier) is expected


@pytest.mark.parametrize("identifier", ["creds", "pre-key-", "unknown-1", "Session-abc", ""])
def test_classify_unknown(identifier):
    assert classify(identifier) is None


def test_rules_are_most_specific_first():
    lengths = [len(prefix) for prefix, _ in RULES]
    assert lengths == sorted(lengths, reverse=True)
    prefixes = [prefix for prefix, _ in RULES]
    assert prefixes.index("sender-key-memory-") < prefixes.index("sender-key-")


def test_split_identifier():
    assert split_identifier("sender-key-memory-abc") == (KeyCategory.SENDER_KEY_MEMORY, "abc")
    assert split_identifier("sender-key-abc") == (KeyCategory.SENDER_KEY, "abc")
    assert split_identifier("creds") is None


def test_legacy_identifier():
    assert legacy_identifier("session", "abc") == "session-abc"
    assert legacy_identifier(KeyCategory.APP_STATE_SYNC_VERSION, "v") == "app-state-sync-version-v"


def test_more_specific_prefixes():
    assert more_specific_prefixes(KeyCategory.SENDER_KEY) == ["sender-key-memory-"]
    assert more_specific_prefixes(KeyCategory.SENDER_KEY_MEMORY) == []
    assert more_specific_prefixes(KeyCategory.APP_STATE_SYNC_KEY) == []
