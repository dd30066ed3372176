"""
Tests for trust/untrust recipient rotation.

Tests cover:
- First-use bootstrap to the local public key
- Trusting a key re-encrypts every value for it
- Untrusting refuses to remove the last recipient
- No-op signals for repeated calls
"""
import pytest

from secenvs.audit import read_audit_log
from secenvs.crypto import decrypt, identity_to_public_key
from secenvs.conf import ENCODED_IDENTITY_ENV, ENCRYPTED_PREFIX
from secenvs.envfile import find_key, parse_env_file
from secenvs.exceptions import DecryptionError, RecipientError
from secenvs.project import set_secret
from secenvs.recipients import (
    load_recipients,
    resolve_recipients,
    save_recipients,
    trust,
    untrust,
)
from secenvs.sdk import SecenvSDK

from conftest import encode_identity


@pytest.fixture
def populated(env_file, config, identity):
    """A secret file with two encrypted values and one plaintext value."""
    set_secret("API_KEY", "s3cret", env_file, config=config)
    set_secret("DB_PASS", "hunter2", env_file, config=config)
    with open(env_file, "a") as fp:
        fp.write("PLAIN=visible\n")
    return env_file


def _decrypt_key(path, key, identity):
    line = find_key(parse_env_file(path), key)
    return decrypt(identity, line.value[len(ENCRYPTED_PREFIX):])


class TestBootstrap:

    def test_defaults_to_local_key(self, env_file, config, public_key):
        """Test an empty file resolves to the local public key."""
        assert load_recipients(env_file) == []
        assert resolve_recipients(env_file, config) == [public_key]


class TestTrust:

    def test_trust_reencrypts_every_value(self, populated, config, public_key, other_identity):
        """Test a newly trusted identity can decrypt every value."""
        other_pub = identity_to_public_key(other_identity)
        result = trust(other_pub, populated, config)
        assert result.changed is True
        assert result.recipients == [public_key, other_pub]
        assert result.reencrypted == 2
        assert load_recipients(populated) == [public_key, other_pub]
        assert _decrypt_key(populated, "API_KEY", other_identity) == "s3cret"
        assert _decrypt_key(populated, "DB_PASS", other_identity) == "hunter2"
        assert find_key(parse_env_file(populated), "PLAIN").value == "visible"

    def test_trusted_identity_reads_through_sdk(
        self, populated, config, other_identity, monkeypatch
    ):
        """Test trust followed by get from the new identity succeeds."""
        trust(identity_to_public_key(other_identity), populated, config)
        monkeypatch.setenv(ENCODED_IDENTITY_ENV, encode_identity(other_identity))
        assert SecenvSDK(populated).get("API_KEY") == "s3cret"

    def test_already_trusted(self, populated, config, public_key):
        """Test trusting a present key is a no-op."""
        before = populated.read_bytes()
        result = trust(public_key, populated, config)
        assert result.changed is False
        assert result.reencrypted == 0
        assert populated.read_bytes() == before

    def test_trust_is_audited(self, populated, config, other_identity):
        other_pub = identity_to_public_key(other_identity)
        trust(other_pub, populated, config)
        entries = read_audit_log(populated)
        assert (entries[-1].action, entries[-1].key) == ("TRUST", other_pub)
        assert all(e.verified for e in entries)

    def test_invalid_key(self, populated, config):
        before = populated.read_bytes()
        with pytest.raises(RecipientError):
            trust("ssh-rsa AAAAB3Nza", populated, config)
        assert populated.read_bytes() == before

    def test_recipient_block_is_single(self, populated, config, other_identity):
        """Test rotation rewrites the recipient lines as one block."""
        trust(identity_to_public_key(other_identity), populated, config)
        lines = populated.read_text().splitlines()
        recipient_rows = [i for i, line in enumerate(lines) if line.startswith("_RECIPIENT=")]
        assert recipient_rows == [0, 1]


class TestUntrust:

    def test_sole_recipient_refused(self, populated, config, public_key):
        """Test removing the last recipient fails and writes nothing."""
        before = populated.read_bytes()
        with pytest.raises(RecipientError, match="last recipient"):
            untrust(public_key, populated, config)
        assert populated.read_bytes() == before

    def test_untrust_revokes_access(self, populated, config, identity, public_key, other_identity):
        """Test an untrusted identity can no longer read rotated values."""
        other_pub = identity_to_public_key(other_identity)
        trust(other_pub, populated, config)
        result = untrust(other_pub, populated, config)
        assert result.changed is True
        assert result.recipients == [public_key]
        assert load_recipients(populated) == [public_key]
        assert _decrypt_key(populated, "API_KEY", identity) == "s3cret"
        with pytest.raises(DecryptionError):
            _decrypt_key(populated, "API_KEY", other_identity)
        assert read_audit_log(populated)[-1].action == "UNTRUST"

    def test_untrust_non_member(self, populated, config, other_identity):
        before = populated.read_bytes()
        result = untrust(identity_to_public_key(other_identity), populated, config)
        assert result.changed is False
        assert populated.read_bytes() == before

    def test_rotation_is_idempotent(self, populated, config, public_key, other_identity):
        """Test saving the same set again keeps every value readable."""
        other_pub = identity_to_public_key(other_identity)
        save_recipients([public_key, other_pub], populated, config)
        save_recipients([public_key, other_pub, public_key], populated, config)
        assert load_recipients(populated) == [public_key, other_pub]
        assert _decrypt_key(populated, "DB_PASS", other_identity) == "hunter2"

    def test_save_empty_set_refused(self, populated, config):
        with pytest.raises(RecipientError):
            save_recipients([], populated, config)
