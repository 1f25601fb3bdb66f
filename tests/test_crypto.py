"""Tests for the crypto module."""

import base64

import pytest

from sigchat.crypto import (
    KeyPair,
    base64url_to_bytes,
    build_challenge_message,
    bytes_to_base64url,
    canonical_identity_key,
    decode_signature,
    default_display_name,
    generate_keypair,
    generate_nonce,
    parse_identity_key,
    sign_message,
    verify_signature,
)
from sigchat.errors import InvalidIdentity


class TestBase64:
    def test_base64url_has_no_padding(self):
        encoded = bytes_to_base64url(b"\xff\xfe\xfd\xfc")
        assert "=" not in encoded
        assert base64url_to_bytes(encoded) == b"\xff\xfe\xfd\xfc"

    def test_decodes_standard_base64(self):
        """Standard alphabet with padding is accepted too."""
        data = bytes(range(250, 256)) * 11
        assert base64url_to_bytes(base64.b64encode(data).decode()) == data


class TestKeyPair:
    def test_generate_keypair_sizes(self):
        keypair = generate_keypair()
        assert len(keypair.private_key) == 32
        assert len(keypair.public_key) == 32

    def test_generated_keypairs_differ(self):
        keys = {generate_keypair().identity_key for _ in range(10)}
        assert len(keys) == 10

    def test_from_seed_is_deterministic(self):
        seed = b"\x01" * 32
        assert KeyPair.from_seed(seed).identity_key == KeyPair.from_seed(seed).identity_key

    def test_restore_from_private_key_base64(self):
        keypair = generate_keypair()
        restored = KeyPair.from_private_key_base64(keypair.private_key_base64)
        assert restored.public_key == keypair.public_key

    def test_sign_produces_verifiable_signature(self):
        keypair = generate_keypair()
        signature = keypair.sign("hello")
        assert verify_signature("hello", base64url_to_bytes(signature), keypair.public_key)


class TestIdentityKeys:
    def test_parse_valid_key(self):
        keypair = generate_keypair()
        assert parse_identity_key(keypair.identity_key) == keypair.public_key

    def test_parse_strips_whitespace(self):
        keypair = generate_keypair()
        assert parse_identity_key(f"  {keypair.identity_key}\n") == keypair.public_key

    @pytest.mark.parametrize("value", [None, "", "not base64 !!", "YWJj", 42])
    def test_parse_rejects_malformed(self, value):
        with pytest.raises(InvalidIdentity):
            parse_identity_key(value)

    def test_parse_rejects_wrong_length(self):
        with pytest.raises(InvalidIdentity):
            parse_identity_key(bytes_to_base64url(b"\x00" * 31))

    def test_canonical_key_folds_alternate_spellings(self):
        """Padding, the standard alphabet and whitespace all map to one spelling."""
        keypair = generate_keypair()
        key = keypair.identity_key
        standard = base64.b64encode(keypair.public_key).decode()

        assert canonical_identity_key(key) == key
        assert canonical_identity_key(key + "=") == key
        assert canonical_identity_key(standard) == key
        assert canonical_identity_key(f" {key}\n") == key

    def test_canonical_key_rejects_malformed(self):
        with pytest.raises(InvalidIdentity):
            canonical_identity_key("nobody")

    def test_default_display_name(self):
        assert default_display_name("AbCdEfGhIj") == "User_AbCdEf"


class TestChallenges:
    def test_nonce_is_128_bit_hex(self):
        nonce = generate_nonce()
        assert len(nonce) == 32
        int(nonce, 16)

    def test_nonces_are_unique(self):
        assert len({generate_nonce() for _ in range(20)}) == 20

    def test_message_embeds_nonce_and_key(self):
        message = build_challenge_message("abc123", "KEY")
        assert message.startswith("sigchat Authentication\n\n")
        assert "Nonce: abc123" in message
        assert message.endswith("Identity: KEY")


class TestSignatures:
    def test_verify_rejects_other_message(self):
        keypair = generate_keypair()
        signature = sign_message("one", keypair.private_key)
        assert not verify_signature("two", signature, keypair.public_key)

    def test_verify_rejects_other_key(self):
        signer = generate_keypair()
        other = generate_keypair()
        signature = sign_message("msg", signer.private_key)
        assert not verify_signature("msg", signature, other.public_key)

    def test_verify_rejects_wrong_length(self):
        keypair = generate_keypair()
        assert not verify_signature("msg", b"\x00" * 10, keypair.public_key)

    def test_decode_signature(self):
        keypair = generate_keypair()
        raw = sign_message("msg", keypair.private_key)
        assert decode_signature(bytes_to_base64url(raw)) == raw
        assert decode_signature(base64.b64encode(raw).decode()) == raw

    @pytest.mark.parametrize("value", [None, "", 12])
    def test_decode_signature_rejects_non_strings(self, value):
        assert decode_signature(value) is None
