"""Tests for key derivation, envelopes and the password hash."""

import base64

import pytest

from cipherdiary.crypto import (
    KDF_ALGORITHM,
    KDF_HASH,
    MAX_ITERATIONS,
    NONCE_LEN,
    KdfParams,
    calibrate_kdf_params,
    decrypt,
    derive_key,
    encrypt,
    generate_content_key,
    generate_kdf_params,
    hash_password,
    unwrap_key,
    verify_password,
    wrap_key,
)
from cipherdiary.errors import DecryptError, ValidationError


@pytest.fixture
def params():
    return generate_kdf_params(iterations=1000)


@pytest.fixture
def key(params):
    return derive_key("passw0rd-one", params)


class TestDeriveKey:
    """Tests for PBKDF2 key derivation."""

    def test_deterministic_for_same_inputs(self, params):
        assert derive_key("passw0rd-one", params) == derive_key("passw0rd-one", params)

    def test_key_is_32_bytes(self, key):
        assert len(key) == 32

    def test_different_salt_gives_different_key(self, params):
        other = generate_kdf_params(iterations=1000)
        assert other.salt != params.salt
        assert derive_key("passw0rd-one", params) != derive_key("passw0rd-one", other)

    def test_empty_password_rejected(self, params):
        with pytest.raises(ValidationError):
            derive_key("", params)

    def test_unsupported_algorithm_rejected(self, params):
        bad = KdfParams("scrypt", KDF_HASH, 1000, params.salt)
        with pytest.raises(ValidationError):
            derive_key("passw0rd-one", bad)

    def test_params_dict_roundtrip(self, params):
        assert KdfParams.from_dict(params.to_dict()) == params
        assert params.algorithm == KDF_ALGORITHM


class TestEnvelope:
    """Tests for the AES-GCM envelope."""

    def test_roundtrip_unicode(self, key):
        text = "今天天气很好\nline two  "
        assert decrypt(encrypt(text, key), key) == text

    def test_fresh_nonce_per_call(self, key):
        a, b = encrypt("same", key), encrypt("same", key)
        assert a != b
        assert base64.b64decode(a)[:NONCE_LEN] != base64.b64decode(b)[:NONCE_LEN]

    def test_wrong_key_fails(self, key, params):
        other = derive_key("another-passw0rd", params)
        with pytest.raises(DecryptError):
            decrypt(encrypt("secret", key), other)

    def test_tampered_envelope_fails(self, key):
        raw = bytearray(base64.b64decode(encrypt("secret", key)))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptError):
            decrypt(base64.b64encode(bytes(raw)).decode(), key)

    def test_bad_base64_fails(self, key):
        with pytest.raises(DecryptError):
            decrypt("not base64!!", key)

    def test_short_envelope_fails(self, key):
        with pytest.raises(DecryptError):
            decrypt(base64.b64encode(b"short").decode(), key)

    def test_decrypt_error_is_auth_error(self, key):
        from cipherdiary.errors import AuthError

        with pytest.raises(AuthError):
            decrypt("AAAA", key)


class TestCalibration:
    """Tests for KDF iteration calibration."""

    def test_keeps_initial_when_in_window(self):
        calls = []

        def measure(iterations):
            calls.append(iterations)
            return iterations / 1000.0

        params = calibrate_kdf_params("passw0rd-one", measure=measure)
        assert params.iterations == 300_000
        assert calls == [300_000]

    def test_clamps_to_maximum_and_stops(self):
        calls = []

        def measure(iterations):
            calls.append(iterations)
            return iterations / 10_000.0

        params = calibrate_kdf_params("passw0rd-one", measure=measure)
        assert params.iterations == MAX_ITERATIONS
        assert len(calls) <= 8

    def test_attempts_are_bounded(self):
        calls = []

        def measure(iterations):
            calls.append(iterations)
            return 10_000.0 if len(calls) % 2 else 1.0

        calibrate_kdf_params("passw0rd-one", measure=measure, max_attempts=5)
        assert len(calls) <= 5


class TestKeyWrapping:
    """Tests for wrapping the content key under the password key."""

    def test_unwrap_with_same_key(self, key):
        content_key = generate_content_key()
        assert len(content_key) == 32
        assert unwrap_key(wrap_key(content_key, key), key) == content_key

    def test_unwrap_with_other_key_fails(self, key, params):
        wrapped = wrap_key(generate_content_key(), key)
        with pytest.raises(DecryptError):
            unwrap_key(wrapped, derive_key("another-passw0rd", params))

    def test_garbage_fails(self, key):
        with pytest.raises(DecryptError):
            unwrap_key("@@not base64@@", key)


class TestPasswordHash:
    """Tests for the argon2 master password hash."""

    def test_verify(self):
        h = hash_password("passw0rd-one")
        assert verify_password(h, "passw0rd-one")
        assert not verify_password(h, "passw0rd-two")

    def test_garbage_hash_is_false(self):
        assert not verify_password("not-a-hash", "passw0rd-one")
