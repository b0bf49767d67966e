"""
Tests for the TOTP engine.
"""
import re
from urllib.parse import parse_qs, urlparse

import pyotp
import pytest

from quicknote_auth.core.exceptions import EncodingError, InvalidSecretError
from quicknote_auth.services import totp_service
from quicknote_auth.services.totp_service import INVALID_CODE, TOTPSecret

# RFC-6238 appendix B: ASCII "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestCodeGeneration:

    def test_rfc_vector(self):
        assert totp_service.generate_code(RFC_SECRET, at_time=59) == "287082"

    def test_code_is_six_digits(self):
        secret = totp_service.generate_secret().base32
        assert re.fullmatch(r"[0-9]{6}", totp_service.generate_code(secret))

    def test_matches_reference_implementation(self):
        secret = pyotp.random_base32()
        for t in (0, 1_000_000, 1_800_000_000):
            assert totp_service.generate_code(secret, at_time=t) == pyotp.TOTP(secret).at(t)

    def test_malformed_secret_returns_sentinel(self):
        assert totp_service.generate_code("not base32 !!!", at_time=59) == INVALID_CODE


class TestVerification:

    def test_accepts_current_step(self):
        assert totp_service.verify_code("287082", RFC_SECRET, at_time=59)

    def test_accepts_one_step_drift(self):
        assert totp_service.verify_code("287082", RFC_SECRET, at_time=59 + 30)

    def test_rejects_two_steps_drift(self):
        assert not totp_service.verify_code("287082", RFC_SECRET, at_time=59 + 90)

    def test_strips_whitespace(self):
        assert totp_service.verify_code(" 287 082\n", RFC_SECRET, at_time=59)

    @pytest.mark.parametrize("candidate", ["", "28708", "2870822", "28708a", "２８７０８２", None])
    def test_rejects_malformed_candidates(self, candidate):
        assert not totp_service.verify_code(candidate, RFC_SECRET, at_time=59)

    def test_malformed_secret_never_verifies(self):
        assert not totp_service.verify_code("123456", "!!!", at_time=59)

    def test_sentinel_never_verifies(self):
        assert not totp_service.verify_code(INVALID_CODE, RFC_SECRET, at_time=59)

    def test_self_test(self):
        assert totp_service.self_test(totp_service.generate_secret().base32)
        assert not totp_service.self_test("!!!")


class TestSecrets:

    def test_generate_secret_is_160_bits(self):
        secret = totp_service.generate_secret("Ada")
        assert len(secret.base32) == 32
        assert len(secret.raw) == 20
        assert secret.hex == secret.raw.hex()

    def test_generated_secrets_differ(self):
        assert totp_service.generate_secret().base32 != totp_service.generate_secret().base32

    def test_provisioning_uri(self):
        secret = totp_service.generate_secret("Ada Writer")
        parsed = urlparse(secret.provisioning_uri)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert params["secret"] == [secret.base32]
        assert params["issuer"] == ["QuickNote Solo"]
        assert params["algorithm"] == ["SHA1"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]

    def test_user_id_from_secret(self):
        user_id = totp_service.user_id_from_secret(RFC_SECRET)
        assert re.fullmatch(r"[0-9a-f]{16}", user_id)
        assert user_id == totp_service.user_id_from_secret(RFC_SECRET)
        assert user_id != totp_service.user_id_from_secret(pyotp.random_base32())

    def test_user_ids_do_not_collide(self):
        user_ids = [totp_service.user_id_from_secret(pyotp.random_base32()) for _ in range(10000)]
        assert len(set(user_ids)) == 10000

    def test_parse_secret_normalizes(self):
        assert totp_service.parse_secret("gezd gnbv gy3t qojq gezd gnbv gy3t qojq") == RFC_SECRET

    @pytest.mark.parametrize("text", ["", "SHORT", "GEZDGNBVGY3TQOJ1", "GEZDGNBVGY3TQOJQ!@#$"])
    def test_parse_secret_rejects_invalid(self, text):
        with pytest.raises(InvalidSecretError):
            totp_service.parse_secret(text)

    def test_format_secret(self):
        assert totp_service.format_secret("ABCDEFGHIJ") == "ABCD EFGH IJ"

    def test_time_remaining(self):
        assert totp_service.time_remaining(at_time=59) == 1
        assert totp_service.time_remaining(at_time=60) == 30

    def test_backup_codes(self):
        codes = totp_service.generate_backup_codes()
        assert len(codes) == 10
        assert all(re.fullmatch(r"[0-9A-F]{8}", c) for c in codes)


class TestProvisioningImage:

    def test_png_output(self):
        png = totp_service.generate_provisioning_image(totp_service.generate_secret())
        assert png.startswith(b"\x89PNG\r\n\x1a\n")

    def test_data_url(self):
        url = totp_service.generate_provisioning_data_url(totp_service.generate_secret())
        assert url.startswith("data:image/png;base64,")

    def test_missing_uri_raises(self):
        with pytest.raises(EncodingError):
            totp_service.generate_provisioning_image(TOTPSecret(base32=RFC_SECRET))
