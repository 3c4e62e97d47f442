"""TOTP enrollment, verification and recovery codes."""

import pyotp
import pytest

from tonotes.service.errors import (
    AuthenticationError,
    InvalidRecoveryCodeError,
    NotEnrolledError,
    ValidationError,
)
from tonotes.service.two_factor import (
    RECOVERY_CODE_COUNT,
    RECOVERY_CODE_LENGTH,
    TwoFactorService,
    generate_recovery_codes,
    hash_recovery_code,
    recovery_code_matches,
)


@pytest.fixture
def service(memory_store):
    return TwoFactorService(memory_store, issuer="ToNotes")


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("mfauser", "mfa@example.com", "x$y")


async def _enroll(service, user_id):
    enrollment = await service.generate_enrollment(user_id)
    codes = await service.enable(
        user_id, enrollment.secret, pyotp.TOTP(enrollment.secret).now()
    )
    return enrollment.secret, codes


class TestRecoveryCodeHelpers:
    def test_generated_codes_shape(self):
        codes = generate_recovery_codes()
        assert len(codes) == RECOVERY_CODE_COUNT
        assert all(len(c) == RECOVERY_CODE_LENGTH for c in codes)
        assert len(set(codes)) == RECOVERY_CODE_COUNT

    def test_hash_matches_normalized_input(self):
        stored = hash_recovery_code("ABCDEFGH23456723")
        assert recovery_code_matches("abcd-efgh 2345-6723", stored)
        assert not recovery_code_matches("ABCDEFGH23456722", stored)

    def test_hash_is_salted(self):
        assert hash_recovery_code("ABCD") != hash_recovery_code("ABCD")

    def test_malformed_stored_value(self):
        assert not recovery_code_matches("ABCD", "no-separator")


class TestEnrollment:
    async def test_enrollment_contents(self, service, user):
        enrollment = await service.generate_enrollment(user.id)
        assert len(enrollment.secret) >= 16
        assert enrollment.otpauth_url.startswith("otpauth://totp/")
        assert "issuer=ToNotes" in enrollment.otpauth_url
        assert enrollment.qr_code.startswith("data:image/png;base64,")

    async def test_enrollment_does_not_store_anything(self, service, memory_store, user):
        await service.generate_enrollment(user.id)
        assert memory_store.get_user(user.id).two_factor_enabled is False

    async def test_enable_with_valid_code(self, service, memory_store, user):
        secret, codes = await _enroll(service, user.id)
        stored = memory_store.get_user(user.id)
        assert stored.two_factor_enabled
        assert stored.two_factor_secret == secret
        assert len(codes) == RECOVERY_CODE_COUNT
        assert not set(codes) & set(stored.recovery_codes)

    async def test_secret_is_encrypted_at_rest(self, service, memory_store, user):
        secret, _ = await _enroll(service, user.id)
        assert memory_store.users[user.id].two_factor_secret != secret

    async def test_enable_with_wrong_code(self, service, user):
        enrollment = await service.generate_enrollment(user.id)
        with pytest.raises(ValidationError) as exc:
            await service.enable(user.id, enrollment.secret, "000000")
        assert exc.value.message == "Invalid 2FA code"

    async def test_enable_twice_is_rejected(self, service, user):
        secret, _ = await _enroll(service, user.id)
        with pytest.raises(ValidationError) as exc:
            await service.enable(user.id, secret, pyotp.TOTP(secret).now())
        assert exc.value.message == "2FA is already enabled"
        with pytest.raises(ValidationError):
            await service.generate_enrollment(user.id)


class TestVerifyAndDisable:
    async def test_verify(self, service, user):
        secret, _ = await _enroll(service, user.id)
        assert await service.verify(user.id, pyotp.TOTP(secret).now())
        assert not await service.verify(user.id, "abcdef")

    async def test_verify_requires_enrollment(self, service, user):
        with pytest.raises(NotEnrolledError):
            await service.verify(user.id, "123456")

    async def test_disable_requires_valid_code(self, service, memory_store, user):
        secret, _ = await _enroll(service, user.id)
        with pytest.raises(AuthenticationError):
            await service.disable(user.id, "000000")
        await service.disable(user.id, pyotp.TOTP(secret).now())
        stored = memory_store.get_user(user.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None
        assert stored.recovery_codes == []

    def test_verify_totp_rejects_bad_secret(self):
        assert TwoFactorService.verify_totp("not base32 !!", "123456") is False
        assert TwoFactorService.verify_totp("", "123456") is False


class TestRecovery:
    async def test_code_is_single_use(self, service, user):
        _, codes = await _enroll(service, user.id)
        assert await service.consume_recovery(user.id, codes[0]) == RECOVERY_CODE_COUNT - 1
        with pytest.raises(InvalidRecoveryCodeError) as exc:
            await service.consume_recovery(user.id, codes[0])
        assert exc.value.message == "Invalid recovery code"

    async def test_unknown_code(self, service, user):
        await _enroll(service, user.id)
        with pytest.raises(InvalidRecoveryCodeError):
            await service.consume_recovery(user.id, "AAAAAAAAAAAAAAAA")

    async def test_recovery_requires_enrollment(self, service, user):
        with pytest.raises(NotEnrolledError):
            await service.consume_recovery(user.id, "AAAAAAAAAAAAAAAA")

    async def test_login_accepts_totp_or_recovery(self, service, memory_store, user):
        secret, codes = await _enroll(service, user.id)
        enrolled = memory_store.get_user(user.id)
        assert await service.check_login_code(enrolled, pyotp.TOTP(secret).now())
        assert await service.check_login_code(enrolled, codes[1])
        assert not await service.check_login_code(
            memory_store.get_user(user.id), codes[1]
        )
        assert not await service.check_login_code(enrolled, None)
