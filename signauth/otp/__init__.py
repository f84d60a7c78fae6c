from signauth.otp.challenges import (
    IssuedChallenge,
    OtpChallengeManager,
    VerificationResult,
    mask_email,
)

__all__ = [
    "IssuedChallenge",
    "OtpChallengeManager",
    "VerificationResult",
    "mask_email",
]
