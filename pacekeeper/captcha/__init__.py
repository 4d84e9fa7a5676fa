"""Interactive challenge resolution."""

from pacekeeper.captcha.bridge import (
    CaptchaBridge,
    CaptchaStatus,
    CaptchaTask,
    ChallengeParameters,
)

__all__ = ["CaptchaBridge", "CaptchaStatus", "CaptchaTask", "ChallengeParameters"]
