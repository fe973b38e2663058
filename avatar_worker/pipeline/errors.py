"""
Error taxonomy for the generation saga.

Provider failures are turned into a ClassifiedError by an ordered list of
rules. New provider vocabularies are added with ErrorClassifier.register()
without touching the call sites.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class ErrorType(str, Enum):
    CREDIT_EXHAUSTED = "CREDIT_EXHAUSTED"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_PARAMS = "INVALID_PARAMS"
    API_ERROR = "API_ERROR"
    AUDIO_FILTERED = "AUDIO_FILTERED"
    CONTENT_POLICY = "CONTENT_POLICY"


@dataclass
class ClassifiedError:
    type: ErrorType
    message: str
    user_action: str
    status: int = 0
    details: str = ""

    def describe(self) -> str:
        """Message written to a phase error column."""
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_type": self.type.value,
            "user_action": self.user_action,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Exceptions
# ═════════════════════════════════════════════════════════════════════════════

class SagaError(Exception):
    """A saga step could not run against the current record state."""


class ProviderError(Exception):
    def __init__(self, error: ClassifiedError):
        super().__init__(error.message)
        self.error = error


class InsufficientCredits(Exception):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: need {required}, have {available}")
        self.required = required
        self.available = available


class GenerationNotFound(LookupError):
    pass


class InvalidCallback(ValueError):
    pass


class UnknownModel(ValueError):
    pass


class StitchError(Exception):
    pass


# ═════════════════════════════════════════════════════════════════════════════
# Classifier
# ═════════════════════════════════════════════════════════════════════════════

AUDIO_FILTERED_MESSAGE = (
    "Audio content was filtered by KIE. Try simplifying the avatar script "
    "or removing business-specific terms."
)
IP_IMAGE_MESSAGE = (
    "Input image was rejected by KIE (IP policy). Use a photo you own, "
    "or generate without a reference image (text-to-video)."
)

Rule = Callable[[int, str], Optional[ClassifiedError]]


def _credit_rule(status: int, text: str) -> Optional[ClassifiedError]:
    lowered = text.lower()
    if "credit" in lowered or "insufficient" in lowered or "balance" in lowered:
        return ClassifiedError(
            ErrorType.CREDIT_EXHAUSTED,
            "Insufficient Kie.ai credits. Please add more credits to your account.",
            "Add credits to your Kie.ai account to continue generating videos.",
        )
    return None


def _rate_limit_rule(status: int, text: str) -> Optional[ClassifiedError]:
    if status == 429 or "rate limit" in text.lower():
        return ClassifiedError(
            ErrorType.RATE_LIMITED,
            "Kie.ai rate limit exceeded. Please wait a few minutes.",
            "Wait 5-10 minutes before trying again.",
        )
    return None


def _auth_rule(status: int, text: str) -> Optional[ClassifiedError]:
    if status in (401, 403):
        return ClassifiedError(
            ErrorType.AUTH_ERROR,
            "Invalid or expired Kie.ai API token.",
            "Check your API token configuration.",
        )
    return None


def _audio_rule(status: int, text: str) -> Optional[ClassifiedError]:
    if status == 400 and "audio_filtered" in text.lower():
        return ClassifiedError(
            ErrorType.AUDIO_FILTERED,
            AUDIO_FILTERED_MESSAGE,
            "Simplify the avatar script and try again.",
        )
    return None


def _content_policy_rule(status: int, text: str) -> Optional[ClassifiedError]:
    lowered = text.lower()
    if "content policy" in lowered or "safety" in lowered:
        return ClassifiedError(
            ErrorType.CONTENT_POLICY,
            "Request was blocked by the provider's content policy.",
            "Rephrase the prompt or script and try again.",
        )
    return None


def _invalid_params_rule(status: int, text: str) -> Optional[ClassifiedError]:
    lowered = text.lower()
    if "invalid" in lowered or "parameter" in lowered:
        return ClassifiedError(
            ErrorType.INVALID_PARAMS,
            "Invalid generation parameters.",
            "Check your video settings and try again.",
        )
    return None


DEFAULT_RULES: list[Rule] = [
    _credit_rule,
    _rate_limit_rule,
    _auth_rule,
    _audio_rule,
    _content_policy_rule,
    _invalid_params_rule,
]


class ErrorClassifier:
    def __init__(self, rules: Optional[list[Rule]] = None):
        self.rules: list[Rule] = list(rules) if rules is not None else list(DEFAULT_RULES)

    def register(self, rule: Rule, first: bool = True):
        """Add a provider-specific rule, ahead of the defaults unless first=False."""
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def classify(self, status: int, text: str) -> ClassifiedError:
        text = text or ""
        for rule in self.rules:
            result = rule(status, text)
            if result is not None:
                result.status = status
                result.details = text
                return result
        return ClassifiedError(
            ErrorType.API_ERROR,
            f"Kie.ai API error ({status})",
            "Please try again. If the issue persists, check Kie.ai service status.",
            status=status,
            details=text,
        )


default_classifier = ErrorClassifier()


def classify_provider_error(status: int, text: str) -> ClassifiedError:
    return default_classifier.classify(status, text)


# ── Fallback eligibility ─────────────────────────────────────────────────────

NEVER_FALLBACK = {ErrorType.CREDIT_EXHAUSTED, ErrorType.AUTH_ERROR}

_TYPE_REASONS = {
    ErrorType.CONTENT_POLICY: "content_policy",
    ErrorType.RATE_LIMITED: "rate_limit",
    ErrorType.API_ERROR: "provider_error",
}


def fallback_reason(error: ClassifiedError) -> Optional[str]:
    """Reason to try the fallback model, or None when the error is not model-level."""
    if error.type in NEVER_FALLBACK:
        return None
    if error.type in _TYPE_REASONS:
        return _TYPE_REASONS[error.type]

    message = error.message.lower()
    if "content policy" in message or "safety" in message:
        return "content_policy"
    if "rate limit" in message or "too many requests" in message:
        return "rate_limit"
    if "provider" in message or "api error" in message:
        return "provider_error"
    return None


# ── Asynchronous (callback / poll) failures ─────────────────────────────────

def rewrite_provider_failure(raw: Optional[str]) -> str:
    """Translate known provider failure strings into something a user can act on."""
    text = (raw or "").strip() or "Unknown error"
    lowered = text.lower()
    if "audio_filtered" in lowered or ("audio" in lowered and "filter" in lowered):
        return AUDIO_FILTERED_MESSAGE
    if "ip_input_image" in lowered:
        return IP_IMAGE_MESSAGE
    return text
