"""
Input Validation Utilities

Validation for free text (package descriptions, cancellation and dispute
notes), money amounts and verification code submissions.
"""
import re
from decimal import Decimal, InvalidOperation


class ValidationPatterns:
    """Regex patterns for validation"""

    # Script injection patterns
    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        # Event handlers at a word boundary (onclick=, onload=), not "condition = fragile"
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
        re.compile(r"<object", re.IGNORECASE),
        re.compile(r"<embed", re.IGNORECASE),
    ]

    # Digits only; the length is checked against settings
    VERIFICATION_CODE = re.compile(r"^\d+$")


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Does NOT HTML escape (done at display time). Only:
        - Trims whitespace
        - Enforces max length
        - Removes null bytes and control characters
        """
        if not text:
            return ""

        sanitized = TextSanitizer.remove_control_characters(text.strip())
        sanitized = sanitized[:max_length]
        sanitized = re.sub(r" +", " ", sanitized)

        return sanitized

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """Returns (is_safe, detected_pattern)"""
        if not text:
            return True, None

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "XSS pattern detected"

        return True, None

    @staticmethod
    def remove_control_characters(text: str) -> str:
        if not text:
            return ""

        # Keep newlines and tabs
        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def validate(
        amount: Decimal,
        min_value: Decimal = Decimal("0.01"),
        max_value: Decimal = Decimal("100000"),
    ) -> tuple[bool, str | None]:
        """
        Validate a monetary amount.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            return False, "Amount is not a number"

        if not amount.is_finite():
            return False, "Amount is not a number"

        if amount < min_value:
            return False, f"Amount must be at least {min_value}"

        if amount > max_value:
            return False, f"Amount cannot exceed {max_value}"

        if amount != amount.quantize(Decimal("0.01")):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None


class VerificationCodeValidator:
    """Shape check before a submission reaches the attempt counter"""

    @staticmethod
    def normalize(code: str) -> str:
        return re.sub(r"[\s-]", "", code or "")

    @staticmethod
    def validate(code: str, length: int) -> tuple[bool, str | None]:
        code = VerificationCodeValidator.normalize(code)
        if not ValidationPatterns.VERIFICATION_CODE.match(code):
            return False, "Code must contain digits only"
        if len(code) != length:
            return False, f"Code must be {length} digits"
        return True, None


# Pydantic field validators for reuse
def sanitized_text_validator(v: str | None, max_length: int = 1000) -> str | None:
    """Pydantic field validator for sanitized text"""
    if v is None:
        return None
    is_safe, pattern = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError(f"Invalid input: {pattern}")
    return TextSanitizer.sanitize(v, max_length) or None


def amount_validator(v: Decimal | None) -> Decimal | None:
    """Pydantic field validator for prices"""
    if v is None:
        return None
    is_valid, error = AmountValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return Decimal(str(v)).quantize(Decimal("0.01"))
