"""
Input Validation Utilities

Validation helpers shared by the input parser and the HTTP layer:
- Phone number normalization and masking for logs
- Markup-injection detection for inbound chat text
- Control-character stripping
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # International phone (E.164 format)
    PHONE_INTERNATIONAL = re.compile(r"^\+?[1-9]\d{6,14}$")

    # Markup injection patterns. Chat text is rendered by third-party clients,
    # so anything that looks like an embedded script is rejected outright.
    MARKUP_INJECTION_PATTERNS = [
        re.compile(r"<script", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        # Event handlers must start at word boundary (onclick=, onload = ...)
        # Avoids false positives like "condition = fragile"
        re.compile(r"\bon\w+\s*=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
        re.compile(r"<object", re.IGNORECASE),
        re.compile(r"<embed", re.IGNORECASE),
    ]


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        """Check that a phone number is plausibly E.164 after removing separators."""
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-().]", "", phone)
        return bool(ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize a phone number to digits with an optional leading +.

        Chat transports deliver the same number as "+234 803 123 4567",
        "2348031234567" or "+234-803-123-4567"; all map to one session key.
        """
        cleaned = re.sub(r"[^\d+]", "", phone.strip())
        if cleaned.startswith("+"):
            return "+" + cleaned[1:].replace("+", "")
        return cleaned.replace("+", "")

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., +23480312****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def check_for_markup(text: str) -> tuple[bool, str | None]:
        """
        Check text for markup/script injection.

        Returns:
            Tuple of (is_safe, detected_pattern)
        """
        if not text:
            return True, None

        for pattern in ValidationPatterns.MARKUP_INJECTION_PATTERNS:
            if pattern.search(text):
                return False, pattern.pattern

        return True, None

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Remove control characters, keeping newlines and tabs."""
        if not text:
            return ""

        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )
