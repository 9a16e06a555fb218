"""
Input Validation Utilities

Validation for free-text chat input:
- Phone number normalization and masking (WhatsApp wa_id format)
- Text sanitization
- Names, amounts, quantity ranges and dates typed by users
"""
import re
from datetime import date, datetime


class ValidationPatterns:
    """Regex patterns for validation"""

    # wa_id: ספרות בלבד כולל קידומת מדינה, ללא +
    WA_ID = re.compile(r"^[1-9]\d{7,14}$")

    # Indian mobile typed locally: 10 digits starting with 6-9
    PHONE_INDIA_LOCAL = re.compile(r"^[6-9]\d{9}$")

    # Any script (Malayalam vowel signs are not \w) minus digits and markup symbols
    NAME = re.compile(r"^[^\d<>{}\[\]@#$%^*=+|\\/~`_]+$")

    # "5", "5-10", "5 - 10 kg"
    QUANTITY_RANGE = re.compile(r"^\s*(\d{1,4})\s*(?:(?:-|to)\s*(\d{1,4}))?\s*(?:kg|kgs)?\s*$", re.IGNORECASE)

    # "250", "250.50", "Rs 250", "₹250/kg"
    PRICE = re.compile(r"(\d+(?:\.\d{1,2})?)")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str) -> bool:
        """Validate a phone number after normalization."""
        if not phone:
            return False
        return bool(ValidationPatterns.WA_ID.match(PhoneNumberValidator.normalize(phone)))

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to the WhatsApp wa_id format (digits only).

        Local 10-digit Indian numbers get the 91 country code.
        """
        cleaned = re.sub(r"\D", "", phone or "")
        if cleaned.startswith("00"):
            cleaned = cleaned[2:]
        if cleaned.startswith("0") and len(cleaned) == 11:
            cleaned = cleaned[1:]
        if ValidationPatterns.PHONE_INDIA_LOCAL.match(cleaned):
            cleaned = "91" + cleaned
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 91984712****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Trims whitespace, enforces max length, removes null bytes and
        collapses repeated spaces. No HTML escaping; chat output is plain text.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized


class NameValidator:
    """Name validation utilities"""

    MIN_LENGTH = 2
    MAX_LENGTH = 100

    @staticmethod
    def validate(name: str) -> tuple[bool, str | None]:
        """
        Validate name format.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Name is required"

        name = name.strip()

        if len(name) < NameValidator.MIN_LENGTH:
            return False, f"Name too short (minimum {NameValidator.MIN_LENGTH} characters)"

        if len(name) > NameValidator.MAX_LENGTH:
            return False, f"Name too long (maximum {NameValidator.MAX_LENGTH} characters)"

        if not ValidationPatterns.NAME.match(name):
            return False, "Name contains invalid characters"

        return True, None


class AmountValidator:
    """Monetary amount validation"""

    @staticmethod
    def parse(text: str) -> float | None:
        """Extract the first number from free text ("Rs 250/kg" -> 250.0)."""
        if not text:
            return None
        match = ValidationPatterns.PRICE.search(text.replace(",", ""))
        if not match:
            return None
        return float(match.group(1))

    @staticmethod
    def validate(
        amount: float,
        min_value: float = 0.0,
        max_value: float = 10_000_000.0
    ) -> tuple[bool, str | None]:
        """
        Validate monetary amount.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if amount <= min_value:
            return False, f"Amount must be greater than {min_value:g}"

        if amount > max_value:
            return False, f"Amount cannot exceed {max_value:g}"

        # floating point: 0.1 + 0.2 = 0.30000000000000004
        if abs(round(amount, 2) - amount) > 1e-9:
            return False, "Amount cannot have more than 2 decimal places"

        return True, None


class QuantityRangeValidator:
    """Parses quantity answers such as "5", "5-10" or "5 to 10 kg"."""

    MAX_KG = 5000

    @staticmethod
    def parse(text: str) -> tuple[int, int | None] | None:
        """
        Returns:
            (min_kg, max_kg) where max_kg is None for a single value,
            or None when the text is not a valid quantity
        """
        match = ValidationPatterns.QUANTITY_RANGE.match(text or "")
        if not match:
            return None
        low = int(match.group(1))
        high = int(match.group(2)) if match.group(2) else None
        if low < 1 or low > QuantityRangeValidator.MAX_KG:
            return None
        if high is not None:
            if high < low or high > QuantityRangeValidator.MAX_KG:
                return None
            if high == low:
                high = None
        return low, high


class DateValidator:
    """Parses user-typed dates (dd/mm/yyyy, dd-mm-yyyy, yyyy-mm-dd)."""

    FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y-%m-%d")

    @staticmethod
    def parse_future(text: str, today: date) -> date | None:
        """Parse a date that must not be in the past."""
        value = (text or "").strip()
        for fmt in DateValidator.FORMATS:
            try:
                parsed = datetime.strptime(value, fmt).date()
            except ValueError:
                continue
            return parsed if parsed >= today else None
        return None
