"""
Shipping address and customer info validation.

Rules follow what the fulfillment provider needs to quote shipping rates:
country is always required, a state is required for US, CA, AU and JP, and
street, city and a well-formed postal code are needed for accurate rates.
"""
import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from checkout_core.models import CustomerInfo, FieldError
from checkout_core.regions import STATE_NAME_TO_CODE

COUNTRIES_REQUIRING_STATE = ["US", "CA", "AU", "JP"]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ZipFormat(NamedTuple):
    pattern: re.Pattern
    example: str
    description: str


def _fmt(pattern: str, example: str, description: str, flags: int = 0) -> ZipFormat:
    return ZipFormat(re.compile(pattern, flags), example, description)


ZIP_FORMATS: Dict[str, ZipFormat] = {
    # North America
    "US": _fmt(r"^\d{5}(?:-\d{4})?$", "90210 or 90210-1234", "5 digits or 5+4 digits (ZIP+4)"),
    "CA": _fmt(r"^[A-Z]\d[A-Z]\s?\d[A-Z]\d$", "M5V 3A8", "A1A 1A1 format", re.I),
    "MX": _fmt(r"^\d{5}$", "01000", "5 digits"),
    # Europe
    "GB": _fmt(r"^[A-Z]{1,2}\d[A-Z\d]?\s?\d[A-Z]{2}$", "SW1A 1AA", "UK postcode format", re.I),
    "DE": _fmt(r"^\d{5}$", "10115", "5 digits"),
    "FR": _fmt(r"^\d{5}$", "75001", "5 digits"),
    "IT": _fmt(r"^\d{5}$", "00100", "5 digits"),
    "ES": _fmt(r"^\d{5}$", "28001", "5 digits"),
    "NL": _fmt(r"^\d{4}\s?[A-Z]{2}$", "1012 AB", "4 digits + 2 letters", re.I),
    "BE": _fmt(r"^\d{4}$", "1000", "4 digits"),
    "CH": _fmt(r"^\d{4}$", "8001", "4 digits"),
    "SE": _fmt(r"^\d{5}$", "10216", "5 digits"),
    "NO": _fmt(r"^\d{4}$", "0150", "4 digits"),
    "DK": _fmt(r"^\d{4}$", "1000", "4 digits"),
    "AT": _fmt(r"^\d{4}$", "1010", "4 digits"),
    "CZ": _fmt(r"^\d{3}\s?\d{2}$", "110 00", "3 digits + 2 digits"),
    "PL": _fmt(r"^\d{2}-\d{3}$", "00-001", "2 digits-3 digits"),
    "IE": _fmt(r"^[A-Z]\d[\dW]\s?[A-Z\d]{4}$", "D02 X285", "Eircode format", re.I),
    # Asia-Pacific
    "AU": _fmt(r"^\d{4}$", "2000", "4 digits"),
    "JP": _fmt(r"^\d{3}-\d{4}$", "100-0001", "3 digits-4 digits"),
    "NZ": _fmt(r"^\d{4}$", "1010", "4 digits"),
    "CN": _fmt(r"^\d{6}$", "100000", "6 digits"),
    "IN": _fmt(r"^\d{6}$", "110001", "6 digits (PIN code)"),
    "SG": _fmt(r"^\d{6}$", "018956", "6 digits"),
    "KR": _fmt(r"^\d{5}$", "03051", "5 digits"),
    # South America
    "BR": _fmt(r"^\d{5}-?\d{3}$", "01310-100", "5 digits-3 digits"),
    "AR": _fmt(r"^[A-Z]?\d{4}[A-Z]?$", "C1425", "4 digits, optional letter prefix/suffix", re.I),
}


def validate_zip_code(zip_code: str, country_code: str) -> Tuple[bool, Optional[str]]:
    """
    Check a postal code against the country's format.

    Countries without a known format accept any value.

    Returns:
        (valid, message) where message explains the expected format
    """
    if not zip_code or not country_code:
        return False, "ZIP code and country are required"

    zip_format = ZIP_FORMATS.get(country_code)
    if zip_format is None:
        return True, None

    if not zip_format.pattern.match(zip_code.strip()):
        return False, (
            f"Invalid {country_code} postal code format. "
            f"Expected: {zip_format.description} (e.g., {zip_format.example})"
        )
    return True, None


def validate_shipping_address(customer_info: CustomerInfo, require_phone: bool = True) -> List[FieldError]:
    """Return every problem with the shipping part of customer info"""
    errors: List[FieldError] = []
    country = customer_info.country

    if not country:
        errors.append(FieldError(field="country", message="Country is required"))

    if country in COUNTRIES_REQUIRING_STATE and not customer_info.state:
        errors.append(FieldError(field="state", message=f"State/Province is required for {country}"))

    if require_phone:
        if not customer_info.phone:
            errors.append(FieldError(field="phone", message="Phone number is required"))
        elif len(re.sub(r"\D", "", customer_info.phone)) < 7:
            errors.append(FieldError(field="phone", message="Phone number must have at least 7 digits"))

    if not customer_info.address1:
        errors.append(FieldError(field="address1", message="Street address is required for accurate shipping rates"))

    if not customer_info.city:
        errors.append(FieldError(field="city", message="City is required for accurate shipping rates"))

    if not customer_info.zip:
        errors.append(FieldError(field="zip", message="ZIP/Postal code is required for accurate shipping rates"))
    elif country:
        valid, message = validate_zip_code(customer_info.zip, country)
        if not valid:
            errors.append(FieldError(field="zip", message=message or "Invalid ZIP/Postal code format"))

    return errors


def validate_customer_info(customer_info: CustomerInfo) -> List[FieldError]:
    """Return problems with the contact part of customer info"""
    errors: List[FieldError] = []

    if len(customer_info.name.strip()) < 2:
        errors.append(FieldError(field="name", message="Full name is required (at least 2 characters)"))

    if not customer_info.email:
        errors.append(FieldError(field="email", message="Email is required"))
    elif not EMAIL_PATTERN.match(customer_info.email):
        errors.append(FieldError(field="email", message="Invalid email format"))

    return errors


def get_error_message(errors: List[FieldError]) -> str:
    """Collapse field errors into one user-facing message"""
    if not errors:
        return ""
    if len(errors) == 1:
        return errors[0].message
    return "Please fix the following:\n" + "\n".join(f"- {e.message}" for e in errors)


def can_fetch_shipping_rates(customer_info: CustomerInfo) -> bool:
    """Whether the address is complete enough to quote shipping"""
    if not customer_info.country:
        return False
    if customer_info.country in COUNTRIES_REQUIRING_STATE and not customer_info.state:
        return False
    return bool(customer_info.city and customer_info.zip)


def normalize_state_name(state: Optional[str]) -> str:
    """Map a spelled-out US state or Canadian province to its code"""
    if not state:
        return ""
    if len(state) == 2 and state == state.upper():
        return state
    return STATE_NAME_TO_CODE.get(state.strip().lower(), state)
