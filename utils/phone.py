import phonenumbers

KENYA_REGION = "KE"


def normalize_kenyan_msisdn(value: str) -> str:
    """
    Normalise a Kenyan mobile number to the bare MSISDN Daraja expects
    (``2547XXXXXXXX`` / ``2541XXXXXXXX``).

    Accepts ``0712 345 678``, ``712345678``, ``254712345678`` and ``+254712345678``.
    Raises ValueError for anything that is not a valid Kenyan mobile number.
    """
    if not value or not value.strip():
        raise ValueError("Phone number is required")

    digits = "".join(ch for ch in value if ch.isdigit())
    if digits.startswith("254"):
        candidate = f"+{digits}"
    elif digits.startswith("0"):
        candidate = f"+254{digits[1:]}"
    else:
        candidate = f"+254{digits}"

    try:
        parsed = phonenumbers.parse(candidate, KENYA_REGION)
    except phonenumbers.NumberParseException:
        raise ValueError("Invalid Kenyan phone number")

    if not phonenumbers.is_valid_number_for_region(parsed, KENYA_REGION):
        raise ValueError("Invalid Kenyan phone number")

    if phonenumbers.number_type(parsed) not in (phonenumbers.PhoneNumberType.MOBILE,
                                                phonenumbers.PhoneNumberType.FIXED_LINE_OR_MOBILE):
        raise ValueError("Mobile money requires a mobile number")

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164).lstrip("+")


def to_e164(value: str) -> str | None:
    """E.164 form used for SMS, or None when the number cannot be understood."""
    if not value or not value.strip():
        return None
    try:
        parsed = phonenumbers.parse(value, KENYA_REGION)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
