from __future__ import annotations

import re
from typing import Optional

_NON_PHONE_CHARS = re.compile(r"[^\d+]")
_MASK_PATTERN = re.compile(r"(\d{3})\d+(\d{2})")

MIN_PHONE_LENGTH = 8
MAX_PHONE_LENGTH = 16


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Reduce a stored phone number to digits and ``+``.

    Returns ``None`` when nothing usable remains; an international number
    such as ``+237675321739`` is 13 characters, so anything outside 8-16 is
    rejected.
    """
    if not raw:
        return None
    phone = _NON_PHONE_CHARS.sub("", str(raw).strip())
    if len(phone) < MIN_PHONE_LENGTH or len(phone) > MAX_PHONE_LENGTH:
        return None
    return phone


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "your phone"
    return _MASK_PATTERN.sub(r"\1****\2", phone, count=1)
