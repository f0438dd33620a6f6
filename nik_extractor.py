"""NIK (Nomor Induk Kependudukan) extraction from OCR output."""
from __future__ import annotations

import re
from typing import Optional

# Tried left to right, first hit wins:
#   "NIK : ; 3201..."  label, colon and a stray semicolon
#   "NIK: 3201..."     label and colon
#   "3201...l..."      bare run; OCR reads "1" as "l" (or "|") on KTP prints
NIK_PATTERN = re.compile(
    r":\s*;\s*(\d{16})(?!\d)"
    r"|:\s*(\d{16})(?!\d)"
    r"|\b([\d|l]{16})\b",
    re.ASCII,
)

_OCR_SUBSTITUTIONS = str.maketrans({"l": "1"})
_NIK_FULL = re.compile(r"[0-9]{16}")


def extract_identity_number(text: str) -> Optional[str]:
    """Return the 16-digit NIK found in ``text``, or None.

    Only the first candidate is considered. After mapping ``l`` to ``1`` the
    candidate must be exactly 16 digits, otherwise nothing is returned.
    """

    if not text:
        return None

    match = NIK_PATTERN.search(text)
    if not match:
        return None

    nik = match.group(1) or match.group(2) or match.group(3)
    if not nik:
        return None

    cleaned = nik.translate(_OCR_SUBSTITUTIONS)
    return cleaned if _NIK_FULL.fullmatch(cleaned) else None
