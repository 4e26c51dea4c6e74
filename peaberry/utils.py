import logging
import math
import re
from typing import Optional

import bleach

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def sanitize_input(value: Optional[str]) -> str:
    """Sanitize a user-supplied search string.

    - Strips HTML tags using bleach.clean(..., strip=True)
    - Removes SQL comment and statement separators ('--' and ';')
    - Trims whitespace
    """
    if value is None:
        return ""
    val = value.replace("\x00", "")
    val = bleach.clean(val, tags=set(), strip=True)
    val = re.sub(r"(--|;)", "", val)
    return val.strip()


def clean_text(value: Optional[str]) -> Optional[str]:
    """Strip markup from free text (reviews, bios) but keep punctuation."""
    if value is None:
        return None
    return bleach.clean(value.replace("\x00", ""), tags=set(), strip=True).strip()


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def deliver_reset_link(email: str, link: str) -> None:
    # No mail transport configured; the link goes to the log
    logger.info("password reset link for %s: %s", email, link)
