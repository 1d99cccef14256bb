"""Referral link validation.

Fetches the submitted page (following redirects, like `curl -L`) and looks
for a `refCode` key in the returned content, either as plain JSON or as
JSON escaped inside an HTML/JS payload.
"""

import logging
import os
import re
from http.client import HTTPException
from dataclasses import dataclass
from typing import Optional
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

REFERRAL_TIMEOUT_SECONDS = float(os.getenv("REFERRAL_TIMEOUT_SECONDS", "10"))
REFERRAL_MAX_BYTES = 1024 * 1024
USER_AGENT = "Swagly-Validator/1.0"

# Order matters: patterns capturing a value win over bare-key matches.
_REF_CODE_PATTERNS = [
    re.compile(r'\\"refCode\\":\s*\\"([^"\\]+)\\"'),
    re.compile(r'"refCode":\s*"([^"]+)"'),
    re.compile(r'\\"refCode\\":'),
    re.compile(r'"refCode":'),
]

# Returned when the key exists but no value could be captured.
REF_CODE_FOUND = "found"


class ContentTooLarge(Exception):
    pass


@dataclass
class ReferralResult:
    is_valid: bool
    ref_code: Optional[str] = None
    error: Optional[str] = None
    # network-level failure; the same link may be tried again later
    retryable: bool = False


def normalize_referral_url(value) -> Optional[str]:
    """Return the trimmed URL if it is an absolute http(s) URL, else None."""
    if not value or not isinstance(value, str):
        return None
    clean = value.strip()
    parts = urlsplit(clean)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return clean


def find_ref_code(content: str) -> Optional[str]:
    for pattern in _REF_CODE_PATTERNS:
        match = pattern.search(content)
        if match:
            if match.groups() and match.group(1):
                return match.group(1)
            return REF_CODE_FOUND
    return None


class ReferralLinkValidator:
    def __init__(self, timeout: Optional[float] = None, max_bytes: int = REFERRAL_MAX_BYTES):
        self.timeout = timeout or REFERRAL_TIMEOUT_SECONDS
        self.max_bytes = max_bytes

    def _fetch(self, url: str) -> str:
        req = urlrequest.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
        with urlrequest.urlopen(req, timeout=self.timeout) as resp:
            length = resp.headers.get("Content-Length") if resp.headers else None
            if length and length.isdigit() and int(length) > self.max_bytes:
                raise ContentTooLarge(url)
            body = resp.read(self.max_bytes + 1)
        if len(body) > self.max_bytes:
            raise ContentTooLarge(url)
        return body.decode("utf-8", errors="ignore")

    def validate(self, url: str) -> ReferralResult:
        clean = normalize_referral_url(url)
        if not clean:
            scheme = urlsplit((url or "").strip()).scheme if isinstance(url, str) else ""
            if scheme and scheme not in ("http", "https"):
                return ReferralResult(False, error="Only HTTP or HTTPS URLs are allowed.")
            return ReferralResult(False, error="Invalid URL. Please provide a valid link.")

        logger.info("Validating referral link: %s", clean)
        try:
            content = self._fetch(clean)
        except HTTPError as e:
            return ReferralResult(
                False, error=f"HTTP error {e.code}: could not fetch the link content.", retryable=e.code >= 500
            )
        except TimeoutError:
            return ReferralResult(False, error=self._timeout_message(), retryable=True)
        except URLError as e:
            if isinstance(e.reason, TimeoutError):
                return ReferralResult(False, error=self._timeout_message(), retryable=True)
            logger.info("Referral link unreachable: %s", e)
            return ReferralResult(False, error="Could not access the link. Check that it is correct.", retryable=True)
        except ContentTooLarge:
            return ReferralResult(False, error="The link content is too large (max 1MB).")
        except (OSError, HTTPException) as e:
            logger.info("Referral link fetch failed: %s", e)
            return ReferralResult(False, error="Could not access the link. Check that it is correct.", retryable=True)

        ref_code = find_ref_code(content)
        if not ref_code:
            logger.info("No refCode found at %s", clean)
            return ReferralResult(
                False,
                error="No valid referral code was found at this link. Check that it is the right link.",
            )

        logger.info("Referral code found: %s", ref_code)
        return ReferralResult(True, ref_code=ref_code)

    def _timeout_message(self) -> str:
        return f"Timeout: the link took too long to respond (max {int(self.timeout)} sec)."
