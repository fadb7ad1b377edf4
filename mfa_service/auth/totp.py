"""
TOTP engine.

Implements TOTP (Time-based One-Time Password) using RFC 6238 with SHA1,
6 digits and a 30-second step, compatible with Google Authenticator, Authy
and other TOTP apps.

Everything here is stateless: functions over (secret, time, code). Replay
tracking across calls belongs to the session store.
"""
import base64
import binascii
import io
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import quote

import pyotp
from pyotp.utils import strings_equal
import qrcode

DIGITS = 6
PERIOD = 30
ALGORITHM = "SHA1"

# 32 base32 characters = 160 bits of entropy
SECRET_LENGTH = 32

_CODE_PATTERN = re.compile(r"[0-9]{6}")

TimeLike = Union[datetime, int, float]


@dataclass(frozen=True)
class TOTPSecret:
    """A freshly generated shared key, in raw and base32 form."""
    label: str
    base32: str
    raw: bytes


@dataclass(frozen=True)
class ProvisioningArtifacts:
    """What an authenticator app needs to import a secret."""
    secret: str
    provisioning_uri: str
    qr_code: str


def generate_secret(label: str) -> TOTPSecret:
    """
    Generate a new TOTP secret for MFA enrollment.

    Args:
        label: Account label the secret is bound to (username or email).

    Returns:
        TOTPSecret with the raw key and its base32 encoding (32 characters).
    """
    encoded = pyotp.random_base32(length=SECRET_LENGTH)
    return TOTPSecret(label=label, base32=encoded, raw=base64.b32decode(encoded))


def build_provisioning_uri(label: str, secret_base32: str, issuer: str) -> str:
    """
    Build the otpauth:// URI an authenticator app imports.

    The URI contains the key itself and must be treated as a secret.
    """
    account = f"{quote(issuer, safe='')}:{quote(label, safe='@')}"
    return (
        f"otpauth://totp/{account}"
        f"?secret={secret_base32}"
        f"&issuer={quote(issuer, safe='')}"
        f"&algorithm={ALGORITHM}&digits={DIGITS}&period={PERIOD}"
    )


def render_qr_png(uri: str) -> bytes:
    """
    Generate a QR code image for the provisioning URI.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def render_qr_data_uri(uri: str) -> str:
    """Generate a base64 data URI of the QR code, ready for an <img> tag."""
    b64 = base64.b64encode(render_qr_png(uri)).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def provision(label: str, issuer: str) -> ProvisioningArtifacts:
    """
    Complete provisioning: generate secret, URI, and QR code.
    """
    secret = generate_secret(label)
    uri = build_provisioning_uri(label, secret.base32, issuer)
    return ProvisioningArtifacts(
        secret=secret.base32,
        provisioning_uri=uri,
        qr_code=render_qr_data_uri(uri),
    )


def is_valid_code_format(code) -> bool:
    """True if code is a 6-digit ASCII numeric string."""
    return isinstance(code, str) and _CODE_PATTERN.fullmatch(code) is not None


def is_valid_secret(secret: Optional[str]) -> bool:
    """True if secret is a decodable base32 key."""
    if not secret or not isinstance(secret, str):
        return False
    padded = secret.upper() + "=" * (-len(secret) % 8)
    try:
        return len(base64.b32decode(padded)) > 0
    except (binascii.Error, ValueError):
        return False


def _as_datetime(for_time: Optional[TimeLike]) -> datetime:
    if for_time is None:
        return datetime.now(timezone.utc)
    if isinstance(for_time, datetime):
        return for_time
    return datetime.fromtimestamp(for_time, tz=timezone.utc)


def time_step(for_time: Optional[TimeLike] = None) -> int:
    """Index of the 30-second step containing for_time."""
    return int(_as_datetime(for_time).timestamp()) // PERIOD


def current_code(secret: str, for_time: Optional[TimeLike] = None) -> str:
    """
    Get the code for the step containing for_time (for testing/debugging).
    """
    return pyotp.TOTP(secret).generate_otp(time_step(for_time))


def match_time_step(
    secret: str,
    code: str,
    for_time: Optional[TimeLike] = None,
    window: int = 1,
) -> Optional[int]:
    """
    Find the time step a submitted code belongs to.

    Checks the current step and window steps either side of it (clock
    skew tolerance).

    Returns:
        The matching step index, or None if no candidate matches.
    """
    if not is_valid_code_format(code) or not secret:
        return None

    totp = pyotp.TOTP(secret)
    base = time_step(for_time)
    for offset in range(-window, window + 1):
        step = base + offset
        if step < 0:
            continue
        if strings_equal(totp.generate_otp(step), code):
            return step
    return None


def verify_totp(
    secret: str,
    code: str,
    window: int = 1,
    for_time: Optional[TimeLike] = None,
) -> bool:
    """
    Verify a TOTP code against the secret.

    Args:
        secret: Base32-encoded TOTP secret.
        code: 6-digit code entered by user.
        window: Number of 30-second steps to allow either side (default 1 = +-30s).
        for_time: Instant to verify at (defaults to now).

    Returns:
        True if code is valid, False otherwise.
    """
    return match_time_step(secret, code, for_time=for_time, window=window) is not None
