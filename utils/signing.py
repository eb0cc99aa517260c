# -------------------------------------------------------------------
#  🔐  utils/signing.py  – builds the `sign` value required by every
#  authenticated venue REST call.
# -------------------------------------------------------------------
"""HmacSHA256 flow:
   1. Alphabetically sort the parameters (excluding `sign`).
   2. Join as key=value pairs with '&'.
   3. MD5-hash → uppercase hex.
   4. HmacSHA256(secret_key, md5_hex) → hex digest (lower-case)."""
from __future__ import annotations
import hashlib, hmac, secrets, string, time
from typing import Dict, Optional

DEFAULT_SIG_METHOD = "HmacSHA256"
__all__ = ["generate_signature", "sign_params", "stamp", "random_echostr"]

def stamp() -> int:
    """Server-accepted millisecond timestamp."""
    return int(time.time() * 1000)

def random_echostr(length: int = 32) -> str:
    """Return a random alnum string (30-40 chars) for the `echostr` param."""
    alpha = string.ascii_letters + string.digits
    if not (30 <= length <= 40):
        raise ValueError("echostr length must be 30-40")
    return "".join(secrets.choice(alpha) for _ in range(length))

def generate_signature(params: Dict[str, str], secret_key: str, *, method: str = DEFAULT_SIG_METHOD) -> str:
    """Return the `sign` value to attach to `params`.

    Parameters
    ----------
    params      : dict  – all request params *excluding* `sign`.
    secret_key  : str   – venue secret key.
    method      : str   – currently only 'HmacSHA256' is implemented.
    """
    if "sign" in params:
        params = {k: v for k, v in params.items() if k != "sign"}
    ordered = "&".join(f"{k}={params[k]}" for k in sorted(params))
    md5_hex = hashlib.md5(ordered.encode()).hexdigest().upper()
    if method.upper() == "HMACSHA256":
        return hmac.new(secret_key.encode(), md5_hex.encode(), hashlib.sha256).hexdigest()
    raise NotImplementedError(f"Unsupported signature method: {method}")

def sign_params(params: Dict[str, str], api_key: str, secret_key: str,
                *, timestamp: Optional[int] = None, echostr: Optional[str] = None) -> Dict[str, str]:
    """Return a copy of `params` with auth fields and `sign` attached (sign last)."""
    signed = {k: str(v) for k, v in params.items() if v is not None}
    signed.update(
        api_key=api_key,
        timestamp=str(timestamp if timestamp is not None else stamp()),
        signature_method=DEFAULT_SIG_METHOD,
        echostr=echostr or random_echostr(),
    )
    signed["sign"] = generate_signature(signed, secret_key)
    return signed
