import hmac
from typing import Optional

from fastapi import Header, HTTPException

from forgeworks_common.utils import read_secret

API_KEY_HEADER = "X-Forgeworks-Key"


def load_api_key(api_key_file: str) -> Optional[str]:
    if not api_key_file:
        return None
    k = read_secret(api_key_file)
    if len(k) < 16:
        raise RuntimeError(f"{api_key_file} too short; use 32+ chars")
    return k


def api_key_guard(expected: Optional[str]):
    """FastAPI dependency; a None key turns auth off."""

    def check(x_forgeworks_key: Optional[str] = Header(default=None)):
        if expected is None:
            return
        # constant-time compare
        if not hmac.compare_digest(x_forgeworks_key or "", expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    return check
