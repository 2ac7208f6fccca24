# utils.py
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple, TypeVar

from config import settings

T = TypeVar("T")
R = TypeVar("R")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())
    return logger


# ---------------------------------------------------------------------------
# Webhook HMAC verification (Base64-encoded SHA256 HMAC, e.g. from Shopify)
# ---------------------------------------------------------------------------

def verify_hmac(secret: str, data: bytes | str, hmac_header: str) -> bool:
    """
    Verifies an HMAC header (base64 encoded SHA256 digest) against a secret.

    Args:
        secret: The shared secret string.
        data:   The raw request body as bytes or str.
        hmac_header: The header value you received (base64-encoded digest).

    Returns:
        True if valid, False otherwise.
    """
    if not secret:
        return False
    if isinstance(data, str):
        data = data.encode("utf-8")

    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(computed_b64, (hmac_header or "").strip())


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_dt(val) -> Optional[datetime]:
    """
    Parse ISO/Shopify timestamps and return TZ-aware UTC datetimes.
    """
    if not val:
        return None
    if isinstance(val, datetime):
        return val.astimezone(timezone.utc) if val.tzinfo else val.replace(tzinfo=timezone.utc)
    s = str(val).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    if " " in s and "T" not in s:
        s = s.replace(" ", "T")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def money_text(val) -> Optional[str]:
    """Normalizes a money/number value to decimal text ("12.5" -> "12.50")."""
    if val is None or val == "":
        return None
    try:
        d = Decimal(str(val))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return str(d.quantize(Decimal("0.01"))) if d == d.quantize(Decimal("0.01")) else str(d)


def to_decimal(val, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if val is None or val == "":
        return default
    try:
        d = Decimal(str(val))
    except (InvalidOperation, ValueError):
        return default
    return d if d.is_finite() else default


def to_int(val, default: int = 0) -> int:
    if val is None or val == "":
        return default
    try:
        return int(Decimal(str(val)))
    except (InvalidOperation, ValueError):
        return default


def split_tags(raw: Optional[str]) -> list:
    if not raw:
        return []
    return [t.strip() for t in str(raw).split(",") if t.strip()]


def join_tags(tags: Any) -> str:
    if tags is None:
        return ""
    if isinstance(tags, str):
        return ", ".join(split_tags(tags))
    return ", ".join(str(t).strip() for t in tags if str(t).strip())


# ---------------------------------------------------------------------------
# Ordered rules: first matching predicate wins
# ---------------------------------------------------------------------------

Rule = Tuple[Callable[[T], bool], R]


def first_match(rules: Sequence[Rule], subject: T, default: R = None) -> R:
    for predicate, result in rules:
        if predicate(subject):
            return result
    return default


# ---------------------------------------------------------------------------
# Field-level dirty check
# ---------------------------------------------------------------------------

def _comparable(val: Any) -> Any:
    if isinstance(val, datetime):
        if val.tzinfo:
            val = val.astimezone(timezone.utc).replace(tzinfo=None)
        return val.replace(microsecond=0)
    if isinstance(val, date):
        return val
    if isinstance(val, (Decimal, float)):
        return Decimal(str(val)).quantize(Decimal("0.0001"))
    if isinstance(val, (list, tuple)):
        return [_comparable(v) for v in val]
    return val


def changed_fields(obj: Any, values: Dict[str, Any], fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Returns the subset of ``values`` that differs from the current attributes of ``obj``."""
    keys = list(fields) if fields is not None else list(values.keys())
    return {
        k: values[k] for k in keys
        if _comparable(getattr(obj, k, None)) != _comparable(values.get(k))
    }


def apply_changes(obj: Any, values: Dict[str, Any], fields: Optional[Iterable[str]] = None) -> bool:
    """Sets only the changed attributes on ``obj``. Returns True if anything was written."""
    diff = changed_fields(obj, values, fields)
    for k, v in diff.items():
        setattr(obj, k, v)
    return bool(diff)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
