import base64
import binascii
import hashlib
import json
import math
import re
import time
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from topup.utils.errors import ConfigurationError


_LONE_SURROGATE = re.compile("[\ud800-\udfff]")
# Integers above this lose precision as JS numbers.
_MAX_SAFE_INTEGER = 2**53


def _format_number(value: float) -> str:
    """Render a number the way ``JSON.stringify`` does (ECMAScript Number::toString)."""
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"
    if value.is_integer() and abs(value) < _MAX_SAFE_INTEGER:
        return str(int(value))

    sign_prefix = "-" if value < 0 else ""
    # repr() yields the shortest round-tripping digits, the same ones JS picks.
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    raw_digits = "".join(map(str, digit_tuple))
    digits = raw_digits.rstrip("0")
    exponent += len(raw_digits) - len(digits)
    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * -n + digits
    else:
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        text = f"{mantissa}e{'+' if n - 1 >= 0 else '-'}{abs(n - 1)}"
    return sign_prefix + text


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        if abs(value) < _MAX_SAFE_INTEGER:
            return str(value)
        try:
            return _format_number(float(value))
        except OverflowError:
            return "null"
    if isinstance(value, float):
        return _format_number(value)
    if isinstance(value, str):
        text = json.dumps(value, ensure_ascii=False)
        return _LONE_SURROGATE.sub(lambda match: f"\\u{ord(match.group()):04x}", text)
    if isinstance(value, Mapping):
        return "{" + ",".join(f"{_encode(str(key))}:{_encode(item)}" for key, item in value.items()) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(body: Any) -> str:
    """Serialize ``body`` compactly in document order with ``JSON.stringify`` output.

    The provider hashes ``JSON.stringify(body)``, so numbers follow JS formatting
    (``15000.0`` becomes ``15000``, ``1e-07`` becomes ``1e-7``) and lone surrogates
    are written as ``\\uXXXX`` escapes. The result is always valid UTF-8.
    """
    return _encode({} if body is None else body)


def body_digest(body: Any) -> str:
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest().lower()


def build_string_to_sign(method: str, endpoint_path: str, body: Any, timestamp: str | int) -> str:
    return ":".join([method.upper(), endpoint_path, body_digest(body), str(timestamp)])


def unix_timestamp() -> str:
    return str(int(time.time()))


def sign(string_to_sign: str, private_key: RSAPrivateKey | None) -> str:
    if private_key is None:
        raise ConfigurationError("Private key not set. Provide PEM in ZENOS_PRIVATE_KEY environment variable.")
    signature = private_key.sign(string_to_sign.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify(string_to_sign: str, signature: str | None, public_key: RSAPublicKey | None) -> bool:
    if public_key is None or not signature:
        return False
    try:
        raw_signature = base64.b64decode(signature, validate=True)
        public_key.verify(raw_signature, string_to_sign.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, binascii.Error, ValueError):
        return False
    return True


def normalize_pem(raw: str | None) -> str:
    return (raw or "").replace("\\n", "\n").strip()


def load_private_key(pem: str | None) -> RSAPrivateKey | None:
    text = normalize_pem(pem)
    if not text:
        return None
    try:
        key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError("ZENOS_PRIVATE_KEY is not a valid unencrypted PEM private key") from exc
    if not isinstance(key, RSAPrivateKey):
        raise ConfigurationError("ZENOS_PRIVATE_KEY must be an RSA key")
    return key


def load_public_key(pem: str | None) -> RSAPublicKey | None:
    text = normalize_pem(pem)
    if not text:
        return None
    try:
        key = serialization.load_pem_public_key(text.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError("ZENOS_PUBLIC_KEY is not a valid PEM public key") from exc
    if not isinstance(key, RSAPublicKey):
        raise ConfigurationError("ZENOS_PUBLIC_KEY must be an RSA key")
    return key
