from __future__ import annotations

import base64
import binascii
import math
import re
from datetime import datetime
from typing import Dict, Optional

import numpy as np

from facematch.config import DESCRIPTOR_LENGTH, STORED_CONFIDENCE
from facematch.face.descriptor import FaceDescriptor

# Little-endian float32, the byte layout of a JS Float32Array on every platform we capture on.
WIRE_DTYPE = np.dtype("<f4")

# ISO-8601 as written by JS (`...123Z`) and Postgres (`... 09:19:09.1234+00`).
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}(?::?\d{2})?)?$"
)


class DecodeError(ValueError):
    """Raised when a stored descriptor blob cannot be turned back into a vector."""


def descriptor_to_bytes(descriptor: FaceDescriptor) -> bytes:
    """Encode the vector as 4 bytes per element, in vector order."""
    return np.asarray(descriptor.vector, dtype=WIRE_DTYPE).tobytes()


def descriptor_from_bytes(
    data: bytes,
    algorithm_id: str,
    confidence: Optional[float] = None,
    expected_length: int = DESCRIPTOR_LENGTH,
) -> FaceDescriptor:
    """Decode a blob produced by `descriptor_to_bytes`.

    Algorithm and confidence are not part of the blob; the caller supplies them.
    """
    try:
        raw = memoryview(data).tobytes()
    except TypeError as e:
        raise DecodeError(f"Expected a bytes-like object, got {type(data).__name__}") from e

    expected_bytes = int(expected_length) * WIRE_DTYPE.itemsize
    if len(raw) != expected_bytes:
        raise DecodeError(f"Invalid descriptor blob: {len(raw)} bytes, expected {expected_bytes}")

    vec = np.frombuffer(raw, dtype=WIRE_DTYPE).astype(np.float32)
    conf = STORED_CONFIDENCE if confidence is None else float(confidence)
    return FaceDescriptor(vector=vec, algorithm_id=algorithm_id, confidence=conf)


def descriptor_to_base64(descriptor: FaceDescriptor) -> str:
    return base64.b64encode(descriptor_to_bytes(descriptor)).decode("ascii")


def descriptor_from_base64(
    text: str,
    algorithm_id: str,
    confidence: Optional[float] = None,
    expected_length: int = DESCRIPTOR_LENGTH,
) -> FaceDescriptor:
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecodeError(f"Invalid base64 descriptor: {e}") from e
    return descriptor_from_bytes(raw, algorithm_id, confidence=confidence, expected_length=expected_length)


def parse_timestamp(text) -> datetime:
    """Parse a stored capture timestamp into an aware datetime (naive means UTC).

    Normalizes the forms `datetime.fromisoformat` rejects before Python 3.11:
    a `Z` suffix, `+HH`/`+HHMM` offsets and fractions that are not 3 or 6 digits.
    """
    m = _TIMESTAMP_RE.match(str(text).strip())
    if m is None:
        raise DecodeError(f"Invalid timestamp: {text!r}")

    value = m.group("base").replace(" ", "T")
    frac = m.group("frac")
    if frac:
        value += "." + (frac + "000000")[:6]

    tz = m.group("tz")
    if tz is None or tz == "Z":
        tz = "+00:00"
    elif len(tz) == 3:
        tz += ":00"
    elif ":" not in tz:
        tz = tz[:3] + ":" + tz[3:]

    try:
        return datetime.fromisoformat(value + tz)
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp: {text!r}") from e


def serialize_match(result) -> Dict:
    """Serialize a MatchResult into JSON-safe form.

    `distance` is infinite for incomparable vectors; JSON has no infinity so it becomes None.
    """
    distance = float(result.distance)
    return {
        "match": bool(result.is_match),
        "similarity": round(float(result.similarity), 4),
        "similarity_pct": int(round(float(result.similarity) * 100)),
        "distance": round(distance, 4) if math.isfinite(distance) else None,
        "message": str(result.message),
    }
