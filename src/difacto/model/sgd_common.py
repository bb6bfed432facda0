"""Binary checkpoint records shared by the SGD model store and its tooling."""

from __future__ import annotations

from dataclasses import dataclass
import struct
from typing import BinaryIO, Iterator, Optional, Sequence, Tuple

import numpy as np

RECORD_HEADER_STRUCT = struct.Struct("<Q i")
FEA_CNT_STRUCT = struct.Struct("<I")
REAL_STRUCT = struct.Struct("<f")
REAL_SIZE = REAL_STRUCT.size
REAL_DTYPE = np.dtype("<f4")
# fea_cnt and w are always stored; sqrt_g and z follow when aux is present.
BASE_FIELDS = 2
AUX_FIELDS = 2


@dataclass(frozen=True)
class CheckpointRecord:
    """One decoded ``(id, length, payload)`` record of a checkpoint stream."""

    fea_id: int
    has_aux: bool
    fea_cnt: int
    w: float
    sqrt_g: float = 0.0
    z: float = 0.0
    V: Optional[np.ndarray] = None

    @property
    def V_dim(self) -> int:
        return 0 if self.V is None else int(self.V.shape[0])


class CheckpointFormatError(RuntimeError):
    """Raised when a checkpoint stream is truncated or inconsistent."""


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        got = 0 if data is None else len(data)
        raise CheckpointFormatError(f"Short read on {what}: expected {size} bytes, got {got}")
    return data


def read_record_header(stream: BinaryIO) -> Optional[Tuple[int, int]]:
    """Return ``(fea_id, length)`` for the next record, or ``None`` at end of stream."""

    first = stream.read(RECORD_HEADER_STRUCT.size)
    if not first:
        return None
    if len(first) != RECORD_HEADER_STRUCT.size:
        first += _read_exact(stream, RECORD_HEADER_STRUCT.size - len(first), "record header")
    fea_id, length = RECORD_HEADER_STRUCT.unpack(first)
    if length == 0:
        raise CheckpointFormatError(f"Record for id {fea_id} declares an empty payload")
    return fea_id, length


def payload_size(length: int) -> int:
    """Number of payload bytes behind a signed record length."""

    size = -length if length < 0 else length
    if size % REAL_SIZE:
        raise CheckpointFormatError(f"Record length {size} is not a multiple of {REAL_SIZE}")
    return size


def skip_payload(stream: BinaryIO, length: int) -> None:
    """Consume the payload of an out-of-range record without decoding it."""

    _read_exact(stream, abs(length), "skipped record payload")


def decode_payload(
    fea_id: int, length: int, payload: bytes, V_dim: Optional[int] = None
) -> CheckpointRecord:
    """Decode a record payload.

    ``V_dim`` pins the expected embedding width; ``None`` accepts whatever
    trailing width the declared length implies.
    """

    has_aux = length > 0
    count = payload_size(length) // REAL_SIZE
    fixed = BASE_FIELDS + (AUX_FIELDS if has_aux else 0)
    if count < fixed:
        raise CheckpointFormatError(
            f"Record for id {fea_id} holds {count} values, needs at least {fixed}"
        )
    (fea_cnt,) = FEA_CNT_STRUCT.unpack_from(payload, 0)
    values = np.frombuffer(payload, dtype=REAL_DTYPE, offset=REAL_SIZE)
    w = values[0]
    sqrt_g = values[1] if has_aux else np.float32(0)
    z = values[2] if has_aux else np.float32(0)
    n = count - fixed
    if V_dim is not None and n not in (0, V_dim):
        raise CheckpointFormatError(
            f"Record for id {fea_id} carries an embedding of {n} values, expected {V_dim}"
        )
    V = values[fixed - 1 :].astype(np.float32) if n else None
    return CheckpointRecord(
        fea_id=int(fea_id),
        has_aux=has_aux,
        fea_cnt=int(fea_cnt),
        w=np.float32(w),
        sqrt_g=np.float32(sqrt_g),
        z=np.float32(z),
        V=V,
    )


def read_payload(
    stream: BinaryIO, fea_id: int, length: int, V_dim: Optional[int] = None
) -> CheckpointRecord:
    payload = _read_exact(stream, payload_size(length), f"payload of id {fea_id}")
    return decode_payload(fea_id, length, payload, V_dim)


def encode_record(
    fea_id: int,
    fea_cnt: int,
    w: float,
    *,
    aux: Optional[Tuple[float, float]] = None,
    V: Optional[Sequence[float]] = None,
) -> bytes:
    """Serialise one record; the length is negated when ``aux`` is omitted."""

    values = [w]
    if aux is not None:
        values.extend(aux)
    body = np.asarray(values, dtype=REAL_DTYPE).tobytes()
    if V is not None:
        body += np.asarray(V, dtype=REAL_DTYPE).tobytes()
    payload = FEA_CNT_STRUCT.pack(int(fea_cnt)) + body
    length = len(payload) if aux is not None else -len(payload)
    return RECORD_HEADER_STRUCT.pack(int(fea_id), length) + payload


def iter_records(stream: BinaryIO) -> Iterator[CheckpointRecord]:
    """Decode every record of ``stream`` regardless of shard range."""

    while True:
        header = read_record_header(stream)
        if header is None:
            return
        fea_id, length = header
        yield read_payload(stream, fea_id, length)


__all__ = [
    "AUX_FIELDS",
    "BASE_FIELDS",
    "CheckpointFormatError",
    "CheckpointRecord",
    "FEA_CNT_STRUCT",
    "REAL_DTYPE",
    "REAL_SIZE",
    "REAL_STRUCT",
    "RECORD_HEADER_STRUCT",
    "decode_payload",
    "encode_record",
    "iter_records",
    "payload_size",
    "read_payload",
    "read_record_header",
    "skip_payload",
]
