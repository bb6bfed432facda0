"""Sparse per-shard model store and the FTRL/adagrad optimizer that drives it.

``w`` is updated by FTRL-proximal, a smoothed adagrad that produces sparse
weights under an l1 penalty.  The embedding ``V`` is updated by plain adagrad
and only exists for features that have been seen often enough.  All parameter
arithmetic runs in single precision, the width the checkpoint stores.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import (
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np

from .sgd_common import (
    CheckpointFormatError,
    CheckpointRecord,
    encode_record,
    read_payload,
    read_record_header,
    skip_payload,
)

logger = logging.getLogger(__name__)

# Id spans below this are stored in a flat slot list, wider ones in a dict.
DEFAULT_DENSE_THRESHOLD = 1 << 20
MAX_FEA_CNT = 0xFFFFFFFF
_REGULARIZER_MAX = 1e10

KWArgs = Union[Mapping[str, object], Iterable[Tuple[str, object]]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _coerce_real(name: str, value: object) -> float:
    if isinstance(value, str):
        value = value.strip()
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value {value!r} for {name}: expected a number") from exc


def _coerce_count(name: str, value: object) -> int:
    if isinstance(value, str):
        value = value.strip()
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value {value!r} for {name}: expected an integer") from exc


def _coerce_seed(name: str, value: object) -> Optional[int]:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none")):
        return None
    return _coerce_count(name, value)


@dataclass(frozen=True)
class SGDConfig:
    """Regularisation, learning-rate and embedding settings of one shard."""

    l1: float = 1.0
    l2: float = 0.0
    V_l2: float = 0.01
    lr: float = 0.01
    lr_beta: float = 1.0
    V_lr: float = 0.01
    V_lr_beta: float = 1.0
    V_dim: int = 0
    V_threshold: int = 10
    V_init_scale: float = 0.01
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("l1", "l2", "V_l2"):
            if not (0 <= getattr(self, name) <= _REGULARIZER_MAX):
                raise ValueError(f"{name} must be in [0, {_REGULARIZER_MAX:g}]")
        if self.lr <= 0:
            raise ValueError("lr must be positive")
        if self.V_lr <= 0:
            raise ValueError("V_lr must be positive")
        if self.lr_beta < 0:
            raise ValueError("lr_beta must be non-negative")
        if self.V_lr_beta < 0:
            raise ValueError("V_lr_beta must be non-negative")
        if self.V_dim < 0:
            raise ValueError("V_dim must be non-negative")
        if self.V_threshold < 0:
            raise ValueError("V_threshold must be non-negative")
        if self.V_init_scale < 0:
            raise ValueError("V_init_scale must be non-negative")

    @classmethod
    def init_allow_unknown(
        cls, kwargs: KWArgs
    ) -> Tuple["SGDConfig", List[Tuple[str, object]]]:
        """Build a config from key/value pairs, returning the pairs it ignored.

        Values may be strings as parsed from ``key=value`` arguments.  Keys that
        do not name a field are passed back in input order so that the caller
        can hand them to the next component.
        """

        pairs = list(kwargs.items()) if isinstance(kwargs, Mapping) else list(kwargs)
        known = {field.name for field in dataclasses.fields(cls)}
        values: Dict[str, object] = {}
        unknown: List[Tuple[str, object]] = []
        for key, value in pairs:
            if key in known:
                values[key] = _FIELD_COERCERS[key](key, value)
            else:
                unknown.append((key, value))
        return cls(**values), unknown  # type: ignore[arg-type]


_FIELD_COERCERS: Dict[str, Callable[[str, object], object]] = {
    "l1": _coerce_real,
    "l2": _coerce_real,
    "V_l2": _coerce_real,
    "lr": _coerce_real,
    "lr_beta": _coerce_real,
    "V_lr": _coerce_real,
    "V_lr_beta": _coerce_real,
    "V_dim": _coerce_count,
    "V_threshold": _coerce_count,
    "V_init_scale": _coerce_real,
    "seed": _coerce_seed,
}


class SGDStateError(RuntimeError):
    """Raised when an update is requested on a store without optimizer state."""


# ---------------------------------------------------------------------------
# Entries and the model store
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class SGDEntry:
    """Weight, FTRL accumulators and optional embedding of one feature.

    ``V`` holds ``2 * V_dim`` values: the embedding followed by its adagrad
    accumulator.  It is assigned in one step so a partial embedding is never
    visible.
    """

    fea_cnt: int = 0
    w: np.float32 = np.float32(0)
    sqrt_g: np.float32 = np.float32(0)
    z: np.float32 = np.float32(0)
    V: Optional[np.ndarray] = None

    @property
    def empty(self) -> bool:
        return self.w == 0 and self.V is None

    def embedding(self) -> Optional[np.ndarray]:
        if self.V is None:
            return None
        return self.V[: self.V.shape[0] // 2]

    def assign(self, record: CheckpointRecord) -> None:
        self.fea_cnt = record.fea_cnt
        self.w = np.float32(record.w)
        self.sqrt_g = np.float32(record.sqrt_g)
        self.z = np.float32(record.z)
        if record.V is None:
            self.V = None
        else:
            n = record.V.shape[0]
            V = np.zeros(2 * n, dtype=np.float32)
            V[:n] = record.V
            self.V = V


class SGDModel:
    """All entries of the feature ids in ``[start_id, end_id)``.

    Narrow ranges keep one slot per id in a list; wide ranges use a dict that
    grows on first access.  Either way callers see the same get-or-create,
    ordered enumeration and checkpoint behaviour.
    """

    def __init__(
        self,
        start_id: int,
        end_id: int,
        config: Optional[SGDConfig] = None,
        *,
        dense_threshold: int = DEFAULT_DENSE_THRESHOLD,
    ) -> None:
        if end_id <= start_id:
            raise ValueError(f"end_id ({end_id}) must be greater than start_id ({start_id})")
        if dense_threshold < 0:
            raise ValueError("dense_threshold must be non-negative")
        self.start_id = int(start_id)
        self.end_id = int(end_id)
        self.config = config if config is not None else SGDConfig()
        span = self.end_id - self.start_id
        self.dense = span < dense_threshold
        if self.dense:
            self._slots: List[Optional[SGDEntry]] = [None] * span
        else:
            self._map: Dict[int, SGDEntry] = {}
        logger.debug(
            "SGD model for ids [%d, %d) uses %s storage",
            self.start_id,
            self.end_id,
            "dense" if self.dense else "sparse",
        )

    def __len__(self) -> int:
        if self.dense:
            return sum(1 for entry in self._slots if entry is not None)
        return len(self._map)

    def __contains__(self, fea_id: int) -> bool:
        if not (self.start_id <= fea_id < self.end_id):
            return False
        local = fea_id - self.start_id
        if self.dense:
            return self._slots[local] is not None
        return local in self._map

    def entry_for(self, fea_id: int) -> SGDEntry:
        """Return the entry of ``fea_id``, creating an empty one on first access."""

        local = int(fea_id) - self.start_id
        if not (0 <= local < self.end_id - self.start_id):
            raise IndexError(
                f"Feature id {fea_id} outside shard range [{self.start_id}, {self.end_id})"
            )
        if self.dense:
            entry = self._slots[local]
            if entry is None:
                entry = self._slots[local] = SGDEntry()
            return entry
        entry = self._map.get(local)
        if entry is None:
            entry = self._map[local] = SGDEntry()
        return entry

    def check_ids(self, fea_ids: Iterable[int]) -> None:
        for fea_id in fea_ids:
            if not (self.start_id <= fea_id < self.end_id):
                raise IndexError(
                    f"Feature id {fea_id} outside shard range [{self.start_id}, {self.end_id})"
                )

    def items(self) -> Iterator[Tuple[int, SGDEntry]]:
        """Yield ``(feature id, entry)`` for every touched id in ascending order."""

        if self.dense:
            for local, entry in enumerate(self._slots):
                if entry is not None:
                    yield local + self.start_id, entry
        else:
            for local in sorted(self._map):
                yield local + self.start_id, self._map[local]

    def load(self, stream: BinaryIO) -> Optional[bool]:
        """Read checkpoint records from ``stream`` into the store.

        Records outside the shard range are consumed and dropped.  Returns
        whether the decoded records carried aux state, or ``None`` when no
        record fell inside the range.  Entries are only written once the whole
        stream has been read, so a malformed stream leaves the store untouched.
        """

        has_aux: Optional[bool] = None
        staged: List[CheckpointRecord] = []
        skipped = 0
        while True:
            header = read_record_header(stream)
            if header is None:
                break
            fea_id, length = header
            if not (self.start_id <= fea_id < self.end_id):
                skip_payload(stream, length)
                skipped += 1
                continue
            record = read_payload(stream, fea_id, length, self.config.V_dim)
            if has_aux is not None and record.has_aux != has_aux:
                raise CheckpointFormatError(
                    f"Record for id {fea_id} disagrees with earlier records on aux state"
                )
            has_aux = record.has_aux
            staged.append(record)
        for record in staged:
            self.entry_for(record.fea_id).assign(record)
        logger.info(
            "Loaded %d records into [%d, %d), skipped %d out of range (aux=%s)",
            len(staged),
            self.start_id,
            self.end_id,
            skipped,
            has_aux,
        )
        return has_aux

    def save(self, stream: BinaryIO, *, save_aux: bool = True) -> int:
        """Write every non-empty entry to ``stream``; returns the record count."""

        written = 0
        for fea_id, entry in self.items():
            if entry.empty:
                continue
            stream.write(
                encode_record(
                    fea_id,
                    entry.fea_cnt,
                    entry.w,
                    aux=(entry.sqrt_g, entry.z) if save_aux else None,
                    V=entry.embedding(),
                )
            )
            written += 1
        logger.info(
            "Saved %d records from [%d, %d) (aux=%s)",
            written,
            self.start_id,
            self.end_id,
            save_aux,
        )
        return written


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


class SGDOptimizer:
    """FTRL-proximal for ``w`` and adagrad for ``V`` over one shard.

    Batches are parallel arrays aligned by position.  Calls are expected from a
    single owner, one batch at a time.
    """

    def __init__(
        self,
        config: SGDConfig,
        start_id: int,
        end_id: int,
        *,
        dense_threshold: int = DEFAULT_DENSE_THRESHOLD,
    ) -> None:
        self.config = config
        self.model = SGDModel(start_id, end_id, config, dense_threshold=dense_threshold)
        self._has_aux = True
        self._num_nonzero = 0
        self._rng = np.random.default_rng(config.seed)
        self._l1 = np.float32(config.l1)
        self._l2 = np.float32(config.l2)
        self._lr = np.float32(config.lr)
        self._lr_beta = np.float32(config.lr_beta)
        self._V_l2 = np.float32(config.V_l2)
        self._V_lr = np.float32(config.V_lr)
        self._V_lr_beta = np.float32(config.V_lr_beta)
        self._V_init_scale = np.float32(config.V_init_scale)

    @classmethod
    def init_allow_unknown(
        cls,
        kwargs: KWArgs,
        start_id: int,
        end_id: int,
        *,
        dense_threshold: int = DEFAULT_DENSE_THRESHOLD,
    ) -> Tuple["SGDOptimizer", List[Tuple[str, object]]]:
        config, unknown = SGDConfig.init_allow_unknown(kwargs)
        return cls(config, start_id, end_id, dense_threshold=dense_threshold), unknown

    @property
    def has_aux(self) -> bool:
        return self._has_aux

    @property
    def num_nonzero(self) -> int:
        """Number of features whose weight is currently nonzero."""
        return self._num_nonzero

    # -- Persistence -----------------------------------------------------

    def load(self, stream: BinaryIO) -> bool:
        has_aux = self.model.load(stream)
        if has_aux is not None:
            self._has_aux = has_aux
        self._num_nonzero = sum(1 for _, entry in self.model.items() if entry.w != 0)
        return self._has_aux

    def save(self, stream: BinaryIO, *, save_aux: bool = True) -> int:
        return self.model.save(stream, save_aux=save_aux)

    # -- Batch operations ------------------------------------------------

    def get(self, fea_ids: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(weights, weight_lens)`` for ``fea_ids``.

        ``weights`` is the flat sequence ``[w_0, V_0, w_1, V_1, ...]``.
        ``weight_lens[i]`` is ``1 + V_dim`` when id ``i`` has an embedding and
        ``1`` otherwise.  When no id in the batch has one, ``weight_lens`` is
        empty and ``weights`` holds exactly one value per id.
        """

        weights: List[np.ndarray] = []
        lens: List[int] = []
        any_V = False
        for fea_id in fea_ids:
            entry = self.model.entry_for(fea_id)
            weights.append(np.asarray([entry.w], dtype=np.float32))
            embedding = entry.embedding()
            if embedding is None:
                lens.append(1)
            else:
                weights.append(embedding)
                lens.append(1 + embedding.shape[0])
                any_V = True
        flat = np.concatenate(weights) if weights else np.zeros(0, dtype=np.float32)
        return flat, np.asarray(lens if any_V else [], dtype=np.int32)

    def add_count(self, fea_ids: Sequence[int], fea_cnts: Sequence[int]) -> None:
        """Add occurrence counts, creating embeddings for frequent live features."""

        if len(fea_ids) != len(fea_cnts):
            raise ValueError(
                f"fea_ids and fea_cnts differ in length: {len(fea_ids)} != {len(fea_cnts)}"
            )
        counts = [int(count) for count in fea_cnts]
        for fea_id, count in zip(fea_ids, counts):
            if count < 0:
                raise ValueError(f"Negative count {count} for feature id {fea_id}")
        self.model.check_ids(fea_ids)
        for fea_id, count in zip(fea_ids, counts):
            entry = self.model.entry_for(fea_id)
            entry.fea_cnt = min(entry.fea_cnt + count, MAX_FEA_CNT)
            if entry.V is None and entry.w != 0 and entry.fea_cnt > self.config.V_threshold:
                self._init_V(fea_id, entry)

    def update(
        self,
        fea_ids: Sequence[int],
        grads: Sequence[float],
        grad_lens: Sequence[int] = (),
    ) -> None:
        """Apply one batch of gradients.

        ``grads`` is laid out as ``[gw_0, gV_0, gw_1, gV_1, ...]``.  An empty
        ``grad_lens`` means every id carries only ``gw``; otherwise
        ``grad_lens[i]`` is the number of embedding gradients that follow
        ``gw_i``, either ``0`` or ``V_dim``.
        """

        if not self._has_aux:
            raise SGDStateError("Cannot update a model loaded without aux data")
        grads = np.asarray(grads, dtype=np.float32).reshape(-1)
        size = len(fea_ids)
        if len(grad_lens) == 0:
            expected = size
        else:
            if len(grad_lens) != size:
                raise ValueError(
                    f"grad_lens and fea_ids differ in length: {len(grad_lens)} != {size}"
                )
            V_dim = self.config.V_dim
            for n in grad_lens:
                if n not in (0, V_dim):
                    raise ValueError(f"Embedding gradient length {n} must be 0 or {V_dim}")
            expected = size + int(sum(grad_lens))
        if expected != grads.shape[0]:
            raise ValueError(
                f"Batch consumes {expected} gradients but {grads.shape[0]} were supplied"
            )
        self.model.check_ids(fea_ids)

        p = 0
        for i, fea_id in enumerate(fea_ids):
            entry = self.model.entry_for(fea_id)
            self._update_w(fea_id, grads[p], entry)
            p += 1
            n = int(grad_lens[i]) if len(grad_lens) else 0
            if n:
                # An embedding gradient for a feature that has none is dropped.
                if entry.V is not None:
                    self._update_V(grads[p : p + n], entry)
                p += n

    # -- Update rules ----------------------------------------------------

    def _update_w(self, fea_id: int, gw: np.float32, entry: SGDEntry) -> None:
        w = entry.w
        sg = entry.sqrt_g
        gw = np.float32(gw) + w * self._l2
        entry.sqrt_g = np.sqrt(sg * sg + gw * gw)
        entry.z = entry.z - (gw - (entry.sqrt_g - sg) / self._lr * w)
        z = entry.z
        l1 = self._l1
        if -l1 <= z <= l1:
            entry.w = np.float32(0)
        else:
            eta = (self._lr_beta + entry.sqrt_g) / self._lr
            entry.w = (z - l1 if z > 0 else z + l1) / eta

        if w == 0 and entry.w != 0:
            self._num_nonzero += 1
            if entry.V is None and entry.fea_cnt > self.config.V_threshold:
                self._init_V(fea_id, entry)
        elif w != 0 and entry.w == 0:
            self._num_nonzero -= 1

    def _update_V(self, gV: np.ndarray, entry: SGDEntry) -> None:
        n = self.config.V_dim
        V = entry.V[:n]
        acc = entry.V[n:]
        g = gV + self._V_l2 * V
        acc_new = np.sqrt(acc * acc + g * g)
        eta = self._V_lr / (acc_new + self._V_lr_beta)
        V -= eta * g
        acc[:] = acc_new

    def _init_V(self, fea_id: int, entry: SGDEntry) -> None:
        n = self.config.V_dim
        if n == 0:
            return
        V = np.zeros(2 * n, dtype=np.float32)
        V[:n] = (self._rng.random(n, dtype=np.float32) - np.float32(0.5)) * self._V_init_scale
        entry.V = V
        logger.debug("Initialised embedding for feature %d (fea_cnt=%d)", fea_id, entry.fea_cnt)


__all__ = [
    "DEFAULT_DENSE_THRESHOLD",
    "MAX_FEA_CNT",
    "SGDConfig",
    "SGDEntry",
    "SGDModel",
    "SGDOptimizer",
    "SGDStateError",
]
