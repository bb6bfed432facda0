"""Inspect SGD checkpoint files and export their parameters to safetensors.

A checkpoint is the concatenation of the records written by
:meth:`difacto.model.sgd.SGDModel.save`; several shard files can be passed at
once and are read in order.  ``--start-id``/``--end-id`` restrict the report to
one shard range the same way :meth:`SGDModel.load` does.
"""

from __future__ import annotations

import argparse
import importlib.util
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from difacto.model.sgd_common import (
    CheckpointFormatError,
    CheckpointRecord,
    read_payload,
    read_record_header,
    skip_payload,
)

_SAFETENSORS_MISSING_MSG = (
    "The `safetensors` package is required for checkpoint export. "
    "Install it with 'pip install safetensors'."
)

if importlib.util.find_spec("safetensors") is None:  # pragma: no cover - deterministic import guard
    raise ModuleNotFoundError(_SAFETENSORS_MISSING_MSG)
from safetensors.numpy import save_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointSummary:
    """Aggregate view of the records found in one or more checkpoint files."""

    sources: Tuple[Path, ...]
    records: int
    skipped: int
    has_aux: Optional[bool]
    min_id: Optional[int]
    max_id: Optional[int]
    nonzero: int
    embedded: int
    V_dim: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "sources": [str(path) for path in self.sources],
            "records": self.records,
            "skipped": self.skipped,
            "has_aux": self.has_aux,
            "min_id": self.min_id,
            "max_id": self.max_id,
            "nonzero": self.nonzero,
            "embedded": self.embedded,
            "V_dim": self.V_dim,
        }


def read_checkpoints(
    paths: Sequence[Path],
    *,
    start_id: Optional[int] = None,
    end_id: Optional[int] = None,
) -> Tuple[CheckpointSummary, List[CheckpointRecord]]:
    """Decode every in-range record of ``paths``.

    The aux flag and the embedding width must agree across all decoded
    records, otherwise :class:`CheckpointFormatError` is raised.
    """

    records: List[CheckpointRecord] = []
    skipped = 0
    has_aux: Optional[bool] = None
    V_dim: Optional[int] = None
    for path in paths:
        logger.info("Reading checkpoint %s", path)
        with Path(path).open("rb") as fh:
            while True:
                header = read_record_header(fh)
                if header is None:
                    break
                fea_id, length = header
                if (start_id is not None and fea_id < start_id) or (
                    end_id is not None and fea_id >= end_id
                ):
                    skip_payload(fh, length)
                    skipped += 1
                    continue
                record = read_payload(fh, fea_id, length, V_dim)
                if has_aux is not None and record.has_aux != has_aux:
                    raise CheckpointFormatError(
                        f"{path}: record for id {fea_id} disagrees with earlier records on aux state"
                    )
                has_aux = record.has_aux
                if record.V is not None:
                    V_dim = record.V_dim
                records.append(record)

    ids = [record.fea_id for record in records]
    summary = CheckpointSummary(
        sources=tuple(Path(path) for path in paths),
        records=len(records),
        skipped=skipped,
        has_aux=has_aux,
        min_id=min(ids) if ids else None,
        max_id=max(ids) if ids else None,
        nonzero=sum(1 for record in records if record.w != 0),
        embedded=sum(1 for record in records if record.V is not None),
        V_dim=V_dim or 0,
    )
    return summary, records


def export_safetensors(records: Sequence[CheckpointRecord], path: Path) -> Dict[str, np.ndarray]:
    """Write the decoded parameters of ``records`` to a ``.safetensors`` file."""

    ordered = sorted(records, key=lambda record: record.fea_id)
    tensors: Dict[str, np.ndarray] = {
        "ids": np.asarray([record.fea_id for record in ordered], dtype=np.int64),
        "fea_cnt": np.asarray([record.fea_cnt for record in ordered], dtype=np.uint32),
        "w": np.asarray([record.w for record in ordered], dtype=np.float32),
    }
    if ordered and ordered[0].has_aux:
        tensors["sqrt_g"] = np.asarray([record.sqrt_g for record in ordered], dtype=np.float32)
        tensors["z"] = np.asarray([record.z for record in ordered], dtype=np.float32)
    embedded = [record for record in ordered if record.V is not None]
    if embedded:
        tensors["V_ids"] = np.asarray([record.fea_id for record in embedded], dtype=np.int64)
        tensors["V"] = np.stack([record.V for record in embedded]).astype(np.float32)
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    save_file(tensors, str(path))
    logger.info("Exported %d features (%d embedded) to %s", len(ordered), len(embedded), path)
    return tensors


def format_summary(summary: CheckpointSummary) -> str:
    """Return a human-friendly multi-line summary of a checkpoint."""

    header = "SGD Checkpoint Summary"
    lines = [header, "=" * len(header)]
    for path in summary.sources:
        lines.append(f"Source   : {path}")
    lines.append("")
    if summary.records:
        lines.append(f"Records  : {summary.records:>10}")
        lines.append(f"Skipped  : {summary.skipped:>10}")
        lines.append(f"Id span  : [{summary.min_id}, {summary.max_id}]")
        lines.append(f"Aux data : {'yes' if summary.has_aux else 'no'}")
        lines.append(f"Nonzero w: {summary.nonzero:>10}")
        lines.append(f"Embedded : {summary.embedded:>10}")
        lines.append(f"V_dim    : {summary.V_dim:>10}")
    else:
        lines.append(f"  <no records in range, {summary.skipped} skipped>")
    return "\n".join(lines)


def render_summary(summary: CheckpointSummary, *, format: str = "table") -> str:
    """Serialise ``summary`` as ``"table"`` or ``"json"`` (case-insensitive)."""

    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary)
    if normalized == "json":
        return json.dumps(summary.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarise SGD checkpoint files and optionally export them to safetensors",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "checkpoints",
        nargs="+",
        type=Path,
        help="Checkpoint files to read, in order",
    )
    parser.add_argument("--start-id", type=int, default=None, help="First feature id to keep")
    parser.add_argument(
        "--end-id",
        type=int,
        default=None,
        help="Feature id one past the last one to keep",
    )
    parser.add_argument(
        "--export",
        type=Path,
        default=None,
        help="Write the decoded parameters to this .safetensors file",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default="table",
        help="Format to use when rendering the summary",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args([] if argv is None else list(argv))
    if (
        args.start_id is not None
        and args.end_id is not None
        and args.end_id <= args.start_id
    ):
        parser.error("--end-id must be greater than --start-id")
    return args


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = _parse_args(list(argv) if argv is not None else sys.argv[1:])
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        summary, records = read_checkpoints(
            args.checkpoints, start_id=args.start_id, end_id=args.end_id
        )
        if args.export is not None:
            export_safetensors(records, args.export)
    except (CheckpointFormatError, OSError) as exc:
        print(f"sgd_checkpoint: {exc}", file=sys.stderr)
        return 1

    print(render_summary(summary, format=args.summary_format))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
