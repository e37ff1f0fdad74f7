"""
Input hashing and metadata sidecars.

Every output written by scripts/run_pipeline.py gets a JSON sidecar under
data/processed/metadata with:
  - sha256 of each input (a multi-file input such as the monthly crime
    CSVs gets one digest over its sorted members)
  - config digest
  - git commit / dirty flag when available
  - library versions, timestamp and run_id

A rerun is skipped only if the inputs and config digest are unchanged.
"""

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from imd_crime.io_utils import atomic_write_json, read_json
from imd_crime.logging_utils import get_versions
from imd_crime.paths import METADATA_DIR

PathLike = Union[str, Path]
InputSpec = Union[PathLike, Sequence[PathLike]]


def hash_file(path: PathLike, algorithm: str = "sha256") -> str:
    """Hex digest of a file, read in chunks."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {path}")

    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


def hash_file_set(paths: Sequence[PathLike], algorithm: str = "sha256") -> str:
    """
    One digest over several files.

    Members are sorted by path and each contributes its name and content
    digest, so renaming or reordering the set changes the digest only when
    the sorted membership changes.
    """
    h = hashlib.new(algorithm)
    for path in sorted(Path(p) for p in paths):
        h.update(path.name.encode("utf-8"))
        h.update(hash_file(path, algorithm).encode("ascii"))
    return h.hexdigest()


def hash_dict(d: Dict[str, Any], algorithm: str = "sha256") -> str:
    """Digest of a dict via sorted-key JSON."""
    h = hashlib.new(algorithm)
    h.update(json.dumps(d, sort_keys=True, default=str).encode("utf-8"))
    return h.hexdigest()


def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, timeout=5)
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    return result.stdout.strip() if result.returncode == 0 else None


def get_git_info() -> Dict[str, Any]:
    """Commit hash and dirty flag (None outside a git checkout)."""
    commit = _git("rev-parse", "HEAD")
    status = _git("status", "--porcelain")
    return {
        "commit": commit,
        "dirty": None if status is None else bool(status),
    }


def describe_inputs(inputs: Dict[str, InputSpec]) -> Dict[str, Dict[str, Any]]:
    """Path(s) and digest for each named input; missing files are flagged, not raised."""
    described = {}
    for name, spec in inputs.items():
        if isinstance(spec, (str, Path)):
            path = Path(spec)
            if path.exists():
                described[name] = {"path": str(path), "hash": hash_file(path)}
            else:
                described[name] = {"path": str(path), "hash": None, "missing": True}
        else:
            paths = [Path(p) for p in spec]
            missing = [str(p) for p in paths if not p.exists()]
            described[name] = {
                "paths": [str(p) for p in sorted(paths)],
                "n_files": len(paths),
                "hash": None if missing else hash_file_set(paths),
            }
            if missing:
                described[name]["missing"] = missing
    return described


def sidecar_path(output_path: PathLike, metadata_dir: Optional[Path] = None) -> Path:
    return (metadata_dir or METADATA_DIR) / f"{Path(output_path).stem}_metadata.json"


def write_metadata_sidecar(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
    metadata_dir: Optional[Path] = None,
) -> Path:
    """
    Write the metadata sidecar for one output file.

    Args:
        output_path: Output the sidecar describes
        inputs: Input name -> path, or list of paths for a multi-file input
        config: Parameters used for the run
        run_id: Run identifier (shared with the JSONL log)
        extra: Additional metadata (e.g. the run summary)
        metadata_dir: Sidecar directory (default: data/processed/metadata)

    Returns:
        Path to the written sidecar
    """
    metadata = {
        "output_file": str(output_path),
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "inputs": describe_inputs(inputs),
        "config_digest": hash_dict(config),
        "git": get_git_info(),
        "versions": get_versions(),
    }
    if extra:
        metadata["extra"] = extra

    path = sidecar_path(output_path, metadata_dir)
    atomic_write_json(metadata, path)
    return path


def validate_cache(
    output_path: PathLike,
    inputs: Dict[str, InputSpec],
    config: Dict[str, Any],
    metadata_dir: Optional[Path] = None,
) -> bool:
    """True if the output exists and its sidecar matches the current inputs and config."""
    if not Path(output_path).exists():
        return False

    path = sidecar_path(output_path, metadata_dir)
    if not path.exists():
        return False
    metadata = read_json(path)

    if metadata.get("config_digest") != hash_dict(config):
        return False

    cached = metadata.get("inputs", {})
    current = describe_inputs(inputs)
    for name, entry in current.items():
        if entry.get("hash") is None:
            return False
        if cached.get(name, {}).get("hash") != entry["hash"]:
            return False
    return True
