"""Canonical hashing helpers for content addressing and stage cache keys."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from imageforge.models.stages import BuildStage


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` address of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def strip_prefix(address: str) -> str:
    """Strip the ``sha256:`` prefix from a content address, if present."""
    return address.removeprefix("sha256:")


def stage_fingerprint(stage: BuildStage) -> dict[str, Any]:
    """JSON-safe, order-stable description of a stage definition."""
    data = stage.model_dump(mode="json")
    data["outputs"] = sorted(stage.outputs)
    return data


def compute_stage_cache_key(
    stage: BuildStage,
    input_digests: dict[str, str] | None = None,
    environment: dict[str, str] | None = None,
) -> str:
    """SHA-256 of canonical(stage definition + inbound artifacts + starting env).

    Two builds of an unchanged stage fed identical artifacts and the same
    starting environment share a key, so the second build can restore the
    stage's outputs from the cache.
    """
    payload = {
        "stage": stage_fingerprint(stage),
        "inputs": input_digests or {},
        "environment": environment or {},
    }
    return sha256_hex(canonical_json_bytes(payload))
