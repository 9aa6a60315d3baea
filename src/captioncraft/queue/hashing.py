"""Fingerprinting functions for submission deduplication.

A fingerprint identifies a logical job independent of when or by whom it was
submitted: the same job type with the same payload always hashes to the same
value, regardless of dict key order or whether the payload is a model or a
plain dict.
"""

import hashlib
import json
from typing import Any, Dict


def payload_dict(payload: Any) -> Dict[str, Any]:
    # Pydantic payload models are hashed in their wire (camelCase) form
    if hasattr(payload, "model_dump"):
        return payload.model_dump(by_alias=True, exclude={"job_type"}, exclude_none=True)
    return dict(payload)


def compute_job_fingerprint(job_type: str, payload: Any) -> str:
    """Compute deterministic fingerprint of a job submission.

    Args:
        job_type: Job name, e.g. ``"transcribe"``
        payload: Payload model or dict

    Returns:
        ``job_`` followed by the SHA-256 hex digest of the sorted JSON
        representation of ``{"job_type": ..., "payload": ...}``

    Notes:
        - Keys are sorted at every nesting level, so key order never matters
        - Non-JSON values (datetimes, paths) are stringified
    """
    content = json.dumps(
        {"job_type": job_type, "payload": payload_dict(payload)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return "job_" + hashlib.sha256(content.encode()).hexdigest()
