"""Content-hash version markers and record merging.

A version marker is the SHA-256 of the record's canonical JSON with its
local-only fields removed. Both sides of a connection are hashed in the
internal record shape, so a local copy and the remote resource it was
synced from carry the same marker, and edits to local-only fields never
register as a change.
"""

import hashlib
import json
from typing import Any

from pydantic import ValidationError

from fhirsync.schemas.records import ClinicalRecordPayload
from fhirsync.services.errors import TranslationError
from fhirsync.services.translator import LOCAL_ONLY_FIELDS

MARKER_PREFIX = "sha256:"


def shared_fields(record: ClinicalRecordPayload) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude=set(LOCAL_ONLY_FIELDS[record.resource_type]))


def compute_version_marker(record: ClinicalRecordPayload) -> str:
    canonical = json.dumps(shared_fields(record), sort_keys=True, separators=(",", ":"))
    return MARKER_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def carry_local_only(
    target: ClinicalRecordPayload,
    source: ClinicalRecordPayload | None,
) -> ClinicalRecordPayload:
    """Return ``target`` with local-only fields copied from ``source``."""
    if source is None or source.resource_type != target.resource_type:
        return target
    updates = {name: getattr(source, name) for name in LOCAL_ONLY_FIELDS[target.resource_type]}
    return target.model_copy(update=updates)


def merge_records(
    local: ClinicalRecordPayload,
    remote: ClinicalRecordPayload,
) -> ClinicalRecordPayload:
    """Field-level merge: remote values win, local fills what remote leaves empty.

    Local-only fields always come from the local record.
    """
    remote_values = remote.model_dump()
    local_values = local.model_dump()
    merged: dict[str, Any] = {}
    for name, remote_value in remote_values.items():
        local_value = local_values.get(name)
        if remote_value is None or remote_value == []:
            merged[name] = local_value
        else:
            merged[name] = remote_value
    for name in LOCAL_ONLY_FIELDS[local.resource_type]:
        merged[name] = local_values.get(name)
    try:
        return type(local).model_validate(merged)
    except ValidationError as exc:
        raise TranslationError(
            f"Merged {local.resource_type} is inconsistent; choose use_local or use_remote"
        ) from exc
