import pytest

from fhirsync.schemas.records import ConditionRecord, ObservationRecord
from fhirsync.services.errors import TranslationError
from fhirsync.services.translator import from_fhir, to_fhir
from fhirsync.services.versioning import (
    MARKER_PREFIX,
    carry_local_only,
    compute_version_marker,
    merge_records,
)


def _condition(**overrides):
    values = {"code": "44054006", "display": "Type 2 diabetes mellitus", "note": "Diet controlled"}
    values.update(overrides)
    return ConditionRecord(**values)


def test_marker_is_a_prefixed_content_hash():
    marker = compute_version_marker(_condition())

    assert marker.startswith(MARKER_PREFIX)
    assert len(marker) == len(MARKER_PREFIX) + 64
    assert compute_version_marker(_condition()) == marker


def test_marker_changes_with_shared_fields_only():
    base = compute_version_marker(_condition())

    assert compute_version_marker(_condition(note="Started insulin")) != base
    assert compute_version_marker(_condition(community_tags=["peer-support"])) == base


def test_remote_copy_carries_the_same_marker_as_local_source():
    local = _condition(community_tags=["peer-support"])

    remote = from_fhir(to_fhir(local, "Condition", resource_id="cond-1", subject_reference="Patient/p"))

    assert compute_version_marker(remote) == compute_version_marker(local)


def test_carry_local_only_copies_platform_fields():
    local = _condition(community_tags=["peer-support"])
    remote = _condition(note="Started insulin")

    carried = carry_local_only(remote, local)

    assert carried.note == "Started insulin"
    assert carried.community_tags == ["peer-support"]
    assert carry_local_only(remote, None) is remote


def test_merge_prefers_remote_and_fills_gaps_from_local():
    local = _condition(note="Local note", abatement_date=None, community_tags=["a"])
    remote = _condition(note=None, display="Diabetes type 2")

    merged = merge_records(local, remote)

    assert merged.display == "Diabetes type 2"
    assert merged.note == "Local note"
    assert merged.community_tags == ["a"]


def test_inconsistent_merge_is_rejected():
    local = ObservationRecord(code="8867-4", value_text="irregular")
    remote = ObservationRecord(code="8867-4", value=72.0, unit="/min")

    with pytest.raises(TranslationError):
        merge_records(local, remote)
